import asyncio
import os
import sys
from unittest.mock import AsyncMock

import pytest

# Ensure repository root is on sys.path for package imports
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from task_engine.capabilities import HttpResponse  # noqa: E402
from task_engine.events import EventEmitter  # noqa: E402
from task_engine.executor import TaskExecutor  # noqa: E402
from task_engine.planner import TaskPlanner  # noqa: E402
from task_engine.scheduler import SchedulerConfig, TaskScheduler  # noqa: E402


# ============================================================================
# FAKE CAPABILITIES
# ============================================================================

class FakeFilesystem:
    def __init__(self, files=None, dirs=None):
        self.files = dict(files or {})
        self.dirs = set(dirs or {"/proj"})
        self.calls = []

    async def read_file(self, path):
        self.calls.append(("read", path))
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    async def write_file(self, path, content):
        self.calls.append(("write", path))
        self.files[path] = content

    async def delete_file(self, path):
        self.calls.append(("delete", path))
        if path not in self.files:
            raise FileNotFoundError(path)
        del self.files[path]

    async def list_directory(self, path):
        self.calls.append(("list", path))
        prefix = path.rstrip("/") + "/"
        children = [p for p in self.files if p.startswith(prefix)]
        if path not in self.dirs and not children:
            raise FileNotFoundError(path)
        return [{"name": p[len(prefix):], "path": p, "type": "file"} for p in sorted(children)]


class FakeAnalyzer:
    """Analyzer that can be held open with ``hold()`` or made to fail."""

    def __init__(self):
        self.calls = []
        self.gate = None
        self.failures = []  # exceptions raised by successive calls; empty -> succeed

    def hold(self):
        self.gate = asyncio.Event()
        return self.gate

    async def analyze_structure(self, project_path):
        self.calls.append(project_path)
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            raise self.failures.pop(0)
        return {"project_path": project_path, "project_type": "python"}


class FakeBrowser:
    def __init__(self, sessions=None):
        self.sessions = list(sessions if sessions is not None else ["pool-1"])
        self.calls = []
        self.closed = []
        self.script_error = None

    async def create_session(self, options=None):
        self.calls.append(("create",))
        return "session-1"

    async def navigate_to(self, session_id, url):
        self.calls.append(("navigate", url))

    async def run_script(self, session_id, script):
        self.calls.append(("script", script))
        if self.script_error:
            raise self.script_error
        return {"passed": True}

    async def take_screenshot(self, session_id):
        self.calls.append(("screenshot",))
        return "base64-png"

    async def close_session(self, session_id):
        self.closed.append(session_id)

    async def list_sessions(self):
        return list(self.sessions)


class FakeHttp:
    def __init__(self, status=200, body=None):
        self.status = status
        self.body = body if body is not None else {"ok": True}
        self.calls = []

    async def request(self, method, url, headers=None, body=None, timeout=None):
        self.calls.append((method, url, body))
        return HttpResponse(status=self.status, body=self.body, reason="Bad Gateway" if self.status >= 500 else "OK")


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def events():
    return EventEmitter()


@pytest.fixture
def error_handler():
    handler = AsyncMock()
    handler.handle_error.return_value = None
    return handler


@pytest.fixture
def fs():
    return FakeFilesystem()


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def browser():
    return FakeBrowser()


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def planner(error_handler):
    return TaskPlanner(error_handler=error_handler)


@pytest.fixture
def executor(fs, analyzer, http, browser, error_handler, events):
    return TaskExecutor(
        filesystem=fs,
        analyzer=analyzer,
        http=http,
        browser=browser,
        error_handler=error_handler,
        events=events,
        step_timeout=0,
    )


@pytest.fixture
def scheduler_config():
    return SchedulerConfig(
        default_retry_count=3,
        retry_delay_ms=1,
        max_retry_delay_ms=20,
        max_queue_size=100,
        shutdown_grace_seconds=0.1,
    )


@pytest.fixture
def scheduler(planner, executor, error_handler, events, scheduler_config):
    return TaskScheduler(planner, executor, error_handler=error_handler, events=events, config=scheduler_config)


@pytest.fixture
def make_requirement():
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        req = {
            "id": f"req-{counter['n']}",
            "title": "Analyze project",
            "description": "Scan the project structure",
            "type": "analysis",
            "priority": "medium",
            "estimatedDuration": 10,
            "dependencies": [],
            "resources": [],
            "constraints": {},
        }
        req.update(overrides)
        return req

    return _make


@pytest.fixture
def context():
    return {"projectPath": "/proj", "currentBranch": "main", "environment": "development"}


@pytest.fixture
def recorder(events):
    """Record payloads per event name: ``recorder["task_completed"]`` -> list."""
    from task_engine.events import EngineEvent

    seen = {e.value: [] for e in EngineEvent}
    for e in EngineEvent:
        events.on(e, seen[e.value].append)
    return seen


async def wait_until(predicate, timeout=2.0, interval=0.005):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def until():
    return wait_until
