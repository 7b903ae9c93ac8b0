"""
Capability interfaces consumed by the executor, plus reference implementations.

The engine never talks to a browser, disk or network directly; it goes through
these protocols so hosts can swap in their own providers (and tests can pass
fakes). Browser automation has no bundled implementation.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable

import aiohttp

from .config import get_settings
from .errors import FileAccessError, ProjectPathNotFoundError

logger = logging.getLogger(__name__)


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class BrowserCapability(Protocol):
    async def create_session(self, options: Optional[Dict[str, Any]] = None) -> str: ...

    async def navigate_to(self, session_id: str, url: str) -> Any: ...

    async def run_script(self, session_id: str, script: str) -> Any: ...

    async def take_screenshot(self, session_id: str) -> Any: ...

    async def close_session(self, session_id: str) -> None: ...

    async def list_sessions(self) -> List[Any]: ...


@runtime_checkable
class FilesystemCapability(Protocol):
    async def read_file(self, path: str) -> str: ...

    async def write_file(self, path: str, content: str) -> None: ...

    async def delete_file(self, path: str) -> None: ...

    async def list_directory(self, path: str) -> List[Dict[str, Any]]: ...


@runtime_checkable
class AnalyzerCapability(Protocol):
    async def analyze_structure(self, project_path: str) -> Dict[str, Any]: ...


@dataclass
class HttpResponse:
    status: int
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    reason: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@runtime_checkable
class HttpCapability(Protocol):
    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Any = None,
        timeout: Optional[float] = None,
    ) -> HttpResponse: ...


@runtime_checkable
class ErrorReporter(Protocol):
    async def handle_error(self, error: BaseException, context: Dict[str, Any], severity: str) -> Any: ...


# ============================================================================
# FILESYSTEM
# ============================================================================

class LocalFilesystem:
    """Local disk access through pathlib, run off the event loop.

    When ``root`` is set every path must resolve inside it. Reads and writes
    larger than ``max_file_size`` bytes are refused.
    """

    def __init__(self, root: Optional[str] = None, max_file_size: Optional[int] = None):
        cfg = get_settings()
        root = cfg.FS_ROOT if root is None else root
        self.root = Path(root).resolve() if root else None
        self.max_file_size = cfg.FS_MAX_FILE_SIZE if max_file_size is None else max_file_size

    def _resolve(self, path: str) -> Path:
        p = Path(path)
        if self.root is not None and not p.is_absolute():
            p = self.root / p
        p = p.resolve()
        if self.root is not None and p != self.root and self.root not in p.parents:
            raise FileAccessError(str(path), "Path outside filesystem root")
        return p

    def _check_size(self, path: str, size: int) -> None:
        if self.max_file_size and size > self.max_file_size:
            raise FileAccessError(str(path), f"File exceeds {self.max_file_size} bytes")

    async def read_file(self, path: str) -> str:
        p = self._resolve(path)

        def _read() -> str:
            self._check_size(path, p.stat().st_size)
            return p.read_text(encoding="utf-8")

        return await asyncio.to_thread(_read)

    async def write_file(self, path: str, content: str) -> None:
        p = self._resolve(path)
        data = content.encode("utf-8")
        self._check_size(path, len(data))

        def _write() -> None:
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_bytes(data)

        await asyncio.to_thread(_write)

    async def delete_file(self, path: str) -> None:
        p = self._resolve(path)
        await asyncio.to_thread(p.unlink)

    async def list_directory(self, path: str) -> List[Dict[str, Any]]:
        p = self._resolve(path)

        def _list() -> List[Dict[str, Any]]:
            entries = []
            for child in sorted(p.iterdir()):
                is_dir = child.is_dir()
                entries.append({
                    "name": child.name,
                    "path": str(child),
                    "type": "directory" if is_dir else "file",
                    "size": 0 if is_dir else child.stat().st_size,
                })
            return entries

        return await asyncio.to_thread(_list)


# ============================================================================
# PROJECT ANALYSIS
# ============================================================================

SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", "dist", "build", ".mypy_cache", ".pytest_cache"}

PROJECT_MARKERS = (
    ("package.json", "node"),
    ("pyproject.toml", "python"),
    ("setup.py", "python"),
    ("requirements.txt", "python"),
    ("Cargo.toml", "rust"),
    ("go.mod", "go"),
    ("pom.xml", "java"),
    ("build.gradle", "java"),
)


class ProjectAnalyzer:
    """Summarizes a project tree: type, top-level directories, files per extension."""

    def __init__(self, skip_dirs: Optional[set] = None):
        self.skip_dirs = set(SKIP_DIRS if skip_dirs is None else skip_dirs)

    def _scan(self, project_path: str) -> Dict[str, Any]:
        root = Path(project_path)
        if not root.is_dir():
            raise ProjectPathNotFoundError(project_path)

        project_type = "unknown"
        for marker, kind in PROJECT_MARKERS:
            if (root / marker).exists():
                project_type = kind
                break

        directories = sorted(
            child.name for child in root.iterdir()
            if child.is_dir() and child.name not in self.skip_dirs
        )
        file_counts: Dict[str, int] = {}
        total = 0
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = [d for d in dirnames if d not in self.skip_dirs]
            for name in filenames:
                ext = Path(name).suffix.lower() or "<none>"
                file_counts[ext] = file_counts.get(ext, 0) + 1
                total += 1

        return {
            "project_path": str(root),
            "project_type": project_type,
            "directories": directories,
            "file_counts": dict(sorted(file_counts.items())),
            "total_files": total,
        }

    async def analyze_structure(self, project_path: str) -> Dict[str, Any]:
        return await asyncio.to_thread(self._scan, project_path)


# ============================================================================
# HTTP
# ============================================================================

class AiohttpClient:
    def __init__(self, timeout: Optional[float] = None):
        self.timeout = get_settings().HTTP_TIMEOUT_SECONDS if timeout is None else timeout

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Any = None,
        timeout: Optional[float] = None,
    ) -> HttpResponse:
        kwargs: Dict[str, Any] = {"headers": dict(headers or {})}
        if isinstance(body, (dict, list)):
            kwargs["json"] = body
        elif body is not None:
            kwargs["data"] = body
        client_timeout = aiohttp.ClientTimeout(total=timeout or self.timeout)
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.request(method.upper(), url, **kwargs) as resp:
                if resp.content_type == "application/json":
                    payload = await resp.json()
                else:
                    payload = await resp.text()
                logger.debug("%s %s -> %s", method.upper(), url, resp.status)
                return HttpResponse(
                    status=resp.status,
                    body=payload,
                    headers=dict(resp.headers),
                    reason=resp.reason or "",
                )
