"""
Error recovery collaborator.

Classifies reported errors, keeps a bounded in-memory log, and runs the
recovery strategies registered for the error's type. Strategies do not act on
their own: each one is announced as an event (retry, fallback, rollback,
notify) so the owning component decides what to do with it.

``handle_error`` never raises; if classification or recovery itself blows up,
a fallback response with code ERR_HANDLER_FAILED is returned instead.
"""

from __future__ import annotations

import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Mapping, Optional, Union

from . import metrics
from .config import get_settings
from .events import EngineEvent, EventEmitter
from .models import linear_backoff_ms, new_id, utcnow

logger = logging.getLogger(__name__)


# ============================================================================
# TYPES
# ============================================================================

class ErrorType(str, Enum):
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    FILESYSTEM = "filesystem"
    NETWORK = "network"
    DATABASE = "database"
    TIMEOUT = "timeout"
    RESOURCE = "resource"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryType(str, Enum):
    RETRY = "retry"
    FALLBACK = "fallback"
    ROLLBACK = "rollback"
    NOTIFY = "notify"
    IGNORE = "ignore"


SEVERITY_LETTERS = {
    Severity.LOW: "L",
    Severity.MEDIUM: "M",
    Severity.HIGH: "H",
    Severity.CRITICAL: "C",
}

MAX_RETRIES_BY_TYPE = {
    ErrorType.TIMEOUT: 3,
    ErrorType.NETWORK: 5,
    ErrorType.RESOURCE: 2,
    ErrorType.FILESYSTEM: 1,
    ErrorType.DATABASE: 2,
    ErrorType.VALIDATION: 0,
    ErrorType.AUTHENTICATION: 1,
    ErrorType.AUTHORIZATION: 0,
    ErrorType.CONFIGURATION: 0,
    ErrorType.UNKNOWN: 1,
}

RECOVERABLE_TYPES = (ErrorType.TIMEOUT, ErrorType.NETWORK, ErrorType.RESOURCE)

# Checked in order; the first rule with a matching keyword wins.
CLASSIFICATION_RULES = (
    (ErrorType.AUTHENTICATION, ("invalid credentials", "unauthorized", "auth")),
    (ErrorType.AUTHORIZATION, ("permission", "forbidden", "insufficient")),
    (ErrorType.NETWORK, ("connection timeout", "network", "connection")),
    (ErrorType.TIMEOUT, ("timeout", "timed out")),
    (ErrorType.CONFIGURATION, ("configuration", "config")),
    (ErrorType.FILESYSTEM, ("file", "fs", "path")),
    (ErrorType.DATABASE, ("database", "db")),
    (ErrorType.RESOURCE, ("memory", "resource")),
    (ErrorType.VALIDATION, ("validation", "invalid")),
)

RECOVERY_EVENTS = {
    RecoveryType.RETRY: EngineEvent.RECOVERY_RETRY,
    RecoveryType.FALLBACK: EngineEvent.RECOVERY_FALLBACK,
    RecoveryType.ROLLBACK: EngineEvent.RECOVERY_ROLLBACK,
    RecoveryType.NOTIFY: EngineEvent.RECOVERY_NOTIFY,
}


@dataclass
class ErrorContext:
    module: str = "unknown"
    operation: str = "unknown"
    parameters: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None
    request_id: Optional[str] = None

    @classmethod
    def coerce(cls, value: Union["ErrorContext", Mapping[str, Any], None]) -> "ErrorContext":
        if isinstance(value, ErrorContext):
            return value
        value = dict(value or {})
        known = {"module", "operation", "parameters", "session_id", "request_id"}
        extra = {k: v for k, v in value.items() if k not in known}
        params = dict(value.get("parameters") or {})
        params.update(extra)
        return cls(
            module=value.get("module", "unknown"),
            operation=value.get("operation", "unknown"),
            parameters=params,
            session_id=value.get("session_id"),
            request_id=value.get("request_id"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "module": self.module,
            "operation": self.operation,
            "parameters": dict(self.parameters),
            "session_id": self.session_id,
            "request_id": self.request_id,
        }


@dataclass
class RecoveryAction:
    type: RecoveryType
    description: str
    priority: int = 0
    parameters: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "description": self.description,
            "priority": self.priority,
            "parameters": dict(self.parameters),
        }


@dataclass
class ErrorInfo:
    id: str
    sequence: int
    timestamp: datetime
    type: ErrorType
    message: str
    context: ErrorContext
    severity: Severity
    recoverable: bool
    max_retries: int
    retry_count: int = 0
    error_class: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "type": self.type.value,
            "message": self.message,
            "context": self.context.to_dict(),
            "severity": self.severity.value,
            "recoverable": self.recoverable,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "error_class": self.error_class,
        }


@dataclass
class ErrorResponse:
    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    request_id: Optional[str] = None
    success: bool = False

    def to_dict(self) -> Dict[str, Any]:
        error = {
            "code": self.code,
            "message": self.message,
            "details": dict(self.details),
            "timestamp": self.timestamp.isoformat(),
        }
        if self.request_id:
            error["request_id"] = self.request_id
        return {"success": self.success, "error": error}


def default_recovery_strategies() -> Dict[ErrorType, List[RecoveryAction]]:
    return {
        ErrorType.TIMEOUT: [
            RecoveryAction(RecoveryType.RETRY, "Retry with backoff", 10),
        ],
        ErrorType.NETWORK: [
            RecoveryAction(RecoveryType.RETRY, "Retry network operation", 10),
            RecoveryAction(RecoveryType.FALLBACK, "Use cached data", 5),
        ],
        ErrorType.RESOURCE: [
            RecoveryAction(RecoveryType.RETRY, "Retry with delay", 8),
            RecoveryAction(RecoveryType.FALLBACK, "Use alternative resource", 6),
        ],
        ErrorType.FILESYSTEM: [
            RecoveryAction(RecoveryType.RETRY, "Retry file operation", 5),
            RecoveryAction(RecoveryType.FALLBACK, "Use backup file", 3),
        ],
        ErrorType.DATABASE: [
            RecoveryAction(RecoveryType.RETRY, "Retry database operation", 8),
            RecoveryAction(RecoveryType.FALLBACK, "Use read replica", 5),
        ],
        ErrorType.AUTHENTICATION: [
            RecoveryAction(RecoveryType.NOTIFY, "Notify authentication failure", 10),
            RecoveryAction(RecoveryType.RETRY, "Retry with fresh token", 5),
        ],
    }


def classify_error(error: BaseException) -> ErrorType:
    message = str(error).lower()
    for error_type, keywords in CLASSIFICATION_RULES:
        if any(k in message for k in keywords):
            return error_type
    return ErrorType.UNKNOWN


def is_recoverable(error_type: ErrorType, severity: Severity) -> bool:
    if severity == Severity.CRITICAL:
        return False
    return error_type in RECOVERABLE_TYPES


# ============================================================================
# HANDLER
# ============================================================================

class ErrorHandler:
    def __init__(
        self,
        events: Optional[EventEmitter] = None,
        max_error_log: Optional[int] = None,
        retry_delay_ms: Optional[int] = None,
        max_retry_delay_ms: Optional[int] = None,
    ):
        cfg = get_settings()
        self.events = events or EventEmitter()
        self.max_error_log = cfg.MAX_ERROR_LOG if max_error_log is None else max_error_log
        self.retry_delay_ms = cfg.RETRY_DELAY_MS if retry_delay_ms is None else retry_delay_ms
        self.max_retry_delay_ms = cfg.MAX_RETRY_DELAY_MS if max_retry_delay_ms is None else max_retry_delay_ms
        self._errors: Deque[ErrorInfo] = deque(maxlen=self.max_error_log)
        self._strategies = default_recovery_strategies()
        self._counter = itertools.count(1)

    async def handle_error(
        self,
        error: BaseException,
        context: Union[ErrorContext, Mapping[str, Any], None] = None,
        severity: Union[str, Severity] = Severity.MEDIUM,
    ) -> ErrorResponse:
        ctx = None
        try:
            ctx = ErrorContext.coerce(context)
            info = self._create_error_info(error, ctx, Severity(severity))
            self._log_error(info)
            self.events.emit(EngineEvent.ERROR, info.to_dict())
            attempted, succeeded = await self._attempt_recovery(info)
            return ErrorResponse(
                code=self.generate_error_code(info),
                message=info.message,
                details={
                    "type": info.type.value,
                    "severity": info.severity.value,
                    "recoverable": info.recoverable,
                    "recovery_attempted": attempted,
                    "recovery_succeeded": succeeded,
                    "error_id": info.id,
                },
                timestamp=info.timestamp,
                request_id=ctx.request_id,
            )
        except Exception:
            logger.exception("error handler failed while processing: %s", error)
            raw_context = ctx.to_dict() if ctx else {}
            if ctx is None and isinstance(context, Mapping):
                raw_context = dict(context)
            return ErrorResponse(
                code="ERR_HANDLER_FAILED",
                message="Error handler failed to process error",
                details={"original_error": str(error), "context": raw_context},
                request_id=ctx.request_id if ctx else None,
            )

    def _create_error_info(self, error: BaseException, ctx: ErrorContext, severity: Severity) -> ErrorInfo:
        error_type = classify_error(error)
        return ErrorInfo(
            id=new_id("err"),
            sequence=next(self._counter),
            timestamp=utcnow(),
            type=error_type,
            message=str(error) or error.__class__.__name__,
            context=ctx,
            severity=severity,
            recoverable=is_recoverable(error_type, severity),
            max_retries=MAX_RETRIES_BY_TYPE[error_type],
            error_class=error.__class__.__name__,
        )

    def _log_error(self, info: ErrorInfo) -> None:
        self._errors.append(info)
        metrics.errors_handled_total.labels(severity=info.severity.value, error_type=info.type.value).inc()
        msg = "[%s] %s (module=%s operation=%s id=%s)"
        args = (info.type.value, info.message, info.context.module, info.context.operation, info.id)
        if info.severity == Severity.CRITICAL:
            logger.critical(msg, *args)
        elif info.severity == Severity.HIGH:
            logger.error(msg, *args)
        elif info.severity == Severity.MEDIUM:
            logger.warning(msg, *args)
        else:
            logger.info(msg, *args)

    async def _attempt_recovery(self, info: ErrorInfo):
        if not info.recoverable or info.retry_count >= info.max_retries:
            return False, False
        strategies = sorted(self._strategies.get(info.type, []), key=lambda s: -s.priority)
        for strategy in strategies:
            try:
                self._execute_strategy(strategy, info)
                return True, True
            except Exception:
                logger.warning("recovery strategy failed: %s", strategy.description, exc_info=True)
        return True, False

    def _execute_strategy(self, strategy: RecoveryAction, info: ErrorInfo) -> None:
        if strategy.type == RecoveryType.IGNORE:
            logger.info("ignoring error: %s", info.message)
            return
        payload = {"strategy": strategy.to_dict(), "error": info.to_dict()}
        if strategy.type == RecoveryType.RETRY:
            info.retry_count += 1
            payload["attempt"] = info.retry_count
            payload["suggested_delay_ms"] = linear_backoff_ms(
                info.retry_count, self.retry_delay_ms, self.max_retry_delay_ms
            )
        logger.info("recovery %s: %s", strategy.type.value, strategy.description)
        self.events.emit(RECOVERY_EVENTS[strategy.type], payload)

    def generate_error_code(self, info: ErrorInfo) -> str:
        return f"{SEVERITY_LETTERS[info.severity]}{info.type.value.upper()[:3]}_{info.sequence}"

    # ------------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------------

    def get_error_stats(self) -> Dict[str, Any]:
        by_type = {t.value: 0 for t in ErrorType}
        by_severity = {s.value: 0 for s in Severity}
        for info in self._errors:
            by_type[info.type.value] += 1
            by_severity[info.severity.value] += 1
        return {
            "total": len(self._errors),
            "by_type": by_type,
            "by_severity": by_severity,
            "recent_errors": [e.to_dict() for e in list(self._errors)[-10:]],
        }

    def clear_error_log(self) -> None:
        self._errors.clear()

    def add_recovery_strategy(self, error_type: Union[str, ErrorType], strategy: RecoveryAction) -> None:
        self._strategies.setdefault(ErrorType(error_type), []).append(strategy)

    def get_recovery_strategies(self, error_type: Union[str, ErrorType]) -> List[RecoveryAction]:
        return list(self._strategies.get(ErrorType(error_type), []))
