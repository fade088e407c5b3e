"""
Migration Ledger Observability

Structured logging, correlation IDs, operation timing and a hash-chained
audit trail for administrative actions.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                    Ledger / CLI Code                     │
    │  logger.info("msg", migrant=x)   audit.log(actor, ...)   │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                 LedgerLogger / AuditLogger               │
    │  Correlation IDs, component tags, structured context     │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │          StructuredHandler on the "tokenmigration"       │
    │          logger (JSON lines or plain text)               │
    └─────────────────────────────────────────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
import hashlib
import json
import logging
import sys
import threading
import time
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

ROOT_LOGGER_NAME = "tokenmigration"

# Context variable for request-scoped correlation
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Component(Enum):
    """Components, used to categorize log events."""
    LEDGER = "ledger"
    ASSETS = "assets"
    EVENTS = "events"
    CONFIG = "config"
    SCENARIO = "scenario"
    CLI = "cli"
    AUDIT = "audit"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    component: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def to_text(self) -> str:
        context = " ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        parts = [self.timestamp, self.level.upper(), self.logger, self.message]
        if self.error_code:
            parts.append(f"error_code={self.error_code}")
        if context:
            parts.append(context)
        line = " ".join(parts)
        if self.exception:
            line += "\n" + self.exception
        return line


class StructuredHandler(logging.Handler):
    """Logging handler that writes one structured event per record."""

    def __init__(self, stream: Any = None, fmt: str = "json"):
        super().__init__()
        self._stream = stream
        self.fmt = fmt

    @property
    def stream(self) -> Any:
        """The configured stream, or sys.stderr as it is at emit time."""
        return self._stream if self._stream is not None else sys.stderr

    @stream.setter
    def stream(self, value: Any) -> None:
        self._stream = value

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                correlation_id=correlation_id_var.get(),
                component=getattr(record, "component", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            line = event.to_text() if self.fmt == "text" else event.to_json()
            self.stream.write(line + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


def configure_logging(
    level: str = LogLevel.INFO.value,
    fmt: str = "json",
    stream: Any = None,
) -> logging.Logger:
    """Install (or reconfigure) the structured handler on the package logger."""
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(getattr(logging, LogLevel(level).value.upper()))

    handler = next((h for h in root.handlers if isinstance(h, StructuredHandler)), None)
    if handler is None:
        handler = StructuredHandler(stream=stream, fmt=fmt)
        root.addHandler(handler)
    else:
        handler.fmt = fmt
        if stream is not None:
            handler.stream = stream
    return root


class LedgerLogger:
    """
    Structured logger for ledger components.

    Automatically includes the correlation ID and component in every event.
    Level and output format are inherited from the package logger set up by
    ``configure_logging``.
    """

    def __init__(self, name: str, component: Component):
        self.name = name
        self.component = component
        self._logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{component.value}.{name}")

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        """Internal log method."""
        extra = {
            "component": self.component.value,
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, error_code: str = "", **context: Any) -> None:
        self._log(logging.WARNING, message, error_code=error_code, **context)

    def error(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.DEBUG if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=duration_ms,
            **context,
        )


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Set the correlation ID for the current context."""
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    """Get the current correlation ID, creating one if unset."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


def get_logger(name: str, component: Component) -> LedgerLogger:
    """Get a logger for a ledger component."""
    return LedgerLogger(name, component)


T = TypeVar("T")


def timed_operation(
    logger: LedgerLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            success = True
            try:
                return func(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                duration_ms = (time.monotonic() - start) * 1000
                logger.operation(operation_name, duration_ms, success)
        return wrapper
    return decorator


# =============================================================================
# AUDIT TRAIL
# =============================================================================

@dataclass
class AuditEvent:
    """Audit event for administrative actions."""
    event_id: str
    timestamp: str
    actor: str
    action: str
    resource_id: str
    outcome: str  # success, failure, denied
    correlation_id: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AuditLogger:
    """
    Append-only audit trail with hash chaining.

    Each entry's hash covers the entry and the previous hash, so editing or
    dropping an entry breaks ``verify_chain``.
    """

    GENESIS_HASH = "genesis"

    def __init__(self, logger: Optional[LedgerLogger] = None):
        self._logger = logger or get_logger("audit", Component.AUDIT)
        self._last_hash: str = self.GENESIS_HASH
        self._trail: List[Tuple[AuditEvent, str]] = []
        self._lock = threading.Lock()

    @staticmethod
    def _compute_hash(event: AuditEvent, previous_hash: str) -> str:
        data = json.dumps(event.to_dict(), sort_keys=True, default=str) + previous_hash
        return hashlib.sha256(data.encode()).hexdigest()

    def log(
        self,
        actor: str,
        action: str,
        resource_id: str,
        outcome: str,
        **details: Any,
    ) -> AuditEvent:
        """Append an audit event."""
        event = AuditEvent(
            event_id=uuid.uuid4().hex,
            timestamp=datetime.now(timezone.utc).isoformat(),
            actor=actor,
            action=action,
            resource_id=resource_id,
            outcome=outcome,
            correlation_id=get_correlation_id(),
            details=details,
        )

        with self._lock:
            event_hash = self._compute_hash(event, self._last_hash)
            self._last_hash = event_hash
            self._trail.append((event, event_hash))

        self._logger.info(
            f"AUDIT: {action} on {resource_id} ({outcome})",
            operation="audit",
            actor=actor,
            outcome=outcome,
            event_hash=event_hash,
        )
        return event

    @property
    def events(self) -> List[AuditEvent]:
        with self._lock:
            return [event for event, _ in self._trail]

    @property
    def head(self) -> str:
        """Hash of the most recent entry."""
        with self._lock:
            return self._last_hash

    def verify_chain(self) -> bool:
        """Recompute every hash in order and compare with the recorded ones."""
        with self._lock:
            previous = self.GENESIS_HASH
            for event, recorded in self._trail:
                if self._compute_hash(event, previous) != recorded:
                    return False
                previous = recorded
            return True
