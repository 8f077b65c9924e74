"""
Custody Registry Observability

Structured logging with correlation ids for the registry components.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                    Registry Components                   │
    │  logger.info("msg", product_id=1)  logger.timed("op")   │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                     RegistryLogger                       │
    │   layer, operation, error_code, duration, context        │
    └───────────────────────┬─────────────────────────────────┘
                            │  logging.getLogger("custody.<layer>.<name>")
    ┌───────────────────────▼─────────────────────────────────┐
    │          "custody" root logger (configure_logging)       │
    │          StructuredHandler (JSON) │ TextHandler          │
    └─────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import time
import traceback
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Iterator, Optional

if TYPE_CHECKING:
    from custody.config import RegistryConfig

ROOT_LOGGER_NAME = "custody"

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)


class RegistryLayer(Enum):
    """Registry components, used to categorize log records."""
    ACCESS = "access"
    PRODUCTS = "products"
    HISTORY = "history"
    REGISTRY = "registry"
    EVENTS = "events"
    CONFIG = "config"
    ATTESTATION = "attestation"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    layer: str = ""
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


def _event_from_record(record: logging.LogRecord) -> LogEvent:
    event = LogEvent(
        timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
        level=record.levelname.lower(),
        logger=record.name,
        message=record.getMessage(),
        correlation_id=correlation_id_var.get(),
        layer=getattr(record, "layer", ""),
        operation=getattr(record, "operation", ""),
        duration_ms=getattr(record, "duration_ms", None),
        error_code=getattr(record, "error_code", ""),
        context=getattr(record, "context", {}) or {},
    )
    if record.exc_info:
        event.exception = "".join(traceback.format_exception(*record.exc_info))
    return event


class StructuredHandler(logging.Handler):
    """Logging handler that outputs one JSON object per line."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.stream.write(_event_from_record(record).to_json() + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class TextHandler(logging.Handler):
    """Logging handler that outputs a readable single line per record."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = _event_from_record(record)
            parts = [event.timestamp, event.level.upper(), event.logger, event.message]
            if event.error_code:
                parts.append(f"error_code={event.error_code}")
            if event.duration_ms is not None:
                parts.append(f"duration_ms={event.duration_ms:.2f}")
            for key in sorted(event.context):
                parts.append(f"{key}={event.context[key]}")
            self.stream.write(" ".join(str(p) for p in parts) + "\n")
            if event.exception:
                self.stream.write(event.exception)
            self.stream.flush()
        except Exception:
            self.handleError(record)


class RegistryLogger:
    """
    Structured logger for registry components.

    Every record carries the component layer plus optional operation name,
    error code, duration and free-form context.
    """

    def __init__(self, name: str, layer: RegistryLayer):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{layer.value}.{name}")

    @property
    def logger(self) -> logging.Logger:
        return self._logger

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
        extra = {
            "layer": self.layer.value,
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

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

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

    @contextmanager
    def timed(self, name: str, **context: Any) -> Iterator[None]:
        """Time the enclosed block and log its outcome.

        Exceptions are logged with their registry error code (when they have
        one) and re-raised unchanged.
        """
        start = time.monotonic()
        try:
            yield
        except Exception as exc:
            duration_ms = (time.monotonic() - start) * 1000
            self.operation(
                name,
                duration_ms,
                success=False,
                error_code=getattr(exc, "code", type(exc).__name__),
                **context,
            )
            raise
        duration_ms = (time.monotonic() - start) * 1000
        self.operation(name, duration_ms, success=True, **context)


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Set the correlation ID for the current context."""
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    """Get the current correlation ID, creating one if none is set."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


@contextmanager
def correlation_scope(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Bind a correlation id for the duration of the block."""
    cid = correlation_id or generate_correlation_id()
    token = correlation_id_var.set(cid)
    try:
        yield cid
    finally:
        correlation_id_var.reset(token)


def get_logger(name: str, layer: RegistryLayer) -> RegistryLogger:
    """Get a logger for a registry component."""
    return RegistryLogger(name, layer)


def configure_logging(config: "RegistryConfig", stream: Any = None) -> logging.Handler:
    """Install the configured handler on the ``custody`` root logger.

    Any handler previously installed by this function is replaced, so calling
    it repeatedly never duplicates output.
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    for existing in list(root.handlers):
        if isinstance(existing, (StructuredHandler, TextHandler)):
            root.removeHandler(existing)

    fmt = config.observability.log_format.get()
    handler: logging.Handler = StructuredHandler(stream) if fmt == "json" else TextHandler(stream)
    root.addHandler(handler)
    root.setLevel(getattr(logging, config.observability.log_level.get().upper()))
    return handler


__all__ = [
    "correlation_id_var",
    "RegistryLayer",
    "LogEvent",
    "StructuredHandler",
    "TextHandler",
    "RegistryLogger",
    "generate_correlation_id",
    "set_correlation_id",
    "get_correlation_id",
    "correlation_scope",
    "get_logger",
    "configure_logging",
]
