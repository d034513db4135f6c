"""
Pangu Observability

Structured logging with correlation ids and operation timing.

    ┌─────────────────────────────────────────────────────────┐
    │                    Application Code                      │
    │  logger.info("msg", txid=x)   @timed_operation(...)      │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                      PanguLogger                         │
    │  layer tagging, correlation ids, structured context     │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │          StructuredHandler (JSON) │ text Formatter       │
    └─────────────────────────────────────────────────────────┘

Correlation ids are held in a ContextVar, so each asyncio task that sets
one keeps it across its own suspension points.

Copyright (c) 2026 Pangu. All rights reserved.
"""

from __future__ import annotations

import contextvars
import functools
import inspect
import json
import logging
import sys
import time
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

BASE_LOGGER = "pangu"

# Context variable for request-scoped data
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


class PanguLayer(Enum):
    """Wallet core layers for categorization."""
    SERIALIZER = "serializer"
    SIGNING = "signing"
    SELECTION = "selection"
    ASSEMBLY = "assembly"
    RESERVATION = "reservation"
    WALLET = "wallet"
    SYNC = "sync"
    TRANSPORT = "transport"
    REQUESTS = "requests"
    CONFIG = "config"
    CLI = "cli"


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


class StructuredHandler(logging.Handler):
    """Logging handler that outputs structured JSON."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
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
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            self.stream.write(event.to_json() + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class TextFormatter(logging.Formatter):
    """Single-line text output carrying the structured context."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = getattr(record, "context", None)
        if context:
            line += " " + " ".join(f"{k}={v}" for k, v in context.items())
        cid = correlation_id_var.get()
        if cid:
            line += f" correlation_id={cid}"
        return line


def _ensure_base_handler() -> logging.Logger:
    base = logging.getLogger(BASE_LOGGER)
    if not base.handlers:
        base.addHandler(StructuredHandler())
        base.setLevel(logging.INFO)
    return base


def configure_logging(level: str = "info", fmt: str = "json", stream: Any = None) -> logging.Logger:
    """(Re)install the handler on the pangu logger tree."""
    base = logging.getLogger(BASE_LOGGER)
    for handler in list(base.handlers):
        base.removeHandler(handler)
    if fmt == "text":
        handler: logging.Handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(TextFormatter())
    else:
        handler = StructuredHandler(stream)
    base.addHandler(handler)
    base.setLevel(getattr(logging, level.upper()))
    return base


def configure_from(config: Any) -> logging.Logger:
    """Apply the observability section of a PanguConfig."""
    obs = config.observability
    return configure_logging(obs.log_level.get(), obs.log_format.get())


class PanguLogger:
    """
    Structured logger for wallet core components.

    Automatically includes correlation ids and layer information
    in all log events.
    """

    def __init__(self, name: str, layer: PanguLayer):
        self.name = name
        self.layer = layer
        _ensure_base_handler()
        self._logger = logging.getLogger(f"{BASE_LOGGER}.{layer.value}.{name}")

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

    def critical(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.CRITICAL, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.INFO if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=duration_ms,
            **context,
        )


def generate_correlation_id(prefix: str = "corr") -> str:
    """Generate a new correlation ID."""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Set the correlation ID for the current context."""
    return correlation_id_var.set(correlation_id)


def reset_correlation_id(token: contextvars.Token) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str:
    """Get the current correlation ID, creating one if unset."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


def get_logger(name: str, layer: PanguLayer) -> PanguLogger:
    """Get a logger for a wallet core component."""
    return PanguLogger(name, layer)


T = TypeVar("T")


def timed_operation(
    logger: PanguLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations, sync or async."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                start = time.monotonic()
                success = True
                try:
                    return await func(*args, **kwargs)
                except BaseException:
                    success = False
                    raise
                finally:
                    duration_ms = (time.monotonic() - start) * 1000
                    logger.operation(operation_name, duration_ms, success)
            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(func)
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
