"""
llmrelay - Structured JSON Logging

Every component logs through get_logger(); keyword arguments become
structured fields and the active request's LogContext is merged in.

Features:
- JSON lines (LOG_FORMAT=json, default) or key=value text (LOG_FORMAT=text)
- Request context (request_id, backend, tier, trace ids) held in a ContextVar
- Field redaction by name (api_key, authorization, ...)
- Secret masking by value: backend API keys registered with register_secret()
  never appear in any rendered line, including exception text

Usage:
    from llmrelay.observability.logging import get_logger, LogContext

    logger = get_logger(__name__)

    with LogContext.scope(request_id="req_xyz", tier="low"):
        logger.info("Circuit opened", backend="groq", failures=5)

Output:
    {"timestamp": "2024-01-15T10:30:00.123456+00:00", "level": "INFO",
     "logger": "llmrelay.routing.circuit_breaker", "message": "Circuit opened",
     "request_id": "req_xyz", "tier": "low", "backend": "groq", "failures": 5}
"""

import os
import sys
import json
import logging
import threading
import time
from contextlib import contextmanager
from typing import Optional, Dict, Any, Iterator, Set, Union
from datetime import datetime, timezone
from dataclasses import dataclass, field, fields
from contextvars import ContextVar

_request_context: ContextVar[Optional["LogContext"]] = ContextVar("llmrelay_log_context", default=None)

# Attributes every LogRecord carries; anything else came in through `extra`
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "taskName"}

REDACTED = "[REDACTED]"


# ============================================================
# Secret registry
# ============================================================

_secrets: Set[str] = set()
_secrets_lock = threading.Lock()

# Shorter values would mask ordinary words
MIN_SECRET_LENGTH = 6


def register_secret(value: Optional[str]) -> None:
    """Mask `value` wherever it shows up in a formatted log line."""
    if value and len(value) >= MIN_SECRET_LENGTH:
        with _secrets_lock:
            _secrets.add(value)


def mask_secrets(text: str) -> str:
    with _secrets_lock:
        secrets = sorted(_secrets, key=len, reverse=True)
    for secret in secrets:
        if secret in text:
            text = text.replace(secret, REDACTED)
    return text


# ============================================================
# Request context
# ============================================================

@dataclass
class LogContext:
    """
    Per-request logging context.

    Stored in a ContextVar so concurrent requests never see each other's ids.
    """
    request_id: str = ""
    trace_id: str = ""
    span_id: str = ""
    backend: str = ""
    tier: str = ""
    endpoint: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def get_current(cls) -> Optional["LogContext"]:
        return _request_context.get()

    @classmethod
    def set_current(cls, ctx: "LogContext"):
        _request_context.set(ctx)

    @classmethod
    def clear(cls):
        _request_context.set(None)

    @classmethod
    @contextmanager
    def scope(cls, **values) -> Iterator["LogContext"]:
        """
        Bind a context for the duration of the block.

        Values are layered over the enclosing context, which is restored on
        exit.
        """
        parent = _request_context.get()
        ctx = cls(**{f.name: getattr(parent, f.name) for f in fields(cls) if f.name != "extra"}) if parent else cls()
        if parent:
            ctx.extra = dict(parent.extra)
        ctx.update(**values)
        token = _request_context.set(ctx)
        try:
            yield ctx
        finally:
            _request_context.reset(token)

    def update(self, **kwargs):
        for key, value in kwargs.items():
            if key != "extra" and hasattr(self, key):
                setattr(self, key, value)
            else:
                self.extra[key] = value

    def to_dict(self) -> Dict[str, Any]:
        result = {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != "extra" and getattr(self, f.name)
        }
        result.update(self.extra)
        return result


# ============================================================
# Formatters
# ============================================================

class JSONFormatter(logging.Formatter):
    """
    One JSON object per line.

    Context fields come first, then the record's structured fields, so a
    field passed at the call site wins over the context value of the same
    name.
    """

    SENSITIVE_FIELDS = {
        "password", "secret", "token", "api_key", "apikey",
        "authorization", "credential", "private_key",
    }

    # Token counters are numbers, not secrets
    NON_SENSITIVE_FIELDS = {"prompt_tokens", "completion_tokens", "total_tokens", "tokens"}

    def __init__(
        self,
        include_location: bool = False,
        redact_sensitive: bool = True,
    ):
        super().__init__()
        self.include_location = include_location
        self.redact_sensitive = redact_sensitive

    def collect(self, record: logging.LogRecord) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.include_location:
            data["location"] = f"{record.filename}:{record.lineno}"
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)

        ctx = LogContext.get_current()
        if ctx:
            data.update(ctx.to_dict())

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS:
                continue
            if self.redact_sensitive and self._is_sensitive(key):
                value = REDACTED
            data[key] = value
        return data

    def format(self, record: logging.LogRecord) -> str:
        return mask_secrets(json.dumps(self.collect(record), default=str, ensure_ascii=False))

    def _is_sensitive(self, field_name: str) -> bool:
        field_lower = field_name.lower()
        if field_lower in self.NON_SENSITIVE_FIELDS:
            return False
        return any(sensitive in field_lower for sensitive in self.SENSITIVE_FIELDS)


class KeyValueFormatter(JSONFormatter):
    """
    Human-readable variant for local runs:

        2024-01-15T10:30:00 WARNING llmrelay.routing.retry Retrying backend=groq attempt=2
    """

    HEAD = ("timestamp", "level", "logger", "message")

    def format(self, record: logging.LogRecord) -> str:
        data = self.collect(record)
        data["timestamp"] = data["timestamp"][:19]
        exception = data.pop("exception", None)

        line = " ".join(str(data.pop(key)) for key in self.HEAD)
        if data:
            line += " " + " ".join(f"{key}={value}" for key, value in data.items())
        if exception:
            line += "\n" + exception
        return mask_secrets(line)


# ============================================================
# Logger
# ============================================================

class StructuredLogger:
    """
    Thin wrapper over logging.Logger.

    Keyword arguments become record attributes:
        logger.warning("Retrying", backend="groq", attempt=2)
    """

    PASSTHROUGH = frozenset({"exc_info", "stack_info", "stacklevel"})

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(self, level: int, msg: str, *args, **kwargs):
        if not self._logger.isEnabledFor(level):
            return

        extra = dict(kwargs.pop("extra", None) or {})
        for key in [k for k in kwargs if k not in self.PASSTHROUGH]:
            extra[key] = kwargs.pop(key)

        self._logger.log(level, msg, *args, extra=extra, **kwargs)

    def log(self, level: int, msg: str, *args, **kwargs):
        self._log(level, msg, *args, **kwargs)

    def debug(self, msg: str, *args, **kwargs):
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs):
        kwargs["exc_info"] = True
        self._log(logging.ERROR, msg, *args, **kwargs)


_logging_configured = False


def setup_logging(
    level: Union[str, int] = "INFO",
    json_output: bool = True,
    include_location: bool = False,
    redact_sensitive: bool = True,
) -> None:
    """
    Install a single stdout handler on the root logger.

    Safe to call again; the previous handlers are replaced.

    Args:
        level: Log level name or number
        json_output: JSON lines when True, key=value text otherwise
        include_location: Add filename:lineno
        redact_sensitive: Replace values of sensitive-looking fields
    """
    global _logging_configured

    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    formatter_cls = JSONFormatter if json_output else KeyValueFormatter
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter_cls(include_location=include_location, redact_sensitive=redact_sensitive))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)

    # Request-level logs come from the relay itself
    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    _logging_configured = True


def get_logger(name: str) -> StructuredLogger:
    """Structured logger; configures logging from LOG_LEVEL/LOG_FORMAT on first use."""
    if not _logging_configured:
        setup_logging(
            level=os.getenv("LOG_LEVEL", "INFO"),
            json_output=os.getenv("LOG_FORMAT", "json").lower() == "json",
        )

    return StructuredLogger(logging.getLogger(name))


class TimedOperation:
    """
    Log the duration of a block.

        with TimedOperation("probe_round", logger) as timer:
            await monitor.run_probes_once(adapters)

    Emits "<operation> completed" (or "<operation> failed" at ERROR) with
    duration_ms; the timing is also kept on `timer.duration_ms`.
    """

    def __init__(
        self,
        operation: str,
        logger: Optional[StructuredLogger] = None,
        log_level: int = logging.DEBUG,
        extra: Optional[Dict[str, Any]] = None,
    ):
        self.operation = operation
        self.logger = logger or get_logger("llmrelay.timed_operation")
        self.log_level = log_level
        self.extra = extra or {}
        self.start_time: Optional[float] = None
        self.duration_ms: Optional[float] = None

    def __enter__(self) -> "TimedOperation":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.perf_counter() - self.start_time) * 1000
        values = {"operation": self.operation, "duration_ms": round(self.duration_ms, 2), **self.extra}

        if exc_type:
            self.logger.log(logging.ERROR, f"{self.operation} failed", error=str(exc_val), **values)
        else:
            self.logger.log(self.log_level, f"{self.operation} completed", **values)

    async def __aenter__(self) -> "TimedOperation":
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return self.__exit__(exc_type, exc_val, exc_tb)
