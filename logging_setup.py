"""
Shared logging infrastructure for the realtime voice client and the token server.

Features:
- JSON-formatted structured logs (one object per line)
- Configurable log levels
- Session ID correlation across all logs
- Component tagging
- PII-aware logging helpers (transcript text is only logged through these)
"""

import json
import logging
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Component(str, Enum):
    """System components for log tagging."""
    VOICE_SESSION = "voice_session"
    CREDENTIAL_BROKER = "credential_broker"
    MEDIA_CAPTURE = "media_capture"
    TRANSPORT = "transport"
    EVENT_CHANNEL = "event_channel"
    TRANSCRIPT = "transcript"
    TEXT_CHANNEL = "text_channel"
    TOKEN_SERVER = "token_server"


# LogRecord attributes that are not user supplied fields
_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "exc_info", "exc_text", "stack_info",
    "taskName", "component", "session_id", "message",
})


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Each record becomes one JSON object with:
    - ISO8601 timestamp
    - severity
    - component
    - session_id (if present)
    - message and any extra keyword fields
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "severity": record.levelname.lower(),
            "component": getattr(record, "component", record.name),
            "message": record.getMessage(),
        }

        if hasattr(record, "session_id"):
            log_data["session_id"] = record.session_id

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class StructuredLogger:
    """
    Wrapper around Python's logging with structured keyword fields.

    Usage:
        logger = StructuredLogger(Component.TRANSPORT, session_id="sess_123")
        logger.info("Offer applied", sdp_length=1234)
        logger.info_pii("Transcript admitted", text="Bonjour")
    """

    def __init__(
        self,
        component: str | Component,
        session_id: Optional[str] = None,
        logger_name: Optional[str] = None
    ):
        self.component = component.value if isinstance(component, Component) else component
        self.session_id = session_id
        self.logger = logging.getLogger(logger_name or self.component)

    def _log(
        self,
        level: int,
        message: str,
        pii: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        exc_info = kwargs.pop("exc_info", None)
        stack_info = kwargs.pop("stack_info", None)
        stacklevel = kwargs.pop("stacklevel", 1)

        extra = {
            "component": self.component,
            **kwargs
        }

        # An explicit session_id kwarg wins over the bound one
        if self.session_id and "session_id" not in extra:
            extra["session_id"] = self.session_id

        if pii:
            extra["pii"] = pii

        self.logger.log(
            level,
            message,
            exc_info=exc_info,
            stack_info=stack_info,
            stacklevel=stacklevel,
            extra=extra
        )

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log(logging.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._log(logging.CRITICAL, message, **kwargs)

    def exception(self, message: str, **kwargs):
        """Log an error message with exception info (mirrors logging.Logger.exception)."""
        kwargs.setdefault("exc_info", True)
        self._log(logging.ERROR, message, **kwargs)

    def debug_pii(self, message: str, **pii_fields):
        """
        Log debug with PII fields explicitly marked.

        Example:
            logger.debug_pii("User transcript", text="J'ai mal au thorax")
        """
        self._log(logging.DEBUG, message, pii=pii_fields)

    def info_pii(self, message: str, **pii_fields):
        """Log info with PII fields explicitly marked."""
        self._log(logging.INFO, message, pii=pii_fields)

    def with_session(self, session_id: str) -> "StructuredLogger":
        """Create a new logger instance bound to a session ID."""
        return StructuredLogger(
            self.component,
            session_id=session_id,
            logger_name=self.logger.name
        )


def setup_logging(
    level: str = "INFO",
    use_json: bool = True,
    include_timestamp: bool = True
) -> None:
    """
    Configure the root logger. Call once at process startup.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: Use JSON formatter (True) or plain text (False)
        include_timestamp: Include timestamps in plain text logs
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # stderr keeps stdout free for the structured event stream
    console_handler = logging.StreamHandler(sys.stderr)

    if use_json:
        formatter = JSONFormatter()
    else:
        format_str = "%(levelname)s - %(name)s - %(message)s"
        if include_timestamp:
            format_str = "%(asctime)s - " + format_str
        formatter = logging.Formatter(format_str)

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(log_level)


def get_logger(
    component: str | Component,
    session_id: Optional[str] = None
) -> StructuredLogger:
    """
    Get a structured logger for a component.

    Example:
        logger = get_logger(Component.VOICE_SESSION, session_id="sess_123")
        logger.info("Session started")
    """
    return StructuredLogger(component, session_id=session_id)
