"""
Structured JSON session events (shared).

Used by the voice session client and the token server. Every event is one
JSON object on stdout and is also kept in the in-memory event store.
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .event_store import event_store


class Component(str, Enum):
    """Event producers."""

    VOICE_SESSION = "voice_session"
    TOKEN_SERVER = "token_server"


class Severity(str, Enum):
    """Event severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


DEFAULT_PII = {"contains_pii": False, "fields": [], "handling": "none"}


def pii_marker(*fields: str) -> Dict[str, Any]:
    """PII block for events carrying utterance text."""
    return {"contains_pii": True, "fields": list(fields), "handling": "none"}


class EventEmitter:
    """Emits structured JSON events."""

    def __init__(self, component: Component, stream=None):
        self.component = component
        self._stream = stream

    def emit(
        self,
        event_type: str,
        session_id: str,
        severity: Severity = Severity.INFO,
        correlation_id: Optional[str] = None,
        pii: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        """
        Emit one event.

        Args:
            event_type: Stable event type string (e.g. "session.state_changed")
            session_id: Opaque session identifier
            severity: Event severity level
            correlation_id: Optional correlation ID (defaults to session_id)
            pii: PII metadata dict with contains_pii, fields, handling
            **kwargs: Event-specific fields
        """
        event = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "session_id": session_id,
            "component": self.component.value,
            "event_type": event_type,
            "severity": severity.value,
            "correlation_id": correlation_id or session_id,
            "pii": pii or DEFAULT_PII,
        }
        event.update(kwargs)

        # Resolved per call so pytest's capsys sees the output
        stream = self._stream or sys.stdout
        stream.write(json.dumps(event, ensure_ascii=False, default=str))
        stream.write("\n")
        stream.flush()

        event_store.store(event)
        return event

    # --- Typed helpers ---

    def session_state_changed(
        self,
        session_id: str,
        from_state: str,
        to_state: str,
        cause: Optional[str] = None,
    ) -> None:
        extra: Dict[str, Any] = {}
        if cause:
            extra["cause"] = cause
        self.emit(
            "session.state_changed",
            session_id,
            severity=Severity.ERROR if to_state == "error" else Severity.INFO,
            from_state=from_state,
            to_state=to_state,
            **extra,
        )

    def transcript_admitted(
        self,
        session_id: str,
        speaker: str,
        text: str,
        timestamp: float,
    ) -> None:
        self.emit(
            "transcript.admitted",
            session_id,
            pii=pii_marker("text"),
            speaker=speaker,
            text=text,
            text_length=len(text),
            entry_ts=timestamp,
        )

    def frame_discarded(self, session_id: str, reason: str, frame_length: int) -> None:
        self.emit(
            "protocol.frame_discarded",
            session_id,
            severity=Severity.WARN,
            reason=reason,
            frame_length=frame_length,
        )

    def remote_error(
        self,
        session_id: str,
        message: str,
        code: Optional[str] = None,
    ) -> None:
        self.emit(
            "remote.error",
            session_id,
            severity=Severity.WARN,
            message=message,
            code=code,
        )
