"""
Voice session event emission.

Thin wrapper over the shared EventEmitter, bound to one session id.
"""

from typing import Optional

from observability.events import Component, EventEmitter, Severity

from .state import SessionState
from .transcript import TranscriptEntry


class SessionObserver:
    """Emits structured events for one session."""

    def __init__(self, session_id: str, emitter: Optional[EventEmitter] = None):
        self.session_id = session_id
        self.emitter = emitter or EventEmitter(Component.VOICE_SESSION)

    def state_changed(self, old: SessionState, new: SessionState, cause: Optional[str] = None) -> None:
        self.emitter.session_state_changed(self.session_id, old.value, new.value, cause=cause)

    def connected(self, latency_ms: int) -> None:
        self.emitter.emit("session.connected", self.session_id, latency_ms=latency_ms)

    def transcript_admitted(self, entry: TranscriptEntry) -> None:
        self.emitter.transcript_admitted(self.session_id, entry.speaker.value, entry.text, entry.timestamp)

    def frame_discarded(self, reason: str, frame_length: int) -> None:
        self.emitter.frame_discarded(self.session_id, reason, frame_length)

    def remote_error(self, message: str, code: Optional[str] = None) -> None:
        self.emitter.remote_error(self.session_id, message, code=code)

    def transport_lost(self, reason: str) -> None:
        self.emitter.emit("transport.lost", self.session_id, severity=Severity.ERROR, reason=reason)
