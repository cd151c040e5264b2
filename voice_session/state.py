"""
Session state machine.

Pure transition table; no I/O. The voice session feeds it triggers derived
from negotiation outcomes and control channel events.
"""

from __future__ import annotations

from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from logging_setup import get_logger, Component


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    LISTENING = "listening"
    SPEAKING = "speaking"
    ERROR = "error"


class Trigger(str, Enum):
    START = "start"
    CONNECTED = "connected"
    FAILED = "failed"
    LOST = "lost"
    SPEECH_STARTED = "speech_started"
    SPEECH_STOPPED = "speech_stopped"
    USER_TRANSCRIPT = "user_transcript"
    REMOTE_AUDIO = "remote_audio"
    REMOTE_TRANSCRIPT_DONE = "remote_transcript_done"
    STOP = "stop"


S = SessionState
T = Trigger

TRANSITIONS: Dict[Tuple[SessionState, Trigger], SessionState] = {
    (S.IDLE, T.START): S.CONNECTING,
    (S.CONNECTING, T.CONNECTED): S.CONNECTED,
    # Negotiation failure / transport loss
    (S.CONNECTING, T.FAILED): S.ERROR,
    (S.CONNECTED, T.FAILED): S.ERROR,
    (S.LISTENING, T.FAILED): S.ERROR,
    (S.SPEAKING, T.FAILED): S.ERROR,
    (S.CONNECTING, T.LOST): S.ERROR,
    (S.CONNECTED, T.LOST): S.ERROR,
    (S.LISTENING, T.LOST): S.ERROR,
    (S.SPEAKING, T.LOST): S.ERROR,
    # Turn taking
    (S.CONNECTED, T.SPEECH_STARTED): S.LISTENING,
    (S.SPEAKING, T.SPEECH_STARTED): S.LISTENING,
    (S.CONNECTED, T.USER_TRANSCRIPT): S.LISTENING,
    (S.LISTENING, T.SPEECH_STOPPED): S.CONNECTED,
    (S.CONNECTED, T.REMOTE_AUDIO): S.SPEAKING,
    (S.LISTENING, T.REMOTE_AUDIO): S.SPEAKING,
    (S.CONNECTED, T.REMOTE_TRANSCRIPT_DONE): S.LISTENING,
    (S.SPEAKING, T.REMOTE_TRANSCRIPT_DONE): S.LISTENING,
}

ACTIVE_STATES = frozenset({S.CONNECTING, S.CONNECTED, S.LISTENING, S.SPEAKING})

StateListener = Callable[[SessionState, SessionState, Optional[str]], None]


def next_state(state: SessionState, trigger: Trigger) -> Optional[SessionState]:
    """Target state for (state, trigger), or None when the pair is not a transition."""
    if trigger == T.STOP:
        return S.IDLE
    return TRANSITIONS.get((state, trigger))


class SessionStateMachine:
    """
    Current state plus change listeners.

    `error` is terminal until STOP. STOP from any state lands in `idle`.
    """

    def __init__(self, session_id: Optional[str] = None):
        self._state = S.IDLE
        self.error_cause: Optional[str] = None
        self._listeners: List[StateListener] = []
        self.logger = get_logger(Component.VOICE_SESSION, session_id=session_id)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state in ACTIVE_STATES

    def on_change(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def fire(self, trigger: Trigger, cause: Optional[str] = None) -> bool:
        """Apply a trigger. Returns False (and changes nothing) when it does not apply."""
        target = next_state(self._state, trigger)
        if target is None:
            self.logger.debug("Ignoring trigger", state=self._state.value, trigger=trigger.value)
            return False
        if target == self._state:
            return False

        previous = self._state
        self._state = target
        if target == S.ERROR:
            self.error_cause = cause
        elif target == S.IDLE:
            self.error_cause = None

        self.logger.info(
            "Session state changed",
            from_state=previous.value,
            to_state=target.value,
            trigger=trigger.value,
        )
        for listener in list(self._listeners):
            listener(previous, target, cause)
        return True
