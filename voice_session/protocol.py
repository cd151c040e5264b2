"""
Event channel protocol.

Messages on the control channel are UTF-8 JSON objects with a `type`
discriminator. Incoming messages are classified into the closed set of event
variants below; anything else becomes an UnknownEvent and is ignored by the
session, so newer server event types never break an older client.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Union

from logging_setup import get_logger, Component
from .config import VoiceSessionConfig
from .credentials import Credential
from .errors import MalformedEvent


SESSION_UPDATE = "session.update"

SPEECH_STARTED = "input_audio_buffer.speech_started"
SPEECH_STOPPED = "input_audio_buffer.speech_stopped"
USER_TRANSCRIPT_COMPLETED = "conversation.item.input_audio_transcription.completed"
ERROR = "error"

REMOTE_AUDIO_DELTA_TYPES = frozenset({
    "response.audio.delta",
    "response.output_audio.delta",
})
REMOTE_TRANSCRIPT_DELTA_TYPES = frozenset({
    "response.audio_transcript.delta",
    "response.output_audio_transcript.delta",
    "response.text.delta",
    "response.output_text.delta",
})
REMOTE_TRANSCRIPT_DONE_TYPES = frozenset({
    "response.audio_transcript.done",
    "response.output_audio_transcript.done",
    "response.text.done",
    "response.output_text.done",
})


@dataclass(frozen=True)
class SpeechStarted:
    type: str = SPEECH_STARTED
    payload: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class SpeechStopped:
    type: str = SPEECH_STOPPED
    payload: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class UserTranscriptCompleted:
    transcript: str
    type: str = USER_TRANSCRIPT_COMPLETED
    payload: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class RemoteAudioDelta:
    """Liveness signal only: the audio itself arrives on the media track."""

    type: str = "response.audio.delta"
    payload: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class RemoteTranscriptDelta:
    delta: str
    response_id: str = ""
    type: str = "response.audio_transcript.delta"
    payload: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class RemoteTranscriptDone:
    text: str
    response_id: str = ""
    type: str = "response.audio_transcript.done"
    payload: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class RemoteError:
    message: str
    code: Optional[str] = None
    type: str = ERROR
    payload: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class UnknownEvent:
    type: str
    payload: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)


RealtimeEvent = Union[
    SpeechStarted,
    SpeechStopped,
    UserTranscriptCompleted,
    RemoteAudioDelta,
    RemoteTranscriptDelta,
    RemoteTranscriptDone,
    RemoteError,
    UnknownEvent,
]


def _text(payload: Mapping[str, Any], *keys: str) -> str:
    """First non-empty string among payload keys."""
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def classify(payload: Mapping[str, Any]) -> RealtimeEvent:
    """Map a decoded envelope onto its taxonomy variant."""
    event_type = payload["type"]

    if event_type == SPEECH_STARTED:
        return SpeechStarted(payload=payload)
    if event_type == SPEECH_STOPPED:
        return SpeechStopped(payload=payload)
    if event_type == USER_TRANSCRIPT_COMPLETED:
        return UserTranscriptCompleted(transcript=_text(payload, "transcript"), payload=payload)
    if event_type in REMOTE_AUDIO_DELTA_TYPES:
        return RemoteAudioDelta(type=event_type, payload=payload)
    if event_type in REMOTE_TRANSCRIPT_DELTA_TYPES:
        return RemoteTranscriptDelta(
            delta=_text(payload, "delta"),
            response_id=_text(payload, "response_id"),
            type=event_type,
            payload=payload,
        )
    if event_type in REMOTE_TRANSCRIPT_DONE_TYPES:
        return RemoteTranscriptDone(
            text=_text(payload, "transcript", "text"),
            response_id=_text(payload, "response_id"),
            type=event_type,
            payload=payload,
        )
    if event_type == ERROR:
        error = payload.get("error")
        if isinstance(error, dict):
            message = _text(error, "message") or "Unknown error"
            code = error.get("code")
        else:
            message = _text(payload, "message") or "Unknown error"
            code = payload.get("code")
        return RemoteError(message=message, code=str(code) if code is not None else None, payload=payload)
    return UnknownEvent(type=event_type, payload=payload)


def parse_event(data: Union[str, bytes]) -> RealtimeEvent:
    """
    Decode one control channel frame.

    Raises MalformedEvent for invalid UTF-8/JSON (including nesting too deep
    to decode), non-object frames, or a missing/non-string `type`.
    """
    try:
        if isinstance(data, (bytes, bytearray)):
            data = bytes(data).decode("utf-8")
        payload = json.loads(data)
    except (UnicodeDecodeError, ValueError, RecursionError) as e:
        raise MalformedEvent("frame is not valid JSON", detail=str(e)) from e

    if not isinstance(payload, dict):
        raise MalformedEvent("frame is not a JSON object")
    if not isinstance(payload.get("type"), str) or not payload["type"]:
        raise MalformedEvent("frame has no type")
    return classify(payload)


def build_session_update(credential: Credential, config: VoiceSessionConfig) -> Dict[str, Any]:
    """The single session configuration message pushed when the channel opens."""
    audio_format = credential.audio_format.encoding
    return {
        "type": SESSION_UPDATE,
        "session": {
            "instructions": credential.instructions,
            "voice": config.voice,
            "input_audio_format": audio_format,
            "output_audio_format": audio_format,
            "input_audio_transcription": {
                "model": config.transcription_model,
            },
            "turn_detection": {
                "type": "server_vad",
                "threshold": config.vad_threshold,
                "silence_duration_ms": config.vad_silence_duration_ms,
            },
        },
    }


def encode(message: Mapping[str, Any]) -> str:
    return json.dumps(message, ensure_ascii=False)


class EventChannel:
    """
    Protocol layer over one control channel.

    - On open, sends the session update exactly once.
    - Each incoming frame is parsed and handed to `on_event`, one at a time.
    - Malformed frames are logged, reported to `on_malformed` and dropped;
      the channel stays open.
    """

    def __init__(
        self,
        session_update: Mapping[str, Any],
        on_event: Callable[[RealtimeEvent], None],
        *,
        on_malformed: Optional[Callable[[MalformedEvent, int], None]] = None,
        session_id: Optional[str] = None,
    ):
        self._session_update = session_update
        self._on_event = on_event
        self._on_malformed = on_malformed
        self._send: Optional[Callable[[str], None]] = None
        self.configured = False
        self.logger = get_logger(Component.EVENT_CHANNEL, session_id=session_id)

    def handle_open(self, send: Callable[[str], None]) -> None:
        self._send = send
        if self.configured:
            return
        send(encode(self._session_update))
        self.configured = True
        self.logger.info("Session update sent", event_type=self._session_update.get("type"))

    def handle_message(self, data: Union[str, bytes]) -> None:
        try:
            event = parse_event(data)
        except MalformedEvent as e:
            frame_length = len(data) if data is not None else 0
            self.logger.warning(
                "Discarding malformed control frame",
                error=str(e),
                detail=e.detail,
                frame_length=frame_length,
            )
            if self._on_malformed is not None:
                self._on_malformed(e, frame_length)
            return

        self.logger.debug("Control event received", event_type=event.type)
        self._on_event(event)

    def send(self, message: Mapping[str, Any]) -> None:
        """Send a client event on the open channel."""
        if self._send is None:
            raise RuntimeError("control channel is not open")
        self._send(encode(message))
