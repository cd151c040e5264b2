"""
Voice session orchestrator.

One VoiceSession owns one conversation: the state machine, the transcript,
the transport, the local stream and the playback sink. Nothing else holds
references to those resources; mute toggles and teardown go through here.

Lifecycle:
    start()  idle -> connecting -> connected (or error / back to idle)
    events   connected <-> listening / speaking
    stop()   any -> idle
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from logging_setup import get_logger, Component
from .config import VoiceSessionConfig, get_config
from .credentials import Credential, CredentialBroker, SessionContext
from .errors import (
    MalformedEvent,
    MediaAccessDenied,
    NegotiationFailure,
    NegotiationTimeout,
    RemoteReportedError,
    SessionAlreadyActive,
    TextChatFailure,
    TransportLost,
    VoiceSessionError,
    user_message,
)
from .media import AudioConstraints, MediaCapture, PlaybackSink
from .observability import SessionObserver
from .protocol import (
    EventChannel,
    RealtimeEvent,
    RemoteAudioDelta,
    RemoteError,
    RemoteTranscriptDelta,
    RemoteTranscriptDone,
    SpeechStarted,
    SpeechStopped,
    UserTranscriptCompleted,
    build_session_update,
)
from .signaling import build_exchange
from .state import SessionState, SessionStateMachine, Trigger
from .text_channel import TextChatClient
from .transcript import Speaker, TranscriptAggregator, TranscriptEntry
from .transport import Transport, TransportListener, TransportNegotiator


StateCallback = Callable[[SessionState, SessionState, Optional[str]], None]


class _AttemptListener(TransportListener):
    """Routes transport callbacks to the session only while its attempt is current."""

    def __init__(self, session: "VoiceSession", generation: int):
        self.session = session
        self.generation = generation

    def _current(self) -> bool:
        return self.session._generation == self.generation

    def on_channel_open(self, transport: Transport) -> None:
        if self._current():
            self.session._on_channel_open(transport)

    def on_channel_message(self, transport: Transport, data: Any) -> None:
        if self._current():
            self.session._on_channel_message(data)

    def on_remote_track(self, transport: Transport, track: Any) -> None:
        if self._current():
            self.session._on_remote_track(track)

    def on_transport_lost(self, transport: Transport, error: TransportLost) -> None:
        if self._current():
            self.session._on_transport_lost(error)


class VoiceSession:
    """A single realtime voice conversation."""

    def __init__(
        self,
        context: SessionContext,
        *,
        config: Optional[VoiceSessionConfig] = None,
        broker: Optional[CredentialBroker] = None,
        media: Optional[MediaCapture] = None,
        negotiator: Optional[TransportNegotiator] = None,
        playback: Optional[PlaybackSink] = None,
        text_client: Optional[TextChatClient] = None,
        observer: Optional[SessionObserver] = None,
        session_id: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        on_state_change: Optional[StateCallback] = None,
        on_transcript: Optional[Callable[[TranscriptEntry], None]] = None,
        on_error: Optional[Callable[[VoiceSessionError], None]] = None,
    ):
        self.context = context
        self.config = config or get_config()
        self.session_id = session_id or f"vs_{uuid.uuid4().hex[:12]}"
        self.logger = get_logger(Component.VOICE_SESSION, session_id=self.session_id)

        cfg = self.config
        self._broker = broker or CredentialBroker(cfg.token_endpoint_url, timeout_seconds=cfg.credential_timeout_seconds)
        self._media = media or MediaCapture(
            cfg.input_device,
            cfg.input_format,
            AudioConstraints.from_config(cfg),
        )
        self._negotiator = negotiator or TransportNegotiator(
            build_exchange(cfg),
            ice_servers=cfg.ice_servers,
            channel_label=cfg.channel_label,
        )
        self._playback = playback or PlaybackSink(cfg.output_device, cfg.output_format)
        if text_client is None and cfg.text_chat_url:
            text_client = TextChatClient(cfg.text_chat_url, timeout_seconds=cfg.text_chat_timeout_seconds)
        self._text_client = text_client
        self._observer = observer or SessionObserver(self.session_id)

        self._on_state_change = on_state_change
        self._on_transcript = on_transcript
        self._on_error = on_error

        self._machine = SessionStateMachine(session_id=self.session_id)
        self._machine.on_change(self._state_changed)
        self._transcript = TranscriptAggregator(
            cfg.dedup_window_ms / 1000.0,
            clock=clock,
            on_admit=self._entry_admitted,
            session_id=self.session_id,
        )

        # Owned resources; each is swapped to None when released
        self._stream: Any = None
        self._transport: Optional[Transport] = None
        self._channel: Optional[EventChannel] = None
        self._credential: Optional[Credential] = None
        self._playback_task: Optional[asyncio.Task] = None
        self._release_task: Optional[asyncio.Task] = None

        self._attempt: Optional[asyncio.Future] = None
        self._generation = 0
        self._partials: Dict[str, List[str]] = defaultdict(list)
        self._input_muted = False
        self._output_muted = False
        self.last_remote_error: Optional[RemoteReportedError] = None

    # --- Read-only views ---

    @property
    def state(self) -> SessionState:
        return self._machine.state

    @property
    def error_cause(self) -> Optional[str]:
        return self._machine.error_cause

    @property
    def transcript(self) -> List[TranscriptEntry]:
        return self._transcript.entries

    @property
    def transport(self) -> Optional[Transport]:
        return self._transport

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    @property
    def input_muted(self) -> bool:
        return self._input_muted

    @property
    def output_muted(self) -> bool:
        return self._output_muted

    # --- Lifecycle ---

    async def start(self) -> None:
        """
        Bring the session from idle to connected.

        Raises SessionAlreadyActive unless idle. MediaAccessDenied leaves the
        session idle; every other failure leaves it in error. If stop() is
        called while this is in flight, start() returns without raising.
        """
        if self.state != SessionState.IDLE:
            raise SessionAlreadyActive(f"session is {self.state.value}")

        self._generation += 1
        generation = self._generation
        self._machine.fire(Trigger.START)
        start_ts = time.time()
        self.logger.info(
            "Starting voice session",
            client_id=self.context.client_id,
            session_kind=self.context.session_kind.value,
        )

        attempt = asyncio.ensure_future(self._establish(generation))
        self._attempt = attempt
        try:
            await asyncio.wait_for(attempt, self.config.connect_timeout_seconds)
        except asyncio.TimeoutError as e:
            error = NegotiationTimeout(f"not connected after {self.config.connect_timeout_seconds}s")
            await self._fail(generation, error)
            raise error from e
        except MediaAccessDenied:
            if generation == self._generation:
                await self._teardown()
                self._machine.fire(Trigger.STOP)
            raise
        except VoiceSessionError as e:
            await self._fail(generation, e)
            raise
        except asyncio.CancelledError:
            if generation != self._generation:
                self.logger.info("Session start abandoned by stop")
                return
            await self._teardown()
            self._machine.fire(Trigger.STOP)
            raise
        except Exception as e:
            error = NegotiationFailure(str(e) or type(e).__name__, detail=type(e).__name__)
            await self._fail(generation, error)
            raise error from e
        finally:
            if self._attempt is attempt:
                self._attempt = None

        if generation != self._generation or self.state != SessionState.CONNECTING:
            return

        latency_ms = int((time.time() - start_ts) * 1000)
        self._machine.fire(Trigger.CONNECTED)
        self._observer.connected(latency_ms)
        self.logger.info("Voice session connected", latency_ms=latency_ms)

    async def _establish(self, generation: int) -> None:
        stream = await self._media.acquire()
        self._stream = stream
        stream.set_enabled(not self._input_muted)

        credential = await self._broker.request_credential(self.context)
        self._credential = credential
        self._channel = EventChannel(
            build_session_update(credential, self.config),
            self._dispatch,
            on_malformed=self._frame_discarded,
            session_id=self.session_id,
        )

        self._transport = await self._negotiator.establish(
            credential,
            stream,
            _AttemptListener(self, generation),
        )

    async def _fail(self, generation: int, error: VoiceSessionError) -> None:
        if generation != self._generation:
            return
        self.logger.warning(
            "Voice session failed",
            error=str(error),
            error_category=error.category,
            detail=error.detail,
        )
        await self._teardown()
        self._machine.fire(Trigger.FAILED, cause=user_message(error))

    async def stop(self) -> None:
        """
        End the session from any state. Idempotent.

        An in-flight start is cancelled first; its late callbacks are ignored.
        """
        self._generation += 1
        attempt, self._attempt = self._attempt, None
        if attempt is not None and not attempt.done():
            attempt.cancel()
            await asyncio.wait([attempt])

        release, self._release_task = self._release_task, None
        if release is not None and not release.done():
            await asyncio.wait([release])

        await self._teardown()
        self._machine.fire(Trigger.STOP)

    async def _teardown(self) -> None:
        """Release owned resources in order: channel, transport, local tracks, playback."""
        transport, self._transport = self._transport, None
        self._channel = None
        if transport is not None:
            await transport.close()

        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()

        task, self._playback_task = self._playback_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait([task])
        await self._playback.release()

        self._partials.clear()
        self._credential = None

    # --- Mute ---

    def set_input_muted(self, muted: bool) -> None:
        self._input_muted = muted
        if self._stream is not None:
            self._stream.set_enabled(not muted)
        self.logger.info("Input mute changed", muted=muted)

    def set_output_muted(self, muted: bool) -> None:
        self._output_muted = muted
        self._playback.set_muted(muted)
        self.logger.info("Output mute changed", muted=muted)

    # --- Transport callbacks ---

    def _on_channel_open(self, transport: Transport) -> None:
        if self._channel is not None:
            self._channel.handle_open(transport.send_text)

    def _on_channel_message(self, data: Any) -> None:
        if self._channel is not None:
            self._channel.handle_message(data)

    def _on_remote_track(self, track: Any) -> None:
        self._playback.set_muted(self._output_muted)
        self._playback_task = asyncio.ensure_future(self._attach_playback(track))

    async def _attach_playback(self, track: Any) -> None:
        try:
            await self._playback.attach(track)
        except Exception as e:
            # The conversation continues without local playback
            self.logger.exception("Remote playback could not start", error_type=type(e).__name__)

    def _on_transport_lost(self, error: TransportLost) -> None:
        if not self._machine.is_active:
            return
        self._observer.transport_lost(str(error))
        self._machine.fire(Trigger.LOST, cause=user_message(error))
        self._release_task = asyncio.ensure_future(self._release_after_loss())
        if self._on_error is not None:
            self._on_error(error)

    async def _release_after_loss(self) -> None:
        try:
            await self._teardown()
        except Exception as e:
            self.logger.exception("Releasing resources after transport loss failed", error_type=type(e).__name__)

    def _frame_discarded(self, error: MalformedEvent, frame_length: int) -> None:
        self._observer.frame_discarded(str(error), frame_length)

    # --- Protocol dispatch ---

    def _dispatch(self, event: RealtimeEvent) -> None:
        if not self._machine.is_active:
            return

        match event:
            case SpeechStarted():
                self._machine.fire(Trigger.SPEECH_STARTED)
            case SpeechStopped():
                self._machine.fire(Trigger.SPEECH_STOPPED)
            case UserTranscriptCompleted(transcript=text):
                self._transcript.admit(text, Speaker.USER)
                self._machine.fire(Trigger.USER_TRANSCRIPT)
            case RemoteAudioDelta():
                self._machine.fire(Trigger.REMOTE_AUDIO)
            case RemoteTranscriptDelta(delta=delta, response_id=response_id):
                if delta:
                    self._partials[response_id].append(delta)
            case RemoteTranscriptDone(text=text, response_id=response_id):
                buffered = "".join(self._partials.pop(response_id, []))
                self._transcript.admit(text or buffered, Speaker.REMOTE)
                self._machine.fire(Trigger.REMOTE_TRANSCRIPT_DONE)
            case RemoteError(message=message, code=code):
                error = RemoteReportedError(message, code=code)
                self.last_remote_error = error
                self.logger.warning("Remote endpoint reported an error", error=message, code=code)
                self._observer.remote_error(message, code=code)
                if self._on_error is not None:
                    self._on_error(error)
            case _:
                self.logger.debug("Ignoring unhandled event type", event_type=event.type)

    # --- Transcript ---

    def _entry_admitted(self, entry: TranscriptEntry) -> None:
        self._observer.transcript_admitted(entry)
        if self._on_transcript is not None:
            self._on_transcript(entry)

    def admit_confirmation(self, text: str, speaker: Speaker) -> Optional[TranscriptEntry]:
        """Admit an utterance confirmed through another channel (deduplicated)."""
        return self._transcript.admit(text, speaker)

    async def send_text(self, message: str) -> Optional[TranscriptEntry]:
        """
        Out-of-band text turn: admit the typed message, post it with the
        conversation so far, and admit the reply. Returns the reply entry.
        """
        if self._text_client is None:
            raise TextChatFailure("no text chat endpoint configured")
        message = (message or "").strip()
        if not message:
            return None

        history = self._transcript.history()
        self._transcript.admit(message, Speaker.USER)
        reply = await self._text_client.send(message, self.session_id, history)
        return self._transcript.admit(reply, Speaker.REMOTE)

    # --- State listener ---

    def _state_changed(self, old: SessionState, new: SessionState, cause: Optional[str]) -> None:
        self._observer.state_changed(old, new, cause)
        if self._on_state_change is not None:
            self._on_state_change(old, new, cause)
