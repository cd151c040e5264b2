"""
In-process fakes for the media, credential and peer connection collaborators.

The fake peer connection mimics the aiortc surface the negotiator uses:
pyee-style `on(event, handler)`, createDataChannel/addTrack, offer/answer and
`connectionState` changes scheduled on the running loop.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from aiortc import RTCSessionDescription

from voice_session.config import VoiceSessionConfig
from voice_session.credentials import Credential, SessionContext, SessionKind
from voice_session.errors import MediaAccessDenied
from voice_session.media import LocalAudioStream, PlaybackSink
from voice_session.session import VoiceSession
from voice_session.signaling import SdpExchange
from voice_session.transport import TransportNegotiator


class _Emitter:
    def __init__(self):
        self._handlers: Dict[str, Any] = {}

    def on(self, event, handler):
        self._handlers[event] = handler
        return handler

    def emit(self, event, *args):
        handler = self._handlers.get(event)
        if handler is not None:
            handler(*args)


class FakeDataChannel(_Emitter):
    def __init__(self, label: str, ordered: bool = True):
        super().__init__()
        self.label = label
        self.ordered = ordered
        self.readyState = "connecting"
        self.sent: List[str] = []
        self.close_calls = 0

    def open(self):
        self.readyState = "open"
        self.emit("open")

    def receive(self, data):
        self.emit("message", data)

    def send(self, data):
        self.sent.append(data)

    def close(self):
        self.close_calls += 1
        self.readyState = "closed"


class FakePeerConnection(_Emitter):
    """outcome: "connect", "fail" or "hang" once the answer is applied."""

    def __init__(self, ice_servers, outcome: str = "connect"):
        super().__init__()
        self.ice_servers = tuple(ice_servers)
        self.outcome = outcome
        self.connectionState = "new"
        self.channels: List[FakeDataChannel] = []
        self.tracks: List[Any] = []
        self.localDescription = None
        self.remoteDescription = None
        self.close_calls = 0

    def createDataChannel(self, label, ordered=True):
        channel = FakeDataChannel(label, ordered=ordered)
        self.channels.append(channel)
        return channel

    def addTrack(self, track):
        self.tracks.append(track)

    async def createOffer(self):
        return RTCSessionDescription(sdp="v=0\r\no=- offer\r\nm=audio 9 UDP/TLS/RTP/SAVPF 111\r\n", type="offer")

    async def setLocalDescription(self, description):
        self.localDescription = description

    async def setRemoteDescription(self, description):
        self.remoteDescription = description
        loop = asyncio.get_running_loop()
        if self.outcome == "connect":
            loop.call_soon(self.set_state, "connected")
        elif self.outcome == "fail":
            loop.call_soon(self.set_state, "failed")

    def set_state(self, state: str):
        self.connectionState = state
        self.emit("connectionstatechange")

    def add_remote_track(self, track):
        self.emit("track", track)

    @property
    def channel(self) -> FakeDataChannel:
        return self.channels[0]

    async def close(self):
        self.close_calls += 1
        self.connectionState = "closed"


class PeerConnectionFactory:
    def __init__(self, outcome: str = "connect"):
        self.outcome = outcome
        self.created: List[FakePeerConnection] = []

    def __call__(self, ice_servers):
        pc = FakePeerConnection(ice_servers, outcome=self.outcome)
        self.created.append(pc)
        return pc

    @property
    def last(self) -> FakePeerConnection:
        return self.created[-1]


class FakeExchange(SdpExchange):
    def __init__(self, answer: str = "v=0\r\no=- answer\r\n", error: Optional[Exception] = None):
        self.answer = answer
        self.error = error
        self.offers: List[str] = []

    async def exchange(self, offer_sdp, credential):
        self.offers.append(offer_sdp)
        if self.error is not None:
            raise self.error
        return self.answer


class FakeTrack:
    kind = "audio"

    def __init__(self):
        self.enabled = True
        self.stop_calls = 0

    def stop(self):
        self.stop_calls += 1


class FakeMedia:
    def __init__(self, available: bool = True):
        self.available = available
        self.acquired: List[LocalAudioStream] = []

    async def acquire(self):
        if not self.available:
            raise MediaAccessDenied("no input device")
        stream = LocalAudioStream([FakeTrack()])
        self.acquired.append(stream)
        return stream


class FakeBroker:
    def __init__(self, credential: Optional[Credential] = None, error: Optional[Exception] = None, delay: float = 0):
        self.credential = credential or make_credential()
        self.error = error
        self.delay = delay
        self.contexts: List[SessionContext] = []

    async def request_credential(self, context):
        self.contexts.append(context)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.credential


class FakeRecorder:
    def __init__(self):
        self.tracks = []
        self.start_calls = 0
        self.stop_calls = 0

    def addTrack(self, track):
        self.tracks.append(track)

    async def start(self):
        self.start_calls += 1

    async def stop(self):
        self.stop_calls += 1


def make_credential(expires_in: float = 3600, instructions: str = "Vous êtes un patient virtuel.") -> Credential:
    return Credential(
        secret="ek_test_secret",
        instructions=instructions,
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        session_kind=SessionKind.ECOS_SIMULATION,
    )


class Harness:
    """A VoiceSession wired to fakes, with handles on every collaborator."""

    def __init__(
        self,
        *,
        outcome: str = "connect",
        media_available: bool = True,
        broker: Optional[FakeBroker] = None,
        exchange: Optional[FakeExchange] = None,
        connect_timeout_seconds: int = 2,
        text_client: Any = None,
    ):
        self.config = VoiceSessionConfig(connect_timeout_seconds=connect_timeout_seconds)
        self.pcs = PeerConnectionFactory(outcome)
        self.exchange = exchange or FakeExchange()
        self.media = FakeMedia(available=media_available)
        self.broker = broker or FakeBroker()
        self.recorders: List[FakeRecorder] = []
        self.playback = PlaybackSink(recorder_factory=self._new_recorder)
        self.states: List[tuple] = []
        self.errors: List[Exception] = []
        self.session = VoiceSession(
            SessionContext(client_id="student-1", scenario_id="12", session_kind=SessionKind.ECOS_SIMULATION),
            config=self.config,
            broker=self.broker,
            media=self.media,
            negotiator=TransportNegotiator(
                self.exchange,
                ice_servers=self.config.ice_servers,
                channel_label=self.config.channel_label,
                peer_connection_factory=self.pcs,
            ),
            playback=self.playback,
            text_client=text_client,
            session_id="vs_test",
            on_state_change=lambda old, new, cause: self.states.append((old.value, new.value)),
            on_error=self.errors.append,
        )

    def _new_recorder(self):
        recorder = FakeRecorder()
        self.recorders.append(recorder)
        return recorder

    @property
    def pc(self) -> FakePeerConnection:
        return self.pcs.last

    @property
    def channel(self) -> FakeDataChannel:
        return self.pcs.last.channel

    @property
    def stream(self) -> LocalAudioStream:
        return self.media.acquired[-1]

    async def connect(self):
        await self.session.start()
        self.channel.open()


@pytest.fixture
def harness():
    return Harness()
