"""
Transport Negotiator.

Builds one peer connection to the remote speech endpoint: STUN rendezvous,
a single ordered control channel, the local audio tracks, and the
offer/answer exchange. Owns every object it creates until it hands a
connected Transport back to the caller.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Iterable, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription

from logging_setup import get_logger, Component
from .config import DEFAULT_ICE_SERVERS
from .credentials import Credential
from .errors import AuthFailure, MediaAccessDenied, NegotiationFailure, TransportLost
from .signaling import SdpExchange


logger = get_logger(Component.TRANSPORT)

_LOST_STATES = ("failed", "disconnected", "closed")


class TransportListener:
    """Callbacks from a live transport. Every hook is optional."""

    def on_channel_open(self, transport: "Transport") -> None:
        pass

    def on_channel_message(self, transport: "Transport", data: Any) -> None:
        pass

    def on_remote_track(self, transport: "Transport", track: Any) -> None:
        pass

    def on_transport_lost(self, transport: "Transport", error: TransportLost) -> None:
        pass


class Transport:
    """
    A peer connection with its control channel.

    Listener hooks stop firing as soon as close() is called, so callbacks from
    an abandoned attempt never reach the session.
    """

    def __init__(self, pc: Any, channel: Any, listener: TransportListener):
        self.pc = pc
        self.channel = channel
        self.listener = listener
        self.closed = False
        self._connected: asyncio.Future = asyncio.get_running_loop().create_future()
        self._lost_reported = False

        channel.on("open", self._on_channel_open)
        channel.on("message", self._on_channel_message)
        pc.on("track", self._on_track)
        pc.on("connectionstatechange", self._on_connection_state_change)

    @property
    def connection_state(self) -> str:
        return getattr(self.pc, "connectionState", "new")

    @property
    def is_connected(self) -> bool:
        return self._connected.done() and not self._connected.cancelled() and self._connected.exception() is None

    def _on_channel_open(self) -> None:
        if self.closed:
            return
        logger.debug("Control channel open", label=getattr(self.channel, "label", None))
        self.listener.on_channel_open(self)

    def _on_channel_message(self, data: Any) -> None:
        if self.closed:
            return
        self.listener.on_channel_message(self, data)

    def _on_track(self, track: Any) -> None:
        if self.closed:
            return
        logger.debug("Remote track received", kind=getattr(track, "kind", None))
        if getattr(track, "kind", None) == "audio":
            self.listener.on_remote_track(self, track)

    def _on_connection_state_change(self) -> None:
        if self.closed:
            return
        state = self.connection_state
        logger.debug("Connection state changed", connection_state=state)

        if state == "connected":
            if not self._connected.done():
                self._connected.set_result(None)
            return

        if state not in _LOST_STATES:
            return

        if not self._connected.done():
            self._connected.set_exception(NegotiationFailure(f"peer connection {state} before connecting"))
            return

        if self._lost_reported:
            return
        self._lost_reported = True
        logger.warning("Transport lost", connection_state=state)
        self.listener.on_transport_lost(self, TransportLost(f"peer connection {state}"))

    async def wait_connected(self) -> None:
        await self._connected

    def send_text(self, data: str) -> None:
        if self.closed:
            raise RuntimeError("transport is closed")
        self.channel.send(data)

    async def close(self) -> None:
        """Close the control channel, then the peer connection. Idempotent."""
        if self.closed:
            return
        self.closed = True
        if not self._connected.done():
            self._connected.cancel()
        self.channel.close()
        await self.pc.close()
        logger.debug("Transport closed")


def _default_peer_connection(ice_servers: Iterable[str]) -> RTCPeerConnection:
    configuration = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
    return RTCPeerConnection(configuration=configuration)


class TransportNegotiator:
    """
    Establishes a Transport from a credential and a local stream.

    No timeout is applied here; the caller bounds establish() and cancelling it
    closes everything the attempt created.
    """

    def __init__(
        self,
        exchange: SdpExchange,
        ice_servers: Iterable[str] = DEFAULT_ICE_SERVERS,
        channel_label: str = "oai-events",
        peer_connection_factory: Optional[Callable[[Iterable[str]], Any]] = None,
    ):
        self.exchange = exchange
        self.ice_servers = tuple(ice_servers)
        self.channel_label = channel_label
        self._pc_factory = peer_connection_factory or _default_peer_connection

    async def establish(self, credential: Credential, stream: Any, listener: TransportListener) -> Transport:
        if credential.is_expired():
            raise AuthFailure("credential expired before negotiation")

        tracks = stream.get_audio_tracks() if stream is not None else []
        if not tracks:
            raise MediaAccessDenied("no local audio track to send")

        start_ts = time.time()
        pc = self._pc_factory(self.ice_servers)
        transport: Optional[Transport] = None
        try:
            channel = pc.createDataChannel(self.channel_label, ordered=True)
            transport = Transport(pc, channel, listener)

            for track in tracks:
                pc.addTrack(track)

            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
            logger.debug("Local offer applied", sdp_length=len(pc.localDescription.sdp))

            answer_sdp = await self.exchange.exchange(pc.localDescription.sdp, credential)
            await pc.setRemoteDescription(RTCSessionDescription(sdp=answer_sdp, type="answer"))
            logger.debug("Remote answer applied", sdp_length=len(answer_sdp))

            await transport.wait_connected()
        except BaseException as e:
            logger.warning(
                "Transport establishment aborted",
                error=str(e),
                error_type=type(e).__name__,
            )
            if transport is not None:
                await transport.close()
            else:
                await pc.close()
            raise

        logger.info(
            "Transport connected",
            ice_server_count=len(self.ice_servers),
            latency_ms=int((time.time() - start_ts) * 1000),
        )
        return transport
