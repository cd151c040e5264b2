"""
Offer/answer exchange with the remote speech endpoint.

The negotiator only sees `SdpExchange.exchange(offer_sdp, credential)`; whether
the SDP travels in an HTTPS POST or over a signaling socket is decided here.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Tuple

import aiohttp

from logging_setup import get_logger, Component
from .config import VoiceSessionConfig
from .credentials import Credential
from .errors import SignalingFailure


logger = get_logger(Component.TRANSPORT)


class SdpExchange(ABC):
    """Sends a local offer and returns the remote answer SDP."""

    @abstractmethod
    async def exchange(self, offer_sdp: str, credential: Credential) -> str:
        """Raises SignalingFailure when no answer is obtained."""


async def _post_sdp(url: str, offer_sdp: str, secret: str, timeout_seconds: float) -> Tuple[int, str]:
    headers = {
        "Authorization": f"Bearer {secret}",
        "Content-Type": "application/sdp",
    }
    async with aiohttp.ClientSession() as s:
        async with s.post(
            url,
            data=offer_sdp.encode("utf-8"),
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout_seconds),
        ) as resp:
            return resp.status, await resp.text()


class HttpSdpExchange(SdpExchange):
    """Direct POST of the raw offer with Content-Type application/sdp."""

    def __init__(self, url: str, model: str, *, timeout_seconds: float = 15):
        self.url = url.rstrip("/")
        self.model = model
        self.timeout_seconds = timeout_seconds

    @property
    def endpoint(self) -> str:
        return f"{self.url}?model={self.model}" if self.model else self.url

    async def exchange(self, offer_sdp: str, credential: Credential) -> str:
        start_ts = time.time()
        try:
            status, body = await _post_sdp(self.endpoint, offer_sdp, credential.secret, self.timeout_seconds)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(
                "SDP exchange request failed",
                endpoint=self.endpoint,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise SignalingFailure("offer/answer exchange failed", detail=str(e)) from e

        latency_ms = int((time.time() - start_ts) * 1000)
        if not 200 <= status < 300:
            logger.warning("SDP exchange rejected", endpoint=self.endpoint, status=status, latency_ms=latency_ms)
            raise SignalingFailure(f"offer/answer exchange returned status {status}", detail=body[:200])
        if not body.strip():
            raise SignalingFailure("offer/answer exchange returned an empty answer")

        logger.info("SDP answer received", endpoint=self.endpoint, answer_length=len(body), latency_ms=latency_ms)
        return body


class WebSocketSdpExchange(SdpExchange):
    """
    Exchange over a signaling socket.

    Sends {"type": "offer", "sdp": ...} and waits for {"type": "answer", "sdp": ...}.
    Messages of other types are skipped; {"type": "error"} aborts.
    """

    def __init__(self, url: str, *, timeout_seconds: float = 15):
        self.url = url
        self.timeout_seconds = timeout_seconds

    async def exchange(self, offer_sdp: str, credential: Credential) -> str:
        try:
            return await asyncio.wait_for(self._exchange(offer_sdp, credential), self.timeout_seconds)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(
                "Signaling socket exchange failed",
                endpoint=self.url,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise SignalingFailure("signaling socket exchange failed", detail=str(e)) from e

    async def _exchange(self, offer_sdp: str, credential: Credential) -> str:
        headers = {"Authorization": f"Bearer {credential.secret}"}
        async with aiohttp.ClientSession() as s:
            async with s.ws_connect(self.url, headers=headers) as ws:
                await ws.send_json({"type": "offer", "sdp": offer_sdp})
                return await self._await_answer(ws)

    async def _await_answer(self, ws: aiohttp.ClientWebSocketResponse) -> str:
        async for msg in ws:
            if msg.type != aiohttp.WSMsgType.TEXT:
                continue
            try:
                data = msg.json()
            except ValueError:
                logger.debug("Ignoring non-JSON signaling message", endpoint=self.url)
                continue
            if not isinstance(data, dict):
                continue
            kind = data.get("type")
            if kind == "answer" and isinstance(data.get("sdp"), str) and data["sdp"].strip():
                logger.info("SDP answer received", endpoint=self.url, answer_length=len(data["sdp"]))
                return data["sdp"]
            if kind == "error":
                raise SignalingFailure("signaling peer reported an error", detail=str(data.get("message")))
        raise SignalingFailure("signaling socket closed before an answer arrived")


def build_exchange(config: VoiceSessionConfig) -> SdpExchange:
    """Pick the exchange transport from configuration (HTTP unless told otherwise)."""
    if config.signaling_mode == "websocket":
        if not config.signaling_ws_url:
            raise ValueError("SIGNALING_WS_URL is required when SIGNALING_MODE=websocket")
        return WebSocketSdpExchange(config.signaling_ws_url, timeout_seconds=config.signaling_timeout_seconds)
    if config.signaling_mode != "http":
        raise ValueError(f"Unknown SIGNALING_MODE: {config.signaling_mode}")
    return HttpSdpExchange(
        config.realtime_url,
        config.realtime_model,
        timeout_seconds=config.signaling_timeout_seconds,
    )
