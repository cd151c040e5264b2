"""
Offer/answer exchange over HTTP and over a signaling socket.

One loopback aiohttp server stands in for the remote speech endpoint.
"""
import asyncio

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from voice_session import signaling
from voice_session.config import VoiceSessionConfig
from voice_session.errors import SignalingFailure
from voice_session.signaling import HttpSdpExchange, WebSocketSdpExchange, build_exchange

from conftest import make_credential


OFFER = "v=0\r\no=- offer\r\n"
ANSWER = "v=0\r\no=- answer\r\n"


@pytest_asyncio.fixture
async def endpoint():
    seen = {}

    async def _realtime(request):
        seen["authorization"] = request.headers.get("Authorization")
        seen["content_type"] = request.headers.get("Content-Type")
        seen["model"] = request.query.get("model")
        seen["body"] = await request.text()
        if request.query.get("model") == "reject":
            return web.Response(status=401, text="invalid token")
        return web.Response(status=201, text=ANSWER, content_type="application/sdp")

    async def _signal(request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        seen["ws_authorization"] = request.headers.get("Authorization")
        msg = await ws.receive_json()
        seen["ws_offer"] = msg
        await ws.send_str("not json")
        await ws.send_json({"type": "ice-candidate", "candidate": "x"})
        if msg["sdp"] == "error":
            await ws.send_json({"type": "error", "message": "room full"})
        elif msg["sdp"] == "close":
            pass
        else:
            await ws.send_json({"type": "answer", "sdp": ANSWER})
        await ws.close()
        return ws

    app = web.Application()
    app.router.add_post("/v1/realtime", _realtime)
    app.router.add_get("/signal", _signal)
    server = TestServer(app)
    await server.start_server()
    yield server, seen
    await server.close()


@pytest.mark.asyncio
async def test_http_exchange_posts_raw_sdp(endpoint):
    server, seen = endpoint
    exchange = HttpSdpExchange(str(server.make_url("/v1/realtime")), "gpt-4o-realtime-preview")

    answer = await exchange.exchange(OFFER, make_credential())

    assert answer == ANSWER
    assert seen["authorization"] == "Bearer ek_test_secret"
    assert seen["content_type"] == "application/sdp"
    assert seen["model"] == "gpt-4o-realtime-preview"
    assert seen["body"] == OFFER


@pytest.mark.asyncio
async def test_http_exchange_rejects_failure_status(endpoint):
    server, _ = endpoint
    exchange = HttpSdpExchange(str(server.make_url("/v1/realtime")), "reject")

    with pytest.raises(SignalingFailure) as exc_info:
        await exchange.exchange(OFFER, make_credential())
    assert "401" in str(exc_info.value)


@pytest.mark.asyncio
async def test_http_exchange_rejects_empty_answer(monkeypatch):
    async def _fake_post_sdp(url, offer_sdp, secret, timeout_seconds):
        return 200, "   "

    monkeypatch.setattr(signaling, "_post_sdp", _fake_post_sdp)

    with pytest.raises(SignalingFailure):
        await HttpSdpExchange("https://remote.example/v1/realtime", "m").exchange(OFFER, make_credential())


@pytest.mark.asyncio
async def test_http_exchange_maps_client_errors(monkeypatch):
    async def _fake_post_sdp(url, offer_sdp, secret, timeout_seconds):
        raise aiohttp.ClientConnectionError("connection refused")

    monkeypatch.setattr(signaling, "_post_sdp", _fake_post_sdp)

    with pytest.raises(SignalingFailure):
        await HttpSdpExchange("https://remote.example/v1/realtime", "m").exchange(OFFER, make_credential())


@pytest.mark.asyncio
async def test_websocket_exchange_skips_unrelated_messages(endpoint):
    server, seen = endpoint
    exchange = WebSocketSdpExchange(str(server.make_url("/signal")), timeout_seconds=5)

    answer = await exchange.exchange(OFFER, make_credential())

    assert answer == ANSWER
    assert seen["ws_offer"] == {"type": "offer", "sdp": OFFER}
    assert seen["ws_authorization"] == "Bearer ek_test_secret"


@pytest.mark.asyncio
@pytest.mark.parametrize("offer", ["error", "close"])
async def test_websocket_exchange_failures(endpoint, offer):
    server, _ = endpoint
    exchange = WebSocketSdpExchange(str(server.make_url("/signal")), timeout_seconds=5)

    with pytest.raises(SignalingFailure):
        await exchange.exchange(offer, make_credential())


@pytest.mark.asyncio
async def test_websocket_exchange_times_out(monkeypatch):
    exchange = WebSocketSdpExchange("ws://remote.example/signal", timeout_seconds=0.05)

    async def _never(offer_sdp, credential):
        await asyncio.sleep(10)

    monkeypatch.setattr(exchange, "_exchange", _never)

    with pytest.raises(SignalingFailure):
        await exchange.exchange(OFFER, make_credential())


def test_build_exchange_selects_transport():
    http = build_exchange(VoiceSessionConfig())
    assert isinstance(http, HttpSdpExchange)
    assert http.endpoint == "https://api.openai.com/v1/realtime?model=gpt-4o-realtime-preview"

    ws = build_exchange(VoiceSessionConfig(signaling_mode="websocket", signaling_ws_url="wss://signal.example"))
    assert isinstance(ws, WebSocketSdpExchange)

    with pytest.raises(ValueError):
        build_exchange(VoiceSessionConfig(signaling_mode="websocket"))
    with pytest.raises(ValueError):
        build_exchange(VoiceSessionConfig(signaling_mode="carrier-pigeon"))
