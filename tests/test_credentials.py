"""
Credential Broker: request shape, response parsing and failure mapping.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import aiohttp
import pytest

from voice_session import credentials
from voice_session.credentials import (
    AudioFormat,
    CredentialBroker,
    SessionContext,
    SessionKind,
    parse_credential,
)
from voice_session.errors import AuthFailure, ConfigurationFailure


CONTEXT = SessionContext(client_id="student-1", scenario_id="12", session_kind=SessionKind.ECOS_SIMULATION)


def _future_iso(seconds=3600):
    return (datetime.now(timezone.utc) + timedelta(seconds=seconds)).isoformat()


def _patch_post(monkeypatch, status=200, body=None, error=None):
    calls = []

    async def _fake_post_json(url, payload, timeout_seconds):
        calls.append((url, payload, timeout_seconds))
        if error is not None:
            raise error
        return status, body or {}

    monkeypatch.setattr(credentials, "_post_json", _fake_post_json)
    return calls


def test_context_request_omits_missing_scenario():
    assert SessionContext(client_id="u1").to_request() == {"clientId": "u1", "sessionKind": "chat"}
    assert CONTEXT.to_request() == {"clientId": "student-1", "sessionKind": "ecos_simulation", "scenarioId": "12"}


@pytest.mark.asyncio
async def test_request_credential_success(monkeypatch):
    calls = _patch_post(monkeypatch, body={
        "secret": "ek_123",
        "instructions": "Vous êtes un patient virtuel.",
        "sessionKind": "ecos_simulation",
        "expiresAt": _future_iso(),
        "audioFormat": {"sampleRate": 24000, "channels": 1, "encoding": "pcm16"},
    })

    broker = CredentialBroker("http://token.local/api/rtc-token", timeout_seconds=5)
    credential = await broker.request_credential(CONTEXT)

    assert calls == [("http://token.local/api/rtc-token", CONTEXT.to_request(), 5)]
    assert credential.secret == "ek_123"
    assert credential.instructions == "Vous êtes un patient virtuel."
    assert credential.session_kind == SessionKind.ECOS_SIMULATION
    assert credential.audio_format == AudioFormat()
    assert not credential.is_expired()
    assert "ek_123" not in repr(credential)


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403, 500, 503])
async def test_failure_status_raises_auth_failure(monkeypatch, status):
    _patch_post(monkeypatch, status=status, body={"error": "nope"})

    with pytest.raises(AuthFailure):
        await CredentialBroker("http://token.local").request_credential(CONTEXT)


@pytest.mark.asyncio
async def test_missing_issuing_key_raises_configuration_failure(monkeypatch):
    _patch_post(monkeypatch, status=500, body={"error": "issuing_key_not_configured"})

    with pytest.raises(ConfigurationFailure):
        await CredentialBroker("http://token.local").request_credential(CONTEXT)


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [aiohttp.ClientConnectionError("refused"), asyncio.TimeoutError()])
async def test_unreachable_endpoint_raises_auth_failure(monkeypatch, error):
    _patch_post(monkeypatch, error=error)

    with pytest.raises(AuthFailure) as exc_info:
        await CredentialBroker("http://token.local").request_credential(CONTEXT)
    assert exc_info.value.__cause__ is error


def test_parse_accepts_client_secret_object_and_epoch_expiry():
    expires = int(datetime.now(timezone.utc).timestamp()) + 60
    credential = parse_credential(
        {"client_secret": {"value": "ek_obj", "expires_at": expires}, "expiresAt": expires},
        CONTEXT,
    )
    assert credential.secret == "ek_obj"
    assert credential.expires_at == datetime.fromtimestamp(expires, tz=timezone.utc)
    assert credential.session_kind == SessionKind.ECOS_SIMULATION


def test_parse_accepts_plain_client_secret_string():
    credential = parse_credential({"client_secret": "sk_plain", "expiresAt": "2099-01-01T00:00:00Z"}, CONTEXT)
    assert credential.secret == "sk_plain"
    assert credential.expires_at.tzinfo is not None


@pytest.mark.parametrize("body", [
    {"expiresAt": "2099-01-01T00:00:00Z"},
    {"secret": "ek", "expiresAt": "soon"},
    {"secret": "ek", "expiresAt": 10 ** 20},
    {"secret": "ek", "expiresAt": float("nan")},
    {"secret": "ek"},
])
def test_parse_rejects_unusable_bodies(body):
    with pytest.raises(AuthFailure):
        parse_credential(body, CONTEXT)


def test_bad_audio_format_falls_back_to_default():
    credential = parse_credential(
        {"secret": "ek", "expiresAt": _future_iso(), "audioFormat": {"sampleRate": "fast"}},
        CONTEXT,
    )
    assert credential.audio_format == AudioFormat()


def test_expired_credential():
    credential = parse_credential({"secret": "ek", "expiresAt": _future_iso(-1)}, CONTEXT)
    assert credential.is_expired()
