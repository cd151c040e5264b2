"""
Credential Broker.

Obtains a short-lived access credential and the behavior instructions for one
session from the trusted token endpoint. No retry and no caching happen here:
the session decides whether a failure aborts the start.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import aiohttp

from logging_setup import get_logger, Component
from .errors import AuthFailure, ConfigurationFailure


logger = get_logger(Component.CREDENTIAL_BROKER)

# Error code the token endpoint returns when it has no issuing key
ISSUING_KEY_NOT_CONFIGURED = "issuing_key_not_configured"


class SessionKind(str, Enum):
    """Generic assistant vs. structured clinical simulation."""

    CHAT = "chat"
    ECOS_SIMULATION = "ecos_simulation"


@dataclass(frozen=True)
class AudioFormat:
    sample_rate: int = 24000
    channels: int = 1
    encoding: str = "pcm16"


@dataclass(frozen=True)
class SessionContext:
    """Who is asking for a session, and for what."""

    client_id: str
    scenario_id: Optional[str] = None
    session_kind: SessionKind = SessionKind.CHAT

    def to_request(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "clientId": self.client_id,
            "sessionKind": self.session_kind.value,
        }
        if self.scenario_id is not None:
            payload["scenarioId"] = self.scenario_id
        return payload


@dataclass(frozen=True)
class Credential:
    """Short-lived authorization bundle. Read-only once issued."""

    secret: str = field(repr=False)
    instructions: str
    expires_at: datetime
    session_kind: SessionKind = SessionKind.CHAT
    audio_format: AudioFormat = field(default_factory=AudioFormat)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at


def _parse_expiry(value: Any) -> datetime:
    """ISO-8601 string or epoch seconds -> tz-aware datetime."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    raise ValueError(f"unparseable expiry: {value!r}")


def _extract_secret(body: Dict[str, Any]) -> Optional[str]:
    """`secret`, or `client_secret` as a string or {"value": ...}."""
    secret = body.get("secret")
    if isinstance(secret, str) and secret:
        return secret
    client_secret = body.get("client_secret")
    if isinstance(client_secret, dict):
        client_secret = client_secret.get("value")
    if isinstance(client_secret, str) and client_secret:
        return client_secret
    return None


def _parse_audio_format(raw: Any) -> AudioFormat:
    if not isinstance(raw, dict):
        return AudioFormat()
    default = AudioFormat()
    try:
        return AudioFormat(
            sample_rate=int(raw.get("sampleRate", default.sample_rate)),
            channels=int(raw.get("channels", default.channels)),
            encoding=str(raw.get("encoding", default.encoding)),
        )
    except (TypeError, ValueError):
        return default


def parse_credential(body: Dict[str, Any], context: SessionContext) -> Credential:
    """
    Build a Credential from a token endpoint response body.

    Raises AuthFailure when the body is not a usable credential.
    """
    secret = _extract_secret(body)
    if not secret:
        raise AuthFailure("credential response carries no secret")

    try:
        expires_at = _parse_expiry(body.get("expiresAt"))
    except (ValueError, OverflowError, OSError) as e:
        raise AuthFailure("credential response carries no valid expiry", detail=str(e)) from e

    try:
        session_kind = SessionKind(body.get("sessionKind", context.session_kind.value))
    except ValueError:
        session_kind = context.session_kind

    return Credential(
        secret=secret,
        instructions=str(body.get("instructions") or ""),
        expires_at=expires_at,
        session_kind=session_kind,
        audio_format=_parse_audio_format(body.get("audioFormat")),
    )


async def _post_json(url: str, payload: Dict[str, Any], timeout_seconds: float) -> Tuple[int, Dict[str, Any]]:
    """POST JSON and return (status, decoded body or {})."""
    async with aiohttp.ClientSession() as s:
        async with s.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=timeout_seconds)) as resp:
            try:
                body = await resp.json(content_type=None)
            except ValueError:
                body = {}
            return resp.status, body if isinstance(body, dict) else {}


class CredentialBroker:
    """Requests one fresh credential per session start."""

    def __init__(self, endpoint_url: str, *, timeout_seconds: float = 10):
        self.endpoint_url = endpoint_url
        self.timeout_seconds = timeout_seconds

    async def request_credential(self, context: SessionContext) -> Credential:
        start_ts = time.time()
        logger.info(
            "Requesting session credential",
            endpoint=self.endpoint_url,
            client_id=context.client_id,
            session_kind=context.session_kind.value,
        )
        try:
            status, body = await _post_json(self.endpoint_url, context.to_request(), self.timeout_seconds)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(
                "Credential endpoint unreachable",
                endpoint=self.endpoint_url,
                error=str(e),
                error_type=type(e).__name__,
                latency_ms=int((time.time() - start_ts) * 1000),
            )
            raise AuthFailure("credential endpoint unreachable", detail=str(e)) from e

        latency_ms = int((time.time() - start_ts) * 1000)

        if body.get("error") == ISSUING_KEY_NOT_CONFIGURED:
            logger.error("Credential authority has no issuing key", status=status, latency_ms=latency_ms)
            raise ConfigurationFailure("no issuing key configured on the credential authority")

        if not 200 <= status < 300:
            logger.warning(
                "Credential request rejected",
                status=status,
                error=body.get("error"),
                latency_ms=latency_ms,
            )
            raise AuthFailure(f"credential request failed with status {status}", detail=body.get("error"))

        credential = parse_credential(body, context)
        logger.info(
            "Session credential issued",
            session_kind=credential.session_kind.value,
            expires_at=credential.expires_at.isoformat(),
            latency_ms=latency_ms,
        )
        return credential
