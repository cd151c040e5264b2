"""
Token server (FastAPI).

POST /api/rtc-token  -> one short-lived credential + instructions per session
GET  /health
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple, Union

import aiohttp
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field

from logging_setup import get_logger, Component
from observability.events import Component as ObsComponent, EventEmitter, Severity
from voice_session.credentials import ISSUING_KEY_NOT_CONFIGURED, AudioFormat, SessionKind
from .config import TokenServerConfig, get_config
from .instructions import get_instructions


app = FastAPI(title="Realtime Token Server")
logger = get_logger(Component.TOKEN_SERVER)
emitter = EventEmitter(ObsComponent.TOKEN_SERVER)

CREDENTIAL_MINT_FAILED = "credential_mint_failed"


class CredentialMintError(Exception):
    """The provider did not return a usable client secret."""


class TokenRequest(BaseModel):
    client_id: str = Field(..., min_length=1, validation_alias=AliasChoices("clientId", "userId"))
    scenario_id: Optional[Union[int, str]] = Field(None, validation_alias=AliasChoices("scenarioId"))
    session_kind: SessionKind = Field(
        SessionKind.CHAT,
        validation_alias=AliasChoices("sessionKind", "sessionType"),
    )


async def _mint_ephemeral_secret(
    config: TokenServerConfig,
    instructions: str,
) -> Tuple[str, Optional[datetime]]:
    """
    Create a realtime session with the provider and return its client secret.

    Returns (secret, expiry or None when the provider does not state one).
    """
    headers = {"Authorization": f"Bearer {config.api_key}"}
    payload = {
        "model": config.realtime_model,
        "voice": config.voice,
        "instructions": instructions,
    }
    async with aiohttp.ClientSession() as s:
        async with s.post(
            config.realtime_sessions_url,
            json=payload,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=config.mint_timeout_seconds),
        ) as resp:
            if resp.status >= 300:
                raise CredentialMintError(f"provider returned status {resp.status}")
            try:
                body = await resp.json(content_type=None)
            except ValueError as e:
                raise CredentialMintError("provider response is not JSON") from e

    client_secret = body.get("client_secret") if isinstance(body, dict) else None
    if not isinstance(client_secret, dict) or not client_secret.get("value"):
        raise CredentialMintError("provider response has no client_secret")

    expires_at = client_secret.get("expires_at")
    if isinstance(expires_at, (int, float)):
        try:
            return client_secret["value"], datetime.fromtimestamp(expires_at, tz=timezone.utc)
        except (ValueError, OverflowError, OSError) as e:
            raise CredentialMintError(f"provider expiry is out of range: {expires_at}") from e
    return client_secret["value"], None


def _error(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error})


@app.post("/api/rtc-token")
async def issue_token(req: TokenRequest):
    """
    Issue a credential for one session.

    500 {"error": "issuing_key_not_configured"} when no provider key is set,
    502 {"error": "credential_mint_failed"} when the provider refuses.
    """
    config = get_config()
    start_ts = time.time()

    if not config.api_key:
        logger.error("No issuing key configured", client_id=req.client_id)
        return _error(500, ISSUING_KEY_NOT_CONFIGURED)

    instructions = get_instructions(req.session_kind.value, config.instructions_dir)
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=config.token_ttl_seconds)

    if config.token_mode == "passthrough":
        secret = config.api_key
    else:
        try:
            secret, minted_expiry = await _mint_ephemeral_secret(config, instructions)
        except (aiohttp.ClientError, asyncio.TimeoutError, CredentialMintError) as e:
            logger.error(
                "Credential mint failed",
                client_id=req.client_id,
                error=str(e),
                error_type=type(e).__name__,
                latency_ms=int((time.time() - start_ts) * 1000),
            )
            emitter.emit(
                "credential.mint_failed",
                session_id=req.client_id,
                severity=Severity.ERROR,
                error_type=type(e).__name__,
            )
            return _error(502, CREDENTIAL_MINT_FAILED)
        if minted_expiry is not None:
            expires_at = min(expires_at, minted_expiry)

    latency_ms = int((time.time() - start_ts) * 1000)
    logger.info(
        "Credential issued",
        client_id=req.client_id,
        session_kind=req.session_kind.value,
        token_mode=config.token_mode,
        latency_ms=latency_ms,
    )
    emitter.emit(
        "credential.issued",
        session_id=req.client_id,
        session_kind=req.session_kind.value,
        token_mode=config.token_mode,
        expires_at=expires_at.isoformat(),
        latency_ms=latency_ms,
    )

    audio_format = AudioFormat()
    body: Dict[str, Any] = {
        "secret": secret,
        "instructions": instructions,
        "sessionKind": req.session_kind.value,
        "clientId": req.client_id,
        "scenarioId": req.scenario_id,
        "expiresAt": expires_at.isoformat(),
        "audioFormat": {
            "sampleRate": audio_format.sample_rate,
            "channels": audio_format.channels,
            "encoding": audio_format.encoding,
        },
    }
    return body


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok", "component": "token_server"}
