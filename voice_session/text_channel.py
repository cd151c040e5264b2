"""
Out-of-band text chat.

Used by the clinical simulation integration: typed messages go to a chat
endpoint with the conversation so far, and the reply comes back as text.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Tuple

import aiohttp

from logging_setup import get_logger, Component
from .errors import TextChatFailure


logger = get_logger(Component.TEXT_CHANNEL)


async def _post_json(url: str, payload: Dict[str, Any], timeout_seconds: float) -> Tuple[int, Any]:
    async with aiohttp.ClientSession() as s:
        async with s.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=timeout_seconds)) as resp:
            try:
                body = await resp.json(content_type=None)
            except ValueError:
                body = None
            return resp.status, body


class TextChatClient:
    def __init__(self, url: str, *, timeout_seconds: float = 30):
        self.url = url
        self.timeout_seconds = timeout_seconds

    async def send(self, message: str, session_id: str, history: List[Dict[str, str]]) -> str:
        """POST {message, sessionId, conversationHistory} and return the reply text."""
        payload = {
            "message": message,
            "sessionId": session_id,
            "conversationHistory": history,
        }
        start_ts = time.time()
        try:
            status, body = await _post_json(self.url, payload, self.timeout_seconds)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Text chat request failed", session_id=session_id, error=str(e))
            raise TextChatFailure("text chat endpoint unreachable", detail=str(e)) from e

        latency_ms = int((time.time() - start_ts) * 1000)
        if not 200 <= status < 300:
            logger.warning("Text chat request rejected", session_id=session_id, status=status, latency_ms=latency_ms)
            raise TextChatFailure(f"text chat returned status {status}")

        reply = body.get("response") if isinstance(body, dict) else None
        if not isinstance(reply, str):
            raise TextChatFailure("text chat reply has no response text")

        logger.info("Text chat reply received", session_id=session_id, latency_ms=latency_ms)
        return reply
