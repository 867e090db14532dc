"""Inbound authentication: agent bearer keys and ElevenLabs webhook signatures."""

from __future__ import annotations

import hashlib
import hmac
import logging
import time

from fastapi import Header, HTTPException, Request

from dental_booking import config

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "ElevenLabs-Signature"
# ElevenLabs signs with the send time; anything older is treated as a replay.
MAX_WEBHOOK_AGE_SECONDS = 30 * 60


def require_agent_key(authorization: str | None = Header(default=None)) -> str:
    """FastAPI dependency: ``Authorization: Bearer <key>`` with a key from ``AGENT_KEYS``."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=403, detail="Unauthorized")
    token = authorization[len("Bearer "):].strip()
    if not any(hmac.compare_digest(token.encode(), key.encode()) for key in config.AGENT_KEYS):
        logger.warning("Rejected request with unknown agent key")
        raise HTTPException(status_code=403, detail="Unauthorized")
    return token


def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    signed = timestamp.encode("utf-8") + b"." + body
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def sign_payload(secret: str, body: bytes, timestamp: int | None = None) -> str:
    """Build a header value in ElevenLabs' ``t=<ts>,v0=<hex>`` format."""
    ts = str(int(time.time()) if timestamp is None else timestamp)
    return f"t={ts},v0={compute_signature(secret, ts, body)}"


def verify_signature(
    header: str | None,
    body: bytes,
    secret: str,
    *,
    now: float | None = None,
    max_age: int = MAX_WEBHOOK_AGE_SECONDS,
) -> bool:
    if not header or not secret:
        return False
    try:
        parts = dict(item.strip().split("=", 1) for item in header.split(","))
    except ValueError:
        logger.warning("Malformed webhook signature header")
        return False
    timestamp, signature = parts.get("t"), parts.get("v0")
    if not timestamp or not signature:
        return False

    try:
        age = (time.time() if now is None else now) - int(timestamp)
    except ValueError:
        return False
    if age > max_age:
        logger.warning("Webhook signature expired (%ds old)", age)
        return False

    expected = compute_signature(secret, timestamp, body)
    return hmac.compare_digest(expected.encode(), signature.encode())


async def verify_elevenlabs_webhook(request: Request) -> bytes:
    """FastAPI dependency: check the webhook signature and return the raw body.

    Skipped entirely when ``ELEVENLABS_VERIFY_SIGNATURE`` is off.
    """
    body = await request.body()
    if not config.ELEVENLABS_VERIFY_SIGNATURE:
        return body
    if not verify_signature(
        request.headers.get(SIGNATURE_HEADER), body, config.ELEVENLABS_WEBHOOK_SECRET,
    ):
        logger.warning("Rejected ElevenLabs webhook with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")
    return body
