"""Centralized configuration for the dental booking backend.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/dental-booking/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 — lazy import to avoid boto3 dep in tests

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/dental-booking/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /dental-booking/{name} (AWS)."
    )


def _optional_secret(name: str) -> str:
    """Like ``_require_env`` but returns ``""`` when the secret is absent."""
    try:
        return _require_env(name)
    except OSError:
        return ""


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ── Dentally (practice management) ──────────────────────────────────
DENTALLY_API_KEY: str = _require_env("DENTALLY_API_KEY")
DENTALLY_BASE_URL: str = os.getenv("DENTALLY_BASE_URL", "https://api.dentally.co/v1")
DENTALLY_SITE_ID: str = os.getenv("DENTALLY_SITE_ID", "")
DEFAULT_PAYMENT_PLAN_ID: int = int(os.getenv("DEFAULT_PAYMENT_PLAN_ID", "44651"))

# ── LLM (transcript extraction) ─────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-haiku-4-5")

# ── Inbound auth ────────────────────────────────────────────────────
AGENT_KEYS: list[str] = [
    key.strip() for key in os.getenv("AGENT_KEYS", "").split(",") if key.strip()
]

# ── ElevenLabs voice agent ──────────────────────────────────────────
ELEVENLABS_AGENT_ID: str = os.getenv("ELEVENLABS_AGENT_ID", "")
ELEVENLABS_WEBHOOK_SECRET: str = _optional_secret("ELEVENLABS_WEBHOOK_SECRET")
ELEVENLABS_VERIFY_SIGNATURE: bool = _env_flag(
    "ELEVENLABS_VERIFY_SIGNATURE", default=bool(ELEVENLABS_WEBHOOK_SECRET),
)
ELEVENLABS_WS_URL: str = os.getenv(
    "ELEVENLABS_WS_URL",
    f"wss://api.elevenlabs.io/v1/convai/conversation?agent_id={ELEVENLABS_AGENT_ID}",
)

# ── Payment link + SMS ──────────────────────────────────────────────
STRIPE_API_KEY: str = _optional_secret("STRIPE_API_KEY")
STRIPE_PRODUCT_ID: str = os.getenv("STRIPE_PRODUCT_ID", "")
CLICKSEND_USERNAME: str = os.getenv("CLICKSEND_USERNAME", "")
CLICKSEND_API_KEY: str = _optional_secret("CLICKSEND_API_KEY")
CLICKSEND_FROM: str = os.getenv("CLICKSEND_FROM", "")
PRACTICE_NAME: str = os.getenv("PRACTICE_NAME", "Wonder of Wellness")
PRACTICE_TIMEZONE: str = os.getenv("PRACTICE_TIMEZONE", "Europe/London")

# ── Booking engine ──────────────────────────────────────────────────
PRICING_POLICY_PATH: str = os.getenv("PRICING_POLICY_PATH", "")
SEARCH_MAX_WINDOWS: int = int(os.getenv("SEARCH_MAX_WINDOWS", "5"))

# ── Local document store ────────────────────────────────────────────
DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///dental_booking.db")

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
