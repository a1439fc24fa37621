"""Centralized configuration for the MessageHub response engine.

Value resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)
  3. The default declared below

Provider API keys are *not* configured here: each AI agent document carries
its own key.  The SSM paths follow the convention ``/messagehub/<NAME>``.
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
        import boto3  # noqa: PLC0415

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/messagehub/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _get_setting(name: str, default: str) -> str:
    """Return a config value from env-var, SSM, or *default*."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    return default


# ── Webhooks ────────────────────────────────────────────────────────
# Token configured in Meta for Developers for the hub.challenge handshake
META_VERIFY_TOKEN: str = _get_setting("META_VERIFY_TOKEN", "messagehub_verify_token")

# ── Persistence ─────────────────────────────────────────────────────
# "memory" (tests / local dev) or "firestore"
STORE_BACKEND: str = os.getenv("STORE_BACKEND", "memory").lower()
FIRESTORE_PROJECT: str | None = os.getenv("FIRESTORE_PROJECT") or None

# ── AI providers ────────────────────────────────────────────────────
OPENAI_API_URL: str = os.getenv(
    "OPENAI_API_URL", "https://api.openai.com/v1/chat/completions",
)
ANTHROPIC_API_URL: str = os.getenv(
    "ANTHROPIC_API_URL", "https://api.anthropic.com/v1/messages",
)
ANTHROPIC_VERSION: str = os.getenv("ANTHROPIC_VERSION", "2023-06-01")
PROVIDER_TIMEOUT_SECONDS: float = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "60"))
PROVIDER_MAX_TOKENS: int = int(os.getenv("PROVIDER_MAX_TOKENS", "1024"))

# ── Knowledge-base row cache ────────────────────────────────────────
KB_CACHE_MAX_BYTES: int = int(os.getenv("KB_CACHE_MAX_BYTES", str(20 * 1024 * 1024)))

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
