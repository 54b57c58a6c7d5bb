"""Centralized configuration for the booking action firewall.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/booking-firewall/<VARIABLE_NAME>``.

Only the Anthropic key is a secret, and it is only needed when the
confidence pass runs against the validator LLM (``VALIDATOR_MODE=llm``).
Everything else has a working local default.
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
        import boto3  # noqa: PLC0415 lazy import to avoid boto3 dep in tests

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/booking-firewall/{name}", WithDecryption=True)
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
        f"Set it in .env (local) or SSM Parameter Store /booking-firewall/{name} (AWS)."
    )


def _optional_env(name: str) -> str | None:
    value = os.getenv(name)
    return value or None


def get_anthropic_api_key() -> str:
    """Resolve the Anthropic key lazily; only the LLM scorer needs it."""
    return _require_env("ANTHROPIC_API_KEY")


# ── Validator (confidence pass) ─────────────────────────────────────
# "llm" uses the validator model; "heuristic" scores against the transcript
# without any network call.
VALIDATOR_MODE: str = os.getenv("VALIDATOR_MODE", "llm").lower()
VALIDATOR_MODEL_NAME: str = os.getenv("VALIDATOR_MODEL_NAME", "claude-sonnet-4-5")
CONFIDENCE_TIMEOUT_SECONDS: float = float(os.getenv("CONFIDENCE_TIMEOUT_SECONDS", "8"))

# ── Scheduling store (read view of existing bookings) ───────────────
SCHEDULING_API_URL: str | None = _optional_env("SCHEDULING_API_URL")
SCHEDULING_API_TOKEN: str | None = _optional_env("SCHEDULING_API_TOKEN")
SCHEDULING_TIMEOUT_SECONDS: float = float(os.getenv("SCHEDULING_TIMEOUT_SECONDS", "5"))

# ── Settings store ──────────────────────────────────────────────────
SETTINGS_API_URL: str | None = _optional_env("SETTINGS_API_URL")
SETTINGS_FRESHNESS_SECONDS: float = float(os.getenv("SETTINGS_FRESHNESS_SECONDS", "60"))

# ── Sessions ────────────────────────────────────────────────────────
SESSION_TTL_MINUTES: float = float(os.getenv("SESSION_TTL_MINUTES", "30"))
REAPER_INTERVAL_SECONDS: float = float(os.getenv("REAPER_INTERVAL_SECONDS", "300"))

# ── Audit log ───────────────────────────────────────────────────────
# Unset keeps the audit log in memory (lost on restart).
AUDIT_DB_PATH: str | None = _optional_env("AUDIT_DB_PATH")
AUDIT_MAX_ATTEMPTS: int = int(os.getenv("AUDIT_MAX_ATTEMPTS", "3"))
AUDIT_BACKOFF_SECONDS: float = float(os.getenv("AUDIT_BACKOFF_SECONDS", "0.5"))
SUPPORT_COST_PER_PREVENTED_ISSUE: float = float(
    os.getenv("SUPPORT_COST_PER_PREVENTED_ISSUE", "50"),
)

# ── Office policy (ground-truth facts for date/time checks) ─────────
BOOKING_HORIZON_DAYS: int = int(os.getenv("BOOKING_HORIZON_DAYS", "60"))
DEFAULT_PROVIDER: str | None = _optional_env("DEFAULT_PROVIDER")
DEFAULT_OPERATORY: str | None = _optional_env("DEFAULT_OPERATORY")
DEFAULT_APPOINTMENT_MINUTES: int = int(os.getenv("DEFAULT_APPOINTMENT_MINUTES", "30"))

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
