"""Centralized configuration for the support triage agent.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/support-triage/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

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
        resp = ssm.get_parameter(Name=f"/support-triage/{name}", WithDecryption=True)
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
        f"Set it in .env (local) or SSM Parameter Store /support-triage/{name} (AWS)."
    )


def _optional_env(name: str) -> str | None:
    """Like ``_require_env`` but returns ``None`` when nothing is configured."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value
    if _ON_AWS:
        return _get_ssm_parameter(name)
    return None


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")
MODEL_TEMPERATURE: float = float(os.getenv("MODEL_TEMPERATURE", "0.1"))
MODEL_MAX_TOKENS: int = int(os.getenv("MODEL_MAX_TOKENS", "2048"))

# Reasoning loop limits
MAX_TURNS: int = int(os.getenv("MAX_TURNS", "25"))
MODEL_MAX_RETRIES: int = int(os.getenv("MODEL_MAX_RETRIES", "3"))
MODEL_INITIAL_BACKOFF_SECONDS: float = float(os.getenv("MODEL_INITIAL_BACKOFF_SECONDS", "1.0"))
MODEL_TIMEOUT_SECONDS: float = float(os.getenv("MODEL_TIMEOUT_SECONDS", "60"))

# ── Workers ─────────────────────────────────────────────────────────
WORKER_MAX_RESTARTS: int = int(os.getenv("WORKER_MAX_RESTARTS", "3"))
WORKER_RESTART_BACKOFF_SECONDS: float = float(os.getenv("WORKER_RESTART_BACKOFF_SECONDS", "1.0"))
WORKER_RESTART_BACKOFF_MAX_SECONDS: float = float(
    os.getenv("WORKER_RESTART_BACKOFF_MAX_SECONDS", "30")
)
WORKER_STOP_TIMEOUT_SECONDS: float = float(os.getenv("WORKER_STOP_TIMEOUT_SECONDS", "10"))
WORKER_START_TIMEOUT_SECONDS: float = float(os.getenv("WORKER_START_TIMEOUT_SECONDS", "30"))

# ── Storage ─────────────────────────────────────────────────────────
DATABASE_PATH: str = os.getenv("DATABASE_PATH", "support_triage.db")

# ── Knowledge base ──────────────────────────────────────────────────
KNOWLEDGE_BASE_DIR: str = os.getenv("KNOWLEDGE_BASE_DIR", "knowledge_base")
OPENAI_API_KEY: str | None = _optional_env("OPENAI_API_KEY")
OPENAI_BASE_URL: str = "https://api.openai.com/v1"
VECTOR_STORE_KEY: str = os.getenv("VECTOR_STORE_KEY", "emailsmart-knowledge-base")

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")


@dataclass(frozen=True)
class WorkerSettings:
    """Lifecycle knobs handed to every Worker the manager creates."""

    max_restarts: int = WORKER_MAX_RESTARTS
    restart_backoff_seconds: float = WORKER_RESTART_BACKOFF_SECONDS
    restart_backoff_max_seconds: float = WORKER_RESTART_BACKOFF_MAX_SECONDS
    stop_timeout_seconds: float = WORKER_STOP_TIMEOUT_SECONDS

    def backoff_for(self, attempt: int) -> float:
        """Exponential backoff for restart *attempt* (1-based), capped."""
        delay = self.restart_backoff_seconds * (2 ** (attempt - 1))
        return min(delay, self.restart_backoff_max_seconds)
