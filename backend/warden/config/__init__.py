"""Centralised configuration helper.

This module eliminates scattered ``os.getenv`` calls by exposing a **single**
:class:`Settings` container (retrieved via :func:`get_settings`).

Values come from the process environment after *python-dotenv* loaded the
repository ``.env`` file (``.env.test`` when ``NODE_ENV=test``).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# ``_REPO_ROOT`` points to the top-level repository directory (one level
# **above** the "backend" package).  This file lives at
# ``backend/warden/config/__init__.py``.

_REPO_ROOT = Path(__file__).resolve().parents[3]


def _truthy(value: str | None) -> bool:  # noqa: D401 – small helper
    """Return *True* when *value* looks like an affirmative string."""

    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:  # noqa: D401 – simple data container
    """Lightweight settings container populated from environment variables."""

    # Runtime flags -----------------------------------------------------
    testing: bool
    log_level: str

    # Database ---------------------------------------------------------
    database_url: str

    # Cryptography -----------------------------------------------------
    fernet_secret: Any
    session_fernet_secret: Any

    # Browser ----------------------------------------------------------
    browser_headless: bool
    session_probe_timeout_ms: int

    # Health checks ----------------------------------------------------
    health_check_delay_seconds: float
    health_check_cron: str

    # HTTP -------------------------------------------------------------
    allowed_cors_origins: str


def _load_settings() -> Settings:  # noqa: D401 – helper
    """Populate :class:`Settings` from environment variables."""

    node_env = os.getenv("NODE_ENV", "development")

    if node_env == "test":
        env_path = _REPO_ROOT / ".env.test"
        if not env_path.exists():
            env_path = _REPO_ROOT / ".env"  # Fallback to main .env
    else:
        env_path = _REPO_ROOT / ".env"

    if env_path.exists():
        # Explicit TESTING from the caller wins over the file
        current_testing = os.getenv("TESTING")
        load_dotenv(env_path, override=True)
        if current_testing:
            os.environ["TESTING"] = current_testing

    testing = _truthy(os.getenv("TESTING"))
    fernet_secret = os.getenv("FERNET_SECRET")

    return Settings(
        testing=testing,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        database_url=os.getenv("DATABASE_URL", ""),
        fernet_secret=fernet_secret,
        session_fernet_secret=os.getenv("SESSION_ENCRYPTION_KEY") or fernet_secret,
        browser_headless=_truthy(os.getenv("BROWSER_HEADLESS", "1")),
        session_probe_timeout_ms=int(os.getenv("SESSION_PROBE_TIMEOUT_MS", "10000")),
        health_check_delay_seconds=float(os.getenv("HEALTH_CHECK_DELAY_SECONDS", "2.0")),
        health_check_cron=os.getenv("HEALTH_CHECK_CRON", "0 6 * * *"),
        allowed_cors_origins=os.getenv("ALLOWED_CORS_ORIGINS", ""),
    )


# ------------------------------------------------------------------
# Runtime validation – fail fast when *required* secrets are missing.
# ------------------------------------------------------------------


def _validate_required(settings: Settings) -> None:  # noqa: D401 – helper
    """Abort startup when mandatory configuration is missing.

    Credentials are stored encrypted at rest, so a deployment without
    ``FERNET_SECRET`` could neither create nor check a single login.
    """

    if settings.testing:
        return

    missing_vars = []

    if not settings.fernet_secret:
        missing_vars.append("FERNET_SECRET")

    if missing_vars:
        raise RuntimeError(
            f"CRITICAL: Missing required environment variables: {', '.join(missing_vars)}\n"
            f"Set these in your .env file or deployment environment."
        )


def get_settings() -> Settings:  # noqa: D401 – public accessor
    """Return :class:`Settings` instance loaded from environment."""

    settings = _load_settings()
    _validate_required(settings)
    return settings


__all__ = [
    "Settings",
    "get_settings",
]
