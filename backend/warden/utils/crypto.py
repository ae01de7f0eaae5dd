"""*Fernet* (AES-128-CBC + HMAC) encryption helpers for credentials at rest.

Two keys are in play:

* ``FERNET_SECRET`` encrypts login credentials (username / password / OAuth
  token).
* ``SESSION_ENCRYPTION_KEY`` encrypts captured browser session snapshots and
  falls back to ``FERNET_SECRET`` when unset.

A wrong key or a corrupted token always surfaces as :class:`DecryptionError`,
never as silently-wrong plaintext (Fernet authenticates every token).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict
from typing import Optional

from cryptography.fernet import Fernet
from cryptography.fernet import InvalidToken

from warden.config import get_settings


class DecryptionError(ValueError):
    """Ciphertext is malformed or was produced with a different key."""


_FERNETS: Dict[str, Fernet] = {}


def _fernet_for(secret: Optional[str], env_name: str) -> Fernet:
    if not secret:
        raise RuntimeError(f"{env_name} environment variable must be set.")

    fernet = _FERNETS.get(secret)
    if fernet is None:
        try:
            fernet = Fernet(secret.encode())
        except Exception as exc:  # pragma: no cover – bad key format
            raise RuntimeError(f"{env_name} is not a valid url-safe base64 32-byte key") from exc
        _FERNETS[secret] = fernet
    return fernet


def _credential_fernet() -> Fernet:
    return _fernet_for(get_settings().fernet_secret, "FERNET_SECRET")


def _session_fernet() -> Fernet:
    return _fernet_for(get_settings().session_fernet_secret, "SESSION_ENCRYPTION_KEY")


# ---------------------------------------------------------------------------
# Public encryption helpers
# ---------------------------------------------------------------------------


def encrypt(text: str, *, fernet: Fernet | None = None) -> str:  # noqa: D401 – thin wrapper
    """Encrypt *text* and return url-safe base64 ciphertext."""

    return (fernet or _credential_fernet()).encrypt(text.encode()).decode()


def decrypt(token: str, *, fernet: Fernet | None = None) -> str:  # noqa: D401 – thin wrapper
    """Decrypt *token* back to UTF-8 string."""

    try:
        return (fernet or _credential_fernet()).decrypt(token.encode()).decode()
    except (InvalidToken, UnicodeError, AttributeError) as exc:
        raise DecryptionError("decryption failed – invalid key or ciphertext") from exc


def encrypt_session_blob(text: str) -> str:
    return encrypt(text, fernet=_session_fernet())


def decrypt_session_blob(token: str) -> str:
    return decrypt(token, fernet=_session_fernet())


# ---------------------------------------------------------------------------
# Credential bundles
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoginCredentials:
    """Plaintext credentials for one login – never persisted or logged."""

    username: str
    password: Optional[str] = None
    oauth_token: Optional[str] = None


def encrypt_optional(value: Optional[str]) -> Optional[str]:
    """Encrypt *value* unless it is empty/None (stored as NULL)."""

    if not value:
        return None
    return encrypt(value)


def decrypt_login_credentials(
    username: str,
    password: Optional[str] = None,
    oauth_token: Optional[str] = None,
) -> LoginCredentials:
    """Decrypt the stored credential columns of a login."""

    return LoginCredentials(
        username=decrypt(username),
        password=decrypt(password) if password else None,
        oauth_token=decrypt(oauth_token) if oauth_token else None,
    )


def mask_secret(value: Optional[str], *, visible: int = 0) -> Optional[str]:
    """Return a display-safe version of *value* (``None`` stays ``None``)."""

    if value is None:
        return None
    if visible <= 0 or len(value) <= visible:
        return "••••••••"
    return value[:visible] + "•" * (len(value) - visible)


__all__ = [
    "DecryptionError",
    "LoginCredentials",
    "encrypt",
    "decrypt",
    "encrypt_optional",
    "encrypt_session_blob",
    "decrypt_session_blob",
    "decrypt_login_credentials",
    "mask_secret",
]
