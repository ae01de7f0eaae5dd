"""Session capture & replay.

A *session snapshot* is everything needed to resume a logged-in browser
session on a third-party site without typing the credentials again: cookies,
localStorage, sessionStorage and the user agent.  Snapshots are stored on the
``Login`` row encrypted with ``SESSION_ENCRYPTION_KEY``.

Replaying is the cheap tier of a health check: push the snapshot into a fresh
browser context, open the login URL and see whether the site bounces us back
to a sign-in screen.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Any
from typing import Dict
from typing import List
from typing import Literal
from typing import Optional

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import ValidationError
from pydantic import field_validator

from warden.browser.driver import BrowserDriver
from warden.constants import DEFAULT_SESSION_LIFETIME_HOURS
from warden.constants import SESSION_TWO_FACTOR_SELECTOR
from warden.services.classification import is_login_page
from warden.utils.crypto import DecryptionError
from warden.utils.crypto import decrypt_session_blob
from warden.utils.crypto import encrypt_session_blob
from warden.utils.time import utc_now

logger = logging.getLogger(__name__)


# Epoch values above this are milliseconds (1e11 seconds is past the year 5000)
_MILLISECOND_EXPIRY_THRESHOLD = 1e11

_SAME_SITE_VALUES = {"strict": "Strict", "lax": "Lax", "none": "None"}


def _now_ms() -> int:
    return int(time.time() * 1000)


class SessionCookie(BaseModel):
    # Keys we do not model (priority, partitionKey, ...) are kept verbatim
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str
    value: str
    domain: Optional[str] = None
    path: Optional[str] = None
    # Absolute expiry in seconds since the epoch; None for session cookies
    expires: Optional[float] = None
    http_only: Optional[bool] = Field(default=None, alias="httpOnly")
    secure: Optional[bool] = None
    same_site: Optional[Literal["Strict", "Lax", "None"]] = Field(default=None, alias="sameSite")

    @field_validator("expires", mode="before")
    @classmethod
    def _expires_in_seconds(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value > _MILLISECOND_EXPIRY_THRESHOLD:
            return value / 1000
        return value

    @field_validator("same_site", mode="before")
    @classmethod
    def _canonical_same_site(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _SAME_SITE_VALUES.get(value.strip().lower(), value)
        return value


class SessionSnapshot(BaseModel):
    """Captured browser session.  JSON keys follow the browser's camelCase."""

    model_config = ConfigDict(populate_by_name=True)

    cookies: List[SessionCookie] = Field(default_factory=list)
    local_storage: Dict[str, str] = Field(default_factory=dict, alias="localStorage")
    session_storage: Dict[str, str] = Field(default_factory=dict, alias="sessionStorage")
    tokens: Dict[str, str] = Field(default_factory=dict)
    user_agent: Optional[str] = Field(default=None, alias="userAgent")
    # Capture time in epoch milliseconds
    timestamp: int = Field(default_factory=_now_ms)


@dataclass(frozen=True)
class SessionValidationResult:
    is_valid: bool
    needs_reconnect: bool
    error_message: Optional[str] = None


class SessionReplayError(Exception):
    """The stored session could not even be replayed (decrypt/apply/browser setup)."""


# ---------------------------------------------------------------------------
# Encryption
# ---------------------------------------------------------------------------


def encrypt_session(snapshot: SessionSnapshot) -> str:
    return encrypt_session_blob(snapshot.model_dump_json(by_alias=True))


def decrypt_session(token: str) -> SessionSnapshot:
    """Inverse of :func:`encrypt_session`.

    Raises :class:`DecryptionError` for a wrong key, corrupted ciphertext or a
    plaintext that is not a snapshot.
    """

    plaintext = decrypt_session_blob(token)
    try:
        return SessionSnapshot.model_validate_json(plaintext)
    except ValidationError as exc:
        raise DecryptionError("decrypted session data is not a valid snapshot") from exc


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------


def compute_session_expiry(snapshot: SessionSnapshot, *, now: Optional[datetime] = None) -> Optional[datetime]:
    """Latest cookie expiry as an aware UTC datetime.

    No cookies at all → ``None`` (unknown).  Cookies without any expiry, or
    with one too large to represent → ``now + 24h``.
    """

    if not snapshot.cookies:
        return None

    max_expiry = max((cookie.expires or 0) for cookie in snapshot.cookies)
    if max_expiry > 0:
        try:
            return datetime.fromtimestamp(max_expiry, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            logger.warning("Ignoring unrepresentable cookie expiry %r", max_expiry)

    return (now or utc_now()) + timedelta(hours=DEFAULT_SESSION_LIFETIME_HOURS)


def is_expired(expiry: Optional[datetime], *, now: Optional[datetime] = None) -> bool:
    """``expiry is not None and now > expiry``; naive datetimes are UTC."""

    if expiry is None:
        return False
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    return (now or utc_now()) > expiry


# ---------------------------------------------------------------------------
# Browser interaction
# ---------------------------------------------------------------------------

_STORAGE_SCRIPT = """
(([local, session]) => {
  try {
    for (const [key, value] of Object.entries(local)) window.localStorage.setItem(key, value);
    for (const [key, value] of Object.entries(session)) window.sessionStorage.setItem(key, value);
  } catch (e) {}
})
"""

_EXTRACT_SCRIPT = """
() => {
  const dump = (storage) => {
    const out = {};
    for (let i = 0; i < storage.length; i++) {
      const key = storage.key(i);
      if (key !== null) out[key] = storage.getItem(key) || '';
    }
    return out;
  };
  return {
    localStorage: dump(window.localStorage),
    sessionStorage: dump(window.sessionStorage),
    userAgent: navigator.userAgent,
  };
}
"""


def _cookie_params(cookie: SessionCookie, url: Optional[str]) -> Optional[Dict[str, Any]]:
    params: Dict[str, Any] = {"name": cookie.name, "value": cookie.value}
    if cookie.domain:
        params["domain"] = cookie.domain
        params["path"] = cookie.path or "/"
    elif url:
        params["url"] = url
    else:
        return None

    if cookie.expires is not None and cookie.expires > 0:
        params["expires"] = cookie.expires
    if cookie.http_only is not None:
        params["httpOnly"] = cookie.http_only
    if cookie.secure is not None:
        params["secure"] = cookie.secure
    if cookie.same_site is not None:
        params["sameSite"] = cookie.same_site
    return params


async def apply_snapshot(
    driver: BrowserDriver,
    page: Any,
    snapshot: SessionSnapshot,
    *,
    url: Optional[str] = None,
) -> None:
    """Install *snapshot* into a fresh page's context.

    Cookies without a domain are scoped to *url*.  Storage entries are set
    from an init script so they exist before the site's own scripts run.
    Applying the same snapshot twice yields the same state.
    """

    if snapshot.user_agent:
        await driver.set_user_agent(page, snapshot.user_agent)

    cookies = []
    for cookie in snapshot.cookies:
        params = _cookie_params(cookie, url)
        if params is None:
            logger.warning("Skipping cookie %s without domain or url", cookie.name)
            continue
        cookies.append(params)
    if cookies:
        await driver.set_cookies(page, cookies)

    if snapshot.local_storage or snapshot.session_storage:
        payload = json.dumps([snapshot.local_storage, snapshot.session_storage])
        await driver.add_init_script(page, f"({_STORAGE_SCRIPT.strip()})({payload});")


async def extract_session(driver: BrowserDriver, page: Any) -> SessionSnapshot:
    """Capture the live session of *page* (used when a reconnect completes)."""

    raw_cookies = await driver.get_cookies(page)
    storage = await driver.evaluate_in_page(page, _EXTRACT_SCRIPT) or {}

    cookies = []
    for raw in raw_cookies:
        fields = dict(raw)
        # Playwright reports session cookies with expires == -1
        expires = fields.get("expires")
        if expires is not None and expires <= 0:
            fields["expires"] = None
        cookies.append(SessionCookie.model_validate(fields))

    return SessionSnapshot(
        cookies=cookies,
        local_storage=storage.get("localStorage") or {},
        session_storage=storage.get("sessionStorage") or {},
        user_agent=storage.get("userAgent"),
    )


async def probe_session(
    driver: BrowserDriver,
    page: Any,
    login_url: str,
    *,
    timeout_ms: int,
) -> SessionValidationResult:
    """Open *login_url* with an applied snapshot and judge where we landed.

    Never raises: navigation or network errors become
    ``needs_reconnect=True`` with the cause preserved.
    """

    try:
        await driver.goto(page, login_url, timeout_ms=timeout_ms)
        current_url = await driver.current_url(page)
        title = await driver.page_title(page)

        if is_login_page(current_url, title):
            if await driver.has_selector(page, SESSION_TWO_FACTOR_SELECTOR):
                return SessionValidationResult(
                    is_valid=False,
                    needs_reconnect=True,
                    error_message="2FA required - user interaction needed",
                )
            return SessionValidationResult(
                is_valid=False,
                needs_reconnect=True,
                error_message="Session expired - re-authentication required",
            )

        return SessionValidationResult(is_valid=True, needs_reconnect=False)

    except Exception as exc:  # noqa: BLE001 – every probe failure means "reconnect"
        logger.warning("Session probe of %s failed: %s", login_url, exc)
        return SessionValidationResult(
            is_valid=False,
            needs_reconnect=True,
            error_message=str(exc) or "Session validation failed",
        )


async def replay_session(
    driver: BrowserDriver,
    session_data: str,
    login_url: str,
    *,
    timeout_ms: int,
) -> SessionValidationResult:
    """Decrypt *session_data*, apply it to a fresh page and probe it.

    Raises :class:`SessionReplayError` when the snapshot cannot be decrypted
    or applied; probe failures are reported in the result instead.
    """

    try:
        snapshot = decrypt_session(session_data)
    except DecryptionError as exc:
        raise SessionReplayError("Session decryption failed") from exc

    try:
        async with driver.acquire_page(user_agent=snapshot.user_agent) as page:
            try:
                await apply_snapshot(driver, page, snapshot, url=login_url)
            except Exception as exc:  # noqa: BLE001
                raise SessionReplayError(f"Session application failed: {exc}") from exc
            return await probe_session(driver, page, login_url, timeout_ms=timeout_ms)
    except SessionReplayError:
        raise
    except Exception as exc:  # noqa: BLE001 – browser setup failures
        raise SessionReplayError(str(exc) or "Session test failed") from exc


__all__ = [
    "SessionCookie",
    "SessionSnapshot",
    "SessionValidationResult",
    "SessionReplayError",
    "encrypt_session",
    "decrypt_session",
    "compute_session_expiry",
    "is_expired",
    "apply_snapshot",
    "extract_session",
    "probe_session",
    "replay_session",
]
