"""Interactive reconnect of a login whose session needs a human (2FA, captcha).

The flow is split in two requests and the caller polls the login's status in
between:

* :func:`start_reconnect` flags the login and returns where the user has to
  sign in, plus the selectors that can be pre-filled.  When a
  :class:`ReconnectBrowser` is supplied it also opens the login page on the
  server with the credentials typed in, and keeps that page open.
* :func:`complete_reconnect` stores the session once the user reached the
  application: either one captured by the client, or one read from the page
  kept open by :func:`start_reconnect`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Mapping
from typing import Optional
from typing import Sequence
from typing import Tuple
from typing import Union

from pydantic import ValidationError
from sqlalchemy.orm import Session

from warden.browser.driver import BrowserDriver
from warden.constants import FILL_INPUT_SCRIPT
from warden.constants import NAVIGATION_TIMEOUT_MS
from warden.crud import crud
from warden.events import EventType
from warden.events import event_bus
from warden.models.models import Login
from warden.services.classification import is_login_page
from warden.services.login_templates import FillStep
from warden.services.login_templates import ScriptConfigError
from warden.services.login_templates import resolve_template
from warden.services.login_templates import substitute_credentials
from warden.services.session_manager import SessionSnapshot
from warden.services.session_manager import compute_session_expiry
from warden.services.session_manager import encrypt_session
from warden.services.session_manager import extract_session
from warden.utils.crypto import DecryptionError
from warden.utils.crypto import decrypt_login_credentials
from warden.utils.time import utc_now

logger = logging.getLogger(__name__)

RECONNECT_STEPS = [
    "Complete any required authentication steps",
    "Navigate to the main application page (not the login page)",
    'Click "Complete Reconnection" when finished',
]


class ReconnectError(ValueError):
    """Reconnect completion was refused."""


@dataclass
class ReconnectInstructions:
    login_id: int
    reconnect_session_id: str
    login_url: str
    # Selectors of the template's fill steps, in order
    prefill_selectors: List[str] = field(default_factory=list)
    steps: List[str] = field(default_factory=lambda: list(RECONNECT_STEPS))
    # True when a server-side page was opened for the user to finish in
    browser_opened: bool = False


class ReconnectBrowser:
    """Pages kept open between reconnect start and completion, one per login.

    Unlike probes these pages outlive a request, so they are opened with
    :meth:`BrowserDriver.new_context` directly and released explicitly on
    completion, on a new start for the same login, or on shutdown.
    """

    def __init__(self, driver: BrowserDriver, *, timeout_ms: int = NAVIGATION_TIMEOUT_MS):
        self.driver = driver
        self.timeout_ms = timeout_ms
        self._pages: Dict[int, Tuple[Any, Any]] = {}

    def has_page(self, login_id: int) -> bool:
        return login_id in self._pages

    async def open(self, login_id: int, login_url: str, prefill: Sequence[Tuple[str, str]] = ()) -> None:
        """Open *login_url* for *login_id* and type the *prefill* values in.

        Navigation failures release the page and propagate.  A field that
        cannot be pre-filled is skipped: the user can still type it.
        """

        await self.release(login_id)

        context = await self.driver.new_context()
        try:
            page = await self.driver.new_page(context)
        except Exception:
            await self.driver.close_context(context)
            raise
        self._pages[login_id] = (context, page)

        try:
            await self.driver.goto(page, login_url, timeout_ms=self.timeout_ms)
        except Exception:
            await self.release(login_id)
            raise

        for selector, value in prefill:
            try:
                await self.driver.wait_for_selector(page, selector, timeout_ms=self.timeout_ms)
                await self.driver.evaluate_in_page(page, FILL_INPUT_SCRIPT, [selector, value])
            except Exception as exc:  # noqa: BLE001
                logger.warning("Could not pre-fill %s for login %s: %s", selector, login_id, exc)

    async def capture(self, login_id: int) -> Tuple[SessionSnapshot, str, str]:
        """Return ``(snapshot, current_url, title)`` of the open page."""

        _, page = self._pages[login_id]
        current_url = await self.driver.current_url(page)
        title = await self.driver.page_title(page)
        snapshot = await extract_session(self.driver, page)
        return snapshot, current_url, title

    async def release(self, login_id: int) -> None:
        entry = self._pages.pop(login_id, None)
        if entry is None:
            return
        context, page = entry
        try:
            await self.driver.close_page(page)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to close reconnect page of login %s: %s", login_id, exc)
        try:
            await self.driver.close_context(context)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to close reconnect context of login %s: %s", login_id, exc)

    async def close_all(self) -> None:
        for login_id in list(self._pages):
            await self.release(login_id)


async def _publish_status(login: Login) -> None:
    await event_bus.publish(
        EventType.LOGIN_STATUS_UPDATED,
        {
            "id": login.id,
            "status": login.status.value,
            "success": login.error_message is None,
            "failure_count": login.failure_count,
            "error_message": login.error_message,
        },
    )


def _fill_steps(login: Login) -> List[FillStep]:
    try:
        template = resolve_template(login.template_id, login.custom_config, login.login_url)
    except ScriptConfigError as exc:
        logger.warning("Login %s has an invalid login script, no prefill hints: %s", login.id, exc)
        return []
    return [step for step in template.steps if isinstance(step, FillStep)]


async def _open_prefilled(browser: ReconnectBrowser, login: Login, steps: List[FillStep]) -> bool:
    try:
        credentials = decrypt_login_credentials(login.username, login.password, login.oauth_token)
        prefill = [(step.selector, substitute_credentials(step.value, credentials)) for step in steps]
    except DecryptionError:
        logger.warning("Credentials of login %s could not be decrypted, opening without prefill", login.id)
        prefill = []

    try:
        await browser.open(login.id, login.login_url, prefill)
    except Exception as exc:  # noqa: BLE001 – the client-side flow still works
        logger.warning("Could not open reconnect page for login %s: %s", login.id, exc)
        return False
    return True


async def start_reconnect(
    db: Session,
    login_id: int,
    *,
    browser: Optional[ReconnectBrowser] = None,
) -> Optional[ReconnectInstructions]:
    """Mark *login_id* as reconnecting.  Returns ``None`` when it does not exist."""

    login = crud.mark_reconnect_in_progress(db, login_id)
    if login is None:
        return None

    steps = _fill_steps(login)
    browser_opened = False
    if browser is not None:
        browser_opened = await _open_prefilled(browser, login, steps)

    await _publish_status(login)
    logger.info("Reconnect started for login %s (server page: %s)", login_id, browser_opened)

    return ReconnectInstructions(
        login_id=login.id,
        reconnect_session_id=f"reconnect_{login.id}_{int(utc_now().timestamp() * 1000)}",
        login_url=login.login_url,
        prefill_selectors=[step.selector for step in steps],
        browser_opened=browser_opened,
    )


async def complete_reconnect(
    db: Session,
    login_id: int,
    session_data: Union[SessionSnapshot, Mapping[str, Any], None] = None,
    *,
    current_url: Optional[str] = None,
    page_title: str = "",
    browser: Optional[ReconnectBrowser] = None,
) -> Optional[Login]:
    """Store the session the user ended up with after signing in.

    Without *session_data* the session, URL and title are read from the page
    :func:`start_reconnect` left open in *browser*.  Raises
    :class:`ReconnectError` when there is neither, when the session is
    malformed, or when the browser was still on a sign-in page (the open page
    is kept so the user can finish).  Returns ``None`` when the login does
    not exist.
    """

    login = crud.get_login(db, login_id)
    if login is None:
        return None

    live_page = browser is not None and browser.has_page(login_id)

    if session_data:
        if isinstance(session_data, SessionSnapshot):
            snapshot = session_data
        else:
            try:
                snapshot = SessionSnapshot.model_validate(session_data)
            except ValidationError as exc:
                raise ReconnectError(f"Invalid session data: {exc.errors()[0]['msg']}") from exc
    elif live_page:
        try:
            snapshot, current_url, page_title = await browser.capture(login_id)
        except Exception as exc:  # noqa: BLE001
            raise ReconnectError(f"Could not read the reconnect page: {exc}") from exc
    else:
        raise ReconnectError("Session data is required")

    if is_login_page(current_url or "", page_title or ""):
        raise ReconnectError(
            "Still on login page. Please complete the login process and navigate to the main "
            "application before completing reconnection."
        )

    expiry: Optional[datetime] = compute_session_expiry(snapshot)
    login = crud.store_login_session(
        db,
        login_id,
        session_data=encrypt_session(snapshot),
        session_expiry=expiry,
    )
    if live_page:
        await browser.release(login_id)

    await _publish_status(login)
    logger.info("Reconnect completed for login %s (session expiry %s)", login_id, expiry)
    return login


__all__ = [
    "ReconnectBrowser",
    "ReconnectError",
    "ReconnectInstructions",
    "start_reconnect",
    "complete_reconnect",
]
