"""Login health validation.

One health check produces one authoritative verdict for one login and
persists it.  Strategies are tried cheapest first:

1. **Expired session** – ``session_expiry`` in the past → ``DISCONNECTED``
   without touching the browser.
2. **Session replay** – the stored snapshot is applied to a fresh context
   and the login URL is probed.
3. **Credential login** – the login script (named template, custom config or
   generic auto-detect) is executed and the landing page is classified.

No exception escapes :meth:`LoginHealthChecker.check_login_health`; every
failure becomes a result with a human-readable ``error_message``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from typing import Any
from typing import List
from typing import Optional
from typing import Sequence

from sqlalchemy.orm import Session

from warden.browser.driver import BrowserDriver
from warden.browser.driver import BrowserTimeoutError
from warden.config import get_settings
from warden.constants import FILL_INPUT_SCRIPT
from warden.constants import TWO_FACTOR_SELECTOR
from warden.crud import crud
from warden.events import EventType
from warden.events import event_bus
from warden.models.enums import RECONNECT_LOGIN_STATUSES
from warden.models.enums import LoginStatus
from warden.models.models import Login
from warden.services.classification import DEFAULT_ERROR_RULES
from warden.services.classification import ErrorMessageRule
from warden.services.classification import LoginAttemptOutcome
from warden.services.classification import OutcomeClassifier
from warden.services.classification import classify_error_message
from warden.services.classification import default_login_classifier
from warden.services.login_templates import ClickStep
from warden.services.login_templates import FillStep
from warden.services.login_templates import LoginStep
from warden.services.login_templates import LoginTemplate
from warden.services.login_templates import NavigateStep
from warden.services.login_templates import ScriptConfigError
from warden.services.login_templates import VerifyStep
from warden.services.login_templates import WaitStep
from warden.services.login_templates import resolve_template
from warden.services.login_templates import substitute_credentials
from warden.services.session_manager import SessionReplayError
from warden.services.session_manager import is_expired
from warden.services.session_manager import replay_session
from warden.utils.crypto import DecryptionError
from warden.utils.crypto import LoginCredentials
from warden.utils.crypto import decrypt_login_credentials
from warden.utils.time import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckOutcome:
    status: LoginStatus
    success: bool
    error_message: Optional[str] = None
    needs_reconnect: bool = False


@dataclass
class LoginHealthResult:
    success: bool
    status: LoginStatus
    error_message: Optional[str] = None
    response_time_ms: int = 0
    last_checked: datetime = field(default_factory=utc_now)
    needs_reconnect: bool = False
    login_id: Optional[int] = None


class LoginHealthChecker:
    """Run health checks with an injected :class:`BrowserDriver`.

    The checker never launches or closes the browser itself; the owner of
    *driver* does.
    """

    def __init__(
        self,
        driver: BrowserDriver,
        *,
        classifier: OutcomeClassifier = default_login_classifier,
        error_rules: Sequence[ErrorMessageRule] = DEFAULT_ERROR_RULES,
        probe_timeout_ms: Optional[int] = None,
        delay_seconds: Optional[float] = None,
    ):
        settings = get_settings()
        self.driver = driver
        self.classifier = classifier
        self.error_rules = error_rules
        self.probe_timeout_ms = probe_timeout_ms if probe_timeout_ms is not None else settings.session_probe_timeout_ms
        self.delay_seconds = delay_seconds if delay_seconds is not None else settings.health_check_delay_seconds

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def check_login_health(self, db: Session, login_id: int) -> LoginHealthResult:
        started = time.monotonic()

        login = crud.get_login(db, login_id)
        if login is None:
            return LoginHealthResult(
                success=False,
                status=LoginStatus.BROKEN,
                error_message="Login not found",
                login_id=login_id,
            )

        logger.info("Checking health for login %s (%s)", login.id, login.name)

        try:
            outcome = await self.evaluate(login)
        except Exception as exc:  # noqa: BLE001 – unexpected failure is reported, not raised
            logger.exception("Health check for login %s failed unexpectedly", login_id)
            outcome = CheckOutcome(LoginStatus.BROKEN, False, str(exc) or "Unknown error")

        response_time_ms = int((time.monotonic() - started) * 1000)

        try:
            await self.update_login_status(db, login_id, outcome)
        except Exception as exc:  # noqa: BLE001
            db.rollback()
            logger.error("Failed to persist health status for login %s: %s", login_id, exc)

        logger.info("Login %s status: %s (%sms)", login_id, outcome.status.value, response_time_ms)
        return LoginHealthResult(
            success=outcome.success,
            status=outcome.status,
            error_message=outcome.error_message,
            response_time_ms=response_time_ms,
            needs_reconnect=outcome.needs_reconnect,
            login_id=login_id,
        )

    async def check_all_logins(self, db: Session, *, delay_seconds: Optional[float] = None) -> List[LoginHealthResult]:
        """Check every stored login strictly one after another."""

        delay = self.delay_seconds if delay_seconds is None else delay_seconds
        login_ids = crud.get_all_login_ids(db)
        logger.info("Starting health check for %d logins", len(login_ids))

        results: List[LoginHealthResult] = []
        for index, login_id in enumerate(login_ids):
            if index and delay > 0:
                await asyncio.sleep(delay)
            try:
                results.append(await self.check_login_health(db, login_id))
            except Exception as exc:  # noqa: BLE001 – one login never aborts the batch
                logger.error("Failed to check login %s: %s", login_id, exc)
                outcome = CheckOutcome(LoginStatus.BROKEN, False, str(exc) or "Unknown error")
                try:
                    await self.update_login_status(db, login_id, outcome)
                except Exception as persist_exc:  # noqa: BLE001
                    db.rollback()
                    logger.error("Failed to persist health status for login %s: %s", login_id, persist_exc)
                results.append(
                    LoginHealthResult(
                        success=False,
                        status=LoginStatus.BROKEN,
                        error_message=outcome.error_message,
                        login_id=login_id,
                    )
                )

        logger.info("Completed health check for %d logins", len(login_ids))
        return results

    async def update_login_status(self, db: Session, login_id: int, outcome: CheckOutcome) -> Optional[Login]:
        login = crud.update_login_status(
            db,
            login_id,
            status=outcome.status,
            success=outcome.success,
            error_message=outcome.error_message,
        )
        if login is not None:
            await event_bus.publish(
                EventType.LOGIN_STATUS_UPDATED,
                {
                    "id": login.id,
                    "status": login.status.value,
                    "success": outcome.success,
                    "failure_count": login.failure_count,
                    "error_message": login.error_message,
                },
            )
        return login

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    async def evaluate(self, login: Login) -> CheckOutcome:
        """Decide the status of *login* without persisting anything."""

        if login.session_expiry and is_expired(login.session_expiry):
            return CheckOutcome(LoginStatus.DISCONNECTED, False, "Session expired", needs_reconnect=True)

        if login.session_data:
            outcome = await self.check_session(login)
            if outcome is not None:
                return outcome

        return await self.check_credentials(login)

    async def check_session(self, login: Login) -> Optional[CheckOutcome]:
        try:
            result = await replay_session(
                self.driver,
                login.session_data,
                login.login_url,
                timeout_ms=self.probe_timeout_ms,
            )
        except SessionReplayError as exc:
            logger.warning("Session-based check for login %s failed: %s", login.id, exc)
            return CheckOutcome(LoginStatus.DISCONNECTED, False, str(exc), needs_reconnect=True)

        if result.is_valid:
            return CheckOutcome(LoginStatus.ACTIVE, True)
        if result.needs_reconnect:
            return CheckOutcome(LoginStatus.NEEDS_RECONNECT, False, result.error_message, needs_reconnect=True)
        return CheckOutcome(LoginStatus.DISCONNECTED, False, result.error_message, needs_reconnect=True)

    async def check_credentials(self, login: Login) -> CheckOutcome:
        try:
            template = resolve_template(login.template_id, login.custom_config, login.login_url)
        except ScriptConfigError as exc:
            return CheckOutcome(LoginStatus.BROKEN, False, str(exc))

        try:
            credentials = decrypt_login_credentials(login.username, login.password, login.oauth_token)
        except DecryptionError:
            return CheckOutcome(LoginStatus.BROKEN, False, "Stored credentials could not be decrypted")

        try:
            async with self.driver.acquire_page() as page:
                return await self.run_login_script(page, template, credentials)
        except Exception as exc:  # noqa: BLE001 – browser setup failure
            message = str(exc) or "Login test failed"
            return CheckOutcome(classify_error_message(message, self.error_rules), False, message)

    async def run_login_script(self, page: Any, template: LoginTemplate, credentials: LoginCredentials) -> CheckOutcome:
        """Execute *template* on *page* and classify where it ended up."""

        logger.debug("Running login template %s", template.name)

        for step in template.steps:
            try:
                await self._execute_step(page, step, credentials, template.login_url)
            except Exception as exc:  # noqa: BLE001 – any step failure aborts the script
                message = str(exc) or f"Failed at step: {step.name}"
                return CheckOutcome(classify_error_message(message, self.error_rules), False, message)

        current_url = await self.driver.current_url(page)
        title = await self.driver.page_title(page)
        try:
            has_two_factor = await self.driver.has_selector(page, TWO_FACTOR_SELECTOR)
        except Exception:  # noqa: BLE001
            has_two_factor = False

        verdict = self.classifier.classify(
            LoginAttemptOutcome(
                url=current_url,
                title=title,
                has_two_factor=has_two_factor,
                success_url_pattern=template.success_url_pattern,
                error_url_pattern=template.error_url_pattern,
            )
        )
        return CheckOutcome(
            verdict.status,
            verdict.success,
            verdict.error_message,
            needs_reconnect=verdict.status in RECONNECT_LOGIN_STATUSES,
        )

    async def _execute_step(self, page: Any, step: LoginStep, credentials: LoginCredentials, login_url: str) -> None:
        driver = self.driver

        if isinstance(step, NavigateStep):
            await driver.goto(page, step.url or login_url, timeout_ms=step.timeout)

        elif isinstance(step, FillStep):
            await driver.wait_for_selector(page, step.selector, timeout_ms=step.timeout)
            value = substitute_credentials(step.value, credentials)
            await driver.evaluate_in_page(page, FILL_INPUT_SCRIPT, [step.selector, value])

        elif isinstance(step, ClickStep):
            await driver.wait_for_selector(page, step.selector, timeout_ms=step.timeout)
            await driver.click(page, step.selector)

        elif isinstance(step, WaitStep):
            if step.wait_for == "navigation":
                # Navigation is optional: a single-page login may never navigate
                try:
                    await driver.wait_for_navigation(page, timeout_ms=step.timeout)
                except BrowserTimeoutError:
                    pass
            elif step.wait_for == "selector" and step.selector:
                await driver.wait_for_selector(page, step.selector, timeout_ms=step.timeout)
            else:
                await asyncio.sleep(step.timeout / 1000)

        elif isinstance(step, VerifyStep):
            if step.selector:
                await driver.wait_for_selector(page, step.selector, timeout_ms=step.timeout)

        else:
            raise ScriptConfigError(f"Unknown step type: {getattr(step, 'type', step)!r}")


__all__ = [
    "CheckOutcome",
    "LoginHealthChecker",
    "LoginHealthResult",
]
