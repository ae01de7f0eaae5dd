"""AgentRunner – login gate in front of every agent execution.

An agent depends on the logins attached to it.  Before its action script is
replayed, every one of those logins is validated in attachment order:

1. expired session → needs reconnect
2. stored ``NEEDS_RECONNECT`` / ``DISCONNECTED`` → needs reconnect
3. stored ``BROKEN`` / ``EXPIRED`` / ``SUSPENDED`` → invalid, credentials must be fixed
4. ``ACTIVE`` with a stored session → the session is replayed and probed
5. otherwise → valid

A refusal is a hard precondition failure returned as an
:class:`AgentRunResult`; it is never retried and no ``AgentRun`` row is
written for it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from sqlalchemy.orm import Session

from warden.browser.driver import BrowserDriver
from warden.config import get_settings
from warden.crud import crud
from warden.events import EventType
from warden.events import event_bus
from warden.models.enums import CREDENTIAL_FAILURE_STATUSES
from warden.models.enums import RECONNECT_LOGIN_STATUSES
from warden.models.enums import AgentStatus
from warden.models.enums import LoginStatus
from warden.models.models import Login
from warden.services.agent_script import AgentScriptError
from warden.services.agent_script import AgentScriptExecutor
from warden.services.agent_script import decode_script
from warden.services.session_manager import SessionReplayError
from warden.services.session_manager import is_expired
from warden.services.session_manager import replay_session
from warden.utils.crypto import DecryptionError
from warden.utils.crypto import LoginCredentials
from warden.utils.crypto import decrypt_login_credentials
from warden.utils.time import utc_now

logger = logging.getLogger(__name__)

LOGIN_NEEDS_RECONNECT = "LOGIN_NEEDS_RECONNECT"
INVALID_LOGINS = "INVALID_LOGINS"
AGENT_NOT_FOUND = "AGENT_NOT_FOUND"
INVALID_SCRIPT = "INVALID_SCRIPT"
EXECUTION_FAILED = "EXECUTION_FAILED"


@dataclass
class LoginValidationResult:
    login_id: int
    login_name: str
    is_valid: bool
    needs_reconnect: bool
    error_message: Optional[str] = None


@dataclass
class AgentRunResult:
    success: bool
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    logins: List[LoginValidationResult] = field(default_factory=list)
    run_id: Optional[int] = None
    logs: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class LoginStatusView:
    """Read-only health view of one attached login."""

    login_id: int
    login_name: str
    status: LoginStatus
    effective_status: LoginStatus
    is_expired: bool
    needs_reconnect: bool
    failure_count: int
    error_message: Optional[str] = None
    session_expiry: Optional[datetime] = None
    last_checked_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None


def effective_status(login: Login) -> LoginStatus:
    """Stored status, with ``ACTIVE`` read as ``DISCONNECTED`` once the session expired."""

    if login.status == LoginStatus.ACTIVE and is_expired(login.session_expiry):
        return LoginStatus.DISCONNECTED
    return LoginStatus(login.status)


def login_status_view(login: Login) -> LoginStatusView:
    expired = is_expired(login.session_expiry)
    status = effective_status(login)
    return LoginStatusView(
        login_id=login.id,
        login_name=login.name,
        status=LoginStatus(login.status),
        effective_status=status,
        is_expired=expired,
        needs_reconnect=expired or status in RECONNECT_LOGIN_STATUSES,
        failure_count=login.failure_count or 0,
        error_message=login.error_message,
        session_expiry=login.session_expiry,
        last_checked_at=login.last_checked_at,
        last_success_at=login.last_success_at,
        last_failure_at=login.last_failure_at,
    )


class AgentRunner:
    """Validate an agent's logins and, when they all pass, run its script."""

    def __init__(
        self,
        driver: BrowserDriver,
        *,
        executor: Optional[AgentScriptExecutor] = None,
        probe_timeout_ms: Optional[int] = None,
    ):
        self.driver = driver
        self.executor = executor or AgentScriptExecutor(driver)
        self.probe_timeout_ms = (
            probe_timeout_ms if probe_timeout_ms is not None else get_settings().session_probe_timeout_ms
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def validate_login(self, login: Login) -> LoginValidationResult:
        def result(is_valid: bool, needs_reconnect: bool, message: Optional[str] = None) -> LoginValidationResult:
            return LoginValidationResult(
                login_id=login.id,
                login_name=login.name,
                is_valid=is_valid,
                needs_reconnect=needs_reconnect,
                error_message=message,
            )

        if is_expired(login.session_expiry):
            return result(False, True, "Login requires reconnection: Session expired")

        status = LoginStatus(login.status)
        if status in RECONNECT_LOGIN_STATUSES:
            return result(False, True, f"Login requires reconnection: {login.error_message or 'Session invalid'}")

        if status in CREDENTIAL_FAILURE_STATUSES:
            return result(False, False, f"Login is {status.value.lower()}: {login.error_message or 'Cannot proceed'}")

        if login.session_data and status == LoginStatus.ACTIVE:
            try:
                probe = await replay_session(
                    self.driver,
                    login.session_data,
                    login.login_url,
                    timeout_ms=self.probe_timeout_ms,
                )
            except SessionReplayError as exc:
                return result(False, True, f"Login requires reconnection: {exc}")
            if not probe.is_valid:
                return result(False, probe.needs_reconnect, f"Login requires reconnection: {probe.error_message}")

        return result(True, False)

    async def validate_agent_logins(self, db: Session, agent_id: int) -> List[LoginValidationResult]:
        results = []
        for login in crud.get_agent_logins(db, agent_id):
            try:
                results.append(await self.validate_login(login))
            except Exception as exc:  # noqa: BLE001 – reported per login
                logger.exception("Validation of login %s failed", login.id)
                results.append(
                    LoginValidationResult(
                        login_id=login.id,
                        login_name=login.name,
                        is_valid=False,
                        needs_reconnect=False,
                        error_message=str(exc) or "Validation failed",
                    )
                )
        return results

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_agent(self, db: Session, agent_id: int, *, trigger: str = "manual") -> AgentRunResult:
        agent = crud.get_agent(db, agent_id)
        if agent is None:
            return AgentRunResult(success=False, error_message="Agent not found", error_code=AGENT_NOT_FOUND)

        validations = await self.validate_agent_logins(db, agent_id)

        reconnect = [v.login_name for v in validations if v.needs_reconnect]
        if reconnect:
            message = (
                f"Login requires reconnect (2FA needed): {', '.join(reconnect)}. "
                "Please reconnect these logins before running the agent."
            )
            logger.info("Agent %s refused: %s", agent_id, message)
            return AgentRunResult(
                success=False, error_message=message, error_code=LOGIN_NEEDS_RECONNECT, logins=validations
            )

        invalid = [v.login_name for v in validations if not v.is_valid]
        if invalid:
            message = f"Invalid logins: {', '.join(invalid)}. Please fix these logins before running the agent."
            logger.info("Agent %s refused: %s", agent_id, message)
            return AgentRunResult(success=False, error_message=message, error_code=INVALID_LOGINS, logins=validations)

        try:
            actions = decode_script(agent.script)
        except AgentScriptError as exc:
            return AgentRunResult(success=False, error_message=str(exc), error_code=INVALID_SCRIPT, logins=validations)

        credentials = self._first_login_credentials(db, agent_id)

        run_row = crud.create_run(db, agent_id=agent_id, trigger=trigger, status="queued")
        await event_bus.publish(
            EventType.RUN_CREATED,
            {"event_type": "run_created", "agent_id": agent_id, "run_id": run_row.id, "status": "queued"},
        )

        start_ts = utc_now()
        crud.mark_running(db, run_row.id, started_at=start_ts)
        crud.update_agent_status(db, agent_id, status=AgentStatus.RUNNING)
        await event_bus.publish(
            EventType.RUN_UPDATED,
            {
                "event_type": "run_updated",
                "agent_id": agent_id,
                "run_id": run_row.id,
                "status": "running",
                "started_at": start_ts.isoformat(),
            },
        )
        await event_bus.publish(EventType.AGENT_UPDATED, {"id": agent_id, "status": AgentStatus.RUNNING.value})

        script_result = await self.executor.run(actions, credentials)

        end_ts = utc_now()
        duration_ms = int((end_ts - start_ts).total_seconds() * 1000)
        logs = {"actions": script_result.logs, "downloads": script_result.downloads}

        if script_result.success:
            crud.mark_finished(db, run_row.id, finished_at=end_ts, duration_ms=duration_ms, logs=logs)
            crud.update_agent_status(db, agent_id, status=AgentStatus.IDLE, last_run_at=end_ts)
            run_status, agent_status = "success", AgentStatus.IDLE
        else:
            crud.mark_failed(
                db, run_row.id, finished_at=end_ts, duration_ms=duration_ms, error=script_result.error, logs=logs
            )
            crud.update_agent_status(
                db, agent_id, status=AgentStatus.ERROR, last_error=script_result.error, last_run_at=end_ts
            )
            run_status, agent_status = "failed", AgentStatus.ERROR

        await event_bus.publish(
            EventType.RUN_UPDATED,
            {
                "event_type": "run_updated",
                "agent_id": agent_id,
                "run_id": run_row.id,
                "status": run_status,
                "finished_at": end_ts.isoformat(),
                "duration_ms": duration_ms,
                "error": script_result.error,
            },
        )
        await event_bus.publish(
            EventType.AGENT_UPDATED,
            {"id": agent_id, "status": agent_status.value, "last_error": script_result.error},
        )

        return AgentRunResult(
            success=script_result.success,
            error_message=script_result.error,
            error_code=None if script_result.success else EXECUTION_FAILED,
            logins=validations,
            run_id=run_row.id,
            logs=script_result.logs,
        )

    def _first_login_credentials(self, db: Session, agent_id: int) -> Optional[LoginCredentials]:
        logins = crud.get_agent_logins(db, agent_id)
        if not logins:
            return None
        first = logins[0]
        try:
            return decrypt_login_credentials(first.username, first.password, first.oauth_token)
        except DecryptionError:
            logger.error("Credentials of login %s could not be decrypted", first.id)
            return None

    # ------------------------------------------------------------------
    # Read-only view
    # ------------------------------------------------------------------

    def get_agent_login_status(self, db: Session, agent_id: int) -> List[LoginStatusView]:
        """Effective status of each attached login; never writes."""

        return [login_status_view(login) for login in crud.get_agent_logins(db, agent_id)]


__all__ = [
    "AgentRunResult",
    "AgentRunner",
    "LoginStatusView",
    "LoginValidationResult",
    "effective_status",
    "login_status_view",
    "AGENT_NOT_FOUND",
    "EXECUTION_FAILED",
    "INVALID_LOGINS",
    "INVALID_SCRIPT",
    "LOGIN_NEEDS_RECONNECT",
]
