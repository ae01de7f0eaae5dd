"""Persistence helpers for logins, agents and run history.

Service layers call these helpers instead of touching SQLAlchemy directly so
that every write to a login's health fields goes through one place
(:func:`update_login_status`).
"""

# Keep stdlib ``datetime`` for type annotations; runtime *now()* comes from
# ``utc_now_naive``.
from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Sequence

from sqlalchemy.orm import Session

from warden.models.enums import AgentStatus
from warden.models.enums import LoginStatus
from warden.models.enums import RunStatus
from warden.models.enums import RunTrigger
from warden.models.models import Agent
from warden.models.models import AgentLogin
from warden.models.models import AgentRun
from warden.models.models import Login
from warden.models.models import User
from warden.utils.crypto import encrypt
from warden.utils.crypto import encrypt_optional
from warden.utils.time import as_naive_utc
from warden.utils.time import utc_now_naive


class LoginInUseError(ValueError):
    """Raised when deleting a login that is still attached to an agent."""

    def __init__(self, login_id: int, agent_count: int):
        super().__init__("Cannot delete login that is being used by agents")
        self.login_id = login_id
        self.agent_count = agent_count


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(User.email == email).first()


def get_or_create_user(db: Session, email: str, *, display_name: Optional[str] = None) -> User:
    """Return the user row for *email*, inserting it on first use."""

    user = get_user_by_email(db, email)
    if user is not None:
        return user

    user = User(email=email, display_name=display_name)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


# ---------------------------------------------------------------------------
# Logins
# ---------------------------------------------------------------------------


def get_login(db: Session, login_id: int, *, owner_id: Optional[int] = None) -> Optional[Login]:
    query = db.query(Login).filter(Login.id == login_id)
    if owner_id is not None:
        query = query.filter(Login.owner_id == owner_id)
    return query.first()


def get_logins(db: Session, *, owner_id: Optional[int] = None, skip: int = 0, limit: int = 100) -> List[Login]:
    """Return logins newest first, optionally limited to one owner."""

    query = db.query(Login)
    if owner_id is not None:
        query = query.filter(Login.owner_id == owner_id)
    return query.order_by(Login.created_at.desc(), Login.id.desc()).offset(skip).limit(limit).all()


def get_all_login_ids(db: Session) -> List[int]:
    """Return every login id in insertion order (batch health checks)."""

    return [row[0] for row in db.query(Login.id).order_by(Login.id).all()]


def create_login(
    db: Session,
    *,
    owner_id: int,
    name: str,
    login_url: str,
    username: str,
    password: Optional[str] = None,
    oauth_token: Optional[str] = None,
    template_id: Optional[str] = None,
    custom_config: Optional[Dict[str, Any]] = None,
) -> Login:
    """Insert a login; the plaintext credentials are encrypted here."""

    login = Login(
        owner_id=owner_id,
        name=name,
        login_url=login_url,
        username=encrypt(username),
        password=encrypt_optional(password),
        oauth_token=encrypt_optional(oauth_token),
        template_id=template_id,
        custom_config=custom_config,
        status=LoginStatus.UNKNOWN,
        failure_count=0,
    )
    db.add(login)
    db.commit()
    db.refresh(login)
    return login


_CREDENTIAL_FIELDS = ("username", "password", "oauth_token")
_PLAIN_FIELDS = ("name", "login_url", "template_id", "custom_config")


def update_login(db: Session, login_id: int, **fields: Any) -> Optional[Login]:
    """Partial update. Credential fields are re-encrypted; ``None`` clears them.

    Changing credentials or the login script marks the login ``NEEDS_TESTING``
    so the next health check re-validates it.
    """

    login = get_login(db, login_id)
    if login is None:
        return None

    needs_testing = False
    for key, value in fields.items():
        if key in _CREDENTIAL_FIELDS:
            if key == "username":
                if not value:
                    raise ValueError("username cannot be empty")
                login.username = encrypt(value)
            else:
                setattr(login, key, encrypt_optional(value))
            needs_testing = True
        elif key in _PLAIN_FIELDS:
            setattr(login, key, value)
            needs_testing = needs_testing or key in {"login_url", "template_id", "custom_config"}
        else:
            raise ValueError(f"Unknown login field: {key}")

    if needs_testing:
        login.status = LoginStatus.NEEDS_TESTING
        login.error_message = None

    db.commit()
    db.refresh(login)
    return login


def update_login_status(
    db: Session,
    login_id: int,
    *,
    status: LoginStatus,
    success: bool,
    error_message: Optional[str] = None,
    checked_at: Optional[datetime] = None,
) -> Optional[Login]:
    """Persist the outcome of one health check.

    Always writes ``last_checked_at``, ``status`` and ``error_message``.  A
    success stamps ``last_success_at`` and resets ``failure_count`` to 0; a
    failure stamps ``last_failure_at`` and increments ``failure_count`` by
    exactly one (as a SQL expression, so concurrent writers never lose an
    increment).  No other code path changes ``failure_count``.
    """

    now = as_naive_utc(checked_at) if checked_at else utc_now_naive()

    values: Dict[Any, Any] = {
        Login.last_checked_at: now,
        Login.status: LoginStatus(status),
        Login.error_message: error_message,
    }
    if success:
        values[Login.last_success_at] = now
        values[Login.failure_count] = 0
    else:
        values[Login.last_failure_at] = now
        values[Login.failure_count] = Login.failure_count + 1

    updated = db.query(Login).filter(Login.id == login_id).update(values, synchronize_session=False)
    db.commit()
    if not updated:
        return None

    login = get_login(db, login_id)
    db.refresh(login)
    return login


def mark_reconnect_in_progress(db: Session, login_id: int) -> Optional[Login]:
    login = get_login(db, login_id)
    if login is None:
        return None

    login.status = LoginStatus.NEEDS_RECONNECT
    login.last_checked_at = utc_now_naive()
    login.error_message = "Reconnection in progress"
    db.commit()
    db.refresh(login)
    return login


def store_login_session(
    db: Session,
    login_id: int,
    *,
    session_data: str,
    session_expiry: Optional[datetime],
) -> Optional[Login]:
    """Save a freshly captured (encrypted) session and mark the login healthy."""

    login = get_login(db, login_id)
    if login is None:
        return None

    now = utc_now_naive()
    login.session_data = session_data
    login.session_expiry = as_naive_utc(session_expiry) if session_expiry else None
    login.status = LoginStatus.ACTIVE
    login.last_checked_at = now
    login.last_success_at = now
    login.last_failure_at = None
    login.failure_count = 0
    login.error_message = None
    db.commit()
    db.refresh(login)
    return login


def count_agent_references(db: Session, login_id: int) -> int:
    return db.query(AgentLogin).filter(AgentLogin.login_id == login_id).count()


def delete_login(db: Session, login_id: int) -> bool:
    """Delete a login unless an agent still references it.

    Returns ``False`` when the login does not exist and raises
    :class:`LoginInUseError` when it is attached to any agent.
    """

    login = get_login(db, login_id)
    if login is None:
        return False

    references = count_agent_references(db, login_id)
    if references > 0:
        raise LoginInUseError(login_id, references)

    db.delete(login)
    db.commit()
    return True


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


def get_agent(db: Session, agent_id: int, *, owner_id: Optional[int] = None) -> Optional[Agent]:
    query = db.query(Agent).filter(Agent.id == agent_id)
    if owner_id is not None:
        query = query.filter(Agent.owner_id == owner_id)
    return query.first()


def create_agent(
    db: Session,
    *,
    owner_id: int,
    name: str,
    script: Optional[List[Dict[str, Any]]] = None,
    description: Optional[str] = None,
    login_ids: Sequence[int] = (),
) -> Agent:
    agent = Agent(
        owner_id=owner_id,
        name=name,
        description=description,
        script=list(script or []),
        status=AgentStatus.IDLE,
    )
    db.add(agent)
    db.commit()
    db.refresh(agent)

    if login_ids:
        set_agent_logins(db, agent.id, login_ids)
        db.refresh(agent)
    return agent


def set_agent_logins(db: Session, agent_id: int, login_ids: Sequence[int]) -> List[Login]:
    """Replace the agent's login attachments, preserving the given order."""

    if len(set(login_ids)) != len(login_ids):
        raise ValueError("Duplicate login ids")

    found = {row.id for row in db.query(Login.id).filter(Login.id.in_(list(login_ids))).all()}
    missing = [lid for lid in login_ids if lid not in found]
    if missing:
        raise ValueError(f"Unknown login ids: {missing}")

    db.query(AgentLogin).filter(AgentLogin.agent_id == agent_id).delete(synchronize_session=False)
    for position, login_id in enumerate(login_ids):
        db.add(AgentLogin(agent_id=agent_id, login_id=login_id, position=position))
    db.commit()
    db.expire_all()
    return get_agent_logins(db, agent_id)


def get_agent_logins(db: Session, agent_id: int) -> List[Login]:
    """Return the logins attached to *agent_id* in attachment order."""

    return (
        db.query(Login)
        .join(AgentLogin, AgentLogin.login_id == Login.id)
        .filter(AgentLogin.agent_id == agent_id)
        .order_by(AgentLogin.position, AgentLogin.id)
        .all()
    )


def update_agent_status(
    db: Session,
    agent_id: int,
    *,
    status: AgentStatus,
    last_error: Optional[str] = None,
    last_run_at: Optional[datetime] = None,
) -> Optional[Agent]:
    agent = get_agent(db, agent_id)
    if agent is None:
        return None

    agent.status = status
    agent.last_error = last_error
    if last_run_at is not None:
        agent.last_run_at = as_naive_utc(last_run_at)
    db.commit()
    db.refresh(agent)
    return agent


# ---------------------------------------------------------------------------
# Agent runs
# ---------------------------------------------------------------------------


def create_run(
    db: Session,
    *,
    agent_id: int,
    trigger: str = "manual",
    status: str = "queued",
) -> AgentRun:
    """Insert a new *AgentRun* row."""

    try:
        trigger_enum = RunTrigger(trigger)
    except ValueError:
        raise ValueError(f"Invalid run trigger: {trigger}")
    try:
        status_enum = RunStatus(status)
    except ValueError:
        raise ValueError(f"Invalid run status: {status}")

    run_row = AgentRun(agent_id=agent_id, trigger=trigger_enum, status=status_enum)
    db.add(run_row)
    db.commit()
    db.refresh(run_row)
    return run_row


def mark_running(db: Session, run_id: int, *, started_at: Optional[datetime] = None) -> Optional[AgentRun]:
    row = db.query(AgentRun).filter(AgentRun.id == run_id).first()
    if row is None:
        return None

    row.status = RunStatus.RUNNING
    row.started_at = as_naive_utc(started_at) if started_at else utc_now_naive()
    db.commit()
    db.refresh(row)
    return row


def mark_finished(
    db: Session,
    run_id: int,
    *,
    finished_at: Optional[datetime] = None,
    duration_ms: Optional[int] = None,
    logs: Optional[Dict[str, Any]] = None,
) -> Optional[AgentRun]:
    row = db.query(AgentRun).filter(AgentRun.id == run_id).first()
    if row is None:
        return None

    finished_at = as_naive_utc(finished_at) if finished_at else utc_now_naive()
    if row.started_at and duration_ms is None:
        duration_ms = int((finished_at - row.started_at).total_seconds() * 1000)

    row.status = RunStatus.SUCCESS
    row.finished_at = finished_at
    row.duration_ms = duration_ms
    row.logs = logs

    db.commit()
    db.refresh(row)
    return row


def mark_failed(
    db: Session,
    run_id: int,
    *,
    finished_at: Optional[datetime] = None,
    duration_ms: Optional[int] = None,
    error: Optional[str] = None,
    logs: Optional[Dict[str, Any]] = None,
) -> Optional[AgentRun]:
    row = db.query(AgentRun).filter(AgentRun.id == run_id).first()
    if row is None:
        return None

    finished_at = as_naive_utc(finished_at) if finished_at else utc_now_naive()
    if row.started_at and duration_ms is None:
        duration_ms = int((finished_at - row.started_at).total_seconds() * 1000)

    row.status = RunStatus.FAILED
    row.finished_at = finished_at
    row.duration_ms = duration_ms
    row.error = error
    row.logs = logs

    db.commit()
    db.refresh(row)
    return row


def list_runs(db: Session, agent_id: int, *, limit: int = 20) -> List[AgentRun]:
    """Return the most recent runs for *agent_id* ordered DESC by id."""
    return db.query(AgentRun).filter(AgentRun.agent_id == agent_id).order_by(AgentRun.id.desc()).limit(limit).all()
