"""Login routes module."""

import logging
from typing import List

from fastapi import APIRouter
from fastapi import Depends
from fastapi import HTTPException
from fastapi import Response
from fastapi import status
from sqlalchemy.orm import Session

from warden.crud import crud
from warden.database import get_db
from warden.dependencies.auth import get_current_user
from warden.dependencies.browser import get_health_checker
from warden.dependencies.browser import get_reconnect_browser
from warden.events import EventType
from warden.events import event_bus
from warden.managers.agent_runner import login_status_view
from warden.models.models import Login
from warden.models.models import User
from warden.schemas.schemas import HealthBatchOut
from warden.schemas.schemas import LoginCreate
from warden.schemas.schemas import LoginCreateOut
from warden.schemas.schemas import LoginHealthOut
from warden.schemas.schemas import LoginOut
from warden.schemas.schemas import LoginStatusOut
from warden.schemas.schemas import LoginUpdate
from warden.schemas.schemas import ReconnectComplete
from warden.schemas.schemas import ReconnectCompleteOut
from warden.schemas.schemas import ReconnectStartOut
from warden.services.login_health import LoginHealthChecker
from warden.services.reconnect import ReconnectBrowser
from warden.services.reconnect import ReconnectError
from warden.services.reconnect import complete_reconnect
from warden.services.reconnect import start_reconnect
from warden.utils.crypto import DecryptionError
from warden.utils.crypto import decrypt
from warden.utils.crypto import mask_secret

logger = logging.getLogger(__name__)

router = APIRouter(tags=["logins"])


# ------------------------------------------------------------
# Helpers
# ------------------------------------------------------------


def _login_out(login: Login) -> LoginOut:
    """Serialise *login*; passwords and tokens never leave the server."""

    try:
        username = decrypt(login.username)
    except DecryptionError:
        username = mask_secret(login.username)

    return LoginOut(
        id=login.id,
        name=login.name,
        login_url=login.login_url,
        username=username,
        password=mask_secret(login.password),
        oauth_token=mask_secret(login.oauth_token),
        template_id=login.template_id,
        custom_config=dict(login.custom_config) if login.custom_config else None,
        status=login.status,
        has_session=bool(login.session_data),
        session_expiry=login.session_expiry,
        last_checked_at=login.last_checked_at,
        last_success_at=login.last_success_at,
        last_failure_at=login.last_failure_at,
        failure_count=login.failure_count or 0,
        error_message=login.error_message,
        created_at=login.created_at,
        updated_at=login.updated_at,
    )


def _get_owned_login_or_404(db: Session, login_id: int, user: User) -> Login:
    login = crud.get_login(db, login_id, owner_id=user.id)
    if login is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Login not found")
    return login


# ------------------------------------------------------------
# Collection
# ------------------------------------------------------------


@router.get("", response_model=List[LoginOut])
def read_logins(
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """List the current user's logins, newest first."""
    return [_login_out(login) for login in crud.get_logins(db, owner_id=current_user.id, skip=skip, limit=limit)]


@router.post("", response_model=LoginCreateOut, status_code=status.HTTP_201_CREATED)
async def create_login(
    payload: LoginCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    checker: LoginHealthChecker = Depends(get_health_checker),
):
    """Store a new login; optionally run one health check right away."""
    if not payload.password and not payload.oauth_token:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Either password or oauth_token is required",
        )

    login = crud.create_login(
        db,
        owner_id=current_user.id,
        name=payload.name,
        login_url=payload.login_url,
        username=payload.username,
        password=payload.password,
        oauth_token=payload.oauth_token,
        template_id=payload.template_id,
        custom_config=payload.custom_config,
    )
    await event_bus.publish(EventType.LOGIN_CREATED, {"id": login.id, "name": login.name})

    health = None
    if payload.test_on_create:
        result = await checker.check_login_health(db, login.id)
        health = LoginHealthOut.model_validate(result)
        db.refresh(login)

    return LoginCreateOut(**_login_out(login).model_dump(), health=health)


@router.post("/health", response_model=HealthBatchOut)
async def check_all_logins(
    db: Session = Depends(get_db),
    checker: LoginHealthChecker = Depends(get_health_checker),
):
    """Run the batch health check now (the daily job runs the same)."""
    results = await checker.check_all_logins(db)
    return HealthBatchOut(
        checked=len(results),
        healthy=sum(1 for result in results if result.success),
        results=[LoginHealthOut.model_validate(result) for result in results],
    )


# ------------------------------------------------------------
# Item
# ------------------------------------------------------------


@router.get("/{login_id}", response_model=LoginOut)
def read_login(login_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return _login_out(_get_owned_login_or_404(db, login_id, current_user))


@router.put("/{login_id}", response_model=LoginOut)
def update_login(
    login_id: int,
    payload: LoginUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    _get_owned_login_or_404(db, login_id, current_user)
    try:
        login = crud.update_login(db, login_id, **payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return _login_out(login)


@router.delete("/{login_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_login(login_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    _get_owned_login_or_404(db, login_id, current_user)
    try:
        crud.delete_login(db, login_id)
    except crud.LoginInUseError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    await event_bus.publish(EventType.LOGIN_DELETED, {"id": login_id})
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ------------------------------------------------------------
# Health
# ------------------------------------------------------------


@router.post("/{login_id}/check", response_model=LoginHealthOut)
async def check_login(
    login_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    checker: LoginHealthChecker = Depends(get_health_checker),
):
    """Run one health check and persist its verdict."""
    _get_owned_login_or_404(db, login_id, current_user)
    result = await checker.check_login_health(db, login_id)
    return LoginHealthOut.model_validate(result)


@router.get("/{login_id}/status", response_model=LoginStatusOut)
def read_login_status(login_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    """Effective status of one login.  Pure read; polled during reconnect."""
    login = _get_owned_login_or_404(db, login_id, current_user)
    return LoginStatusOut.model_validate(login_status_view(login))


# ------------------------------------------------------------
# Reconnect
# ------------------------------------------------------------


@router.post("/{login_id}/reconnect/start", response_model=ReconnectStartOut)
async def reconnect_start(
    login_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    browser: ReconnectBrowser = Depends(get_reconnect_browser),
):
    """Flag the login and open its sign-in page with the credentials pre-filled."""
    _get_owned_login_or_404(db, login_id, current_user)
    instructions = await start_reconnect(db, login_id, browser=browser)
    return ReconnectStartOut.model_validate(instructions)


@router.post("/{login_id}/reconnect/complete", response_model=ReconnectCompleteOut)
async def reconnect_complete(
    login_id: int,
    payload: ReconnectComplete,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    browser: ReconnectBrowser = Depends(get_reconnect_browser),
):
    """Store the session, posted by the client or read from the server-side page."""
    _get_owned_login_or_404(db, login_id, current_user)
    try:
        login = await complete_reconnect(
            db,
            login_id,
            payload.session_data,
            current_url=payload.current_url,
            page_title=payload.page_title,
            browser=browser,
        )
    except ReconnectError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return ReconnectCompleteOut(status=login.status, session_expiry=login.session_expiry)
