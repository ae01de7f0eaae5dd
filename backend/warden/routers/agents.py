"""Agent routes module."""

import logging
from typing import List
from typing import Optional

from fastapi import APIRouter
from fastapi import Depends
from fastapi import HTTPException
from fastapi import status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from warden.crud import crud
from warden.database import get_db
from warden.dependencies.auth import get_current_user
from warden.dependencies.browser import get_agent_runner
from warden.events import EventType
from warden.events import event_bus
from warden.managers.agent_runner import INVALID_LOGINS
from warden.managers.agent_runner import INVALID_SCRIPT
from warden.managers.agent_runner import LOGIN_NEEDS_RECONNECT
from warden.managers.agent_runner import AgentRunner
from warden.models.enums import RunTrigger
from warden.models.models import Agent
from warden.models.models import User
from warden.schemas.schemas import AgentCreate
from warden.schemas.schemas import AgentLoginsUpdate
from warden.schemas.schemas import AgentOut
from warden.schemas.schemas import AgentRunOut
from warden.schemas.schemas import AgentRunRequest
from warden.schemas.schemas import AgentRunResultOut
from warden.schemas.schemas import AgentValidationOut
from warden.schemas.schemas import LoginStatusOut
from warden.schemas.schemas import LoginValidationOut
from warden.services.agent_script import AgentScriptError
from warden.services.agent_script import decode_script

logger = logging.getLogger(__name__)

router = APIRouter(tags=["agents"])

# Gate refusals are a precondition failure on the agent's current state
_REFUSAL_STATUS = {
    LOGIN_NEEDS_RECONNECT: status.HTTP_409_CONFLICT,
    INVALID_LOGINS: status.HTTP_409_CONFLICT,
    INVALID_SCRIPT: status.HTTP_400_BAD_REQUEST,
}


def _agent_out(agent: Agent) -> AgentOut:
    return AgentOut(
        id=agent.id,
        name=agent.name,
        description=agent.description,
        status=agent.status,
        script=list(agent.script or []),
        login_ids=[link.login_id for link in agent.login_links],
        last_run_at=agent.last_run_at,
        last_error=agent.last_error,
        created_at=agent.created_at,
        updated_at=agent.updated_at,
    )


def _get_owned_agent_or_404(db: Session, agent_id: int, user: User) -> Agent:
    agent = crud.get_agent(db, agent_id, owner_id=user.id)
    if agent is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agent not found")
    return agent


def _check_logins_owned(db: Session, login_ids: List[int], user: User) -> None:
    for login_id in login_ids:
        if crud.get_login(db, login_id, owner_id=user.id) is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown login id: {login_id}")


@router.post("", response_model=AgentOut, status_code=status.HTTP_201_CREATED)
async def create_agent(payload: AgentCreate, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    """Create an agent; its script is decoded up front so bad scripts never get stored."""
    try:
        decode_script(payload.script)
    except AgentScriptError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    _check_logins_owned(db, payload.login_ids, current_user)
    try:
        agent = crud.create_agent(
            db,
            owner_id=current_user.id,
            name=payload.name,
            description=payload.description,
            script=payload.script,
            login_ids=payload.login_ids,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    await event_bus.publish(EventType.AGENT_CREATED, {"id": agent.id, "name": agent.name})
    return _agent_out(agent)


@router.get("/{agent_id}", response_model=AgentOut)
def read_agent(agent_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return _agent_out(_get_owned_agent_or_404(db, agent_id, current_user))


@router.put("/{agent_id}/logins", response_model=AgentOut)
async def update_agent_logins(
    agent_id: int,
    payload: AgentLoginsUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Replace the attached logins; list order is the validation order."""
    _get_owned_agent_or_404(db, agent_id, current_user)
    _check_logins_owned(db, payload.login_ids, current_user)
    try:
        crud.set_agent_logins(db, agent_id, payload.login_ids)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    await event_bus.publish(EventType.AGENT_UPDATED, {"id": agent_id, "login_ids": payload.login_ids})
    return _agent_out(crud.get_agent(db, agent_id))


@router.get("/{agent_id}/login-status", response_model=List[LoginStatusOut])
def read_agent_login_status(
    agent_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    runner: AgentRunner = Depends(get_agent_runner),
):
    """Effective status of every attached login.  Never writes."""
    _get_owned_agent_or_404(db, agent_id, current_user)
    return [LoginStatusOut.model_validate(view) for view in runner.get_agent_login_status(db, agent_id)]


@router.post("/{agent_id}/validate-logins", response_model=AgentValidationOut)
async def validate_agent_logins(
    agent_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    runner: AgentRunner = Depends(get_agent_runner),
):
    _get_owned_agent_or_404(db, agent_id, current_user)
    results = await runner.validate_agent_logins(db, agent_id)
    return AgentValidationOut(
        all_valid=all(result.is_valid for result in results),
        needs_reconnect=any(result.needs_reconnect for result in results),
        logins=[LoginValidationOut.model_validate(result) for result in results],
    )


@router.post("/{agent_id}/run", response_model=AgentRunResultOut)
async def run_agent(
    agent_id: int,
    payload: Optional[AgentRunRequest] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    runner: AgentRunner = Depends(get_agent_runner),
):
    """Validate every attached login, then replay the agent's script.

    A refused run answers 409 with the offending logins; it is not retried.
    """
    _get_owned_agent_or_404(db, agent_id, current_user)
    result = await runner.execute_agent(db, agent_id, trigger=(payload.trigger if payload else RunTrigger.MANUAL).value)
    body = AgentRunResultOut.model_validate(result)

    refusal_status = _REFUSAL_STATUS.get(result.error_code)
    if refusal_status is not None:
        return JSONResponse(status_code=refusal_status, content=body.model_dump(mode="json"))
    return body


@router.get("/{agent_id}/runs", response_model=List[AgentRunOut])
def read_agent_runs(
    agent_id: int,
    limit: int = 20,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    _get_owned_agent_or_404(db, agent_id, current_user)
    return crud.list_runs(db, agent_id, limit=limit)
