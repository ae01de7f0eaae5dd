from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from warden.models.enums import AgentStatus
from warden.models.enums import LoginStatus
from warden.models.enums import RunStatus
from warden.models.enums import RunTrigger


# ------------------------------------------------------------
# Login schemas
# ------------------------------------------------------------


class LoginCreate(BaseModel):
    name: str = Field(min_length=1)
    login_url: str = Field(min_length=1)
    username: str = Field(min_length=1)
    password: Optional[str] = None
    oauth_token: Optional[str] = None
    template_id: Optional[str] = None
    custom_config: Optional[Dict[str, Any]] = None
    # Run one health check right after creation
    test_on_create: bool = False


class LoginUpdate(BaseModel):
    name: Optional[str] = None
    login_url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    oauth_token: Optional[str] = None
    template_id: Optional[str] = None
    custom_config: Optional[Dict[str, Any]] = None


class LoginOut(BaseModel):
    """Login as returned by the API.  Credentials are always masked."""

    id: int
    name: str
    login_url: str
    username: str
    password: Optional[str] = None
    oauth_token: Optional[str] = None
    template_id: Optional[str] = None
    custom_config: Optional[Dict[str, Any]] = None
    status: LoginStatus
    has_session: bool = False
    session_expiry: Optional[datetime] = None
    last_checked_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    failure_count: int = 0
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class LoginHealthOut(BaseModel):
    login_id: Optional[int] = None
    success: bool
    status: LoginStatus
    error_message: Optional[str] = None
    response_time_ms: int
    last_checked: datetime
    needs_reconnect: bool = False

    model_config = ConfigDict(from_attributes=True)


class LoginCreateOut(LoginOut):
    health: Optional[LoginHealthOut] = None


class LoginStatusOut(BaseModel):
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

    model_config = ConfigDict(from_attributes=True)


class HealthBatchOut(BaseModel):
    checked: int
    healthy: int
    results: List[LoginHealthOut]


# ------------------------------------------------------------
# Reconnect
# ------------------------------------------------------------


class ReconnectStartOut(BaseModel):
    login_id: int
    reconnect_session_id: str
    login_url: str
    prefill_selectors: List[str] = []
    steps: List[str] = []
    browser_opened: bool = False
    status: LoginStatus = LoginStatus.NEEDS_RECONNECT

    model_config = ConfigDict(from_attributes=True)


class ReconnectComplete(BaseModel):
    # Captured browser session: {cookies, localStorage, sessionStorage, userAgent}.
    # Omit it to capture from the page opened by reconnect/start.
    session_data: Optional[Dict[str, Any]] = None
    current_url: Optional[str] = None
    page_title: str = ""


class ReconnectCompleteOut(BaseModel):
    success: bool = True
    status: LoginStatus
    session_expiry: Optional[datetime] = None
    message: str = "Reconnection completed successfully"


# ------------------------------------------------------------
# Login templates
# ------------------------------------------------------------


class TemplateFieldOut(BaseModel):
    name: str
    selector: str
    type: str
    required: bool

    model_config = ConfigDict(from_attributes=True)


class LoginTemplateOut(BaseModel):
    id: str
    name: str
    description: str
    login_url: str
    steps: List[Dict[str, Any]]
    fields: List[TemplateFieldOut]
    success_url_pattern: Optional[str] = None
    error_url_pattern: Optional[str] = None


# ------------------------------------------------------------
# Agent schemas
# ------------------------------------------------------------


class AgentCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    script: List[Dict[str, Any]] = []
    login_ids: List[int] = []


class AgentLoginsUpdate(BaseModel):
    login_ids: List[int]


class AgentOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    status: AgentStatus
    script: List[Dict[str, Any]] = []
    login_ids: List[int] = []
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class LoginValidationOut(BaseModel):
    login_id: int
    login_name: str
    is_valid: bool
    needs_reconnect: bool
    error_message: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class AgentValidationOut(BaseModel):
    all_valid: bool
    needs_reconnect: bool
    logins: List[LoginValidationOut]


class AgentRunResultOut(BaseModel):
    success: bool
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    logins: List[LoginValidationOut] = []
    run_id: Optional[int] = None
    logs: List[Dict[str, Any]] = []

    model_config = ConfigDict(from_attributes=True)


class AgentRunRequest(BaseModel):
    trigger: RunTrigger = RunTrigger.MANUAL


class AgentRunOut(BaseModel):
    id: int
    agent_id: int
    status: RunStatus
    trigger: RunTrigger
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    logs: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(from_attributes=True)
