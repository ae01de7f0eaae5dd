"""Login scripts: typed steps, the named template registry, and resolution.

A login script is an ordered list of steps.  Each step is one variant of a
tagged union keyed on ``type`` (``navigate | fill | click | wait | verify``)
and is decoded once, when the script is resolved.  Unknown step types or
steps missing their selector therefore fail *before* a browser is opened.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Annotated
from typing import Any
from typing import Dict
from typing import List
from typing import Literal
from typing import Mapping
from typing import Optional
from typing import Union

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import TypeAdapter
from pydantic import ValidationError
from pydantic import field_validator

from warden.utils.crypto import LoginCredentials

logger = logging.getLogger(__name__)


class ScriptConfigError(ValueError):
    """A login script could not be decoded."""


# ---------------------------------------------------------------------------
# Step variants
# ---------------------------------------------------------------------------


class _StepBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    name: str = ""
    # Milliseconds
    timeout: int = Field(default=10_000, ge=0)


class NavigateStep(_StepBase):
    type: Literal["navigate"]
    # Defaults to the login's own URL
    url: Optional[str] = None


class FillStep(_StepBase):
    type: Literal["fill"]
    selector: str = Field(min_length=1)
    # May contain {{username}}, {{password}} or {{oauthToken}}
    value: str = ""


class ClickStep(_StepBase):
    type: Literal["click"]
    selector: str = Field(min_length=1)


class WaitStep(_StepBase):
    type: Literal["wait"]
    wait_for: Literal["navigation", "selector", "timeout", "network"] = Field(default="timeout", alias="waitFor")
    selector: Optional[str] = None


class VerifyStep(_StepBase):
    type: Literal["verify"]
    selector: Optional[str] = None


LoginStep = Annotated[
    Union[NavigateStep, FillStep, ClickStep, WaitStep, VerifyStep],
    Field(discriminator="type"),
]

STEP_TYPES = ("navigate", "fill", "click", "wait", "verify")

_steps_adapter = TypeAdapter(List[LoginStep])


def decode_steps(raw_steps: Any) -> List[LoginStep]:
    """Validate raw JSON steps into typed variants or raise ScriptConfigError."""

    if not isinstance(raw_steps, list):
        raise ScriptConfigError("Login steps must be a list")

    for index, raw in enumerate(raw_steps):
        if not isinstance(raw, Mapping):
            raise ScriptConfigError(f"Login step {index} must be an object")
        if raw.get("type") not in STEP_TYPES:
            raise ScriptConfigError(f"Unknown step type: {raw.get('type')}")

    try:
        return _steps_adapter.validate_python(raw_steps)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise ScriptConfigError(f"Invalid login step ({location}): {first['msg']}") from exc


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


class TemplateField(BaseModel):
    name: str
    selector: str
    type: str = "text"
    required: bool = True


class LoginTemplate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    description: str = ""
    login_url: str = Field(default="", alias="loginUrl")
    steps: List[LoginStep] = Field(default_factory=list)
    fields: List[TemplateField] = Field(default_factory=list)
    success_url_pattern: Optional[str] = Field(default=None, alias="successUrlPattern")
    error_url_pattern: Optional[str] = Field(default=None, alias="errorUrlPattern")

    @field_validator("steps", mode="before")
    @classmethod
    def _decode_steps(cls, value: Any) -> Any:
        return decode_steps(value if value is not None else [])

    @field_validator("success_url_pattern", "error_url_pattern")
    @classmethod
    def _compile_pattern(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid URL pattern {value!r}: {exc}") from exc
        return value


def _form_template(
    template_id: str,
    name: str,
    description: str,
    login_url: str,
    username_selector: str,
    password_selector: str,
    submit_selector: str,
    *,
    next_selector: Optional[str] = None,
    username_field: str = "email",
    success_url_pattern: str = "",
    error_url_pattern: str = "",
) -> Dict[str, Any]:
    steps: List[Dict[str, Any]] = [
        {"name": "Navigate to login", "type": "navigate", "timeout": 10_000},
        {"name": "Enter username", "type": "fill", "selector": username_selector, "value": "{{username}}"},
    ]
    if next_selector:
        steps.append({"name": "Click next", "type": "click", "selector": next_selector, "timeout": 5_000})
    steps += [
        {"name": "Enter password", "type": "fill", "selector": password_selector, "value": "{{password}}"},
        {"name": "Sign in", "type": "click", "selector": submit_selector, "timeout": 5_000},
        {"name": "Wait for result", "type": "wait", "waitFor": "navigation", "timeout": 15_000},
    ]
    return {
        "id": template_id,
        "name": name,
        "description": description,
        "loginUrl": login_url,
        "steps": steps,
        "fields": [
            {"name": username_field, "selector": username_selector, "type": username_field},
            {"name": "password", "selector": password_selector, "type": "password"},
        ],
        "successUrlPattern": success_url_pattern,
        "errorUrlPattern": error_url_pattern,
    }


_TEMPLATE_DEFINITIONS = [
    _form_template(
        "google",
        "Google",
        "Google Workspace login (Gmail, Drive, Docs, etc.)",
        "https://accounts.google.com/signin",
        'input[type="email"], input[name="identifier"], #identifierId',
        'input[type="password"], input[name="password"], #password',
        '#passwordNext, button[type="submit"], [data-primary-action="signIn"]',
        next_selector='#identifierNext, button[type="submit"], [data-primary-action="next"]',
        success_url_pattern="docs.google.com|slides.google.com|drive.google.com",
        error_url_pattern="accounts.google.com/signin.*error",
    ),
    _form_template(
        "microsoft",
        "Microsoft",
        "Microsoft 365 login (Outlook, Teams, OneDrive, etc.)",
        "https://login.microsoftonline.com",
        'input[type="email"], input[name="loginfmt"]',
        'input[type="password"], input[name="passwd"]',
        'input[type="submit"], button[type="submit"]',
        next_selector='input[type="submit"], button[type="submit"]',
        success_url_pattern="outlook.office.com|teams.microsoft.com|onedrive.live.com",
        error_url_pattern="login.microsoftonline.com.*error",
    ),
    _form_template(
        "github",
        "GitHub",
        "GitHub login",
        "https://github.com/login",
        'input[name="login"]',
        'input[name="password"]',
        'input[type="submit"], button[type="submit"]',
        username_field="username",
        success_url_pattern="github.com/(?!login)",
        error_url_pattern="github.com/login.*error",
    ),
    _form_template(
        "slack",
        "Slack",
        "Slack workspace login",
        "https://slack.com/signin",
        'input[type="email"], input[name="email"]',
        'input[type="password"], input[name="password"]',
        'button[type="submit"], input[type="submit"]',
        next_selector='button[type="submit"], input[type="submit"]',
        success_url_pattern="app.slack.com",
        error_url_pattern="slack.com/signin.*error",
    ),
    # Generic auto-detect fallback: common username/password/submit selectors
    _form_template(
        "custom",
        "Custom Form",
        "Generic form-based login",
        "",
        'input[type="text"], input[name="username"], input[name="email"]',
        'input[type="password"], input[name="password"]',
        'button[type="submit"], input[type="submit"]',
        username_field="username",
    ),
]

LOGIN_TEMPLATES: Dict[str, LoginTemplate] = {
    definition["id"]: LoginTemplate.model_validate(definition) for definition in _TEMPLATE_DEFINITIONS
}


def get_template(template_id: str) -> Optional[LoginTemplate]:
    return LOGIN_TEMPLATES.get(template_id)


def list_templates() -> List[LoginTemplate]:
    return list(LOGIN_TEMPLATES.values())


def parse_custom_config(config: Any, *, login_url: str = "") -> LoginTemplate:
    """Decode a user-defined ``{steps, fields, successUrlPattern, errorUrlPattern}`` config."""

    if isinstance(config, str):
        try:
            config = json.loads(config)
        except json.JSONDecodeError as exc:
            raise ScriptConfigError(f"Custom login config is not valid JSON: {exc.msg}") from exc

    if not isinstance(config, Mapping):
        raise ScriptConfigError("Custom login config must be an object")

    try:
        return LoginTemplate.model_validate(
            {
                "id": "custom",
                "name": "Custom",
                "description": "Custom login configuration",
                "loginUrl": login_url,
                "steps": config.get("steps") or [],
                "fields": config.get("fields") or [],
                "successUrlPattern": config.get("successUrlPattern"),
                "errorUrlPattern": config.get("errorUrlPattern"),
            }
        )
    except ScriptConfigError:
        raise
    except ValidationError as exc:
        first = exc.errors()[0]
        # Step errors are raised from the validator as ScriptConfigError (a ValueError)
        message = first.get("ctx", {}).get("error")
        raise ScriptConfigError(str(message) if message else f"Invalid custom login config: {first['msg']}") from exc


def resolve_template(
    template_id: Optional[str],
    custom_config: Any,
    login_url: str,
) -> LoginTemplate:
    """Pick the login script for a login.

    Named template (when recognised) → custom config → generic auto-detect
    fallback.  Raises :class:`ScriptConfigError` for an undecodable config.
    """

    if template_id and template_id != "custom":
        template = get_template(template_id)
        if template is not None:
            return template.model_copy(update={"login_url": login_url})
        logger.warning("Unknown login template %r – falling back", template_id)

    if custom_config:
        return parse_custom_config(custom_config, login_url=login_url)

    fallback = LOGIN_TEMPLATES["custom"]
    return fallback.model_copy(
        update={
            "description": "Auto-detected form login",
            "login_url": login_url,
            "success_url_pattern": None,
            "error_url_pattern": None,
        }
    )


_PLACEHOLDERS = {
    "{{username}}": lambda c: c.username,
    "{{password}}": lambda c: c.password or "",
    "{{oauthToken}}": lambda c: c.oauth_token or "",
}


def substitute_credentials(value: str, credentials: LoginCredentials) -> str:
    """Replace ``{{username}}``/``{{password}}``/``{{oauthToken}}`` in a step value."""

    for placeholder, getter in _PLACEHOLDERS.items():
        if placeholder in value:
            value = value.replace(placeholder, getter(credentials))
    return value


__all__ = [
    "ScriptConfigError",
    "NavigateStep",
    "FillStep",
    "ClickStep",
    "WaitStep",
    "VerifyStep",
    "LoginStep",
    "STEP_TYPES",
    "LoginTemplate",
    "TemplateField",
    "LOGIN_TEMPLATES",
    "decode_steps",
    "get_template",
    "list_templates",
    "parse_custom_config",
    "resolve_template",
    "substitute_credentials",
]
