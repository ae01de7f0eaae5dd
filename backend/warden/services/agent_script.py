"""Agent action scripts.

``Agent.script`` is a JSON list of actions.  Each entry is either keyed
(``{"action": "click", "selector": "#go"}``) or positional
(``{"action": "click", "params": ["#go"]}``).  Both forms decode into the same
typed action, once, before the browser is touched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
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

from warden.browser.driver import BrowserDriver
from warden.constants import FILL_INPUT_SCRIPT
from warden.constants import NAVIGATION_TIMEOUT_MS
from warden.utils.crypto import LoginCredentials

logger = logging.getLogger(__name__)


class AgentScriptError(ValueError):
    """An agent script could not be decoded."""


class _ActionBase(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class GotoAction(_ActionBase):
    action: Literal["goto"]
    url: str = Field(min_length=1)


class ClickAction(_ActionBase):
    action: Literal["click"]
    selector: str = Field(min_length=1)


class TypeAction(_ActionBase):
    action: Literal["type"]
    selector: str = Field(min_length=1)
    value: str


class WaitForSelectorAction(_ActionBase):
    action: Literal["waitForSelector"]
    selector: str = Field(min_length=1)
    timeout: int = Field(default=10_000, gt=0)


class DownloadAction(_ActionBase):
    action: Literal["download"]
    selector: str = Field(min_length=1)
    timeout: int = Field(default=NAVIGATION_TIMEOUT_MS, gt=0)


AgentAction = Annotated[
    Union[GotoAction, ClickAction, TypeAction, WaitForSelectorAction, DownloadAction],
    Field(discriminator="action"),
]

# Field names for the positional ``params`` form
ACTION_PARAMS: Dict[str, tuple] = {
    "goto": ("url",),
    "click": ("selector",),
    "type": ("selector", "value"),
    "waitForSelector": ("selector", "timeout"),
    "download": ("selector", "timeout"),
}

_actions_adapter = TypeAdapter(List[AgentAction])


def _normalise(index: int, raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, Mapping):
        raise AgentScriptError(f"Action {index} must be an object")

    action = raw.get("action")
    if action not in ACTION_PARAMS:
        raise AgentScriptError(f"Unknown action: {action}")

    entry = {key: value for key, value in raw.items() if key != "params"}
    params = raw.get("params")
    if params is not None:
        if not isinstance(params, list):
            raise AgentScriptError(f"Action {index} params must be a list")
        names = ACTION_PARAMS[action]
        if len(params) > len(names):
            raise AgentScriptError(f"Action {index} ({action}) takes at most {len(names)} params")
        entry.update(zip(names, params))
    return entry


def decode_script(raw_script: Any) -> List[AgentAction]:
    """Validate a stored script into typed actions or raise AgentScriptError."""

    if raw_script is None:
        return []
    if not isinstance(raw_script, list):
        raise AgentScriptError("Agent script must be a list")

    entries = [_normalise(index, raw) for index, raw in enumerate(raw_script)]
    try:
        return _actions_adapter.validate_python(entries)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise AgentScriptError(f"Invalid action ({location}): {first['msg']}") from exc


def resolve_placeholders(value: str, credentials: Optional[LoginCredentials]) -> str:
    """Replace ``{{login.username}}``/``{{login.password}}`` in *value*."""

    if credentials is None:
        return value
    return value.replace("{{login.username}}", credentials.username).replace(
        "{{login.password}}", credentials.password or ""
    )


@dataclass
class ScriptResult:
    success: bool
    error: Optional[str] = None
    logs: List[Dict[str, Any]] = field(default_factory=list)
    downloads: List[str] = field(default_factory=list)


class AgentScriptExecutor:
    """Replay typed actions against a fresh page from *driver*."""

    def __init__(self, driver: BrowserDriver):
        self.driver = driver

    async def run(
        self,
        actions: List[AgentAction],
        credentials: Optional[LoginCredentials] = None,
    ) -> ScriptResult:
        result = ScriptResult(success=True)
        try:
            async with self.driver.acquire_page() as page:
                for index, action in enumerate(actions):
                    try:
                        detail = await self._perform(page, action, credentials, result)
                    except Exception as exc:  # noqa: BLE001 – first failing action ends the run
                        message = str(exc) or f"Action {index} failed"
                        result.logs.append({"index": index, "action": action.action, "ok": False, "error": message})
                        result.success = False
                        result.error = f"Action {index} ({action.action}) failed: {message}"
                        logger.warning("Agent script stopped at action %d: %s", index, message)
                        return result
                    result.logs.append({"index": index, "action": action.action, "ok": True, "detail": detail})
        except Exception as exc:  # noqa: BLE001 – browser setup failure
            result.success = False
            result.error = str(exc) or "Browser unavailable"
            logger.error("Agent script could not start: %s", result.error)
        return result

    async def _perform(
        self,
        page: Any,
        action: AgentAction,
        credentials: Optional[LoginCredentials],
        result: ScriptResult,
    ) -> Optional[str]:
        driver = self.driver

        if isinstance(action, GotoAction):
            await driver.goto(page, action.url, timeout_ms=NAVIGATION_TIMEOUT_MS)
            return action.url
        if isinstance(action, ClickAction):
            await driver.click(page, action.selector)
            return action.selector
        if isinstance(action, TypeAction):
            # The typed value may be a password; only the selector is logged
            await driver.wait_for_selector(page, action.selector, timeout_ms=10_000)
            value = resolve_placeholders(action.value, credentials)
            await driver.evaluate_in_page(page, FILL_INPUT_SCRIPT, [action.selector, value])
            return action.selector
        if isinstance(action, WaitForSelectorAction):
            await driver.wait_for_selector(page, action.selector, timeout_ms=action.timeout)
            return action.selector
        if isinstance(action, DownloadAction):
            filename = await driver.download(page, action.selector, timeout_ms=action.timeout)
            result.downloads.append(filename)
            return filename
        raise AgentScriptError(f"Unknown action: {getattr(action, 'action', action)!r}")


__all__ = [
    "AgentAction",
    "AgentScriptError",
    "AgentScriptExecutor",
    "ClickAction",
    "DownloadAction",
    "GotoAction",
    "ScriptResult",
    "TypeAction",
    "WaitForSelectorAction",
    "decode_script",
    "resolve_placeholders",
]
