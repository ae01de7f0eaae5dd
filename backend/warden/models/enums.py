"""Shared *Enum* definitions for SQLAlchemy & Pydantic models.

The Enums inherit from ``str`` so that:

* JSON serialisation remains unchanged (values render as plain strings).
* Equality checks against raw literals (``status == "ACTIVE"``) keep working.
"""

from __future__ import annotations

from enum import Enum


class LoginStatus(str, Enum):
    UNKNOWN = "UNKNOWN"
    ACTIVE = "ACTIVE"
    NEEDS_RECONNECT = "NEEDS_RECONNECT"
    DISCONNECTED = "DISCONNECTED"
    BROKEN = "BROKEN"
    EXPIRED = "EXPIRED"
    SUSPENDED = "SUSPENDED"
    READY_FOR_AGENTS = "READY_FOR_AGENTS"
    NEEDS_TESTING = "NEEDS_TESTING"


# Fixed by the user through an interactive reconnect.
RECONNECT_LOGIN_STATUSES = frozenset({LoginStatus.NEEDS_RECONNECT, LoginStatus.DISCONNECTED})

# Fixed only by correcting the stored credentials.
CREDENTIAL_FAILURE_STATUSES = frozenset({LoginStatus.BROKEN, LoginStatus.EXPIRED, LoginStatus.SUSPENDED})


class AgentStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    ERROR = "error"


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class RunTrigger(str, Enum):
    MANUAL = "manual"
    SCHEDULE = "schedule"
    API = "api"


__all__ = [
    "LoginStatus",
    "RECONNECT_LOGIN_STATUSES",
    "CREDENTIAL_FAILURE_STATUSES",
    "AgentStatus",
    "RunStatus",
    "RunTrigger",
]
