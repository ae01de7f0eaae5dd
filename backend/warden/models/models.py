from sqlalchemy import JSON
from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey
from sqlalchemy import Integer
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy import UniqueConstraint
from sqlalchemy.ext.mutable import MutableDict
from sqlalchemy.ext.mutable import MutableList
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from warden.database import Base
from warden.models.enums import AgentStatus
from warden.models.enums import LoginStatus
from warden.models.enums import RunStatus
from warden.models.enums import RunTrigger


class User(Base):
    """Owner of logins and agents.

    Authentication of the application itself is handled elsewhere; the table
    only anchors ownership.
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


# ---------------------------------------------------------------------------
# Login – credentials for one external site
# ---------------------------------------------------------------------------


class Login(Base):
    __tablename__ = "logins"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    login_url = Column(String, nullable=False)

    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    owner = relationship("User", backref="logins")

    # -------------------------------------------------------------------
    # Credentials – always Fernet ciphertext (see warden.utils.crypto)
    # -------------------------------------------------------------------
    username = Column(Text, nullable=False)
    password = Column(Text, nullable=True)
    oauth_token = Column(Text, nullable=True)

    # -------------------------------------------------------------------
    # Login script – named template or user-defined JSON config
    # -------------------------------------------------------------------
    template_id = Column(String, nullable=True)
    custom_config = Column(MutableDict.as_mutable(JSON), nullable=True)

    # -------------------------------------------------------------------
    # Session cache – encrypted SessionSnapshot + absolute expiry (UTC)
    # -------------------------------------------------------------------
    session_data = Column(Text, nullable=True)
    session_expiry = Column(DateTime, nullable=True)

    # -------------------------------------------------------------------
    # Health state – written only by crud.update_login_status & reconnect
    # -------------------------------------------------------------------
    status = Column(
        SAEnum(LoginStatus, native_enum=False, name="login_status_enum"),
        nullable=False,
        default=LoginStatus.UNKNOWN,
    )
    last_checked_at = Column(DateTime, nullable=True)
    last_success_at = Column(DateTime, nullable=True)
    last_failure_at = Column(DateTime, nullable=True)
    failure_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    agent_links = relationship("AgentLogin", back_populates="login")


class Agent(Base):
    __tablename__ = "agents"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(
        SAEnum(AgentStatus, native_enum=False, name="agent_status_enum"),
        default=AgentStatus.IDLE,
    )

    # Ordered list of ``{"action": ..., "params": [...]}`` objects, decoded by
    # warden.services.agent_script before every run.
    script = Column(MutableList.as_mutable(JSON), nullable=False, default=list)

    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    owner = relationship("User", backref="agents")

    last_run_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Attachment order is the validation order of the login gate
    login_links = relationship(
        "AgentLogin",
        back_populates="agent",
        cascade="all, delete-orphan",
        order_by="AgentLogin.position",
    )
    runs = relationship("AgentRun", back_populates="agent", cascade="all, delete-orphan")


class AgentLogin(Base):
    """Explicit many-to-many join between agents and logins."""

    __tablename__ = "agent_logins"
    __table_args__ = (UniqueConstraint("agent_id", "login_id", name="uix_agent_login"),)

    id = Column(Integer, primary_key=True)
    agent_id = Column(Integer, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False, index=True)
    login_id = Column(Integer, ForeignKey("logins.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    agent = relationship("Agent", back_populates="login_links")
    login = relationship("Login", back_populates="agent_links")


# ---------------------------------------------------------------------------
# AgentRun – one gated execution of an agent script
# ---------------------------------------------------------------------------


class AgentRun(Base):
    __tablename__ = "agent_runs"

    id = Column(Integer, primary_key=True)
    agent_id = Column(Integer, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False, index=True)

    status = Column(SAEnum(RunStatus, native_enum=False), nullable=False, default=RunStatus.QUEUED)
    trigger = Column(SAEnum(RunTrigger, native_enum=False), nullable=False, default=RunTrigger.MANUAL)

    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)
    # Per-action log emitted by the script executor
    logs = Column(MutableDict.as_mutable(JSON), nullable=True)

    created_at = Column(DateTime, server_default=func.now())

    agent = relationship("Agent", back_populates="runs")
