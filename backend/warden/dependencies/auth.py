"""FastAPI dependency that exposes the *current user*.

Authentication of the application itself is out of scope: every request acts
as the development user (``dev@local``), created on first use.
"""

from __future__ import annotations

from fastapi import Depends
from sqlalchemy.orm import Session

from warden.constants import DEV_EMAIL
from warden.crud import crud
from warden.database import get_db
from warden.models.models import User


def get_current_user(db: Session = Depends(get_db)) -> User:
    """Return the development user row."""

    return crud.get_or_create_user(db, DEV_EMAIL, display_name="Developer")
