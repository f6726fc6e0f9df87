"""User and local session models."""

import secrets
from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=lambda: f"usr_{secrets.token_hex(8)}", primary_key=True)
    email: str = Field(unique=True, index=True)  # stored lower-cased
    password_hash: Optional[str] = None  # unset for IdP accounts
    name: Optional[str] = None
    provider: str = Field(default="email")  # 'email' | 'google' | 'github' | 'idp'
    provider_id: Optional[str] = None
    is_admin: bool = Field(default=False)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class LocalSession(SQLModel, table=True):
    """Cookie session used by the local identity backend."""

    __tablename__ = "sessions"

    id: str = Field(default_factory=lambda: f"ses_{secrets.token_hex(8)}", primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    token: str = Field(unique=True, index=True)
    expires_at: datetime
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
