"""OAuth device authorization request model."""

import secrets
from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel


class DeviceAuthorization(SQLModel, table=True):
    __tablename__ = "device_authorizations"

    id: str = Field(default_factory=lambda: f"da_{secrets.token_hex(8)}", primary_key=True)
    device_code: str = Field(unique=True, index=True)
    user_code: str = Field(unique=True, index=True)  # XXXX-XXXX
    client_id: str
    scope: Optional[str] = None
    expires_at: datetime
    authorized: bool = Field(default=False)
    denied: bool = Field(default=False)
    user_id: Optional[str] = Field(default=None, foreign_key="users.id")
    authorized_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
