"""Installation (physical device) models."""

import secrets
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

# Lifecycle states, derived from the stored fields
STATE_REGISTERED = "registered"  # unclaimed
STATE_CLAIMED = "claimed"  # bootstrap pending
STATE_BOOTSTRAPPED = "bootstrapped"  # confirm pending
STATE_ACTIVE = "active"


class Installation(SQLModel, table=True):
    __tablename__ = "installations"

    id: str = Field(default_factory=lambda: f"ins_{secrets.token_hex(8)}", primary_key=True)
    install_id: str = Field(unique=True, index=True)  # device-supplied, immutable
    hostname: str = Field(default="kaliunbox")
    architecture: Optional[str] = None
    nixos_version: Optional[str] = None
    claim_code: str = Field(unique=True, index=True)

    # Ownership
    claimed_by: Optional[str] = Field(default=None, foreign_key="users.id", index=True)
    claimed_at: Optional[datetime] = None

    # Customer info
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_address: Optional[str] = None

    # Credentials
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    access_expires_at: Optional[datetime] = None
    refresh_expires_at: Optional[datetime] = None
    config_confirmed: bool = Field(default=False)

    # Remote access
    pangolin_site_id: Optional[str] = None
    pangolin_newt_id: Optional[str] = None
    pangolin_newt_secret: Optional[str] = None
    pangolin_endpoint: Optional[str] = None
    pangolin_url: Optional[str] = None

    # Health
    last_health_at: Optional[datetime] = None
    last_health: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def state(self) -> str:
        if self.claimed_at is None:
            return STATE_REGISTERED
        if self.refresh_token is None:
            return STATE_CLAIMED
        if not self.config_confirmed:
            return STATE_BOOTSTRAPPED
        return STATE_ACTIVE


class InstallationUser(SQLModel, table=True):
    __tablename__ = "installation_users"
    __table_args__ = (UniqueConstraint("installation_id", "user_id"),)

    id: str = Field(default_factory=lambda: f"iu_{secrets.token_hex(8)}", primary_key=True)
    installation_id: str = Field(foreign_key="installations.id", index=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    role: str = Field(default="home_owner")  # 'home_owner' | 'installer'
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class HealthReport(SQLModel, table=True):
    __tablename__ = "health_reports"

    id: str = Field(default_factory=lambda: f"hr_{secrets.token_hex(8)}", primary_key=True)
    installation_id: str = Field(foreign_key="installations.id", index=True)
    data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class InstallationLog(SQLModel, table=True):
    __tablename__ = "logs"

    id: str = Field(default_factory=lambda: f"log_{secrets.token_hex(8)}", primary_key=True)
    installation_id: str = Field(foreign_key="installations.id", index=True)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)
    service: str = Field(default="unknown")
    level: str = Field(default="info")
    message: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
