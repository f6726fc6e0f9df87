"""Installation (device-facing) request/response schemas."""

from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


# --- Registration ---

class RegisterRequest(_Strict):
    install_id: str = Field(min_length=1, max_length=128)
    hostname: Optional[str] = None
    architecture: Optional[str] = None
    nixos_version: Optional[str] = None


class RegisterResponse(BaseModel):
    claim_code: str


# --- Config ---

class AuthBlock(BaseModel):
    access_token: str
    refresh_token: str
    access_expires_at: str
    refresh_expires_at: str


class CustomerBlock(BaseModel):
    name: str
    email: str
    address: str


class PangolinBlock(BaseModel):
    newt_id: Optional[str]
    newt_secret: Optional[str]
    endpoint: Optional[str]
    url: Optional[str]


class ConfigResponse(BaseModel):
    auth: Optional[AuthBlock] = None  # bootstrap only
    customer: CustomerBlock
    pangolin: PangolinBlock


# --- Token refresh ---

class RefreshRequest(_Strict):
    refresh_token: str = Field(min_length=1)


class RefreshResponse(BaseModel):
    access_token: str
    access_expires_at: str


# --- Logs ---

class LogEntry(BaseModel):
    message: str
    timestamp: Optional[datetime] = None
    service: Optional[str] = None
    level: Optional[str] = None


class LogsRequest(_Strict):
    logs: list[Union[str, LogEntry]]
    service: Optional[str] = None
    level: Optional[str] = None


# --- Dashboard (human-facing) ---

class InstallationSummary(BaseModel):
    install_id: str
    hostname: str
    customer_name: Optional[str]
    architecture: Optional[str]
    nixos_version: Optional[str]
    state: str
    online: bool
    last_health_at: Optional[str]
    claimed_at: Optional[str]


class LogResponse(BaseModel):
    timestamp: Optional[str]
    service: str
    level: str
    message: str


class InstallationDetail(InstallationSummary):
    customer_email: Optional[str]
    customer_address: Optional[str]
    last_health: Optional[dict[str, Any]]
    logs: list[LogResponse]
