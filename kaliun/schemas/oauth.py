"""OAuth 2.0 device flow schemas."""

from typing import Optional

from pydantic import BaseModel


class DeviceCodeRequest(BaseModel):
    client_id: str
    scope: Optional[str] = None


class DeviceCodeResponse(BaseModel):
    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str
    expires_in: int
    interval: int


class TokenRequest(BaseModel):
    grant_type: str
    device_code: Optional[str] = None
    refresh_token: Optional[str] = None
    client_id: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str
    expires_in: int
    refresh_token: str
    scope: str


class UserInfoResponse(BaseModel):
    sub: str
    email: str
    name: str


class DeviceLinkResponse(BaseModel):
    user_code: str
    client_id: str
    scope: Optional[str]
    authorized: bool
    expires_at: str
