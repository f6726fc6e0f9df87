"""Human account schemas."""

from typing import Optional

from pydantic import BaseModel


class TokenAdoptRequest(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None


class UserProfileResponse(BaseModel):
    id: str
    email: str
    name: Optional[str]
    provider: str
    auth_mode: str


class ClaimPreviewResponse(BaseModel):
    claim_code: str
    install_id: str
    hostname: str
    architecture: Optional[str]
