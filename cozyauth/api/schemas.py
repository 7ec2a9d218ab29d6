from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

# Request fields are optional at the schema level so that a missing value is
# reported with the flow's own message ("Email is required", ...) instead of
# a generic validation error.


class MagicLinkRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: Optional[str] = Field(default=None, max_length=320)
    tenant_domain: Optional[str] = Field(default=None, max_length=253)
    redirect_url: Optional[str] = Field(default=None, max_length=2048)


class VerifyMagicLinkRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    token: Optional[str] = Field(default=None, max_length=256)
    tenant_domain: Optional[str] = Field(default=None, max_length=253)


class SessionPickupRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    session_key: Optional[str] = Field(default=None, max_length=128)


class LogoutRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    refresh_token: Optional[str] = Field(default=None, max_length=256)


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class SessionUser(BaseModel):
    id: str
    email: str
    name: str
    avatar_url: Optional[str] = None
    provider: str
    tenant_id: str
    role: str
    created_at: str


class SessionPayload(BaseModel):
    """Wire contract the frontend stores after login."""

    success: bool = True
    user: SessionUser
    access_token: str
    refresh_token: str
    expires_at: int = Field(..., description="Access token expiry, epoch milliseconds")
    tenant_id: str


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    code: str
    message: Optional[str] = None
    details: Optional[Any] = None


class HealthResponse(BaseModel):
    status: str
    store: bool
    cache: bool
