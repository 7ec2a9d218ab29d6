from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

PROVIDER_GITHUB = "github"
PROVIDER_EMAIL = "email"

DEFAULT_SUBSCRIPTION_TIER = "starter"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    email: str
    name: str
    avatar_url: Optional[str] = None
    provider: str = PROVIDER_EMAIL
    provider_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Client:
    id: str
    name: str
    domain: str
    owner_id: str
    subscription_tier: str = DEFAULT_SUBSCRIPTION_TIER
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Identity:
    """What a credential flow knows about the person logging in.

    A GitHub identity carries provider_id and usually login/avatar; an
    email identity carries only the address.
    """

    provider: str
    email: Optional[str] = None
    provider_id: Optional[str] = None
    name: Optional[str] = None
    login: Optional[str] = None
    avatar_url: Optional[str] = None

    @classmethod
    def from_email(cls, email: str) -> "Identity":
        return cls(provider=PROVIDER_EMAIL, email=email)


# Ephemeral records. created_at is epoch milliseconds so the stored JSON
# stays readable by the existing frontend tooling.


@dataclass
class OAuthState:
    tenant_domain: str
    redirect_url: str
    created_at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OAuthState":
        return cls(
            tenant_domain=data["tenant_domain"],
            redirect_url=data["redirect_url"],
            created_at=int(data.get("created_at") or 0),
        )


@dataclass
class MagicLinkToken:
    email: str
    user_id: str
    client_id: str
    tenant_id: str
    redirect_url: Optional[str] = None
    created_at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MagicLinkToken":
        return cls(
            email=data["email"],
            user_id=data["user_id"],
            client_id=data["client_id"],
            tenant_id=data["tenant_id"],
            redirect_url=data.get("redirect_url"),
            created_at=int(data.get("created_at") or 0),
        )


@dataclass
class RefreshToken:
    user_id: str
    client_id: str
    tenant_id: str
    created_at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RefreshToken":
        return cls(
            user_id=data["user_id"],
            client_id=data["client_id"],
            tenant_id=data["tenant_id"],
            created_at=int(data.get("created_at") or 0),
        )


@dataclass
class SessionHandoff:
    """Full session payload parked under a one-time pickup key."""

    payload: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.payload)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionHandoff":
        return cls(payload=dict(data))


# Ephemeral key prefixes
OAUTH_STATE_PREFIX = "oauth_state:"
MAGIC_LINK_PREFIX = "magic_link:"
REFRESH_TOKEN_PREFIX = "refresh_token:"
SESSION_HANDOFF_PREFIX = "auth_session:"
