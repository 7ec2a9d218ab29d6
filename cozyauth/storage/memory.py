from __future__ import annotations

import threading
from dataclasses import replace
from typing import Dict, Optional

from cozyauth.logging import get_logger
from cozyauth.storage.errors import ConstraintViolation
from cozyauth.storage.models import Client, User, new_id, utcnow


class MemoryStore:
    """In-process user/client directory for tests and local development.

    Enforces the same uniqueness rules as the PostgreSQL schema: one user per
    email, one user per (provider, provider_id), one owned client per user.
    Records are copied on the way in and out so callers cannot mutate stored
    state without going through the store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.clients: Dict[str, Client] = {}
        # RLock so compound operations can call the public getters
        self._data_lock = threading.RLock()

    # users
    def create_user(
        self,
        email: str,
        name: str,
        *,
        provider: str,
        provider_id: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if provider_id is not None and self._find_by_provider(provider, provider_id):
                raise ConstraintViolation(
                    "provider identity already linked", {"field": "provider_id"}
                )
            now = utcnow()
            user = User(
                id=new_id(),
                email=email,
                name=name,
                avatar_url=avatar_url,
                provider=provider,
                provider_id=provider_id,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            return replace(user)

    def _find_by_provider(self, provider: str, provider_id: str) -> Optional[User]:
        return next(
            (
                u
                for u in self.users.values()
                if u.provider == provider and u.provider_id == provider_id
            ),
            None,
        )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_provider(self, provider: str, provider_id: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_by_provider(provider, provider_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def link_user_provider(
        self,
        user_id: str,
        provider: str,
        provider_id: Optional[str],
        avatar_url: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if provider_id is not None:
                holder = self._find_by_provider(provider, provider_id)
                if holder and holder.id != user_id:
                    raise ConstraintViolation(
                        "provider identity already linked", {"field": "provider_id"}
                    )
            user.provider = provider
            user.provider_id = provider_id
            user.avatar_url = avatar_url
            user.updated_at = utcnow()
            return replace(user)

    def touch_user(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.updated_at = utcnow()

    # clients
    def create_client(
        self,
        owner_id: str,
        name: str,
        domain: str,
        *,
        subscription_tier: str = "starter",
    ) -> Client:
        with self._data_lock:
            if any(c.owner_id == owner_id for c in self.clients.values()):
                raise ConstraintViolation("owner already has a client", {"field": "owner_id"})
            now = utcnow()
            client = Client(
                id=new_id(),
                name=name,
                domain=domain,
                owner_id=owner_id,
                subscription_tier=subscription_tier,
                created_at=now,
                updated_at=now,
            )
            self.clients[client.id] = client
            return replace(client)

    def get_client(self, client_id: str) -> Optional[Client]:
        with self._data_lock:
            client = self.clients.get(client_id)
            return replace(client) if client else None

    def get_client_by_owner(self, owner_id: str) -> Optional[Client]:
        with self._data_lock:
            client = next(
                (c for c in self.clients.values() if c.owner_id == owner_id), None
            )
            return replace(client) if client else None

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None
