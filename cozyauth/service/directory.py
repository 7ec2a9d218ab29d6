from __future__ import annotations

from typing import Optional, Protocol

from cozyauth.config import PRIMARY_DOMAIN
from cozyauth.logging import get_logger
from cozyauth.service.tenancy import client_domain_for_tenant
from cozyauth.storage.errors import ConstraintViolation, StorageError
from cozyauth.storage.models import PROVIDER_GITHUB, Client, Identity, User

logger = get_logger(__name__)


class DirectoryStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_provider(self, provider: str, provider_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_user(
        self,
        email: str,
        name: str,
        *,
        provider: str,
        provider_id: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> User: ...

    def link_user_provider(
        self,
        user_id: str,
        provider: str,
        provider_id: Optional[str],
        avatar_url: Optional[str] = None,
    ) -> Optional[User]: ...

    def touch_user(self, user_id: str) -> None: ...

    def get_client(self, client_id: str) -> Optional[Client]: ...

    def get_client_by_owner(self, owner_id: str) -> Optional[Client]: ...

    def create_client(
        self, owner_id: str, name: str, domain: str, *, subscription_tier: str = "starter"
    ) -> Client: ...


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    return email.strip().lower() or None


class DirectoryService:
    """Resolves an authenticated identity to a user and the client it owns.

    Lookup order is fixed: provider identity, then email (linking the
    provider onto an existing email user), then creation. Uniqueness races
    are settled by the store's constraints; the loser re-reads the winner.
    """

    def __init__(self, store: DirectoryStore, *, primary_domain: str = PRIMARY_DOMAIN) -> None:
        self.store = store
        self.primary_domain = primary_domain

    def get_user(self, user_id: str) -> Optional[User]:
        return self._call(self.store.get_user, user_id)

    def get_client(self, client_id: str) -> Optional[Client]:
        return self._call(self.store.get_client, client_id)

    def touch_user(self, user_id: str) -> None:
        self._call(self.store.touch_user, user_id)

    def get_or_create_user(self, identity: Identity, tenant_id: str) -> tuple[User, Client]:
        user = self._resolve_user(identity)
        client = self._resolve_client(user, tenant_id)
        return user, client

    def _resolve_user(self, identity: Identity) -> User:
        email = normalize_email(identity.email)

        if identity.provider_id:
            user = self._call(
                self.store.get_user_by_provider, identity.provider, identity.provider_id
            )
            if user:
                return user

        if email:
            user = self._call(self.store.get_user_by_email, email)
            if user:
                return self._maybe_link(user, identity)

        placeholder = email is None
        email = email or self._placeholder_email(identity)
        name = identity.name or identity.login or email.split("@", 1)[0]
        try:
            user = self._call(
                self.store.create_user,
                email,
                name,
                provider=identity.provider,
                provider_id=identity.provider_id,
                avatar_url=identity.avatar_url,
            )
            logger.info("user_created", user_id=user.id, provider=user.provider)
            return user
        except ConstraintViolation as exc:
            logger.info("user_create_conflict", field=exc.detail.get("field"))
            winner = None
            if identity.provider_id:
                winner = self._call(
                    self.store.get_user_by_provider, identity.provider, identity.provider_id
                )
            if winner is not None:
                return winner
            winner = self._call(self.store.get_user_by_email, email)
            if winner is None:
                raise StorageError("user vanished after conflict") from exc
            if placeholder or self._owned_by_other_account(winner, identity):
                # Placeholder addresses never link accounts
                logger.warning(
                    "user_email_claimed_by_other_account",
                    user_id=winner.id,
                    provider=identity.provider,
                )
                raise ConstraintViolation(
                    "email belongs to another account", {"field": "email"}
                ) from exc
            return self._maybe_link(winner, identity)

    @staticmethod
    def _owned_by_other_account(user: User, identity: Identity) -> bool:
        return bool(
            identity.provider_id
            and user.provider == identity.provider
            and user.provider_id != identity.provider_id
        )

    def _maybe_link(self, user: User, identity: Identity) -> User:
        # Only a provider-backed identity can claim an existing email user;
        # an email login never downgrades a GitHub account.
        if not identity.provider_id or user.provider == identity.provider:
            return user
        linked = self._call(
            self.store.link_user_provider,
            user.id,
            identity.provider,
            identity.provider_id,
            identity.avatar_url,
        )
        logger.info(
            "user_provider_linked",
            user_id=user.id,
            from_provider=user.provider,
            to_provider=identity.provider,
        )
        return linked or user

    @staticmethod
    def _placeholder_email(identity: Identity) -> str:
        if identity.provider == PROVIDER_GITHUB and identity.login:
            return f"{identity.login}@github.local"
        raise ValueError("identity has neither an email nor a GitHub login")

    def _resolve_client(self, user: User, tenant_id: str) -> Client:
        client = self._call(self.store.get_client_by_owner, user.id)
        if client:
            return client
        try:
            client = self._call(
                self.store.create_client,
                user.id,
                f"{user.name}'s Organization",
                client_domain_for_tenant(tenant_id, primary_domain=self.primary_domain),
            )
            logger.info("client_created", client_id=client.id, owner_id=user.id)
            return client
        except ConstraintViolation as exc:
            winner = self._call(self.store.get_client_by_owner, user.id)
            if winner is None:
                raise StorageError("client vanished after conflict") from exc
            return winner

    @staticmethod
    def _call(fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (ConstraintViolation, StorageError):
            raise
        except Exception as exc:
            logger.error(
                "directory_store_failed", operation=fn.__name__, error_type=type(exc).__name__
            )
            raise StorageError("directory operation failed") from exc
