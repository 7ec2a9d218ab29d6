from __future__ import annotations

import re
import time
import uuid
from typing import Any, Optional, Protocol
from urllib.parse import quote, urlparse

from cozyauth.config import Settings
from cozyauth.logging import get_logger
from cozyauth.service import tokens
from cozyauth.service.directory import DirectoryService, normalize_email
from cozyauth.service.email import EmailService
from cozyauth.service.errors import (
    InvalidEmail,
    InvalidOrExpiredSessionKey,
    InvalidOrExpiredToken,
    NotConfiguredError,
    RateLimitedError,
    UserNotFound,
    ValidationError,
)
from cozyauth.service.github import GitHubClient, GitHubOAuthError
from cozyauth.service.tenancy import (
    default_redirect_url,
    is_known_tenant_domain,
    resolve_tenant_id,
)
from cozyauth.storage.models import (
    MAGIC_LINK_PREFIX,
    OAUTH_STATE_PREFIX,
    REFRESH_TOKEN_PREFIX,
    SESSION_HANDOFF_PREFIX,
    Client,
    Identity,
    MagicLinkToken,
    OAuthState,
    RefreshToken,
    SessionHandoff,
    User,
    now_ms,
)

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

ROLE_ADMIN = "admin"
ROLE_CLIENT = "client"


class EphemeralStore(Protocol):
    async def put(self, key: str, value: dict, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[dict]: ...

    async def delete(self, key: str) -> None: ...

    async def take(self, key: str) -> Optional[dict]: ...

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool: ...

    async def close(self) -> None: ...


class AuthService:
    """GitHub OAuth, magic-link login, session pickup and logout.

    Each flow only shares state with the others through ``cache``. Every
    single-use record (OAuth state, magic-link token, handoff key) is consumed
    with ``take`` so a replay or a concurrent second reader finds nothing.
    """

    def __init__(
        self,
        *,
        directory: DirectoryService,
        cache: EphemeralStore,
        github: GitHubClient,
        email: EmailService,
        settings: Settings,
    ) -> None:
        self.directory = directory
        self.cache = cache
        self.github = github
        self.email = email
        self.settings = settings
        self.logger = logger

    # shared helpers
    def _tenant_domain(self, tenant_domain: Optional[str]) -> str:
        domain = (tenant_domain or "").strip() or self.settings.primary_domain
        if not is_known_tenant_domain(
            domain,
            primary_domain=self.settings.primary_domain,
            custom_domains=self.settings.custom_tenant_domains,
        ):
            self.logger.warning("tenant_domain_rejected", tenant_domain=domain[:253])
            raise ValidationError("Invalid tenant_domain")
        return domain

    def _tenant_id(self, tenant_domain: str) -> str:
        return resolve_tenant_id(tenant_domain, primary_domain=self.settings.primary_domain)

    @staticmethod
    def _check_redirect_url(redirect_url: str) -> str:
        parsed = urlparse(redirect_url)
        if parsed.scheme not in {"https", "http"} or not parsed.netloc:
            raise ValidationError("Invalid redirect_url")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValidationError("Invalid redirect_url")
        return redirect_url

    async def _enforce_rate_limit(self, key: str, limit: int, window_seconds: int) -> None:
        if limit <= 0:
            return
        if not await self.cache.check_rate_limit(key, limit, max(1, window_seconds)):
            self.logger.warning("rate_limited", bucket=key.split(":", 1)[0])
            raise RateLimitedError("Too many requests, please try again later")

    @staticmethod
    def _role(user: User, client: Optional[Client]) -> str:
        return ROLE_ADMIN if client is not None and user.id == client.owner_id else ROLE_CLIENT

    async def _issue_session(
        self, user: User, client: Optional[Client], client_id: str, tenant_id: str
    ) -> dict[str, Any]:
        """Mint access and refresh tokens and build the session payload."""
        secret = self.settings.jwt_secret
        if not secret:
            raise NotConfiguredError("JWT service not configured")

        role = self._role(user, client)
        issued_at = int(time.time())
        access_ttl = self.settings.access_token_ttl_seconds
        access_token = tokens.sign(
            {
                "sub": user.id,
                "email": user.email,
                "name": user.name,
                "tenant_id": tenant_id,
                "client_id": client_id,
                "role": role,
                "iat": issued_at,
                "exp": issued_at + access_ttl,
            },
            secret,
        )

        refresh_token = tokens.generate_opaque_token()
        await self.cache.put(
            f"{REFRESH_TOKEN_PREFIX}{refresh_token}",
            RefreshToken(user_id=user.id, client_id=client_id, tenant_id=tenant_id).to_dict(),
            self.settings.refresh_token_ttl_seconds,
        )

        return {
            "success": True,
            "user": {
                "id": user.id,
                "email": user.email,
                "name": user.name,
                "avatar_url": user.avatar_url,
                "provider": user.provider,
                "tenant_id": tenant_id,
                "role": role,
                "created_at": user.created_at.isoformat(),
            },
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expires_at": now_ms() + access_ttl * 1000,
            "tenant_id": tenant_id,
        }

    # GitHub OAuth
    async def start_github_oauth(
        self,
        tenant_domain: Optional[str] = None,
        redirect_url: Optional[str] = None,
        *,
        client_ip: Optional[str] = None,
    ) -> str:
        """Store a CSRF state record and return GitHub's authorization URL."""
        if not self.github.client_id:
            raise NotConfiguredError("GitHub OAuth not configured")
        if client_ip:
            await self._enforce_rate_limit(
                f"oauth_start:{client_ip}",
                self.settings.oauth_start_rate_limit_per_ip_per_minute,
                60,
            )

        domain = self._tenant_domain(tenant_domain)
        target = self._check_redirect_url(redirect_url or default_redirect_url(domain))

        state = uuid.uuid4().hex
        await self.cache.put(
            f"{OAUTH_STATE_PREFIX}{state}",
            OAuthState(tenant_domain=domain, redirect_url=target).to_dict(),
            self.settings.oauth_state_ttl_seconds,
        )
        self.logger.info("oauth_started", provider="github", tenant_domain=domain)
        return self.github.authorize_url(state)

    def _error_redirect(self, code: str) -> str:
        return f"{self.settings.auth_error_url}?error={quote(code, safe='')}"

    @staticmethod
    def _with_session_key(redirect_url: str, session_key: str) -> str:
        separator = "&" if urlparse(redirect_url).query else "?"
        return f"{redirect_url}{separator}session={quote(session_key, safe='')}"

    async def complete_github_oauth(
        self,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
    ) -> str:
        """Finish the GitHub callback and return where to send the browser.

        Never raises: every failure becomes the error page with a coarse
        ``error`` code, every success becomes ``redirect_url?session=<key>``.
        """
        if error:
            self.logger.info("oauth_provider_error", provider="github", error=error)
            return self._error_redirect(error)
        if not code or not state:
            return self._error_redirect("missing_code_or_state")
        if not self.github.is_configured or not self.settings.jwt_secret:
            self.logger.error("oauth_not_configured", provider="github")
            return self._error_redirect("oauth_not_configured")

        try:
            state_data = await self.cache.take(f"{OAUTH_STATE_PREFIX}{state}")
            if not state_data:
                self.logger.warning("oauth_state_invalid", provider="github")
                return self._error_redirect("invalid_state")
            oauth_state = OAuthState.from_dict(state_data)
            tenant_id = self._tenant_id(oauth_state.tenant_domain)

            try:
                github_token = await self.github.exchange_code(code)
            except GitHubOAuthError as exc:
                self.logger.warning("oauth_exchange_rejected", provider="github", error=exc.error_code)
                return self._error_redirect(exc.error_code)

            identity = await self.github.fetch_identity(github_token)
            user, client = self.directory.get_or_create_user(identity, tenant_id)
            payload = await self._issue_session(user, client, client.id, tenant_id)

            session_key = uuid.uuid4().hex
            await self.cache.put(
                f"{SESSION_HANDOFF_PREFIX}{session_key}",
                SessionHandoff(payload=payload).to_dict(),
                self.settings.session_handoff_ttl_seconds,
            )
            self.logger.info(
                "oauth_login_succeeded", provider="github", user_id=user.id, tenant_id=tenant_id
            )
            return self._with_session_key(oauth_state.redirect_url, session_key)
        except Exception as exc:
            self.logger.error(
                "oauth_callback_failed", provider="github", error_type=type(exc).__name__
            )
            return self._error_redirect("oauth_failed")

    # Magic link
    async def request_magic_link(
        self,
        email: Optional[str],
        tenant_domain: Optional[str] = None,
        redirect_url: Optional[str] = None,
        *,
        client_ip: Optional[str] = None,
    ) -> str:
        """Create a single-use login token and email it; returns the token."""
        if not email or not email.strip():
            raise ValidationError("Email is required")
        if not EMAIL_PATTERN.match(email.strip()):
            raise InvalidEmail()
        if not self.email.is_configured or not self.settings.jwt_secret:
            raise NotConfiguredError("Email service not configured")

        address = normalize_email(email)
        if client_ip:
            await self._enforce_rate_limit(
                f"magic_link_ip:{client_ip}",
                self.settings.magic_link_rate_limit_per_ip_per_minute,
                60,
            )
        await self._enforce_rate_limit(
            f"magic_link_email:{address}",
            self.settings.magic_link_rate_limit_per_email,
            self.settings.magic_link_rate_limit_window_seconds,
        )

        domain = self._tenant_domain(tenant_domain)
        tenant_id = self._tenant_id(domain)
        target = self._check_redirect_url(redirect_url or default_redirect_url(domain))

        user, client = self.directory.get_or_create_user(Identity.from_email(address), tenant_id)

        token = tokens.generate_opaque_token()
        ttl = self.settings.magic_link_ttl_seconds
        await self.cache.put(
            f"{MAGIC_LINK_PREFIX}{token}",
            MagicLinkToken(
                email=address,
                user_id=user.id,
                client_id=client.id,
                tenant_id=tenant_id,
                redirect_url=target,
            ).to_dict(),
            ttl,
        )

        base_url = (self.settings.magic_link_base_url or f"https://{domain}").rstrip("/")
        link = f"{base_url}/auth/magic-link?token={token}"
        await self.email.send_magic_link(address, link, ttl_minutes=max(1, ttl // 60))

        self.logger.info("magic_link_sent", user_id=user.id, tenant_id=tenant_id)
        return token

    async def verify_magic_link(
        self, token: Optional[str], tenant_domain: Optional[str] = None
    ) -> dict[str, Any]:
        """Consume a magic-link token and return a fresh session payload.

        The tenant always comes from the stored record. ``tenant_domain`` is
        only compared against it for logging.
        """
        if not token or not token.strip():
            raise ValidationError("Token is required")
        if not self.settings.jwt_secret:
            raise NotConfiguredError("JWT service not configured")

        record_data = await self.cache.take(f"{MAGIC_LINK_PREFIX}{token.strip()}")
        if not record_data:
            raise InvalidOrExpiredToken()
        record = MagicLinkToken.from_dict(record_data)

        if tenant_domain and self._tenant_id(tenant_domain.strip()) != record.tenant_id:
            self.logger.warning(
                "magic_link_tenant_mismatch",
                expected_tenant_id=record.tenant_id,
                supplied_tenant_id=self._tenant_id(tenant_domain.strip()),
            )

        user = self.directory.get_user(record.user_id)
        if not user:
            raise UserNotFound()
        client = self.directory.get_client(record.client_id)
        self.directory.touch_user(user.id)

        payload = await self._issue_session(user, client, record.client_id, record.tenant_id)
        self.logger.info("magic_link_verified", user_id=user.id, tenant_id=record.tenant_id)
        return payload

    # Session pickup
    async def pickup_session(self, session_key: Optional[str]) -> dict[str, Any]:
        if not session_key or not session_key.strip():
            raise ValidationError("Session key is required")
        data = await self.cache.take(f"{SESSION_HANDOFF_PREFIX}{session_key.strip()}")
        if not data:
            raise InvalidOrExpiredSessionKey()
        return SessionHandoff.from_dict(data).payload

    # Logout
    async def logout(
        self, authorization: Optional[str] = None, refresh_token: Optional[str] = None
    ) -> str:
        """Revoke what the caller presents and report success regardless.

        The bearer token is only decoded, never verified, and only to attach
        the subject to the log line.
        """
        try:
            if refresh_token:
                await self.cache.delete(f"{REFRESH_TOKEN_PREFIX}{refresh_token}")
                self.logger.info("refresh_token_revoked")

            if not authorization or not authorization.startswith("Bearer "):
                return "Logged out (no active session)"

            subject = None
            try:
                subject = tokens.decode(authorization[len("Bearer "):].strip()).get("sub")
            except tokens.TokenError:
                self.logger.info("logout_token_undecodable")
            self.logger.info("logout", user_id=subject)
            return "Logged out successfully"
        except Exception as exc:
            self.logger.warning("logout_cleanup_failed", error_type=type(exc).__name__)
            return "Logged out"
