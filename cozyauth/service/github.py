from __future__ import annotations

from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from cozyauth.logging import get_logger
from cozyauth.service.errors import UpstreamError
from cozyauth.storage.models import PROVIDER_GITHUB, Identity

logger = get_logger(__name__)

AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
TOKEN_URL = "https://github.com/login/oauth/access_token"
USER_URL = "https://api.github.com/user"
EMAILS_URL = "https://api.github.com/user/emails"
SCOPE = "user:email"


class GitHubOAuthError(UpstreamError):
    """GitHub rejected the code exchange; ``error_code`` is GitHub's own code."""

    def __init__(self, error_code: str, description: Optional[str] = None) -> None:
        super().__init__(description or error_code, error_code=error_code)


class GitHubClient:
    """Minimal GitHub OAuth app client: authorize URL, code exchange, identity."""

    def __init__(
        self,
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def authorize_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id or "",
            "redirect_uri": self.redirect_uri,
            "scope": SCOPE,
            "state": state,
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self._transport
        )

    async def exchange_code(self, code: str) -> str:
        """Trade an authorization code for a GitHub access token."""
        payload = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
        }
        try:
            async with self._client() as client:
                response = await client.post(
                    TOKEN_URL, json=payload, headers={"Accept": "application/json"}
                )
            token_result: Any = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("github_token_exchange_failed", error_type=type(exc).__name__)
            raise UpstreamError("GitHub token exchange failed") from exc

        if not isinstance(token_result, dict):
            raise UpstreamError("GitHub token exchange returned an unexpected body")
        if token_result.get("error"):
            raise GitHubOAuthError(
                str(token_result["error"]), token_result.get("error_description")
            )
        access_token = token_result.get("access_token")
        if not access_token:
            raise UpstreamError("GitHub token exchange returned no access token")
        return access_token

    async def fetch_identity(self, access_token: str) -> Identity:
        headers = {
            "Authorization": f"token {access_token}",
            "Accept": "application/vnd.github+json",
        }
        async with self._client() as client:
            try:
                user_response = await client.get(USER_URL, headers=headers)
                user_response.raise_for_status()
                profile = user_response.json()
            except (httpx.HTTPError, ValueError) as exc:
                logger.error("github_profile_fetch_failed", error_type=type(exc).__name__)
                raise UpstreamError("GitHub profile fetch failed") from exc
            if not isinstance(profile, dict) or profile.get("id") is None:
                raise UpstreamError("GitHub profile has no id")

            primary_email = await self._primary_email(client, headers)

        return Identity(
            provider=PROVIDER_GITHUB,
            provider_id=str(profile["id"]),
            email=primary_email or profile.get("email"),
            name=profile.get("name"),
            login=profile.get("login"),
            avatar_url=profile.get("avatar_url"),
        )

    async def _primary_email(self, client: httpx.AsyncClient, headers: dict) -> Optional[str]:
        # Failure here is tolerated; the profile email is the fallback
        try:
            response = await client.get(EMAILS_URL, headers=headers)
            response.raise_for_status()
            emails = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("github_emails_fetch_failed", error_type=type(exc).__name__)
            return None
        if not isinstance(emails, list):
            return None
        for entry in emails:
            if isinstance(entry, dict) and entry.get("primary") and entry.get("email"):
                return entry["email"]
        return None
