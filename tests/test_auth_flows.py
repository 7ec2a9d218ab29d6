"""Service-level tests for the GitHub, magic-link, pickup and logout flows."""

import time
from urllib.parse import parse_qs, urlparse

import pytest

from cozyauth.service import tokens
from cozyauth.service.errors import (
    EmailDeliveryError,
    InvalidEmail,
    InvalidOrExpiredSessionKey,
    InvalidOrExpiredToken,
    NotConfiguredError,
    RateLimitedError,
    UserNotFound,
    ValidationError,
)
from cozyauth.storage.models import (
    MAGIC_LINK_PREFIX,
    OAUTH_STATE_PREFIX,
    REFRESH_TOKEN_PREFIX,
    PROVIDER_EMAIL,
    PROVIDER_GITHUB,
    RefreshToken,
    now_ms,
)

ERROR_PAGE = "https://cozyartzmedia.com/auth/error"


def _query(url: str) -> dict:
    return {key: values[0] for key, values in parse_qs(urlparse(url).query).items()}


async def _start(auth_service, **kwargs) -> str:
    location = await auth_service.start_github_oauth(**kwargs)
    return _query(location)["state"]


class TestGitHubStart:
    async def test_redirects_to_github_with_state(self, auth_service, cache):
        location = await auth_service.start_github_oauth("acme.cozyartzmedia.com")

        parsed = urlparse(location)
        params = _query(location)
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == (
            "https://github.com/login/oauth/authorize"
        )
        assert params["client_id"] == "gh-client"
        assert params["scope"] == "user:email"
        assert params["redirect_uri"] == "https://cozyartzmedia.com/api/auth/github/callback"

        record = await cache.get(f"{OAUTH_STATE_PREFIX}{params['state']}")
        assert record["tenant_domain"] == "acme.cozyartzmedia.com"
        assert record["redirect_url"] == "https://acme.cozyartzmedia.com/auth/callback"
        assert await cache.ttl(f"{OAUTH_STATE_PREFIX}{params['state']}") == 600

    async def test_each_start_gets_a_fresh_state(self, auth_service):
        assert await _start(auth_service) != await _start(auth_service)

    async def test_not_configured(self, auth_service):
        auth_service.github.client_id = None
        with pytest.raises(NotConfiguredError) as excinfo:
            await auth_service.start_github_oauth()
        assert excinfo.value.message == "GitHub OAuth not configured"

    @pytest.mark.parametrize(
        "redirect_url",
        ["javascript:alert(1)", "http://evil.example.com/cb", "/relative/path", "ftp://x.com"],
    )
    async def test_rejects_unsafe_redirect_url(self, auth_service, redirect_url):
        with pytest.raises(ValidationError):
            await auth_service.start_github_oauth(redirect_url=redirect_url)

    async def test_allows_local_http_redirect(self, auth_service):
        await auth_service.start_github_oauth(redirect_url="http://localhost:5173/auth/callback")

    @pytest.mark.parametrize(
        "tenant_domain", ["evil.example.com", "attacker.net/x.cozyartzmedia.com"]
    )
    async def test_rejects_unknown_tenant_domain(self, auth_service, cache, tenant_domain):
        with pytest.raises(ValidationError) as excinfo:
            await auth_service.start_github_oauth(tenant_domain)
        assert excinfo.value.message == "Invalid tenant_domain"
        assert cache.keys(OAUTH_STATE_PREFIX) == []

    async def test_listed_custom_domain_is_accepted(self, auth_service, cache):
        auth_service.settings.custom_tenant_domains = ["studio.example.org"]
        state = await _start(auth_service, tenant_domain="studio.example.org")
        record = await cache.get(f"{OAUTH_STATE_PREFIX}{state}")
        assert record["redirect_url"] == "https://studio.example.org/auth/callback"

    async def test_rate_limited_per_ip(self, auth_service):
        auth_service.settings.oauth_start_rate_limit_per_ip_per_minute = 2
        await auth_service.start_github_oauth(client_ip="10.0.0.1")
        await auth_service.start_github_oauth(client_ip="10.0.0.1")
        with pytest.raises(RateLimitedError):
            await auth_service.start_github_oauth(client_ip="10.0.0.1")
        await auth_service.start_github_oauth(client_ip="10.0.0.2")


class TestGitHubCallback:
    async def test_provider_error_redirects_without_writes(self, auth_service, memory_store):
        location = await auth_service.complete_github_oauth(None, None, "access_denied")
        assert location == f"{ERROR_PAGE}?error=access_denied"
        assert memory_store.users == {}
        assert memory_store.clients == {}

    @pytest.mark.parametrize("code, state", [(None, "s"), ("c", None), ("", "")])
    async def test_missing_code_or_state(self, auth_service, code, state):
        location = await auth_service.complete_github_oauth(code, state)
        assert location == f"{ERROR_PAGE}?error=missing_code_or_state"

    async def test_unknown_state(self, auth_service, github_stub):
        location = await auth_service.complete_github_oauth("code", "never-stored")
        assert location == f"{ERROR_PAGE}?error=invalid_state"
        assert github_stub.requests == []

    async def test_success_parks_session_behind_handoff_key(self, auth_service, cache):
        state = await _start(auth_service, tenant_domain="acme.cozyartzmedia.com")

        location = await auth_service.complete_github_oauth("code-123", state)

        assert location.startswith("https://acme.cozyartzmedia.com/auth/callback?session=")
        session_key = _query(location)["session"]
        # state is consumed
        assert await cache.get(f"{OAUTH_STATE_PREFIX}{state}") is None

        payload = await auth_service.pickup_session(session_key)
        assert payload["success"] is True
        assert payload["tenant_id"] == "partner-acme"
        user = payload["user"]
        assert user["email"] == "octocat@example.com"
        assert user["name"] == "Mona Octocat"
        assert user["provider"] == PROVIDER_GITHUB
        assert user["avatar_url"] == "https://avatars.example.com/u/4242"
        assert user["role"] == "admin"
        assert user["tenant_id"] == "partner-acme"

        claims = tokens.verify(payload["access_token"], auth_service.settings.jwt_secret)
        assert claims["sub"] == user["id"]
        assert claims["tenant_id"] == "partner-acme"
        assert claims["role"] == "admin"
        assert claims["exp"] - claims["iat"] == 3600

    async def test_state_cannot_be_replayed(self, auth_service):
        state = await _start(auth_service)
        first = await auth_service.complete_github_oauth("code-123", state)
        second = await auth_service.complete_github_oauth("code-123", state)
        assert "session=" in first
        assert second == f"{ERROR_PAGE}?error=invalid_state"

    async def test_github_token_error_is_forwarded(self, auth_service, github_stub, memory_store):
        github_stub.token_error = "bad_verification_code"
        state = await _start(auth_service)
        location = await auth_service.complete_github_oauth("stale", state)
        assert location == f"{ERROR_PAGE}?error=bad_verification_code"
        assert memory_store.users == {}

    async def test_profile_email_used_when_email_list_fails(self, auth_service, github_stub):
        github_stub.emails_status = 404
        state = await _start(auth_service)
        location = await auth_service.complete_github_oauth("code", state)
        payload = await auth_service.pickup_session(_query(location)["session"])
        assert payload["user"]["email"] == "mona-public@example.com"

    async def test_redirect_url_with_query_gets_ampersand(self, auth_service):
        state = await _start(
            auth_service, redirect_url="https://app.example.com/auth/callback?next=%2Fdash"
        )
        location = await auth_service.complete_github_oauth("code", state)
        assert location.startswith("https://app.example.com/auth/callback?next=%2Fdash&session=")

    async def test_unexpected_failure_becomes_oauth_failed(self, auth_service, github_stub):
        github_stub.profile = {"login": "no-id"}
        state = await _start(auth_service)
        location = await auth_service.complete_github_oauth("code", state)
        assert location == f"{ERROR_PAGE}?error=oauth_failed"

    async def test_recycled_login_without_email_cannot_take_over(
        self, auth_service, github_stub, memory_store
    ):
        github_stub.profile["email"] = None
        github_stub.emails = []
        first = await auth_service.complete_github_oauth("code", await _start(auth_service))
        assert "session=" in first

        github_stub.profile["id"] = 5555
        location = await auth_service.complete_github_oauth("code", await _start(auth_service))

        assert location == f"{ERROR_PAGE}?error=oauth_failed"
        assert [user.provider_id for user in memory_store.users.values()] == ["4242"]

    async def test_missing_signing_secret(self, auth_service):
        state = await _start(auth_service)
        auth_service.settings.jwt_secret = None
        location = await auth_service.complete_github_oauth("code", state)
        assert location == f"{ERROR_PAGE}?error=oauth_not_configured"


class TestMagicLink:
    async def test_request_creates_user_token_and_email(
        self, auth_service, cache, memory_store, email_outbox
    ):
        token = await auth_service.request_magic_link("New@Example.com")

        assert len(token) == 64
        record = await cache.get(f"{MAGIC_LINK_PREFIX}{token}")
        assert record["email"] == "new@example.com"
        assert record["tenant_id"] == "cmg-default"
        assert record["redirect_url"] == "https://cozyartzmedia.com/auth/callback"
        assert 0 < await cache.ttl(f"{MAGIC_LINK_PREFIX}{token}") <= 900

        assert len(memory_store.users) == 1
        assert len(memory_store.clients) == 1
        assert record["user_id"] in memory_store.users
        assert record["client_id"] in memory_store.clients

        message = email_outbox.messages[-1]
        assert message["to"] == ["new@example.com"]
        assert message["subject"] == "Sign in to your account"
        assert f"https://cozyartzmedia.com/auth/magic-link?token={token}" in message["text"]
        assert "Sign In Securely" in message["html"]
        assert email_outbox.last_authorization == "Bearer re_unit"
        assert email_outbox.last_token() == token

    async def test_link_uses_tenant_domain_or_override(self, auth_service, email_outbox):
        await auth_service.request_magic_link("a@example.com", "acme.cozyartzmedia.com")
        assert "https://acme.cozyartzmedia.com/auth/magic-link?token=" in email_outbox.messages[-1]["text"]

        auth_service.settings.magic_link_base_url = "https://login.example.com/"
        await auth_service.request_magic_link("b@example.com")
        assert "https://login.example.com/auth/magic-link?token=" in email_outbox.messages[-1]["text"]

    async def test_unknown_tenant_domain_sends_nothing(
        self, auth_service, email_outbox, memory_store
    ):
        with pytest.raises(ValidationError):
            await auth_service.request_magic_link("a@example.com", "login.evil.example.com")
        assert email_outbox.messages == []
        assert memory_store.users == {}

    async def test_verify_returns_admin_session_and_consumes_token(self, auth_service, cache):
        token = await auth_service.request_magic_link("new@example.com")

        payload = await auth_service.verify_magic_link(token)

        assert payload["success"] is True
        assert payload["user"]["email"] == "new@example.com"
        assert payload["user"]["provider"] == PROVIDER_EMAIL
        assert payload["user"]["role"] == "admin"
        assert payload["tenant_id"] == "cmg-default"
        assert abs(payload["expires_at"] - (now_ms() + 3_600_000)) < 60_000
        assert await cache.get(f"{MAGIC_LINK_PREFIX}{token}") is None

        refresh = RefreshToken.from_dict(
            await cache.get(f"{REFRESH_TOKEN_PREFIX}{payload['refresh_token']}")
        )
        assert refresh.user_id == payload["user"]["id"]
        assert refresh.tenant_id == "cmg-default"
        assert await cache.ttl(f"{REFRESH_TOKEN_PREFIX}{payload['refresh_token']}") == 30 * 24 * 3600

    async def test_token_is_single_use(self, auth_service):
        token = await auth_service.request_magic_link("new@example.com")
        await auth_service.verify_magic_link(token)
        with pytest.raises(InvalidOrExpiredToken) as excinfo:
            await auth_service.verify_magic_link(token)
        assert excinfo.value.message == "Invalid or expired token"

    async def test_tenant_comes_from_stored_record(self, auth_service):
        token = await auth_service.request_magic_link("a@example.com", "acme.cozyartzmedia.com")
        payload = await auth_service.verify_magic_link(token, "other.cozyartzmedia.com")
        assert payload["tenant_id"] == "partner-acme"
        claims = tokens.verify(payload["access_token"], auth_service.settings.jwt_secret)
        assert claims["tenant_id"] == "partner-acme"

    async def test_deleted_user_is_not_found(self, auth_service, memory_store):
        token = await auth_service.request_magic_link("gone@example.com")
        memory_store.users.clear()
        with pytest.raises(UserNotFound):
            await auth_service.verify_magic_link(token)

    @pytest.mark.parametrize("email", [None, "", "   "])
    async def test_email_required(self, auth_service, email):
        with pytest.raises(ValidationError) as excinfo:
            await auth_service.request_magic_link(email)
        assert excinfo.value.message == "Email is required"

    @pytest.mark.parametrize("email", ["plainaddress", "a@b", "a b@example.com", "@example.com"])
    async def test_invalid_email(self, auth_service, email, memory_store):
        with pytest.raises(InvalidEmail) as excinfo:
            await auth_service.request_magic_link(email)
        assert excinfo.value.message == "Invalid email format"
        assert memory_store.users == {}

    async def test_email_not_configured(self, auth_service):
        auth_service.email.api_key = None
        with pytest.raises(NotConfiguredError) as excinfo:
            await auth_service.request_magic_link("a@example.com")
        assert excinfo.value.message == "Email service not configured"

    async def test_provider_rejection(self, auth_service, email_outbox):
        email_outbox.status_code = 500
        with pytest.raises(EmailDeliveryError):
            await auth_service.request_magic_link("a@example.com")

    async def test_rate_limited_per_email(self, auth_service):
        for _ in range(3):
            await auth_service.request_magic_link("spam@example.com")
        with pytest.raises(RateLimitedError):
            await auth_service.request_magic_link("SPAM@example.com")
        await auth_service.request_magic_link("other@example.com")

    @pytest.mark.parametrize("token", [None, "", "  "])
    async def test_token_required(self, auth_service, token):
        with pytest.raises(ValidationError) as excinfo:
            await auth_service.verify_magic_link(token)
        assert excinfo.value.message == "Token is required"

    async def test_verify_without_signing_secret(self, auth_service):
        token = await auth_service.request_magic_link("a@example.com")
        auth_service.settings.jwt_secret = None
        with pytest.raises(NotConfiguredError):
            await auth_service.verify_magic_link(token)


class TestSessionPickup:
    async def test_key_is_single_use(self, auth_service):
        state = await _start(auth_service)
        key = _query(await auth_service.complete_github_oauth("code", state))["session"]

        assert (await auth_service.pickup_session(key))["success"] is True
        with pytest.raises(InvalidOrExpiredSessionKey) as excinfo:
            await auth_service.pickup_session(key)
        assert excinfo.value.message == "Invalid or expired session key"

    async def test_key_required(self, auth_service):
        with pytest.raises(ValidationError) as excinfo:
            await auth_service.pickup_session("")
        assert excinfo.value.message == "Session key is required"


class TestLogout:
    async def test_without_bearer(self, auth_service):
        assert await auth_service.logout(None) == "Logged out (no active session)"
        assert await auth_service.logout("Basic abc") == "Logged out (no active session)"

    async def test_with_bearer(self, auth_service):
        token = tokens.sign(
            {"sub": "u1", "exp": int(time.time()) + 60}, auth_service.settings.jwt_secret
        )
        assert await auth_service.logout(f"Bearer {token}") == "Logged out successfully"

    async def test_undecodable_bearer_still_succeeds(self, auth_service):
        assert await auth_service.logout("Bearer not-a-token") == "Logged out successfully"

    async def test_presented_refresh_token_is_revoked(self, auth_service, cache):
        payload = await auth_service.verify_magic_link(
            await auth_service.request_magic_link("a@example.com")
        )
        key = f"{REFRESH_TOKEN_PREFIX}{payload['refresh_token']}"
        assert await cache.get(key) is not None

        message = await auth_service.logout(
            f"Bearer {payload['access_token']}", refresh_token=payload["refresh_token"]
        )

        assert message == "Logged out successfully"
        assert await cache.get(key) is None

    async def test_cache_failure_is_swallowed(self, auth_service):
        async def broken_delete(key):
            raise RuntimeError("cache down")

        auth_service.cache.delete = broken_delete
        assert await auth_service.logout(None, refresh_token="abc") == "Logged out"


class TestProviderLinking:
    async def test_magic_link_then_github_shares_one_user(self, auth_service, memory_store, github_stub):
        github_stub.emails = [{"email": "both@example.com", "primary": True, "verified": True}]
        email_session = await auth_service.verify_magic_link(
            await auth_service.request_magic_link("both@example.com")
        )
        assert email_session["user"]["provider"] == PROVIDER_EMAIL

        state = await _start(auth_service)
        location = await auth_service.complete_github_oauth("code", state)
        github_session = await auth_service.pickup_session(_query(location)["session"])

        assert github_session["user"]["id"] == email_session["user"]["id"]
        assert github_session["user"]["provider"] == PROVIDER_GITHUB
        assert github_session["user"]["role"] == "admin"
        assert len(memory_store.users) == 1
        assert len(memory_store.clients) == 1
