import asyncio
import inspect
import json
import os
import re
import sys
from pathlib import Path

# Configure the runtime before any import that might build it
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("GITHUB_CLIENT_ID", "test-github-client")
os.environ.setdefault("GITHUB_CLIENT_SECRET", "test-github-secret")
os.environ.setdefault("RESEND_API_KEY", "re_test_key")
os.environ.setdefault("LOG_LEVEL", "WARNING")
# Tests never talk to a real Redis; the runtime falls back to LocalCache
os.environ["REDIS_URL"] = ""

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from cozyauth.config import Settings  # noqa: E402
from cozyauth.service.auth import AuthService  # noqa: E402
from cozyauth.service.directory import DirectoryService  # noqa: E402
from cozyauth.service.email import EmailService  # noqa: E402
from cozyauth.service.github import EMAILS_URL, TOKEN_URL, USER_URL, GitHubClient  # noqa: E402
from cozyauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from cozyauth.storage.local_cache import LocalCache  # noqa: E402
from cozyauth.storage.memory import MemoryStore  # noqa: E402

TEST_JWT_SECRET = "unit-test-signing-secret-0123456789abcdef"


class GitHubStub:
    """httpx handler standing in for github.com and api.github.com."""

    def __init__(self) -> None:
        self.profile = {
            "id": 4242,
            "login": "octocat",
            "name": "Mona Octocat",
            "email": "mona-public@example.com",
            "avatar_url": "https://avatars.example.com/u/4242",
        }
        self.emails = [
            {"email": "secondary@example.com", "primary": False, "verified": True},
            {"email": "octocat@example.com", "primary": True, "verified": True},
        ]
        self.token_error = None
        self.emails_status = 200
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url == TOKEN_URL:
            if self.token_error:
                return httpx.Response(200, json={"error": self.token_error})
            return httpx.Response(200, json={"access_token": "gho_test", "token_type": "bearer"})
        if url == USER_URL:
            return httpx.Response(200, json=self.profile)
        if url == EMAILS_URL:
            if self.emails_status != 200:
                return httpx.Response(self.emails_status, json={"message": "Not Found"})
            return httpx.Response(200, json=self.emails)
        return httpx.Response(404, json={"message": "Not Found"})


class EmailOutbox:
    """httpx handler standing in for the Resend API; records every message."""

    def __init__(self) -> None:
        self.messages = []
        self.status_code = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.messages.append(json.loads(request.content))
        self.last_authorization = request.headers.get("Authorization")
        return httpx.Response(self.status_code, json={"id": f"email_{len(self.messages)}"})

    def last_token(self) -> str:
        match = re.search(r"token=([0-9a-f]{64})", self.messages[-1]["text"])
        assert match, "no magic link in the last email"
        return match.group(1)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_JWT_SECRET,
        github_client_id="gh-client",
        github_client_secret="gh-secret",
        resend_api_key="re_unit",
        test_mode=True,
        use_memory_store=True,
    )


@pytest.fixture
def github_stub():
    return GitHubStub()


@pytest.fixture
def email_outbox():
    return EmailOutbox()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def cache():
    return LocalCache()


@pytest.fixture
def directory(memory_store):
    return DirectoryService(memory_store)


@pytest.fixture
def auth_service(settings, directory, cache, github_stub, email_outbox):
    return AuthService(
        directory=directory,
        cache=cache,
        github=GitHubClient(
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            redirect_uri=settings.github_redirect_uri,
            transport=httpx.MockTransport(github_stub),
        ),
        email=EmailService(
            api_key=settings.resend_api_key,
            transport=httpx.MockTransport(email_outbox),
        ),
        settings=settings,
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
