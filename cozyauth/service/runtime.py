from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from cozyauth.config import Settings, get_settings, reset_settings_cache
from cozyauth.logging import get_logger
from cozyauth.service.auth import AuthService
from cozyauth.service.directory import DirectoryService
from cozyauth.service.email import EmailService
from cozyauth.service.github import GitHubClient
from cozyauth.storage.local_cache import LocalCache
from cozyauth.storage.memory import MemoryStore
from cozyauth.storage.postgres import PostgresStore
from cozyauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Wires the directory, the ephemeral store and the auth flows together."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store = self._build_store()
        self.cache = self._build_cache()

        self.directory = DirectoryService(self.store, primary_domain=self.settings.primary_domain)
        self.github = GitHubClient(
            client_id=self.settings.github_client_id,
            client_secret=self.settings.github_client_secret,
            redirect_uri=self.settings.github_redirect_uri,
            timeout=self.settings.http_timeout_seconds,
        )
        self.email = EmailService(
            api_key=self.settings.resend_api_key,
            api_url=self.settings.email_api_url,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            timeout=self.settings.http_timeout_seconds,
        )
        self.auth = AuthService(
            directory=self.directory,
            cache=self.cache,
            github=self.github,
            email=self.email,
            settings=self.settings,
        )

        logger.info(
            "runtime_ready",
            store=type(self.store).__name__,
            cache=type(self.cache).__name__,
            github_configured=self.github.is_configured,
            email_configured=self.email.is_configured,
            jwt_configured=bool(self.settings.jwt_secret),
        )

    def _build_store(self) -> MemoryStore | PostgresStore:
        if self.settings.use_memory_store:
            return MemoryStore()
        try:
            return PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "directory_store_unavailable",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
            )
            raise

    def _build_cache(self) -> RedisCache | LocalCache:
        """Connect to Redis, or fall back to LocalCache where that is allowed.

        Outside TEST_MODE and ALLOW_REDIS_FALLBACK_DEV an unreachable Redis is
        fatal.
        """
        failure: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                failure = exc

        if not (self.settings.test_mode or self.settings.allow_redis_fallback_dev):
            raise RuntimeError(
                "Redis unreachable at "
                f"{_mask_url_password(self.settings.redis_url) or '<unset REDIS_URL>'}; "
                "set TEST_MODE or ALLOW_REDIS_FALLBACK_DEV to run on the in-process cache"
            ) from failure
        logger.warning(
            "ephemeral_store_in_process",
            redis_url=_mask_url_password(self.settings.redis_url),
            reason=type(failure).__name__ if failure else "redis_url_unset",
        )
        return LocalCache()

    async def close(self) -> None:
        await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide Runtime, building it on first use."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Close the current Runtime and build a fresh one from the environment.

    Refused unless TEST_MODE is set.
    """
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                try:
                    asyncio.run(runtime.close())
                except Exception as exc:
                    logger.warning("runtime_close_failed", error_type=type(exc).__name__)
            else:
                logger.warning("runtime_reset_skipped_close", reason="event_loop_running")
        runtime = Runtime(settings)
        return runtime
