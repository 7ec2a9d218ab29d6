from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from cozyauth.api.error_handling import register_exception_handlers
from cozyauth.api.routes import router
from cozyauth.api.schemas import HealthResponse
from cozyauth.config import get_settings
from cozyauth.logging import bind_request_id, get_logger

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime eagerly so misconfiguration fails at startup."""
    from cozyauth.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__)


app = FastAPI(title="Cozyartz Auth", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_allow_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=86400,
)


@app.middleware("http")
async def add_request_id(request, call_next):
    """Tag every log line of a request with one id and echo it back.

    The id comes from the client's X-Request-ID header when present,
    otherwise a new UUID is generated.
    """
    request_id = bind_request_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Session payloads and handoff responses carry tokens
    if request.url.path.startswith("/api/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report directory and ephemeral store reachability."""
    from cozyauth.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Any] = {}

    try:
        checks["store"] = await asyncio.wait_for(
            asyncio.to_thread(runtime.store.ping), timeout=HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        checks["store"] = False
    try:
        checks["cache"] = await asyncio.wait_for(
            runtime.cache.ping(), timeout=HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        checks["cache"] = False

    healthy = all(checks.values())
    if not healthy:
        logger.warning("health_check_degraded", **checks)
    body = HealthResponse(status="ok" if healthy else "degraded", **checks)
    return JSONResponse(status_code=200 if healthy else 503, content=body.model_dump())


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("cozyauth.app:app", host=settings.host, port=settings.port)
