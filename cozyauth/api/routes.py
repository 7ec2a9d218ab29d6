from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Header, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from cozyauth.api.schemas import (
    LogoutRequest,
    MagicLinkRequest,
    MessageResponse,
    SessionPayload,
    SessionPickupRequest,
    VerifyMagicLinkRequest,
)
from cozyauth.logging import get_logger, sanitize_error_message
from cozyauth.service.errors import ServerError, ServiceError
from cozyauth.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

_CORS_MAX_AGE = "86400"


def _preflight(methods: str) -> Response:
    return Response(
        status_code=200,
        headers={
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": methods,
            "Access-Control-Allow-Headers": "Content-Type, Authorization",
            "Access-Control-Max-Age": _CORS_MAX_AGE,
        },
    )


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _unexpected(message: str, exc: Exception) -> ServerError:
    logger.exception("auth_flow_failed", error_message=message, error_type=type(exc).__name__)
    return ServerError(message, detail={"message": sanitize_error_message(str(exc))})


@router.get("/github")
async def github_start(
    request: Request,
    tenant_domain: Optional[str] = Query(None, max_length=253),
    redirect_url: Optional[str] = Query(None, max_length=2048),
):
    """Redirect the browser to GitHub's consent screen."""
    runtime = get_runtime()
    location = await runtime.auth.start_github_oauth(
        tenant_domain, redirect_url, client_ip=_client_ip(request)
    )
    return RedirectResponse(location, status_code=302)


@router.get("/github/callback")
async def github_callback(
    code: Optional[str] = Query(None, max_length=512),
    state: Optional[str] = Query(None, max_length=128),
    error: Optional[str] = Query(None, max_length=256),
):
    runtime = get_runtime()
    location = await runtime.auth.complete_github_oauth(code, state, error)
    return RedirectResponse(location, status_code=302)


@router.post("/magic-link", response_model=MessageResponse)
async def magic_link(request: Request, body: Optional[MagicLinkRequest] = None):
    body = body or MagicLinkRequest()
    runtime = get_runtime()
    try:
        await runtime.auth.request_magic_link(
            body.email,
            body.tenant_domain,
            body.redirect_url,
            client_ip=_client_ip(request),
        )
    except ServiceError:
        raise
    except Exception as exc:
        raise _unexpected("Failed to send magic link", exc) from exc
    return MessageResponse(message="Magic link sent to your email")


@router.post("/verify-magic-link", response_model=SessionPayload)
async def verify_magic_link(body: Optional[VerifyMagicLinkRequest] = None):
    body = body or VerifyMagicLinkRequest()
    runtime = get_runtime()
    try:
        payload = await runtime.auth.verify_magic_link(body.token, body.tenant_domain)
    except ServiceError:
        raise
    except Exception as exc:
        raise _unexpected("Token verification failed", exc) from exc
    return SessionPayload.model_validate(payload)


@router.post("/session")
async def session_pickup(body: Optional[SessionPickupRequest] = None):
    """Exchange a one-time handoff key for the parked session payload."""
    body = body or SessionPickupRequest()
    runtime = get_runtime()
    try:
        payload = await runtime.auth.pickup_session(body.session_key)
    except ServiceError:
        raise
    except Exception as exc:
        raise _unexpected("Failed to retrieve session", exc) from exc
    # Returned verbatim, exactly as stored at login
    return JSONResponse(content=payload)


@router.post("/logout", response_model=MessageResponse)
async def logout(request: Request, authorization: Optional[str] = Header(None)):
    """Always 200. A malformed body is ignored rather than rejected."""
    refresh_token = None
    try:
        raw = await request.body()
        if raw:
            refresh_token = LogoutRequest.model_validate_json(raw).refresh_token
    except ValueError:
        logger.info("logout_body_ignored")
    try:
        runtime = get_runtime()
    except Exception as exc:
        logger.error("logout_runtime_unavailable", error_type=type(exc).__name__)
        return MessageResponse(message="Logged out")
    message = await runtime.auth.logout(authorization, refresh_token=refresh_token)
    return MessageResponse(message=message)


@router.options("/github")
@router.options("/github/callback")
async def github_options():
    return _preflight("GET, OPTIONS")


@router.options("/magic-link")
@router.options("/verify-magic-link")
@router.options("/session")
@router.options("/logout")
async def post_options():
    return _preflight("POST, OPTIONS")
