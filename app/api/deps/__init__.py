from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from app.services import audit
from app.services.identity import IdentityProviderClient, IdentityProviderError, IdentityUser
from app.services.lockout import LockoutEngine
from app.services.oauth_state import OAuthStateStore
from app.utils.cookies import cleared_auth_cookie_headers, get_auth_token


def get_lockout_engine(request: Request) -> LockoutEngine:
    return request.app.state.lockout_engine


def get_identity_client(request: Request) -> IdentityProviderClient:
    return request.app.state.identity_client


def get_oauth_states(request: Request) -> OAuthStateStore:
    return request.app.state.oauth_states


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


async def require_user(
    request: Request,
    identity: IdentityProviderClient = Depends(get_identity_client),
) -> IdentityUser:
    token = get_auth_token(request)
    if not token:
        audit.log_security_event(request, "MISSING_AUTH_TOKEN")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "auth_failed", "message": "Not authenticated. Please login."},
        )

    try:
        return await identity.get_user(token)
    except IdentityProviderError as exc:
        audit.log_error(exc, request, {"operation": "get-user"})
        message = exc.message.lower()
        if "expired" in message or "invalid" in message:
            detail = "Your session has expired. Please login again."
        else:
            detail = "Invalid session. Please login again."
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "auth_failed", "message": detail},
            headers=cleared_auth_cookie_headers(),
        ) from exc
