from __future__ import annotations

from typing import Optional

from fastapi import Request, Response

from app.core.config import settings

AUTH_COOKIE_NAME = "auth_token"
AUTH_COOKIE_MAX_AGE_SECONDS = 7 * 24 * 60 * 60


def _cookie_domain() -> Optional[str]:
    # browsers reject Domain=localhost; host-only cookies work there
    if settings.cookie_domain in ("", "localhost"):
        return None
    return settings.cookie_domain


def set_auth_cookie(response: Response, access_token: str) -> None:
    response.set_cookie(
        key=AUTH_COOKIE_NAME,
        value=access_token,
        max_age=AUTH_COOKIE_MAX_AGE_SECONDS,
        path="/",
        domain=_cookie_domain(),
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_same_site,
    )


def clear_auth_cookie(response: Response) -> None:
    response.delete_cookie(
        AUTH_COOKIE_NAME,
        path="/",
        domain=_cookie_domain(),
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_same_site,
    )


def get_auth_token(request: Request) -> Optional[str]:
    return request.cookies.get(AUTH_COOKIE_NAME) or None


def cleared_auth_cookie_headers() -> dict[str, str]:
    """Headers that expire the auth cookie, for responses built from exceptions."""
    response = Response()
    clear_auth_cookie(response)
    return {"set-cookie": response.headers["set-cookie"]}
