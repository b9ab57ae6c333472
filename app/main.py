from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette import status
from starlette.responses import JSONResponse

from app.api.routes import auth
from app.core.config import settings
from app.core.rate_limiter import limiter
from app.middleware.request_id import RequestIDMiddleware
from app.services import audit
from app.services.identity import IdentityProviderClient
from app.services.lockout import LockoutEngine
from app.services.oauth_state import OAuthStateStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    configure_logging()
    settings.warn_if_insecure()
    lockout_engine = LockoutEngine(settings.lockout_policy())
    oauth_states = OAuthStateStore()
    identity_client = IdentityProviderClient(
        settings.supabase_url,
        settings.supabase_anon_key,
        settings.supabase_service_role_key,
        timeout=settings.idp_timeout_seconds,
    )
    app.state.lockout_engine = lockout_engine
    app.state.oauth_states = oauth_states
    app.state.identity_client = identity_client

    lockout_engine.start()
    oauth_states.start()
    logger.info("%s started (environment=%s)", settings.app_name, settings.environment)
    try:
        yield
    finally:
        await lockout_engine.stop()
        await oauth_states.stop()
        await identity_client.aclose()
        logger.info("%s stopped", settings.app_name)


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.state.limiter = limiter

app.add_middleware(SlowAPIMiddleware)
app.add_middleware(RequestIDMiddleware)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    audit.log_security_event(request, "RATE_LIMIT_EXCEEDED", {"path": request.url.path})
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "error": "rate_limit_exceeded",
            "message": "Too many requests. Please try again later.",
            "detail": str(exc.detail),
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"path": [str(part) for part in error.get("loc", ())], "message": error.get("msg", "")}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "invalid_input", "message": "Invalid input", "details": details},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    audit.log_error(exc, request, {"handler": "unhandled"})
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_error", "message": "An unexpected error occurred"},
    )


@app.get("/health", tags=["system"])
@limiter.exempt
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


app.include_router(auth.router, prefix="/auth", tags=["auth"])
