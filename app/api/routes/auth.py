from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import RedirectResponse

from app.api.deps import client_ip, get_identity_client, get_lockout_engine, get_oauth_states, require_user
from app.core.config import settings
from app.core.rate_limiter import limiter
from app.core.security import code_challenge_s256
from app.schemas import auth as schemas
from app.services import audit
from app.services.identity import INVALID_RESPONSE, IdentityProviderClient, IdentityProviderError, IdentityUser
from app.services.lockout import LockoutEngine
from app.services.oauth_state import OAuthStateStore
from app.utils.cookies import clear_auth_cookie, get_auth_token, set_auth_cookie

router = APIRouter()

REGISTRATION_MESSAGE = "Registration successful. Please check your email to verify your account."
FORGOT_PASSWORD_MESSAGE = "If an account exists with this email, a password reset link has been sent."
INVALID_RESET_LINK = "Password reset link is invalid or expired. Please request a new one."
CONNECTION_FAILED_MESSAGE = "Unable to connect to authentication service. Please try again."

DUPLICATE_EMAIL_CODES = {"user_already_exists", "email_address_not_available", "email_exists"}
DUPLICATE_EMAIL_PHRASES = ("already registered", "user already exists", "email already", "duplicate")
UPSTREAM_RATE_LIMIT_CODES = {"too_many_requests", "over_request_rate_limit"}
REPEATED_FAILURE_THRESHOLD = 3


def _error(status_code: int, error: str, message: str, headers: Optional[dict[str, str]] = None) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"error": error, "message": message}, headers=headers)


def _locked(engine: LockoutEngine, identity: str, ip: Optional[str], template: str) -> HTTPException:
    minutes = max(engine.get_remaining_lockout_time(identity, ip), 1)
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={"error": "rate_limited", "message": template.format(minutes=minutes), "retry_after_minutes": minutes},
        headers={"Retry-After": str(minutes * 60)},
    )


def _registration_key(email: str) -> str:
    return f"register:{email}"


def _is_duplicate_email(exc: IdentityProviderError) -> bool:
    if exc.code in DUPLICATE_EMAIL_CODES:
        return True
    message = exc.message.lower()
    return any(phrase in message for phrase in DUPLICATE_EMAIL_PHRASES)


def _user_summary(user: IdentityUser) -> schemas.UserSummary:
    return schemas.UserSummary(id=user.id, email=user.email)


@router.post("/register", response_model=schemas.ApiResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.auth_rate_limit)
async def register(
    payload: schemas.RegisterRequest,
    request: Request,
    engine: LockoutEngine = Depends(get_lockout_engine),
    identity: IdentityProviderClient = Depends(get_identity_client),
) -> schemas.ApiResponse:
    ip = client_ip(request)
    key = _registration_key(payload.email)

    if engine.is_locked(key, ip):
        raise _locked(engine, key, ip, "Too many registration attempts. Try again in {minutes} minutes.")

    try:
        await identity.sign_up(
            payload.email,
            payload.password,
            redirect_to=f"{settings.frontend_url}/auth/verify",
            metadata={"username": payload.username} if payload.username else None,
        )
    except IdentityProviderError as exc:
        audit.log_request_event(
            request,
            audit.REGISTRATION_FAILED,
            email=payload.email,
            meta={"error_name": type(exc).__name__, "error_code": exc.code, "is_retryable": exc.is_connection_error},
        )
        audit.log_error(exc, request, {"operation": "registration", "email": payload.email})

        # outages are not counted as failed attempts
        if exc.is_connection_error:
            raise _error(status.HTTP_503_SERVICE_UNAVAILABLE, "connection_failed", CONNECTION_FAILED_MESSAGE) from exc
        if exc.is_unavailable:
            raise _error(
                status.HTTP_503_SERVICE_UNAVAILABLE,
                "service_unavailable",
                "Authentication service is temporarily unavailable. Please try again.",
            ) from exc

        engine.record_failed_attempt(key, ip)
        if _is_duplicate_email(exc):
            # same answer as a fresh registration so emails cannot be enumerated
            audit.log_security_event(request, "DUPLICATE_REGISTRATION")
            return schemas.ApiResponse(message=REGISTRATION_MESSAGE)
        if exc.code == "email_address_invalid":
            raise _error(status.HTTP_400_BAD_REQUEST, "invalid_input", "Please enter a valid email address.") from exc
        if exc.code == "over_email_send_rate_limit":
            raise _error(
                status.HTTP_429_TOO_MANY_REQUESTS,
                "rate_limited",
                "Too many registration attempts. Please try again later.",
            ) from exc
        raise _error(
            status.HTTP_400_BAD_REQUEST, "registration_failed", "Registration failed. Please try again."
        ) from exc

    engine.clear_attempts(key, ip)
    audit.log_request_event(request, audit.USER_REGISTERED, email=payload.email)
    return schemas.ApiResponse(message=REGISTRATION_MESSAGE)


def _record_login_failure(
    request: Request, engine: LockoutEngine, email: str, ip: Optional[str], reason: str
) -> bool:
    newly_locked = engine.record_failed_attempt(email, ip)
    audit.log_request_event(request, audit.LOGIN_FAILED, email=email, meta={"reason": reason})

    lockout_status = engine.get_lockout_status(email, ip)
    if lockout_status.failed_attempts >= REPEATED_FAILURE_THRESHOLD:
        audit.log_security_event(
            request,
            "REPEATED_LOGIN_FAILURES",
            {"attempt_count": lockout_status.failed_attempts, "total_lockouts": lockout_status.total_lockouts},
        )
    if newly_locked:
        audit.log_request_event(request, audit.ACCOUNT_LOCKED, email=email)
    return newly_locked


@router.post("/login", response_model=schemas.LoginResponse)
@limiter.limit(settings.auth_rate_limit)
async def login(
    payload: schemas.LoginRequest,
    request: Request,
    response: Response,
    engine: LockoutEngine = Depends(get_lockout_engine),
    identity: IdentityProviderClient = Depends(get_identity_client),
) -> schemas.LoginResponse:
    ip = client_ip(request)

    if engine.is_locked(payload.email, ip):
        audit.log_request_event(request, audit.ACCOUNT_LOCKED, email=payload.email)
        raise _locked(engine, payload.email, ip, "Account temporarily locked. Try again in {minutes} minutes.")

    try:
        session = await identity.sign_in_with_password(payload.email, payload.password)
    except IdentityProviderError as exc:
        audit.log_error(exc, request, {"operation": "login"})
        if exc.is_connection_error or exc.is_unavailable:
            raise _error(status.HTTP_503_SERVICE_UNAVAILABLE, "connection_failed", CONNECTION_FAILED_MESSAGE) from exc

        if _record_login_failure(request, engine, payload.email, ip, "Invalid credentials"):
            raise _locked(
                engine, payload.email, ip, "Too many failed attempts. Account locked for {minutes} minutes."
            ) from exc

        message = exc.message.lower()
        if exc.code == "email_not_confirmed" or ("email" in message and "confirm" in message):
            raise _error(
                status.HTTP_403_FORBIDDEN, "email_not_verified", "Please verify your email before logging in."
            ) from exc
        if "banned" in message:
            raise _error(
                status.HTTP_401_UNAUTHORIZED, "auth_failed", "Your account has been suspended. Please contact support."
            ) from exc
        if exc.code in UPSTREAM_RATE_LIMIT_CODES:
            raise _error(
                status.HTTP_429_TOO_MANY_REQUESTS, "rate_limited", "Too many login attempts. Please try again later."
            ) from exc
        raise _error(status.HTTP_401_UNAUTHORIZED, "invalid_credentials", "Invalid email or password.") from exc

    if session is None:
        if _record_login_failure(request, engine, payload.email, ip, "No session returned"):
            raise _locked(engine, payload.email, ip, "Too many failed attempts. Account locked for {minutes} minutes.")
        raise _error(status.HTTP_401_UNAUTHORIZED, "invalid_credentials", "Invalid email or password.")

    if not session.user.email_verified:
        raise _error(status.HTTP_403_FORBIDDEN, "email_not_verified", "Please verify your email to continue")

    engine.clear_attempts(payload.email, ip)
    audit.log_request_event(request, audit.LOGIN_SUCCESS, email=payload.email)
    set_auth_cookie(response, session.access_token)

    return schemas.LoginResponse(
        message="Login successful",
        data=schemas.LoginData(user=_user_summary(session.user)),
    )


@router.post("/logout", response_model=schemas.ApiResponse)
async def logout(
    request: Request,
    response: Response,
    identity: IdentityProviderClient = Depends(get_identity_client),
) -> schemas.ApiResponse:
    token = get_auth_token(request)
    if token:
        try:
            await identity.sign_out(token)
        except IdentityProviderError as exc:
            # the cookie is cleared regardless
            audit.log_error(exc, request, {"operation": "logout"})
    clear_auth_cookie(response)
    return schemas.ApiResponse(message="Logout successful")


@router.post("/forgot-password", response_model=schemas.ApiResponse)
@limiter.limit(settings.auth_rate_limit)
async def forgot_password(
    payload: schemas.ForgotPasswordRequest,
    request: Request,
    identity: IdentityProviderClient = Depends(get_identity_client),
) -> schemas.ApiResponse:
    try:
        await identity.reset_password_for_email(payload.email, redirect_to=f"{settings.frontend_url}/reset-password")
    except IdentityProviderError as exc:
        audit.log_error(exc, request, {"operation": "forgot-password"})

    audit.log_request_event(request, audit.PASSWORD_RESET_REQUESTED, email=payload.email)
    return schemas.ApiResponse(message=FORGOT_PASSWORD_MESSAGE)


def _reset_failure(exc: IdentityProviderError) -> HTTPException:
    message = exc.message.lower()
    if exc.code == "invalid_token" or "invalid" in message or "expired" in message:
        return _error(status.HTTP_401_UNAUTHORIZED, "auth_failed", INVALID_RESET_LINK)
    if "password" in message and ("weak" in message or "short" in message):
        return _error(
            status.HTTP_400_BAD_REQUEST,
            "invalid_input",
            "Password is not strong enough. Please use a stronger password.",
        )
    return _error(status.HTTP_401_UNAUTHORIZED, "auth_failed", "Password reset failed. Please try again.")


@router.post("/reset-password", response_model=schemas.ApiResponse)
@limiter.limit(settings.auth_rate_limit)
async def reset_password(
    payload: schemas.ResetPasswordRequest,
    request: Request,
    response: Response,
    engine: LockoutEngine = Depends(get_lockout_engine),
    identity: IdentityProviderClient = Depends(get_identity_client),
) -> schemas.ApiResponse:
    try:
        user = await identity.get_user(payload.token)
    except IdentityProviderError as exc:
        audit.log_security_event(request, "INVALID_RESET_TOKEN")
        raise _error(status.HTTP_401_UNAUTHORIZED, "auth_failed", INVALID_RESET_LINK) from exc

    try:
        await identity.admin_update_user(user.id, {"password": payload.password})
    except IdentityProviderError as exc:
        audit.log_error(exc, request, {"operation": "reset-password"})
        # a 2xx with an unreadable body still means the password was changed
        if exc.code != INVALID_RESPONSE:
            raise _reset_failure(exc) from exc

    if user.email:
        # the old password is useless to an attacker now
        engine.full_reset(user.email)

    clear_auth_cookie(response)
    audit.log_security_event(request, "PASSWORD_RESET_SUCCESS", {"user_id": user.id})
    return schemas.ApiResponse(message="Password reset successful. Please login with your new password.")


@router.get("/google/url", response_model=schemas.GoogleAuthUrlResponse)
async def google_auth_url(
    request: Request,
    states: OAuthStateStore = Depends(get_oauth_states),
    identity: IdentityProviderClient = Depends(get_identity_client),
) -> schemas.GoogleAuthUrlResponse:
    entry = states.create(client_ip(request))
    callback = f"{settings.public_backend_url}/auth/google/callback?{urlencode({'state': entry.state})}"
    url = identity.authorize_url(
        "google",
        redirect_to=callback,
        code_challenge=code_challenge_s256(entry.code_verifier),
        query_params={"access_type": "offline", "prompt": "consent"},
    )
    return schemas.GoogleAuthUrlResponse(message="OAuth URL generated", data=schemas.GoogleAuthUrlData(url=url))


def _error_redirect(reason: Optional[str] = None) -> RedirectResponse:
    url = f"{settings.frontend_url}/auth/error"
    if reason:
        url = f"{url}?{urlencode({'error': reason})}"
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


@router.get("/google/callback")
async def google_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    states: OAuthStateStore = Depends(get_oauth_states),
    identity: IdentityProviderClient = Depends(get_identity_client),
) -> RedirectResponse:
    if error:
        audit.log_security_event(request, "OAUTH_ERROR", {"error": error})
        return _error_redirect("oauth_denied")

    entry = states.consume(state) if state else None
    if entry is None:
        audit.log_security_event(request, "OAUTH_INVALID_STATE")
        return _error_redirect("invalid_state")

    if not code:
        audit.log_security_event(request, "OAUTH_NO_CODE")
        return _error_redirect("no_code")

    try:
        session = await identity.exchange_code_for_session(code, entry.code_verifier)
    except IdentityProviderError as exc:
        audit.log_error(exc, request, {"operation": "oauth-callback"})
        return _error_redirect("auth_failed")
    if session is None:
        audit.log_error(RuntimeError("No session"), request, {"operation": "oauth-callback"})
        return _error_redirect("auth_failed")

    redirect = RedirectResponse(f"{settings.frontend_url}/dashboard", status_code=status.HTTP_302_FOUND)
    set_auth_cookie(redirect, session.access_token)
    audit.log_request_event(request, audit.LOGIN_SUCCESS, email=session.user.email or "oauth-user")
    return redirect


@router.get("/me", response_model=schemas.MeResponse)
async def me(user: IdentityUser = Depends(require_user)) -> schemas.MeResponse:
    return schemas.MeResponse(
        message="User retrieved",
        data=schemas.MeData(
            user=schemas.UserDetail(
                id=user.id,
                email=user.email,
                email_verified=user.email_verified,
                created_at=user.created_at,
                username=user.user_metadata.get("username"),
            )
        ),
    )
