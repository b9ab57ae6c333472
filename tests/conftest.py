from __future__ import annotations

import os
import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlencode

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))
from httpx import ASGITransport, AsyncClient

from app.services.identity import IdentityProviderError, IdentitySession, IdentityUser
from app.services.lockout import LockoutEngine, LockoutPolicy

DEFAULT_IP = "203.0.113.7"


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeIdentityProvider:
    """In-memory stand-in for the hosted identity provider."""

    def __init__(self) -> None:
        self.users: dict[str, dict[str, Any]] = {}
        self.tokens: dict[str, str] = {}
        self.oauth_codes: dict[str, str] = {}
        self.exchanged_verifiers: list[str] = []
        self.signed_out: list[str] = []
        self.recovery_requests: list[str] = []
        self.sign_in_calls = 0
        self.unreachable = False
        self.sign_up_error: Optional[IdentityProviderError] = None
        self.admin_update_error: Optional[IdentityProviderError] = None

    def _check_reachable(self) -> None:
        if self.unreachable:
            raise IdentityProviderError("fetch failed", code="connection_failed")

    def add_user(self, email: str, password: str, *, confirmed: bool = True, username: Optional[str] = None) -> str:
        user_id = str(uuid.uuid4())
        self.users[email] = {
            "id": user_id,
            "email": email,
            "password": password,
            "email_confirmed_at": "2024-01-01T00:00:00Z" if confirmed else None,
            "created_at": "2024-01-01T00:00:00Z",
            "user_metadata": {"username": username} if username else {},
        }
        return user_id

    def issue_token(self, email: str) -> str:
        token = f"hdr.{uuid.uuid4().hex}.sig"
        self.tokens[token] = email
        return token

    def _user(self, email: str) -> IdentityUser:
        return IdentityUser.from_payload(self.users[email])

    async def sign_up(self, email, password, *, redirect_to=None, metadata=None) -> IdentityUser:
        self._check_reachable()
        if self.sign_up_error is not None:
            raise self.sign_up_error
        if email in self.users:
            raise IdentityProviderError("User already registered", code="user_already_exists", status=422)
        self.add_user(email, password, confirmed=False, username=(metadata or {}).get("username"))
        return self._user(email)

    async def sign_in_with_password(self, email, password) -> Optional[IdentitySession]:
        self.sign_in_calls += 1
        self._check_reachable()
        record = self.users.get(email)
        if record is None or record["password"] != password:
            raise IdentityProviderError("Invalid login credentials", code="invalid_credentials", status=400)
        return IdentitySession(access_token=self.issue_token(email), user=self._user(email))

    async def sign_out(self, access_token) -> None:
        self._check_reachable()
        self.signed_out.append(access_token)
        self.tokens.pop(access_token, None)

    async def reset_password_for_email(self, email, *, redirect_to=None) -> None:
        self._check_reachable()
        self.recovery_requests.append(email)

    async def get_user(self, access_token) -> IdentityUser:
        self._check_reachable()
        email = self.tokens.get(access_token)
        if email is None:
            raise IdentityProviderError("invalid JWT: token is expired", code="bad_jwt", status=403)
        return self._user(email)

    async def admin_update_user(self, user_id, attributes) -> IdentityUser:
        self._check_reachable()
        for email, record in self.users.items():
            if record["id"] == user_id:
                record.update(attributes)
                if self.admin_update_error is not None:
                    raise self.admin_update_error
                return self._user(email)
        raise IdentityProviderError("User not found", code="user_not_found", status=404)

    def authorize_url(self, provider, *, redirect_to, code_challenge, query_params=None) -> str:
        query = urlencode({"provider": provider, "redirect_to": redirect_to, "code_challenge": code_challenge})
        return f"https://idp.example.test/auth/v1/authorize?{query}"

    async def exchange_code_for_session(self, auth_code, code_verifier) -> Optional[IdentitySession]:
        self._check_reachable()
        email = self.oauth_codes.pop(auth_code, None)
        if email is None:
            raise IdentityProviderError("invalid flow state", code="flow_state_not_found", status=404)
        self.exchanged_verifiers.append(code_verifier)
        return IdentitySession(access_token=self.issue_token(email), user=self._user(email))


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(scope="session", autouse=True)
def configure_environment():
    os.environ.setdefault("ENVIRONMENT", "test")
    os.environ.setdefault("SUPABASE_URL", "https://idp.example.test")
    os.environ.setdefault("SUPABASE_ANON_KEY", "anon-key")
    os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "service-role-key")
    os.environ.setdefault("FRONTEND_URL", "http://localhost:3000")
    os.environ.setdefault("BACKEND_URL", "http://localhost:3000/api")
    os.environ.setdefault("RATE_LIMIT_MAX_REQUESTS", "10000")
    os.environ.setdefault("AUTH_RATE_LIMIT_MAX_REQUESTS", "10000")
    os.environ.setdefault("LOCKOUT_MAX_ATTEMPTS", "5")
    os.environ.setdefault("LOCKOUT_DURATION_MINUTES", "15")
    yield


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(clock: FakeClock) -> LockoutEngine:
    return LockoutEngine(LockoutPolicy(max_attempts=5, base_duration=timedelta(minutes=15)), clock=clock)


@pytest.fixture
def identity_provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture(autouse=True)
def reset_rate_limits(configure_environment):
    from app.core.rate_limiter import limiter  # noqa: WPS433

    yield
    limiter.reset()


@pytest.fixture
async def gateway(configure_environment, engine, identity_provider):
    from app.api.deps import get_identity_client, get_lockout_engine  # noqa: WPS433
    from app.main import app  # noqa: WPS433

    app.dependency_overrides[get_identity_client] = lambda: identity_provider
    app.dependency_overrides[get_lockout_engine] = lambda: engine
    async with app.router.lifespan_context(app):
        yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client_for(gateway):
    def factory(ip: str = DEFAULT_IP) -> AsyncClient:
        transport = ASGITransport(app=gateway, client=(ip, 50000))
        return AsyncClient(transport=transport, base_url="http://testserver")

    return factory


@pytest.fixture
async def client(client_for):
    async with client_for() as async_client:
        yield async_client
