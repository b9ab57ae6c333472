from __future__ import annotations

import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from app.services.identity import CONNECTION_FAILED, INVALID_RESPONSE, IdentityProviderClient, IdentityProviderError

BASE_URL = "https://idp.example.test"
USER = {
    "id": "2b9f1c5e-0000-4000-8000-000000000001",
    "email": "user@example.com",
    "email_confirmed_at": "2024-01-01T00:00:00Z",
    "created_at": "2023-12-31T00:00:00Z",
    "user_metadata": {"username": "user_1"},
}


def make_client(handler) -> IdentityProviderClient:
    return IdentityProviderClient(
        f"{BASE_URL}/",
        "anon-key",
        "service-role-key",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.anyio
async def test_password_sign_in_returns_session():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"access_token": "jwt", "refresh_token": "r", "expires_in": 3600, "user": USER})

    client = make_client(handler)
    session = await client.sign_in_with_password("user@example.com", "Str0ngPassw0rd!")
    await client.aclose()

    assert session is not None
    assert session.access_token == "jwt"
    assert session.user.email_verified is True
    request = seen[0]
    assert request.url.path == "/auth/v1/token"
    assert request.url.params["grant_type"] == "password"
    assert request.headers["apikey"] == "anon-key"
    assert json.loads(request.content) == {"email": "user@example.com", "password": "Str0ngPassw0rd!"}


@pytest.mark.anyio
async def test_error_payload_is_normalised():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"code": 400, "error_code": "invalid_credentials", "msg": "Invalid login credentials"})

    client = make_client(handler)
    with pytest.raises(IdentityProviderError) as excinfo:
        await client.sign_in_with_password("user@example.com", "wrong")
    await client.aclose()

    assert excinfo.value.code == "invalid_credentials"
    assert excinfo.value.message == "Invalid login credentials"
    assert excinfo.value.status == 400
    assert excinfo.value.is_connection_error is False


@pytest.mark.anyio
async def test_legacy_error_payload():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Email not confirmed"})

    client = make_client(handler)
    with pytest.raises(IdentityProviderError) as excinfo:
        await client.sign_in_with_password("user@example.com", "pw")
    await client.aclose()

    assert excinfo.value.code == "invalid_grant"
    assert excinfo.value.message == "Email not confirmed"


@pytest.mark.anyio
async def test_transport_failure_is_connection_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    client = make_client(handler)
    with pytest.raises(IdentityProviderError) as excinfo:
        await client.get_user("jwt")
    await client.aclose()

    assert excinfo.value.code == CONNECTION_FAILED
    assert excinfo.value.is_connection_error is True


@pytest.mark.anyio
async def test_unavailable_status():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="upstream down")

    client = make_client(handler)
    with pytest.raises(IdentityProviderError) as excinfo:
        await client.reset_password_for_email("user@example.com")
    await client.aclose()

    assert excinfo.value.is_unavailable is True


@pytest.mark.anyio
async def test_sign_up_accepts_user_or_session_body():
    bodies = [USER, {"access_token": "jwt", "user": USER}]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=bodies.pop(0))

    client = make_client(handler)
    first = await client.sign_up("user@example.com", "pw", redirect_to="http://localhost:3000/auth/verify")
    second = await client.sign_up("user@example.com", "pw")
    await client.aclose()

    assert first.id == second.id == USER["id"]


@pytest.mark.anyio
async def test_admin_calls_use_service_role_key():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path.endswith("/logout"):
            return httpx.Response(204)
        return httpx.Response(200, json=USER)

    client = make_client(handler)
    await client.admin_update_user(USER["id"], {"password": "An0ther-Str0ng!"})
    await client.sign_out("user-jwt")
    await client.aclose()

    update, logout = seen
    assert update.method == "PUT"
    assert update.url.path == f"/auth/v1/admin/users/{USER['id']}"
    assert update.headers["authorization"] == "Bearer service-role-key"
    assert logout.headers["authorization"] == "Bearer user-jwt"
    assert logout.headers["apikey"] == "service-role-key"


@pytest.mark.anyio
async def test_get_user_sends_bearer_token():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["authorization"] == "Bearer user-jwt"
        return httpx.Response(200, json=USER)

    client = make_client(handler)
    user = await client.get_user("user-jwt")
    await client.aclose()

    assert user.user_metadata["username"] == "user_1"


def test_authorize_url_carries_pkce_challenge():
    client = make_client(lambda request: httpx.Response(200))

    url = client.authorize_url(
        "google",
        redirect_to="http://localhost:3000/auth/google/callback?state=abc",
        code_challenge="challenge",
        query_params={"prompt": "consent"},
    )

    parsed = urlparse(url)
    params = parse_qs(parsed.query)
    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == f"{BASE_URL}/auth/v1/authorize"
    assert params["provider"] == ["google"]
    assert params["code_challenge"] == ["challenge"]
    assert params["code_challenge_method"] == ["s256"]
    assert params["redirect_to"] == ["http://localhost:3000/auth/google/callback?state=abc"]
    assert params["prompt"] == ["consent"]


@pytest.mark.anyio
async def test_pkce_exchange_posts_verifier():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"access_token": "jwt", "user": USER})

    client = make_client(handler)
    session = await client.exchange_code_for_session("code-123", "verifier-xyz")
    await client.aclose()

    assert session is not None
    assert seen[0].url.params["grant_type"] == "pkce"
    assert json.loads(seen[0].content) == {"auth_code": "code-123", "code_verifier": "verifier-xyz"}


@pytest.mark.anyio
async def test_non_json_success_body_is_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>maintenance</html>")

    client = make_client(handler)
    with pytest.raises(IdentityProviderError) as excinfo:
        await client.sign_in_with_password("user@example.com", "pw")
    await client.aclose()

    assert excinfo.value.code == INVALID_RESPONSE
    assert excinfo.value.is_unavailable is True


@pytest.mark.anyio
async def test_user_payload_without_id_is_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"email": "user@example.com"})

    client = make_client(handler)
    with pytest.raises(IdentityProviderError) as excinfo:
        await client.admin_update_user(USER["id"], {"password": "An0ther-Str0ng!"})
    await client.aclose()

    assert excinfo.value.code == INVALID_RESPONSE
