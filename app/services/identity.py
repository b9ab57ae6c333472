"""Client for the managed identity provider.

Speaks the GoTrue REST dialect served by Supabase Auth. Credential checks,
token issuance, email delivery and OAuth code exchange all happen upstream;
this module only shapes requests and normalises the answers and errors.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

logger = logging.getLogger(__name__)

CONNECTION_FAILED = "connection_failed"
INVALID_RESPONSE = "invalid_response"


class IdentityProviderError(Exception):
    def __init__(self, message: str, *, code: str = "", status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status

    @property
    def is_connection_error(self) -> bool:
        if self.code in (CONNECTION_FAILED, "UND_ERR_CONNECT_TIMEOUT"):
            return True
        text = self.message.lower()
        return "timeout" in text or "fetch failed" in text

    @property
    def is_unavailable(self) -> bool:
        text = self.message.lower()
        return self.status in (502, 503, 504) or "service unavailable" in text


@dataclass
class IdentityUser:
    id: str
    email: Optional[str] = None
    email_confirmed_at: Optional[str] = None
    created_at: Optional[str] = None
    user_metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def email_verified(self) -> bool:
        return bool(self.email_confirmed_at)

    @classmethod
    def from_payload(cls, payload: Any) -> "IdentityUser":
        if not isinstance(payload, dict) or not payload.get("id"):
            raise IdentityProviderError("Malformed user payload", code=INVALID_RESPONSE, status=502)
        return cls(
            id=payload["id"],
            email=payload.get("email"),
            email_confirmed_at=payload.get("email_confirmed_at") or payload.get("confirmed_at"),
            created_at=payload.get("created_at"),
            user_metadata=payload.get("user_metadata") or {},
        )


@dataclass
class IdentitySession:
    access_token: str
    user: IdentityUser
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Optional["IdentitySession"]:
        if not payload.get("access_token") or not payload.get("user"):
            return None
        return cls(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_in=payload.get("expires_in"),
            user=IdentityUser.from_payload(payload["user"]),
        )


def _error_from_response(response: httpx.Response) -> IdentityProviderError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    code = body.get("error_code") or body.get("error") or ""
    if not isinstance(code, str):
        code = str(code)
    message = (
        body.get("msg")
        or body.get("message")
        or body.get("error_description")
        or body.get("error")
        or response.reason_phrase
        or f"HTTP {response.status_code}"
    )
    return IdentityProviderError(str(message), code=code, status=response.status_code)


class IdentityProviderClient:
    def __init__(
        self,
        base_url: str,
        anon_key: str,
        service_role_key: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._anon_key = anon_key
        self._service_role_key = service_role_key
        self._http = httpx.AsyncClient(
            base_url=f"{self.base_url}/auth/v1",
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    def _headers(self, *, bearer: Optional[str] = None, admin: bool = False) -> dict[str, str]:
        key = self._service_role_key if admin else self._anon_key
        return {"apikey": key, "Authorization": f"Bearer {bearer or key}"}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        bearer: Optional[str] = None,
        admin: bool = False,
        params: Optional[dict[str, str]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        try:
            response = await self._http.request(
                method,
                path,
                params=params,
                json=json,
                headers=self._headers(bearer=bearer, admin=admin),
            )
        except httpx.TransportError as exc:
            logger.warning("Identity provider unreachable: %s %s (%s)", method, path, exc)
            raise IdentityProviderError("fetch failed", code=CONNECTION_FAILED) from exc
        if response.is_error:
            raise _error_from_response(response)
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as exc:
            logger.warning("Identity provider sent a non-JSON body: %s %s (%s)", method, path, response.status_code)
            raise IdentityProviderError(
                "Unexpected response from identity provider", code=INVALID_RESPONSE, status=502
            ) from exc
        if not isinstance(body, dict):
            raise IdentityProviderError(
                "Unexpected response from identity provider", code=INVALID_RESPONSE, status=502
            )
        return body

    async def sign_up(
        self,
        email: str,
        password: str,
        *,
        redirect_to: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> IdentityUser:
        payload: dict[str, Any] = {"email": email, "password": password}
        if metadata:
            payload["data"] = metadata
        params = {"redirect_to": redirect_to} if redirect_to else None
        body = await self._request("POST", "/signup", params=params, json=payload)
        # autoconfirm projects answer with a session wrapping the user
        user_payload = body.get("user") if "access_token" in body else body
        if not isinstance(user_payload, dict) or not user_payload.get("id"):
            raise IdentityProviderError("Registration failed", code="registration_failed")
        return IdentityUser.from_payload(user_payload)

    async def sign_in_with_password(self, email: str, password: str) -> Optional[IdentitySession]:
        body = await self._request(
            "POST",
            "/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        return IdentitySession.from_payload(body)

    async def sign_out(self, access_token: str) -> None:
        await self._request("POST", "/logout", params={"scope": "global"}, bearer=access_token, admin=True)

    async def reset_password_for_email(self, email: str, *, redirect_to: Optional[str] = None) -> None:
        params = {"redirect_to": redirect_to} if redirect_to else None
        await self._request("POST", "/recover", params=params, json={"email": email})

    async def get_user(self, access_token: str) -> IdentityUser:
        body = await self._request("GET", "/user", bearer=access_token)
        if not body.get("id"):
            raise IdentityProviderError("User not found", code="user_not_found", status=404)
        return IdentityUser.from_payload(body)

    async def admin_update_user(self, user_id: str, attributes: dict[str, Any]) -> IdentityUser:
        body = await self._request("PUT", f"/admin/users/{user_id}", admin=True, json=attributes)
        return IdentityUser.from_payload(body)

    def authorize_url(
        self,
        provider: str,
        *,
        redirect_to: str,
        code_challenge: str,
        query_params: Optional[dict[str, str]] = None,
    ) -> str:
        params = {
            "provider": provider,
            "redirect_to": redirect_to,
            "code_challenge": code_challenge,
            "code_challenge_method": "s256",
        }
        params.update(query_params or {})
        return f"{self.base_url}/auth/v1/authorize?{urlencode(params)}"

    async def exchange_code_for_session(self, auth_code: str, code_verifier: str) -> Optional[IdentitySession]:
        body = await self._request(
            "POST",
            "/token",
            params={"grant_type": "pkce"},
            json={"auth_code": auth_code, "code_verifier": code_verifier},
        )
        return IdentitySession.from_payload(body)
