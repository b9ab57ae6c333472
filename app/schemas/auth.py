from __future__ import annotations

import re
from typing import Any, Optional

import bleach
from pydantic import BaseModel, EmailStr, Field, field_validator

from app.core.security import MIN_PASSWORD_LENGTH, is_password_allowed, looks_like_jwt

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def sanitize(value: str) -> str:
    return bleach.clean(value.strip(), tags=[], attributes={}, strip=True)


class _EmailModel(BaseModel):
    email: EmailStr

    @field_validator("email", mode="before")
    @classmethod
    def normalise_email(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class RegisterRequest(_EmailModel):
    password: str = Field(min_length=MIN_PASSWORD_LENGTH, max_length=128)
    username: Optional[str] = Field(default=None, min_length=3, max_length=50)

    @field_validator("password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        if not is_password_allowed(value):
            raise ValueError(
                "Password is too weak. Use a mix of letters, numbers, and symbols, and avoid common words."
            )
        return value

    @field_validator("username")
    @classmethod
    def clean_username(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        if not USERNAME_PATTERN.match(value):
            raise ValueError("Username can only contain letters, numbers, hyphens, and underscores")
        return sanitize(value)


class LoginRequest(_EmailModel):
    password: str = Field(min_length=1, max_length=128)


class ForgotPasswordRequest(_EmailModel):
    pass


class ResetPasswordRequest(BaseModel):
    password: str = Field(min_length=MIN_PASSWORD_LENGTH, max_length=128)
    token: str = Field(min_length=10, max_length=2048)

    @field_validator("password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        if not is_password_allowed(value):
            raise ValueError("Password is not strong enough. Please use a stronger password.")
        return value

    @field_validator("token")
    @classmethod
    def jwt_shaped(cls, value: str) -> str:
        if not looks_like_jwt(value):
            raise ValueError("Invalid reset token format")
        return value


class UserSummary(BaseModel):
    id: str
    email: Optional[str] = None


class UserDetail(UserSummary):
    email_verified: bool = False
    created_at: Optional[str] = None
    username: Optional[str] = None


class LoginData(BaseModel):
    user: UserSummary


class MeData(BaseModel):
    user: UserDetail


class GoogleAuthUrlData(BaseModel):
    url: str


class ApiResponse(BaseModel):
    success: bool = True
    message: str
    data: Optional[Any] = None


class LoginResponse(ApiResponse):
    data: LoginData


class MeResponse(ApiResponse):
    data: MeData


class GoogleAuthUrlResponse(ApiResponse):
    data: GoogleAuthUrlData
