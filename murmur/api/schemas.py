from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from murmur.logging import get_correlation_id

MAX_MESSAGE_LENGTH = 500
PASSWORD_SPECIALS = "@$!%*"


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize a string after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_NAME_PATTERN = re.compile(r"^[a-z]+$")
_PHONE_PATTERN = re.compile(r"^01[0125][0-9]{8}$")
_OTP_PATTERN = re.compile(r"^[a-h1-8]{5}$")


def validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def validate_name(value: str) -> str:
    """Letters only, 2..20 characters, stored lowercased."""
    if not isinstance(value, str):
        raise ValueError("name must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) < 2:
        raise ValueError("name must be at least 2 characters")
    if len(normalized) > 20:
        raise ValueError("name must be at most 20 characters")
    if not _NAME_PATTERN.match(normalized):
        raise ValueError("name must contain only letters")
    return normalized


def validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 50:
        raise ValueError("password must be at most 50 characters")
    if not (
        any(c.islower() for c in value)
        and any(c.isupper() for c in value)
        and any(c.isdigit() for c in value)
        and any(c in PASSWORD_SPECIALS for c in value)
    ):
        raise ValueError(
            "password must contain an uppercase letter, a lowercase letter, "
            f"a number and one of {PASSWORD_SPECIALS}"
        )
    return value


def validate_phone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    normalized = value.strip()
    if not _PHONE_PATTERN.match(normalized):
        raise ValueError("phone number must be a valid number, e.g. 01012345678")
    return normalized


def validate_otp(value: str) -> str:
    normalized = value.strip()
    if not _OTP_PATTERN.match(normalized):
        raise ValueError("code must be exactly 5 characters from a-h and 1-8")
    return normalized


def validate_message_content(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("content must be a string")
    trimmed = value.strip()
    if not trimmed:
        raise ValueError("message content cannot be empty")
    if len(trimmed) > MAX_MESSAGE_LENGTH:
        raise ValueError(f"message content must be at most {MAX_MESSAGE_LENGTH} characters")
    return trimmed


class SignupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    first_name: str = Field(..., alias="firstName")
    last_name: str = Field(..., alias="lastName")
    age: int = Field(..., ge=18, le=100)
    gender: Literal["male", "female"] = "male"
    email: str
    password: str
    phone: Optional[str] = Field(default=None, alias="phoneNumber")

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return validate_name(value)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password_strength(value)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        return validate_phone(value)


class SigninRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_signin_email(cls, value: str) -> str:
        return validate_email(value)


class ConfirmEmailRequest(BaseModel):
    email: str
    otp: str

    @field_validator("email")
    @classmethod
    def _validate_confirm_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("otp")
    @classmethod
    def _validate_otp(cls, value: str) -> str:
        return validate_otp(value)


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return validate_email(value)


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str
    otp: str
    new_password: str = Field(..., alias="newPassword")

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("otp")
    @classmethod
    def _validate_otp(cls, value: str) -> str:
        return validate_otp(value)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return validate_password_strength(value)


class UpdateProfileRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    age: Optional[int] = Field(default=None, ge=18, le=100)
    gender: Optional[Literal["male", "female"]] = None
    email: Optional[str] = None
    phone: Optional[str] = Field(default=None, alias="phoneNumber")

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: Optional[str]) -> Optional[str]:
        return validate_name(value) if value is not None else None

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: Optional[str]) -> Optional[str]:
        return validate_email(value) if value is not None else None

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        return validate_phone(value)

    @model_validator(mode="after")
    def _require_one_field(self):
        if not self.changes():
            raise ValueError("at least one field must be provided for update")
        return self

    def changes(self) -> dict:
        return {
            key: value
            for key, value in self.model_dump().items()
            if value is not None
        }


class SendMessageRequest(BaseModel):
    content: str

    @field_validator("content")
    @classmethod
    def _validate_content(cls, value: str) -> str:
        return validate_message_content(value)


class UserResponse(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    full_name: str
    age: int
    gender: str
    phone: Optional[str] = None
    role: str
    is_confirmed: bool
    created_at: datetime
    updated_at: datetime


class UserListResponse(BaseModel):
    items: List[UserResponse]


class SigninResponse(BaseModel):
    user_id: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    role: str = "user"


class AccessTokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class DeletedUserResponse(BaseModel):
    id: str
    email: str
    full_name: str


class MessageResponse(BaseModel):
    id: str
    receiver_id: str
    content: str
    created_at: datetime


class InboxMessage(BaseModel):
    id: str
    content: str
    created_at: datetime


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_messages: int
    messages_per_page: int
    has_next_page: bool
    has_prev_page: bool


class InboxResponse(BaseModel):
    items: List[InboxMessage]
    pagination: Pagination

