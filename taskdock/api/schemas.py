from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from taskdock.logging import get_correlation_id

MAX_TITLE_LENGTH = 512

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "service_unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    """Uniform response body for every JSON route."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip())
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


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_title(value: str) -> str:
    cleaned = _normalize_unicode(value).strip()
    if not cleaned:
        raise ValueError("title must not be empty")
    return cleaned


class SignupRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class UserResponse(BaseModel):
    id: str
    email: str
    session_count: int = 0
    created_at: float


class AccessTokenResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None


class ListRequest(BaseModel):
    title: str = Field(..., max_length=MAX_TITLE_LENGTH)

    @field_validator("title")
    @classmethod
    def _validate_list_title(cls, value: str) -> str:
        return _validate_title(value)


class ListResponse(BaseModel):
    id: str
    title: str
    owner_id: str


class ListsResponse(BaseModel):
    items: List[ListResponse]


class TaskRequest(BaseModel):
    title: str = Field(..., max_length=MAX_TITLE_LENGTH)

    @field_validator("title")
    @classmethod
    def _validate_task_title(cls, value: str) -> str:
        return _validate_title(value)


class TaskUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, max_length=MAX_TITLE_LENGTH)
    completed: Optional[bool] = None

    @field_validator("title")
    @classmethod
    def _validate_task_title(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _validate_title(value)

    @model_validator(mode="after")
    def _require_change(self):
        if self.title is None and self.completed is None:
            raise ValueError("provide title or completed")
        return self


class TaskResponse(BaseModel):
    id: str
    title: str
    list_id: str
    completed: bool


class TasksResponse(BaseModel):
    items: List[TaskResponse]
