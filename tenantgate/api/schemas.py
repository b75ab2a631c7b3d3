from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenantgate.logging import get_correlation_id

# Nesting limit for free-form tenant settings
MAX_JSON_DEPTH = 20
MAX_ARRAY_ITEMS = 1000


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
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
    "validation_error",
    "conflict",
    "bad_gateway",
    "service_unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
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


class Envelope(BaseModel):
    """Response envelope shared by every API route."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_TLD = re.compile(r"^[a-zA-Z]{2,63}$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9]+$")


def _validate_domain(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("domain must be a string")
    normalized = _normalize_unicode(value.strip().lower()).rstrip(".")
    if len(normalized) > 253:
        raise ValueError("domain too long")
    labels = normalized.split(".")
    if len(labels) < 2:
        raise ValueError("domain must contain at least two labels")
    for label in labels:
        if len(label) > 63 or not _DOMAIN_LABEL.match(label):
            raise ValueError("invalid domain format")
    if not _TLD.match(labels[-1]):
        raise ValueError("invalid top-level domain")
    return normalized


def _validate_email(value: str) -> str:
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
    try:
        _validate_domain(domain)
    except ValueError as exc:
        raise ValueError("invalid email address format") from exc
    return normalized


def _validate_username(value: Optional[str]) -> Optional[str]:
    """Usernames are 3-30 ASCII letters and digits."""
    if value is None:
        return None
    if not 3 <= len(value) <= 30:
        raise ValueError("username must be between 3 and 30 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("username must contain only letters and digits")
    return value


def _validate_password_strength(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class _Request(BaseModel):
    # camelCase keys from older clients are accepted alongside snake_case
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class RegisterRequest(_Request):
    tenant_name: str = Field(..., min_length=3, max_length=100, alias="tenantName")
    domain: str
    username: str
    email: str
    password: str

    @field_validator("domain")
    @classmethod
    def _check_domain(cls, value: str) -> str:
        return _validate_domain(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(_Request):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    tenant_id: Optional[str] = Field(default=None, max_length=128, alias="tenantId")
    domain: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("domain")
    @classmethod
    def _check_domain(cls, value: Optional[str]) -> Optional[str]:
        return _validate_domain(value) if value is not None else None

    @model_validator(mode="after")
    def _exactly_one_tenant_selector(self):
        if bool(self.tenant_id) == bool(self.domain):
            raise ValueError("provide exactly one of tenant_id or domain")
        return self


class CreateUserRequest(_Request):
    username: str
    email: str
    password: str
    role: Literal["admin", "user"] = "user"

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UpdateUserRequest(_Request):
    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    role: Optional[Literal["admin", "user"]] = None
    status: Optional[Literal["active", "inactive"]] = None

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: Optional[str]) -> Optional[str]:
        return _validate_username(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value)


class UpdateTenantRequest(_Request):
    name: Optional[str] = Field(default=None, min_length=3, max_length=100)
    domain: Optional[str] = None
    status: Optional[Literal["active", "inactive", "suspended"]] = None
    settings: Optional[Dict[str, Any]] = None

    @field_validator("domain")
    @classmethod
    def _check_domain(cls, value: Optional[str]) -> Optional[str]:
        return _validate_domain(value) if value is not None else None

    @field_validator("settings")
    @classmethod
    def _check_settings(cls, value: Optional[dict]) -> Optional[dict]:
        if value is not None:
            _validate_json_depth(value)
        return value


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatOptions(BaseModel):
    model_config = ConfigDict(extra="allow")

    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    top_p: Optional[float] = Field(default=None, ge=0, le=1)
    top_k: Optional[int] = Field(default=None, ge=1)
    num_predict: Optional[int] = Field(default=None, ge=1)
    stop: Optional[List[str]] = None


class ChatRequest(BaseModel):
    model: str = Field(..., min_length=1, max_length=256)
    messages: List[ChatMessage] = Field(..., min_length=1, max_length=MAX_ARRAY_ITEMS)
    stream: bool = False
    options: Optional[ChatOptions] = None

    def to_upstream(self) -> dict:
        return self.model_dump(exclude_none=True)


class TenantSummary(BaseModel):
    tenant_id: str
    name: str
    domain: str


class TenantResponse(TenantSummary):
    status: str
    created_at: str
    updated_at: Optional[str] = None
    settings: Dict[str, Any] = Field(default_factory=dict)


class UserResponse(BaseModel):
    user_id: str
    tenant_id: str
    username: str
    email: str
    role: str
    status: str
    created_at: str
    updated_at: Optional[str] = None


class AuthTokenResponse(BaseModel):
    token: str
    token_type: str = "Bearer"
    expires_in: int
    user: UserResponse
    tenant: TenantSummary
    session_id: Optional[str] = None


class MeResponse(BaseModel):
    user: UserResponse
    tenant: Optional[TenantSummary] = None
    scope: List[str]


class UserListResponse(BaseModel):
    users: List[UserResponse]
    count: int


class SessionResponse(BaseModel):
    session_id: str
    tenant_id: str
    user_id: str
    login_time: str
    user_agent: Optional[str] = None
    created_at: str
