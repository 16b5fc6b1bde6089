from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_EMAIL_LENGTH = 254
MAX_NAME_LENGTH = 100
MIN_PASSWORD_LENGTH = 6
MAX_PASSWORD_LENGTH = 128

# local@label.label[.label...]; labels may not start or end with a hyphen
_EMAIL_PATTERN = re.compile(
    r"^[a-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64}"
    r"@(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+"
    r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$"
)


def _clean_text(value: str) -> str:
    """NFKC-normalize and drop invisible format characters (zero-width, bidi controls)."""
    visible = "".join(c for c in value if unicodedata.category(c) != "Cf")
    return unicodedata.normalize("NFKC", visible)


def _normalize_email(value: str) -> str:
    email = _clean_text(value).strip().lower()
    if len(email) > MAX_EMAIL_LENGTH or not _EMAIL_PATTERN.match(email):
        raise ValueError("invalid email address")
    return email


class Envelope(BaseModel):
    """Success envelope wrapped around every 2xx body."""

    success: bool = True
    data: Optional[Any] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class ErrorEnvelope(BaseModel):
    """Uniform error body: ``message`` is the short title, ``error`` the detail."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = False
    status_code: int = Field(..., serialization_alias="statusCode")
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    path: str
    message: str
    error: str
    code: str
    details: Optional[Any] = None


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(
        ..., min_length=MIN_PASSWORD_LENGTH, max_length=MAX_PASSWORD_LENGTH
    )
    first_name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    last_name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _normalize_email(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        name = _clean_text(value).strip()
        if not name:
            raise ValueError("name must not be blank")
        return name


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _normalize_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class UserResponse(BaseModel):
    id: str
    email: str
    role: str = "user"
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    session_id: Optional[str] = None
    current_session_id: Optional[str] = None
    last_login_at: Optional[datetime] = None


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: int
    session_id: Optional[str] = None


class SessionResponse(BaseModel):
    session_id: str
    user_id: str
    device_info: str
    ip_address: str
    user_agent: str
    login_time: datetime
    last_activity: datetime
    is_active: bool


class AuthResponse(BaseModel):
    user: UserResponse
    tokens: TokenResponse
    message: str
    session_info: Optional[SessionResponse] = None


class VerifyResponse(BaseModel):
    valid: bool
    user: UserResponse


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]


class MessageResponse(BaseModel):
    message: str
    count: Optional[int] = None


class HealthResponse(BaseModel):
    status: str
    store: str
