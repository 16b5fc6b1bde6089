from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_int(raw: Optional[str]) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    role: str = "user"
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    current_session_id: Optional[str] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            role=role,
            first_name=first_name,
            last_name=last_name,
        )


@dataclass(frozen=True)
class DeviceInfo:
    """Client metadata captured when a session is opened."""

    device_info: str = "Unknown Device"
    ip_address: str = "Unknown IP"
    user_agent: str = "Unknown User Agent"


@dataclass
class Session:
    session_id: str
    user_id: str
    login_time: datetime
    last_activity: datetime
    device_info: str = "Unknown Device"
    ip_address: str = "Unknown IP"
    user_agent: str = "Unknown User Agent"
    is_active: bool = True
    access_token_id: Optional[str] = None
    access_expires_at: Optional[int] = None
    refresh_token_id: Optional[str] = None
    refresh_expires_at: Optional[int] = None

    @classmethod
    def new(cls, user_id: str, device: Optional[DeviceInfo] = None) -> "Session":
        device = device or DeviceInfo()
        now = _utcnow()
        return cls(
            session_id=uuid.uuid4().hex,
            user_id=user_id,
            login_time=now,
            last_activity=now,
            device_info=device.device_info,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
        )

    def to_hash(self) -> Dict[str, str]:
        """Flatten into string fields for a Redis hash."""
        fields = {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "device_info": self.device_info,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "login_time": self.login_time.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "is_active": "true" if self.is_active else "false",
        }
        if self.access_token_id:
            fields["access_token_id"] = self.access_token_id
            fields["access_expires_at"] = str(self.access_expires_at or "")
        if self.refresh_token_id:
            fields["refresh_token_id"] = self.refresh_token_id
            fields["refresh_expires_at"] = str(self.refresh_expires_at or "")
        return fields

    @classmethod
    def from_hash(cls, data: Dict[str, str]) -> Optional["Session"]:
        # A hash without identity fields is a partial write, not a session
        if not data or not data.get("session_id") or not data.get("user_id"):
            return None
        login_time = _parse_datetime(data.get("login_time")) or _utcnow()
        return cls(
            session_id=data["session_id"],
            user_id=data["user_id"],
            login_time=login_time,
            last_activity=_parse_datetime(data.get("last_activity")) or login_time,
            device_info=data.get("device_info") or "Unknown Device",
            ip_address=data.get("ip_address") or "Unknown IP",
            user_agent=data.get("user_agent") or "Unknown User Agent",
            is_active=data.get("is_active") == "true",
            access_token_id=data.get("access_token_id") or None,
            access_expires_at=_parse_int(data.get("access_expires_at")),
            refresh_token_id=data.get("refresh_token_id") or None,
            refresh_expires_at=_parse_int(data.get("refresh_expires_at")),
        )

    def to_public(self) -> Dict[str, object]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "device_info": self.device_info,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "login_time": self.login_time,
            "last_activity": self.last_activity,
            "is_active": self.is_active,
        }
