from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    first_name: str
    last_name: str
    age: int
    gender: str
    phone_encrypted: Optional[str] = None
    role: str = "user"
    is_confirmed: bool = False
    confirm_otp_hash: Optional[str] = None
    reset_otp_hash: Optional[str] = None
    reset_otp_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


@dataclass
class Message:
    id: str
    receiver_id: str
    content: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Notification:
    id: str
    kind: str
    to_email: str
    payload: Dict = field(default_factory=dict)
    status: str = "pending"
    attempts: int = 0
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    claimed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
