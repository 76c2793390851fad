from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionKind(str, Enum):
    USER = "user"
    GUEST = "guest"


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    is_locked: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Profile:
    id: str
    account_id: str
    name: str
    weight_kg: float
    height_cm: float
    age_years: int
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ProfileHint:
    """Optional body metrics a guest may share; ``None`` means not provided."""

    weight_kg: Optional[float] = None
    height_cm: Optional[float] = None
    age_years: Optional[int] = None


@dataclass
class Session:
    id: str
    kind: SessionKind
    user_agent: str
    refresh_token_hash: str
    expires_at: datetime
    refresh_expires_at: datetime
    account_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        kind: SessionKind,
        user_agent: str,
        refresh_token_hash: str,
        *,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        account_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            kind=SessionKind(kind),
            user_agent=user_agent,
            refresh_token_hash=refresh_token_hash,
            expires_at=now + timedelta(seconds=access_ttl_seconds),
            refresh_expires_at=now + timedelta(seconds=refresh_ttl_seconds),
            account_id=account_id,
            created_at=now,
        )

    def is_refreshable(self, now: Optional[datetime] = None) -> bool:
        """A session can be refreshed until revoked or its refresh credential expires."""
        now = now or utcnow()
        return self.revoked_at is None and self.refresh_expires_at > now


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in_ms: int
    session_id: str
    expires_at: datetime
