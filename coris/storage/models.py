from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, Union


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    auth_version: int = 1
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class PasswordReset:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(cls, user_id: str, token_hash: str, ttl_minutes: int) -> "PasswordReset":
        now = _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )

    def is_consumable(self, now: Optional[datetime] = None) -> bool:
        return self.used_at is None and self.expires_at > (now or _utcnow())


@dataclass
class PendingReminder:
    id: Optional[str]
    user_id: str
    occurrence_id: str
    reminder_type: str
    scheduled_send_at: datetime


@dataclass
class OccurrenceDetail:
    email: str
    bill_name: str
    due_date: str
    amount_due: Union[Decimal, float, str]
