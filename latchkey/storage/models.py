from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CacheEntry:
    """One stored value; owned exclusively by the store that created it."""

    key: str
    value: Any
    inserted_at: float
    ttl: Optional[int] = None

    @property
    def expires_at(self) -> Optional[float]:
        if self.ttl is None:
            return None
        return self.inserted_at + self.ttl

    def is_expired(self, now: float) -> bool:
        expires_at = self.expires_at
        return expires_at is not None and now >= expires_at


@dataclass
class SessionRecord:
    """Value bound to a session id: a reference to the user, not the user."""

    user_id: str
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "created_at": self.created_at.isoformat()}

    @classmethod
    def from_value(cls, value: Any) -> Optional["SessionRecord"]:
        if isinstance(value, SessionRecord):
            return value
        if not isinstance(value, dict) or "user_id" not in value:
            return None
        created_raw = value.get("created_at")
        created_at = _utcnow()
        if isinstance(created_raw, str):
            try:
                created_at = datetime.fromisoformat(created_raw)
            except ValueError:
                pass
        return cls(user_id=str(value["user_id"]), created_at=created_at)


@dataclass
class User:
    """Reference user record used by the in-memory repository.

    The authentication core only reads ``id``; the remaining fields belong to
    the repository and to the extensions that need them.
    """

    id: str
    email: str
    password_hash: Optional[str] = None
    email_confirmation_token: Optional[str] = None
    email_confirmed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    meta: Dict | None = None
