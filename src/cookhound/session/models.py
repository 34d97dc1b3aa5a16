from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class UserRole(str, Enum):
    Admin = "admin"
    User = "user"
    Guest = "guest"


class Status(str, Enum):
    active = "active"
    pending_verification = "pending_verification"
    pending_deletion = "pending_deletion"
    banned = "banned"


class LoginMethod(str, Enum):
    manual = "manual"
    google = "google"


def now_utc() -> datetime:
    return datetime.now(tz=timezone.utc)


def _parse_dt(v: Any) -> datetime:
    if isinstance(v, datetime):
        dt = v
    else:
        dt = datetime.fromisoformat(str(v))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(slots=True)
class SessionRecord:
    """
    One authenticated login instance.

    Invariant: expires_at > last_accessed_at, and expires_at == last_accessed_at + TTL
    right after every refresh.
    """

    session_id: str
    user_id: int
    user_role: UserRole
    status: Status
    created_at: datetime
    last_accessed_at: datetime
    expires_at: datetime
    ip_address: str | None
    user_agent: str | None
    login_method: LoginMethod

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["user_role"] = self.user_role.value
        d["status"] = self.status.value
        d["login_method"] = self.login_method.value
        d["created_at"] = self.created_at.isoformat()
        d["last_accessed_at"] = self.last_accessed_at.isoformat()
        d["expires_at"] = self.expires_at.isoformat()
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> SessionRecord:
        dd = dict(d)
        dd.setdefault("ip_address", None)
        dd.setdefault("user_agent", None)
        dd.setdefault("login_method", LoginMethod.manual.value)
        return cls(
            session_id=str(dd["session_id"]),
            user_id=int(dd["user_id"]),
            user_role=UserRole(dd["user_role"]),
            status=Status(dd["status"]),
            created_at=_parse_dt(dd["created_at"]),
            last_accessed_at=_parse_dt(dd["last_accessed_at"]),
            expires_at=_parse_dt(dd["expires_at"]),
            ip_address=dd["ip_address"],
            user_agent=dd["user_agent"],
            login_method=LoginMethod(dd["login_method"]),
        )
