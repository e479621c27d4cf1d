from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Optional

from chatjobs.storage.errors import BackendError


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    external_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    encrypted_api_key: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, external_id: str, *, email: str | None = None, name: str | None = None) -> "User":
        return cls(id=_new_id("usr"), external_id=external_id, email=email, name=name)


@dataclass
class Chat:
    id: str
    user_id: str
    title: Optional[str] = None
    title_set_by_user: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @classmethod
    def new(cls, user_id: str, *, title: str | None = None) -> "Chat":
        return cls(id=_new_id("chat"), user_id=user_id, title=title)


@dataclass
class Message:
    id: str
    chat_id: str
    user_id: str
    role: str
    content: str
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @classmethod
    def new(cls, chat_id: str, user_id: str, role: str, content: str) -> "Message":
        return cls(
            id=_new_id("msg"), chat_id=chat_id, user_id=user_id, role=role, content=content
        )


@dataclass
class SessionUser:
    """User identity reported by the auth backend for a browser session."""

    id: str
    email: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class BatchResult:
    """Outcome of one ``delete_stale_batch`` call against the document store."""

    deleted: int
    dry_run: bool
    cutoff_date: date

    def to_dict(self) -> dict:
        return {
            "deleted": self.deleted,
            "dryRun": self.dry_run,
            "cutoffDate": self.cutoff_date.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BatchResult":
        cutoff = data.get("cutoffDate") or data.get("cutoff_date")
        try:
            return cls(
                deleted=int(data.get("deleted", 0)),
                dry_run=bool(data.get("dryRun", data.get("dry_run", False))),
                cutoff_date=date.fromisoformat(str(cutoff)[:10]),
            )
        except (TypeError, ValueError) as exc:
            raise BackendError(
                "cleanup batch returned a malformed result", detail={"body": data}
            ) from exc
