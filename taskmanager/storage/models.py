from __future__ import annotations

import hmac
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    """Refresh session embedded in its user document."""

    token: str
    expires_at: datetime


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    token_salt: str
    sessions: List[Session] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    def find_session(self, token: str) -> Optional[Session]:
        for session in self.sessions:
            if hmac.compare_digest(
                session.token.encode(), token.encode("utf-8", "surrogatepass")
            ):
                return session
        return None


@dataclass
class TaskList:
    id: str
    title: str
    owner_user_id: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, title: str, owner_user_id: str) -> "TaskList":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            title=title,
            owner_user_id=owner_user_id,
            created_at=now,
            updated_at=now,
        )


@dataclass
class Task:
    id: str
    title: str
    list_id: str
    completed: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, title: str, list_id: str) -> "Task":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            title=title,
            list_id=list_id,
            completed=False,
            created_at=now,
            updated_at=now,
        )


# Fields a PATCH may touch; ownership references are fixed at creation
LIST_MUTABLE_FIELDS = frozenset({"title"})
TASK_MUTABLE_FIELDS = frozenset({"title", "completed"})
