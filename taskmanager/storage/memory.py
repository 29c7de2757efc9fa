from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from taskmanager.logging import get_logger
from taskmanager.storage.errors import ConstraintViolation
from taskmanager.storage.models import (
    LIST_MUTABLE_FIELDS,
    TASK_MUTABLE_FIELDS,
    Session,
    Task,
    TaskList,
    User,
    utcnow,
)


class MemoryStore:
    """In-memory document store, snapshotted to a JSON file after each write."""

    def __init__(self, fs_root: str = "/tmp/taskmanager") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.lists: Dict[str, TaskList] = {}
        self.tasks: Dict[str, Task] = {}
        # RLock so helpers can re-enter while a write is in progress
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    # users / sessions
    def create_user(self, email: str, password_hash: str, token_salt: str) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=self._new_id(),
                email=email,
                password_hash=password_hash,
                token_salt=token_salt,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def save_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            user.password_hash = password_hash
            self._persist_state()

    def add_session(self, user_id: str, token: str, expires_at: datetime) -> Session:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            session = Session(token=token, expires_at=expires_at)
            user.sessions.append(session)
            self._persist_state()
            return session

    def find_user_by_id_and_refresh_token(
        self, user_id: str, token: str
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.find_session(token):
                return None
            return user

    # lists
    def list_lists(self, owner_user_id: str) -> List[TaskList]:
        with self._data_lock:
            owned = [tl for tl in self.lists.values() if tl.owner_user_id == owner_user_id]
            return sorted(owned, key=lambda tl: tl.created_at)

    def get_list(self, list_id: str, owner_user_id: str) -> Optional[TaskList]:
        with self._data_lock:
            task_list = self.lists.get(list_id)
            if not task_list or task_list.owner_user_id != owner_user_id:
                return None
            return task_list

    def create_list(self, title: str, owner_user_id: str) -> TaskList:
        with self._data_lock:
            if owner_user_id not in self.users:
                raise ConstraintViolation(
                    "list owner does not exist", {"owner_user_id": owner_user_id}
                )
            task_list = TaskList.new(title, owner_user_id)
            self.lists[task_list.id] = task_list
            self._persist_state()
            return task_list

    def update_list(
        self, list_id: str, owner_user_id: str, fields: Mapping[str, Any]
    ) -> Optional[TaskList]:
        with self._data_lock:
            task_list = self.get_list(list_id, owner_user_id)
            if not task_list:
                return None
            for name, value in fields.items():
                if name in LIST_MUTABLE_FIELDS:
                    setattr(task_list, name, value)
            task_list.updated_at = utcnow()
            self._persist_state()
            return task_list

    def delete_list(self, list_id: str, owner_user_id: str) -> Optional[TaskList]:
        with self._data_lock:
            task_list = self.get_list(list_id, owner_user_id)
            if not task_list:
                return None
            self.lists.pop(list_id, None)
            self._persist_state()
            return task_list

    # tasks
    def list_tasks(self, list_id: str) -> List[Task]:
        with self._data_lock:
            matching = [t for t in self.tasks.values() if t.list_id == list_id]
            return sorted(matching, key=lambda t: t.created_at)

    def get_task(self, task_id: str, list_id: str) -> Optional[Task]:
        with self._data_lock:
            task = self.tasks.get(task_id)
            if not task or task.list_id != list_id:
                return None
            return task

    def create_task(self, list_id: str, title: str) -> Task:
        with self._data_lock:
            if list_id not in self.lists:
                raise ConstraintViolation("list does not exist", {"list_id": list_id})
            task = Task.new(title, list_id)
            self.tasks[task.id] = task
            self._persist_state()
            return task

    def update_task(
        self, task_id: str, list_id: str, fields: Mapping[str, Any]
    ) -> Optional[Task]:
        with self._data_lock:
            task = self.get_task(task_id, list_id)
            if not task:
                return None
            for name, value in fields.items():
                if name in TASK_MUTABLE_FIELDS:
                    setattr(task, name, value)
            task.updated_at = utcnow()
            self._persist_state()
            return task

    def delete_task(self, task_id: str, list_id: str) -> Optional[Task]:
        with self._data_lock:
            task = self.get_task(task_id, list_id)
            if not task:
                return None
            self.tasks.pop(task_id, None)
            self._persist_state()
            return task

    def delete_tasks_for_list(self, list_id: str) -> int:
        with self._data_lock:
            stale = [tid for tid, task in self.tasks.items() if task.list_id == list_id]
            for tid in stale:
                self.tasks.pop(tid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def ping(self) -> None:
        self._state_path().parent.stat()

    def close(self) -> None:
        with self._data_lock:
            self._persist_state()

    @staticmethod
    def _new_id() -> str:
        return str(uuid.uuid4())

    # persistence
    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "token_salt": user.token_salt,
            "sessions": [
                {
                    "token": s.token,
                    "expires_at": self._serialize_datetime(s.expires_at),
                }
                for s in user.sessions
            ],
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            password_hash=data["password_hash"],
            token_salt=data["token_salt"],
            sessions=[
                Session(
                    token=s["token"],
                    expires_at=self._deserialize_datetime(s["expires_at"]),
                )
                for s in data.get("sessions", [])
            ],
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_list(self, task_list: TaskList) -> dict:
        return {
            "id": task_list.id,
            "title": task_list.title,
            "owner_user_id": task_list.owner_user_id,
            "created_at": self._serialize_datetime(task_list.created_at),
            "updated_at": self._serialize_datetime(task_list.updated_at),
        }

    def _deserialize_list(self, data: dict) -> TaskList:
        return TaskList(
            id=data["id"],
            title=data["title"],
            owner_user_id=data["owner_user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_task(self, task: Task) -> dict:
        return {
            "id": task.id,
            "title": task.title,
            "list_id": task.list_id,
            "completed": task.completed,
            "created_at": self._serialize_datetime(task.created_at),
            "updated_at": self._serialize_datetime(task.updated_at),
        }

    def _deserialize_task(self, data: dict) -> Task:
        return Task(
            id=data["id"],
            title=data["title"],
            list_id=data["list_id"],
            completed=bool(data.get("completed", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "lists": [self._serialize_list(tl) for tl in self.lists.values()],
            "tasks": [self._serialize_task(t) for t in self.tasks.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Read directly instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.lists = {tl["id"]: self._deserialize_list(tl) for tl in data.get("lists", [])}
        self.tasks = {t["id"]: self._deserialize_task(t) for t in data.get("tasks", [])}
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            lists=len(self.lists),
            tasks=len(self.tasks),
        )
        return True
