from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        token_salt TEXT NOT NULL,
        sessions JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task_list (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        owner_user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS task_list_owner_idx ON task_list (owner_user_id)",
    """
    CREATE TABLE IF NOT EXISTS task (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        list_id TEXT NOT NULL,
        completed BOOLEAN NOT NULL DEFAULT false,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS task_list_id_idx ON task (list_id)",
)


class PostgresStore:
    """Postgres-backed store; user rows carry their sessions as a JSONB array."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the user, list and task tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _session_from_json(raw: Mapping[str, Any]) -> Session:
        expires_at = raw["expires_at"]
        if isinstance(expires_at, str):
            expires_at = datetime.fromisoformat(expires_at)
        return Session(token=raw["token"], expires_at=expires_at)

    @staticmethod
    def _session_to_json(session: Session) -> Dict[str, str]:
        return {"token": session.token, "expires_at": session.expires_at.isoformat()}

    def _user_from_row(self, row: Mapping[str, Any]) -> User:
        raw_sessions = row.get("sessions") or []
        if isinstance(raw_sessions, str):
            raw_sessions = json.loads(raw_sessions)
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            token_salt=row["token_salt"],
            sessions=[self._session_from_json(s) for s in raw_sessions],
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _list_from_row(row: Mapping[str, Any]) -> TaskList:
        return TaskList(
            id=str(row["id"]),
            title=row["title"],
            owner_user_id=str(row["owner_user_id"]),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _task_from_row(row: Mapping[str, Any]) -> Task:
        return Task(
            id=str(row["id"]),
            title=row["title"],
            list_id=str(row["list_id"]),
            completed=bool(row.get("completed", False)),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _assignments(
        fields: Mapping[str, Any], allowed: frozenset
    ) -> tuple[str, list[Any]]:
        names = sorted(name for name in fields if name in allowed)
        clause = ", ".join(f"{name} = %s" for name in names + ["updated_at"])
        return clause, [fields[name] for name in names] + [utcnow()]

    # users / sessions
    def create_user(self, email: str, password_hash: str, token_salt: str) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            token_salt=token_salt,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, token_salt, sessions, created_at)
                    VALUES (%s, %s, %s, %s, '[]'::jsonb, %s)
                    """,
                    (user.id, email, password_hash, token_salt, user.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET password_hash = %s WHERE id = %s",
                (password_hash, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )

    def add_session(self, user_id: str, token: str, expires_at: datetime) -> Session:
        session = Session(token=token, expires_at=expires_at)
        payload = json.dumps([self._session_to_json(session)])
        with self._connect() as conn:
            # Append in place so concurrent logins each keep their own entry
            cur = conn.execute(
                "UPDATE app_user SET sessions = sessions || %s::jsonb WHERE id = %s",
                (payload, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return session

    def find_user_by_id_and_refresh_token(
        self, user_id: str, token: str
    ) -> Optional[User]:
        user = self.get_user(user_id)
        if not user or not user.find_session(token):
            return None
        return user

    # lists
    def list_lists(self, owner_user_id: str) -> List[TaskList]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM task_list WHERE owner_user_id = %s ORDER BY created_at",
                (owner_user_id,),
            ).fetchall()
        return [self._list_from_row(row) for row in rows]

    def get_list(self, list_id: str, owner_user_id: str) -> Optional[TaskList]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM task_list WHERE id = %s AND owner_user_id = %s",
                (list_id, owner_user_id),
            ).fetchone()
        return self._list_from_row(row) if row else None

    def create_list(self, title: str, owner_user_id: str) -> TaskList:
        task_list = TaskList.new(title, owner_user_id)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO task_list (id, title, owner_user_id, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        task_list.id,
                        task_list.title,
                        owner_user_id,
                        task_list.created_at,
                        task_list.updated_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "list owner does not exist", {"owner_user_id": owner_user_id}
            )
        return task_list

    def update_list(
        self, list_id: str, owner_user_id: str, fields: Mapping[str, Any]
    ) -> Optional[TaskList]:
        clause, params = self._assignments(fields, LIST_MUTABLE_FIELDS)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE task_list SET {clause} WHERE id = %s AND owner_user_id = %s RETURNING *",
                (*params, list_id, owner_user_id),
            ).fetchone()
        return self._list_from_row(row) if row else None

    def delete_list(self, list_id: str, owner_user_id: str) -> Optional[TaskList]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM task_list WHERE id = %s AND owner_user_id = %s RETURNING *",
                (list_id, owner_user_id),
            ).fetchone()
        return self._list_from_row(row) if row else None

    # tasks
    def list_tasks(self, list_id: str) -> List[Task]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM task WHERE list_id = %s ORDER BY created_at",
                (list_id,),
            ).fetchall()
        return [self._task_from_row(row) for row in rows]

    def get_task(self, task_id: str, list_id: str) -> Optional[Task]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM task WHERE id = %s AND list_id = %s",
                (task_id, list_id),
            ).fetchone()
        return self._task_from_row(row) if row else None

    def create_task(self, list_id: str, title: str) -> Task:
        task = Task.new(title, list_id)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO task (id, title, list_id, completed, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    task.id,
                    task.title,
                    list_id,
                    task.completed,
                    task.created_at,
                    task.updated_at,
                ),
            )
        return task

    def update_task(
        self, task_id: str, list_id: str, fields: Mapping[str, Any]
    ) -> Optional[Task]:
        clause, params = self._assignments(fields, TASK_MUTABLE_FIELDS)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE task SET {clause} WHERE id = %s AND list_id = %s RETURNING *",
                (*params, task_id, list_id),
            ).fetchone()
        return self._task_from_row(row) if row else None

    def delete_task(self, task_id: str, list_id: str) -> Optional[Task]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM task WHERE id = %s AND list_id = %s RETURNING *",
                (task_id, list_id),
            ).fetchone()
        return self._task_from_row(row) if row else None

    def delete_tasks_for_list(self, list_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM task WHERE list_id = %s", (list_id,))
            return cur.rowcount
