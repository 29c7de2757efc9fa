import json
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from taskmanager.storage.errors import ConstraintViolation
from taskmanager.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, rows=None, rowcount=1):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def execute(self, sql, params=None):
        self.pool.calls.append((" ".join(sql.split()), params))
        if self.pool.raise_on_execute is not None:
            raise self.pool.raise_on_execute
        return self.pool.next_cursor


class FakePool:
    def __init__(self):
        self.calls = []
        self.next_cursor = FakeCursor()
        self.raise_on_execute = None

    @contextmanager
    def connection(self):
        yield FakeConnection(self)


@pytest.fixture
def pool():
    return FakePool()


@pytest.fixture
def store(pool):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://unit-test"
    return store


def _now():
    return datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_user_from_row_parses_embedded_sessions(store):
    expires = _now() + timedelta(days=10)
    row = {
        "id": "u1",
        "email": "a@x.com",
        "password_hash": "$argon2id$h",
        "token_salt": "salt",
        "sessions": json.dumps([{"token": "t1", "expires_at": expires.isoformat()}]),
        "created_at": _now(),
    }
    user = store._user_from_row(row)
    assert user.sessions[0].token == "t1"
    assert user.sessions[0].expires_at == expires


def test_user_from_row_accepts_decoded_jsonb(store):
    row = {
        "id": "u1",
        "email": "a@x.com",
        "password_hash": "$argon2id$h",
        "token_salt": "salt",
        "sessions": [{"token": "t1", "expires_at": _now().isoformat()}],
        "created_at": _now(),
    }
    assert store._user_from_row(row).sessions[0].expires_at == _now()


def test_create_user_maps_unique_violation(store, pool):
    pool.raise_on_execute = errors.UniqueViolation("duplicate key")
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("a@x.com", "$argon2id$h", "salt")
    assert excinfo.value.detail == {"field": "email"}


def test_add_session_appends_atomically(store, pool):
    expires = _now() + timedelta(days=10)
    session = store.add_session("u1", "tok", expires)

    sql, params = pool.calls[-1]
    assert "sessions = sessions || %s::jsonb" in sql
    assert json.loads(params[0]) == [{"token": "tok", "expires_at": expires.isoformat()}]
    assert params[1] == "u1"
    assert session.token == "tok"


def test_add_session_for_missing_user_raises(store, pool):
    pool.next_cursor = FakeCursor(rowcount=0)
    with pytest.raises(ConstraintViolation):
        store.add_session("missing", "tok", _now())


def test_save_password_does_not_touch_sessions(store, pool):
    store.save_password("u1", "$argon2id$new")
    sql, params = pool.calls[-1]
    assert sql == "UPDATE app_user SET password_hash = %s WHERE id = %s"
    assert params == ("$argon2id$new", "u1")


def test_update_list_filters_by_owner_and_mutable_fields(store, pool):
    pool.next_cursor = FakeCursor(rows=[])
    result = store.update_list("l1", "owner", {"title": "New", "owner_user_id": "evil"})

    sql, params = pool.calls[-1]
    assert result is None
    assert "owner_user_id =" not in sql.split("WHERE")[0]
    assert sql.endswith("WHERE id = %s AND owner_user_id = %s RETURNING *")
    assert params[0] == "New"
    assert params[-2:] == ("l1", "owner")


def test_update_task_sets_completed(store, pool):
    row = {
        "id": "t1",
        "title": "Milk",
        "list_id": "l1",
        "completed": True,
        "created_at": _now(),
        "updated_at": _now(),
    }
    pool.next_cursor = FakeCursor(rows=[row])
    task = store.update_task("t1", "l1", {"completed": True})
    sql, _ = pool.calls[-1]
    assert sql.startswith("UPDATE task SET completed = %s, updated_at = %s")
    assert task.completed is True


def test_delete_tasks_for_list_returns_rowcount(store, pool):
    pool.next_cursor = FakeCursor(rowcount=3)
    assert store.delete_tasks_for_list("l1") == 3
    assert pool.calls[-1] == ("DELETE FROM task WHERE list_id = %s", ("l1",))


def test_find_user_by_refresh_token_requires_match(store, pool):
    row = {
        "id": "u1",
        "email": "a@x.com",
        "password_hash": "$argon2id$h",
        "token_salt": "salt",
        "sessions": [{"token": "good", "expires_at": _now().isoformat()}],
        "created_at": _now(),
    }
    pool.next_cursor = FakeCursor(rows=[row])
    assert store.find_user_by_id_and_refresh_token("u1", "good").id == "u1"
    assert store.find_user_by_id_and_refresh_token("u1", "bad") is None
