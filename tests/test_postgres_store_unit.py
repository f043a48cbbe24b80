from contextlib import contextmanager

import pytest
from psycopg import errors, sql

from conftest import make_settings
from coris.storage.errors import ConstraintViolation
from coris.storage.postgres import PostgresStore, StoredFunctions


class FakeResult:
    def __init__(self, rows):
        self.rows = rows

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConn:
    """Returns scripted rows per execute call and records the statements."""

    def __init__(self, results=None, error=None):
        self.results = list(results or [])
        self.error = error
        self.statements = []

    def execute(self, query, params=None):
        self.statements.append((query, params))
        if self.error:
            raise self.error
        rows = self.results.pop(0) if self.results else []
        return FakeResult(rows)


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(conn):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn)
    store.functions = StoredFunctions()
    return store


def test_consume_password_reset_stops_when_token_not_claimed():
    conn = FakeConn(results=[[]])
    assert _store(conn).consume_password_reset("hash", "new-hash") is None
    assert len(conn.statements) == 1
    assert "used_at IS NULL" in conn.statements[0][0]
    assert "expires_at > now()" in conn.statements[0][0]


def test_consume_password_reset_bumps_version():
    conn = FakeConn(results=[[{"user_id": "u1"}], [{"id": "u1"}]])
    assert _store(conn).consume_password_reset("hash", "new-hash") == "u1"
    update_users, params = conn.statements[1]
    assert "auth_version = auth_version + 1" in update_users
    assert params == ("new-hash", "u1")


def test_create_password_reset_invalidates_earlier_tokens():
    row = {
        "id": "r1",
        "user_id": "u1",
        "token_hash": "h",
        "expires_at": None,
        "used_at": None,
        "created_at": None,
    }
    conn = FakeConn(results=[[], [row]])
    reset = _store(conn).create_password_reset("u1", "h", 30)
    assert reset.id == "r1"
    assert conn.statements[0][0].startswith("UPDATE password_resets SET used_at = now()")
    assert conn.statements[1][1] == ("u1", "h", 30)


def test_unique_violation_maps_to_constraint():
    conn = FakeConn(error=errors.UniqueViolation("duplicate key"))
    with pytest.raises(ConstraintViolation):
        _store(conn).create_user("a@example.com", "hash")


def test_missing_user_has_no_version():
    assert _store(FakeConn(results=[[]])).get_auth_version("u1") is None


def test_stored_functions_called_by_identifier():
    conn = FakeConn()
    _store(conn).refresh_planning("u1")
    (first, first_params), (second, second_params) = conn.statements
    assert isinstance(first, sql.Composed)
    assert sql.Identifier("coris_generate_bill_occurrences_for_user") in first
    assert first_params == ("u1", 180)
    assert sql.Identifier("coris_assign_occurrences_to_active_windows") in second
    assert second_params == ("u1",)


def test_fetch_due_reminders_prefers_log_id():
    rows = [
        {
            "reminder_log_id": "log-1",
            "id": "ignored",
            "user_id": "u1",
            "occurrence_id": "o1",
            "reminder_type": "due",
            "scheduled_send_at_utc": None,
        },
        {
            "id": None,
            "user_id": "u2",
            "occurrence_id": "o2",
            "reminder_type": "due",
            "scheduled_send_at_utc": None,
        },
    ]
    reminders = _store(FakeConn(results=[rows])).fetch_due_reminders(10)
    assert [r.id for r in reminders] == ["log-1", None]


def test_mark_reminder_sent_reports_lost_race():
    assert _store(FakeConn(results=[[]])).mark_reminder_sent("r1") is False
    assert _store(FakeConn(results=[[{"id": "r1"}]])).mark_reminder_sent("r1") is True


def test_reminder_function_names_follow_settings():
    settings = make_settings(
        db_fn_generate_default_reminders_for_user="acme_generate_reminders",
        db_fn_cancel_unsent_reminders_for_occurrence="acme_cancel_reminders",
    )
    functions = StoredFunctions.from_settings(settings)
    assert functions.generate_default_reminders_for_user == "acme_generate_reminders"
    assert functions.cancel_unsent_reminders_for_occurrence == "acme_cancel_reminders"

    conn = FakeConn()
    store = _store(conn)
    store.functions = functions
    store.generate_reminders("u1")
    ((statement, _),) = conn.statements
    assert sql.Identifier("acme_generate_reminders") in statement
