"""Tests for the due-today reminder job."""

import importlib.util
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

from conftest import RecordingEmail
from coris.config import reset_settings_cache
from coris.service.reminders import DueTodayReminderJob
from coris.storage.memory import MemoryStore
from coris.storage.models import OccurrenceDetail, PendingReminder


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def seeded(store):
    """A user with one unpaid occurrence due today and a due reminder."""
    user = store.create_user("pat@example.com", "hash")
    template = store.create_template(
        user.id,
        {
            "bill_name": "Internet",
            "category": "utilities",
            "frequency": "monthly",
            "default_amount": 59.99,
        },
    )
    occ = store.add_occurrence(user.id, template["id"], date.today(), "59.99")
    reminder = store.add_reminder(
        user.id, occ["id"], scheduled_send_at=datetime.now(timezone.utc) - timedelta(minutes=1)
    )
    return user, occ, reminder


class TestDueTodayJob:
    async def test_sends_and_marks_sent(self, store, seeded):
        _, _, reminder = seeded
        email = RecordingEmail()
        stats = await DueTodayReminderJob(store, email).run()

        assert (stats.fetched, stats.sent, stats.skipped, stats.failed) == (1, 1, 0, 0)
        assert store.reminders[reminder["id"]]["sent_at_utc"] is not None
        (message,) = email.outbox
        assert message["to"] == "pat@example.com"
        assert message["subject"] == "Bill due today"
        assert "Bill: Internet" in message["body"]
        assert f"Due date: {date.today().isoformat()}" in message["body"]
        assert "Amount: 59.99" in message["body"]

    async def test_second_run_sends_nothing(self, store, seeded):
        email = RecordingEmail()
        job = DueTodayReminderJob(store, email)
        await job.run()
        stats = await job.run()
        assert stats.fetched == 0
        assert len(email.outbox) == 1

    async def test_future_reminders_wait(self, store, seeded):
        user, occ, reminder = seeded
        store.reminders[reminder["id"]]["scheduled_send_at_utc"] = datetime.now(
            timezone.utc
        ) + timedelta(hours=2)
        stats = await DueTodayReminderJob(store, RecordingEmail()).run()
        assert stats.fetched == 0

    async def test_only_due_type_is_sent(self, store, seeded):
        user, occ, reminder = seeded
        store.reminders[reminder["id"]]["reminder_type"] = "before_3d"
        stats = await DueTodayReminderJob(store, RecordingEmail()).run()
        assert stats.fetched == 0

    async def test_batch_size_limits_work(self, store, seeded):
        user, occ, _ = seeded
        for _ in range(3):
            store.add_reminder(
                user.id, occ["id"], scheduled_send_at=datetime.now(timezone.utc) - timedelta(hours=1)
            )
        stats = await DueTodayReminderJob(store, RecordingEmail(), batch_size=2).run()
        assert stats.fetched == 2

    async def test_send_failure_marks_failed(self, store, seeded):
        _, _, reminder = seeded
        stats = await DueTodayReminderJob(store, RecordingEmail(fail=True)).run()
        row = store.reminders[reminder["id"]]
        assert stats.failed == 1
        assert row["sent_at_utc"] is None
        assert row["failure_reason"] == "send failed"

    async def test_missing_detail_is_skipped(self, store, seeded):
        _, occ, reminder = seeded
        del store.occurrences[occ["id"]]
        stats = await DueTodayReminderJob(store, RecordingEmail()).run()
        assert stats.skipped == 1
        assert store.reminders[reminder["id"]]["sent_at_utc"] is None


class ScriptedStore:
    """Reminder store double for paths MemoryStore cannot reach."""

    def __init__(self, rows, *, detail_error=None, mark_result=True):
        self.rows = rows
        self.detail_error = detail_error
        self.mark_result = mark_result
        self.failed = []

    def fetch_due_reminders(self, limit):
        return self.rows[:limit]

    def get_occurrence_detail(self, user_id, occurrence_id):
        if self.detail_error:
            raise self.detail_error
        return OccurrenceDetail("q@example.com", "Water", "2024-01-01", "12.00")

    def mark_reminder_sent(self, reminder_id):
        return self.mark_result

    def mark_reminder_failed(self, reminder_id, reason):
        self.failed.append((reminder_id, reason))


def _row(reminder_id="r1"):
    return PendingReminder(
        id=reminder_id,
        user_id="u1",
        occurrence_id="o1",
        reminder_type="due",
        scheduled_send_at=datetime.now(timezone.utc),
    )


class TestDueTodayJobEdges:
    async def test_row_without_id_skipped(self):
        store = ScriptedStore([_row(reminder_id=None)])
        email = RecordingEmail()
        stats = await DueTodayReminderJob(store, email).run()
        assert stats.skipped == 1
        assert email.outbox == []

    async def test_lost_race_counts_as_skipped(self):
        store = ScriptedStore([_row()], mark_result=False)
        stats = await DueTodayReminderJob(store, RecordingEmail()).run()
        assert (stats.sent, stats.skipped) == (0, 1)

    async def test_exception_records_truncated_reason(self):
        store = ScriptedStore([_row()], detail_error=RuntimeError("boom " * 300))
        stats = await DueTodayReminderJob(store, RecordingEmail()).run()
        assert stats.failed == 1
        ((reminder_id, reason),) = store.failed
        assert reminder_id == "r1"
        assert reason.startswith("boom")
        assert len(reason) <= 500


def _load_script():
    path = Path(__file__).resolve().parent.parent / "scripts" / "send_due_today.py"
    spec = importlib.util.spec_from_file_location("send_due_today", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestCronScript:
    async def test_run_once_against_memory_store(self, monkeypatch):
        monkeypatch.setenv("USE_MEMORY_STORE", "true")
        reset_settings_cache()
        try:
            result = await _load_script().run_once(batch_size=5)
        finally:
            reset_settings_cache()
        assert result == {"fetched": 0, "sent": 0, "skipped": 0, "failed": 0}
