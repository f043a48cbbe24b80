from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import List, Optional, Protocol

from coris.logging import get_logger, sanitize_error_message
from coris.service.email import EmailService
from coris.storage.models import OccurrenceDetail, PendingReminder

logger = get_logger(__name__)

FAILURE_REASON_LIMIT = 500


class ReminderStore(Protocol):
    def fetch_due_reminders(self, limit: int) -> List[PendingReminder]: ...

    def get_occurrence_detail(
        self, user_id: str, occurrence_id: str
    ) -> Optional[OccurrenceDetail]: ...

    def mark_reminder_sent(self, reminder_id: str) -> bool: ...

    def mark_reminder_failed(self, reminder_id: str, reason: str) -> None: ...


@dataclass
class ReminderRunStats:
    fetched: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0


class DueTodayReminderJob:
    """Send 'bill due today' emails for reminders whose send time has passed.

    Safe to run repeatedly from cron: a reminder only counts as sent when
    ``mark_reminder_sent`` flips a row that is still unsent and not
    cancelled, so overlapping runs never both record the same reminder.
    """

    def __init__(self, store: ReminderStore, email: EmailService, *, batch_size: int = 50) -> None:
        self.store = store
        self.email = email
        self.batch_size = batch_size

    async def run(self) -> ReminderRunStats:
        stats = ReminderRunStats()
        logger.info("due_today_job_started", batch_size=self.batch_size)
        rows = await asyncio.to_thread(self.store.fetch_due_reminders, self.batch_size)
        stats.fetched = len(rows)
        if not rows:
            logger.info("due_today_job_idle")
            return stats

        for reminder in rows:
            if not reminder.id:
                stats.skipped += 1
                continue
            try:
                await self._process(reminder, stats)
            except Exception as exc:
                stats.failed += 1
                reason = sanitize_error_message(str(exc) or "send failed")[:FAILURE_REASON_LIMIT]
                logger.error(
                    "due_today_reminder_failed",
                    reminder_id=reminder.id,
                    error_type=type(exc).__name__,
                    error=reason,
                )
                await asyncio.to_thread(self.store.mark_reminder_failed, reminder.id, reason)

        logger.info(
            "due_today_job_finished",
            sent=stats.sent,
            skipped=stats.skipped,
            failed=stats.failed,
        )
        return stats

    async def _process(self, reminder: PendingReminder, stats: ReminderRunStats) -> None:
        detail = await asyncio.to_thread(
            self.store.get_occurrence_detail, reminder.user_id, reminder.occurrence_id
        )
        if not detail or not detail.email:
            stats.skipped += 1
            return

        delivered = await asyncio.to_thread(
            self.email.send_due_today,
            detail.email,
            bill_name=detail.bill_name,
            due_date=detail.due_date,
            amount_due=detail.amount_due,
        )
        if not delivered:
            stats.failed += 1
            await asyncio.to_thread(self.store.mark_reminder_failed, reminder.id, "send failed")
            return

        if await asyncio.to_thread(self.store.mark_reminder_sent, reminder.id):
            stats.sent += 1
        else:
            # Another run or a payment got there first
            stats.skipped += 1


__all__ = ["DueTodayReminderJob", "ReminderRunStats", "ReminderStore"]
