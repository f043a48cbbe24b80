from __future__ import annotations

import threading
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from coris.logging import get_logger, sanitize_error_message
from coris.storage.errors import ConstraintViolation
from coris.storage.models import OccurrenceDetail, PasswordReset, PendingReminder, User


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """In-memory backing store for tests and local development.

    Mirrors the PostgresStore surface. Window generation and planning are
    owned by SQL functions in production, so here they only keep enough
    state for the API to answer consistently.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.password_resets: Dict[str, PasswordReset] = {}
        self.templates: Dict[str, Dict[str, Any]] = {}
        self.occurrences: Dict[str, Dict[str, Any]] = {}
        self.schedules: Dict[str, Dict[str, Any]] = {}
        self.reminders: Dict[str, Dict[str, Any]] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # users
    def create_user(self, email: str, password_hash: str) -> User:
        with self._data_lock:
            if any(u.email == email for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), email=email, password_hash=password_hash)
            self.users[user.id] = user
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_auth_version(self, user_id: str) -> Optional[int]:
        with self._data_lock:
            user = self.users.get(user_id)
            return user.auth_version if user else None

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.users.pop(user_id, None)
            if not removed:
                return False
            for reset_id in [r.id for r in self.password_resets.values() if r.user_id == user_id]:
                self.password_resets.pop(reset_id, None)
            return True

    def bump_auth_version(self, user_id: str) -> Optional[int]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.auth_version += 1
            return user.auth_version

    # password resets
    def create_password_reset(
        self, user_id: str, token_hash: str, ttl_minutes: int
    ) -> PasswordReset:
        with self._data_lock:
            now = _utcnow()
            for reset in self.password_resets.values():
                if reset.user_id == user_id and reset.used_at is None:
                    reset.used_at = now
            reset = PasswordReset.new(user_id, token_hash, ttl_minutes)
            self.password_resets[reset.id] = reset
            return reset

    def consume_password_reset(self, token_hash: str, password_hash: str) -> Optional[str]:
        with self._data_lock:
            now = _utcnow()
            reset = next(
                (r for r in self.password_resets.values() if r.token_hash == token_hash),
                None,
            )
            if not reset or not reset.is_consumable(now):
                return None
            user = self.users.get(reset.user_id)
            reset.used_at = now
            if not user:
                return None
            user.password_hash = password_hash
            user.auth_version += 1
            return user.id

    # templates
    def list_templates(self, user_id: str) -> List[Dict[str, Any]]:
        with self._data_lock:
            rows = [t for t in self.templates.values() if t["user_id"] == user_id]
            return [dict(t) for t in sorted(rows, key=lambda t: t["created_at"])]

    def create_template(self, user_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        now = _utcnow()
        row = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "bill_name": fields["bill_name"],
            "category": fields["category"],
            "frequency": fields["frequency"],
            "due_day": fields.get("due_day"),
            "default_amount": fields["default_amount"],
            "is_variable": fields.get("is_variable", False),
            "notes": fields.get("notes", ""),
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }
        with self._data_lock:
            self.templates[row["id"]] = row
            return dict(row)

    def update_template(
        self, user_id: str, template_id: str, fields: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        with self._data_lock:
            row = self.templates.get(template_id)
            if not row or row["user_id"] != user_id:
                return None
            for key, value in fields.items():
                if value is not None and key in row:
                    row[key] = value
            row["updated_at"] = _utcnow()
            return dict(row)

    def deactivate_template(self, user_id: str, template_id: str) -> Optional[Dict[str, Any]]:
        with self._data_lock:
            row = self.templates.get(template_id)
            if not row or row["user_id"] != user_id:
                return None
            row["is_active"] = False
            row["updated_at"] = _utcnow()
            return dict(row)

    def refresh_planning(self, user_id: str) -> None:
        return None

    # occurrences
    def add_occurrence(
        self,
        user_id: str,
        template_id: str,
        due_date: date,
        amount: Any,
        *,
        occurrence_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Seed an occurrence; production occurrences come from SQL generation."""
        row = {
            "id": occurrence_id or str(uuid.uuid4()),
            "user_id": user_id,
            "template_id": template_id,
            "due_date": due_date,
            "amount": amount,
            "paid_date": None,
            "amount_paid": None,
            "updated_at": _utcnow(),
        }
        with self._data_lock:
            self.occurrences[row["id"]] = row
            return dict(row)

    def list_occurrences(self, user_id: str) -> List[Dict[str, Any]]:
        with self._data_lock:
            rows = [o for o in self.occurrences.values() if o["user_id"] == user_id]
            return [dict(o) for o in sorted(rows, key=lambda o: o["due_date"])]

    def update_occurrence_amount(
        self, user_id: str, occurrence_id: str, amount: Any
    ) -> Optional[Dict[str, Any]]:
        with self._data_lock:
            row = self.occurrences.get(occurrence_id)
            if not row or row["user_id"] != user_id:
                return None
            template = self.templates.get(row["template_id"])
            if not template or not template.get("is_variable"):
                return None
            if row["paid_date"] is not None or row["due_date"] < _utcnow().date():
                return None
            row["amount"] = amount
            row["updated_at"] = _utcnow()
            return dict(row)

    def mark_occurrence_paid(
        self,
        user_id: str,
        occurrence_id: str,
        *,
        paid_date: Optional[datetime] = None,
        amount_paid: Any = None,
    ) -> Optional[Dict[str, Any]]:
        with self._data_lock:
            row = self.occurrences.get(occurrence_id)
            if not row or row["user_id"] != user_id:
                return None
            row["paid_date"] = paid_date or _utcnow()
            row["amount_paid"] = amount_paid if amount_paid is not None else row["amount"]
            row["updated_at"] = _utcnow()
            for reminder in self.reminders.values():
                if (
                    reminder["occurrence_id"] == occurrence_id
                    and reminder["sent_at_utc"] is None
                    and reminder["canceled_at_utc"] is None
                ):
                    reminder["canceled_at_utc"] = _utcnow()
                    reminder["cancel_reason"] = "paid"
            return dict(row)

    # pay schedule
    def get_active_schedule(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._data_lock:
            row = next(
                (s for s in self.schedules.values() if s["user_id"] == user_id and s["is_active"]),
                None,
            )
            return dict(row) if row else None

    def set_schedule(
        self,
        user_id: str,
        *,
        frequency: str,
        next_paycheck_date: Any,
        typical_net_pay: Any = None,
    ) -> Dict[str, Any]:
        now = _utcnow()
        with self._data_lock:
            for schedule in self.schedules.values():
                if schedule["user_id"] == user_id and schedule["is_active"]:
                    schedule["is_active"] = False
                    schedule["updated_at"] = now
            row = {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "frequency": frequency,
                "next_paycheck_date": next_paycheck_date,
                "typical_net_pay": typical_net_pay,
                "is_active": True,
                "created_at": now,
                "updated_at": now,
            }
            self.schedules[row["id"]] = row
            return dict(row)

    def regenerate_schedule(self, user_id: str) -> bool:
        return self.get_active_schedule(user_id) is not None

    # planning
    def list_window_totals(self, user_id: str) -> List[Dict[str, Any]]:
        return []

    def has_unassigned_occurrences(self, user_id: str) -> bool:
        return False

    def list_window_items(self, user_id: str, window_id: str) -> List[Dict[str, Any]]:
        return []

    def get_planning_integrity(self, user_id: str) -> Dict[str, List[Dict[str, Any]]]:
        return {"unassigned": [], "assigned_to_inactive_windows": []}

    # reminders
    def add_reminder(
        self,
        user_id: str,
        occurrence_id: str,
        *,
        reminder_type: str = "due",
        scheduled_send_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        row = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "occurrence_id": occurrence_id,
            "reminder_type": reminder_type,
            "scheduled_send_at_utc": scheduled_send_at or _utcnow(),
            "sent_at_utc": None,
            "failed_at_utc": None,
            "failure_reason": None,
            "canceled_at_utc": None,
        }
        with self._data_lock:
            self.reminders[row["id"]] = row
            return dict(row)

    def generate_reminders(self, user_id: str) -> None:
        """Create a 'due' reminder for each unpaid occurrence that lacks one."""
        with self._data_lock:
            covered = {
                r["occurrence_id"] for r in self.reminders.values() if r["reminder_type"] == "due"
            }
            for occ in self.occurrences.values():
                if occ["user_id"] != user_id or occ["paid_date"] is not None:
                    continue
                if occ["id"] in covered:
                    continue
                due = occ["due_date"]
                send_at = datetime(due.year, due.month, due.day, 13, 0, tzinfo=timezone.utc)
                self.add_reminder(user_id, occ["id"], scheduled_send_at=send_at)

    def _pending(self) -> List[Dict[str, Any]]:
        return [
            r
            for r in self.reminders.values()
            if r["sent_at_utc"] is None and r["canceled_at_utc"] is None
        ]

    def list_pending_reminders(self, user_id: str) -> List[Dict[str, Any]]:
        with self._data_lock:
            now = _utcnow()
            return [
                dict(r)
                for r in self._pending()
                if r["user_id"] == user_id and r["scheduled_send_at_utc"] <= now
            ]

    def list_upcoming_reminders(self, user_id: str) -> List[Dict[str, Any]]:
        with self._data_lock:
            now = _utcnow()
            return [
                dict(r)
                for r in self._pending()
                if r["user_id"] == user_id and r["scheduled_send_at_utc"] > now
            ]

    def fetch_due_reminders(self, limit: int) -> List[PendingReminder]:
        with self._data_lock:
            now = _utcnow()
            rows = [
                r
                for r in self._pending()
                if r["reminder_type"] == "due" and r["scheduled_send_at_utc"] <= now
            ]
            rows.sort(key=lambda r: r["scheduled_send_at_utc"])
            return [
                PendingReminder(
                    id=r["id"],
                    user_id=r["user_id"],
                    occurrence_id=r["occurrence_id"],
                    reminder_type=r["reminder_type"],
                    scheduled_send_at=r["scheduled_send_at_utc"],
                )
                for r in rows[:limit]
            ]

    def get_occurrence_detail(
        self, user_id: str, occurrence_id: str
    ) -> Optional[OccurrenceDetail]:
        with self._data_lock:
            occ = self.occurrences.get(occurrence_id)
            if not occ or occ["user_id"] != user_id:
                return None
            template = self.templates.get(occ["template_id"])
            user = self.users.get(user_id)
            if not template or not user:
                return None
            amount = occ["amount"]
            return OccurrenceDetail(
                email=user.email,
                bill_name=template["bill_name"],
                due_date=occ["due_date"].isoformat(),
                amount_due=Decimal(str(amount)) if isinstance(amount, float) else amount,
            )

    def mark_reminder_sent(self, reminder_id: str) -> bool:
        with self._data_lock:
            row = self.reminders.get(reminder_id)
            if not row or row["sent_at_utc"] is not None or row["canceled_at_utc"] is not None:
                return False
            row["sent_at_utc"] = _utcnow()
            return True

    def mark_reminder_failed(self, reminder_id: str, reason: str) -> None:
        with self._data_lock:
            row = self.reminders.get(reminder_id)
            if not row or row["sent_at_utc"] is not None or row["canceled_at_utc"] is not None:
                return
            row["failed_at_utc"] = _utcnow()
            row["failure_reason"] = sanitize_error_message(reason)[:500]


__all__ = ["MemoryStore"]
