from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from coris.logging import get_logger, sanitize_error_message
from coris.storage.errors import ConstraintViolation
from coris.storage.models import OccurrenceDetail, PasswordReset, PendingReminder, User

# Writable template columns; anything else in a payload is ignored
_TEMPLATE_FIELDS = (
    "bill_name",
    "category",
    "frequency",
    "due_day",
    "default_amount",
    "is_variable",
    "notes",
)

_PLANNING_HORIZON_DAYS = 180
_REMINDER_HORIZON_DAYS = 120


@dataclass(frozen=True)
class StoredFunctions:
    """Names of the SQL functions that own occurrence and window generation."""

    generate_windows_for_schedule: str = "coris_generate_paycheck_windows_for_schedule"
    assign_occurrences_to_active_windows: str = "coris_assign_occurrences_to_active_windows"
    generate_occurrences_for_user: str = "coris_generate_bill_occurrences_for_user"
    generate_default_reminders_for_user: str = "coris_generate_default_reminders_for_user"
    cancel_unsent_reminders_for_occurrence: str = "coris_cancel_unsent_reminders_for_occurrence"

    @classmethod
    def from_settings(cls, settings) -> "StoredFunctions":
        return cls(
            generate_windows_for_schedule=settings.db_fn_generate_windows_for_schedule,
            assign_occurrences_to_active_windows=settings.db_fn_assign_occurrences_to_active_windows,
            generate_occurrences_for_user=settings.db_fn_generate_occurrences_for_user,
            generate_default_reminders_for_user=settings.db_fn_generate_default_reminders_for_user,
            cancel_unsent_reminders_for_occurrence=(
                settings.db_fn_cancel_unsent_reminders_for_occurrence
            ),
        )


def _user_from_row(row: dict) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        password_hash=row["password_hash"],
        auth_version=int(row.get("auth_version") or 1),
        created_at=row.get("created_at") or datetime.now(timezone.utc),
    )


class PostgresStore:
    """Postgres-backed store.

    Bill, window and reminder logic lives in SQL views and stored functions;
    the methods here only forward to them and hand rows back as dicts.
    """

    def __init__(
        self,
        dsn: str,
        *,
        functions: Optional[StoredFunctions] = None,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.functions = functions or StoredFunctions()
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        """Fail fast when migrations have not been applied."""

        required_tables = [
            "users",
            "password_resets",
            "bill_templates",
            "bill_occurrences",
            "pay_schedules",
            "reminder_logs",
        ]
        with self._connect() as conn:
            missing = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
            if missing:
                raise RuntimeError(
                    "Missing required Postgres tables: {}".format(", ".join(sorted(missing)))
                )
            version_col = conn.execute(
                """
                SELECT 1 FROM information_schema.columns
                WHERE table_schema = 'public' AND table_name = 'users' AND column_name = 'auth_version'
                """
            ).fetchone()
            if not version_col:
                raise RuntimeError("users.auth_version column is missing; session revocation needs it")

    def _call(self, conn, function_name: str, *args: Any) -> None:
        placeholders = sql.SQL(", ").join(sql.Placeholder() * len(args))
        query = sql.SQL("SELECT {}({})").format(sql.Identifier(function_name), placeholders)
        conn.execute(query, args)

    # users
    def create_user(self, email: str, password_hash: str) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (email, password_hash, auth_version, created_at)
                    VALUES (%s, %s, 1, now())
                    RETURNING id, email, password_hash, auth_version, created_at
                    """,
                    (email, password_hash),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _user_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, email, password_hash, auth_version, created_at FROM users WHERE email = %s",
                (email,),
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, email, password_hash, auth_version, created_at FROM users WHERE id = %s",
                (user_id,),
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_auth_version(self, user_id: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT auth_version FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return int(row["auth_version"])

    # password resets
    def create_password_reset(
        self, user_id: str, token_hash: str, ttl_minutes: int
    ) -> PasswordReset:
        with self._connect() as conn:
            # Only the newest token for a user stays consumable
            conn.execute(
                "UPDATE password_resets SET used_at = now() WHERE user_id = %s AND used_at IS NULL",
                (user_id,),
            )
            row = conn.execute(
                """
                INSERT INTO password_resets (user_id, token_hash, expires_at, created_at)
                VALUES (%s, %s, now() + make_interval(mins => %s), now())
                RETURNING id, user_id, token_hash, expires_at, used_at, created_at
                """,
                (user_id, token_hash, ttl_minutes),
            ).fetchone()
        return PasswordReset(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            used_at=row.get("used_at"),
            created_at=row["created_at"],
        )

    def consume_password_reset(self, token_hash: str, password_hash: str) -> Optional[str]:
        """Spend a reset token and rotate the password in one transaction.

        The ``used_at IS NULL`` row match makes concurrent confirmations of
        the same token succeed at most once. Returns the user id or None.
        """
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_resets
                SET used_at = now()
                WHERE token_hash = %s AND used_at IS NULL AND expires_at > now()
                RETURNING user_id
                """,
                (token_hash,),
            ).fetchone()
            if not row:
                return None
            updated = conn.execute(
                """
                UPDATE users
                SET password_hash = %s,
                    auth_version = auth_version + 1
                WHERE id = %s
                RETURNING id
                """,
                (password_hash, row["user_id"]),
            ).fetchone()
        return str(updated["id"]) if updated else None

    # templates
    def list_templates(self, user_id: str) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM bill_templates WHERE user_id = %s ORDER BY created_at ASC",
                (user_id,),
            ).fetchall()
        return [dict(r) for r in rows]

    def create_template(self, user_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO bill_templates (user_id, bill_name, category, frequency, due_day, default_amount, is_variable, notes, is_active, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, TRUE, now(), now())
                RETURNING *
                """,
                (
                    user_id,
                    fields["bill_name"],
                    fields["category"],
                    fields["frequency"],
                    fields.get("due_day"),
                    fields["default_amount"],
                    fields.get("is_variable", False),
                    fields.get("notes", ""),
                ),
            ).fetchone()
        return dict(row)

    def update_template(
        self, user_id: str, template_id: str, fields: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        values = [fields.get(name) for name in _TEMPLATE_FIELDS]
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE bill_templates
                SET bill_name = COALESCE(%s, bill_name),
                    category = COALESCE(%s, category),
                    frequency = COALESCE(%s, frequency),
                    due_day = COALESCE(%s, due_day),
                    default_amount = COALESCE(%s, default_amount),
                    is_variable = COALESCE(%s, is_variable),
                    notes = COALESCE(%s, notes),
                    updated_at = now()
                WHERE id = %s AND user_id = %s
                RETURNING *
                """,
                (*values, template_id, user_id),
            ).fetchone()
        return dict(row) if row else None

    def deactivate_template(self, user_id: str, template_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE bill_templates
                SET is_active = FALSE, updated_at = now()
                WHERE id = %s AND user_id = %s
                RETURNING *
                """,
                (template_id, user_id),
            ).fetchone()
        return dict(row) if row else None

    def refresh_planning(self, user_id: str) -> None:
        """Generate occurrences over the planning horizon and assign them to windows."""
        with self._connect() as conn:
            self._call(
                conn, self.functions.generate_occurrences_for_user, user_id, _PLANNING_HORIZON_DAYS
            )
            self._call(conn, self.functions.assign_occurrences_to_active_windows, user_id)

    # occurrences
    def list_occurrences(self, user_id: str) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM v_bill_occurrences_status WHERE user_id = %s ORDER BY due_date ASC",
                (user_id,),
            ).fetchall()
        return [dict(r) for r in rows]

    def update_occurrence_amount(
        self, user_id: str, occurrence_id: str, amount: Any
    ) -> Optional[Dict[str, Any]]:
        # Only future, unpaid occurrences of variable templates are editable
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE bill_occurrences bo
                SET amount = %s, updated_at = now()
                FROM bill_templates bt
                WHERE bo.id = %s AND bo.user_id = %s
                  AND bo.template_id = bt.id
                  AND bt.is_variable = TRUE
                  AND bo.paid_date IS NULL
                  AND bo.due_date >= coris_user_today(bo.user_id)
                RETURNING bo.*
                """,
                (amount, occurrence_id, user_id),
            ).fetchone()
        return dict(row) if row else None

    def mark_occurrence_paid(
        self,
        user_id: str,
        occurrence_id: str,
        *,
        paid_date: Optional[datetime] = None,
        amount_paid: Any = None,
    ) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE bill_occurrences
                SET paid_date = COALESCE(%s::timestamptz, now()),
                    amount_paid = COALESCE(%s::numeric, amount),
                    updated_at = now()
                WHERE id = %s AND user_id = %s
                RETURNING *
                """,
                (paid_date, amount_paid, occurrence_id, user_id),
            ).fetchone()
            if row:
                self._call(
                    conn, self.functions.cancel_unsent_reminders_for_occurrence, occurrence_id, "paid"
                )
        return dict(row) if row else None

    # pay schedule
    def get_active_schedule(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pay_schedules WHERE user_id = %s AND is_active = TRUE",
                (user_id,),
            ).fetchone()
        return dict(row) if row else None

    def set_schedule(
        self,
        user_id: str,
        *,
        frequency: str,
        next_paycheck_date: Any,
        typical_net_pay: Any = None,
    ) -> Dict[str, Any]:
        """Replace the active schedule and rebuild windows for it."""
        with self._connect() as conn:
            row = conn.execute(
                """
                WITH deact AS (
                  UPDATE pay_schedules SET is_active = FALSE, updated_at = now()
                  WHERE user_id = %s AND is_active = TRUE
                  RETURNING id
                ),
                ins AS (
                  INSERT INTO pay_schedules (user_id, frequency, next_paycheck_date, typical_net_pay, is_active)
                  VALUES (%s, %s, %s, %s, TRUE)
                  RETURNING *
                )
                SELECT * FROM ins
                """,
                (user_id, user_id, frequency, next_paycheck_date, typical_net_pay),
            ).fetchone()
            self._call(
                conn, self.functions.generate_windows_for_schedule, row["id"], _PLANNING_HORIZON_DAYS
            )
            self._call(conn, self.functions.assign_occurrences_to_active_windows, user_id)
        return dict(row)

    def regenerate_schedule(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id FROM pay_schedules WHERE user_id = %s AND is_active = TRUE",
                (user_id,),
            ).fetchone()
            if not row:
                return False
            self._call(
                conn, self.functions.generate_windows_for_schedule, row["id"], _PLANNING_HORIZON_DAYS
            )
            self._call(conn, self.functions.assign_occurrences_to_active_windows, user_id)
        return True

    # planning
    def list_window_totals(self, user_id: str) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM v_paycheck_window_totals WHERE user_id = %s ORDER BY start_date ASC",
                (user_id,),
            ).fetchall()
        return [dict(r) for r in rows]

    def has_unassigned_occurrences(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM v_unassigned_future_unpaid_occurrences WHERE user_id = %s LIMIT 1",
                (user_id,),
            ).fetchone()
        return row is not None

    def list_window_items(self, user_id: str, window_id: str) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM v_paycheck_window_items
                WHERE paycheck_window_id = %s AND user_id = %s
                ORDER BY due_date ASC
                """,
                (window_id, user_id),
            ).fetchall()
        return [dict(r) for r in rows]

    def get_planning_integrity(self, user_id: str) -> Dict[str, List[Dict[str, Any]]]:
        with self._connect() as conn:
            unassigned = conn.execute(
                "SELECT * FROM v_unassigned_future_unpaid_occurrences WHERE user_id = %s ORDER BY due_date ASC",
                (user_id,),
            ).fetchall()
            inactive = conn.execute(
                "SELECT * FROM v_occurrences_assigned_to_inactive_windows WHERE user_id = %s",
                (user_id,),
            ).fetchall()
        return {
            "unassigned": [dict(r) for r in unassigned],
            "assigned_to_inactive_windows": [dict(r) for r in inactive],
        }

    # reminders
    def generate_reminders(self, user_id: str) -> None:
        with self._connect() as conn:
            self._call(
                conn, self.functions.generate_default_reminders_for_user, user_id, _REMINDER_HORIZON_DAYS
            )

    def list_pending_reminders(self, user_id: str) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM v_pending_reminder_events WHERE user_id = %s", (user_id,)
            ).fetchall()
        return [dict(r) for r in rows]

    def list_upcoming_reminders(self, user_id: str) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM v_upcoming_reminder_events WHERE user_id = %s", (user_id,)
            ).fetchall()
        return [dict(r) for r in rows]

    def fetch_due_reminders(self, limit: int) -> List[PendingReminder]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM v_pending_reminder_events
                WHERE reminder_type = 'due'
                  AND scheduled_send_at_utc <= now()
                ORDER BY scheduled_send_at_utc ASC
                LIMIT %s
                """,
                (limit,),
            ).fetchall()
        reminders = []
        for row in rows:
            reminder_id = row.get("reminder_log_id") or row.get("id")
            reminders.append(
                PendingReminder(
                    id=str(reminder_id) if reminder_id else None,
                    user_id=str(row["user_id"]),
                    occurrence_id=str(row["occurrence_id"]),
                    reminder_type=row["reminder_type"],
                    scheduled_send_at=row["scheduled_send_at_utc"],
                )
            )
        return reminders

    def get_occurrence_detail(
        self, user_id: str, occurrence_id: str
    ) -> Optional[OccurrenceDetail]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                  u.email AS email,
                  t.bill_name AS bill_name,
                  o.due_date::text AS due_date,
                  o.amount AS amount_due
                FROM bill_occurrences o
                JOIN bill_templates t ON t.id = o.template_id
                JOIN users u ON u.id = o.user_id
                WHERE o.id = %s AND o.user_id = %s
                LIMIT 1
                """,
                (occurrence_id, user_id),
            ).fetchone()
        if not row:
            return None
        return OccurrenceDetail(
            email=row["email"],
            bill_name=row["bill_name"],
            due_date=row["due_date"],
            amount_due=row["amount_due"],
        )

    def mark_reminder_sent(self, reminder_id: str) -> bool:
        """Flip a reminder to sent; False if it was already sent or cancelled."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE reminder_logs
                SET sent_at_utc = now()
                WHERE id = %s AND sent_at_utc IS NULL AND canceled_at_utc IS NULL
                RETURNING id
                """,
                (reminder_id,),
            ).fetchone()
        return row is not None

    def mark_reminder_failed(self, reminder_id: str, reason: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE reminder_logs
                SET failed_at_utc = now(),
                    failure_reason = LEFT(%s, 500)
                WHERE id = %s AND sent_at_utc IS NULL AND canceled_at_utc IS NULL
                """,
                (sanitize_error_message(reason), reminder_id),
            )


__all__ = ["PostgresStore", "StoredFunctions"]
