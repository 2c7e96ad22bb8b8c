"""Persistence layer for billing synchronization state."""
from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .models import (
    AuditLogEntry,
    Plan,
    PlanInterval,
    SubscriptionStatus,
    TransactionRecord,
    User,
)

try:  # pragma: no cover - resolve connection helper when imported from FastAPI app
    from backend.app_context import get_conn
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "backend":
        raise
    from ...app_context import get_conn  # type: ignore[no-redef]


EVENT_PROCESSING = "processing"
EVENT_PROCESSED = "processed"
EVENT_RELEASED = "released"


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_plan(row: Mapping[str, Any]) -> Plan:
    return Plan(
        id=str(row["id"]),
        name=row.get("name") or "",
        description=row.get("description") or "",
        price=row["price"],
        is_free=bool(row["is_free"]),
        level=int(row.get("level") or 0),
        currency=row.get("currency") or "usd",
        interval=PlanInterval(row.get("interval") or PlanInterval.MONTH.value),
        provider_product_id=row.get("provider_product_id"),
        provider_price_id=row.get("provider_price_id"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_user(row: Mapping[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        name=row.get("name") or "",
        plan_id=str(row["plan_id"]),
        provider_customer_id=row.get("provider_customer_id"),
        provider_subscription_id=row.get("provider_subscription_id"),
        subscription_status=SubscriptionStatus(row.get("subscription_status") or SubscriptionStatus.ACTIVE.value),
        subscription_start_date=row.get("subscription_start_date"),
        subscription_end_date=row.get("subscription_end_date"),
        subscription_canceled_at=row.get("subscription_canceled_at"),
        updated_at=row["updated_at"],
    )


class PostgresBillingRepository:
    """Concrete repository persisting billing state in PostgreSQL.

    Provider-id columns are only ever written through guarded ``UPDATE ...
    RETURNING`` statements, so the row returned is the value that won.
    """

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    def _fetch_user(self, query: str, params: Any) -> Optional[User]:
        with self._cursor() as cursor:
            cursor.execute(query, params)
            row = cursor.fetchone()
            return _row_to_user(row) if row else None

    def _fetch_plan(self, query: str, params: Any) -> Optional[Plan]:
        with self._cursor() as cursor:
            cursor.execute(query, params)
            row = cursor.fetchone()
            return _row_to_plan(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("SELECT * FROM users WHERE id = %s LIMIT 1", (user_id,))

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        return self._fetch_plan("SELECT * FROM plans WHERE id = %s LIMIT 1", (plan_id,))

    def get_free_plan(self) -> Optional[Plan]:
        return self._fetch_plan("SELECT * FROM plans WHERE is_free ORDER BY level ASC LIMIT 1", ())

    def find_user_by_customer_id(self, customer_id: str) -> Optional[User]:
        return self._fetch_user(
            "SELECT * FROM users WHERE provider_customer_id = %s LIMIT 1",
            (customer_id,),
        )

    def find_user_by_subscription_id(self, subscription_id: str) -> Optional[User]:
        return self._fetch_user(
            "SELECT * FROM users WHERE provider_subscription_id = %s LIMIT 1",
            (subscription_id,),
        )

    def find_plan_by_product_id(self, product_id: str) -> Optional[Plan]:
        return self._fetch_plan(
            "SELECT * FROM plans WHERE provider_product_id = %s LIMIT 1",
            (product_id,),
        )

    def find_user_id_for_customer_transactions(self, customer_id: str) -> Optional[str]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT user_id
                FROM billing_transactions
                WHERE customer_id = %s AND user_id IS NOT NULL
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (customer_id,),
            )
            row = cursor.fetchone()
            return str(row["user_id"]) if row else None

    def set_plan_product_id(self, plan_id: str, product_id: str) -> Optional[Plan]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE plans
                SET provider_product_id = %s, updated_at = NOW()
                WHERE id = %s AND provider_product_id IS NULL
                RETURNING *
                """,
                (product_id, plan_id),
            )
            row = cursor.fetchone()
            if row:
                return _row_to_plan(row)
            cursor.execute("SELECT * FROM plans WHERE id = %s", (plan_id,))
            row = cursor.fetchone()
            return _row_to_plan(row) if row else None

    def set_plan_price_id(self, plan_id: str, price_id: str, *, expected: Optional[str]) -> Optional[Plan]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE plans
                SET provider_price_id = %s, updated_at = NOW()
                WHERE id = %s AND provider_price_id IS NOT DISTINCT FROM %s
                RETURNING *
                """,
                (price_id, plan_id, expected),
            )
            row = cursor.fetchone()
            if row:
                return _row_to_plan(row)
            cursor.execute("SELECT * FROM plans WHERE id = %s", (plan_id,))
            row = cursor.fetchone()
            return _row_to_plan(row) if row else None

    def set_user_customer_id(self, user_id: str, customer_id: str) -> Optional[User]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE users
                SET provider_customer_id = %s, updated_at = NOW()
                WHERE id = %s AND provider_customer_id IS NULL
                RETURNING *
                """,
                (customer_id, user_id),
            )
            row = cursor.fetchone()
            if row:
                return _row_to_user(row)
            cursor.execute("SELECT * FROM users WHERE id = %s", (user_id,))
            row = cursor.fetchone()
            return _row_to_user(row) if row else None

    def attach_subscription(
        self,
        user_id: str,
        *,
        subscription_id: str,
        status: SubscriptionStatus,
        period_start: Optional[datetime],
        period_end: Optional[datetime],
    ) -> Optional[User]:
        return self._fetch_user(
            """
            UPDATE users AS u
            SET provider_subscription_id = %(subscription_id)s,
                subscription_status = %(status)s,
                subscription_start_date = %(period_start)s,
                subscription_end_date = %(period_end)s,
                subscription_canceled_at = NULL,
                updated_at = NOW()
            WHERE u.id = %(user_id)s
              AND u.provider_subscription_id IS NULL
              AND EXISTS (SELECT 1 FROM plans AS p WHERE p.id = u.plan_id AND NOT p.is_free)
            RETURNING u.*
            """,
            {
                "user_id": user_id,
                "subscription_id": subscription_id,
                "status": status.value,
                "period_start": period_start,
                "period_end": period_end,
            },
        )

    def apply_subscription_state(
        self,
        user_id: str,
        *,
        subscription_id: Optional[str],
        status: SubscriptionStatus,
        period_start: Optional[datetime],
        period_end: Optional[datetime],
        plan_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        activate_free_user: bool = False,
    ) -> Optional[User]:
        # A NULL subscription id keeps the stored one (one-off checkout).
        return self._fetch_user(
            """
            UPDATE users AS u
            SET provider_subscription_id = COALESCE(%(subscription_id)s, u.provider_subscription_id),
                subscription_status = %(status)s,
                subscription_start_date = CASE
                    WHEN %(subscription_id)s::text IS NULL OR u.provider_subscription_id = %(subscription_id)s
                        THEN COALESCE(%(period_start)s::timestamptz, u.subscription_start_date)
                    ELSE %(period_start)s::timestamptz
                END,
                subscription_end_date = CASE
                    WHEN %(subscription_id)s::text IS NULL OR u.provider_subscription_id = %(subscription_id)s
                        THEN COALESCE(%(period_end)s::timestamptz, u.subscription_end_date)
                    ELSE %(period_end)s::timestamptz
                END,
                subscription_canceled_at = CASE
                    WHEN %(status)s = 'canceled' THEN COALESCE(u.subscription_canceled_at, NOW())
                    ELSE NULL
                END,
                plan_id = COALESCE(%(plan_id)s, u.plan_id),
                provider_customer_id = COALESCE(u.provider_customer_id, %(customer_id)s),
                updated_at = NOW()
            WHERE u.id = %(user_id)s
              AND NOT (
                  %(subscription_id)s::text IS NOT NULL
                  AND u.provider_subscription_id = %(subscription_id)s
                  AND u.subscription_end_date IS NOT NULL
                  AND %(period_end)s::timestamptz IS NOT NULL
                  AND %(period_end)s::timestamptz < u.subscription_end_date
              )
              AND NOT (
                  %(subscription_id)s::text IS NOT NULL
                  AND u.provider_subscription_id = %(subscription_id)s
                  AND u.subscription_status = 'canceled'
                  AND %(status)s <> 'canceled'
              )
              AND EXISTS (
                  SELECT 1 FROM plans AS p
                  WHERE p.id = COALESCE(%(plan_id)s, u.plan_id) AND NOT p.is_free
              )
              AND (
                  %(activate_free_user)s
                  OR u.provider_subscription_id IS NOT NULL
                  OR EXISTS (SELECT 1 FROM plans AS cp WHERE cp.id = u.plan_id AND NOT cp.is_free)
              )
            RETURNING u.*
            """,
            {
                "user_id": user_id,
                "subscription_id": subscription_id,
                "status": status.value,
                "period_start": period_start,
                "period_end": period_end,
                "plan_id": plan_id,
                "customer_id": customer_id,
                "activate_free_user": activate_free_user,
            },
        )

    def mark_subscription_canceled(self, subscription_id: str, *, canceled_at: datetime) -> Optional[User]:
        return self._fetch_user(
            """
            UPDATE users
            SET subscription_status = %s,
                subscription_canceled_at = COALESCE(subscription_canceled_at, %s),
                updated_at = NOW()
            WHERE provider_subscription_id = %s
            RETURNING *
            """,
            (SubscriptionStatus.CANCELED.value, canceled_at, subscription_id),
        )

    def assign_plan(self, user_id: str, plan_id: str, *, clear_subscription: bool) -> Optional[User]:
        if not clear_subscription:
            return self._fetch_user(
                "UPDATE users SET plan_id = %s, updated_at = NOW() WHERE id = %s RETURNING *",
                (plan_id, user_id),
            )
        return self._fetch_user(
            """
            UPDATE users
            SET plan_id = %s,
                provider_subscription_id = NULL,
                subscription_status = %s,
                subscription_start_date = NULL,
                subscription_end_date = NULL,
                subscription_canceled_at = NULL,
                updated_at = NOW()
            WHERE id = %s
            RETURNING *
            """,
            (plan_id, SubscriptionStatus.ACTIVE.value, user_id),
        )

    def claim_event(
        self,
        event_id: str,
        event_type: str,
        payload: Mapping[str, Any],
        *,
        lease_seconds: int,
    ) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_provider_events (
                    event_id,
                    event_type,
                    payload,
                    status,
                    attempts,
                    claimed_at
                )
                VALUES (%(event_id)s, %(event_type)s, %(payload)s, %(processing)s, 1, NOW())
                ON CONFLICT (event_id) DO UPDATE SET
                    status = EXCLUDED.status,
                    attempts = billing_provider_events.attempts + 1,
                    claimed_at = NOW()
                WHERE billing_provider_events.status = %(released)s
                   OR (
                       billing_provider_events.status = %(processing)s
                       AND billing_provider_events.claimed_at < NOW() - make_interval(secs => %(lease)s)
                   )
                RETURNING event_id
                """,
                {
                    "event_id": event_id,
                    "event_type": event_type,
                    "payload": psycopg2.extras.Json(dict(payload)),
                    "processing": EVENT_PROCESSING,
                    "released": EVENT_RELEASED,
                    "lease": lease_seconds,
                },
            )
            return cursor.fetchone() is not None

    def mark_event_processed(self, event_id: str, *, error: Optional[str] = None) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_provider_events
                SET status = %s, error = %s, processed_at = NOW()
                WHERE event_id = %s
                """,
                (EVENT_PROCESSED, error, event_id),
            )

    def release_event(self, event_id: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_provider_events
                SET status = %s, claimed_at = NULL
                WHERE event_id = %s AND status = %s
                """,
                (EVENT_RELEASED, event_id, EVENT_PROCESSING),
            )

    def record_transaction(self, transaction: TransactionRecord) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_transactions (
                    id,
                    user_id,
                    customer_id,
                    amount,
                    currency,
                    status,
                    subscription_id,
                    metadata,
                    created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO NOTHING
                """,
                (
                    transaction.id,
                    transaction.user_id,
                    transaction.customer_id,
                    transaction.amount,
                    transaction.currency,
                    transaction.status.value,
                    transaction.subscription_id,
                    psycopg2.extras.Json(transaction.metadata),
                    transaction.created_at,
                ),
            )
            return cursor.rowcount > 0

    def backfill_transaction_users(self, customer_id: str, user_id: str) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_transactions
                SET user_id = %s
                WHERE customer_id = %s AND user_id IS NULL
                """,
                (user_id, customer_id),
            )
            return cursor.rowcount

    def append_audit_entry(self, entry: AuditLogEntry) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO system_logs (actor_id, action, object_type, object_id, details, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.actor_id,
                    entry.action.value,
                    entry.object_type,
                    entry.object_id,
                    psycopg2.extras.Json(entry.details, dumps=_dumps),
                    entry.timestamp,
                ),
            )


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


__all__ = ["PostgresBillingRepository", "managed_connection"]
