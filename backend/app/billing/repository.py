"""PostgreSQL persistence for the billing engine."""
from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Iterator, List, Optional, Sequence, Tuple

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .exceptions import InsufficientBalance, StoreUnavailable
from .models import (
    BillingCycle,
    IdempotencyRecord,
    JournalClaim,
    JournalStatus,
    LedgerEntry,
    LedgerEntryType,
    PaymentRecord,
    PaymentStatus,
    PaymentType,
    PendingPlanChange,
    PlanKey,
    ReconciliationItem,
    Subscription,
    SubscriptionStatus,
)

try:  # pragma: no cover - resolve connection helper when imported from FastAPI app
    from backend.app_context import get_conn
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "backend":
        raise
    from ...app_context import get_conn  # type: ignore[no-redef]


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


def _json(value: Any) -> psycopg2.extras.Json:
    return psycopg2.extras.Json(value, dumps=lambda obj: json.dumps(obj, default=str))


def _row_to_subscription(row: dict) -> Subscription:
    pending = row.get("pending_plan_change")
    return Subscription(
        subscription_id=row["subscription_id"],
        tenant_id=row["tenant_id"],
        plan_key=PlanKey(row["plan_key"]),
        billing_cycle=BillingCycle(row["billing_cycle"]),
        status=SubscriptionStatus(row["status"]),
        current_period_start=row.get("current_period_start"),
        current_period_end=row.get("current_period_end"),
        trial_end=row.get("trial_end"),
        external_subscription_ref=row.get("external_subscription_ref"),
        external_customer_ref=row.get("external_customer_ref"),
        has_ever_upgraded=bool(row.get("has_ever_upgraded")),
        trial_manually_disabled=bool(row.get("trial_manually_disabled")),
        grace_period_expires_at=row.get("grace_period_expires_at"),
        pending_plan_change=PendingPlanChange.model_validate(pending) if pending else None,
        usage_limits=row.get("usage_limits") or {},
        canceled_at=row.get("canceled_at"),
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_ledger_entry(row: dict) -> LedgerEntry:
    return LedgerEntry(
        entry_id=row["entry_id"],
        tenant_id=row["tenant_id"],
        entity_id=row["entity_id"],
        entry_type=LedgerEntryType(row["entry_type"]),
        amount=int(row["amount"]),
        currency=row["currency"],
        source_ref=row.get("source_ref"),
        event_ref=row.get("event_ref"),
        expires_at=row.get("expires_at"),
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
    )


def _row_to_journal_record(row: dict) -> IdempotencyRecord:
    return IdempotencyRecord(
        event_id=row["event_id"],
        event_type=row["event_type"],
        status=JournalStatus(row["status"]),
        attempts=int(row["attempts"]),
        last_error=row.get("last_error"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        completed_at=row.get("completed_at"),
    )


def _row_to_payment(row: dict) -> PaymentRecord:
    return PaymentRecord(
        payment_id=row["payment_id"],
        tenant_id=row["tenant_id"],
        subscription_id=row.get("subscription_id"),
        amount=Decimal(row["amount"]),
        currency=row["currency"],
        status=PaymentStatus(row["status"]),
        payment_type=PaymentType(row["payment_type"]),
        external_payment_ref=row.get("external_payment_ref"),
        external_invoice_ref=row.get("external_invoice_ref"),
        external_charge_ref=row.get("external_charge_ref"),
        external_refund_ref=row.get("external_refund_ref"),
        description=row.get("description"),
        amount_refunded=Decimal(row.get("amount_refunded") or 0),
        dispute=row.get("dispute"),
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_reconciliation_item(row: dict) -> ReconciliationItem:
    return ReconciliationItem(
        item_id=row["item_id"],
        reason=row["reason"],
        event_id=row.get("event_id"),
        event_type=row.get("event_type"),
        tenant_id=row.get("tenant_id"),
        payload=row.get("payload") or {},
        created_at=row["created_at"],
    )


def _subscription_params(subscription: Subscription) -> dict:
    pending = subscription.pending_plan_change
    return {
        "subscription_id": subscription.subscription_id,
        "tenant_id": subscription.tenant_id,
        "plan_key": subscription.plan_key.value,
        "billing_cycle": subscription.billing_cycle.value,
        "status": subscription.status.value,
        "current_period_start": subscription.current_period_start,
        "current_period_end": subscription.current_period_end,
        "trial_end": subscription.trial_end,
        "external_subscription_ref": subscription.external_subscription_ref,
        "external_customer_ref": subscription.external_customer_ref,
        "has_ever_upgraded": subscription.has_ever_upgraded,
        "trial_manually_disabled": subscription.trial_manually_disabled,
        "grace_period_expires_at": subscription.grace_period_expires_at,
        "pending_plan_change": _json(pending.model_dump(mode="json")) if pending else None,
        "usage_limits": _json(subscription.usage_limits),
        "canceled_at": subscription.canceled_at,
        "metadata": _json(subscription.metadata),
        "created_at": subscription.created_at,
        "updated_at": subscription.updated_at,
    }


_INSERT_PAYMENT = """
    INSERT INTO billing_payment_records (
        payment_id,
        tenant_id,
        subscription_id,
        amount,
        currency,
        status,
        payment_type,
        external_payment_ref,
        external_invoice_ref,
        external_charge_ref,
        external_refund_ref,
        description,
        amount_refunded,
        dispute,
        metadata,
        created_at,
        updated_at
    )
    VALUES (%(payment_id)s, %(tenant_id)s, %(subscription_id)s, %(amount)s, %(currency)s,
            %(status)s, %(payment_type)s, %(external_payment_ref)s, %(external_invoice_ref)s,
            %(external_charge_ref)s, %(external_refund_ref)s, %(description)s,
            %(amount_refunded)s, %(dispute)s, %(metadata)s, %(created_at)s, %(updated_at)s)
    RETURNING *
"""


def _payment_params(payment: PaymentRecord) -> dict:
    return {
        "payment_id": payment.payment_id,
        "tenant_id": payment.tenant_id,
        "subscription_id": payment.subscription_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "status": payment.status.value,
        "payment_type": payment.payment_type.value,
        "external_payment_ref": payment.external_payment_ref,
        "external_invoice_ref": payment.external_invoice_ref,
        "external_charge_ref": payment.external_charge_ref,
        "external_refund_ref": payment.external_refund_ref,
        "description": payment.description,
        "amount_refunded": payment.amount_refunded,
        "dispute": _json(payment.dispute) if payment.dispute is not None else None,
        "metadata": _json(payment.metadata),
        "created_at": payment.created_at,
        "updated_at": payment.updated_at,
    }


class _PostgresLedgerScope:
    """Ledger reads and writes inside one advisory-locked transaction."""

    def __init__(self, cursor: PgCursor, tenant_id: str, entity_id: str) -> None:
        self._cursor = cursor
        self._tenant_id = tenant_id
        self._entity_id = entity_id

    def balance(self) -> int:
        self._cursor.execute(
            """
            SELECT COALESCE(SUM(amount), 0) AS balance
            FROM billing_ledger_entries
            WHERE tenant_id = %s AND entity_id = %s
            """,
            (self._tenant_id, self._entity_id),
        )
        row = self._cursor.fetchone()
        return int(row["balance"]) if row else 0

    def find_entry(
        self,
        *,
        entry_type: LedgerEntryType,
        source_ref: Optional[str] = None,
        event_ref: Optional[str] = None,
    ) -> Optional[LedgerEntry]:
        self._cursor.execute(
            """
            SELECT *
            FROM billing_ledger_entries
            WHERE tenant_id = %(tenant_id)s
              AND entity_id = %(entity_id)s
              AND entry_type = %(entry_type)s
              AND (%(source_ref)s::text IS NULL OR source_ref = %(source_ref)s)
              AND (%(event_ref)s::text IS NULL OR event_ref = %(event_ref)s)
            ORDER BY created_at
            LIMIT 1
            """,
            {
                "tenant_id": self._tenant_id,
                "entity_id": self._entity_id,
                "entry_type": entry_type.value,
                "source_ref": source_ref,
                "event_ref": event_ref,
            },
        )
        row = self._cursor.fetchone()
        return _row_to_ledger_entry(row) if row else None

    def total(self, *, entry_types: Sequence[LedgerEntryType], source_ref: str) -> int:
        self._cursor.execute(
            """
            SELECT COALESCE(SUM(amount), 0) AS total
            FROM billing_ledger_entries
            WHERE tenant_id = %s AND entity_id = %s AND source_ref = %s AND entry_type = ANY(%s)
            """,
            (self._tenant_id, self._entity_id, source_ref, [entry_type.value for entry_type in entry_types]),
        )
        row = self._cursor.fetchone()
        return int(row["total"]) if row else 0

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.amount < 0:
            available = self.balance()
            if available + entry.amount < 0:
                raise InsufficientBalance(available=available, requested=-entry.amount)
        self._cursor.execute(
            """
            INSERT INTO billing_ledger_entries (
                entry_id,
                tenant_id,
                entity_id,
                entry_type,
                amount,
                currency,
                source_ref,
                event_ref,
                expires_at,
                metadata,
                created_at
            )
            VALUES (%(entry_id)s, %(tenant_id)s, %(entity_id)s, %(entry_type)s, %(amount)s,
                    %(currency)s, %(source_ref)s, %(event_ref)s, %(expires_at)s, %(metadata)s, %(created_at)s)
            RETURNING *
            """,
            {
                "entry_id": entry.entry_id,
                "tenant_id": entry.tenant_id,
                "entity_id": entry.entity_id,
                "entry_type": entry.entry_type.value,
                "amount": entry.amount,
                "currency": entry.currency,
                "source_ref": entry.source_ref,
                "event_ref": entry.event_ref,
                "expires_at": entry.expires_at,
                "metadata": _json(entry.metadata),
                "created_at": entry.created_at,
            },
        )
        row = self._cursor.fetchone()
        if not row:
            raise RuntimeError("Failed to persist ledger entry")
        return _row_to_ledger_entry(row)


class PostgresBillingRepository:
    """Concrete store persisting billing state in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        try:
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
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
            raise StoreUnavailable(f"Billing database unavailable: {exc}") from exc

    # Ledger -----------------------------------------------------------------

    @contextmanager
    def locked(self, tenant_id: str, entity_id: str) -> Iterator[_PostgresLedgerScope]:
        with self._cursor() as cursor:
            cursor.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (f"ledger:{tenant_id}:{entity_id}",))
            yield _PostgresLedgerScope(cursor, tenant_id, entity_id)

    @contextmanager
    def locked_pair(
        self,
        tenant_id: str,
        first_entity_id: str,
        second_entity_id: str,
    ) -> Iterator[Tuple[_PostgresLedgerScope, _PostgresLedgerScope]]:
        with self._cursor() as cursor:
            for entity_id in sorted({first_entity_id, second_entity_id}):
                cursor.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (f"ledger:{tenant_id}:{entity_id}",))
            yield (
                _PostgresLedgerScope(cursor, tenant_id, first_entity_id),
                _PostgresLedgerScope(cursor, tenant_id, second_entity_id),
            )

    def list_expired_allocations(self, now: datetime) -> List[LedgerEntry]:
        return self._select_open_allocations("allocation.expires_at <= %(now)s", {"now": now})

    def list_allocations_expiring_between(self, start: datetime, end: datetime) -> List[LedgerEntry]:
        return self._select_open_allocations(
            "allocation.expires_at > %(start)s AND allocation.expires_at <= %(end)s",
            {"start": start, "end": end},
        )

    def _select_open_allocations(self, where: str, params: dict) -> List[LedgerEntry]:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT allocation.*
                FROM billing_ledger_entries AS allocation
                WHERE allocation.entry_type = 'allocation'
                  AND allocation.expires_at IS NOT NULL
                  AND {where}
                  AND NOT EXISTS (
                      SELECT 1
                      FROM billing_ledger_entries AS expiry
                      WHERE expiry.tenant_id = allocation.tenant_id
                        AND expiry.entity_id = allocation.entity_id
                        AND expiry.source_ref = allocation.source_ref
                        AND expiry.entry_type = 'expiry'
                  )
                ORDER BY allocation.expires_at
                """,
                params,
            )
            rows = cursor.fetchall() or []
            return [_row_to_ledger_entry(row) for row in rows]

    def get_balance(self, tenant_id: str, entity_id: str) -> int:
        with self._cursor() as cursor:
            return _PostgresLedgerScope(cursor, tenant_id, entity_id).balance()

    def list_entries(self, tenant_id: str, entity_id: str) -> List[LedgerEntry]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_ledger_entries
                WHERE tenant_id = %s AND entity_id = %s
                ORDER BY created_at, entry_id
                """,
                (tenant_id, entity_id),
            )
            rows = cursor.fetchall() or []
            return [_row_to_ledger_entry(row) for row in rows]

    # Subscriptions ----------------------------------------------------------

    def get_subscription(self, tenant_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE tenant_id = %s
                LIMIT 1
                """,
                (tenant_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def find_by_external_ref(
        self,
        *,
        subscription_ref: Optional[str] = None,
        customer_ref: Optional[str] = None,
    ) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE (%(subscription_ref)s::text IS NOT NULL AND external_subscription_ref = %(subscription_ref)s)
                   OR (%(customer_ref)s::text IS NOT NULL AND external_customer_ref = %(customer_ref)s)
                ORDER BY (external_subscription_ref = %(subscription_ref)s) DESC NULLS LAST
                LIMIT 1
                """,
                {"subscription_ref": subscription_ref, "customer_ref": customer_ref},
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def insert_subscription(self, subscription: Subscription) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_subscriptions (
                    subscription_id,
                    tenant_id,
                    plan_key,
                    billing_cycle,
                    status,
                    current_period_start,
                    current_period_end,
                    trial_end,
                    external_subscription_ref,
                    external_customer_ref,
                    has_ever_upgraded,
                    trial_manually_disabled,
                    grace_period_expires_at,
                    pending_plan_change,
                    usage_limits,
                    canceled_at,
                    metadata,
                    created_at,
                    updated_at
                )
                VALUES (%(subscription_id)s, %(tenant_id)s, %(plan_key)s, %(billing_cycle)s,
                        %(status)s, %(current_period_start)s, %(current_period_end)s,
                        %(trial_end)s, %(external_subscription_ref)s, %(external_customer_ref)s,
                        %(has_ever_upgraded)s, %(trial_manually_disabled)s,
                        %(grace_period_expires_at)s, %(pending_plan_change)s, %(usage_limits)s,
                        %(canceled_at)s, %(metadata)s, %(created_at)s, %(updated_at)s)
                ON CONFLICT (tenant_id) DO NOTHING
                RETURNING *
                """,
                _subscription_params(subscription),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def update_subscription(
        self,
        subscription: Subscription,
        *,
        expected_status: SubscriptionStatus,
        payment_records: Sequence[PaymentRecord] = (),
    ) -> Optional[Subscription]:
        params = _subscription_params(subscription)
        params["expected_status"] = expected_status.value
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_subscriptions
                SET plan_key = %(plan_key)s,
                    billing_cycle = %(billing_cycle)s,
                    status = %(status)s,
                    current_period_start = %(current_period_start)s,
                    current_period_end = %(current_period_end)s,
                    trial_end = %(trial_end)s,
                    external_subscription_ref = %(external_subscription_ref)s,
                    external_customer_ref = %(external_customer_ref)s,
                    has_ever_upgraded = %(has_ever_upgraded)s,
                    trial_manually_disabled = %(trial_manually_disabled)s,
                    grace_period_expires_at = %(grace_period_expires_at)s,
                    pending_plan_change = %(pending_plan_change)s,
                    usage_limits = %(usage_limits)s,
                    canceled_at = %(canceled_at)s,
                    metadata = %(metadata)s,
                    updated_at = %(updated_at)s
                WHERE tenant_id = %(tenant_id)s AND status = %(expected_status)s
                RETURNING *
                """,
                params,
            )
            row = cursor.fetchone()
            if not row:
                return None
            for payment in payment_records:
                cursor.execute(_INSERT_PAYMENT, _payment_params(payment))
            return _row_to_subscription(row)

    def list_due_for_expiry(self, now: datetime) -> List[Subscription]:
        return self._select_subscriptions(
            """
            (status = 'trialing' AND NOT trial_manually_disabled AND trial_end <= %(now)s)
            OR (status = 'active' AND current_period_end <= %(now)s)
            """,
            {"now": now},
        )

    def list_due_plan_changes(self, now: datetime) -> List[Subscription]:
        return self._select_subscriptions(
            """
            status = 'active'
            AND pending_plan_change IS NOT NULL
            AND (pending_plan_change->>'effective_at')::timestamptz <= %(now)s
            """,
            {"now": now},
        )

    def list_grace_expired(self, now: datetime) -> List[Subscription]:
        return self._select_subscriptions(
            "status = 'past_due' AND grace_period_expires_at <= %(now)s",
            {"now": now},
        )

    def list_trials_ending_between(self, start: datetime, end: datetime) -> List[Subscription]:
        return self._select_subscriptions(
            """
            status = 'trialing'
            AND NOT trial_manually_disabled
            AND trial_end > %(start)s
            AND trial_end <= %(end)s
            """,
            {"start": start, "end": end},
        )

    def _select_subscriptions(self, where: str, params: dict) -> List[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT * FROM billing_subscriptions WHERE {where} ORDER BY tenant_id",
                params,
            )
            rows = cursor.fetchall() or []
            return [_row_to_subscription(row) for row in rows]

    # Journal ----------------------------------------------------------------

    def claim(
        self,
        event_id: str,
        event_type: str,
        *,
        now: datetime,
        stale_before: datetime,
    ) -> JournalClaim:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_idempotency_journal (
                    event_id,
                    event_type,
                    status,
                    attempts,
                    created_at,
                    updated_at
                )
                VALUES (%(event_id)s, %(event_type)s, 'pending', 1, %(now)s, %(now)s)
                ON CONFLICT (event_id) DO UPDATE SET
                    status = 'pending',
                    attempts = billing_idempotency_journal.attempts + 1,
                    last_error = NULL,
                    updated_at = EXCLUDED.updated_at
                WHERE billing_idempotency_journal.status = 'failed'
                   OR (
                        billing_idempotency_journal.status = 'pending'
                        AND billing_idempotency_journal.updated_at < %(stale_before)s
                   )
                RETURNING *
                """,
                {"event_id": event_id, "event_type": event_type, "now": now, "stale_before": stale_before},
            )
            row = cursor.fetchone()
            if row:
                return JournalClaim(record=_row_to_journal_record(row), claimed=True)
            cursor.execute(
                "SELECT * FROM billing_idempotency_journal WHERE event_id = %s",
                (event_id,),
            )
            existing = cursor.fetchone()
            if not existing:
                raise RuntimeError(f"Journal record vanished for {event_id}")
            return JournalClaim(record=_row_to_journal_record(existing), claimed=False)

    def mark_completed(self, event_id: str, *, now: datetime) -> IdempotencyRecord:
        return self._update_journal(
            """
            UPDATE billing_idempotency_journal
            SET status = 'completed', last_error = NULL, updated_at = %(now)s, completed_at = %(now)s
            WHERE event_id = %(event_id)s
            RETURNING *
            """,
            {"event_id": event_id, "now": now},
        )

    def mark_failed(self, event_id: str, reason: str, *, now: datetime) -> IdempotencyRecord:
        return self._update_journal(
            """
            UPDATE billing_idempotency_journal
            SET status = 'failed', last_error = %(reason)s, updated_at = %(now)s
            WHERE event_id = %(event_id)s
            RETURNING *
            """,
            {"event_id": event_id, "now": now, "reason": reason[:1000]},
        )

    def get_record(self, event_id: str) -> Optional[IdempotencyRecord]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM billing_idempotency_journal WHERE event_id = %s", (event_id,))
            row = cursor.fetchone()
            return _row_to_journal_record(row) if row else None

    def _update_journal(self, statement: str, params: dict) -> IdempotencyRecord:
        with self._cursor() as cursor:
            cursor.execute(statement, params)
            row = cursor.fetchone()
            if not row:
                raise KeyError(f"Unknown journal event: {params['event_id']}")
            return _row_to_journal_record(row)

    # Payments ---------------------------------------------------------------

    def record_payment(self, payment: PaymentRecord) -> PaymentRecord:
        with self._cursor() as cursor:
            cursor.execute(_INSERT_PAYMENT, _payment_params(payment))
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist payment record")
            return _row_to_payment(row)

    def find_payment(
        self,
        *,
        payment_ref: Optional[str] = None,
        invoice_ref: Optional[str] = None,
        charge_ref: Optional[str] = None,
        refund_ref: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
    ) -> Optional[PaymentRecord]:
        criteria = {
            "external_payment_ref": payment_ref,
            "external_invoice_ref": invoice_ref,
            "external_charge_ref": charge_ref,
            "external_refund_ref": refund_ref,
        }
        clauses = [f"{column} = %({column})s" for column, value in criteria.items() if value is not None]
        if not clauses:
            return None
        params = {column: value for column, value in criteria.items() if value is not None}
        if status is not None:
            clauses.append("status = %(status)s")
            params["status"] = status.value
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT *
                FROM billing_payment_records
                WHERE {' AND '.join(clauses)}
                ORDER BY created_at DESC
                LIMIT 1
                """,
                params,
            )
            row = cursor.fetchone()
            return _row_to_payment(row) if row else None

    def latest_payment(
        self,
        tenant_id: str,
        *,
        payment_type: PaymentType,
        status: PaymentStatus,
    ) -> Optional[PaymentRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_payment_records
                WHERE tenant_id = %s AND payment_type = %s AND status = %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (tenant_id, payment_type.value, status.value),
            )
            row = cursor.fetchone()
            return _row_to_payment(row) if row else None

    def attach_dispute(self, payment_id: str, dispute: dict) -> PaymentRecord:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_payment_records
                SET dispute = %s, status = %s, updated_at = NOW()
                WHERE payment_id = %s
                RETURNING *
                """,
                (_json(dispute), PaymentStatus.DISPUTED.value, payment_id),
            )
            row = cursor.fetchone()
            if not row:
                raise KeyError(f"Unknown payment: {payment_id}")
            return _row_to_payment(row)

    def merge_payment_metadata(self, payment_id: str, metadata: dict) -> PaymentRecord:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_payment_records
                SET metadata = metadata || %s::jsonb, updated_at = NOW()
                WHERE payment_id = %s
                RETURNING *
                """,
                (_json(metadata), payment_id),
            )
            row = cursor.fetchone()
            if not row:
                raise KeyError(f"Unknown payment: {payment_id}")
            return _row_to_payment(row)

    def record_refund(
        self,
        refund: PaymentRecord,
        *,
        original_payment_id: str,
        amount_refunded: Decimal,
        status: PaymentStatus,
    ) -> PaymentRecord:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_payment_records
                SET amount_refunded = %s, status = %s, updated_at = %s
                WHERE payment_id = %s
                """,
                (amount_refunded, status.value, refund.created_at, original_payment_id),
            )
            if cursor.rowcount == 0:
                raise KeyError(f"Unknown payment: {original_payment_id}")
            cursor.execute(_INSERT_PAYMENT, _payment_params(refund))
            row = cursor.fetchone()
            return _row_to_payment(row)

    def list_payments(self, tenant_id: str, *, limit: int = 50) -> List[PaymentRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_payment_records
                WHERE tenant_id = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (tenant_id, limit),
            )
            rows = cursor.fetchall() or []
            return [_row_to_payment(row) for row in rows]


class PostgresReconciliationQueue:
    """Operator queue backed by the billing_reconciliation_queue table."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._repository = PostgresBillingRepository(conn=conn)

    def enqueue(self, item: ReconciliationItem) -> None:
        with self._repository._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_reconciliation_queue (
                    item_id,
                    reason,
                    event_id,
                    event_type,
                    tenant_id,
                    payload,
                    created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (item_id) DO NOTHING
                """,
                (
                    item.item_id,
                    item.reason,
                    item.event_id,
                    item.event_type,
                    item.tenant_id,
                    _json(item.payload),
                    item.created_at,
                ),
            )

    def list_items(self, *, limit: int = 100) -> List[ReconciliationItem]:
        with self._repository._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_reconciliation_queue
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (limit,),
            )
            rows = cursor.fetchall() or []
            return [_row_to_reconciliation_item(row) for row in rows]


__all__ = [
    "PostgresBillingRepository",
    "PostgresReconciliationQueue",
    "managed_connection",
]
