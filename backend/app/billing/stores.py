"""Persistence contracts for the billing engine."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import ContextManager, Optional, Protocol, Sequence, Tuple

from .models import (
    IdempotencyRecord,
    JournalClaim,
    LedgerEntry,
    LedgerEntryType,
    PaymentRecord,
    PaymentStatus,
    PaymentType,
    ReconciliationItem,
    Subscription,
    SubscriptionStatus,
)


class LedgerScope(Protocol):
    """Reads and writes for one (tenant, entity) pair under mutual exclusion."""

    def balance(self) -> int:
        ...

    def find_entry(
        self,
        *,
        entry_type: LedgerEntryType,
        source_ref: Optional[str] = None,
        event_ref: Optional[str] = None,
    ) -> Optional[LedgerEntry]:
        ...

    def total(self, *, entry_types: Sequence[LedgerEntryType], source_ref: str) -> int:
        ...

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        ...


class LedgerStore(Protocol):
    """Append-only storage for credit ledger entries."""

    def locked(self, tenant_id: str, entity_id: str) -> ContextManager[LedgerScope]:
        ...

    def locked_pair(
        self,
        tenant_id: str,
        first_entity_id: str,
        second_entity_id: str,
    ) -> ContextManager[Tuple[LedgerScope, LedgerScope]]:
        """Lock two entities of one tenant together; writes to both commit or fail as one.

        Locks are taken in sorted entity order whatever the argument order.
        """

        ...

    def get_balance(self, tenant_id: str, entity_id: str) -> int:
        ...

    def list_entries(self, tenant_id: str, entity_id: str) -> Sequence[LedgerEntry]:
        ...

    def list_expired_allocations(self, now: datetime) -> Sequence[LedgerEntry]:
        """Allocations past their expiry that have no expiry entry yet."""

        ...

    def list_allocations_expiring_between(self, start: datetime, end: datetime) -> Sequence[LedgerEntry]:
        ...


class SubscriptionStore(Protocol):
    """Storage for the one subscription each tenant owns."""

    def get_subscription(self, tenant_id: str) -> Optional[Subscription]:
        ...

    def find_by_external_ref(
        self,
        *,
        subscription_ref: Optional[str] = None,
        customer_ref: Optional[str] = None,
    ) -> Optional[Subscription]:
        ...

    def insert_subscription(self, subscription: Subscription) -> Optional[Subscription]:
        """Insert a new row, returning ``None`` when the tenant already has one."""

        ...

    def update_subscription(
        self,
        subscription: Subscription,
        *,
        expected_status: SubscriptionStatus,
        payment_records: Sequence[PaymentRecord] = (),
    ) -> Optional[Subscription]:
        """Persist ``subscription`` only if the stored status still matches.

        Payment records are written in the same unit of work. Returns ``None``
        when the compare-and-set lost to a concurrent writer.
        """

        ...

    def list_due_for_expiry(self, now: datetime) -> Sequence[Subscription]:
        ...

    def list_due_plan_changes(self, now: datetime) -> Sequence[Subscription]:
        ...

    def list_grace_expired(self, now: datetime) -> Sequence[Subscription]:
        ...

    def list_trials_ending_between(self, start: datetime, end: datetime) -> Sequence[Subscription]:
        ...


class JournalStore(Protocol):
    """Storage for idempotency journal records."""

    def claim(
        self,
        event_id: str,
        event_type: str,
        *,
        now: datetime,
        stale_before: datetime,
    ) -> JournalClaim:
        """Atomically insert or reclaim a record.

        A record is reclaimed when it previously failed or has been pending
        since before ``stale_before``.
        """

        ...

    def mark_completed(self, event_id: str, *, now: datetime) -> IdempotencyRecord:
        ...

    def mark_failed(self, event_id: str, reason: str, *, now: datetime) -> IdempotencyRecord:
        ...

    def get_record(self, event_id: str) -> Optional[IdempotencyRecord]:
        ...


class PaymentStore(Protocol):
    """Storage for the payment audit trail."""

    def record_payment(self, payment: PaymentRecord) -> PaymentRecord:
        ...

    def find_payment(
        self,
        *,
        payment_ref: Optional[str] = None,
        invoice_ref: Optional[str] = None,
        charge_ref: Optional[str] = None,
        refund_ref: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
    ) -> Optional[PaymentRecord]:
        """Return the newest record matching every reference that is given."""

        ...

    def latest_payment(
        self,
        tenant_id: str,
        *,
        payment_type: PaymentType,
        status: PaymentStatus,
    ) -> Optional[PaymentRecord]:
        ...

    def attach_dispute(self, payment_id: str, dispute: dict) -> PaymentRecord:
        ...

    def merge_payment_metadata(self, payment_id: str, metadata: dict) -> PaymentRecord:
        """Add keys to a recorded payment's metadata, keeping the ones already there."""

        ...

    def record_refund(
        self,
        refund: PaymentRecord,
        *,
        original_payment_id: str,
        amount_refunded: Decimal,
        status: PaymentStatus,
    ) -> PaymentRecord:
        """Write ``refund`` and update the original record's refund totals together."""

        ...

    def list_payments(self, tenant_id: str, *, limit: int = 50) -> Sequence[PaymentRecord]:
        ...


class ReconciliationQueue(Protocol):
    """Operator-visible queue of events that need manual follow-up."""

    def enqueue(self, item: ReconciliationItem) -> None:
        ...

    def list_items(self, *, limit: int = 100) -> Sequence[ReconciliationItem]:
        ...


__all__ = [
    "JournalStore",
    "LedgerScope",
    "LedgerStore",
    "PaymentStore",
    "ReconciliationQueue",
    "SubscriptionStore",
]
