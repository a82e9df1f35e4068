"""In-memory billing stores suitable for tests and local development."""
from __future__ import annotations

from contextlib import ExitStack, contextmanager
from datetime import datetime
from decimal import Decimal
from threading import RLock
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from .exceptions import InsufficientBalance
from .locking import KeyedLock
from .models import (
    IdempotencyRecord,
    JournalClaim,
    JournalStatus,
    LedgerEntry,
    LedgerEntryType,
    PaymentRecord,
    PaymentStatus,
    PaymentType,
    ReconciliationItem,
    Subscription,
    SubscriptionStatus,
    utcnow,
)

LedgerKey = Tuple[str, str]


class _InMemoryLedgerScope:
    def __init__(self, entries: List[LedgerEntry]) -> None:
        self._entries = entries

    def balance(self) -> int:
        return sum(entry.amount for entry in self._entries)

    def find_entry(
        self,
        *,
        entry_type: LedgerEntryType,
        source_ref: Optional[str] = None,
        event_ref: Optional[str] = None,
    ) -> Optional[LedgerEntry]:
        for entry in self._entries:
            if entry.entry_type != entry_type:
                continue
            if source_ref is not None and entry.source_ref != source_ref:
                continue
            if event_ref is not None and entry.event_ref != event_ref:
                continue
            return entry
        return None

    def total(self, *, entry_types: Sequence[LedgerEntryType], source_ref: str) -> int:
        return sum(
            entry.amount
            for entry in self._entries
            if entry.entry_type in entry_types and entry.source_ref == source_ref
        )

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.amount < 0 and self.balance() + entry.amount < 0:
            raise InsufficientBalance(available=self.balance(), requested=-entry.amount)
        self._entries.append(entry)
        return entry


class InMemoryBillingStore:
    """Thread-safe store implementing every billing persistence contract."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._ledger_locks = KeyedLock()
        self._ledger: Dict[LedgerKey, List[LedgerEntry]] = {}
        self._subscriptions: Dict[str, Subscription] = {}
        self._journal: Dict[str, IdempotencyRecord] = {}
        self._payments: List[PaymentRecord] = []

    # Ledger -----------------------------------------------------------------

    @contextmanager
    def locked(self, tenant_id: str, entity_id: str) -> Iterator[_InMemoryLedgerScope]:
        key = (tenant_id, entity_id)
        with self._ledger_locks.hold(f"{tenant_id}:{entity_id}"):
            with self._lock:
                entries = self._ledger.setdefault(key, [])
            yield _InMemoryLedgerScope(entries)

    @contextmanager
    def locked_pair(
        self,
        tenant_id: str,
        first_entity_id: str,
        second_entity_id: str,
    ) -> Iterator[Tuple[_InMemoryLedgerScope, _InMemoryLedgerScope]]:
        with ExitStack() as stack:
            for entity_id in sorted({first_entity_id, second_entity_id}):
                stack.enter_context(self._ledger_locks.hold(f"{tenant_id}:{entity_id}"))
            with self._lock:
                first = self._ledger.setdefault((tenant_id, first_entity_id), [])
                second = self._ledger.setdefault((tenant_id, second_entity_id), [])
            yield _InMemoryLedgerScope(first), _InMemoryLedgerScope(second)

    def get_balance(self, tenant_id: str, entity_id: str) -> int:
        with self._lock:
            return sum(entry.amount for entry in self._ledger.get((tenant_id, entity_id), []))

    def list_entries(self, tenant_id: str, entity_id: str) -> Sequence[LedgerEntry]:
        with self._lock:
            return list(self._ledger.get((tenant_id, entity_id), []))

    def list_expired_allocations(self, now: datetime) -> Sequence[LedgerEntry]:
        return self._open_allocations(lambda expires_at: expires_at <= now)

    def list_allocations_expiring_between(self, start: datetime, end: datetime) -> Sequence[LedgerEntry]:
        return self._open_allocations(lambda expires_at: start < expires_at <= end)

    def _open_allocations(self, due) -> List[LedgerEntry]:
        found: List[LedgerEntry] = []
        with self._lock:
            for entries in self._ledger.values():
                expired_sources = {
                    entry.source_ref for entry in entries if entry.entry_type == LedgerEntryType.EXPIRY
                }
                found.extend(
                    entry
                    for entry in entries
                    if entry.entry_type == LedgerEntryType.ALLOCATION
                    and entry.expires_at is not None
                    and entry.source_ref not in expired_sources
                    and due(entry.expires_at)
                )
        return sorted(found, key=lambda entry: entry.expires_at)

    # Subscriptions ----------------------------------------------------------

    def get_subscription(self, tenant_id: str) -> Optional[Subscription]:
        with self._lock:
            return self._subscriptions.get(tenant_id)

    def find_by_external_ref(
        self,
        *,
        subscription_ref: Optional[str] = None,
        customer_ref: Optional[str] = None,
    ) -> Optional[Subscription]:
        with self._lock:
            for subscription in self._subscriptions.values():
                if subscription_ref and subscription.external_subscription_ref == subscription_ref:
                    return subscription
            for subscription in self._subscriptions.values():
                if customer_ref and subscription.external_customer_ref == customer_ref:
                    return subscription
        return None

    def insert_subscription(self, subscription: Subscription) -> Optional[Subscription]:
        with self._lock:
            if subscription.tenant_id in self._subscriptions:
                return None
            self._subscriptions[subscription.tenant_id] = subscription
            return subscription

    def update_subscription(
        self,
        subscription: Subscription,
        *,
        expected_status: SubscriptionStatus,
        payment_records: Sequence[PaymentRecord] = (),
    ) -> Optional[Subscription]:
        with self._lock:
            current = self._subscriptions.get(subscription.tenant_id)
            if current is None or current.status != expected_status:
                return None
            self._subscriptions[subscription.tenant_id] = subscription
            self._payments.extend(payment_records)
            return subscription

    def list_due_for_expiry(self, now: datetime) -> Sequence[Subscription]:
        def _due(subscription: Subscription) -> bool:
            if subscription.status == SubscriptionStatus.TRIALING:
                return (
                    not subscription.trial_manually_disabled
                    and subscription.trial_end is not None
                    and subscription.trial_end <= now
                )
            if subscription.status == SubscriptionStatus.ACTIVE:
                return subscription.current_period_end is not None and subscription.current_period_end <= now
            return False

        return self._select(_due)

    def list_due_plan_changes(self, now: datetime) -> Sequence[Subscription]:
        return self._select(
            lambda sub: sub.status == SubscriptionStatus.ACTIVE
            and sub.pending_plan_change is not None
            and sub.pending_plan_change.effective_at <= now
        )

    def list_grace_expired(self, now: datetime) -> Sequence[Subscription]:
        return self._select(
            lambda sub: sub.status == SubscriptionStatus.PAST_DUE
            and sub.grace_period_expires_at is not None
            and sub.grace_period_expires_at <= now
        )

    def list_trials_ending_between(self, start: datetime, end: datetime) -> Sequence[Subscription]:
        return self._select(
            lambda sub: sub.status == SubscriptionStatus.TRIALING
            and not sub.trial_manually_disabled
            and sub.trial_end is not None
            and start < sub.trial_end <= end
        )

    def _select(self, predicate) -> List[Subscription]:
        with self._lock:
            matches = [sub for sub in self._subscriptions.values() if predicate(sub)]
        return sorted(matches, key=lambda sub: sub.tenant_id)

    # Journal ----------------------------------------------------------------

    def claim(
        self,
        event_id: str,
        event_type: str,
        *,
        now: datetime,
        stale_before: datetime,
    ) -> JournalClaim:
        with self._lock:
            existing = self._journal.get(event_id)
            if existing is None:
                record = IdempotencyRecord(
                    event_id=event_id,
                    event_type=event_type,
                    created_at=now,
                    updated_at=now,
                )
                self._journal[event_id] = record
                return JournalClaim(record=record, claimed=True)
            reclaimable = existing.status == JournalStatus.FAILED or (
                existing.status == JournalStatus.PENDING and existing.updated_at < stale_before
            )
            if not reclaimable:
                return JournalClaim(record=existing, claimed=False)
            record = existing.model_copy(
                update={
                    "status": JournalStatus.PENDING,
                    "attempts": existing.attempts + 1,
                    "last_error": None,
                    "updated_at": now,
                }
            )
            self._journal[event_id] = record
            return JournalClaim(record=record, claimed=True)

    def mark_completed(self, event_id: str, *, now: datetime) -> IdempotencyRecord:
        return self._update_journal(
            event_id,
            status=JournalStatus.COMPLETED,
            updated_at=now,
            completed_at=now,
            last_error=None,
        )

    def mark_failed(self, event_id: str, reason: str, *, now: datetime) -> IdempotencyRecord:
        return self._update_journal(event_id, status=JournalStatus.FAILED, updated_at=now, last_error=reason)

    def get_record(self, event_id: str) -> Optional[IdempotencyRecord]:
        with self._lock:
            return self._journal.get(event_id)

    def _update_journal(self, event_id: str, **changes) -> IdempotencyRecord:
        with self._lock:
            existing = self._journal.get(event_id)
            if existing is None:
                raise KeyError(f"Unknown journal event: {event_id}")
            record = existing.model_copy(update=changes)
            self._journal[event_id] = record
            return record

    # Payments ---------------------------------------------------------------

    def record_payment(self, payment: PaymentRecord) -> PaymentRecord:
        with self._lock:
            self._payments.append(payment)
            return payment

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
        wanted = {name: value for name, value in criteria.items() if value is not None}
        if not wanted:
            return None
        with self._lock:
            for payment in reversed(self._payments):
                if status is not None and payment.status != status:
                    continue
                if all(getattr(payment, name) == value for name, value in wanted.items()):
                    return payment
        return None

    def latest_payment(
        self,
        tenant_id: str,
        *,
        payment_type: PaymentType,
        status: PaymentStatus,
    ) -> Optional[PaymentRecord]:
        with self._lock:
            for payment in reversed(self._payments):
                if (
                    payment.tenant_id == tenant_id
                    and payment.payment_type == payment_type
                    and payment.status == status
                ):
                    return payment
        return None

    def attach_dispute(self, payment_id: str, dispute: dict) -> PaymentRecord:
        return self._update_payment(
            payment_id,
            dispute=dict(dispute),
            status=PaymentStatus.DISPUTED,
            updated_at=utcnow(),
        )

    def merge_payment_metadata(self, payment_id: str, metadata: dict) -> PaymentRecord:
        with self._lock:
            current = self._payment_by_id(payment_id)
            return self._update_payment(
                payment_id,
                metadata={**current.metadata, **metadata},
                updated_at=utcnow(),
            )

    def record_refund(
        self,
        refund: PaymentRecord,
        *,
        original_payment_id: str,
        amount_refunded: Decimal,
        status: PaymentStatus,
    ) -> PaymentRecord:
        with self._lock:
            self._update_payment(
                original_payment_id,
                amount_refunded=amount_refunded,
                status=status,
                updated_at=refund.created_at,
            )
            self._payments.append(refund)
            return refund

    def list_payments(self, tenant_id: str, *, limit: int = 50) -> Sequence[PaymentRecord]:
        with self._lock:
            matches = [payment for payment in reversed(self._payments) if payment.tenant_id == tenant_id]
        return matches[:limit]

    def _payment_by_id(self, payment_id: str) -> PaymentRecord:
        for payment in self._payments:
            if payment.payment_id == payment_id:
                return payment
        raise KeyError(f"Unknown payment: {payment_id}")

    def _update_payment(self, payment_id: str, **changes) -> PaymentRecord:
        with self._lock:
            for index, payment in enumerate(self._payments):
                if payment.payment_id == payment_id:
                    updated = payment.model_copy(update=changes)
                    self._payments[index] = updated
                    return updated
        raise KeyError(f"Unknown payment: {payment_id}")


class InMemoryReconciliationQueue:
    """Collects permanent failures for operators in process memory."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._items: List[ReconciliationItem] = []

    def enqueue(self, item: ReconciliationItem) -> None:
        with self._lock:
            self._items.append(item)

    def list_items(self, *, limit: int = 100) -> Sequence[ReconciliationItem]:
        with self._lock:
            return list(self._items[-limit:])


__all__ = ["InMemoryBillingStore", "InMemoryReconciliationQueue"]
