"""Append-only credit ledger with derived balances."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Sequence

from .capabilities import Capability, CapabilityAuthority, CapabilityScope
from .exceptions import InsufficientBalance, InvalidAmount, OverRefund
from .models import LedgerEntry, LedgerEntryType
from .stores import LedgerScope, LedgerStore

logger = logging.getLogger(__name__)

_FUNDING_TYPES = (LedgerEntryType.PURCHASE, LedgerEntryType.ALLOCATION)


@dataclass(frozen=True)
class LedgerResult:
    entry: LedgerEntry
    balance: int
    created: bool


@dataclass(frozen=True)
class TransferResult:
    outgoing: LedgerEntry
    incoming: LedgerEntry
    source_balance: int
    target_balance: int
    created: bool


def _validate_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(amount)
    return amount


class CreditLedgerEngine:
    """Records credit movements per (tenant, entity) pair.

    Balances are never stored; they are the signed sum of entries. Each
    operation reads and appends inside the store's per-pair lock so
    concurrent consumers can not overdraw an account.
    """

    def __init__(
        self,
        store: LedgerStore,
        authority: CapabilityAuthority,
        *,
        default_currency: str = "USD",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._authority = authority
        self._default_currency = default_currency
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def purchase(
        self,
        tenant_id: str,
        entity_id: str,
        amount: int,
        currency: Optional[str],
        source_ref: str,
        *,
        capability: Capability,
        event_ref: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> LedgerResult:
        """Credit purchased credits, once per ``source_ref``."""

        return self._fund(
            LedgerEntryType.PURCHASE,
            tenant_id,
            entity_id,
            amount,
            currency,
            source_ref,
            capability=capability,
            event_ref=event_ref,
            metadata=metadata,
        )

    def allocate(
        self,
        tenant_id: str,
        entity_id: str,
        amount: int,
        source_ref: str,
        *,
        capability: Capability,
        currency: Optional[str] = None,
        event_ref: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> LedgerResult:
        """Credit plan-included credits, once per ``source_ref``.

        Allocations with ``expires_at`` are picked up by the monitor's credit
        expiry pass once that time has passed.
        """

        return self._fund(
            LedgerEntryType.ALLOCATION,
            tenant_id,
            entity_id,
            amount,
            currency,
            source_ref,
            capability=capability,
            event_ref=event_ref,
            expires_at=expires_at,
            metadata=metadata,
        )

    def consume(
        self,
        tenant_id: str,
        entity_id: str,
        amount: int,
        operation_ref: str,
        *,
        capability: Capability,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> LedgerResult:
        self._authority.require(capability, CapabilityScope.LEDGER_WRITE)
        amount = _validate_amount(amount)
        if not operation_ref:
            raise ValueError("operation_ref must be provided")

        with self._store.locked(tenant_id, entity_id) as scope:
            existing = scope.find_entry(entry_type=LedgerEntryType.CONSUMPTION, event_ref=operation_ref)
            if existing is not None:
                return LedgerResult(entry=existing, balance=scope.balance(), created=False)
            available = scope.balance()
            if available < amount:
                logger.info(
                    "Credit consumption rejected",
                    extra={
                        "tenant_id": tenant_id,
                        "entity_id": entity_id,
                        "requested": amount,
                        "available": available,
                    },
                )
                raise InsufficientBalance(available=available, requested=amount)
            entry = self._append(
                scope,
                LedgerEntryType.CONSUMPTION,
                tenant_id,
                entity_id,
                -amount,
                self._default_currency,
                source_ref=None,
                event_ref=operation_ref,
                metadata=metadata,
            )
            return LedgerResult(entry=entry, balance=available - amount, created=True)

    def refund(
        self,
        tenant_id: str,
        entity_id: str,
        amount: int,
        source_ref: str,
        reason: str,
        *,
        capability: Capability,
        event_ref: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> LedgerResult:
        """Return credits against an earlier purchase.

        The cumulative refunded amount for ``source_ref`` never exceeds what
        was purchased under it, and the balance never goes negative.
        """

        self._authority.require(capability, CapabilityScope.LEDGER_WRITE)
        amount = _validate_amount(amount)
        if not source_ref:
            raise ValueError("source_ref must be provided")

        with self._store.locked(tenant_id, entity_id) as scope:
            if event_ref:
                existing = scope.find_entry(
                    entry_type=LedgerEntryType.REFUND,
                    source_ref=source_ref,
                    event_ref=event_ref,
                )
                if existing is not None:
                    return LedgerResult(entry=existing, balance=scope.balance(), created=False)

            funded = scope.total(entry_types=_FUNDING_TYPES, source_ref=source_ref)
            already_refunded = -scope.total(entry_types=(LedgerEntryType.REFUND,), source_ref=source_ref)
            refundable = max(0, funded - already_refunded)
            if amount > refundable:
                raise OverRefund(source_ref=source_ref, refundable=refundable, requested=amount)

            available = scope.balance()
            if available < amount:
                raise InsufficientBalance(available=available, requested=amount)

            original = scope.find_entry(entry_type=LedgerEntryType.PURCHASE, source_ref=source_ref) or scope.find_entry(
                entry_type=LedgerEntryType.ALLOCATION, source_ref=source_ref
            )
            currency = original.currency if original is not None else self._default_currency
            entry_metadata = dict(metadata or {})
            entry_metadata["reason"] = reason
            entry = self._append(
                scope,
                LedgerEntryType.REFUND,
                tenant_id,
                entity_id,
                -amount,
                currency,
                source_ref=source_ref,
                event_ref=event_ref,
                metadata=entry_metadata,
            )
            return LedgerResult(entry=entry, balance=available - amount, created=True)

    def transfer(
        self,
        tenant_id: str,
        from_entity_id: str,
        to_entity_id: str,
        amount: int,
        transfer_ref: str,
        *,
        capability: Capability,
        reason: Optional[str] = None,
    ) -> TransferResult:
        """Move credits between two entities of one tenant.

        Both entries are written under both entities' locks, which the store
        takes in a fixed order, so opposite transfers running together can not
        deadlock. Repeating ``transfer_ref`` returns the original entries.
        """

        self._authority.require(capability, CapabilityScope.LEDGER_WRITE)
        amount = _validate_amount(amount)
        if not transfer_ref:
            raise ValueError("transfer_ref must be provided")
        if from_entity_id == to_entity_id:
            raise ValueError("a transfer needs two different entities")

        with self._store.locked_pair(tenant_id, from_entity_id, to_entity_id) as (source, target):
            outgoing = source.find_entry(entry_type=LedgerEntryType.TRANSFER_OUT, source_ref=transfer_ref)
            incoming = target.find_entry(entry_type=LedgerEntryType.TRANSFER_IN, source_ref=transfer_ref)
            if outgoing is not None and incoming is not None:
                return TransferResult(
                    outgoing=outgoing,
                    incoming=incoming,
                    source_balance=source.balance(),
                    target_balance=target.balance(),
                    created=False,
                )

            available = source.balance()
            if available < amount:
                logger.info(
                    "Credit transfer rejected",
                    extra={
                        "tenant_id": tenant_id,
                        "from_entity_id": from_entity_id,
                        "requested": amount,
                        "available": available,
                    },
                )
                raise InsufficientBalance(available=available, requested=amount)

            details = {"reason": reason} if reason else {}
            outgoing = self._append(
                source,
                LedgerEntryType.TRANSFER_OUT,
                tenant_id,
                from_entity_id,
                -amount,
                self._default_currency,
                source_ref=transfer_ref,
                event_ref=None,
                metadata={**details, "to_entity_id": to_entity_id},
            )
            incoming = self._append(
                target,
                LedgerEntryType.TRANSFER_IN,
                tenant_id,
                to_entity_id,
                amount,
                self._default_currency,
                source_ref=transfer_ref,
                event_ref=None,
                metadata={**details, "from_entity_id": from_entity_id},
            )
            return TransferResult(
                outgoing=outgoing,
                incoming=incoming,
                source_balance=available - amount,
                target_balance=target.balance(),
                created=True,
            )

    def expire_allocation(self, allocation: LedgerEntry, *, capability: Capability) -> LedgerResult:
        """Deduct what is left of an expired allocation.

        What is left is the allocated amount less refunds against it, capped
        at the current balance because consumption is not attributed to a
        source. Exactly one expiry entry is written per allocation, with a zero
        amount when nothing remains.
        """

        self._authority.require(capability, CapabilityScope.LEDGER_EXPIRE)
        if allocation.entry_type != LedgerEntryType.ALLOCATION or not allocation.source_ref:
            raise ValueError("only allocations with a source_ref can expire")

        with self._store.locked(allocation.tenant_id, allocation.entity_id) as scope:
            existing = scope.find_entry(entry_type=LedgerEntryType.EXPIRY, source_ref=allocation.source_ref)
            if existing is not None:
                return LedgerResult(entry=existing, balance=scope.balance(), created=False)

            remaining = scope.total(
                entry_types=(LedgerEntryType.ALLOCATION, LedgerEntryType.REFUND),
                source_ref=allocation.source_ref,
            )
            available = scope.balance()
            deducted = max(0, min(remaining, available))
            entry = self._append(
                scope,
                LedgerEntryType.EXPIRY,
                allocation.tenant_id,
                allocation.entity_id,
                -deducted,
                allocation.currency,
                source_ref=allocation.source_ref,
                event_ref=allocation.entry_id,
                metadata={
                    "allocated": allocation.amount,
                    "expires_at": allocation.expires_at.isoformat() if allocation.expires_at else None,
                },
            )
            return LedgerResult(entry=entry, balance=available - deducted, created=True)

    def expired_allocations(self, now: datetime) -> Sequence[LedgerEntry]:
        return self._store.list_expired_allocations(now)

    def allocations_expiring_between(self, start: datetime, end: datetime) -> Sequence[LedgerEntry]:
        return self._store.list_allocations_expiring_between(start, end)

    def get_balance(self, tenant_id: str, entity_id: str) -> int:
        return self._store.get_balance(tenant_id, entity_id)

    def history(self, tenant_id: str, entity_id: str) -> Sequence[LedgerEntry]:
        return self._store.list_entries(tenant_id, entity_id)

    def _fund(
        self,
        entry_type: LedgerEntryType,
        tenant_id: str,
        entity_id: str,
        amount: int,
        currency: Optional[str],
        source_ref: str,
        *,
        capability: Capability,
        event_ref: Optional[str],
        metadata: Optional[Mapping[str, Any]],
        expires_at: Optional[datetime] = None,
    ) -> LedgerResult:
        self._authority.require(capability, CapabilityScope.LEDGER_WRITE)
        amount = _validate_amount(amount)
        if not source_ref:
            raise ValueError("source_ref must be provided")

        with self._store.locked(tenant_id, entity_id) as scope:
            existing = scope.find_entry(entry_type=entry_type, source_ref=source_ref)
            if existing is not None:
                logger.info(
                    "Ledger write already applied",
                    extra={"tenant_id": tenant_id, "entry_type": entry_type.value, "source_ref": source_ref},
                )
                return LedgerResult(entry=existing, balance=scope.balance(), created=False)
            entry = self._append(
                scope,
                entry_type,
                tenant_id,
                entity_id,
                amount,
                currency or self._default_currency,
                source_ref=source_ref,
                event_ref=event_ref,
                metadata=metadata,
                expires_at=expires_at,
            )
            return LedgerResult(entry=entry, balance=scope.balance(), created=True)

    def _append(
        self,
        scope: LedgerScope,
        entry_type: LedgerEntryType,
        tenant_id: str,
        entity_id: str,
        signed_amount: int,
        currency: str,
        *,
        source_ref: Optional[str],
        event_ref: Optional[str],
        metadata: Optional[Mapping[str, Any]],
        expires_at: Optional[datetime] = None,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            entry_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            entity_id=entity_id,
            entry_type=entry_type,
            amount=signed_amount,
            currency=currency,
            source_ref=source_ref,
            event_ref=event_ref,
            expires_at=expires_at,
            metadata=dict(metadata or {}),
            created_at=self._clock(),
        )
        stored = scope.append(entry)
        logger.info(
            "Ledger entry appended",
            extra={
                "tenant_id": tenant_id,
                "entity_id": entity_id,
                "entry_type": entry_type.value,
                "amount": signed_amount,
                "source_ref": source_ref,
            },
        )
        return stored


__all__ = ["CreditLedgerEngine", "LedgerResult", "TransferResult"]
