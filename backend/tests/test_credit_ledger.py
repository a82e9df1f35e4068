from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from backend.app.billing import (
    CapabilityDenied,
    CapabilityScope,
    InsufficientBalance,
    InvalidAmount,
    LedgerEntryType,
    OverRefund,
)


@pytest.fixture
def ledger_capability(billing):
    return billing.authority.issue("test", [CapabilityScope.LEDGER_WRITE])


def test_purchase_credits_balance_and_is_idempotent_per_source(billing, ledger_capability):
    first = billing.ledger.purchase("t1", "e1", 500, "usd", "cs_1", capability=ledger_capability)
    second = billing.ledger.purchase("t1", "e1", 500, "usd", "cs_1", capability=ledger_capability)

    assert first.created is True
    assert second.created is False
    assert second.entry.entry_id == first.entry.entry_id
    assert billing.ledger.get_balance("t1", "e1") == 500
    assert first.entry.currency == "USD"


def test_balance_is_sum_of_entries(billing, ledger_capability):
    billing.ledger.purchase("t1", "e1", 500, "USD", "cs_1", capability=ledger_capability)
    billing.ledger.allocate("t1", "e1", 200, "plan:starter", capability=ledger_capability)
    billing.ledger.consume("t1", "e1", 120, "op-1", capability=ledger_capability)

    history = billing.ledger.history("t1", "e1")
    assert [entry.entry_type for entry in history] == [
        LedgerEntryType.PURCHASE,
        LedgerEntryType.ALLOCATION,
        LedgerEntryType.CONSUMPTION,
    ]
    assert sum(entry.amount for entry in history) == billing.ledger.get_balance("t1", "e1") == 580


def test_consume_rejects_overdraw_without_writing(billing, ledger_capability):
    billing.ledger.purchase("t1", "e1", 100, "USD", "cs_1", capability=ledger_capability)

    with pytest.raises(InsufficientBalance) as excinfo:
        billing.ledger.consume("t1", "e1", 101, "op-1", capability=ledger_capability)

    assert excinfo.value.payload["available"] == 100
    assert billing.ledger.get_balance("t1", "e1") == 100
    assert len(billing.ledger.history("t1", "e1")) == 1


def test_consume_is_idempotent_per_operation(billing, ledger_capability):
    billing.ledger.purchase("t1", "e1", 100, "USD", "cs_1", capability=ledger_capability)

    billing.ledger.consume("t1", "e1", 40, "op-1", capability=ledger_capability)
    repeat = billing.ledger.consume("t1", "e1", 40, "op-1", capability=ledger_capability)

    assert repeat.created is False
    assert billing.ledger.get_balance("t1", "e1") == 60


def test_accounts_are_isolated_per_tenant_and_entity(billing, ledger_capability):
    billing.ledger.purchase("t1", "e1", 100, "USD", "cs_1", capability=ledger_capability)

    assert billing.ledger.get_balance("t1", "e2") == 0
    assert billing.ledger.get_balance("t2", "e1") == 0
    with pytest.raises(InsufficientBalance):
        billing.ledger.consume("t2", "e1", 1, "op-1", capability=ledger_capability)


@pytest.mark.parametrize("amount", [0, -5, 1.5, "10", True])
def test_invalid_amounts_are_rejected(billing, ledger_capability, amount):
    with pytest.raises(InvalidAmount):
        billing.ledger.purchase("t1", "e1", amount, "USD", "cs_1", capability=ledger_capability)
    assert billing.ledger.history("t1", "e1") == []


def test_refund_is_capped_by_purchased_amount(billing, ledger_capability):
    billing.ledger.purchase("t1", "e1", 300, "EUR", "cs_1", capability=ledger_capability)
    billing.ledger.refund("t1", "e1", 200, "cs_1", "customer request", capability=ledger_capability, event_ref="re_1")

    with pytest.raises(OverRefund) as excinfo:
        billing.ledger.refund("t1", "e1", 150, "cs_1", "again", capability=ledger_capability, event_ref="re_2")

    assert excinfo.value.payload["refundable"] == 100
    assert billing.ledger.get_balance("t1", "e1") == 100


def test_refund_uses_original_currency_and_dedupes_on_event_ref(billing, ledger_capability):
    billing.ledger.purchase("t1", "e1", 300, "EUR", "cs_1", capability=ledger_capability)

    first = billing.ledger.refund("t1", "e1", 100, "cs_1", "dispute", capability=ledger_capability, event_ref="re_1")
    again = billing.ledger.refund("t1", "e1", 100, "cs_1", "dispute", capability=ledger_capability, event_ref="re_1")

    assert first.entry.currency == "EUR"
    assert first.entry.amount == -100
    assert first.entry.metadata["reason"] == "dispute"
    assert again.created is False
    assert billing.ledger.get_balance("t1", "e1") == 200


def test_refund_cannot_take_balance_negative(billing, ledger_capability):
    billing.ledger.purchase("t1", "e1", 300, "USD", "cs_1", capability=ledger_capability)
    billing.ledger.consume("t1", "e1", 250, "op-1", capability=ledger_capability)

    with pytest.raises(InsufficientBalance):
        billing.ledger.refund("t1", "e1", 100, "cs_1", "late refund", capability=ledger_capability)

    assert billing.ledger.get_balance("t1", "e1") == 50


def test_refund_against_unknown_source_is_rejected(billing, ledger_capability):
    billing.ledger.purchase("t1", "e1", 300, "USD", "cs_1", capability=ledger_capability)

    with pytest.raises(OverRefund):
        billing.ledger.refund("t1", "e1", 10, "cs_unknown", "typo", capability=ledger_capability)


def test_mutations_require_ledger_scope(billing):
    capability = billing.authority.issue("monitor", [CapabilityScope.MONITOR_RUN])

    with pytest.raises(CapabilityDenied):
        billing.ledger.purchase("t1", "e1", 100, "USD", "cs_1", capability=capability)
    with pytest.raises(CapabilityDenied):
        billing.ledger.consume("t1", "e1", 1, "op-1", capability=None)
    assert billing.ledger.get_balance("t1", "e1") == 0


def test_concurrent_consumers_never_overdraw(billing, ledger_capability):
    billing.ledger.purchase("t1", "e1", 1000, "USD", "cs_1", capability=ledger_capability)

    def consume(index: int) -> bool:
        try:
            billing.ledger.consume("t1", "e1", 30, f"op-{index}", capability=ledger_capability)
        except InsufficientBalance:
            return False
        return True

    with ThreadPoolExecutor(max_workers=16) as pool:
        outcomes = list(pool.map(consume, range(100)))

    assert sum(outcomes) == 33
    assert billing.ledger.get_balance("t1", "e1") == 10


def test_transfer_moves_credits_between_entities(billing, ledger_capability):
    billing.ledger.purchase("t1", "e1", 500, "USD", "cs_1", capability=ledger_capability)

    result = billing.ledger.transfer("t1", "e1", "e2", 200, "xfer-1", capability=ledger_capability, reason="rebalance")

    assert result.created is True
    assert (result.source_balance, result.target_balance) == (300, 200)
    assert result.outgoing.entry_type == LedgerEntryType.TRANSFER_OUT
    assert result.outgoing.amount == -200
    assert result.outgoing.metadata["to_entity_id"] == "e2"
    assert result.incoming.entry_type == LedgerEntryType.TRANSFER_IN
    assert result.incoming.metadata["from_entity_id"] == "e1"
    assert billing.ledger.get_balance("t1", "e1") == 300
    assert billing.ledger.get_balance("t1", "e2") == 200


def test_repeated_transfer_ref_is_applied_once(billing, ledger_capability):
    billing.ledger.purchase("t1", "e1", 500, "USD", "cs_1", capability=ledger_capability)

    first = billing.ledger.transfer("t1", "e1", "e2", 200, "xfer-1", capability=ledger_capability)
    again = billing.ledger.transfer("t1", "e1", "e2", 200, "xfer-1", capability=ledger_capability)

    assert again.created is False
    assert again.outgoing.entry_id == first.outgoing.entry_id
    assert billing.ledger.get_balance("t1", "e1") == 300
    assert billing.ledger.get_balance("t1", "e2") == 200


def test_transfer_beyond_balance_writes_nothing(billing, ledger_capability):
    billing.ledger.purchase("t1", "e1", 100, "USD", "cs_1", capability=ledger_capability)

    with pytest.raises(InsufficientBalance):
        billing.ledger.transfer("t1", "e1", "e2", 101, "xfer-1", capability=ledger_capability)

    assert len(billing.ledger.history("t1", "e1")) == 1
    assert billing.ledger.history("t1", "e2") == []


def test_transfer_needs_two_entities_and_a_reference(billing, ledger_capability):
    with pytest.raises(ValueError):
        billing.ledger.transfer("t1", "e1", "e1", 10, "xfer-1", capability=ledger_capability)
    with pytest.raises(ValueError):
        billing.ledger.transfer("t1", "e1", "e2", 10, "", capability=ledger_capability)


def test_opposite_transfers_do_not_deadlock(billing, ledger_capability):
    billing.ledger.purchase("t1", "a", 1000, "USD", "cs_a", capability=ledger_capability)
    billing.ledger.purchase("t1", "b", 1000, "USD", "cs_b", capability=ledger_capability)

    def move(index: int) -> None:
        source, target = ("a", "b") if index % 2 else ("b", "a")
        billing.ledger.transfer("t1", source, target, 5, f"xfer-{index}", capability=ledger_capability)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(move, range(40)))

    assert billing.ledger.get_balance("t1", "a") + billing.ledger.get_balance("t1", "b") == 2000
    assert billing.ledger.get_balance("t1", "a") == 1000


def test_expire_allocation_deducts_what_remains_once(billing, clock):
    capability = billing.authority.issue("test", [CapabilityScope.LEDGER_WRITE, CapabilityScope.LEDGER_EXPIRE])
    allocation = billing.ledger.allocate(
        "t1", "e1", 300, "plan:starter", capability=capability, expires_at=clock.now
    ).entry
    billing.ledger.purchase("t1", "e1", 100, "USD", "cs_1", capability=capability)

    first = billing.ledger.expire_allocation(allocation, capability=capability)
    again = billing.ledger.expire_allocation(allocation, capability=capability)

    assert first.created is True
    assert first.entry.entry_type == LedgerEntryType.EXPIRY
    assert first.entry.amount == -300
    assert first.entry.event_ref == allocation.entry_id
    assert again.created is False
    assert billing.ledger.get_balance("t1", "e1") == 100
    assert billing.ledger.expired_allocations(clock.now) == []


def test_expiring_a_consumed_allocation_writes_a_zero_marker(billing, clock):
    capability = billing.authority.issue("test", [CapabilityScope.LEDGER_WRITE, CapabilityScope.LEDGER_EXPIRE])
    allocation = billing.ledger.allocate(
        "t1", "e1", 300, "plan:starter", capability=capability, expires_at=clock.now
    ).entry
    billing.ledger.consume("t1", "e1", 300, "op-1", capability=capability)

    result = billing.ledger.expire_allocation(allocation, capability=capability)

    assert result.entry.amount == 0
    assert result.balance == 0
    assert billing.ledger.expired_allocations(clock.now) == []


def test_expiry_requires_expire_scope_and_a_sourced_allocation(billing, ledger_capability):
    purchase = billing.ledger.purchase("t1", "e1", 100, "USD", "cs_1", capability=ledger_capability).entry
    allocation = billing.ledger.allocate("t1", "e1", 100, "plan:starter", capability=ledger_capability).entry

    with pytest.raises(CapabilityDenied):
        billing.ledger.expire_allocation(allocation, capability=ledger_capability)
    expire = billing.authority.issue("monitor", [CapabilityScope.LEDGER_EXPIRE])
    with pytest.raises(ValueError):
        billing.ledger.expire_allocation(purchase, capability=expire)
    assert billing.ledger.get_balance("t1", "e1") == 200
