from __future__ import annotations

import pytest

from backend.app.billing import CapabilityScope, PlanKey, SubscriptionStatus, load_billing_config
from backend.app.billing.memory import InMemoryBillingStore, InMemoryReconciliationQueue
from backend.app.services.billing import LocalSandboxPaymentProcessor, build_billing_runtime


@pytest.fixture
def runtime():
    runtime = build_billing_runtime(load_billing_config({"BILLING_STORE": "memory"}))
    yield runtime
    runtime.runner.shutdown()


def test_memory_runtime_wires_in_memory_stores(runtime):
    assert isinstance(runtime.store, InMemoryBillingStore)
    assert isinstance(runtime.reconciliation_queue, InMemoryReconciliationQueue)
    assert runtime.monitor.is_running is True


def test_runtime_components_share_one_store(runtime):
    capability = runtime.authority.issue("operator", list(CapabilityScope))

    runtime.state_machine.create_subscription("t1", PlanKey.STARTER, capability=capability)
    runtime.ledger.purchase("t1", "t1", 200, "USD", "manual-grant", capability=capability)
    result = runtime.state_machine.cancel("t1", capability=capability)

    assert result.subscription.status == SubscriptionStatus.CANCELED
    assert runtime.store.get_subscription("t1").status == SubscriptionStatus.CANCELED
    assert runtime.ledger.get_balance("t1", "t1") == 200


def test_sandbox_refunds_are_idempotent():
    processor = LocalSandboxPaymentProcessor()

    first = processor.refund("ch_1", 330, idempotency_key="refund:sub:1")
    again = processor.refund("ch_1", 330, idempotency_key="refund:sub:1")
    other = processor.refund("ch_1", 330, idempotency_key="refund:sub:2")

    assert first == again
    assert first.startswith("re_")
    assert other != first
