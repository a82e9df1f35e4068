from __future__ import annotations

import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Tuple

import pytest

from backend.app.billing import (
    CapabilityAuthority,
    CreditLedgerEngine,
    ExternalCallRunner,
    IdempotencyJournal,
    RestrictionSet,
    SubscriptionStateMachine,
    TransitionEffects,
    TrialExpiryMonitor,
    WebhookDispatcher,
)
from backend.app.billing.memory import InMemoryBillingStore, InMemoryReconciliationQueue
from backend.app.billing.stripe_gateway import StripeSignatureVerifier

WEBHOOK_SECRET = "whsec_test_secret"
START = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []
        self.fail = False
        self._lock = Lock()

    def send(self, template_key: str, recipient: str, context: Mapping[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("mail relay down")
        with self._lock:
            self.sent.append((template_key, recipient, dict(context)))

    def templates(self) -> List[str]:
        return [template for template, _, _ in self.sent]


class RecordingAccessControl:
    def __init__(self) -> None:
        self.applied: List[Tuple[str, RestrictionSet]] = []
        self.lifted: List[str] = []
        self.fail = False

    def apply_restrictions(self, tenant_id: str, restrictions: RestrictionSet) -> None:
        if self.fail:
            raise RuntimeError("tenant service unavailable")
        self.applied.append((tenant_id, restrictions))

    def lift_restrictions(self, tenant_id: str) -> None:
        if self.fail:
            raise RuntimeError("tenant service unavailable")
        self.lifted.append(tenant_id)


class FakeProcessor:
    def __init__(self) -> None:
        self.canceled: List[str] = []
        self.updated: List[Tuple[str, str]] = []
        self.refunds: List[Tuple[str, int, str]] = []
        self.fail_with: Optional[Exception] = None

    def cancel_subscription(self, subscription_ref: str) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.canceled.append(subscription_ref)

    def update_subscription(self, subscription_ref: str, price_ref: str) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.updated.append((subscription_ref, price_ref))

    def refund(self, charge_ref: str, amount_minor: int, *, idempotency_key: str) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self.refunds.append((charge_ref, amount_minor, idempotency_key))
        return f"re_{len(self.refunds)}"


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def make_event(event_id: str, event_type: str, obj: Dict[str, Any]) -> str:
    return json.dumps(
        {
            "id": event_id,
            "type": event_type,
            "created": int(START.timestamp()),
            "livemode": False,
            "data": {"object": obj},
        }
    )


@dataclass
class BillingHarness:
    clock: FixedClock
    store: InMemoryBillingStore
    queue: InMemoryReconciliationQueue
    authority: CapabilityAuthority
    journal: IdempotencyJournal
    ledger: CreditLedgerEngine
    state_machine: SubscriptionStateMachine
    effects: TransitionEffects
    dispatcher: WebhookDispatcher
    monitor: TrialExpiryMonitor
    notifier: RecordingNotifier
    access: RecordingAccessControl
    processor: FakeProcessor
    runner: ExternalCallRunner
    delivered: List[Any] = field(default_factory=list)

    def deliver(self, event_id: str, event_type: str, obj: Dict[str, Any]):
        body = make_event(event_id, event_type, obj)
        result = self.dispatcher.handle(body.encode("utf-8"), sign_payload(body))
        self.delivered.append(result)
        return result


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def billing(clock: FixedClock):
    store = InMemoryBillingStore()
    queue = InMemoryReconciliationQueue()
    authority = CapabilityAuthority("test-capability-secret", clock=clock)
    runner = ExternalCallRunner(timeout_seconds=2.0)
    notifier = RecordingNotifier()
    access = RecordingAccessControl()
    processor = FakeProcessor()
    journal = IdempotencyJournal(store, stale_after_seconds=300, clock=clock)
    ledger = CreditLedgerEngine(store, authority, clock=clock)
    state_machine = SubscriptionStateMachine(
        store,
        store,
        authority,
        processor=processor,
        runner=runner,
        past_due_grace_days=7,
        downgrade_window_days=7,
        clock=clock,
        ledger=ledger,
    )
    effects = TransitionEffects(
        access_control=access,
        notifier=notifier,
        runner=runner,
        reconciliation_queue=queue,
    )
    dispatcher = WebhookDispatcher(
        verifier=StripeSignatureVerifier(WEBHOOK_SECRET),
        journal=journal,
        ledger=ledger,
        state_machine=state_machine,
        effects=effects,
        subscriptions=store,
        payments=store,
        reconciliation_queue=queue,
        authority=authority,
        clock=clock,
    )
    monitor = TrialExpiryMonitor(
        subscriptions=store,
        state_machine=state_machine,
        effects=effects,
        journal=journal,
        authority=authority,
        ledger=ledger,
        max_consecutive_errors=3,
        clock=clock,
    )
    harness = BillingHarness(
        clock=clock,
        store=store,
        queue=queue,
        authority=authority,
        journal=journal,
        ledger=ledger,
        state_machine=state_machine,
        effects=effects,
        dispatcher=dispatcher,
        monitor=monitor,
        notifier=notifier,
        access=access,
        processor=processor,
        runner=runner,
    )
    yield harness
    runner.shutdown()


@pytest.fixture
def signer():
    return sign_payload


@pytest.fixture
def event_body():
    return make_event
