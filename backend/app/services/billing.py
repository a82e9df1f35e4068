"""Application wiring for the billing engine."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from threading import Lock
from typing import Any, Dict, Mapping, Optional, Union
from uuid import uuid4

from dotenv import load_dotenv

from ..billing import (
    AccessControl,
    BillingConfig,
    BillingNotifier,
    CapabilityAuthority,
    CreditLedgerEngine,
    ExternalCallRunner,
    IdempotencyJournal,
    PaymentProcessor,
    RestrictionSet,
    SubscriptionStateMachine,
    TransitionEffects,
    TrialExpiryMonitor,
    WebhookDispatcher,
    load_billing_config,
)
from ..billing.config import DEFAULT_CAPABILITY_SECRET
from ..billing.memory import InMemoryBillingStore, InMemoryReconciliationQueue
from ..billing.repository import PostgresBillingRepository, PostgresReconciliationQueue
from ..billing.stripe_gateway import StripePaymentProcessor, StripeSignatureVerifier


logger = logging.getLogger("billing")


class LoggingBillingNotifier(BillingNotifier):
    """Notifier that records billing notifications to the application logger."""

    def send(self, template_key: str, recipient: str, context: Mapping[str, Any]) -> None:
        logger.info("Billing notification %s recipient=%s context=%s", template_key, recipient, dict(context))


class LoggingAccessControl(AccessControl):
    """Access control stand-in that logs restriction changes until the tenant service consumes them."""

    def apply_restrictions(self, tenant_id: str, restrictions: RestrictionSet) -> None:
        logger.warning("Apply billing restrictions tenant=%s flags=%s", tenant_id, restrictions.to_flags())

    def lift_restrictions(self, tenant_id: str) -> None:
        logger.info("Lift billing restrictions tenant=%s", tenant_id)


class LocalSandboxPaymentProcessor(PaymentProcessor):
    """Minimal processor implementation for local development and tests."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._refunds: Dict[str, str] = {}

    def cancel_subscription(self, subscription_ref: str) -> None:
        logger.info("Sandbox cancel subscription %s", subscription_ref)

    def update_subscription(self, subscription_ref: str, price_ref: str) -> None:
        logger.info("Sandbox update subscription %s price=%s", subscription_ref, price_ref)

    def refund(self, charge_ref: str, amount_minor: int, *, idempotency_key: str) -> str:
        with self._lock:
            refund_id = self._refunds.get(idempotency_key)
            if refund_id is None:
                refund_id = f"re_{uuid4().hex}"
                self._refunds[idempotency_key] = refund_id
        logger.info("Sandbox refund %s charge=%s amount=%s", refund_id, charge_ref, amount_minor)
        return refund_id


BillingStore = Union[PostgresBillingRepository, InMemoryBillingStore]
ReconciliationQueueImpl = Union[PostgresReconciliationQueue, InMemoryReconciliationQueue]


@dataclass
class BillingRuntime:
    config: BillingConfig
    store: BillingStore
    reconciliation_queue: ReconciliationQueueImpl
    runner: ExternalCallRunner
    authority: CapabilityAuthority
    journal: IdempotencyJournal
    ledger: CreditLedgerEngine
    state_machine: SubscriptionStateMachine
    effects: TransitionEffects
    monitor: TrialExpiryMonitor


def _build_processor(config: BillingConfig) -> PaymentProcessor:
    if config.stripe_api_key:
        return StripePaymentProcessor(config.stripe_api_key)
    logger.info("STRIPE_API_KEY not set; using the sandbox payment processor")
    return LocalSandboxPaymentProcessor()


def build_billing_runtime(
    config: BillingConfig,
    *,
    store: Optional[BillingStore] = None,
    reconciliation_queue: Optional[ReconciliationQueueImpl] = None,
    processor: Optional[PaymentProcessor] = None,
    notifier: Optional[BillingNotifier] = None,
    access_control: Optional[AccessControl] = None,
) -> BillingRuntime:
    if config.capability_secret == DEFAULT_CAPABILITY_SECRET:
        logger.warning("BILLING_CAPABILITY_SECRET not set; using the development capability secret")
    if store is None:
        store = InMemoryBillingStore() if config.store_backend == "memory" else PostgresBillingRepository()
    if reconciliation_queue is None:
        reconciliation_queue = (
            InMemoryReconciliationQueue() if config.store_backend == "memory" else PostgresReconciliationQueue()
        )

    runner = ExternalCallRunner(timeout_seconds=config.external_timeout_seconds)
    authority = CapabilityAuthority(config.capability_secret)
    journal = IdempotencyJournal(store, stale_after_seconds=config.journal_stale_seconds)
    ledger = CreditLedgerEngine(store, authority, default_currency=config.default_currency)
    state_machine = SubscriptionStateMachine(
        store,
        store,
        authority,
        processor=processor or _build_processor(config),
        runner=runner,
        past_due_grace_days=config.past_due_grace_days,
        downgrade_window_days=config.downgrade_window_days,
        default_currency=config.default_currency,
        ledger=ledger,
    )
    effects = TransitionEffects(
        access_control=access_control or LoggingAccessControl(),
        notifier=notifier or LoggingBillingNotifier(),
        runner=runner,
        reconciliation_queue=reconciliation_queue,
    )
    monitor = TrialExpiryMonitor(
        subscriptions=store,
        state_machine=state_machine,
        effects=effects,
        journal=journal,
        authority=authority,
        ledger=ledger,
        credit_warning_days=config.credit_expiry_warning_days,
        max_consecutive_errors=config.monitor_max_consecutive_errors,
    )
    return BillingRuntime(
        config=config,
        store=store,
        reconciliation_queue=reconciliation_queue,
        runner=runner,
        authority=authority,
        journal=journal,
        ledger=ledger,
        state_machine=state_machine,
        effects=effects,
        monitor=monitor,
    )


@lru_cache(maxsize=1)
def get_billing_runtime() -> BillingRuntime:
    load_dotenv()
    return build_billing_runtime(load_billing_config())


@lru_cache(maxsize=1)
def get_webhook_dispatcher() -> WebhookDispatcher:
    runtime = get_billing_runtime()
    config = runtime.config
    verifier = StripeSignatureVerifier(
        config.require_webhook_secret(),
        tolerance_seconds=config.signature_tolerance_seconds,
    )
    return WebhookDispatcher(
        verifier=verifier,
        journal=runtime.journal,
        ledger=runtime.ledger,
        state_machine=runtime.state_machine,
        effects=runtime.effects,
        subscriptions=runtime.store,
        payments=runtime.store,
        reconciliation_queue=runtime.reconciliation_queue,
        authority=runtime.authority,
        default_currency=config.default_currency,
        credits_per_currency_unit=config.credits_per_currency_unit,
    )


def get_trial_monitor() -> TrialExpiryMonitor:
    return get_billing_runtime().monitor


def reset_billing_runtime() -> None:
    """Drop cached wiring so the next request rebuilds it from the environment."""

    if get_billing_runtime.cache_info().currsize:
        get_billing_runtime().runner.shutdown()
    get_webhook_dispatcher.cache_clear()
    get_billing_runtime.cache_clear()


__all__ = [
    "BillingRuntime",
    "LocalSandboxPaymentProcessor",
    "LoggingAccessControl",
    "LoggingBillingNotifier",
    "build_billing_runtime",
    "get_billing_runtime",
    "get_trial_monitor",
    "get_webhook_dispatcher",
    "reset_billing_runtime",
]
