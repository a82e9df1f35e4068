"""Verified, idempotent dispatch of payment processor webhooks."""
from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .capabilities import WEBHOOK_SCOPES, Capability, CapabilityAuthority
from .catalog import cycle_for_price, get_plan_definition, plan_for_price
from .collaborators import SignatureVerifier
from .effects import TransitionEffects
from .exceptions import BillingError, MalformedEvent, MissingCorrelation, NoOpTransition
from .journal import IdempotencyJournal
from .ledger import CreditLedgerEngine
from .models import (
    BillingCycle,
    EventCategory,
    PaymentRecord,
    PaymentStatus,
    PaymentType,
    PlanKey,
    ProcessingOutcome,
    ProcessingResult,
    ReconciliationItem,
    Subscription,
    SubscriptionStatus,
    TransitionCause,
    WebhookEvent,
)
from .state_machine import SubscriptionStateMachine
from .stores import PaymentStore, ReconciliationQueue, SubscriptionStore

logger = logging.getLogger(__name__)

EVENT_CATEGORIES: Dict[str, EventCategory] = {
    "checkout.session.completed": EventCategory.CHECKOUT_COMPLETED,
    "checkout.completed": EventCategory.CHECKOUT_COMPLETED,
    "invoice.paid": EventCategory.INVOICE_PAID,
    "invoice.payment_succeeded": EventCategory.INVOICE_PAID,
    "invoice.payment_paid": EventCategory.INVOICE_PAID,
    "payment.succeeded": EventCategory.INVOICE_PAID,
    "invoice.payment_failed": EventCategory.INVOICE_PAYMENT_FAILED,
    "payment.failed": EventCategory.INVOICE_PAYMENT_FAILED,
    "customer.subscription.created": EventCategory.SUBSCRIPTION_CREATED,
    "subscription.created": EventCategory.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventCategory.SUBSCRIPTION_UPDATED,
    "subscription.updated": EventCategory.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventCategory.SUBSCRIPTION_DELETED,
    "subscription.deleted": EventCategory.SUBSCRIPTION_DELETED,
    "charge.dispute.created": EventCategory.DISPUTE_CREATED,
    "charge.disputed": EventCategory.DISPUTE_CREATED,
    "charge.refunded": EventCategory.REFUND_CREATED,
    "refund.created": EventCategory.REFUND_CREATED,
    "charge.succeeded": EventCategory.CHARGE_SUCCEEDED,
}

_PROCESSOR_STATUSES: Dict[str, SubscriptionStatus] = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}

_CENT = Decimal("0.01")


def classify_event(event_type: str) -> Optional[EventCategory]:
    return EVENT_CATEGORIES.get(event_type)


class WebhookDispatcher:
    """Turns processor notifications into ledger and subscription changes.

    The journal entry for an event is marked completed only after every side
    effect for it has been applied. Handlers tolerate partial replays: each
    write is keyed on a processor reference so re-running a failed attempt
    does not duplicate anything.
    """

    def __init__(
        self,
        *,
        verifier: SignatureVerifier,
        journal: IdempotencyJournal,
        ledger: CreditLedgerEngine,
        state_machine: SubscriptionStateMachine,
        effects: TransitionEffects,
        subscriptions: SubscriptionStore,
        payments: PaymentStore,
        reconciliation_queue: ReconciliationQueue,
        authority: CapabilityAuthority,
        default_currency: str = "USD",
        credits_per_currency_unit: int = 1000,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._verifier = verifier
        self._journal = journal
        self._ledger = ledger
        self._state_machine = state_machine
        self._effects = effects
        self._subscriptions = subscriptions
        self._payments = payments
        self._queue = reconciliation_queue
        self._authority = authority
        self._currency = default_currency
        self._credits_per_unit = credits_per_currency_unit
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._handlers: Dict[EventCategory, Callable[[WebhookEvent, Capability], List[str]]] = {
            EventCategory.CHECKOUT_COMPLETED: self._handle_checkout_completed,
            EventCategory.INVOICE_PAID: self._handle_invoice_paid,
            EventCategory.INVOICE_PAYMENT_FAILED: self._handle_invoice_payment_failed,
            EventCategory.SUBSCRIPTION_CREATED: self._handle_subscription_changed,
            EventCategory.SUBSCRIPTION_UPDATED: self._handle_subscription_changed,
            EventCategory.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            EventCategory.DISPUTE_CREATED: self._handle_dispute_created,
            EventCategory.REFUND_CREATED: self._handle_refund,
            EventCategory.CHARGE_SUCCEEDED: self._handle_charge_succeeded,
        }

    def handle(self, raw_payload: Union[bytes, str], signature_header: Optional[str]) -> ProcessingResult:
        """Verify, journal and route one webhook delivery.

        :class:`InvalidSignature` propagates before anything is written.
        Retryable failures are reported with ``retryable=True`` so the sender
        redelivers; permanent ones are acknowledged and queued for operators.
        """

        self._verifier.verify(raw_payload, signature_header or "")

        try:
            event = self.parse_event(raw_payload)
        except MalformedEvent as exc:
            logger.warning("Malformed webhook event", extra={"event_id": exc.event_id, "error": exc.message})
            self._surface(exc.message, event_id=exc.event_id)
            return ProcessingResult(
                event_id=exc.event_id,
                outcome=ProcessingOutcome.PERMANENT_FAILURE,
                detail=exc.message,
            )

        begin = self._journal.begin(event.event_id, event.event_type)
        if begin.already_completed:
            logger.info("Duplicate webhook ignored", extra={"event_id": event.event_id})
            return self._result(event, ProcessingOutcome.DUPLICATE)
        if not begin.is_new:
            logger.info("Webhook already in progress", extra={"event_id": event.event_id})
            return self._result(event, ProcessingOutcome.IN_PROGRESS, retryable=True)

        if event.category is None:
            logger.info(
                "Unhandled webhook type acknowledged",
                extra={"event_id": event.event_id, "event_type": event.event_type},
            )
            self._journal.complete(event.event_id)
            return self._result(event, ProcessingOutcome.IGNORED, detail="unhandled event type")

        capability = self._authority.issue(f"webhook:{event.event_id}", WEBHOOK_SCOPES)
        try:
            effects = self._handlers[event.category](event, capability)
        except BillingError as exc:
            self._journal.fail(event.event_id, exc.message)
            if exc.retryable:
                logger.warning(
                    "Webhook processing failed, awaiting redelivery",
                    extra={"event_id": event.event_id, "event_type": event.event_type, "error": exc.message},
                )
                return self._result(event, ProcessingOutcome.FAILED, retryable=True, detail=exc.message)
            logger.error(
                "Webhook could not be applied",
                extra={"event_id": event.event_id, "event_type": event.event_type, "error": exc.message},
            )
            self._surface(exc.message, event=event)
            return self._result(event, ProcessingOutcome.PERMANENT_FAILURE, detail=exc.message)
        except Exception as exc:
            logger.exception("Unexpected webhook failure", extra={"event_id": event.event_id})
            self._journal.fail(event.event_id, str(exc) or exc.__class__.__name__)
            raise

        self._journal.complete(event.event_id)
        logger.info(
            "Webhook processed",
            extra={"event_id": event.event_id, "event_type": event.event_type, "effects": effects},
        )
        return self._result(event, ProcessingOutcome.PROCESSED, effects=effects)

    def parse_event(self, raw_payload: Union[bytes, str]) -> WebhookEvent:
        try:
            data = json.loads(raw_payload)
        except (TypeError, ValueError) as exc:
            raise MalformedEvent(f"Webhook body is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise MalformedEvent("Webhook body must be a JSON object")

        event_id = data.get("id")
        event_type = data.get("type")
        if not isinstance(event_id, str) or not event_id:
            raise MalformedEvent("Webhook event has no id")
        if not isinstance(event_type, str) or not event_type:
            raise MalformedEvent("Webhook event has no type", event_id=event_id)
        body = data.get("data")
        payload = body.get("object") if isinstance(body, dict) else None
        if not isinstance(payload, dict):
            raise MalformedEvent("Webhook event has no data object", event_id=event_id)

        return WebhookEvent(
            event_id=event_id,
            event_type=event_type,
            category=classify_event(event_type),
            payload=payload,
            created=_parse_timestamp(data.get("created")),
            livemode=bool(data.get("livemode", False)),
            received_at=self._clock(),
        )

    # Handlers -------------------------------------------------------------

    def _handle_checkout_completed(self, event: WebhookEvent, capability: Capability) -> List[str]:
        session = event.payload
        metadata = _metadata(session)
        tenant_id = _tenant_id(metadata)
        if not tenant_id:
            raise MissingCorrelation("Checkout session carries no tenant id", field="tenantId")
        session_id = str(session.get("id") or event.event_id)
        entity_id = str(metadata.get("entityId") or tenant_id)

        credits = self._credit_amount(metadata, event.event_id)
        if credits:
            return self._purchase_credits(event, session, tenant_id, entity_id, session_id, credits, capability)
        if session.get("mode") == "subscription" or metadata.get("planId"):
            return self._activate_from_checkout(event, session, metadata, tenant_id, entity_id, session_id, capability)
        return ["ignored:no_actionable_checkout"]

    def _purchase_credits(
        self,
        event: WebhookEvent,
        session: Mapping[str, Any],
        tenant_id: str,
        entity_id: str,
        session_id: str,
        credits: int,
        capability: Capability,
    ) -> List[str]:
        effects: List[str] = []
        currency = str(session.get("currency") or self._currency).upper()
        payment_ref = _ref(session.get("payment_intent")) or session_id
        credit_link = {"credit_amount": credits, "ledger_source_ref": session_id, "entity_id": entity_id}
        existing = self._existing_payment(payment_ref=payment_ref)
        if existing is not None:
            # The charge can arrive first and record the payment without its credit linkage.
            if not existing.metadata.get("ledger_source_ref"):
                self._payments.merge_payment_metadata(existing.payment_id, credit_link)
                effects.append("payment_linked")
        else:
            subscription = self._subscriptions.get_subscription(tenant_id)
            self._payments.record_payment(
                PaymentRecord(
                    payment_id=str(uuid.uuid4()),
                    tenant_id=tenant_id,
                    subscription_id=subscription.subscription_id if subscription else None,
                    amount=_minor_to_decimal(session.get("amount_total")),
                    currency=currency,
                    status=PaymentStatus.SUCCEEDED,
                    payment_type=PaymentType.CREDIT_PURCHASE,
                    external_payment_ref=payment_ref,
                    description=f"Purchase of {credits} credits",
                    metadata={**credit_link, "event_id": event.event_id},
                )
            )
            effects.append("payment_recorded")
        result = self._ledger.purchase(
            tenant_id,
            entity_id,
            credits,
            currency,
            session_id,
            capability=capability,
            event_ref=event.event_id,
            metadata={"checkout_session": session_id},
        )
        effects.append("credits_purchased" if result.created else "credits_already_purchased")
        return effects

    def _activate_from_checkout(
        self,
        event: WebhookEvent,
        session: Mapping[str, Any],
        metadata: Mapping[str, Any],
        tenant_id: str,
        entity_id: str,
        session_id: str,
        capability: Capability,
    ) -> List[str]:
        plan_key = _plan_key(metadata.get("planId"))
        if plan_key is None:
            raise MissingCorrelation("Subscription checkout carries no known plan id", field="planId")
        cycle = _billing_cycle(metadata.get("billingCycle")) or BillingCycle.MONTHLY
        subscription_ref = _ref(session.get("subscription"))
        customer_ref = _ref(session.get("customer"))

        effects: List[str] = []
        if self._subscriptions.get_subscription(tenant_id) is None:
            self._state_machine.create_subscription(
                tenant_id,
                plan_key,
                capability=capability,
                billing_cycle=cycle,
                external_subscription_ref=subscription_ref,
                external_customer_ref=customer_ref,
            )
            effects.append("subscription_created")
        else:
            result = self._state_machine.renew_period(
                tenant_id,
                None,
                None,
                capability=capability,
                cause=TransitionCause.CHECKOUT_COMPLETED,
                plan_key=plan_key,
                billing_cycle=cycle,
                external_subscription_ref=subscription_ref,
                external_customer_ref=customer_ref,
            )
            effects.append(f"subscription_{result.subscription.status.value}")
            effects.extend(self._effects.fulfil(result, event_id=event.event_id))

        definition = get_plan_definition(plan_key)
        # Trial credits are allocated when the state machine opens the trial.
        if definition.included_credits and not definition.is_trial:
            allocation = self._ledger.allocate(
                tenant_id,
                entity_id,
                definition.included_credits,
                session_id,
                capability=capability,
                event_ref=event.event_id,
                metadata={"plan_key": plan_key.value},
            )
            effects.append("credits_allocated" if allocation.created else "credits_already_allocated")
        return effects

    def _handle_invoice_paid(self, event: WebhookEvent, capability: Capability) -> List[str]:
        invoice = event.payload
        subscription = self._resolve_subscription(
            _metadata(invoice),
            subscription_ref=_ref(invoice.get("subscription")),
            customer_ref=_ref(invoice.get("customer")),
        )
        invoice_ref = _ref(invoice.get("id"))
        payment_ref = _ref(invoice.get("payment_intent"))
        charge_ref = _ref(invoice.get("charge"))

        effects: List[str] = []
        if self._existing_payment(invoice_ref=invoice_ref, payment_ref=payment_ref, charge_ref=charge_ref) is None:
            self._payments.record_payment(
                PaymentRecord(
                    payment_id=str(uuid.uuid4()),
                    tenant_id=subscription.tenant_id,
                    subscription_id=subscription.subscription_id,
                    amount=_minor_to_decimal(invoice.get("amount_paid", invoice.get("amount_due"))),
                    currency=str(invoice.get("currency") or self._currency).upper(),
                    status=PaymentStatus.SUCCEEDED,
                    payment_type=PaymentType.SUBSCRIPTION,
                    external_payment_ref=payment_ref,
                    external_invoice_ref=invoice_ref,
                    external_charge_ref=charge_ref,
                    description="Subscription payment",
                    metadata={"event_id": event.event_id},
                )
            )
            effects.append("payment_recorded")

        line = _first_line(invoice)
        period = line.get("period") if isinstance(line.get("period"), dict) else {}
        period_start = _parse_timestamp(period.get("start") or invoice.get("period_start"))
        period_end = _parse_timestamp(period.get("end") or invoice.get("period_end"))
        price_ref = _price_ref(line)
        plan = plan_for_price(price_ref)

        result = self._state_machine.renew_period(
            subscription.tenant_id,
            period_start,
            period_end,
            capability=capability,
            cause=TransitionCause.PAYMENT_SUCCEEDED,
            plan_key=plan.key if plan else None,
            billing_cycle=cycle_for_price(price_ref),
            external_subscription_ref=_ref(invoice.get("subscription")),
            external_customer_ref=_ref(invoice.get("customer")),
        )
        effects.append(f"subscription_{result.subscription.status.value}")
        effects.extend(self._effects.fulfil(result, event_id=event.event_id))
        return effects

    def _handle_invoice_payment_failed(self, event: WebhookEvent, capability: Capability) -> List[str]:
        invoice = event.payload
        subscription = self._resolve_subscription(
            _metadata(invoice),
            subscription_ref=_ref(invoice.get("subscription")),
            customer_ref=_ref(invoice.get("customer")),
        )
        invoice_ref = _ref(invoice.get("id"))
        attempt = invoice.get("attempt_count")
        amount_due = _minor_to_decimal(invoice.get("amount_due"))

        effects: List[str] = []
        previous = self._payments.find_payment(invoice_ref=invoice_ref, status=PaymentStatus.FAILED) if invoice_ref else None
        if previous is None or previous.metadata.get("attempt_count") != attempt:
            self._payments.record_payment(
                PaymentRecord(
                    payment_id=str(uuid.uuid4()),
                    tenant_id=subscription.tenant_id,
                    subscription_id=subscription.subscription_id,
                    amount=amount_due,
                    currency=str(invoice.get("currency") or self._currency).upper(),
                    status=PaymentStatus.FAILED,
                    payment_type=PaymentType.SUBSCRIPTION,
                    external_payment_ref=_ref(invoice.get("payment_intent")),
                    external_invoice_ref=invoice_ref,
                    description="Subscription payment failed",
                    metadata={"event_id": event.event_id, "attempt_count": attempt},
                )
            )
            effects.append("payment_failure_recorded")

        if subscription.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            effects.append(f"already_{subscription.status.value}")
            return effects
        try:
            result = self._state_machine.transition(
                subscription.tenant_id,
                SubscriptionStatus.PAST_DUE,
                TransitionCause.PAYMENT_FAILED,
                capability=capability,
                context={"invoice_id": invoice_ref, "amount_due": str(amount_due), "attempt_count": attempt},
            )
        except NoOpTransition:
            effects.append("already_past_due")
            return effects
        effects.append("subscription_past_due")
        effects.extend(self._effects.fulfil(result, event_id=event.event_id))
        return effects

    def _handle_subscription_changed(self, event: WebhookEvent, capability: Capability) -> List[str]:
        remote = event.payload
        subscription_ref = _ref(remote.get("id"))
        customer_ref = _ref(remote.get("customer"))
        subscription = self._resolve_subscription(
            _metadata(remote),
            subscription_ref=subscription_ref,
            customer_ref=customer_ref,
        )
        remote_status = str(remote.get("status") or "")
        target = _PROCESSOR_STATUSES.get(remote_status)
        if target is None:
            return [f"ignored:status_{remote_status or 'missing'}"]

        if target == SubscriptionStatus.CANCELED:
            return self._cancel_from_processor(event, subscription, capability)

        if target == SubscriptionStatus.PAST_DUE:
            if subscription.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
                return [f"already_{subscription.status.value}"]
            result = self._state_machine.transition(
                subscription.tenant_id,
                SubscriptionStatus.PAST_DUE,
                TransitionCause.PAYMENT_FAILED,
                capability=capability,
                context={"processor_status": remote_status},
            )
            return ["subscription_past_due"] + self._effects.fulfil(result, event_id=event.event_id)

        if target == SubscriptionStatus.TRIALING:
            if subscription.status != SubscriptionStatus.TRIALING:
                logger.warning(
                    "Processor reports trialing for a converted subscription",
                    extra={"tenant_id": subscription.tenant_id, "status": subscription.status.value},
                )
                return ["ignored:processor_trialing"]
            self._state_machine.link_external_refs(
                subscription.tenant_id,
                capability=capability,
                subscription_ref=subscription_ref,
                customer_ref=customer_ref,
            )
            return ["subscription_linked"]

        item = _first_item(remote)
        price_ref = _price_ref(item)
        plan = plan_for_price(price_ref)
        result = self._state_machine.renew_period(
            subscription.tenant_id,
            _parse_timestamp(remote.get("current_period_start") or item.get("current_period_start")),
            _parse_timestamp(remote.get("current_period_end") or item.get("current_period_end")),
            capability=capability,
            cause=TransitionCause.PROCESSOR_UPDATE,
            plan_key=plan.key if plan else None,
            billing_cycle=cycle_for_price(price_ref),
            external_subscription_ref=subscription_ref,
            external_customer_ref=customer_ref,
        )
        return [f"subscription_{result.subscription.status.value}"] + self._effects.fulfil(
            result, event_id=event.event_id
        )

    def _handle_subscription_deleted(self, event: WebhookEvent, capability: Capability) -> List[str]:
        remote = event.payload
        subscription = self._resolve_subscription(
            _metadata(remote),
            subscription_ref=_ref(remote.get("id")),
            customer_ref=_ref(remote.get("customer")),
        )
        return self._cancel_from_processor(event, subscription, capability)

    def _cancel_from_processor(
        self, event: WebhookEvent, subscription: Subscription, capability: Capability
    ) -> List[str]:
        if subscription.status == SubscriptionStatus.CANCELED:
            return ["already_canceled"]
        try:
            result = self._state_machine.cancel(
                subscription.tenant_id,
                capability=capability,
                cause=TransitionCause.PROCESSOR_CANCELED,
            )
        except NoOpTransition:
            return ["already_canceled"]
        return ["subscription_canceled"] + self._effects.fulfil(result, event_id=event.event_id)

    def _handle_dispute_created(self, event: WebhookEvent, capability: Capability) -> List[str]:
        dispute = event.payload
        payment = self._existing_payment(
            charge_ref=_ref(dispute.get("charge")),
            payment_ref=_ref(dispute.get("payment_intent")),
        )
        if payment is None:
            raise MissingCorrelation("Dispute references an unknown charge", field="charge")
        dispute_id = _ref(dispute.get("id"))
        if payment.dispute and payment.dispute.get("id") == dispute_id:
            return ["dispute_already_recorded"]

        evidence = dispute.get("evidence_details") if isinstance(dispute.get("evidence_details"), dict) else {}
        due_by = _parse_timestamp(evidence.get("due_by"))
        details = {
            "id": dispute_id,
            "amount": str(_minor_to_decimal(dispute.get("amount"))),
            "reason": dispute.get("reason"),
            "status": dispute.get("status"),
            "evidence_due_by": due_by.isoformat() if due_by else None,
            "event_id": event.event_id,
        }
        self._payments.attach_dispute(payment.payment_id, details)
        effects = ["dispute_recorded"]
        if self._effects.notify(
            "payment_disputed",
            payment.tenant_id,
            {"tenant_id": payment.tenant_id, "payment_id": payment.payment_id, **details},
        ):
            effects.append("notified:payment_disputed")
        return effects

    def _handle_refund(self, event: WebhookEvent, capability: Capability) -> List[str]:
        obj = event.payload
        if event.event_type == "charge.refunded":
            charge_ref = _ref(obj.get("id"))
            refunds = obj.get("refunds") if isinstance(obj.get("refunds"), dict) else {}
            latest = (refunds.get("data") or [None])[0]
            refund_ref = _ref(latest.get("id")) if isinstance(latest, dict) else None
            refund_ref = refund_ref or f"{charge_ref}:{obj.get('amount_refunded')}"
            cumulative: Optional[Decimal] = _minor_to_decimal(obj.get("amount_refunded"))
            refund_amount: Optional[Decimal] = None
        else:
            charge_ref = _ref(obj.get("charge"))
            refund_ref = _ref(obj.get("id"))
            cumulative = None
            refund_amount = _minor_to_decimal(obj.get("amount"))
        if not refund_ref:
            raise MalformedEvent("Refund event carries no refund id", event_id=event.event_id)

        payment = self._existing_payment(charge_ref=charge_ref, payment_ref=_ref(obj.get("payment_intent")))
        if payment is None:
            raise MissingCorrelation("Refund references an unknown charge", field="charge")

        effects: List[str] = []
        recorded = self._payments.find_payment(refund_ref=refund_ref)
        if recorded is not None:
            refund_amount = -recorded.amount
        else:
            if refund_amount is None:
                refund_amount = (cumulative or Decimal("0")) - payment.amount_refunded
            if refund_amount <= 0:
                return ["refund_already_recorded"]
            total_refunded = payment.amount_refunded + refund_amount
            self._payments.record_refund(
                PaymentRecord(
                    payment_id=str(uuid.uuid4()),
                    tenant_id=payment.tenant_id,
                    subscription_id=payment.subscription_id,
                    amount=-refund_amount,
                    currency=payment.currency,
                    status=PaymentStatus.SUCCEEDED,
                    payment_type=PaymentType.REFUND,
                    external_refund_ref=refund_ref,
                    description="Refund issued by payment processor",
                    metadata={
                        "original_payment_id": payment.payment_id,
                        "charge_ref": charge_ref,
                        "reason": obj.get("reason"),
                        "event_id": event.event_id,
                    },
                ),
                original_payment_id=payment.payment_id,
                amount_refunded=total_refunded,
                status=PaymentStatus.REFUNDED if total_refunded >= payment.amount else PaymentStatus.PARTIALLY_REFUNDED,
            )
            effects.append("refund_recorded")

        if payment.metadata.get("ledger_source_ref"):
            effects.extend(self._refund_credits(payment, refund_amount, refund_ref, capability))
        return effects

    def _refund_credits(
        self,
        payment: PaymentRecord,
        refund_amount: Decimal,
        refund_ref: str,
        capability: Capability,
    ) -> List[str]:
        credit_amount = int(payment.metadata.get("credit_amount") or 0)
        source_ref = payment.metadata.get("ledger_source_ref")
        if not credit_amount or not source_ref or payment.amount <= 0:
            return []
        credits = int(Decimal(credit_amount) * refund_amount / payment.amount)
        credits = min(credits, credit_amount)
        if credits <= 0:
            return []
        result = self._ledger.refund(
            payment.tenant_id,
            str(payment.metadata.get("entity_id") or payment.tenant_id),
            credits,
            str(source_ref),
            "processor_refund",
            capability=capability,
            event_ref=refund_ref,
        )
        return ["credits_refunded" if result.created else "credits_already_refunded"]

    def _handle_charge_succeeded(self, event: WebhookEvent, capability: Capability) -> List[str]:
        charge = event.payload
        charge_ref = _ref(charge.get("id"))
        payment_ref = _ref(charge.get("payment_intent"))
        invoice_ref = _ref(charge.get("invoice"))
        if self._existing_payment(charge_ref=charge_ref, payment_ref=payment_ref, invoice_ref=invoice_ref):
            return ["payment_already_recorded"]

        metadata = _metadata(charge)
        try:
            subscription = self._resolve_subscription(
                metadata,
                subscription_ref=None,
                customer_ref=_ref(charge.get("customer")),
            )
        except MissingCorrelation:
            logger.info("Charge not linked to a tenant", extra={"event_id": event.event_id, "charge": charge_ref})
            return ["ignored:uncorrelated_charge"]

        is_credit_purchase = "creditAmount" in metadata
        self._payments.record_payment(
            PaymentRecord(
                payment_id=str(uuid.uuid4()),
                tenant_id=subscription.tenant_id,
                subscription_id=subscription.subscription_id,
                amount=_minor_to_decimal(charge.get("amount")),
                currency=str(charge.get("currency") or self._currency).upper(),
                status=PaymentStatus.SUCCEEDED,
                payment_type=PaymentType.CREDIT_PURCHASE if is_credit_purchase else PaymentType.SUBSCRIPTION,
                external_payment_ref=payment_ref,
                external_invoice_ref=invoice_ref,
                external_charge_ref=charge_ref,
                description=charge.get("description") or "Charge succeeded",
                metadata={"event_id": event.event_id},
            )
        )
        return ["payment_recorded"]

    # Helpers --------------------------------------------------------------

    def _resolve_subscription(
        self,
        metadata: Mapping[str, Any],
        *,
        subscription_ref: Optional[str],
        customer_ref: Optional[str],
    ) -> Subscription:
        tenant_id = _tenant_id(metadata)
        if tenant_id:
            subscription = self._subscriptions.get_subscription(tenant_id)
            if subscription is not None:
                return subscription
        if subscription_ref or customer_ref:
            subscription = self._subscriptions.find_by_external_ref(
                subscription_ref=subscription_ref,
                customer_ref=customer_ref,
            )
            if subscription is not None:
                return subscription
        raise MissingCorrelation("Event can not be matched to a tenant subscription", field="tenantId")

    def _existing_payment(self, **refs: Optional[str]) -> Optional[PaymentRecord]:
        for name, value in refs.items():
            if not value:
                continue
            found = self._payments.find_payment(**{name: value})
            if found is not None and found.status != PaymentStatus.FAILED:
                return found
        return None

    def _credit_amount(self, metadata: Mapping[str, Any], event_id: str) -> int:
        try:
            if metadata.get("creditAmount") not in (None, ""):
                credits = int(metadata["creditAmount"])
            elif metadata.get("dollarAmount") not in (None, ""):
                credits = int(Decimal(str(metadata["dollarAmount"])) * self._credits_per_unit)
            else:
                return 0
        except (TypeError, ValueError, InvalidOperation) as exc:
            raise MalformedEvent(f"Invalid credit amount in checkout metadata: {exc}", event_id=event_id) from exc
        if credits < 0:
            raise MalformedEvent("Credit amount must not be negative", event_id=event_id)
        return credits

    def _surface(
        self,
        reason: str,
        *,
        event: Optional[WebhookEvent] = None,
        event_id: Optional[str] = None,
    ) -> None:
        payload: Dict[str, Any] = {}
        tenant_id = None
        if event is not None:
            payload = {
                "object_id": event.payload.get("id"),
                "object": event.payload.get("object"),
                "metadata": event.metadata,
            }
            tenant_id = _tenant_id(event.metadata)
        self._queue.enqueue(
            ReconciliationItem(
                item_id=str(uuid.uuid4()),
                reason=reason,
                event_id=event.event_id if event else event_id,
                event_type=event.event_type if event else None,
                tenant_id=tenant_id,
                payload=payload,
                created_at=self._clock(),
            )
        )

    @staticmethod
    def _result(
        event: WebhookEvent,
        outcome: ProcessingOutcome,
        *,
        retryable: bool = False,
        detail: Optional[str] = None,
        effects: Optional[List[str]] = None,
    ) -> ProcessingResult:
        return ProcessingResult(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=outcome,
            retryable=retryable,
            detail=detail,
            effects=tuple(effects or ()),
        )


def _ref(value: object) -> Optional[str]:
    """Processor references arrive either as ids or as expanded objects."""

    if isinstance(value, dict):
        value = value.get("id")
    if value is None or value == "":
        return None
    return str(value)


def _metadata(obj: Mapping[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {}
    details = obj.get("subscription_details")
    if isinstance(details, dict) and isinstance(details.get("metadata"), dict):
        merged.update(details["metadata"])
    if isinstance(obj.get("metadata"), dict):
        merged.update(obj["metadata"])
    return merged


def _tenant_id(metadata: Mapping[str, Any]) -> Optional[str]:
    value = metadata.get("tenantId") or metadata.get("tenant_id")
    return str(value) if value else None


def _plan_key(value: object) -> Optional[PlanKey]:
    try:
        return PlanKey(str(value).lower()) if value else None
    except ValueError:
        return None


def _billing_cycle(value: object) -> Optional[BillingCycle]:
    try:
        return BillingCycle(str(value).lower()) if value else None
    except ValueError:
        return None


def _first_line(invoice: Mapping[str, Any]) -> Dict[str, Any]:
    lines = invoice.get("lines")
    data = lines.get("data") if isinstance(lines, dict) else None
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return data[0]
    return {}


def _first_item(subscription: Mapping[str, Any]) -> Dict[str, Any]:
    items = subscription.get("items")
    data = items.get("data") if isinstance(items, dict) else None
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return data[0]
    return {}


def _price_ref(line: Mapping[str, Any]) -> Optional[str]:
    for key in ("price", "plan"):
        ref = _ref(line.get(key))
        if ref:
            return ref
    return None


def _minor_to_decimal(value: object) -> Decimal:
    if value is None or value == "":
        return Decimal("0.00")
    try:
        return (Decimal(int(value)) / 100).quantize(_CENT)
    except (TypeError, ValueError) as exc:
        raise MalformedEvent(f"Invalid amount {value!r}") from exc


def _parse_timestamp(value: object) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        if value.isdigit():
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise MalformedEvent(f"Unsupported timestamp value {value!r}") from exc
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise MalformedEvent(f"Unsupported timestamp value {value!r}")


__all__ = ["EVENT_CATEGORIES", "WebhookDispatcher", "classify_event"]
