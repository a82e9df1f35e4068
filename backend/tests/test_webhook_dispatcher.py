from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from backend.app.billing import (
    CapabilityScope,
    InvalidSignature,
    PaymentStatus,
    PaymentType,
    PlanKey,
    ProcessingOutcome,
    StoreUnavailable,
    SubscriptionStatus,
)
from backend.app.billing.models import JournalStatus

from conftest import START, make_event, sign_payload


def ts(moment):
    return int(moment.timestamp())


def full_access(billing):
    return billing.authority.issue("test", list(CapabilityScope))


def credit_checkout(session_id="cs_1", *, tenant_id="t1", credits="500", amount_total=1000, payment_intent="pi_1"):
    metadata = {"creditAmount": credits}
    if tenant_id:
        metadata["tenantId"] = tenant_id
    return {
        "id": session_id,
        "object": "checkout.session",
        "mode": "payment",
        "amount_total": amount_total,
        "currency": "usd",
        "payment_intent": payment_intent,
        "metadata": metadata,
    }


def paid_invoice(invoice_id="in_1", *, subscription_ref="sub_100", charge="ch_1", price="price_starter_monthly"):
    return {
        "id": invoice_id,
        "object": "invoice",
        "subscription": subscription_ref,
        "customer": "cus_100",
        "amount_paid": 2900,
        "currency": "usd",
        "charge": charge,
        "payment_intent": f"pi_{invoice_id}",
        "lines": {
            "data": [
                {
                    "period": {"start": ts(START), "end": ts(START + timedelta(days=30))},
                    "price": {"id": price},
                }
            ]
        },
    }


def test_redelivered_credit_purchase_is_applied_once(billing):
    results = [billing.deliver("evt_credit", "checkout.session.completed", credit_checkout()) for _ in range(3)]

    assert results[0].outcome == ProcessingOutcome.PROCESSED
    assert "credits_purchased" in results[0].effects
    assert [result.outcome for result in results[1:]] == [ProcessingOutcome.DUPLICATE] * 2
    assert billing.ledger.get_balance("t1", "t1") == 500
    purchases = [p for p in billing.store.list_payments("t1") if p.payment_type == PaymentType.CREDIT_PURCHASE]
    assert len(purchases) == 1
    assert purchases[0].amount == Decimal("10.00")


def test_same_session_under_new_event_id_does_not_double_credit(billing):
    billing.deliver("evt_a", "checkout.session.completed", credit_checkout())
    second = billing.deliver("evt_b", "checkout.session.completed", credit_checkout())

    assert second.outcome == ProcessingOutcome.PROCESSED
    assert second.effects == ("credits_already_purchased",)
    assert billing.ledger.get_balance("t1", "t1") == 500


def test_invalid_signature_is_rejected_before_journaling(billing):
    body = make_event("evt_forged", "checkout.session.completed", credit_checkout())

    with pytest.raises(InvalidSignature):
        billing.dispatcher.handle(body.encode("utf-8"), sign_payload(body, secret="whsec_wrong"))
    with pytest.raises(InvalidSignature):
        billing.dispatcher.handle(body.encode("utf-8"), None)

    assert billing.journal.get("evt_forged") is None
    assert billing.ledger.get_balance("t1", "t1") == 0


def test_malformed_event_is_acknowledged_and_queued(billing):
    body = '{"id": "evt_bad", "type": "invoice.paid"}'

    result = billing.dispatcher.handle(body.encode("utf-8"), sign_payload(body))

    assert result.outcome == ProcessingOutcome.PERMANENT_FAILURE
    assert result.retryable is False
    items = billing.queue.list_items()
    assert len(items) == 1
    assert items[0].event_id == "evt_bad"


def test_checkout_without_tenant_is_a_permanent_failure(billing):
    result = billing.deliver("evt_orphan", "checkout.session.completed", credit_checkout(tenant_id=None))

    assert result.outcome == ProcessingOutcome.PERMANENT_FAILURE
    assert billing.journal.get("evt_orphan").status == JournalStatus.FAILED
    assert billing.queue.list_items()[0].event_type == "checkout.session.completed"


def test_unknown_event_type_is_ignored_and_journaled(billing):
    first = billing.deliver("evt_misc", "customer.created", {"id": "cus_1"})
    again = billing.deliver("evt_misc", "customer.created", {"id": "cus_1"})

    assert first.outcome == ProcessingOutcome.IGNORED
    assert again.outcome == ProcessingOutcome.DUPLICATE


def test_subscription_checkout_creates_subscription_and_allocates_credits(billing):
    session = {
        "id": "cs_sub",
        "mode": "subscription",
        "subscription": "sub_100",
        "customer": "cus_100",
        "metadata": {"tenantId": "t2", "planId": "starter", "billingCycle": "monthly"},
    }

    result = billing.deliver("evt_sub_checkout", "checkout.session.completed", session)

    assert result.effects == ("subscription_created", "credits_allocated")
    subscription = billing.state_machine.get("t2")
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.plan_key == PlanKey.STARTER
    assert subscription.external_subscription_ref == "sub_100"
    assert billing.ledger.get_balance("t2", "t2") == 10_000


def test_trial_checkout_allocates_trial_credits_once(billing):
    session = {
        "id": "cs_trial",
        "mode": "subscription",
        "subscription": "sub_200",
        "customer": "cus_200",
        "metadata": {"tenantId": "t3", "planId": "trial"},
    }

    result = billing.deliver("evt_trial_checkout", "checkout.session.completed", session)

    assert result.effects == ("subscription_created",)
    assert billing.state_machine.get("t3").status == SubscriptionStatus.TRIALING
    assert billing.ledger.get_balance("t3", "t3") == 5_000
    assert len(billing.ledger.history("t3", "t3")) == 1


def test_invoice_paid_converts_trial(billing):
    billing.state_machine.create_subscription(
        "t1", PlanKey.TRIAL, capability=full_access(billing), external_subscription_ref="sub_100"
    )

    result = billing.deliver("evt_paid", "invoice.paid", paid_invoice())

    assert result.outcome == ProcessingOutcome.PROCESSED
    subscription = billing.state_machine.get("t1")
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.plan_key == PlanKey.STARTER
    assert subscription.current_period_end == START + timedelta(days=30)
    assert "subscription_activated" in billing.notifier.templates()
    payment = billing.store.find_payment(charge_ref="ch_1")
    assert payment.amount == Decimal("29.00")
    assert payment.status == PaymentStatus.SUCCEEDED


def test_payment_failure_moves_subscription_to_past_due_once(billing):
    billing.state_machine.create_subscription(
        "t1", PlanKey.STARTER, capability=full_access(billing), external_subscription_ref="sub_100"
    )
    invoice = {"id": "in_2", "subscription": "sub_100", "amount_due": 2900, "attempt_count": 1}

    first = billing.deliver("evt_fail_1", "invoice.payment_failed", invoice)
    second = billing.deliver("evt_fail_2", "invoice.payment_failed", invoice)

    assert "subscription_past_due" in first.effects
    assert second.effects == ("already_past_due",)
    assert billing.state_machine.get("t1").status == SubscriptionStatus.PAST_DUE
    assert [tenant for tenant, _ in billing.access.applied] == ["t1"]
    assert billing.notifier.templates() == ["payment_failed"]
    failures = [p for p in billing.store.list_payments("t1") if p.status == PaymentStatus.FAILED]
    assert len(failures) == 1


def test_restriction_failure_after_commit_is_queued(billing):
    billing.state_machine.create_subscription(
        "t1", PlanKey.STARTER, capability=full_access(billing), external_subscription_ref="sub_100"
    )
    billing.access.fail = True

    result = billing.deliver("evt_fail", "invoice.payment_failed", {"id": "in_3", "subscription": "sub_100"})

    assert result.outcome == ProcessingOutcome.PROCESSED
    assert "apply_restrictions" not in result.effects
    assert billing.state_machine.get("t1").status == SubscriptionStatus.PAST_DUE
    assert billing.queue.list_items()[0].reason.startswith("apply_restrictions failed")


def test_processor_deletion_cancels_without_calling_processor(billing):
    billing.state_machine.create_subscription(
        "t1", PlanKey.STARTER, capability=full_access(billing), external_subscription_ref="sub_100"
    )

    result = billing.deliver("evt_deleted", "customer.subscription.deleted", {"id": "sub_100", "status": "canceled"})
    again = billing.deliver("evt_deleted_2", "customer.subscription.deleted", {"id": "sub_100"})

    assert "subscription_canceled" in result.effects
    assert again.effects == ("already_canceled",)
    assert billing.state_machine.get("t1").status == SubscriptionStatus.CANCELED
    assert billing.processor.canceled == []


def test_dispute_marks_payment_disputed(billing):
    billing.state_machine.create_subscription(
        "t1", PlanKey.STARTER, capability=full_access(billing), external_subscription_ref="sub_100"
    )
    billing.deliver("evt_paid", "invoice.paid", paid_invoice())
    dispute = {
        "id": "dp_1",
        "charge": "ch_1",
        "amount": 2900,
        "reason": "fraudulent",
        "status": "needs_response",
        "evidence_details": {"due_by": ts(START + timedelta(days=7))},
    }

    result = billing.deliver("evt_dispute", "charge.dispute.created", dispute)

    assert result.effects == ("dispute_recorded", "notified:payment_disputed")
    payment = billing.store.find_payment(charge_ref="ch_1")
    assert payment.status == PaymentStatus.DISPUTED
    assert payment.dispute["reason"] == "fraudulent"


def test_charge_refund_returns_credits_proportionally(billing):
    billing.deliver("evt_credit", "checkout.session.completed", credit_checkout())
    charge = {
        "id": "ch_9",
        "payment_intent": "pi_1",
        "amount_refunded": 500,
        "refunds": {"data": [{"id": "re_1"}]},
    }

    first = billing.deliver("evt_refund", "charge.refunded", charge)
    second = billing.deliver("evt_refund_again", "charge.refunded", charge)

    assert first.effects == ("refund_recorded", "credits_refunded")
    assert second.effects == ("credits_already_refunded",)
    assert billing.ledger.get_balance("t1", "t1") == 250
    original = billing.store.find_payment(payment_ref="pi_1")
    assert original.status == PaymentStatus.PARTIALLY_REFUNDED
    assert original.amount_refunded == Decimal("5.00")


def test_refund_takes_back_credits_when_charge_arrives_before_checkout(billing):
    billing.state_machine.create_subscription("t1", PlanKey.STARTER, capability=full_access(billing))
    charge = {
        "id": "ch_1",
        "payment_intent": "pi_1",
        "amount": 1000,
        "currency": "usd",
        "metadata": {"tenantId": "t1", "creditAmount": "500"},
    }

    succeeded = billing.deliver("evt_charge", "charge.succeeded", charge)
    checkout = billing.deliver("evt_checkout", "checkout.session.completed", credit_checkout())
    refunded = billing.deliver(
        "evt_refund",
        "charge.refunded",
        {**charge, "amount_refunded": 1000, "refunds": {"data": [{"id": "re_1"}]}},
    )

    assert succeeded.effects == ("payment_recorded",)
    assert checkout.effects == ("payment_linked", "credits_purchased")
    assert refunded.effects == ("refund_recorded", "credits_refunded")
    assert billing.ledger.get_balance("t1", "t1") == 0
    original = billing.store.find_payment(charge_ref="ch_1")
    assert original.status == PaymentStatus.REFUNDED
    assert original.metadata["ledger_source_ref"] == "cs_1"


def test_retryable_failure_is_reported_and_redelivery_succeeds(billing, monkeypatch):
    record_payment = billing.store.record_payment
    calls = []

    def flaky_record_payment(payment):
        calls.append(payment)
        if len(calls) == 1:
            raise StoreUnavailable("connection reset")
        return record_payment(payment)

    monkeypatch.setattr(billing.store, "record_payment", flaky_record_payment)

    failed = billing.deliver("evt_flaky", "checkout.session.completed", credit_checkout())
    retried = billing.deliver("evt_flaky", "checkout.session.completed", credit_checkout())

    assert failed.outcome == ProcessingOutcome.FAILED
    assert failed.retryable is True
    assert retried.outcome == ProcessingOutcome.PROCESSED
    assert billing.journal.get("evt_flaky").attempts == 2
    assert billing.ledger.get_balance("t1", "t1") == 500
