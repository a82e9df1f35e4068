from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from backend.app.billing import (
    MONITOR_SCOPES,
    CapabilityDenied,
    CapabilityScope,
    DowngradeNotYetEligible,
    ExternalDependencyError,
    IllegalTransition,
    LedgerEntryType,
    NoOpTransition,
    PaymentRecord,
    PaymentStatus,
    PaymentType,
    PlanKey,
    SubscriptionStatus,
    TransitionCause,
)
from backend.app.billing.models import PAST_DUE_RESTRICTIONS, SUSPENDED_RESTRICTIONS, ObligationKind

from conftest import START


def full_access(billing):
    return billing.authority.issue("test", list(CapabilityScope))


def test_trial_subscription_starts_trialing(billing):
    subscription = billing.state_machine.create_subscription("t1", PlanKey.TRIAL, capability=full_access(billing))

    assert subscription.status == SubscriptionStatus.TRIALING
    assert subscription.trial_end == START + timedelta(days=14)
    assert subscription.has_ever_upgraded is False
    assert subscription.usage_limits["storage_gb"] == 5


def test_second_subscription_for_tenant_is_rejected(billing):
    billing.state_machine.create_subscription("t1", PlanKey.TRIAL, capability=full_access(billing))

    with pytest.raises(IllegalTransition):
        billing.state_machine.create_subscription("t1", PlanKey.STARTER, capability=full_access(billing))


def test_payment_converts_trial_to_active(billing):
    billing.state_machine.create_subscription("t1", PlanKey.TRIAL, capability=full_access(billing))

    result = billing.state_machine.renew_period(
        "t1",
        None,
        None,
        capability=full_access(billing),
        plan_key=PlanKey.STARTER,
    )

    subscription = result.subscription
    assert result.previous_status == SubscriptionStatus.TRIALING
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.plan_key == PlanKey.STARTER
    assert subscription.has_ever_upgraded is True
    assert subscription.current_period_end == START + timedelta(days=30)
    assert [obligation.template_key for obligation in result.obligations] == ["subscription_activated"]


def test_payment_failure_moves_active_to_past_due_with_restrictions(billing):
    billing.state_machine.create_subscription("t1", PlanKey.STARTER, capability=full_access(billing))

    result = billing.state_machine.transition(
        "t1",
        SubscriptionStatus.PAST_DUE,
        TransitionCause.PAYMENT_FAILED,
        capability=full_access(billing),
    )

    assert result.subscription.status == SubscriptionStatus.PAST_DUE
    assert result.subscription.grace_period_expires_at == START + timedelta(days=7)
    restrict, notify = result.obligations
    assert restrict.kind == ObligationKind.APPLY_RESTRICTIONS
    assert restrict.restrictions == PAST_DUE_RESTRICTIONS
    assert notify.template_key == "payment_failed"


def test_recovery_lifts_restrictions(billing, clock):
    billing.state_machine.create_subscription("t1", PlanKey.STARTER, capability=full_access(billing))
    billing.state_machine.transition(
        "t1", SubscriptionStatus.PAST_DUE, TransitionCause.PAYMENT_FAILED, capability=full_access(billing)
    )
    clock.advance(days=2)
    new_end = clock.now + timedelta(days=30)

    result = billing.state_machine.renew_period("t1", clock.now, new_end, capability=full_access(billing))

    assert result.subscription.status == SubscriptionStatus.ACTIVE
    assert result.subscription.grace_period_expires_at is None
    assert result.subscription.current_period_end == new_end
    kinds = [obligation.kind for obligation in result.obligations]
    assert kinds == [ObligationKind.LIFT_RESTRICTIONS, ObligationKind.NOTIFY]


def test_renewal_of_active_subscription_extends_period_without_transition(billing, clock):
    billing.state_machine.create_subscription("t1", PlanKey.STARTER, capability=full_access(billing))
    next_start = START + timedelta(days=30)
    next_end = next_start + timedelta(days=30)

    result = billing.state_machine.renew_period("t1", next_start, next_end, capability=full_access(billing))

    assert result.subscription.status == SubscriptionStatus.ACTIVE
    assert result.subscription.current_period_start == next_start
    assert result.subscription.current_period_end == next_end
    assert result.obligations == ()


def test_repeating_current_state_is_a_no_op(billing):
    billing.state_machine.create_subscription("t1", PlanKey.STARTER, capability=full_access(billing))
    billing.state_machine.transition(
        "t1", SubscriptionStatus.PAST_DUE, TransitionCause.PAYMENT_FAILED, capability=full_access(billing)
    )

    with pytest.raises(NoOpTransition):
        billing.state_machine.transition(
            "t1", SubscriptionStatus.PAST_DUE, TransitionCause.PAYMENT_FAILED, capability=full_access(billing)
        )


def test_active_subscription_can_not_be_suspended_directly(billing):
    billing.state_machine.create_subscription("t1", PlanKey.STARTER, capability=full_access(billing))

    with pytest.raises(IllegalTransition):
        billing.state_machine.transition(
            "t1",
            SubscriptionStatus.SUSPENDED,
            TransitionCause.GRACE_PERIOD_EXPIRED,
            capability=full_access(billing),
        )


def test_cancel_calls_processor_and_is_terminal(billing):
    billing.state_machine.create_subscription(
        "t1", PlanKey.STARTER, capability=full_access(billing), external_subscription_ref="sub_2"
    )

    result = billing.state_machine.cancel("t1", capability=full_access(billing), reason="too expensive")

    assert billing.processor.canceled == ["sub_2"]
    assert result.subscription.status == SubscriptionStatus.CANCELED
    assert result.subscription.canceled_at == START
    assert result.obligations[0].restrictions == SUSPENDED_RESTRICTIONS
    assert result.obligations[1].context["reason"] == "too expensive"
    assert any(record.status == PaymentStatus.CANCELED for record in billing.store.list_payments("t1"))

    with pytest.raises(IllegalTransition):
        billing.state_machine.renew_period("t1", None, None, capability=full_access(billing))


def test_processor_failure_leaves_subscription_unchanged(billing):
    billing.state_machine.create_subscription(
        "t1", PlanKey.STARTER, capability=full_access(billing), external_subscription_ref="sub_3"
    )
    billing.processor.fail_with = RuntimeError("stripe unavailable")

    with pytest.raises(ExternalDependencyError):
        billing.state_machine.cancel("t1", capability=full_access(billing))

    assert billing.state_machine.get("t1").status == SubscriptionStatus.ACTIVE
    assert billing.store.list_payments("t1") == []


def test_cancel_requires_cancel_scope(billing):
    billing.state_machine.create_subscription("t1", PlanKey.STARTER, capability=full_access(billing))
    monitor_capability = billing.authority.issue("monitor", MONITOR_SCOPES)

    with pytest.raises(CapabilityDenied):
        billing.state_machine.cancel("t1", capability=monitor_capability)

    assert billing.state_machine.get("t1").status == SubscriptionStatus.ACTIVE


def test_upgrade_applies_immediately_and_updates_processor(billing):
    billing.state_machine.create_subscription(
        "t1", PlanKey.STARTER, capability=full_access(billing), external_subscription_ref="sub_1"
    )

    result = billing.state_machine.change_plan("t1", PlanKey.PROFESSIONAL, capability=full_access(billing))

    assert result.applied is True
    assert result.subscription.plan_key == PlanKey.PROFESSIONAL
    assert result.subscription.usage_limits["users"] == 25
    assert billing.processor.updated == [("sub_1", "price_professional_monthly")]
    assert [record.payment_type for record in result.transition.payment_records] == [PaymentType.PLAN_CHANGE]


def test_plan_change_rejects_trial_and_same_plan(billing):
    billing.state_machine.create_subscription("t1", PlanKey.STARTER, capability=full_access(billing))

    with pytest.raises(IllegalTransition):
        billing.state_machine.change_plan("t1", PlanKey.TRIAL, capability=full_access(billing))
    with pytest.raises(NoOpTransition):
        billing.state_machine.change_plan("t1", PlanKey.STARTER, capability=full_access(billing))


def test_early_downgrade_reports_eligible_date(billing, clock):
    billing.state_machine.create_subscription("t1", PlanKey.PROFESSIONAL, capability=full_access(billing))
    clock.advance(days=5)

    with pytest.raises(DowngradeNotYetEligible) as excinfo:
        billing.state_machine.change_plan("t1", PlanKey.STARTER, capability=full_access(billing))

    assert excinfo.value.days_remaining == 25
    assert excinfo.value.eligible_at == START + timedelta(days=23)
    assert billing.state_machine.get("t1").plan_key == PlanKey.PROFESSIONAL


def test_downgrade_inside_window_is_scheduled_for_period_end(billing, clock):
    billing.state_machine.create_subscription("t1", PlanKey.PROFESSIONAL, capability=full_access(billing))
    clock.advance(days=25)

    result = billing.state_machine.change_plan("t1", PlanKey.STARTER, capability=full_access(billing))

    assert result.applied is False
    assert result.scheduled.effective_at == START + timedelta(days=30)
    assert result.subscription.plan_key == PlanKey.PROFESSIONAL
    assert billing.state_machine.get("t1").pending_plan_change.plan_key == PlanKey.STARTER

    applied = billing.state_machine.apply_scheduled_plan_change("t1", capability=full_access(billing))
    assert applied.subscription.plan_key == PlanKey.STARTER
    assert applied.subscription.pending_plan_change is None


def test_downgrade_on_period_end_date_refunds_unused_time(billing, clock):
    subscription = billing.state_machine.create_subscription(
        "t1", PlanKey.PROFESSIONAL, capability=full_access(billing), external_subscription_ref="sub_9"
    )
    billing.store.record_payment(
        PaymentRecord(
            payment_id="pay_1",
            tenant_id="t1",
            subscription_id=subscription.subscription_id,
            amount=Decimal("99"),
            status=PaymentStatus.SUCCEEDED,
            payment_type=PaymentType.SUBSCRIPTION,
            external_charge_ref="ch_1",
        )
    )
    clock.now = datetime(2024, 3, 31, 6, 0, tzinfo=timezone.utc)

    result = billing.state_machine.change_plan(
        "t1", PlanKey.STARTER, capability=full_access(billing), refund_requested=True
    )

    assert result.applied is True
    period_end = (START + timedelta(days=30)).isoformat()
    assert billing.processor.refunds == [
        ("ch_1", 330, f"refund:{subscription.subscription_id}:{period_end}:plan_change")
    ]
    refund = next(r for r in result.transition.payment_records if r.payment_type == PaymentType.REFUND)
    assert refund.amount == Decimal("-3.30")
    assert refund.external_refund_ref == "re_1"
    assert refund in billing.store.list_payments("t1")


def test_concurrent_transitions_apply_once(billing):
    billing.state_machine.create_subscription("t1", PlanKey.STARTER, capability=full_access(billing))
    capability = full_access(billing)

    def fail_payment(_):
        try:
            billing.state_machine.transition(
                "t1", SubscriptionStatus.PAST_DUE, TransitionCause.PAYMENT_FAILED, capability=capability
            )
        except NoOpTransition:
            return False
        return True

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(fail_payment, range(20)))

    assert outcomes.count(True) == 1
    assert billing.state_machine.get("t1").status == SubscriptionStatus.PAST_DUE


def test_trial_receives_included_credits_expiring_with_the_trial(billing):
    subscription = billing.state_machine.create_subscription("t1", PlanKey.TRIAL, capability=full_access(billing))

    assert billing.ledger.get_balance("t1", "t1") == 5_000
    (allocation,) = billing.ledger.history("t1", "t1")
    assert allocation.entry_type == LedgerEntryType.ALLOCATION
    assert allocation.source_ref == f"trial:{subscription.subscription_id}"
    assert allocation.expires_at == subscription.trial_end


def test_paid_plan_creation_does_not_allocate_trial_credits(billing):
    billing.state_machine.create_subscription("t1", PlanKey.STARTER, capability=full_access(billing))

    assert billing.ledger.history("t1", "t1") == []


def test_trial_creation_without_ledger_scope_writes_nothing(billing):
    capability = billing.authority.issue("test", [CapabilityScope.SUBSCRIPTION_TRANSITION])

    with pytest.raises(CapabilityDenied):
        billing.state_machine.create_subscription("t1", PlanKey.TRIAL, capability=capability)

    assert billing.store.get_subscription("t1") is None
    assert billing.ledger.get_balance("t1", "t1") == 0


@pytest.mark.parametrize(
    "target",
    [
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.SUSPENDED,
    ],
)
def test_canceled_subscription_can_not_move_anywhere(billing, target):
    billing.state_machine.create_subscription(
        "t1", PlanKey.STARTER, capability=full_access(billing), external_subscription_ref="sub_2"
    )
    billing.state_machine.cancel("t1", capability=full_access(billing))

    with pytest.raises(IllegalTransition):
        billing.state_machine.transition("t1", target, TransitionCause.PROCESSOR_UPDATE, capability=full_access(billing))

    assert billing.state_machine.get("t1").status == SubscriptionStatus.CANCELED
