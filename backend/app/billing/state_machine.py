"""Subscription lifecycle state machine."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .capabilities import Capability, CapabilityAuthority, CapabilityScope
from .catalog import TRIAL_LENGTH_DAYS, get_plan_definition, is_downgrade
from .collaborators import PaymentProcessor
from .exceptions import (
    DowngradeNotYetEligible,
    IllegalTransition,
    NoOpTransition,
    SubscriptionNotFound,
)
from .ledger import CreditLedgerEngine
from .locking import KeyedLock
from .models import (
    PAST_DUE_RESTRICTIONS,
    SUSPENDED_RESTRICTIONS,
    BillingCycle,
    Obligation,
    ObligationKind,
    PaymentRecord,
    PaymentStatus,
    PaymentType,
    PendingPlanChange,
    PlanKey,
    Subscription,
    SubscriptionStatus,
    TransitionCause,
    TransitionResult,
)
from .proration import days_remaining, prorate, total_period_days
from .stores import PaymentStore, SubscriptionStore
from .tasks import ExternalCallRunner

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, Tuple[SubscriptionStatus, ...]] = {
    SubscriptionStatus.TRIALING: (
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED,
    ),
    SubscriptionStatus.ACTIVE: (
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED,
    ),
    SubscriptionStatus.PAST_DUE: (
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.SUSPENDED,
        SubscriptionStatus.CANCELED,
    ),
    SubscriptionStatus.SUSPENDED: (
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELED,
    ),
    SubscriptionStatus.CANCELED: (),
}

_PAST_DUE_TEMPLATES = {
    TransitionCause.TRIAL_EXPIRED: "trial_expired",
    TransitionCause.PERIOD_ENDED: "plan_expired",
    TransitionCause.PAYMENT_FAILED: "payment_failed",
}

_PLAN_CHANGE_CAUSES = (TransitionCause.PLAN_CHANGE, TransitionCause.SCHEDULED_PLAN_CHANGE)


@dataclass(frozen=True)
class PlanChangeResult:
    """Either an applied plan change or a downgrade scheduled for later."""

    subscription: Subscription
    transition: Optional[TransitionResult] = None
    scheduled: Optional[PendingPlanChange] = None

    @property
    def applied(self) -> bool:
        return self.transition is not None


@dataclass
class _Change:
    target: SubscriptionStatus
    cause: TransitionCause
    plan_key: Optional[PlanKey] = None
    billing_cycle: Optional[BillingCycle] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    external_subscription_ref: Optional[str] = None
    external_customer_ref: Optional[str] = None
    refund_requested: bool = False
    context: Dict[str, Any] = field(default_factory=dict)


def _period_length(cycle: BillingCycle) -> timedelta:
    return timedelta(days=total_period_days(cycle))


class SubscriptionStateMachine:
    """Sole writer of subscription status.

    Every mutation runs under a per-tenant lock and is persisted with a
    compare-and-set on the previous status, so two concurrent writers can
    not both apply the same transition. Processor calls that must succeed
    for a transition to be valid run before the write; restrictions and
    notifications are returned as obligations for the caller.
    """

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        payments: PaymentStore,
        authority: CapabilityAuthority,
        *,
        processor: PaymentProcessor,
        runner: ExternalCallRunner,
        past_due_grace_days: int = 7,
        downgrade_window_days: int = 7,
        default_currency: str = "USD",
        clock: Optional[Callable[[], datetime]] = None,
        ledger: Optional[CreditLedgerEngine] = None,
    ) -> None:
        self._subscriptions = subscriptions
        self._payments = payments
        self._authority = authority
        self._processor = processor
        self._runner = runner
        self._grace = timedelta(days=past_due_grace_days)
        self._downgrade_window_days = downgrade_window_days
        self._currency = default_currency
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._ledger = ledger
        self._locks = KeyedLock()

    def _now(self) -> datetime:
        return self._clock()

    def get(self, tenant_id: str) -> Subscription:
        subscription = self._subscriptions.get_subscription(tenant_id)
        if subscription is None:
            raise SubscriptionNotFound(tenant_id)
        return subscription

    def create_subscription(
        self,
        tenant_id: str,
        plan_key: PlanKey,
        *,
        capability: Capability,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        trial_days: Optional[int] = None,
        external_subscription_ref: Optional[str] = None,
        external_customer_ref: Optional[str] = None,
    ) -> Subscription:
        """Open the tenant's subscription.

        Trial subscriptions also receive the trial plan's included credits,
        expiring with the trial, when a ledger is wired in.
        """

        self._authority.require(capability, CapabilityScope.SUBSCRIPTION_TRANSITION)
        definition = get_plan_definition(plan_key)
        allocates_credits = self._ledger is not None and definition.is_trial and definition.included_credits > 0
        if allocates_credits:
            self._authority.require(capability, CapabilityScope.LEDGER_WRITE)
        now = self._now()

        trial_end: Optional[datetime] = None
        period_end: Optional[datetime] = None
        if definition.is_trial:
            status = SubscriptionStatus.TRIALING
            trial_end = now + timedelta(days=trial_days if trial_days is not None else TRIAL_LENGTH_DAYS)
            period_end = trial_end
        else:
            status = SubscriptionStatus.ACTIVE
            if definition.amount_for(billing_cycle) > 0:
                period_end = now + _period_length(billing_cycle)

        subscription = Subscription(
            subscription_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            plan_key=plan_key,
            billing_cycle=billing_cycle,
            status=status,
            current_period_start=now,
            current_period_end=period_end,
            trial_end=trial_end,
            external_subscription_ref=external_subscription_ref,
            external_customer_ref=external_customer_ref,
            has_ever_upgraded=not definition.is_trial and definition.rank > 0,
            usage_limits=dict(definition.limits),
            created_at=now,
            updated_at=now,
        )
        with self._locks.hold(tenant_id):
            stored = self._subscriptions.insert_subscription(subscription)
        if stored is None:
            existing = self.get(tenant_id)
            raise IllegalTransition(
                current=existing.status.value,
                target=status.value,
                reason="tenant already has a subscription",
            )
        logger.info(
            "Subscription created",
            extra={"tenant_id": tenant_id, "plan_key": plan_key.value, "status": status.value},
        )
        if allocates_credits:
            self._ledger.allocate(
                tenant_id,
                tenant_id,
                definition.included_credits,
                f"trial:{stored.subscription_id}",
                capability=capability,
                currency=self._currency,
                expires_at=stored.trial_end,
                metadata={"plan_key": plan_key.value},
            )
        return stored

    def transition(
        self,
        tenant_id: str,
        target: SubscriptionStatus,
        cause: TransitionCause,
        *,
        capability: Capability,
        plan_key: Optional[PlanKey] = None,
        billing_cycle: Optional[BillingCycle] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        external_subscription_ref: Optional[str] = None,
        external_customer_ref: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> TransitionResult:
        """Move a tenant's subscription to ``target``.

        Raises :class:`NoOpTransition` when the state already holds and
        :class:`IllegalTransition` for moves the lifecycle does not allow.
        """

        self._authority.require(capability, self._scope_for(target, cause))
        change = _Change(
            target=target,
            cause=cause,
            plan_key=plan_key,
            billing_cycle=billing_cycle,
            period_start=period_start,
            period_end=period_end,
            external_subscription_ref=external_subscription_ref,
            external_customer_ref=external_customer_ref,
            context=dict(context or {}),
        )
        with self._locks.hold(tenant_id):
            current = self.get(tenant_id)
            return self._commit(current, change, self._now())

    def cancel(
        self,
        tenant_id: str,
        *,
        capability: Capability,
        cause: TransitionCause = TransitionCause.MANUAL_CANCEL,
        refund_requested: bool = False,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        self._authority.require(capability, CapabilityScope.SUBSCRIPTION_CANCEL)
        change = _Change(
            target=SubscriptionStatus.CANCELED,
            cause=cause,
            refund_requested=refund_requested,
            context={"reason": reason} if reason else {},
        )
        with self._locks.hold(tenant_id):
            current = self.get(tenant_id)
            return self._commit(current, change, self._now())

    def change_plan(
        self,
        tenant_id: str,
        plan_key: PlanKey,
        *,
        capability: Capability,
        billing_cycle: Optional[BillingCycle] = None,
        refund_requested: bool = False,
    ) -> PlanChangeResult:
        """Upgrade immediately, or apply the downgrade policy.

        Downgrades are refused while more than the downgrade window remains
        in the current period, scheduled for the period end inside the
        window and applied immediately once the period end date is reached.
        """

        self._authority.require(capability, CapabilityScope.SUBSCRIPTION_PLAN_CHANGE)
        with self._locks.hold(tenant_id):
            current = self.get(tenant_id)
            now = self._now()
            cycle = billing_cycle or current.billing_cycle

            if current.status != SubscriptionStatus.ACTIVE:
                raise IllegalTransition(
                    current=current.status.value,
                    target=SubscriptionStatus.ACTIVE.value,
                    reason="plan changes require an active subscription",
                )
            if get_plan_definition(plan_key).is_trial:
                raise IllegalTransition(
                    current=current.status.value,
                    target=current.status.value,
                    reason="the trial plan can not be selected",
                )
            if plan_key == current.plan_key and cycle == current.billing_cycle:
                raise NoOpTransition(status_value=current.status.value)

            downgrade = is_downgrade(current.plan_key, plan_key)
            period_end = current.current_period_end
            if downgrade and period_end is not None and now < period_end and now.date() != period_end.date():
                remaining = days_remaining(period_end, now)
                if remaining > self._downgrade_window_days:
                    raise DowngradeNotYetEligible(
                        eligible_at=period_end - timedelta(days=self._downgrade_window_days),
                        days_remaining=remaining,
                    )
                pending = PendingPlanChange(
                    plan_key=plan_key,
                    billing_cycle=cycle,
                    effective_at=period_end,
                    requested_at=now,
                )
                updated = current.model_copy(update={"pending_plan_change": pending, "updated_at": now})
                stored = self._save(current, updated, target=current.status)
                logger.info(
                    "Downgrade scheduled",
                    extra={
                        "tenant_id": tenant_id,
                        "plan_key": plan_key.value,
                        "effective_at": period_end.isoformat(),
                    },
                )
                return PlanChangeResult(subscription=stored, scheduled=pending)

            change = _Change(
                target=SubscriptionStatus.ACTIVE,
                cause=TransitionCause.PLAN_CHANGE,
                plan_key=plan_key,
                billing_cycle=cycle,
                refund_requested=refund_requested and downgrade,
            )
            result = self._commit(current, change, now)
            return PlanChangeResult(subscription=result.subscription, transition=result)

    def apply_scheduled_plan_change(self, tenant_id: str, *, capability: Capability) -> TransitionResult:
        self._authority.require(capability, CapabilityScope.SUBSCRIPTION_PLAN_CHANGE)
        with self._locks.hold(tenant_id):
            current = self.get(tenant_id)
            pending = current.pending_plan_change
            if pending is None:
                raise NoOpTransition(status_value=current.status.value)
            change = _Change(
                target=SubscriptionStatus.ACTIVE,
                cause=TransitionCause.SCHEDULED_PLAN_CHANGE,
                plan_key=pending.plan_key,
                billing_cycle=pending.billing_cycle,
            )
            return self._commit(current, change, self._now())

    def renew_period(
        self,
        tenant_id: str,
        period_start: Optional[datetime],
        period_end: Optional[datetime],
        *,
        capability: Capability,
        cause: TransitionCause = TransitionCause.PAYMENT_SUCCEEDED,
        plan_key: Optional[PlanKey] = None,
        billing_cycle: Optional[BillingCycle] = None,
        external_subscription_ref: Optional[str] = None,
        external_customer_ref: Optional[str] = None,
    ) -> TransitionResult:
        """Record a paid period, reactivating the subscription when needed."""

        self._authority.require(capability, CapabilityScope.SUBSCRIPTION_TRANSITION)
        with self._locks.hold(tenant_id):
            current = self.get(tenant_id)
            now = self._now()
            change = _Change(
                target=SubscriptionStatus.ACTIVE,
                cause=cause,
                plan_key=plan_key,
                billing_cycle=billing_cycle,
                period_start=period_start,
                period_end=period_end,
                external_subscription_ref=external_subscription_ref,
                external_customer_ref=external_customer_ref,
            )
            plan_changes = (plan_key is not None and plan_key != current.plan_key) or (
                billing_cycle is not None and billing_cycle != current.billing_cycle
            )
            if current.status != SubscriptionStatus.ACTIVE or plan_changes:
                return self._commit(current, change, now)

            updates: Dict[str, Any] = {"updated_at": now}
            if period_end is not None and (
                current.current_period_end is None or period_end > current.current_period_end
            ):
                updates["current_period_start"] = period_start or current.current_period_end
                updates["current_period_end"] = period_end
            if external_subscription_ref:
                updates["external_subscription_ref"] = external_subscription_ref
            if external_customer_ref:
                updates["external_customer_ref"] = external_customer_ref
            stored = self._save(current, current.model_copy(update=updates), target=current.status)
            return TransitionResult(subscription=stored, previous_status=current.status, cause=cause)

    def link_external_refs(
        self,
        tenant_id: str,
        *,
        capability: Capability,
        subscription_ref: Optional[str] = None,
        customer_ref: Optional[str] = None,
    ) -> Subscription:
        self._authority.require(capability, CapabilityScope.SUBSCRIPTION_TRANSITION)
        with self._locks.hold(tenant_id):
            current = self.get(tenant_id)
            updates: Dict[str, Any] = {"updated_at": self._now()}
            if subscription_ref:
                updates["external_subscription_ref"] = subscription_ref
            if customer_ref:
                updates["external_customer_ref"] = customer_ref
            return self._save(current, current.model_copy(update=updates), target=current.status)

    def expire_trial_now(self, tenant_id: str, *, capability: Capability) -> Subscription:
        """Pull the trial end forward so the next expiry pass picks it up."""

        self._authority.require(capability, CapabilityScope.SUBSCRIPTION_TRANSITION)
        with self._locks.hold(tenant_id):
            current = self.get(tenant_id)
            if current.status != SubscriptionStatus.TRIALING:
                raise IllegalTransition(
                    current=current.status.value,
                    target=SubscriptionStatus.PAST_DUE.value,
                    reason="only trialing subscriptions can be expired early",
                )
            now = self._now()
            updated = current.model_copy(
                update={"trial_end": now, "trial_manually_disabled": False, "updated_at": now}
            )
            return self._save(current, updated, target=current.status)

    # Internals ----------------------------------------------------------------

    @staticmethod
    def _scope_for(target: SubscriptionStatus, cause: TransitionCause) -> CapabilityScope:
        if target == SubscriptionStatus.CANCELED:
            return CapabilityScope.SUBSCRIPTION_CANCEL
        if cause in _PLAN_CHANGE_CAUSES:
            return CapabilityScope.SUBSCRIPTION_PLAN_CHANGE
        return CapabilityScope.SUBSCRIPTION_TRANSITION

    def _validate(self, current: Subscription, change: _Change) -> None:
        target = change.target
        if current.status == target:
            plan_differs = change.plan_key is not None and change.plan_key != current.plan_key
            cycle_differs = change.billing_cycle is not None and change.billing_cycle != current.billing_cycle
            if target != SubscriptionStatus.ACTIVE or not (plan_differs or cycle_differs):
                raise NoOpTransition(status_value=current.status.value)
        if target not in _ALLOWED_TRANSITIONS[current.status]:
            raise IllegalTransition(current=current.status.value, target=target.value)

    def _commit(self, current: Subscription, change: _Change, now: datetime) -> TransitionResult:
        self._validate(current, change)

        if change.target == SubscriptionStatus.PAST_DUE:
            updated, records, obligations = self._to_past_due(current, change, now)
            external: List[Tuple[str, Callable[..., Any], tuple]] = []
        elif change.target == SubscriptionStatus.SUSPENDED:
            updated, records, obligations = self._to_suspended(current, change, now)
            external = []
        elif change.target == SubscriptionStatus.ACTIVE:
            updated, records, obligations, external = self._to_active(current, change, now)
        else:
            updated, records, obligations, external = self._to_canceled(current, change, now)

        for dependency, fn, args in external:
            self._runner.call(dependency, fn, *args)

        refund_record = self._issue_refund(current, change, now)
        if refund_record is not None:
            records.append(refund_record)

        stored = self._save(current, updated, target=change.target, payment_records=records)
        logger.info(
            "Subscription transitioned",
            extra={
                "tenant_id": current.tenant_id,
                "from_status": current.status.value,
                "to_status": stored.status.value,
                "cause": change.cause.value,
                "plan_key": stored.plan_key.value,
            },
        )
        return TransitionResult(
            subscription=stored,
            previous_status=current.status,
            cause=change.cause,
            payment_records=tuple(records),
            obligations=tuple(obligations),
        )

    def _save(
        self,
        current: Subscription,
        updated: Subscription,
        *,
        target: SubscriptionStatus,
        payment_records: Optional[List[PaymentRecord]] = None,
    ) -> Subscription:
        stored = self._subscriptions.update_subscription(
            updated,
            expected_status=current.status,
            payment_records=tuple(payment_records or ()),
        )
        if stored is None:
            logger.warning(
                "Subscription changed concurrently",
                extra={"tenant_id": current.tenant_id, "expected_status": current.status.value},
            )
            raise IllegalTransition(
                current=current.status.value,
                target=target.value,
                reason="subscription changed concurrently",
            )
        return stored

    def _to_past_due(
        self, current: Subscription, change: _Change, now: datetime
    ) -> Tuple[Subscription, List[PaymentRecord], List[Obligation]]:
        updated = current.model_copy(
            update={
                "status": SubscriptionStatus.PAST_DUE,
                "grace_period_expires_at": now + self._grace,
                "updated_at": now,
            }
        )
        records: List[PaymentRecord] = []
        if change.cause in (TransitionCause.TRIAL_EXPIRED, TransitionCause.PERIOD_ENDED):
            description = "Trial expired" if change.cause == TransitionCause.TRIAL_EXPIRED else "Billing period ended"
            records.append(
                self._lifecycle_record(current, now, PaymentStatus.EXPIRED, description, change.cause)
            )
        obligations = [
            Obligation(
                kind=ObligationKind.APPLY_RESTRICTIONS,
                tenant_id=current.tenant_id,
                restrictions=PAST_DUE_RESTRICTIONS,
            ),
            self._notification(
                updated,
                _PAST_DUE_TEMPLATES.get(change.cause, "subscription_past_due"),
                change,
                grace_period_expires_at=updated.grace_period_expires_at.isoformat(),
            ),
        ]
        return updated, records, obligations

    def _to_suspended(
        self, current: Subscription, change: _Change, now: datetime
    ) -> Tuple[Subscription, List[PaymentRecord], List[Obligation]]:
        updated = current.model_copy(update={"status": SubscriptionStatus.SUSPENDED, "updated_at": now})
        records = [
            self._lifecycle_record(current, now, PaymentStatus.EXPIRED, "Suspended after grace period", change.cause)
        ]
        obligations = [
            Obligation(
                kind=ObligationKind.APPLY_RESTRICTIONS,
                tenant_id=current.tenant_id,
                restrictions=SUSPENDED_RESTRICTIONS,
            ),
            self._notification(updated, "subscription_suspended", change),
        ]
        return updated, records, obligations

    def _to_active(self, current: Subscription, change: _Change, now: datetime):
        plan_key = change.plan_key or current.plan_key
        cycle = change.billing_cycle or current.billing_cycle
        definition = get_plan_definition(plan_key)
        plan_changed = plan_key != current.plan_key or cycle != current.billing_cycle

        updates: Dict[str, Any] = {
            "status": SubscriptionStatus.ACTIVE,
            "plan_key": plan_key,
            "billing_cycle": cycle,
            "usage_limits": dict(definition.limits),
            "grace_period_expires_at": None,
            "updated_at": now,
        }
        if change.period_end is not None:
            updates["current_period_start"] = change.period_start or now
            updates["current_period_end"] = change.period_end
        elif current.status == SubscriptionStatus.TRIALING:
            updates["current_period_start"] = now
            updates["current_period_end"] = now + _period_length(cycle)
        if change.external_subscription_ref:
            updates["external_subscription_ref"] = change.external_subscription_ref
        if change.external_customer_ref:
            updates["external_customer_ref"] = change.external_customer_ref
        if plan_changed:
            updates["pending_plan_change"] = None
        if current.status == SubscriptionStatus.TRIALING or (
            plan_changed and definition.rank > get_plan_definition(current.plan_key).rank
        ):
            updates["has_ever_upgraded"] = True
        updated = current.model_copy(update=updates)

        records: List[PaymentRecord] = []
        obligations: List[Obligation] = []
        external: List[Tuple[str, Callable[..., Any], tuple]] = []

        if current.status in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.SUSPENDED):
            obligations.append(Obligation(kind=ObligationKind.LIFT_RESTRICTIONS, tenant_id=current.tenant_id))
            obligations.append(self._notification(updated, "payment_recovered", change))
        elif current.status == SubscriptionStatus.TRIALING:
            obligations.append(self._notification(updated, "subscription_activated", change))
        else:
            records.append(
                PaymentRecord(
                    payment_id=str(uuid.uuid4()),
                    tenant_id=current.tenant_id,
                    subscription_id=current.subscription_id,
                    amount=Decimal("0"),
                    currency=self._currency,
                    status=PaymentStatus.SUCCEEDED,
                    payment_type=PaymentType.PLAN_CHANGE,
                    description=f"Plan changed from {current.plan_key.value} to {plan_key.value}",
                    metadata={
                        "from_plan": current.plan_key.value,
                        "to_plan": plan_key.value,
                        "billing_cycle": cycle.value,
                        "cause": change.cause.value,
                    },
                    created_at=now,
                    updated_at=now,
                )
            )
            obligations.append(
                self._notification(updated, "plan_changed", change, previous_plan=current.plan_key.value)
            )
            price_ref = definition.price_ref_for(cycle)
            if change.cause in _PLAN_CHANGE_CAUSES and current.external_subscription_ref and price_ref:
                external.append(
                    (
                        "processor.update_subscription",
                        self._processor.update_subscription,
                        (current.external_subscription_ref, price_ref),
                    )
                )
        return updated, records, obligations, external

    def _to_canceled(self, current: Subscription, change: _Change, now: datetime):
        updated = current.model_copy(
            update={
                "status": SubscriptionStatus.CANCELED,
                "canceled_at": now,
                "pending_plan_change": None,
                "grace_period_expires_at": None,
                "updated_at": now,
            }
        )
        external: List[Tuple[str, Callable[..., Any], tuple]] = []
        if current.external_subscription_ref and change.cause != TransitionCause.PROCESSOR_CANCELED:
            external.append(
                (
                    "processor.cancel_subscription",
                    self._processor.cancel_subscription,
                    (current.external_subscription_ref,),
                )
            )
        records = [
            self._lifecycle_record(current, now, PaymentStatus.CANCELED, "Subscription canceled", change.cause)
        ]
        obligations = [
            Obligation(
                kind=ObligationKind.APPLY_RESTRICTIONS,
                tenant_id=current.tenant_id,
                restrictions=SUSPENDED_RESTRICTIONS,
            ),
            self._notification(updated, "subscription_canceled", change),
        ]
        return updated, records, obligations, external

    def _issue_refund(self, current: Subscription, change: _Change, now: datetime) -> Optional[PaymentRecord]:
        if not change.refund_requested:
            return None
        if current.current_period_start is None or current.current_period_end is None:
            return None
        amount = prorate(
            current.current_period_start,
            current.current_period_end,
            now,
            get_plan_definition(current.plan_key).amount_for(current.billing_cycle),
            billing_cycle=current.billing_cycle,
        )
        if amount <= 0:
            return None
        charge = self._payments.latest_payment(
            current.tenant_id,
            payment_type=PaymentType.SUBSCRIPTION,
            status=PaymentStatus.SUCCEEDED,
        )
        if charge is None or not charge.external_charge_ref:
            logger.warning(
                "No refundable charge found",
                extra={"tenant_id": current.tenant_id, "amount": str(amount)},
            )
            return None
        idempotency_key = (
            f"refund:{current.subscription_id}:{current.current_period_end.isoformat()}:{change.cause.value}"
        )
        refund_ref = self._runner.call(
            "processor.refund",
            self._processor.refund,
            charge.external_charge_ref,
            int(amount * 100),
            idempotency_key=idempotency_key,
        )
        return PaymentRecord(
            payment_id=str(uuid.uuid4()),
            tenant_id=current.tenant_id,
            subscription_id=current.subscription_id,
            amount=-amount,
            currency=charge.currency,
            status=PaymentStatus.SUCCEEDED,
            payment_type=PaymentType.REFUND,
            external_refund_ref=refund_ref,
            description=f"Prorated refund for {change.cause.value}",
            metadata={"original_payment_id": charge.payment_id, "charge_ref": charge.external_charge_ref},
            created_at=now,
            updated_at=now,
        )

    def _lifecycle_record(
        self,
        subscription: Subscription,
        now: datetime,
        status: PaymentStatus,
        description: str,
        cause: TransitionCause,
    ) -> PaymentRecord:
        return PaymentRecord(
            payment_id=str(uuid.uuid4()),
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.subscription_id,
            amount=Decimal("0"),
            currency=self._currency,
            status=status,
            payment_type=PaymentType.SUBSCRIPTION,
            description=description,
            metadata={"cause": cause.value, "plan_key": subscription.plan_key.value},
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _notification(subscription: Subscription, template_key: str, change: _Change, **extra: Any) -> Obligation:
        context: Dict[str, Any] = {
            "tenant_id": subscription.tenant_id,
            "plan_key": subscription.plan_key.value,
            "status": subscription.status.value,
            "cause": change.cause.value,
        }
        context.update(change.context)
        context.update(extra)
        return Obligation(
            kind=ObligationKind.NOTIFY,
            tenant_id=subscription.tenant_id,
            template_key=template_key,
            context=context,
        )


__all__ = ["PlanChangeResult", "SubscriptionStateMachine"]
