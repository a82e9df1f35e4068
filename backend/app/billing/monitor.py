"""Periodic expiry, grace-period, trial reminder and credit expiry scans."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple

from .capabilities import MONITOR_SCOPES, Capability, CapabilityAuthority
from .effects import TransitionEffects
from .exceptions import BillingError, IllegalTransition, NoOpTransition
from .journal import IdempotencyJournal
from .ledger import CreditLedgerEngine
from .models import MonitorHealth, Subscription, SubscriptionStatus, TransitionCause, TransitionResult
from .state_machine import SubscriptionStateMachine
from .stores import SubscriptionStore

logger = logging.getLogger(__name__)

REMINDER_BUCKETS: Tuple[Tuple[str, timedelta], ...] = (
    ("urgent_1hour", timedelta(hours=1)),
    ("warning_1day", timedelta(days=1)),
    ("notice_3days", timedelta(days=3)),
)

_PASS_KINDS = ("expiry", "reminders", "credits")


@dataclass
class ScanSummary:
    plan_changes_applied: int = 0
    expired: int = 0
    suspended: int = 0
    skipped: int = 0
    failures: int = 0
    tenants: List[str] = field(default_factory=list)


@dataclass
class ReminderSummary:
    sent: int = 0
    skipped: int = 0
    failures: int = 0


@dataclass
class CreditExpirySummary:
    expired: int = 0
    credits_expired: int = 0
    warnings_sent: int = 0
    warnings_failed: int = 0
    skipped: int = 0
    failures: int = 0


def reminder_bucket(remaining: timedelta) -> Optional[str]:
    for name, horizon in REMINDER_BUCKETS:
        if remaining <= horizon:
            return name
    return None


class TrialExpiryMonitor:
    """Moves lapsed trials and periods to past_due, sends trial reminders and expires credits.

    Each pass only acts on subscriptions whose stored state still qualifies,
    so running the same pass twice, or racing a webhook for the same tenant,
    applies each transition once. Failures are counted per pass kind; after
    ``max_consecutive_errors`` failed passes of one kind in a row the monitor
    stops itself and reports it through :meth:`health`.
    """

    def __init__(
        self,
        *,
        subscriptions: SubscriptionStore,
        state_machine: SubscriptionStateMachine,
        effects: TransitionEffects,
        journal: IdempotencyJournal,
        authority: CapabilityAuthority,
        ledger: Optional[CreditLedgerEngine] = None,
        credit_warning_days: int = 7,
        max_consecutive_errors: int = 5,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._subscriptions = subscriptions
        self._state_machine = state_machine
        self._effects = effects
        self._journal = journal
        self._authority = authority
        self._ledger = ledger
        self._credit_warning = timedelta(days=credit_warning_days)
        self._max_errors = max(1, max_consecutive_errors)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._lock = Lock()
        self._running = True
        self._errors: Dict[str, int] = {kind: 0 for kind in _PASS_KINDS}
        self._passes_completed = 0
        self._last_success: Optional[datetime] = None
        self._last_reminder_scan: Optional[datetime] = None
        self._last_credit_scan: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._stopped_reason: Optional[str] = None

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def start(self) -> None:
        with self._lock:
            self._running = True
            self._errors = {kind: 0 for kind in _PASS_KINDS}
            self._stopped_reason = None

    def stop(self, reason: str = "stopped") -> None:
        with self._lock:
            self._running = False
            self._stopped_reason = reason
        logger.info("Billing monitor stopped", extra={"reason": reason})

    def health(self) -> MonitorHealth:
        with self._lock:
            return MonitorHealth(
                running=self._running,
                last_successful_scan_at=self._last_success,
                last_reminder_scan_at=self._last_reminder_scan,
                last_credit_scan_at=self._last_credit_scan,
                consecutive_errors=max(self._errors.values()),
                max_consecutive_errors=self._max_errors,
                last_error=self._last_error,
                passes_completed=self._passes_completed,
                stopped_reason=self._stopped_reason,
            )

    def run_expiry_pass(self, now: Optional[datetime] = None) -> ScanSummary:
        if not self.is_running:
            logger.info("Billing monitor is stopped; skipping expiry pass")
            return ScanSummary()
        current_time = now or self._clock()
        capability = self._authority.issue("billing-monitor", MONITOR_SCOPES)
        try:
            summary = self._expire(current_time, capability)
        except Exception as exc:
            self._record_failure("expiry", exc)
            logger.exception("Billing expiry pass failed")
            raise
        if summary.failures:
            self._record_failure("expiry", RuntimeError(f"{summary.failures} subscriptions could not be processed"))
        else:
            self._record_success("expiry", current_time)
        logger.info(
            "Billing expiry pass completed",
            extra={
                "plan_changes_applied": summary.plan_changes_applied,
                "expired": summary.expired,
                "suspended": summary.suspended,
                "skipped": summary.skipped,
                "failures": summary.failures,
            },
        )
        return summary

    def run_reminder_pass(self, now: Optional[datetime] = None) -> ReminderSummary:
        if not self.is_running:
            return ReminderSummary()
        current_time = now or self._clock()
        try:
            summary = self._remind(current_time)
        except Exception as exc:
            self._record_failure("reminders", exc)
            logger.exception("Trial reminder pass failed")
            raise
        self._record_success("reminders", current_time)
        logger.info(
            "Trial reminder pass completed",
            extra={"sent": summary.sent, "skipped": summary.skipped, "failures": summary.failures},
        )
        return summary

    def run_credit_expiry_pass(self, now: Optional[datetime] = None) -> CreditExpirySummary:
        """Deduct expired allocations and warn about those expiring soon."""

        if self._ledger is None or not self.is_running:
            return CreditExpirySummary()
        current_time = now or self._clock()
        capability = self._authority.issue("billing-monitor", MONITOR_SCOPES)
        try:
            summary = self._expire_credits(current_time, capability)
        except Exception as exc:
            self._record_failure("credits", exc)
            logger.exception("Credit expiry pass failed")
            raise
        if summary.failures:
            self._record_failure("credits", RuntimeError(f"{summary.failures} allocations could not be expired"))
        else:
            self._record_success("credits", current_time)
        logger.info(
            "Credit expiry pass completed",
            extra={
                "expired": summary.expired,
                "credits_expired": summary.credits_expired,
                "warnings_sent": summary.warnings_sent,
                "skipped": summary.skipped,
                "failures": summary.failures,
            },
        )
        return summary

    def expire_trial_now(self, tenant_id: str) -> ScanSummary:
        """End a tenant's trial immediately and run an expiry pass."""

        capability = self._authority.issue("billing-monitor", MONITOR_SCOPES)
        self._state_machine.expire_trial_now(tenant_id, capability=capability)
        return self.run_expiry_pass()

    # Internals --------------------------------------------------------------

    def _expire(self, now: datetime, capability: Capability) -> ScanSummary:
        summary = ScanSummary()

        for subscription in self._subscriptions.list_due_plan_changes(now):
            result = self._attempt(
                summary,
                subscription,
                lambda sub: self._state_machine.apply_scheduled_plan_change(sub.tenant_id, capability=capability),
            )
            if result is not None:
                summary.plan_changes_applied += 1

        for subscription in self._subscriptions.list_due_for_expiry(now):
            cause = (
                TransitionCause.TRIAL_EXPIRED
                if subscription.status == SubscriptionStatus.TRIALING
                else TransitionCause.PERIOD_ENDED
            )
            result = self._attempt(
                summary,
                subscription,
                lambda sub: self._state_machine.transition(
                    sub.tenant_id,
                    SubscriptionStatus.PAST_DUE,
                    cause,
                    capability=capability,
                ),
            )
            if result is not None:
                summary.expired += 1

        for subscription in self._subscriptions.list_grace_expired(now):
            result = self._attempt(
                summary,
                subscription,
                lambda sub: self._state_machine.transition(
                    sub.tenant_id,
                    SubscriptionStatus.SUSPENDED,
                    TransitionCause.GRACE_PERIOD_EXPIRED,
                    capability=capability,
                ),
            )
            if result is not None:
                summary.suspended += 1

        return summary

    def _attempt(
        self,
        summary: ScanSummary,
        subscription: Subscription,
        action: Callable[[Subscription], TransitionResult],
    ) -> Optional[TransitionResult]:
        try:
            result = action(subscription)
        except (NoOpTransition, IllegalTransition) as exc:
            summary.skipped += 1
            logger.info(
                "Subscription no longer eligible",
                extra={"tenant_id": subscription.tenant_id, "reason": exc.message},
            )
            return None
        except BillingError as exc:
            if not exc.retryable:
                raise
            summary.failures += 1
            logger.warning(
                "Subscription scan deferred",
                extra={"tenant_id": subscription.tenant_id, "error": exc.message},
            )
            return None
        self._effects.fulfil(result)
        summary.tenants.append(subscription.tenant_id)
        return result

    def _remind(self, now: datetime) -> ReminderSummary:
        summary = ReminderSummary()
        horizon = REMINDER_BUCKETS[-1][1]
        for subscription in self._subscriptions.list_trials_ending_between(now, now + horizon):
            trial_end = subscription.trial_end
            bucket = reminder_bucket(trial_end - now)
            if bucket is None:
                continue
            journal_id = f"reminder:{subscription.tenant_id}:{bucket}:{trial_end.isoformat()}"
            begin = self._journal.begin(journal_id, "trial_reminder")
            if not begin.is_new:
                summary.skipped += 1
                continue
            hours_remaining = max(0, int((trial_end - now).total_seconds() // 3600))
            delivered = self._effects.notify(
                f"trial_reminder_{bucket}",
                subscription.tenant_id,
                {
                    "tenant_id": subscription.tenant_id,
                    "trial_end": trial_end.isoformat(),
                    "hours_remaining": hours_remaining,
                    "reminder_type": bucket,
                },
            )
            if delivered:
                self._journal.complete(journal_id)
                summary.sent += 1
            else:
                self._journal.fail(journal_id, "notifier unavailable")
                summary.failures += 1
        return summary

    def _expire_credits(self, now: datetime, capability: Capability) -> CreditExpirySummary:
        summary = CreditExpirySummary()

        for allocation in self._ledger.expired_allocations(now):
            try:
                result = self._ledger.expire_allocation(allocation, capability=capability)
            except BillingError as exc:
                if not exc.retryable:
                    raise
                summary.failures += 1
                logger.warning(
                    "Credit expiry deferred",
                    extra={"tenant_id": allocation.tenant_id, "entry_id": allocation.entry_id, "error": exc.message},
                )
                continue
            if not result.created:
                summary.skipped += 1
                continue
            summary.expired += 1
            deducted = -result.entry.amount
            summary.credits_expired += deducted
            if deducted:
                self._effects.notify(
                    "credits_expired",
                    allocation.tenant_id,
                    {
                        "tenant_id": allocation.tenant_id,
                        "entity_id": allocation.entity_id,
                        "credits_expired": deducted,
                        "balance": result.balance,
                    },
                )

        for allocation in self._ledger.allocations_expiring_between(now, now + self._credit_warning):
            journal_id = f"credit-expiry-warning:{allocation.entry_id}"
            begin = self._journal.begin(journal_id, "credit_expiry_warning")
            if not begin.is_new:
                summary.skipped += 1
                continue
            delivered = self._effects.notify(
                "credits_expiring",
                allocation.tenant_id,
                {
                    "tenant_id": allocation.tenant_id,
                    "entity_id": allocation.entity_id,
                    "credits": allocation.amount,
                    "expires_at": allocation.expires_at.isoformat(),
                },
            )
            if delivered:
                self._journal.complete(journal_id)
                summary.warnings_sent += 1
            else:
                self._journal.fail(journal_id, "notifier unavailable")
                summary.warnings_failed += 1
        return summary

    def _record_success(self, kind: str, completed_at: datetime) -> None:
        with self._lock:
            self._errors[kind] = 0
            if kind == "expiry":
                self._passes_completed += 1
                self._last_success = completed_at
            elif kind == "reminders":
                self._last_reminder_scan = completed_at
            else:
                self._last_credit_scan = completed_at
            if not any(self._errors.values()):
                self._last_error = None

    def _record_failure(self, kind: str, error: Exception) -> None:
        with self._lock:
            self._errors[kind] += 1
            self._last_error = f"{type(error).__name__}: {error}"
            exhausted = self._errors[kind] >= self._max_errors
        if exhausted:
            logger.error(
                "Billing monitor stopping after repeated failures",
                extra={"pass": kind, "consecutive_errors": self._max_errors},
            )
            self.stop(reason=f"stopped after {self._max_errors} consecutive errors")


__all__ = [
    "REMINDER_BUCKETS",
    "CreditExpirySummary",
    "ReminderSummary",
    "ScanSummary",
    "TrialExpiryMonitor",
    "reminder_bucket",
]
