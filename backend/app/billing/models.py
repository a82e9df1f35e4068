"""Domain models for the billing and credit reconciliation engine."""
from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionStatus(str, Enum):
    """Lifecycle state for a tenant subscription."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    SUSPENDED = "suspended"
    CANCELED = "canceled"


class BillingCycle(str, Enum):
    """Supported billing frequencies."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


class PlanKey(str, Enum):
    """Canonical identifiers for subscription plans."""

    TRIAL = "trial"
    FREE = "free"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class LedgerEntryType(str, Enum):
    """Kinds of credit movement recorded in the ledger."""

    PURCHASE = "purchase"
    CONSUMPTION = "consumption"
    ALLOCATION = "allocation"
    REFUND = "refund"
    TRANSFER_OUT = "transfer_out"
    TRANSFER_IN = "transfer_in"
    EXPIRY = "expiry"


class JournalStatus(str, Enum):
    """Processing status of an externally delivered event."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentType(str, Enum):
    SUBSCRIPTION = "subscription"
    REFUND = "refund"
    PLAN_CHANGE = "plan_change"
    CREDIT_PURCHASE = "credit_purchase"


class PaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    PENDING = "pending"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    DISPUTED = "disputed"
    CANCELED = "canceled"
    EXPIRED = "expired"


class TransitionCause(str, Enum):
    """Why a subscription transition was requested."""

    TRIAL_EXPIRED = "trial_expired"
    PERIOD_ENDED = "period_ended"
    GRACE_PERIOD_EXPIRED = "grace_period_expired"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    CHECKOUT_COMPLETED = "checkout_completed"
    PROCESSOR_UPDATE = "processor_update"
    PROCESSOR_CANCELED = "processor_canceled"
    MANUAL_CANCEL = "manual_cancel"
    PLAN_CHANGE = "plan_change"
    SCHEDULED_PLAN_CHANGE = "scheduled_plan_change"


class EventCategory(str, Enum):
    """Classification of inbound payment processor notifications."""

    CHECKOUT_COMPLETED = "checkout_completed"
    INVOICE_PAID = "invoice_paid"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    DISPUTE_CREATED = "dispute_created"
    REFUND_CREATED = "refund_created"
    CHARGE_SUCCEEDED = "charge_succeeded"


class ProcessingOutcome(str, Enum):
    """Result reported back to the webhook sender."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    IN_PROGRESS = "in_progress"
    PERMANENT_FAILURE = "permanent_failure"
    FAILED = "failed"


class ObligationKind(str, Enum):
    """Side effects a committed transition asks its caller to carry out."""

    APPLY_RESTRICTIONS = "apply_restrictions"
    LIFT_RESTRICTIONS = "lift_restrictions"
    NOTIFY = "notify"


@dataclass(frozen=True)
class RestrictionSet:
    """Declarative set of capabilities withheld from a tenant."""

    dashboard_access: bool = False
    user_management: bool = False
    analytics: bool = False
    data_export: bool = False
    api_access: bool = False
    premium_features: bool = False

    def to_flags(self) -> Dict[str, bool]:
        """Serialize to flattened restriction keys."""

        return {field.name: getattr(self, field.name) for field in fields(self)}

    @property
    def restricted(self) -> Tuple[str, ...]:
        return tuple(name for name, value in self.to_flags().items() if value)


PAST_DUE_RESTRICTIONS = RestrictionSet(
    analytics=True,
    data_export=True,
    api_access=True,
    premium_features=True,
)

SUSPENDED_RESTRICTIONS = RestrictionSet(
    dashboard_access=True,
    user_management=True,
    analytics=True,
    data_export=True,
    api_access=True,
    premium_features=True,
)


class PendingPlanChange(BaseModel):
    """A downgrade scheduled to take effect at the end of the current period."""

    plan_key: PlanKey
    billing_cycle: BillingCycle
    effective_at: datetime
    requested_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)


class Subscription(BaseModel):
    """The single source of truth for a tenant's plan and lifecycle status."""

    subscription_id: str
    tenant_id: str
    plan_key: PlanKey
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    external_subscription_ref: Optional[str] = None
    external_customer_ref: Optional[str] = None
    has_ever_upgraded: bool = False
    trial_manually_disabled: bool = False
    grace_period_expires_at: Optional[datetime] = None
    pending_plan_change: Optional[PendingPlanChange] = None
    usage_limits: Dict[str, int] = Field(default_factory=dict)
    canceled_at: Optional[datetime] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_terminal(self) -> bool:
        return self.status == SubscriptionStatus.CANCELED


class LedgerEntry(BaseModel):
    """Immutable signed record of one credit movement."""

    entry_id: str
    tenant_id: str
    entity_id: str
    entry_type: LedgerEntryType
    amount: int
    currency: str = Field(default="USD", min_length=3, max_length=3)
    source_ref: Optional[str] = None
    event_ref: Optional[str] = None
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class IdempotencyRecord(BaseModel):
    """Journal row tracking one externally delivered event id."""

    event_id: str
    event_type: str
    status: JournalStatus = JournalStatus.PENDING
    attempts: int = 1
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class JournalClaim(BaseModel):
    """Outcome of an atomic claim attempt against the journal store."""

    record: IdempotencyRecord
    claimed: bool

    model_config = ConfigDict(frozen=True)


class PaymentRecord(BaseModel):
    """Financial audit trail entry for a money-moving or lifecycle event."""

    payment_id: str
    tenant_id: str
    subscription_id: Optional[str] = None
    amount: Decimal = Decimal("0")
    currency: str = Field(default="USD", min_length=3, max_length=3)
    status: PaymentStatus
    payment_type: PaymentType
    external_payment_ref: Optional[str] = None
    external_invoice_ref: Optional[str] = None
    external_charge_ref: Optional[str] = None
    external_refund_ref: Optional[str] = None
    description: Optional[str] = None
    amount_refunded: Decimal = Decimal("0")
    dispute: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class WebhookEvent(BaseModel):
    """Typed envelope around a verified payment processor notification."""

    event_id: str
    event_type: str
    category: Optional[EventCategory] = None
    payload: Dict[str, Any]
    created: Optional[datetime] = None
    livemode: bool = False
    received_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def metadata(self) -> Dict[str, Any]:
        value = self.payload.get("metadata")
        return dict(value) if isinstance(value, dict) else {}


class ProcessingResult(BaseModel):
    """What the dispatcher did with one inbound notification."""

    event_id: Optional[str] = None
    event_type: Optional[str] = None
    outcome: ProcessingOutcome
    retryable: bool = False
    detail: Optional[str] = None
    effects: Tuple[str, ...] = ()

    model_config = ConfigDict(frozen=True)

    @property
    def acknowledged(self) -> bool:
        return not self.retryable


class Obligation(BaseModel):
    """A post-commit side effect implied by a subscription transition."""

    kind: ObligationKind
    tenant_id: str
    restrictions: Optional[RestrictionSet] = None
    template_key: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class TransitionResult(BaseModel):
    """New subscription state plus the obligations it implies."""

    subscription: Subscription
    previous_status: SubscriptionStatus
    cause: TransitionCause
    payment_records: Tuple[PaymentRecord, ...] = ()
    obligations: Tuple[Obligation, ...] = ()

    model_config = ConfigDict(frozen=True)


class ReconciliationItem(BaseModel):
    """Permanent failure surfaced to operators for manual reconciliation."""

    item_id: str
    reason: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    tenant_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)


class MonitorHealth(BaseModel):
    """Liveness snapshot for the trial/expiry monitor."""

    running: bool
    last_successful_scan_at: Optional[datetime] = None
    last_reminder_scan_at: Optional[datetime] = None
    last_credit_scan_at: Optional[datetime] = None
    consecutive_errors: int = 0
    max_consecutive_errors: int
    last_error: Optional[str] = None
    passes_completed: int = 0
    stopped_reason: Optional[str] = None

    model_config = ConfigDict(frozen=True)


__all__ = [
    "BillingCycle",
    "EventCategory",
    "IdempotencyRecord",
    "JournalClaim",
    "JournalStatus",
    "LedgerEntry",
    "LedgerEntryType",
    "MonitorHealth",
    "Obligation",
    "ObligationKind",
    "PAST_DUE_RESTRICTIONS",
    "PaymentRecord",
    "PaymentStatus",
    "PaymentType",
    "PendingPlanChange",
    "PlanKey",
    "ProcessingOutcome",
    "ProcessingResult",
    "ReconciliationItem",
    "RestrictionSet",
    "SUSPENDED_RESTRICTIONS",
    "Subscription",
    "SubscriptionStatus",
    "TransitionCause",
    "TransitionResult",
    "WebhookEvent",
    "utcnow",
]
