"""Billing domain package: credit ledger, subscription lifecycle and webhook reconciliation."""

from .capabilities import MONITOR_SCOPES, WEBHOOK_SCOPES, Capability, CapabilityAuthority, CapabilityScope
from .collaborators import AccessControl, BillingNotifier, PaymentProcessor, SignatureVerifier
from .config import BillingConfig, DatabaseConfig, load_billing_config, load_database_config
from .dispatcher import WebhookDispatcher, classify_event
from .effects import TransitionEffects
from .exceptions import (
    BillingError,
    CapabilityDenied,
    ConfigurationError,
    DowngradeNotYetEligible,
    ExternalDependencyError,
    ExternalDependencyTimeout,
    IllegalTransition,
    InsufficientBalance,
    InvalidAmount,
    InvalidSignature,
    MalformedEvent,
    MissingCorrelation,
    NoOpTransition,
    OverRefund,
    StoreUnavailable,
    SubscriptionNotFound,
)
from .journal import IdempotencyJournal, JournalBegin
from .ledger import CreditLedgerEngine, LedgerResult, TransferResult
from .models import (
    BillingCycle,
    LedgerEntry,
    LedgerEntryType,
    MonitorHealth,
    PaymentRecord,
    PaymentStatus,
    PaymentType,
    PlanKey,
    ProcessingOutcome,
    ProcessingResult,
    RestrictionSet,
    Subscription,
    SubscriptionStatus,
    TransitionCause,
    TransitionResult,
)
from .monitor import TrialExpiryMonitor
from .state_machine import PlanChangeResult, SubscriptionStateMachine
from .tasks import ExternalCallRunner

__all__ = [
    "AccessControl",
    "BillingConfig",
    "BillingCycle",
    "BillingError",
    "BillingNotifier",
    "Capability",
    "CapabilityAuthority",
    "CapabilityDenied",
    "CapabilityScope",
    "ConfigurationError",
    "CreditLedgerEngine",
    "DatabaseConfig",
    "DowngradeNotYetEligible",
    "ExternalCallRunner",
    "ExternalDependencyError",
    "ExternalDependencyTimeout",
    "IdempotencyJournal",
    "IllegalTransition",
    "InsufficientBalance",
    "InvalidAmount",
    "InvalidSignature",
    "JournalBegin",
    "LedgerEntry",
    "LedgerEntryType",
    "LedgerResult",
    "MONITOR_SCOPES",
    "MalformedEvent",
    "MissingCorrelation",
    "MonitorHealth",
    "NoOpTransition",
    "OverRefund",
    "PaymentProcessor",
    "PaymentRecord",
    "PaymentStatus",
    "PaymentType",
    "PlanChangeResult",
    "PlanKey",
    "ProcessingOutcome",
    "ProcessingResult",
    "RestrictionSet",
    "SignatureVerifier",
    "StoreUnavailable",
    "Subscription",
    "SubscriptionNotFound",
    "SubscriptionStateMachine",
    "SubscriptionStatus",
    "TransitionCause",
    "TransitionEffects",
    "TransitionResult",
    "TransferResult",
    "TrialExpiryMonitor",
    "WEBHOOK_SCOPES",
    "WebhookDispatcher",
    "classify_event",
    "load_billing_config",
    "load_database_config",
]
