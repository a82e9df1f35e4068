"""Error taxonomy for the billing engine."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class BillingError(Exception):
    """Represents a billing failure that callers can act upon."""

    code: str
    message: str
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None

    retryable: ClassVar[bool] = False

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class InvalidSignature(BillingError):
    def __init__(self, message: str = "Webhook signature verification failed") -> None:
        super().__init__(code="invalid_signature", message=message)


class MalformedEvent(BillingError):
    def __init__(self, message: str, *, event_id: Optional[str] = None) -> None:
        super().__init__(
            code="malformed_event",
            message=message,
            detail={"event_id": event_id} if event_id else None,
        )
        self.event_id = event_id


class MissingCorrelation(BillingError):
    """Raised when an event cannot be tied to a tenant or prior record."""

    def __init__(self, message: str, *, field: str) -> None:
        super().__init__(code="missing_correlation", message=message, detail={"field": field})
        self.field = field


class InvalidAmount(BillingError):
    def __init__(self, amount: Any) -> None:
        super().__init__(
            code="invalid_amount",
            message=f"Amount must be a positive integer, got {amount!r}",
            detail={"amount": repr(amount)},
        )
        self.amount = amount


class InsufficientBalance(BillingError):
    def __init__(self, *, available: int, requested: int) -> None:
        super().__init__(
            code="insufficient_balance",
            message=f"Requested {requested} credits but only {available} are available",
            status_code=status.HTTP_409_CONFLICT,
            detail={"available": available, "requested": requested},
        )
        self.available = available
        self.requested = requested


class OverRefund(BillingError):
    def __init__(self, *, source_ref: str, refundable: int, requested: int) -> None:
        super().__init__(
            code="over_refund",
            message=f"Refund of {requested} exceeds the {refundable} credits still refundable for {source_ref}",
            status_code=status.HTTP_409_CONFLICT,
            detail={"source_ref": source_ref, "refundable": refundable, "requested": requested},
        )
        self.source_ref = source_ref
        self.refundable = refundable
        self.requested = requested


class SubscriptionNotFound(BillingError):
    def __init__(self, tenant_id: str) -> None:
        super().__init__(
            code="subscription_not_found",
            message=f"No subscription exists for tenant {tenant_id}",
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"tenant_id": tenant_id},
        )
        self.tenant_id = tenant_id


class IllegalTransition(BillingError):
    def __init__(self, *, current: str, target: str, reason: Optional[str] = None) -> None:
        message = f"Cannot move subscription from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            code="illegal_transition",
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            detail={"current": current, "target": target},
        )
        self.current = current
        self.target = target


class NoOpTransition(BillingError):
    """Raised when the requested state already holds."""

    def __init__(self, *, status_value: str) -> None:
        super().__init__(
            code="no_op_transition",
            message=f"Subscription is already {status_value}",
            status_code=status.HTTP_409_CONFLICT,
            detail={"status": status_value},
        )
        self.status_value = status_value


class DowngradeNotYetEligible(BillingError):
    def __init__(self, *, eligible_at: datetime, days_remaining: int) -> None:
        super().__init__(
            code="downgrade_not_yet_eligible",
            message=(
                f"Downgrades are only allowed near the end of the billing period. "
                f"{days_remaining} days remain; you can schedule the downgrade from "
                f"{eligible_at.date().isoformat()}."
            ),
            status_code=status.HTTP_409_CONFLICT,
            detail={"eligible_at": eligible_at.isoformat(), "days_remaining": days_remaining},
        )
        self.eligible_at = eligible_at
        self.days_remaining = days_remaining


class CapabilityDenied(BillingError):
    def __init__(self, message: str, *, scope: Optional[str] = None) -> None:
        super().__init__(
            code="capability_denied",
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"scope": scope} if scope else None,
        )
        self.scope = scope


class ConfigurationError(BillingError):
    def __init__(self, message: str, *, setting: Optional[str] = None) -> None:
        super().__init__(
            code="configuration_error",
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"setting": setting} if setting else None,
        )
        self.setting = setting


class StoreUnavailable(BillingError):
    retryable: ClassVar[bool] = True

    def __init__(self, message: str = "Billing storage is unavailable") -> None:
        super().__init__(
            code="store_unavailable",
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


class ExternalDependencyError(BillingError):
    retryable: ClassVar[bool] = True

    def __init__(self, dependency: str, message: str) -> None:
        super().__init__(
            code="external_dependency_error",
            message=f"{dependency} failed: {message}",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"dependency": dependency},
        )
        self.dependency = dependency


class ExternalDependencyTimeout(ExternalDependencyError):
    def __init__(self, dependency: str, timeout_seconds: float) -> None:
        super().__init__(dependency, f"no response within {timeout_seconds:g}s")
        self.code = "external_dependency_timeout"
        self._payload["error"] = self.code
        self.timeout_seconds = timeout_seconds


__all__ = [
    "BillingError",
    "CapabilityDenied",
    "ConfigurationError",
    "DowngradeNotYetEligible",
    "ExternalDependencyError",
    "ExternalDependencyTimeout",
    "IllegalTransition",
    "InsufficientBalance",
    "InvalidAmount",
    "InvalidSignature",
    "MalformedEvent",
    "MissingCorrelation",
    "NoOpTransition",
    "OverRefund",
    "StoreUnavailable",
    "SubscriptionNotFound",
]
