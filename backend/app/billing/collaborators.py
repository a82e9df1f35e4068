"""External collaborators the billing engine talks to."""
from __future__ import annotations

from typing import Any, Mapping, Protocol, Union

from .models import RestrictionSet


class SignatureVerifier(Protocol):
    def verify(self, payload: Union[bytes, str], signature_header: str) -> None:
        """Raise :class:`InvalidSignature` unless the payload is authentic."""

        ...


class PaymentProcessor(Protocol):
    def cancel_subscription(self, subscription_ref: str) -> None:
        ...

    def update_subscription(self, subscription_ref: str, price_ref: str) -> None:
        ...

    def refund(self, charge_ref: str, amount_minor: int, *, idempotency_key: str) -> str:
        """Refund part of a charge and return the processor refund id."""

        ...


class BillingNotifier(Protocol):
    def send(self, template_key: str, recipient: str, context: Mapping[str, Any]) -> None:
        ...


class AccessControl(Protocol):
    def apply_restrictions(self, tenant_id: str, restrictions: RestrictionSet) -> None:
        ...

    def lift_restrictions(self, tenant_id: str) -> None:
        ...


__all__ = [
    "AccessControl",
    "BillingNotifier",
    "PaymentProcessor",
    "SignatureVerifier",
]
