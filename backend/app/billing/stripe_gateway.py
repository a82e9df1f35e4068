"""Stripe implementations of the signature verifier and payment processor."""
from __future__ import annotations

import logging
from typing import Optional, Union

import stripe

from .exceptions import ConfigurationError, InvalidSignature

logger = logging.getLogger(__name__)


class StripeSignatureVerifier:
    """Checks the ``Stripe-Signature`` header against the raw request body."""

    def __init__(self, secret: Optional[str], *, tolerance_seconds: int = 300) -> None:
        if not secret:
            raise ConfigurationError(
                "A webhook signing secret is required",
                setting="BILLING_WEBHOOK_SECRET",
            )
        self._secret = secret
        self._tolerance = tolerance_seconds

    def verify(self, payload: Union[bytes, str], signature_header: str) -> None:
        if not signature_header:
            raise InvalidSignature("Stripe-Signature header is missing")
        if isinstance(payload, bytes):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise InvalidSignature("Webhook body is not valid UTF-8") from exc
        try:
            stripe.WebhookSignature.verify_header(payload, signature_header, self._secret, self._tolerance)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            raise InvalidSignature() from exc


class StripePaymentProcessor:
    """Processor calls made on behalf of the billing engine.

    Errors from the Stripe client propagate; the caller runs these through
    :class:`ExternalCallRunner`, which classifies them as dependency failures.
    """

    def __init__(self, api_key: Optional[str]) -> None:
        if not api_key:
            raise ConfigurationError("A Stripe API key is required", setting="STRIPE_API_KEY")
        self._api_key = api_key

    def cancel_subscription(self, subscription_ref: str) -> None:
        try:
            stripe.Subscription.cancel(subscription_ref, api_key=self._api_key)
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "code", None) == "resource_missing":
                logger.info("Stripe subscription %s already gone", subscription_ref)
                return
            raise

    def update_subscription(self, subscription_ref: str, price_ref: str) -> None:
        subscription = stripe.Subscription.retrieve(subscription_ref, api_key=self._api_key)
        items = subscription["items"]["data"]
        if not items:
            raise stripe.InvalidRequestError(f"Subscription {subscription_ref} has no items", param="items")
        stripe.Subscription.modify(
            subscription_ref,
            api_key=self._api_key,
            items=[{"id": items[0]["id"], "price": price_ref}],
            proration_behavior="none",
        )

    def refund(self, charge_ref: str, amount_minor: int, *, idempotency_key: str) -> str:
        refund = stripe.Refund.create(
            api_key=self._api_key,
            idempotency_key=idempotency_key,
            charge=charge_ref,
            amount=amount_minor,
        )
        return refund["id"]


__all__ = ["StripePaymentProcessor", "StripeSignatureVerifier"]
