"""Signed capability tokens that gate every billing mutation."""
from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, FrozenSet, Iterable, Optional

from pydantic import BaseModel, ConfigDict

from .exceptions import CapabilityDenied


class CapabilityScope(str, Enum):
    """Mutations a capability may authorize."""

    LEDGER_WRITE = "ledger:write"
    LEDGER_EXPIRE = "ledger:expire"
    SUBSCRIPTION_TRANSITION = "subscription:transition"
    SUBSCRIPTION_PLAN_CHANGE = "subscription:plan_change"
    SUBSCRIPTION_CANCEL = "subscription:cancel"
    WEBHOOK_PROCESS = "webhook:process"
    MONITOR_RUN = "monitor:run"


WEBHOOK_SCOPES: FrozenSet[CapabilityScope] = frozenset(
    {
        CapabilityScope.WEBHOOK_PROCESS,
        CapabilityScope.LEDGER_WRITE,
        CapabilityScope.SUBSCRIPTION_TRANSITION,
        CapabilityScope.SUBSCRIPTION_PLAN_CHANGE,
        CapabilityScope.SUBSCRIPTION_CANCEL,
    }
)

MONITOR_SCOPES: FrozenSet[CapabilityScope] = frozenset(
    {
        CapabilityScope.MONITOR_RUN,
        CapabilityScope.SUBSCRIPTION_TRANSITION,
        CapabilityScope.SUBSCRIPTION_PLAN_CHANGE,
        CapabilityScope.LEDGER_EXPIRE,
    }
)


class Capability(BaseModel):
    """Proof that a caller was authorized to perform a set of mutations."""

    principal: str
    scopes: FrozenSet[CapabilityScope]
    issued_at: datetime
    expires_at: datetime
    signature: str

    model_config = ConfigDict(frozen=True)

    def allows(self, scope: CapabilityScope) -> bool:
        return scope in self.scopes


class CapabilityAuthority:
    """Issues and verifies HMAC signed capabilities."""

    def __init__(
        self,
        secret: str,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        default_ttl_seconds: int = 300,
    ) -> None:
        if not secret:
            raise ValueError("secret must be provided")
        self._secret = secret.encode("utf-8")
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._default_ttl = timedelta(seconds=default_ttl_seconds)

    def issue(
        self,
        principal: str,
        scopes: Iterable[CapabilityScope],
        *,
        ttl_seconds: Optional[int] = None,
    ) -> Capability:
        scope_set = frozenset(CapabilityScope(scope) for scope in scopes)
        issued_at = self._clock()
        ttl = timedelta(seconds=ttl_seconds) if ttl_seconds is not None else self._default_ttl
        expires_at = issued_at + ttl
        signature = self._sign(principal, scope_set, issued_at, expires_at)
        return Capability(
            principal=principal,
            scopes=scope_set,
            issued_at=issued_at,
            expires_at=expires_at,
            signature=signature,
        )

    def require(self, capability: Optional[Capability], scope: CapabilityScope) -> Capability:
        """Raise :class:`CapabilityDenied` unless ``capability`` grants ``scope``."""

        if capability is None:
            raise CapabilityDenied("A capability is required for this operation", scope=scope.value)
        expected = self._sign(
            capability.principal,
            capability.scopes,
            capability.issued_at,
            capability.expires_at,
        )
        if not hmac.compare_digest(expected, capability.signature):
            raise CapabilityDenied("Capability signature is invalid", scope=scope.value)
        if self._clock() >= capability.expires_at:
            raise CapabilityDenied("Capability has expired", scope=scope.value)
        if scope not in capability.scopes:
            raise CapabilityDenied(
                f"Capability for {capability.principal} does not grant {scope.value}",
                scope=scope.value,
            )
        return capability

    def _sign(
        self,
        principal: str,
        scopes: Iterable[CapabilityScope],
        issued_at: datetime,
        expires_at: datetime,
    ) -> str:
        claims = {
            "principal": principal,
            "scopes": sorted(scope.value for scope in scopes),
            "iat": issued_at.isoformat(),
            "exp": expires_at.isoformat(),
        }
        serialized = json.dumps(claims, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return hmac.new(self._secret, serialized, hashlib.sha256).hexdigest()


__all__ = [
    "Capability",
    "CapabilityAuthority",
    "CapabilityScope",
    "MONITOR_SCOPES",
    "WEBHOOK_SCOPES",
]
