from __future__ import annotations

import pytest

from backend.app.billing import CapabilityAuthority, CapabilityDenied, CapabilityScope, MONITOR_SCOPES


@pytest.fixture
def authority(clock):
    return CapabilityAuthority("capability-secret", clock=clock, default_ttl_seconds=60)


def test_issued_capability_grants_its_scopes(authority):
    capability = authority.issue("monitor", MONITOR_SCOPES)

    assert authority.require(capability, CapabilityScope.SUBSCRIPTION_TRANSITION) is capability
    assert capability.allows(CapabilityScope.MONITOR_RUN)


def test_missing_scope_is_denied(authority):
    capability = authority.issue("monitor", MONITOR_SCOPES)

    with pytest.raises(CapabilityDenied) as excinfo:
        authority.require(capability, CapabilityScope.LEDGER_WRITE)

    assert excinfo.value.status_code == 403
    assert excinfo.value.payload["scope"] == "ledger:write"


def test_forged_scopes_are_denied(authority):
    capability = authority.issue("monitor", [CapabilityScope.MONITOR_RUN])
    forged = capability.model_copy(update={"scopes": frozenset(CapabilityScope)})

    with pytest.raises(CapabilityDenied):
        authority.require(forged, CapabilityScope.LEDGER_WRITE)


def test_capability_from_another_authority_is_denied(authority, clock):
    foreign = CapabilityAuthority("other-secret", clock=clock).issue("webhook", [CapabilityScope.LEDGER_WRITE])

    with pytest.raises(CapabilityDenied):
        authority.require(foreign, CapabilityScope.LEDGER_WRITE)


def test_expired_capability_is_denied(authority, clock):
    capability = authority.issue("webhook", [CapabilityScope.LEDGER_WRITE])
    clock.advance(seconds=61)

    with pytest.raises(CapabilityDenied):
        authority.require(capability, CapabilityScope.LEDGER_WRITE)


def test_missing_capability_is_denied(authority):
    with pytest.raises(CapabilityDenied):
        authority.require(None, CapabilityScope.SUBSCRIPTION_CANCEL)
