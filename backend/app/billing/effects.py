"""Carries out the post-commit obligations of subscription transitions."""
from __future__ import annotations

import logging
import uuid
from typing import Any, List, Mapping, Optional

from .collaborators import AccessControl, BillingNotifier
from .exceptions import ExternalDependencyError
from .models import Obligation, ObligationKind, ReconciliationItem, TransitionResult
from .stores import ReconciliationQueue
from .tasks import ExternalCallRunner

logger = logging.getLogger(__name__)


class TransitionEffects:
    """Applies restriction changes and sends notifications.

    The subscription write has already committed when these run, so a failed
    access-control call is queued for operators rather than raised.
    Notifications are best effort.
    """

    def __init__(
        self,
        *,
        access_control: AccessControl,
        notifier: BillingNotifier,
        runner: ExternalCallRunner,
        reconciliation_queue: ReconciliationQueue,
    ) -> None:
        self._access_control = access_control
        self._notifier = notifier
        self._runner = runner
        self._queue = reconciliation_queue

    def fulfil(self, result: TransitionResult, *, event_id: Optional[str] = None) -> List[str]:
        performed: List[str] = []
        for obligation in result.obligations:
            if obligation.kind == ObligationKind.NOTIFY:
                if self.notify(obligation.template_key or "billing_update", obligation.tenant_id, obligation.context):
                    performed.append(f"notified:{obligation.template_key}")
                continue
            if self._restrict(obligation, event_id=event_id):
                performed.append(obligation.kind.value)
        return performed

    def notify(self, template_key: str, tenant_id: str, context: Mapping[str, Any]) -> bool:
        return self._runner.fire_and_forget(
            "notifier.send",
            self._notifier.send,
            template_key,
            tenant_id,
            dict(context),
        )

    def _restrict(self, obligation: Obligation, *, event_id: Optional[str]) -> bool:
        try:
            if obligation.kind == ObligationKind.APPLY_RESTRICTIONS:
                self._runner.call(
                    "access_control.apply_restrictions",
                    self._access_control.apply_restrictions,
                    obligation.tenant_id,
                    obligation.restrictions,
                )
            else:
                self._runner.call(
                    "access_control.lift_restrictions",
                    self._access_control.lift_restrictions,
                    obligation.tenant_id,
                )
        except ExternalDependencyError as exc:
            logger.error(
                "Restriction update failed after commit",
                extra={"tenant_id": obligation.tenant_id, "obligation": obligation.kind.value, "error": exc.message},
            )
            self._queue.enqueue(
                ReconciliationItem(
                    item_id=str(uuid.uuid4()),
                    reason=f"{obligation.kind.value} failed: {exc.message}",
                    event_id=event_id,
                    tenant_id=obligation.tenant_id,
                    payload={
                        "restrictions": obligation.restrictions.to_flags() if obligation.restrictions else None,
                    },
                )
            )
            return False
        return True


__all__ = ["TransitionEffects"]
