"""Idempotency journal guarding externally delivered events."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .models import IdempotencyRecord, JournalStatus
from .stores import JournalStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JournalBegin:
    """Whether the caller now owns processing of an event."""

    is_new: bool
    record: IdempotencyRecord

    @property
    def status(self) -> JournalStatus:
        return self.record.status

    @property
    def already_completed(self) -> bool:
        return not self.is_new and self.record.status == JournalStatus.COMPLETED

    @property
    def in_progress(self) -> bool:
        return not self.is_new and self.record.status == JournalStatus.PENDING


class IdempotencyJournal:
    """Records which event ids have been processed.

    ``begin`` is atomic: of any number of concurrent callers with the same
    id, exactly one sees ``is_new``. Failed records, and pending records that
    have not been touched for ``stale_after_seconds``, may be reclaimed by a
    later attempt. Storage errors propagate to the caller unchanged.
    """

    def __init__(
        self,
        store: JournalStore,
        *,
        stale_after_seconds: int = 300,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._stale_after = timedelta(seconds=stale_after_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def begin(self, event_id: str, event_type: str) -> JournalBegin:
        if not event_id:
            raise ValueError("event_id must be provided")
        now = self._clock()
        claim = self._store.claim(
            event_id,
            event_type,
            now=now,
            stale_before=now - self._stale_after,
        )
        if claim.claimed and claim.record.attempts > 1:
            logger.info(
                "Reclaimed journal record",
                extra={"event_id": event_id, "attempts": claim.record.attempts},
            )
        return JournalBegin(is_new=claim.claimed, record=claim.record)

    def complete(self, event_id: str) -> IdempotencyRecord:
        return self._store.mark_completed(event_id, now=self._clock())

    def fail(self, event_id: str, reason: str) -> IdempotencyRecord:
        record = self._store.mark_failed(event_id, reason, now=self._clock())
        logger.warning(
            "Journal record marked failed",
            extra={"event_id": event_id, "reason": reason, "attempts": record.attempts},
        )
        return record

    def get(self, event_id: str) -> Optional[IdempotencyRecord]:
        return self._store.get_record(event_id)


__all__ = ["IdempotencyJournal", "JournalBegin"]
