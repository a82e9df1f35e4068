"""API schemas for billing endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import MonitorHealth, ProcessingOutcome, ProcessingResult


class WebhookProcessingResponse(BaseModel):
    event_id: Optional[str] = Field(alias="eventId", default=None)
    event_type: Optional[str] = Field(alias="eventType", default=None)
    outcome: ProcessingOutcome
    retryable: bool = False
    detail: Optional[str] = None
    effects: List[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: ProcessingResult) -> "WebhookProcessingResponse":
        return cls(
            event_id=result.event_id,
            event_type=result.event_type,
            outcome=result.outcome,
            retryable=result.retryable,
            detail=result.detail,
            effects=list(result.effects),
        )


class MonitorHealthResponse(BaseModel):
    running: bool
    last_successful_scan_at: Optional[datetime] = Field(alias="lastSuccessfulScanAt", default=None)
    last_reminder_scan_at: Optional[datetime] = Field(alias="lastReminderScanAt", default=None)
    last_credit_scan_at: Optional[datetime] = Field(alias="lastCreditScanAt", default=None)
    consecutive_errors: int = Field(alias="consecutiveErrors", default=0)
    max_consecutive_errors: int = Field(alias="maxConsecutiveErrors")
    last_error: Optional[str] = Field(alias="lastError", default=None)
    passes_completed: int = Field(alias="passesCompleted", default=0)
    stopped_reason: Optional[str] = Field(alias="stoppedReason", default=None)
    scheduler_running: bool = Field(alias="schedulerRunning", default=False)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_health(cls, health: MonitorHealth, *, scheduler_running: bool) -> "MonitorHealthResponse":
        return cls(
            running=health.running,
            last_successful_scan_at=health.last_successful_scan_at,
            last_reminder_scan_at=health.last_reminder_scan_at,
            last_credit_scan_at=health.last_credit_scan_at,
            consecutive_errors=health.consecutive_errors,
            max_consecutive_errors=health.max_consecutive_errors,
            last_error=health.last_error,
            passes_completed=health.passes_completed,
            stopped_reason=health.stopped_reason,
            scheduler_running=scheduler_running,
        )


__all__ = ["MonitorHealthResponse", "WebhookProcessingResponse"]
