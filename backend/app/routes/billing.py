"""API routes exposing the billing webhook and monitor health."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Callable, Optional

from fastapi import APIRouter, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from ..billing import BillingError, ConfigurationError, InvalidSignature
from ..schemas.billing import MonitorHealthResponse, WebhookProcessingResponse
from ..services.billing import get_trial_monitor, get_webhook_dispatcher

logger = logging.getLogger(__name__)


def _resolve_scheduler_status() -> Callable[[], bool]:  # pragma: no cover
    try:
        from backend.billing_scheduler import is_scheduler_running as resolved
    except ModuleNotFoundError as exc:
        if exc.name != "backend":
            raise
        from ...billing_scheduler import is_scheduler_running as resolved  # type: ignore[no-redef]
    return resolved


@lru_cache(maxsize=1)
def _get_scheduler_status() -> Callable[[], bool]:
    return _resolve_scheduler_status()


router = APIRouter(prefix="/api/billing", tags=["billing"])


def process_webhook(body: bytes, signature: Optional[str]) -> JSONResponse:
    """Run one delivery through the dispatcher and map the outcome to HTTP.

    Acknowledged outcomes answer 200 so the processor stops redelivering;
    retryable ones answer 503 so it tries again.
    """

    try:
        result = get_webhook_dispatcher().handle(body, signature)
    except InvalidSignature as exc:
        raise exc.to_http_exception() from exc
    except ConfigurationError as exc:
        logger.error("Billing webhook endpoint misconfigured", extra={"setting": exc.setting})
        raise exc.to_http_exception() from exc
    except BillingError as exc:
        if exc.retryable:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=dict(exc.payload)) from exc
        raise exc.to_http_exception() from exc

    response = WebhookProcessingResponse.from_result(result)
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE if result.retryable else status.HTTP_200_OK
    return JSONResponse(status_code=status_code, content=response.model_dump(mode="json", by_alias=True))


@router.post("/webhook", response_model=WebhookProcessingResponse)
async def receive_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
) -> JSONResponse:
    body = await request.body()
    return await run_in_threadpool(process_webhook, body, stripe_signature)


@router.get("/monitor/health", response_model=MonitorHealthResponse)
def read_monitor_health() -> MonitorHealthResponse:
    monitor = get_trial_monitor()
    return MonitorHealthResponse.from_health(monitor.health(), scheduler_running=_get_scheduler_status()())
