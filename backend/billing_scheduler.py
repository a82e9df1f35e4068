"""Scheduler integration for the billing monitor's expiry, reminder and credit passes."""
from __future__ import annotations

import logging
from threading import Event, Lock, Thread
from typing import Callable, Dict, Optional

from backend.app.billing import TrialExpiryMonitor
from backend.app.services.billing import get_billing_runtime

logger = logging.getLogger(__name__)

EXPIRY_JOB = "expiry"
REMINDER_JOB = "reminders"
CREDIT_EXPIRY_JOB = "credits"

_scheduler_lock = Lock()
_workers: Dict[str, "_MonitorWorker"] = {}


def run_expiry_job(monitor: Optional[TrialExpiryMonitor] = None) -> None:
    active = monitor or get_billing_runtime().monitor
    active.run_expiry_pass()


def run_reminder_job(monitor: Optional[TrialExpiryMonitor] = None) -> None:
    active = monitor or get_billing_runtime().monitor
    active.run_reminder_pass()


def run_credit_expiry_job(monitor: Optional[TrialExpiryMonitor] = None) -> None:
    active = monitor or get_billing_runtime().monitor
    active.run_credit_expiry_pass()


class _MonitorWorker(Thread):
    def __init__(
        self,
        name: str,
        job: Callable[[TrialExpiryMonitor], None],
        monitor: TrialExpiryMonitor,
        *,
        initial_delay: float,
        interval: float,
    ):
        super().__init__(name=f"billing-{name}", daemon=True)
        self.job_name = name
        self._job = job
        self._monitor = monitor
        self._initial_delay = max(0.0, initial_delay)
        self._interval = max(1.0, interval)
        self._stop_event = Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        if self._stop_event.wait(self._initial_delay):
            return
        while not self._stop_event.is_set():
            if not self._monitor.is_running:
                logger.warning("Billing monitor halted; %s worker exiting", self.job_name)
                break
            try:
                self._job(self._monitor)
            except Exception:
                # The monitor records and logs the failure; keep the schedule.
                logger.debug("Billing %s job raised", self.job_name, exc_info=True)
            if self._stop_event.wait(self._interval):
                break


def start_billing_scheduler(monitor: Optional[TrialExpiryMonitor] = None) -> None:
    with _scheduler_lock:
        if _workers:
            return
        runtime = get_billing_runtime()
        config = runtime.config
        if not config.monitor_enabled:
            logger.info("Billing monitor disabled; scheduler not started")
            return
        active = monitor or runtime.monitor
        active.start()
        _workers[EXPIRY_JOB] = _MonitorWorker(
            EXPIRY_JOB,
            run_expiry_job,
            active,
            initial_delay=0.0,
            interval=config.expiry_scan_interval_seconds,
        )
        _workers[REMINDER_JOB] = _MonitorWorker(
            REMINDER_JOB,
            run_reminder_job,
            active,
            initial_delay=0.0,
            interval=config.reminder_scan_interval_seconds,
        )
        _workers[CREDIT_EXPIRY_JOB] = _MonitorWorker(
            CREDIT_EXPIRY_JOB,
            run_credit_expiry_job,
            active,
            initial_delay=0.0,
            interval=config.credit_expiry_scan_interval_seconds,
        )
        for worker in _workers.values():
            worker.start()
        logger.info(
            "Billing scheduler started",
            extra={
                "expiry_interval_seconds": config.expiry_scan_interval_seconds,
                "reminder_interval_seconds": config.reminder_scan_interval_seconds,
                "credit_expiry_interval_seconds": config.credit_expiry_scan_interval_seconds,
            },
        )


def shutdown_billing_scheduler() -> None:
    with _scheduler_lock:
        workers = list(_workers.values())
        for worker in workers:
            worker.stop()
        for worker in workers:
            worker.join(timeout=1.0)
        _workers.clear()
        if workers:
            get_billing_runtime().monitor.stop(reason="shutdown")
            logger.info("Billing scheduler stopped")


def is_scheduler_running() -> bool:
    with _scheduler_lock:
        return any(worker.is_alive() for worker in _workers.values())


__all__ = [
    "is_scheduler_running",
    "run_credit_expiry_job",
    "run_expiry_job",
    "run_reminder_job",
    "shutdown_billing_scheduler",
    "start_billing_scheduler",
]
