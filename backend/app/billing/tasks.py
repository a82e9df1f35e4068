"""Bounded execution of calls to external collaborators."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, TypeVar

from .exceptions import BillingError, ExternalDependencyError, ExternalDependencyTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ExternalCallRunner:
    """Runs processor, notifier and access-control calls with a timeout.

    A call that does not return within ``timeout_seconds`` raises
    :class:`ExternalDependencyTimeout`; the worker thread is abandoned and
    finishes in the background.
    """

    def __init__(self, *, timeout_seconds: float = 10.0, max_workers: int = 8) -> None:
        self._timeout = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="billing-external")

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    def call(self, dependency: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        future = self._executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            logger.warning(
                "External call timed out",
                extra={"dependency": dependency, "timeout_seconds": self._timeout},
            )
            raise ExternalDependencyTimeout(dependency, self._timeout) from exc
        except BillingError:
            raise
        except Exception as exc:
            logger.warning(
                "External call failed",
                extra={"dependency": dependency, "error": str(exc)},
            )
            raise ExternalDependencyError(dependency, str(exc) or exc.__class__.__name__) from exc

    def fire_and_forget(self, dependency: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
        """Run ``fn`` like :meth:`call` but log failures instead of raising."""

        try:
            self.call(dependency, fn, *args, **kwargs)
        except ExternalDependencyError as exc:
            logger.error(
                "Best-effort external call did not complete",
                extra={"dependency": dependency, "error": exc.message},
            )
            return False
        return True

    def shutdown(self, *, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)


__all__ = ["ExternalCallRunner"]
