from __future__ import annotations

import threading

import pytest

from backend.app.billing import ExternalCallRunner, ExternalDependencyError, ExternalDependencyTimeout


@pytest.fixture
def runner():
    runner = ExternalCallRunner(timeout_seconds=0.2, max_workers=2)
    yield runner
    runner.shutdown()


def test_call_returns_result(runner):
    assert runner.call("processor.refund", lambda charge, amount: f"{charge}:{amount}", "ch_1", 500) == "ch_1:500"


def test_slow_call_raises_timeout(runner):
    release = threading.Event()

    with pytest.raises(ExternalDependencyTimeout) as excinfo:
        runner.call("processor.cancel_subscription", release.wait, 5)
    release.set()

    assert excinfo.value.retryable is True
    assert excinfo.value.code == "external_dependency_timeout"
    assert excinfo.value.payload["dependency"] == "processor.cancel_subscription"


def test_errors_are_wrapped_as_dependency_errors(runner):
    def boom():
        raise ConnectionError("connection reset")

    with pytest.raises(ExternalDependencyError) as excinfo:
        runner.call("notifier.send", boom)

    assert isinstance(excinfo.value.__cause__, ConnectionError)
    assert "connection reset" in excinfo.value.message


def test_fire_and_forget_reports_failure_without_raising(runner):
    def boom():
        raise RuntimeError("smtp down")

    assert runner.fire_and_forget("notifier.send", boom) is False
    assert runner.fire_and_forget("notifier.send", lambda: None) is True
