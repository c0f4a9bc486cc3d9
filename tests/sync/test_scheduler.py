"""Tests for SyncScheduler."""

import threading

import pytest

from refspine.sync import SyncScheduler


class Recorder:
    def __init__(self, fail_first=False):
        self.calls = []
        self.fail_first = fail_first
        self.ran = threading.Event()

    def __call__(self, cancel):
        self.calls.append(cancel)
        self.ran.set()
        if self.fail_first and len(self.calls) == 1:
            raise RuntimeError("source exploded")


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def scheduler(recorder):
    scheduler = SyncScheduler(recorder, join_timeout=5)
    yield scheduler
    scheduler.stop()


def test_run_immediately(scheduler, recorder):
    scheduler.start(interval_seconds=3600, run_immediately=True)

    assert recorder.ran.wait(timeout=5)
    assert recorder.calls[0] is scheduler.cancel_event
    assert scheduler.is_running


def test_waits_for_interval_until_triggered(scheduler, recorder):
    scheduler.start(interval_seconds=3600)
    assert not recorder.ran.wait(timeout=0.2)

    scheduler.trigger()

    assert recorder.ran.wait(timeout=5)


def test_stop_sets_cancel_and_joins(scheduler, recorder):
    scheduler.start(interval_seconds=3600, run_immediately=True)
    assert recorder.ran.wait(timeout=5)

    scheduler.stop()

    assert scheduler.cancel_event.is_set()
    assert not scheduler.is_running
    assert scheduler.health()["healthy"] is False


def test_failed_run_keeps_schedule():
    failing = Recorder(fail_first=True)
    scheduler = SyncScheduler(failing, join_timeout=5)
    try:
        scheduler.start(interval_seconds=3600, run_immediately=True)
        assert failing.ran.wait(timeout=5)
        failing.ran.clear()
        scheduler.trigger()
        assert failing.ran.wait(timeout=5)
    finally:
        scheduler.stop()

    health = scheduler.health()
    assert health["run_count"] == 2
    assert health["failure_count"] == 1
    assert health["last_error"] == "source exploded"


def test_start_twice_is_ignored(scheduler):
    scheduler.start(interval_seconds=3600)
    first_thread = scheduler._thread
    scheduler.start(interval_seconds=1)
    assert scheduler._thread is first_thread
    assert scheduler.health()["interval_seconds"] == 3600


def test_stop_before_start_is_a_no_op():
    SyncScheduler(lambda cancel: None).stop()
