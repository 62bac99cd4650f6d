from unittest.mock import MagicMock

import pytest

from minder_resilience.core_logic.progress import (
    CANCELLED, COMPLETED, FAILED, PROGRESS, ProgressChannel, ProgressTracker, progress_as_dict
)


class FakeClock:
    def __init__(self, start=100.0):
        self.now = start

    def __call__(self):
        return self.now


def test_speed_and_eta_from_consecutive_samples():
    clock = FakeClock()
    tracker = ProgressTracker(1000, clock=clock)

    first = tracker.update(100)
    assert first.percentage == 10
    assert first.speed is None
    assert first.eta is None

    clock.now += 2
    second = tracker.update(500)
    assert second.speed == pytest.approx(200.0)
    assert second.eta == pytest.approx(2.5)


def test_loaded_never_goes_backwards_within_an_attempt():
    tracker = ProgressTracker(100, clock=FakeClock())
    tracker.update(60)
    assert tracker.update(30).loaded == 60
    assert tracker.update(500).loaded == 100


def test_zero_speed_leaves_eta_unknown():
    clock = FakeClock()
    tracker = ProgressTracker(100, clock=clock)
    tracker.update(10)
    clock.now += 1
    progress = tracker.update(10)
    assert progress.speed == 0
    assert progress.eta is None


def test_complete_reports_exactly_100_percent():
    tracker = ProgressTracker(3, clock=FakeClock())
    tracker.update(1)
    done = tracker.complete()
    assert done.percentage == 100.0
    assert done.loaded == 3
    assert done.eta == 0.0


def test_empty_payload_completes_at_100():
    tracker = ProgressTracker(0, clock=FakeClock())
    assert tracker.update(0).percentage == 0.0
    assert tracker.complete().percentage == 100.0


def test_reset_starts_a_new_attempt_from_zero():
    tracker = ProgressTracker(100, clock=FakeClock())
    tracker.update(80)
    assert tracker.reset().loaded == 0
    assert tracker.update(10).loaded == 10


def test_channel_emits_progress_then_single_terminal_event():
    channel = ProgressChannel("t-1")
    events = []
    channel.subscribe(events.append)
    tracker = ProgressTracker(10, clock=FakeClock())

    channel.publish(tracker.update(5))
    channel.close(COMPLETED, progress=tracker.complete(), result={"ok": True})
    channel.close(FAILED)
    channel.publish(tracker.update(10))

    assert [e.kind for e in events] == [PROGRESS, COMPLETED]
    assert events[-1].is_terminal
    assert events[-1].result == {"ok": True}
    assert channel.terminal_event is events[-1]


def test_channel_unsubscribe_handle():
    channel = ProgressChannel("t-2")
    listener = MagicMock()
    unsubscribe = channel.subscribe(listener)
    unsubscribe()
    unsubscribe()
    channel.close(CANCELLED)
    listener.assert_not_called()


def test_failing_listener_does_not_block_others():
    channel = ProgressChannel("t-3")
    received = []
    channel.subscribe(MagicMock(side_effect=RuntimeError("bad listener")))
    channel.subscribe(received.append)
    channel.close(FAILED, error=RuntimeError("x"))
    assert len(received) == 1


def test_close_requires_terminal_kind():
    with pytest.raises(ValueError):
        ProgressChannel("t-4").close(PROGRESS)


def test_progress_as_dict_rounds_percentage():
    tracker = ProgressTracker(3, clock=FakeClock())
    assert progress_as_dict(tracker.update(1))["percentage"] == 33.33
