"""Unit tests for the throttled progress reporter."""
from __future__ import annotations

import asyncio

import pytest

from achievement_feed.rebuild.options import RebuildStage, RebuildUpdate, RebuildUpdateKind
from achievement_feed.rebuild.progress import ProgressReporter, deliver_update


class FakeClock:
    def __init__(self, step: float = 0.0) -> None:
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


def friend_progress() -> RebuildUpdate:
    return RebuildUpdate(kind=RebuildUpdateKind.FRIEND_PROGRESS, stage=RebuildStage.PROCESSING_FRIENDS)


def emit_items(reporter, total):
    emitted = []
    for i in range(total):
        reporter.step()
        if reporter.emit(friend_progress(), index=i, total=total):
            emitted.append(i)
    return emitted


# ==============================================================================
# Overall counter
# ==============================================================================

@pytest.mark.unit
def test_overall_index_never_exceeds_total():
    reporter = ProgressReporter(None, overall_count=3)

    for _ in range(5):
        reporter.step()

    assert reporter.overall_index == 3


@pytest.mark.unit
def test_emit_stamps_overall_progress():
    received = []
    reporter = ProgressReporter(received.append, overall_count=4, clock=FakeClock())
    reporter.step()
    reporter.step()

    reporter.emit(friend_progress(), force=True)

    assert (received[0].overall_index, received[0].overall_count) == (2, 4)


# ==============================================================================
# Throttling
# ==============================================================================

@pytest.mark.unit
def test_frozen_clock_emits_first_last_and_every_tenth():
    reporter = ProgressReporter(lambda u: None, overall_count=25, clock=FakeClock(step=0.0))

    assert emit_items(reporter, 25) == [0, 9, 19, 24]


@pytest.mark.unit
def test_elapsed_interval_emits_every_item():
    reporter = ProgressReporter(lambda u: None, overall_count=5, min_interval_ms=250, clock=FakeClock(step=0.3))

    assert emit_items(reporter, 5) == [0, 1, 2, 3, 4]


@pytest.mark.unit
def test_custom_emit_every():
    reporter = ProgressReporter(lambda u: None, overall_count=7, emit_every=3, clock=FakeClock(step=0.0))

    assert emit_items(reporter, 7) == [0, 2, 5, 6]


@pytest.mark.unit
def test_forced_updates_always_go_out():
    received = []
    reporter = ProgressReporter(received.append, overall_count=0, clock=FakeClock(step=0.0))

    for _ in range(3):
        reporter.emit(friend_progress(), force=True)
    reporter.emit_stage(RebuildStage.PROCESSING_FRIENDS)

    assert len(received) == 4
    assert received[-1].kind is RebuildUpdateKind.STAGE


# ==============================================================================
# Callback failures
# ==============================================================================

@pytest.mark.unit
def test_failing_callback_is_ignored():
    def broken(update):
        raise ValueError("ui went away")

    reporter = ProgressReporter(broken, overall_count=1)

    assert reporter.emit(friend_progress(), force=True) is True


@pytest.mark.unit
def test_cancellation_from_callback_propagates():
    def cancel(update):
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        deliver_update(cancel, friend_progress())
