"""Throttled, unified progress stream for friend and self scans."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

from .options import RebuildStage, RebuildUpdate, RebuildUpdateKind, UpdateCallback

LOGGER = logging.getLogger(__name__)

DEFAULT_EMIT_EVERY = 10
DEFAULT_MIN_INTERVAL_MS = 250


def deliver_update(on_update: Optional[UpdateCallback], update: RebuildUpdate) -> None:
    """Invoke the caller's callback; its failures are logged, never raised."""

    if on_update is None or update is None:
        return
    try:
        on_update(update)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        LOGGER.debug("Rebuild progress handler raised: %s", exc, exc_info=True)


class ProgressReporter:
    """Tracks an overall (index, count) across every planned scan step.

    Per-item updates are throttled: they go out on the first item, the last
    item, every ``emit_every`` items, or once ``min_interval_ms`` has passed
    since the previous emission. Forced updates always go out.
    """

    def __init__(
        self,
        on_update: Optional[UpdateCallback],
        overall_count: int,
        emit_every: int = DEFAULT_EMIT_EVERY,
        min_interval_ms: int = DEFAULT_MIN_INTERVAL_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._on_update = on_update
        self.overall_count = max(0, overall_count)
        self.overall_index = 0
        self._emit_every = max(1, emit_every)
        self._min_interval = max(0, min_interval_ms) / 1000.0
        self._clock = clock
        self._last_emit: Optional[float] = None

    def step(self) -> None:
        if self.overall_index < self.overall_count:
            self.overall_index += 1

    def _interval_elapsed(self, now: float) -> bool:
        return self._last_emit is None or (now - self._last_emit) >= self._min_interval

    def should_emit(self, force: bool, index: Optional[int], total: Optional[int], now: float) -> bool:
        if force:
            return True
        if index is not None and total is not None:
            return (
                index == 0
                or index == total - 1
                or (index + 1) % self._emit_every == 0
                or self._interval_elapsed(now)
            )
        return self._interval_elapsed(now)

    def emit(
        self,
        update: RebuildUpdate,
        force: bool = False,
        index: Optional[int] = None,
        total: Optional[int] = None,
    ) -> bool:
        """Stamp overall progress onto ``update`` and deliver it if the throttle allows."""

        now = self._clock()
        if not self.should_emit(force, index, total, now):
            return False
        self._last_emit = now
        update.overall_index = self.overall_index
        update.overall_count = self.overall_count
        deliver_update(self._on_update, update)
        return True

    def emit_stage(self, stage: RebuildStage) -> None:
        self.emit(RebuildUpdate(kind=RebuildUpdateKind.STAGE, stage=stage), force=True)
