"""Background loop: periodic usage sync and override expiry sweep."""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from .overrides import OverrideManager
from .sync import DeviceUsageSync, SyncSummary

logger = logging.getLogger(__name__)


@dataclass
class LoopState:
    """Mutable state for the sync loop."""

    ticks: int = 0
    last_summary: SyncSummary | None = None
    last_error_at: datetime | None = None
    expired_total: int = 0


def run_sync_loop(
    sync: DeviceUsageSync,
    overrides: OverrideManager,
    child_id: str,
    clock: Callable[[], datetime],
    stop: threading.Event,
    interval_seconds: int = 60,
    sync_days: int = 1,
) -> LoopState:
    """Run until ``stop`` is set. A failing tick is logged and the loop carries on."""
    state = LoopState()
    logger.info("Starting sync loop (interval=%ds, days=%d)", interval_seconds, sync_days)

    while not stop.is_set():
        _tick(sync, overrides, child_id, clock, stop, state, sync_days)
        stop.wait(interval_seconds)

    logger.info("Sync loop stopped after %d ticks", state.ticks)
    return state


def _tick(
    sync: DeviceUsageSync,
    overrides: OverrideManager,
    child_id: str,
    clock: Callable[[], datetime],
    stop: threading.Event,
    state: LoopState,
    sync_days: int,
) -> None:
    """Single iteration of the sync loop."""
    state.ticks += 1
    now = clock()

    try:
        state.last_summary = sync.sync_days(child_id, sync_days, now, cancel=stop)
    except Exception:
        logger.exception("Error in usage sync")
        state.last_error_at = now

    # Correctness never depends on this sweep; readers check expiry themselves.
    try:
        state.expired_total += overrides.sweep_expired(now, child_id=child_id)
    except Exception:
        logger.exception("Error sweeping expired overrides")
        state.last_error_at = now
