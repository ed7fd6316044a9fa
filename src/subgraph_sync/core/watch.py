"""
Watch loop - repeated sync passes.

Passes start every ``interval`` seconds; when a pass overruns the interval
the next one still waits ``min_delay`` seconds. Setting the stop event lets
the in-flight pass finish (including its final flushes) and ends the loop.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from typing import Callable, Sequence

from subgraph_sync.core.engine import SyncOrchestrator, SyncStats
from subgraph_sync.utils.logger import log_event

logger = logging.getLogger(__name__)


def next_delay(interval: float, min_delay: float, elapsed: float) -> float:
    """Pause before the next pass: max(min_delay, interval - elapsed)."""
    return max(min_delay, interval - elapsed)


class WatchRunner:
    """
    Run sync passes until stopped.

    Example:
        runner = WatchRunner(orchestrator, interval=60, min_delay=1)
        runner.install_signal_handlers()
        await runner.run(sections=["agents"])
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        interval: float = 60.0,
        min_delay: float = 1.0,
        stop_event: asyncio.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_pass: Callable[[int, SyncStats], None] | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.interval = interval
        self.min_delay = min_delay
        self.stop_event = stop_event or asyncio.Event()
        self._clock = clock
        self.on_pass = on_pass
        self.passes = 0
        self.last_stats: SyncStats | None = None

    def stop(self) -> None:
        """Request a graceful stop after the in-flight pass."""
        if not self.stop_event.is_set():
            log_event(logger, logging.WARNING, "stop requested, finishing current pass")
        self.stop_event.set()

    def install_signal_handlers(self) -> None:
        """Stop on SIGINT and SIGTERM. Must be called from the running loop."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(self.stop))

    async def run(
        self,
        partitions: Sequence[str] | None = None,
        sections: Sequence[str] | None = None,
        reset: bool = False,
        max_passes: int | None = None,
    ) -> SyncStats | None:
        """
        Loop until stopped (or ``max_passes`` passes ran).

        ``reset`` applies to the first pass only. Returns the last pass stats.
        """
        while not self.stop_event.is_set():
            started = self._clock()
            self.last_stats = await self.orchestrator.run_all(
                partitions,
                sections,
                reset=reset and self.passes == 0,
            )
            self.passes += 1
            if self.on_pass is not None:
                self.on_pass(self.passes, self.last_stats)

            if max_passes is not None and self.passes >= max_passes:
                break

            delay = next_delay(self.interval, self.min_delay, self._clock() - started)
            log_event(logger, logging.INFO, "next pass scheduled", passes=self.passes, delay=f"{delay:.1f}s")
            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue

        log_event(logger, logging.INFO, "watch stopped", passes=self.passes)
        return self.last_stats
