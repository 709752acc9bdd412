"""LoopScheduler — runs the scan loop and the exit loop as asyncio tasks.

The scan loop fires ``engine.trigger_scan()`` every scan interval; a tick
that finds the previous scan still running is skipped, never queued.  The
exit loop awaits each tick before sleeping.  Stopping only prevents new
ticks; in-flight calls finish or time out on their own.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from bullbust.engine.engine import TradingEngine

logger = logging.getLogger("bullbust.scheduler")


class LoopScheduler:
    """Lifecycle manager for the two periodic loops.

    Args:
        engine: The ``TradingEngine`` whose ticks are scheduled.
        scan_interval: Seconds between scan ticks.
        exit_interval: Seconds between exit ticks.
    """

    def __init__(
        self,
        engine: TradingEngine,
        scan_interval: float = 60.0,
        exit_interval: float = 10.0,
    ) -> None:
        self._engine = engine
        self._scan_interval = scan_interval
        self._exit_interval = exit_interval
        self._stop_event = asyncio.Event()
        self._paused: bool = False
        self._tasks: dict[str, asyncio.Task] = {}
        self._started_at: Optional[str] = None
        self._ticks: dict[str, int] = {"scan": 0, "exit": 0}

    # ── Public API ───────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks.values())

    @property
    def paused(self) -> bool:
        return self._paused

    def start(self) -> None:
        """Create both loop tasks.  Must be called from a running event loop."""
        if self.running:
            return
        self._stop_event.clear()
        self._started_at = datetime.now(timezone.utc).isoformat()
        self._tasks = {
            "scan": asyncio.create_task(self._scan_loop(), name="scan-loop"),
            "exit": asyncio.create_task(self._exit_loop(), name="exit-loop"),
        }
        logger.info(
            "Loops started (scan every %ss, exits every %ss)",
            self._scan_interval, self._exit_interval,
        )

    async def run(self) -> None:
        """Start both loops and wait until they stop."""
        self.start()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    def stop(self) -> None:
        """Stop scheduling new ticks."""
        self._stop_event.set()
        logger.info("Stop signal sent to loops.")

    def pause(self) -> None:
        self._paused = True
        self._engine.events.record("paused")

    def resume(self) -> None:
        self._paused = False
        self._engine.events.record("resumed")

    def get_status(self) -> dict:
        return {
            "running": self.running,
            "paused": self._paused,
            "started_at": self._started_at,
            "scan_interval_seconds": self._scan_interval,
            "exit_interval_seconds": self._exit_interval,
            "ticks": dict(self._ticks),
        }

    # ── Loops ────────────────────────────────────────────────────────────

    async def _sleep(self, seconds: float) -> bool:
        """Sleep up to *seconds*; ``True`` if a stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _scan_loop(self) -> None:
        while not self._stop_event.is_set():
            if not self._paused:
                self._ticks["scan"] += 1
                try:
                    self._engine.trigger_scan()
                except Exception as exc:
                    self._tick_failed("scan", exc)
            if await self._sleep(self._scan_interval):
                break

    async def _exit_loop(self) -> None:
        while not self._stop_event.is_set():
            if not self._paused:
                self._ticks["exit"] += 1
                try:
                    await self._engine.run_exit_once()
                except Exception as exc:
                    self._tick_failed("exit", exc)
            if await self._sleep(self._exit_interval):
                break

    def _tick_failed(self, loop: str, exc: Exception) -> None:
        # One failed tick never ends the loop
        logger.error("%s tick %d error: %s", loop.capitalize(), self._ticks[loop], exc)
        self._engine.events.record(
            "data_error", source=f"{loop}_tick", error=str(exc) or type(exc).__name__,
        )
