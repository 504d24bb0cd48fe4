"""
Fixed-interval sweep scheduler.

At most one sweep runs at a time: a tick that fires while the previous sweep
is still running is skipped and logged, never queued.
"""
import asyncio
from typing import Any, Dict, Optional

from loguru import logger

from pricealerts.rules.engine import AlertEngine
from pricealerts.rules.types import SweepReport


class SweepScheduler:

    def __init__(
        self,
        engine: AlertEngine,
        interval_seconds: float = 300,
        sweep_deadline_seconds: Optional[float] = 240,
        run_on_start: bool = True,
    ):
        """
        Args:
            engine: Engine that runs one sweep
            interval_seconds: Time between ticks
            sweep_deadline_seconds: Soft deadline passed to each sweep
            run_on_start: Fire the first tick immediately instead of after one interval
        """
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.sweep_deadline_seconds = sweep_deadline_seconds
        self.run_on_start = run_on_start
        self.running = False

        self._sweep_lock = asyncio.Lock()
        self._current: Optional[asyncio.Task] = None

        self.sweeps_completed = 0
        self.sweeps_failed = 0
        self.skipped_ticks = 0
        self.overruns = 0
        self.alerts_triggered = 0
        self.last_report: Optional[SweepReport] = None

    @property
    def is_sweeping(self) -> bool:
        return self._sweep_lock.locked()

    async def tick(self) -> Optional[asyncio.Task]:
        """
        Start a sweep unless one is already running.

        Returns:
            The sweep task, or None when the tick was skipped
        """
        if self._sweep_lock.locked():
            self.skipped_ticks += 1
            logger.warning(f"Previous sweep still running, skipping tick (skipped so far: {self.skipped_ticks})")
            return None

        await self._sweep_lock.acquire()
        task = asyncio.create_task(self._sweep(), name="Sweep")
        # Released from a callback so a task cancelled before it starts still frees the lock
        task.add_done_callback(lambda _: self._sweep_lock.release())
        self._current = task
        return task

    async def run_once(self) -> Optional[SweepReport]:
        """Run a single sweep now and wait for it."""
        task = await self.tick()
        if task is None:
            return None
        return await task

    async def _sweep(self) -> Optional[SweepReport]:
        try:
            report = await self.engine.run_sweep(deadline_seconds=self.sweep_deadline_seconds)
        except asyncio.CancelledError:
            logger.warning("Sweep cancelled")
            raise
        except Exception as e:
            self.sweeps_failed += 1
            logger.exception(f"Sweep failed: {e}")
            return None

        self.sweeps_completed += 1
        self.alerts_triggered += report.alerts_triggered
        if report.overrun:
            self.overruns += 1
        self.last_report = report
        return report

    async def run(self):
        """Main loop: tick every interval until stop() or cancellation."""
        self.running = True
        logger.info(
            f"Sweep scheduler started: every {self.interval_seconds}s, "
            f"deadline {self.sweep_deadline_seconds}s"
        )

        loop = asyncio.get_running_loop()
        next_tick = loop.time() if self.run_on_start else loop.time() + self.interval_seconds

        try:
            while self.running:
                delay = next_tick - loop.time()
                if delay > 0:
                    await asyncio.sleep(delay)
                if not self.running:
                    break

                await self.tick()

                next_tick += self.interval_seconds
                if next_tick < loop.time():
                    # Fell behind (process suspended); realign instead of firing a burst
                    next_tick = loop.time() + self.interval_seconds
        finally:
            await self._cancel_current()

    async def stop(self):
        """Stop the scheduler gracefully."""
        logger.info("Stopping sweep scheduler...")
        self.running = False
        await self._cancel_current()

    async def _cancel_current(self):
        task = self._current
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "sweeping": self.is_sweeping,
            "sweeps_completed": self.sweeps_completed,
            "sweeps_failed": self.sweeps_failed,
            "skipped_ticks": self.skipped_ticks,
            "overruns": self.overruns,
            "alerts_triggered": self.alerts_triggered,
            "last_sweep": self.last_report.as_dict() if self.last_report else None,
        }


_scheduler_instance: Optional[SweepScheduler] = None


def get_scheduler(dry_run: bool = False) -> SweepScheduler:
    """Get global sweep scheduler (singleton)."""
    global _scheduler_instance
    if _scheduler_instance is None:
        from pricealerts.config import get_scheduler_config
        from pricealerts.rules.engine import get_alert_engine

        cfg = get_scheduler_config()
        _scheduler_instance = SweepScheduler(
            engine=get_alert_engine(dry_run),
            interval_seconds=cfg['interval_seconds'],
            sweep_deadline_seconds=cfg['sweep_deadline_seconds'],
            run_on_start=cfg['run_on_start'],
        )
    return _scheduler_instance
