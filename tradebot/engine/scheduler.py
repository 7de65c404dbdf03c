"""Tick controller: the periodic loop that drives every active instrument.

Wraps an APScheduler ``AsyncIOScheduler`` interval job. A single asyncio lock
guards every pass (scheduled, manual and single-instrument), so passes never
overlap; a pass that finds the lock held is skipped, not queued.

``stop()`` bumps a stop counter. A pass remembers the counter at the moment it
was requested and ends before its next instrument once the counter moves, so a
pass queued before the stop never starts work after it.
"""

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tradebot.config import settings
from tradebot.engine.pair_job import CycleOutcome, PairProcessor

logger = logging.getLogger(__name__)

JOB_ID = "trading_tick"


@dataclass
class TickSummary:
    started_at: datetime
    finished_at: datetime | None = None
    processed: int = 0
    errors: int = 0
    halted: bool = False
    outcomes: dict[str, str] = field(default_factory=dict)  # symbol -> action

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "processed": self.processed,
            "errors": self.errors,
            "halted": self.halted,
            "outcomes": self.outcomes,
        }


class TickController:
    def __init__(self, processor: PairProcessor, store, scheduler: AsyncIOScheduler | None = None,
                 instrument_timeout: float | None = None):
        self.processor = processor
        self.store = store
        self.scheduler = scheduler or AsyncIOScheduler()
        self.instrument_timeout = instrument_timeout or settings.instrument_timeout_seconds
        self.interval_ms: int | None = None
        self.last_tick_at: datetime | None = None
        self.last_summary: TickSummary | None = None
        self._running = False
        self._stops = 0
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pass_in_progress(self) -> bool:
        return self._lock.locked()

    def start(self, interval_ms: int | None = None, run_immediately: bool = True) -> bool:
        """Schedule the tick job; returns False if it is already running."""
        if self._running:
            logger.warning("Tick controller already running")
            return False
        interval_ms = interval_ms or settings.tick_interval_ms
        if interval_ms <= 0:
            raise ValueError(f"interval_ms must be positive, got {interval_ms}")

        if not self.scheduler.running:
            self.scheduler.start()
        kwargs = {}
        if run_immediately:
            kwargs["next_run_time"] = datetime.now(timezone.utc)
        self.scheduler.add_job(
            self._scheduled_tick,
            trigger=IntervalTrigger(seconds=interval_ms / 1000),
            id=JOB_ID,
            name="Trading tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            **kwargs,
        )
        self.interval_ms = interval_ms
        self._running = True
        logger.info(f"Tick controller started, interval {interval_ms} ms")
        return True

    def stop(self) -> bool:
        """Cancel the tick job; an in-flight pass halts before its next instrument."""
        if not self._running:
            logger.warning("Tick controller is not running")
            return False
        self._stops += 1
        if self.scheduler.get_job(JOB_ID):
            self.scheduler.remove_job(JOB_ID)
        self._running = False
        logger.info("Tick controller stopped")
        return True

    def shutdown(self):
        if self._running:
            self.stop()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def status(self) -> dict:
        job = self.scheduler.get_job(JOB_ID) if self.scheduler.running else None
        return {
            "running": self._running,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "interval_ms": self.interval_ms,
            "pass_in_progress": self.pass_in_progress,
            "next_run": str(job.next_run_time) if job and job.next_run_time else None,
            "last_summary": self.last_summary.to_dict() if self.last_summary else None,
        }

    def run_once(self) -> Awaitable[TickSummary | None]:
        """One pass over every active instrument; None if a pass is in flight.

        A ``stop()`` issued after this call halts the pass before its next
        instrument, even if the pass has not started yet.
        """
        return self._run_pass(self._stops)

    async def _scheduled_tick(self) -> TickSummary | None:
        if not self._running:
            logger.info("Tick controller stopped; skipping scheduled tick")
            return None
        return await self.run_once()

    def _halted(self, stops: int) -> bool:
        return self._stops != stops

    async def _run_pass(self, stops: int) -> TickSummary | None:
        if self._lock.locked():
            logger.warning("Skipping tick: previous pass still in progress")
            return None
        async with self._lock:
            self.last_tick_at = datetime.now(timezone.utc)
            summary = TickSummary(started_at=self.last_tick_at)
            try:
                pairs = self.store.list_active_pairs()
            except Exception as e:
                logger.error(f"Could not load active pairs: {e}", exc_info=True)
                pairs = []
            logger.info(f"Tick started: {len(pairs)} active pairs")

            for pair in pairs:
                if self._halted(stops):
                    logger.info("Halt requested; ending pass early")
                    summary.halted = True
                    break
                outcome = await self._run_instrument(pair)
                summary.processed += 1
                summary.outcomes[pair.symbol] = outcome.action
                if outcome.status == "error":
                    summary.errors += 1

            summary.finished_at = datetime.now(timezone.utc)
            self.last_summary = summary
            logger.info(
                f"Tick finished: processed={summary.processed} errors={summary.errors}"
            )
            return summary

    def process_instrument(self, pair_id: int) -> Awaitable[CycleOutcome | None]:
        """Diagnostic single-instrument pass; None if unknown, busy or halted."""
        return self._run_single(pair_id, self._stops)

    async def _run_single(self, pair_id: int, stops: int) -> CycleOutcome | None:
        if self._lock.locked():
            logger.warning(f"Skipping manual run for pair {pair_id}: pass in progress")
            return None
        async with self._lock:
            if self._halted(stops):
                logger.info(f"Halt requested; skipping manual run for pair {pair_id}")
                return None
            pair = self.store.get_pair(pair_id)
            if pair is None:
                logger.warning(f"Pair {pair_id} not found")
                return None
            return await self._run_instrument(pair)

    async def _run_instrument(self, pair) -> CycleOutcome:
        try:
            return await asyncio.wait_for(
                self.processor.process(pair), timeout=self.instrument_timeout
            )
        except asyncio.TimeoutError:
            msg = f"Cycle timed out after {self.instrument_timeout}s"
            logger.error(f"[{pair.symbol}] {msg}")
            self.store.log_cycle(pair.id, "error", action="cycle_timeout", message=msg)
            return CycleOutcome("error", "cycle_timeout", msg)
        except Exception as e:
            logger.error(f"[{pair.symbol}] Unhandled cycle error: {e}", exc_info=True)
            self.store.log_cycle(pair.id, "error", action="cycle_error", message=str(e))
            return CycleOutcome("error", "cycle_error", str(e))


# ---------------------------------------------------------------------------
# Application-wide controller handle
# ---------------------------------------------------------------------------

_controller: TickController | None = None


def set_controller(controller: TickController | None):
    global _controller
    _controller = controller


def get_controller() -> TickController | None:
    return _controller
