"""
Cron Scheduler — one recurring trigger evaluated in a configured timezone.

Runs as a background task (same start/stop shape as the other long-lived
loops). Each tick is independent:

  - the job runs only if ``is_ready()`` holds at fire time; otherwise the
    tick is logged as skipped, nothing is queued, and ``on_not_ready`` (if
    given) is awaited so the session can recover before the next tick
  - the next fire time is always computed from "now", so ticks missed while
    a run was in progress or the process was down are never caught up
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

logger = structlog.get_logger()

_MAX_SLEEP_S = 60.0   # re-check the wall clock at least this often


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CronScheduler:

    def __init__(
        self,
        cron: str,
        tz_name: str,
        job: Callable[[], Awaitable[object]],
        is_ready: Callable[[], bool],
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_not_ready: Optional[Callable[[], Awaitable[object]]] = None,
    ):
        if not croniter.is_valid(cron):
            raise ValueError(f"Invalid cron expression: {cron!r}")
        try:
            self.tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {tz_name!r}") from e

        self.cron = cron
        self.tz_name = tz_name
        self._job = job
        self._is_ready = is_ready
        self._clock = clock
        self._sleep = sleep
        self._on_not_ready = on_not_ready
        self._running = False
        self._in_tick = False
        self._last_fire: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None

    def next_fire(self, after: Optional[datetime] = None) -> datetime:
        """First fire time strictly after ``after`` (and after the last fire), tz-aware."""
        base = after or self._clock()
        if self._last_fire is not None and self._last_fire > base:
            base = self._last_fire
        return croniter(self.cron, base.astimezone(self.tz)).get_next(datetime)

    async def start(self) -> None:
        """Start the scheduling loop as a background task."""
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="cron_scheduler")
        logger.info("scheduler_initialized", cron=self.cron, timezone=self.tz_name,
                    next_run=self.next_fire().isoformat())

    async def stop(self) -> None:
        """Stop the loop. A tick in progress is awaited, a pending sleep is cancelled."""
        self._running = False
        task = self._task
        if task and not task.done():
            if not self._in_tick:
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("scheduler_stopped")

    async def _loop(self) -> None:
        while self._running:
            fire_at = self.next_fire()
            await self._sleep_until(fire_at)
            if not self._running:
                break
            await self.tick(fire_at)

    async def _sleep_until(self, when: datetime) -> None:
        while self._running:
            remaining = (when - self._clock()).total_seconds()
            if remaining <= 0:
                return
            await self._sleep(min(remaining, _MAX_SLEEP_S))

    async def _recheck(self) -> None:
        if self._on_not_ready is None:
            return
        try:
            await self._on_not_ready()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("session_recheck_failed", error=str(e))

    async def tick(self, fire_at: Optional[datetime] = None) -> bool:
        """Run the job once if the precondition holds. Returns True if it ran."""
        fire_at = fire_at or self._clock()
        self._last_fire = fire_at
        if not self._is_ready():
            logger.warning("scheduler_tick_skipped", reason="session not ready",
                           fire_at=fire_at.isoformat())
            await self._recheck()
            return False

        logger.info("scheduler_tick", fire_at=fire_at.isoformat())
        self._in_tick = True
        try:
            await self._job()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("scheduled_job_error", error=str(e))
        finally:
            self._in_tick = False
        return True
