"""
Orchestrator — wires the broadcaster together.

    Scheduler tick ──▶ run_daily ──▶ catalog.select(today in tz)
                                 ──▶ store.list_active() snapshot
                                 ──▶ DispatchEngine.run_dispatch ──▶ client.send_media

    client events ──▶ event loop ──▶ SessionState (ready / auth failure / QR)
                                 ──▶ InboundHandler (STOP / JOIN ...)

A tick that finds the session not ready re-runs the client's session check,
and a watchdog repeats that check every ``session_recheck_s`` seconds, so a
network outage at startup only costs the ticks that fire during it.

Both paths share one event loop. A dispatch run works on the snapshot taken
when it started: an unsubscribe that lands mid-run changes the store right
away but may still receive that run's message.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from channels.base import DeliveryClient
from config.settings import Settings
from content.selector import ContentCatalog, NoContentAvailable, today_in
from core.dispatcher import DispatchEngine
from core.inbound import InboundHandler
from core.scheduler import CronScheduler
from core.session import SessionState, get_session_state
from database.store_base import BaseSubscriberStore
from models.schemas import ChannelEvent, DispatchRun, InboundMessageEvent
from utils.identity import canonical_identity

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Orchestrator:

    def __init__(
        self,
        settings: Settings,
        client: DeliveryClient,
        store: BaseSubscriberStore,
        catalog: ContentCatalog,
        session: SessionState = None,
        engine: DispatchEngine = None,
        inbound: InboundHandler = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.client = client
        self.store = store
        self.catalog = catalog
        self.session = session or get_session_state()
        self.engine = engine or DispatchEngine(client, settings.dispatch)
        self.inbound = inbound or InboundHandler(store, client, settings.inbound)
        self.scheduler = CronScheduler(
            settings.schedule.cron,
            settings.schedule.timezone,
            job=self.run_daily,
            is_ready=lambda: self.session.is_ready,
            clock=clock,
            on_not_ready=self._recheck_session,
        )
        self._clock = clock
        self._sleep = sleep
        self._run_lock = asyncio.Lock()
        self._events_task: Optional[asyncio.Task] = None
        self._watchdog_task: Optional[asyncio.Task] = None
        self._running = False
        self.last_run: Optional[DispatchRun] = None

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        self._running = True
        await asyncio.to_thread(self.catalog.reload)
        self._events_task = asyncio.create_task(self._event_loop(), name="channel_events")
        await self.client.initialize()
        await self.scheduler.start()
        if self.settings.schedule.session_recheck_s > 0:
            self._watchdog_task = asyncio.create_task(self._session_watchdog(), name="session_watchdog")
        logger.info("orchestrator_started", subscribers=await self.store.count(),
                    catalog=len(self.catalog))

    async def stop(self) -> None:
        """Let the recipient in flight finish, stop loops, then release the session."""
        self._running = False
        self.engine.request_stop()
        await self.scheduler.stop()
        for task in (self._watchdog_task, self._events_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        await self.client.shutdown()
        self.session.reset()
        logger.info("orchestrator_stopped")

    # ── Events ────────────────────────────────────────────────

    async def _event_loop(self) -> None:
        while self._running:
            try:
                event = await self.client.next_event()
                await self.handle_event(event)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("event_handling_error", error=str(e))

    async def handle_event(self, event: ChannelEvent) -> None:
        if self.session.apply(event):
            return
        if isinstance(event, InboundMessageEvent):
            await self.inbound.handle(event)

    # ── Session recovery ──────────────────────────────────────

    async def _recheck_session(self) -> None:
        """Ask the client to verify its session again; the outcome arrives as an event."""
        logger.info("session_recheck", auth_failure=self.session.auth_failure)
        await self.client.ensure_ready()

    async def _session_watchdog(self) -> None:
        interval = self.settings.schedule.session_recheck_s
        while self._running:
            try:
                await self._sleep(interval)
                if not self.session.is_ready:
                    await self._recheck_session()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("session_recheck_failed", error=str(e))

    # ── Daily job ─────────────────────────────────────────────

    async def run_daily(self, day: Optional[date] = None, only: Optional[str] = None) -> Optional[DispatchRun]:
        """
        Select the content for ``day`` (today in the configured timezone by
        default) and send it to every active subscriber, or only to ``only``.
        Returns None when there is nothing to do or a run is already active.
        """
        if self._run_lock.locked():
            logger.warning("dispatch_already_running")
            return None

        async with self._run_lock:
            await asyncio.to_thread(self.catalog.reload)
            day = day or today_in(self.settings.schedule.timezone, self._clock())
            try:
                index, item = self.catalog.select(day)
            except NoContentAvailable:
                logger.warning("dispatch_nothing_to_do", reason="content catalog is empty")
                return None
            logger.info("content_selected", date=day.isoformat(), index=index, text=item.text)

            recipients = await self.store.list_active()
            if only:
                key = canonical_identity(only)
                recipients = [s for s in recipients if s.canonical == key]
            if not recipients:
                logger.warning("dispatch_nothing_to_do", reason="no active subscribers")
                return None

            run = await self.engine.run_dispatch(item, recipients, content_index=index)
            self.last_run = run
            return run

    # ── Status ────────────────────────────────────────────────

    async def status(self) -> dict[str, Any]:
        last = self.last_run
        return {
            "session": self.session.to_dict(),
            "subscribers": await self.store.count(),
            "catalog": len(self.catalog),
            "schedule": {
                "cron": self.settings.schedule.cron,
                "timezone": self.settings.schedule.timezone,
                "next_run": self.scheduler.next_fire().isoformat(),
            },
            "last_run": {
                "content_index": last.selected_content_index,
                "finished_at": last.finished_at.isoformat() if last.finished_at else None,
                **last.summary(),
            } if last else None,
        }
