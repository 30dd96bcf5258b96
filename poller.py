"""
Background Poller - the single recurring timer that drives both schedulers.

Every tick runs the threshold pass, then the reminder pass, sequentially.
Correctness never depends on in-memory timers: due checks compare persisted
trigger times with wall-clock now, so a restarted process simply catches up
on its next tick.

    poller = BackgroundPoller(threshold_scheduler, reminder_scheduler)
    await poller.run()   # blocks until SIGTERM/SIGINT or request_shutdown()

arm_fast_path() adds a one-shot tick close to a short trigger time (test-mode
campaigns) on top of the regular interval. Losing it on restart is harmless.
"""

import asyncio
import logging
import os
import signal
from datetime import datetime
from typing import Dict, Optional

import config
from database import DurableStore, get_store
from errors import PersistenceError
from models import utcnow
from reminder_scheduler import ReminderScheduler
from threshold_scheduler import ThresholdScheduler

logger = logging.getLogger("escalation.poller")


class BackgroundPoller:

    HEARTBEAT_KEY = "heartbeat:poller"

    def __init__(self, threshold_scheduler: ThresholdScheduler, reminder_scheduler: ReminderScheduler,
                 store: DurableStore = None, interval_seconds: int = None,
                 fast_path_max_seconds: int = None):
        self.threshold_scheduler = threshold_scheduler
        self.reminder_scheduler = reminder_scheduler
        self.store = store or get_store()
        self.interval_seconds = interval_seconds or config.POLL_INTERVAL_SECONDS
        self.fast_path_max_seconds = (
            config.FAST_PATH_MAX_SECONDS if fast_path_max_seconds is None else fast_path_max_seconds
        )

        self.tick_count = 0
        self.failed_ticks = 0

        # Bound to the running event loop by run()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._shutdown: Optional[asyncio.Event] = None
        self._tick_lock: Optional[asyncio.Lock] = None
        self._fast_path_handles: list = []
        self._fast_path_tasks: set = set()

    # ── One evaluation pass ──────────────────────────────────────────

    def tick(self, now: datetime = None) -> Dict:
        """
        Run one threshold pass then one reminder pass.

        Any failure is logged and ends this tick only; the next tick retries
        from persisted state.
        """
        now = now or utcnow()
        summary = {"at": now, "schedules": 0, "reminders": 0, "ok": True, "error": None}

        try:
            schedules = self.threshold_scheduler.evaluate_due_schedules(now)
            summary["schedules"] = len(schedules)
            reminders = self.reminder_scheduler.evaluate_due_reminders(now)
            summary["reminders"] = len(reminders)
        except PersistenceError as e:
            summary.update(ok=False, error=str(e))
            logger.error(f"Tick aborted - store unavailable, retrying next tick: {e}")
        except Exception as e:
            summary.update(ok=False, error=str(e))
            logger.error(f"Tick failed: {e}", exc_info=True)

        self.tick_count += 1
        if not summary["ok"]:
            self.failed_ticks += 1
        elif summary["schedules"] or summary["reminders"]:
            logger.info(
                f"Tick processed {summary['schedules']} schedules, {summary['reminders']} reminders",
                extra={"schedules": summary["schedules"], "reminders": summary["reminders"]},
            )

        self._write_heartbeat(now, summary)
        return summary

    def _write_heartbeat(self, now: datetime, summary: Dict, status: str = "running"):
        try:
            self.store.put(self.HEARTBEAT_KEY, {
                "type": "heartbeat",
                "status": status,
                "last_heartbeat": now,
                "pid": os.getpid(),
                "tick_count": self.tick_count,
                "failed_ticks": self.failed_ticks,
                "last_tick_ok": summary.get("ok", True),
                "last_error": summary.get("error"),
            })
        except PersistenceError as e:
            logger.error(f"Heartbeat write failed: {e}")

    def get_heartbeat(self) -> Optional[Dict]:
        return self.store.get(self.HEARTBEAT_KEY)

    # ── Async driver ─────────────────────────────────────────────────

    async def run_tick(self, now: datetime = None) -> Dict:
        """Run tick() off the event loop; ticks never overlap."""
        if self._tick_lock is None:
            self._tick_lock = asyncio.Lock()
        async with self._tick_lock:
            return await asyncio.to_thread(self.tick, now)

    async def run(self):
        """Tick immediately, then every interval_seconds until shutdown."""
        self._loop = asyncio.get_running_loop()
        self._shutdown = asyncio.Event()
        if self._tick_lock is None:
            self._tick_lock = asyncio.Lock()

        logger.info(f"Escalation poller started - checking every {self.interval_seconds}s")

        while not self._shutdown.is_set():
            await self.run_tick()

            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self.interval_seconds)
                break
            except asyncio.TimeoutError:
                continue

        await self._graceful_shutdown()

    def install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_signal, sig)

    def _handle_signal(self, sig):
        logger.info(f"Received signal {sig.name} - initiating graceful shutdown")
        self.request_shutdown()

    def request_shutdown(self):
        """Safe to call from any thread."""
        if self._loop is None or self._shutdown is None:
            return
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._shutdown.set)

    async def _graceful_shutdown(self):
        for handle in self._fast_path_handles:
            handle.cancel()
        self._fast_path_handles.clear()

        if self._fast_path_tasks:
            await asyncio.wait(self._fast_path_tasks, timeout=15)

        self._write_heartbeat(utcnow(), {"ok": True}, status="stopped")
        self._loop = None
        logger.info("Escalation poller stopped")

    # ── Fast path ────────────────────────────────────────────────────

    def arm_fast_path(self, trigger_at: datetime) -> bool:
        """
        Request an extra tick right at trigger_at if it is close enough.

        Thread-safe. Returns False (and does nothing) when the poller is not
        running or the trigger is beyond fast_path_max_seconds; the regular
        interval still picks the trigger up.
        """
        loop = self._loop
        if loop is None or loop.is_closed() or not loop.is_running():
            return False

        delay = (trigger_at - utcnow()).total_seconds()
        if delay > self.fast_path_max_seconds:
            return False
        delay = max(0.0, delay)

        def _arm():
            self._fast_path_handles.append(loop.call_later(delay, self._fire_fast_path))

        loop.call_soon_threadsafe(_arm)
        logger.info(f"Fast-path tick armed in {delay:.0f}s")
        return True

    def _fire_fast_path(self):
        if self._shutdown is not None and self._shutdown.is_set():
            return
        task = asyncio.ensure_future(self.run_tick())
        self._fast_path_tasks.add(task)
        task.add_done_callback(self._fast_path_tasks.discard)
