"""
Session Watchdog — periodic inactivity sweep, independent of inbound traffic.

Runs as a background task inside the FastAPI lifespan.

Each cycle makes three passes over the stored sessions:

  1. expiring soon   state ≠ START, no warning yet,
                     elapsed ∈ [timeout − warning, timeout)   → warn, set warning_sent
  2. 24h window      admin/supervisor sessions, no closing warning yet,
                     elapsed ∈ [23h, 24h)                      → warn, set closing_warning_sent
  3. expired         state ≠ START, elapsed ≥ timeout          → notify, reset to START

Per candidate the customer's lock is taken, the freshest session reloaded and
the predicate re-checked before anything is sent. Each pass is then saved as
one batch with a version check, so a session the customer touched in the
meantime is left alone (counted under "conflicts").
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from channels.messenger import ResilientMessenger
from conversation import prompts
from core.locks import KeyedLock
from core.runtime_config import RuntimeConfig
from database.store_base import BaseBotStore
from models.schemas import ConversationState, Session, StaffRole, utcnow

logger = structlog.get_logger()

CLOSING_WINDOW_START = timedelta(hours=23)
CLOSING_WINDOW_END = timedelta(hours=24)

Predicate = Callable[[Session, datetime], bool]


class SessionWatchdog:
    """
    Sends inactivity notices and resets expired sessions.

    Usage:
        watchdog = SessionWatchdog(store, messenger, config, locks)
        await watchdog.start()
        ...
        await watchdog.stop()
    """

    def __init__(
        self,
        store: BaseBotStore,
        messenger: ResilientMessenger,
        config: RuntimeConfig,
        locks: Optional[KeyedLock] = None,
        interval_s: float = 60,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.messenger = messenger
        self.config = config
        self.locks = locks or KeyedLock()
        self.interval_s = interval_s
        self._clock = clock
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop(), name="session_watchdog")
        logger.info("session_watchdog_started", interval_s=self.interval_s)

    async def stop(self, grace_s: float = 5.0) -> None:
        self._stop_event.set()
        if self._task and not self._task.done():
            try:
                await asyncio.wait_for(self._task, timeout=grace_s)
            except asyncio.TimeoutError:
                logger.warning("session_watchdog_stop_timeout", grace_s=grace_s)
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("session_watchdog_stopped")

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    async def _loop(self) -> None:
        while not self.stopping:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("watchdog_cycle_error", error_type=type(e).__name__, error=str(e))

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass

    # ── Cycle ─────────────────────────────────────────────────

    async def run_cycle(self) -> dict[str, int]:
        """
        One sweep. Returns counts:
        {"warned": N, "closing_warned": N, "expired": N, "skipped": N, "conflicts": N}
        """
        stats = {"warned": 0, "closing_warned": 0, "expired": 0, "skipped": 0, "conflicts": 0}

        timeout = timedelta(minutes=await self.config.session_timeout_minutes())
        warning = timedelta(minutes=await self.config.session_warning_minutes())

        def expiring_soon(s: Session, now: datetime) -> bool:
            return (s.state != ConversationState.START and not s.warning_sent
                    and timeout - warning <= s.inactivity(now) < timeout)

        def expired(s: Session, now: datetime) -> bool:
            return s.state != ConversationState.START and s.inactivity(now) >= timeout

        staff_phones = set(await self.store.staff_phones([StaffRole.ADMIN, StaffRole.SUPERVISOR]))

        def closing_window(s: Session, now: datetime) -> bool:
            return (s.customer_id in staff_phones and not s.closing_warning_sent
                    and CLOSING_WINDOW_START <= s.inactivity(now) < CLOSING_WINDOW_END)

        stats["warned"] = await self._run_pass(
            "expiring", expiring_soon, prompts.INACTIVITY_WARNING, self._mark_warned, stats)
        if staff_phones and not self.stopping:
            stats["closing_warned"] = await self._run_pass(
                "closing_window", closing_window, prompts.CLOSING_WINDOW_WARNING,
                self._mark_closing_warned, stats)
        if not self.stopping:
            stats["expired"] = await self._run_pass(
                "expired", expired, prompts.SESSION_EXPIRED, self._expire, stats)

        logger.info("watchdog_cycle_complete", **stats)
        return stats

    async def _run_pass(self, name: str, predicate: Predicate, text: str,
                        mutate: Callable[[Session], None], stats: dict[str, int]) -> int:
        now = self._clock()
        candidates = [s for s in await self.store.list_sessions() if predicate(s, now)]
        if not candidates:
            return 0

        logger.info("watchdog_pass_candidates", pass_name=name, count=len(candidates))
        batch: list[Session] = []
        try:
            for candidate in candidates:
                if self.stopping:
                    break
                async with self.locks.lock(candidate.customer_id):
                    fresh = await self.store.get_session(candidate.customer_id)
                    if fresh is None or not predicate(fresh, self._clock()):
                        stats["skipped"] += 1
                        continue
                    delivered = await self.messenger.send_text(fresh.customer_id, text)
                    mutate(fresh)
                    batch.append(fresh)
                    logger.info("watchdog_notice_sent", pass_name=name,
                                customer=fresh.customer_id, delivered=delivered)
        finally:
            saved = await self._save_batch(name, batch, stats)
        return saved

    async def _save_batch(self, name: str, batch: list[Session], stats: dict[str, int]) -> int:
        if not batch:
            return 0
        async with self.locks.lock_many(s.customer_id for s in batch):
            conflicts = await self.store.save_sessions(batch)
        for customer_id in conflicts:
            logger.info("watchdog_session_conflict", pass_name=name, customer=customer_id)
        stats["conflicts"] += len(conflicts)
        return len(batch) - len(conflicts)

    # ── Mutations ─────────────────────────────────────────────

    @staticmethod
    def _mark_warned(session: Session) -> None:
        session.warning_sent = True

    @staticmethod
    def _mark_closing_warned(session: Session) -> None:
        session.closing_warning_sent = True

    @staticmethod
    def _expire(session: Session) -> None:
        session.reset()
