"""
Tests for SessionWatchdog.

Covers:
  - Pass 1: inactivity warning inside [timeout − warning, timeout)
  - Pass 2: 24h closing-window warning for admin/supervisor phones
  - Pass 3: expiry notice + reset to START
  - At most one notice per inactivity episode
  - Re-check under lock, version conflicts, start/stop
"""
import asyncio
from datetime import timedelta

import pytest

from channels.base import FatalDeliveryError
from channels.messenger import ResilientMessenger
from conversation import prompts
from core.locks import KeyedLock
from core.runtime_config import ConfigKeys
from core.watchdog import SessionWatchdog
from models.schemas import ConversationState, StaffMember, StaffRole, utcnow

CUSTOMER = "5215512345678"
OTHER = "5215587654321"
ADMIN_PHONE = "5215500000001"


async def _session(store, customer_id, state, idle, **flags):
    session = await store.create_session(customer_id)
    session.state = state
    session.last_activity_at = utcnow() - idle
    for name, value in flags.items():
        setattr(session, name, value)
    return await store.save_session(session)


@pytest.fixture
def watchdog(store, messenger, runtime_config):
    return SessionWatchdog(store, messenger, runtime_config, interval_s=0.01)


class TestInactivityWarning:
    @pytest.mark.asyncio
    async def test_warns_inside_window(self, watchdog, store, transport):
        await _session(store, CUSTOMER, ConversationState.TAKING_ORDER, timedelta(minutes=28, seconds=30))
        stats = await watchdog.run_cycle()

        assert stats["warned"] == 1
        assert transport.bodies(CUSTOMER) == [prompts.INACTIVITY_WARNING]
        session = await store.get_session(CUSTOMER)
        assert session.warning_sent is True
        assert session.state == ConversationState.TAKING_ORDER

    @pytest.mark.asyncio
    async def test_warns_once_per_episode(self, watchdog, store, transport):
        await _session(store, CUSTOMER, ConversationState.TAKING_ORDER, timedelta(minutes=29))
        await watchdog.run_cycle()
        stats = await watchdog.run_cycle()
        assert stats["warned"] == 0
        assert transport.bodies(CUSTOMER) == [prompts.INACTIVITY_WARNING]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("idle_minutes", [5, 27])
    async def test_no_warning_before_window(self, watchdog, store, transport, idle_minutes):
        await _session(store, CUSTOMER, ConversationState.MENU, timedelta(minutes=idle_minutes))
        stats = await watchdog.run_cycle()
        assert stats == {"warned": 0, "closing_warned": 0, "expired": 0,
                         "skipped": 0, "conflicts": 0}
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_start_sessions_are_ignored(self, watchdog, store, transport):
        await _session(store, CUSTOMER, ConversationState.START, timedelta(hours=3))
        await watchdog.run_cycle()
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_uses_runtime_timeout(self, watchdog, store, transport):
        await store.set_config_value(ConfigKeys.SESSION_TIMEOUT_MINUTES, "10")
        await store.set_config_value(ConfigKeys.SESSION_WARNING_MINUTES, "5")
        await _session(store, CUSTOMER, ConversationState.MENU, timedelta(minutes=6))
        stats = await watchdog.run_cycle()
        assert stats["warned"] == 1


class TestClosingWindow:
    @pytest.mark.asyncio
    async def test_staff_gets_closing_warning(self, watchdog, store, transport):
        await store.upsert_staff(StaffMember(name="Admin", phone=ADMIN_PHONE, role=StaffRole.ADMIN))
        await _session(store, ADMIN_PHONE, ConversationState.START, timedelta(hours=23, minutes=10))
        await _session(store, CUSTOMER, ConversationState.START, timedelta(hours=23, minutes=10))

        stats = await watchdog.run_cycle()
        assert stats["closing_warned"] == 1
        assert transport.bodies(ADMIN_PHONE) == [prompts.CLOSING_WINDOW_WARNING]
        assert transport.bodies(CUSTOMER) == []
        assert (await store.get_session(ADMIN_PHONE)).closing_warning_sent is True

    @pytest.mark.asyncio
    async def test_operator_is_not_warned(self, watchdog, store, transport):
        await store.upsert_staff(StaffMember(name="Op", phone=OTHER, role=StaffRole.OPERATOR))
        await _session(store, OTHER, ConversationState.START, timedelta(hours=23, minutes=30))
        await watchdog.run_cycle()
        assert transport.sent == []


class TestExpiry:
    @pytest.mark.asyncio
    async def test_expired_session_is_reset(self, watchdog, store, transport):
        session = await _session(store, CUSTOMER, ConversationState.AWAITING_CONFIRM,
                                 timedelta(minutes=31), warning_sent=True)
        session.scratch_buffer = "1 kg de arrachera"
        await store.save_session(session)

        stats = await watchdog.run_cycle()
        assert stats["expired"] == 1
        assert transport.bodies(CUSTOMER) == [prompts.SESSION_EXPIRED]
        session = await store.get_session(CUSTOMER)
        assert session.state == ConversationState.START
        assert session.scratch_buffer is None

    @pytest.mark.asyncio
    async def test_failed_send_still_resets(self, watchdog, store, transport):
        transport.failures = [FatalDeliveryError("bad request", status_code=400)]
        await _session(store, CUSTOMER, ConversationState.MENU, timedelta(hours=2))
        stats = await watchdog.run_cycle()
        assert stats["expired"] == 1
        assert (await store.get_session(CUSTOMER)).state == ConversationState.START


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_touched_after_listing_is_skipped(self, store, messenger, runtime_config):
        await _session(store, CUSTOMER, ConversationState.MENU, timedelta(minutes=29))
        original_list = store.list_sessions

        async def list_then_touch():
            sessions = await original_list()
            fresh = await store.get_session(CUSTOMER)
            fresh.touch()
            await store.save_session(fresh)
            return sessions

        store.list_sessions = list_then_touch
        watchdog = SessionWatchdog(store, messenger, runtime_config)
        stats = await watchdog.run_cycle()
        assert stats["warned"] == 0
        assert stats["skipped"] >= 1
        assert messenger.transport.sent == []

    @pytest.mark.asyncio
    async def test_version_conflict_is_not_overwritten(self, store, transport, pipeline,
                                                       runtime_config):
        await _session(store, CUSTOMER, ConversationState.MENU, timedelta(minutes=29))
        await _session(store, OTHER, ConversationState.MENU, timedelta(minutes=29))

        class TouchingMessenger(ResilientMessenger):
            """The second notice races with an inbound message from the first customer."""

            async def send_text(self, to, body):
                if to == OTHER:
                    fresh = await store.get_session(CUSTOMER)
                    fresh.state = ConversationState.TAKING_ORDER
                    fresh.touch()
                    await store.save_session(fresh)
                return await super().send_text(to, body)

        watchdog = SessionWatchdog(store, TouchingMessenger(transport, store, pipeline),
                                   runtime_config)
        stats = await watchdog.run_cycle()

        assert stats["conflicts"] == 1
        assert stats["warned"] == 1
        racing = await store.get_session(CUSTOMER)
        assert racing.state == ConversationState.TAKING_ORDER
        assert racing.warning_sent is False
        assert (await store.get_session(OTHER)).warning_sent is True

    @pytest.mark.asyncio
    async def test_waits_for_customer_lock(self, store, messenger, runtime_config, transport):
        await _session(store, CUSTOMER, ConversationState.MENU, timedelta(minutes=29))
        locks = KeyedLock()
        watchdog = SessionWatchdog(store, messenger, runtime_config, locks=locks)

        async with locks.lock(CUSTOMER):
            cycle = asyncio.create_task(watchdog.run_cycle())
            await asyncio.sleep(0.01)
            assert transport.sent == []
            fresh = await store.get_session(CUSTOMER)
            fresh.touch()
            await store.save_session(fresh)

        stats = await cycle
        assert stats["skipped"] == 1
        assert transport.sent == []


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, watchdog, store, transport):
        await _session(store, CUSTOMER, ConversationState.MENU, timedelta(hours=1))
        await watchdog.start()
        assert watchdog.running
        for _ in range(50):
            if transport.sent:
                break
            await asyncio.sleep(0.01)
        await watchdog.stop()

        assert not watchdog.running
        assert transport.bodies(CUSTOMER) == [prompts.SESSION_EXPIRED]

    @pytest.mark.asyncio
    async def test_cycle_errors_do_not_kill_loop(self, watchdog, store):
        calls = 0
        original = store.list_sessions

        async def flaky():
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("db down")
            return await original()

        store.list_sessions = flaky
        await watchdog.start()
        for _ in range(50):
            if calls >= 3:
                break
            await asyncio.sleep(0.01)
        await watchdog.stop()
        assert calls >= 3
