"""Cleanup Sweeper — stale sessions are failed, fresh ones untouched."""
import pytest

from core.exceptions import SessionTimeoutError
from schemas.session import SessionStatus
from sessions.sweeper import CleanupSweeper


@pytest.fixture
def sweeper(machine, store, settings, clock):
    return CleanupSweeper(machine, store, settings, clock=clock.utcnow)


class TestRunOnce:

    @pytest.mark.asyncio
    async def test_stale_processing_session_fails_with_timeout(self, sweeper, machine, store, provider, clock, connect):
        device, _ = connect()
        session = await machine.press(device)
        await machine.release(device)
        provider.ended.clear()

        clock.advance(11 * 60)
        expired = await sweeper.run_once()

        assert expired == [session.session_id]
        assert provider.ended == [session.session_id]
        stored = await store.get_streaming_session(session.session_id)
        assert stored.status == SessionStatus.FAILED
        assert stored.error == "timeout"
        assert stored.end_time is not None
        assert machine.tracked_sessions() == []

    @pytest.mark.asyncio
    async def test_stale_active_session_ends_provider_once(self, sweeper, machine, provider, clock, connect):
        device, device_t = connect()
        session = await machine.press(device)

        clock.advance(11 * 60)
        await sweeper.run_once()

        assert provider.ended == [session.session_id]
        assert device_t.last("stream_error")["payload"]["code"] == SessionTimeoutError().code == "SESSION_TIMEOUT"
        assert device.is_streaming is False

    @pytest.mark.asyncio
    async def test_young_sessions_untouched(self, sweeper, machine, store, clock, connect):
        device, _ = connect()
        session = await machine.press(device)

        clock.advance(9 * 60)
        assert await sweeper.run_once() == []
        assert (await store.get_streaming_session(session.session_id)).status == SessionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_sweep_after_disconnect_is_noop(self, sweeper, machine, store, registry, clock, connect):
        device, _ = connect()
        session = await machine.press(device)
        registry.unregister(device.connection_id)
        await machine.detach_device(device)

        clock.advance(11 * 60)
        assert await sweeper.run_once() == []
        assert (await store.get_streaming_session(session.session_id)).error == "disconnected"

    @pytest.mark.asyncio
    async def test_provider_end_error_does_not_stop_sweep(self, sweeper, machine, provider, clock, connect):
        d1, _ = connect(device_id="d1")
        d2, _ = connect(device_id="d2")
        s1 = await machine.press(d1)
        s2 = await machine.press(d2)
        provider.fail_end = True

        clock.advance(11 * 60)
        expired = await sweeper.run_once()

        assert sorted(expired) == sorted([s1.session_id, s2.session_id])

    @pytest.mark.asyncio
    async def test_counters(self, sweeper, machine, clock, connect):
        device, _ = connect()
        await machine.press(device)
        clock.advance(11 * 60)
        await sweeper.run_once()
        await sweeper.run_once()

        status = sweeper.get_status()
        assert status["last_expired"] == 0
        assert status["total_expired"] == 1
        assert status["last_run_at"] is not None
        assert status["running"] is False


class TestStoreRecovery:

    @pytest.mark.asyncio
    async def test_sweep_brings_store_back(self, sweeper, store, fake_redis, clock):
        fake_redis.fail = True
        await store.get_device_session("d1")
        assert store.available is False

        fake_redis.fail = False
        await sweeper.run_once()
        assert store.available is True


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, sweeper):
        sweeper.start()
        assert sweeper.get_status()["running"] is True

        await sweeper.stop()
        assert sweeper.get_status()["running"] is False
        await sweeper.stop()
