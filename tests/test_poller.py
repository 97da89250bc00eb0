import asyncio

import pytest

from edgefeed.config.settings import settings
from edgefeed.models.enums import PollingState
from edgefeed.scheduling.host import StaticHost
from edgefeed.scheduling.poller import PollingScheduler
from tests.conftest import settle


def recorder():
    calls = []

    async def refresh(force):
        calls.append(force)

    return calls, refresh


class TestPollingScheduler:
    def test_default_intervals(self):
        _, refresh = recorder()
        assert PollingScheduler(refresh, continuous=True).interval == settings.live_poll_interval
        assert PollingScheduler(refresh).interval == settings.pregame_poll_interval
        assert PollingScheduler(refresh, interval=5).interval == 5

    @pytest.mark.asyncio
    async def test_timer_calls_cache_respecting_refresh(self, ticker, host):
        calls, refresh = recorder()
        scheduler = PollingScheduler(refresh, interval=30, host=host, sleep=ticker.sleep)
        scheduler.start()
        await settle()
        assert scheduler.state == PollingState.RUNNING
        assert scheduler.is_polling
        assert calls == []

        await ticker.tick()
        await ticker.tick()
        assert calls == [False, False]
        assert ticker.sleeps[0] == 30
        scheduler.stop()

    @pytest.mark.asyncio
    async def test_immediate_start(self, ticker, host):
        calls, refresh = recorder()
        scheduler = PollingScheduler(refresh, host=host, sleep=ticker.sleep)
        scheduler.start(immediate=True)
        await settle()
        assert calls == [False]
        scheduler.stop()

    @pytest.mark.asyncio
    async def test_hidden_pauses_and_visible_forces_one_refresh(self, ticker, host):
        calls, refresh = recorder()
        scheduler = PollingScheduler(refresh, interval=30, host=host, sleep=ticker.sleep)
        scheduler.start()
        await settle()

        host.set_visible(False)
        await settle()
        assert scheduler.state == PollingState.PAUSED_HIDDEN
        await ticker.tick()
        await ticker.tick()
        assert calls == []

        host.set_visible(True)
        await settle()
        assert calls == [True]
        assert scheduler.state == PollingState.RUNNING

        await ticker.tick()
        assert calls == [True, False]
        scheduler.stop()

    @pytest.mark.asyncio
    async def test_pausing_lets_refresh_in_progress_finish(self, ticker, host):
        release = asyncio.Event()
        finished = []

        async def refresh(force):
            await release.wait()
            finished.append(force)

        scheduler = PollingScheduler(refresh, interval=30, host=host, sleep=ticker.sleep)
        scheduler.start(immediate=True)
        await settle()

        host.set_visible(False)
        await settle()
        assert scheduler.state == PollingState.PAUSED_HIDDEN

        release.set()
        await settle()
        assert finished == [False]
        assert ticker.sleeps == []
        await ticker.tick()
        assert finished == [False]
        scheduler.stop()

    @pytest.mark.asyncio
    async def test_resume_while_paused_refresh_runs_starts_one_timer(self, ticker, host):
        release = asyncio.Event()
        calls = []

        async def refresh(force):
            calls.append(force)
            await release.wait()

        scheduler = PollingScheduler(refresh, interval=30, host=host, sleep=ticker.sleep)
        scheduler.start(immediate=True)
        await settle()
        host.set_visible(False)
        host.set_visible(True)
        await settle()
        assert calls == [False, True]

        release.set()
        await settle()
        assert ticker.sleeps == [30]
        scheduler.stop()

    @pytest.mark.asyncio
    async def test_continuous_consumer_keeps_polling_while_hidden(self, ticker, host):
        calls, refresh = recorder()
        scheduler = PollingScheduler(refresh, continuous=True, host=host, sleep=ticker.sleep)
        scheduler.start()
        await settle()

        host.set_visible(False)
        await ticker.tick()
        assert scheduler.state == PollingState.RUNNING
        assert calls == [False]
        scheduler.stop()

    @pytest.mark.asyncio
    async def test_offline_pauses_every_consumer(self, ticker, host):
        calls, refresh = recorder()
        scheduler = PollingScheduler(refresh, continuous=True, host=host, sleep=ticker.sleep)
        scheduler.start()
        await settle()

        host.set_online(False)
        await ticker.tick()
        assert scheduler.state == PollingState.PAUSED_OFFLINE
        assert calls == []

        host.set_online(True)
        await settle()
        assert calls == [True]
        scheduler.stop()

    @pytest.mark.asyncio
    async def test_starts_paused_when_host_hidden(self, ticker, host):
        calls, refresh = recorder()
        host.set_visible(False)
        scheduler = PollingScheduler(refresh, host=host, sleep=ticker.sleep)
        scheduler.start(immediate=True)
        await settle()
        assert scheduler.state == PollingState.PAUSED_HIDDEN
        assert calls == []
        scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_refresh_in_progress(self, ticker, host):
        seen = {}

        async def refresh(force):
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                seen["cancelled"] = True
                raise

        scheduler = PollingScheduler(refresh, host=host, sleep=ticker.sleep)
        scheduler.start(immediate=True)
        await settle()
        await scheduler.aclose()

        assert seen.get("cancelled") is True
        assert scheduler.state == PollingState.STOPPED

        # Host changes after stop are ignored
        host.set_visible(False)
        host.set_visible(True)
        await settle()
        assert scheduler.state == PollingState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_cancels_manual_refresh(self, host):
        async def refresh(force):
            await asyncio.Event().wait()

        scheduler = PollingScheduler(refresh, host=host)
        scheduler.start()
        pending = asyncio.ensure_future(scheduler.refresh(force=True))
        await settle()
        scheduler.stop()
        with pytest.raises(asyncio.CancelledError):
            await pending

    @pytest.mark.asyncio
    async def test_refresh_errors_do_not_kill_the_timer(self, ticker, host):
        calls = []

        async def refresh(force):
            calls.append(force)
            if len(calls) == 1:
                raise RuntimeError("provider exploded")

        scheduler = PollingScheduler(refresh, host=host, sleep=ticker.sleep)
        scheduler.start()
        await settle()
        await ticker.tick()
        await ticker.tick()
        assert calls == [False, False]
        assert scheduler.is_polling
        scheduler.stop()

    @pytest.mark.asyncio
    async def test_static_host_never_pauses(self, ticker):
        calls, refresh = recorder()
        scheduler = PollingScheduler(refresh, host=StaticHost(), sleep=ticker.sleep)
        scheduler.start()
        await settle()
        await ticker.tick()
        assert scheduler.state == PollingState.RUNNING
        assert calls == [False]
        scheduler.stop()
