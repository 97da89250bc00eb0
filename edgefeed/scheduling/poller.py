# edgefeed/scheduling/poller.py

import asyncio
from typing import Any, Awaitable, Callable, Optional, Set

from loguru import logger

from edgefeed.config.settings import settings
from edgefeed.models.enums import PollingState
from edgefeed.utils.events import Subscription
from .host import HostEnvironment, HostStatus, StaticHost

RefreshCallback = Callable[[bool], Awaitable[Any]]


class PollingScheduler:
    """Calls ``refresh_callback(force)`` on an interval, pausing with the host.

    The timer pauses while the host is offline, and while it is hidden unless
    the consumer is ``continuous``. Coming back triggers one forced refresh,
    after which the normal interval resumes.
    A refresh already running when the timer pauses is left to finish.
    """

    def __init__(
        self,
        refresh_callback: RefreshCallback,
        interval: Optional[float] = None,
        continuous: bool = False,
        host: Optional[HostEnvironment] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        name: str = "poller",
    ):
        self._callback = refresh_callback
        self.continuous = continuous
        self.interval = interval or (
            settings.live_poll_interval if continuous else settings.pregame_poll_interval
        )
        self.host = host or StaticHost()
        self.name = name
        self._sleep = sleep
        self._state = PollingState.IDLE
        self._timer: Optional[asyncio.Task] = None
        self._busy_timers: Set[asyncio.Task] = set()
        self._manual: Set[asyncio.Task] = set()
        self._host_sub: Optional[Subscription] = None
        self.refresh_count = 0

    @property
    def state(self) -> PollingState:
        return self._state

    @property
    def is_polling(self) -> bool:
        return self._state == PollingState.RUNNING

    def _paused_state(self) -> Optional[PollingState]:
        if self.host.can_detect_online and not self.host.is_online():
            return PollingState.PAUSED_OFFLINE
        if (
            self.host.can_detect_visibility
            and not self.host.is_visible()
            and not self.continuous
        ):
            return PollingState.PAUSED_HIDDEN
        return None

    async def _invoke(self, force: bool) -> None:
        self.refresh_count += 1
        try:
            await self._callback(force)
        except Exception as e:
            # Keep the timer alive; the consumer reports its own errors
            logger.exception(f"[{self.name}] refresh failed: {e}")

    async def _timed_invoke(self, me: asyncio.Task, force: bool) -> bool:
        """Invoke for timer ``me``; False once that timer has been halted."""
        self._busy_timers.add(me)
        try:
            await self._invoke(force)
        finally:
            self._busy_timers.discard(me)
        return self._timer is me

    async def _run_timer(self, initial_force: Optional[bool]) -> None:
        me = asyncio.current_task()
        if initial_force is not None and not await self._timed_invoke(me, initial_force):
            return
        while True:
            await self._sleep(self.interval)
            if not await self._timed_invoke(me, False):
                return

    def _start_timer(self, initial_force: Optional[bool] = None) -> None:
        self._halt_timer()
        self._timer = asyncio.ensure_future(self._run_timer(initial_force))

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    def _halt_timer(self) -> None:
        """Detach the timer, letting a refresh it is running finish on its own."""
        timer, self._timer = self._timer, None
        if timer is not None and timer not in self._busy_timers and not timer.done():
            timer.cancel()

    def start(self, immediate: bool = False) -> None:
        """Start the timer. ``immediate`` runs one cache-respecting refresh first."""
        if self._state not in (PollingState.IDLE, PollingState.STOPPED):
            return
        self._host_sub = self.host.subscribe(self._on_host_change)
        paused = self._paused_state()
        if paused is not None:
            self._state = paused
            logger.info(f"[{self.name}] started paused ({paused.value})")
            return
        self._state = PollingState.RUNNING
        self._start_timer(False if immediate else None)
        logger.info(f"[{self.name}] polling every {self.interval:g}s")

    def stop(self) -> None:
        """Stop the timer, cancel refreshes in progress and release the host."""
        if self._state == PollingState.STOPPED:
            return
        self._cancel_timer()
        for task in [*self._busy_timers, *self._manual]:
            task.cancel()
        if self._host_sub is not None:
            self._host_sub.unsubscribe()
            self._host_sub = None
        self._state = PollingState.STOPPED
        logger.info(f"[{self.name}] polling stopped")

    async def aclose(self) -> None:
        """Stop and wait for cancelled work to unwind."""
        pending = [t for t in [self._timer, *self._busy_timers, *self._manual] if t is not None]
        self.stop()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def refresh(self, force: bool = False) -> None:
        """Run one refresh now, outside the timer. Cancelled by :meth:`stop`."""
        task = asyncio.ensure_future(self._invoke(force))
        self._manual.add(task)
        task.add_done_callback(self._manual.discard)
        await task

    def _on_host_change(self, status: HostStatus) -> None:
        if self._state in (PollingState.IDLE, PollingState.STOPPED):
            return
        paused = self._paused_state()
        if paused is not None:
            if self._state != paused:
                logger.info(f"[{self.name}] pausing: {paused.value}")
                self._halt_timer()
                self._state = paused
            return
        if self._state in (PollingState.PAUSED_HIDDEN, PollingState.PAUSED_OFFLINE):
            logger.info(f"[{self.name}] resuming with a forced refresh")
            self._state = PollingState.RUNNING
            self._start_timer(initial_force=True)
