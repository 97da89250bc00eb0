# edgefeed/utils/cancellation.py
import asyncio
from typing import Callable, List, Optional


class RequestCancelledError(Exception):
    """Raised to a caller whose cancellation token fired while it was waiting."""

    pass


class CancellationToken:
    """Cooperative cancellation handle passed down to network calls.

    Code holding a token checks it at I/O boundaries with
    :meth:`raise_if_cancelled`, or races it against a pending operation with
    :meth:`wait`. The token is independent of ``asyncio`` task cancellation so
    one token can cover several tasks.
    """

    def __init__(self, reason: Optional[str] = None):
        self._cancelled = False
        self._reason = reason
        self._event: Optional[asyncio.Event] = None
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason or self._reason or "cancelled"
        if self._event is not None:
            self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` once when the token is cancelled (immediately if it already is)."""
        if self._cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise RequestCancelledError(self._reason or "cancelled")

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()

    def __repr__(self) -> str:
        state = f"cancelled: {self._reason}" if self._cancelled else "active"
        return f"CancellationToken({state})"


async def run_cancellable(awaitable, token: Optional[CancellationToken]):
    """Await ``awaitable`` unless ``token`` fires first.

    The awaitable is cancelled when the token fires or the caller is
    cancelled. Callers that share it with others (coalesced requests) must
    pass it through ``asyncio.shield`` so only their own wait is dropped.
    """
    if token is None:
        return await awaitable
    token.raise_if_cancelled()
    pending = asyncio.ensure_future(awaitable)
    cancel_waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {pending, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        pending.cancel()
        raise
    finally:
        cancel_waiter.cancel()
    if pending in done:
        return pending.result()
    pending.cancel()
    raise RequestCancelledError(token.reason or "cancelled")
