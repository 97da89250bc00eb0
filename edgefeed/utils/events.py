# edgefeed/utils/events.py
from typing import Callable, Generic, List, Optional, TypeVar

from loguru import logger

T = TypeVar("T")


class Subscription:
    """Lease returned by every ``subscribe`` call. Release it on teardown."""

    def __init__(self, release: Callable[[], None]):
        self._release: Optional[Callable[[], None]] = release

    @property
    def active(self) -> bool:
        return self._release is not None

    def unsubscribe(self) -> None:
        release, self._release = self._release, None
        if release is not None:
            release()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.unsubscribe()


class EventEmitter(Generic[T]):
    """Synchronous, typed observable.

    ``emit`` calls every listener before returning. A failing listener is
    logged and does not stop delivery to the others.
    """

    def __init__(self, name: str = "emitter"):
        self.name = name
        self._listeners: List[Callable[[T], None]] = []

    def __len__(self) -> int:
        return len(self._listeners)

    def subscribe(self, callback: Callable[[T], None]) -> Subscription:
        self._listeners.append(callback)

        def release() -> None:
            try:
                self._listeners.remove(callback)
            except ValueError:
                pass

        return Subscription(release)

    def emit(self, event: T) -> None:
        # Copy so listeners may unsubscribe while being notified
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception as e:
                logger.exception(f"Listener error in {self.name}: {e}")

    def clear(self) -> None:
        self._listeners.clear()
