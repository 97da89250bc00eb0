from abc import ABC
from typing import Callable

from loguru import logger
from pydantic import BaseModel, ConfigDict

from edgefeed.utils.events import EventEmitter, Subscription


class HostStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    visible: bool = True
    online: bool = True


class HostEnvironment(ABC):
    """Visibility and connectivity signals of whatever embeds the feeds.

    Hosts that cannot detect a signal report it as always true, so the
    scheduler never pauses on their account.
    """

    can_detect_visibility: bool = False
    can_detect_online: bool = False

    def is_visible(self) -> bool:
        return True

    def is_online(self) -> bool:
        return True

    def status(self) -> HostStatus:
        return HostStatus(visible=self.is_visible(), online=self.is_online())

    def subscribe(self, callback: Callable[[HostStatus], None]) -> Subscription:
        return Subscription(lambda: None)


class StaticHost(HostEnvironment):
    """A host with no signals (CLI, server process). Never pauses polling."""

    pass


class ManualHost(HostEnvironment):
    """Host whose signals are set explicitly, e.g. by an embedding app or tests."""

    can_detect_visibility = True
    can_detect_online = True

    def __init__(self, visible: bool = True, online: bool = True):
        self._visible = visible
        self._online = online
        self._changes: EventEmitter[HostStatus] = EventEmitter(name="host")

    def is_visible(self) -> bool:
        return self._visible

    def is_online(self) -> bool:
        return self._online

    def set_visible(self, visible: bool) -> None:
        if visible == self._visible:
            return
        self._visible = visible
        logger.debug(f"Host visibility changed: visible={visible}")
        self._changes.emit(self.status())

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.debug(f"Host connectivity changed: online={online}")
        self._changes.emit(self.status())

    def subscribe(self, callback: Callable[[HostStatus], None]) -> Subscription:
        return self._changes.subscribe(callback)
