import math
from abc import ABC, abstractmethod
from typing import Callable, Optional

from loguru import logger

from edgefeed.config.settings import settings
from edgefeed.models.config import ConfigurationError
from edgefeed.utils.events import EventEmitter, Subscription

MAX_BANKROLL = 1_000_000


class BankrollProvider(ABC):
    """Read-only view of the user's bankroll used to cap stake sizing."""

    @abstractmethod
    def get_bankroll(self) -> float:
        pass

    @abstractmethod
    def on_change(self, callback: Callable[[float], None]) -> Subscription:
        pass


class InMemoryBankroll(BankrollProvider):
    """Bankroll held in memory, with validation on every update."""

    def __init__(self, amount: Optional[float] = None):
        self._amount = self.validate(
            settings.default_bankroll if amount is None else amount
        )
        self._changes: EventEmitter[float] = EventEmitter(name="bankroll")

    @staticmethod
    def validate(amount: float) -> float:
        """Raises ConfigurationError unless 0 <= amount <= 1,000,000."""
        try:
            value = float(amount)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Bankroll must be a number, got {amount!r}") from e
        if not math.isfinite(value) or value < 0 or value > MAX_BANKROLL:
            raise ConfigurationError(
                f"Bankroll must be between 0 and {MAX_BANKROLL:,}, got {amount!r}"
            )
        return value

    def get_bankroll(self) -> float:
        return self._amount

    def set_bankroll(self, amount: float) -> None:
        value = self.validate(amount)
        if value == self._amount:
            return
        logger.info(f"Bankroll updated: {self._amount:.2f} -> {value:.2f}")
        self._amount = value
        self._changes.emit(value)

    def on_change(self, callback: Callable[[float], None]) -> Subscription:
        return self._changes.subscribe(callback)
