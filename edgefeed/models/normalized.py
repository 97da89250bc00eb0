from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from .enums import MarketType
from .game import EventDescriptor
from .odds import Outcome


class PricedOutcome(BaseModel):
    """An outcome together with the bookmaker offering it."""

    model_config = ConfigDict(frozen=True)

    outcome: Outcome
    bookmaker_key: str
    bookmaker_title: str
    last_update: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.outcome.name

    @property
    def price(self) -> int:
        return self.outcome.price

    @property
    def point(self) -> Optional[float]:
        return self.outcome.point

    @property
    def decimal_odds(self) -> float:
        return self.outcome.decimal_odds


class NormalizedMarket(BaseModel):
    """Best available price per outcome name for one event and market.

    ``best`` keeps the outcome names in the order they were first seen.
    """

    event: EventDescriptor
    market_key: str
    participant: Optional[str] = None
    best: Dict[str, PricedOutcome] = {}
    bookmakers_scanned: int = 0

    @property
    def market_type(self) -> MarketType:
        return MarketType.from_key(self.market_key)

    @property
    def outcomes(self) -> List[PricedOutcome]:
        return list(self.best.values())

    @property
    def is_two_way(self) -> bool:
        return len(self.best) == 2


class LineOffer(BaseModel):
    """A distinct (bookmaker, outcome, line, price) offer used for middles."""

    model_config = ConfigDict(frozen=True)

    event: EventDescriptor
    market_key: str
    bookmaker_key: str
    bookmaker_title: str
    name: str
    point: float
    price: int
    participant: Optional[str] = None
    last_update: Optional[datetime] = None

    @property
    def is_over(self) -> bool:
        return self.name.lower() == "over"

    @property
    def is_under(self) -> bool:
        return self.name.lower() == "under"

    @property
    def outcome(self) -> Outcome:
        return Outcome(
            name=self.name,
            price=self.price,
            point=self.point,
            description=self.participant,
        )
