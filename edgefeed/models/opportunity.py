from datetime import datetime, timedelta, timezone
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, computed_field

from edgefeed.config.settings import settings

from .enums import MarketType
from .game import EventDescriptor


class OpportunityLeg(BaseModel):
    """One side of a two-leg position, sized and priced at one bookmaker."""

    model_config = ConfigDict(frozen=True)

    bookmaker_key: str
    bookmaker_title: str
    selection: str  # e.g. "Bills -3.5", "Over 45.5"
    american_odds: int
    decimal_odds: float
    point: Optional[float] = None
    stake: float
    payout: float
    implied_probability: float


ArbitrageLeg = OpportunityLeg
MiddleLeg = OpportunityLeg


class Opportunity(BaseModel):
    """Fields shared by arbitrage and middle candidates."""

    model_config = ConfigDict(frozen=True)

    id: str
    event: EventDescriptor
    market_key: str
    participant: Optional[str] = None
    legs: List[OpportunityLeg] = Field(..., min_length=2, max_length=2)
    total_stake: float
    found_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_in_ms: int = Field(default_factory=lambda: settings.opportunity_ttl_ms)

    @property
    def market_type(self) -> MarketType:
        return MarketType.from_key(self.market_key)

    @property
    def sport_key(self) -> str:
        return self.event.sport_key

    @property
    def bookmaker_keys(self) -> List[str]:
        return [leg.bookmaker_key for leg in self.legs]

    @property
    def expires_at(self) -> datetime:
        return self.found_at + timedelta(milliseconds=self.expires_in_ms)

    def remaining_ms(self, now: datetime) -> float:
        return (self.expires_at - now).total_seconds() * 1000

    # Ranking hooks, overridden per kind
    @property
    def profit_percent_value(self) -> float:
        raise NotImplementedError

    @property
    def profit_amount_value(self) -> float:
        raise NotImplementedError


class ArbitrageOpportunity(Opportunity):
    guaranteed_profit: float
    profit_percent: float
    total_implied_probability: float

    @computed_field  # type: ignore[misc]
    @property
    def kind(self) -> str:
        return "arbitrage"

    @property
    def profit_percent_value(self) -> float:
        return self.profit_percent

    @property
    def profit_amount_value(self) -> float:
        return self.guaranteed_profit


class MiddleOpportunity(Opportunity):
    gap: float
    middle_range: str
    win_probability_estimate: float = Field(..., ge=0, le=1)
    max_profit: float  # both legs win; conditional on landing in the gap
    worst_case_profit: float  # one leg wins; usually a small loss

    @computed_field  # type: ignore[misc]
    @property
    def kind(self) -> str:
        return "middle"

    @property
    def profit_percent_value(self) -> float:
        if self.total_stake <= 0:
            return 0.0
        return self.max_profit / self.total_stake * 100

    @property
    def profit_amount_value(self) -> float:
        return self.max_profit


OpportunityT = TypeVar("OpportunityT", bound=Opportunity)


class DetectionResult(BaseModel, Generic[OpportunityT]):
    """Detector output. ``reason`` explains an empty result caused by a failure."""

    opportunities: List[OpportunityT] = []
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.reason is None
