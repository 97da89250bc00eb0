from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from .market import MarketLine


def _ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class EventDescriptor(BaseModel):
    """What display code needs to identify the game an opportunity belongs to."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    sport_key: str
    sport_title: Optional[str] = None
    home_team: str
    away_team: str
    commence_time: datetime
    completed: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def label(self) -> str:
        return f"{self.away_team} @ {self.home_team}"

    def has_started(self, now: datetime) -> bool:
        return self.completed or self.commence_time <= now


class BookmakerQuote(BaseModel):
    """One bookmaker's markets for a single event."""

    key: str = Field(..., min_length=1)
    title: str = ""
    last_update: Optional[datetime] = None
    markets: List[MarketLine] = []

    @field_validator("last_update")
    @classmethod
    def last_update_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(value)

    @property
    def display_name(self) -> str:
        return self.title or self.key

    def market(self, market_key: str) -> Optional[MarketLine]:
        for market in self.markets:
            if market.key == market_key:
                return market
        return None

    def is_stale(self, now: datetime, max_age_seconds: float) -> bool:
        """A bookmaker without a timestamp is treated as fresh."""
        if self.last_update is None:
            return False
        return (now - self.last_update).total_seconds() > max_age_seconds


class MarketSnapshot(BaseModel):
    """All bookmaker quotes for one event, replaced wholesale on every refresh."""

    id: str = Field(..., min_length=1, description="Provider event id.")
    sport_key: str = Field(..., min_length=1)
    sport_title: Optional[str] = None
    commence_time: datetime
    home_team: str = "Home"
    away_team: str = "Away"
    completed: bool = False
    bookmakers: List[BookmakerQuote] = []

    @field_validator("commence_time")
    @classmethod
    def commence_time_utc(cls, value: datetime) -> datetime:
        return _ensure_utc(value)

    @computed_field  # type: ignore[misc]
    @property
    def description(self) -> str:
        """A human-readable description of the game."""
        return f"{self.away_team} @ {self.home_team} ({self.commence_time.strftime('%Y-%m-%d %H:%M')} UTC)"

    @property
    def event(self) -> EventDescriptor:
        return EventDescriptor(
            event_id=self.id,
            sport_key=self.sport_key,
            sport_title=self.sport_title,
            home_team=self.home_team,
            away_team=self.away_team,
            commence_time=self.commence_time,
            completed=self.completed,
        )

    def has_started(self, now: datetime) -> bool:
        """True once the game is in progress or finished."""
        return self.completed or self.commence_time <= now

    def __hash__(self):
        return hash((self.sport_key, self.id))

    def __eq__(self, other):
        if not isinstance(other, MarketSnapshot):
            return NotImplemented
        return self.sport_key == other.sport_key and self.id == other.id
