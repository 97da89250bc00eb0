from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .enums import MarketType
from .odds import Outcome


class MarketLine(BaseModel):
    """Represents one market (moneyline, spread, total, prop) on one bookmaker."""

    key: str = Field(..., min_length=1, description="Provider market key, e.g. 'spreads'.")
    outcomes: List[Outcome] = []
    last_update: Optional[datetime] = None

    @property
    def market_type(self) -> MarketType:
        return MarketType.from_key(self.key)

    def outcome(self, name: str, description: Optional[str] = None) -> Optional[Outcome]:
        """First outcome with this name (and participant, for props)."""
        wanted = name.strip().lower()
        for outcome in self.outcomes:
            if outcome.name.lower() == wanted and outcome.description == description:
                return outcome
        return None

    def __hash__(self):
        return hash((self.key, tuple((o.name, o.description, o.point) for o in self.outcomes)))
