"""Hit-probability estimates for middles.

These are heuristics, not calibrated models. The middle detector accepts any
ProbabilityStrategy so a model fitted on historical closing lines can be
dropped in later.
"""

import math
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from edgefeed.models.enums import MarketType


class MiddleWindow(BaseModel):
    """Results strictly between ``low`` and ``high`` win both legs.

    For totals and props the bounds are the Over and Under lines. For spreads
    they are margins of victory for the first leg's team.
    """

    model_config = ConfigDict(frozen=True)

    sport_key: str
    market_key: str
    low: float
    high: float

    @property
    def market_type(self) -> MarketType:
        return MarketType.from_key(self.market_key)

    @property
    def gap(self) -> float:
        return round(self.high - self.low, 4)

    @property
    def integers(self) -> List[int]:
        """Whole-number results inside the window; a result on a line pushes."""
        start = math.floor(self.low) + 1
        end = math.ceil(self.high) - 1
        return list(range(start, end + 1)) if end >= start else []


class ProbabilityStrategy(ABC):
    name: str = "base"

    @abstractmethod
    def estimate(self, window: MiddleWindow) -> float:
        """Probability (0-1) that the result lands inside ``window``."""
        pass


class LinearGapProbability(ProbabilityStrategy):
    """Probability grows linearly with the gap and is capped.

    Totals (and props): 8% per point up to 45%. Spreads: 6% per point up to 40%.
    """

    name = "linear_gap"

    def __init__(
        self,
        total_rate: float = 0.08,
        total_cap: float = 0.45,
        spread_rate: float = 0.06,
        spread_cap: float = 0.40,
    ):
        self.total_rate = total_rate
        self.total_cap = total_cap
        self.spread_rate = spread_rate
        self.spread_cap = spread_cap

    def estimate(self, window: MiddleWindow) -> float:
        gap = max(window.gap, 0.0)
        if window.market_type == MarketType.SPREAD:
            return min(gap * self.spread_rate, self.spread_cap)
        return min(gap * self.total_rate, self.total_cap)


# Default probability per integer in the window for each market type
PROBABILITY_PER_INTEGER_DEFAULT = 0.030

# NFL/NCAAF key number boost table
NFL_KEY_NUMBER_PROBABILITY: Dict[int, float] = {
    3: 0.150,
    7: 0.090,
    10: 0.060,
    6: 0.050,
    14: 0.045,
    4: 0.040,
    1: 0.035,
    17: 0.035,
    13: 0.030,
    11: 0.025,
}

KEY_NUMBER_SPORTS = {"americanfootball_nfl", "americanfootball_ncaaf"}
MAX_MIDDLE_PROBABILITY = 0.35

# Sport-specific per-integer base probabilities
PROBABILITY_PER_INTEGER: Dict[str, float] = {
    "americanfootball_nfl_spreads": 0.025,
    "americanfootball_ncaaf_spreads": 0.025,
    "basketball_nba_spreads": 0.025,
    "basketball_ncaab_spreads": 0.025,
    "baseball_mlb_spreads": 0.030,
    "icehockey_nhl_spreads": 0.030,
    "americanfootball_nfl_totals": 0.030,
    "americanfootball_ncaaf_totals": 0.030,
    "basketball_nba_totals": 0.020,
    "basketball_ncaab_totals": 0.020,
    "baseball_mlb_totals": 0.045,
    "icehockey_nhl_totals": 0.055,
}


class KeyNumberProbability(ProbabilityStrategy):
    """Sums a per-integer rate over the window, boosting football key numbers.

    Spread margins of 3 and 7 decide far more football games than their
    neighbours, so a window covering them is worth more than its width.
    Spread windows on the team's own margin can include negative integers,
    which count by absolute value.
    """

    name = "key_number"

    def __init__(
        self,
        per_integer: Optional[Dict[str, float]] = None,
        key_numbers: Optional[Dict[int, float]] = None,
        cap: float = MAX_MIDDLE_PROBABILITY,
    ):
        self.per_integer = per_integer or PROBABILITY_PER_INTEGER
        self.key_numbers = key_numbers or NFL_KEY_NUMBER_PROBABILITY
        self.cap = cap

    def _base_rate(self, window: MiddleWindow) -> float:
        # Alternate and team-total variants share the main market's rate
        suffix = "spreads" if window.market_type == MarketType.SPREAD else "totals"
        return self.per_integer.get(
            f"{window.sport_key}_{suffix}", PROBABILITY_PER_INTEGER_DEFAULT
        )

    def estimate(self, window: MiddleWindow) -> float:
        integers = window.integers
        if not integers:
            return 0.0
        base = self._base_rate(window)
        boost_keys = (
            window.sport_key in KEY_NUMBER_SPORTS
            and window.market_type == MarketType.SPREAD
        )
        total = 0.0
        for integer in integers:
            if boost_keys and abs(integer) in self.key_numbers:
                total += self.key_numbers[abs(integer)]
            else:
                total += base
        return min(total, self.cap)
