from enum import Enum


class Sport(str, Enum):
    """Provider sport keys scanned by default."""

    NFL = "americanfootball_nfl"
    NCAAF = "americanfootball_ncaaf"
    NBA = "basketball_nba"
    NCAAB = "basketball_ncaab"
    MLB = "baseball_mlb"
    NHL = "icehockey_nhl"
    EPL = "soccer_epl"
    UCL = "soccer_uefa_champs_league"


class MarketType(str, Enum):
    MONEYLINE = "MONEYLINE"
    SPREAD = "SPREAD"  # Covers Point Spread, Run Line, Puck Line
    TOTAL = "TOTAL"  # Covers Over/Under and team totals
    PLAYER_PROP = "PLAYER_PROP"  # Over/Under lines keyed by player
    OTHER = "OTHER"

    @classmethod
    def from_key(cls, market_key: str) -> "MarketType":
        key = (market_key or "").lower()
        if key in ("h2h", "h2h_lay", "moneyline"):
            return cls.MONEYLINE
        if key.endswith("spreads"):
            return cls.SPREAD
        if key.endswith("totals"):
            return cls.TOTAL
        if key.startswith(("player_", "pitcher_", "batter_")):
            return cls.PLAYER_PROP
        return cls.OTHER

    @property
    def has_lines(self) -> bool:
        return self in (MarketType.SPREAD, MarketType.TOTAL, MarketType.PLAYER_PROP)

    @property
    def is_over_under(self) -> bool:
        return self in (MarketType.TOTAL, MarketType.PLAYER_PROP)


class SortBy(str, Enum):
    PROFIT = "profit"  # profit percent, descending
    AMOUNT = "amount"  # profit amount, descending
    TIME = "time"  # discovery time, newest first
    EXPIRES = "expires"  # time to expiry, soonest first
    PROBABILITY = "probability"  # middles only
    GAP = "gap"  # middles only


class PollingState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    PAUSED_HIDDEN = "PAUSED_HIDDEN"
    PAUSED_OFFLINE = "PAUSED_OFFLINE"
    STOPPED = "STOPPED"


DEFAULT_SPORTS = [sport.value for sport in Sport if sport not in (Sport.EPL, Sport.UCL)]

# Served by the bulk per-sport odds endpoint
GAME_MARKETS = ["h2h", "spreads", "totals"]

PLAYER_PROP_MARKETS = [
    # NFL/NCAAF
    "player_pass_tds",
    "player_pass_yds",
    "player_rush_yds",
    "player_receptions",
    "player_reception_yds",
    # NBA
    "player_points",
    "player_rebounds",
    "player_assists",
    "player_threes",
    # MLB
    "player_hits",
    "player_total_bases",
    "player_strikeouts",
    "pitcher_strikeouts",
]

DEFAULT_MARKETS = GAME_MARKETS + PLAYER_PROP_MARKETS
