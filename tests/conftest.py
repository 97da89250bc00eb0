"""Shared fixtures and raw-payload builders for edgefeed tests."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from edgefeed.models.config import OpportunityConfig
from edgefeed.normalization.normalizer import Normalizer
from edgefeed.scheduling.host import ManualHost

NOW = datetime(2026, 1, 10, 18, 0, tzinfo=timezone.utc)


def iso(moment: datetime) -> str:
    return moment.isoformat().replace("+00:00", "Z")


def make_outcome(name, price, point=None, description=None):
    outcome = {"name": name, "price": price}
    if point is not None:
        outcome["point"] = point
    if description is not None:
        outcome["description"] = description
    return outcome


def make_market(key, *outcomes):
    return {"key": key, "outcomes": list(outcomes)}


def make_bookmaker(key, *markets, last_update=None, title=None):
    book = {"key": key, "title": title or key.title(), "markets": list(markets)}
    book["last_update"] = iso(last_update or NOW - timedelta(minutes=1))
    return book


def make_event(
    *bookmakers,
    event_id="evt_bills_jets",
    sport_key="americanfootball_nfl",
    commence_time=None,
    home_team="Buffalo Bills",
    away_team="New York Jets",
):
    """Create a raw provider event in The Odds API v4 shape."""
    return {
        "id": event_id,
        "sport_key": sport_key,
        "sport_title": "NFL",
        "commence_time": iso(commence_time or NOW + timedelta(hours=3)),
        "home_team": home_team,
        "away_team": away_team,
        "bookmakers": list(bookmakers),
    }


def moneyline_event(price_home=150, price_away=-120, **kwargs):
    """Two books, best home price at one and best away price at the other."""
    return make_event(
        make_bookmaker(
            "fanduel",
            make_market(
                "h2h",
                make_outcome("Buffalo Bills", price_home),
                make_outcome("New York Jets", -200),
            ),
        ),
        make_bookmaker(
            "draftkings",
            make_market(
                "h2h",
                make_outcome("Buffalo Bills", 120),
                make_outcome("New York Jets", price_away),
            ),
        ),
        **kwargs,
    )


class FakeClock:
    """Millisecond clock the cache reads instead of time.monotonic."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class ManualTicker:
    """Stands in for asyncio.sleep; a sleep ends only when tick() is called."""

    def __init__(self):
        self.sleeps = []
        self._waiters = []

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        await waiter

    @property
    def pending(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def tick(self) -> None:
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)
        await settle()


async def settle(rounds: int = 20) -> None:
    """Let pending callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ticker():
    return ManualTicker()


@pytest.fixture
def host():
    return ManualHost()


@pytest.fixture
def normalizer():
    return Normalizer(stale_minutes=30)


@pytest.fixture
def config():
    return OpportunityConfig(
        min_profit_percent=0.5, min_middle_gap=3.0, min_middle_probability=0.15
    )
