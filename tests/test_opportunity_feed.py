import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from edgefeed.feed.opportunity_feed import OpportunityFeed
from edgefeed.models.config import OpportunityConfig
from edgefeed.scrapers.base_scraper import NetworkError
from edgefeed.storage.bankroll import InMemoryBankroll
from edgefeed.storage.fetch_cache import FetchCache
from tests.conftest import make_bookmaker, make_event, make_market, make_outcome, no_sleep, settle


def live_moneyline_event(event_id="evt_bills_jets"):
    """Bills +150 at FanDuel, Jets -120 at DraftKings, stamped with the real clock."""
    now = datetime.now(timezone.utc)
    return make_event(
        make_bookmaker(
            "fanduel",
            make_market(
                "h2h", make_outcome("Buffalo Bills", 150), make_outcome("New York Jets", -200)
            ),
            last_update=now - timedelta(minutes=1),
        ),
        make_bookmaker(
            "draftkings",
            make_market(
                "h2h", make_outcome("Buffalo Bills", 120), make_outcome("New York Jets", -120)
            ),
            last_update=now - timedelta(minutes=1),
        ),
        event_id=event_id,
        commence_time=now + timedelta(hours=3),
    )


class FakeScraper:
    base_url = "https://odds.test/v4"

    def __init__(self, payload=None):
        self.payload = payload if payload is not None else [live_moneyline_event()]
        self.calls = 0
        self.error = None
        self.gate = None

    def query_params(self, markets):
        return {"regions": "us", "markets": ",".join(markets), "oddsFormat": "american"}

    async def fetch_odds(self, sports, markets, token=None):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.payload


@pytest.fixture
def cache(clock):
    return FetchCache(clock=clock, retry_attempts=0, sleep=no_sleep)


@pytest.fixture
def scraper():
    return FakeScraper()


@pytest.fixture
def bankroll():
    return InMemoryBankroll(1000)


@pytest.fixture
async def feed(cache, scraper, bankroll, host, ticker):
    feed = OpportunityFeed(
        cache,
        scraper,
        bankroll,
        sports=["americanfootball_nfl"],
        markets=["h2h"],
        config=OpportunityConfig(min_profit_percent=0.5),
        host=host,
        sleep=ticker.sleep,
    )
    yield feed
    await feed.close()


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_builds_ranked_lists(self, feed, scraper):
        state = await feed.refresh()

        assert scraper.calls == 1
        assert not state.loading
        assert state.error is None
        assert state.last_updated is not None
        assert state.generation == 1
        [arb] = state.arbitrage
        assert arb.profit_percent == pytest.approx(5.769, abs=1e-3)
        assert arb.total_stake == pytest.approx(1000)
        assert state.middles == []

    @pytest.mark.asyncio
    async def test_fresh_cache_is_reused_unless_forced(self, feed, scraper):
        await feed.refresh()
        await feed.refresh()
        assert scraper.calls == 1
        await feed.refresh(force=True)
        assert scraper.calls == 2

    @pytest.mark.asyncio
    async def test_subscribers_see_every_state(self, feed):
        states = []
        feed.subscribe(states.append)
        await feed.refresh()
        assert states[0].loading is True
        assert states[-1].loading is False
        assert len(states[-1].arbitrage) == 1

    @pytest.mark.asyncio
    async def test_feeds_with_same_query_share_one_request(self, feed, cache, scraper, bankroll):
        other = OpportunityFeed(
            cache, scraper, bankroll, sports=["americanfootball_nfl"], markets=["h2h"]
        )
        try:
            assert other.cache_key == feed.cache_key
            scraper.gate = asyncio.Event()
            first = asyncio.ensure_future(feed.refresh())
            second = asyncio.ensure_future(other.refresh())
            await settle()
            scraper.gate.set()
            await asyncio.gather(first, second)

            assert scraper.calls == 1
            assert len(feed.arbitrage) == len(other.arbitrage) == 1
        finally:
            await other.close()

    @pytest.mark.asyncio
    async def test_cache_write_from_elsewhere_updates_feed(self, feed, cache):
        await feed.refresh()
        cache.set(feed.cache_key, [live_moneyline_event("evt_a"), live_moneyline_event("evt_b")])
        assert {o.event.event_id for o in feed.arbitrage} == {"evt_a", "evt_b"}

    @pytest.mark.asyncio
    async def test_expired_data_is_shown_while_revalidating(self, feed, cache, scraper, bankroll, clock):
        await feed.refresh()
        clock.advance(40_000)
        scraper.gate = asyncio.Event()
        late = OpportunityFeed(
            cache, scraper, bankroll, sports=["americanfootball_nfl"], markets=["h2h"]
        )
        try:
            pending = asyncio.ensure_future(late.refresh())
            await settle()

            assert late.state.loading is True
            assert late.state.stale is True
            assert len(late.arbitrage) == 1
            assert scraper.calls == 2

            scraper.gate.set()
            state = await pending
            assert state.stale is False
            assert state.loading is False
            assert len(state.arbitrage) == 1
        finally:
            await late.close()

    @pytest.mark.asyncio
    async def test_own_refresh_flags_expired_data_as_stale(self, feed, scraper, clock):
        await feed.refresh()
        clock.advance(40_000)
        scraper.gate = asyncio.Event()
        pending = asyncio.ensure_future(feed.refresh())
        await settle()
        assert feed.state.loading and feed.state.stale
        assert len(feed.arbitrage) == 1

        scraper.gate.set()
        state = await pending
        assert not state.loading and not state.stale

    @pytest.mark.asyncio
    async def test_newer_refresh_supersedes_older(self, feed, scraper):
        scraper.gate = asyncio.Event()
        first = asyncio.ensure_future(feed.refresh())
        await settle()
        second = asyncio.ensure_future(feed.refresh(force=True))
        await settle()
        scraper.gate.set()
        older, newer = await asyncio.gather(first, second)

        assert scraper.calls == 1
        assert newer.generation == 2
        assert len(newer.arbitrage) == 1
        assert feed.state.generation == 2
        assert not feed.state.loading


class TestDerivedUpdates:
    @pytest.mark.asyncio
    async def test_bankroll_change_recomputes_without_fetching(self, feed, scraper, bankroll):
        await feed.refresh()
        bankroll.set_bankroll(500)
        assert scraper.calls == 1
        assert feed.arbitrage[0].total_stake == pytest.approx(500)

    @pytest.mark.asyncio
    async def test_config_update_recomputes(self, feed, scraper):
        await feed.refresh()
        assert feed.update_config({"min_profit_percent": 10}) is True
        assert feed.arbitrage == []
        assert scraper.calls == 1

    @pytest.mark.asyncio
    async def test_invalid_config_keeps_previous(self, feed):
        await feed.refresh()
        previous = feed.config
        assert feed.update_config({"min_profit_percent": -1}) is False
        assert feed.config is previous
        assert len(feed.arbitrage) == 1
        assert any("Invalid opportunity config" in d for d in feed.state.diagnostics)

    def test_book_filter_argument_is_merged_into_config(self, cache, scraper, bankroll):
        feed = OpportunityFeed(
            cache, scraper, bankroll, ["americanfootball_nfl"], ["h2h"], book_filter=["FanDuel"]
        )
        assert feed.config.book_filter == {"fanduel"}


class TestFailures:
    @pytest.mark.asyncio
    async def test_network_error_keeps_stale_opportunities(self, feed, scraper, clock):
        await feed.refresh()
        clock.advance(60_000)
        scraper.error = NetworkError("connection reset")

        state = await feed.refresh()
        assert scraper.calls == 2
        assert state.stale is True
        assert isinstance(state.error, NetworkError)
        assert len(state.arbitrage) == 1

    @pytest.mark.asyncio
    async def test_network_error_without_data(self, feed, scraper):
        scraper.error = NetworkError("dns failure")
        state = await feed.refresh()
        assert state.is_empty
        assert state.stale is False
        assert isinstance(state.error, NetworkError)
        assert any("no data available" in d for d in state.diagnostics)

    @pytest.mark.asyncio
    async def test_recovery_clears_error(self, feed, scraper):
        scraper.error = NetworkError("dns failure")
        await feed.refresh()
        scraper.error = None
        state = await feed.refresh(force=True)
        assert state.error is None
        assert len(state.arbitrage) == 1


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_close_stops_all_updates(self, feed, cache, scraper, bankroll):
        await feed.refresh()
        seen = []
        feed.subscribe(seen.append)
        before = feed.state

        await feed.close()
        assert feed.closed
        cache.set(feed.cache_key, [live_moneyline_event("evt_late")])
        bankroll.set_bankroll(250)
        state = await feed.refresh(force=True)

        assert state is before
        assert seen == []
        assert scraper.calls == 1
        assert len(cache.entry(feed.cache_key).subscribers) == 0

    @pytest.mark.asyncio
    async def test_close_during_refresh_discards_result(self, feed, scraper):
        scraper.gate = asyncio.Event()
        pending = asyncio.ensure_future(feed.refresh())
        await settle()
        await feed.close()
        scraper.gate.set()
        await pending
        assert feed.arbitrage == []

    @pytest.mark.asyncio
    async def test_polling_refreshes_on_start_and_each_tick(self, feed, scraper, ticker, clock):
        feed.start_polling()
        await settle()
        assert scraper.calls == 1

        clock.advance(60_000)
        await ticker.tick()
        assert scraper.calls == 2

        feed.stop_polling()
        await ticker.tick()
        assert scraper.calls == 2

    @pytest.mark.asyncio
    async def test_hidden_host_pauses_feed_polling(self, feed, scraper, ticker, host, clock):
        feed.start_polling()
        await settle()
        host.set_visible(False)
        clock.advance(60_000)
        await ticker.tick()
        assert scraper.calls == 1

        host.set_visible(True)
        await settle()
        assert scraper.calls == 2
