import httpx
import pytest

from edgefeed.scrapers.base_scraper import AuthenticationError, NetworkError, RateLimitError
from edgefeed.scrapers.odds_api_scraper import OddsApiScraper
from edgefeed.utils.cancellation import CancellationToken, RequestCancelledError
from tests.conftest import make_bookmaker, make_event, make_market, make_outcome

BASE_URL = "https://odds.test/v4"

PASS_YDS = make_market(
    "player_pass_yds",
    make_outcome("Over", -115, 250.5, "Josh Allen"),
    make_outcome("Under", -105, 250.5, "Josh Allen"),
)


def scraper_for(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OddsApiScraper(client=client, api_key="test-key", base_url=BASE_URL, regions=["us"])


class TestFetchOdds:
    @pytest.mark.asyncio
    async def test_bulk_game_markets(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(
                200,
                json=[make_event(make_bookmaker("fanduel", make_market("h2h")))],
                headers={"x-requests-remaining": "497"},
            )

        scraper = scraper_for(handler)
        events = await scraper.fetch_odds(["americanfootball_nfl"], ["h2h", "spreads"])

        assert len(events) == 1
        [request] = seen
        assert request.url.path == "/v4/sports/americanfootball_nfl/odds"
        assert request.url.params["markets"] == "h2h,spreads"
        assert request.url.params["apiKey"] == "test-key"
        assert request.url.params["oddsFormat"] == "american"
        assert scraper.requests_remaining == "497"

    def test_cache_params_leave_out_the_key(self):
        scraper = OddsApiScraper(client=httpx.AsyncClient(), api_key="secret", base_url=BASE_URL)
        assert "apiKey" not in scraper.query_params(["h2h"])

    @pytest.mark.asyncio
    async def test_props_are_merged_into_event_bookmakers(self):
        def handler(request):
            if request.url.path.endswith("/events/evt_bills_jets/odds"):
                assert request.url.params["markets"] == "player_pass_yds"
                return httpx.Response(
                    200,
                    json={
                        "id": "evt_bills_jets",
                        "bookmakers": [
                            make_bookmaker("fanduel", PASS_YDS),
                            make_bookmaker("betmgm", PASS_YDS),
                        ],
                    },
                )
            return httpx.Response(200, json=[make_event(make_bookmaker("fanduel", make_market("h2h")))])

        scraper = scraper_for(handler)
        [event] = await scraper.fetch_odds(["americanfootball_nfl"], ["h2h", "player_pass_yds"])

        books = {b["key"]: b for b in event["bookmakers"]}
        assert [m["key"] for m in books["fanduel"]["markets"]] == ["h2h", "player_pass_yds"]
        assert [m["key"] for m in books["betmgm"]["markets"]] == ["player_pass_yds"]

    @pytest.mark.asyncio
    async def test_props_only_discovers_events_first(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            if request.url.path.endswith("/events"):
                event = make_event()
                del event["bookmakers"]
                return httpx.Response(200, json=[event])
            return httpx.Response(
                200, json={"id": "evt_bills_jets", "bookmakers": [make_bookmaker("fanduel", PASS_YDS)]}
            )

        scraper = scraper_for(handler)
        [event] = await scraper.fetch_odds(["americanfootball_nfl"], ["player_pass_yds"])

        assert paths == [
            "/v4/sports/americanfootball_nfl/events",
            "/v4/sports/americanfootball_nfl/events/evt_bills_jets/odds",
        ]
        assert event["bookmakers"][0]["markets"][0]["key"] == "player_pass_yds"

    @pytest.mark.asyncio
    async def test_one_failing_sport_does_not_lose_the_others(self):
        def handler(request):
            if "basketball_nba" in request.url.path:
                return httpx.Response(503)
            return httpx.Response(200, json=[make_event()])

        scraper = scraper_for(handler)
        events = await scraper.fetch_odds(["americanfootball_nfl", "basketball_nba"], ["h2h"])
        assert [e["sport_key"] for e in events] == ["americanfootball_nfl"]

    @pytest.mark.asyncio
    async def test_every_sport_failing_raises(self):
        scraper = scraper_for(lambda request: httpx.Response(502))
        with pytest.raises(NetworkError) as excinfo:
            await scraper.fetch_odds(["americanfootball_nfl", "basketball_nba"], ["h2h"])
        assert excinfo.value.status_code == 502
        assert excinfo.value.retryable


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_unauthorized(self):
        scraper = scraper_for(lambda request: httpx.Response(401))
        with pytest.raises(AuthenticationError) as excinfo:
            await scraper.fetch_sport_odds("americanfootball_nfl", ["h2h"])
        assert excinfo.value.retryable is False

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        scraper = scraper_for(lambda request: httpx.Response(429, headers={"Retry-After": "30"}))
        with pytest.raises(RateLimitError) as excinfo:
            await scraper.fetch_sport_odds("americanfootball_nfl", ["h2h"])
        assert excinfo.value.retry_after == "30"

    @pytest.mark.asyncio
    async def test_client_error_is_not_retryable(self):
        scraper = scraper_for(lambda request: httpx.Response(422))
        with pytest.raises(NetworkError) as excinfo:
            await scraper.fetch_sport_odds("americanfootball_nfl", ["h2h"])
        assert excinfo.value.retryable is False

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ConnectTimeout("too slow", request=request)

        scraper = scraper_for(handler)
        with pytest.raises(NetworkError, match="Timeout"):
            await scraper.fetch_sport_odds("americanfootball_nfl", ["h2h"])

    @pytest.mark.asyncio
    async def test_unexpected_payload_shape(self):
        scraper = scraper_for(lambda request: httpx.Response(200, json={"message": "oops"}))
        with pytest.raises(NetworkError, match="expected a list"):
            await scraper.fetch_sport_odds("americanfootball_nfl", ["h2h"])

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_before_requesting(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=[])

        token = CancellationToken()
        token.cancel("closed")
        scraper = scraper_for(handler)
        with pytest.raises(RequestCancelledError):
            await scraper.fetch_odds(["americanfootball_nfl"], ["h2h"], token)
        assert calls == []
