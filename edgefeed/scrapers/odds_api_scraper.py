# edgefeed/scrapers/odds_api_scraper.py

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import httpx
from loguru import logger

from edgefeed.config.settings import settings
from edgefeed.models.enums import MarketType
from edgefeed.utils.cancellation import CancellationToken, RequestCancelledError
from .base_scraper import BaseScraper, NetworkError


class OddsApiScraper(BaseScraper):
    """Client for The Odds API v4 (``/sports/{sport}/odds``).

    Game markets for a sport come back in one call. Player props are only
    served per event, so they are fetched for each event of the bulk call and
    merged into its bookmakers.
    """

    provider: str = "the-odds-api"

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        regions: Optional[List[str]] = None,
    ):
        super().__init__(client)
        self.api_key = api_key or settings.odds_api_key
        self.base_url = str(base_url or settings.odds_api_base_url).rstrip("/")
        self.regions = regions or list(settings.odds_regions)
        if not self.api_key:
            logger.warning("Odds API key is not set; requests will be rejected.")
        self.requests_remaining: Optional[str] = None
        logger.info(f"OddsApiScraper initialized for {self.base_url}")

    def odds_url(self, sport: str) -> str:
        return f"{self.base_url}/sports/{sport}/odds"

    def event_odds_url(self, sport: str, event_id: str) -> str:
        return f"{self.base_url}/sports/{sport}/events/{event_id}/odds"

    def query_params(self, markets: List[str]) -> Dict[str, str]:
        """Query parameters without the API key, suitable for cache keys."""
        return {
            "regions": ",".join(self.regions),
            "markets": ",".join(markets),
            "oddsFormat": "american",
        }

    def _auth_params(self, markets: List[str]) -> Dict[str, str]:
        params = self.query_params(markets)
        if self.api_key:
            params["apiKey"] = self.api_key
        return params

    def _record_quota(self, response: httpx.Response) -> None:
        remaining = response.headers.get("x-requests-remaining")
        if remaining is not None:
            self.requests_remaining = remaining
            logger.debug(f"Odds API quota remaining: {remaining}")

    @staticmethod
    def split_markets(markets: List[str]) -> Tuple[List[str], List[str]]:
        game, props = [], []
        for key in markets:
            if MarketType.from_key(key) == MarketType.PLAYER_PROP:
                props.append(key)
            else:
                game.append(key)
        return game, props

    async def fetch_sport_odds(
        self,
        sport: str,
        markets: List[str],
        token: Optional[CancellationToken] = None,
    ) -> List[Dict[str, Any]]:
        response = await self._make_request(
            "GET", self.odds_url(sport), params=self._auth_params(markets), token=token
        )
        self._record_quota(response)
        data = response.json()
        if not isinstance(data, list):
            raise NetworkError(
                f"Unexpected payload for {sport}: expected a list", retryable=False
            )
        return data

    async def fetch_sport_events(
        self, sport: str, token: Optional[CancellationToken] = None
    ) -> List[Dict[str, Any]]:
        """Upcoming events for a sport without odds (used to discover prop events)."""
        params = {"apiKey": self.api_key} if self.api_key else None
        response = await self._make_request(
            "GET", f"{self.base_url}/sports/{sport}/events", params=params, token=token
        )
        self._record_quota(response)
        data = response.json()
        if not isinstance(data, list):
            raise NetworkError(
                f"Unexpected events payload for {sport}: expected a list", retryable=False
            )
        for event in data:
            event.setdefault("bookmakers", [])
        return data

    async def fetch_event_odds(
        self,
        sport: str,
        event_id: str,
        markets: List[str],
        token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        response = await self._make_request(
            "GET",
            self.event_odds_url(sport, event_id),
            params=self._auth_params(markets),
            token=token,
        )
        self._record_quota(response)
        data = response.json()
        if not isinstance(data, dict):
            raise NetworkError(
                f"Unexpected payload for event {event_id}: expected an object",
                retryable=False,
            )
        return data

    async def _attach_props(
        self,
        sport: str,
        events: List[Dict[str, Any]],
        prop_markets: List[str],
        token: Optional[CancellationToken],
    ) -> None:
        for event in events:
            event_id = event.get("id")
            if not event_id:
                continue
            try:
                event_odds = await self.fetch_event_odds(
                    sport, event_id, prop_markets, token
                )
            except NetworkError as e:
                # One event's props failing should not lose the rest
                logger.error(f"Error fetching props for event {event_id}: {e}")
                continue

            books = {b.get("key"): b for b in event.setdefault("bookmakers", [])}
            for prop_book in event_odds.get("bookmakers") or []:
                existing = books.get(prop_book.get("key"))
                if existing is None:
                    event["bookmakers"].append(prop_book)
                    books[prop_book.get("key")] = prop_book
                else:
                    existing.setdefault("markets", []).extend(
                        prop_book.get("markets") or []
                    )

    async def _fetch_sport(
        self,
        sport: str,
        game_markets: List[str],
        prop_markets: List[str],
        token: Optional[CancellationToken],
    ) -> List[Dict[str, Any]]:
        if game_markets:
            events = await self.fetch_sport_odds(sport, game_markets, token)
        else:
            events = await self.fetch_sport_events(sport, token)
        if prop_markets:
            await self._attach_props(sport, events, prop_markets, token)
        return events

    async def fetch_odds(
        self,
        sports: List[str],
        markets: List[str],
        token: Optional[CancellationToken] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch raw events for every sport; partial failures are logged.

        Raises:
            NetworkError: If every sport failed (the first error is raised).
            RequestCancelledError: If ``token`` fired.
        """
        game_markets, prop_markets = self.split_markets(markets)
        logger.info(f"Fetching odds for {sports} ({len(markets)} markets) from {self.provider}")

        results = await asyncio.gather(
            *(self._fetch_sport(s, game_markets, prop_markets, token) for s in sports),
            return_exceptions=True,
        )

        all_events: List[Dict[str, Any]] = []
        errors: List[NetworkError] = []
        for sport, result in zip(sports, results):
            if isinstance(result, RequestCancelledError):
                raise result
            if isinstance(result, NetworkError):
                logger.error(f"Error fetching {sport} odds: {result}")
                errors.append(result)
            elif isinstance(result, BaseException):
                raise result
            else:
                logger.info(f"Fetched {len(result)} events for {sport}")
                all_events.extend(result)

        if errors and len(errors) == len(sports):
            raise errors[0]
        return all_events
