# edgefeed/feed/opportunity_feed.py

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict

from edgefeed.calculation.arbitrage import detect_all_arbitrage
from edgefeed.calculation.middles import detect_all_middles
from edgefeed.calculation.probability import ProbabilityStrategy
from edgefeed.calculation.ranking import rank
from edgefeed.models.config import ConfigurationError, OpportunityConfig
from edgefeed.models.game import MarketSnapshot
from edgefeed.models.opportunity import ArbitrageOpportunity, MiddleOpportunity
from edgefeed.normalization.normalizer import Normalizer
from edgefeed.scheduling.host import HostEnvironment
from edgefeed.scheduling.poller import PollingScheduler
from edgefeed.scrapers.base_scraper import NetworkError
from edgefeed.scrapers.odds_api_scraper import OddsApiScraper
from edgefeed.storage.bankroll import BankrollProvider
from edgefeed.storage.fetch_cache import FetchCache, FetchResult
from edgefeed.utils.cancellation import CancellationToken, RequestCancelledError
from edgefeed.utils.events import EventEmitter, Subscription
from edgefeed.utils.misc_utils import new_generation_tag


class FeedState(BaseModel):
    """Everything display code reads from a feed. Replaced, never mutated."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    arbitrage: List[ArbitrageOpportunity] = []
    middles: List[MiddleOpportunity] = []
    loading: bool = False
    stale: bool = False
    error: Optional[NetworkError] = None
    last_updated: Optional[datetime] = None
    generation: int = 0
    diagnostics: List[str] = []

    @property
    def is_empty(self) -> bool:
        return not self.arbitrage and not self.middles


class OpportunityFeed:
    """Ranked arbitrage and middle lists for one set of sports and markets.

    Refreshes go through the shared FetchCache, so feeds with the same sports
    and markets share one network call and see each other's writes. Every
    refresh cancels the one before it, and a result that is no longer the
    latest is dropped.
    """

    def __init__(
        self,
        cache: FetchCache,
        scraper: OddsApiScraper,
        bankroll: BankrollProvider,
        sports: List[str],
        markets: List[str],
        book_filter: Optional[List[str]] = None,
        config: Union[OpportunityConfig, Mapping[str, Any], None] = None,
        continuous: bool = False,
        host: Optional[HostEnvironment] = None,
        normalizer: Optional[Normalizer] = None,
        strategy: Optional[ProbabilityStrategy] = None,
        interval: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        name: Optional[str] = None,
    ):
        self.cache = cache
        self.scraper = scraper
        self.bankroll = bankroll
        self.sports = list(sports)
        self.markets = list(markets)
        self.normalizer = normalizer or Normalizer()
        self.strategy = strategy
        self.name = name or f"feed:{','.join(self.sports)}"

        config = OpportunityConfig.coerce(config)
        if book_filter is not None:
            config = config.merged({"book_filter": book_filter})
        self.config = config

        self.cache_key = cache.generate_key(
            f"{scraper.base_url}/odds",
            {"sports": ",".join(sorted(self.sports)), **scraper.query_params(self.markets)},
        )

        self._state = FeedState()
        self._changes: EventEmitter[FeedState] = EventEmitter(name=self.name)
        self._snapshots: List[MarketSnapshot] = []
        self._payload: Any = None
        self._generation = 0
        self._token: Optional[CancellationToken] = None
        self._closed = False

        self._subscriptions: List[Subscription] = [
            bankroll.on_change(self._on_bankroll_change),
            cache.subscribe(self.cache_key, self._on_cache_write),
        ]
        self.scheduler = PollingScheduler(
            self.refresh,
            interval=interval,
            continuous=continuous,
            host=host,
            sleep=sleep,
            name=self.name,
        )
        logger.info(f"[{self.name}] created for markets {self.markets}")

    # --- reading ---

    @property
    def state(self) -> FeedState:
        return self._state

    @property
    def arbitrage(self) -> List[ArbitrageOpportunity]:
        return self._state.arbitrage

    @property
    def middles(self) -> List[MiddleOpportunity]:
        return self._state.middles

    @property
    def snapshots(self) -> List[MarketSnapshot]:
        return list(self._snapshots)

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, callback: Callable[[FeedState], None]) -> Subscription:
        """Call ``callback(state)`` after every state change."""
        return self._changes.subscribe(callback)

    # --- state changes ---

    def _update(self, **changes: Any) -> None:
        if self._closed:
            return
        self._state = self._state.model_copy(update=changes)
        self._changes.emit(self._state)

    def _ingest(self, payload: Any) -> None:
        self._payload = payload
        self._snapshots = self.normalizer.parse_snapshots(payload)

    def _recompute(self) -> None:
        """Rebuild both opportunity lists from the current snapshots, config and bankroll."""
        if self._closed:
            return
        now = datetime.now(timezone.utc)
        bankroll = self.bankroll.get_bankroll()
        tag = new_generation_tag()
        arbitrage = detect_all_arbitrage(
            self._snapshots, self.markets, self.config, bankroll, self.normalizer, now, tag
        )
        middles = detect_all_middles(
            self._snapshots,
            self.markets,
            self.config,
            bankroll,
            self.normalizer,
            self.strategy,
            now,
            tag,
        )
        diagnostics = [r for r in (arbitrage.reason, middles.reason) if r]
        self._update(
            arbitrage=rank(arbitrage.opportunities, self.config),
            middles=rank(middles.opportunities, self.config),
            diagnostics=diagnostics,
        )
        logger.debug(
            f"[{self.name}] recomputed: {len(self._state.arbitrage)} arbitrage, {len(self._state.middles)} middles"
        )

    def _on_cache_write(self, payload: Any) -> None:
        if self._closed or payload is None or payload is self._payload:
            return
        self._ingest(payload)
        self._recompute()
        self._update(last_updated=datetime.now(timezone.utc), stale=False, error=None)

    def _on_bankroll_change(self, amount: float) -> None:
        logger.debug(f"[{self.name}] bankroll changed to {amount:.2f}; recomputing")
        self._recompute()

    def _apply_fetch(self, result: FetchResult) -> None:
        if result.payload is not None and result.payload is not self._payload:
            self._ingest(result.payload)
            self._recompute()

        changes: dict = {"loading": False, "stale": result.stale, "error": result.error}
        if result.error is None:
            changes["last_updated"] = self._state.last_updated or datetime.now(timezone.utc)
        if result.error is not None and result.payload is None:
            changes["diagnostics"] = [*self._state.diagnostics, f"no data available: {result.error}"]
        self._update(**changes)

    # --- actions ---

    def _show_stale(self) -> None:
        """Publish an expired but still usable payload while it is revalidated."""
        stale = self.cache.expired_payload(self.cache_key)
        if stale is None:
            return
        if stale is not self._payload:
            logger.debug(f"[{self.name}] showing stale data while revalidating")
            self._ingest(stale)
            self._recompute()
        self._update(stale=True)

    def _ttl_for(self, payload: Any) -> int:
        return self.cache.smart_ttl_ms(payload if isinstance(payload, list) else [])

    async def _load(self, token: CancellationToken) -> Any:
        return await self.scraper.fetch_odds(self.sports, self.markets, token)

    async def refresh(self, force: bool = False) -> FeedState:
        """Fetch (or reuse cached) odds and recompute opportunities.

        An expired entry that is still within its staleness bound is shown
        right away with ``stale=True`` and replaced once revalidation lands.
        Network failures are reported on ``state.error`` next to any stale
        data; they are not raised.
        """
        if self._closed:
            return self._state
        self._generation += 1
        generation = self._generation
        if self._token is not None:
            self._token.cancel("superseded by a newer refresh")
        token = self._token = CancellationToken()
        self._update(loading=True, generation=generation)
        self._show_stale()

        try:
            result = await self.cache.fetch(
                self.cache_key, self._load, ttl_ms=self._ttl_for, force=force, token=token
            )
        except RequestCancelledError:
            logger.debug(f"[{self.name}] refresh {generation} cancelled")
            return self._state
        except asyncio.CancelledError:
            if generation == self._generation:
                self._update(loading=False)
            raise

        if self._closed or generation != self._generation:
            logger.debug(f"[{self.name}] dropping result of superseded refresh {generation}")
            return self._state
        self._token = None
        self._apply_fetch(result)
        return self._state

    def update_config(self, config: Union[OpportunityConfig, Mapping[str, Any]]) -> bool:
        """Apply a new config (or partial mapping) and recompute without fetching.

        An invalid config is logged and ignored; the previous one stays active.
        """
        try:
            if isinstance(config, OpportunityConfig):
                new_config = config
            else:
                new_config = self.config.merged(config)
        except ConfigurationError as e:
            logger.warning(f"[{self.name}] rejected config update: {e}")
            self._update(diagnostics=[*self._state.diagnostics, str(e)])
            return False
        self.config = new_config
        self._recompute()
        return True

    def start_polling(self) -> None:
        self.scheduler.start(immediate=True)

    def stop_polling(self) -> None:
        self.scheduler.stop()

    async def close(self) -> None:
        """Cancel outstanding work and release every subscription."""
        if self._closed:
            return
        self._closed = True
        if self._token is not None:
            self._token.cancel("feed closed")
            self._token = None
        await self.scheduler.aclose()
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        self._changes.clear()
        logger.info(f"[{self.name}] closed")
