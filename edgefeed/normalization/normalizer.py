from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from loguru import logger
from pydantic import ValidationError

from edgefeed.config.settings import settings
from edgefeed.models.enums import MarketType
from edgefeed.models.game import BookmakerQuote, MarketSnapshot
from edgefeed.models.market import MarketLine
from edgefeed.models.normalized import LineOffer, NormalizedMarket, PricedOutcome
from edgefeed.models.odds import Outcome
from edgefeed.utils.calcs import ArithmeticDegenerate, validate_american

# Pick'em / DFS operators whose "odds" are not bettable prices
DFS_BOOKMAKERS: Set[str] = {
    "prizepicks",
    "underdog",
    "pick6",
    "draftkings_pick6",
    "dabble_au",
    "sleeper",
    "prophetx",
}


class MalformedDataError(Exception):
    """Custom exception for upstream entries missing required fields."""

    pass


class Normalizer:
    """Turns raw provider payloads into validated snapshots and best-price tables."""

    def __init__(
        self,
        stale_minutes: Optional[float] = None,
        excluded_bookmakers: Optional[Iterable[str]] = None,
    ):
        self.stale_minutes = stale_minutes or settings.bookmaker_stale_minutes
        self.excluded_bookmakers: Set[str] = set(
            DFS_BOOKMAKERS if excluded_bookmakers is None else excluded_bookmakers
        )
        logger.info(
            f"Normalizer initialized (stale after {self.stale_minutes:g} min, "
            f"{len(self.excluded_bookmakers)} excluded bookmakers)."
        )

    # --- parsing ---

    def parse_snapshots(self, raw_events: Any) -> List[MarketSnapshot]:
        """Validates raw provider events into MarketSnapshot objects.

        Malformed bookmakers and markets are skipped, degenerate prices are
        dropped one outcome at a time, and an event missing its own required
        fields is skipped entirely.
        """
        if not isinstance(raw_events, list):
            logger.warning(
                f"Expected a list of events, got {type(raw_events).__name__}; nothing to parse."
            )
            return []

        snapshots: List[MarketSnapshot] = []
        for raw_event in raw_events:
            try:
                snapshots.append(self._parse_event(raw_event))
            except MalformedDataError as e:
                logger.warning(f"Skipping malformed event: {e}")
        logger.debug(f"Parsed {len(snapshots)} of {len(raw_events)} events")
        return snapshots

    def _parse_event(self, raw_event: Any) -> MarketSnapshot:
        if not isinstance(raw_event, dict):
            raise MalformedDataError(f"event is {type(raw_event).__name__}, not an object")

        bookmakers: List[BookmakerQuote] = []
        for raw_book in raw_event.get("bookmakers") or []:
            try:
                bookmakers.append(self._parse_bookmaker(raw_book))
            except MalformedDataError as e:
                logger.warning(f"Skipping bookmaker in event {raw_event.get('id')}: {e}")

        try:
            return MarketSnapshot(
                id=raw_event.get("id"),
                sport_key=raw_event.get("sport_key"),
                sport_title=raw_event.get("sport_title"),
                commence_time=raw_event.get("commence_time"),
                home_team=raw_event.get("home_team") or "Home",
                away_team=raw_event.get("away_team") or "Away",
                completed=bool(raw_event.get("completed", False)),
                bookmakers=bookmakers,
            )
        except ValidationError as e:
            raise MalformedDataError(
                f"event {raw_event.get('id')!r}: {e.error_count()} invalid field(s)"
            ) from e

    def _parse_bookmaker(self, raw_book: Any) -> BookmakerQuote:
        if not isinstance(raw_book, dict) or not raw_book.get("key"):
            raise MalformedDataError("bookmaker entry without a key")
        raw_markets = raw_book.get("markets")
        if raw_markets is not None and not isinstance(raw_markets, list):
            raise MalformedDataError(f"bookmaker {raw_book['key']}: markets is not a list")

        markets: List[MarketLine] = []
        for raw_market in raw_markets or []:
            try:
                markets.append(self._parse_market(raw_market))
            except MalformedDataError as e:
                logger.warning(f"Skipping market from {raw_book['key']}: {e}")

        try:
            return BookmakerQuote(
                key=raw_book["key"],
                title=raw_book.get("title") or raw_book["key"],
                last_update=raw_book.get("last_update"),
                markets=markets,
            )
        except ValidationError as e:
            raise MalformedDataError(f"bookmaker {raw_book['key']}: {e}") from e

    def _parse_market(self, raw_market: Any) -> MarketLine:
        if not isinstance(raw_market, dict) or not raw_market.get("key"):
            raise MalformedDataError("market entry without a key")
        raw_outcomes = raw_market.get("outcomes")
        if not isinstance(raw_outcomes, list):
            raise MalformedDataError(f"market {raw_market['key']}: outcomes missing")

        outcomes: List[Outcome] = []
        for raw_outcome in raw_outcomes:
            outcome = self._parse_outcome(raw_market["key"], raw_outcome)
            if outcome is not None:
                outcomes.append(outcome)

        try:
            return MarketLine(
                key=raw_market["key"],
                outcomes=outcomes,
                last_update=raw_market.get("last_update"),
            )
        except ValidationError as e:
            raise MalformedDataError(f"market {raw_market['key']}: {e}") from e

    def _parse_outcome(self, market_key: str, raw_outcome: Any) -> Optional[Outcome]:
        """Returns None for outcomes that cannot be priced."""
        if not isinstance(raw_outcome, dict) or not raw_outcome.get("name"):
            logger.debug(f"Dropping unnamed outcome in {market_key}")
            return None
        try:
            price = validate_american(raw_outcome.get("price"))
        except ArithmeticDegenerate as e:
            logger.debug(f"Dropping outcome {raw_outcome.get('name')} in {market_key}: {e}")
            return None
        try:
            return Outcome(
                name=raw_outcome["name"],
                price=price,
                point=raw_outcome.get("point"),
                description=raw_outcome.get("description"),
            )
        except ValidationError as e:
            logger.debug(f"Dropping invalid outcome in {market_key}: {e.error_count()} error(s)")
            return None

    # --- eligibility ---

    def eligible_bookmakers(
        self,
        snapshot: MarketSnapshot,
        book_filter: Optional[Iterable[str]] = None,
        now: Optional[datetime] = None,
    ) -> Iterator[BookmakerQuote]:
        """Bookmakers usable for detection, in input order."""
        now = now or datetime.now(timezone.utc)
        wanted = {b.lower() for b in book_filter} if book_filter else set()
        max_age = self.stale_minutes * 60
        for book in snapshot.bookmakers:
            key = book.key.lower()
            if key in self.excluded_bookmakers:
                continue
            if wanted and key not in wanted:
                continue
            if book.is_stale(now, max_age):
                logger.debug(f"Ignoring stale bookmaker {book.key} for {snapshot.id}")
                continue
            yield book

    # --- best-price tables ---

    def normalize_market(
        self,
        snapshot: MarketSnapshot,
        market_key: str,
        book_filter: Optional[Iterable[str]] = None,
        now: Optional[datetime] = None,
    ) -> List[NormalizedMarket]:
        """Best price per outcome name across eligible bookmakers.

        Player-prop outcomes are grouped per participant, giving one
        NormalizedMarket per player. When two bookmakers offer exactly the
        same best price, the one encountered first keeps it.
        """
        is_prop = MarketType.from_key(market_key) == MarketType.PLAYER_PROP
        event = snapshot.event
        groups: Dict[Optional[str], Dict[str, PricedOutcome]] = {}
        scanned: Dict[Optional[str], int] = {}

        for book in self.eligible_bookmakers(snapshot, book_filter, now):
            market = book.market(market_key)
            if market is None:
                continue
            seen_groups: Set[Optional[str]] = set()
            for outcome in market.outcomes:
                participant = outcome.description if is_prop else None
                best = groups.setdefault(participant, {})
                seen_groups.add(participant)
                current = best.get(outcome.name)
                # Strict comparison: ties keep the earlier bookmaker
                if current is None or outcome.decimal_odds > current.decimal_odds:
                    best[outcome.name] = PricedOutcome(
                        outcome=outcome,
                        bookmaker_key=book.key,
                        bookmaker_title=book.display_name,
                        last_update=book.last_update,
                    )
            for participant in seen_groups:
                scanned[participant] = scanned.get(participant, 0) + 1

        return [
            NormalizedMarket(
                event=event,
                market_key=market_key,
                participant=participant,
                best=best,
                bookmakers_scanned=scanned.get(participant, 0),
            )
            for participant, best in groups.items()
        ]

    def collect_line_offers(
        self,
        snapshot: MarketSnapshot,
        market_key: str,
        book_filter: Optional[Iterable[str]] = None,
        now: Optional[datetime] = None,
    ) -> List[LineOffer]:
        """Every distinct (bookmaker, outcome, line, price) offer for a lined market."""
        event = snapshot.event
        seen: Set[Tuple[Any, ...]] = set()
        offers: List[LineOffer] = []
        for book in self.eligible_bookmakers(snapshot, book_filter, now):
            market = book.market(market_key)
            if market is None:
                continue
            for outcome in market.outcomes:
                if outcome.point is None:
                    continue
                identity = (book.key, outcome.name, outcome.description, outcome.point, outcome.price)
                if identity in seen:
                    continue
                seen.add(identity)
                offers.append(
                    LineOffer(
                        event=event,
                        market_key=market_key,
                        bookmaker_key=book.key,
                        bookmaker_title=book.display_name,
                        name=outcome.name,
                        point=outcome.point,
                        price=outcome.price,
                        participant=outcome.description,
                        last_update=book.last_update,
                    )
                )
        return offers
