"""Middle detection: two legs on different lines that can both win."""

from datetime import datetime, timezone
from itertools import combinations
from typing import Iterable, List, Optional, Tuple

from loguru import logger

from edgefeed.config.settings import settings
from edgefeed.models.config import OpportunityConfig
from edgefeed.models.enums import MarketType
from edgefeed.models.game import MarketSnapshot
from edgefeed.models.normalized import LineOffer
from edgefeed.models.opportunity import DetectionResult, MiddleLeg, MiddleOpportunity
from edgefeed.normalization.normalizer import Normalizer
from edgefeed.utils.calcs import american_to_decimal
from edgefeed.utils.misc_utils import generate_canonical_id, new_generation_tag
from .probability import LinearGapProbability, MiddleWindow, ProbabilityStrategy


def middle_window(
    sport_key: str, market_key: str, a: LineOffer, b: LineOffer
) -> Optional[Tuple[LineOffer, LineOffer, MiddleWindow]]:
    """Order a pair into (first leg, second leg, window), or None if it cannot middle.

    Totals need Over at the lower line and Under at the higher one. Spreads
    need opposing teams whose signed lines sum to a positive gap.
    """
    market_type = MarketType.from_key(market_key)
    if market_type.is_over_under:
        over, under = (a, b) if a.is_over else (b, a)
        if not (over.is_over and under.is_under):
            return None
        if under.point <= over.point:
            return None
        return over, under, MiddleWindow(
            sport_key=sport_key, market_key=market_key, low=over.point, high=under.point
        )
    if market_type == MarketType.SPREAD:
        if a.name.lower() == b.name.lower():
            return None
        if a.point + b.point <= 0:
            return None
        # Make the first leg the side giving points so the window reads as its winning margin
        first, second = (a, b) if a.point <= b.point else (b, a)
        return first, second, MiddleWindow(
            sport_key=sport_key,
            market_key=market_key,
            low=-first.point,
            high=second.point,
        )
    return None


def describe_window(first: LineOffer, second: LineOffer, window: MiddleWindow) -> str:
    if window.market_type.is_over_under:
        subject = f"{first.participant} " if first.participant else "Total "
        return f"{subject}between {window.low:g} and {window.high:g}"
    if window.low >= 0:
        return f"{first.name} wins by {window.low:g} to {window.high:g}"
    return f"{second.name} by {-window.low:g} to {first.name} by {window.high:g}"


def middle_stake_cap(config: OpportunityConfig, bankroll: float) -> float:
    """A middle risks at most min(max stake, a fixed share of the bankroll)."""
    share = max(float(bankroll), 0.0) * settings.middle_bankroll_fraction
    if config.max_stake is None:
        return share
    return min(config.max_stake, share)


def _build_leg(offer: LineOffer, stake: float) -> MiddleLeg:
    decimal_odds = american_to_decimal(offer.price)
    return MiddleLeg(
        bookmaker_key=offer.bookmaker_key,
        bookmaker_title=offer.bookmaker_title,
        selection=offer.outcome.selection_label,
        american_odds=offer.price,
        decimal_odds=decimal_odds,
        point=offer.point,
        stake=stake,
        payout=round(stake * decimal_odds, 2),
        implied_probability=1 / decimal_odds,
    )


def detect_middles(
    snapshot: MarketSnapshot,
    market_key: str,
    config: OpportunityConfig,
    bankroll: float,
    normalizer: Normalizer,
    strategy: Optional[ProbabilityStrategy] = None,
    now: Optional[datetime] = None,
    generation: Optional[str] = None,
) -> DetectionResult[MiddleOpportunity]:
    """Find every middle between two bookmakers for one event and market.

    Never raises: a failure becomes an empty result with a ``reason``.
    """
    now = now or datetime.now(timezone.utc)
    strategy = strategy or LinearGapProbability()
    tag = generation or new_generation_tag()
    try:
        if not MarketType.from_key(market_key).has_lines or snapshot.has_started(now):
            return DetectionResult()
        total_stake = round(middle_stake_cap(config, bankroll), 2)
        if total_stake <= 0:
            return DetectionResult()

        offers = normalizer.collect_line_offers(
            snapshot, market_key, config.book_filter, now
        )
        found: List[MiddleOpportunity] = []
        for a, b in combinations(offers, 2):
            if a.bookmaker_key == b.bookmaker_key or a.participant != b.participant:
                continue
            ordered = middle_window(snapshot.sport_key, market_key, a, b)
            if ordered is None:
                continue
            first, second, window = ordered
            gap = window.gap
            if gap <= 0 or gap < config.min_middle_gap:
                continue
            probability = strategy.estimate(window)
            if probability < config.min_middle_probability:
                continue

            stake_a = round(total_stake / 2, 2)
            stake_b = round(total_stake - stake_a, 2)
            legs = [_build_leg(first, stake_a), _build_leg(second, stake_b)]
            payout_a = stake_a * legs[0].decimal_odds
            payout_b = stake_b * legs[1].decimal_odds
            found.append(
                MiddleOpportunity(
                    id="mid_"
                    + generate_canonical_id(
                        tag,
                        snapshot.id,
                        market_key,
                        first.participant,
                        first.bookmaker_key,
                        first.name,
                        first.point,
                        second.bookmaker_key,
                        second.name,
                        second.point,
                    ),
                    event=first.event,
                    market_key=market_key,
                    participant=first.participant,
                    legs=legs,
                    total_stake=round(stake_a + stake_b, 2),
                    gap=gap,
                    middle_range=describe_window(first, second, window),
                    win_probability_estimate=round(probability, 4),
                    max_profit=round(payout_a + payout_b - total_stake, 2),
                    worst_case_profit=round(min(payout_a, payout_b) - total_stake, 2),
                    found_at=now,
                )
            )
        return DetectionResult(opportunities=found)
    except Exception as e:
        logger.exception(f"Middle detection failed for {snapshot.id} {market_key}: {e}")
        return DetectionResult(reason=f"middle detection failed: {e}")


def detect_all_middles(
    snapshots: Iterable[MarketSnapshot],
    markets: Iterable[str],
    config: OpportunityConfig,
    bankroll: float,
    normalizer: Normalizer,
    strategy: Optional[ProbabilityStrategy] = None,
    now: Optional[datetime] = None,
    generation: Optional[str] = None,
) -> DetectionResult[MiddleOpportunity]:
    """Run middle detection over every snapshot and lined market."""
    now = now or datetime.now(timezone.utc)
    tag = generation or new_generation_tag()
    strategy = strategy or LinearGapProbability()
    found: List[MiddleOpportunity] = []
    failures: List[str] = []
    try:
        market_keys = [
            m
            for m in markets
            if config.accepts_market(m) and MarketType.from_key(m).has_lines
        ]
        for snapshot in snapshots:
            if not config.accepts_sport(snapshot.sport_key):
                continue
            for market_key in market_keys:
                result = detect_middles(
                    snapshot, market_key, config, bankroll, normalizer, strategy, now, tag
                )
                found.extend(result.opportunities)
                if result.reason:
                    failures.append(result.reason)
    except Exception as e:
        logger.exception(f"Middle scan aborted: {e}")
        return DetectionResult(reason=f"middle scan failed: {e}")

    if found:
        logger.info(f"Found {len(found)} middle opportunities")
    reason = f"{len(failures)} market(s) failed: {failures[0]}" if failures else None
    return DetectionResult(opportunities=found, reason=reason)
