"""Two-leg arbitrage detection and stake sizing."""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from edgefeed.models.config import OpportunityConfig
from edgefeed.models.enums import MarketType
from edgefeed.models.game import MarketSnapshot
from edgefeed.models.normalized import NormalizedMarket, PricedOutcome
from edgefeed.models.opportunity import ArbitrageLeg, ArbitrageOpportunity, DetectionResult
from edgefeed.normalization.normalizer import Normalizer
from edgefeed.utils.calcs import american_to_decimal
from edgefeed.utils.misc_utils import generate_canonical_id, new_generation_tag

LINE_TOLERANCE = 0.01


def calculate_two_way_arbitrage(
    price_a: int, price_b: int, stake_cap: float
) -> Optional[Dict[str, Any]]:
    """Size a two-way arbitrage, or return None when none exists.

    Stakes are split in proportion to each leg's implied probability so both
    legs pay out the same amount. They are rounded to cents with the second
    stake taking the remainder, so the two always sum to ``stake_cap``. A cap
    too small to lock in at least one cent of profit also yields None.

    Raises:
        ArithmeticDegenerate: If either price is not a valid American price.
    """
    decimal_a = american_to_decimal(price_a)
    decimal_b = american_to_decimal(price_b)
    implied_a = 1 / decimal_a
    implied_b = 1 / decimal_b
    total_implied = implied_a + implied_b
    if total_implied >= 1 or stake_cap <= 0:
        return None

    stake_a = round(stake_cap * implied_a / total_implied, 2)
    stake_b = round(stake_cap - stake_a, 2)
    payout_a = stake_a * decimal_a
    payout_b = stake_b * decimal_b
    total_stake = round(stake_a + stake_b, 2)
    profit = round(min(payout_a, payout_b) - total_stake, 2)
    if profit <= 0:
        # Cent rounding ate the edge
        return None
    return {
        "decimal_odds": (decimal_a, decimal_b),
        "implied_probability": (implied_a, implied_b),
        "total_implied_probability": total_implied,
        "stakes": (stake_a, stake_b),
        "payouts": (round(payout_a, 2), round(payout_b, 2)),
        "total_stake": total_stake,
        "guaranteed_profit": profit,
        "profit_percent": profit / total_stake * 100,
    }


def _lines_oppose(market_type: MarketType, a: PricedOutcome, b: PricedOutcome) -> bool:
    """True when the two selections cover every result exactly once."""
    if market_type == MarketType.MONEYLINE:
        return True
    if a.point is None or b.point is None:
        return market_type == MarketType.OTHER and a.point is None and b.point is None
    if market_type.is_over_under:
        names = {a.name.lower(), b.name.lower()}
        return names == {"over", "under"} and abs(a.point - b.point) <= LINE_TOLERANCE
    if market_type == MarketType.SPREAD:
        return abs(a.point + b.point) <= LINE_TOLERANCE
    return False


def _build_leg(priced: PricedOutcome, stake: float, payout: float) -> ArbitrageLeg:
    return ArbitrageLeg(
        bookmaker_key=priced.bookmaker_key,
        bookmaker_title=priced.bookmaker_title,
        selection=priced.outcome.selection_label,
        american_odds=priced.price,
        decimal_odds=priced.decimal_odds,
        point=priced.point,
        stake=stake,
        payout=payout,
        implied_probability=priced.outcome.implied_probability,
    )


def detect_arbitrage(
    market: NormalizedMarket,
    config: OpportunityConfig,
    bankroll: float,
    now: Optional[datetime] = None,
    generation: Optional[str] = None,
) -> DetectionResult[ArbitrageOpportunity]:
    """Check one normalized market for a guaranteed-profit pair.

    Never raises: a failure becomes an empty result with a ``reason``.
    """
    now = now or datetime.now(timezone.utc)
    try:
        if market.event.has_started(now):
            return DetectionResult()
        if not market.is_two_way:
            # Three-way markets (soccer draw) are not sized here
            return DetectionResult()

        leg_a, leg_b = market.outcomes
        if leg_a.bookmaker_key == leg_b.bookmaker_key:
            return DetectionResult()
        if not _lines_oppose(market.market_type, leg_a, leg_b):
            return DetectionResult()

        plan = calculate_two_way_arbitrage(
            leg_a.price, leg_b.price, config.effective_max_stake(bankroll)
        )
        if plan is None or plan["profit_percent"] < config.min_profit_percent:
            return DetectionResult()

        stakes, payouts = plan["stakes"], plan["payouts"]
        tag = generation or new_generation_tag()
        opportunity = ArbitrageOpportunity(
            id="arb_"
            + generate_canonical_id(
                tag,
                market.event.event_id,
                market.market_key,
                market.participant,
                leg_a.bookmaker_key,
                leg_b.bookmaker_key,
            ),
            event=market.event,
            market_key=market.market_key,
            participant=market.participant,
            legs=[
                _build_leg(leg_a, stakes[0], payouts[0]),
                _build_leg(leg_b, stakes[1], payouts[1]),
            ],
            total_stake=plan["total_stake"],
            guaranteed_profit=plan["guaranteed_profit"],
            profit_percent=round(plan["profit_percent"], 4),
            total_implied_probability=plan["total_implied_probability"],
            found_at=now,
        )
        logger.debug(
            f"Arbitrage {opportunity.profit_percent:.2f}% on {market.event.label} "
            f"{market.market_key}: {leg_a.bookmaker_key} / {leg_b.bookmaker_key}"
        )
        return DetectionResult(opportunities=[opportunity])
    except Exception as e:
        logger.exception(
            f"Arbitrage detection failed for {market.event.event_id} {market.market_key}: {e}"
        )
        return DetectionResult(reason=f"arbitrage detection failed: {e}")


def detect_all_arbitrage(
    snapshots: Iterable[MarketSnapshot],
    markets: Iterable[str],
    config: OpportunityConfig,
    bankroll: float,
    normalizer: Normalizer,
    now: Optional[datetime] = None,
    generation: Optional[str] = None,
) -> DetectionResult[ArbitrageOpportunity]:
    """Run arbitrage detection over every snapshot and selected market."""
    now = now or datetime.now(timezone.utc)
    tag = generation or new_generation_tag()
    found: List[ArbitrageOpportunity] = []
    failures: List[str] = []
    try:
        market_keys = [m for m in markets if config.accepts_market(m)]
        for snapshot in snapshots:
            if not config.accepts_sport(snapshot.sport_key) or snapshot.has_started(now):
                continue
            for market_key in market_keys:
                for normalized in normalizer.normalize_market(
                    snapshot, market_key, config.book_filter, now
                ):
                    result = detect_arbitrage(normalized, config, bankroll, now, tag)
                    found.extend(result.opportunities)
                    if result.reason:
                        failures.append(result.reason)
    except Exception as e:
        logger.exception(f"Arbitrage scan aborted: {e}")
        return DetectionResult(reason=f"arbitrage scan failed: {e}")

    if found:
        logger.info(f"Found {len(found)} arbitrage opportunities")
    reason = f"{len(failures)} market(s) failed: {failures[0]}" if failures else None
    return DetectionResult(opportunities=found, reason=reason)
