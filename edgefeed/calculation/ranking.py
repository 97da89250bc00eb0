from typing import Any, Callable, Dict, List, Sequence, Tuple, TypeVar, Union

from loguru import logger

from edgefeed.models.config import OpportunityConfig
from edgefeed.models.enums import SortBy
from edgefeed.models.opportunity import ArbitrageOpportunity, MiddleOpportunity, Opportunity

OpportunityT = TypeVar("OpportunityT", bound=Opportunity)


def _passes(opportunity: Opportunity, config: OpportunityConfig) -> bool:
    if not config.accepts_market(opportunity.market_key):
        return False
    if not config.accepts_sport(opportunity.sport_key):
        return False
    if not all(config.accepts_book(key) for key in opportunity.bookmaker_keys):
        return False
    if isinstance(opportunity, ArbitrageOpportunity):
        return opportunity.profit_percent >= config.min_profit_percent
    if isinstance(opportunity, MiddleOpportunity):
        return (
            opportunity.win_probability_estimate >= config.min_middle_probability
            and opportunity.gap >= config.min_middle_gap
        )
    return True


def filter_opportunities(
    opportunities: Sequence[OpportunityT], config: OpportunityConfig
) -> List[OpportunityT]:
    """Drop entries below the configured thresholds or outside the filters."""
    try:
        return [o for o in opportunities if _passes(o, config)]
    except Exception as e:
        logger.exception(f"Filtering failed, returning input unchanged: {e}")
        return list(opportunities)


# Every key ends with the id so equal scores always come out in the same order
_SORT_KEYS: Dict[SortBy, Callable[[Any], Tuple]] = {
    SortBy.PROFIT: lambda o: (-o.profit_percent_value, o.id),
    SortBy.AMOUNT: lambda o: (-o.profit_amount_value, o.id),
    SortBy.TIME: lambda o: (-o.found_at.timestamp(), o.id),
    SortBy.EXPIRES: lambda o: (o.expires_at.timestamp(), o.id),
    # Arbitrage is certain, so it ranks above any middle by probability
    SortBy.PROBABILITY: lambda o: (-getattr(o, "win_probability_estimate", 1.0), o.id),
    SortBy.GAP: lambda o: (-getattr(o, "gap", 0.0), o.id),
}


def sort_opportunities(
    opportunities: Sequence[OpportunityT], sort_by: Union[SortBy, str] = SortBy.PROFIT
) -> List[OpportunityT]:
    """Return a new list ordered by ``sort_by``. Ties are broken by id."""
    try:
        key = _SORT_KEYS[SortBy(sort_by)]
        return sorted(opportunities, key=key)
    except Exception as e:
        logger.exception(f"Sorting by {sort_by!r} failed, keeping input order: {e}")
        return list(opportunities)


def rank(
    opportunities: Sequence[OpportunityT], config: OpportunityConfig
) -> List[OpportunityT]:
    """Filter then sort, as shown to the user."""
    return sort_opportunities(filter_opportunities(opportunities, config), config.sort_by)
