import sys
import asyncio
import json
from typing import List

# --- Settings/Logging ---
from edgefeed.logging.setup import setup_logging
from edgefeed.config.settings import settings

setup_logging()

from loguru import logger

# --- End Settings/Logging ---

from edgefeed.models.config import OpportunityConfig
from edgefeed.models.enums import DEFAULT_MARKETS, DEFAULT_SPORTS, GAME_MARKETS
from edgefeed.models.opportunity import ArbitrageOpportunity, MiddleOpportunity
from edgefeed.scrapers.odds_api_scraper import OddsApiScraper
from edgefeed.storage.bankroll import InMemoryBankroll
from edgefeed.storage.fetch_cache import FetchCache
from edgefeed.feed.opportunity_feed import OpportunityFeed, FeedState

from rich import print
from rich.panel import Panel

OUTPUT_FILENAME = "opportunities.json"
SHOW_TOP = 5


def render_arbitrage(opportunities: List[ArbitrageOpportunity]) -> Panel:
    lines = []
    for opp in opportunities[:SHOW_TOP]:
        legs = " | ".join(
            f"{leg.bookmaker_title}: {leg.selection} {leg.american_odds:+d} stake ${leg.stake:.2f}"
            for leg in opp.legs
        )
        lines.append(
            f"[bold green]{opp.profit_percent:.2f}%[/bold green] {opp.event.label} "
            f"({opp.market_key}) profit ${opp.guaranteed_profit:.2f}\n    {legs}"
        )
    body = "\n".join(lines) or "No arbitrage found."
    return Panel(body, title=f"Arbitrage ({len(opportunities)})", expand=False)


def render_middles(opportunities: List[MiddleOpportunity]) -> Panel:
    lines = []
    for opp in opportunities[:SHOW_TOP]:
        legs = " | ".join(
            f"{leg.bookmaker_title}: {leg.selection} {leg.american_odds:+d}" for leg in opp.legs
        )
        lines.append(
            f"[bold cyan]{opp.win_probability_estimate:.0%}[/bold cyan] {opp.event.label} "
            f"gap {opp.gap:g} ({opp.middle_range}) best ${opp.max_profit:.2f} / "
            f"worst ${opp.worst_case_profit:.2f}\n    {legs}"
        )
    body = "\n".join(lines) or "No middles found."
    return Panel(body, title=f"Middles ({len(opportunities)})", expand=False)


def save_state(state: FeedState) -> None:
    try:
        with open(OUTPUT_FILENAME, "w", encoding="utf-8") as f:
            json.dump(
                {
                    "arbitrage": [o.model_dump(mode="json") for o in state.arbitrage],
                    "middles": [o.model_dump(mode="json") for o in state.middles],
                },
                f,
                indent=4,
                ensure_ascii=False,
            )
        logger.success(f"Saved opportunities to {OUTPUT_FILENAME}")
    except IOError as e:
        logger.error(f"Failed to write opportunities to {OUTPUT_FILENAME}: {e}")


def print_state(state: FeedState) -> None:
    print(render_arbitrage(state.arbitrage))
    print(render_middles(state.middles))
    if state.stale:
        print(Panel(f"Showing stale data: {state.error}", style="yellow", expand=False))
    for note in state.diagnostics:
        logger.warning(f"Diagnostic: {note}")


async def main() -> None:
    """Main entry point: one refresh (or continuous polling with --poll; --props adds player props)."""
    logger.info("Starting edgefeed opportunity scan")
    poll = "--poll" in sys.argv[1:]
    markets = DEFAULT_MARKETS if "--props" in sys.argv[1:] else GAME_MARKETS

    cache = FetchCache()
    scraper = OddsApiScraper()
    bankroll = InMemoryBankroll(settings.default_bankroll)
    feed = OpportunityFeed(
        cache,
        scraper,
        bankroll,
        sports=DEFAULT_SPORTS,
        markets=markets,
        config=OpportunityConfig(),
    )

    try:
        state = await feed.refresh()
        if state.error is not None and state.is_empty:
            logger.error(f"No odds available: {state.error}")
        else:
            logger.success(
                f"Scan complete: {len(state.arbitrage)} arbitrage, {len(state.middles)} middles."
            )
        print_state(state)
        save_state(state)

        if poll:
            subscription = feed.subscribe(
                lambda s: print_state(s) if not s.loading else None
            )
            feed.start_polling()
            logger.info("Polling; press Ctrl+C to stop.")
            try:
                await asyncio.Event().wait()
            finally:
                subscription.unsubscribe()
    finally:
        await feed.close()
        await scraper.close()
        logger.info(f"Cache stats: {cache.stats()}")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Execution interrupted by user (KeyboardInterrupt).")
        sys.exit(0)
    except Exception as e:
        logger.exception(f"Unhandled exception in main execution: {e}")
        sys.exit(1)
