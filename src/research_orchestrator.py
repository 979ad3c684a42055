"""
Research orchestrator - gather research for a session, one source at a time.

For each selected source, in order:
    1. A fresh cache entry for (market, source) is linked to the session and used.
    2. Otherwise the provider is called, the response cached and linked.
    3. Any provider failure, malformed replies included, is logged and the
       source skipped. A cached row that no longer parses counts as a miss.

Storage errors (cache reads and writes, session links) propagate.

Sources run sequentially so each provider call happens after the previous
one has been cached.
"""

import logging
import time
from typing import Callable

from models.market import MarketContext
from models.research import ResearchResult
from models.session import PredictionSessionData
from src.interfaces import ResearchCacheProtocol, ResearchProviderProtocol, SessionStoreProtocol

logger = logging.getLogger(__name__)


def gather_research(
    session: PredictionSessionData,
    market: MarketContext,
    store: SessionStoreProtocol,
    cache: ResearchCacheProtocol,
    provider: ResearchProviderProtocol,
    delay: float = 0.0,
    sleep: Callable[[float], None] = time.sleep,
) -> list[ResearchResult]:
    """
    Collect research for every selected source of a session.

    Args:
        session: The session being executed
        market: Market the research is about
        store: Session store used to link cache entries to the session
        cache: Research cache
        provider: Research provider for cache misses
        delay: Seconds to wait between provider calls
        sleep: Sleep function (injectable for tests)

    Returns:
        Results gathered, in source order; failed sources are absent
    """
    results: list[ResearchResult] = []
    called_provider = False

    for source in session.selected_research_sources:
        try:
            cached = cache.get_by_source(market.id, source)
            cached_result = cached.to_result() if cached is not None else None
        except (TypeError, ValueError) as e:
            # Unreadable row: fetch fresh research, the new entry becomes the newest
            logger.warning("⚠️  Ignoring malformed cached %s research for market %s: %s", source, market.id, e)
            cached_result = None

        if cached_result is not None:
            logger.info("📦 Using cached %s research for market %s (entry %s)", source, market.id, cached.id)
            store.link_research(session.id, cached.id)
            results.append(cached_result)
            continue

        if called_provider and delay > 0:
            sleep(delay)
        called_provider = True

        try:
            call = provider.research(market, source)
        except Exception as e:
            logger.warning("⚠️  Research failed for source %s (session %s): %s", source, session.id, e)
            continue

        entry = cache.create(
            market_id=market.id,
            source=source,
            response=call.result.cache_payload(),
            model_name=call.model_name,
            system_message=call.system_message,
            user_message=call.user_message,
        )
        store.link_research(session.id, entry.id)
        results.append(call.result.model_copy(update={"cache_id": entry.id}))

    logger.info(
        "Research for session %s: %d/%d source(s) available",
        session.id, len(results), len(session.selected_research_sources),
    )
    return results


def build_research_context(results: list[ResearchResult]) -> str:
    """
    Format research results into one prompt section shared by every model.

    Returns an empty string when there is no research.
    """
    if not results:
        return ""

    sections = []
    for result in results:
        lines = [f"=== RESEARCH: {result.source.upper()} ==="]
        if result.confidence_score is not None:
            lines.append(f"Source confidence: {result.confidence_score:.2f}")
        lines.append(result.relevant_information.strip())
        if result.sentiment_analysis:
            lines.append(f"Sentiment: {result.sentiment_analysis}")
        if result.key_accounts:
            lines.append(f"Key accounts: {', '.join(result.key_accounts)}")
        if result.links:
            lines.append("Sources:")
            lines.extend(f"- {link}" for link in result.links)
        sections.append("\n".join(lines))

    return "\n\n".join(sections)
