"""
Research source registry.

Each research source is an external information provider that can be selected
for a prediction session. Sources are queried once per market and cached by
(market_id, source).
"""
from dataclasses import dataclass, field

from config.settings import settings


@dataclass(frozen=True)
class ResearchSource:
    """Static description of a selectable research source."""
    id: str
    name: str
    description: str
    provider: str
    credit_cost: int
    available: bool
    api_key_setting: str  # Settings attribute holding the key
    api_key_env: str
    features: tuple[str, ...] = field(default_factory=tuple)


RESEARCH_SOURCES: tuple[ResearchSource, ...] = (
    ResearchSource(
        id="exa",
        name="Exa.ai",
        description="Advanced web search optimized for recent developments",
        provider="Exa.ai",
        credit_cost=1,
        available=True,
        api_key_setting="exa_api_key",
        api_key_env="EXA_API_KEY",
        features=("semantic_search", "news_focus", "trusted_domains"),
    ),
    ResearchSource(
        id="exa-two-step",
        name="Exa.ai Pro",
        description="Two-step Exa.ai search with enhanced content retrieval",
        provider="Exa.ai",
        credit_cost=2,
        available=True,
        api_key_setting="exa_api_key",
        api_key_env="EXA_API_KEY",
        features=("semantic_search", "full_content", "content_optimization"),
    ),
    ResearchSource(
        id="grok",
        name="X (Twitter)",
        description="X (Twitter) realtime market research via Grok AI",
        provider="Grok AI",
        credit_cost=2,
        available=True,
        api_key_setting="openrouter_api_key",
        api_key_env="OPENROUTER_API_KEY",
        features=("realtime_data", "social_sentiment", "viral_trends"),
    ),
    ResearchSource(
        id="perplexity",
        name="Perplexity Sonar",
        description="Web research with citations via Perplexity's Sonar API",
        provider="Perplexity",
        credit_cost=1,
        available=True,
        api_key_setting="perplexity_api_key",
        api_key_env="PERPLEXITY_KEY",
        features=("web_search", "citations"),
    ),
)

RESEARCH_SOURCE_IDS = tuple(source.id for source in RESEARCH_SOURCES)


def get_research_source(source_id: str) -> ResearchSource | None:
    """Look up a research source by id."""
    for source in RESEARCH_SOURCES:
        if source.id == source_id:
            return source
    return None


def get_available_research_sources() -> list[ResearchSource]:
    return [source for source in RESEARCH_SOURCES if source.available]


def get_research_source_cost(source_id: str) -> int:
    source = get_research_source(source_id)
    return source.credit_cost if source else 0


def is_research_source_available(source_id: str) -> bool:
    source = get_research_source(source_id)
    return bool(source and source.available)


def calculate_research_sources_cost(source_ids: list[str]) -> int:
    """Total credit cost of a list of research sources (unknown ids cost 0)."""
    return sum(get_research_source_cost(source_id) for source_id in source_ids)


def validate_research_source_environment(config=None) -> dict:
    """
    Check which available sources have their API key configured.

    Returns:
        Dict with "available" source ids, "missing" key descriptions and "errors"
    """
    config = config or settings
    available, missing, errors = [], [], []

    for source in RESEARCH_SOURCES:
        if not source.available:
            continue

        if not hasattr(config, source.api_key_setting):
            errors.append(f"Research source {source.id} has unknown key setting {source.api_key_setting}")
            continue

        value = getattr(config, source.api_key_setting) or ""
        if value.strip():
            available.append(source.id)
        else:
            missing.append(f"{source.api_key_env} (for {source.name})")

    return {"available": available, "missing": missing, "errors": errors}
