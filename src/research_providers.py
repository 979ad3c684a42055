"""
Research providers - fetch external research for a market from one source.

Sources:
    exa           Exa.ai neural news search (single call)
    exa-two-step  Exa.ai search, then full contents for the hits
    grok          X (Twitter) research by Grok through OpenRouter
    perplexity    Perplexity Sonar web search

Every provider returns a ProviderCall (the ResearchResult plus the prompt
provenance stored in the research cache) and raises ResearchProviderError on
any failure. Caching is not done here; see src/research_orchestrator.py.
"""

import json
from datetime import date, timedelta
from pathlib import Path
from typing import Optional
import logging

import requests
from dotenv import load_dotenv
from openai import OpenAI
from pydantic import ValidationError

from config.research_sources import get_research_source
from config.settings import settings
from db.models import utcnow
from models.market import MarketContext
from models.research import ProviderCall, ResearchResult
from src.errors import ResearchProviderError

# Load environment variables
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(env_path)

logger = logging.getLogger(__name__)

# =============================================================================
# CONFIGURATION
# =============================================================================

EXA_SEARCH_URL = "https://api.exa.ai/search"
EXA_CONTENTS_URL = "https://api.exa.ai/contents"
PERPLEXITY_URL = "https://api.perplexity.ai/chat/completions"

EXA_NUM_RESULTS = 10
EXA_LOOKBACK_DAYS = 14
EXA_CONTENT_MAX_CHARACTERS = 3000

NEWS_DOMAINS = [
    "reuters.com",
    "bloomberg.com",
    "cnn.com",
    "bbc.com",
    "apnews.com",
    "wsj.com",
    "politico.com",
    "axios.com",
]

SPORTS_KEYWORDS = ("vs.", "game", "match", "nfl", "nba", "mlb")

# Confidence attached to each source's results
EXA_CONFIDENCE = 0.8
EXA_TWO_STEP_CONFIDENCE = 0.85
GROK_CONFIDENCE = 0.7
PERPLEXITY_CONFIDENCE = 0.75


# =============================================================================
# PROMPTS
# =============================================================================

GROK_SYSTEM_PROMPT = """You are a research assistant specialized in X (Twitter) analysis. Your task is to search X (Twitter) for the most relevant and up-to-date information, discussions, sentiment, and trends related to the given prediction market to help AI models make accurate predictions.

Focus on:
- Recent tweets and discussions about the topic
- Sentiment analysis from influential accounts
- Breaking news or developments
- Key opinion leaders' perspectives
- Viral content or trending hashtags related to the topic

Format your response as a JSON object with the following structure:
{
  "relevant_information": "A comprehensive summary of X (Twitter) sentiment, key discussions, and recent developments you found.",
  "links": ["list", "of", "relevant", "Twitter/X", "URLs"],
  "sentiment_analysis": "Overall sentiment (positive/negative/neutral) with key insights",
  "key_accounts": ["list", "of", "influential", "accounts", "discussing", "this", "topic"]
}

IMPORTANT: You *must* search X (Twitter) and the 'links' array cannot be empty. Return ONLY a valid JSON object. Do NOT wrap your response in markdown code blocks, backticks, or any other formatting. Return pure JSON."""

GROK_RESPONSE_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "required": ["relevant_information", "links", "sentiment_analysis", "key_accounts"],
    "properties": {
        "relevant_information": {"type": "string", "minLength": 10},
        "links": {"type": "array", "items": {"type": "string", "minLength": 1}, "minItems": 1},
        "sentiment_analysis": {"type": "string", "minLength": 5},
        "key_accounts": {"type": "array", "items": {"type": "string", "minLength": 1}},
    },
}

PERPLEXITY_SYSTEM_PROMPT = """You are a research analyst gathering evidence for PREDICTION MARKET analysis.

Your goal is to find information that helps estimate the probability of each market outcome.

For each source you find, report:
- Type of source and publication date
- Key findings: specific numbers, direct quotes, dates and deadlines, names of key people or organizations
- How the evidence affects the likelihood of the outcomes, with caveats

GUIDELINES:
- Cite sources using [1], [2], [3], etc.
- Note conflicts between sources
- Acknowledge gaps in available information
- Do NOT fabricate - only report what you actually find

End with a short overall assessment of the weight of evidence."""


def _market_lines(market: MarketContext) -> str:
    lines = [f'Market: "{market.question}"']
    if market.description:
        lines.append(f"Market Description: {market.description}")
    if market.end_date_str:
        lines.append(f"Market End Date: {market.end_date_str}")
    if market.resolution_source:
        lines.append(f"Resolution Source: {market.resolution_source}")
    return "\n".join(lines)


def is_sports_market(question: str) -> bool:
    """Heuristic used to drop the news-domain restriction for sports markets."""
    q = question.lower()
    return any(keyword in q for keyword in SPORTS_KEYWORDS)


# =============================================================================
# EXA
# =============================================================================

class ExaResearch:
    """Exa.ai news search."""

    source = "exa"
    confidence = EXA_CONFIDENCE

    def __init__(self, api_key: str, timeout: int = 90, http=requests):
        self.api_key = api_key
        self.timeout = timeout
        self.http = http

    def _headers(self) -> dict:
        return {"Content-Type": "application/json", "x-api-key": self.api_key}

    def _post(self, url: str, payload: dict) -> dict:
        try:
            response = self.http.post(url, headers=self._headers(), json=payload, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.Timeout as e:
            raise ResearchProviderError(self.source, f"Timeout after {self.timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise ResearchProviderError(self.source, f"Exa.ai API error: {e}") from e
        except ValueError as e:
            raise ResearchProviderError(self.source, f"Invalid JSON from Exa.ai: {e}") from e

    def build_query(self, market: MarketContext) -> tuple[str, bool]:
        """Search query for a market, plus whether it's a sports market."""
        sports = is_sports_market(market.question)
        if sports:
            query = f"{market.question} predictions odds injury report analysis {date.today().year}"
        else:
            query = f"{market.question} {market.description or ''} recent developments news analysis"
        return query, sports

    def search(self, market: MarketContext, with_text: bool = True) -> tuple[str, list[dict]]:
        query, sports = self.build_query(market)
        payload = {
            "query": query,
            "num_results": EXA_NUM_RESULTS,
            "use_autoprompt": True,
            "type": "neural",
            "category": "news",
            "start_published_date": (date.today() - timedelta(days=EXA_LOOKBACK_DAYS)).isoformat(),
        }
        if not sports:
            payload["include_domains"] = NEWS_DOMAINS
        if with_text:
            payload["text"] = True
            payload["highlights"] = {"numSentences": 2, "highlightsPerUrl": 3}

        logger.debug("Exa.ai search query: %r (sports=%s)", query, sports)
        data = self._post(EXA_SEARCH_URL, payload)
        results = data.get("results") or []
        if not results:
            raise ResearchProviderError(self.source, "No results returned from Exa.ai")
        return query, results

    def to_result(self, results: list[dict]) -> ResearchResult:
        """Text > summary > highlights > snippet, falling back to titles and URLs."""
        texts = []
        for r in results:
            text = r.get("text") or r.get("summary") or "\n".join(r.get("highlights") or []) or r.get("snippet") or ""
            if text:
                texts.append(text)
        relevant_information = "\n\n".join(texts)
        if not relevant_information:
            relevant_information = "\n".join(f"{r.get('title') or 'Article'}: {r.get('url')}" for r in results)

        links = [url for url in (r.get("url") or r.get("link") for r in results) if url and url.startswith("http")]
        if not relevant_information or not links:
            raise ResearchProviderError(self.source, "Invalid results from Exa.ai - missing content or links")

        return ResearchResult(
            source=self.source,
            relevant_information=relevant_information,
            links=links,
            confidence_score=self.confidence,
            timestamp=utcnow(),
        )

    def research(self, market: MarketContext) -> ProviderCall:
        query, results = self.search(market)
        return ProviderCall(
            result=self.to_result(results),
            model_name="exa-search",
            system_message="Exa.ai semantic search",
            user_message=query,
        )


class ExaTwoStepResearch(ExaResearch):
    """Exa.ai search for ids, then a second call for the full page contents."""

    source = "exa-two-step"
    confidence = EXA_TWO_STEP_CONFIDENCE

    def research(self, market: MarketContext) -> ProviderCall:
        query, hits = self.search(market, with_text=False)
        ids = [hit["id"] for hit in hits if hit.get("id")]
        if not ids:
            raise ResearchProviderError(self.source, "Exa.ai search returned no document ids")

        data = self._post(EXA_CONTENTS_URL, {
            "ids": ids,
            "text": {"maxCharacters": EXA_CONTENT_MAX_CHARACTERS},
            "highlights": {"numSentences": 3, "highlightsPerUrl": 3},
        })
        contents = data.get("results") or []
        if not contents:
            raise ResearchProviderError(self.source, "No contents returned from Exa.ai")

        return ProviderCall(
            result=self.to_result(contents),
            model_name="exa-search+contents",
            system_message="Exa.ai semantic search with full contents",
            user_message=query,
        )


# =============================================================================
# GROK (via OpenRouter)
# =============================================================================

class GrokResearch:
    """X (Twitter) research with Grok through OpenRouter's OpenAI-compatible API."""

    source = "grok"

    def __init__(self, client: OpenAI, model: str = None):
        self.client = client
        self.model = model or settings.grok_model

    def build_user_message(self, market: MarketContext) -> str:
        return f"""Please search X (Twitter) for the latest information, sentiment, and discussions regarding the following prediction market:

{_market_lines(market)}

Focus on recent X (Twitter) activity, sentiment from key accounts, breaking news, viral content, and trending discussions that could influence the outcome of this prediction market. Pay special attention to:
- Official accounts related to the topic
- News outlets reporting on X
- Expert commentary and analysis
- Public sentiment and reaction
- Any recent developments or announcements

Analyze the overall Twitter/X sentiment and provide insights that would help AI models understand the current social media landscape around this prediction."""

    def research(self, market: MarketContext) -> ProviderCall:
        user_message = self.build_user_message(market)
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": GROK_SYSTEM_PROMPT},
                    {"role": "user", "content": user_message},
                ],
                response_format={
                    "type": "json_schema",
                    "json_schema": {"name": "grok_research", "strict": True, "schema": GROK_RESPONSE_SCHEMA},
                },
            )
            content = response.choices[0].message.content or ""
            data = json.loads(content)
        except Exception as e:
            raise ResearchProviderError(self.source, str(e)) from e
        if not isinstance(data, dict):
            raise ResearchProviderError(self.source, "Grok response is not a JSON object")

        try:
            links = [link for link in data.get("links") or [] if isinstance(link, str) and link]
            info = data.get("relevant_information") or ""
            if not isinstance(info, str) or len(info) < 10 or not links:
                raise ResearchProviderError(self.source, "Grok response missing relevant_information or links")

            result = ResearchResult(
                source=self.source,
                relevant_information=info,
                links=links,
                confidence_score=GROK_CONFIDENCE,
                sentiment_analysis=data.get("sentiment_analysis"),
                key_accounts=data.get("key_accounts") or [],
                timestamp=utcnow(),
            )
        except (AttributeError, TypeError, ValidationError) as e:
            raise ResearchProviderError(self.source, f"Malformed Grok response: {e}") from e
        return ProviderCall(
            result=result,
            model_name=self.model,
            system_message=GROK_SYSTEM_PROMPT,
            user_message=user_message,
        )


# =============================================================================
# PERPLEXITY
# =============================================================================

class PerplexityResearch:
    """Perplexity Sonar web search."""

    source = "perplexity"

    def __init__(self, api_key: str, model: str = None, timeout: int = 90, recency: str = "week", http=requests):
        self.api_key = api_key
        self.model = model or settings.search_model
        self.timeout = timeout
        self.recency = recency
        self.http = http

    def build_user_message(self, market: MarketContext) -> str:
        outcomes = ", ".join(market.outcomes)
        return f"""MARKET BEING EVALUATED:
{_market_lines(market)}
Outcomes: {outcomes}

Search for relevant information and analyze each source you find using the specified format."""

    def research(self, market: MarketContext) -> ProviderCall:
        user_message = self.build_user_message(market)
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": PERPLEXITY_SYSTEM_PROMPT},
                {"role": "user", "content": user_message},
            ],
            "search_recency_filter": self.recency,
            "return_citations": True,
            "return_related_questions": False,
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

        try:
            response = self.http.post(PERPLEXITY_URL, headers=headers, json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.Timeout as e:
            raise ResearchProviderError(self.source, f"Timeout after {self.timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise ResearchProviderError(self.source, f"HTTP error: {e}") from e
        except ValueError as e:
            raise ResearchProviderError(self.source, f"Invalid JSON: {e}") from e

        try:
            message = (data.get("choices") or [{}])[0].get("message") or {}
            content = message.get("content") or ""

            # Citations show up in different places depending on the API version
            citations = (
                data.get("citations") or
                message.get("citations") or
                data.get("sources") or
                (message.get("context") or {}).get("citations") or
                []
            )
            links = [c if isinstance(c, str) else c.get("url", "") for c in citations]
            links = [link for link in links if link]

            if not content:
                raise ResearchProviderError(self.source, "Empty response from Perplexity")

            result = ResearchResult(
                source=self.source,
                relevant_information=content,
                links=links,
                confidence_score=PERPLEXITY_CONFIDENCE,
                timestamp=utcnow(),
            )
        except (AttributeError, TypeError, KeyError, IndexError, ValidationError) as e:
            raise ResearchProviderError(self.source, f"Malformed Perplexity response: {e}") from e
        return ProviderCall(
            result=result,
            model_name=data.get("model", self.model),
            system_message=PERPLEXITY_SYSTEM_PROMPT,
            user_message=user_message,
        )


# =============================================================================
# PUBLIC API
# =============================================================================

class ResearchProvider:
    """
    Dispatch a research request to the implementation for a source id.

    Args:
        config: Settings holding API keys and model names
        openai_client: Optional OpenRouter client for Grok (created on first use)
        http: Module/object with a requests-compatible `post`
    """

    def __init__(self, config=settings, openai_client: Optional[OpenAI] = None, http=requests):
        self.config = config
        self._openai_client = openai_client
        self.http = http

    def _client(self) -> OpenAI:
        if self._openai_client is None:
            self._openai_client = OpenAI(
                api_key=self.config.openrouter_api_key,
                base_url=self.config.openrouter_base_url,
                timeout=self.config.request_timeout,
            )
        return self._openai_client

    def _api_key(self, source) -> str:
        key = getattr(self.config, source.api_key_setting, "")
        if not key:
            raise ResearchProviderError(source.id, f"{source.api_key_env} environment variable not set")
        return key

    def _build(self, source_id: str):
        source = get_research_source(source_id)
        if source is None:
            raise ResearchProviderError(source_id, f"Unsupported research source: {source_id}")
        if not source.available:
            raise ResearchProviderError(source_id, f"Research source {source_id} is not currently available")

        key = self._api_key(source)
        timeout = self.config.request_timeout
        if source_id == "exa":
            return ExaResearch(key, timeout=timeout, http=self.http)
        if source_id == "exa-two-step":
            return ExaTwoStepResearch(key, timeout=timeout, http=self.http)
        if source_id == "grok":
            return GrokResearch(self._client(), model=self.config.grok_model)
        if source_id == "perplexity":
            return PerplexityResearch(key, model=self.config.search_model, timeout=timeout, http=self.http)
        raise ResearchProviderError(source_id, f"Research source {source_id} not yet implemented")

    def research(self, market: MarketContext, source: str) -> ProviderCall:
        """
        Fetch research for a market from one source.

        Raises:
            ResearchProviderError: unknown/unavailable source, missing key, or provider failure
        """
        provider = self._build(source)
        logger.info("🔎 Researching market %s with %s", market.id, source)
        try:
            call = provider.research(market)
        except (AttributeError, TypeError, KeyError, ValidationError) as e:
            raise ResearchProviderError(source, f"Malformed response: {e}") from e
        logger.info("   ✅ %s: %d chars, %d links", source, len(call.result.relevant_information), len(call.result.links))
        return call
