"""
Model provider - one prediction from one model for one market.

Calls the model through OpenRouter's OpenAI-compatible API, validates the
JSON prediction it returns, aligns it to the market's outcome order and
saves it as a Prediction row.

generate() never raises: any failure comes back as
GenerationResult(success=False, message=...).
"""

import json
import logging
import time
from typing import Callable, Optional

from openai import OpenAI
from pydantic import ValidationError

from config.settings import settings
from db.connection import SessionLocal
from db.models import Market as MarketDB, Prediction as PredictionDB, utcnow
from models.market import MarketContext
from models.prediction import GenerationResult, PredictionResult
from src.errors import ModelGenerationError

logger = logging.getLogger(__name__)

# =============================================================================
# PROMPTS
# =============================================================================

SYSTEM_PROMPT = """You are a prediction analysis expert. Analyze the given market and provide a structured prediction with probability, reasoning, and confidence level.

Format your response as a JSON object with the following structure:
{
  "outcomes": ["Yes", "No"],
  "outcomesProbabilities": [0.75, 0.25],
  "reasoning": "detailed explanation of your reasoning",
  "confidence_level": "High/Medium/Low"
}

IMPORTANT: Return ONLY a valid JSON object. Do NOT wrap your response in markdown code blocks, backticks, or any other formatting. Return pure JSON.
IMPORTANT: The outcomesProbabilities values must be decimal values between 0 and 1. Do not use percentages, text, or any other format.
IMPORTANT: the sum total of the outcomesProbabilities must equal 1
"""


def build_user_message(market: MarketContext, context: Optional[str] = None) -> str:
    """User prompt for a market, with the shared research context appended."""
    lines = [
        f'Analyze this market and provide a comprehensive prediction for the outcome:"{market.outcomes[0]}":',
        f'Market: "{market.question}"',
        "Please consider the market context, timing, and any relevant factors when making your prediction.",
    ]
    if market.description:
        lines.append(f"Market Description: {market.description}")
    if market.end_date_str:
        lines.append(f"Market End Date: {market.end_date_str}")
    if context:
        lines.append(f"Additional context: {context}")
    return "\n".join(lines)


def parse_prediction(content: str) -> PredictionResult:
    """
    Parse and validate a model's JSON reply.

    Tolerates a markdown code fence around the JSON.

    Raises:
        ValueError: not JSON, or not a valid prediction
    """
    text = (content or "").strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
        text = text.strip()
    if not text:
        raise ValueError("Empty response from model")

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"Model returned invalid JSON: {e}") from e

    # Models sometimes answer "high" or "medium"
    level = data.get("confidence_level") if isinstance(data, dict) else None
    if isinstance(level, str):
        data["confidence_level"] = level.strip().capitalize() or None

    try:
        return PredictionResult.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"Invalid prediction: {e.errors()[0]['msg']}") from e


# =============================================================================
# PROVIDER
# =============================================================================

class OpenRouterModelProvider:
    """
    Generate and store predictions with models served by OpenRouter.

    Args:
        session_factory: SQLAlchemy session factory
        client: Optional OpenAI client (created from settings if not provided)
        rate_limit_delay: Seconds to wait before each model call
        sleep: Sleep function (injectable for tests)
    """

    def __init__(
        self,
        session_factory=SessionLocal,
        client: Optional[OpenAI] = None,
        rate_limit_delay: float = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session_factory = session_factory
        self.client = client or OpenAI(
            api_key=settings.openrouter_api_key,
            base_url=settings.openrouter_base_url,
            timeout=settings.request_timeout,
        )
        self.rate_limit_delay = settings.model_rate_limit_delay if rate_limit_delay is None else rate_limit_delay
        self.sleep = sleep

    def _load_market(self, market_id: str) -> Optional[MarketContext]:
        db = self.session_factory()
        try:
            market = db.get(MarketDB, market_id)
            return MarketContext.from_orm_market(market) if market else None
        finally:
            db.close()

    def _complete(self, model_id: str, system_message: str, user_message: str) -> str:
        try:
            response = self.client.chat.completions.create(
                model=model_id or settings.default_model,
                messages=[
                    {"role": "system", "content": system_message},
                    {"role": "user", "content": user_message},
                ],
                response_format={"type": "json_object"},
            )
        except Exception as e:
            raise ModelGenerationError(model_id, f"OpenRouter request failed: {e}") from e

        if not response.choices:
            raise ModelGenerationError(model_id, "No choices in OpenRouter response")
        return response.choices[0].message.content or ""

    def _save(
        self,
        market: MarketContext,
        model_id: str,
        prediction: PredictionResult,
        system_message: str,
        user_message: str,
        ai_response: str,
    ) -> int:
        outcomes, probabilities = prediction.aligned_to(market.outcomes)
        db = self.session_factory()
        try:
            row = PredictionDB(
                market_id=market.id,
                model_name=model_id,
                outcomes=outcomes,
                outcome_probabilities=probabilities,
                reasoning=prediction.reasoning,
                confidence_level=prediction.confidence_level,
                system_prompt=system_message,
                user_message=user_message,
                ai_response=ai_response,
                created_at=utcnow(),
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return row.id
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def generate(self, market_id: str, model_id: str, context: Optional[str] = None) -> GenerationResult:
        """
        Generate, validate and store one prediction.

        Args:
            market_id: Market to predict
            model_id: OpenRouter model id, e.g. "openai/gpt-4o"
            context: Research context shared by all models of a session

        Returns:
            GenerationResult with the new prediction id on success
        """
        try:
            market = self._load_market(market_id)
            if market is None:
                return GenerationResult(success=False, message=f"Market with ID {market_id} not found in database")

            user_message = build_user_message(market, context)
            if self.rate_limit_delay > 0:
                self.sleep(self.rate_limit_delay)

            logger.info("🤖 Generating prediction for market %s with %s", market_id, model_id)
            content = self._complete(model_id, SYSTEM_PROMPT, user_message)
            prediction = parse_prediction(content)
            prediction_id = self._save(market, model_id, prediction, SYSTEM_PROMPT, user_message, content)
        except Exception as e:
            logger.warning("❌ Prediction failed for market %s with %s: %s", market_id, model_id, e)
            return GenerationResult(success=False, message=str(e))

        logger.info("   ✅ Prediction %s stored (%s)", prediction_id, model_id)
        return GenerationResult(
            success=True,
            prediction_id=prediction_id,
            message=f"Successfully generated and saved prediction for market {market_id}",
        )
