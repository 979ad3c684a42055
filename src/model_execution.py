"""
Model execution stage - run every selected model for a session.

Model calls are independent: they run on a bounded thread pool and the stage
waits for all of them before returning. A failed or raising call only counts
against its own model.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Optional

from models.prediction import GenerationResult
from models.worker import ModelExecutionSummary, ModelFailure
from src.interfaces import ModelProviderProtocol, SessionStoreProtocol

logger = logging.getLogger(__name__)

MIN_POOL_SIZE = 2
MAX_POOL_SIZE = 4


def pool_size(requested: int) -> int:
    """Clamp the configured pool size to 2..4."""
    return max(MIN_POOL_SIZE, min(MAX_POOL_SIZE, requested))


def execute_models(
    session_id: str,
    market_id: str,
    model_ids: list[str],
    provider: ModelProviderProtocol,
    store: SessionStoreProtocol,
    context: Optional[str] = None,
    max_workers: int = 3,
) -> ModelExecutionSummary:
    """
    Generate one prediction per model and link the successful ones to the session.

    Args:
        session_id: Session the predictions belong to
        market_id: Market to predict
        model_ids: Models to run
        provider: Model provider
        store: Session store used to link predictions
        context: Research context passed to every model
        max_workers: Requested pool size (clamped to 2..4)

    Returns:
        ModelExecutionSummary with success_count + failure_count == len(model_ids)
    """
    summary = ModelExecutionSummary(total=len(model_ids))
    if not model_ids:
        return summary

    with ThreadPoolExecutor(max_workers=pool_size(max_workers)) as pool:
        futures = {
            pool.submit(provider.generate, market_id, model_id, context): model_id
            for model_id in model_ids
        }
        for future in as_completed(futures):
            model_id = futures[future]
            try:
                result: GenerationResult = future.result()
            except Exception as e:
                logger.warning("❌ Model %s raised for session %s: %s", model_id, session_id, e)
                summary.failures.append(ModelFailure(model_id=model_id, message=str(e)))
                continue

            if not result.success or result.prediction_id is None:
                message = result.message or "Unknown error"
                logger.warning("❌ Model %s failed for session %s: %s", model_id, session_id, message)
                summary.failures.append(ModelFailure(model_id=model_id, message=message))
                continue

            store.link_prediction(result.prediction_id, session_id)
            summary.prediction_ids.append(result.prediction_id)
            logger.info("✅ Model %s succeeded for session %s (prediction %s)", model_id, session_id, result.prediction_id)

    summary.success_count = len(summary.prediction_ids)
    summary.failure_count = len(summary.failures)
    return summary
