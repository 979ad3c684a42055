"""
Prediction models - what a model returns and what the worker records.

These models represent:
- The JSON a model is asked to produce: PredictionResult
- The outcome of one ModelProvider.generate call: GenerationResult
"""

import math
from typing import Optional, Literal
from pydantic import BaseModel, Field, model_validator


class PredictionResult(BaseModel):
    """
    Structured prediction returned by a model.

    Field names follow the JSON shape requested in the prompt.
    """
    outcomes: list[str] = Field(min_length=1)
    outcomesProbabilities: list[float] = Field(min_length=1)
    reasoning: str = ""
    confidence_level: Optional[Literal["High", "Medium", "Low"]] = None

    @model_validator(mode="after")
    def _check_probabilities(self) -> "PredictionResult":
        if len(self.outcomes) != len(self.outcomesProbabilities):
            raise ValueError("outcomes and outcomesProbabilities must have the same length")

        total = 0.0
        for p in self.outcomesProbabilities:
            if not math.isfinite(p) or p < 0 or p > 1:
                raise ValueError("outcomesProbabilities must be numbers in [0,1]")
            total += p
        if abs(total - 1) > 1e-6:
            raise ValueError("outcomesProbabilities must sum to 1")
        return self

    def aligned_to(self, market_outcomes: Optional[list[str]]) -> tuple[list[str], list[float]]:
        """
        Reorder outcomes/probabilities to the market's outcome order.

        Falls back to the model's order when the labels don't match one-to-one.
        """
        if not market_outcomes or len(market_outcomes) != len(self.outcomes):
            return list(self.outcomes), list(self.outcomesProbabilities)

        index_by_label = {label: i for i, label in enumerate(market_outcomes)}
        aligned_outcomes = [""] * len(self.outcomes)
        aligned_probs = [0.0] * len(self.outcomes)
        for label, prob in zip(self.outcomes, self.outcomesProbabilities):
            j = index_by_label.get(label)
            if j is not None:
                aligned_outcomes[j] = label
                aligned_probs[j] = prob

        if any(not label for label in aligned_outcomes):
            return list(self.outcomes), list(self.outcomesProbabilities)
        return aligned_outcomes, aligned_probs


class GenerationResult(BaseModel):
    """Outcome of a single model call for a session."""
    success: bool
    prediction_id: Optional[int] = None
    message: str
