"""Inference orchestration: predict, pick the top label, interpret confidence.

Each ``classify`` call takes a sequence number. Calls may finish out of order;
only the result of the most recently issued call is published as
``latest_result`` so a slow prediction for a superseded image never
overwrites a newer one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from fishid.errors import InferenceError, ModelNotReadyError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from fishid.config import Settings
    from fishid.media.ingest import ImageAsset
    from fishid.ml.model_manager import LabelProbability, LoadedModel, ModelManager
    from fishid.ml.translation import TranslationTable

logger = logging.getLogger(__name__)

UNKNOWN_LABEL = "unknown"


class Outcome(StrEnum):
    RECOGNIZED = "recognized"
    LOW_CONFIDENCE = "low-confidence"


@dataclass(frozen=True)
class ClassificationResult:
    """Interpreted top prediction for one image."""

    label: str
    display_label: str
    probability: float
    percentage: str
    outcome: Outcome
    high_confidence: bool
    sequence: int
    image_sequence: int

    @property
    def confidence(self) -> float:
        """The percentage as a number, 0.00-100.00."""
        return float(self.percentage)

    @property
    def recognized(self) -> bool:
        return self.outcome is Outcome.RECOGNIZED


def select_top(predictions: Sequence[LabelProbability]) -> LabelProbability:
    """Return the highest-probability entry; the first one wins ties."""
    if not predictions:
        raise InferenceError("The model returned no predictions")
    top = predictions[0]
    for candidate in predictions[1:]:
        if candidate.probability > top.probability:
            top = candidate
    return top


def format_percentage(probability: float) -> str:
    """Probability as a percentage with two decimals, clamped to 0-100."""
    percent = min(max(probability * 100.0, 0.0), 100.0)
    return f"{percent:.2f}"


class InferenceOrchestrator:
    """Turns a ready model and a canonical image into a ClassificationResult."""

    def __init__(
        self,
        settings: Settings,
        model_manager: ModelManager,
        translations: TranslationTable,
        log: logging.Logger | None = None,
    ) -> None:
        self._model_manager = model_manager
        self._translations = translations
        self._low_threshold = settings.low_confidence_threshold
        self._high_threshold = settings.high_confidence_threshold
        self._log = log or logger

        self._issued = 0
        self._latest: ClassificationResult | None = None
        self._pending = 0

    # -- Public API ---------------------------------------------------------

    @property
    def latest_result(self) -> ClassificationResult | None:
        """Result of the most recently issued classify call, once it finished."""
        return self._latest

    @property
    def pending(self) -> bool:
        """True while any classify call is in flight."""
        return self._pending > 0

    @property
    def last_issued(self) -> int:
        return self._issued

    async def classify(self, model: LoadedModel | None, asset: ImageAsset) -> ClassificationResult:
        """Predict on ``asset`` and interpret the top entry.

        Raises:
            ModelNotReadyError: If the model has not finished loading.
            InferenceError: If prediction fails.
        """
        if model is None or not self._model_manager.is_ready:
            raise ModelNotReadyError

        self._issued += 1
        sequence = self._issued
        self._latest = None

        self._pending += 1
        try:
            predictions = await self._model_manager.predict(model, asset)
        except InferenceError:
            self._log.exception("Prediction #%s failed for image #%s", sequence, asset.sequence)
            raise
        finally:
            self._pending -= 1

        result = self.interpret(predictions, sequence=sequence, image_sequence=asset.sequence)
        if sequence == self._issued:
            self._latest = result
        else:
            self._log.info("Discarding stale result #%s (latest issued is #%s)", sequence, self._issued)

        self._log.info(
            "Image #%s: %s (%s) %s%% -> %s%s",
            asset.sequence,
            result.label,
            result.display_label,
            result.percentage,
            result.outcome,
            " [high confidence]" if result.high_confidence else "",
        )
        return result

    def interpret(
        self,
        predictions: Sequence[LabelProbability],
        *,
        sequence: int = 0,
        image_sequence: int = 0,
    ) -> ClassificationResult:
        """Apply top selection, translation and confidence gating."""
        top = select_top(predictions)
        percentage = format_percentage(top.probability)
        confidence = float(percentage)

        if top.label.strip().lower() == UNKNOWN_LABEL or confidence < self._low_threshold:
            outcome = Outcome.LOW_CONFIDENCE
            high_confidence = False
        else:
            outcome = Outcome.RECOGNIZED
            high_confidence = confidence > self._high_threshold

        return ClassificationResult(
            label=top.label,
            display_label=self._translations.translate(top.label),
            probability=top.probability,
            percentage=percentage,
            outcome=outcome,
            high_confidence=high_confidence,
            sequence=sequence,
            image_sequence=image_sequence,
        )

    def reset(self) -> None:
        """Forget the published result; in-flight calls become stale."""
        self._issued += 1
        self._latest = None
