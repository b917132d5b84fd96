"""Instrument classifier: preprocess, run the model, pick the winning label."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from instrumentscan.ml.errors import InferenceError, LabelMismatchError
from instrumentscan.ml.model_manager import LoaderState
from instrumentscan.ml.preprocessing import DEFAULT_INPUT_SIZE, NORMALIZATIONS, Normalization, preprocess

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from instrumentscan.ml.labels import LabelSet
    from instrumentscan.ml.model_manager import ModelHandle, ModelLoader

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PredictionResult:
    """A single classification prediction; confidence is a percentage."""

    label: str
    confidence: float
    index: int


def _to_percent(value: float) -> float:
    return min(max(value * 100.0, 0.0), 100.0)


def select_prediction(raw: Sequence[float] | NDArray[np.float32], labels: Sequence[str]) -> PredictionResult:
    """Return the arg-max label with its confidence clamped to [0, 100].

    Ties go to the lowest index.

    Raises:
        InferenceError: If the vector is empty, holds NaN or infinite scores, or
            the winning index has no label.
    """
    values = [float(v) for v in np.ravel(np.asarray(raw))]
    if not values:
        raise InferenceError("Model returned an empty output vector")
    if not all(math.isfinite(v) for v in values):
        raise InferenceError("Model returned non-finite scores")

    best_index = 0
    best_value = values[0]
    for i in range(1, len(values)):
        if values[i] > best_value:
            best_value = values[i]
            best_index = i

    if best_index >= len(labels):
        raise InferenceError(f"Predicted class {best_index} has no label ({len(labels)} labels configured)")

    return PredictionResult(label=labels[best_index], confidence=_to_percent(best_value), index=best_index)


def rank_predictions(
    raw: Sequence[float] | NDArray[np.float32], labels: Sequence[str], k: int
) -> list[PredictionResult]:
    """Return the top ``k`` predictions, highest first, lowest index first on ties."""
    values = np.ravel(np.asarray(raw, dtype=np.float64))
    if values.size == 0:
        raise InferenceError("Model returned an empty output vector")
    if not np.isfinite(values).all():
        raise InferenceError("Model returned non-finite scores")
    if values.size > len(labels):
        raise InferenceError(f"Model returned {values.size} scores for {len(labels)} labels")

    order = np.argsort(-values, kind="stable")[: max(k, 0)]
    return [
        PredictionResult(label=labels[int(i)], confidence=_to_percent(float(values[i])), index=int(i)) for i in order
    ]


class InstrumentClassifier:
    """Runs the full recognition pipeline against one shared model handle."""

    def __init__(
        self,
        loader: ModelLoader,
        labels: LabelSet,
        input_size: int = DEFAULT_INPUT_SIZE,
        normalization: Normalization = NORMALIZATIONS["unit"],
        max_image_pixels: int | None = None,
        lazy_load: bool = False,
    ) -> None:
        self._loader = loader
        self._labels = labels
        self._input_size = input_size
        self._normalization = normalization
        self._max_image_pixels = max_image_pixels
        self._lazy_load = lazy_load

    @property
    def labels(self) -> LabelSet:
        return self._labels

    @property
    def loader(self) -> ModelLoader:
        return self._loader

    @property
    def ready(self) -> bool:
        return self._loader.state is LoaderState.READY

    def preprocess(self, image_bytes: bytes) -> NDArray[np.float32]:
        return preprocess(
            image_bytes,
            size=self._input_size,
            normalization=self._normalization,
            max_pixels=self._max_image_pixels,
        )

    def run(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        """Single forward pass; returns the raw score vector for the first batch item.

        Raises:
            NotInitializedError: If the model is not loaded.
            InferenceError: If the session fails or returns the wrong width.
        """
        handle = self._handle()
        try:
            with handle.lock:
                outputs = handle.session.run(None, {handle.input_name: tensor})
            scores = np.asarray(outputs[0], dtype=np.float32)
        except Exception as exc:
            raise InferenceError(f"Inference failed: {exc}") from exc

        vector = scores.reshape(scores.shape[0], -1)[0] if scores.ndim > 1 else scores
        if vector.shape[0] != len(self._labels):
            if handle.output_width is None:
                # Width was symbolic at load time, so this is the first chance to catch it.
                error = LabelMismatchError(vector.shape[0], len(self._labels))
                self._loader.mark_failed(error)
                raise error
            raise InferenceError(f"Model returned {vector.shape[0]} scores for {len(self._labels)} labels")
        return vector

    def predict(self, image_bytes: bytes) -> PredictionResult:
        """Classify an image and return the most likely instrument."""
        tensor = self.preprocess(image_bytes)
        result = select_prediction(self.run(tensor), self._labels)
        logger.debug("Predicted %s (%.2f%%)", result.label, result.confidence)
        return result

    def top_k(self, image_bytes: bytes, k: int) -> list[PredictionResult]:
        """Classify an image and return the ``k`` most likely instruments."""
        tensor = self.preprocess(image_bytes)
        return rank_predictions(self.run(tensor), self._labels, k)

    def _handle(self) -> ModelHandle:
        if self._lazy_load and self._loader.state in (LoaderState.UNLOADED, LoaderState.LOADING):
            return self._loader.load()
        return self._loader.get_handle()
