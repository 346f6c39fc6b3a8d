"""Image classification over a TFLite model.

Drives the full pipeline for one image: preprocess, fill the input
tensor, run the graph, rank the output vector and attach labels.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from classifyx.ml.preprocessing import ImagePreprocessor
from classifyx.ml.ranking import DEFAULT_NUM_RESULTS, DEFAULT_THRESHOLD, resolve_labels, top_n
from classifyx.ml.session import InferenceSession

if TYPE_CHECKING:
    from classifyx.ml.engine import InferenceEngine
    from classifyx.ml.model_container import ModelContainer
    from classifyx.ml.preprocessing import ImageSource
    from classifyx.ml.ranking import LabelTable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float
    index: int


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: ImageSource | None) -> list[ClassificationResult]:
        """Classify an image and return ranked tags.

        Args:
            image: Decoded image or HxWxC uint8 array.

        Returns:
            List of classification results sorted by confidence (descending).
        """
        ...


class TFLiteImageClassifier:
    """Classifier owning one model, its label table and one inference session.

    The session is built and allocated on construction. ``classify`` is
    serialized with a lock, so an instance may be shared between threads
    but never runs two inferences at once.
    """

    def __init__(
        self,
        model_name: str,
        model: ModelContainer,
        labels: LabelTable,
        engine: InferenceEngine,
        *,
        num_threads: int | None = None,
        num_results: int = DEFAULT_NUM_RESULTS,
        threshold: float = DEFAULT_THRESHOLD,
    ) -> None:
        self._model_name = model_name
        self._labels = labels
        self._num_results = num_results
        self._threshold = threshold
        self._preprocessor = ImagePreprocessor()
        self._lock = threading.Lock()

        self._session = InferenceSession.build(model, engine, num_threads=num_threads)
        self._session.allocate()
        logger.info(
            "Classifier %s ready (input=%s %s, output=%s %s, labels=%d)",
            model_name,
            list(self._session.input_spec().shape),
            self._session.input_spec().dtype,
            list(self._session.output_spec().shape),
            self._session.output_spec().dtype,
            len(labels),
        )

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def session(self) -> InferenceSession:
        return self._session

    def classify(self, image: ImageSource | None) -> list[ClassificationResult]:
        with self._lock:
            buffer = self._preprocessor.prepare(image, self._session.input_spec())
            self._session.fill_input(buffer)
            self._session.run()
            output = self._session.output()

        ranked = top_n(
            output,
            quantized=not self._session.output_spec().dtype.is_floating,
            num_results=self._num_results,
            threshold=self._threshold,
        )
        return [
            ClassificationResult(label=label, confidence=entry.confidence, index=entry.index)
            for entry, label in resolve_labels(ranked, self._labels)
        ]
