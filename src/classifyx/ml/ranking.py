"""Top-N selection over a model's output vector and label resolution."""

from __future__ import annotations

import heapq
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Iterable
    from os import PathLike

    from numpy.typing import ArrayLike

logger = logging.getLogger(__name__)

DEFAULT_NUM_RESULTS: int = 10
DEFAULT_THRESHOLD: float = 0.001
QUANTIZED_SCALE: float = 255.0


@dataclass(frozen=True)
class ScoredIndex:
    """A confidence paired with its position in the output vector."""

    confidence: float
    index: int


def top_n(
    prediction: ArrayLike,
    *,
    quantized: bool,
    num_results: int = DEFAULT_NUM_RESULTS,
    threshold: float = DEFAULT_THRESHOLD,
) -> list[ScoredIndex]:
    """Return up to ``num_results`` entries at or above ``threshold``.

    Uses a bounded min-heap so the scan is O(M log K) for an output of
    length M. Quantized (uint8) scores are divided by 255 first. Results
    are ordered by confidence descending; equal confidences keep the lower
    index first.

    Args:
        prediction: Raw output vector.
        quantized: Whether ``prediction`` holds raw uint8 scores.
        num_results: Maximum number of entries returned.
        threshold: Minimum confidence for an entry to be considered.
    """
    if num_results <= 0:
        return []

    values = np.asarray(prediction).reshape(-1).astype(np.float64)
    if quantized:
        values = values / QUANTIZED_SCALE

    # Heap entries are (confidence, -index): among equal confidences the
    # higher index is the smaller entry and gets evicted first.
    heap: list[tuple[float, int]] = []
    for i in np.flatnonzero(values >= threshold):
        entry = (float(values[i]), -int(i))
        if len(heap) < num_results:
            heapq.heappush(heap, entry)
        else:
            heapq.heappushpop(heap, entry)

    ranked: list[ScoredIndex] = []
    while heap:
        confidence, neg_index = heapq.heappop(heap)
        ranked.append(ScoredIndex(confidence=confidence, index=-neg_index))
    ranked.reverse()
    return ranked


class LabelTable(Sequence[str]):
    """Class names index-aligned with the output vector.

    Blank lines are kept so that positions stay aligned; ``get`` returns
    ``None`` for out-of-range or empty entries.
    """

    def __init__(self, labels: Iterable[str] = ()) -> None:
        self._labels: tuple[str, ...] = tuple(labels)

    @classmethod
    def parse(cls, text: str) -> LabelTable:
        """Build a table from newline-delimited text.

        A missing terminator on the last line is tolerated, and a trailing
        newline does not add an extra entry.
        """
        lines = text.split("\n")
        if lines[-1] == "":
            lines.pop()
        return cls(line.rstrip("\r") for line in lines)

    @classmethod
    def from_path(cls, path: str | PathLike[str]) -> LabelTable:
        return cls.parse(Path(path).read_text(encoding="utf-8"))

    def get(self, index: int) -> str | None:
        if not 0 <= index < len(self._labels):
            return None
        return self._labels[index] or None

    def __getitem__(self, index: Any) -> Any:
        return self._labels[index]

    def __len__(self) -> int:
        return len(self._labels)

    def __repr__(self) -> str:
        return f"LabelTable({len(self._labels)} labels)"


def resolve_labels(scored: Iterable[ScoredIndex], labels: LabelTable) -> list[tuple[ScoredIndex, str]]:
    """Pair scored entries with their labels, dropping unlabeled ones."""
    resolved: list[tuple[ScoredIndex, str]] = []
    for entry in scored:
        label = labels.get(entry.index)
        if label is None:
            logger.debug("Dropping index %d: no label", entry.index)
            continue
        resolved.append((entry, label))
    return resolved
