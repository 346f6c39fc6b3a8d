"""Inference engine boundary.

The pipeline never talks to a numeric backend directly. It goes through the
``InferenceEngine`` protocol below so the core can be exercised against a
fake engine in tests; ``TFLiteEngine`` is the production implementation on
top of TensorFlow Lite.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from math import prod
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np

from classifyx.ml.errors import EngineError

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tensor metadata
# ---------------------------------------------------------------------------


class TensorType(StrEnum):
    FLOAT32 = "float32"
    UINT8 = "uint8"

    @property
    def dtype(self) -> np.dtype[Any]:
        return np.dtype(self.value)

    @property
    def is_floating(self) -> bool:
        return self is TensorType.FLOAT32

    @classmethod
    def from_dtype(cls, dtype: Any) -> TensorType:
        """Map a numpy dtype (or dtype-like) onto a supported tensor type.

        Raises:
            ValueError: For element types the pipeline cannot handle.
        """
        name = np.dtype(dtype).name
        try:
            return cls(name)
        except ValueError:
            raise ValueError(f"Unsupported tensor element type: {name}") from None


class TensorDirection(StrEnum):
    INPUT = "input"
    OUTPUT = "output"


@dataclass(frozen=True)
class QuantizationParams:
    """Per-tensor affine quantization: ``real = scale * (q - zero_point)``."""

    scale: float
    zero_point: int


@dataclass(frozen=True)
class TensorSpec:
    """Shape and element type of one graph tensor slot."""

    name: str
    shape: tuple[int, ...]
    dtype: TensorType
    quantization: QuantizationParams | None = None

    @property
    def element_count(self) -> int:
        return prod(self.shape)

    @property
    def byte_size(self) -> int:
        return self.element_count * self.dtype.dtype.itemsize


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class InferenceEngine(Protocol):
    """Operations the inference session needs from a numeric backend.

    ``graph`` is an opaque handle returned by ``build_graph``. Every method
    raises ``EngineError`` when the backend rejects the request.
    """

    def build_graph(self, model_bytes: bytes, num_threads: int) -> Any:
        """Interpret a serialized model and return a graph handle."""
        ...

    def allocate_tensors(self, graph: Any) -> None:
        """Allocate backing storage for every tensor in the graph."""
        ...

    def input_count(self, graph: Any) -> int:
        """Number of input slots declared by the graph."""
        ...

    def tensor_spec(self, graph: Any, slot: int, direction: TensorDirection) -> TensorSpec:
        """Describe input or output slot ``slot``."""
        ...

    def write_tensor(self, graph: Any, slot: int, data: NDArray[Any]) -> None:
        """Copy ``data`` into input slot ``slot``."""
        ...

    def invoke(self, graph: Any) -> None:
        """Run the forward pass."""
        ...

    def read_tensor(self, graph: Any, slot: int) -> NDArray[Any]:
        """Return the contents of output slot ``slot``."""
        ...


# ---------------------------------------------------------------------------
# TensorFlow Lite implementation
# ---------------------------------------------------------------------------


class TFLiteEngine:
    """``InferenceEngine`` backed by ``tf.lite.Interpreter``."""

    def build_graph(self, model_bytes: bytes, num_threads: int) -> Any:
        # TensorFlow is heavy; only pay for the import when a graph is built.
        try:
            import tensorflow as tf
        except ImportError as exc:
            raise EngineError(f"TensorFlow Lite runtime unavailable: {exc}") from exc

        try:
            interpreter = tf.lite.Interpreter(model_content=bytes(model_bytes), num_threads=num_threads)
        except (ValueError, RuntimeError) as exc:
            raise EngineError(f"TFLite could not build the graph: {exc}") from exc

        logger.debug(
            "TFLite graph built (tensors=%d, inputs=%d, outputs=%d, threads=%d)",
            len(interpreter.get_tensor_details()),
            len(interpreter.get_input_details()),
            len(interpreter.get_output_details()),
            num_threads,
        )
        return interpreter

    def allocate_tensors(self, graph: Any) -> None:
        try:
            graph.allocate_tensors()
        except (ValueError, RuntimeError) as exc:
            raise EngineError(f"TFLite can't allocate tensors: {exc}") from exc

    def input_count(self, graph: Any) -> int:
        return len(graph.get_input_details())

    def tensor_spec(self, graph: Any, slot: int, direction: TensorDirection) -> TensorSpec:
        details = self._details(graph, slot, direction)
        try:
            dtype = TensorType.from_dtype(details["dtype"])
        except ValueError as exc:
            raise EngineError(str(exc)) from exc

        quantization = None
        scale, zero_point = details.get("quantization", (0.0, 0))
        if scale:
            quantization = QuantizationParams(scale=float(scale), zero_point=int(zero_point))

        return TensorSpec(
            name=str(details.get("name", "")),
            shape=tuple(int(d) for d in details["shape"]),
            dtype=dtype,
            quantization=quantization,
        )

    def write_tensor(self, graph: Any, slot: int, data: NDArray[Any]) -> None:
        index = self._details(graph, slot, TensorDirection.INPUT)["index"]
        try:
            graph.set_tensor(index, data)
        except (ValueError, RuntimeError) as exc:
            raise EngineError(f"TFLite rejected input tensor: {exc}") from exc

    def invoke(self, graph: Any) -> None:
        try:
            graph.invoke()
        except (ValueError, RuntimeError) as exc:
            raise EngineError(f"TFLite can't invoke: {exc}") from exc

    def read_tensor(self, graph: Any, slot: int) -> NDArray[Any]:
        index = self._details(graph, slot, TensorDirection.OUTPUT)["index"]
        try:
            return graph.get_tensor(index)
        except (ValueError, RuntimeError) as exc:
            raise EngineError(f"TFLite can't read output tensor: {exc}") from exc

    @staticmethod
    def _details(graph: Any, slot: int, direction: TensorDirection) -> dict[str, Any]:
        if direction is TensorDirection.INPUT:
            details = graph.get_input_details()
        else:
            details = graph.get_output_details()
        if not 0 <= slot < len(details):
            raise EngineError(f"No {direction} tensor at slot {slot}")
        return details[slot]
