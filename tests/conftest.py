"""Shared fixtures: an in-memory inference engine and model payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pytest

from classifyx.ml.engine import TensorDirection, TensorSpec, TensorType
from classifyx.ml.errors import EngineError
from classifyx.ml.model_container import ModelContainer

VALID_MODEL_BYTES = b"\x1c\x00\x00\x00TFL3" + b"\x00" * 24


@dataclass
class FakeGraph:
    input_spec: TensorSpec
    output_spec: TensorSpec
    num_threads: int
    allocated: bool = False
    written: np.ndarray | None = None
    invocations: int = 0


@dataclass
class FakeEngine:
    """Engine that echoes a fixed output vector and records what it receives."""

    input_shape: tuple[int, ...] = (1, 224, 224, 3)
    input_dtype: TensorType = TensorType.FLOAT32
    output_values: list[float] = field(default_factory=lambda: [0.1, 0.7, 0.2])
    output_dtype: TensorType = TensorType.FLOAT32
    output_shape: tuple[int, ...] | None = None
    inputs: int = 1
    fail_build: bool = False
    fail_invoke: bool = False
    allocations: int = 0
    graphs: list[FakeGraph] = field(default_factory=list)

    def build_graph(self, model_bytes: bytes, num_threads: int) -> FakeGraph:
        if self.fail_build:
            raise EngineError("corrupt model")
        graph = FakeGraph(
            input_spec=TensorSpec("input", self.input_shape, self.input_dtype),
            output_spec=TensorSpec(
                "output",
                self.output_shape if self.output_shape is not None else (1, len(self.output_values)),
                self.output_dtype,
            ),
            num_threads=num_threads,
        )
        self.graphs.append(graph)
        return graph

    def allocate_tensors(self, graph: FakeGraph) -> None:
        self.allocations += 1
        graph.allocated = True

    def input_count(self, graph: FakeGraph) -> int:
        return self.inputs

    def tensor_spec(self, graph: FakeGraph, slot: int, direction: TensorDirection) -> TensorSpec:
        return graph.input_spec if direction is TensorDirection.INPUT else graph.output_spec

    def write_tensor(self, graph: FakeGraph, slot: int, data: Any) -> None:
        if not graph.allocated:
            raise EngineError("tensors not allocated")
        graph.written = np.array(data, copy=True)

    def invoke(self, graph: FakeGraph) -> None:
        if self.fail_invoke:
            raise EngineError("kernel failure")
        graph.invocations += 1

    def read_tensor(self, graph: FakeGraph, slot: int) -> np.ndarray:
        return np.asarray(self.output_values, dtype=self.output_dtype.dtype).reshape(graph.output_spec.shape)


@pytest.fixture()
def model() -> ModelContainer:
    return ModelContainer().load(VALID_MODEL_BYTES)


@pytest.fixture()
def engine() -> FakeEngine:
    return FakeEngine()
