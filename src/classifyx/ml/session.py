"""Inference session: a narrow, stateful wrapper around an engine graph.

Lifecycle per session::

    build -> allocate (once) -> [fill_input -> run -> output]*

A session is single-writer/single-reader. Callers that need concurrent
inference create one session per concurrent request; the model container
they are built from can be shared.
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Any

from classifyx.ml.engine import TensorDirection
from classifyx.ml.errors import EngineError, ExecutionError, GraphBuildError, ShapeMismatchError

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from classifyx.ml.engine import InferenceEngine, TensorSpec
    from classifyx.ml.model_container import ModelContainer
    from classifyx.ml.preprocessing import InputBuffer

logger = logging.getLogger(__name__)

INPUT_SLOT: int = 0
OUTPUT_SLOT: int = 0


class InferenceSession:
    """Executes one model graph through an ``InferenceEngine``."""

    def __init__(
        self,
        engine: InferenceEngine,
        graph: Any,
        input_spec: TensorSpec,
        output_spec: TensorSpec,
    ) -> None:
        self._engine = engine
        self._graph = graph
        self._input_spec = input_spec
        self._output_spec = output_spec
        self._allocated = False
        self._output: NDArray[Any] | None = None

    @classmethod
    def build(
        cls,
        model: ModelContainer,
        engine: InferenceEngine,
        num_threads: int | None = None,
    ) -> InferenceSession:
        """Build an execution graph from a loaded model.

        Args:
            model: Validated model container.
            engine: Backend used to interpret and run the graph.
            num_threads: Kernel thread hint; defaults to the host CPU count.

        Raises:
            GraphBuildError: If the engine cannot interpret the payload, the
                graph declares no inputs, a slot uses an unsupported type,
                or the output tensor has no class axis.
        """
        threads = num_threads or os.cpu_count() or 1
        try:
            graph = engine.build_graph(model.data, threads)
            inputs = engine.input_count(graph)
            if inputs == 0:
                raise GraphBuildError("Model graph declares no input tensors")
            input_spec = engine.tensor_spec(graph, INPUT_SLOT, TensorDirection.INPUT)
            output_spec = engine.tensor_spec(graph, OUTPUT_SLOT, TensorDirection.OUTPUT)
        except EngineError as exc:
            raise GraphBuildError(str(exc)) from exc
        if not output_spec.shape or output_spec.shape[-1] <= 0:
            raise GraphBuildError(f"Output tensor has no class axis: shape {list(output_spec.shape)}")

        logger.debug("Graph inputs: %d", inputs)
        logger.debug("Input(0): %s", input_spec)
        logger.debug("Output(0): %s", output_spec)
        return cls(engine, graph, input_spec, output_spec)

    # -- Tensor metadata ----------------------------------------------------

    def input_spec(self) -> TensorSpec:
        return self._input_spec

    def output_spec(self) -> TensorSpec:
        return self._output_spec

    # -- Execution ----------------------------------------------------------

    @property
    def allocated(self) -> bool:
        return self._allocated

    def allocate(self) -> None:
        """Allocate tensor storage. Repeated calls are no-ops.

        Raises:
            ExecutionError: If the engine cannot allocate the tensors.
        """
        if self._allocated:
            return
        try:
            self._engine.allocate_tensors(self._graph)
        except EngineError as exc:
            raise ExecutionError(str(exc)) from exc
        self._allocated = True

    def fill_input(self, buffer: InputBuffer) -> None:
        """Copy a prepared buffer into the input tensor.

        Raises:
            ShapeMismatchError: If the buffer's dtype or byte size differs
                from the input tensor's.
            ExecutionError: If the engine rejects the write.
        """
        spec = self._input_spec
        data = buffer.data
        if data.dtype != spec.dtype.dtype:
            raise ShapeMismatchError(f"Input buffer dtype {data.dtype} does not match tensor dtype {spec.dtype}")
        if data.nbytes != spec.byte_size:
            raise ShapeMismatchError(f"Input buffer is {data.nbytes} bytes, tensor expects {spec.byte_size}")

        self._output = None
        try:
            self._engine.write_tensor(self._graph, INPUT_SLOT, data.reshape(spec.shape))
        except EngineError as exc:
            raise ExecutionError(str(exc)) from exc

    def run(self) -> None:
        """Execute the forward pass. Runs to completion or failure.

        Raises:
            ExecutionError: If tensors were not allocated or the engine fails.
        """
        self._output = None
        if not self._allocated:
            raise ExecutionError("Tensors must be allocated before running the graph")
        try:
            self._engine.invoke(self._graph)
            raw = self._engine.read_tensor(self._graph, OUTPUT_SLOT)
        except EngineError as exc:
            raise ExecutionError(str(exc)) from exc

        # Output dims look like (1, ..., size): the class scores are the last axis.
        size = self._output_spec.shape[-1]
        vector = raw.reshape(-1)[:size].copy()
        vector.flags.writeable = False
        self._output = vector

    def output(self) -> NDArray[np.generic]:
        """Read-only output vector of the last successful run.

        Raises:
            ExecutionError: If no successful run has produced output.
        """
        if self._output is None:
            raise ExecutionError("No output available: run() has not completed successfully")
        return self._output
