"""Error types raised by the classification pipeline.

Every pipeline failure is terminal for the current inference call and is
surfaced to the caller as a ``ClassifierError`` subclass carrying an
``ErrorKind``. Nothing here is retried internally.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    EMPTY_INPUT = "empty_input"
    UNRECOGNIZED_FORMAT = "unrecognized_format"
    GRAPH_BUILD_FAILED = "graph_build_failed"
    SHAPE_MISMATCH = "shape_mismatch"
    EXECUTION_FAILED = "execution_failed"
    UNSUPPORTED_CHANNEL_COUNT = "unsupported_channel_count"
    INVALID_DIMENSIONS = "invalid_dimensions"
    NULL_SOURCE = "null_source"


class ClassifierError(Exception):
    """Base class for all pipeline errors."""

    kind: ErrorKind


class EmptyInputError(ClassifierError):
    kind = ErrorKind.EMPTY_INPUT


class UnrecognizedFormatError(ClassifierError):
    kind = ErrorKind.UNRECOGNIZED_FORMAT


class GraphBuildError(ClassifierError):
    kind = ErrorKind.GRAPH_BUILD_FAILED


class ShapeMismatchError(ClassifierError):
    kind = ErrorKind.SHAPE_MISMATCH


class ExecutionError(ClassifierError):
    kind = ErrorKind.EXECUTION_FAILED


class UnsupportedChannelCountError(ClassifierError):
    kind = ErrorKind.UNSUPPORTED_CHANNEL_COUNT


class InvalidDimensionsError(ClassifierError):
    kind = ErrorKind.INVALID_DIMENSIONS


class NullSourceError(ClassifierError):
    kind = ErrorKind.NULL_SOURCE


# Pipeline errors reported to API clients as unprocessable input.
IMAGE_ERROR_KINDS: frozenset[ErrorKind] = frozenset(
    {
        ErrorKind.NULL_SOURCE,
        ErrorKind.UNSUPPORTED_CHANNEL_COUNT,
        ErrorKind.INVALID_DIMENSIONS,
        ErrorKind.SHAPE_MISMATCH,
    }
)


class EngineError(RuntimeError):
    """Raised by an ``InferenceEngine`` implementation when the backend fails.

    The inference session translates these into ``GraphBuildError`` or
    ``ExecutionError`` depending on the stage that failed.
    """
