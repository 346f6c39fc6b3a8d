"""Holder for a validated TFLite model payload."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import IO, TYPE_CHECKING

from classifyx.ml.errors import EmptyInputError, UnrecognizedFormatError

if TYPE_CHECKING:
    from os import PathLike

logger = logging.getLogger(__name__)

# FlatBuffer file identifier of a TFLite model, stored at offset 4.
MODEL_SIGNATURE: bytes = b"TFL3"
SIGNATURE_OFFSET: int = 4

ModelSource = bytes | bytearray | memoryview | IO[bytes]


class ModelContainer:
    """Owns the raw bytes of one serialized model.

    The payload is validated on load and never mutated afterwards; loading
    again replaces it wholesale. Containers are safe to share read-only
    between sessions.
    """

    def __init__(self) -> None:
        self._data: bytes = b""

    @classmethod
    def from_path(cls, path: str | PathLike[str]) -> ModelContainer:
        """Read and validate a model file."""
        with Path(path).open("rb") as fh:
            return cls().load(fh)

    def load(self, source: ModelSource) -> ModelContainer:
        """Validate ``source`` and take ownership of a copy of it.

        Args:
            source: Raw model bytes or a readable binary stream.

        Returns:
            ``self``, to allow ``ModelContainer().load(...)``.

        Raises:
            EmptyInputError: If the payload has length zero.
            UnrecognizedFormatError: If bytes 4..8 are not the TFLite tag.
        """
        raw = source.read() if hasattr(source, "read") else bytes(source)  # type: ignore[arg-type]
        if len(raw) == 0:
            raise EmptyInputError("Model payload is empty")

        signature = raw[SIGNATURE_OFFSET : SIGNATURE_OFFSET + len(MODEL_SIGNATURE)]
        if signature != MODEL_SIGNATURE:
            raise UnrecognizedFormatError(
                f"Unrecognized model format: expected {MODEL_SIGNATURE!r} at offset "
                f"{SIGNATURE_OFFSET}, found {signature!r}"
            )

        self._data = bytes(raw)
        logger.debug("Loaded model payload (%d bytes)", len(self._data))
        return self

    def bytes(self) -> memoryview:
        """Read-only view over the owned payload."""
        return memoryview(self._data).toreadonly()

    @property
    def data(self) -> bytes:
        return self._data

    @property
    def size(self) -> int:
        return len(self._data)

    @property
    def is_loaded(self) -> bool:
        return bool(self._data)
