"""Image preprocessing: decoding, channel conversion and bilinear resampling.

The preprocessor turns an arbitrary-resolution image into the exact input
buffer a model's input tensor expects. The target height is derived from
the source aspect ratio at the tensor's width rather than taken from the
tensor shape, so images are never stretched; the resized block occupies
the leading rows of the input tensor.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from classifyx.ml.errors import (
    InvalidDimensionsError,
    NullSourceError,
    ShapeMismatchError,
    UnsupportedChannelCountError,
)

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from classifyx.ml.engine import TensorSpec

logger = logging.getLogger(__name__)

ImageSource = Image.Image | np.ndarray

_CHANNEL_MODES: dict[int, str] = {3: "RGB", 4: "RGBA"}


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def decode_image(image_bytes: bytes, max_pixels: int) -> Image.Image:
    """Decode uploaded bytes into a Pillow image with EXIF orientation applied.

    Args:
        image_bytes: Raw file bytes (any format Pillow can read).
        max_pixels: Upper bound on ``width * height``.

    Returns:
        A fully loaded, upright image.

    Raises:
        ValueError: If the image cannot be decoded or exceeds ``max_pixels``.
    """
    try:
        image = Image.open(io.BytesIO(image_bytes))
        width, height = image.size
        if width * height > max_pixels:
            raise ValueError(f"Image is {width}x{height}, exceeding the limit of {max_pixels} pixels")
        image.load()
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise ValueError(f"Cannot decode image: {exc}") from exc

    return ImageOps.exif_transpose(image)


# ---------------------------------------------------------------------------
# Resampling
# ---------------------------------------------------------------------------


def _sample_grid(in_size: int, out_size: int) -> tuple[NDArray[np.intp], NDArray[np.intp], NDArray[np.float64]]:
    """Lower/upper source indices and fractional offsets along one axis."""
    scale = in_size / out_size
    coords = np.arange(out_size, dtype=np.float64) * scale
    lower = np.floor(coords)
    frac = coords - lower
    low = np.minimum(lower.astype(np.intp), in_size - 1)
    high = np.minimum(low + 1, in_size - 1)
    return low, high, frac


def resize_bilinear(pixels: NDArray[Any], out_height: int, out_width: int) -> NDArray[np.float32]:
    """Resample an ``HxWxC`` image with two-axis linear interpolation.

    Source coordinates are ``dst * (src_size / dst_size)`` (corners not
    aligned). Each destination value mixes the four surrounding source
    pixels with weights ``(1-dx)(1-dy)``, ``dx(1-dy)``, ``(1-dx)dy`` and
    ``dx*dy``; coordinates past the last row/column clamp to it.

    Returns:
        ``out_height x out_width x C`` float32 array.
    """
    if pixels.ndim != 3:
        raise InvalidDimensionsError(f"Expected an HxWxC pixel array, got shape {pixels.shape}")
    in_height, in_width, _ = pixels.shape
    if min(in_height, in_width, out_height, out_width) <= 0:
        raise InvalidDimensionsError(
            f"Cannot resize {in_width}x{in_height} to {out_width}x{out_height}"
        )

    src = pixels.astype(np.float64, copy=False)
    y0, y1, dy = _sample_grid(in_height, out_height)
    x0, x1, dx = _sample_grid(in_width, out_width)

    dx = dx[np.newaxis, :, np.newaxis]
    dy = dy[:, np.newaxis, np.newaxis]

    top_left = src[y0][:, x0]
    top_right = src[y0][:, x1]
    bottom_left = src[y1][:, x0]
    bottom_right = src[y1][:, x1]

    out = (
        top_left * (1.0 - dx) * (1.0 - dy)
        + top_right * dx * (1.0 - dy)
        + bottom_left * (1.0 - dx) * dy
        + bottom_right * dx * dy
    )
    return out.astype(np.float32)


# ---------------------------------------------------------------------------
# Input buffer
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InputBuffer:
    """Numeric data laid out exactly like the model's input tensor.

    ``filled_shape`` is the ``[1, height, width, channels]`` block that came
    from the image; any rows below it are zero.
    """

    data: NDArray[Any]
    filled_shape: tuple[int, int, int, int]

    @property
    def filled(self) -> NDArray[Any]:
        _, height, width, channels = self.filled_shape
        return self.data[:, :height, :width, :channels]

    @property
    def filled_element_count(self) -> int:
        return int(np.prod(self.filled_shape))


# ---------------------------------------------------------------------------
# Preprocessor
# ---------------------------------------------------------------------------


class ImagePreprocessor:
    """Prepares images for a model input declared as ``[1, H, W, C]``."""

    @staticmethod
    def _from_array(pixels: NDArray[Any]) -> Image.Image:
        # Pillow maps HxW to "L" but has no mode for an explicit single channel axis.
        if pixels.ndim == 3 and pixels.shape[2] == 1:
            pixels = pixels[:, :, 0]
        try:
            return Image.fromarray(pixels)
        except TypeError as exc:
            raise UnsupportedChannelCountError(
                f"Cannot interpret a pixel array of shape {pixels.shape} and dtype {pixels.dtype}"
            ) from exc

    @staticmethod
    def target_size(source_width: int, source_height: int, spec: TensorSpec) -> tuple[int, int, int]:
        """Return ``(width, height, channels)`` the image is resampled to.

        The height is ``width * source_height / source_width`` rather than
        the tensor's declared height, which keeps the source aspect ratio.

        Raises:
            InvalidDimensionsError: If the tensor is not rank 4 or either
                dimension resolves to zero.
        """
        if len(spec.shape) != 4:
            raise InvalidDimensionsError(f"Expected a [1, H, W, C] input tensor, got {list(spec.shape)}")
        _, _, width, channels = spec.shape
        if source_width <= 0 or source_height <= 0 or width <= 0:
            raise InvalidDimensionsError(
                f"Cannot fit a {source_width}x{source_height} image into width {width}"
            )
        height = width * source_height // source_width
        if height <= 0:
            raise InvalidDimensionsError(
                f"A {source_width}x{source_height} image resolves to zero height at width {width}"
            )
        return width, height, channels

    def prepare(self, image: ImageSource | None, spec: TensorSpec) -> InputBuffer:
        """Resize and convert ``image`` into an input buffer for ``spec``.

        Args:
            image: Decoded image, or an ``HxW``/``HxWxC`` uint8 array.
            spec: The model's input tensor spec.

        Raises:
            NullSourceError: If no image is given.
            InvalidDimensionsError: If the target size resolves to zero.
            UnsupportedChannelCountError: If the tensor wants neither 3 nor 4 channels.
            ShapeMismatchError: If the aspect-preserving height exceeds the
                tensor's declared height.
        """
        if image is None:
            raise NullSourceError("No image bound to the preprocessor")
        if isinstance(image, np.ndarray):
            image = self._from_array(image)

        source_width, source_height = image.size
        width, height, channels = self.target_size(source_width, source_height, spec)

        mode = _CHANNEL_MODES.get(channels)
        if mode is None:
            raise UnsupportedChannelCountError(f"Model expects {channels} channels; only 3 (RGB) or 4 (RGBA) supported")

        pixels = np.asarray(image.convert(mode), dtype=np.uint8)
        resized = resize_bilinear(pixels, height, width)

        tensor_height = spec.shape[1]
        if height > tensor_height:
            raise ShapeMismatchError(
                f"Aspect-preserving height {height} exceeds the input tensor height {tensor_height}"
            )

        data = np.zeros(spec.shape, dtype=spec.dtype.dtype)
        if spec.dtype.is_floating:
            data[0, :height] = resized
        else:
            data[0, :height] = np.clip(resized, 0, 255).astype(np.uint8)

        logger.debug(
            "Prepared %dx%d image as %dx%dx%d %s block",
            source_width,
            source_height,
            width,
            height,
            channels,
            spec.dtype,
        )
        return InputBuffer(data=data, filled_shape=(1, height, width, channels))
