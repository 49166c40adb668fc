"""Image types passed between pipeline stages, and the Pillow decoder.

Pixel arrays are HxWxC ``uint8`` with row 0 at the top. Stages never write
into an image they receive; each produces a fresh, read-only array.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import TYPE_CHECKING, BinaryIO

import numpy as np
from PIL import ExifTags, Image, UnidentifiedImageError

if TYPE_CHECKING:
    from pathlib import Path

    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class Orientation(IntEnum):
    """EXIF orientation tag values.

    The name describes where the stored image's top row ends up once the
    image is displayed upright.
    """

    UP = 1
    UP_MIRRORED = 2
    DOWN = 3
    DOWN_MIRRORED = 4
    LEFT_MIRRORED = 5
    RIGHT = 6
    RIGHT_MIRRORED = 7
    LEFT = 8

    @property
    def swaps_axes(self) -> bool:
        """Whether displaying the image upright exchanges width and height."""
        return self >= Orientation.LEFT_MIRRORED


def _check_pixels(pixels: NDArray[np.uint8]) -> None:
    if not isinstance(pixels, np.ndarray):
        raise TypeError(f"Expected numpy array, got {type(pixels).__name__}")
    if pixels.dtype != np.uint8:
        raise ValueError(f"Expected uint8 pixels, got {pixels.dtype}")
    if pixels.ndim != 3 or pixels.shape[2] not in (3, 4):
        raise ValueError(f"Expected HxWx3 or HxWx4 pixels, got shape {pixels.shape}")
    if pixels.shape[0] < 1 or pixels.shape[1] < 1:
        raise ValueError(f"Invalid image dimensions: {pixels.shape[:2]}")


@dataclass(frozen=True, eq=False)
class RawImage:
    """A decoded bitmap as supplied by the caller, with its orientation tag."""

    pixels: NDArray[np.uint8]
    orientation: Orientation = Orientation.UP

    def __post_init__(self) -> None:
        _check_pixels(self.pixels)
        object.__setattr__(self, "orientation", Orientation(self.orientation))

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def channels(self) -> int:
        return int(self.pixels.shape[2])

    @property
    def display_size(self) -> tuple[int, int]:
        """(width, height) of the image once shown upright."""
        if self.orientation.swaps_axes:
            return self.height, self.width
        return self.width, self.height


@dataclass(frozen=True, eq=False)
class NormalizedImage:
    """An upright image: pixel (0, 0) is the visual top-left corner."""

    pixels: NDArray[np.uint8]

    def __post_init__(self) -> None:
        _check_pixels(self.pixels)

    @property
    def orientation(self) -> Orientation:
        return Orientation.UP

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def channels(self) -> int:
        return int(self.pixels.shape[2])


@dataclass(frozen=True, eq=False)
class ResizedImage(NormalizedImage):
    """An upright image stretched to the model input size."""


def _read_orientation(image: Image.Image) -> Orientation:
    value = image.getexif().get(ExifTags.Base.Orientation, Orientation.UP)
    try:
        return Orientation(value)
    except ValueError:
        logger.warning("Ignoring invalid EXIF orientation %r", value)
        return Orientation.UP


def load_image(source: bytes | str | Path | BinaryIO, *, max_pixels: int | None = None) -> RawImage:
    """Decode an image into a ``RawImage`` without applying its orientation.

    Args:
        source: Raw file bytes, a filesystem path, or a binary file object.
        max_pixels: Reject images with more pixels than this.

    Returns:
        RGB ``RawImage`` carrying the EXIF orientation tag (UP if absent).

    Raises:
        ValueError: If the image cannot be decoded or exceeds ``max_pixels``.
    """
    stream: str | Path | BinaryIO = io.BytesIO(source) if isinstance(source, bytes) else source
    try:
        with Image.open(stream) as image:
            width, height = image.size
            if max_pixels is not None and width * height > max_pixels:
                raise ValueError(f"Image of {width}x{height} pixels exceeds the limit of {max_pixels} pixels")
            orientation = _read_orientation(image)
            pixels = np.asarray(image.convert("RGB"), dtype=np.uint8)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise ValueError(f"Cannot decode image: {exc}") from exc

    logger.debug("Decoded %dx%d image with orientation %s", width, height, orientation.name)
    return RawImage(pixels=pixels, orientation=orientation)
