"""Packing upright images into the pixel buffers consumed by the runtime.

Layout of a buffer:

    row 0:   [px 0][px 1] ... [px W-1][zero padding up to bytes_per_row]
    row 1:   ...

``bytes_per_row`` is ``width * bytes_per_pixel`` rounded up to the row
alignment. Rows are stored top-down unless the buffer is declared
``BOTTOM_UP``, in which case the first stored row is the visual bottom row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np

from leafscan.errors import EncodeFailure

if TYPE_CHECKING:
    from collections.abc import Collection

    from numpy.typing import NDArray

    from leafscan.ml.image import ResizedImage

logger = logging.getLogger(__name__)

OPAQUE_ALPHA = 0xFF


class PixelFormat(StrEnum):
    """Channel order and width of one pixel, first byte first."""

    ARGB32 = "ARGB32"
    BGRA32 = "BGRA32"
    RGBA32 = "RGBA32"
    GRAY8 = "GRAY8"

    @property
    def bytes_per_pixel(self) -> int:
        return 1 if self is PixelFormat.GRAY8 else 4


class RowOrder(StrEnum):
    TOP_DOWN = "top_down"
    BOTTOM_UP = "bottom_up"


@dataclass(frozen=True)
class PixelBuffer:
    """A fully initialized, immutable pixel buffer."""

    data: bytes
    width: int
    height: int
    bytes_per_row: int
    pixel_format: PixelFormat
    row_order: RowOrder = RowOrder.TOP_DOWN

    def __post_init__(self) -> None:
        if self.width < 1 or self.height < 1:
            raise ValueError(f"Invalid buffer dimensions: {self.width}x{self.height}")
        if self.bytes_per_row < self.width * self.pixel_format.bytes_per_pixel:
            raise ValueError(f"Stride {self.bytes_per_row} too small for {self.width} {self.pixel_format} pixels")
        if len(self.data) < self.bytes_per_row * self.height:
            raise ValueError(f"Buffer of {len(self.data)} bytes is shorter than {self.bytes_per_row}x{self.height}")

    def to_array(self) -> NDArray[np.uint8]:
        """Return a read-only HxWxBPP view with row 0 at the visual top."""
        bpp = self.pixel_format.bytes_per_pixel
        rows = np.frombuffer(self.data, dtype=np.uint8, count=self.bytes_per_row * self.height)
        rows = rows.reshape(self.height, self.bytes_per_row)[:, : self.width * bpp]
        if self.row_order is RowOrder.BOTTOM_UP:
            rows = rows[::-1]
        return rows.reshape(self.height, self.width, bpp)


def aligned_stride(width: int, bytes_per_pixel: int, alignment: int) -> int:
    """Round a row of ``width`` pixels up to a multiple of ``alignment`` bytes."""
    if alignment < 1:
        raise ValueError(f"Row alignment must be positive, got {alignment}")
    row_bytes = width * bytes_per_pixel
    return -(-row_bytes // alignment) * alignment


def _pack_pixels(rgb: NDArray[np.uint8], pixel_format: PixelFormat) -> NDArray[np.uint8]:
    height, width = rgb.shape[:2]
    packed = np.empty((height, width, pixel_format.bytes_per_pixel), dtype=np.uint8)
    if pixel_format is PixelFormat.ARGB32:
        packed[..., 0] = OPAQUE_ALPHA
        packed[..., 1:4] = rgb
    elif pixel_format is PixelFormat.BGRA32:
        packed[..., 0:3] = rgb[..., ::-1]
        packed[..., 3] = OPAQUE_ALPHA
    elif pixel_format is PixelFormat.RGBA32:
        packed[..., 0:3] = rgb
        packed[..., 3] = OPAQUE_ALPHA
    else:
        # ITU-R BT.601 luma in integer arithmetic
        weights = np.array([299, 587, 114], dtype=np.uint32)
        packed[..., 0] = ((rgb.astype(np.uint32) @ weights + 500) // 1000).astype(np.uint8)
    return packed


def encode(
    image: ResizedImage,
    pixel_format: PixelFormat = PixelFormat.ARGB32,
    *,
    accepted_formats: Collection[PixelFormat] | None = None,
    row_alignment: int = 64,
    row_order: RowOrder = RowOrder.TOP_DOWN,
) -> PixelBuffer:
    """Encode an upright image into a pixel buffer.

    Alpha in the source is dropped; 32-bit formats carry an opaque alpha
    byte. Padding bytes at the end of each row are zero.

    Args:
        image: Upright image at the model input size.
        pixel_format: Requested buffer format.
        accepted_formats: Formats the consumer can read; ``None`` accepts any.
        row_alignment: Byte alignment of each row.
        row_order: Storage order of rows in the buffer.

    Raises:
        EncodeFailure: If the format is not accepted or the buffer cannot be
            allocated.
    """
    pixel_format = PixelFormat(pixel_format)
    row_order = RowOrder(row_order)
    if accepted_formats is not None and pixel_format not in accepted_formats:
        accepted = ", ".join(sorted(str(fmt) for fmt in accepted_formats)) or "none"
        raise EncodeFailure(f"Pixel format {pixel_format} is not supported (accepted: {accepted})")

    width, height = image.width, image.height
    bpp = pixel_format.bytes_per_pixel
    try:
        stride = aligned_stride(width, bpp, row_alignment)
        rows = np.zeros((height, stride), dtype=np.uint8)
        rows[:, : width * bpp] = _pack_pixels(image.pixels[..., :3], pixel_format).reshape(height, width * bpp)
        if row_order is RowOrder.BOTTOM_UP:
            rows = rows[::-1]
        data = rows.tobytes()
    except (MemoryError, ValueError) as exc:
        raise EncodeFailure(f"Cannot allocate {pixel_format} buffer for {width}x{height} image: {exc}") from exc

    logger.debug("Encoded %dx%d %s buffer (stride=%d, %s)", width, height, pixel_format, stride, row_order)
    return PixelBuffer(
        data=data,
        width=width,
        height=height,
        bytes_per_row=stride,
        pixel_format=pixel_format,
        row_order=row_order,
    )
