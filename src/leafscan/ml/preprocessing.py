"""Orientation normalization and resizing ahead of pixel-buffer encoding."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Literal

import numpy as np
from PIL import Image

from leafscan.errors import RenderFailure, ResizeFailure
from leafscan.ml.image import NormalizedImage, Orientation, RawImage, ResizedImage

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

Resample = Literal["nearest", "bilinear", "bicubic", "lanczos"]

_RESAMPLE_FILTERS: dict[str, Image.Resampling] = {
    "nearest": Image.Resampling.NEAREST,
    "bilinear": Image.Resampling.BILINEAR,
    "bicubic": Image.Resampling.BICUBIC,
    "lanczos": Image.Resampling.LANCZOS,
}

# Transform turning stored pixels into the upright display, per EXIF tag.
_ORIENTATION_TRANSFORMS: dict[Orientation, Callable[[NDArray[np.uint8]], NDArray[np.uint8]]] = {
    Orientation.UP: lambda px: px,
    Orientation.UP_MIRRORED: lambda px: px[:, ::-1],
    Orientation.DOWN: lambda px: px[::-1, ::-1],
    Orientation.DOWN_MIRRORED: lambda px: px[::-1, :],
    Orientation.LEFT_MIRRORED: lambda px: px.transpose(1, 0, 2),
    Orientation.RIGHT: lambda px: np.rot90(px, k=-1),
    Orientation.RIGHT_MIRRORED: lambda px: px[::-1, ::-1].transpose(1, 0, 2),
    Orientation.LEFT: lambda px: np.rot90(px, k=1),
}


def _freeze(pixels: NDArray[np.uint8]) -> NDArray[np.uint8]:
    pixels.setflags(write=False)
    return pixels


def normalize(image: RawImage) -> NormalizedImage:
    """Bake the orientation tag into the pixel data.

    The result is sized to ``image.display_size`` and always owns a fresh
    copy of the pixels, including for images that are already upright.

    Raises:
        RenderFailure: If the upright canvas cannot be produced.
    """
    transform = _ORIENTATION_TRANSFORMS[image.orientation]
    try:
        canvas = np.array(transform(image.pixels), dtype=np.uint8, order="C")
    except (MemoryError, ValueError) as exc:
        raise RenderFailure(f"Cannot render {image.orientation.name} image upright: {exc}") from exc

    expected_width, expected_height = image.display_size
    if canvas.shape[1] != expected_width or canvas.shape[0] != expected_height:
        raise RenderFailure(
            f"Rendered canvas is {canvas.shape[1]}x{canvas.shape[0]}, expected {expected_width}x{expected_height}"
        )

    if image.orientation is not Orientation.UP:
        logger.debug("Normalized %s image to %dx%d", image.orientation.name, expected_width, expected_height)
    return NormalizedImage(pixels=_freeze(canvas))


def resize(
    image: NormalizedImage,
    target_width: int,
    target_height: int,
    resample: Resample = "bilinear",
) -> ResizedImage:
    """Stretch an upright image to exactly ``target_width`` x ``target_height``.

    Aspect ratio is not preserved. The same input, size and filter always
    produce identical pixels.

    Raises:
        ResizeFailure: If a target dimension is not positive or the canvas
            cannot be allocated.
    """
    if target_width <= 0 or target_height <= 0:
        raise ResizeFailure(f"Invalid target size {target_width}x{target_height}")
    try:
        resample_filter = _RESAMPLE_FILTERS[resample]
    except KeyError:
        raise ResizeFailure(f"Unknown resampling filter: {resample}") from None

    try:
        source = Image.fromarray(np.ascontiguousarray(image.pixels))
        stretched = source.resize((target_width, target_height), resample=resample_filter)
        canvas = np.array(stretched, dtype=np.uint8)
    except (MemoryError, ValueError) as exc:
        raise ResizeFailure(f"Cannot resize {image.width}x{image.height} image: {exc}") from exc

    logger.debug("Resized %dx%d image to %dx%d", image.width, image.height, target_width, target_height)
    return ResizedImage(pixels=_freeze(canvas))
