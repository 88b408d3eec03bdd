"""Cut face regions out of a source image."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from facecrop.errors import EmptyRegion, InvalidSource
from facecrop.pipeline.regions import FaceRegion

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from facecrop.pipeline.store import ImageFormat


@dataclass(frozen=True)
class CroppedImage:
    """Pixels of exactly the clipped region, tagged with the output format."""

    pixels: NDArray[np.uint8]
    region: FaceRegion
    format: ImageFormat


def clip_region(region: FaceRegion, width: int, height: int) -> FaceRegion:
    """Intersect ``region`` with the image rectangle ``[0, 0]-[width, height]``."""
    return FaceRegion(
        min_x=max(region.min_x, 0),
        min_y=max(region.min_y, 0),
        max_x=min(region.max_x, width),
        max_y=min(region.max_y, height),
    )


def _validate_source(source: object) -> NDArray[np.uint8]:
    if not isinstance(source, np.ndarray):
        raise InvalidSource(f"Expected a numpy array, got {type(source).__name__}")
    if source.dtype != np.uint8:
        raise InvalidSource(f"Expected uint8 pixels, got {source.dtype}")
    if source.ndim not in (2, 3) or (source.ndim == 3 and source.shape[2] not in (1, 3, 4)):
        raise InvalidSource(f"Unsupported pixel buffer shape {source.shape}")
    if source.size == 0:
        raise InvalidSource("Source image has no pixels")
    return source


def crop_region(source: NDArray[np.uint8], region: FaceRegion, fmt: ImageFormat) -> CroppedImage:
    """Copy the part of ``source`` covered by ``region``.

    The region is clipped to the image bounds first; no scaling or padding is
    applied.

    Raises:
        InvalidSource: If ``source`` is not a usable pixel buffer.
        EmptyRegion: If the clipped region has no area.
    """
    pixels = _validate_source(source)
    height, width = pixels.shape[:2]
    clipped = clip_region(region, width, height)
    if clipped.is_empty():
        raise EmptyRegion(f"Region {region.as_list()} lies outside the {width}x{height} image")

    crop = pixels[clipped.min_y : clipped.max_y, clipped.min_x : clipped.max_x].copy()
    return CroppedImage(pixels=crop, region=clipped, format=fmt)
