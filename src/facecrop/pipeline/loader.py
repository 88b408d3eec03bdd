"""Source image decoding.

Every supported file is decoded into the single internal representation used
by the rest of the pipeline: an HxWx3 RGB uint8 numpy array, or HxWx4 RGBA
when the source carries transparency.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from numpy.typing import NDArray
from PIL import Image, UnidentifiedImageError

from facecrop.errors import LoadError
from facecrop.pipeline.store import ImageFormat

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS: frozenset[str] = frozenset({".jpg", ".jpeg", ".png"})
_ALPHA_MODES: frozenset[str] = frozenset({"RGBA", "LA", "PA", "RGBa", "La"})


@dataclass(frozen=True)
class SourceImage:
    """A decoded source image with the format its crops are stored in."""

    path: Path
    pixels: NDArray[np.uint8]
    format: ImageFormat
    extension: str

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])


def is_supported(path: Path) -> bool:
    return path.suffix.lower() in SUPPORTED_EXTENSIONS


def _target_mode(img: Image.Image) -> str:
    if img.mode in _ALPHA_MODES or "transparency" in img.info:
        return "RGBA"
    return "RGB"


def load_image(path: Path, max_pixels: int | None = None) -> SourceImage:
    """Decode ``path`` into an RGB array, keeping alpha when the source has it.

    Raises:
        UnsupportedFormat: If the extension is not .jpg, .jpeg or .png.
        LoadError: If the file cannot be read, decoded, or exceeds ``max_pixels``.
    """
    extension = path.suffix.lower()
    fmt = ImageFormat.from_extension(extension)

    try:
        with Image.open(path) as img:
            width, height = img.size
            if max_pixels is not None and width * height > max_pixels:
                raise LoadError(path, f"{width}x{height} exceeds the {max_pixels} pixel limit")
            pixels = np.asarray(img.convert(_target_mode(img)), dtype=np.uint8)
    except UnidentifiedImageError as exc:
        raise LoadError(path, "not a decodable image") from exc
    except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as exc:
        # Truncated or corrupt data surfaces while decoding pixels.
        raise LoadError(path, str(exc)) from exc

    logger.debug("Loaded %s (%dx%d, %s)", path, width, height, fmt)
    return SourceImage(path=path, pixels=pixels, format=fmt, extension=extension)
