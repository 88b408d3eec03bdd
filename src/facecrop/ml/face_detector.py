"""Face detector interface and shared detection types."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import numpy as np
from numpy.typing import NDArray


@dataclass(frozen=True)
class Detection:
    """Raw face candidate: window center, window side length and confidence."""

    row: int
    col: int
    scale: int
    score: float


class FaceDetector(Protocol):
    """Protocol for face detection models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def detect(self, image: NDArray[np.uint8]) -> list[Detection]:
        """Detect faces in an image.

        Args:
            image: HxWx3 RGB or HxWx4 RGBA uint8 array; alpha is ignored.

        Returns:
            Clustered detections, one per candidate face, before score filtering.
        """
        ...


def rgb_to_grayscale(image: NDArray[np.uint8]) -> NDArray[np.uint8]:
    """Convert an RGB, RGBA (or already gray) uint8 image to a 2-D luma buffer."""
    if image.ndim == 2:
        return image
    rgb = image[..., :3].astype(np.float64)
    gray = 0.299 * rgb[..., 0] + 0.587 * rgb[..., 1] + 0.114 * rgb[..., 2]
    return gray.astype(np.uint8)
