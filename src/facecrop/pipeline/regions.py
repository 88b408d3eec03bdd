"""Convert raw detector output into face rectangles."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from facecrop.ml.face_detector import Detection

logger = logging.getLogger(__name__)

DEFAULT_MIN_SCORE: float = 5.0


@dataclass(frozen=True)
class FaceRegion:
    """Axis-aligned rectangle in source-image pixel coordinates.

    ``max_x``/``max_y`` are exclusive, so width is ``max_x - min_x``.
    Regions may extend past the image; clipping happens in the cropper.
    """

    min_x: int
    min_y: int
    max_x: int
    max_y: int

    @property
    def width(self) -> int:
        return self.max_x - self.min_x

    @property
    def height(self) -> int:
        return self.max_y - self.min_y

    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def as_list(self) -> list[int]:
        return [self.min_x, self.min_y, self.max_x, self.max_y]


def region_from_detection(detection: Detection) -> FaceRegion:
    """Center a square of side ``scale`` on ``(col, row)``."""
    half = detection.scale // 2
    return FaceRegion(
        min_x=detection.col - half,
        min_y=detection.row - half,
        max_x=detection.col + half,
        max_y=detection.row + half,
    )


def extract_regions(detections: Iterable[Detection], min_score: float = DEFAULT_MIN_SCORE) -> list[FaceRegion]:
    """Keep detections scoring strictly above ``min_score`` and convert them to regions.

    Input order is preserved. Detections with a non-positive scale cannot
    describe a face and are dropped.
    """
    regions: list[FaceRegion] = []
    for detection in detections:
        if detection.score <= min_score:
            continue
        if detection.scale <= 0:
            logger.debug("Dropping detection with non-positive scale: %s", detection)
            continue
        regions.append(region_from_detection(detection))
    return regions
