"""Pixel-intensity-comparison cascade face detector.

Binary model layout (little-endian)::

    8 bytes              header, ignored
    uint32               tree depth d
    uint32               tree count n
    n times:
        4 * 2**d - 4     int8 node codes, 4 per internal node (nodes 1 .. 2**d - 1)
        2**d float32     leaf predictions
        float32          rejection threshold

Each internal node compares two pixels whose offsets from the window center
are stored as fixed-point fractions of the window size (``code * scale >> 8``).
A window is rejected as soon as the running sum of leaf predictions drops to
or below a tree's threshold.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from facecrop.ml.face_detector import Detection, rgb_to_grayscale

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from facecrop.config import Settings

logger = logging.getLogger(__name__)

_HEADER_SIZE = 16
_MAX_TREE_DEPTH = 16

# Upper bound on windows evaluated in one vectorised pass.
WINDOW_CHUNK: int = 1 << 18


@dataclass(frozen=True)
class CascadeParams:
    """Search granularity for the sliding-window scan."""

    min_size: int = 20
    max_size: int = 2000
    shift_factor: float = 0.1
    scale_factor: float = 1.1

    @classmethod
    def from_settings(cls, settings: Settings) -> CascadeParams:
        return cls(
            min_size=settings.min_size,
            max_size=settings.max_size,
            shift_factor=settings.shift_factor,
            scale_factor=settings.scale_factor,
        )


class Cascade:
    """An unpacked cascade of depth-``d`` binary decision trees."""

    def __init__(
        self,
        tree_depth: int,
        codes: NDArray[np.int8],
        preds: NDArray[np.float32],
        thresholds: NDArray[np.float32],
    ) -> None:
        self.tree_depth = tree_depth
        self._codes = codes.astype(np.int64)
        self._preds = preds.astype(np.float32)
        self._thresholds = thresholds.astype(np.float32)

    @property
    def tree_count(self) -> int:
        return len(self._thresholds)

    @classmethod
    def unpack(cls, data: bytes) -> Cascade:
        """Parse a binary cascade model.

        Raises:
            ValueError: If the data is truncated or the header is implausible.
        """
        if len(data) < _HEADER_SIZE:
            raise ValueError(f"Cascade data too short: {len(data)} bytes")

        depth, count = struct.unpack_from("<II", data, 8)
        if not 1 <= depth <= _MAX_TREE_DEPTH:
            raise ValueError(f"Implausible cascade tree depth: {depth}")

        leaves = 1 << depth
        code_len = 4 * leaves - 4
        tree_len = code_len + 4 * leaves + 4
        expected = _HEADER_SIZE + count * tree_len
        if len(data) < expected:
            raise ValueError(f"Cascade data truncated: expected {expected} bytes, got {len(data)}")

        codes = np.zeros((count, leaves, 4), dtype=np.int8)
        preds = np.empty((count, leaves), dtype=np.float32)
        thresholds = np.empty(count, dtype=np.float32)

        pos = _HEADER_SIZE
        for i in range(count):
            # Node 0 is unused; traversal starts at node 1.
            codes[i, 1:] = np.frombuffer(data, dtype=np.int8, count=code_len, offset=pos).reshape(leaves - 1, 4)
            pos += code_len
            preds[i] = np.frombuffer(data, dtype="<f4", count=leaves, offset=pos)
            pos += 4 * leaves
            thresholds[i] = struct.unpack_from("<f", data, pos)[0]
            pos += 4

        return cls(depth, codes, preds, thresholds)

    def classify(
        self,
        pixels: NDArray[np.uint8],
        rows: NDArray[np.int64],
        cols: NDArray[np.int64],
        scale: int,
    ) -> tuple[NDArray[np.int64], NDArray[np.int64], NDArray[np.float32]]:
        """Run every window through the cascade.

        Returns the rows, cols and scores of the windows that pass all trees.
        Windows must lie far enough inside ``pixels`` for the node offsets,
        i.e. at least ``scale // 2 + 1`` from each edge.
        """
        leaves = 1 << self.tree_depth
        r = rows * 256
        c = cols * 256
        out = np.zeros(rows.shape, dtype=np.float32)

        for i in range(self.tree_count):
            codes = self._codes[i]
            idx = np.ones(r.shape, dtype=np.int64)
            for _ in range(self.tree_depth):
                code = codes[idx]
                y1 = (r + code[:, 0] * scale) >> 8
                x1 = (c + code[:, 1] * scale) >> 8
                y2 = (r + code[:, 2] * scale) >> 8
                x2 = (c + code[:, 3] * scale) >> 8
                idx = 2 * idx + (pixels[y1, x1] <= pixels[y2, x2])
            out += self._preds[i, idx - leaves]

            keep = out > self._thresholds[i]
            if not keep.all():
                r, c, out = r[keep], c[keep], out[keep]
                rows, cols = rows[keep], cols[keep]
                if not r.size:
                    break

        return rows, cols, out - self._thresholds[-1]

    def run(self, pixels: NDArray[np.uint8], params: CascadeParams) -> list[Detection]:
        """Slide windows of growing size over a grayscale image."""
        if pixels.ndim != 2:
            raise ValueError(f"Expected a 2-D grayscale buffer, got shape {pixels.shape}")
        if self.tree_count == 0:
            return []

        height, width = pixels.shape
        detections: list[Detection] = []
        scale = params.min_size
        while scale <= params.max_size:
            offset = scale // 2 + 1
            if height - offset < offset or width - offset < offset:
                break
            step = max(int(params.shift_factor * scale), 1)
            grid_rows, grid_cols = np.meshgrid(
                np.arange(offset, height - offset + 1, step, dtype=np.int64),
                np.arange(offset, width - offset + 1, step, dtype=np.int64),
                indexing="ij",
            )
            all_rows = grid_rows.ravel()
            all_cols = grid_cols.ravel()
            for start in range(0, all_rows.size, WINDOW_CHUNK):
                stop = start + WINDOW_CHUNK
                rows, cols, scores = self.classify(pixels, all_rows[start:stop], all_cols[start:stop], scale)
                detections.extend(
                    Detection(row=int(r), col=int(c), scale=scale, score=float(q))
                    for r, c, q in zip(rows, cols, scores, strict=True)
                    if q > 0.0
                )
            scale = max(int(scale * params.scale_factor), scale + 1)
        return detections


def _iou(
    row: float,
    col: float,
    scale: float,
    rows: NDArray[np.float64],
    cols: NDArray[np.float64],
    scales: NDArray[np.float64],
) -> NDArray[np.float64]:
    half, halves = scale / 2, scales / 2
    over_r = np.maximum(0.0, np.minimum(row + half, rows + halves) - np.maximum(row - half, rows - halves))
    over_c = np.maximum(0.0, np.minimum(col + half, cols + halves) - np.maximum(col - half, cols - halves))
    inter = over_r * over_c
    union = scale * scale + scales * scales - inter
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(union > 0, inter / np.where(union > 0, union, 1.0), 0.0)


def cluster_detections(detections: Sequence[Detection], iou_threshold: float) -> list[Detection]:
    """Merge overlapping detections.

    Detections are visited by descending score. Each not-yet-assigned
    detection seeds a cluster of every later detection whose IoU with it
    exceeds ``iou_threshold``; the cluster takes the integer mean position and
    size and the summed score of its members.
    """
    if not detections:
        return []

    ordered = sorted(detections, key=lambda d: d.score, reverse=True)
    rows = np.array([d.row for d in ordered], dtype=np.int64)
    cols = np.array([d.col for d in ordered], dtype=np.int64)
    scales = np.array([d.scale for d in ordered], dtype=np.int64)
    scores = np.array([d.score for d in ordered], dtype=np.float64)
    rows_f, cols_f, scales_f = rows.astype(np.float64), cols.astype(np.float64), scales.astype(np.float64)

    assigned = np.zeros(len(ordered), dtype=bool)
    clusters: list[Detection] = []
    for i in range(len(ordered)):
        if assigned[i]:
            continue
        overlap = _iou(rows_f[i], cols_f[i], scales_f[i], rows_f[i:], cols_f[i:], scales_f[i:])
        members = np.flatnonzero(overlap > iou_threshold) + i
        if not members.size:
            continue
        assigned[members] = True
        n = members.size
        clusters.append(
            Detection(
                row=int(rows[members].sum()) // n,
                col=int(cols[members].sum()) // n,
                scale=int(scales[members].sum()) // n,
                score=float(scores[members].sum()),
            )
        )
    return clusters


class CascadeFaceDetector:
    """``FaceDetector`` backed by an unpacked cascade plus IoU clustering."""

    def __init__(
        self,
        cascade: Cascade,
        params: CascadeParams | None = None,
        cluster_iou: float = 0.18,
        name: str = "facefinder",
    ) -> None:
        self._cascade = cascade
        self._params = params or CascadeParams()
        self._cluster_iou = cluster_iou
        self._name = name

    @property
    def model_name(self) -> str:
        return self._name

    def detect(self, image: NDArray[np.uint8]) -> list[Detection]:
        gray = rgb_to_grayscale(image)
        raw = self._cascade.run(gray, self._params)
        faces = cluster_detections(raw, self._cluster_iou)
        logger.debug("Cascade produced %d raw detections, %d after clustering", len(raw), len(faces))
        return faces
