"""Shared fixtures and builders for the facecrop test suite."""

from __future__ import annotations

import struct
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image

from facecrop.ml.face_detector import Detection
from facecrop.pipeline.store import CropStore

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def build_cascade_bytes(
    depth: int,
    trees: Sequence[tuple[Sequence[tuple[int, int, int, int]], Sequence[float], float]],
) -> bytes:
    """Serialise trees of (node codes for nodes 1..2**depth-1, leaf preds, threshold)."""
    out = bytearray(b"\x00" * 8)
    out += struct.pack("<II", depth, len(trees))
    for codes, preds, threshold in trees:
        assert len(codes) == (1 << depth) - 1
        assert len(preds) == 1 << depth
        for code in codes:
            out += struct.pack("<4b", *code)
        out += struct.pack(f"<{len(preds)}f", *preds)
        out += struct.pack("<f", threshold)
    return bytes(out)


def always_pass_cascade_bytes() -> bytes:
    """One depth-1 tree comparing a pixel with itself, so every window scores 1.0."""
    return build_cascade_bytes(1, [([(0, 0, 0, 0)], [-1.0, 2.0], 1.0)])


def gradient_image(width: int, height: int, seed: int = 0) -> NDArray[np.uint8]:
    """Deterministic non-uniform RGB test image."""
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)


def write_image(path: Path, pixels: NDArray[np.uint8]) -> Path:
    fmt = "JPEG" if path.suffix.lower() in (".jpg", ".jpeg") else "PNG"
    Image.fromarray(pixels).save(path, format=fmt)
    return path


class FakeDetector:
    """FaceDetector returning fixed detections, optionally failing for chosen shapes."""

    def __init__(self, detections: Sequence[Detection], fail_for_width: int | None = None) -> None:
        self._detections = list(detections)
        self._fail_for_width = fail_for_width
        self.calls = 0

    @property
    def model_name(self) -> str:
        return "fake"

    def detect(self, image: NDArray[np.uint8]) -> list[Detection]:
        self.calls += 1
        if self._fail_for_width is not None and image.shape[1] == self._fail_for_width:
            raise RuntimeError("detector exploded")
        return list(self._detections)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def dest_dir(tmp_path: Path) -> Path:
    path = tmp_path / "dst"
    path.mkdir()
    return path


@pytest.fixture()
def source_dir(tmp_path: Path) -> Path:
    path = tmp_path / "src"
    path.mkdir()
    return path


@pytest.fixture()
def store(dest_dir: Path) -> CropStore:
    return CropStore(dest_dir)
