"""Tests for per-image processing and batch containment."""

from __future__ import annotations

import io
import threading
from pathlib import Path
from unittest.mock import MagicMock

import numpy as np
import pytest
from conftest import FakeDetector, gradient_image, write_image
from PIL import Image

from facecrop.errors import ConfigurationError, DetectionError, LoadError, StoreIOError
from facecrop.ml.face_detector import Detection
from facecrop.pipeline.orchestrator import Pipeline, discover_sources
from facecrop.pipeline.store import CropStore, decode_data_uri

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_DETECTIONS = [
    Detection(row=20, col=20, scale=16, score=10.0),
    Detection(row=40, col=44, scale=20, score=9.0),
    Detection(row=30, col=30, scale=10, score=2.0),
]


def _stored_files(directory: Path) -> list[str]:
    return sorted(p.name for p in directory.iterdir() if not p.name.startswith("."))


def _make_batch(source_dir: Path) -> list[Path]:
    first = write_image(source_dir / "a.png", gradient_image(64, 64, seed=1))
    corrupt = source_dir / "b.jpg"
    corrupt.write_bytes(b"\xff\xd8\xff\xe0 definitely not a jpeg")
    third = write_image(source_dir / "c.png", gradient_image(64, 64, seed=3))
    return [first, corrupt, third]


# ---------------------------------------------------------------------------
# process_image
# ---------------------------------------------------------------------------


class TestProcessImage:
    def test_one_record_per_region(self, source_dir: Path, store: CropStore, dest_dir: Path) -> None:
        path = write_image(source_dir / "face.png", gradient_image(64, 64))
        pipeline = Pipeline(FakeDetector(_DETECTIONS), store)

        outcome = pipeline.process_image(path)

        assert [r.face_index for r in outcome.results] == [0, 1]
        assert outcome.region_errors == []
        for record in outcome.results:
            assert record.faces == [(12, 12, 28, 28), (34, 30, 54, 50)]
            assert record.image_base64.startswith("data:image/png;base64,")
            assert record.source == str(path)
        assert len(_stored_files(dest_dir)) == 2

    def test_records_serialise_with_wire_names(self, source_dir: Path, store: CropStore) -> None:
        path = write_image(source_dir / "face.png", gradient_image(64, 64))
        record = Pipeline(FakeDetector(_DETECTIONS), store).process_image(path).results[0]

        payload = record.model_dump(by_alias=True)

        assert set(payload) == {"source", "faceIndex", "faces", "imageBase64"}
        assert payload["faces"][1] == (34, 30, 54, 50)

    def test_crop_matches_clipped_region(self, source_dir: Path, store: CropStore) -> None:
        pixels = gradient_image(64, 64)
        path = write_image(source_dir / "edge.png", pixels)
        detections = [Detection(row=5, col=60, scale=20, score=10.0)]

        record = Pipeline(FakeDetector(detections), store).process_image(path).results[0]

        crop = np.asarray(Image.open(io.BytesIO(decode_data_uri(record.image_base64))))
        assert crop.shape == (15, 14, 3)
        np.testing.assert_array_equal(crop, pixels[0:15, 50:64])

    def test_png_alpha_survives_crop(self, source_dir: Path, store: CropStore) -> None:
        pixels = np.zeros((64, 64, 4), dtype=np.uint8)
        pixels[..., 0] = 200
        pixels[32:, :, 3] = 255
        path = write_image(source_dir / "transparent.png", pixels)

        record = Pipeline(FakeDetector(_DETECTIONS[:1]), store).process_image(path).results[0]

        crop = Image.open(io.BytesIO(decode_data_uri(record.image_base64)))
        assert crop.mode == "RGBA"
        np.testing.assert_array_equal(np.asarray(crop), pixels[12:28, 12:28])

    def test_palette_transparency_kept(self, source_dir: Path, store: CropStore) -> None:
        path = source_dir / "palette.png"
        image = Image.new("P", (64, 64), color=1)
        image.putpalette([0, 0, 0, 200, 0, 0] + [0] * 762)
        image.save(path, format="PNG", transparency=1)

        record = Pipeline(FakeDetector(_DETECTIONS[:1]), store).process_image(path).results[0]

        crop = np.asarray(Image.open(io.BytesIO(decode_data_uri(record.image_base64))))
        assert crop.shape == (16, 16, 4)
        assert crop[0, 0].tolist() == [200, 0, 0, 0]

    def test_opaque_png_stays_rgb(self, source_dir: Path, store: CropStore) -> None:
        path = write_image(source_dir / "opaque.png", gradient_image(64, 64))
        record = Pipeline(FakeDetector(_DETECTIONS[:1]), store).process_image(path).results[0]
        assert Image.open(io.BytesIO(decode_data_uri(record.image_base64))).mode == "RGB"

    def test_empty_region_does_not_stop_siblings(self, source_dir: Path, store: CropStore) -> None:
        path = write_image(source_dir / "face.png", gradient_image(64, 64))
        detections = [
            Detection(row=500, col=500, scale=20, score=10.0),
            Detection(row=20, col=20, scale=16, score=10.0),
        ]

        outcome = Pipeline(FakeDetector(detections), store).process_image(path)

        assert [r.face_index for r in outcome.results] == [1]
        assert [(i, type(e).__name__) for i, e in outcome.region_errors] == [(0, "EmptyRegion")]
        assert len(outcome.results[0].faces) == 2

    def test_store_failure_recorded_per_region(self, source_dir: Path) -> None:
        path = write_image(source_dir / "face.png", gradient_image(64, 64))
        store = MagicMock(spec=CropStore)
        store.store.side_effect = StoreIOError("/dst/x.png", "disk full")

        outcome = Pipeline(FakeDetector(_DETECTIONS), store).process_image(path)

        assert outcome.results == []
        assert [i for i, _ in outcome.region_errors] == [0, 1]

    def test_no_faces(self, source_dir: Path, store: CropStore, dest_dir: Path) -> None:
        path = write_image(source_dir / "empty.png", gradient_image(32, 32))
        outcome = Pipeline(FakeDetector([]), store).process_image(path)
        assert outcome.results == []
        assert _stored_files(dest_dir) == []

    def test_jpeg_source_keeps_extension(self, source_dir: Path, store: CropStore, dest_dir: Path) -> None:
        path = write_image(source_dir / "face.JPEG", gradient_image(64, 64))
        outcome = Pipeline(FakeDetector(_DETECTIONS[:1]), store).process_image(path)

        assert outcome.results[0].image_base64.startswith("data:image/jpeg;base64,")
        assert _stored_files(dest_dir)[0].endswith(".jpeg")

    def test_corrupt_image_raises_load_error(self, source_dir: Path, store: CropStore) -> None:
        path = source_dir / "broken.png"
        path.write_bytes(b"\x89PNG\r\n\x1a\n garbage")
        with pytest.raises(LoadError):
            Pipeline(FakeDetector(_DETECTIONS), store).process_image(path)

    def test_oversized_image_raises_load_error(self, source_dir: Path, store: CropStore) -> None:
        path = write_image(source_dir / "big.png", gradient_image(64, 64))
        with pytest.raises(LoadError, match="pixel limit"):
            Pipeline(FakeDetector(_DETECTIONS), store, max_image_pixels=1000).process_image(path)

    def test_detector_failure_raises_detection_error(self, source_dir: Path, store: CropStore) -> None:
        path = write_image(source_dir / "face.png", gradient_image(64, 64))
        with pytest.raises(DetectionError, match="detector exploded"):
            Pipeline(FakeDetector(_DETECTIONS, fail_for_width=64), store).process_image(path)


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


class TestRun:
    def test_corrupt_image_does_not_stop_batch(self, source_dir: Path, store: CropStore) -> None:
        paths = _make_batch(source_dir)

        report = Pipeline(FakeDetector(_DETECTIONS), store).run(paths)

        assert {r.source for r in report.results} == {str(paths[0]), str(paths[2])}
        assert len(report.results) == 4
        assert [(e.source, e.kind, e.region_index) for e in report.errors] == [(str(paths[1]), "LoadError", None)]
        assert report.processed == 3
        assert not report.ok

    def test_unsupported_extension_skipped(self, source_dir: Path, store: CropStore) -> None:
        notes = source_dir / "notes.txt"
        notes.write_text("hello")
        image = write_image(source_dir / "a.png", gradient_image(64, 64))
        detector = FakeDetector(_DETECTIONS)

        report = Pipeline(detector, store).run([notes, image])

        assert report.skipped == [str(notes)]
        assert report.errors == []
        assert report.ok
        assert detector.calls == 1

    def test_detection_error_contained(self, source_dir: Path, store: CropStore) -> None:
        small = write_image(source_dir / "small.png", gradient_image(48, 48))
        big = write_image(source_dir / "big.png", gradient_image(64, 64))

        report = Pipeline(FakeDetector(_DETECTIONS, fail_for_width=48), store).run([small, big])

        assert [e.kind for e in report.errors] == ["DetectionError"]
        assert {r.source for r in report.results} == {str(big)}

    def test_region_errors_reported_with_index(self, source_dir: Path, store: CropStore) -> None:
        path = write_image(source_dir / "a.png", gradient_image(64, 64))
        detections = [
            Detection(row=20, col=20, scale=16, score=10.0),
            Detection(row=-50, col=-50, scale=10, score=10.0),
        ]

        report = Pipeline(FakeDetector(detections), store).run([path])

        assert [(e.kind, e.region_index) for e in report.errors] == [("EmptyRegion", 1)]
        assert len(report.results) == 1

    def test_identical_images_deduplicated(self, source_dir: Path, store: CropStore, dest_dir: Path) -> None:
        pixels = gradient_image(64, 64)
        paths = [write_image(source_dir / name, pixels) for name in ("a.png", "b.png")]

        report = Pipeline(FakeDetector(_DETECTIONS), store).run(paths)

        assert len(report.results) == 4
        assert len(_stored_files(dest_dir)) == 2
        by_index = {}
        for record in report.results:
            by_index.setdefault(record.face_index, set()).add(record.image_base64)
        assert all(len(uris) == 1 for uris in by_index.values())

    def test_stop_event_checked_between_images(self, source_dir: Path, store: CropStore) -> None:
        paths = [write_image(source_dir / f"{i}.png", gradient_image(64, 64, seed=i)) for i in range(3)]
        stop = threading.Event()

        class StoppingDetector(FakeDetector):
            def detect(self, image):  # type: ignore[no-untyped-def]
                stop.set()
                return super().detect(image)

        detector = StoppingDetector(_DETECTIONS)
        report = Pipeline(detector, store).run(paths, stop_event=stop)

        assert report.cancelled
        assert report.processed == 1
        assert detector.calls == 1
        assert len(report.results) == 2

    def test_worker_pool_matches_sequential(self, source_dir: Path, tmp_path: Path) -> None:
        paths = _make_batch(source_dir)
        paths += [write_image(source_dir / f"x{i}.png", gradient_image(64, 64, seed=10 + i)) for i in range(4)]

        seq_dir, par_dir = tmp_path / "seq", tmp_path / "par"
        seq_dir.mkdir()
        par_dir.mkdir()
        sequential = Pipeline(FakeDetector(_DETECTIONS), CropStore(seq_dir)).run(paths)
        parallel = Pipeline(FakeDetector(_DETECTIONS), CropStore(par_dir)).run(paths, workers=3)

        def key(report):  # type: ignore[no-untyped-def]
            return sorted((r.source, r.face_index, r.image_base64) for r in report.results)

        assert key(parallel) == key(sequential)
        assert [e.kind for e in parallel.errors] == ["LoadError"]
        assert _stored_files(seq_dir) == _stored_files(par_dir)
        # Per-image region order is preserved.
        for source in {r.source for r in parallel.results}:
            indices = [r.face_index for r in parallel.results if r.source == source]
            assert indices == sorted(indices)

    def test_configuration_error_aborts(self, source_dir: Path, store: CropStore) -> None:
        paths = [write_image(source_dir / f"{i}.png", gradient_image(32, 32, seed=i)) for i in range(3)]

        pipeline = Pipeline(FakeDetector(_DETECTIONS), store)
        failing = MagicMock(side_effect=ConfigurationError("model vanished"))
        pipeline.process_image = failing  # type: ignore[method-assign]

        with pytest.raises(ConfigurationError):
            pipeline.run(paths)
        assert failing.call_count == 1


class TestDiscoverSources:
    def test_sorted_files_only(self, source_dir: Path) -> None:
        (source_dir / "b.png").write_bytes(b"")
        (source_dir / "a.txt").write_bytes(b"")
        (source_dir / "nested").mkdir()

        assert [p.name for p in discover_sources(source_dir)] == ["a.txt", "b.png"]

    def test_missing_directory(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError):
            discover_sources(tmp_path / "missing")
