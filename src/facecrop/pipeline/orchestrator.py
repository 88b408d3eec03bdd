"""Batch orchestration: load -> detect -> extract -> crop/store per region.

Architecture:
    run(paths) -> [ThreadPoolExecutor(workers)] -> process_image(path) -> CropStore

Failures are contained at the smallest unit they affect. A bad region is
recorded and its siblings continue; a bad image is recorded and the batch
continues. Only ``ConfigurationError`` aborts the run.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from facecrop.errors import (
    ConfigurationError,
    CropError,
    DetectionError,
    FaceCropError,
    LoadError,
    StoreIOError,
    UnsupportedFormat,
)
from facecrop.pipeline.cropper import crop_region
from facecrop.pipeline.loader import is_supported, load_image
from facecrop.pipeline.regions import DEFAULT_MIN_SCORE, extract_regions
from facecrop.schemas import BatchReport, DetectionResult

if TYPE_CHECKING:
    from collections.abc import Iterable

    from facecrop.ml.face_detector import FaceDetector
    from facecrop.pipeline.store import CropStore

logger = logging.getLogger(__name__)


@dataclass
class ImageOutcome:
    """Results for one source image plus the regions that failed."""

    source: Path
    results: list[DetectionResult] = field(default_factory=list)
    region_errors: list[tuple[int, FaceCropError]] = field(default_factory=list)


def discover_sources(source_dir: Path) -> list[Path]:
    """List regular files in ``source_dir`` in name order.

    Raises:
        ConfigurationError: If the directory does not exist or cannot be listed.
    """
    try:
        entries = sorted(source_dir.iterdir())
    except OSError as exc:
        raise ConfigurationError(f"Cannot read source directory {source_dir}: {exc}") from exc
    return [entry for entry in entries if entry.is_file()]


class Pipeline:
    """Runs the face-crop pipeline over source images."""

    def __init__(
        self,
        detector: FaceDetector,
        store: CropStore,
        min_score: float = DEFAULT_MIN_SCORE,
        max_image_pixels: int | None = None,
    ) -> None:
        self._detector = detector
        self._store = store
        self._min_score = min_score
        self._max_image_pixels = max_image_pixels

    # -- Single image -------------------------------------------------------

    def process_image(self, path: Path) -> ImageOutcome:
        """Detect, crop and store every face in one image.

        Raises:
            UnsupportedFormat: If the extension is not a supported image type.
            LoadError: If the image cannot be decoded.
            DetectionError: If the detector fails.
        """
        logger.info("Processing image %s ...", path.name)
        image = load_image(path, max_pixels=self._max_image_pixels)

        try:
            detections = self._detector.detect(image.pixels)
        except Exception as exc:
            raise DetectionError(path, f"{type(exc).__name__}: {exc}") from exc

        regions = extract_regions(detections, self._min_score)
        logger.info("Detected %d face(s) in %s", len(regions), path.name)

        faces = [(r.min_x, r.min_y, r.max_x, r.max_y) for r in regions]
        outcome = ImageOutcome(source=path)
        for index, region in enumerate(regions):
            logger.debug(
                "Face %d of %s: min=(%d, %d) max=(%d, %d)",
                index + 1,
                path.name,
                region.min_x,
                region.min_y,
                region.max_x,
                region.max_y,
            )
            try:
                crop = crop_region(image.pixels, region, image.format)
                stored = self._store.store(crop, image.format, image.extension)
            except (CropError, UnsupportedFormat, StoreIOError) as exc:
                logger.warning("Region %d of %s failed: %s: %s", index, path, type(exc).__name__, exc)
                outcome.region_errors.append((index, exc))
                continue

            outcome.results.append(
                DetectionResult(
                    source=str(path),
                    face_index=index,
                    faces=faces,
                    image_base64=stored.data_uri,
                )
            )
        return outcome

    # -- Batch --------------------------------------------------------------

    def run(
        self,
        paths: Iterable[Path],
        stop_event: threading.Event | None = None,
        workers: int = 1,
    ) -> BatchReport:
        """Process a batch of images, containing per-image and per-region failures.

        ``stop_event`` is checked before each image starts; an image that has
        started always completes.

        Raises:
            ConfigurationError: On systemic failures; the remaining images are abandoned.
        """
        report = BatchReport()
        pending: list[Path] = []
        for path in paths:
            if is_supported(path):
                pending.append(path)
            else:
                logger.info("%s skipped. File type not supported.", path.name)
                report.skipped.append(str(path))

        stop = stop_event or threading.Event()
        if workers <= 1:
            for path in pending:
                if stop.is_set():
                    report.cancelled = True
                    break
                self._collect(report, path, self._process_contained(path))
        else:
            self._run_pool(report, pending, stop, workers)

        logger.info(
            "Batch finished: %d image(s) processed, %d record(s), %d error(s), %d skipped",
            report.processed,
            len(report.results),
            len(report.errors),
            len(report.skipped),
        )
        return report

    def _run_pool(self, report: BatchReport, pending: list[Path], stop: threading.Event, workers: int) -> None:
        abort = threading.Event()

        def task(path: Path) -> ImageOutcome | FaceCropError | None:
            if stop.is_set() or abort.is_set():
                return None
            return self._process_contained(path)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="facecrop-worker") as pool:
            futures = {pool.submit(task, path): path for path in pending}
            try:
                for future in as_completed(futures):
                    outcome = future.result()
                    if outcome is None:
                        report.cancelled = True
                        continue
                    self._collect(report, futures[future], outcome)
            except ConfigurationError:
                abort.set()
                for future in futures:
                    future.cancel()
                raise

    def _process_contained(self, path: Path) -> ImageOutcome | FaceCropError:
        try:
            return self.process_image(path)
        except (LoadError, DetectionError, UnsupportedFormat) as exc:
            logger.warning("Skipping %s: %s", path, exc)
            return exc

    @staticmethod
    def _collect(report: BatchReport, path: Path, outcome: ImageOutcome | FaceCropError) -> None:
        report.processed += 1
        if isinstance(outcome, FaceCropError):
            report.record_error(path, outcome)
            return
        report.results.extend(outcome.results)
        for index, exc in outcome.region_errors:
            report.record_error(path, exc, region_index=index)
