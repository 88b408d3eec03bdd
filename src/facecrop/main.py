"""Command-line entry point: crop every face found in a directory of images."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import TYPE_CHECKING, TextIO

from pydantic import ValidationError

from facecrop.config import Settings, get_settings
from facecrop.errors import ConfigurationError
from facecrop.ml.cascade import CascadeFaceDetector, CascadeParams
from facecrop.ml.model_manager import CascadeModelManager
from facecrop.pipeline.orchestrator import Pipeline, discover_sources
from facecrop.pipeline.store import CropStore

if TYPE_CHECKING:
    from facecrop.schemas import BatchReport

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERRORS = 1
EXIT_CONFIG = 2

# CLI flag -> Settings field
_OVERRIDES: dict[str, str] = {
    "source": "source_dir",
    "dest": "dest_dir",
    "mkdir": "create_dest_dir",
    "cascade": "cascade_path",
    "min_score": "min_score",
    "workers": "workers",
    "log_level": "log_level",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="facecrop",
        description="Detect faces in a directory of images and store each face as a content-addressed crop.",
    )
    parser.add_argument("--source", type=Path, help="Directory of source images (FACECROP_SOURCE_DIR).")
    parser.add_argument("--dest", type=Path, help="Directory for cropped faces (FACECROP_DEST_DIR).")
    parser.add_argument(
        "--mkdir", action="store_true", default=None, help="Create the destination directory if missing."
    )
    parser.add_argument("--cascade", type=Path, help="Path to the cascade model file (FACECROP_CASCADE_PATH).")
    parser.add_argument("--min-score", type=float, help="Minimum detection score to keep a face.")
    parser.add_argument("--workers", type=int, help="Number of images processed concurrently.")
    parser.add_argument("--output", type=Path, help="Write JSON Lines records here instead of stdout.")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging verbosity.")
    return parser


def load_settings(args: argparse.Namespace) -> Settings:
    overrides = {
        field: getattr(args, flag) for flag, field in _OVERRIDES.items() if getattr(args, flag, None) is not None
    }
    return get_settings(**overrides)


def build_pipeline(settings: Settings, model_manager: CascadeModelManager) -> Pipeline:
    """Load the model once and wire detector, store and orchestrator.

    Raises:
        ConfigurationError: If the model or destination directory is unusable.
    """
    store = CropStore(
        settings.dest_dir,
        jpeg_quality=settings.jpeg_quality,
        png_compress_level=settings.png_compress_level,
    )
    store.ensure_ready(create=settings.create_dest_dir)

    detector = CascadeFaceDetector(
        model_manager.get_cascade(),
        params=CascadeParams.from_settings(settings),
        cluster_iou=settings.cluster_iou,
        name=settings.cascade_filename,
    )
    return Pipeline(
        detector,
        store,
        min_score=settings.min_score,
        max_image_pixels=settings.max_image_pixels,
    )


def write_report(report: BatchReport, out: TextIO) -> None:
    for result in report.results:
        out.write(result.model_dump_json(by_alias=True))
        out.write("\n")


def _install_stop_handler(stop: threading.Event) -> object:
    def handler(signum: int, frame: object) -> None:
        if stop.is_set():
            raise KeyboardInterrupt
        logger.warning("Interrupt received, stopping after the current image (press again to abort)")
        stop.set()

    return signal.signal(signal.SIGINT, handler)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args)
    except ValidationError as exc:
        print(f"Invalid configuration:\n{exc}", file=sys.stderr)
        return EXIT_CONFIG

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logger.info(
        "Starting facecrop (source=%s, dest=%s, workers=%d, min_score=%.2f)",
        settings.source_dir,
        settings.dest_dir,
        settings.workers,
        settings.min_score,
    )

    model_manager = CascadeModelManager(settings)
    stop = threading.Event()
    previous_handler = None
    try:
        pipeline = build_pipeline(settings, model_manager)
        sources = discover_sources(settings.source_dir)
        if threading.current_thread() is threading.main_thread():
            previous_handler = _install_stop_handler(stop)
        report = pipeline.run(sources, stop_event=stop, workers=settings.workers)
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        return EXIT_CONFIG
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)  # type: ignore[arg-type]
        model_manager.shutdown()

    output_failed = False
    if args.output is not None:
        try:
            with args.output.open("w", encoding="utf-8") as fh:
                write_report(report, fh)
        except OSError as exc:
            logger.error("Cannot write results to %s: %s", args.output, exc)
            output_failed = True
    else:
        write_report(report, sys.stdout)

    for error in report.errors:
        where = f" region {error.region_index}" if error.region_index is not None else ""
        logger.warning("%s%s: %s: %s", error.source, where, error.kind, error.message)
    if report.cancelled:
        logger.warning("Batch cancelled before all images were processed")

    return EXIT_OK if report.ok and not output_failed else EXIT_ERRORS


if __name__ == "__main__":
    raise SystemExit(main())
