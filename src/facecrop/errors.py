"""Exception hierarchy for the face-crop pipeline."""

from __future__ import annotations

from pathlib import Path


class FaceCropError(Exception):
    """Base class for all facecrop errors."""


class ConfigurationError(FaceCropError):
    """Systemic problem (missing model, unusable directory). Aborts the batch."""


class LoadError(FaceCropError):
    """Source image unreadable or undecodable."""

    def __init__(self, source: Path | str, reason: str) -> None:
        super().__init__(f"Cannot load {source}: {reason}")
        self.source = Path(source)


class DetectionError(FaceCropError):
    """The face detector failed on one image."""

    def __init__(self, source: Path | str, reason: str) -> None:
        super().__init__(f"Face detection failed for {source}: {reason}")
        self.source = Path(source)


class CropError(FaceCropError):
    """Cropping one region failed."""


class EmptyRegion(CropError):
    """The region does not overlap the source image."""


class InvalidSource(CropError):
    """The source pixel buffer is malformed."""


class UnsupportedFormat(FaceCropError):
    """Encoding requested for a format other than jpeg or png."""


class StoreIOError(FaceCropError, OSError):
    """Filesystem failure while persisting or reading back a crop."""

    def __init__(self, path: Path | str, reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = Path(path)
