"""Pydantic schemas for pipeline output records and the batch report."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class DetectionResult(BaseModel):
    """One record per stored face crop.

    ``faces`` lists every region found in the source image, while
    ``image_base64`` holds the crop of the single region ``face_index``.
    """

    model_config = ConfigDict(populate_by_name=True)

    source: str = Field(description="Path of the source image")
    face_index: int = Field(alias="faceIndex", ge=0, description="Index into faces of the cropped region")
    faces: list[tuple[int, int, int, int]] = Field(description="All face rectangles as [minX, minY, maxX, maxY]")
    image_base64: str = Field(alias="imageBase64", description="data: URI of the stored crop")


class ErrorRecord(BaseModel):
    """A contained failure: one image, or one region of an image."""

    model_config = ConfigDict(populate_by_name=True)

    source: str
    region_index: int | None = Field(default=None, alias="regionIndex")
    kind: str = Field(description="Exception class name, e.g. LoadError or EmptyRegion")
    message: str


class BatchReport(BaseModel):
    """Outcome of a batch run."""

    results: list[DetectionResult] = Field(default_factory=list)
    errors: list[ErrorRecord] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list, description="Files skipped for an unsupported extension")
    processed: int = 0
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors

    def record_error(self, source: Path | str, exc: BaseException, region_index: int | None = None) -> ErrorRecord:
        record = ErrorRecord(
            source=str(source),
            region_index=region_index,
            kind=type(exc).__name__,
            message=str(exc),
        )
        self.errors.append(record)
        return record
