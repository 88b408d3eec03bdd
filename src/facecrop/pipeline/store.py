"""Content-addressed, write-once storage for cropped faces."""

from __future__ import annotations

import base64
import io
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from PIL import Image

from facecrop.errors import ConfigurationError, StoreIOError, UnsupportedFormat
from facecrop.pipeline.content import digest

if TYPE_CHECKING:
    from collections.abc import Iterator

    from facecrop.pipeline.cropper import CroppedImage

logger = logging.getLogger(__name__)


class ImageFormat(StrEnum):
    JPEG = "jpeg"
    PNG = "png"

    @property
    def extension(self) -> str:
        return _CANONICAL_EXTENSIONS[self]

    @property
    def mime_type(self) -> str:
        return f"image/{self.value}"

    @classmethod
    def parse(cls, value: ImageFormat | str) -> ImageFormat:
        """Accept a format name, with or without a leading dot (``"jpg"``, ``".png"``)."""
        if isinstance(value, ImageFormat):
            return value
        name = str(value).lower().lstrip(".")
        if name == "jpg":
            name = "jpeg"
        try:
            return cls(name)
        except ValueError:
            raise UnsupportedFormat(f"Unsupported image format: {value!r}") from None

    @classmethod
    def from_extension(cls, extension: str) -> ImageFormat:
        try:
            return _EXTENSION_FORMATS[extension.lower()]
        except KeyError:
            raise UnsupportedFormat(f"Unsupported file extension: {extension!r}") from None


_CANONICAL_EXTENSIONS: dict[ImageFormat, str] = {
    ImageFormat.JPEG: ".jpg",
    ImageFormat.PNG: ".png",
}

_EXTENSION_FORMATS: dict[str, ImageFormat] = {
    ".jpg": ImageFormat.JPEG,
    ".jpeg": ImageFormat.JPEG,
    ".png": ImageFormat.PNG,
}

_JPEG_MAGIC = b"\xff\xd8\xff"
_PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


def sniff_mime_type(data: bytes) -> str:
    """Determine the MIME type from the leading magic bytes.

    Raises:
        UnsupportedFormat: If the bytes are neither JPEG nor PNG.
    """
    if data.startswith(_JPEG_MAGIC):
        return ImageFormat.JPEG.mime_type
    if data.startswith(_PNG_MAGIC):
        return ImageFormat.PNG.mime_type
    raise UnsupportedFormat("Stored bytes are neither JPEG nor PNG")


def to_data_uri(data: bytes) -> str:
    """Encode image bytes as a ``data:<mime>;base64,...`` URI."""
    mime = sniff_mime_type(data)
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def decode_data_uri(uri: str) -> bytes:
    """Inverse of :func:`to_data_uri`."""
    header, sep, payload = uri.partition(",")
    if not sep or not header.startswith("data:") or not header.endswith(";base64"):
        raise ValueError("Not a base64 data URI")
    return base64.b64decode(payload, validate=True)


@dataclass
class _KeyLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


@dataclass(frozen=True)
class StoredCrop:
    """A persisted crop. ``created`` is False when the file already existed."""

    key: str
    path: Path
    data_uri: str
    created: bool


class CropStore:
    """Persists crops under ``<content key><ext>`` in one destination directory.

    Each distinct encoded content is written at most once. Writes go to a
    temporary file that is hard-linked into place, so readers never see a
    partial file and a concurrent writer of the same content loses cleanly.
    """

    def __init__(self, dest_dir: Path, jpeg_quality: int = 95, png_compress_level: int = 0) -> None:
        self._dest_dir = Path(dest_dir)
        self._jpeg_quality = jpeg_quality
        self._png_compress_level = png_compress_level
        self._locks: dict[str, _KeyLock] = {}
        self._locks_guard = threading.Lock()

    @property
    def dest_dir(self) -> Path:
        return self._dest_dir

    def ensure_ready(self, create: bool = False) -> None:
        """Check the destination is a writable directory.

        Raises:
            ConfigurationError: If it is missing (and ``create`` is False) or unwritable.
        """
        if create:
            try:
                self._dest_dir.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise ConfigurationError(f"Cannot create destination directory {self._dest_dir}: {exc}") from exc
        if not self._dest_dir.is_dir():
            raise ConfigurationError(f"Destination directory {self._dest_dir} does not exist")
        if not os.access(self._dest_dir, os.W_OK | os.X_OK):
            raise ConfigurationError(f"Destination directory {self._dest_dir} is not writable")

    def encode(self, crop: CroppedImage, fmt: ImageFormat | str) -> bytes:
        """Encode crop pixels with the fixed settings for ``fmt``."""
        fmt = ImageFormat.parse(fmt)
        pixels = crop.pixels
        if pixels.ndim == 3 and pixels.shape[2] == 1:
            pixels = pixels[..., 0]
        image = Image.fromarray(pixels)
        buf = io.BytesIO()
        if fmt is ImageFormat.JPEG:
            if image.mode not in ("RGB", "L"):
                image = image.convert("RGB")
            image.save(buf, format="JPEG", quality=self._jpeg_quality)
        else:
            image.save(buf, format="PNG", compress_level=self._png_compress_level)
        return buf.getvalue()

    def store(self, crop: CroppedImage, fmt: ImageFormat | str, extension: str | None = None) -> StoredCrop:
        """Encode, key and persist ``crop``; reuse an existing file with the same key.

        Raises:
            UnsupportedFormat: For formats other than jpeg/png. Nothing is written.
            StoreIOError: On any filesystem failure.
        """
        fmt = ImageFormat.parse(fmt)
        if extension is None:
            extension = fmt.extension
        elif ImageFormat.from_extension(extension) is not fmt:
            raise UnsupportedFormat(f"Extension {extension!r} does not match format {fmt}")

        encoded = self.encode(crop, fmt)
        key = digest(encoded)
        target = self._dest_dir / f"{key}{extension.lower()}"

        with self._key_lock(target.name):
            if target.exists():
                logger.debug("Crop %s already stored", target.name)
                created = False
            else:
                created = self._write_once(target, encoded)
            stored_bytes = encoded if created else self._read(target)

        if created:
            logger.info("Saved cropped face to %s", target)
        return StoredCrop(key=key, path=target, data_uri=to_data_uri(stored_bytes), created=created)

    @contextmanager
    def _key_lock(self, name: str) -> Iterator[None]:
        """Serialise writers of one key; the entry is dropped when no writer holds it."""
        with self._locks_guard:
            entry = self._locks.get(name)
            if entry is None:
                entry = self._locks[name] = _KeyLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if not entry.users:
                    del self._locks[name]

    def _write_once(self, target: Path, data: bytes) -> bool:
        """Write ``data`` to ``target`` unless it appears meanwhile. Returns True if written."""
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self._dest_dir, prefix=".tmp-", suffix=target.suffix)
        except OSError as exc:
            raise StoreIOError(self._dest_dir, f"cannot create temporary file: {exc}") from exc

        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            try:
                os.link(tmp_path, target)
            except FileExistsError:
                logger.debug("Crop %s written concurrently by another process", target.name)
                return False
            return True
        except OSError as exc:
            raise StoreIOError(target, str(exc)) from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    @staticmethod
    def _read(path: Path) -> bytes:
        try:
            return path.read_bytes()
        except OSError as exc:
            raise StoreIOError(path, str(exc)) from exc
