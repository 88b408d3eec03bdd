"""Model manager: locate, download, load and cache the cascade model.

The cascade is loaded once and handed to the detector explicitly; nothing
reads the model file implicitly at detection time.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING

from huggingface_hub import hf_hub_download
from huggingface_hub.errors import EntryNotFoundError, HfHubHTTPError

from facecrop.errors import ConfigurationError
from facecrop.ml.cascade import Cascade

if TYPE_CHECKING:
    from facecrop.config import Settings

logger = logging.getLogger(__name__)


class CascadeModelManager:
    """Resolves the cascade file (local or Hugging Face Hub) and caches the unpacked model."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._lock = threading.Lock()
        self._cascade: Cascade | None = None
        self._model_path: Path | None = None

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self) -> Path:
        """Return the cascade file path, downloading it from the Hub if configured.

        Raises:
            ConfigurationError: If the local file is missing or the download fails.
        """
        if self._model_path is not None and self._model_path.exists():
            return self._model_path

        repo_id = self._settings.cascade_repo_id
        if repo_id is None:
            path = Path(self._settings.cascade_path)
            if not path.is_file():
                raise ConfigurationError(f"Cascade model not found at {path}")
        else:
            models_dir = Path(self._settings.models_dir)
            try:
                models_dir.mkdir(parents=True, exist_ok=True)
                path = Path(
                    hf_hub_download(
                        repo_id=repo_id,
                        filename=self._settings.cascade_filename,
                        local_dir=str(models_dir),
                    )
                )
            except (OSError, ValueError, HfHubHTTPError, EntryNotFoundError) as exc:
                raise ConfigurationError(
                    f"Cannot download cascade model {repo_id}/{self._settings.cascade_filename}: {exc}"
                ) from exc
            logger.info("Downloaded %s/%s to %s", repo_id, self._settings.cascade_filename, path)

        self._model_path = path
        return path

    def get_cascade(self) -> Cascade:
        """Return the cached cascade, unpacking it on first use."""
        with self._lock:
            if self._cascade is not None:
                return self._cascade

            path = self.ensure_downloaded()
            try:
                cascade = Cascade.unpack(path.read_bytes())
            except OSError as exc:
                raise ConfigurationError(f"Cannot read cascade model {path}: {exc}") from exc
            except ValueError as exc:
                raise ConfigurationError(f"Malformed cascade model {path}: {exc}") from exc

            self._cascade = cascade
            logger.info(
                "Loaded cascade %s (depth=%d, trees=%d)",
                path.name,
                cascade.tree_depth,
                cascade.tree_count,
            )
            return cascade

    def is_loaded(self) -> bool:
        with self._lock:
            return self._cascade is not None

    def shutdown(self) -> None:
        """Drop the cached model."""
        with self._lock:
            self._cascade = None
            logger.info("Cascade model released")
