"""Model manager: resolve, load, cache, and evict TFLite classifiers.

Resolves model and label files from the local models directory, optionally
downloading them from HuggingFace first, builds classifiers on demand, and
evicts classifiers that have been idle longer than the configured TTL.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download

from classifyx.ml.engine import TFLiteEngine
from classifyx.ml.image_classifier import TFLiteImageClassifier
from classifyx.ml.model_container import ModelContainer
from classifyx.ml.ranking import LabelTable

if TYPE_CHECKING:
    from collections.abc import Callable

    from classifyx.config import Settings
    from classifyx.ml.engine import InferenceEngine
    from classifyx.ml.image_classifier import ImageClassifier

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for classifier lifecycle management."""

    def list_models(self) -> list[ModelSpec]:
        """Return every registered model."""
        ...

    def ensure_downloaded(self, model_name: str) -> ModelFiles:
        """Ensure a model's files are present and return their paths."""
        ...

    def get_classifier(self, model_name: str) -> ImageClassifier:
        """Return a cached or newly built classifier."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def unload_idle_models(self) -> None:
        """Unload models that have exceeded their TTL."""
        ...

    def shutdown(self) -> None:
        """Clear all cached classifiers."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Where to find one model and its label table."""

    name: str
    model_filename: str
    labels_filename: str
    repo_id: str | None = None
    subfolder: str | None = None


@dataclass(frozen=True)
class ModelFiles:
    model_path: Path
    labels_path: Path


def default_model_spec(settings: Settings) -> ModelSpec:
    return ModelSpec(
        name=settings.model_name,
        model_filename=settings.model_filename,
        labels_filename=settings.labels_filename,
        repo_id=settings.model_repo_id,
    )


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


@dataclass
class _CachedClassifier:
    classifier: ImageClassifier
    last_used: float


class TFLiteModelManager:
    """Resolves, builds, caches, and evicts TFLite image classifiers."""

    def __init__(
        self,
        settings: Settings,
        engine_factory: Callable[[], InferenceEngine] = TFLiteEngine,
    ) -> None:
        self._settings = settings
        self._engine_factory = engine_factory
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._classifiers: dict[str, _CachedClassifier] = {}
        self._model_files: dict[str, ModelFiles] = {}

        default = default_model_spec(settings)
        self._registry: dict[str, ModelSpec] = {default.name: default}

    # -- Public API ---------------------------------------------------------

    @property
    def default_model(self) -> str:
        return self._settings.model_name

    def register(self, spec: ModelSpec) -> None:
        """Add or replace a registry entry."""
        with self._lock:
            self._registry[spec.name] = spec
            self._model_files.pop(spec.name, None)

    def list_models(self) -> list[ModelSpec]:
        with self._lock:
            return list(self._registry.values())

    def ensure_downloaded(self, model_name: str) -> ModelFiles:
        """Return local model/label paths, downloading them if configured.

        Raises:
            KeyError: If the model is not registered.
            FileNotFoundError: If a local-only model's files are missing.
        """
        spec = self._get_spec(model_name)

        cached = self._model_files.get(model_name)
        if cached is not None and cached.model_path.exists() and cached.labels_path.exists():
            return cached

        if spec.repo_id is None:
            files = ModelFiles(
                model_path=self._models_dir / spec.model_filename,
                labels_path=self._models_dir / spec.labels_filename,
            )
            for path in (files.model_path, files.labels_path):
                if not path.exists():
                    raise FileNotFoundError(f"Model file not found for {model_name}: {path}")
        else:
            files = ModelFiles(
                model_path=self._download(spec, spec.model_filename),
                labels_path=self._download(spec, spec.labels_filename),
            )
            logger.info("Downloaded %s to %s", model_name, files.model_path.parent)

        self._model_files[model_name] = files
        return files

    def get_classifier(self, model_name: str) -> ImageClassifier:
        """Return a cached classifier, building one if needed."""
        with self._lock:
            cached = self._classifiers.get(model_name)
            if cached is not None:
                cached.last_used = time.monotonic()
                return cached.classifier

        files = self.ensure_downloaded(model_name)
        classifier = TFLiteImageClassifier(
            model_name,
            ModelContainer.from_path(files.model_path),
            LabelTable.from_path(files.labels_path),
            self._engine_factory(),
            num_threads=self._settings.num_threads or None,
            num_results=self._settings.top_k,
            threshold=self._settings.confidence_threshold,
        )

        with self._lock:
            # Double-check: another thread may have built it while we loaded.
            existing = self._classifiers.get(model_name)
            if existing is not None:
                existing.last_used = time.monotonic()
                return existing.classifier
            self._classifiers[model_name] = _CachedClassifier(
                classifier=classifier,
                last_used=time.monotonic(),
            )
            logger.info("Loaded classifier for %s", model_name)
            return classifier

    def get_loaded_models(self) -> list[str]:
        """Return names of models with live classifiers."""
        with self._lock:
            return list(self._classifiers.keys())

    def unload_idle_models(self) -> None:
        """Remove classifiers that have exceeded the configured TTL."""
        ttl = self._settings.model_ttl
        if ttl == 0:
            return

        now = time.monotonic()
        with self._lock:
            expired = [name for name, cached in self._classifiers.items() if (now - cached.last_used) > ttl]
            for name in expired:
                del self._classifiers[name]
                logger.info("Evicted idle classifier for %s", name)

    def shutdown(self) -> None:
        """Clear all cached classifiers."""
        with self._lock:
            self._classifiers.clear()
            logger.info("All classifiers cleared")

    # -- Internal -----------------------------------------------------------

    def _get_spec(self, model_name: str) -> ModelSpec:
        with self._lock:
            try:
                return self._registry[model_name]
            except KeyError:
                raise KeyError(f"Unknown model: {model_name}") from None

    def _download(self, spec: ModelSpec, filename: str) -> Path:
        return Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=filename,
                subfolder=spec.subfolder,
                local_dir=str(self._models_dir),
            )
        )
