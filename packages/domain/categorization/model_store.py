"""
Model Store - per-user persistence and in-memory cache of model artifacts

Layout under ML_MODEL_PATH:

    user_<id>/
        CURRENT                      name of the published generation
        training.lock                present while a training run holds the user
        generations/
            <generation>/
                manifest.json        schema version, widths, metrics
                vocabulary.json      token -> input slot
                categories.json      category id -> output slot
                model.joblib         fitted network weights

A generation is written to a staging directory, renamed into
generations/, and only then published by atomically replacing CURRENT.
Readers follow CURRENT, so they see either the old generation or the new
one, never a mix.
"""
import hashlib
import json
import os
import re
import shutil
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, Optional, Union
from uuid import uuid4

import structlog

from packages.common.metrics import MODEL_LOAD_FAILURES_TOTAL
from packages.domain.categorization.classifier import ClassifierModel
from packages.domain.categorization.errors import LoadError
from packages.domain.categorization.schemas import ModelManifest
from packages.domain.categorization.vectorizer import CategoryIndex, Vocabulary

logger = structlog.get_logger()

SCHEMA_VERSION = 1

CURRENT_POINTER = "CURRENT"
GENERATIONS_DIR = "generations"
LOCK_FILE = "training.lock"
MANIFEST_FILE = "manifest.json"
VOCABULARY_FILE = "vocabulary.json"
CATEGORIES_FILE = "categories.json"
WEIGHTS_FILE = "model.joblib"

_SAFE_USER_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_GENERATION_RE = re.compile(r"^[0-9]{8}T[0-9]{12}-[0-9a-f]{8}$")


def new_generation_id() -> str:
    """Sortable, unique generation name"""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
    return f"{stamp}-{uuid4().hex[:8]}"


@dataclass
class ModelArtifact:
    """Weights, vocabulary and category index from one training run"""
    classifier: ClassifierModel
    vocabulary: Vocabulary
    category_index: CategoryIndex
    manifest: ModelManifest

    def __post_init__(self):
        self._slots = {slot: category_id for category_id, slot in self.category_index.items()}

    def category_for_slot(self, slot: int) -> Optional[str]:
        return self._slots.get(slot)


def _check_dense_index(mapping: Dict[str, int], name: str) -> None:
    if not isinstance(mapping, dict):
        raise LoadError(f"{name} is not a JSON object")
    for key, value in mapping.items():
        if not isinstance(key, str) or not isinstance(value, int) or isinstance(value, bool):
            raise LoadError(f"{name} must map strings to integers")
    if sorted(mapping.values()) != list(range(len(mapping))):
        raise LoadError(f"{name} indexes are not contiguous from 0")


class ModelStore:
    """
    Durable per-user artifact storage with a keyed in-memory cache.

    Thread-safe: training jobs publish from worker threads while request
    handlers read.
    """

    def __init__(
        self,
        root: Union[str, Path],
        generations_retained: int = 2,
        lock_ttl_seconds: int = 900,
    ):
        self.root = Path(root)
        self.generations_retained = max(1, generations_retained)
        self.lock_ttl_seconds = lock_ttl_seconds
        self._cache: Dict[str, ModelArtifact] = {}
        self._available: Dict[str, bool] = {}
        self._lock = threading.RLock()

    # ---- paths -----------------------------------------------------------

    def user_dir(self, user_id: str) -> Path:
        user_id = str(user_id)
        if _SAFE_USER_ID.match(user_id):
            return self.root / f"user_{user_id}"
        digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:32]
        return self.root / f"user_h{digest}"

    def _read_pointer(self, user_id: str) -> Optional[str]:
        try:
            generation = (self.user_dir(user_id) / CURRENT_POINTER).read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise LoadError(f"cannot read model pointer: {e}") from e

        if not _GENERATION_RE.match(generation):
            raise LoadError(f"model pointer names an invalid generation: {generation!r}")
        return generation

    # ---- reading ---------------------------------------------------------

    def exists(self, user_id: str) -> bool:
        """True when a generation has been published for the user"""
        return (self.user_dir(user_id) / CURRENT_POINTER).is_file()

    def is_available(self, user_id: str) -> bool:
        """Per-process "model available" flag, falling back to the published pointer"""
        with self._lock:
            if self._available.get(user_id):
                return True
        return self.exists(user_id)

    def load(self, user_id: str) -> Optional[ModelArtifact]:
        """
        Get the user's published artifact, loading it on first access.

        A cached artifact is reused while CURRENT still names its
        generation; a generation published by another process replaces it.

        Returns:
            ModelArtifact, or None when nothing usable is published
            (cold start, or a corrupt artifact, which is logged)
        """
        try:
            generation = self._read_pointer(user_id)
        except LoadError as e:
            self._record_load_failure(user_id, e)
            return None

        if generation is None:
            with self._lock:
                self._cache.pop(user_id, None)
                self._available[user_id] = False
            logger.debug("model_not_found", user_id=user_id)
            return None

        with self._lock:
            cached = self._cache.get(user_id)
            if cached is not None and cached.manifest.generation == generation:
                return cached

        try:
            artifact = self._read_generation(user_id, generation)
        except LoadError as e:
            self._record_load_failure(user_id, e)
            return None

        with self._lock:
            self._cache[user_id] = artifact
            self._available[user_id] = True

        logger.info("model_loaded",
                    user_id=user_id,
                    generation=generation,
                    vocabulary_size=len(artifact.vocabulary),
                    categories=len(artifact.category_index))
        return artifact

    def _record_load_failure(self, user_id: str, error: LoadError) -> None:
        MODEL_LOAD_FAILURES_TOTAL.inc()
        with self._lock:
            self._cache.pop(user_id, None)
            self._available[user_id] = False
        logger.warning("model_load_failed", user_id=user_id, error=str(error))

    def read_manifest(self, user_id: str) -> Optional[ModelManifest]:
        """Manifest of the published generation without loading weights"""
        generation = self._read_pointer(user_id)
        if generation is None:
            return None
        gen_dir = self.user_dir(user_id) / GENERATIONS_DIR / generation
        return self._read_manifest(gen_dir)

    def _read_manifest(self, gen_dir: Path) -> ModelManifest:
        try:
            manifest = ModelManifest.model_validate_json(
                (gen_dir / MANIFEST_FILE).read_text(encoding="utf-8")
            )
        except (OSError, ValueError) as e:
            raise LoadError(f"unreadable manifest in {gen_dir}: {e}") from e

        if manifest.schema_version != SCHEMA_VERSION:
            raise LoadError(
                f"artifact schema version {manifest.schema_version} is not supported "
                f"(expected {SCHEMA_VERSION})"
            )
        return manifest

    def _read_json(self, path: Path) -> Dict[str, int]:
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise LoadError(f"unreadable {path.name}: {e}") from e

    def _read_generation(self, user_id: str, generation: str) -> ModelArtifact:
        gen_dir = self.user_dir(user_id) / GENERATIONS_DIR / generation
        if not gen_dir.is_dir():
            raise LoadError(f"published generation {generation} is missing")

        manifest = self._read_manifest(gen_dir)
        vocabulary = self._read_json(gen_dir / VOCABULARY_FILE)
        category_index = self._read_json(gen_dir / CATEGORIES_FILE)
        _check_dense_index(vocabulary, VOCABULARY_FILE)
        _check_dense_index(category_index, CATEGORIES_FILE)

        if manifest.input_width != len(vocabulary) + 1:
            raise LoadError("manifest input width does not match the vocabulary")
        if manifest.output_width != len(category_index):
            raise LoadError("manifest output width does not match the category index")

        classifier = ClassifierModel.load(gen_dir / WEIGHTS_FILE)
        if classifier.input_width != manifest.input_width:
            raise LoadError("network input width does not match the vocabulary")
        if classifier.output_width != manifest.output_width:
            raise LoadError("network output width does not match the category index")

        return ModelArtifact(
            classifier=classifier,
            vocabulary=vocabulary,
            category_index=category_index,
            manifest=manifest,
        )

    # ---- writing ---------------------------------------------------------

    def save(self, user_id: str, artifact: ModelArtifact) -> bool:
        """
        Persist and publish a new generation, then cache it.

        Returns:
            True if the generation was published
        """
        user_dir = self.user_dir(user_id)
        generation = artifact.manifest.generation
        generations_dir = user_dir / GENERATIONS_DIR
        staging = user_dir / f".staging-{generation}"

        try:
            generations_dir.mkdir(parents=True, exist_ok=True)
            staging.mkdir()

            artifact.classifier.save(staging / WEIGHTS_FILE)
            with open(staging / VOCABULARY_FILE, "w", encoding="utf-8") as f:
                json.dump(artifact.vocabulary, f)
            with open(staging / CATEGORIES_FILE, "w", encoding="utf-8") as f:
                json.dump(artifact.category_index, f)
            (staging / MANIFEST_FILE).write_text(artifact.manifest.model_dump_json(indent=2), encoding="utf-8")

            os.replace(staging, generations_dir / generation)
            self._publish(user_dir, generation)
        except Exception as e:
            shutil.rmtree(staging, ignore_errors=True)
            logger.error("model_save_failed",
                         user_id=user_id,
                         generation=generation,
                         error=str(e),
                         exc_info=True)
            return False

        with self._lock:
            self._cache[user_id] = artifact
            self._available[user_id] = True

        logger.info("model_saved",
                    user_id=user_id,
                    generation=generation,
                    path=str(generations_dir / generation))

        self._prune(user_dir, keep=generation)
        return True

    def _publish(self, user_dir: Path, generation: str) -> None:
        tmp = user_dir / f".{CURRENT_POINTER}.{uuid4().hex[:8]}"
        tmp.write_text(generation, encoding="utf-8")
        os.replace(tmp, user_dir / CURRENT_POINTER)

    def _prune(self, user_dir: Path, keep: str) -> None:
        """Remove old generations beyond the retention count"""
        generations_dir = user_dir / GENERATIONS_DIR
        try:
            names = sorted(p.name for p in generations_dir.iterdir()
                           if p.is_dir() and _GENERATION_RE.match(p.name))
        except OSError as e:
            logger.warning("model_prune_failed", path=str(generations_dir), error=str(e))
            return

        stale = [name for name in names[:-self.generations_retained] if name != keep]
        for name in stale:
            shutil.rmtree(generations_dir / name, ignore_errors=True)
        if stale:
            logger.debug("model_generations_pruned", path=str(generations_dir), removed=stale)

    # ---- training lock ---------------------------------------------------

    @contextmanager
    def training_lock(self, user_id: str) -> Iterator[bool]:
        """
        Hold the user's training lock for the duration of the block.

        Yields True if the lock was acquired, False if another run holds it.
        A lock older than lock_ttl_seconds is treated as abandoned. On exit
        the lock file is removed only while it still carries this run's
        token, so a run that outlived the TTL cannot release its successor.
        """
        user_dir = self.user_dir(user_id)
        user_dir.mkdir(parents=True, exist_ok=True)
        lock_path = user_dir / LOCK_FILE

        token = self._try_acquire(lock_path)
        if token is None and self._is_stale(lock_path):
            token = self._break_and_acquire(lock_path)
        try:
            yield token is not None
        finally:
            if token is not None:
                self._release(lock_path, token)

    def _try_acquire(self, lock_path: Path) -> Optional[str]:
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return None
        token = f"{os.getpid()} {time.time():.0f} {uuid4().hex}"
        with os.fdopen(fd, "w") as f:
            f.write(f"{token}\n")
        return token

    def _release(self, lock_path: Path, token: str) -> None:
        try:
            holder = lock_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return
        if holder != token:
            logger.warning("training_lock_taken_over", path=str(lock_path))
            return
        try:
            lock_path.unlink()
        except FileNotFoundError:
            pass

    def _is_stale(self, lock_path: Path) -> bool:
        try:
            age = time.time() - lock_path.stat().st_mtime
        except FileNotFoundError:
            return True
        return age > self.lock_ttl_seconds

    def _break_and_acquire(self, lock_path: Path) -> Optional[str]:
        logger.warning("training_lock_stale", path=str(lock_path))
        try:
            lock_path.unlink()
        except FileNotFoundError:
            pass
        return self._try_acquire(lock_path)
