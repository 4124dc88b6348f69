import json
import os
import time

import numpy as np
import pytest

from packages.domain.categorization.model_store import (
    CURRENT_POINTER,
    GENERATIONS_DIR,
    LOCK_FILE,
    MANIFEST_FILE,
    VOCABULARY_FILE,
    ModelStore,
)
from packages.domain.categorization.text_normalizer import normalize
from packages.domain.categorization.vectorizer import vectorize

USER = "user-1"


@pytest.fixture
def build(repository, orchestrator):
    """Build (but do not save) an artifact from `count` seeded expenses"""
    def _build(count=30, user_id=USER):
        repository.expenses.pop(user_id, None)
        repository.seed(user_id, count)
        return orchestrator.build_artifact(user_id, repository.expenses[user_id])
    return _build


def published_dir(store, user_id=USER):
    user_dir = store.user_dir(user_id)
    generation = (user_dir / CURRENT_POINTER).read_text().strip()
    return user_dir / GENERATIONS_DIR / generation


def test_cold_start_returns_none(model_store):
    assert model_store.load(USER) is None
    assert not model_store.exists(USER)
    assert not model_store.is_available(USER)


def test_saved_artifact_loads_in_a_fresh_store(model_store, build):
    artifact = build()
    assert model_store.save(USER, artifact)

    fresh = ModelStore(model_store.root)
    loaded = fresh.load(USER)
    assert loaded is not None
    assert loaded.vocabulary == artifact.vocabulary
    assert loaded.category_index == artifact.category_index
    assert loaded.manifest.generation == artifact.manifest.generation

    vector = vectorize(normalize("Coffee shop latte"), 4.5, artifact.vocabulary)
    np.testing.assert_allclose(
        loaded.classifier.predict_proba(vector),
        artifact.classifier.predict_proba(vector),
    )


def test_load_is_cached_per_generation(model_store, build):
    model_store.save(USER, build())
    fresh = ModelStore(model_store.root)
    assert fresh.load(USER) is fresh.load(USER)


def test_load_follows_generation_published_elsewhere(model_store, build):
    reader = ModelStore(model_store.root)
    model_store.save(USER, build(count=30))
    first = reader.load(USER)

    newer = build(count=40)
    model_store.save(USER, newer)
    second = reader.load(USER)

    assert second.manifest.generation == newer.manifest.generation
    assert second.manifest.generation != first.manifest.generation


def test_users_are_isolated(model_store, build):
    model_store.save("alice", build(user_id="alice"))
    assert model_store.load("alice") is not None
    assert model_store.load("bob") is None


def test_unsafe_user_id_gets_hashed_directory(model_store):
    path = model_store.user_dir("../../etc")
    assert path.parent == model_store.root
    assert ".." not in path.name


def test_corrupt_manifest_is_treated_as_cold_start(model_store, build):
    model_store.save(USER, build())
    (published_dir(model_store) / MANIFEST_FILE).write_text("{not json")

    fresh = ModelStore(model_store.root)
    assert fresh.load(USER) is None


def test_vocabulary_width_mismatch_is_rejected(model_store, build):
    model_store.save(USER, build())
    vocab_path = published_dir(model_store) / VOCABULARY_FILE
    vocabulary = json.loads(vocab_path.read_text())
    vocabulary["extra-token"] = len(vocabulary)
    vocab_path.write_text(json.dumps(vocabulary))

    assert ModelStore(model_store.root).load(USER) is None


def test_unsupported_schema_version_is_rejected(model_store, build):
    model_store.save(USER, build())
    manifest_path = published_dir(model_store) / MANIFEST_FILE
    manifest = json.loads(manifest_path.read_text())
    manifest["schema_version"] = 999
    manifest_path.write_text(json.dumps(manifest))

    assert ModelStore(model_store.root).load(USER) is None


def test_pointer_to_missing_generation_is_rejected(model_store, build):
    model_store.save(USER, build())
    (model_store.user_dir(USER) / CURRENT_POINTER).write_text("20260101T000000000000-deadbeef")
    assert ModelStore(model_store.root).load(USER) is None


def test_old_generations_are_pruned(model_store, build):
    for count in (20, 30, 40):
        assert model_store.save(USER, build(count=count))

    generations = sorted(p.name for p in (model_store.user_dir(USER) / GENERATIONS_DIR).iterdir())
    assert len(generations) == 2
    assert published_dir(model_store).name == generations[-1]


def test_no_staging_left_behind(model_store, build):
    model_store.save(USER, build())
    leftovers = [p.name for p in model_store.user_dir(USER).iterdir() if p.name.startswith(".")]
    assert leftovers == []


def test_training_lock_is_exclusive(model_store):
    with model_store.training_lock(USER) as first:
        assert first
        with model_store.training_lock(USER) as second:
            assert not second
        assert (model_store.user_dir(USER) / LOCK_FILE).exists()
    assert not (model_store.user_dir(USER) / LOCK_FILE).exists()


def test_stale_training_lock_is_broken(model_store):
    lock_path = model_store.user_dir(USER) / LOCK_FILE
    lock_path.parent.mkdir(parents=True)
    lock_path.write_text("12345 0\n")
    old = time.time() - model_store.lock_ttl_seconds - 10
    os.utime(lock_path, (old, old))

    with model_store.training_lock(USER) as acquired:
        assert acquired


def test_run_that_outlived_its_lock_leaves_successor_lock_alone(model_store):
    lock_path = model_store.user_dir(USER) / LOCK_FILE

    slow_run = model_store.training_lock(USER)
    assert slow_run.__enter__()
    old = time.time() - model_store.lock_ttl_seconds - 10
    os.utime(lock_path, (old, old))

    successor = model_store.training_lock(USER)
    assert successor.__enter__()

    slow_run.__exit__(None, None, None)
    assert lock_path.exists()
    with model_store.training_lock(USER) as third:
        assert not third

    successor.__exit__(None, None, None)
    assert not lock_path.exists()
