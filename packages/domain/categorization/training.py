"""
Training Orchestrator - decides when to (re)train and runs training

Policy (checked after each new categorized expense):
- at least 20 categorized expenses, and
- no model yet, or the count is an exact multiple of 20

A training run turns the user's full categorized history into one new
model generation (vocabulary + category index + weights) and publishes it
through the ModelStore. Failures are logged and leave the previously
published generation in place.

Runs are dispatched without blocking the caller. At most one run per user
is in flight: the local dispatcher keeps an in-flight map and the store's
training lock covers runs in other processes.
"""
import asyncio
import threading
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Protocol

import structlog

from packages.common.metrics import TRAINING_DURATION_SECONDS, TRAINING_RUNS_TOTAL
from packages.common.schemas.expense import CategorizedExpense
from packages.domain.categorization.classifier import MIN_TRAINING_EXAMPLES, ClassifierModel
from packages.domain.categorization.errors import (
    InsufficientDataError,
    LoadError,
    TrainingRuntimeError,
)
from packages.domain.categorization.model_store import (
    SCHEMA_VERSION,
    ModelArtifact,
    ModelStore,
    new_generation_id,
)
from packages.domain.categorization.schemas import (
    ModelManifest,
    ModelState,
    ModelStatus,
    TrainingExample,
)
from packages.domain.categorization.text_normalizer import normalize
from packages.domain.categorization.vectorizer import (
    build_category_index,
    build_vocabulary,
    vectorize_many,
)

logger = structlog.get_logger()

RETRAIN_INTERVAL = 20

TrainingJob = Callable[[], Awaitable[bool]]


class ExpenseHistory(Protocol):
    """Storage collaborator consumed by the engine"""

    async def find_categorized(self, user_id: str, limit: Optional[int] = None) -> List[CategorizedExpense]:
        ...

    async def count_categorized(self, user_id: str) -> int:
        ...


class TrainingDispatcher(Protocol):
    def dispatch(self, user_id: str, job: TrainingJob) -> bool:
        ...


class LocalTrainingDispatcher:
    """
    Runs training jobs as background asyncio tasks in this process.

    A second dispatch for a user whose job is still running is dropped.
    """

    def __init__(self):
        self._inflight: Dict[str, asyncio.Task] = {}

    def in_flight(self, user_id: str) -> bool:
        task = self._inflight.get(user_id)
        return task is not None and not task.done()

    def dispatch(self, user_id: str, job: TrainingJob) -> bool:
        if self.in_flight(user_id):
            logger.info("training_already_in_flight", user_id=user_id)
            return False

        task = asyncio.get_running_loop().create_task(self._run(user_id, job), name=f"train-{user_id}")
        self._inflight[user_id] = task
        task.add_done_callback(lambda t, uid=user_id: self._finished(uid, t))
        return True

    async def _run(self, user_id: str, job: TrainingJob) -> bool:
        try:
            return await job()
        except Exception as e:
            logger.error("training_job_crashed", user_id=user_id, error=str(e), exc_info=True)
            return False

    def _finished(self, user_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(user_id) is task:
            del self._inflight[user_id]

    async def drain(self) -> None:
        """Wait for every in-flight job (used on shutdown and in tests)"""
        tasks = list(self._inflight.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


def should_train(count: int, model_exists: bool) -> bool:
    """Threshold policy: first model at 20 examples, then every 20 more"""
    if count < MIN_TRAINING_EXAMPLES:
        return False
    return not model_exists or count % RETRAIN_INTERVAL == 0


class TrainingOrchestrator:
    """Per-user training state machine and training pipeline"""

    def __init__(
        self,
        history: ExpenseHistory,
        model_store: ModelStore,
        dispatcher: Optional[TrainingDispatcher] = None,
        random_state: int = 42,
    ):
        self.history = history
        self.model_store = model_store
        self.dispatcher = dispatcher or LocalTrainingDispatcher()
        self.random_state = random_state
        self._states: Dict[str, ModelState] = {}
        self._states_lock = threading.Lock()

    # ---- state -----------------------------------------------------------

    def get_state(self, user_id: str) -> ModelState:
        with self._states_lock:
            state = self._states.get(user_id)
        if state is not None:
            return state
        return ModelState.TRAINED if self.model_store.exists(user_id) else ModelState.NO_MODEL

    def _set_state(self, user_id: str, state: ModelState) -> None:
        with self._states_lock:
            self._states[user_id] = state

    async def status(self, user_id: str) -> ModelStatus:
        """Training state, published manifest and training-data count"""
        try:
            manifest = self.model_store.read_manifest(user_id)
        except LoadError as e:
            logger.warning("model_manifest_unreadable", user_id=user_id, error=str(e))
            manifest = None

        return ModelStatus(
            user_id=user_id,
            state=self.get_state(user_id),
            model_available=manifest is not None,
            manifest=manifest,
            categorized_expenses=await self.history.count_categorized(user_id),
        )

    # ---- scheduling ------------------------------------------------------

    async def schedule_training(self, user_id: str) -> bool:
        """
        Apply the threshold policy and dispatch a training run if it is due.

        Never raises; returns True if a run was dispatched.
        """
        try:
            count = await self.history.count_categorized(user_id)
        except Exception as e:
            logger.error("training_schedule_count_failed", user_id=user_id, error=str(e))
            return False

        model_exists = self.model_store.is_available(user_id)
        if not should_train(count, model_exists):
            logger.debug("training_not_due", user_id=user_id, count=count, model_exists=model_exists)
            return False

        return self.request_training(user_id, reason="threshold", count=count)

    def request_training(self, user_id: str, reason: str = "manual", count: Optional[int] = None) -> bool:
        """Dispatch a training run without checking the threshold policy"""
        try:
            dispatched = self.dispatcher.dispatch(user_id, lambda: self.train_model(user_id))
        except Exception as e:
            logger.error("training_dispatch_failed", user_id=user_id, error=str(e), exc_info=True)
            return False

        if dispatched:
            logger.info("training_scheduled", user_id=user_id, reason=reason, count=count)
        return dispatched

    # ---- training --------------------------------------------------------

    def build_artifact(self, user_id: str, expenses: List[CategorizedExpense]) -> ModelArtifact:
        """
        Build vocabulary, category index and weights from one corpus.

        CPU-bound; called from a worker thread.

        Raises:
            InsufficientDataError, TrainingRuntimeError
        """
        examples = [
            TrainingExample(description=e.description, amount=e.amount, category_id=e.category_id)
            for e in expenses
        ]
        token_lists = [normalize(example.description) for example in examples]

        vocabulary = build_vocabulary(token_lists)
        category_index = build_category_index(example.category_id for example in examples)
        features = vectorize_many(token_lists, [example.amount for example in examples], vocabulary)
        labels = [category_index[example.category_id] for example in examples]

        classifier, metrics = ClassifierModel.train(
            features,
            labels,
            n_categories=len(category_index),
            random_state=self.random_state,
        )

        manifest = ModelManifest(
            schema_version=SCHEMA_VERSION,
            generation=new_generation_id(),
            user_id=user_id,
            trained_at=datetime.now(timezone.utc),
            input_width=len(vocabulary) + 1,
            output_width=len(category_index),
            example_count=len(examples),
            metrics=metrics,
        )
        return ModelArtifact(
            classifier=classifier,
            vocabulary=vocabulary,
            category_index=category_index,
            manifest=manifest,
        )

    async def train_model(self, user_id: str) -> bool:
        """
        Train and publish a new model generation for the user.

        Returns:
            True if a new generation was published; False on insufficient
            data, a concurrent run, or any failure (all logged)
        """
        logger.info("training_started", user_id=user_id)
        started = time.perf_counter()

        try:
            expenses = await self.history.find_categorized(user_id)
        except Exception as e:
            TRAINING_RUNS_TOTAL.labels(outcome="error").inc()
            logger.error("training_data_fetch_failed", user_id=user_id, error=str(e), exc_info=True)
            return False

        if len(expenses) < MIN_TRAINING_EXAMPLES:
            TRAINING_RUNS_TOTAL.labels(outcome="insufficient_data").inc()
            logger.info("training_skipped_insufficient_data",
                        user_id=user_id,
                        examples=len(expenses),
                        required=MIN_TRAINING_EXAMPLES)
            return False

        with self.model_store.training_lock(user_id) as acquired:
            if not acquired:
                TRAINING_RUNS_TOTAL.labels(outcome="locked").inc()
                logger.info("training_already_in_progress", user_id=user_id)
                return False

            previous_state = self.get_state(user_id)
            self._set_state(
                user_id,
                ModelState.RETRAINING if self.model_store.exists(user_id) else ModelState.TRAINING,
            )

            try:
                artifact = await asyncio.to_thread(self.build_artifact, user_id, expenses)
            except InsufficientDataError as e:
                self._set_state(user_id, previous_state)
                TRAINING_RUNS_TOTAL.labels(outcome="insufficient_data").inc()
                logger.info("training_skipped_insufficient_data", user_id=user_id, reason=str(e))
                return False
            except TrainingRuntimeError as e:
                self._set_state(user_id, previous_state)
                TRAINING_RUNS_TOTAL.labels(outcome="error").inc()
                logger.error("training_failed", user_id=user_id, error=str(e))
                return False
            except Exception as e:
                self._set_state(user_id, previous_state)
                TRAINING_RUNS_TOTAL.labels(outcome="error").inc()
                logger.error("training_failed", user_id=user_id, error=str(e), exc_info=True)
                return False

            saved = await asyncio.to_thread(self.model_store.save, user_id, artifact)
            if not saved:
                self._set_state(user_id, previous_state)
                TRAINING_RUNS_TOTAL.labels(outcome="error").inc()
                return False

            self._set_state(user_id, ModelState.TRAINED)

        duration = time.perf_counter() - started
        TRAINING_RUNS_TOTAL.labels(outcome="success").inc()
        TRAINING_DURATION_SECONDS.observe(duration)

        metrics = artifact.manifest.metrics
        logger.info("training_complete",
                    user_id=user_id,
                    generation=artifact.manifest.generation,
                    examples=artifact.manifest.example_count,
                    vocabulary_size=len(artifact.vocabulary),
                    categories=len(artifact.category_index),
                    loss=metrics.loss if metrics else None,
                    validation_accuracy=metrics.validation_accuracy if metrics else None,
                    duration_seconds=round(duration, 3))
        return True
