"""
Model training task

Flow:
1. Open the database pool for this run
2. Train the user's model from their full categorized history
3. Publish the new generation (or keep the old one on failure)
4. Dispose of the pool so the next run starts on a fresh event loop

Runs are never retried: a failed run leaves the previous model in place
and the next multiple-of-20 expense schedules another one.
"""
import asyncio
from typing import Any, Dict

import structlog

from services.worker.celery_app import app
from packages.common.config import get_settings
from packages.common.database import sessionmanager
from packages.domain.categorization.categorization_service import training_orchestrator
from packages.domain.categorization.errors import LoadError

logger = structlog.get_logger()
settings = get_settings()


async def _train(user_id: str) -> bool:
    await sessionmanager.init(settings.database_url)
    try:
        return await training_orchestrator.train_model(user_id)
    finally:
        await sessionmanager.close()


@app.task(name="services.worker.tasks.train_model.train_user_model_task", ignore_result=False)
def train_user_model_task(user_id: str) -> Dict[str, Any]:
    """
    Train and publish a categorization model for one user.

    Args:
        user_id: Owner of the expenses

    Returns:
        Dict with the outcome and the published generation, if any
    """
    logger.info("training_task_started", user_id=user_id)

    trained = asyncio.run(_train(user_id))

    generation = None
    if trained:
        try:
            manifest = training_orchestrator.model_store.read_manifest(user_id)
            generation = manifest.generation if manifest else None
        except LoadError as e:
            logger.warning("training_task_manifest_unreadable", user_id=user_id, error=str(e))

    logger.info("training_task_complete", user_id=user_id, trained=trained, generation=generation)
    return {
        "user_id": user_id,
        "trained": trained,
        "generation": generation,
    }
