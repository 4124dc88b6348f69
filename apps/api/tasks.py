"""Task queue wrappers - API sends task names, never imports worker code."""
from typing import Optional

import structlog
from celery import Celery

from packages.common.config import get_settings
from packages.domain.categorization.training import TrainingJob

logger = structlog.get_logger()
settings = get_settings()

TRAIN_MODEL_TASK = "services.worker.tasks.train_model.train_user_model_task"

celery_app = Celery('spendwise')
celery_app.conf.broker_url = settings.celery_broker_url
celery_app.conf.result_backend = settings.celery_result_backend


def queue_model_training(user_id: str) -> str:
    """Queue a training run for a user on the worker."""
    task = celery_app.send_task(TRAIN_MODEL_TASK, args=[user_id], queue="training")
    return task.id


class CeleryTrainingDispatcher:
    """
    Dispatches training runs to the Celery worker instead of this process.

    The worker serializes runs per user through the model store's lock.
    """

    def dispatch(self, user_id: str, job: Optional[TrainingJob] = None) -> bool:
        task_id = queue_model_training(user_id)
        logger.info("training_task_queued", user_id=user_id, task_id=task_id)
        return True
