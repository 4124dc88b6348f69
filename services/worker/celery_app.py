"""
Celery application configuration for background model training
"""
import asyncio

import structlog
from celery import Celery
from celery.signals import worker_process_init, worker_process_shutdown

from packages.common.config import get_settings
from packages.common.database import sessionmanager
from packages.common.log_config import configure_logging

logger = structlog.get_logger()
settings = get_settings()

# Create Celery app
app = Celery(
    "spendwise_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# Celery configuration
app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=900,  # 15 minutes hard limit
    task_soft_time_limit=840,

    # Result backend settings
    result_expires=3600,
    result_extended=True,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=50,

    # Task routing
    task_routes={
        "services.worker.tasks.train_model.*": {"queue": "training"},
    },
)

# Import tasks explicitly to register them
from services.worker.tasks import train_model  # noqa: E402,F401


@worker_process_init.connect
def init_worker(**kwargs):
    """Initialize worker process"""
    configure_logging(settings.log_level)
    logger.info("celery_worker_starting",
                concurrency=kwargs.get("concurrency", "unknown"),
                model_path=settings.ml_model_path)


@worker_process_shutdown.connect
def shutdown_worker(**kwargs):
    """Clean up worker process"""
    logger.info("celery_worker_shutting_down")

    try:
        asyncio.run(sessionmanager.close())
        logger.info("celery_database_closed")
    except Exception as e:
        logger.error("celery_database_close_failed", error=str(e))


if __name__ == "__main__":
    app.start()
