"""
Celery application for the daily prediction job

Beat runs recalculate_predictions once a day at PREDICTION_JOB_HOUR_UTC
(02:00 UTC by default). Run with:

    celery -A services.worker.celery_app worker -B -Q predictions
"""
from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init
import structlog

from packages.common.config import get_settings
from packages.common.logging_config import configure_logging

logger = structlog.get_logger()
settings = get_settings()

app = Celery(
    "restock_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=3600,  # 1 hour hard limit
    task_soft_time_limit=3300,

    result_expires=86400,

    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=20,

    task_routes={
        "services.worker.tasks.recalculate_predictions.*": {"queue": "predictions"},
    },

    beat_schedule={
        "recalculate-predictions-daily": {
            "task": "services.worker.tasks.recalculate_predictions.recalculate_all_predictions",
            "schedule": crontab(hour=settings.prediction_job_hour_utc, minute=0),
            "options": {"queue": "predictions"},
        },
    },
)

# Import tasks explicitly to register them
from services.worker.tasks import recalculate_predictions  # noqa: E402,F401


@worker_process_init.connect
def init_worker(**kwargs):
    """Initialize worker process"""
    configure_logging(settings)
    logger.info("celery_worker_starting",
                environment=settings.environment,
                job_hour_utc=settings.prediction_job_hour_utc)


if __name__ == "__main__":
    app.start()
