from celery import Celery
from celery.schedules import crontab

from growroom.core import config
from growroom.core.logging_config import configure_logging

configure_logging()

celery_app = Celery(
    "growroom",
    broker=config.CELERY_BROKER_URL,
    backend=config.CELERY_RESULT_BACKEND,
    include=["growroom.tasks.automation"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone=config.AUTOMATION_TIMEZONE,
    enable_utc=True,
    worker_hijack_root_logger=False,
    beat_schedule={
        "evaluate-automations-every-minute": {
            "task": "growroom.tasks.automation.evaluate_automations",
            "schedule": float(config.AUTOMATION_POLL_SECONDS),
        },
        "process-scheduled-jobs-every-10s": {
            "task": "growroom.tasks.automation.process_scheduled_jobs",
            "schedule": 10.0,
        },
        "cleanup-old-jobs-daily": {
            "task": "growroom.tasks.automation.cleanup_old_jobs",
            "schedule": crontab(hour=3, minute=0),
        },
    },
)
