"""
Celery application for background jobs.

Broker is the same Redis the rate limiter uses. Campaign sends go to the
`notification` queue; run a worker with

    celery -A app.worker.celery_app worker -Q notification
"""
from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from app.config import get_settings
from app.utils.logging import setup_logging


def make_celery() -> Celery:
    """Create the Celery app.

    Kept in a function so tests can build one against a different config.
    """
    settings = get_settings()

    celery = Celery(
        settings.APP_NAME,
        broker=settings.redis_url,
        include=["app.worker.tasks"],
    )

    celery.conf.update(
        task_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        task_ignore_result=True,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        task_default_queue="notification",
        task_always_eager=settings.CELERY_TASK_ALWAYS_EAGER,
    )

    return celery


@celery_setup_logging.connect
def _configure_worker_logging(**kwargs):
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, json_format=settings.is_production)


celery_app = make_celery()
