"""Celery application configuration"""
from __future__ import annotations

import os
from core.logging_config import get_logger
from celery import Celery
from kombu import Queue

from core.config import settings
from .beat import CELERY_BEAT_SCHEDULE


# Task modules imported by the worker at startup.
CELERY_IMPORTS = (
    "infrastructure.tasks.payment_tasks",
)


celery_app = Celery("payment_engine")

celery_app.conf.update(
    # Connection endpoints – fall back to env variables when settings omit them.
    broker_url=settings.redis.url or os.getenv("CELERY_BROKER_URL"),
    result_backend=settings.redis.url or os.getenv("CELERY_RESULT_BACKEND"),
    # JSON keeps payloads interoperable and avoids arbitrary code execution.
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # Acknowledge after the work is done so a crashed worker's task is redelivered.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    result_expires=3600,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_default_retry_delay=5,
    task_queues=(
        Queue("settlement"),
        Queue("reconciliation"),
        Queue("default"),
    ),
    task_routes={
        "payments.settle_commission": {"queue": "settlement"},
        "payments.reconcile": {"queue": "reconciliation"},
    },
    beat_schedule=CELERY_BEAT_SCHEDULE,
)

celery_app.conf.imports = CELERY_IMPORTS

environment = getattr(settings, "ENVIRONMENT", "production") or "production"
if environment.lower() in {"development", "dev", "test", "testing"}:
    celery_app.conf.task_always_eager = True


logger = get_logger(__name__)


@celery_app.on_after_configure.connect
def _log_configuration(sender, **kwargs):
    logger.info("celery_configured", broker=sender.conf.broker_url, result_backend=sender.conf.result_backend)
