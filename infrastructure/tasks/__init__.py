"""Celery task infrastructure package.

Importing this module wires together the configured Celery app and the
dispatcher that schedules settlement work for the payment use-cases.
"""
from .config.celery import celery_app
from .utils.dispatcher import CeleryPaymentTaskDispatcher

__all__ = ["celery_app", "CeleryPaymentTaskDispatcher"]
