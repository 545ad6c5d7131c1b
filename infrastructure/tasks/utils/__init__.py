"""Utility helpers for Celery tasks."""
from .dispatcher import CeleryPaymentTaskDispatcher
from .base_task import BaseTask

__all__ = ["CeleryPaymentTaskDispatcher", "BaseTask"]
