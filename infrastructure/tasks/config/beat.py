"""Celery beat schedule: the periodic reconciliation sweep."""
from __future__ import annotations

from core.settings import payment_settings

CELERY_BEAT_SCHEDULE = {
    "payments-reconcile": {
        "task": "payments.reconcile",
        "schedule": float(payment_settings.reconciliation.interval_seconds),
        # a sweep that could not start before the next tick is dropped
        "options": {"expires": float(payment_settings.reconciliation.interval_seconds)},
    },
}
