"""Small dispatching helpers to decouple Celery from callers."""
from __future__ import annotations

from typing import Any, Dict

from core.logging_config import get_logger
from ..config.celery import celery_app


logger = get_logger(__name__)


class CeleryPaymentTaskDispatcher:
    """SettlementScheduler backed by Celery.

    A payment whose settlement could not be queued is still picked up by the
    reconciliation sweep, so queueing failures are logged and not raised.
    """

    def schedule_settlement(self, reference: str) -> None:
        if celery_app.conf.task_always_eager:
            # eager mode would run the task inside the caller's event loop
            logger.info("settlement_left_to_reconciliation", reference=reference)
            return
        self.enqueue("payments.settle_commission", kwargs={"reference": reference})

    def enqueue(self, task_name: str, *, args: tuple | None = None, kwargs: Dict[str, Any] | None = None) -> None:
        try:
            celery_app.send_task(task_name, args=args or (), kwargs=kwargs or {}, retry=False)
        except Exception as exc:
            logger.warning("task_enqueue_failed", task_name=task_name, kwargs=kwargs, error=str(exc))
