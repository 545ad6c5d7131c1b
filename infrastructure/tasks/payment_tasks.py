"""
Celery tasks for settlement and reconciliation.

Each run builds its services, executes one coroutine with asyncio.run and then
releases the pooled connections bound to that event loop.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

from celery import shared_task

from application.services.settlement_service import SettlementService
from core.logging_config import bind_payment_context, clear_payment_context, get_logger
from core.settings import payment_settings
from domain.payment.exceptions import PaymentNotFoundException
from infrastructure.composition import build_payment_service, build_settlement_service
from infrastructure.database import engine
from infrastructure.external.cache import init_redis_client, shutdown_redis_client
from infrastructure.tasks.utils.base_task import BaseTask
from infrastructure.tasks.utils.dispatcher import CeleryPaymentTaskDispatcher


logger = get_logger(__name__)

T = TypeVar("T")


async def _with_settlement(fn: Callable[[SettlementService], Awaitable[T]]) -> T:
    redis = await init_redis_client() if payment_settings.locking.backend == "redis" else None
    payments = build_payment_service(scheduler=CeleryPaymentTaskDispatcher(), redis=redis)
    try:
        return await fn(build_settlement_service(payments))
    finally:
        await payments.aclose()
        if redis is not None:
            await shutdown_redis_client()
        await engine.dispose()


@shared_task(name="payments.settle_commission", base=BaseTask, bind=True, max_retries=3, default_retry_delay=30)
def task_settle_commission(self, reference: str):
    bind_payment_context(reference)
    try:
        outcome = asyncio.run(_with_settlement(lambda s: s.settle_commission(reference)))
        logger.info("commission_settlement_task_done", reference=reference, outcome=outcome.value)
        return {"reference": reference, "outcome": outcome.value}
    except PaymentNotFoundException as exc:
        logger.warning("commission_settlement_task_skipped", reference=reference, **exc.log_fields())
        return {"reference": reference, "outcome": "not_found"}
    except Exception as exc:
        logger.error("commission_settlement_task_failed", reference=reference, error=str(exc))
        raise self.retry(exc=exc)
    finally:
        clear_payment_context()


@shared_task(name="payments.reconcile", base=BaseTask, bind=True, max_retries=1, default_retry_delay=60)
def task_reconcile_payments(self):
    try:
        report = asyncio.run(_with_settlement(lambda s: s.reconcile()))
    except Exception as exc:
        logger.error("reconciliation_task_failed", error=str(exc))
        raise self.retry(exc=exc)
    return report.model_dump(mode="json")
