"""
Factory for payment gateway clients.
"""
from __future__ import annotations

from typing import Optional

import httpx

from application.ports.payment_gateway import MobileMoneyGateway
from core.settings import PaymentSettings, payment_settings


def get_payment_gateway(
    config: Optional[PaymentSettings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> MobileMoneyGateway:
    cfg = config or payment_settings
    name = cfg.gateway.provider.lower()
    if name == "cinetpay":
        from .cinetpay_client import CinetPayClient
        return CinetPayClient(
            cfg.gateway,
            timeouts=cfg.timeouts.model_dump(),
            retry={"max": cfg.retry.max, "base": cfg.retry.base_backoff},
            require_signature=cfg.webhook.require_signature,
            transport=transport,
        )
    raise ValueError(f"Unsupported payment provider: {name}")
