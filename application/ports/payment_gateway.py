"""
Mobile-money gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Protocol, runtime_checkable

from application.dtos.payments import (
    GatewayEvent,
    InitiationRequest,
    InitiationResult,
    StatusCheck,
)


@runtime_checkable
class MobileMoneyGateway(Protocol):
    """Gateway protocol for the external mobile-money checkout.

    Outbound calls raise GatewayError (or GatewayTimeoutError) on network failure;
    parse_webhook raises PaymentSignatureError before reading an unauthenticated payload.
    """

    provider: str

    def sign_request(self, transaction_id: str, amount: Decimal | str | int) -> str: ...

    async def initiate(self, req: InitiationRequest) -> InitiationResult: ...

    async def poll_status(self, transaction_reference: str) -> StatusCheck: ...

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> GatewayEvent: ...

    async def aclose(self) -> None: ...
