"""
CinetPay checkout adapter (mobile money: Orange, MTN, Moov, Wave).

Endpoints (JSON over HTTPS):
- POST {base_url}/payment        open a checkout session, returns payment_url/payment_token
- POST {base_url}/payment/check  status of a transaction by transaction_id

Requests and webhooks are signed with HMAC-SHA256 keyed by the merchant secret over
`apikey + site_id + transaction_id + amount`. Webhooks arrive either with the short
field names or CinetPay's `cpm_*` names, JSON or form-encoded.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
from urllib.parse import parse_qsl

import httpx

from application.dtos.payments import (
    GatewayEvent,
    InitiationRequest,
    InitiationResult,
    StatusCheck,
)
from core.logging_config import get_logger
from core.settings import GatewaySettings
from domain.payment.entity import to_decimal
from domain.payment.exceptions import (
    DomainValidationException,
    GatewayError,
    GatewayTimeoutError,
    PaymentSignatureError,
)
from infrastructure.external.payments.base import BasePaymentClient
from shared.codes.payment_codes import PROVIDER_INITIATION_SUCCESS


logger = get_logger(__name__)


def canonical_amount(amount: Decimal | str | int) -> str:
    """`5000`, `5000.0` and `"5000.00"` all sign as `5000`."""
    value = to_decimal(amount)
    if value == value.to_integral_value():
        return str(int(value))
    return format(value.normalize(), "f")


def _first(fields: dict[str, Any], *names: str) -> Optional[str]:
    for name in names:
        value = fields.get(name)
        if value not in (None, ""):
            return str(value)
    return None


def _join_date_time(date: Optional[str], time: Optional[str]) -> Optional[str]:
    """`payment_date` may already carry the time of day."""
    if not date:
        return None
    if not time or "T" in date or " " in date.strip():
        return date.strip()
    return f"{date.strip()} {time.strip()}"


class CinetPayClient(BasePaymentClient):
    provider = "cinetpay"

    def __init__(
        self,
        config: GatewaySettings,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        require_signature: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(timeouts=timeouts, retry=retry, transport=transport)
        if not (config.api_key and config.merchant_id and config.secret_key):
            raise RuntimeError(
                "PAYMENT__GATEWAY__API_KEY / MERCHANT_ID / SECRET_KEY not configured"
            )
        self._config = config
        self._require_signature = require_signature

    # --- signing ----------------------------------------------------------------

    def sign_request(self, transaction_id: str, amount: Decimal | str | int) -> str:
        message = f"{self._config.api_key}{self._config.merchant_id}{transaction_id}{canonical_amount(amount)}"
        return hmac.new(
            self._config.secret_key.encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    # --- outbound -------------------------------------------------------------

    async def _post(self, path: str, payload: dict[str, Any], *, reference: str) -> dict[str, Any]:
        url = f"{self._config.base_url.rstrip('/')}/{path}"

        async def _send() -> httpx.Response:
            async with self.client() as http:
                return await http.post(url, json=payload)

        try:
            resp = await self._retry(_send)
        except httpx.TimeoutException as exc:
            logger.warning("gateway_timeout", provider=self.provider, path=path, reference=reference)
            raise GatewayTimeoutError(
                f"CinetPay {path} timed out", provider=self.provider, details={"reference": reference}
            ) from exc
        except httpx.TransportError as exc:
            logger.warning("gateway_unreachable", provider=self.provider, path=path, error=str(exc))
            raise GatewayError(
                f"CinetPay {path} unreachable: {exc}", provider=self.provider, details={"reference": reference}
            ) from exc

        if resp.status_code >= 500:
            raise GatewayError(
                f"CinetPay {path} answered HTTP {resp.status_code}",
                provider=self.provider,
                details={"reference": reference, "http_status": resp.status_code},
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise GatewayError(
                f"CinetPay {path} returned a non-JSON body",
                provider=self.provider,
                details={"reference": reference, "http_status": resp.status_code},
            ) from exc
        if not isinstance(data, dict):
            raise GatewayError(f"CinetPay {path} returned an unexpected body", provider=self.provider)
        return data

    def _base_payload(self, transaction_id: str) -> dict[str, Any]:
        return {
            "apikey": self._config.api_key,
            "site_id": self._config.merchant_id,
            "transaction_id": transaction_id,
        }

    async def initiate(self, req: InitiationRequest) -> InitiationResult:
        amount = canonical_amount(req.amount)
        payload = {
            **self._base_payload(req.transaction_reference),
            "amount": int(Decimal(amount)) if "." not in amount else amount,
            "currency": req.currency or self._config.currency,
            "description": req.description,
            "return_url": self._config.return_url,
            "notify_url": self._config.notify_url,
            "customer_name": req.customer_name or "",
            "customer_email": req.customer_email or "",
            "customer_phone_number": req.customer_phone,
            "channels": self._config.channels,
            "lang": self._config.lang,
            "signature": self.sign_request(req.transaction_reference, req.amount),
        }
        self._log("gateway_initiate_request", reference=req.transaction_reference, amount=amount)
        data = await self._post("payment", payload, reference=req.transaction_reference)

        code = str(data.get("code", ""))
        body = data.get("data") if isinstance(data.get("data"), dict) else {}
        accepted = code in PROVIDER_INITIATION_SUCCESS[self.provider]
        self._log(
            "gateway_initiate_response",
            reference=req.transaction_reference,
            code=code,
            accepted=accepted,
        )
        return InitiationResult(
            accepted=accepted,
            provider=self.provider,
            provider_code=code or None,
            message=_first(data, "message", "description"),
            payment_url=body.get("payment_url"),
            payment_token=body.get("payment_token"),
        )

    async def poll_status(self, transaction_reference: str) -> StatusCheck:
        data = await self._post(
            "payment/check",
            self._base_payload(transaction_reference),
            reference=transaction_reference,
        )
        code = str(data.get("code", ""))
        body = data.get("data") if isinstance(data.get("data"), dict) else {}
        provider_status = body.get("status")
        status = self._map_status(provider_status if provider_status else code)
        self._log(
            "gateway_status_checked",
            reference=transaction_reference,
            code=code,
            provider_status=provider_status,
            status=status.value,
        )
        return StatusCheck(
            transaction_reference=transaction_reference,
            status=status,
            provider=self.provider,
            provider_result=str(provider_status or code) or None,
            provider_payment_id=_first(body, "operator_id", "payment_id"),
            amount=self._parse_amount(body.get("amount")),
            operator=self._map_operator(body.get("payment_method")),
            occurred_at=self._parse_timestamp(_first(body, "payment_date")),
        )

    # --- inbound --------------------------------------------------------------

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> GatewayEvent:
        """
        Authenticate and normalize a notification.

        The signature is checked before any field other than the signed ones is read.
        """
        lowered = {str(k).lower(): v for k, v in (headers or {}).items()}
        fields = self._decode_body(lowered.get("content-type", ""), body)

        transaction_id = _first(fields, "transaction_id", "cpm_trans_id")
        amount = _first(fields, "amount", "cpm_amount")
        signature = _first(fields, "signature") or lowered.get("x-signature")

        if signature or self._require_signature:
            if not signature or not transaction_id or amount is None:
                logger.warning(
                    "webhook_signature_rejected",
                    provider=self.provider,
                    reason="missing",
                    reference=transaction_id,
                )
                raise PaymentSignatureError("Webhook signature missing", provider=self.provider)
            try:
                expected = self.sign_request(transaction_id, amount)
            except InvalidOperation as exc:
                raise PaymentSignatureError("Webhook amount is not a number", provider=self.provider) from exc
            if not hmac.compare_digest(expected, str(signature)):
                logger.warning(
                    "webhook_signature_rejected",
                    provider=self.provider,
                    reason="mismatch",
                    reference=transaction_id,
                )
                raise PaymentSignatureError("Webhook signature mismatch", provider=self.provider)

        if not transaction_id:
            raise DomainValidationException("Webhook carries no transaction id", field="transaction_id")

        provider_result = _first(fields, "result_code", "provider_result", "cpm_result", "status")
        phone = _first(fields, "phone", "customer_phone")
        if phone is None and fields.get("cel_phone_num"):
            phone = f"{fields.get('cpm_phone_prefixe') or ''}{fields['cel_phone_num']}"
        timestamp = _first(fields, "timestamp")
        if timestamp is None:
            timestamp = _join_date_time(
                _first(fields, "payment_date", "cpm_payment_date"),
                _first(fields, "payment_time", "cpm_payment_time"),
            )

        return GatewayEvent(
            transaction_reference=transaction_id,
            status=self._map_status(provider_result),
            provider=self.provider,
            provider_result=provider_result,
            provider_payment_id=_first(fields, "payment_id", "provider_payment_id", "cpm_payid"),
            amount=self._parse_amount(amount),
            operator=self._map_operator(_first(fields, "operator", "payment_method")),
            customer_phone=phone,
            occurred_at=self._parse_timestamp(timestamp),
            raw={k: v for k, v in fields.items() if k != "signature"},
        )

    def _decode_body(self, content_type: str, body: bytes) -> dict[str, Any]:
        text = (body or b"").decode("utf-8", errors="replace").strip()
        if not text:
            return {}
        if "json" in content_type or (not content_type and text.startswith("{")):
            try:
                data = json.loads(text)
            except ValueError as exc:
                raise PaymentSignatureError("Webhook body is not valid JSON", provider=self.provider) from exc
            if not isinstance(data, dict):
                raise PaymentSignatureError("Webhook body must be an object", provider=self.provider)
            return data
        return dict(parse_qsl(text, keep_blank_values=True))

    @staticmethod
    def _parse_amount(value: Any) -> Optional[Decimal]:
        if value in (None, ""):
            return None
        try:
            return to_decimal(value)
        except InvalidOperation:
            return None

    @staticmethod
    def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
        if not value:
            return None
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed
