"""Mercado Pago REST adapter (reference PaymentGateway implementation)"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from billing_gateway.config import settings
from billing_gateway.domain.exceptions import (
    GatewayRequestError,
    GatewayTransientError,
    InvalidMoneyError,
    InvalidWebhookPayloadError,
    PaymentNotFoundError,
)
from billing_gateway.domain.models import PaymentRequest, PaymentResult, PaymentStatus
from billing_gateway.domain.money import Money
from billing_gateway.infrastructure.gateways.base import PaymentGateway
from billing_gateway.infrastructure.gateways.signatures import verify_signature
from billing_gateway.infrastructure.observability.metrics import gateway_latency_histogram

logger = logging.getLogger(__name__)

# Processor status -> canonical status
STATUS_MAP = {
    "approved": PaymentStatus.APPROVED,
    "authorized": PaymentStatus.PENDING,
    "pending": PaymentStatus.PENDING,
    "in_process": PaymentStatus.PENDING,
    "in_mediation": PaymentStatus.PENDING,
    "rejected": PaymentStatus.REJECTED,
    "cancelled": PaymentStatus.REJECTED,
    "refunded": PaymentStatus.FAILED,
    "charged_back": PaymentStatus.FAILED,
}

# status_detail -> message safe to show the payer
USER_MESSAGES = {
    "cc_rejected_insufficient_amount": "Payment declined: insufficient balance or credit limit. Try another card.",
    "cc_rejected_call_for_authorize": "Payment declined: authorize the charge with your card issuer.",
    "cc_rejected_bad_filled_card_number": "Payment declined: invalid card number.",
    "cc_rejected_bad_filled_date": "Payment declined: invalid expiration date.",
    "cc_rejected_bad_filled_security_code": "Payment declined: invalid security code.",
    "cc_rejected_bad_filled_other": "Payment declined: check the card details.",
    "cc_rejected_card_disabled": "Payment declined: card disabled. Contact your card issuer.",
    "cc_rejected_duplicated_payment": "Payment declined: this payment was already processed.",
    "cc_rejected_high_risk": "Payment declined for security reasons. Try another payment method.",
    "cc_rejected_invalid_installments": "Payment declined: installment count not accepted for this card.",
    "cc_rejected_max_attempts": "Payment declined: too many attempts. Wait a few minutes and try again.",
    "cc_rejected_blacklist": "Payment declined: card not authorized.",
    "pending_contingency": "Payment pending: we are reviewing your transaction.",
    "pending_review_manual": "Payment pending: your transaction is under review.",
    "pending_waiting_transfer": "Payment pending: waiting for the transfer to be completed.",
}
DEFAULT_REJECTION_MESSAGE = "Payment declined by the card issuer. Contact your bank or use another payment method."


def user_message_for(status: PaymentStatus, status_detail: Optional[str]) -> Optional[str]:
    if status is PaymentStatus.APPROVED:
        return None
    if status is PaymentStatus.PENDING and not status_detail:
        return None
    return USER_MESSAGES.get(status_detail or "", DEFAULT_REJECTION_MESSAGE if status.is_final else None)


class MercadoPagoGateway(PaymentGateway):
    """
    Client for the Mercado Pago payments API.

    The processor deduplicates natively: the idempotency key travels in the
    X-Idempotency-Key header, so a retried POST returns the original payment
    instead of charging again.
    """

    name = "mercadopago"

    def __init__(
        self,
        access_token: str | None = None,
        base_url: str | None = None,
        webhook_secret: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.access_token = access_token if access_token is not None else settings.mercadopago_access_token
        self.base_url = (base_url or settings.mercadopago_api_base).rstrip("/")
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.webhook_secret
        self.timeout = timeout or settings.http_timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self.access_token}"},
        )

    def build_payment_body(self, request: PaymentRequest, idempotency_key: str) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "transaction_amount": float(request.amount.to_decimal()),
            "description": request.description[:255],
            "payer": {"email": request.payer_email},
            "external_reference": (request.reference or idempotency_key)[:256],
            "statement_descriptor": settings.statement_descriptor,
        }
        if request.payment_method.is_instant_transfer:
            body["payment_method_id"] = "pix"
        else:
            # card brand is encoded in the token; sending payment_method_id as well breaks BIN checks
            body["token"] = request.payment_token
            body["installments"] = request.installments

        if request.payer_tax_id:
            body["payer"]["identification"] = {
                "type": "CPF" if len(request.payer_tax_id) == 11 else "CNPJ",
                "number": request.payer_tax_id,
            }
        if request.metadata:
            body["metadata"] = dict(request.metadata)
        return body

    async def process_payment(self, request: PaymentRequest, idempotency_key: str) -> PaymentResult:
        body = self.build_payment_body(request, idempotency_key)
        data = await self._send(
            "POST",
            "/v1/payments",
            operation="process_payment",
            json=body,
            headers={"X-Idempotency-Key": idempotency_key},
        )
        result = self.map_payment(data, currency=request.amount.currency)
        logger.info(
            "Payment submitted to processor",
            extra={
                "gateway": self.name,
                "idempotency_key": idempotency_key,
                "external_id": result.external_id,
                "payment_status": result.status.value,
                "amount_cents": request.amount.amount,
                "installments": request.installments,
            },
        )
        return result

    async def get_payment_status(self, external_id: str) -> PaymentResult:
        data = await self._send("GET", f"/v1/payments/{external_id}", operation="get_payment_status")
        return self.map_payment(data)

    async def process_webhook(self, payload: bytes) -> PaymentResult:
        """Notifications only carry the payment id; the authoritative status is fetched back"""
        try:
            notification = json.loads(payload)
            topic = notification.get("type") or notification.get("topic")
            payment_id = notification["data"]["id"]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise InvalidWebhookPayloadError(f"Malformed Mercado Pago notification: {e}") from e

        if topic != "payment":
            raise InvalidWebhookPayloadError(f"Unsupported notification topic: {topic!r}")

        return await self.get_payment_status(str(payment_id))

    def validate_webhook_signature(self, payload: bytes, signature: str) -> bool:
        if not self.webhook_secret:
            logger.error("Webhook secret not configured, rejecting notification", extra={"gateway": self.name})
            return False
        return verify_signature(payload, signature, self.webhook_secret, settings.webhook_tolerance_seconds)

    def map_payment(self, data: Dict[str, Any], currency: str | None = None) -> PaymentResult:
        try:
            raw_status = data.get("status") or "pending"
            status = STATUS_MAP.get(raw_status, PaymentStatus.PENDING)
            status_detail = data.get("status_detail")
            approved_at = data.get("date_approved")
            return PaymentResult(
                status=status,
                external_id=str(data["id"]),
                amount=Money.from_decimal(str(data.get("transaction_amount") or 0), data.get("currency_id") or currency or "BRL"),
                error_code=status_detail if status is not PaymentStatus.APPROVED else None,
                user_message=user_message_for(status, status_detail),
                reference=data.get("external_reference"),
                payment_method=data.get("payment_method_id"),
                approved_at=datetime.fromisoformat(approved_at) if approved_at else None,
            )
        except (KeyError, ValueError, TypeError, ArithmeticError, InvalidMoneyError) as e:
            raise GatewayRequestError(f"Invalid payment data from processor: {e}") from e

    async def _send(self, method: str, path: str, operation: str, **kwargs: Any) -> Dict[str, Any]:
        """
        Raises:
            GatewayTransientError: on timeout, network failure or 5xx
            PaymentNotFoundError: on 404
            GatewayRequestError: on any other 4xx or unreadable body
        """
        async with self._client() as client:
            try:
                with gateway_latency_histogram.labels(operation=operation).time():
                    response = await client.request(method, path, **kwargs)
                response.raise_for_status()
                return response.json()

            except httpx.TimeoutException as e:
                raise GatewayTransientError(f"Mercado Pago timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                status_code = e.response.status_code
                if status_code == 404:
                    raise PaymentNotFoundError(f"Payment not found at processor: {path}") from e
                if status_code >= 500 or status_code == 429:
                    raise GatewayTransientError(f"Mercado Pago error: {status_code}") from e
                raise GatewayRequestError(f"Mercado Pago refused request: {status_code}") from e
            except httpx.RequestError as e:
                raise GatewayTransientError(f"Mercado Pago unreachable: {e}") from e
            except ValueError as e:
                raise GatewayRequestError(f"Invalid JSON from Mercado Pago: {e}") from e
