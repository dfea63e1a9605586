"""In-process sandbox processor for local development and staging

Outcomes are driven by the payment token, the way card sandboxes work:
- tokens starting with "tok_decline" are rejected for insufficient funds
- tokens starting with "tok_pending" and all instant transfers stay pending
- anything else is approved

The sandbox has no native idempotency support, so it deduplicates locally:
a repeated idempotency key returns the stored result without a new charge.
"""

import itertools
import json
import logging
from typing import Dict, Optional, Tuple

from billing_gateway.config import settings
from billing_gateway.domain.exceptions import InvalidWebhookPayloadError, PaymentNotFoundError
from billing_gateway.domain.models import PaymentRequest, PaymentResult, PaymentStatus, utcnow
from billing_gateway.infrastructure.gateways.base import PaymentGateway
from billing_gateway.infrastructure.gateways.signatures import sign_payload, verify_signature

logger = logging.getLogger(__name__)


class SandboxGateway(PaymentGateway):
    name = "sandbox"

    def __init__(self, webhook_secret: str | None = None):
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.webhook_secret
        self._by_key: Dict[str, PaymentResult] = {}
        self._by_id: Dict[str, PaymentResult] = {}
        self._ids = itertools.count(1)
        self.charges_made = 0

    async def process_payment(self, request: PaymentRequest, idempotency_key: str) -> PaymentResult:
        existing = self._by_key.get(idempotency_key)
        if existing is not None:
            logger.info("Sandbox replayed payment for idempotency key", extra={"idempotency_key": idempotency_key})
            return self._by_id[existing.external_id]

        self.charges_made += 1
        external_id = f"sbx_{next(self._ids)}"
        token = request.payment_token or ""
        if request.payment_method.is_instant_transfer or token.startswith("tok_pending"):
            status, detail = PaymentStatus.PENDING, "pending_waiting_transfer"
        elif token.startswith("tok_decline"):
            status, detail = PaymentStatus.REJECTED, "cc_rejected_insufficient_amount"
        else:
            status, detail = PaymentStatus.APPROVED, None

        result = PaymentResult(
            status=status,
            external_id=external_id,
            amount=request.amount,
            error_code=detail,
            user_message=_message_for(status),
            reference=request.reference or idempotency_key,
            payment_method=request.payment_method.value,
            approved_at=utcnow() if status is PaymentStatus.APPROVED else None,
        )
        self._by_key[idempotency_key] = result
        self._by_id[external_id] = result
        return result

    async def get_payment_status(self, external_id: str) -> PaymentResult:
        try:
            return self._by_id[external_id]
        except KeyError:
            raise PaymentNotFoundError(f"Unknown sandbox payment: {external_id}") from None

    async def process_webhook(self, payload: bytes) -> PaymentResult:
        try:
            payment_id = str(json.loads(payload)["data"]["id"])
        except (ValueError, KeyError, TypeError) as e:
            raise InvalidWebhookPayloadError(f"Malformed sandbox notification: {e}") from e
        return await self.get_payment_status(payment_id)

    def validate_webhook_signature(self, payload: bytes, signature: str) -> bool:
        return verify_signature(payload, signature, self.webhook_secret, settings.webhook_tolerance_seconds)

    def settle(self, external_id: str, status: PaymentStatus, error_code: Optional[str] = None) -> Tuple[bytes, str]:
        """Move a payment to a final status and return the signed notification the processor would send"""
        current = self._by_id[external_id]
        settled = PaymentResult(
            status=status,
            external_id=current.external_id,
            amount=current.amount,
            error_code=error_code,
            user_message=_message_for(status),
            reference=current.reference,
            payment_method=current.payment_method,
            approved_at=utcnow() if status is PaymentStatus.APPROVED else None,
        )
        self._by_id[external_id] = settled
        payload = json.dumps({"type": "payment", "data": {"id": external_id}}).encode()
        return payload, sign_payload(payload, self.webhook_secret)


def _message_for(status: PaymentStatus) -> Optional[str]:
    if status is PaymentStatus.REJECTED:
        return "Payment declined: insufficient balance or credit limit. Try another card."
    if status is PaymentStatus.PENDING:
        return "Payment pending: waiting for the transfer to be completed."
    if status is PaymentStatus.FAILED:
        return "Payment could not be completed."
    return None
