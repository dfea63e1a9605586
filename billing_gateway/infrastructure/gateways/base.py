"""Gateway-agnostic payment processor contract"""

from abc import ABC, abstractmethod

from billing_gateway.domain.models import PaymentRequest, PaymentResult


class PaymentGateway(ABC):
    """
    Capability set every processor adapter implements.

    - process_payment must be safe to call twice with the same idempotency
      key: the adapter forwards the key to a processor that supports it, or
      deduplicates locally when the processor does not.
    - validate_webhook_signature must be called before process_webhook; a
      False result short-circuits reconciliation.
    """

    name: str = "abstract"

    @abstractmethod
    async def process_payment(self, request: PaymentRequest, idempotency_key: str) -> PaymentResult:
        """
        Raises:
            GatewayTransientError: timeouts, network failures, 5xx
            GatewayRequestError: processor refused the request (4xx)
        """

    @abstractmethod
    async def get_payment_status(self, external_id: str) -> PaymentResult:
        """
        Raises:
            PaymentNotFoundError: processor does not know external_id
        """

    @abstractmethod
    async def process_webhook(self, payload: bytes) -> PaymentResult:
        """Turn a processor-specific notification into the canonical result"""

    @abstractmethod
    def validate_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Verify the notification came from the processor"""
