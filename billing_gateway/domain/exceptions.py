"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


# Validation errors: raised at construction time, never reach the gateway


class InvalidMoneyError(DomainException):
    """Money amount or currency is malformed, or arithmetic went negative"""

    pass


class InvalidPaymentRequestError(DomainException):
    """Payment request violates its construction invariants"""

    pass


class InvalidSubscriptionError(DomainException):
    """Subscription fields violate the aggregate invariants"""

    pass


# Gateway errors


class GatewayError(DomainException):
    """Payment processor could not complete the call"""

    pass


class GatewayTransientError(GatewayError):
    """Timeout, network failure or 5xx from the processor; safe to retry"""

    pass


class GatewayRequestError(GatewayError):
    """Processor refused the request itself (4xx); retrying will not help"""

    pass


# Not found


class PaymentNotFoundError(DomainException):
    """Processor does not know the external payment id"""

    pass


class SubscriptionNotFoundError(DomainException):
    pass


class PlanNotFoundError(DomainException):
    pass


class InvalidWebhookPayloadError(DomainException):
    """Webhook body could not be parsed into a payment notification"""

    pass


# Ledger / orchestration


class InvalidTransitionError(DomainException):
    """Requested subscription transition is not allowed from its current status"""

    pass


class ConcurrentUpdateError(DomainException):
    """Subscription kept changing under a transition; the whole operation should be retried"""

    pass


class ChargeNotAllowedError(DomainException):
    """Charge refused before reaching the gateway"""

    pass


class AuditPersistenceError(DomainException):
    """Audit entry could not be stored"""

    pass
