"""Domain models - pure Python dataclasses representing business entities"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from email_validator import EmailNotValidError, validate_email

from billing_gateway.domain.exceptions import InvalidPaymentRequestError, InvalidSubscriptionError
from billing_gateway.domain.money import Money

MAX_INSTALLMENTS = 12


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    PENDING = "pending"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    AWAITING_PAYMENT = "awaiting_payment"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)

    @property
    def is_usable(self) -> bool:
        """Statuses that still grant access while the period (plus grace) lasts"""
        return self in (
            SubscriptionStatus.TRIAL,
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.AWAITING_PAYMENT,
            SubscriptionStatus.EXPIRED,
        )


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    PIX = "pix"  # instant transfer, settles immediately

    @property
    def is_instant_transfer(self) -> bool:
        return self is PaymentMethod.PIX


class PaymentStatus(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    PENDING = "pending"
    FAILED = "failed"

    @property
    def is_final(self) -> bool:
        return self is not PaymentStatus.PENDING


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


@dataclass(frozen=True)
class TenantContext:
    """Who is acting and on behalf of which tenant; passed explicitly to every call"""

    user_id: Optional[int] = None
    tenant_id: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def system(cls, tenant_id: Optional[int] = None) -> TenantContext:
        """Context for webhooks and scheduled sweeps, where no user is acting"""
        return cls(user_id=None, tenant_id=tenant_id)


@dataclass(frozen=True)
class PaymentRequest:
    """
    Everything a gateway needs to attempt one charge.

    Validated once at construction:
    - amount > 0
    - non-blank description, valid payer email
    - installments in 1..12, and exactly 1 for instant transfers
    - card methods require a token; instant transfers must not carry one
    """

    amount: Money
    description: str
    payer_email: str
    payment_method: PaymentMethod
    payment_token: Optional[str] = None
    installments: int = 1
    payer_tax_id: Optional[str] = None
    reference: Optional[str] = None
    metadata: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        if not isinstance(self.amount, Money) or self.amount.amount <= 0:
            raise InvalidPaymentRequestError("Payment amount must be greater than zero")

        if not self.description or not self.description.strip():
            raise InvalidPaymentRequestError("Payment description is required")

        try:
            validate_email(self.payer_email or "", check_deliverability=False)
        except EmailNotValidError as e:
            raise InvalidPaymentRequestError(f"Invalid payer email: {self.payer_email!r}") from e

        try:
            method = PaymentMethod(self.payment_method)
        except ValueError as e:
            raise InvalidPaymentRequestError(f"Unknown payment method: {self.payment_method!r}") from e
        object.__setattr__(self, "payment_method", method)

        if not isinstance(self.installments, int) or not 1 <= self.installments <= MAX_INSTALLMENTS:
            raise InvalidPaymentRequestError(f"Installments must be between 1 and {MAX_INSTALLMENTS}")

        has_token = bool(self.payment_token and self.payment_token.strip())
        if method.is_instant_transfer:
            if self.payment_token is not None and self.payment_token != "":
                raise InvalidPaymentRequestError("A payment token must not be sent for instant transfers")
            if self.installments > 1:
                raise InvalidPaymentRequestError("Installments are not allowed for instant transfers")
        elif not has_token:
            raise InvalidPaymentRequestError(f"A payment token is required for {method.value} payments")

        if self.payer_tax_id is not None:
            digits = "".join(ch for ch in self.payer_tax_id if ch.isdigit())
            if len(digits) not in (11, 14):
                raise InvalidPaymentRequestError("Payer tax id must have 11 (individual) or 14 (company) digits")
            object.__setattr__(self, "payer_tax_id", digits)

        if self.metadata is not None:
            object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))


@dataclass(frozen=True)
class PaymentResult:
    """Canonical outcome of a gateway call, whatever processor produced it"""

    status: PaymentStatus
    external_id: str
    amount: Money
    error_code: Optional[str] = None  # raw processor detail, kept for the audit log
    user_message: Optional[str] = None  # safe to show to the end user
    reference: Optional[str] = None
    payment_method: Optional[str] = None
    approved_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "status", PaymentStatus(self.status))

    @property
    def is_approved(self) -> bool:
        return self.status is PaymentStatus.APPROVED

    @property
    def is_rejected(self) -> bool:
        return self.status in (PaymentStatus.REJECTED, PaymentStatus.FAILED)

    @property
    def is_pending(self) -> bool:
        return self.status is PaymentStatus.PENDING


@dataclass(frozen=True)
class Plan:
    """Subscription plan; prices are per billing cycle"""

    id: int
    name: str
    monthly_price: Money
    annual_price: Optional[Money] = None
    active: bool = True

    def price_for(self, cycle: BillingCycle) -> Money:
        if cycle is BillingCycle.ANNUAL:
            if self.annual_price is None:
                raise InvalidPaymentRequestError(f"Plan {self.name!r} has no annual price")
            return self.annual_price
        return self.monthly_price


@dataclass(frozen=True)
class Subscription:
    """
    Subscription aggregate.

    Instances are immutable; SubscriptionLedger is the only component that
    produces new versions and persists them. The derived queries below are
    pure functions of the fields and the supplied instant.

    Grace period semantics (periodEnd = D, grace = g days):
    - in_grace_period: D < now <= D + g
    - is_expired:      now > D + g
    A subscription without period_end never expires.
    """

    id: Optional[int]
    user_id: int
    plan_id: int
    status: SubscriptionStatus
    tenant_id: Optional[int] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    grace_period_days: int = 7
    amount_paid: Optional[Money] = None
    payment_method: Optional[str] = None
    external_transaction_id: Optional[str] = None
    charge_attempts: int = 0
    last_charge_attempt_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    version: int = 0  # bumped by every conditional write

    def __post_init__(self) -> None:
        if not self.user_id or self.user_id <= 0:
            raise InvalidSubscriptionError("A subscription must belong to a user")
        if self.tenant_id is not None and self.tenant_id <= 0:
            raise InvalidSubscriptionError("tenant_id must be positive when provided")
        if not self.plan_id or self.plan_id <= 0:
            raise InvalidSubscriptionError("A subscription requires a plan")
        try:
            object.__setattr__(self, "status", SubscriptionStatus(self.status))
        except ValueError as e:
            raise InvalidSubscriptionError(f"Invalid subscription status: {self.status!r}") from e
        if self.period_start and self.period_end and self.period_end < self.period_start:
            raise InvalidSubscriptionError("period_end cannot be before period_start")
        if self.grace_period_days < 0:
            raise InvalidSubscriptionError("grace_period_days cannot be negative")
        if self.charge_attempts < 0:
            raise InvalidSubscriptionError("charge_attempts cannot be negative")

    # Derived queries

    def grace_period_end(self) -> Optional[datetime]:
        if self.period_end is None:
            return None
        return self.period_end + timedelta(days=self.grace_period_days)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.period_end is None:
            return False
        now = now or utcnow()
        return now > self.grace_period_end()

    def in_grace_period(self, now: Optional[datetime] = None) -> bool:
        if self.period_end is None:
            return False
        now = now or utcnow()
        return self.period_end < now <= self.grace_period_end()

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.status is SubscriptionStatus.ACTIVE and not self.is_expired(now)

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return self.status.is_usable and not self.is_expired(now)

    def days_remaining(self, now: Optional[datetime] = None) -> int:
        if self.period_end is None:
            return 0
        now = now or utcnow()
        if now >= self.period_end:
            return 0
        return (self.period_end - now).days

    def snapshot(self) -> dict:
        """Plain values for audit before/after snapshots"""
        return {
            "status": self.status.value,
            "plan_id": self.plan_id,
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "amount_paid": self.amount_paid.amount if self.amount_paid else None,
            "payment_method": self.payment_method,
            "external_transaction_id": self.external_transaction_id,
            "charge_attempts": self.charge_attempts,
            "last_charge_attempt_at": self.last_charge_attempt_at.isoformat() if self.last_charge_attempt_at else None,
        }


PAYMENT_LOG_PROCESSING = "processing"


@dataclass(frozen=True)
class PaymentLog:
    """
    Idempotency record: one row per charge attempt, keyed by idempotency key.

    status is "processing" from the moment the key is claimed until the
    gateway answers, then one of the PaymentStatus values.
    """

    idempotency_key: str
    subscription_id: int
    amount: Money
    status: str = PAYMENT_LOG_PROCESSING
    external_id: Optional[str] = None
    error_code: Optional[str] = None
    user_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def is_processing(self) -> bool:
        return self.status == PAYMENT_LOG_PROCESSING

    @property
    def payment_status(self) -> Optional[PaymentStatus]:
        return None if self.is_processing else PaymentStatus(self.status)

    def to_result(self) -> PaymentResult:
        """Replay the stored outcome of a finished attempt"""
        return PaymentResult(
            status=PaymentStatus(self.status),
            external_id=self.external_id or "",
            amount=self.amount,
            error_code=self.error_code,
            user_message=self.user_message,
            reference=self.idempotency_key,
        )
