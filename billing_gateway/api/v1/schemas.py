"""Pydantic schemas for API request/response validation"""

from datetime import date, datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from billing_gateway.domain.models import PaymentMethod, Plan, Subscription


class CreateSubscriptionRequest(BaseModel):
    """Request body for POST /v1/subscriptions"""

    user_id: int = Field(..., gt=0, description="Owning user")
    plan_id: int = Field(..., gt=0)
    status: Literal["trial", "pending"] = "trial"
    period_end: Optional[datetime] = Field(default=None, description="End of the trial period, if any")

    @field_validator("period_end")
    @classmethod
    def assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class ChargeRequest(BaseModel):
    """Request body for POST /v1/subscriptions/{id}/charge"""

    amount_cents: int = Field(..., gt=0, description="Amount in minor units; must match the plan price")
    currency: str = Field(default="BRL", min_length=3, max_length=3)
    description: str = Field(..., min_length=1, max_length=255)
    payer_email: str
    payment_method: PaymentMethod
    payment_token: Optional[str] = None
    installments: int = Field(default=1, ge=1, le=12)
    payer_tax_id: Optional[str] = None
    reference: Optional[str] = None
    cycle: Literal["monthly", "annual"] = "monthly"
    billing_period: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}$", description="YYYY-MM")
    idempotency_key: Optional[str] = Field(default=None, max_length=255)


class CancelRequest(BaseModel):
    """Request body for POST /v1/subscriptions/{id}/cancel"""

    reason: Optional[str] = Field(default=None, max_length=500)


class PlanSummary(BaseModel):
    id: int
    name: str
    monthly_price: int
    annual_price: Optional[int] = None


class SubscriptionResponse(BaseModel):
    """Read contract consumed by the presentation layer"""

    id: int
    plan_id: int
    status: str
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    amount_paid: Optional[int] = None
    payment_method: Optional[str] = None
    days_remaining: int
    plan: PlanSummary

    @classmethod
    def build(cls, subscription: Subscription, plan: Plan, now: datetime) -> "SubscriptionResponse":
        return cls(
            id=subscription.id,
            plan_id=subscription.plan_id,
            status=subscription.status.value,
            period_start=subscription.period_start.date() if subscription.period_start else None,
            period_end=subscription.period_end.date() if subscription.period_end else None,
            amount_paid=subscription.amount_paid.amount if subscription.amount_paid else None,
            payment_method=subscription.payment_method,
            days_remaining=subscription.days_remaining(now),
            plan=PlanSummary(
                id=plan.id,
                name=plan.name,
                monthly_price=plan.monthly_price.amount,
                annual_price=plan.annual_price.amount if plan.annual_price else None,
            ),
        )


class ChargeResponse(BaseModel):
    """Response for POST /v1/subscriptions/{id}/charge"""

    outcome: str
    payment_status: str
    external_id: Optional[str] = None
    user_message: Optional[str] = None
    idempotency_key: str
    subscription: SubscriptionResponse


class WebhookResponse(BaseModel):
    """Response for POST /v1/webhooks/payments"""

    outcome: str
    external_id: Optional[str] = None
