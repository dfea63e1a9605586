"""Subscription endpoints: create, read, charge, cancel"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from billing_gateway.api.dependencies import get_orchestrator, get_request_id, get_tenant_context
from billing_gateway.api.v1.schemas import (
    CancelRequest,
    ChargeRequest,
    ChargeResponse,
    CreateSubscriptionRequest,
    SubscriptionResponse,
)
from billing_gateway.domain.exceptions import (
    ChargeNotAllowedError,
    ConcurrentUpdateError,
    GatewayRequestError,
    GatewayTransientError,
    InvalidMoneyError,
    InvalidPaymentRequestError,
    InvalidSubscriptionError,
    InvalidTransitionError,
    PlanNotFoundError,
    SubscriptionNotFoundError,
)
from billing_gateway.domain.models import BillingCycle, PaymentRequest, SubscriptionStatus, TenantContext, utcnow
from billing_gateway.domain.money import Money
from billing_gateway.infrastructure.database.session import get_db
from billing_gateway.services.orchestrator import PaymentOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/subscriptions", response_model=SubscriptionResponse, status_code=201)
def create_subscription(
    body: CreateSubscriptionRequest,
    request: Request,
    db: Session = Depends(get_db),
    context: TenantContext = Depends(get_tenant_context),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    request_id = get_request_id(request)
    try:
        plan = orchestrator.plans.get(body.plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan {body.plan_id} not found")
        subscription = orchestrator.ledger.create(
            plan,
            body.user_id,
            context,
            status=SubscriptionStatus(body.status),
            period_end=body.period_end,
        )
        db.commit()
        return SubscriptionResponse.build(subscription, plan, utcnow())

    except PlanNotFoundError as e:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(e))

    except (InvalidSubscriptionError, InvalidTransitionError) as e:
        db.rollback()
        logger.warning(f"Subscription rejected: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=422, detail=str(e))


@router.get("/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
def get_subscription(
    subscription_id: int,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    try:
        subscription = orchestrator.ledger.get(subscription_id)
        plan = orchestrator.plan_for(subscription)
    except (SubscriptionNotFoundError, PlanNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    return SubscriptionResponse.build(subscription, plan, utcnow())


@router.post("/subscriptions/{subscription_id}/charge", response_model=ChargeResponse)
async def charge_subscription(
    subscription_id: int,
    body: ChargeRequest,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """
    Charge one billing period.

    Repeating the call for the same period returns the stored outcome with
    outcome "duplicate" instead of charging again. Declined payments are a
    200 with outcome "rejected" and a message safe to show the payer.
    """
    request_id = get_request_id(request)
    try:
        payment_request = PaymentRequest(
            amount=Money(body.amount_cents, body.currency),
            description=body.description,
            payer_email=body.payer_email,
            payment_method=body.payment_method,
            payment_token=body.payment_token,
            installments=body.installments,
            payer_tax_id=body.payer_tax_id,
            reference=body.reference,
            metadata={"request_id": request_id},
        )
        outcome = await orchestrator.charge(
            subscription_id,
            payment_request,
            context,
            billing_period=body.billing_period,
            idempotency_key=body.idempotency_key,
            cycle=BillingCycle(body.cycle),
        )
        plan = orchestrator.plan_for(outcome.subscription)

    except (InvalidPaymentRequestError, InvalidMoneyError) as e:
        raise HTTPException(status_code=422, detail=str(e))

    except (SubscriptionNotFoundError, PlanNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))

    except (ChargeNotAllowedError, ConcurrentUpdateError, InvalidTransitionError) as e:
        logger.warning(f"Charge refused: {e}", extra={"request_id": request_id, "subscription_id": subscription_id})
        raise HTTPException(status_code=409, detail=str(e))

    except GatewayTransientError as e:
        logger.error(f"Payment processor unavailable: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=503, detail="Payment processor unavailable, try again later")

    except GatewayRequestError as e:
        logger.error(f"Payment processor refused request: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=502, detail="Payment could not be submitted")

    return ChargeResponse(
        outcome=outcome.kind,
        payment_status=outcome.result.status.value,
        external_id=outcome.result.external_id or None,
        user_message=outcome.user_message,
        idempotency_key=outcome.idempotency_key,
        subscription=SubscriptionResponse.build(outcome.subscription, plan, utcnow()),
    )


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionResponse)
def cancel_subscription(
    subscription_id: int,
    request: Request,
    body: CancelRequest | None = None,
    db: Session = Depends(get_db),
    context: TenantContext = Depends(get_tenant_context),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Cancelling an already cancelled subscription returns it unchanged"""
    request_id = get_request_id(request)
    try:
        subscription = orchestrator.ledger.get(subscription_id)
        transition = orchestrator.ledger.cancel(subscription, context, reason=body.reason if body else None)
        db.commit()
        plan = orchestrator.plan_for(transition.after)

    except (SubscriptionNotFoundError, PlanNotFoundError) as e:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(e))

    except ConcurrentUpdateError as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))

    except Exception as e:
        db.rollback()
        logger.error(f"Cancellation failed: {e}", extra={"request_id": request_id, "subscription_id": subscription_id})
        raise

    return SubscriptionResponse.build(transition.after, plan, utcnow())
