"""POST /v1/webhooks/payments - processor notifications"""

import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from billing_gateway.api.dependencies import get_orchestrator, get_request_id
from billing_gateway.api.v1.schemas import WebhookResponse
from billing_gateway.domain.exceptions import (
    ConcurrentUpdateError,
    GatewayTransientError,
    InvalidWebhookPayloadError,
    SubscriptionNotFoundError,
)
from billing_gateway.domain.models import TenantContext
from billing_gateway.services.orchestrator import INVALID_SIGNATURE, PaymentOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks/payments", response_model=WebhookResponse)
async def payment_webhook(
    request: Request,
    x_signature: str = Header(default=""),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """
    Reconcile a processor notification.

    The signature is checked over the raw body before anything else. Any 2xx
    tells the processor to stop redelivering, so unknown payments and
    duplicates still answer 200.
    """
    request_id = get_request_id(request)
    payload = await request.body()
    context = TenantContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )

    try:
        outcome = await orchestrator.reconcile_webhook(payload, x_signature, context)

    except InvalidWebhookPayloadError as e:
        logger.warning(f"Malformed webhook: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=400, detail="Malformed notification")

    except SubscriptionNotFoundError as e:
        logger.error(f"Payment log references a missing subscription: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=404, detail=str(e))

    except GatewayTransientError as e:
        logger.error(f"Processor unavailable during reconciliation: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=503, detail="Processor unavailable, redeliver later")

    except ConcurrentUpdateError as e:
        logger.warning(f"Subscription contention during reconciliation: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=503, detail="Subscription busy, redeliver later")

    if outcome.kind == INVALID_SIGNATURE:
        raise HTTPException(status_code=401, detail="Invalid signature")

    return WebhookResponse(
        outcome=outcome.kind,
        external_id=outcome.result.external_id if outcome.result else None,
    )
