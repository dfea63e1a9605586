"""Side-effect handlers wired onto the event bus at startup"""

import logging
from typing import Callable

from sqlalchemy.orm import Session

from billing_gateway.domain.audit import AuditAction, AuditLogEntry, AuditRecorder
from billing_gateway.domain.events import (
    CommissionGenerated,
    DomainEventBus,
    PaymentProcessed,
    PaymentRejected,
    SubscriptionCreated,
)
from billing_gateway.domain.models import TenantContext
from billing_gateway.infrastructure.database.repositories import AuditLogRepository

logger = logging.getLogger(__name__)


def audit_commission(session_factory: Callable[[], Session]) -> Callable[[CommissionGenerated], None]:
    """Commissions are produced outside this service; their audit entry is written on receipt"""

    def handle(event: CommissionGenerated) -> None:
        db = session_factory()
        try:
            AuditRecorder(AuditLogRepository(db)).record(
                AuditLogEntry.create(
                    AuditAction.COMMISSION_GENERATED,
                    "Commission",
                    event.aggregate_id,
                    TenantContext.system(event.tenant_id),
                    new_values={
                        "affiliate_id": event.affiliate_id,
                        "subscription_id": event.subscription_id,
                        "amount": event.amount,
                        "currency": event.currency,
                    },
                    description=f"Commission generated for affiliate {event.affiliate_id}",
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    return handle


def notify_payment_processed(event: PaymentProcessed) -> None:
    logger.info(
        "Payment confirmation queued",
        extra={
            "subscription_id": event.aggregate_id,
            "external_id": event.external_id,
            "amount_cents": event.amount,
            "period_end": event.period_end.isoformat() if event.period_end else None,
        },
    )


def notify_payment_rejected(event: PaymentRejected) -> None:
    logger.info(
        "Payment failure notice queued",
        extra={
            "subscription_id": event.aggregate_id,
            "error_code": event.error_code,
            "charge_attempts": event.charge_attempts,
        },
    )


def notify_subscription_created(event: SubscriptionCreated) -> None:
    logger.info(
        "Welcome notice queued",
        extra={"subscription_id": event.aggregate_id, "plan_id": event.plan_id, "status": event.status},
    )


def register_default_handlers(bus: DomainEventBus, session_factory: Callable[[], Session]) -> DomainEventBus:
    bus.subscribe(SubscriptionCreated, notify_subscription_created)
    bus.subscribe(PaymentProcessed, notify_payment_processed)
    bus.subscribe(PaymentRejected, notify_payment_rejected)
    bus.subscribe(CommissionGenerated, audit_commission(session_factory))
    return bus
