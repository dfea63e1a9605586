"""
Scheduled maintenance sweeps, run by cron through the billing-sweeps command.

- resolve_stale_payments: payments left pending longer than
  pending_payment_timeout_minutes are re-queried at the processor. A final
  answer goes through normal reconciliation; a payment still pending is
  closed as failed (pending_timeout) and the subscription awaits payment.
- expire_overdue_subscriptions: active and awaiting_payment subscriptions
  past period_end + grace become expired.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from billing_gateway.config import Settings, settings
from billing_gateway.domain.events import DomainEventBus
from billing_gateway.domain.exceptions import DomainException, GatewayError, GatewayTransientError, PaymentNotFoundError
from billing_gateway.domain.ledger import EXPIRABLE_STATUSES
from billing_gateway.domain.models import PaymentResult, PaymentStatus, TenantContext, utcnow
from billing_gateway.infrastructure.database.repositories import SubscriptionRepository
from billing_gateway.infrastructure.database.session import SessionLocal
from billing_gateway.infrastructure.gateways.base import PaymentGateway
from billing_gateway.infrastructure.gateways.registry import get_configured_gateway
from billing_gateway.infrastructure.observability.logging import setup_logging
from billing_gateway.infrastructure.observability.metrics import sweep_counter
from billing_gateway.services.handlers import register_default_handlers
from billing_gateway.services.orchestrator import DUPLICATE, PaymentOrchestrator

logger = logging.getLogger(__name__)

PENDING_TIMEOUT_CODE = "pending_timeout"
PENDING_TIMEOUT_MESSAGE = "Payment was not confirmed in time. Please try again."


@dataclass
class SweepReport:
    examined: int = 0
    resolved: int = 0
    timed_out: int = 0
    expired: int = 0
    errors: int = 0


async def resolve_stale_payments(
    db: Session,
    gateway: PaymentGateway,
    bus: DomainEventBus,
    now: Optional[datetime] = None,
    config: Settings = settings,
) -> SweepReport:
    now = now or utcnow()
    orchestrator = PaymentOrchestrator(db, gateway, bus, config=config, clock=lambda: now)
    cutoff = now - timedelta(minutes=config.pending_payment_timeout_minutes)
    report = SweepReport()

    for log in orchestrator.payment_logs.list_stale_pending(cutoff):
        report.examined += 1
        try:
            result = await _current_status(orchestrator, log.external_id)
        except GatewayError as e:
            report.errors += 1
            sweep_counter.labels(sweep="stale_payments", result="error").inc()
            logger.error(
                "Could not refresh stale payment",
                extra={"idempotency_key": log.idempotency_key, "external_id": log.external_id, "error": str(e)},
            )
            continue

        if result is None or result.is_pending:
            result = PaymentResult(
                status=PaymentStatus.FAILED,
                external_id=log.external_id or "",
                amount=log.amount,
                error_code=PENDING_TIMEOUT_CODE,
                user_message=PENDING_TIMEOUT_MESSAGE,
                reference=log.idempotency_key,
            )
            outcome = "timed_out"
        else:
            outcome = "resolved"

        try:
            subscription = orchestrator.ledger.get(log.subscription_id)
            kind, _ = orchestrator.apply_result(
                log.idempotency_key,
                log.subscription_id,
                result,
                TenantContext.system(subscription.tenant_id),
                expected_statuses=(PaymentStatus.PENDING.value,),
                cycle=orchestrator.cycle_for_amount(subscription, result),
            )
        except DomainException as e:
            report.errors += 1
            sweep_counter.labels(sweep="stale_payments", result="error").inc()
            logger.error(
                "Stale payment could not be applied",
                extra={"idempotency_key": log.idempotency_key, "subscription_id": log.subscription_id, "error": str(e)},
            )
            continue

        if kind == DUPLICATE:
            outcome = "duplicate"
        elif outcome == "timed_out":
            report.timed_out += 1
        else:
            report.resolved += 1
        sweep_counter.labels(sweep="stale_payments", result=outcome).inc()
        logger.info(
            "Stale payment handled",
            extra={"idempotency_key": log.idempotency_key, "sweep_result": outcome, "payment_status": result.status.value},
        )

    return report


async def _current_status(orchestrator: PaymentOrchestrator, external_id: Optional[str]) -> Optional[PaymentResult]:
    if not external_id:
        return None
    try:
        return await orchestrator.retry.with_retry(
            lambda: orchestrator.gateway.get_payment_status(external_id),
            retry_on=(GatewayTransientError,),
            operation_name="get_payment_status",
        )
    except PaymentNotFoundError:
        logger.warning("Stale payment unknown to the processor", extra={"external_id": external_id})
        return None


def expire_overdue_subscriptions(
    db: Session,
    gateway: PaymentGateway,
    bus: DomainEventBus,
    now: Optional[datetime] = None,
) -> SweepReport:
    now = now or utcnow()
    orchestrator = PaymentOrchestrator(db, gateway, bus, clock=lambda: now)
    report = SweepReport()

    for subscription in SubscriptionRepository(db).list_by_status(EXPIRABLE_STATUSES):
        report.examined += 1
        if not subscription.is_expired(now):
            continue
        try:
            transition = orchestrator.ledger.expire(subscription, TenantContext.system(subscription.tenant_id), now=now)
            db.commit()
        except Exception:
            db.rollback()
            raise
        if transition.applied:
            report.expired += 1
            sweep_counter.labels(sweep="expire_subscriptions", result="expired").inc()
        else:
            sweep_counter.labels(sweep="expire_subscriptions", result="skipped").inc()

    logger.info("Expiration sweep finished", extra={"examined": report.examined, "expired": report.expired})
    return report


async def run_sweeps() -> SweepReport:
    gateway = get_configured_gateway()
    bus = register_default_handlers(DomainEventBus(), SessionLocal)
    db = SessionLocal()
    try:
        report = await resolve_stale_payments(db, gateway, bus)
        expired = expire_overdue_subscriptions(db, gateway, bus)
        report.expired = expired.expired
        report.examined += expired.examined
        return report
    finally:
        db.close()


def main() -> None:
    setup_logging(settings.log_level)
    report = asyncio.run(run_sweeps())
    logger.info(
        "Sweeps finished",
        extra={
            "examined": report.examined,
            "resolved": report.resolved,
            "timed_out": report.timed_out,
            "expired": report.expired,
            "errors": report.errors,
        },
    )


if __name__ == "__main__":
    main()
