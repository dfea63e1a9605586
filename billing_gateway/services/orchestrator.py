"""
Payment orchestration: charges and webhook reconciliation.

Charge flow:
1. Resolve the idempotency key for (subscription, billing period)
2. Replay the stored outcome if that key already finished
3. Refuse charges the subscription cannot take (terminal, attempt limit, wrong amount)
4. Claim the key, then call the gateway through RetryExecutor
5. Finalize the payment log, move the ledger, audit payment_processed
6. Commit, then publish PaymentProcessed / PaymentRejected

Webhook flow:
1. Verify the signature (failure is a security event, nothing else happens)
2. Parse the notification into a PaymentResult
3. Find the payment log (external id, then reference) or the subscription
4. Apply the same finalize / ledger / audit / event path as a charge

Steps 5 and 4 are guarded by a compare-and-set on the payment log, so a
duplicate delivery or a racing charge applies the outcome exactly once.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, Tuple

from sqlalchemy.orm import Session

from billing_gateway.config import Settings, settings
from billing_gateway.domain.audit import AuditAction, AuditLogEntry, AuditRecorder
from billing_gateway.domain.events import DomainEventBus, PaymentProcessed, PaymentRejected
from billing_gateway.domain.exceptions import (
    ChargeNotAllowedError,
    GatewayTransientError,
    PaymentNotFoundError,
    PlanNotFoundError,
)
from billing_gateway.domain.ledger import LedgerTransition, SubscriptionLedger
from billing_gateway.domain.models import (
    PAYMENT_LOG_PROCESSING,
    BillingCycle,
    PaymentLog,
    PaymentRequest,
    PaymentResult,
    PaymentStatus,
    Plan,
    Subscription,
    SubscriptionStatus,
    TenantContext,
    utcnow,
)
from billing_gateway.infrastructure.database.repositories import (
    AuditLogRepository,
    PaymentLogRepository,
    PlanRepository,
    SubscriptionRepository,
)
from billing_gateway.infrastructure.gateways.base import PaymentGateway
from billing_gateway.infrastructure.observability.logging import log_charge, log_security_event
from billing_gateway.infrastructure.observability.metrics import record_charge, record_webhook
from billing_gateway.infrastructure.retry import RetryExecutor

logger = logging.getLogger(__name__)

PAYMENT_MODEL_TYPE = "Payment"
OPEN_LOG_STATUSES = (PAYMENT_LOG_PROCESSING, PaymentStatus.PENDING.value)

# Charge outcomes
APPROVED = "approved"
REJECTED = "rejected"
PENDING = "pending"
DUPLICATE = "duplicate"

# Reconciliation outcomes
APPLIED = "applied"
IGNORED = "ignored"
INVALID_SIGNATURE = "invalid_signature"
UNKNOWN_SUBJECT = "unknown_subject"
STILL_PENDING = "still_pending"


@dataclass(frozen=True)
class ChargeOutcome:
    kind: str
    result: PaymentResult
    subscription: Subscription
    idempotency_key: str

    @property
    def user_message(self) -> Optional[str]:
        return self.result.user_message


@dataclass(frozen=True)
class ReconciliationOutcome:
    kind: str
    result: Optional[PaymentResult] = None
    subscription: Optional[Subscription] = None


def billing_period_for(now: datetime) -> str:
    return now.strftime("%Y-%m")


def build_idempotency_key(subscription: Subscription, billing_period: str) -> str:
    """
    One key per subscription and billing period. After a rejection the
    attempt number is appended so the payer can retry with another card.
    """
    key = f"sub_{subscription.id}_{billing_period}"
    if subscription.charge_attempts:
        key = f"{key}_retry{subscription.charge_attempts}"
    return key


class PaymentOrchestrator:
    """Top-level entry point for charging subscriptions and reconciling processor notifications"""

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        bus: DomainEventBus,
        retry: Optional[RetryExecutor] = None,
        config: Settings = settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.gateway = gateway
        self.bus = bus
        self.retry = retry or RetryExecutor()
        self.config = config
        self.clock = clock
        self.plans = PlanRepository(db)
        self.payment_logs = PaymentLogRepository(db)
        self.recorder = AuditRecorder(AuditLogRepository(db))
        self.ledger = SubscriptionLedger(SubscriptionRepository(db), self.recorder, bus, clock=clock)

    async def charge(
        self,
        subscription_id: int,
        request: PaymentRequest,
        context: TenantContext,
        billing_period: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        cycle: BillingCycle = BillingCycle.MONTHLY,
    ) -> ChargeOutcome:
        """
        Charge a subscription once for a billing period.

        Raises:
            SubscriptionNotFoundError / PlanNotFoundError: unknown ids
            ChargeNotAllowedError: refused before reaching the gateway
            GatewayTransientError: retries exhausted; the key stays claimed
                and the next call with it asks the processor again
            GatewayRequestError: processor refused the request
        """
        start_time = time.time()
        subscription = self.ledger.get(subscription_id)
        key = idempotency_key or build_idempotency_key(subscription, billing_period or billing_period_for(self.clock()))

        existing = self.payment_logs.get(key)
        if existing is not None and not existing.is_processing:
            return self._replay(existing, subscription, context, start_time)

        plan = self.plan_for(subscription)
        self._check_chargeable(subscription, plan, request, BillingCycle(cycle))

        log, created = self.payment_logs.claim(key, subscription.id, request.amount)
        if not created and not log.is_processing:
            return self._replay(log, subscription, context, start_time)
        if not created:
            logger.info(
                "Resuming in-flight charge, processor deduplicates by key",
                extra={"subscription_id": subscription.id, "idempotency_key": key},
            )

        result = await self.retry.with_retry(
            lambda: self.gateway.process_payment(request, key),
            retry_on=(GatewayTransientError,),
            operation_name="process_payment",
        )

        kind, subscription = self.apply_result(
            key,
            subscription.id,
            result,
            context,
            expected_statuses=(PAYMENT_LOG_PROCESSING,),
            cycle=BillingCycle(cycle),
        )
        if kind in (APPLIED, IGNORED):
            kind = _charge_kind(result)

        duration_ms = (time.time() - start_time) * 1000
        record_charge(kind)
        log_charge(subscription.id, key, kind, result.external_id, duration_ms, tenant_id=context.tenant_id)
        return ChargeOutcome(kind=kind, result=result, subscription=subscription, idempotency_key=key)

    async def reconcile_webhook(
        self,
        payload: bytes,
        signature: str,
        context: Optional[TenantContext] = None,
    ) -> ReconciliationOutcome:
        """
        Apply a processor notification.

        Signature failures and notifications for payments this service does
        not know are outcomes, not exceptions. A malformed payload raises
        InvalidWebhookPayloadError; transient gateway failures propagate so the
        processor redelivers.
        """
        if not self.gateway.validate_webhook_signature(payload, signature or ""):
            log_security_event(
                "Webhook signature verification failed",
                gateway=self.gateway.name,
                payload_bytes=len(payload),
                ip_address=context.ip_address if context else None,
            )
            return self._webhook_outcome(ReconciliationOutcome(INVALID_SIGNATURE))

        try:
            result = await self.retry.with_retry(
                lambda: self.gateway.process_webhook(payload),
                retry_on=(GatewayTransientError,),
                operation_name="process_webhook",
            )
        except PaymentNotFoundError:
            logger.warning("Webhook references a payment unknown to the processor", extra={"gateway": self.gateway.name})
            return self._webhook_outcome(ReconciliationOutcome(UNKNOWN_SUBJECT))

        log = self._find_payment_log(result)
        if log is None:
            logger.warning(
                "Webhook for unknown payment ignored",
                extra={"external_id": result.external_id, "reference": result.reference},
            )
            return self._webhook_outcome(ReconciliationOutcome(UNKNOWN_SUBJECT, result=result))

        subscription = self.ledger.get(log.subscription_id)
        context = self._context_for(context, subscription)

        if log.status == result.status.value:
            kind = STILL_PENDING if result.is_pending else DUPLICATE
            logger.info(
                "Webhook already reconciled",
                extra={"external_id": result.external_id, "idempotency_key": log.idempotency_key, "payment_status": log.status},
            )
            return self._webhook_outcome(ReconciliationOutcome(kind, result=result, subscription=subscription))

        if result.is_pending and log.status not in OPEN_LOG_STATUSES:
            logger.warning(
                "Pending notification for a payment already final, ignored",
                extra={"external_id": result.external_id, "idempotency_key": log.idempotency_key, "payment_status": log.status},
            )
            return self._webhook_outcome(ReconciliationOutcome(DUPLICATE, result=result, subscription=subscription))

        expected = OPEN_LOG_STATUSES if log.status in OPEN_LOG_STATUSES else (log.status,)
        kind, subscription = self.apply_result(
            log.idempotency_key,
            log.subscription_id,
            result,
            context,
            expected_statuses=expected,
            cycle=self.cycle_for_amount(subscription, result),
        )
        if kind == PENDING:
            kind = STILL_PENDING
        return self._webhook_outcome(ReconciliationOutcome(kind, result=result, subscription=subscription))

    def apply_result(
        self,
        idempotency_key: str,
        subscription_id: int,
        result: PaymentResult,
        context: TenantContext,
        expected_statuses: Iterable[str] = OPEN_LOG_STATUSES,
        cycle: BillingCycle = BillingCycle.MONTHLY,
    ) -> Tuple[str, Subscription]:
        """
        Finalize a payment log and apply its outcome to the ledger.

        Returns (kind, subscription) where kind is one of pending, applied,
        ignored or duplicate. Only the writer whose finalize matched records
        the audit entry, and the event is published only when the ledger
        actually moved. A ledger that already carries this payment reports
        duplicate; one that cannot take it reports ignored.
        """
        try:
            if not self.payment_logs.finalize(idempotency_key, result, expected_statuses):
                self.db.rollback()
                logger.info(
                    "Payment outcome already recorded by another writer",
                    extra={"idempotency_key": idempotency_key, "external_id": result.external_id},
                )
                return DUPLICATE, self.ledger.get(subscription_id)

            subscription = self.ledger.get(subscription_id)
            if result.is_pending:
                self.db.commit()
                return PENDING, subscription

            transition = self._transition_for(subscription, result, context, cycle)
            after = transition.after if transition else subscription
            if transition is not None and not transition.applied:
                transition = None
            self._audit_payment(after, result, idempotency_key, context, transition)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if transition is None:
            if result.is_approved and result.external_id and after.external_transaction_id == result.external_id:
                return DUPLICATE, after
            return IGNORED, after

        if result.is_approved:
            self.bus.publish(
                PaymentProcessed(
                    aggregate_id=after.id,
                    external_id=result.external_id,
                    amount=result.amount.amount,
                    currency=result.amount.currency,
                    idempotency_key=idempotency_key,
                    period_end=after.period_end,
                    tenant_id=after.tenant_id,
                )
            )
        else:
            self.bus.publish(
                PaymentRejected(
                    aggregate_id=after.id,
                    reason=result.user_message or "Payment declined",
                    error_code=result.error_code,
                    charge_attempts=after.charge_attempts,
                    external_id=result.external_id or None,
                    tenant_id=after.tenant_id,
                )
            )
        return APPLIED, after

    def next_period_end(self, subscription: Subscription, cycle: BillingCycle) -> datetime:
        """Renewals extend an unexpired active period; anything else starts from now"""
        now = self.clock()
        days = self.config.annual_cycle_days if cycle is BillingCycle.ANNUAL else self.config.monthly_cycle_days
        base = now
        if subscription.status is SubscriptionStatus.ACTIVE and subscription.period_end and subscription.period_end > now:
            base = subscription.period_end
        return base + timedelta(days=days)

    def _transition_for(
        self,
        subscription: Subscription,
        result: PaymentResult,
        context: TenantContext,
        cycle: BillingCycle,
    ) -> Optional[LedgerTransition]:
        if subscription.status.is_terminal or (
            not result.is_approved and subscription.status is SubscriptionStatus.SUSPENDED
        ):
            logger.warning(
                "Payment outcome not applied to subscription",
                extra={
                    "subscription_id": subscription.id,
                    "subscription_status": subscription.status.value,
                    "payment_status": result.status.value,
                    "external_id": result.external_id,
                },
            )
            return None

        if result.is_approved:
            return self.ledger.record_approval(
                subscription,
                context,
                period_end=self.next_period_end(subscription, cycle),
                amount_paid=result.amount,
                payment_method=result.payment_method,
                external_id=result.external_id,
            )
        return self.ledger.record_rejection(subscription, context)

    def _audit_payment(
        self,
        subscription: Subscription,
        result: PaymentResult,
        idempotency_key: str,
        context: TenantContext,
        transition: Optional[LedgerTransition],
    ) -> None:
        new_values = {
            "status": result.status.value,
            "external_id": result.external_id,
            "amount": result.amount.amount,
            "currency": result.amount.currency,
            "idempotency_key": idempotency_key,
            "subscription_id": subscription.id,
            "subscription_status": subscription.status.value,
            "charge_attempts": subscription.charge_attempts,
        }
        if not result.is_approved:
            new_values["error_code"] = result.error_code
            new_values["user_message"] = result.user_message

        if transition is None:
            description = f"Payment {result.status.value} for {subscription.status.value} subscription, ledger unchanged"
        elif result.is_approved:
            description = f"Payment approved: {result.amount}"
        else:
            description = f"Payment {result.status.value}: {result.error_code or 'no detail'}"

        self.recorder.record(
            AuditLogEntry.create(
                AuditAction.PAYMENT_PROCESSED,
                PAYMENT_MODEL_TYPE,
                subscription.id,
                context,
                old_values={"subscription_status": transition.before.status.value} if transition else None,
                new_values=new_values,
                description=description,
            )
        )

    def _replay(self, log: PaymentLog, subscription: Subscription, context: TenantContext, start_time: float) -> ChargeOutcome:
        logger.info(
            "Duplicate charge request, replaying stored outcome",
            extra={"subscription_id": subscription.id, "idempotency_key": log.idempotency_key, "payment_status": log.status},
        )
        duration_ms = (time.time() - start_time) * 1000
        record_charge(DUPLICATE)
        log_charge(subscription.id, log.idempotency_key, DUPLICATE, log.external_id, duration_ms, tenant_id=context.tenant_id)
        return ChargeOutcome(kind=DUPLICATE, result=log.to_result(), subscription=subscription, idempotency_key=log.idempotency_key)

    def plan_for(self, subscription: Subscription) -> Plan:
        plan = self.plans.get(subscription.plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan {subscription.plan_id} not found")
        return plan

    def _check_chargeable(self, subscription: Subscription, plan: Plan, request: PaymentRequest, cycle: BillingCycle) -> None:
        if subscription.status.is_terminal:
            raise ChargeNotAllowedError(f"Subscription {subscription.id} is {subscription.status.value}")
        if subscription.charge_attempts >= self.config.max_charge_attempts:
            raise ChargeNotAllowedError(
                f"Subscription {subscription.id} reached the limit of {self.config.max_charge_attempts} failed charges"
            )
        if subscription.charge_attempts and subscription.last_charge_attempt_at:
            retry_at = subscription.last_charge_attempt_at + timedelta(hours=self.config.charge_retry_interval_hours)
            if self.clock() < retry_at:
                raise ChargeNotAllowedError(
                    f"Subscription {subscription.id} can be charged again after {retry_at.isoformat()}"
                )
        expected = plan.price_for(cycle)
        if request.amount != expected:
            raise ChargeNotAllowedError(
                f"Charge amount {request.amount} does not match the {cycle.value} price {expected} of plan {plan.name}"
            )

    def _find_payment_log(self, result: PaymentResult) -> Optional[PaymentLog]:
        if result.external_id:
            log = self.payment_logs.find_by_external_id(result.external_id)
            if log is not None:
                return log
        if result.reference:
            log = self.payment_logs.get(result.reference)
            if log is not None:
                return log
        if result.external_id:
            subscription = self.ledger.subscriptions.find_by_external_transaction_id(result.external_id)
            if subscription is not None:
                # Payment recorded without a log row (created before payment logs existed)
                log, _ = self.payment_logs.claim(f"ext_{result.external_id}", subscription.id, result.amount)
                if subscription.external_transaction_id == result.external_id and subscription.status is SubscriptionStatus.ACTIVE:
                    if log.is_processing and result.is_approved:
                        self.payment_logs.finalize(log.idempotency_key, result, (PAYMENT_LOG_PROCESSING,))
                        self.db.commit()
                        return self.payment_logs.get(log.idempotency_key)
                return log
        return None

    def cycle_for_amount(self, subscription: Subscription, result: PaymentResult) -> BillingCycle:
        plan = self.plan_for(subscription)
        if plan.annual_price is not None and result.amount == plan.annual_price:
            return BillingCycle.ANNUAL
        return BillingCycle.MONTHLY

    def _context_for(self, context: Optional[TenantContext], subscription: Subscription) -> TenantContext:
        if context is None:
            return TenantContext.system(subscription.tenant_id)
        if context.tenant_id is None:
            return TenantContext(
                user_id=context.user_id,
                tenant_id=subscription.tenant_id,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
            )
        return context

    def _webhook_outcome(self, outcome: ReconciliationOutcome) -> ReconciliationOutcome:
        record_webhook(outcome.kind)
        logger.info(
            "Webhook processed",
            extra={
                "gateway": self.gateway.name,
                "webhook_outcome": outcome.kind,
                "external_id": outcome.result.external_id if outcome.result else None,
                "subscription_id": outcome.subscription.id if outcome.subscription else None,
            },
        )
        return outcome


def _charge_kind(result: PaymentResult) -> str:
    if result.is_approved:
        return APPROVED
    if result.is_pending:
        return PENDING
    return REJECTED
