"""
Subscription state machine.

SubscriptionLedger is the only writer of subscription rows. Each transition
reads the current version, builds the next immutable Subscription and
persists it with a compare-and-set on (id, status, version). A lost race
re-reads the row and retries while the transition can still start from it.
It is reported as not applied, with nothing audited, only when the row
already carries the effect or has left the transition's source states.
Contention that outlasts the retries raises ConcurrentUpdateError.

Transitions:
- create:           -> trial | pending (caller decides)
- record_approval:  any non-terminal -> active
- record_rejection: active | trial | pending | awaiting_payment -> awaiting_payment
- cancel:           any -> cancelled (no-op when already cancelled)
- expire:           active | awaiting_payment, past grace -> expired

The ledger writes to the session but never commits; the caller owns the
transaction boundary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Optional

from billing_gateway.config import settings
from billing_gateway.domain.audit import AuditAction, AuditLogEntry, AuditRecorder
from billing_gateway.domain.events import DomainEventBus, SubscriptionCreated
from billing_gateway.domain.exceptions import (
    ConcurrentUpdateError,
    InvalidSubscriptionError,
    InvalidTransitionError,
    SubscriptionNotFoundError,
)
from billing_gateway.domain.models import Plan, Subscription, SubscriptionStatus, TenantContext, utcnow
from billing_gateway.domain.money import Money
from billing_gateway.infrastructure.database.repositories import SubscriptionRepository

logger = logging.getLogger(__name__)

MODEL_TYPE = "Subscription"

INITIAL_STATUSES = (SubscriptionStatus.TRIAL, SubscriptionStatus.PENDING)
REJECTABLE_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIAL,
    SubscriptionStatus.PENDING,
    SubscriptionStatus.AWAITING_PAYMENT,
)
EXPIRABLE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.AWAITING_PAYMENT)
MAX_WRITE_ATTEMPTS = 3


@dataclass(frozen=True)
class LedgerTransition:
    """Result of a ledger operation; applied is False when nothing was written"""

    before: Subscription
    after: Subscription
    applied: bool

    @property
    def status_changed(self) -> bool:
        return self.applied and self.before.status is not self.after.status


class SubscriptionLedger:
    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        recorder: AuditRecorder,
        bus: DomainEventBus,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.subscriptions = subscriptions
        self.recorder = recorder
        self.bus = bus
        self.clock = clock

    def get(self, subscription_id: int) -> Subscription:
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
        return subscription

    def create(
        self,
        plan: Plan,
        user_id: int,
        context: TenantContext,
        status: SubscriptionStatus = SubscriptionStatus.TRIAL,
        period_end: Optional[datetime] = None,
        grace_period_days: Optional[int] = None,
    ) -> Subscription:
        status = SubscriptionStatus(status)
        if status not in INITIAL_STATUSES:
            raise InvalidTransitionError(f"Subscriptions start as trial or pending, not {status.value}")
        if not plan.active:
            raise InvalidSubscriptionError(f"Plan {plan.id} is not available for new subscriptions")

        now = self.clock()
        subscription = self.subscriptions.add(
            Subscription(
                id=None,
                user_id=user_id,
                tenant_id=context.tenant_id,
                plan_id=plan.id,
                status=status,
                period_start=now if period_end else None,
                period_end=period_end,
                grace_period_days=grace_period_days
                if grace_period_days is not None
                else settings.default_grace_period_days,
                created_at=now,
            )
        )
        self.recorder.record(
            AuditLogEntry.create(
                AuditAction.CREATED,
                MODEL_TYPE,
                subscription.id,
                context,
                new_values=subscription.snapshot(),
                description=f"Subscription created on plan {plan.name} as {status.value}",
            )
        )
        self.bus.publish(
            SubscriptionCreated(
                aggregate_id=subscription.id,
                plan_id=plan.id,
                status=status.value,
                user_id=user_id,
                tenant_id=subscription.tenant_id,
            )
        )
        return subscription

    def record_approval(
        self,
        subscription: Subscription,
        context: TenantContext,
        period_end: datetime,
        amount_paid: Money,
        payment_method: Optional[str],
        external_id: Optional[str],
    ) -> LedgerTransition:
        if subscription.status.is_terminal:
            raise InvalidTransitionError(
                f"Cannot record a payment on {subscription.status.value} subscription {subscription.id}"
            )

        now = self.clock()

        def activate(current: Subscription) -> Subscription:
            renewing = current.status is SubscriptionStatus.ACTIVE and current.period_start is not None
            return replace(
                current,
                status=SubscriptionStatus.ACTIVE,
                period_start=current.period_start if renewing else now,
                period_end=period_end,
                amount_paid=amount_paid,
                payment_method=payment_method,
                external_transaction_id=external_id,
                charge_attempts=0,
            )

        transition = self._write(
            subscription,
            activate,
            can_apply=lambda current: not current.status.is_terminal,
            already_applied=lambda current: bool(external_id)
            and current.status is SubscriptionStatus.ACTIVE
            and current.external_transaction_id == external_id,
        )
        if transition.status_changed:
            self._audit(
                AuditAction.SUBSCRIPTION_ACTIVATED,
                transition,
                context,
                f"Subscription activated until {period_end.date().isoformat()}",
            )
        return transition

    def record_rejection(self, subscription: Subscription, context: TenantContext) -> LedgerTransition:
        if subscription.status not in REJECTABLE_STATUSES:
            raise InvalidTransitionError(
                f"Cannot record a rejected payment on {subscription.status.value} subscription {subscription.id}"
            )

        now = self.clock()
        transition = self._write(
            subscription,
            lambda current: replace(
                current,
                status=SubscriptionStatus.AWAITING_PAYMENT,
                charge_attempts=current.charge_attempts + 1,
                last_charge_attempt_at=now,
            ),
            can_apply=lambda current: current.status in REJECTABLE_STATUSES,
            # Each rejection is counted once upstream by the payment log
            already_applied=lambda current: False,
        )
        if transition.status_changed:
            self._audit(
                AuditAction.STATUS_CHANGED,
                transition,
                context,
                f"Payment rejected, awaiting payment (attempt {transition.after.charge_attempts})",
            )
        return transition

    def cancel(self, subscription: Subscription, context: TenantContext, reason: Optional[str] = None) -> LedgerTransition:
        if subscription.status is SubscriptionStatus.CANCELLED:
            return LedgerTransition(subscription, subscription, applied=False)

        now = self.clock()
        transition = self._write(
            subscription,
            lambda current: replace(current, status=SubscriptionStatus.CANCELLED, cancelled_at=now),
            can_apply=lambda current: True,
            already_applied=lambda current: current.status is SubscriptionStatus.CANCELLED,
        )
        if transition.applied:
            self._audit(
                AuditAction.SUBSCRIPTION_CANCELLED,
                transition,
                context,
                f"Subscription cancelled: {reason}" if reason else "Subscription cancelled",
            )
        return transition

    def expire(self, subscription: Subscription, context: TenantContext, now: Optional[datetime] = None) -> LedgerTransition:
        now = now or self.clock()
        if subscription.status not in EXPIRABLE_STATUSES:
            raise InvalidTransitionError(f"Cannot expire {subscription.status.value} subscription {subscription.id}")
        if not subscription.is_expired(now):
            raise InvalidTransitionError(f"Subscription {subscription.id} is still within its period or grace window")

        transition = self._write(
            subscription,
            lambda current: replace(current, status=SubscriptionStatus.EXPIRED),
            can_apply=lambda current: current.status in EXPIRABLE_STATUSES and current.is_expired(now),
            already_applied=lambda current: current.status is SubscriptionStatus.EXPIRED,
        )
        if transition.applied:
            self._audit(AuditAction.STATUS_CHANGED, transition, context, "Subscription expired after grace period")
        return transition

    def _write(
        self,
        subscription: Subscription,
        build: Callable[[Subscription], Subscription],
        can_apply: Callable[[Subscription], bool],
        already_applied: Callable[[Subscription], bool],
    ) -> LedgerTransition:
        """
        Compare-and-set loop. A lost race re-reads the row; the transition is
        rebuilt on the fresh row while it is still a valid source, and is only
        reported as not applied when its effect is already present or the row
        has moved somewhere the transition cannot start from.
        """
        current = subscription
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            after = build(current)
            if self.subscriptions.compare_and_set(after, current.status, current.version):
                return LedgerTransition(current, replace(after, version=current.version + 1), applied=True)

            current = self.get(subscription.id)
            extra = {
                "subscription_id": subscription.id,
                "attempt": attempt,
                "current_status": current.status.value,
                "attempted_status": after.status.value,
            }
            if already_applied(current):
                logger.info("Concurrent writer already applied the transition", extra=extra)
                return LedgerTransition(current, current, applied=False)
            if not can_apply(current):
                logger.warning("Subscription moved to a status the transition cannot start from", extra=extra)
                return LedgerTransition(current, current, applied=False)
            logger.info("Concurrent subscription update, retrying transition on the current row", extra=extra)

        raise ConcurrentUpdateError(
            f"Subscription {subscription.id} changed {MAX_WRITE_ATTEMPTS} times while applying a transition"
        )

    def _audit(self, action: AuditAction, transition: LedgerTransition, context: TenantContext, description: str) -> None:
        self.recorder.record(
            AuditLogEntry.create(
                action,
                MODEL_TYPE,
                transition.after.id,
                context,
                old_values=transition.before.snapshot(),
                new_values=transition.after.snapshot(),
                description=description,
            )
        )
