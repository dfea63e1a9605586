"""Data access layer mapping rows to domain objects

Every state-changing write on subscriptions and payment logs is conditional
(compare-and-set). A write that matches no row lost a race with another
writer; callers treat that as "already applied", never as an error.
"""

from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_gateway.domain.audit import AuditAction, AuditLogEntry
from billing_gateway.domain.models import (
    PAYMENT_LOG_PROCESSING,
    PaymentLog,
    PaymentResult,
    PaymentStatus,
    Plan,
    Subscription,
    SubscriptionStatus,
    utcnow,
)
from billing_gateway.domain.money import Money
from billing_gateway.infrastructure.database.models import (
    AuditLogRecord,
    PaymentLogRecord,
    PlanRecord,
    SubscriptionRecord,
)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; everything in the domain is UTC-aware"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PlanRepository:
    """Repository for subscription plans"""

    def __init__(self, db: Session):
        self.db = db

    def add(
        self,
        name: str,
        monthly_price: Money,
        annual_price: Optional[Money] = None,
        active: bool = True,
    ) -> Plan:
        record = PlanRecord(
            name=name,
            monthly_price_cents=monthly_price.amount,
            annual_price_cents=annual_price.amount if annual_price else None,
            currency=monthly_price.currency,
            active=active,
        )
        self.db.add(record)
        self.db.flush()
        return self._to_domain(record)

    def get(self, plan_id: int) -> Optional[Plan]:
        record = self.db.get(PlanRecord, plan_id)
        return self._to_domain(record) if record else None

    @staticmethod
    def _to_domain(record: PlanRecord) -> Plan:
        return Plan(
            id=record.id,
            name=record.name,
            monthly_price=Money(record.monthly_price_cents, record.currency),
            annual_price=Money(record.annual_price_cents, record.currency)
            if record.annual_price_cents is not None
            else None,
            active=record.active,
        )


class SubscriptionRepository:
    """Repository for the subscription aggregate"""

    def __init__(self, db: Session):
        self.db = db

    def add(self, subscription: Subscription) -> Subscription:
        record = SubscriptionRecord(
            user_id=subscription.user_id,
            tenant_id=subscription.tenant_id,
            plan_id=subscription.plan_id,
            status=subscription.status.value,
            period_start=subscription.period_start,
            period_end=subscription.period_end,
            grace_period_days=subscription.grace_period_days,
            amount_paid_cents=subscription.amount_paid.amount if subscription.amount_paid else None,
            currency=subscription.amount_paid.currency if subscription.amount_paid else None,
            payment_method=subscription.payment_method,
            external_transaction_id=subscription.external_transaction_id,
            charge_attempts=subscription.charge_attempts,
            last_charge_attempt_at=subscription.last_charge_attempt_at,
            cancelled_at=subscription.cancelled_at,
            version=0,
            created_at=subscription.created_at,
        )
        self.db.add(record)
        self.db.flush()
        return self._to_domain(record)

    def get(self, subscription_id: int) -> Optional[Subscription]:
        record = self.db.execute(
            select(SubscriptionRecord).where(SubscriptionRecord.id == subscription_id)
        ).scalar_one_or_none()
        if record is None:
            return None
        # Conditional updates bypass the identity map; always read fresh values
        self.db.refresh(record)
        return self._to_domain(record)

    def find_by_external_transaction_id(self, external_id: str) -> Optional[Subscription]:
        record = self.db.execute(
            select(SubscriptionRecord)
            .where(SubscriptionRecord.external_transaction_id == external_id)
            .order_by(SubscriptionRecord.id.desc())
            .limit(1)
        ).scalar_one_or_none()
        if record is None:
            return None
        self.db.refresh(record)
        return self._to_domain(record)

    def list_by_status(self, statuses: Iterable[SubscriptionStatus]) -> List[Subscription]:
        records = self.db.execute(
            select(SubscriptionRecord)
            .where(SubscriptionRecord.status.in_([s.value for s in statuses]))
            .order_by(SubscriptionRecord.id)
        ).scalars()
        return [self._to_domain(r) for r in records]

    def compare_and_set(self, subscription: Subscription, expected_status: SubscriptionStatus, expected_version: int) -> bool:
        """Persist a new version only if nobody changed the row since it was read"""
        result = self.db.execute(
            update(SubscriptionRecord)
            .where(
                SubscriptionRecord.id == subscription.id,
                SubscriptionRecord.status == expected_status.value,
                SubscriptionRecord.version == expected_version,
            )
            .values(
                status=subscription.status.value,
                period_start=subscription.period_start,
                period_end=subscription.period_end,
                amount_paid_cents=subscription.amount_paid.amount if subscription.amount_paid else None,
                currency=subscription.amount_paid.currency if subscription.amount_paid else None,
                payment_method=subscription.payment_method,
                external_transaction_id=subscription.external_transaction_id,
                charge_attempts=subscription.charge_attempts,
                last_charge_attempt_at=subscription.last_charge_attempt_at,
                cancelled_at=subscription.cancelled_at,
                version=expected_version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def _to_domain(record: SubscriptionRecord) -> Subscription:
        return Subscription(
            id=record.id,
            user_id=record.user_id,
            tenant_id=record.tenant_id,
            plan_id=record.plan_id,
            status=SubscriptionStatus(record.status),
            period_start=_aware(record.period_start),
            period_end=_aware(record.period_end),
            grace_period_days=record.grace_period_days,
            amount_paid=Money(record.amount_paid_cents, record.currency or "BRL")
            if record.amount_paid_cents is not None
            else None,
            payment_method=record.payment_method,
            external_transaction_id=record.external_transaction_id,
            charge_attempts=record.charge_attempts,
            last_charge_attempt_at=_aware(record.last_charge_attempt_at),
            cancelled_at=_aware(record.cancelled_at),
            created_at=_aware(record.created_at),
            version=record.version,
        )


class PaymentLogRepository:
    """Repository for idempotency records"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, idempotency_key: str) -> Optional[PaymentLog]:
        record = self._record(idempotency_key)
        return self._to_domain(record) if record else None

    def find_by_external_id(self, external_id: str) -> Optional[PaymentLog]:
        record = self.db.execute(
            select(PaymentLogRecord).where(PaymentLogRecord.external_id == external_id).limit(1)
        ).scalar_one_or_none()
        if record is None:
            return None
        self.db.refresh(record)
        return self._to_domain(record)

    def claim(self, idempotency_key: str, subscription_id: int, amount: Money) -> Tuple[PaymentLog, bool]:
        """
        Insert the processing row for a key, committing so the attempt is durable
        before the gateway is called.

        Returns (log, created). created is False when the key already existed,
        including when a concurrent claimer won the unique-key race.
        """
        existing = self.get(idempotency_key)
        if existing is not None:
            return existing, False

        record = PaymentLogRecord(
            idempotency_key=idempotency_key,
            subscription_id=subscription_id,
            status=PAYMENT_LOG_PROCESSING,
            amount_cents=amount.amount,
            currency=amount.currency,
            created_at=utcnow(),
        )
        self.db.add(record)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            winner = self.get(idempotency_key)
            if winner is None:
                raise
            return winner, False
        return self._to_domain(record), True

    def finalize(self, idempotency_key: str, result: PaymentResult, expected_statuses: Iterable[str]) -> bool:
        """
        Record the gateway outcome; False means another writer already moved the row.

        A pending result only ever lands on an open row: a final status never
        goes back to pending.
        """
        expected = list(expected_statuses)
        if result.is_pending:
            expected = [s for s in expected if s in (PAYMENT_LOG_PROCESSING, PaymentStatus.PENDING.value)]
            if not expected:
                return False
        db_result = self.db.execute(
            update(PaymentLogRecord)
            .where(
                PaymentLogRecord.idempotency_key == idempotency_key,
                PaymentLogRecord.status.in_(expected),
            )
            .values(
                status=result.status.value,
                external_id=result.external_id or None,
                error_code=result.error_code,
                user_message=result.user_message,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return db_result.rowcount == 1

    def list_stale_pending(self, older_than: datetime) -> List[PaymentLog]:
        records = self.db.execute(
            select(PaymentLogRecord)
            .where(
                PaymentLogRecord.status == PaymentStatus.PENDING.value,
                PaymentLogRecord.created_at < older_than,
            )
            .order_by(PaymentLogRecord.id)
        ).scalars()
        return [self._to_domain(r) for r in records]

    def _record(self, idempotency_key: str) -> Optional[PaymentLogRecord]:
        record = self.db.execute(
            select(PaymentLogRecord).where(PaymentLogRecord.idempotency_key == idempotency_key)
        ).scalar_one_or_none()
        if record is not None:
            self.db.refresh(record)
        return record

    @staticmethod
    def _to_domain(record: PaymentLogRecord) -> PaymentLog:
        return PaymentLog(
            id=record.id,
            idempotency_key=record.idempotency_key,
            subscription_id=record.subscription_id,
            amount=Money(record.amount_cents, record.currency),
            status=record.status,
            external_id=record.external_id,
            error_code=record.error_code,
            user_message=record.user_message,
            created_at=_aware(record.created_at),
            updated_at=_aware(record.updated_at),
        )


class AuditLogRepository:
    """Append-only store behind AuditRecorder"""

    def __init__(self, db: Session):
        self.db = db

    def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        record = AuditLogRecord(
            action=entry.action.value,
            model_type=entry.model_type,
            model_id=entry.model_id,
            user_id=entry.user_id,
            tenant_id=entry.tenant_id,
            old_values=entry.old_values,
            new_values=entry.new_values,
            description=entry.description,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            created_at=entry.created_at,
        )
        self.db.add(record)
        self.db.flush()
        return self._to_domain(record)

    def list_for(self, model_type: str, model_id: int, action: Optional[AuditAction] = None) -> List[AuditLogEntry]:
        query = select(AuditLogRecord).where(
            AuditLogRecord.model_type == model_type,
            AuditLogRecord.model_id == model_id,
        )
        if action is not None:
            query = query.where(AuditLogRecord.action == action.value)
        return [self._to_domain(r) for r in self.db.execute(query.order_by(AuditLogRecord.id)).scalars()]

    @staticmethod
    def _to_domain(record: AuditLogRecord) -> AuditLogEntry:
        return AuditLogEntry(
            id=record.id,
            action=AuditAction(record.action),
            model_type=record.model_type,
            model_id=record.model_id,
            user_id=record.user_id,
            tenant_id=record.tenant_id,
            old_values=record.old_values,
            new_values=record.new_values,
            description=record.description,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            created_at=_aware(record.created_at),
        )
