"""SQLAlchemy ORM models for plans, subscriptions, payment logs and the audit trail"""

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class PlanRecord(Base):
    """Subscription plan catalogue"""

    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False)
    monthly_price_cents = Column(BigInteger, nullable=False)
    annual_price_cents = Column(BigInteger, nullable=True)
    currency = Column(String(3), nullable=False, default="BRL")
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class SubscriptionRecord(Base):
    """Subscription aggregate row; written only through conditional updates"""

    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    tenant_id = Column(Integer, nullable=True, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)
    status = Column(Text, nullable=False)
    period_start = Column(DateTime(timezone=True), nullable=True)
    period_end = Column(DateTime(timezone=True), nullable=True)
    grace_period_days = Column(Integer, nullable=False, default=7)
    amount_paid_cents = Column(BigInteger, nullable=True)
    currency = Column(String(3), nullable=True)
    payment_method = Column(Text, nullable=True)
    external_transaction_id = Column(Text, nullable=True, index=True)
    charge_attempts = Column(Integer, nullable=False, default=0)
    last_charge_attempt_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())

    plan = relationship("PlanRecord")
    payments = relationship("PaymentLogRecord", back_populates="subscription")


class PaymentLogRecord(Base):
    """One row per charge attempt; the unique key is the idempotency guard"""

    __tablename__ = "payment_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    idempotency_key = Column(String(255), nullable=False, unique=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=False, index=True)
    external_id = Column(Text, nullable=True, index=True)
    status = Column(Text, nullable=False, default="processing")
    amount_cents = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    error_code = Column(Text, nullable=True)
    user_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    subscription = relationship("SubscriptionRecord", back_populates="payments")


class AuditLogRecord(Base):
    """Append-only audit trail read by reporting tooling"""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String(64), nullable=False, index=True)
    model_type = Column(String(255), nullable=False)
    model_id = Column(Integer, nullable=True, index=True)
    user_id = Column(Integer, nullable=True)
    tenant_id = Column(Integer, nullable=True, index=True)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    description = Column(Text, nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
