"""Pytest fixtures for testing"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("PAYMENT_GATEWAY", "sandbox")

import json
from typing import Generator, List, Optional
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from billing_gateway.api.dependencies import get_event_bus, get_gateway
from billing_gateway.api.main import create_app
from billing_gateway.domain.events import (
    CommissionGenerated,
    DomainEvent,
    DomainEventBus,
    PaymentProcessed,
    PaymentRejected,
    SubscriptionCreated,
)
from billing_gateway.domain.models import (
    PaymentMethod,
    PaymentRequest,
    PaymentResult,
    PaymentStatus,
    Plan,
    Subscription,
    SubscriptionStatus,
)
from billing_gateway.domain.money import Money
from billing_gateway.infrastructure.database.models import Base
from billing_gateway.infrastructure.database.repositories import PlanRepository, SubscriptionRepository
from billing_gateway.infrastructure.database.session import get_db
from billing_gateway.infrastructure.gateways.base import PaymentGateway
from billing_gateway.infrastructure.gateways.sandbox import SandboxGateway
from billing_gateway.infrastructure.gateways.signatures import sign_payload, verify_signature
from billing_gateway.infrastructure.retry import RetryExecutor
from billing_gateway.services.orchestrator import PaymentOrchestrator

WEBHOOK_SECRET = "test-webhook-secret"
PLAN_PRICE = 4990

# Test database: one in-memory SQLite connection shared by every session
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class ScriptedGateway(PaymentGateway):
    """
    Processor double that answers process_payment from a script.

    Deduplicates by idempotency key like a real processor, and reports its
    notifications as {"id": ..., "status": ...} bodies signed with the test secret.
    """

    name = "scripted"

    def __init__(self, results: Optional[List[PaymentResult]] = None):
        self.results = list(results or [])
        self.by_key = {}
        self.by_id = {}
        self.calls = 0

    def will_return(self, status: PaymentStatus, external_id: str, error_code: Optional[str] = None) -> None:
        self.results.append(
            PaymentResult(
                status=status,
                external_id=external_id,
                amount=Money(PLAN_PRICE),
                error_code=error_code,
                user_message="Payment declined: insufficient balance or credit limit. Try another card."
                if status is PaymentStatus.REJECTED
                else None,
                payment_method="credit_card",
            )
        )

    async def process_payment(self, request: PaymentRequest, idempotency_key: str) -> PaymentResult:
        self.calls += 1
        if idempotency_key in self.by_key:
            return self.by_key[idempotency_key]
        result = self.results.pop(0)
        self.by_key[idempotency_key] = result
        self.by_id[result.external_id] = result
        return result

    async def get_payment_status(self, external_id: str) -> PaymentResult:
        return self.by_id[external_id]

    async def process_webhook(self, payload: bytes) -> PaymentResult:
        body = json.loads(payload)
        current = self.by_id.get(body["id"])
        return PaymentResult(
            status=body["status"],
            external_id=body["id"],
            amount=current.amount if current else Money(PLAN_PRICE),
            payment_method=current.payment_method if current else None,
        )

    def validate_webhook_signature(self, payload: bytes, signature: str) -> bool:
        return verify_signature(payload, signature, WEBHOOK_SECRET, tolerance_seconds=300)

    def notification(self, external_id: str, status: PaymentStatus):
        payload = json.dumps({"id": external_id, "status": status.value}).encode()
        return payload, sign_payload(payload, WEBHOOK_SECRET)


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(db: Session) -> sessionmaker:
    """Factory for code that opens its own sessions, bound to the test database"""
    return TestingSessionLocal


@pytest.fixture
def published() -> List[DomainEvent]:
    return []


@pytest.fixture
def bus(published: List[DomainEvent]) -> DomainEventBus:
    """Event bus that records every published event"""
    bus = DomainEventBus()
    for event_type in (SubscriptionCreated, PaymentProcessed, PaymentRejected, CommissionGenerated):
        bus.subscribe(event_type, published.append)
    return bus


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def retry(sleep: AsyncMock) -> RetryExecutor:
    return RetryExecutor(max_attempts=3, initial_delay=1.0, backoff_multiplier=2.0, sleep=sleep)


@pytest.fixture
def gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture
def sandbox() -> SandboxGateway:
    return SandboxGateway(webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def orchestrator(db: Session, gateway: ScriptedGateway, bus: DomainEventBus, retry: RetryExecutor) -> PaymentOrchestrator:
    return PaymentOrchestrator(db, gateway, bus, retry=retry)


@pytest.fixture
def plan(db: Session) -> Plan:
    plan = PlanRepository(db).add("Pro", Money(PLAN_PRICE), annual_price=Money(49900))
    db.commit()
    return plan


@pytest.fixture
def trial_subscription(db: Session, plan: Plan) -> Subscription:
    subscription = SubscriptionRepository(db).add(
        Subscription(id=None, user_id=42, tenant_id=7, plan_id=plan.id, status=SubscriptionStatus.TRIAL)
    )
    db.commit()
    return subscription


@pytest.fixture
def card_request() -> PaymentRequest:
    return PaymentRequest(
        amount=Money(PLAN_PRICE),
        description="Pro plan - monthly",
        payer_email="payer@example.com",
        payment_method=PaymentMethod.CREDIT_CARD,
        payment_token="tok_visa_4242",
    )


@pytest.fixture
def client(db: Session, sandbox: SandboxGateway, bus: DomainEventBus) -> TestClient:
    """Create FastAPI test client with test database and the sandbox processor"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: sandbox
    app.dependency_overrides[get_event_bus] = lambda: bus
    return TestClient(app)
