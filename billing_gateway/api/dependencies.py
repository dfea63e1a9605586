"""Dependency injection for FastAPI endpoints"""

from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from billing_gateway.domain.events import DomainEventBus
from billing_gateway.domain.models import TenantContext
from billing_gateway.infrastructure.database.session import SessionLocal, get_db
from billing_gateway.infrastructure.gateways.base import PaymentGateway
from billing_gateway.infrastructure.gateways.registry import get_configured_gateway
from billing_gateway.services.handlers import register_default_handlers
from billing_gateway.services.orchestrator import PaymentOrchestrator


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_tenant_context(
    request: Request,
    x_user_id: Optional[int] = Header(default=None),
    x_tenant_id: Optional[int] = Header(default=None),
) -> TenantContext:
    """Acting user and tenant as asserted by the upstream auth proxy"""
    return TenantContext(
        user_id=x_user_id,
        tenant_id=x_tenant_id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def get_gateway() -> PaymentGateway:
    """Processor adapter selected from settings at startup"""
    return get_configured_gateway()


@lru_cache
def get_event_bus() -> DomainEventBus:
    """Process-wide bus with handlers registered once"""
    return register_default_handlers(DomainEventBus(), SessionLocal)


def get_orchestrator(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    bus: DomainEventBus = Depends(get_event_bus),
) -> PaymentOrchestrator:
    return PaymentOrchestrator(db, gateway, bus)
