"""Domain events and the in-process bus that fans them out to side-effect handlers"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, DefaultDict, List, Optional, Type, TypeVar

from billing_gateway.domain.models import utcnow
from billing_gateway.infrastructure.observability.metrics import event_handler_failure_counter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DomainEvent:
    """A fact about something that already happened to an aggregate"""

    aggregate_id: int
    occurred_at: datetime = field(default_factory=utcnow, kw_only=True)

    @property
    def name(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class SubscriptionCreated(DomainEvent):
    plan_id: int
    status: str
    user_id: int
    tenant_id: Optional[int] = None


@dataclass(frozen=True)
class PaymentProcessed(DomainEvent):
    """aggregate_id is the subscription id"""

    external_id: str
    amount: int
    currency: str
    idempotency_key: Optional[str]
    period_end: Optional[datetime]
    tenant_id: Optional[int] = None


@dataclass(frozen=True)
class PaymentRejected(DomainEvent):
    """aggregate_id is the subscription id; charge_attempts counts consecutive failures"""

    reason: str
    error_code: Optional[str]
    charge_attempts: int
    external_id: Optional[str] = None
    tenant_id: Optional[int] = None


@dataclass(frozen=True)
class CommissionGenerated(DomainEvent):
    """aggregate_id is the commission id; published by the commission engine"""

    affiliate_id: int
    subscription_id: int
    amount: int
    currency: str
    tenant_id: Optional[int] = None


E = TypeVar("E", bound=DomainEvent)
Handler = Callable[[DomainEvent], None]


class DomainEventBus:
    """
    Synchronous publish/subscribe with explicit registration.

    Handlers for an event type run in registration order. A handler that
    raises is logged and counted; its siblings still run and the publisher
    never sees the exception, so side effects cannot roll back the
    operation that produced the event.
    """

    def __init__(self) -> None:
        self._handlers: DefaultDict[Type[DomainEvent], List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> None:
        self._handlers[event_type].append(handler)
        logger.debug("Event handler registered", extra={"event": event_type.__name__, "handler": _handler_name(handler)})

    def handlers_for(self, event_type: Type[DomainEvent]) -> List[Handler]:
        return list(self._handlers.get(event_type, []))

    def publish(self, event: DomainEvent) -> None:
        for handler in self.handlers_for(type(event)):
            try:
                handler(event)
            except Exception:
                event_handler_failure_counter.labels(event=event.name).inc()
                logger.exception(
                    "Event handler failed",
                    extra={"event": event.name, "aggregate_id": event.aggregate_id, "handler": _handler_name(handler)},
                )


def _handler_name(handler: Callable) -> str:
    return getattr(handler, "__qualname__", repr(handler))
