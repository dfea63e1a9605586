"""Unit tests for the domain event bus"""

import logging

from billing_gateway.domain.events import (
    CommissionGenerated,
    DomainEventBus,
    PaymentProcessed,
    PaymentRejected,
)


def make_rejection() -> PaymentRejected:
    return PaymentRejected(
        aggregate_id=1,
        reason="Payment declined",
        error_code="cc_rejected_insufficient_amount",
        charge_attempts=1,
    )


def test_handlers_run_in_registration_order():
    """Test handlers for an event type run in the order they were subscribed"""
    bus = DomainEventBus()
    calls = []
    bus.subscribe(PaymentRejected, lambda e: calls.append("notify"))
    bus.subscribe(PaymentRejected, lambda e: calls.append("dunning"))

    bus.publish(make_rejection())

    assert calls == ["notify", "dunning"]


def test_failing_handler_does_not_stop_siblings(caplog):
    """Test a raising handler is logged and the next handler still runs"""
    bus = DomainEventBus()
    calls = []

    def broken(event):
        raise RuntimeError("smtp down")

    bus.subscribe(PaymentRejected, broken)
    bus.subscribe(PaymentRejected, lambda e: calls.append(e.charge_attempts))

    with caplog.at_level(logging.ERROR, logger="billing_gateway.domain.events"):
        bus.publish(make_rejection())

    assert calls == [1]
    assert any(r.message == "Event handler failed" for r in caplog.records)


def test_handlers_only_receive_their_event_type():
    """Test dispatch is by exact event type"""
    bus = DomainEventBus()
    received = []
    bus.subscribe(PaymentProcessed, received.append)

    bus.publish(make_rejection())
    bus.publish(
        CommissionGenerated(aggregate_id=9, affiliate_id=3, subscription_id=1, amount=499, currency="BRL")
    )

    assert received == []
    assert bus.handlers_for(PaymentProcessed) == [received.append]


def test_event_carries_name_and_timestamp():
    """Test events are timestamped facts"""
    event = make_rejection()
    assert event.name == "PaymentRejected"
    assert event.occurred_at.tzinfo is not None
