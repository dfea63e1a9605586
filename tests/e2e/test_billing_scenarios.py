"""
End-to-end billing scenarios against the orchestrator, a real database and a
scripted processor:

- trial subscription charged and approved
- trial subscription charged and declined
- duplicate webhook for an already reconciled payment
- charge repeated for the same billing period
- the same webhook delivered twice
"""

from datetime import timedelta

from billing_gateway.domain.audit import AuditAction
from billing_gateway.domain.events import PaymentProcessed, PaymentRejected
from billing_gateway.domain.models import PaymentStatus, SubscriptionStatus, TenantContext, utcnow
from billing_gateway.domain.money import Money
from billing_gateway.infrastructure.database.repositories import AuditLogRepository, SubscriptionRepository

CONTEXT = TenantContext(user_id=42, tenant_id=7, ip_address="203.0.113.9", user_agent="checkout-web")


def events_of(published, event_type):
    return [e for e in published if isinstance(e, event_type)]


def payment_audits(db, subscription_id):
    return AuditLogRepository(db).list_for("Payment", subscription_id, AuditAction.PAYMENT_PROCESSED)


async def test_trial_charge_approved(orchestrator, gateway, trial_subscription, card_request, published, db):
    """
    Trial on a 4990 monthly plan, gateway approves as tx_1
    Expected: active, period_end = now + 30d, one PaymentProcessed, one payment_processed audit
    """
    gateway.will_return(PaymentStatus.APPROVED, "tx_1")

    before = utcnow()
    outcome = await orchestrator.charge(trial_subscription.id, card_request, CONTEXT)
    after = utcnow()

    assert outcome.kind == "approved"
    subscription = SubscriptionRepository(db).get(trial_subscription.id)
    assert subscription.status is SubscriptionStatus.ACTIVE
    assert before + timedelta(days=30) <= subscription.period_end <= after + timedelta(days=30)
    assert subscription.amount_paid == Money(4990)
    assert subscription.external_transaction_id == "tx_1"

    processed = events_of(published, PaymentProcessed)
    assert len(processed) == 1
    assert processed[0].external_id == "tx_1"
    assert processed[0].amount == 4990
    assert processed[0].tenant_id == 7

    audits = payment_audits(db, trial_subscription.id)
    assert len(audits) == 1
    assert audits[0].new_values["status"] == "approved"
    assert audits[0].user_id == 42
    assert audits[0].ip_address == "203.0.113.9"


async def test_trial_charge_rejected(orchestrator, gateway, trial_subscription, card_request, published, db):
    """
    Same trial, gateway declines for insufficient funds
    Expected: awaiting_payment, one PaymentRejected with charge_attempts = 1
    """
    gateway.will_return(PaymentStatus.REJECTED, "tx_1", "cc_rejected_insufficient_amount")

    outcome = await orchestrator.charge(trial_subscription.id, card_request, CONTEXT)

    assert outcome.kind == "rejected"
    assert "insufficient balance" in outcome.user_message
    assert SubscriptionRepository(db).get(trial_subscription.id).status is SubscriptionStatus.AWAITING_PAYMENT

    rejected = events_of(published, PaymentRejected)
    assert len(rejected) == 1
    assert rejected[0].charge_attempts == 1
    assert rejected[0].error_code == "cc_rejected_insufficient_amount"

    audit = payment_audits(db, trial_subscription.id)[0]
    assert audit.new_values["error_code"] == "cc_rejected_insufficient_amount"


async def test_duplicate_webhook_after_approval(orchestrator, gateway, trial_subscription, card_request, published, db):
    """
    Webhook for tx_1 arrives after the charge already reconciled it as approved
    Expected: no ledger transition, no extra audit entry
    """
    gateway.will_return(PaymentStatus.APPROVED, "tx_1")
    await orchestrator.charge(trial_subscription.id, card_request, CONTEXT)
    version = SubscriptionRepository(db).get(trial_subscription.id).version

    outcome = await orchestrator.reconcile_webhook(*gateway.notification("tx_1", PaymentStatus.APPROVED))

    assert outcome.kind == "duplicate"
    assert SubscriptionRepository(db).get(trial_subscription.id).version == version
    assert len(payment_audits(db, trial_subscription.id)) == 1
    assert len(events_of(published, PaymentProcessed)) == 1


async def test_charge_repeated_for_same_period(orchestrator, gateway, trial_subscription, card_request, published, db):
    """
    Charge called twice for the same subscription and billing period
    Expected: one gateway charge, one ledger transition, one payment_processed audit
    """
    gateway.will_return(PaymentStatus.APPROVED, "tx_1")

    first = await orchestrator.charge(trial_subscription.id, card_request, CONTEXT, billing_period="2026-05")
    second = await orchestrator.charge(trial_subscription.id, card_request, CONTEXT, billing_period="2026-05")

    assert first.kind == "approved"
    assert second.kind == "duplicate"
    assert second.result.external_id == "tx_1"
    assert second.result.is_approved
    assert gateway.calls == 1
    assert second.subscription.version == first.subscription.version
    assert len(payment_audits(db, trial_subscription.id)) == 1
    assert len(events_of(published, PaymentProcessed)) == 1


async def test_same_webhook_delivered_twice(orchestrator, gateway, trial_subscription, card_request, published, db):
    """
    A pending charge is resolved by a webhook the processor delivers twice
    Expected: the ledger changes once
    """
    gateway.will_return(PaymentStatus.PENDING, "tx_1")
    await orchestrator.charge(trial_subscription.id, card_request, CONTEXT)
    payload, signature = gateway.notification("tx_1", PaymentStatus.APPROVED)

    first = await orchestrator.reconcile_webhook(payload, signature)
    version = SubscriptionRepository(db).get(trial_subscription.id).version
    second = await orchestrator.reconcile_webhook(payload, signature)

    assert first.kind == "applied"
    assert second.kind == "duplicate"
    assert SubscriptionRepository(db).get(trial_subscription.id).version == version
    assert len(payment_audits(db, trial_subscription.id)) == 1
    assert len(events_of(published, PaymentProcessed)) == 1
