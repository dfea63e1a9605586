"""Unit tests for the audit recorder"""

import logging

import pytest

from billing_gateway.domain.audit import (
    AuditAction,
    AuditLogEntry,
    AuditRecorder,
    InMemoryAuditStore,
    compute_changes,
)
from billing_gateway.domain.exceptions import AuditPersistenceError
from billing_gateway.domain.models import TenantContext

CONTEXT = TenantContext(user_id=42, tenant_id=7, ip_address="10.0.0.1", user_agent="pytest")


class BrokenStore:
    def append(self, entry):
        raise RuntimeError("database is gone")


def make_entry(action=AuditAction.PAYMENT_PROCESSED, **overrides) -> AuditLogEntry:
    fields = dict(
        old_values={"status": "trial"},
        new_values={"status": "active"},
        description="Payment approved",
    )
    fields.update(overrides)
    return AuditLogEntry.create(action, "Subscription", 1, CONTEXT, **fields)


def test_record_persists_entry_with_context():
    """Test actor, tenant and request details are carried into the record"""
    store = InMemoryAuditStore()
    stored = AuditRecorder(store).record(make_entry())

    record = stored.to_record()
    assert record["id"] == 1
    assert record["action"] == "payment_processed"
    assert record["user_id"] == 42
    assert record["tenant_id"] == 7
    assert record["ip_address"] == "10.0.0.1"
    assert record["user_agent"] == "pytest"
    assert set(record) == {
        "id", "action", "model_type", "model_id", "user_id", "tenant_id",
        "old_values", "new_values", "description", "ip_address", "user_agent", "created_at",
    }


def test_critical_action_logs_elevated(caplog):
    """Test critical actions are logged at warning with the critical flag"""
    with caplog.at_level(logging.INFO, logger="billing_gateway.domain.audit"):
        AuditRecorder(InMemoryAuditStore()).record(make_entry(AuditAction.SUBSCRIPTION_CANCELLED))

    records = [r for r in caplog.records if getattr(r, "critical", False)]
    assert len(records) == 1
    assert records[0].levelno == logging.WARNING


def test_non_critical_action_logs_info(caplog):
    """Test ordinary actions are not flagged"""
    with caplog.at_level(logging.INFO, logger="billing_gateway.domain.audit"):
        stored = AuditRecorder(InMemoryAuditStore()).record(make_entry(AuditAction.STATUS_CHANGED))

    assert not stored.is_critical()
    assert not any(getattr(r, "critical", False) for r in caplog.records)


def test_persistence_failure_is_escalated():
    """Test a failing store raises instead of dropping the entry"""
    with pytest.raises(AuditPersistenceError):
        AuditRecorder(BrokenStore()).record(make_entry())


def test_sensitive_values_are_redacted():
    """Test secrets and tax ids never reach the store"""
    store = InMemoryAuditStore()
    AuditRecorder(store).record(
        make_entry(new_values={"status": "active", "payment_token": "tok_123", "payer": {"cpf": "12345678909"}})
    )

    values = store.entries[0].new_values
    assert values["status"] == "active"
    assert values["payment_token"] == "[REDACTED]"
    assert values["payer"]["cpf"] == "[REDACTED]"


def test_changes_diff():
    """Test field-level diff of before/after snapshots"""
    assert compute_changes({"status": "trial", "plan_id": 1}, {"status": "active", "plan_id": 1}) == {
        "status": {"old": "trial", "new": "active"}
    }
    assert compute_changes(None, {"status": "active"}) is None
    assert make_entry().changes == {"status": {"old": "trial", "new": "active"}}


def test_critical_actions():
    """Test the critical action set"""
    critical = {a for a in AuditAction if make_entry(a).is_critical()}
    assert critical == {
        AuditAction.PAYMENT_PROCESSED,
        AuditAction.COMMISSION_GENERATED,
        AuditAction.SUBSCRIPTION_ACTIVATED,
        AuditAction.SUBSCRIPTION_CANCELLED,
    }


def test_long_description_is_truncated():
    """Test descriptions are capped"""
    entry = make_entry(description="x" * 5000)
    assert len(entry.description) == 1000
