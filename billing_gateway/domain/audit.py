"""Append-only audit trail for subscription and payment operations"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from billing_gateway.domain.exceptions import AuditPersistenceError, DomainException
from billing_gateway.domain.models import TenantContext, utcnow
from billing_gateway.infrastructure.observability.metrics import critical_audit_counter

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 1000
REDACTED = "[REDACTED]"
SENSITIVE_KEYS = ("password", "token", "secret", "api_key", "tax_id", "cpf", "cnpj")


class AuditAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    STATUS_CHANGED = "status_changed"
    PAYMENT_PROCESSED = "payment_processed"
    COMMISSION_GENERATED = "commission_generated"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    COUPON_APPLIED = "coupon_applied"
    AFFILIATE_REFERRED = "affiliate_referred"


CRITICAL_ACTIONS = frozenset(
    {
        AuditAction.PAYMENT_PROCESSED,
        AuditAction.COMMISSION_GENERATED,
        AuditAction.SUBSCRIPTION_ACTIVATED,
        AuditAction.SUBSCRIPTION_CANCELLED,
    }
)


def _sanitize(values: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if values is None:
        return None
    sanitized: Dict[str, Any] = {}
    for key, value in values.items():
        lowered = str(key).lower()
        if any(marker in lowered for marker in SENSITIVE_KEYS):
            sanitized[key] = REDACTED
        elif isinstance(value, dict):
            sanitized[key] = _sanitize(value)
        else:
            sanitized[key] = value
    return sanitized


def compute_changes(
    old_values: Optional[Dict[str, Any]],
    new_values: Optional[Dict[str, Any]],
) -> Optional[Dict[str, Dict[str, Any]]]:
    """Field-level diff of two snapshots: {field: {"old": ..., "new": ...}}"""
    if old_values is None or new_values is None:
        return None
    changes = {
        key: {"old": old_values.get(key), "new": value}
        for key, value in new_values.items()
        if key not in old_values or old_values[key] != value
    }
    return changes or None


@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable audit record; never updated or deleted once written"""

    action: AuditAction
    model_type: str
    model_id: Optional[int]
    user_id: Optional[int] = None
    tenant_id: Optional[int] = None
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    description: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "action", AuditAction(self.action))
        if not self.model_type:
            raise DomainException("Audit entries require a model type")
        if len(self.model_type) > 255:
            raise DomainException("Audit model type cannot exceed 255 characters")
        if self.description is not None and len(self.description) > MAX_DESCRIPTION_LENGTH:
            object.__setattr__(self, "description", self.description[:MAX_DESCRIPTION_LENGTH])

    @classmethod
    def create(
        cls,
        action: AuditAction,
        model_type: str,
        model_id: Optional[int],
        context: TenantContext,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> AuditLogEntry:
        return cls(
            action=action,
            model_type=model_type,
            model_id=model_id,
            user_id=context.user_id,
            tenant_id=context.tenant_id,
            old_values=old_values,
            new_values=new_values,
            description=description,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )

    @property
    def changes(self) -> Optional[Dict[str, Dict[str, Any]]]:
        return compute_changes(self.old_values, self.new_values)

    def is_critical(self) -> bool:
        return self.action in CRITICAL_ACTIONS

    def sanitized(self) -> AuditLogEntry:
        return replace(self, old_values=_sanitize(self.old_values), new_values=_sanitize(self.new_values))

    def to_record(self) -> Dict[str, Any]:
        """Persisted shape read by reporting tooling"""
        return {
            "id": self.id,
            "action": self.action.value,
            "model_type": self.model_type,
            "model_id": self.model_id,
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "description": self.description,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": self.created_at.isoformat(),
        }


class AuditStore(Protocol):
    def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        ...


class InMemoryAuditStore:
    """List-backed store for tools and tests that run without a database"""

    def __init__(self) -> None:
        self.entries: List[AuditLogEntry] = []

    def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        stored = replace(entry, id=len(self.entries) + 1)
        self.entries.append(stored)
        return stored


class AuditRecorder:
    """
    Writes audit entries and raises the log level for critical ones.

    Persistence failures are escalated as AuditPersistenceError; an audit
    entry is never dropped silently.
    """

    def __init__(self, store: AuditStore):
        self.store = store

    def record(self, entry: AuditLogEntry) -> AuditLogEntry:
        entry = entry.sanitized()
        try:
            stored = self.store.append(entry)
        except Exception as e:
            logger.exception(
                "Audit entry could not be persisted",
                extra={"action": entry.action.value, "model_type": entry.model_type, "model_id": entry.model_id},
            )
            raise AuditPersistenceError(f"Failed to persist audit entry {entry.action.value}") from e

        if stored.is_critical():
            critical_audit_counter.labels(action=stored.action.value).inc()
            logger.warning(
                "Critical operation audited",
                extra={
                    "audit_id": stored.id,
                    "action": stored.action.value,
                    "model_type": stored.model_type,
                    "model_id": stored.model_id,
                    "tenant_id": stored.tenant_id,
                    "user_id": stored.user_id,
                    "critical": True,
                },
            )
        else:
            logger.info(
                "Operation audited",
                extra={"audit_id": stored.id, "action": stored.action.value, "model_id": stored.model_id},
            )
        return stored
