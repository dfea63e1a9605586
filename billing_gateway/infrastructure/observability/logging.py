"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pythonjsonlogger.json import JsonFormatter

from billing_gateway.config import settings


class CustomJsonFormatter(JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_charge(
    subscription_id: int,
    idempotency_key: str,
    outcome: str,
    external_id: Optional[str],
    duration_ms: float,
    tenant_id: Optional[int] = None,
) -> None:
    """Log structured charge outcome for analysis"""
    logging.getLogger("billing_gateway.charges").info(
        "Charge completed",
        extra={
            "subscription_id": subscription_id,
            "tenant_id": tenant_id,
            "idempotency_key": idempotency_key,
            "step": "charge_complete",
            "charge_outcome": outcome,
            "external_id": external_id,
            "duration_ms": duration_ms,
        },
    )


def log_security_event(event: str, **details: Any) -> None:
    """Security failures (bad webhook signatures) get their own logger for alert routing"""
    logging.getLogger("billing_gateway.security").warning(
        event,
        extra={"security_event": True, **details},
    )
