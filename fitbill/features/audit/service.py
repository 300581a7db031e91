"""
Audit log for state-changing payment and entitlement actions.

Entries are written through the same store (and therefore the same
transaction) as the mutation they describe. A failed audit write raises
AuditWriteError, which rolls the mutation back with it.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from fitbill.core.errors import AuditWriteError
from fitbill.features.payments.models import AuditAction, AuditEntry
from fitbill.features.payments.store import PaymentStore, open_store

logger = logging.getLogger("fitbill.audit")

MAX_AUDIT_LIMIT = 500


def _safe_details(details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    safe: Dict[str, Any] = {}
    for key, value in (details or {}).items():
        if value is None or isinstance(value, (bool, int, float)):
            safe[key] = value
        elif hasattr(value, "value"):
            safe[key] = value.value  # enums
        elif isinstance(value, datetime):
            safe[key] = value.isoformat()
        else:
            text = str(value)
            safe[key] = text if len(text) <= 500 else text[:500] + "...<truncated>"
    return safe


def record_audit_entry(
    store: PaymentStore,
    *,
    actor_id: str,
    action: AuditAction,
    entity_table: str,
    entity_id: Optional[str],
    target_user_id: Optional[str],
    details: Optional[Dict[str, Any]],
    now: datetime,
) -> int:
    """
    Append one audit entry inside the caller's transaction.

    Raises:
        AuditWriteError: the insert failed; the caller's transaction must not commit
    """
    try:
        audit_id = store.insert_audit_entry(
            actor_id=actor_id,
            action=action.value,
            entity_table=entity_table,
            entity_id=entity_id,
            target_user_id=target_user_id,
            details=_safe_details(details),
            created_at=now,
        )
    except SQLAlchemyError as exc:
        logger.error(
            "audit.write_failed",
            extra={"error_code": "audit_write_failed", "actor_id": actor_id, "event_type": action.value},
        )
        raise AuditWriteError(f"Audit write failed for {action.value}") from exc

    logger.info(
        "audit.recorded",
        extra={"actor_id": actor_id, "event_type": action.value, "user_id": target_user_id},
    )
    return audit_id


def list_audit_trail(limit: int = 50) -> List[AuditEntry]:
    """Most recent audit entries first, joined with the actor's email."""
    limit = max(1, min(limit, MAX_AUDIT_LIMIT))
    with open_store("audit.list") as store:
        return store.list_audit_entries(limit)
