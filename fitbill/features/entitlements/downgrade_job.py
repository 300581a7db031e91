"""
Scheduled expired-plan sweep.

Rewrites lapsed ADVANCE/ELITE entitlements to FREE with a null expiry so
stored rows match what read-time derivation already reports. Housekeeping
only: nothing relies on this having run.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fitbill.core.clock import normalize_now, utcnow
from fitbill.core.metrics import plans_downgraded_total
from fitbill.features.audit.service import record_audit_entry
from fitbill.features.payments.models import SYSTEM_ACTOR, AuditAction
from fitbill.features.payments.store import open_store

logger = logging.getLogger("fitbill.jobs")

JOB_NAME = "entitlements.downgrade_expired_plans"
DEFAULT_BATCH_SIZE = 1000
DEFAULT_MAX_LOOPS = 25


def _record_run(started_at: datetime, status: str, stats: Dict[str, Any]) -> None:
    with open_store("jobs.record") as store:
        store.insert_job_run(
            job_name=JOB_NAME,
            started_at=started_at,
            finished_at=utcnow(),
            status=status,
            stats=stats,
        )


def run_downgrade_job(
    now: Optional[datetime] = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    max_loops: int = DEFAULT_MAX_LOOPS,
) -> Dict[str, Any]:
    current = normalize_now(now)
    started_at = utcnow()
    downgraded = 0
    loops = 0

    try:
        while loops < max_loops:
            loops += 1
            # One transaction per batch: the downgrades and one audit entry per user
            with open_store("jobs.downgrade") as store:
                candidates = store.list_lapsed_paid_entitlements(current, batch_size)
                if not candidates:
                    break
                updated = set(store.downgrade_entitlements([e.user_id for e in candidates], now=current))
                for entitlement in candidates:
                    if entitlement.user_id not in updated:
                        continue
                    record_audit_entry(
                        store,
                        actor_id=SYSTEM_ACTOR,
                        action=AuditAction.PLAN_DOWNGRADED,
                        entity_table="entitlements",
                        entity_id=entitlement.user_id,
                        target_user_id=entitlement.user_id,
                        details={
                            "batch": loops,
                            "previous_plan": entitlement.plan_tier,
                            "previous_expires_at": entitlement.plan_expires_at,
                        },
                        now=current,
                    )
            downgraded += len(updated)
            if len(candidates) < batch_size:
                break
    except Exception:
        logger.exception("job.downgrade_failed", extra={"event_type": JOB_NAME})
        _record_run(started_at, "failed", {"affected": downgraded, "loops": loops})
        raise

    stats = {"affected": downgraded, "loops": loops}
    _record_run(started_at, "success", stats)
    plans_downgraded_total.inc(amount=downgraded)
    logger.info("job.downgrade_completed", extra={"event_type": JOB_NAME, "outcome": f"affected={downgraded}"})
    return {
        "ok": True,
        "affected": downgraded,
        "loops": loops,
        "timestamp": current.isoformat(),
    }
