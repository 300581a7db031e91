"""Expired-plan sweep: job function and cron endpoint."""
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import insert, select
from sqlalchemy.exc import OperationalError

from fitbill.conftest import CRON_SECRET
from fitbill.core.database import admin_actions, entitlements, get_db_session, job_runs
from fitbill.core.errors import StoreUnavailableError
from fitbill.core.metrics import plans_downgraded_total
from fitbill.features.entitlements.downgrade_job import JOB_NAME, run_downgrade_job


def _seed_entitlements(now):
    with get_db_session() as session:
        session.execute(insert(entitlements), [
            {"user_id": "user-a", "plan_tier": "ELITE", "plan_expires_at": now - timedelta(days=2)},
            {"user_id": "user-b", "plan_tier": "ADVANCE", "plan_expires_at": now - timedelta(minutes=5)},
            {"user_id": "admin-1", "plan_tier": "ELITE", "plan_expires_at": now + timedelta(days=9)},
        ])


def _rows():
    with get_db_session() as session:
        return {
            r.user_id: (r.plan_tier, r.plan_expires_at)
            for r in session.execute(select(entitlements))
        }


def test_lapsed_plans_are_downgraded(seeded, now):
    _seed_entitlements(now)

    result = run_downgrade_job(now=now)

    assert result["ok"] is True
    assert result["affected"] == 2
    assert result["timestamp"] == now.isoformat()
    rows = _rows()
    assert rows["user-a"] == ("FREE", None)
    assert rows["user-b"] == ("FREE", None)
    assert rows["admin-1"][0] == "ELITE"
    assert plans_downgraded_total.value() == 2

    with get_db_session() as session:
        audits = session.execute(
            select(admin_actions).order_by(admin_actions.c.target_user_id)
        ).fetchall()
    assert [a.target_user_id for a in audits] == ["user-a", "user-b"]
    assert {a.action for a in audits} == {"plan_downgraded"}
    assert audits[0].details["previous_plan"] == "ELITE"
    assert audits[1].details["previous_plan"] == "ADVANCE"
    assert audits[1].details["previous_expires_at"].startswith("2025-03-01T11:55")


def test_rows_skipped_by_a_racing_renewal_are_not_audited(seeded, now):
    _seed_entitlements(now)
    # user-b was renewed between the read and the update
    with patch(
        "fitbill.features.payments.store.SqlPaymentStore.downgrade_entitlements",
        return_value=["user-a"],
    ):
        result = run_downgrade_job(now=now)

    assert result["affected"] == 1
    with get_db_session() as session:
        targets = [r[0] for r in session.execute(select(admin_actions.c.target_user_id))]
    assert targets == ["user-a"]


def test_batches_until_exhausted(seeded, now):
    _seed_entitlements(now)

    result = run_downgrade_job(now=now, batch_size=1)

    assert result["affected"] == 2
    assert result["loops"] == 3
    with get_db_session() as session:
        audits = session.execute(select(admin_actions.c.details).order_by(admin_actions.c.id)).fetchall()
    assert [a[0]["batch"] for a in audits] == [1, 2]


def test_nothing_to_do(seeded, now):
    result = run_downgrade_job(now=now)
    assert result["affected"] == 0
    assert result["loops"] == 1

    # Running twice is harmless
    assert run_downgrade_job(now=now)["affected"] == 0


def test_run_is_recorded(seeded, now):
    _seed_entitlements(now)
    run_downgrade_job(now=now)

    with get_db_session() as session:
        run = session.execute(select(job_runs)).fetchone()
    assert run.job_name == JOB_NAME
    assert run.status == "success"
    assert run.stats == {"affected": 2, "loops": 1}


def test_failed_run_is_recorded_and_raised(seeded, now):
    _seed_entitlements(now)
    with patch(
        "fitbill.features.payments.store.SqlPaymentStore.downgrade_entitlements",
        side_effect=OperationalError("UPDATE", {}, Exception("locked")),
    ):
        with pytest.raises(StoreUnavailableError):
            run_downgrade_job(now=now)

    with get_db_session() as session:
        run = session.execute(select(job_runs)).fetchone()
    assert run.status == "failed"
    assert _rows()["user-a"][0] == "ELITE"


def test_endpoint_requires_cron_secret(client):
    assert client.post("/v1/jobs/downgrade-expired-plans").status_code == 401
    resp = client.post("/v1/jobs/downgrade-expired-plans", headers={"X-Cron-Secret": "nope"})
    assert resp.status_code == 401


def test_endpoint_runs_job(client):
    resp = client.post("/v1/jobs/downgrade-expired-plans", headers={"X-Cron-Secret": CRON_SECRET})
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["affected"] == 0
