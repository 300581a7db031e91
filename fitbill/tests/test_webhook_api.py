"""
PerfectPay webhook endpoint.

Every benign path answers 200 so the provider stops retrying; only a missing
secret (400), a bad token (401) and real failures (5xx) do not.
"""
from unittest.mock import patch

from sqlalchemy import delete, func, select
from sqlalchemy.exc import OperationalError

from fitbill.core.database import get_db_session, integration_configs, ledger_entries
from fitbill.core.metrics import webhook_outcomes_total

WEBHOOK_URL = "/api/payments/webhooks/perfectpay"


def _ledger_count() -> int:
    with get_db_session() as session:
        return session.execute(select(func.count()).select_from(ledger_entries)).scalar()


def test_applied_then_duplicate(client, make_webhook_body):
    body = make_webhook_body()
    first = client.post(WEBHOOK_URL, content=body, headers={"content-type": "application/json"})
    assert first.status_code == 200
    assert first.json()["outcome"] == "applied"
    assert first.json()["message"]

    second = client.post(WEBHOOK_URL, content=body, headers={"content-type": "application/json"})
    assert second.status_code == 200
    assert second.json()["outcome"] == "duplicate"
    assert _ledger_count() == 1

    assert webhook_outcomes_total.value({"provider": "perfectpay", "outcome": "applied"}) == 1
    assert webhook_outcomes_total.value({"provider": "perfectpay", "outcome": "duplicate"}) == 1


def test_non_approved_and_unknown_user_answer_200(client, make_webhook_body):
    ignored = client.post(WEBHOOK_URL, content=make_webhook_body(sale_status_enum=7))
    assert ignored.status_code == 200
    assert ignored.json()["outcome"] == "ignored_status"

    unknown = client.post(WEBHOOK_URL, content=make_webhook_body(customer={"email": "ghost@x.com"}))
    assert unknown.status_code == 200
    assert unknown.json()["outcome"] == "ignored_unknown_user"
    assert _ledger_count() == 0


def test_bad_token_is_401(client, make_webhook_body):
    resp = client.post(WEBHOOK_URL, content=make_webhook_body(token="nope"))
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"
    assert _ledger_count() == 0


def test_header_token_is_accepted(client, make_webhook_body, webhook_token):
    resp = client.post(WEBHOOK_URL, content=make_webhook_body(token=None), headers={"token": webhook_token})
    assert resp.status_code == 200
    assert resp.json()["outcome"] == "applied"


def test_missing_secret_is_400(client, make_webhook_body):
    with get_db_session() as session:
        session.execute(delete(integration_configs))
    resp = client.post(WEBHOOK_URL, content=make_webhook_body())
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "configuration_error"


def test_env_secret_fallback(client, make_webhook_body, test_settings, webhook_token):
    with get_db_session() as session:
        session.execute(delete(integration_configs))
    test_settings.PERFECTPAY_WEBHOOK_TOKEN = webhook_token
    resp = client.post(WEBHOOK_URL, content=make_webhook_body())
    assert resp.status_code == 200


def test_malformed_json_is_400(client, webhook_token):
    resp = client.post(WEBHOOK_URL, content=b"{broken", headers={"token": webhook_token})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_payload"


def test_store_outage_is_503(client, make_webhook_body):
    outage = OperationalError("SELECT 1", {}, Exception("could not connect"))
    with patch(
        "fitbill.features.payments.store.SqlPaymentStore.find_user_by_email",
        side_effect=outage,
    ):
        resp = client.post(WEBHOOK_URL, content=make_webhook_body())
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "store_unavailable"
    assert _ledger_count() == 0


def test_unexpected_failure_is_500_without_trace(client, make_webhook_body):
    with patch(
        "fitbill.features.payments.store.SqlPaymentStore.find_user_by_email",
        side_effect=RuntimeError("boom"),
    ):
        resp = client.post(WEBHOOK_URL, content=make_webhook_body())
    assert resp.status_code == 500
    body = resp.json()
    assert body["error"]["code"] == "webhook_failed"
    assert "Traceback" not in body["error"]["message"]
    assert resp.headers.get("x-request-id") == body["error"]["request_id"]


def test_out_of_range_amount_is_400(client, make_webhook_body):
    resp = client.post(WEBHOOK_URL, content=make_webhook_body(sale_amount="99999999999999"))
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_payload"
    assert _ledger_count() == 0
