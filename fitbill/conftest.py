# fitbill/conftest.py
import os
from datetime import datetime, timezone

import pytest

# Must be set before fitbill.core.config builds its Settings object
os.environ.setdefault("ENV", "test")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")
os.environ["TEST_DATABASE_URL"] = "sqlite+pysqlite:///:memory:"

from sqlalchemy import insert  # noqa: E402

from fitbill.core.config import settings  # noqa: E402
from fitbill.core.database import (  # noqa: E402
    create_all_tables,
    dispose_engine,
    get_db_session,
    init_engine,
    integration_configs,
    plan_catalog,
    users,
)
from fitbill.core.metrics import METRICS  # noqa: E402

WEBHOOK_TOKEN = "pp-test-token"
MP_TOKEN = "mp-test-access-token"
ADMIN_KEY = "test-admin-key"
CRON_SECRET = "test-cron-secret"
JWT_SECRET = "test-identity-secret-with-enough-bytes"

SEED_USERS = [
    {"user_id": "user-a", "email": "a@x.com", "display_name": "Ana"},
    {"user_id": "user-b", "email": "B@X.com", "display_name": None},
    {"user_id": "admin-1", "email": "admin@fitbill.app", "display_name": "Admin"},
]

SEED_CATALOG = [
    {"name": "Elite Black", "plan_tier": "ELITE", "validity_days": 30, "price_cents": 9990},
    {"name": "Advance Trimestral", "plan_tier": "ADVANCE", "validity_days": 90, "price_cents": 14990},
    {"name": "Advance", "plan_tier": "ADVANCE", "validity_days": 30, "price_cents": 4990},
]


@pytest.fixture
def now():
    """Frozen clock for service-level tests."""
    return datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    monkeypatch.setattr(settings, "PERFECTPAY_WEBHOOK_TOKEN", None)
    monkeypatch.setattr(settings, "MERCADOPAGO_ACCESS_TOKEN", None)
    monkeypatch.setattr(settings, "ADMIN_KEY", ADMIN_KEY)
    monkeypatch.setattr(settings, "ADMIN_AUTH_MODE", "hybrid")
    monkeypatch.setattr(settings, "ENVIRONMENT", "test")
    monkeypatch.setattr(settings, "DOWNGRADE_CRON_SECRET", CRON_SECRET)
    monkeypatch.setattr(settings, "IDENTITY_JWT_SECRET", JWT_SECRET)
    monkeypatch.setattr(settings, "IDENTITY_JWT_AUDIENCE", "authenticated")
    yield settings


@pytest.fixture(autouse=True)
def db():
    """Fresh in-memory SQLite schema per test."""
    dispose_engine()
    init_engine(os.environ["TEST_DATABASE_URL"])
    create_all_tables()
    METRICS.reset()
    yield
    dispose_engine()


@pytest.fixture
def seeded(db):
    """Users, plan catalog and the provider secrets."""
    with get_db_session() as session:
        session.execute(insert(users), SEED_USERS)
        session.execute(insert(plan_catalog), SEED_CATALOG)
        session.execute(
            insert(integration_configs).values(key=settings.WEBHOOK_SECRET_CONFIG_KEY, value=WEBHOOK_TOKEN)
        )
        session.execute(
            insert(integration_configs).values(key=settings.MERCADOPAGO_TOKEN_CONFIG_KEY, value=MP_TOKEN)
        )
    return SEED_USERS


@pytest.fixture
def client(seeded):
    from fastapi.testclient import TestClient
    from fitbill.main import app

    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY}


@pytest.fixture
def user_headers():
    return {"X-User-Id": "user-a"}


@pytest.fixture
def admin_jwt():
    from fitbill.core.identity_auth import create_test_jwt

    return create_test_jwt(sub="admin-1", email="admin@fitbill.app", role="admin", secret=JWT_SECRET)


@pytest.fixture
def make_webhook_body():
    """PerfectPay-shaped body; pass key=None to drop a field."""
    import json

    def _make(**overrides) -> bytes:
        body = {
            "token": WEBHOOK_TOKEN,
            "sale_status_enum": 2,
            "sale_status_detail": "approved",
            "transaction_code": "TX1",
            "sale_amount": 99.90,
            "customer": {"email": "a@x.com", "full_name": "Ana"},
            "product": {"name": "Elite Black"},
        }
        for key, value in overrides.items():
            if value is None:
                body.pop(key, None)
            else:
                body[key] = value
        return json.dumps(body).encode("utf-8")

    return _make


@pytest.fixture
def webhook_token():
    return WEBHOOK_TOKEN
