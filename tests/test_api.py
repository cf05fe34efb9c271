import pytest
from fastapi.testclient import TestClient

from amg_portal import verification
from amg_portal.config import settings
from amg_portal.contract_store import ContractStore
from amg_portal.env_guard import GuardConfig
from amg_portal.main import app, get_amg_client, get_contract_store, get_guard_config
from payloads import bundle, family_policy, group_resource, patient_resource


@pytest.fixture
def api(fake_amg):
    async def amg_client():
        async with fake_amg.client() as client:
            yield client

    app.dependency_overrides[get_amg_client] = amg_client
    app.dependency_overrides[get_guard_config] = lambda: GuardConfig.from_csv("TEST")
    app.dependency_overrides[get_contract_store] = ContractStore
    yield TestClient(app)
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# /api/auth/verify-insurance
# ---------------------------------------------------------------------------


def test_verify_requires_insurance_number(api):
    response = api.post("/api/auth/verify-insurance", json={})
    assert response.status_code == 400
    assert response.json() == {"error": "Insurance number is required", "details": None}


def test_verify_rejects_non_json_body(api):
    response = api.post(
        "/api/auth/verify-insurance", content=b"not json", headers={"Content-Type": "application/json"}
    )
    assert response.status_code == 400
    assert response.json()["error"] == "Insurance number is required"


def test_init_payment_with_malformed_body(api):
    response = api.post(
        "/api/holo/init-payment", content=b"{\xff}", headers={"Content-Type": "application/json"}
    )
    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "insuranceNumber is required"}


def test_verify_active_patient(api, fake_amg):
    fake_amg.reply("GET", "/Patient", payload=bundle(patient_resource()))
    fake_amg.reply("GET", "/Group/G-1", payload=group_resource())
    fake_amg.graphql("policiesByFamily", payload=family_policy(status="ACTIVE"))

    response = api.post("/api/auth/verify-insurance", json={"insuranceNumber": "123456"})

    assert response.status_code == 200
    body = response.json()
    assert body["exists"] is True
    assert body["coverageStatus"] == "active"
    assert body["coverageReason"] == "graphql_active_in_window"


def test_verify_unknown_patient(api, fake_amg):
    fake_amg.reply("GET", "/Patient", payload=bundle())
    fake_amg.reply("GET", "/Patient/123456", payload={"resourceType": "Bundle"})

    response = api.post("/api/auth/verify-insurance", json={"insuranceNumber": "123456"})

    assert response.status_code == 200
    assert response.json() == {"exists": False}


def test_verify_upstream_failure_is_500(api, fake_amg):
    fake_amg.reply("GET", "/Patient", payload=bundle())
    fake_amg.reply("GET", "/Patient/123456", status=500, text="database down")

    response = api.post("/api/auth/verify-insurance", json={"insuranceNumber": "123456"})

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "Failed to verify insurance number"
    assert "database down" in body["details"]


def test_verify_login_failure_is_500(api, fake_amg):
    fake_amg.reply("POST", "/login/", status=401, text="bad credentials")

    response = api.post("/api/auth/verify-insurance", json={"insuranceNumber": "123456"})

    assert response.status_code == 500
    assert response.json()["error"] == "Authentication failed"


def test_verify_unexpected_error_is_500(api, monkeypatch):
    async def boom(*args, **kwargs):
        raise RuntimeError("kaboom")

    monkeypatch.setattr(verification, "verify_insurance", boom)

    response = api.post("/api/auth/verify-insurance", json={"insuranceNumber": "123456"})

    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error", "details": "kaboom"}


# ---------------------------------------------------------------------------
# Policy status and payment history
# ---------------------------------------------------------------------------


def test_policy_status(api, fake_amg):
    fake_amg.reply("GET", "/Patient/123456", payload=patient_resource())
    fake_amg.graphql("policiesByFamily", payload=family_policy(status=3))

    response = api.post("/api/amg/policy-status", json={"insuranceNumber": "123456"})

    assert response.status_code == 200
    body = response.json()
    assert body["policyStatus"] == "SUSPENDED"
    assert body["coverageStatusGraphQL"] == "inactive"


def test_policy_status_requires_insurance_number(api):
    assert api.post("/api/amg/policy-status", json={}).status_code == 400


def test_payment_history_endpoint(api):
    response = api.post("/api/amg/payments", json={"insuranceNumber": "123456"})
    assert response.status_code == 200
    assert response.json()["payments"] == []


# ---------------------------------------------------------------------------
# HOLO
# ---------------------------------------------------------------------------


def test_init_payment_validation_error(api):
    response = api.post("/api/holo/init-payment", json={"amount": 10})
    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "insuranceNumber is required"}


def test_init_payment_test_mode(api, monkeypatch):
    monkeypatch.setattr(settings, "holo_mode", "test")
    response = api.post("/api/holo/init-payment", json={"insuranceNumber": "123456", "amount": 10})
    assert response.status_code == 200
    assert response.json()["testMode"] is True


def test_init_payment_unconfigured_production(api, monkeypatch):
    monkeypatch.setattr(settings, "holo_mode", "production")
    monkeypatch.setattr(settings, "holo_payment_url", "")
    response = api.post("/api/holo/init-payment", json={"insuranceNumber": "123456", "amount": 10})
    assert response.status_code == 500
    assert response.json() == {
        "success": False,
        "error": "HOLO payment not configured (HOLO_PAYMENT_URL, HOLO_MERCHANT_ID)",
    }


def test_holo_notification_answers_plain_ok(api):
    response = api.get("/api/holo/notification", params={"purchaseref": "123456", "status": "OK"})
    assert response.status_code == 200
    assert response.text == "OK"
    assert response.headers["content-type"].startswith("text/plain")


# ---------------------------------------------------------------------------
# Ops
# ---------------------------------------------------------------------------


def test_cors_preflight_allows_any_origin(api):
    response = api.options(
        "/api/auth/verify-insurance",
        headers={"Origin": "https://portal.example", "Access-Control-Request-Method": "POST"},
    )
    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "*"


def test_health(api):
    body = api.get("/health").json()
    assert body["status"] == "ok"
    assert body["policy_match"] == ["TEST"]
    assert "contract_sync" in body


def test_scheduler_jobs(api):
    response = api.get("/admin/scheduler/jobs")
    assert response.status_code == 200
    assert isinstance(response.json(), list)
