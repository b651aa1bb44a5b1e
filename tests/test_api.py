"""
Integration tests for the HTTP and websocket surface

Tests cover:
- Webhook signature rejection and event handling
- Subscription reads, trial setup and usage endpoints
- Checkout, cancellation and billing portal endpoints
- STL upload, status, download and the import status websocket
"""
import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from main import app
from crud.entitlement import EntitlementRepository
from dependencies import get_billing_provider, get_email_service, get_entitlement_service, get_import_jobs
from jobs.import_job_manager import ImportJobManager
from services.entitlement_service import EntitlementService
from tests.conftest import (
    ANNUAL_PRICE,
    BINARY_STL,
    FREE_QUOTA,
    MONTHLY_PRICE,
    VALID_SIGNATURE,
    FakeBillingProvider,
    RecordingEmailService,
    create_session_factory,
    create_tables,
    create_test_engine,
    webhook_event,
)


@pytest.fixture
def api_provider():
    return FakeBillingProvider()


@pytest.fixture
def client(tmp_path, blob_store, api_provider):
    """FastAPI TestClient fixture with test database, fake provider and temp uploads"""
    engine = create_test_engine(tmp_path / "api.db")
    asyncio.run(create_tables(engine))
    session_factory = create_session_factory(engine)
    import_jobs = ImportJobManager(blob_store=blob_store, download_timeout=5)

    def override_entitlement_service():
        return EntitlementService(
            EntitlementRepository(session_factory),
            api_provider,
            free_quota=FREE_QUOTA,
            monthly_price_ref=MONTHLY_PRICE,
            annual_price_ref=ANNUAL_PRICE,
        )

    # Override dependencies
    app.dependency_overrides[get_entitlement_service] = override_entitlement_service
    app.dependency_overrides[get_billing_provider] = lambda: api_provider
    app.dependency_overrides[get_email_service] = RecordingEmailService
    app.dependency_overrides[get_import_jobs] = lambda: import_jobs

    yield TestClient(app)

    # Clean up overrides
    app.dependency_overrides.clear()
    asyncio.run(engine.dispose())


def post_webhook(client, event, signature=VALID_SIGNATURE):
    return client.post(
        "/api/pricing/webhook",
        content=json.dumps(event),
        headers={"stripe-signature": signature, "content-type": "application/json"},
    )


def upload(client, content=BINARY_STL, filename="part.stl", content_type="model/stl", **form):
    return client.post("/api/upload", files={"file": (filename, content, content_type)}, data=form)


# ============================================================================
# Billing webhook
# ============================================================================

def test_webhook_rejects_bad_signature(client, api_provider):
    api_provider.add_customer("cus_1", user_id="user-1")
    event = webhook_event("checkout.session.completed", {"customer": "cus_1", "subscription": None})

    response = post_webhook(client, event, signature="t=1,v1=forged")

    assert response.status_code == 400
    assert response.json()["received"] is False
    subscription = client.get("/api/pricing/user-subscription/user-1").json()["data"]
    assert subscription["isPro"] is False


def test_webhook_rejects_missing_signature(client):
    response = client.post("/api/pricing/webhook", content=b"{}")

    assert response.status_code == 400


def test_webhook_checkout_grants_pro(client, api_provider):
    api_provider.add_customer("cus_1", user_id="user-1", email="user1@example.com")
    api_provider.add_subscription("sub_1", "cus_1", price_ref=ANNUAL_PRICE)
    event = webhook_event("checkout.session.completed", {"customer": "cus_1", "subscription": "sub_1"})

    response = post_webhook(client, event)

    assert response.status_code == 200
    assert response.json() == {"ok": True, "received": True, "event_type": "checkout.session.completed"}
    data = client.get("/api/pricing/user-subscription/user-1").json()["data"]
    assert data["isPro"] is True
    assert data["subscriptionPlan"] == "annual"
    assert data["modelsRemainingThisMonth"] == 999999


def test_webhook_for_unknown_customer_is_acknowledged(client):
    event = webhook_event("customer.subscription.deleted", {"customer": "cus_nobody"})

    response = post_webhook(client, event)

    assert response.status_code == 200
    assert response.json()["received"] is True


# ============================================================================
# Subscription, trial and usage
# ============================================================================

def test_user_subscription_defaults_to_free(client):
    response = client.get("/api/pricing/user-subscription/new-user")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["isPro"] is False
    assert data["modelsRemainingThisMonth"] == FREE_QUOTA
    assert data["subscriptionStatus"] == "none"
    assert data["trialActive"] is False


def test_setup_trial_only_once(client):
    first = client.post("/api/auth/setup-trial", json={"user_id": "user-1", "email": "user1@example.com"})
    assert first.status_code == 200
    assert first.json()["data"]["isPro"] is True
    assert first.json()["data"]["subscriptionStatus"] == "trialing"

    second = client.post("/api/auth/setup-trial", json={"user_id": "user-1"})
    assert second.status_code == 409
    assert second.json()["error"] == "TRIAL_ALREADY_USED"


def test_setup_trial_refused_for_subscriber(client, api_provider):
    api_provider.add_customer("cus_1", user_id="user-1")
    api_provider.add_subscription("sub_1", "cus_1", price_ref=ANNUAL_PRICE)
    post_webhook(client, webhook_event("checkout.session.completed", {"customer": "cus_1", "subscription": "sub_1"}))

    response = client.post("/api/auth/setup-trial", json={"user_id": "user-1"})

    assert response.status_code == 409
    assert response.json()["error"] == "ALREADY_SUBSCRIBED"
    data = client.get("/api/pricing/user-subscription/user-1").json()["data"]
    assert data["subscriptionPlan"] == "annual"
    assert data["trialActive"] is False


def test_generation_quota_is_enforced(client):
    for remaining in range(FREE_QUOTA - 1, -1, -1):
        response = client.post("/api/usage/generate", json={"user_id": "user-1"})
        assert response.status_code == 200
        assert response.json()["data"]["modelsRemainingThisMonth"] == remaining

    response = client.post("/api/usage/generate", json={"user_id": "user-1"})
    assert response.status_code == 402
    assert response.json()["error"] == "QUOTA_EXHAUSTED"


def test_record_download(client):
    client.post("/api/usage/download", json={"user_id": "user-1"})
    response = client.post("/api/usage/download", json={"user_id": "user-1"})

    assert response.status_code == 200
    assert response.json()["data"]["downloadsThisMonth"] == 2


# ============================================================================
# Checkout, cancellation and portal
# ============================================================================

def test_checkout_verify_cancel_flow(client, api_provider):
    created = client.post(
        "/api/pricing/create-checkout-session",
        json={"user_id": "user-1", "email": "user1@example.com", "plan": "monthly"},
    )
    assert created.status_code == 200
    session_id = created.json()["data"]["session_id"]

    api_provider.complete_checkout(session_id, "sub_1")
    verified = client.post("/api/pricing/verify-session", json={"session_id": session_id})
    assert verified.status_code == 200
    assert verified.json()["data"]["isPro"] is True

    canceled = client.post("/api/pricing/cancel-subscription", json={"user_id": "user-1"})
    assert canceled.status_code == 200
    assert canceled.json()["data"]["cancelAtPeriodEnd"] is True

    portal = client.post("/api/pricing/portal", json={"user_id": "user-1"})
    assert portal.status_code == 200
    assert portal.json()["data"]["url"].startswith("https://billing.test/")


def test_verify_unknown_session_fails(client):
    response = client.post("/api/pricing/verify-session", json={"session_id": "cs_missing"})

    assert response.status_code == 400
    assert response.json()["ok"] is False


# ============================================================================
# STL imports
# ============================================================================

def test_import_stl_requires_url(client):
    response = client.post("/api/import-stl", json={"fileName": "part.stl"})

    assert response.status_code == 422


def test_upload_and_download_model(client):
    response = upload(client, source="desktop", metadata=json.dumps({"origin": "test"}))

    assert response.status_code == 200
    data = response.json()["data"]
    import_id = data["importId"]
    assert data["job"]["status"] == "completed"
    assert data["job"]["source"] == "desktop"
    assert data["job"]["metadata"] == {"origin": "test"}

    status = client.get(f"/api/import-status/{import_id}")
    assert status.status_code == 200
    assert status.json()["data"]["job"]["status"] == "completed"

    model = client.get(f"/api/models/{import_id}")
    assert model.status_code == 200
    assert model.content == BINARY_STL
    assert "part.stl" in model.headers["content-disposition"]


def test_signed_download_url(client):
    import_id = upload(client).json()["data"]["importId"]
    download_url = client.get(f"/api/import-status/{import_id}").json()["data"]["downloadUrl"]

    response = client.get(download_url)
    assert response.status_code == 200
    assert response.content == BINARY_STL

    tampered = download_url.rsplit("signature=", 1)[0] + "signature=forged"
    assert client.get(tampered).status_code == 403


def test_upload_rejects_non_stl_file(client):
    response = upload(client, content=b"hello", filename="notes.txt", content_type="text/plain")

    assert response.status_code == 400
    assert response.json()["detail"] == "Only STL files are allowed"


def test_upload_with_invalid_content_fails_job(client):
    response = upload(client, content=b"this is not a mesh", filename="broken.stl")

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "INVALID_STL"
    assert body["data"]["job"]["status"] == "failed"


def test_unknown_import_is_404(client):
    assert client.get("/api/import-status/missing").status_code == 404
    assert client.get("/api/models/missing").status_code == 404


def test_import_websocket_replays_until_terminal(client):
    import_id = upload(client).json()["data"]["importId"]

    with client.websocket_connect(f"/ws/import/{import_id}") as websocket:
        events = [websocket.receive_json() for _ in range(3)]

    assert [e["event"] for e in events] == ["import-status-update", "import-status-update", "import-completed"]
    assert [e.get("status") for e in events[:2]] == ["processing", "completed"]
    assert events[2]["job"]["file_path"] is not None


def test_import_websocket_unknown_job(client):
    with client.websocket_connect("/ws/import/missing") as websocket:
        assert websocket.receive_json() == {"error": "Import job not found"}
