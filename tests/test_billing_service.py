"""
Unit tests for BillingService checkout, cancellation and webhook dispatch
"""
import pytest

from tests.conftest import ANNUAL_PRICE, MONTHLY_PRICE, webhook_event


@pytest.mark.asyncio
async def test_checkout_session_creates_and_links_customer(billing_service, provider, repository):
    result = await billing_service.create_checkout_session("user-1", "user1@example.com", "annual")

    assert result["is_error"] is False
    assert result["data"]["url"].startswith("https://checkout.test/")

    record = await repository.get("user-1")
    assert record.external_customer_ref == "cus_1"
    assert provider.customers["cus_1"]["userId"] == "user-1"

    session = provider.checkout_sessions[result["data"]["session_id"]]
    assert session.metadata["price"] == ANNUAL_PRICE
    assert session.metadata["success_url"].endswith("/pricing-success?session_id={CHECKOUT_SESSION_ID}")
    assert session.metadata["cancel_url"].endswith("/pricing")


@pytest.mark.asyncio
async def test_checkout_session_reuses_linked_customer(billing_service, provider):
    await billing_service.create_checkout_session("user-1", "user1@example.com")
    result = await billing_service.create_checkout_session("user-1", "user1@example.com")

    assert result["is_error"] is False
    assert len(provider.customers) == 1
    assert provider.checkout_sessions[result["data"]["session_id"]].metadata["price"] == MONTHLY_PRICE


@pytest.mark.asyncio
async def test_checkout_session_reports_unavailable_provider(billing_service, provider):
    provider.unavailable = True

    result = await billing_service.create_checkout_session("user-1", "user1@example.com")

    assert result["is_error"] is True


@pytest.mark.asyncio
async def test_verify_session_applies_completed_checkout(billing_service, provider):
    created = await billing_service.create_checkout_session("user-1", "user1@example.com")
    session_id = created["data"]["session_id"]

    pending = await billing_service.verify_checkout_session(session_id)
    assert pending["is_error"] is True

    provider.complete_checkout(session_id, "sub_1")
    result = await billing_service.verify_checkout_session(session_id)

    assert result["is_error"] is False
    assert result["data"].is_pro is True
    assert result["data"].subscription_plan.value == "monthly"


@pytest.mark.asyncio
async def test_cancel_subscription_keeps_access_until_period_end(billing_service, entitlements, provider, repository):
    provider.add_customer("cus_1", user_id="user-1")
    provider.add_subscription("sub_1", "cus_1")
    await entitlements.apply_checkout_completed("cus_1", "sub_1")

    result = await billing_service.cancel_subscription("user-1")

    assert result["is_error"] is False
    assert provider.subscriptions["sub_1"].cancel_at_period_end is True
    record = await repository.get("user-1")
    assert record.cancel_at_period_end is True
    assert record.is_pro is True


@pytest.mark.asyncio
async def test_cancel_without_subscription_is_an_error(billing_service):
    result = await billing_service.cancel_subscription("user-without-subscription")

    assert result["is_error"] is True


@pytest.mark.asyncio
async def test_portal_requires_linked_customer(billing_service):
    result = await billing_service.create_billing_portal_session("user-1")
    assert result["is_error"] is True

    await billing_service.create_checkout_session("user-1", "user1@example.com")
    result = await billing_service.create_billing_portal_session("user-1")
    assert result["is_error"] is False
    assert result["data"].startswith("https://billing.test/cus_1")


@pytest.mark.asyncio
async def test_checkout_webhook_grants_pro_and_sends_welcome_email(billing_service, entitlements, provider, email_service):
    provider.add_customer("cus_1", user_id="user-1", email="user1@example.com")
    provider.add_subscription("sub_1", "cus_1")
    event = webhook_event("checkout.session.completed", {"customer": "cus_1", "subscription": "sub_1"})

    result = await billing_service.process_webhook(event)

    assert result == {"data": {"handled": True}, "is_error": False}
    assert (await entitlements.get_entitlement("user-1")).is_pro is True
    assert email_service.sent[0]["to"] == "user1@example.com"


@pytest.mark.asyncio
async def test_subscription_updated_webhook(billing_service, entitlements, provider):
    provider.add_customer("cus_1", user_id="user-1")
    provider.add_subscription("sub_1", "cus_1")
    await entitlements.apply_checkout_completed("cus_1", "sub_1")
    provider.subscriptions["sub_1"].status = "past_due"

    event = webhook_event("customer.subscription.updated", {
        "id": "sub_1",
        "customer": "cus_1",
        "status": "past_due",
        "current_period_end": 1780000000,
        "cancel_at_period_end": False,
        "items": {"data": [{"price": {"id": ANNUAL_PRICE}}]},
    })
    result = await billing_service.process_webhook(event)

    assert result["data"]["handled"] is True
    view = await entitlements.get_entitlement("user-1")
    assert view.is_pro is False
    assert view.subscription_status.value == "past_due"
    assert view.subscription_plan.value == "annual"


@pytest.mark.asyncio
async def test_payment_failed_webhook_sends_notice(billing_service, entitlements, provider, email_service):
    provider.add_customer("cus_1", user_id="user-1", email="user1@example.com")
    provider.add_subscription("sub_1", "cus_1")
    await entitlements.apply_checkout_completed("cus_1", "sub_1")

    event = webhook_event("invoice.payment_failed", {"customer": "cus_1", "subscription": "sub_1"})
    result = await billing_service.process_webhook(event)

    assert result["data"]["handled"] is True
    assert email_service.sent[-1]["subject"] == "Your FishCAD Pro payment failed"


@pytest.mark.asyncio
async def test_unresolved_webhook_is_dropped(billing_service):
    event = webhook_event("customer.subscription.deleted", {"customer": "cus_missing"})

    result = await billing_service.process_webhook(event)

    assert result == {"data": {"handled": False, "unresolved": True}, "is_error": False}


@pytest.mark.asyncio
async def test_unhandled_event_type_is_ignored(billing_service):
    result = await billing_service.process_webhook(webhook_event("customer.created", {"id": "cus_1"}))

    assert result == {"data": {"handled": False}, "is_error": False}
