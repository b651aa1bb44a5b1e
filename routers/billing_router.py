"""
Billing Router - API endpoints for Stripe checkout, cancellation and webhooks
Webhook is defined FIRST to avoid middleware conflicts
"""

import logging
from typing import Optional

from fastapi import APIRouter, Request, Depends, Body
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config.settings import settings
from dependencies import get_billing_provider, get_billing_service
from services.billing_provider import BillingProvider
from services.billing_service import BillingService
from services.errors import SignatureError
from utils.responses import success_response, error_response

logger = logging.getLogger(__name__)

# Create billing router
billing_router = APIRouter(prefix="/api/pricing", tags=["billing"])


class CheckoutRequest(BaseModel):
    user_id: str
    email: Optional[str] = None
    plan: str = "monthly"


class VerifySessionRequest(BaseModel):
    session_id: str


class UserRequest(BaseModel):
    user_id: str


# WEBHOOK ENDPOINT - MUST BE DEFINED FIRST TO AVOID MIDDLEWARE CONFLICTS
@billing_router.post("/webhook")
async def stripe_webhook(
    request: Request,
    provider: BillingProvider = Depends(get_billing_provider),
    billing_service: BillingService = Depends(get_billing_service),
):
    """
    Handle Stripe webhook events with signature verification.

    Unverified payloads are rejected with 400 before any processing.
    Verified events always get 200: processing failures and events for
    unknown customers are logged, not retried.

    Args:
        request: FastAPI Request object (for raw body)

    Returns:
        JSON response
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        event = provider.verify_and_parse_event(payload, signature, settings.stripe_webhook_secret)
    except SignatureError as e:
        logger.error(f"Stripe webhook rejected: {e}")
        return JSONResponse(
            status_code=400,
            content={"ok": False, "received": False, "error": str(e)}
        )

    result = await billing_service.process_webhook(event)
    return JSONResponse(
        status_code=200,
        content={
            "ok": not result.get("is_error", True),
            "received": True,
            "event_type": event.get("type"),
        }
    )


@billing_router.post("/create-checkout-session")
async def create_checkout_session(
    body: CheckoutRequest = Body(...),
    billing_service: BillingService = Depends(get_billing_service),
):
    """Create a subscription checkout session and return its URL."""
    result = await billing_service.create_checkout_session(body.user_id, body.email, body.plan)
    if result.get("is_error"):
        return error_response("CHECKOUT_ERROR", 400, result.get("error", "Unknown error"))
    return success_response(result["data"])


@billing_router.post("/verify-session")
async def verify_checkout_session(
    body: VerifySessionRequest = Body(...),
    billing_service: BillingService = Depends(get_billing_service),
):
    """Confirm a finished checkout and return the updated subscription."""
    result = await billing_service.verify_checkout_session(body.session_id)
    if result.get("is_error"):
        return error_response("CHECKOUT_NOT_VERIFIED", 400, result.get("error", "Unknown error"))
    return success_response(result["data"].to_response(), message="Subscription verified")


@billing_router.post("/cancel-subscription")
async def cancel_subscription(
    body: UserRequest = Body(...),
    billing_service: BillingService = Depends(get_billing_service),
):
    result = await billing_service.cancel_subscription(body.user_id)
    if result.get("is_error"):
        return error_response("CANCEL_ERROR", 400, result.get("error", "Unknown error"))
    data = result["data"]
    period_end = data.get("current_period_end")
    return success_response(
        {
            "cancelAtPeriodEnd": True,
            "currentPeriodEnd": period_end.isoformat() if period_end else None,
        },
        message="Subscription will be canceled at the end of the billing period",
    )


@billing_router.post("/portal")
async def create_billing_portal_session(
    body: UserRequest = Body(...),
    billing_service: BillingService = Depends(get_billing_service),
):
    """
    Create a Stripe Billing Portal session for the user's customer.

    Returns:
        JSON response with portal session URL
    """
    result = await billing_service.create_billing_portal_session(body.user_id)
    if result.get("is_error"):
        return error_response("PORTAL_ERROR", 400, result.get("error", "Unknown error"))
    return success_response({"url": result["data"]})
