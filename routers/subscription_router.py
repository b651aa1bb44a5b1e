"""
Subscription Router - entitlement reads, trial start and usage counters
"""
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel

from dependencies import get_entitlement_service
from services.entitlement_service import EntitlementService
from services.errors import BillingError
from utils.responses import success_response, billing_error_response

logger = logging.getLogger(__name__)

subscription_router = APIRouter(tags=["subscription"])


class TrialRequest(BaseModel):
    user_id: str
    email: Optional[str] = None


class UsageRequest(BaseModel):
    user_id: str


@subscription_router.get("/api/pricing/user-subscription/{user_id}")
async def get_user_subscription(
    user_id: str,
    entitlements: EntitlementService = Depends(get_entitlement_service),
):
    """Current subscription, trial and usage state for a user."""
    view = await entitlements.get_entitlement(user_id)
    return success_response(view.to_response())


@subscription_router.post("/api/auth/setup-trial")
async def setup_trial(
    body: TrialRequest = Body(...),
    entitlements: EntitlementService = Depends(get_entitlement_service),
):
    try:
        view = await entitlements.start_trial(body.user_id, body.email)
    except BillingError as e:
        return billing_error_response(e)
    return success_response(view.to_response(), message="Trial setup successful")


@subscription_router.post("/api/usage/generate")
async def record_generation(
    body: UsageRequest = Body(...),
    entitlements: EntitlementService = Depends(get_entitlement_service),
):
    """Consume one model generation from the user's monthly allowance."""
    try:
        counters = await entitlements.decrement_generation_quota(body.user_id)
    except BillingError as e:
        logger.info(f"Generation refused for user {body.user_id}: {e}")
        return billing_error_response(e)
    return success_response(counters.to_response())


@subscription_router.post("/api/usage/download")
async def record_download(
    body: UsageRequest = Body(...),
    entitlements: EntitlementService = Depends(get_entitlement_service),
):
    counters = await entitlements.record_download(body.user_id)
    return success_response(counters.to_response())
