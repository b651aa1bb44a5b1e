"""
Billing Service - checkout, cancellation and webhook handling on top of the
entitlement reconciler
"""

import logging
from typing import Optional

from config.settings import settings, PLAN_ANNUAL
from services.billing_provider import BillingProvider, timestamp_to_datetime
from services.email_service import EmailService, pro_welcome_email, payment_failed_email
from services.entitlement_service import EntitlementService
from services.errors import BillingProviderError, UnresolvedEventError

logger = logging.getLogger(__name__)


class BillingService:
    """
    Service class for handling billing-related business logic.
    Methods return the normalized {"data": ..., "is_error": bool} shape used
    by the routers.
    """

    def __init__(self, entitlements: EntitlementService, provider: BillingProvider,
                 email_service: Optional[EmailService] = None):
        """
        Initialize the billing service.

        Args:
            entitlements: EntitlementService that owns all entitlement writes
            provider: Billing provider collaborator
            email_service: Optional EmailService for customer notifications
        """
        self.entitlements = entitlements
        self.provider = provider
        self.email_service = email_service or EmailService()

    async def create_checkout_session(self, user_id: str, email: Optional[str] = None, plan: str = "monthly"):
        """
        Create a subscription checkout session for a user.

        Reuses the customer already linked to the user, otherwise creates one
        at the provider (tagged with the userId) and links it locally first.

        Args:
            user_id: User starting checkout
            email: Email for the provider customer
            plan: "monthly" or "annual"

        Returns:
            Normalized response: {"data": {"session_id", "url"}, "is_error": False} or {"error": str, "is_error": True}
        """
        price_ref = self.entitlements.annual_price_ref if plan == PLAN_ANNUAL else self.entitlements.monthly_price_ref
        if not price_ref:
            logger.error(f"No price configured for plan {plan}. Cannot create checkout session.")
            return {"error": f"No price configured for plan {plan}", "is_error": True}

        try:
            repository = self.entitlements.repository
            record = await repository.get_or_create(user_id, self.entitlements.default_values(email=email))
            customer_ref = record.external_customer_ref
            if not customer_ref:
                customer_ref = await self.provider.create_customer(email, {"userId": user_id})
                await repository.update(user_id, {"external_customer_ref": customer_ref})
                logger.info(f"Created billing customer {customer_ref} for user {user_id}")

            domain = settings.domain.rstrip("/")
            session = await self.provider.create_checkout_session(
                customer_ref,
                price_ref,
                success_url=f"{domain}/pricing-success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{domain}/pricing",
                metadata={"userId": user_id},
            )
            return {"data": {"session_id": session.session_id, "url": session.url}, "is_error": False}
        except BillingProviderError as e:
            logger.error(f"Failed to create checkout session for user {user_id}: {e}")
            return {"error": str(e), "is_error": True}

    async def verify_checkout_session(self, session_id: str):
        """
        Confirm a checkout the client reports as finished and apply it.

        Covers the case where the user returns before the webhook arrives;
        applying the same checkout twice is harmless.
        """
        try:
            session = await self.provider.retrieve_checkout_session(session_id)
        except BillingProviderError as e:
            logger.error(f"Failed to retrieve checkout session {session_id}: {e}")
            return {"error": str(e), "is_error": True}

        if session.status != "complete" or session.payment_status != "paid" or not session.subscription_ref:
            logger.info(f"Checkout session {session_id} not complete: status={session.status} payment={session.payment_status}")
            return {"error": "Checkout session is not complete", "is_error": True}

        try:
            view = await self.entitlements.apply_checkout_completed(session.customer_ref, session.subscription_ref)
        except UnresolvedEventError as e:
            logger.warning(str(e))
            return {"error": "No user linked to this checkout", "is_error": True}
        return {"data": view, "is_error": False}

    async def cancel_subscription(self, user_id: str):
        """
        Cancel the user's subscription at the end of the paid period.

        Access is kept until the provider reports the subscription deleted.
        """
        record = await self.entitlements.repository.get(user_id)
        if record is None or not record.external_subscription_ref:
            return {"error": "No active subscription found", "is_error": True}
        try:
            subscription = await self.provider.cancel_subscription_at_period_end(record.external_subscription_ref)
        except BillingProviderError as e:
            logger.error(f"Failed to cancel subscription for user {user_id}: {e}")
            return {"error": str(e), "is_error": True}

        await self.entitlements.repository.update(user_id, {"cancel_at_period_end": True})
        logger.info(f"Subscription {subscription.ref} for user {user_id} will cancel at period end")
        return {
            "data": {"cancel_at_period_end": True, "current_period_end": subscription.current_period_end},
            "is_error": False,
        }

    async def create_billing_portal_session(self, user_id: str):
        """
        Create a billing portal session for the user's linked customer.

        Returns:
            Normalized response: {"data": url, "is_error": False} or {"error": str(e), "is_error": True}
        """
        record = await self.entitlements.repository.get(user_id)
        if record is None or not record.external_customer_ref:
            return {"error": "Stripe customer ID is required.", "is_error": True}
        try:
            frontend_url = settings.frontend_url or "http://localhost:5173"
            url = await self.provider.create_billing_portal_session(
                record.external_customer_ref, return_url=f"{frontend_url}/settings"
            )
            return {"data": url, "is_error": False}
        except BillingProviderError as e:
            logger.error(f"Failed to create billing portal session: {e}", exc_info=True)
            return {"error": str(e), "is_error": True}

    async def process_webhook(self, event: dict):
        """
        Process a verified billing webhook event.

        Events for customers that map to no user are logged and dropped;
        nothing here asks the provider to redeliver.

        Args:
            event: Verified event payload (from verify_and_parse_event)

        Returns:
            Normalized response: {"data": {"handled": bool}, "is_error": False} or {"error": str(e), "is_error": True}
        """
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        logger.info(f"Processing billing webhook event: {event_type} ({event.get('id')})")

        try:
            if event_type == "checkout.session.completed":
                view = await self.entitlements.apply_checkout_completed(obj.get("customer"), obj.get("subscription"))
                record = await self.entitlements.repository.get(view.user_id)
                subject, body = pro_welcome_email(view.subscription_plan.value)
                await self.email_service.send(record.email if record else None, subject, body)

            elif event_type == "customer.subscription.updated":
                items = (obj.get("items") or {}).get("data") or [{}]
                price = items[0].get("price") or {}
                await self.entitlements.apply_subscription_updated(
                    obj.get("customer"),
                    obj.get("status"),
                    price.get("id"),
                    timestamp_to_datetime(obj.get("current_period_end") or items[0].get("current_period_end")),
                    subscription_ref=obj.get("id"),
                    cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
                )

            elif event_type == "customer.subscription.deleted":
                await self.entitlements.apply_subscription_deleted(obj.get("customer"))

            elif event_type == "invoice.payment_succeeded":
                if not obj.get("subscription"):
                    return {"data": {"handled": False}, "is_error": False}
                await self.entitlements.apply_invoice_paid(obj.get("customer"), obj.get("subscription"))

            elif event_type == "invoice.payment_failed":
                if not obj.get("subscription"):
                    return {"data": {"handled": False}, "is_error": False}
                view = await self.entitlements.apply_invoice_payment_failed(obj.get("customer"))
                record = await self.entitlements.repository.get(view.user_id)
                subject, body = payment_failed_email()
                await self.email_service.send(record.email if record else None, subject, body)

            else:
                logger.info(f"Ignoring unhandled billing event type: {event_type}")
                return {"data": {"handled": False}, "is_error": False}

        except UnresolvedEventError as e:
            logger.warning(f"Dropping unresolved billing event {event.get('id')}: {e}")
            return {"data": {"handled": False, "unresolved": True}, "is_error": False}
        except Exception as e:
            logger.error(f"Error processing webhook {event_type}: {e}", exc_info=True)
            return {"error": str(e), "is_error": True}

        return {"data": {"handled": True}, "is_error": False}
