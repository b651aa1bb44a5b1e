"""
Billing provider collaborator - abstract contract plus the Stripe implementation
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

import stripe

from config.settings import settings
from services.errors import BillingProviderError, ProviderUnavailableError, SignatureError

logger = logging.getLogger(__name__)


@dataclass
class ProviderSubscription:
    ref: str
    customer_ref: Optional[str]
    status: str
    current_period_end: Optional[datetime] = None
    price_ref: Optional[str] = None
    cancel_at_period_end: bool = False
    metadata: dict = field(default_factory=dict)


@dataclass
class ProviderCheckoutSession:
    session_id: str
    url: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    subscription_ref: Optional[str] = None
    customer_ref: Optional[str] = None
    metadata: dict = field(default_factory=dict)


def timestamp_to_datetime(value) -> Optional[datetime]:
    """Convert a provider epoch-seconds timestamp into a naive UTC datetime."""
    if value is None:
        return None
    return datetime.utcfromtimestamp(int(value))


class BillingProvider(ABC):
    """
    Contract for the external subscription/payment service.

    Implementations must bound every network call and raise
    ProviderUnavailableError when the provider cannot answer in time.
    """

    @abstractmethod
    async def create_customer(self, email: Optional[str], metadata: dict) -> str:
        ...

    @abstractmethod
    async def retrieve_customer_metadata(self, customer_ref: str) -> dict:
        ...

    @abstractmethod
    async def retrieve_subscription(self, subscription_ref: str) -> ProviderSubscription:
        ...

    @abstractmethod
    async def list_active_subscriptions(self, customer_ref: str) -> List[ProviderSubscription]:
        ...

    @abstractmethod
    async def create_checkout_session(
        self,
        customer_ref: str,
        price_ref: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[dict] = None,
    ) -> ProviderCheckoutSession:
        ...

    @abstractmethod
    async def retrieve_checkout_session(self, session_id: str) -> ProviderCheckoutSession:
        ...

    @abstractmethod
    async def cancel_subscription_at_period_end(self, subscription_ref: str) -> ProviderSubscription:
        ...

    @abstractmethod
    async def create_billing_portal_session(self, customer_ref: str, return_url: str) -> str:
        ...

    @abstractmethod
    def verify_and_parse_event(self, raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> dict:
        ...


def subscription_from_stripe(obj) -> ProviderSubscription:
    """Flatten a Stripe Subscription object into a ProviderSubscription."""
    items = (obj.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}
    price = first_item.get("price") or {}
    # Newer API versions moved the billing period onto the subscription items
    period_end = obj.get("current_period_end") or first_item.get("current_period_end")
    customer = obj.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")
    return ProviderSubscription(
        ref=obj["id"],
        customer_ref=customer,
        status=obj.get("status") or "none",
        current_period_end=timestamp_to_datetime(period_end),
        price_ref=price.get("id") if isinstance(price, dict) else price,
        cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        metadata=dict(obj.get("metadata") or {}),
    )


def checkout_session_from_stripe(obj) -> ProviderCheckoutSession:
    subscription = obj.get("subscription")
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    customer = obj.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")
    return ProviderCheckoutSession(
        session_id=obj["id"],
        url=obj.get("url"),
        status=obj.get("status"),
        payment_status=obj.get("payment_status"),
        subscription_ref=subscription,
        customer_ref=customer,
        metadata=dict(obj.get("metadata") or {}),
    )


class StripeBillingProvider(BillingProvider):
    """
    Stripe-backed billing provider.

    The Stripe SDK is synchronous, so each call runs in a worker thread and
    is bounded by `timeout` seconds.
    """

    def __init__(self, api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.api_key = api_key or settings.stripe_secret_key
        self.timeout = timeout or settings.billing_timeout_seconds
        if not self.api_key:
            logger.warning("STRIPE_SECRET_KEY is not set. Stripe functionality will be unavailable.")

    async def _call(self, description: str, fn, *args, **kwargs):
        if not self.api_key:
            raise ProviderUnavailableError("STRIPE_SECRET_KEY is not set")
        kwargs.setdefault("api_key", self.api_key)
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Stripe {description} timed out after {self.timeout}s")
            raise ProviderUnavailableError(f"Stripe {description} timed out")
        except (stripe.APIConnectionError, stripe.AuthenticationError, stripe.RateLimitError) as e:
            logger.warning(f"Stripe {description} unavailable: {e}")
            raise ProviderUnavailableError(str(e)) from e
        except stripe.StripeError as e:
            logger.error(f"Stripe {description} failed: {e}")
            raise BillingProviderError(str(e)) from e

    async def create_customer(self, email: Optional[str], metadata: dict) -> str:
        customer = await self._call("customer create", stripe.Customer.create, email=email, metadata=metadata)
        return customer["id"]

    async def retrieve_customer_metadata(self, customer_ref: str) -> dict:
        customer = await self._call("customer retrieve", stripe.Customer.retrieve, customer_ref)
        return dict(customer.get("metadata") or {})

    async def retrieve_subscription(self, subscription_ref: str) -> ProviderSubscription:
        subscription = await self._call("subscription retrieve", stripe.Subscription.retrieve, subscription_ref)
        return subscription_from_stripe(subscription)

    async def list_active_subscriptions(self, customer_ref: str) -> List[ProviderSubscription]:
        result = await self._call(
            "subscription list", stripe.Subscription.list, customer=customer_ref, status="active", limit=10
        )
        return [subscription_from_stripe(sub) for sub in result["data"]]

    async def create_checkout_session(
        self,
        customer_ref: str,
        price_ref: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[dict] = None,
    ) -> ProviderCheckoutSession:
        session = await self._call(
            "checkout session create",
            stripe.checkout.Session.create,
            customer=customer_ref,
            line_items=[{"price": price_ref, "quantity": 1}],
            mode="subscription",
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata or {},
            subscription_data={"metadata": metadata or {}},
        )
        return checkout_session_from_stripe(session)

    async def retrieve_checkout_session(self, session_id: str) -> ProviderCheckoutSession:
        session = await self._call("checkout session retrieve", stripe.checkout.Session.retrieve, session_id)
        return checkout_session_from_stripe(session)

    async def cancel_subscription_at_period_end(self, subscription_ref: str) -> ProviderSubscription:
        subscription = await self._call(
            "subscription cancel", stripe.Subscription.modify, subscription_ref, cancel_at_period_end=True
        )
        return subscription_from_stripe(subscription)

    async def create_billing_portal_session(self, customer_ref: str, return_url: str) -> str:
        portal_session = await self._call(
            "billing portal create", stripe.billing_portal.Session.create, customer=customer_ref, return_url=return_url
        )
        return portal_session["url"]

    def verify_and_parse_event(self, raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> dict:
        """
        Verify a webhook payload's signature and return the event as a plain dict.

        Raises:
            SignatureError: Missing secret/header, bad signature or malformed payload
        """
        if not secret:
            raise SignatureError("Webhook secret not configured")
        if not signature:
            raise SignatureError("Missing signature header")
        try:
            stripe.Webhook.construct_event(raw_body, signature, secret)
        except stripe.SignatureVerificationError as e:
            raise SignatureError(f"Invalid webhook signature: {e}") from e
        except ValueError as e:
            raise SignatureError(f"Invalid payload format: {e}") from e
        return json.loads(raw_body)
