"""
Entitlement Service - derives a user's Free/Trial/Pro state and keeps it in
step with the billing provider
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from config.settings import settings, PLAN_FREE, PLAN_MONTHLY, PLAN_ANNUAL
from crud.entitlement import EntitlementRepository
from database_models import UserEntitlement
from models.entitlement import (
    EntitlementView,
    SubscriptionStatus,
    UsageCounters,
    current_period,
    is_pro_status,
    normalize_provider_status,
)
from services.billing_provider import BillingProvider
from services.errors import BillingProviderError, QuotaExhaustedError, UnresolvedEventError
from services.trial_service import TrialService

logger = logging.getLogger(__name__)


class EntitlementService:
    """
    Reconciles locally stored entitlements with the billing provider.

    The provider is the source of truth whenever it can be reached; when it
    cannot, reads fall back to the stored row and never fail. Every event
    handler is idempotent: applying the same event twice gives the same row.
    """

    def __init__(
        self,
        repository: EntitlementRepository,
        provider: BillingProvider,
        free_quota: Optional[int] = None,
        monthly_price_ref: Optional[str] = None,
        annual_price_ref: Optional[str] = None,
        trial_service: Optional[TrialService] = None,
    ):
        """
        Initialize the entitlement service.

        Args:
            repository: Persistence store for entitlement rows
            provider: Billing provider collaborator
            free_quota: Monthly generations for free users (defaults to FREE_MODELS_PER_MONTH)
            monthly_price_ref: Provider price id of the monthly plan
            annual_price_ref: Provider price id of the annual plan
            trial_service: TrialService sharing the same repository
        """
        self.repository = repository
        self.provider = provider
        self.free_quota = free_quota if free_quota is not None else settings.free_models_per_month
        self.monthly_price_ref = monthly_price_ref or settings.stripe_price_monthly
        self.annual_price_ref = annual_price_ref or settings.stripe_price_annual
        self.trials = trial_service or TrialService(repository, free_quota=self.free_quota)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_entitlement(self, user_id: str) -> EntitlementView:
        """
        Return the user's current entitlement, correcting stale state on the way.

        1. Unknown users get a default free view (nothing is persisted).
        2. An overdue trial is downgraded and persisted.
        3. A linked subscription is checked against the provider; on
           disagreement the provider's status is stored and returned.

        Args:
            user_id: User to look up

        Returns:
            EntitlementView
        """
        record = await self.repository.get(user_id)
        if record is None:
            return EntitlementView.default_free(user_id, self.free_quota)

        record = await self.trials.expire_if_due(record)

        if record.external_subscription_ref:
            record = await self._reconcile_with_provider(record)
        elif record.external_customer_ref and not record.is_pro:
            record = await self._recover_subscription(record)

        return EntitlementView.from_record(record)

    async def _recover_subscription(self, record: UserEntitlement) -> UserEntitlement:
        """Adopt an active provider subscription whose checkout event never reached us."""
        try:
            subscriptions = await self.provider.list_active_subscriptions(record.external_customer_ref)
        except BillingProviderError as e:
            logger.warning(f"Billing provider unavailable for user {record.user_id}, using stored state: {e}")
            return record
        if not subscriptions:
            return record

        subscription = subscriptions[0]
        logger.info(f"Recovered active subscription {subscription.ref} for user {record.user_id}")
        values = self._status_values(record, normalize_provider_status(subscription.status))
        values.update({
            "subscription_plan": self.plan_for_price(subscription.price_ref),
            "external_subscription_ref": subscription.ref,
            "subscription_period_end": subscription.current_period_end,
            "cancel_at_period_end": subscription.cancel_at_period_end,
            "trial_active": False,
        })
        return await self._persist(record, values)

    async def _reconcile_with_provider(self, record: UserEntitlement) -> UserEntitlement:
        try:
            subscription = await self.provider.retrieve_subscription(record.external_subscription_ref)
        except BillingProviderError as e:
            logger.warning(f"Billing provider unavailable for user {record.user_id}, using stored state: {e}")
            return record

        status = normalize_provider_status(subscription.status)
        if status == record.subscription_status:
            return record

        logger.info(
            f"Subscription drift for user {record.user_id}: "
            f"stored={record.subscription_status} provider={status}"
        )
        values = self._status_values(record, status)
        values["subscription_period_end"] = subscription.current_period_end
        values["trial_active"] = False
        return await self._persist(record, values)

    # ------------------------------------------------------------------
    # Trial
    # ------------------------------------------------------------------

    async def start_trial(self, user_id: str, email: Optional[str] = None) -> EntitlementView:
        """
        Start the one-time Pro trial.

        Raises:
            AlreadyUsedError: The stored row shows the trial was consumed
            AlreadySubscribedError: The user already pays for a subscription
        """
        record = await self.trials.start_trial(user_id, self.default_values(email=email))
        return EntitlementView.from_record(record)

    # ------------------------------------------------------------------
    # Billing events
    # ------------------------------------------------------------------

    async def apply_checkout_completed(
        self,
        customer_ref: str,
        subscription_ref: Optional[str],
        price_ref: Optional[str] = None,
    ) -> EntitlementView:
        """
        Grant Pro after the provider reports a completed checkout.

        Args:
            customer_ref: Provider customer that paid
            subscription_ref: Subscription created by the checkout
            price_ref: Price that was purchased (read from the subscription if omitted)

        Raises:
            UnresolvedEventError: No local user could be found for the customer
        """
        record = await self.resolve_user(customer_ref, "checkout.session.completed")

        status = SubscriptionStatus.ACTIVE.value
        period_end = None
        if subscription_ref:
            try:
                subscription = await self.provider.retrieve_subscription(subscription_ref)
                status = normalize_provider_status(subscription.status)
                period_end = subscription.current_period_end
                price_ref = price_ref or subscription.price_ref
            except BillingProviderError as e:
                logger.warning(f"Could not load subscription {subscription_ref}, assuming active: {e}")

        values = self._status_values(record, status)
        values.update({
            "subscription_plan": self.plan_for_price(price_ref),
            "external_customer_ref": customer_ref,
            "external_subscription_ref": subscription_ref,
            "subscription_period_end": period_end,
            "cancel_at_period_end": False,
            "trial_active": False,
        })
        view = EntitlementView.from_record(await self._persist(record, values))
        logger.info(f"Checkout completed for user {record.user_id}: plan={view.subscription_plan.value}")
        return view

    async def apply_subscription_updated(
        self,
        customer_ref: str,
        new_status: str,
        price_ref: Optional[str],
        period_end: Optional[datetime],
        subscription_ref: Optional[str] = None,
        cancel_at_period_end: bool = False,
    ) -> EntitlementView:
        """
        Mirror a provider subscription update onto the user.

        Raises:
            UnresolvedEventError: No local user could be found for the customer
        """
        record = await self.resolve_user(customer_ref, "customer.subscription.updated")
        status = normalize_provider_status(new_status)
        values = self._status_values(record, status)
        values.update({
            "subscription_plan": self.plan_for_price(price_ref),
            "subscription_period_end": period_end,
            "cancel_at_period_end": cancel_at_period_end,
            "trial_active": False,
        })
        if subscription_ref:
            values["external_subscription_ref"] = subscription_ref
        return EntitlementView.from_record(await self._persist(record, values))

    async def apply_subscription_deleted(self, customer_ref: str) -> EntitlementView:
        """
        Downgrade the user to the free tier after the subscription ended.

        Raises:
            UnresolvedEventError: No local user could be found for the customer
        """
        record = await self.resolve_user(customer_ref, "customer.subscription.deleted")
        values = {
            "is_pro": False,
            "subscription_status": SubscriptionStatus.CANCELED.value,
            "subscription_plan": PLAN_FREE,
            "external_subscription_ref": None,
            "cancel_at_period_end": False,
            "trial_active": False,
            "models_remaining_this_month": self.free_quota,
        }
        view = EntitlementView.from_record(await self._persist(record, values))
        logger.info(f"Subscription deleted for user {record.user_id}, downgraded to free")
        return view

    async def apply_invoice_paid(self, customer_ref: str, subscription_ref: Optional[str]) -> EntitlementView:
        """
        Extend the paid period and start a fresh usage month for a renewing user.

        Raises:
            UnresolvedEventError: No local user could be found for the customer
        """
        record = await self.resolve_user(customer_ref, "invoice.payment_succeeded")
        values = {
            "models_generated_this_month": 0,
            "downloads_this_month": 0,
            "last_monthly_reset_period": current_period(),
        }
        if subscription_ref:
            try:
                subscription = await self.provider.retrieve_subscription(subscription_ref)
            except BillingProviderError as e:
                logger.warning(f"Could not refresh subscription {subscription_ref} after payment: {e}")
            else:
                values.update(self._status_values(record, normalize_provider_status(subscription.status)))
                values["subscription_period_end"] = subscription.current_period_end
                values["external_subscription_ref"] = subscription_ref
        if "models_remaining_this_month" not in values and not record.is_pro:
            values["models_remaining_this_month"] = self.free_quota
        return EntitlementView.from_record(await self._persist(record, values))

    async def apply_invoice_payment_failed(self, customer_ref: str) -> EntitlementView:
        """
        Mark the subscription past due; Pro access ends until payment succeeds.

        Raises:
            UnresolvedEventError: No local user could be found for the customer
        """
        record = await self.resolve_user(customer_ref, "invoice.payment_failed")
        values = self._status_values(record, SubscriptionStatus.PAST_DUE.value)
        view = EntitlementView.from_record(await self._persist(record, values))
        logger.warning(f"Payment failed for user {record.user_id}, subscription marked past_due")
        return view

    async def resolve_user(self, customer_ref: str, event_type: Optional[str] = None) -> UserEntitlement:
        """
        Find the user that owns a provider customer.

        Falls back to the userId stored in the provider customer's metadata
        when the local link has not been written yet, and links it.

        Raises:
            UnresolvedEventError: Neither lookup identified a user
        """
        if not customer_ref:
            raise UnresolvedEventError(customer_ref, event_type)

        record = await self.repository.get_by_customer_ref(customer_ref)
        if record is not None:
            return record

        try:
            metadata = await self.provider.retrieve_customer_metadata(customer_ref)
        except BillingProviderError as e:
            logger.warning(f"Customer metadata lookup failed for {customer_ref}: {e}")
            metadata = {}

        user_id = metadata.get("userId") or metadata.get("user_id")
        if not user_id:
            raise UnresolvedEventError(customer_ref, event_type)

        record = await self.repository.get_or_create(
            user_id, self.default_values(email=metadata.get("email"), customer_ref=customer_ref)
        )
        if record.external_customer_ref != customer_ref:
            record = await self.repository.update(user_id, {"external_customer_ref": customer_ref}) or record
        logger.info(f"Linked customer {customer_ref} to user {user_id} from provider metadata")
        return record

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    async def decrement_generation_quota(self, user_id: str) -> UsageCounters:
        """
        Consume one model generation for the month.

        Pro users are not counted. For free users the decrement is a single
        conditional UPDATE, so concurrent calls can never overdraw the quota.

        Raises:
            QuotaExhaustedError: No generations remain this month
        """
        view = await self.get_entitlement(user_id)
        if view.is_pro:
            return view.counters

        await self.repository.get_or_create(user_id, self.default_values())
        record = await self.repository.decrement_generation_quota(user_id)
        if record is None:
            raise QuotaExhaustedError(f"No generations remaining this month for user {user_id}")
        return EntitlementView.from_record(record).counters

    async def record_download(self, user_id: str) -> UsageCounters:
        await self.repository.get_or_create(user_id, self.default_values())
        record = await self.repository.increment_downloads(user_id)
        return EntitlementView.from_record(record).counters

    async def reset_monthly_limits(self, now: Optional[datetime] = None, batch_size: Optional[int] = None) -> int:
        """
        Reset monthly counters for users not yet reset in the current month.

        Safe to run repeatedly: users already reset this month are skipped.

        Returns:
            Number of users reset
        """
        period = current_period(now)
        count = await self.repository.reset_monthly_limits(
            period, self.free_quota, batch_size or settings.reset_batch_size
        )
        if count:
            logger.info(f"Reset monthly limits for {count} user(s) for {period}")
        else:
            logger.info(f"No users needed monthly limit resets for {period}")
        return count

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def plan_for_price(self, price_ref: Optional[str]) -> str:
        """Map a provider price id to a plan; unknown prices get the monthly plan."""
        if price_ref and self.annual_price_ref and price_ref == self.annual_price_ref:
            return PLAN_ANNUAL
        if price_ref and price_ref != self.monthly_price_ref:
            logger.warning(f"Unrecognized price {price_ref}, defaulting to {PLAN_MONTHLY}")
        return PLAN_MONTHLY

    def default_values(self, email: Optional[str] = None, customer_ref: Optional[str] = None) -> dict:
        return {
            "email": email,
            "external_customer_ref": customer_ref,
            "is_pro": False,
            "subscription_status": SubscriptionStatus.NONE.value,
            "subscription_plan": PLAN_FREE,
            "trial_active": False,
            "trial_consumed": False,
            "cancel_at_period_end": False,
            "models_remaining_this_month": self.free_quota,
            "models_generated_this_month": 0,
            "downloads_this_month": 0,
            "last_monthly_reset_period": current_period(),
        }

    def _status_values(self, record: UserEntitlement, status: str) -> dict:
        """Status columns plus the quota that keeps +inf tied to Pro."""
        is_pro = is_pro_status(status)
        values = {"is_pro": is_pro, "subscription_status": status}
        if is_pro:
            values["models_remaining_this_month"] = None
        elif record.models_remaining_this_month is None:
            values["models_remaining_this_month"] = self.free_quota
        return values

    async def _persist(self, record: UserEntitlement, values: dict) -> UserEntitlement:
        """
        Write values to the user's row.

        If the write fails the provider-confirmed state is still returned;
        the next reconciliation read repairs the stored row.
        """
        try:
            updated = await self.repository.update(record.user_id, values)
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist entitlement for user {record.user_id}: {e}", exc_info=True)
            updated = None
        if updated is not None:
            return updated
        return _with_values(record, values)


def _with_values(record: UserEntitlement, values: dict) -> UserEntitlement:
    columns = {column.name: getattr(record, column.name) for column in UserEntitlement.__table__.columns}
    columns.update(values)
    return UserEntitlement(**columns)
