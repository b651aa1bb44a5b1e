"""
EntitlementRepository for database operations on UserEntitlement rows
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import select, update, or_, case, null
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from config.settings import PLAN_FREE, PLAN_PRO
from database import AsyncSessionLocal
from database_models import UserEntitlement

# Statuses of a paid subscription that rule out starting a trial
SUBSCRIBED_STATUSES = ("active", "past_due", "canceling")


class EntitlementRepository:
    """
    Repository class for UserEntitlement database operations.

    Every method runs in its own short transaction opened from the session
    factory, so concurrent coroutines never share a session. Counter and
    trial changes are single conditional UPDATE statements; callers learn
    whether they won from the returned row (None when the guard failed).
    """

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        """
        Initialize the repository with a session factory.

        Args:
            session_factory: async_sessionmaker producing AsyncSession objects
        """
        self.session_factory = session_factory

    async def get(self, user_id: str) -> Optional[UserEntitlement]:
        """
        Retrieve a user's entitlement row.

        Args:
            user_id: Stable user identifier

        Returns:
            UserEntitlement if found, None otherwise
        """
        async with self.session_factory() as session:
            return await session.get(UserEntitlement, user_id)

    async def get_by_customer_ref(self, customer_ref: str) -> Optional[UserEntitlement]:
        """
        Retrieve the entitlement row linked to a billing-provider customer.

        Args:
            customer_ref: Billing-provider customer identifier

        Returns:
            UserEntitlement if a user is linked to the customer, None otherwise
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(UserEntitlement).where(UserEntitlement.external_customer_ref == customer_ref)
            )
            return result.scalar_one_or_none()

    async def get_or_create(self, user_id: str, defaults: dict) -> UserEntitlement:
        """
        Return the user's row, inserting one built from defaults if absent.

        A concurrent insert for the same user is resolved by re-reading the
        row that won.

        Args:
            user_id: Stable user identifier
            defaults: Column values for a freshly created row
        """
        existing = await self.get(user_id)
        if existing is not None:
            return existing

        now = datetime.utcnow()
        record = UserEntitlement(user_id=user_id, created_at=now, updated_at=now, **defaults)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(record)
            return record
        except IntegrityError:
            existing = await self.get(user_id)
            if existing is None:
                raise
            return existing

    async def update(self, user_id: str, values: dict) -> Optional[UserEntitlement]:
        """
        Apply field updates to a user's row.

        Args:
            user_id: Stable user identifier
            values: Dictionary of columns to set (e.g., {"is_pro": True})

        Returns:
            Updated UserEntitlement, or None if the user has no row
        """
        return await self._conditional_update(user_id, (), values)

    async def start_trial(self, user_id: str, started_at: datetime, ends_at: datetime) -> Optional[UserEntitlement]:
        """
        Begin the one-time trial.

        Returns None if the trial was already consumed or the user holds a
        paid subscription; the row is left untouched in both cases.
        """
        return await self._conditional_update(
            user_id,
            (
                UserEntitlement.trial_consumed.is_(False),
                UserEntitlement.external_subscription_ref.is_(None),
                UserEntitlement.subscription_status.not_in(SUBSCRIBED_STATUSES),
            ),
            {
                "trial_active": True,
                "trial_consumed": True,
                "trial_started_at": started_at,
                "trial_ends_at": ends_at,
                "is_pro": True,
                "subscription_status": "trialing",
                "subscription_plan": PLAN_PRO,
                "models_remaining_this_month": None,
            },
        )

    async def expire_trial(self, user_id: str, now: datetime, free_quota: int) -> Optional[UserEntitlement]:
        """Downgrade an overdue trial; returns None if another caller already did."""
        return await self._conditional_update(
            user_id,
            (
                UserEntitlement.trial_active.is_(True),
                UserEntitlement.trial_ends_at < now,
            ),
            {
                "is_pro": False,
                "trial_active": False,
                "subscription_status": "none",
                "subscription_plan": PLAN_FREE,
                "models_remaining_this_month": free_quota,
            },
        )

    async def decrement_generation_quota(self, user_id: str) -> Optional[UserEntitlement]:
        """Consume one generation; returns None when nothing remains."""
        return await self._conditional_update(
            user_id,
            (
                UserEntitlement.models_remaining_this_month.is_not(None),
                UserEntitlement.models_remaining_this_month > 0,
            ),
            {
                "models_remaining_this_month": UserEntitlement.models_remaining_this_month - 1,
                "models_generated_this_month": UserEntitlement.models_generated_this_month + 1,
            },
        )

    async def increment_downloads(self, user_id: str) -> Optional[UserEntitlement]:
        return await self._conditional_update(
            user_id,
            (),
            {"downloads_this_month": UserEntitlement.downloads_this_month + 1},
        )

    async def reset_monthly_limits(self, period: str, free_quota: int, batch_size: int) -> int:
        """
        Reset monthly counters for every row not yet reset in `period`.

        Rows are processed in batches of `batch_size`; each batch is one
        transaction. Pro rows get an unlimited (NULL) quota, others the free
        quota.

        Args:
            period: Calendar month key ("YYYY-MM")
            free_quota: Monthly generations for non-pro users
            batch_size: Maximum rows updated per transaction

        Returns:
            Number of rows reset
        """
        needs_reset = or_(
            UserEntitlement.last_monthly_reset_period.is_(None),
            UserEntitlement.last_monthly_reset_period != period,
        )
        total = 0
        while True:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        select(UserEntitlement.user_id).where(needs_reset).limit(batch_size)
                    )
                    user_ids = result.scalars().all()
                    if not user_ids:
                        break
                    result = await session.execute(
                        update(UserEntitlement)
                        .where(UserEntitlement.user_id.in_(user_ids), needs_reset)
                        .values(
                            models_generated_this_month=0,
                            downloads_this_month=0,
                            models_remaining_this_month=case(
                                (UserEntitlement.is_pro.is_(True), null()),
                                else_=free_quota,
                            ),
                            last_monthly_reset_period=period,
                            updated_at=datetime.utcnow(),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    total += result.rowcount
        return total

    async def _conditional_update(self, user_id: str, conditions, values: dict) -> Optional[UserEntitlement]:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(UserEntitlement)
                    .where(UserEntitlement.user_id == user_id, *conditions)
                    .values(**values, updated_at=datetime.utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return None
            return await session.get(UserEntitlement, user_id)
