"""
Trial Service for the one-time Pro trial
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from config.settings import settings
from crud.entitlement import EntitlementRepository
from database_models import UserEntitlement
from services.errors import AlreadySubscribedError, AlreadyUsedError

logger = logging.getLogger(__name__)


class TrialService:
    """
    Service for managing user trial periods.
    Handles trial start and lazy expiry; there is no background sweep, so an
    overdue trial is only downgraded the next time the user is read.
    """

    def __init__(self, repository: EntitlementRepository, trial_days: Optional[int] = None,
                 free_quota: Optional[int] = None):
        """
        Initialize the trial service.

        Args:
            repository: EntitlementRepository used for all writes
            trial_days: Trial length in days (defaults to TRIAL_DAYS)
            free_quota: Monthly generations restored on expiry (defaults to FREE_MODELS_PER_MONTH)
        """
        self.repository = repository
        self.trial_days = trial_days if trial_days is not None else settings.trial_days
        self.free_quota = free_quota if free_quota is not None else settings.free_models_per_month

    async def start_trial(self, user_id: str, defaults: dict) -> UserEntitlement:
        """
        Start the trial for a user.

        The consumed flag is checked by the UPDATE itself against the stored
        row, so a replayed or concurrent request cannot start a second trial.

        Args:
            user_id: User to start the trial for
            defaults: Column values used if the user has no row yet

        Returns:
            Updated UserEntitlement

        Raises:
            AlreadyUsedError: The user has consumed their trial before
            AlreadySubscribedError: The user already holds a paid subscription
        """
        await self.repository.get_or_create(user_id, defaults)
        now = datetime.utcnow()
        record = await self.repository.start_trial(user_id, now, now + timedelta(days=self.trial_days))
        if record is None:
            current = await self.repository.get(user_id)
            if current is not None and not current.trial_consumed:
                logger.info(f"Trial refused for subscribed user {user_id} ({current.subscription_status})")
                raise AlreadySubscribedError(f"User {user_id} already has a subscription")
            logger.info(f"Trial already consumed for user {user_id}")
            raise AlreadyUsedError(f"Trial already used for user {user_id}")
        logger.info(f"Trial started for user {user_id}, ends {record.trial_ends_at.isoformat()}")
        return record

    def is_trial_expired(self, record: UserEntitlement, now: Optional[datetime] = None) -> bool:
        """
        Check whether an active trial has run past its end date.

        Args:
            record: UserEntitlement to check
            now: Reference time (defaults to utcnow)

        Returns:
            True if the trial is marked active but already over
        """
        if not record.trial_active or record.trial_ends_at is None:
            return False
        return (now or datetime.utcnow()) > record.trial_ends_at

    async def expire_if_due(self, record: UserEntitlement) -> UserEntitlement:
        """
        Downgrade an overdue trial and return the row to use for the response.

        Concurrent callers race on a conditional UPDATE; exactly one applies
        the downgrade and the rest re-read the result.
        """
        now = datetime.utcnow()
        if not self.is_trial_expired(record, now):
            return record
        downgraded = await self.repository.expire_trial(record.user_id, now, self.free_quota)
        if downgraded is not None:
            logger.info(f"Trial expired for user {record.user_id}, downgraded to free")
            return downgraded
        return await self.repository.get(record.user_id) or record
