import math
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from config.settings import UNLIMITED_MODELS_MARKER


class SubscriptionStatus(str, Enum):
    NONE = "none"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELING = "canceling"
    CANCELED = "canceled"


class SubscriptionPlan(str, Enum):
    FREE = "free"
    MONTHLY = "monthly"
    ANNUAL = "annual"
    PRO = "pro"


# Statuses that grant Pro access; is_pro must agree with this set
PRO_STATUSES = frozenset({SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value})

# Provider statuses that have no local counterpart
_PROVIDER_STATUS_ALIASES = {
    "unpaid": SubscriptionStatus.PAST_DUE.value,
    "paused": SubscriptionStatus.PAST_DUE.value,
    "incomplete": SubscriptionStatus.NONE.value,
    "incomplete_expired": SubscriptionStatus.CANCELED.value,
}


def normalize_provider_status(status: Optional[str]) -> str:
    """Map a billing-provider subscription status onto SubscriptionStatus values."""
    if not status:
        return SubscriptionStatus.NONE.value
    status = status.lower()
    if status in _PROVIDER_STATUS_ALIASES:
        return _PROVIDER_STATUS_ALIASES[status]
    try:
        return SubscriptionStatus(status).value
    except ValueError:
        return SubscriptionStatus.NONE.value


def is_pro_status(status: Optional[str]) -> bool:
    return status in PRO_STATUSES


def current_period(now: Optional[datetime] = None) -> str:
    """Calendar month key used to gate monthly resets ("YYYY-MM")."""
    return (now or datetime.utcnow()).strftime("%Y-%m")


def _render_remaining(value: float) -> int:
    return UNLIMITED_MODELS_MARKER if math.isinf(value) else int(value)


class UsageCounters(BaseModel):
    models_remaining_this_month: float
    models_generated_this_month: int = 0
    downloads_this_month: int = 0

    def to_response(self) -> dict:
        return {
            "modelsRemainingThisMonth": _render_remaining(self.models_remaining_this_month),
            "modelsGeneratedThisMonth": self.models_generated_this_month,
            "downloadsThisMonth": self.downloads_this_month,
        }


class EntitlementView(BaseModel):
    """Read model returned by the reconciler for a single user."""

    user_id: str
    is_pro: bool = False
    models_remaining_this_month: float = 0
    models_generated_this_month: int = 0
    downloads_this_month: int = 0
    subscription_status: SubscriptionStatus = SubscriptionStatus.NONE
    subscription_plan: SubscriptionPlan = SubscriptionPlan.FREE
    subscription_end_date: Optional[datetime] = None
    trial_active: bool = False
    trial_end_date: Optional[datetime] = None

    @classmethod
    def default_free(cls, user_id: str, free_quota: int) -> "EntitlementView":
        return cls(user_id=user_id, models_remaining_this_month=free_quota)

    @classmethod
    def from_record(cls, record) -> "EntitlementView":
        remaining = record.models_remaining_this_month
        return cls(
            user_id=record.user_id,
            is_pro=bool(record.is_pro),
            models_remaining_this_month=math.inf if remaining is None else remaining,
            models_generated_this_month=record.models_generated_this_month or 0,
            downloads_this_month=record.downloads_this_month or 0,
            subscription_status=normalize_provider_status(record.subscription_status),
            subscription_plan=record.subscription_plan or SubscriptionPlan.FREE.value,
            subscription_end_date=record.subscription_period_end,
            trial_active=bool(record.trial_active),
            trial_end_date=record.trial_ends_at,
        )

    @property
    def counters(self) -> UsageCounters:
        return UsageCounters(
            models_remaining_this_month=self.models_remaining_this_month,
            models_generated_this_month=self.models_generated_this_month,
            downloads_this_month=self.downloads_this_month,
        )

    def to_response(self) -> dict:
        return {
            "isPro": self.is_pro,
            **self.counters.to_response(),
            "subscriptionStatus": self.subscription_status.value,
            "subscriptionPlan": self.subscription_plan.value,
            "subscriptionEndDate": self.subscription_end_date.isoformat() if self.subscription_end_date else None,
            "trialActive": self.trial_active,
            "trialEndDate": self.trial_end_date.isoformat() if self.trial_end_date else None,
        }
