from sqlalchemy import Column, Integer, String, Boolean, DateTime
from datetime import datetime
from database import Base


class UserEntitlement(Base):
    """
    Per-user subscription, trial and monthly usage state.
    models_remaining_this_month is NULL for users without a monthly limit.
    """
    __tablename__ = "user_entitlements"

    user_id = Column(String, primary_key=True, index=True)
    email = Column(String, nullable=True)

    is_pro = Column(Boolean, default=False, nullable=False)
    subscription_status = Column(String, default="none", nullable=False)
    subscription_plan = Column(String, default="free", nullable=False)
    external_customer_ref = Column(String, unique=True, nullable=True, index=True)
    external_subscription_ref = Column(String, nullable=True)
    subscription_period_end = Column(DateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)

    trial_active = Column(Boolean, default=False, nullable=False)
    trial_started_at = Column(DateTime, nullable=True)
    trial_ends_at = Column(DateTime, nullable=True)
    trial_consumed = Column(Boolean, default=False, nullable=False)

    models_remaining_this_month = Column(Integer, nullable=True)
    models_generated_this_month = Column(Integer, default=0, nullable=False)
    downloads_this_month = Column(Integer, default=0, nullable=False)
    last_monthly_reset_period = Column(String(7), nullable=True, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
