import enum

from sqlalchemy import Column, DateTime, Enum, Integer, String, UniqueConstraint, CheckConstraint

from app.platform.db.base import BaseModel


class QuotaTier(enum.Enum):
    """Subscription tiers; audit limits per tier live in settings.TIER_AUDIT_LIMITS"""
    free = "free"
    pro = "pro"
    enterprise = "enterprise"


class QuotaRecord(BaseModel):
    """
    Audit consumption for one user in one billing period.

    A new period gets a new row; rows from earlier periods are kept.
    """
    __tablename__ = "quota_records"

    user_id = Column(String, nullable=False, index=True)
    tier = Column(Enum(QuotaTier), default=QuotaTier.free, nullable=False)
    period_start = Column(DateTime, nullable=False)

    audits_used = Column(Integer, default=0, nullable=False)
    audits_limit = Column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "period_start", name="uq_quota_records_user_period"),
        CheckConstraint("audits_used >= 0", name="check_audits_used_non_negative"),
        CheckConstraint("audits_used <= audits_limit", name="check_audits_within_limit"),
    )


class UserSubscription(BaseModel):
    """
    Current tier per user. Written by the billing integration, only read here.
    """
    __tablename__ = "user_subscriptions"

    user_id = Column(String, nullable=False, unique=True, index=True)
    tier = Column(Enum(QuotaTier), default=QuotaTier.free, nullable=False)
