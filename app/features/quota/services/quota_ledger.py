import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.quota.models.quota_record import QuotaRecord, QuotaTier, UserSubscription
from app.platform.config import settings
from app.platform.logger import get_logger
from app.platform.utils.clock import utcnow

logger = get_logger(__name__)


class DenialReason(str, enum.Enum):
    LIMIT_REACHED = "limit_reached"
    UNAVAILABLE = "unavailable"


@dataclass
class QuotaDecision:
    allowed: bool
    reason: Optional[DenialReason] = None
    period_start: Optional[datetime] = None
    limit: Optional[int] = None


@dataclass
class QuotaUsage:
    tier: QuotaTier
    period_start: datetime
    used: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)


def calendar_period_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def rolling_period_start(anchor: datetime, now: datetime, days: int) -> datetime:
    """Start of the ``days``-long window containing ``now``, counted from ``anchor``."""
    window = timedelta(days=days)
    if now < anchor:
        return anchor
    return anchor + window * ((now - anchor) // window)


class QuotaLedger:
    """
    Admission control for audits.

    The only write path is ``check_and_reserve``'s conditional UPDATE, so two
    instances racing for a user's last audit cannot both win.
    """

    def __init__(
        self,
        db: AsyncSession,
        now: Callable[[], datetime] = utcnow,
        limits: Optional[Dict[str, int]] = None,
        period_mode: Optional[str] = None,
        rolling_days: Optional[int] = None,
    ):
        self.db = db
        self._now = now
        self.limits = limits or settings.TIER_AUDIT_LIMITS
        self.period_mode = period_mode or settings.QUOTA_PERIOD_MODE
        self.rolling_days = rolling_days or settings.QUOTA_ROLLING_PERIOD_DAYS

    def limit_for(self, tier: QuotaTier) -> int:
        return int(self.limits.get(tier.value, self.limits[QuotaTier.free.value]))

    async def resolve_tier(self, user_id: str) -> QuotaTier:
        tier = await self.db.scalar(
            select(UserSubscription.tier).where(UserSubscription.user_id == user_id)
        )
        return tier or QuotaTier.free

    async def current_period_start(self, user_id: str) -> datetime:
        now = self._now()
        if self.period_mode == "calendar":
            return calendar_period_start(now)

        anchor = await self.db.scalar(
            select(func.min(QuotaRecord.period_start)).where(QuotaRecord.user_id == user_id)
        )
        if anchor is None:
            return now.replace(hour=0, minute=0, second=0, microsecond=0)
        return rolling_period_start(anchor, now, self.rolling_days)

    async def _ensure_period_record(
        self, user_id: str, period_start: datetime, tier: QuotaTier, limit: int
    ) -> None:
        existing = await self.db.scalar(
            select(QuotaRecord.id).where(
                QuotaRecord.user_id == user_id,
                QuotaRecord.period_start == period_start,
            )
        )
        if existing:
            return

        self.db.add(
            QuotaRecord(
                user_id=user_id,
                tier=tier,
                period_start=period_start,
                audits_used=0,
                audits_limit=limit,
            )
        )
        try:
            await self.db.commit()
            logger.info(f"Opened quota period {period_start.isoformat()} for user {user_id} ({tier.value}, limit={limit})")
        except IntegrityError:
            # Another instance created the row first; reserve against theirs.
            await self.db.rollback()

    async def check_and_reserve(self, user_id: str) -> QuotaDecision:
        try:
            tier = await self.resolve_tier(user_id)
            limit = self.limit_for(tier)
            period_start = await self.current_period_start(user_id)
            await self._ensure_period_record(user_id, period_start, tier, limit)

            result = await self.db.execute(
                update(QuotaRecord)
                .where(
                    QuotaRecord.user_id == user_id,
                    QuotaRecord.period_start == period_start,
                    QuotaRecord.audits_used < limit,
                )
                .values(
                    audits_used=QuotaRecord.audits_used + 1,
                    tier=tier,
                    audits_limit=limit,
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Quota datastore unavailable for user {user_id}: {e}")
            return QuotaDecision(allowed=False, reason=DenialReason.UNAVAILABLE)

        if result.rowcount != 1:
            logger.warning(f"Audit limit reached for user {user_id} (tier={tier.value}, limit={limit})")
            return QuotaDecision(
                allowed=False,
                reason=DenialReason.LIMIT_REACHED,
                period_start=period_start,
                limit=limit,
            )

        logger.info(f"Reserved audit for user {user_id} in period {period_start.isoformat()}")
        return QuotaDecision(allowed=True, period_start=period_start, limit=limit)

    async def release(self, user_id: str, period_start: datetime) -> bool:
        """Give back a reservation whose audit never started."""
        try:
            result = await self.db.execute(
                update(QuotaRecord)
                .where(
                    QuotaRecord.user_id == user_id,
                    QuotaRecord.period_start == period_start,
                    QuotaRecord.audits_used > 0,
                )
                .values(audits_used=QuotaRecord.audits_used - 1)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to release quota for user {user_id}: {e}")
            return False

        released = result.rowcount == 1
        if released:
            logger.info(f"Released audit reservation for user {user_id}")
        return released

    async def get_usage(self, user_id: str) -> QuotaUsage:
        tier = await self.resolve_tier(user_id)
        period_start = await self.current_period_start(user_id)
        used = await self.db.scalar(
            select(QuotaRecord.audits_used).where(
                QuotaRecord.user_id == user_id,
                QuotaRecord.period_start == period_start,
            )
        )
        return QuotaUsage(
            tier=tier,
            period_start=period_start,
            used=used or 0,
            limit=self.limit_for(tier),
        )
