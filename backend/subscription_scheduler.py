"""
Subscription Scheduler - Background task for occupant subscription expiry

Once a day, active occupant subscriptions whose end date has passed are moved
to `expired`, tenant by tenant. Capacity already ignores them by date; this
only brings the stored status in line.

Run as a background task using APScheduler or as a cron job.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from database import async_session_maker
from models import StudentSubscription, SubscriptionStatus, Tenant

logger = logging.getLogger(__name__)


async def expire_tenant_subscriptions(db, tenant_id: int, now: datetime) -> int:
    """Expire one tenant's overdue subscriptions. Returns the number of rows changed."""
    result = await db.execute(
        update(StudentSubscription)
        .where(
            StudentSubscription.tenant_id == tenant_id,
            StudentSubscription.status == SubscriptionStatus.ACTIVE,
            StudentSubscription.end_date.isnot(None),
            StudentSubscription.end_date <= now
        )
        .values(status=SubscriptionStatus.EXPIRED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount or 0


async def run_expiry_sweep(session_factory=async_session_maker, now: Optional[datetime] = None) -> dict:
    """
    Expire overdue subscriptions for every tenant.

    Each tenant is swept in its own transaction; one tenant failing does not
    stop the others.

    Returns:
        {tenant_id: expired_count} for tenants that had anything to expire
    """
    logger.info("🔍 Starting daily subscription expiry sweep...")
    now = now or datetime.utcnow()
    summary = {}

    async with session_factory() as db:
        result = await db.execute(select(Tenant.id).order_by(Tenant.id))
        tenant_ids = result.scalars().all()

    for tenant_id in tenant_ids:
        async with session_factory() as db:
            try:
                expired = await expire_tenant_subscriptions(db, tenant_id, now)
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error(f"❌ Expiry sweep failed for tenant {tenant_id}: {str(e)}", exc_info=True)
                continue

        if expired:
            summary[tenant_id] = expired
            logger.info(f"✅ Expired {expired} subscription(s) for tenant {tenant_id}")

    logger.info(f"✅ Daily subscription expiry sweep completed ({sum(summary.values())} expired)")
    return summary


def start_subscription_scheduler():
    """
    Start the APScheduler background scheduler.
    This runs the expiry sweep every day at EXPIRY_SWEEP_HOUR:00 UTC.
    """
    from apscheduler.schedulers.asyncio import AsyncIOScheduler
    from apscheduler.triggers.cron import CronTrigger

    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        run_expiry_sweep,
        CronTrigger(hour=settings.EXPIRY_SWEEP_HOUR, minute=0),
        id='daily_subscription_expiry',
        name='Daily Subscription Expiry Sweep',
        replace_existing=True
    )

    scheduler.start()
    logger.info(f"📅 Subscription scheduler started - daily sweep at {settings.EXPIRY_SWEEP_HOUR:02d}:00 UTC")

    return scheduler


if __name__ == "__main__":
    # Run the sweep immediately for testing
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_expiry_sweep())
