"""
Tenant Capacity
Enforces the platform plan's ceiling on concurrently active occupant subscriptions.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.orm import selectinload
from datetime import datetime
from typing import Optional
import logging

from exceptions import CapacityExceeded, CapacityUnavailable
from models import PlatformSubscription, PlatformSubscriptionStatus, StudentSubscription, SubscriptionStatus

logger = logging.getLogger(__name__)


async def lock_platform_subscription(db: AsyncSession, tenant_id: int) -> PlatformSubscription:
    """
    Load the tenant's platform subscription with a row lock and require it to be active.

    The row lock serializes concurrent approvals for one tenant so two of them
    can't both see the last free slot.

    Raises:
        CapacityUnavailable: no platform subscription, or it is not active
    """
    result = await db.execute(
        select(PlatformSubscription)
        .options(selectinload(PlatformSubscription.plan))
        .where(PlatformSubscription.tenant_id == tenant_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    platform_subscription = result.scalar_one_or_none()

    if not platform_subscription or platform_subscription.status != PlatformSubscriptionStatus.ACTIVE:
        logger.warning(f"Activation blocked for tenant {tenant_id}: platform subscription inactive")
        raise CapacityUnavailable("Platform subscription inactive")

    return platform_subscription


async def count_active_subscriptions(db: AsyncSession, tenant_id: int, now: Optional[datetime] = None) -> int:
    """Active occupant subscriptions whose end date is still in the future."""
    now = now or datetime.utcnow()
    result = await db.execute(
        select(func.count(StudentSubscription.id)).where(
            StudentSubscription.tenant_id == tenant_id,
            StudentSubscription.status == SubscriptionStatus.ACTIVE,
            StudentSubscription.end_date > now
        )
    )
    return int(result.scalar_one())


def counts_toward_capacity(subscription: StudentSubscription, now: datetime) -> bool:
    return (
        subscription.status == SubscriptionStatus.ACTIVE
        and subscription.end_date is not None
        and subscription.end_date > now
    )


def ensure_capacity(tenant_id: int, active_count: int, to_activate: int, ceiling: int) -> None:
    if active_count + to_activate > ceiling:
        logger.warning(
            f"Activation blocked for tenant {tenant_id}: "
            f"{active_count} active + {to_activate} > ceiling {ceiling}"
        )
        raise CapacityExceeded("Active student limit reached")


async def get_capacity_status(db: AsyncSession, tenant_id: int) -> dict:
    """
    Helper to report capacity without raising or locking.

    Returns:
        dict with platform status, ceiling, active count and remaining slots
    """
    result = await db.execute(
        select(PlatformSubscription)
        .options(selectinload(PlatformSubscription.plan))
        .where(PlatformSubscription.tenant_id == tenant_id)
    )
    platform_subscription = result.scalar_one_or_none()
    active_count = await count_active_subscriptions(db, tenant_id)

    if not platform_subscription:
        return {
            "platform_status": None,
            "is_active": False,
            "ceiling": 0,
            "active_count": active_count,
            "remaining": 0,
        }

    ceiling = platform_subscription.plan.max_active_students or 0
    is_active = platform_subscription.status == PlatformSubscriptionStatus.ACTIVE
    return {
        "platform_status": platform_subscription.status.value,
        "is_active": is_active,
        "ceiling": ceiling,
        "active_count": active_count,
        "remaining": max(ceiling - active_count, 0) if is_active else 0,
    }
