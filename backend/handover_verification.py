"""
Handover Verification
Owner-side, one-shot terminal transition of a handover request.

Linked receipts are never touched here. A rejected request keeps its
receipts pointing at it, which makes them eligible for a new handover.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from activity_log import log_staff_activity
from context import ActorContext, ensure_in_scope, require_role
from exceptions import InvalidState, NotFound
from models import ActorRole, CashHandover, HandoverStatus
from unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


async def _lock_pending_handover(db: AsyncSession, actor: ActorContext, handover_id: int) -> CashHandover:
    result = await db.execute(
        select(CashHandover)
        .where(CashHandover.id == handover_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    handover = result.scalar_one_or_none()
    if not handover:
        raise NotFound("Handover not found")
    ensure_in_scope(handover, actor)

    if handover.status != HandoverStatus.PENDING:
        raise InvalidState(f"Handover already {handover.status.value}")
    return handover


async def _finalize(
    db: AsyncSession,
    actor: ActorContext,
    handover_id: int,
    status: HandoverStatus,
    reason: Optional[str] = None
) -> CashHandover:
    require_role(actor, ActorRole.OWNER)

    async def work(uow: UnitOfWork) -> CashHandover:
        handover = await _lock_pending_handover(db, actor, handover_id)

        handover.status = status
        handover.verified_by = actor.actor_id
        handover.verified_at = datetime.utcnow()
        if status == HandoverStatus.REJECTED:
            handover.rejection_reason = reason

        details = {"amount": handover.amount, "staff_id": handover.staff_id}
        if reason:
            details["reason"] = reason
        uow.after_commit(
            "activity log", log_staff_activity, db, actor,
            f"Cash Handover {status.value.title()}", "handover", handover.id, details
        )
        return handover

    handover = await UnitOfWork(db).run(work, label=f"{status.value} handover {handover_id}")
    logger.info(f"Handover {handover.id} {status.value} by owner {actor.actor_id} (amount {handover.amount})")
    return handover


async def verify_handover(db: AsyncSession, actor: ActorContext, handover_id: int) -> CashHandover:
    """Confirm the owner received the cash. The amount leaves the collector's custody."""
    return await _finalize(db, actor, handover_id, HandoverStatus.VERIFIED)


async def reject_handover(
    db: AsyncSession,
    actor: ActorContext,
    handover_id: int,
    reason: Optional[str] = None
) -> CashHandover:
    """The cash never arrived. Custody is unchanged and linked receipts become eligible again."""
    return await _finalize(db, actor, handover_id, HandoverStatus.REJECTED, reason)
