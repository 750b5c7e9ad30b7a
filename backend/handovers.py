"""
Handover Requests
A collector claims they transferred part of their cash custody to the owner.

The amount on the request is what counts; linking receipts to it is an
audit aid. Candidate receipts that don't qualify are skipped, not rejected.
"""

import logging
from typing import Iterable, List, Optional

from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from activity_log import log_staff_activity
from context import ActorContext, require_role, scope_to_actor
from exceptions import InsufficientCustody, NotFound, Unauthorized, ValidationFailed
from ledger import compute_custody_balance, custody_eligible_filter, custody_receipts_filter
from models import (
    ActorRole, Branch, CashHandover, HandoverMethod, HandoverStatus, Payment, Staff, StaffStatus
)
from unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


async def lock_collector(db: AsyncSession, actor: ActorContext) -> Staff:
    """
    Row-lock the calling collector.

    Every handover request for the same collector serializes on this lock, so
    the balance check and the insert below see one consistent picture.
    """
    result = await db.execute(
        select(Staff)
        .where(Staff.id == actor.actor_id, Staff.tenant_id == actor.tenant_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    staff = result.scalar_one_or_none()

    if not staff:
        raise NotFound("Staff not found")
    if staff.branch_id != actor.branch_id:
        raise Unauthorized("Staff is not assigned to this branch")
    if staff.status != StaffStatus.ACTIVE:
        raise Unauthorized("Staff account is inactive")
    return staff


async def link_eligible_receipts(
    db: AsyncSession,
    staff: Staff,
    handover: CashHandover,
    candidate_ids: Iterable[int]
) -> int:
    """Point every qualifying candidate receipt at `handover`. Returns how many were linked."""
    ids = sorted({int(i) for i in candidate_ids})
    if not ids:
        return 0

    result = await db.execute(
        select(Payment)
        .outerjoin(CashHandover, CashHandover.id == Payment.handover_id)
        .where(
            Payment.id.in_(ids),
            custody_receipts_filter(staff.tenant_id, staff.branch_id, staff.id),
            custody_eligible_filter()
        )
        .with_for_update(of=Payment)
        .execution_options(populate_existing=True)
    )
    receipts = result.scalars().all()

    for receipt in receipts:
        receipt.handover_id = handover.id

    skipped = len(ids) - len(receipts)
    if skipped:
        logger.info(f"Handover {handover.id}: skipped {skipped} ineligible candidate receipt(s)")
    return len(receipts)


async def request_handover(
    db: AsyncSession,
    actor: ActorContext,
    amount: int,
    method: HandoverMethod = HandoverMethod.CASH,
    notes: Optional[str] = None,
    attachment_url: Optional[str] = None,
    candidate_receipt_ids: Optional[List[int]] = None
) -> CashHandover:
    """
    Create a pending handover for the calling collector.

    Raises:
        InsufficientCustody: amount exceeds the collector's available cash
    """
    require_role(actor, ActorRole.STAFF)
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValidationFailed("Handover amount must be a positive whole amount")

    async def work(uow: UnitOfWork) -> CashHandover:
        staff = await lock_collector(db, actor)

        balance = await compute_custody_balance(db, staff.tenant_id, staff.branch_id, staff.id)
        if amount > balance.available_cash:
            raise InsufficientCustody(
                f"Insufficient cash in hand: requested {amount}, available {balance.available_cash}"
            )

        handover = CashHandover(
            tenant_id=staff.tenant_id,
            branch_id=staff.branch_id,
            staff_id=staff.id,
            amount=amount,
            method=method,
            notes=notes,
            attachment_url=attachment_url,
            status=HandoverStatus.PENDING
        )
        db.add(handover)
        await db.flush()

        linked = await link_eligible_receipts(db, staff, handover, candidate_receipt_ids or [])

        uow.after_commit(
            "activity log", log_staff_activity, db, actor,
            "Cash Handover Request", "handover", handover.id,
            {"amount": amount, "method": method.value, "linked_receipts": linked}
        )
        return handover

    handover = await UnitOfWork(db).run(work, label=f"handover request by staff {actor.actor_id}")
    logger.info(f"✅ Handover {handover.id} requested by staff {actor.actor_id}: {amount} via {method.value}")
    return handover


async def list_eligible_receipts(db: AsyncSession, actor: ActorContext) -> List[Payment]:
    """The caller's completed cash receipts that can be attached to a new handover."""
    require_role(actor, ActorRole.STAFF)

    result = await db.execute(
        select(Payment)
        .options(selectinload(Payment.student), selectinload(Payment.plan))
        .outerjoin(CashHandover, CashHandover.id == Payment.handover_id)
        .where(
            custody_receipts_filter(actor.tenant_id, actor.branch_id, actor.actor_id),
            custody_eligible_filter()
        )
        .order_by(desc(Payment.date), desc(Payment.id))
    )
    return list(result.scalars().all())


async def list_pending_handovers(db: AsyncSession, actor: ActorContext) -> List[tuple[CashHandover, str, str]]:
    """Pending handovers awaiting the owner, with staff and branch names."""
    require_role(actor, ActorRole.OWNER)

    stmt = (
        select(CashHandover, Staff.name, Branch.name)
        .join(Staff, Staff.id == CashHandover.staff_id)
        .join(Branch, Branch.id == CashHandover.branch_id)
        .where(CashHandover.status == HandoverStatus.PENDING)
        .order_by(desc(CashHandover.created_at), desc(CashHandover.id))
    )
    result = await db.execute(scope_to_actor(stmt, CashHandover, actor))
    return [tuple(row) for row in result.all()]
