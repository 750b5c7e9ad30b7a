"""
Custody Ledger
Read-side aggregation of the cash each collector holds.

    total_collected            completed cash receipts collected by the staff member
    total_verified_handed_over verified handover requests
    cash_in_hand               total_collected - total_verified_handed_over
    pending_handover_amount    pending handover requests
    available_cash             cash_in_hand - pending_handover_amount

Balances are always recomputed from the stored rows. A negative value means
the stored rows are inconsistent and raises InvariantViolation.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, func, or_, and_, desc
from sqlalchemy.ext.asyncio import AsyncSession

from context import ActorContext, ensure_in_scope, require_role
from exceptions import InvariantViolation, NotFound, Unauthorized, ValidationFailed
from models import (
    ActorRole, CashHandover, HandoverStatus, Payment, PaymentMethod, PaymentStatus,
    Plan, Staff, StaffStatus, Student, StudentSubscription
)

logger = logging.getLogger(__name__)

# Custody labels shown next to each collected receipt
IN_HAND = "in_hand"
PENDING_HANDOVER = "pending_handover"
HANDED_OVER = "handed_over"


@dataclass(frozen=True)
class CustodyBalance:
    collector_id: int
    total_collected: int
    total_verified_handed_over: int
    cash_in_hand: int
    pending_handover_amount: int
    available_cash: int


@dataclass
class CollectorBalance:
    """Owner-side row: one collector and what they still hold"""
    collector_id: int
    name: str
    branch_id: int
    balance: CustodyBalance
    pending_handover_count: int = 0
    last_handover_at: Optional[datetime] = None


@dataclass
class LedgerEntry:
    id: int
    type: str  # IN | OUT
    amount: int
    date: datetime
    description: str
    status: str
    details: dict = field(default_factory=dict)


def build_balance(collector_id: int, collected: int, verified: int, pending: int) -> CustodyBalance:
    balance = CustodyBalance(
        collector_id=collector_id,
        total_collected=collected,
        total_verified_handed_over=verified,
        cash_in_hand=collected - verified,
        pending_handover_amount=pending,
        available_cash=collected - verified - pending,
    )
    negatives = [
        name for name, value in (
            ("total_collected", balance.total_collected),
            ("total_verified_handed_over", balance.total_verified_handed_over),
            ("cash_in_hand", balance.cash_in_hand),
            ("pending_handover_amount", balance.pending_handover_amount),
            ("available_cash", balance.available_cash),
        )
        if value < 0
    ]
    if negatives:
        logger.error(f"Custody invariant violated for collector {collector_id}: {negatives} in {balance}")
        raise InvariantViolation(f"Negative custody balance for collector {collector_id}: {', '.join(negatives)}")
    return balance


def custody_receipts_filter(tenant_id: int, branch_id: int, collector_id: int):
    """Receipts that count toward a collector's custody: completed cash only."""
    return and_(
        Payment.tenant_id == tenant_id,
        Payment.branch_id == branch_id,
        Payment.collected_by == collector_id,
        Payment.status == PaymentStatus.COMPLETED,
        Payment.method == PaymentMethod.CASH,
    )


def custody_eligible_filter():
    """Unlinked, or linked to a handover the owner rejected. Needs an outer join to CashHandover."""
    return or_(Payment.handover_id.is_(None), CashHandover.status == HandoverStatus.REJECTED)


async def compute_custody_balance(
    db: AsyncSession,
    tenant_id: int,
    branch_id: int,
    collector_id: int
) -> CustodyBalance:
    """Aggregate the balance for one collector from the current transaction's view."""
    collected_result = await db.execute(
        select(func.coalesce(func.sum(Payment.amount), 0)).where(
            custody_receipts_filter(tenant_id, branch_id, collector_id)
        )
    )
    collected = int(collected_result.scalar_one())

    handover_result = await db.execute(
        select(CashHandover.status, func.coalesce(func.sum(CashHandover.amount), 0))
        .where(
            CashHandover.tenant_id == tenant_id,
            CashHandover.branch_id == branch_id,
            CashHandover.staff_id == collector_id,
            CashHandover.status.in_([HandoverStatus.VERIFIED, HandoverStatus.PENDING])
        )
        .group_by(CashHandover.status)
    )
    sums = {status: int(total) for status, total in handover_result.all()}

    return build_balance(
        collector_id,
        collected,
        sums.get(HandoverStatus.VERIFIED, 0),
        sums.get(HandoverStatus.PENDING, 0),
    )


async def resolve_collector(db: AsyncSession, actor: ActorContext, collector_id: Optional[int] = None) -> Staff:
    """
    Staff may only look at themselves; owners at any collector in their tenant.
    """
    if collector_id is None:
        if not actor.is_staff:
            raise ValidationFailed("No collector selected")
        collector_id = actor.actor_id

    if actor.is_staff and collector_id != actor.actor_id:
        raise Unauthorized("Staff can only view their own custody")

    staff = await db.get(Staff, collector_id)
    if not staff:
        raise NotFound("Staff not found")
    ensure_in_scope(staff, actor)
    return staff


async def get_custody_balance(
    db: AsyncSession,
    actor: ActorContext,
    collector_id: Optional[int] = None
) -> CustodyBalance:
    staff = await resolve_collector(db, actor, collector_id)
    return await compute_custody_balance(db, staff.tenant_id, staff.branch_id, staff.id)


async def get_collector_ledger(
    db: AsyncSession,
    actor: ActorContext,
    collector_id: Optional[int] = None,
    limit: int = 50
) -> tuple[Staff, CustodyBalance, List[LedgerEntry]]:
    """Collections (IN) and handovers (OUT) for one collector, newest first."""
    staff = await resolve_collector(db, actor, collector_id)
    balance = await compute_custody_balance(db, staff.tenant_id, staff.branch_id, staff.id)

    # 1. Collections (cash in)
    collections_result = await db.execute(
        select(Payment, Student.name, Plan.name, CashHandover.status)
        .outerjoin(Student, Student.id == Payment.student_id)
        .outerjoin(StudentSubscription, StudentSubscription.id == Payment.subscription_id)
        .outerjoin(Plan, Plan.id == func.coalesce(StudentSubscription.plan_id, Payment.related_plan_id))
        .outerjoin(CashHandover, CashHandover.id == Payment.handover_id)
        .where(custody_receipts_filter(staff.tenant_id, staff.branch_id, staff.id))
        .order_by(desc(Payment.date), desc(Payment.id))
        .limit(limit)
    )

    entries: List[LedgerEntry] = []
    for payment, student_name, plan_name, handover_status in collections_result.all():
        if payment.handover_id is None or handover_status == HandoverStatus.REJECTED:
            custody = IN_HAND
        elif handover_status == HandoverStatus.VERIFIED:
            custody = HANDED_OVER
        else:
            custody = PENDING_HANDOVER

        entries.append(LedgerEntry(
            id=payment.id,
            type="IN",
            amount=payment.amount,
            date=payment.date,
            description=student_name or "Unknown Student",
            status=payment.status.value,
            details={
                "student_name": student_name or "Unknown Student",
                "plan_name": plan_name or "N/A",
                "custody": custody,
                "handover_id": payment.handover_id,
                "invoice_no": payment.invoice_no,
            }
        ))

    # 2. Handovers (cash out)
    handovers_result = await db.execute(
        select(CashHandover, func.count(Payment.id))
        .outerjoin(Payment, Payment.handover_id == CashHandover.id)
        .where(
            CashHandover.tenant_id == staff.tenant_id,
            CashHandover.branch_id == staff.branch_id,
            CashHandover.staff_id == staff.id
        )
        .group_by(CashHandover.id)
        .order_by(desc(CashHandover.created_at), desc(CashHandover.id))
        .limit(limit)
    )
    for handover, linked_count in handovers_result.all():
        entries.append(LedgerEntry(
            id=handover.id,
            type="OUT",
            amount=handover.amount,
            date=handover.created_at,
            description="Handover to Owner",
            status=handover.status.value,
            details={
                "method": handover.method.value,
                "linked_receipts": int(linked_count),
                "notes": handover.notes,
                "attachment_url": handover.attachment_url,
            }
        ))

    # 3. Combine
    entries.sort(key=lambda e: e.date, reverse=True)
    return staff, balance, entries[:limit]


async def get_collector_balances(db: AsyncSession, actor: ActorContext) -> List[CollectorBalance]:
    """Every active collector in the owner's tenant, highest cash holder first."""
    require_role(actor, ActorRole.OWNER)

    staff_result = await db.execute(
        select(Staff).where(
            Staff.tenant_id == actor.tenant_id,
            Staff.status == StaffStatus.ACTIVE
        )
    )
    staff_members = staff_result.scalars().all()
    if not staff_members:
        return []

    staff_ids = [s.id for s in staff_members]

    collected_result = await db.execute(
        select(Payment.collected_by, func.coalesce(func.sum(Payment.amount), 0))
        .join(Staff, and_(Staff.id == Payment.collected_by, Staff.branch_id == Payment.branch_id))
        .where(
            Payment.tenant_id == actor.tenant_id,
            Payment.collected_by.in_(staff_ids),
            Payment.status == PaymentStatus.COMPLETED,
            Payment.method == PaymentMethod.CASH
        )
        .group_by(Payment.collected_by)
    )
    collected = {staff_id: int(total) for staff_id, total in collected_result.all()}

    handover_result = await db.execute(
        select(
            CashHandover.staff_id,
            CashHandover.status,
            func.coalesce(func.sum(CashHandover.amount), 0),
            func.count(CashHandover.id),
            func.max(CashHandover.created_at)
        )
        .join(Staff, and_(Staff.id == CashHandover.staff_id, Staff.branch_id == CashHandover.branch_id))
        .where(
            CashHandover.tenant_id == actor.tenant_id,
            CashHandover.staff_id.in_(staff_ids)
        )
        .group_by(CashHandover.staff_id, CashHandover.status)
    )

    verified: dict[int, int] = {}
    pending: dict[int, int] = {}
    pending_count: dict[int, int] = {}
    last_at: dict[int, datetime] = {}
    for staff_id, status, total, count, latest in handover_result.all():
        if status == HandoverStatus.VERIFIED:
            verified[staff_id] = int(total)
        elif status == HandoverStatus.PENDING:
            pending[staff_id] = int(total)
            pending_count[staff_id] = int(count)
        if latest and (staff_id not in last_at or latest > last_at[staff_id]):
            last_at[staff_id] = latest

    balances = [
        CollectorBalance(
            collector_id=s.id,
            name=s.name,
            branch_id=s.branch_id,
            balance=build_balance(s.id, collected.get(s.id, 0), verified.get(s.id, 0), pending.get(s.id, 0)),
            pending_handover_count=pending_count.get(s.id, 0),
            last_handover_at=last_at.get(s.id),
        )
        for s in staff_members
    ]

    # Sort by balance desc (highest cash holder first)
    balances.sort(key=lambda b: b.balance.cash_in_hand, reverse=True)
    return balances
