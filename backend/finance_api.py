"""
Finance API Endpoints
Cash custody, handover requests and receipt verification
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
import logging

from auth import get_current_actor
from capacity import get_capacity_status
from context import ActorContext, require_role
from database import get_db
from email_service import ReceiptNotifier
from handover_verification import reject_handover, verify_handover
from handovers import list_eligible_receipts, list_pending_handovers, request_handover
from ledger import get_collector_balances, get_collector_ledger, get_custody_balance
from models import ActorRole
from payment_verification import PaymentVerificationEngine
from schemas import (
    CapacityStatusResponse,
    CollectorBalanceResponse,
    CollectorLedgerResponse,
    CustodyBalanceResponse,
    HandoverCreate,
    HandoverReject,
    HandoverResponse,
    LedgerEntryResponse,
    PaymentReject,
    PaymentResponse,
    PendingHandoverResponse,
    PendingPaymentResponse
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/finance", tags=["finance"])


def get_receipt_notifier() -> ReceiptNotifier:
    return ReceiptNotifier()


def get_verification_engine(
    db: AsyncSession = Depends(get_db),
    notifier: ReceiptNotifier = Depends(get_receipt_notifier)
) -> PaymentVerificationEngine:
    return PaymentVerificationEngine(db, notifier=notifier)


def _ledger_response(staff, balance, entries) -> CollectorLedgerResponse:
    return CollectorLedgerResponse(
        collector_id=staff.id,
        collector_name=staff.name,
        balance=CustodyBalanceResponse.model_validate(balance),
        entries=[LedgerEntryResponse.model_validate(e) for e in entries]
    )


# ==================== CUSTODY (STAFF) ====================

@router.get("/custody/summary", response_model=CustodyBalanceResponse)
async def custody_summary(
    actor: ActorContext = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """Cash the calling collector holds right now"""
    require_role(actor, ActorRole.STAFF)
    return await get_custody_balance(db, actor)


@router.get("/custody/eligible-receipts", response_model=List[PaymentResponse])
async def eligible_receipts(
    actor: ActorContext = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """Completed cash receipts that can be attached to a new handover"""
    return await list_eligible_receipts(db, actor)


@router.get("/custody/ledger", response_model=CollectorLedgerResponse)
async def my_ledger(
    limit: int = Query(50, ge=1, le=500),
    actor: ActorContext = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    require_role(actor, ActorRole.STAFF)
    staff, balance, entries = await get_collector_ledger(db, actor, limit=limit)
    return _ledger_response(staff, balance, entries)


# ==================== HANDOVERS ====================

@router.post("/handovers", response_model=HandoverResponse, status_code=201)
async def create_handover(
    handover_data: HandoverCreate,
    actor: ActorContext = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """Request a cash handover to the owner"""
    return await request_handover(
        db,
        actor,
        amount=handover_data.amount,
        method=handover_data.method,
        notes=handover_data.notes,
        attachment_url=handover_data.attachment_url,
        candidate_receipt_ids=handover_data.receipt_ids
    )


@router.get("/handovers/pending", response_model=List[PendingHandoverResponse])
async def pending_handovers(
    actor: ActorContext = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    rows = await list_pending_handovers(db, actor)
    return [
        PendingHandoverResponse(
            **HandoverResponse.model_validate(handover).model_dump(),
            staff_name=staff_name,
            branch_name=branch_name
        )
        for handover, staff_name, branch_name in rows
    ]


@router.post("/handovers/{handover_id}/verify", response_model=HandoverResponse)
async def verify(
    handover_id: int,
    actor: ActorContext = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """Owner confirms the cash was received"""
    return await verify_handover(db, actor, handover_id)


@router.post("/handovers/{handover_id}/reject", response_model=HandoverResponse)
async def reject(
    handover_id: int,
    body: Optional[HandoverReject] = None,
    actor: ActorContext = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    return await reject_handover(db, actor, handover_id, reason=body.reason if body else None)


# ==================== COLLECTORS (OWNER) ====================

@router.get("/collectors", response_model=List[CollectorBalanceResponse])
async def collectors(
    actor: ActorContext = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """Every active collector and the cash they hold, highest first"""
    return await get_collector_balances(db, actor)


@router.get("/collectors/{collector_id}/ledger", response_model=CollectorLedgerResponse)
async def collector_ledger(
    collector_id: int,
    limit: int = Query(50, ge=1, le=500),
    actor: ActorContext = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    require_role(actor, ActorRole.OWNER)
    staff, balance, entries = await get_collector_ledger(db, actor, collector_id, limit=limit)
    return _ledger_response(staff, balance, entries)


# ==================== RECEIPTS ====================

@router.get("/receipts/pending", response_model=List[PendingPaymentResponse])
async def pending_receipts(
    student_id: Optional[int] = None,
    actor: ActorContext = Depends(get_current_actor),
    engine: PaymentVerificationEngine = Depends(get_verification_engine)
):
    payments = await engine.list_pending(actor, student_id=student_id)
    return [
        PendingPaymentResponse(
            **PaymentResponse.model_validate(p).model_dump(),
            student_name=p.student.name if p.student else None,
            plan_name=p.plan.name if p.plan else None
        )
        for p in payments
    ]


@router.post("/receipts/{payment_id}/approve", response_model=PaymentResponse)
async def approve_receipt(
    payment_id: int,
    actor: ActorContext = Depends(get_current_actor),
    engine: PaymentVerificationEngine = Depends(get_verification_engine)
):
    """Approve a receipt and activate the subscription it pays for"""
    return await engine.approve(actor, payment_id)


@router.post("/receipts/{payment_id}/reject", response_model=PaymentResponse)
async def reject_receipt(
    payment_id: int,
    body: Optional[PaymentReject] = None,
    actor: ActorContext = Depends(get_current_actor),
    engine: PaymentVerificationEngine = Depends(get_verification_engine)
):
    return await engine.reject(actor, payment_id, reason=body.reason if body else None)


# ==================== CAPACITY ====================

@router.get("/capacity", response_model=CapacityStatusResponse)
async def capacity(
    actor: ActorContext = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    require_role(actor, ActorRole.OWNER)
    return await get_capacity_status(db, actor.tenant_id)
