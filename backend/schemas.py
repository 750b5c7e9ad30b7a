from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from models import HandoverMethod, HandoverStatus, PaymentMethod, PaymentStatus, PaymentType, ActorRole


# Custody Schemas
class CustodyBalanceResponse(BaseModel):
    """Derived balances for one collector (minor currency units)"""
    collector_id: int
    total_collected: int
    total_verified_handed_over: int
    cash_in_hand: int
    pending_handover_amount: int
    available_cash: int

    class Config:
        from_attributes = True


class LedgerEntryResponse(BaseModel):
    id: int
    type: str  # IN | OUT
    amount: int
    date: datetime
    description: str
    status: str
    details: dict = {}

    class Config:
        from_attributes = True


class CollectorLedgerResponse(BaseModel):
    collector_id: int
    collector_name: str
    balance: CustodyBalanceResponse
    entries: List[LedgerEntryResponse]


class CollectorBalanceResponse(BaseModel):
    """Owner view: one row per collector"""
    collector_id: int
    name: str
    branch_id: int
    balance: CustodyBalanceResponse
    pending_handover_count: int = 0
    last_handover_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Handover Schemas
class HandoverCreate(BaseModel):
    """Schema for a collector's handover request"""
    amount: int = Field(..., gt=0, description="Amount in minor currency units")
    method: HandoverMethod = HandoverMethod.CASH
    notes: Optional[str] = Field(None, max_length=1000)
    attachment_url: Optional[str] = Field(None, max_length=500)
    receipt_ids: List[int] = []


class HandoverReject(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class HandoverResponse(BaseModel):
    id: int
    tenant_id: int
    branch_id: int
    staff_id: int
    amount: int
    method: HandoverMethod
    status: HandoverStatus
    notes: Optional[str] = None
    attachment_url: Optional[str] = None
    verified_by: Optional[int] = None
    verified_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PendingHandoverResponse(HandoverResponse):
    staff_name: str
    branch_name: str


# Receipt Schemas
class PaymentReject(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class PaymentResponse(BaseModel):
    id: int
    tenant_id: int
    branch_id: int
    student_id: Optional[int] = None
    collected_by: Optional[int] = None
    amount: int
    method: PaymentMethod
    type: PaymentType
    status: PaymentStatus
    related_plan_id: Optional[int] = None
    subscription_id: Optional[int] = None
    handover_id: Optional[int] = None
    verified_by: Optional[int] = None
    verifier_role: Optional[ActorRole] = None
    verified_at: Optional[datetime] = None
    invoice_no: Optional[str] = None
    notes: Optional[str] = None
    date: datetime

    class Config:
        from_attributes = True


class PendingPaymentResponse(PaymentResponse):
    student_name: Optional[str] = None
    plan_name: Optional[str] = None


# Capacity Schemas
class CapacityStatusResponse(BaseModel):
    platform_status: Optional[str] = None
    is_active: bool
    ceiling: int
    active_count: int
    remaining: int
