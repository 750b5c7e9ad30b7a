from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Enum as SQLEnum, Index
from sqlalchemy.orm import relationship
from datetime import datetime
import enum
from database import Base


class ActorRole(str, enum.Enum):
    OWNER = "owner"
    STAFF = "staff"


class StaffStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class PlatformSubscriptionStatus(str, enum.Enum):
    """Status of the tenant's own subscription to the platform"""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PaymentStatus(str, enum.Enum):
    PENDING_VERIFICATION = "pending_verification"
    COMPLETED = "completed"
    REJECTED = "rejected"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    UPI = "upi"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    ONLINE = "online"
    OTHER = "other"


class PaymentType(str, enum.Enum):
    SUBSCRIPTION = "subscription"  # plan purchase or renewal
    FEE = "fee"
    OTHER = "other"


class HandoverStatus(str, enum.Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class HandoverMethod(str, enum.Enum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    UPI = "upi"
    OTHER = "other"


class SubscriptionStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"


class DurationUnit(str, enum.Enum):
    DAYS = "days"
    MONTHS = "months"


class Tenant(Base):
    """Library / co-working operator. Every row below is scoped to one tenant."""
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    owner_email = Column(String(100), nullable=False)
    phone = Column(String(20))
    created_at = Column(DateTime, default=datetime.utcnow)

    branches = relationship("Branch", back_populates="tenant", cascade="all, delete-orphan")
    platform_subscription = relationship("PlatformSubscription", back_populates="tenant", uselist=False)

    def __repr__(self):
        return f"<Tenant {self.name}>"


class Branch(Base):
    __tablename__ = "branches"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete='CASCADE'), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    address = Column(Text)
    city = Column(String(100))
    created_at = Column(DateTime, default=datetime.utcnow)

    tenant = relationship("Tenant", back_populates="branches")

    def __repr__(self):
        return f"<Branch {self.name} (Tenant: {self.tenant_id})>"


class PlatformPlan(Base):
    """Plan sold by the platform to tenants; carries the capacity ceiling"""
    __tablename__ = "platform_plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    price = Column(Integer, nullable=False, default=0)
    max_active_students = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<PlatformPlan {self.name} (max active: {self.max_active_students})>"


class PlatformSubscription(Base):
    """The tenant's subscription to the platform. One row per tenant; locked during approvals."""
    __tablename__ = "platform_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete='CASCADE'), nullable=False, unique=True, index=True)
    plan_id = Column(Integer, ForeignKey("platform_plans.id"), nullable=False)
    status = Column(SQLEnum(PlatformSubscriptionStatus), nullable=False, default=PlatformSubscriptionStatus.ACTIVE)
    current_period_end = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tenant = relationship("Tenant", back_populates="platform_subscription")
    plan = relationship("PlatformPlan")

    def __repr__(self):
        return f"<PlatformSubscription Tenant:{self.tenant_id} Status:{self.status}>"


class Staff(Base):
    """Front-desk staff member; the collector who holds cash custody"""
    __tablename__ = "staff"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete='CASCADE'), nullable=False, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    email = Column(String(100))
    status = Column(SQLEnum(StaffStatus), nullable=False, default=StaffStatus.ACTIVE)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<Staff {self.name} (Branch: {self.branch_id})>"


class Student(Base):
    __tablename__ = "students"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete='CASCADE'), nullable=False, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=True, index=True)
    name = Column(String(100), nullable=False)
    email = Column(String(100))
    phone = Column(String(20))
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<Student {self.name}>"


class Plan(Base):
    """Occupant plan sold by a tenant (e.g. 1 month full-day seat)"""
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete='CASCADE'), nullable=False, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=True)
    name = Column(String(100), nullable=False)
    price = Column(Integer, nullable=False)
    duration = Column(Integer, nullable=False)
    # Free-form on purpose: legacy rows carry units we don't know (see DurationUnit)
    duration_unit = Column(String(20), nullable=False, default=DurationUnit.MONTHS.value)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<Plan {self.name} ({self.duration} {self.duration_unit})>"


class StudentSubscription(Base):
    """An occupant's paid access window"""
    __tablename__ = "student_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete='CASCADE'), nullable=False, index=True)
    student_id = Column(Integer, ForeignKey("students.id", ondelete='CASCADE'), nullable=False, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=True)
    status = Column(SQLEnum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.PENDING)
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    seat_id = Column(Integer, nullable=True)  # owned by the seat CRUD layer
    locker_id = Column(Integer, nullable=True)
    amount = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    plan = relationship("Plan")
    student = relationship("Student")

    __table_args__ = (
        Index('idx_student_sub_capacity', 'tenant_id', 'status', 'end_date'),
        Index('idx_student_sub_student_branch', 'student_id', 'branch_id', 'status'),
    )

    def __repr__(self):
        return f"<StudentSubscription {self.id} Student:{self.student_id} Status:{self.status}>"


class CashHandover(Base):
    """A collector's claim that they transferred `amount` of custody to the owner"""
    __tablename__ = "cash_handovers"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete='CASCADE'), nullable=False, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    staff_id = Column(Integer, ForeignKey("staff.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    method = Column(SQLEnum(HandoverMethod), nullable=False, default=HandoverMethod.CASH)
    status = Column(SQLEnum(HandoverStatus), nullable=False, default=HandoverStatus.PENDING)
    notes = Column(Text, nullable=True)
    attachment_url = Column(String(500), nullable=True)
    verified_by = Column(Integer, nullable=True)
    verified_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    payments = relationship("Payment", back_populates="handover")

    __table_args__ = (
        Index('idx_handover_staff_status', 'staff_id', 'status'),
    )

    def __repr__(self):
        return f"<CashHandover {self.id} Staff:{self.staff_id} Amount:{self.amount} Status:{self.status}>"


class Payment(Base):
    """
    A recorded collection event (the cash receipt).

    Created by the booking/collection flow. Only the payment verification
    engine changes status/verifier/subscription fields and only the handover
    manager changes handover_id.
    """
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete='CASCADE'), nullable=False, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    student_id = Column(Integer, ForeignKey("students.id"), nullable=True, index=True)
    collected_by = Column(Integer, ForeignKey("staff.id"), nullable=True, index=True)

    amount = Column(Integer, nullable=False)  # minor currency units
    method = Column(SQLEnum(PaymentMethod), nullable=False, default=PaymentMethod.CASH)
    type = Column(SQLEnum(PaymentType), nullable=False, default=PaymentType.SUBSCRIPTION)
    status = Column(SQLEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING_VERIFICATION)

    related_plan_id = Column(Integer, ForeignKey("plans.id"), nullable=True)  # plan purchase target
    subscription_id = Column(Integer, ForeignKey("student_subscriptions.id"), nullable=True)
    handover_id = Column(Integer, ForeignKey("cash_handovers.id"), nullable=True, index=True)

    verified_by = Column(Integer, nullable=True)
    verifier_role = Column(SQLEnum(ActorRole), nullable=True)
    verified_at = Column(DateTime, nullable=True)

    invoice_no = Column(String(50), nullable=True, unique=True)
    notes = Column(Text, nullable=True)
    date = Column(DateTime, default=datetime.utcnow, nullable=False)  # when it was collected
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    handover = relationship("CashHandover", back_populates="payments")
    student = relationship("Student")
    subscription = relationship("StudentSubscription")
    plan = relationship("Plan")

    __table_args__ = (
        Index('idx_payment_custody', 'collected_by', 'status', 'method'),
        Index('idx_payment_tenant_status', 'tenant_id', 'status'),
    )

    def __repr__(self):
        return f"<Payment {self.id} Amount:{self.amount} Status:{self.status}>"


class StaffActivity(Base):
    """Activity log - who did what to which finance record"""
    __tablename__ = "staff_activities"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete='CASCADE'), nullable=False, index=True)
    actor_id = Column(Integer, nullable=False, index=True)
    actor_role = Column(SQLEnum(ActorRole), nullable=False)
    action = Column(String(100), nullable=False)
    entity = Column(String(50), nullable=False)  # handover, payment
    entity_id = Column(Integer)
    details = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    __table_args__ = (
        Index('idx_staff_activity_entity', 'entity', 'entity_id'),
    )

    def __repr__(self):
        return f"<StaffActivity {self.action} by {self.actor_role}:{self.actor_id}>"
