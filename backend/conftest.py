"""
Shared fixtures: a fresh in-memory database per test (plus a file-backed one
for concurrency tests), factories for the finance records and a fake
receipt notifier.
"""

import os

# Must be set before config/database are imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["EMAIL_TEST_MODE"] = "true"
os.environ["EXPIRY_SWEEP_ENABLED"] = "false"

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from context import ActorContext
from database import Base, use_immediate_transactions
from models import (
    ActorRole, Branch, CashHandover, HandoverMethod, HandoverStatus, Payment, PaymentMethod,
    PaymentStatus, PaymentType, Plan, PlatformPlan, PlatformSubscription, PlatformSubscriptionStatus,
    Staff, StaffStatus, Student, StudentSubscription, SubscriptionStatus, Tenant
)

OWNER_ID = 900


class FakeNotifier:
    """Records receipt notifications; can be told to fail or raise."""

    def __init__(self, result: bool = True, error: Exception = None):
        self.result = result
        self.error = error
        self.sent = []

    async def send(self, payment_id: int) -> bool:
        self.sent.append(payment_id)
        if self.error:
            raise self.error
        return self.result


class Factory:
    """Persists finance records with sensible defaults."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _save(self, obj):
        self.db.add(obj)
        await self.db.commit()
        return obj

    async def tenant(
        self,
        name: str = "Quiet Corner Library",
        ceiling: int = 10,
        platform_status: PlatformSubscriptionStatus = PlatformSubscriptionStatus.ACTIVE,
        with_platform_subscription: bool = True
    ) -> Tenant:
        tenant = await self._save(Tenant(name=name, owner_email="owner@example.com"))
        if with_platform_subscription:
            platform_plan = await self._save(PlatformPlan(name="Growth", price=99900, max_active_students=ceiling))
            await self._save(PlatformSubscription(
                tenant_id=tenant.id,
                plan_id=platform_plan.id,
                status=platform_status
            ))
        return tenant

    async def branch(self, tenant: Tenant, name: str = "Main Branch") -> Branch:
        return await self._save(Branch(tenant_id=tenant.id, name=name, address="12 Park Road"))

    async def staff(
        self,
        tenant: Tenant,
        branch: Branch,
        name: str = "Asha",
        status: StaffStatus = StaffStatus.ACTIVE
    ) -> Staff:
        return await self._save(Staff(
            tenant_id=tenant.id, branch_id=branch.id, name=name, email=f"{name.lower()}@example.com", status=status
        ))

    async def student(self, tenant: Tenant, branch: Branch, name: str = "Ravi", email: str = None) -> Student:
        return await self._save(Student(tenant_id=tenant.id, branch_id=branch.id, name=name, email=email))

    async def plan(
        self,
        tenant: Tenant,
        duration: int = 1,
        duration_unit: str = "months",
        price: int = 150000,
        name: str = "Monthly Full Day"
    ) -> Plan:
        return await self._save(Plan(
            tenant_id=tenant.id, name=name, price=price, duration=duration, duration_unit=duration_unit
        ))

    async def subscription(
        self,
        student: Student,
        branch: Branch,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        plan: Plan = None,
        start_date: datetime = None,
        end_date: datetime = None,
        created_at: datetime = None
    ) -> StudentSubscription:
        now = datetime.utcnow()
        subscription = StudentSubscription(
            tenant_id=student.tenant_id,
            student_id=student.id,
            branch_id=branch.id,
            plan_id=plan.id if plan else None,
            status=status,
            start_date=start_date or now - timedelta(days=1),
            end_date=end_date if end_date is not None else now + timedelta(days=29),
            amount=plan.price if plan else 0
        )
        if created_at:
            subscription.created_at = created_at
        return await self._save(subscription)

    async def active_subscriptions(self, tenant: Tenant, branch: Branch, count: int):
        for i in range(count):
            student = await self.student(tenant, branch, name=f"Occupant {i}")
            await self.subscription(student, branch)

    async def receipt(
        self,
        staff: Staff,
        amount: int = 500,
        status: PaymentStatus = PaymentStatus.COMPLETED,
        method: PaymentMethod = PaymentMethod.CASH,
        type: PaymentType = PaymentType.FEE,
        student: Student = None,
        plan: Plan = None,
        subscription: StudentSubscription = None,
        date: datetime = None
    ) -> Payment:
        return await self._save(Payment(
            tenant_id=staff.tenant_id,
            branch_id=staff.branch_id,
            collected_by=staff.id,
            student_id=student.id if student else None,
            amount=amount,
            method=method,
            type=type,
            status=status,
            related_plan_id=plan.id if plan else None,
            subscription_id=subscription.id if subscription else None,
            date=date or datetime.utcnow()
        ))

    async def handover(
        self,
        staff: Staff,
        amount: int,
        status: HandoverStatus = HandoverStatus.PENDING,
        receipts=()
    ) -> CashHandover:
        handover = await self._save(CashHandover(
            tenant_id=staff.tenant_id,
            branch_id=staff.branch_id,
            staff_id=staff.id,
            amount=amount,
            method=HandoverMethod.CASH,
            status=status
        ))
        for receipt in receipts:
            receipt.handover_id = handover.id
        await self.db.commit()
        return handover


def owner_of(tenant_id: int, actor_id: int = OWNER_ID) -> ActorContext:
    return ActorContext(tenant_id=tenant_id, actor_id=actor_id, role=ActorRole.OWNER)


def staff_actor(staff: Staff) -> ActorContext:
    return ActorContext(
        tenant_id=staff.tenant_id, actor_id=staff.id, role=ActorRole.STAFF, branch_id=staff.branch_id
    )


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def factory(db):
    return Factory(db)


@pytest.fixture
async def file_engine(tmp_path):
    """File-backed database where every session gets its own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'custody.sqlite'}")
    use_immediate_transactions(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def file_session_factory(file_engine):
    return async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def file_db(file_session_factory):
    async with file_session_factory() as session:
        yield session


@pytest.fixture
def file_factory(file_db):
    return Factory(file_db)


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
async def world(factory):
    """One tenant, one branch, one collector, one student."""
    tenant = await factory.tenant()
    branch = await factory.branch(tenant)
    staff = await factory.staff(tenant, branch)
    student = await factory.student(tenant, branch)
    return SimpleNamespace(
        tenant=tenant,
        branch=branch,
        staff=staff,
        student=student,
        owner=owner_of(tenant.id),
        collector=staff_actor(staff),
    )
