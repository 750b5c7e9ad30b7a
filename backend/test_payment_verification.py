"""
Tests for payment_verification.py - approval, activation and capacity
"""

import re
import pytest
from datetime import datetime, timedelta
from sqlalchemy import select, func

from conftest import FakeNotifier, owner_of, staff_actor
from exceptions import CapacityExceeded, CapacityUnavailable, InvalidState, NotFound, Unauthorized
from models import (
    ActorRole, PaymentStatus, PaymentType, PlatformSubscriptionStatus, StaffActivity,
    StudentSubscription, SubscriptionStatus
)
from payment_verification import PaymentVerificationEngine, compute_end_date, generate_invoice_number


async def count_subscriptions(db, student_id: int) -> int:
    result = await db.execute(
        select(func.count(StudentSubscription.id)).where(StudentSubscription.student_id == student_id)
    )
    return result.scalar_one()


class TestComputeEndDate:

    def test_months_are_calendar_months(self):
        assert compute_end_date(datetime(2025, 1, 31), 1, "months") == datetime(2025, 2, 28)

    def test_days(self):
        assert compute_end_date(datetime(2025, 1, 1), 15, "days") == datetime(2025, 1, 16)

    def test_unknown_unit_falls_back_to_thirty_days(self):
        assert compute_end_date(datetime(2025, 1, 1), 2, "weeks") == datetime(2025, 1, 31)

    def test_missing_unit_falls_back(self):
        assert compute_end_date(datetime(2025, 1, 1), 2, None) == datetime(2025, 1, 31)


def test_invoice_number_format():
    assert re.fullmatch(r"INV-\d{6}-\d{3}", generate_invoice_number())


class TestApproveLinkedSubscription:

    async def test_pending_subscription_becomes_active_with_dates_untouched(self, world, factory, db, notifier):
        start = datetime(2030, 1, 1)
        end = datetime(2030, 2, 1)
        subscription = await factory.subscription(
            world.student, world.branch, status=SubscriptionStatus.PENDING, start_date=start, end_date=end
        )
        receipt = await factory.receipt(
            world.staff, amount=1500, status=PaymentStatus.PENDING_VERIFICATION,
            type=PaymentType.SUBSCRIPTION, student=world.student, subscription=subscription
        )

        payment = await PaymentVerificationEngine(db, notifier).approve(world.owner, receipt.id)

        assert payment.status == PaymentStatus.COMPLETED
        assert payment.verified_by == world.owner.actor_id
        assert payment.verifier_role == ActorRole.OWNER
        assert payment.verified_at is not None
        assert re.fullmatch(r"INV-\d{6}-\d{3}", payment.invoice_no)
        await db.refresh(subscription)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.start_date == start
        assert subscription.end_date == end

    async def test_already_active_subscription_does_not_need_a_slot(self, world, factory, db, notifier):
        tenant = await factory.tenant(name="Full House", ceiling=1)
        branch = await factory.branch(tenant)
        staff = await factory.staff(tenant, branch)
        student = await factory.student(tenant, branch)
        subscription = await factory.subscription(student, branch)
        receipt = await factory.receipt(
            staff, status=PaymentStatus.PENDING_VERIFICATION, type=PaymentType.SUBSCRIPTION,
            student=student, subscription=subscription
        )

        payment = await PaymentVerificationEngine(db, notifier).approve(owner_of(tenant.id), receipt.id)

        assert payment.status == PaymentStatus.COMPLETED


class TestApprovePlanPurchase:

    async def test_creates_active_subscription(self, world, factory, db, notifier):
        plan = await factory.plan(world.tenant, duration=1, duration_unit="months")
        receipt = await factory.receipt(
            world.staff, amount=150000, status=PaymentStatus.PENDING_VERIFICATION,
            type=PaymentType.SUBSCRIPTION, student=world.student, plan=plan
        )

        payment = await PaymentVerificationEngine(db, notifier).approve(world.collector, receipt.id)

        assert payment.subscription_id is not None
        assert payment.verifier_role == ActorRole.STAFF
        subscription = await db.get(StudentSubscription, payment.subscription_id)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.plan_id == plan.id
        assert subscription.amount == 150000
        assert subscription.end_date > subscription.start_date + timedelta(days=27)

    async def test_updates_most_recent_pending_subscription(self, world, factory, db, notifier):
        plan = await factory.plan(world.tenant, duration=10, duration_unit="days")
        older = await factory.subscription(
            world.student, world.branch, status=SubscriptionStatus.PENDING,
            created_at=datetime.utcnow() - timedelta(days=3)
        )
        newer = await factory.subscription(
            world.student, world.branch, status=SubscriptionStatus.PENDING,
            created_at=datetime.utcnow() - timedelta(days=1)
        )
        receipt = await factory.receipt(
            world.staff, status=PaymentStatus.PENDING_VERIFICATION,
            type=PaymentType.SUBSCRIPTION, student=world.student, plan=plan
        )

        payment = await PaymentVerificationEngine(db, notifier).approve(world.owner, receipt.id)

        assert payment.subscription_id == newer.id
        await db.refresh(older)
        await db.refresh(newer)
        assert newer.status == SubscriptionStatus.ACTIVE
        assert newer.plan_id == plan.id
        assert (newer.end_date - newer.start_date) == timedelta(days=10)
        assert older.status == SubscriptionStatus.PENDING
        assert await count_subscriptions(db, world.student.id) == 2

    async def test_fee_receipt_activates_nothing(self, world, factory, db, notifier):
        receipt = await factory.receipt(
            world.staff, status=PaymentStatus.PENDING_VERIFICATION, type=PaymentType.FEE, student=world.student
        )

        payment = await PaymentVerificationEngine(db, notifier).approve(world.owner, receipt.id)

        assert payment.status == PaymentStatus.COMPLETED
        assert payment.subscription_id is None
        assert await count_subscriptions(db, world.student.id) == 0

    async def test_plan_of_another_tenant(self, world, factory, db, notifier):
        other = await factory.tenant(name="Other Library")
        foreign_plan = await factory.plan(other)
        receipt = await factory.receipt(
            world.staff, status=PaymentStatus.PENDING_VERIFICATION,
            type=PaymentType.SUBSCRIPTION, student=world.student, plan=foreign_plan
        )
        receipt_id = receipt.id

        with pytest.raises(NotFound):
            await PaymentVerificationEngine(db, notifier).approve(world.owner, receipt_id)

        await db.refresh(receipt)
        assert receipt.status == PaymentStatus.PENDING_VERIFICATION


class TestCapacity:

    async def test_limit_reached_rolls_everything_back(self, factory, db, notifier):
        """Ceiling 10, 10 active subscriptions, an 11th activating receipt fails."""
        tenant = await factory.tenant(ceiling=10)
        branch = await factory.branch(tenant)
        staff = await factory.staff(tenant, branch)
        await factory.active_subscriptions(tenant, branch, 10)
        student = await factory.student(tenant, branch, name="Eleventh")
        plan = await factory.plan(tenant)
        receipt = await factory.receipt(
            staff, status=PaymentStatus.PENDING_VERIFICATION,
            type=PaymentType.SUBSCRIPTION, student=student, plan=plan
        )
        receipt_id, student_id, tenant_id = receipt.id, student.id, tenant.id

        with pytest.raises(CapacityExceeded) as exc_info:
            await PaymentVerificationEngine(db, notifier).approve(owner_of(tenant_id), receipt_id)

        assert exc_info.value.reason == "Active student limit reached"
        assert exc_info.value.retryable is True
        await db.refresh(receipt)
        assert receipt.status == PaymentStatus.PENDING_VERIFICATION
        assert receipt.verified_by is None
        assert receipt.verifier_role is None
        assert receipt.verified_at is None
        assert receipt.invoice_no is None
        assert receipt.subscription_id is None
        assert await count_subscriptions(db, student_id) == 0
        assert notifier.sent == []

    async def test_linked_pending_subscription_needs_a_slot(self, factory, db, notifier):
        tenant = await factory.tenant(ceiling=1)
        branch = await factory.branch(tenant)
        staff = await factory.staff(tenant, branch)
        await factory.active_subscriptions(tenant, branch, 1)
        student = await factory.student(tenant, branch)
        subscription = await factory.subscription(student, branch, status=SubscriptionStatus.PENDING)
        receipt = await factory.receipt(
            staff, status=PaymentStatus.PENDING_VERIFICATION, type=PaymentType.SUBSCRIPTION,
            student=student, subscription=subscription
        )
        receipt_id, tenant_id = receipt.id, tenant.id

        with pytest.raises(CapacityExceeded):
            await PaymentVerificationEngine(db, notifier).approve(owner_of(tenant_id), receipt_id)

        await db.refresh(subscription)
        assert subscription.status == SubscriptionStatus.PENDING

    async def test_linked_subscription_already_over_needs_no_slot(self, factory, db, notifier):
        tenant = await factory.tenant(ceiling=1)
        branch = await factory.branch(tenant)
        staff = await factory.staff(tenant, branch)
        await factory.active_subscriptions(tenant, branch, 1)
        student = await factory.student(tenant, branch)
        subscription = await factory.subscription(
            student, branch, status=SubscriptionStatus.PENDING, end_date=datetime.utcnow() - timedelta(days=1)
        )
        receipt = await factory.receipt(
            staff, status=PaymentStatus.PENDING_VERIFICATION, type=PaymentType.SUBSCRIPTION,
            student=student, subscription=subscription
        )

        payment = await PaymentVerificationEngine(db, notifier).approve(owner_of(tenant.id), receipt.id)

        assert payment.status == PaymentStatus.COMPLETED
        assert subscription.status == SubscriptionStatus.ACTIVE

    async def test_expired_subscriptions_do_not_count(self, factory, db, notifier):
        tenant = await factory.tenant(ceiling=1)
        branch = await factory.branch(tenant)
        staff = await factory.staff(tenant, branch)
        old_student = await factory.student(tenant, branch, name="Alumnus")
        # Still marked active but the end date has passed
        await factory.subscription(old_student, branch, end_date=datetime.utcnow() - timedelta(days=1))
        student = await factory.student(tenant, branch)
        plan = await factory.plan(tenant)
        receipt = await factory.receipt(
            staff, status=PaymentStatus.PENDING_VERIFICATION,
            type=PaymentType.SUBSCRIPTION, student=student, plan=plan
        )

        payment = await PaymentVerificationEngine(db, notifier).approve(owner_of(tenant.id), receipt.id)

        assert payment.subscription_id is not None

    async def test_inactive_platform_subscription(self, factory, db, notifier):
        tenant = await factory.tenant(platform_status=PlatformSubscriptionStatus.PAST_DUE)
        branch = await factory.branch(tenant)
        staff = await factory.staff(tenant, branch)
        receipt = await factory.receipt(staff, status=PaymentStatus.PENDING_VERIFICATION)
        receipt_id, tenant_id = receipt.id, tenant.id

        with pytest.raises(CapacityUnavailable) as exc_info:
            await PaymentVerificationEngine(db, notifier).approve(owner_of(tenant_id), receipt_id)

        assert exc_info.value.reason == "Platform subscription inactive"
        await db.refresh(receipt)
        assert receipt.status == PaymentStatus.PENDING_VERIFICATION

    async def test_missing_platform_subscription(self, factory, db, notifier):
        tenant = await factory.tenant(with_platform_subscription=False)
        branch = await factory.branch(tenant)
        staff = await factory.staff(tenant, branch)
        receipt = await factory.receipt(staff, status=PaymentStatus.PENDING_VERIFICATION)

        with pytest.raises(CapacityUnavailable):
            await PaymentVerificationEngine(db, notifier).approve(owner_of(tenant.id), receipt.id)


class TestIdempotence:

    async def test_approving_twice(self, world, factory, db, notifier):
        plan = await factory.plan(world.tenant)
        receipt = await factory.receipt(
            world.staff, status=PaymentStatus.PENDING_VERIFICATION,
            type=PaymentType.SUBSCRIPTION, student=world.student, plan=plan
        )
        receipt_id, student_id = receipt.id, world.student.id
        engine = PaymentVerificationEngine(db, notifier)
        await engine.approve(world.owner, receipt_id)

        with pytest.raises(InvalidState):
            await engine.approve(world.owner, receipt_id)

        assert await count_subscriptions(db, student_id) == 1
        assert notifier.sent == [receipt_id]

    async def test_approving_a_rejected_receipt(self, world, factory, db, notifier):
        receipt = await factory.receipt(world.staff, status=PaymentStatus.PENDING_VERIFICATION)
        receipt_id = receipt.id
        engine = PaymentVerificationEngine(db, notifier)
        await engine.reject(world.owner, receipt_id)

        with pytest.raises(InvalidState):
            await engine.approve(world.owner, receipt_id)

    async def test_rejecting_a_completed_receipt(self, world, factory, db, notifier):
        receipt = await factory.receipt(world.staff, status=PaymentStatus.COMPLETED)

        with pytest.raises(InvalidState):
            await PaymentVerificationEngine(db, notifier).reject(world.owner, receipt.id)


class TestScoping:

    async def test_unknown_receipt(self, world, db, notifier):
        with pytest.raises(NotFound):
            await PaymentVerificationEngine(db, notifier).approve(world.owner, 4242)

    async def test_other_tenant(self, world, factory, db, notifier):
        receipt = await factory.receipt(world.staff, status=PaymentStatus.PENDING_VERIFICATION)
        other = await factory.tenant(name="Other Library")

        with pytest.raises(Unauthorized):
            await PaymentVerificationEngine(db, notifier).approve(owner_of(other.id), receipt.id)

    async def test_staff_of_another_branch(self, world, factory, db, notifier):
        second = await factory.branch(world.tenant, name="Second Branch")
        elsewhere = await factory.staff(world.tenant, second, name="Dev")
        receipt = await factory.receipt(world.staff, status=PaymentStatus.PENDING_VERIFICATION)

        with pytest.raises(Unauthorized):
            await PaymentVerificationEngine(db, notifier).reject(staff_actor(elsewhere), receipt.id)


class TestReject:

    async def test_sets_verifier_fields_only(self, world, factory, db, notifier):
        plan = await factory.plan(world.tenant)
        receipt = await factory.receipt(
            world.staff, status=PaymentStatus.PENDING_VERIFICATION,
            type=PaymentType.SUBSCRIPTION, student=world.student, plan=plan
        )

        payment = await PaymentVerificationEngine(db, notifier).reject(world.collector, receipt.id, reason="Fake note")

        assert payment.status == PaymentStatus.REJECTED
        assert payment.verified_by == world.collector.actor_id
        assert payment.verifier_role == ActorRole.STAFF
        assert payment.subscription_id is None
        assert payment.invoice_no is None
        assert await count_subscriptions(db, world.student.id) == 0
        assert notifier.sent == []

        result = await db.execute(select(StaffActivity).where(StaffActivity.entity_id == payment.id))
        assert result.scalar_one().action == "Payment Rejected"


class TestPostCommitEffects:

    async def test_notification_is_sent_after_approval(self, world, factory, db, notifier):
        receipt = await factory.receipt(world.staff, status=PaymentStatus.PENDING_VERIFICATION)

        payment = await PaymentVerificationEngine(db, notifier).approve(world.owner, receipt.id)

        assert notifier.sent == [payment.id]

    async def test_failing_notifier_does_not_fail_the_approval(self, world, factory, db):
        notifier = FakeNotifier(error=RuntimeError("mail server down"))
        receipt = await factory.receipt(world.staff, status=PaymentStatus.PENDING_VERIFICATION)
        receipt_id = receipt.id

        payment = await PaymentVerificationEngine(db, notifier).approve(world.owner, receipt_id)

        assert payment.status == PaymentStatus.COMPLETED
        assert notifier.sent == [receipt_id]
        await db.refresh(receipt)
        assert receipt.status == PaymentStatus.COMPLETED

    async def test_undelivered_notification_is_not_an_error(self, world, factory, db):
        notifier = FakeNotifier(result=False)
        receipt = await factory.receipt(world.staff, status=PaymentStatus.PENDING_VERIFICATION)

        payment = await PaymentVerificationEngine(db, notifier).approve(world.owner, receipt.id)

        assert payment.status == PaymentStatus.COMPLETED

    async def test_approval_is_logged(self, world, factory, db, notifier):
        receipt = await factory.receipt(world.staff, status=PaymentStatus.PENDING_VERIFICATION)

        payment = await PaymentVerificationEngine(db, notifier).approve(world.owner, receipt.id)

        result = await db.execute(select(StaffActivity).where(StaffActivity.entity_id == payment.id))
        activity = result.scalar_one()
        assert activity.action == "Payment Approved"
        assert activity.actor_role == ActorRole.OWNER


class TestListPending:

    async def test_scoped_and_filtered(self, world, factory, db, notifier):
        other_student = await factory.student(world.tenant, world.branch, name="Meera")
        mine = await factory.receipt(world.staff, status=PaymentStatus.PENDING_VERIFICATION, student=world.student)
        await factory.receipt(world.staff, status=PaymentStatus.PENDING_VERIFICATION, student=other_student)
        await factory.receipt(world.staff, status=PaymentStatus.COMPLETED, student=world.student)
        second = await factory.branch(world.tenant, name="Second Branch")
        elsewhere = await factory.staff(world.tenant, second, name="Dev")
        await factory.receipt(elsewhere, status=PaymentStatus.PENDING_VERIFICATION)
        engine = PaymentVerificationEngine(db, notifier)

        assert len(await engine.list_pending(world.owner)) == 3
        assert len(await engine.list_pending(world.collector)) == 2
        filtered = await engine.list_pending(world.collector, student_id=world.student.id)
        assert [p.id for p in filtered] == [mine.id]
