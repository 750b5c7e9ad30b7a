"""
Payment Verification & Activation
Finalizes pending receipts and activates the occupant subscription they pay for.

Approval is one transaction:
    1. lock the receipt (tenant/branch scoped), it must be pending_verification
    2. mark it completed with the verifier fields (and an invoice number)
    3. lock the tenant's platform subscription, it must be active
    4. count active occupant subscriptions with a future end date
    5. work out whether this receipt activates one more subscription
    6. enforce the plan ceiling -> CapacityExceeded rolls everything back
    7. activate the linked subscription, or create/update one from the plan
    8. commit
    9. after commit: activity log + receipt notification (best-effort)
"""

import logging
import secrets
import time
from datetime import datetime, timedelta
from typing import List, Optional, Protocol

from dateutil.relativedelta import relativedelta
from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from activity_log import log_staff_activity
from capacity import (
    count_active_subscriptions, counts_toward_capacity, ensure_capacity, lock_platform_subscription
)
from config import settings
from context import ActorContext, ensure_in_scope, require_role, scope_to_actor
from exceptions import InvalidState, NotFound
from models import (
    ActorRole, DurationUnit, Payment, PaymentStatus, PaymentType, Plan,
    StudentSubscription, SubscriptionStatus
)
from unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send(self, payment_id: int) -> bool:
        ...


def compute_end_date(start: datetime, duration: int, duration_unit: Optional[str]) -> datetime:
    """
    Add a plan's duration to `start`.

    Months are calendar months (Jan 31 + 1 month = Feb 28/29). Any unit we
    don't know falls back to UNKNOWN_DURATION_FALLBACK_DAYS days.
    """
    unit = (duration_unit or "").lower()
    if unit == DurationUnit.MONTHS.value:
        return start + relativedelta(months=duration)
    if unit == DurationUnit.DAYS.value:
        return start + timedelta(days=duration)

    fallback = settings.UNKNOWN_DURATION_FALLBACK_DAYS
    logger.warning(f"Unknown plan duration unit '{duration_unit}', defaulting to {fallback} days")
    return start + timedelta(days=fallback)


def generate_invoice_number() -> str:
    """INV-<6 digits>-<3 digits>"""
    return f"INV-{int(time.time() * 1000) % 1_000_000:06d}-{secrets.randbelow(1000):03d}"


class PaymentVerificationEngine:
    """
    Approve or reject receipts awaiting verification.

    Usage:
        engine = PaymentVerificationEngine(db, notifier=email_service.ReceiptNotifier())
        payment = await engine.approve(actor, payment_id)
    """

    def __init__(self, db: AsyncSession, notifier: Optional[Notifier] = None):
        self.db = db
        self.notifier = notifier

    async def list_pending(self, actor: ActorContext, student_id: Optional[int] = None) -> List[Payment]:
        """Receipts awaiting verification within the actor's scope, newest first."""
        require_role(actor, ActorRole.OWNER, ActorRole.STAFF)

        stmt = (
            select(Payment)
            .options(selectinload(Payment.student), selectinload(Payment.plan))
            .where(Payment.status == PaymentStatus.PENDING_VERIFICATION)
        )
        if student_id is not None:
            stmt = stmt.where(Payment.student_id == student_id)
        stmt = scope_to_actor(stmt, Payment, actor).order_by(desc(Payment.date), desc(Payment.id))

        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def approve(self, actor: ActorContext, payment_id: int) -> Payment:
        """
        Mark a receipt completed and activate what it pays for.

        Raises:
            NotFound: no such receipt in the actor's tenant
            Unauthorized: receipt belongs to another branch (staff)
            InvalidState: receipt already completed or rejected
            CapacityUnavailable: platform subscription inactive
            CapacityExceeded: active student limit reached
        """
        require_role(actor, ActorRole.OWNER, ActorRole.STAFF)

        async def work(uow: UnitOfWork) -> Payment:
            now = datetime.utcnow()
            payment = await self._lock_pending_payment(actor, payment_id)

            payment.status = PaymentStatus.COMPLETED
            payment.verified_by = actor.actor_id
            payment.verifier_role = actor.role
            payment.verified_at = now
            if not payment.invoice_no:
                payment.invoice_no = await self._unique_invoice_number()

            platform_subscription = await lock_platform_subscription(self.db, payment.tenant_id)
            active_count = await count_active_subscriptions(self.db, payment.tenant_id, now)

            linked_subscription = None
            plan = None
            if payment.subscription_id is not None:
                linked_subscription = await self._lock_linked_subscription(payment)
                to_activate = self._activation_delta(linked_subscription, now)
            elif payment.type == PaymentType.SUBSCRIPTION and payment.related_plan_id is not None:
                if payment.student_id is None:
                    raise InvalidState("Plan purchase receipt has no student")
                plan = await self._load_plan(payment)
                end_date = compute_end_date(now, plan.duration, plan.duration_unit)
                to_activate = 1 if end_date > now else 0
            else:
                to_activate = 0

            ensure_capacity(
                payment.tenant_id,
                active_count,
                to_activate,
                platform_subscription.plan.max_active_students
            )

            if linked_subscription is not None:
                # Renewal / confirmation: dates were set by the booking flow
                linked_subscription.status = SubscriptionStatus.ACTIVE
            elif plan is not None:
                subscription = await self._activate_from_plan(payment, plan, now, end_date)
                payment.subscription_id = subscription.id

            await self.db.flush()

            uow.after_commit(
                "activity log", log_staff_activity, self.db, actor,
                "Payment Approved", "payment", payment.id,
                {
                    "amount": payment.amount,
                    "invoice_no": payment.invoice_no,
                    "subscription_id": payment.subscription_id,
                }
            )
            if self.notifier is not None:
                uow.after_commit("receipt notification", self._dispatch_receipt, payment.id)
            return payment

        payment = await UnitOfWork(self.db).run(work, label=f"approve payment {payment_id}")
        logger.info(
            f"✅ Payment {payment.id} approved by {actor.role.value} {actor.actor_id} "
            f"(invoice {payment.invoice_no}, subscription {payment.subscription_id})"
        )
        return payment

    async def reject(self, actor: ActorContext, payment_id: int, reason: Optional[str] = None) -> Payment:
        """Mark a receipt rejected. Nothing else changes."""
        require_role(actor, ActorRole.OWNER, ActorRole.STAFF)

        async def work(uow: UnitOfWork) -> Payment:
            payment = await self._lock_pending_payment(actor, payment_id)

            payment.status = PaymentStatus.REJECTED
            payment.verified_by = actor.actor_id
            payment.verifier_role = actor.role
            payment.verified_at = datetime.utcnow()

            details = {"amount": payment.amount}
            if reason:
                details["reason"] = reason
            uow.after_commit(
                "activity log", log_staff_activity, self.db, actor,
                "Payment Rejected", "payment", payment.id, details
            )
            return payment

        payment = await UnitOfWork(self.db).run(work, label=f"reject payment {payment_id}")
        logger.info(f"Payment {payment.id} rejected by {actor.role.value} {actor.actor_id}")
        return payment

    async def _lock_pending_payment(self, actor: ActorContext, payment_id: int) -> Payment:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        payment = result.scalar_one_or_none()
        if not payment:
            raise NotFound("Payment not found")
        ensure_in_scope(payment, actor)

        if payment.status != PaymentStatus.PENDING_VERIFICATION:
            raise InvalidState(f"Payment already {payment.status.value}")
        return payment

    async def _lock_linked_subscription(self, payment: Payment) -> StudentSubscription:
        result = await self.db.execute(
            select(StudentSubscription)
            .where(
                StudentSubscription.id == payment.subscription_id,
                StudentSubscription.tenant_id == payment.tenant_id
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        subscription = result.scalar_one_or_none()
        if not subscription:
            raise NotFound("Linked subscription not found")
        return subscription

    @staticmethod
    def _activation_delta(subscription: StudentSubscription, now: datetime) -> int:
        """1 if activating `subscription` adds one to the active count, else 0."""
        would_count = subscription.end_date is not None and subscription.end_date > now
        return 0 if counts_toward_capacity(subscription, now) or not would_count else 1

    async def _load_plan(self, payment: Payment) -> Plan:
        result = await self.db.execute(
            select(Plan).where(Plan.id == payment.related_plan_id, Plan.tenant_id == payment.tenant_id)
        )
        plan = result.scalar_one_or_none()
        if not plan:
            raise NotFound("Plan not found")
        return plan

    async def _activate_from_plan(
        self,
        payment: Payment,
        plan: Plan,
        start_date: datetime,
        end_date: datetime
    ) -> StudentSubscription:
        # Most recently created pending subscription wins if there are several
        result = await self.db.execute(
            select(StudentSubscription)
            .where(
                StudentSubscription.tenant_id == payment.tenant_id,
                StudentSubscription.student_id == payment.student_id,
                StudentSubscription.branch_id == payment.branch_id,
                StudentSubscription.status == SubscriptionStatus.PENDING
            )
            .order_by(desc(StudentSubscription.created_at), desc(StudentSubscription.id))
            .limit(1)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        subscription = result.scalar_one_or_none()

        if subscription:
            subscription.status = SubscriptionStatus.ACTIVE
            subscription.plan_id = plan.id
            subscription.start_date = start_date
            subscription.end_date = end_date
            subscription.amount = payment.amount
            logger.info(f"Activated pending subscription {subscription.id} for student {payment.student_id}")
        else:
            subscription = StudentSubscription(
                tenant_id=payment.tenant_id,
                student_id=payment.student_id,
                branch_id=payment.branch_id,
                plan_id=plan.id,
                status=SubscriptionStatus.ACTIVE,
                start_date=start_date,
                end_date=end_date,
                amount=payment.amount
            )
            self.db.add(subscription)
            await self.db.flush()
            logger.info(f"Created active subscription {subscription.id} for student {payment.student_id}")

        return subscription

    async def _unique_invoice_number(self) -> str:
        for _ in range(5):
            invoice_no = generate_invoice_number()
            result = await self.db.execute(select(Payment.id).where(Payment.invoice_no == invoice_no))
            if result.scalar_one_or_none() is None:
                return invoice_no
        # The unique constraint still guards the commit
        return generate_invoice_number()

    async def _dispatch_receipt(self, payment_id: int) -> None:
        sent = await self.notifier.send(payment_id)
        if not sent:
            logger.warning(f"Receipt notification for payment {payment_id} was not delivered")
