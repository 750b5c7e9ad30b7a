"""
Email service for receipt notifications.
Uses Postmark HTTP API for email delivery.
"""

import httpx
import logging
from html import escape
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from config import settings
from database import async_session_maker
from models import Branch, Payment, Tenant

logger = logging.getLogger(__name__)


def format_amount(amount: int) -> str:
    """Minor currency units -> 1,234.50"""
    return f"{amount / 100:,.2f}"


def generate_receipt_html(
    invoice_no: str,
    payment_date: str,
    student_name: str,
    plan_name: str,
    tenant_name: str,
    branch_name: str,
    branch_address: str,
    amount: int,
    payment_method: str,
    valid_until: Optional[str] = None
) -> str:
    """Generate HTML receipt email"""

    # Escape user-provided content
    tenant_name = escape(tenant_name)
    student_name = escape(student_name)
    plan_name = escape(plan_name)
    branch_name = escape(branch_name or "")
    branch_address = escape(branch_address or "")

    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <style>
        body {{ font-family: 'Courier New', monospace; line-height: 1.6; color: #333; margin: 0; padding: 20px; background: #f9fafb; }}
        .container {{ max-width: 600px; margin: 0 auto; background: white; padding: 30px; border-radius: 8px; box-shadow: 0 2px 4px rgba(0,0,0,0.1); }}
        .header {{ text-align: center; border-bottom: 2px dashed #333; padding-bottom: 20px; margin-bottom: 20px; }}
        .header h1 {{ margin: 10px 0; font-size: 24px; }}
        .header p {{ margin: 5px 0; font-size: 14px; color: #666; }}
        .info-section {{ margin: 20px 0; font-size: 14px; }}
        .info-section div {{ margin: 5px 0; }}
        .total {{ font-weight: bold; font-size: 18px; border-top: 2px solid #333; padding-top: 10px; margin-top: 10px; }}
        .footer {{ text-align: center; margin-top: 30px; padding-top: 20px; border-top: 2px dashed #333; color: #666; font-size: 12px; }}
    </style>
</head>
<body>
    <div class="container">
        <div class="header">
            <h1>{tenant_name}</h1>
            {f'<p>{branch_name}</p>' if branch_name else ''}
            {f'<p>{branch_address}</p>' if branch_address else ''}
        </div>

        <div class="info-section">
            <div><strong>Invoice #:</strong> {invoice_no}</div>
            <div><strong>Date:</strong> {payment_date}</div>
            <div><strong>Student:</strong> {student_name}</div>
            <div><strong>Plan:</strong> {plan_name}</div>
            {f'<div><strong>Valid until:</strong> {valid_until}</div>' if valid_until else ''}
            <div><strong>Payment Method:</strong> {payment_method}</div>
        </div>

        <div class="total">
            TOTAL PAID: {format_amount(amount)}
        </div>

        <div class="footer">
            <p><strong>Thank you!</strong></p>
        </div>
    </div>
</body>
</html>"""


def generate_receipt_plain(
    invoice_no: str,
    payment_date: str,
    student_name: str,
    plan_name: str,
    tenant_name: str,
    branch_name: str,
    amount: int,
    payment_method: str,
    valid_until: Optional[str] = None
) -> str:
    """Generate plain text receipt email"""

    return f"""{tenant_name}
{branch_name or ''}
{'='*50}

Invoice #: {invoice_no}
Date: {payment_date}
Student: {student_name}
Plan: {plan_name}
{f'Valid until: {valid_until}' if valid_until else ''}

{'='*50}
TOTAL PAID:      {format_amount(amount):>12}
Payment Method:  {payment_method}
{'='*50}

Thank you!
"""


class EmailService:
    """Async email service using Postmark HTTP API"""

    POSTMARK_API_URL = "https://api.postmarkapp.com/email"

    def __init__(self):
        self.server_token = settings.POSTMARK_SERVER_TOKEN
        self.from_email = settings.POSTMARK_FROM_EMAIL
        self.from_name = settings.POSTMARK_FROM_NAME
        self.enabled = settings.POSTMARK_ENABLED
        self.test_mode = settings.EMAIL_TEST_MODE

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        plain_content: str
    ) -> bool:
        """
        Send email via Postmark HTTP API.

        Args:
            to_email: Recipient email address
            subject: Email subject line
            html_content: HTML version of email
            plain_content: Plain text fallback

        Returns:
            True if email sent successfully, False otherwise
        """

        # Test mode - log email instead of sending
        if self.test_mode:
            logger.info(f"[TEST MODE] Email would be sent to: {to_email}")
            logger.info(f"[TEST MODE] Subject: {subject}")
            logger.debug(f"[TEST MODE] Plain content:\n{plain_content}")
            return True

        # Check if Postmark is enabled
        if not self.enabled:
            logger.info(f"Postmark disabled - email not sent to {to_email}")
            return False

        if not self.server_token:
            logger.error(f"POSTMARK_SERVER_TOKEN not configured - email not sent to {to_email}")
            return False

        try:
            headers = {
                "Accept": "application/json",
                "Content-Type": "application/json",
                "X-Postmark-Server-Token": self.server_token
            }

            payload = {
                "From": f"{self.from_name} <{self.from_email}>",
                "To": to_email,
                "Subject": subject,
                "HtmlBody": html_content,
                "TextBody": plain_content,
                "MessageStream": "outbound"
            }

            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self.POSTMARK_API_URL,
                    headers=headers,
                    json=payload,
                    timeout=30.0
                )

                if response.status_code == 200:
                    logger.info(f"Email sent successfully to {to_email}")
                    return True
                else:
                    logger.error(f"Postmark API error for {to_email}: {response.status_code} - {response.text}")
                    return False

        except httpx.TimeoutException:
            logger.error(f"Timeout sending email to {to_email}")
            return False

        except httpx.HTTPError as e:
            logger.error(f"Failed to send email to {to_email}: {str(e)}")
            return False


class ReceiptNotifier:
    """
    Sends the receipt for an approved payment.

    Runs after the approval has committed, so it opens its own session and
    reports failure through the return value instead of raising.
    """

    def __init__(self, session_factory=async_session_maker, email_service: Optional[EmailService] = None):
        self.session_factory = session_factory
        self.email_service = email_service or EmailService()

    async def send(self, payment_id: int) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Payment)
                .options(
                    selectinload(Payment.student),
                    selectinload(Payment.plan),
                    selectinload(Payment.subscription)
                )
                .where(Payment.id == payment_id)
            )
            payment = result.scalar_one_or_none()
            if not payment:
                logger.warning(f"Receipt requested for missing payment {payment_id}")
                return False

            if not payment.student or not payment.student.email:
                logger.info(f"Payment {payment_id}: student has no email, skipping receipt")
                return False

            tenant = await db.get(Tenant, payment.tenant_id)
            branch = await db.get(Branch, payment.branch_id)
            if not tenant:
                logger.warning(f"Receipt requested for payment {payment_id} of missing tenant {payment.tenant_id}")
                return False

        plan_name = payment.plan.name if payment.plan else payment.type.value.title()
        valid_until = None
        if payment.subscription and payment.subscription.end_date:
            valid_until = payment.subscription.end_date.strftime("%B %d, %Y")
        payment_date = payment.date.strftime("%B %d, %Y %I:%M %p")
        invoice_no = payment.invoice_no or f"PAY-{payment.id:08d}"

        html_content = generate_receipt_html(
            invoice_no=invoice_no,
            payment_date=payment_date,
            student_name=payment.student.name,
            plan_name=plan_name,
            tenant_name=tenant.name,
            branch_name=branch.name if branch else "",
            branch_address=branch.address if branch else "",
            amount=payment.amount,
            payment_method=payment.method.value.replace("_", " ").title(),
            valid_until=valid_until
        )
        plain_content = generate_receipt_plain(
            invoice_no=invoice_no,
            payment_date=payment_date,
            student_name=payment.student.name,
            plan_name=plan_name,
            tenant_name=tenant.name,
            branch_name=branch.name if branch else "",
            amount=payment.amount,
            payment_method=payment.method.value.replace("_", " ").title(),
            valid_until=valid_until
        )

        logger.info(f"Preparing receipt email for {payment.student.email} - Invoice #{invoice_no}")
        return await self.email_service.send_email(
            to_email=payment.student.email,
            subject=f"Receipt #{invoice_no} - {tenant.name}",
            html_content=html_content,
            plain_content=plain_content
        )
