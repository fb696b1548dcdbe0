"""
Billing Notification Service.

WHAT:
    Sends billing emails (payment succeeded/failed, subscription canceled,
    one-time purchases) via Resend.

WHY:
    Accounts need to hear about billing state changes, but a slow or failing
    email channel must never delay or fail a webhook's database write.
    `notify()` therefore schedules the send as a detached task; failures are
    logged and never retried.

DESIGN:
    - HTML + plain text per email kind
    - Graceful fallback when Resend is not configured (logs "would send")
    - `pending` / `drain()` expose in-flight sends for shutdown and tests

REFERENCES:
    - Resend Python SDK: https://resend.com/docs/api-reference/emails/send-email
"""

import asyncio
import html as html_lib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Set

import resend

logger = logging.getLogger(__name__)


# =============================================================================
# EMAIL TEMPLATES
# =============================================================================

EMAIL_LAYOUT = """
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{title}</title></head>
<body style="margin: 0; padding: 0; background-color: #f9fafb; font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Arial, sans-serif;">
    <table role="presentation" style="width: 100%; max-width: 600px; margin: 40px auto; background-color: #ffffff; border-radius: 12px;">
        <tr><td style="padding: 32px;">
            <h1 style="margin: 0 0 16px; font-size: 22px; color: #111827;">{title}</h1>
            <p style="margin: 0 0 16px; color: #374151;">Hi {name},</p>
            {body}
        </td></tr>
        <tr><td style="padding: 24px 32px; border-top: 1px solid #e5e7eb; color: #6b7280; font-size: 13px;">
            <a href="{dashboard_url}/account/billing" style="color: #3b82f6; text-decoration: none;">Manage your billing</a>
        </td></tr>
    </table>
</body>
</html>
"""

ROW = '<p style="margin: 0 0 8px; color: #374151;"><strong>{label}:</strong> {value}</p>'


def _fmt_date(value: Optional[datetime]) -> str:
    return value.strftime("%B %d, %Y") if value else "n/a"


def _fmt_amount(value: Optional[Decimal], currency: str = "usd") -> str:
    if value is None:
        return "n/a"
    symbol = "$" if currency.lower() == "usd" else f"{currency.upper()} "
    return f"{symbol}{Decimal(value):.2f}"


@dataclass
class NotificationResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    recipients: List[str] = field(default_factory=list)


@dataclass
class EmailMessage:
    to: str
    subject: str
    title: str
    name: str
    rows: List[tuple] = field(default_factory=list)
    intro: str = ""
    link: Optional[str] = None
    link_label: str = "View invoice"


class BillingNotificationService:
    """
    Fire-and-forget billing emails.

    Usage:
        notifier = BillingNotificationService.from_settings(settings)
        notifier.payment_failed(email, name, amount, invoice_number, invoice_url)
    """

    def __init__(
        self,
        resend_api_key: Optional[str] = None,
        from_email: str = "Tutor Marketplace <billing@tutormarket.app>",
        dashboard_base_url: str = "http://localhost:3000",
    ):
        self.from_email = from_email
        self.dashboard_base_url = dashboard_base_url.rstrip("/")
        self.pending: Set[asyncio.Task] = set()

        self.resend_client = None
        if resend_api_key:
            resend.api_key = resend_api_key
            self.resend_client = resend
            logger.info("[NOTIFY] Resend client initialized")

    @classmethod
    def from_settings(cls, settings) -> "BillingNotificationService":
        return cls(
            resend_api_key=settings.RESEND_API_KEY,
            from_email=settings.RESEND_FROM_EMAIL,
            dashboard_base_url=settings.FRONTEND_URL,
        )

    # =========================================================================
    # DISPATCH
    # =========================================================================

    def notify(self, message: EmailMessage) -> Optional[asyncio.Task]:
        """Schedule `message` without waiting for it.

        Must be called from a running event loop (webhook handlers are async).
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error(f"[NOTIFY] No running event loop; dropping '{message.subject}' to {message.to}")
            return None

        task = loop.create_task(self.send(message))
        self.pending.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self.pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[NOTIFY] Notification task failed: {exc}", exc_info=exc)

    async def drain(self) -> None:
        """Wait for in-flight notifications (shutdown hook, tests)."""
        while self.pending:
            await asyncio.gather(*list(self.pending), return_exceptions=True)

    async def send(self, message: EmailMessage) -> NotificationResult:
        html, text = self._render(message)
        return await self._send_email([message.to], message.subject, html, text)

    def _render(self, message: EmailMessage):
        parts = []
        text_lines = [f"Hi {message.name},", ""]
        if message.intro:
            parts.append(f'<p style="margin: 0 0 16px; color: #374151;">{html_lib.escape(message.intro)}</p>')
            text_lines.extend([message.intro, ""])
        for label, value in message.rows:
            parts.append(ROW.format(label=html_lib.escape(str(label)), value=html_lib.escape(str(value))))
            text_lines.append(f"{label}: {value}")
        if message.link:
            parts.append(
                f'<p style="margin: 16px 0 0;"><a href="{html_lib.escape(message.link)}" '
                f'style="color: #3b82f6;">{html_lib.escape(message.link_label)}</a></p>'
            )
            text_lines.extend(["", f"{message.link_label}: {message.link}"])

        html = EMAIL_LAYOUT.format(
            title=html_lib.escape(message.title),
            name=html_lib.escape(message.name),
            body="\n".join(parts),
            dashboard_url=self.dashboard_base_url,
        )
        return html, "\n".join(text_lines)

    async def _send_email(self, to: List[str], subject: str, html: str, text: str) -> NotificationResult:
        if not self.resend_client:
            logger.warning(f"[NOTIFY] Resend not configured, would send: {subject} to {to}")
            return NotificationResult(success=True, message_id=None, recipients=to)

        try:
            response = await asyncio.to_thread(
                self.resend_client.Emails.send,
                {
                    "from": self.from_email,
                    "to": to,
                    "subject": subject,
                    "html": html,
                    "text": text,
                },
            )
            message_id = response.get("id") if isinstance(response, dict) else getattr(response, "id", None)
            logger.info(f"[NOTIFY] Email sent: {subject} to {to}, id={message_id}")
            return NotificationResult(success=True, message_id=message_id, recipients=to)

        except Exception as e:
            logger.exception(f"[NOTIFY] Failed to send email: {e}")
            return NotificationResult(success=False, error=str(e), recipients=to)

    # =========================================================================
    # BILLING EMAILS
    # =========================================================================

    def payment_succeeded(
        self,
        to: str,
        name: str,
        amount: Optional[Decimal],
        currency: str,
        invoice_number: Optional[str],
        period_start: Optional[datetime],
        period_end: Optional[datetime],
        next_billing_date: Optional[datetime],
        invoice_url: Optional[str],
    ):
        return self.notify(EmailMessage(
            to=to,
            subject="Payment received for your premium subscription",
            title="Payment successful",
            name=name,
            intro="Thanks! We received your subscription payment.",
            rows=[
                ("Amount", _fmt_amount(amount, currency)),
                ("Invoice", invoice_number or "n/a"),
                ("Billing period", f"{_fmt_date(period_start)} to {_fmt_date(period_end)}"),
                ("Next billing date", _fmt_date(next_billing_date)),
            ],
            link=invoice_url,
        ))

    def payment_failed(
        self,
        to: str,
        name: str,
        amount_due: Optional[Decimal],
        currency: str,
        invoice_number: Optional[str],
        invoice_url: Optional[str],
    ):
        return self.notify(EmailMessage(
            to=to,
            subject="Action required: your premium payment failed",
            title="Payment failed",
            name=name,
            intro="We couldn't process your latest subscription payment. Please update your payment method.",
            rows=[
                ("Amount due", _fmt_amount(amount_due, currency)),
                ("Invoice", invoice_number or "n/a"),
            ],
            link=invoice_url,
            link_label="Pay invoice",
        ))

    def subscription_canceled(self, to: str, name: str, access_until: Optional[datetime]):
        return self.notify(EmailMessage(
            to=to,
            subject="Your premium subscription has been canceled",
            title="Subscription canceled",
            name=name,
            intro="Your premium subscription has been canceled.",
            rows=[("Access until", _fmt_date(access_until))],
        ))

    def one_time_purchase(self, to: str, name: str, amount: Optional[Decimal], currency: str = "usd"):
        return self.notify(EmailMessage(
            to=to,
            subject="Your premium purchase is confirmed",
            title="Premium unlocked",
            name=name,
            intro="Your one-time premium purchase is confirmed.",
            rows=[("Amount", _fmt_amount(amount, currency))],
        ))

    def tutor_purchase(self, to: str, name: str, amount: Optional[Decimal], student_post_id: str, currency: str = "usd"):
        return self.notify(EmailMessage(
            to=to,
            subject="Contact details unlocked",
            title="Purchase confirmed",
            name=name,
            intro="You now have access to the student's contact details.",
            rows=[("Amount", _fmt_amount(amount, currency)), ("Post", student_post_id)],
        ))
