"""
Email Service using Resend

Transactional emails sent by the webhook pipeline:
- Giving receipts (one-time and recurring gifts)
- "Payment method needs attention" notices for failed recurring charges
"""

import html
from datetime import datetime
from typing import Optional, Protocol

import resend

from giving.core.exceptions import TransientDependencyError
from giving.core.logging_config import get_logger

logger = get_logger(__name__)


class EmailSender(Protocol):
    def send(self, to: str, from_: str, subject: str, html_body: str) -> None: ...


class ResendEmailSender:
    """
    EmailSender backed by Resend.

    Raises TransientDependencyError on any failure so the caller decides
    whether to defer the email or give up; it never returns a silent False.
    """

    def __init__(self, api_key: str):
        self._api_key = api_key
        # The Resend SDK only reads its key from the module attribute
        resend.api_key = api_key

    def send(self, to: str, from_: str, subject: str, html_body: str) -> None:
        if not self._api_key:
            raise TransientDependencyError("RESEND_API_KEY is not configured", dependency="email")

        try:
            response = resend.Emails.send({
                "from": from_,
                "to": [to],
                "subject": subject,
                "html": html_body,
            })
        except Exception as e:
            logger.warning("Email send failed", to=to, subject=subject, error=str(e))
            raise TransientDependencyError(f"Resend send failed: {e}", dependency="email") from e

        logger.info("Email sent", to=to, subject=subject, email_id=(response or {}).get("id"))


def format_amount(amount_cents: int) -> str:
    """
    Format integer cents as dollars without going through float.

    >>> format_amount(2500)
    '$25.00'
    >>> format_amount(123456)
    '$1,234.56'
    """
    sign = "-" if amount_cents < 0 else ""
    dollars, cents = divmod(abs(amount_cents), 100)
    return f"{sign}${dollars:,}.{cents:02d}"


def render_receipt_email(
    organization_name: str,
    donor_name: str,
    fund_name: str,
    amount_cents: int,
    given_at: datetime,
    payment_method: str,
    reference: str,
    tax_id: Optional[str] = None,
) -> str:
    """Render the HTML receipt for a single gift. All text values are escaped."""
    org = html.escape(organization_name)
    amount = format_amount(amount_cents)
    date = given_at.strftime("%B %d, %Y")

    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
</head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; line-height: 1.6; color: #1a1a1a; max-width: 600px; margin: 0 auto; padding: 20px;">
    <!-- Header -->
    <div style="text-align: center; border-bottom: 2px solid #2563eb; padding-bottom: 20px; margin-bottom: 20px;">
        <h1 style="margin: 0;">{org}</h1>
        <p>Thank you for your generosity!</p>
    </div>

    <p>Dear {html.escape(donor_name)},</p>

    <p>Thank you for your gift to <strong>{html.escape(fund_name)}</strong>.</p>

    <div style="font-size: 32px; font-weight: bold; color: #2563eb; text-align: center; margin: 20px 0;">{amount}</div>

    <div style="background: #f9fafb; padding: 16px; border-radius: 8px; margin: 20px 0;">
        <p style="margin: 8px 0;"><strong>Date:</strong> {date}</p>
        <p style="margin: 8px 0;"><strong>Amount:</strong> {amount}</p>
        <p style="margin: 8px 0;"><strong>Fund:</strong> {html.escape(fund_name)}</p>
        <p style="margin: 8px 0;"><strong>Payment Method:</strong> {html.escape(payment_method)}</p>
        <p style="margin: 8px 0;"><strong>Receipt ID:</strong> {html.escape(reference)}</p>
    </div>

    <p>Your gift makes a real difference in our community. Thank you for your faithful support!</p>

    <!-- Footer -->
    <div style="margin-top: 40px; padding-top: 20px; border-top: 1px solid #e5e7eb; font-size: 14px; color: #6b7280; text-align: center;">
        <p><strong>{org}</strong></p>
        <p>Tax ID: {html.escape(tax_id or "N/A")}</p>
        <p style="margin-top: 16px; font-size: 12px;">This email serves as your receipt for tax purposes. Please keep for your records.</p>
    </div>
</body>
</html>
    """.strip()


def render_payment_failed_email(first_name: str, update_url: str) -> str:
    """Render the notice sent when a recurring gift's charge fails."""
    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
</head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; line-height: 1.6; color: #1a1a1a; max-width: 600px; margin: 0 auto; padding: 20px;">
    <p>Hi {html.escape(first_name or "there")},</p>
    <p>We were unable to process your recurring gift payment.</p>
    <p>Please update your payment method to continue supporting the church.</p>
    <p><a href="{html.escape(update_url, quote=True)}">Update Payment Method</a></p>
</body>
</html>
    """.strip()


def recurring_gifts_url(app_base_url: str) -> str:
    """Where donors manage the card behind a recurring gift."""
    return f"{app_base_url.rstrip('/')}/give/recurring"
