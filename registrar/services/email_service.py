"""
Email service using SendGrid for payment and refund notifications.
"""

import asyncio
import os
import logging
from typing import Any, Dict
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail, Email, To, Content
from dotenv import load_dotenv
from registrar.utils.env_utils import get_bool_env

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

# SendGrid Configuration
SENDGRID_API_KEY = os.getenv("SENDGRID_API_KEY")
SENDGRID_FROM_EMAIL = os.getenv("SENDGRID_FROM_EMAIL", "noreply@selectregistrar.com")
ENABLE_EMAIL = get_bool_env("ENABLE_EMAIL", default=True)

PAYMENT_CONFIRMATION = "payment_confirmation"
REFUND_PROCESSED = "refund_processed"

# template key -> (subject, body); bodies are str.format templates
TEMPLATES: Dict[str, tuple] = {
    PAYMENT_CONFIRMATION: (
        "Payment Confirmation - Registration Complete",
        "\n".join(
            [
                "Thank you for your payment!",
                "",
                "Amount paid: {amount_display}",
                "Registrations: {registration_count}",
                "Card: {card_brand} ending in {card_last4}",
                "Payment reference: {gateway_payment_id}",
                "Receipt: {receipt_url}",
                "",
                "---",
                "This is an automated message from the registration system.",
            ]
        ),
    ),
    REFUND_PROCESSED: (
        "Refund Processed",
        "\n".join(
            [
                "A refund has been issued for your payment.",
                "",
                "Refund amount: {refund_amount_display}",
                "Total refunded: {refunded_amount_display} of {amount_display}",
                "Reason: {reason}",
                "Payment reference: {gateway_payment_id}",
                "",
                "---",
                "This is an automated message from the registration system.",
            ]
        ),
    ),
}


class _DefaultDict(dict):
    def __missing__(self, key):
        return "n/a"


def format_money(amount: int, currency: str = "USD") -> str:
    """Format minor units for display, e.g. 105000 -> '$1,050.00 USD'."""
    return f"${amount // 100:,}.{amount % 100:02d} {currency}"


def render_template(template_key: str, context: Dict[str, Any]):
    """
    Render a notification template.

    Args:
        template_key: One of TEMPLATES
        context: Values for the template; missing keys render as "n/a"

    Returns:
        Tuple of (subject, body)
    """
    if template_key not in TEMPLATES:
        raise KeyError(f"Unknown email template: {template_key}")
    subject, body = TEMPLATES[template_key]
    values = _DefaultDict(context)
    currency = context.get("currency", "USD")
    for key in ("amount", "refund_amount", "refunded_amount"):
        if isinstance(context.get(key), int):
            values[f"{key}_display"] = format_money(context[key], currency)
    return subject, body.format_map(values)


async def notify(template_key: str, recipient_email: str, context: Dict[str, Any]) -> bool:
    """
    Send a templated notification email via SendGrid.

    Args:
        template_key: Template to render (payment_confirmation, refund_processed)
        recipient_email: Address to send to
        context: Template values

    Returns:
        bool: True if the email was sent (or sending is disabled), False otherwise
    """
    if not ENABLE_EMAIL:
        logger.info(f"Email sending is disabled. {template_key} email to {recipient_email} skipped.")
        return True

    if not SENDGRID_API_KEY:
        logger.warning("SENDGRID_API_KEY not configured. Email notification skipped.")
        return True

    try:
        subject, email_body = render_template(template_key, context)

        message = Mail(
            from_email=Email(SENDGRID_FROM_EMAIL),
            to_emails=To(recipient_email),
            subject=subject,
            plain_text_content=Content("text/plain", email_body),
        )

        # SendGrid's client is blocking; keep it off the event loop
        sg = SendGridAPIClient(SENDGRID_API_KEY)
        response = await asyncio.to_thread(sg.send, message)

        if response.status_code >= 200 and response.status_code < 300:
            logger.info(f"{template_key} email sent successfully to {recipient_email}")
            return True
        else:
            logger.error(f"SendGrid returned status {response.status_code}: {response.body}")
            return False

    except Exception as e:
        logger.error(f"Failed to send {template_key} email: {str(e)}")
        return False
