"""User notifications and admin alerts for billing failures."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from models import AdminAlert, UserNotification
from services.email_service import email_service
from services.side_effects import fire_and_forget
from services.stripe_gateway import ts_to_datetime

logger = logging.getLogger(__name__)


def _format_amount(amount_minor: int, currency: str) -> str:
    return f"{amount_minor / 100:.2f} {currency.upper()}"


async def notify_payment_failed(db, user: Dict[str, Any], invoice: Dict[str, Any]) -> Dict[str, str]:
    """
    Record a failed invoice payment for the user and the admins.

    Writes a user notification, an admin alert and a billing_events row, then
    schedules the admin email without awaiting it. Plan and status fields are
    not touched here.
    """
    user_id = user["user_id"]
    currency = invoice.get("currency") or "usd"
    amount_due = invoice.get("amount_due") or 0
    next_attempt = ts_to_datetime(invoice.get("next_payment_attempt"))

    text = (
        f"Your payment of {_format_amount(amount_due, currency)} failed. "
        "Please update your payment method to keep your plan active."
    )
    if invoice.get("hosted_invoice_url"):
        text += f" Pay now: {invoice['hosted_invoice_url']}"

    notification = UserNotification(user_id=user_id, message_id="payment-failed", text=text)
    await db.notifications.insert_one(notification.model_dump())

    alert = AdminAlert(
        alert_type="payment_failed",
        user_id=user_id,
        message=f"Payment failed for user {user_id} ({user.get('email') or 'no email'}) on plan {user.get('plan')}",
        metadata={
            "invoice_id": invoice.get("id"),
            "amount_due": amount_due,
            "currency": currency,
            "attempt_count": invoice.get("attempt_count"),
            "stripe_customer_id": invoice.get("customer"),
        },
    )
    await db.admin_alerts.insert_one(alert.model_dump())

    await db.billing_events.insert_one({
        "type": "invoice.payment_failed",
        "user_id": user_id,
        "invoice_id": invoice.get("id"),
        "amount_due": amount_due,
        "currency": currency,
        "attempt_count": invoice.get("attempt_count"),
        "next_payment_attempt": next_attempt,
        "due_at": next_attempt,
        "created_at": datetime.now(timezone.utc),
    })

    fire_and_forget(
        "payment_failed_admin_email",
        email_service.send_admin_alert(
            subject=f"[Admin] Payment failed for {user.get('email') or user_id}",
            text_body=alert.message + f"\nInvoice: {invoice.get('id')}\nAmount due: {_format_amount(amount_due, currency)}",
            db=db,
        ),
    )
    logger.info(f"Payment failed notification and admin alert created for user {user_id}")
    return {"notification_id": notification.notification_id, "alert_id": alert.alert_id}
