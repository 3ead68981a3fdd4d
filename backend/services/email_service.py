from postmarker.core import PostmarkClient
from datetime import datetime, timezone
import os
import logging
from typing import List, Optional

logger = logging.getLogger(__name__)

# Verified sender in Postmark
DEFAULT_SENDER = os.getenv("EMAIL_SENDER", "billing@engagesuite.ai")


def admin_alert_recipients() -> List[str]:
    """Admin recipients for billing alerts: ADMIN_ALERT_EMAILS or OPS_ALERT_EMAIL."""
    raw = (os.getenv("ADMIN_ALERT_EMAILS") or "").strip()
    if raw:
        return [e.strip() for e in raw.split(",") if e.strip()]
    email = (os.getenv("OPS_ALERT_EMAIL") or "").strip()
    return [email] if email else []


class EmailService:
    def __init__(self, server_token: Optional[str] = None):
        postmark_token = server_token or os.getenv("POSTMARK_SERVER_TOKEN")
        if not postmark_token:
            logger.warning("POSTMARK_SERVER_TOKEN not set - emails will be logged but not sent")
            self.client = None
        else:
            self.client = PostmarkClient(server_token=postmark_token)
            logger.info("Postmark email client initialized")

    async def send_admin_alert(self, subject: str, text_body: str, db=None) -> int:
        """
        Send a plain-text alert to every admin recipient.

        Returns the number of messages accepted. Failures are logged per
        recipient and never raised: admin email is best-effort.
        """
        sent = 0
        for recipient in admin_alert_recipients():
            status = "sent"
            error_message = None
            try:
                if self.client:
                    response = self.client.emails.send(
                        From=DEFAULT_SENDER,
                        To=recipient,
                        Subject=subject,
                        TextBody=text_body,
                        Tag="billing-admin-alert",
                    )
                    logger.info(f"Admin alert email sent to {recipient}: {response['MessageID']}")
                else:
                    logger.info(f"[DEV MODE] Admin alert email logged (not sent) to {recipient}: {subject}")
                sent += 1
            except Exception as e:
                status = "failed"
                error_message = str(e)
                logger.error(f"Failed to send admin alert email to {recipient}: {e}")

            if db is not None:
                try:
                    await db.message_logs.insert_one({
                        "recipient": recipient,
                        "subject": subject,
                        "template_alias": "billing-admin-alert",
                        "status": status,
                        "error_message": error_message,
                        "created_at": datetime.now(timezone.utc).isoformat(),
                    })
                except Exception as log_err:
                    logger.warning(f"Failed to store message log for {recipient}: {log_err}")
        return sent


email_service = EmailService()
