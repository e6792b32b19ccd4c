"""
Alert Notification Service
Sends operator alert emails (dead letter growth, open circuit breakers)
"""

import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from datetime import datetime
from typing import Optional
import structlog

from app.config import settings

logger = structlog.get_logger()


class AlertNotifier:
    """
    Best-effort SMTP alerts to the admin address.

    Never raises: a broken mail server must not take the pipeline down with it.
    """

    def __init__(self, recipient: Optional[str] = None):
        """Load SMTP settings from app configuration"""
        self.smtp_host = settings.smtp_host
        self.smtp_port = settings.smtp_port
        self.smtp_username = settings.smtp_username
        self.smtp_password = settings.smtp_password
        self.recipient = recipient or settings.admin_email

    def send(self, subject: str, body: str) -> bool:
        """
        Send one alert email.

        Returns:
            True if the message was handed to the SMTP server
        """
        if not self.smtp_host or not self.recipient:
            logger.warning("alert_email_skipped", reason="smtp_not_configured", subject=subject)
            return False

        msg = MIMEMultipart()
        msg['From'] = self.smtp_username or "noreply@pos-review-dispatcher.local"
        msg['To'] = self.recipient
        msg['Subject'] = subject
        msg.attach(MIMEText(body, 'plain'))

        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=10) as server:
                if self.smtp_username and self.smtp_password:
                    server.starttls()
                    server.login(self.smtp_username, self.smtp_password)
                server.send_message(msg)

            logger.info("alert_email_sent", subject=subject, recipient=self.recipient)
            return True

        except Exception as e:
            # Alert delivery failure should not cascade
            logger.error("alert_email_failed", subject=subject, error=str(e), smtp_host=self.smtp_host)
            return False

    def notify_dead_letter_growth(self, waiting: int, threshold: int) -> bool:
        """
        Alert that the dead letter queue has reached its threshold.

        Args:
            waiting: Current dead letter count
            threshold: Configured alert threshold
        """
        timestamp = datetime.utcnow().isoformat()
        body = f"""
SMS DEAD LETTER QUEUE ALERT

Dead letter jobs waiting: {waiting}
Alert threshold: {threshold}
Timestamp: {timestamp}

Review SMS sends are failing after all retries. Check the messaging
provider status and the circuit breaker state on /health.

---
List jobs: GET /api/v1/queue/dead-letter
Requeue job: POST /api/v1/queue/dead-letter/{{id}}/requeue

Environment: {settings.environment}
"""
        return self.send(f"[ALERT] SMS dead letter queue at {waiting} jobs", body.strip())
