"""
flowops/notify.py - Best-effort delivery of the run summary.

Channels: Slack incoming webhook (SLACK_WEBHOOK_URL), email over SMTP
(NOTIFICATION_EMAIL) and the audit log. A failing channel is logged as a
warning and never changes the outcome of the run.
"""
import logging
import smtplib
from datetime import datetime, timezone
from email.message import EmailMessage

import requests

from flowops.audit import AuditLog, make_event
from flowops.config import RotationConfig

log = logging.getLogger(__name__)

SLACK_TIMEOUT = 5
SMTP_TIMEOUT = 10


class Notifier:
    def __init__(self, config: RotationConfig, audit: AuditLog | None = None) -> None:
        self.config = config
        self.audit = audit or AuditLog(config.audit_log)

    def build_message(self, summary: str, cluster: str) -> str:
        return (
            f"Credential rotation completed for environment: {self.config.environment}\n\n"
            f"Rotation Summary:\n{summary}\n\n"
            f"Timestamp: {datetime.now(timezone.utc).isoformat()}\n"
            f"Environment: {self.config.environment}\n"
            f"Cluster: {cluster}"
        )

    def send(self, summary: str, cluster: str = "unknown") -> list[str]:
        """
        Deliver the summary to every configured channel.

        Returns:
            Names of the channels that accepted the message.
        """
        log.info("Sending rotation notification...")
        message = self.build_message(summary, cluster)
        delivered = []

        if self.config.slack_webhook_url and self._send_slack(message):
            delivered.append("slack")
        if self.config.notification_email and self._send_email(message):
            delivered.append("email")

        self.audit.write(make_event(
            "rotation_notification", "flow/credentials", self.config.environment, "success",
            {"summary": summary.splitlines(), "cluster": cluster, "channels": delivered},
        ))
        log.info(f"  [OK] Notification sent ({', '.join(delivered) or 'audit log only'})")
        return delivered

    def _send_slack(self, message: str) -> bool:
        payload = {
            "text": message,
            "username": "flow-rotation",
            "icon_emoji": ":key:",
        }
        try:
            resp = requests.post(self.config.slack_webhook_url, json=payload, timeout=SLACK_TIMEOUT)
            resp.raise_for_status()
            return True
        except requests.RequestException as e:
            log.warning(f"Failed to send Slack notification (non-fatal): {e}")
            return False

    def _send_email(self, message: str) -> bool:
        email = EmailMessage()
        email["Subject"] = f"Flow Credential Rotation - {self.config.environment}"
        email["From"] = self.config.smtp_from
        email["To"] = self.config.notification_email
        email.set_content(message)
        try:
            with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=SMTP_TIMEOUT) as smtp:
                if self.config.smtp_username:
                    smtp.starttls()
                    smtp.login(self.config.smtp_username, self.config.smtp_password)
                smtp.send_message(email)
            return True
        except (smtplib.SMTPException, OSError) as e:
            log.warning(f"Failed to send email notification (non-fatal): {e}")
            return False
