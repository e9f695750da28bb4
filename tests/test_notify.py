"""
Tests for notification delivery and the audit trail.
"""
import json
import smtplib
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

import requests

from flowops.audit import AuditLog, make_event
from flowops.notify import Notifier
from tests.fakes import make_config


class NotifyTestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.tmp = Path(self._tmp.name)

    def audit_events(self):
        path = self.tmp / "audit.log"
        if not path.exists():
            return []
        return [json.loads(line) for line in path.read_text().splitlines()]


class TestNotifier(NotifyTestCase):

    @patch("flowops.notify.requests.post")
    def test_slack_payload(self, mock_post):
        config = make_config(self.tmp, slack_webhook_url="https://hooks.slack.com/services/T/B/X")
        delivered = Notifier(config).send("✓ API tokens rotated", cluster="prod-cluster")

        self.assertEqual(delivered, ["slack"])
        url = mock_post.call_args.args[0]
        payload = mock_post.call_args.kwargs["json"]
        self.assertEqual(url, "https://hooks.slack.com/services/T/B/X")
        self.assertEqual(payload["username"], "flow-rotation")
        self.assertEqual(payload["icon_emoji"], ":key:")
        self.assertIn("✓ API tokens rotated", payload["text"])
        self.assertIn("Cluster: prod-cluster", payload["text"])
        self.assertIn("environment: test", payload["text"])

    @patch("flowops.notify.requests.post", side_effect=requests.ConnectionError("unreachable"))
    def test_slack_failure_is_not_fatal(self, _mock_post):
        config = make_config(self.tmp, slack_webhook_url="https://hooks.slack.com/services/T/B/X")
        with self.assertLogs("flowops.notify", level="WARNING") as logs:
            delivered = Notifier(config).send("summary")

        self.assertEqual(delivered, [])
        self.assertIn("non-fatal", logs.output[0])
        # The audit entry is still written.
        self.assertEqual(self.audit_events()[0]["action"], "rotation_notification")

    @patch("flowops.notify.smtplib.SMTP")
    def test_email(self, mock_smtp):
        config = make_config(self.tmp, notification_email="ops@example.com")
        smtp = mock_smtp.return_value.__enter__.return_value

        delivered = Notifier(config).send("summary")

        self.assertEqual(delivered, ["email"])
        mock_smtp.assert_called_once_with("localhost", 25, timeout=10)
        smtp.starttls.assert_not_called()
        message = smtp.send_message.call_args.args[0]
        self.assertEqual(message["To"], "ops@example.com")
        self.assertEqual(message["Subject"], "Flow Credential Rotation - test")

    @patch("flowops.notify.smtplib.SMTP")
    def test_email_with_login(self, mock_smtp):
        config = make_config(
            self.tmp, notification_email="ops@example.com", smtp_username="mailer", smtp_password="pw"
        )
        smtp = mock_smtp.return_value.__enter__.return_value
        Notifier(config).send("summary")

        smtp.starttls.assert_called_once()
        smtp.login.assert_called_once_with("mailer", "pw")

    @patch("flowops.notify.smtplib.SMTP", side_effect=smtplib.SMTPConnectError(421, "busy"))
    def test_email_failure_is_not_fatal(self, _mock_smtp):
        config = make_config(self.tmp, notification_email="ops@example.com")
        self.assertEqual(Notifier(config).send("summary"), [])

    @patch("flowops.notify.requests.post")
    def test_no_channels_configured(self, mock_post):
        delivered = Notifier(make_config(self.tmp)).send("summary")

        self.assertEqual(delivered, [])
        mock_post.assert_not_called()
        event = self.audit_events()[0]
        self.assertEqual(event["actor"], "rotation-agent")
        self.assertEqual(event["metadata"]["summary"], ["summary"])


class TestAuditLog(NotifyTestCase):

    def test_appends_json_lines(self):
        audit = AuditLog(self.tmp / "audit.log")
        audit.write(make_event("secrets_backed_up", "secret-backups/x", "test", "success"))
        audit.write(make_event("rotation_failed", "api-tokens", "test", "failure", {"message": "boom"}))

        events = self.audit_events()
        self.assertEqual([e["action"] for e in events], ["secrets_backed_up", "rotation_failed"])
        self.assertEqual(events[1]["metadata"], {"message": "boom"})

    def test_disabled(self):
        AuditLog(None).write(make_event("x", "y", "test", "success"))

    def test_unwritable_path_warns(self):
        blocker = self.tmp / "file"
        blocker.write_text("")
        with self.assertLogs("flowops.audit", level="WARNING"):
            AuditLog(blocker / "audit.log").write(make_event("x", "y", "test", "success"))


if __name__ == "__main__":
    unittest.main()
