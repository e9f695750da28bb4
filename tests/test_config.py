"""
Tests for environment-driven configuration.
"""
import unittest
from pathlib import Path

from flowops.config import BackupConfig, RotationConfig


class TestRotationConfig(unittest.TestCase):

    def test_defaults(self):
        config = RotationConfig.from_env({})
        self.assertEqual(config.environment, "production")
        self.assertEqual(config.namespace, "n8n")
        self.assertEqual(config.monitoring_namespace, "monitoring")
        self.assertEqual(config.backup_root, Path("secret-backups"))
        self.assertEqual(config.health_endpoints, ["n8n-service:5678/healthz"])
        self.assertEqual(config.aws_key_grace_seconds, 60)
        self.assertEqual(config.rotation_log, Path("/var/log/credential-rotation.log"))

    def test_overrides(self):
        config = RotationConfig.from_env({
            "ENVIRONMENT": "staging",
            "SLACK_WEBHOOK_URL": "https://hooks.slack.com/services/x",
            "HEALTH_ENDPOINTS": "n8n-service:5678/healthz, https://flow.example.com/healthz",
            "AWS_KEY_GRACE_SECONDS": "5",
            "ROTATION_LOG": "",
        })
        self.assertEqual(config.environment, "staging")
        self.assertEqual(config.health_endpoints, [
            "n8n-service:5678/healthz", "https://flow.example.com/healthz",
        ])
        self.assertEqual(config.aws_key_grace_seconds, 5)
        self.assertIsNone(config.rotation_log)

    def test_invalid_integer_names_variable(self):
        with self.assertRaisesRegex(ValueError, "SMTP_PORT"):
            RotationConfig.from_env({"SMTP_PORT": "twenty-five"})

    def test_to_dict_hides_smtp_password(self):
        config = RotationConfig(smtp_password="s3cret")
        data = config.to_dict()
        self.assertNotIn("smtp_password", data)
        self.assertNotIn("s3cret", repr(config))
        self.assertEqual(data["backup_root"], "secret-backups")


class TestBackupConfig(unittest.TestCase):

    def test_defaults(self):
        config = BackupConfig.from_env({})
        self.assertEqual(config.backup_dir, Path("./backups"))
        self.assertEqual(config.retention_days, 30)
        self.assertEqual(config.s3_bucket, "")

    def test_overrides(self):
        config = BackupConfig.from_env({"S3_BACKUP_BUCKET": "flow-backups", "BACKUP_RETENTION_DAYS": "7"})
        self.assertEqual(config.s3_bucket, "flow-backups")
        self.assertEqual(config.retention_days, 7)


if __name__ == "__main__":
    unittest.main()
