"""
Tests for rotation run records and secret patches.
"""
import unittest
from pathlib import Path

from flowops.backends import SecretPatch
from flowops.models import (
    BackupSnapshot,
    OutcomeStatus,
    RotationOutcome,
    RotationRun,
    SecretRef,
    ServiceRef,
    TargetName,
    VerificationResult,
    utcnow,
)


class TestSecretPatch(unittest.TestCase):

    def test_valid_patch(self):
        patch = SecretPatch("n8n", "n8n-secrets", {"N8N_BASIC_AUTH_PASSWORD": "x"})
        self.assertEqual(patch.fields, {"N8N_BASIC_AUTH_PASSWORD": "x"})

    def test_requires_fields(self):
        with self.assertRaises(ValueError):
            SecretPatch("n8n", "n8n-secrets", {})

    def test_requires_namespace_and_name(self):
        with self.assertRaises(ValueError):
            SecretPatch("", "n8n-secrets", {"A": "b"})
        with self.assertRaises(ValueError):
            SecretPatch("n8n", "", {"A": "b"})

    def test_rejects_invalid_key(self):
        with self.assertRaises(ValueError):
            SecretPatch("n8n", "n8n-secrets", {"bad key": "x"})

    def test_rejects_non_string_value(self):
        with self.assertRaises(ValueError):
            SecretPatch("n8n", "n8n-secrets", {"PORT": 5432})


class TestServiceRef(unittest.TestCase):

    def test_rejects_unknown_kind(self):
        with self.assertRaises(ValueError):
            ServiceRef("daemonset", "agent", "n8n", 60)

    def test_str(self):
        self.assertEqual(str(ServiceRef("deployment", "n8n", "n8n", 600)), "deployment/n8n -n n8n")


class TestRotationOutcome(unittest.TestCase):

    def test_revealed_values_not_serialized(self):
        outcome = RotationOutcome(
            TargetName.ADMIN_PASSWORD, OutcomeStatus.SUCCEEDED, "rotated", {"n8n admin password": "hunter2"}
        )
        self.assertNotIn("hunter2", repr(outcome))
        self.assertNotIn("hunter2", str(outcome.to_dict()))
        self.assertTrue(outcome.succeeded)


class TestRotationRun(unittest.TestCase):

    def setUp(self):
        self.labels = {
            TargetName.DATABASE_PASSWORD: "PostgreSQL password",
            TargetName.TLS_CERTIFICATES: "SSL certificates",
            TargetName.API_TOKENS: "API tokens",
        }

    def test_summary_lines(self):
        run = RotationRun(environment="test")
        run.record(RotationOutcome(TargetName.DATABASE_PASSWORD, OutcomeStatus.SUCCEEDED, "rotated"))
        run.record(RotationOutcome(TargetName.TLS_CERTIFICATES, OutcomeStatus.SKIPPED, "cert-manager not found"))
        run.record(RotationOutcome(TargetName.API_TOKENS, OutcomeStatus.FAILED, "forbidden"))
        run.verification = VerificationResult(passed=True)

        self.assertEqual(run.summary_lines(self.labels), [
            "✓ PostgreSQL password rotated",
            "– SSL certificates skipped (cert-manager not found)",
            "✗ API tokens rotation failed: forbidden",
            "✓ All services verified",
        ])
        self.assertEqual(run.failed_targets, [TargetName.API_TOKENS])

    def test_verification_failure_listed(self):
        run = RotationRun(environment="test")
        run.verification = VerificationResult(passed=False, failing_checks=["endpoint n8n-service:5678/healthz"])
        self.assertFalse(run.verification_passed)
        self.assertEqual(
            run.summary_lines(self.labels),
            ["✗ Service verification failed: endpoint n8n-service:5678/healthz"],
        )

    def test_no_verification_is_not_passed(self):
        self.assertFalse(RotationRun(environment="test").verification_passed)

    def test_to_dict(self):
        run = RotationRun(environment="test")
        run.backup = BackupSnapshot(
            location=Path("secret-backups/20240101_120000"),
            created_at=utcnow(),
            environment="test",
            secrets=[SecretRef("n8n", "n8n-secrets")],
            contained_targets=frozenset({TargetName.ADMIN_PASSWORD}),
        )
        data = run.to_dict()
        self.assertEqual(data["backup"]["secrets"], ["n8n/n8n-secrets"])
        self.assertEqual(data["backup"]["contained_targets"], ["admin-password"])
        self.assertIsNone(data["finished_at"])


if __name__ == "__main__":
    unittest.main()
