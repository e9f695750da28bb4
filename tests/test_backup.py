"""
Tests for secret snapshots and the manual rollback from them.
"""
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from flowops.backup import RollbackOperation, SecretBackupWriter, load_snapshot
from flowops.errors import BackupError, RollbackError
from flowops.models import SecretRef, TargetName
from flowops.targets import RotationContext, build_targets, get_operation
from tests.fakes import FakeCluster, RecordingSleep, make_config

FIXED_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class BackupTestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.tmp = Path(self._tmp.name)
        self.config = make_config(self.tmp)
        self.cluster = FakeCluster()
        self.targets = build_targets(self.config)
        self.ctx = RotationContext(
            config=self.config, store=self.cluster, controller=self.cluster, sleep=RecordingSleep()
        )

    def writer(self):
        return SecretBackupWriter(self.config, self.cluster, self.targets, clock=lambda: FIXED_TIME)


class TestSecretBackupWriter(BackupTestCase):

    def test_snapshot_layout(self):
        snapshot = self.writer().write()

        self.assertEqual(snapshot.location, self.config.backup_root / "20240101_120000")
        files = sorted(p.name for p in snapshot.location.iterdir())
        self.assertEqual(files, ["grafana-secrets.yaml", "n8n-secrets.yaml", "postgres-secrets.yaml"])
        self.assertEqual(snapshot.created_at, FIXED_TIME)
        self.assertEqual(snapshot.environment, "test")

    def test_missing_secret_is_not_fatal(self):
        snapshot = self.writer().write()

        self.assertNotIn(SecretRef("n8n", "n8n-api-tokens"), snapshot.secrets)
        self.assertIn(TargetName.DATABASE_PASSWORD, snapshot.contained_targets)
        self.assertIn(TargetName.MONITORING_PASSWORD, snapshot.contained_targets)
        self.assertNotIn(TargetName.API_TOKENS, snapshot.contained_targets)
        # Targets without secrets of their own are never "contained".
        self.assertNotIn(TargetName.TLS_CERTIFICATES, snapshot.contained_targets)

    def test_export_error_is_not_fatal(self):
        self.cluster.failing_exports.add("postgres-secrets")
        snapshot = self.writer().write()

        self.assertNotIn(SecretRef("n8n", "postgres-secrets"), snapshot.secrets)
        self.assertNotIn(TargetName.DATABASE_PASSWORD, snapshot.contained_targets)
        self.assertIn(TargetName.ADMIN_PASSWORD, snapshot.contained_targets)

    def test_nothing_captured_raises(self):
        self.cluster.secrets.clear()
        with self.assertRaises(BackupError):
            self.writer().write()

    def test_same_second_gets_unique_directory(self):
        first = self.writer().write()
        second = self.writer().write()

        self.assertNotEqual(first.location, second.location)
        self.assertEqual(second.location.name, "20240101_120000_1")


class TestLoadSnapshot(BackupTestCase):

    def test_missing_location(self):
        with self.assertRaisesRegex(RollbackError, "required"):
            load_snapshot(None)
        with self.assertRaisesRegex(RollbackError, "not found"):
            load_snapshot(self.tmp / "nope")

    def test_empty_directory(self):
        empty = self.tmp / "empty"
        empty.mkdir()
        with self.assertRaisesRegex(RollbackError, "No secret exports"):
            load_snapshot(empty)

    def test_skips_undecodable_export(self):
        location = self.writer().write().location
        (location / "corrupt.yaml").write_bytes(b"\xff\xfekind: Secret\n\x80\x81")

        exports = load_snapshot(location)
        self.assertEqual(len(exports), 3)
        self.assertNotIn("corrupt.yaml", [e.path.name for e in exports])

    def test_ignores_foreign_files(self):
        location = self.writer().write().location
        (location / "notes.yaml").write_text("- just\n- a list\n")
        (location / "configmap.yaml").write_text("kind: ConfigMap\nmetadata: {name: x, namespace: n8n}\n")

        exports = load_snapshot(location)
        self.assertEqual(
            sorted(e.ref.name for e in exports),
            ["grafana-secrets", "n8n-secrets", "postgres-secrets"],
        )


class TestRollback(BackupTestCase):

    def test_restores_values_from_before_rotation(self):
        before = {key: dict(fields) for key, fields in self.cluster.secrets.items()}
        location = self.writer().write().location

        by_command = {t.command: t for t in self.targets}
        for command in ("postgres", "n8n", "grafana"):
            get_operation(by_command[command]).rotate(self.ctx)
        self.assertNotEqual(self.cluster.secrets, before)

        self.cluster.restarts.clear()
        restored = RollbackOperation(self.ctx, self.targets).run(location)

        self.assertEqual(self.cluster.secrets, before)
        self.assertEqual(len(restored), 3)

    def test_restarts_services_of_restored_secrets(self):
        location = self.writer().write().location
        RollbackOperation(self.ctx, self.targets).run(location)

        restarted = [(s.namespace, s.name) for s in self.cluster.restarts]
        self.assertEqual(restarted, [("n8n", "postgres"), ("n8n", "n8n"), ("monitoring", "grafana")])

    def test_nonexistent_location_restarts_nothing(self):
        with self.assertRaises(RollbackError):
            RollbackOperation(self.ctx, self.targets).run(str(self.tmp / "missing"))
        self.assertEqual(self.cluster.restarts, [])

    def test_unready_service_reported(self):
        location = self.writer().write().location
        self.cluster.never_ready.add("grafana")

        with self.assertRaisesRegex(RollbackError, "grafana"):
            RollbackOperation(self.ctx, self.targets).run(location)
        # Secrets were still restored and every service restarted.
        self.assertEqual(len(self.cluster.restarts), 3)


if __name__ == "__main__":
    unittest.main()
