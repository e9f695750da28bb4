"""
flowops/backup.py - Secret snapshots before rotation, and the manual rollback from them.

Snapshot layout:
    secret-backups/<UTC %Y%m%d_%H%M%S>/<secret-name>.yaml

One file per captured secret, nothing else. Snapshots are never deleted
automatically; they are the only source of truth for a rollback.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

import yaml

from flowops.backends import SecretStore
from flowops.config import RotationConfig
from flowops.errors import BackupError, RollbackError
from flowops.models import BackupSnapshot, RotationTarget, SecretRef, utcnow
from flowops.targets import RotationContext, known_secrets, services_for, wait_for_ready

log = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


class SecretBackupWriter:
    """Exports every known secret into a new, uniquely named snapshot directory."""

    def __init__(
        self,
        config: RotationConfig,
        store: SecretStore,
        targets: list[RotationTarget],
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config
        self.store = store
        self.targets = targets
        self.clock = clock

    def _create_location(self, created_at: datetime) -> Path:
        base = self.config.backup_root / created_at.strftime(TIMESTAMP_FORMAT)
        location, suffix = base, 0
        while True:
            try:
                location.mkdir(parents=True)
                return location
            except FileExistsError:
                suffix += 1
                location = base.with_name(f"{base.name}_{suffix}")
            except OSError as e:
                raise BackupError(f"Cannot create backup directory {location}: {e}") from e

    def write(self) -> BackupSnapshot:
        log.info("Backing up current secrets...")
        created_at = self.clock()
        location = self._create_location(created_at)

        captured: list[SecretRef] = []
        for ref in known_secrets(self.targets):
            try:
                manifest = self.store.export(ref.namespace, ref.name)
            except KeyError:
                log.warning(f"  [WARN] Secret {ref} not found, not backed up")
                continue
            except Exception as e:
                log.warning(f"  [WARN] Could not export secret {ref}: {e}")
                continue
            try:
                (location / f"{ref.name}.yaml").write_text(manifest)
            except OSError as e:
                log.warning(f"  [WARN] Could not write backup of {ref}: {e}")
                continue
            captured.append(ref)

        if not captured:
            raise BackupError(f"No secrets could be backed up to {location}")

        contained = frozenset(
            t.name for t in self.targets
            if t.backup_keys and all(ref in captured for ref in t.backup_keys)
        )
        log.info(f"  [OK] Secrets backed up to {location}")
        return BackupSnapshot(
            location=location,
            created_at=created_at,
            environment=self.config.environment,
            secrets=captured,
            contained_targets=contained,
        )


@dataclass
class SecretExport:
    path: Path
    ref: SecretRef
    manifest: str


def load_snapshot(location: Path | str | None) -> list[SecretExport]:
    """
    Read the secret exports of a snapshot directory.

    Raises:
        RollbackError: the location is missing, not a directory, or holds no
            recognizable secret exports.
    """
    if not location:
        raise RollbackError("Backup directory required for rollback")
    location = Path(location)
    if not location.is_dir():
        raise RollbackError(f"Backup directory not found: {location}")

    exports = []
    for path in sorted(location.glob("*.yaml")):
        try:
            text = path.read_text(encoding="utf-8")
            doc = yaml.safe_load(text)
        except (UnicodeDecodeError, yaml.YAMLError) as e:
            log.warning(f"  [WARN] Skipping unreadable export {path.name}: {e}")
            continue
        if not isinstance(doc, dict) or doc.get("kind") != "Secret":
            log.warning(f"  [WARN] Skipping {path.name}: not a secret export")
            continue
        metadata = doc.get("metadata")
        if not isinstance(metadata, dict) or not metadata.get("name") or not metadata.get("namespace"):
            log.warning(f"  [WARN] Skipping {path.name}: not a secret export")
            continue
        exports.append(SecretExport(path, SecretRef(metadata["namespace"], metadata["name"]), text))

    if not exports:
        raise RollbackError(f"No secret exports found in {location}")
    return exports


class RollbackOperation:
    """
    Re-applies a snapshot and restarts the services that depend on it.

    Only ever run on explicit operator request; a failed rotation never
    triggers it.
    """

    def __init__(self, ctx: RotationContext, targets: list[RotationTarget]) -> None:
        self.ctx = ctx
        self.targets = targets

    def run(self, location: Path | str | None) -> list[SecretRef]:
        exports = load_snapshot(location)
        log.info(f"Performing emergency rollback from: {location}")

        failures: list[str] = []
        restored: list[SecretRef] = []
        for export in exports:
            try:
                self.ctx.store.restore(export.manifest)
            except Exception as e:
                log.error(f"  [FAIL] Could not restore {export.ref}: {e}")
                failures.append(f"restore {export.ref}")
                continue
            log.info(f"  [OK] Restored secret {export.ref}")
            restored.append(export.ref)

        if not restored:
            raise RollbackError(f"No secrets could be restored from {location}")

        services = services_for(self.targets, restored)
        restarted = []
        for service in services:
            try:
                self.ctx.controller.restart(service)
                restarted.append(service)
            except Exception as e:
                log.error(f"  [FAIL] {e}")
                failures.append(f"restart {service}")
        for service in restarted:
            if wait_for_ready(self.ctx, service):
                log.info(f"  [OK] {service} is ready")
            else:
                log.error(f"  [FAIL] {service} did not become ready within {service.timeout}s")
                failures.append(f"ready {service}")

        if failures:
            raise RollbackError(f"Rollback from {location} incomplete: {', '.join(failures)}")
        log.info("Emergency rollback completed")
        return restored
