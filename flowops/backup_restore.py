#!/usr/bin/env python3
"""
flowops/backup_restore.py - Full platform backup and restore for the Flow deployment.

Usage:
    flow-backup backup                                  # Create full backup
    flow-backup restore backups/flow-backup-....tar.gz  # Restore from local file
    flow-backup restore s3://bucket/path/backup.tar.gz  # Restore from S3
    flow-backup list                                    # List all backups
    flow-backup cleanup                                 # Remove old backups

Environment variables:
    BACKUP_DIR             Local backup directory (default: ./backups)
    S3_BACKUP_BUCKET       S3 bucket for remote backups
    ENVIRONMENT            Environment name (default: production)
    BACKUP_RETENTION_DAYS  Backup retention period (default: 30)

Archive layout (flow-backup-<env>-<YYYYmmdd-HHMMSS>.tar.gz):
    database.sql, workflows.json, credentials.json, n8n-data.tar.gz,
    k8s-resources.yaml, k8s-monitoring.yaml, redis-dump.rdb, metadata.json
Only database.sql is mandatory; the other parts are captured when available.
"""
import argparse
import base64
import json
import logging
import shutil
import sys
import tarfile
import tempfile
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

from kubernetes.config import ConfigException
from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from flowops.backends.aws_backend import S3ArchiveStore, make_session
from flowops.backends.kubernetes_backend import KubernetesBackend
from flowops.config import BackupConfig
from flowops.errors import BackupError, PrerequisiteError, RestoreError
from flowops.models import ServiceRef, utcnow
from flowops.polling import attempts_for, wait_until

log = logging.getLogger("flow.backup")

BACKUP_VERSION = "1.0"
BACKUP_COMPONENTS = [
    "postgresql_database",
    "n8n_workflows",
    "n8n_data",
    "kubernetes_configs",
    "redis_data",
]
N8N_HOME = "/home/node"
RESTORE_READY_TIMEOUT = 300
SCALE_DOWN_SETTLE_SECONDS = 10
REDIS_BGSAVE_SECONDS = 5


def human_size(num_bytes: int) -> str:
    size = float(num_bytes)
    for unit in ("B", "K", "M", "G"):
        if size < 1024 or unit == "G":
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}G"


def _n8n_export_script(kind: str, output: str) -> str:
    return (
        "if command -v n8n >/dev/null 2>&1; then "
        f"n8n export:{kind} --all --output={output} >/dev/null 2>&1 || echo '[]' > {output}; "
        f"cat {output}; "
        "else echo '[]'; fi"
    )


def _safe_members(tar: tarfile.TarFile) -> list[tarfile.TarInfo]:
    members = tar.getmembers()
    for member in members:
        path = Path(member.name)
        if path.is_absolute() or ".." in path.parts or member.issym() or member.islnk():
            raise RestoreError(f"Refusing to extract unsafe archive member: {member.name}")
    return members


class PlatformBackup:
    """Creates, restores, lists and expires full platform backups."""

    def __init__(
        self,
        config: BackupConfig,
        kube: KubernetesBackend | None,
        s3: S3ArchiveStore | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
        confirm: Callable[[str], bool] = Confirm.ask,
        poll_interval: float = 5,
    ) -> None:
        self.config = config
        self.kube = kube
        self.s3 = s3
        self.sleep = sleep
        self.clock = clock
        self.confirm = confirm
        self.poll_interval = poll_interval

    def check_prerequisites(self) -> None:
        log.info("Checking prerequisites...")
        if not self.kube.cluster_reachable():
            raise PrerequisiteError("Cannot access Kubernetes cluster")
        if self.config.s3_bucket and self.s3 is None:
            raise PrerequisiteError("AWS credentials required for S3 backups but not available")
        log.info("  [OK] Prerequisites check passed")

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    def backup(self) -> Path:
        now = self.clock()
        name = f"flow-backup-{self.config.environment}-{now:%Y%m%d-%H%M%S}"
        backup_dir = self.config.backup_dir / name
        log.info(f"Starting full backup: {name}")
        backup_dir.mkdir(parents=True, exist_ok=True)

        self.backup_database(backup_dir)
        self.backup_n8n_data(backup_dir)
        self.backup_k8s_config(backup_dir)
        self.backup_redis(backup_dir)
        self.write_metadata(backup_dir, now)

        archive = self.compress(backup_dir)
        if self.s3 is not None:
            url = self.s3.upload(str(archive), archive.name, f"{now:%Y-%m-%d}")
            log.info(f"  [OK] Backup uploaded to S3: {url}")

        log.info(f"Full backup completed: {archive}")
        return archive

    def backup_database(self, backup_dir: Path) -> None:
        log.info("Backing up PostgreSQL database...")
        ns = self.config.namespace
        pod = self.kube.first_pod(ns, "postgres")
        if pod is None:
            raise BackupError(f"No postgres pod found in namespace {ns}")
        result = self.kube.exec_in_pod(ns, pod, [
            "pg_dump",
            "-U", self.config.db_user,
            "-d", self.config.db_name,
            "--clean",
            "--if-exists",
            "--no-owner",
            "--no-privileges",
        ])
        if not result.ok or not result.stdout.strip():
            raise BackupError(f"Database backup failed or is empty: {result.stderr.strip()}")
        (backup_dir / "database.sql").write_text(result.stdout)
        log.info(f"  [OK] Database backup completed: {len(result.stdout.splitlines())} lines")

    def backup_n8n_data(self, backup_dir: Path) -> None:
        log.info("Backing up n8n workflows and data...")
        ns = self.config.namespace
        pod = self.kube.first_pod(ns, "n8n")
        if pod is None:
            log.warning("  [WARN] No n8n pod found, skipping n8n data backup")
            return

        # Credentials are exported encrypted; the key stays in n8n-secrets.
        for kind, filename in (("workflow", "workflows.json"), ("credentials", "credentials.json")):
            result = self.kube.exec_in_pod(
                ns, pod, ["sh", "-c", _n8n_export_script(kind, f"/tmp/{filename}")]
            )
            (backup_dir / filename).write_text(result.stdout if result.ok else "[]")

        result = self.kube.exec_in_pod(
            ns, pod, ["sh", "-c", f"tar czf - -C {N8N_HOME} .n8n | base64"]
        )
        if result.ok and result.stdout.strip():
            (backup_dir / "n8n-data.tar.gz").write_bytes(base64.b64decode(result.stdout))
        else:
            log.warning(f"  [WARN] Could not copy n8n data directory: {result.stderr.strip()}")
        log.info("  [OK] n8n data backup completed")

    def backup_k8s_config(self, backup_dir: Path) -> None:
        log.info("Backing up Kubernetes configurations...")
        (backup_dir / "k8s-resources.yaml").write_text(self.kube.dump_namespace(self.config.namespace))
        try:
            monitoring = self.kube.dump_namespace(self.config.monitoring_namespace, include_ingress=False)
        except Exception as e:
            log.warning(f"  [WARN] Could not backup monitoring namespace: {e}")
        else:
            (backup_dir / "k8s-monitoring.yaml").write_text(monitoring)
        log.info("  [OK] Kubernetes configuration backup completed")

    def backup_redis(self, backup_dir: Path) -> None:
        log.info("Backing up Redis data...")
        ns = self.config.namespace
        pod = self.kube.first_pod(ns, "redis")
        if pod is None:
            log.warning("  [WARN] No Redis pod found, skipping Redis backup")
            return
        self.kube.exec_in_pod(ns, pod, ["redis-cli", "BGSAVE"])
        self.sleep(REDIS_BGSAVE_SECONDS)
        result = self.kube.exec_in_pod(ns, pod, ["sh", "-c", "base64 /data/dump.rdb"])
        if result.ok and result.stdout.strip():
            (backup_dir / "redis-dump.rdb").write_bytes(base64.b64decode(result.stdout))
            log.info("  [OK] Redis backup completed")
        else:
            log.warning(f"  [WARN] Could not copy Redis dump file: {result.stderr.strip()}")

    def write_metadata(self, backup_dir: Path, now: datetime) -> None:
        log.info("Creating backup metadata...")
        metadata = {
            "backup_timestamp": now.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "environment": self.config.environment,
            "kubernetes_namespace": self.config.namespace,
            "backup_version": BACKUP_VERSION,
            "kubernetes_version": self.kube.server_version(),
            "cluster_info": {"server": self.kube.server_host()},
            "backup_components": BACKUP_COMPONENTS,
        }
        (backup_dir / "metadata.json").write_text(json.dumps(metadata, indent=4))

    def compress(self, backup_dir: Path) -> Path:
        log.info("Compressing backup...")
        archive = backup_dir.with_name(f"{backup_dir.name}.tar.gz")
        with tarfile.open(archive, "w:gz") as tar:
            tar.add(backup_dir, arcname=backup_dir.name)
        shutil.rmtree(backup_dir)
        log.info(f"  [OK] Backup compressed: {archive} ({human_size(archive.stat().st_size)})")
        return archive

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore(self, source: str | None, assume_yes: bool = False) -> bool:
        """
        Restore database and n8n data from a local archive or s3:// URL.

        Returns False when the operator declined the environment mismatch prompt.
        """
        if not source:
            raise RestoreError("Backup file not specified")

        with tempfile.TemporaryDirectory(prefix="restore-") as tmp:
            tmp_dir = Path(tmp)
            archive = Path(source)
            if source.startswith("s3://"):
                log.info("Downloading backup from S3...")
                s3 = self.s3 or S3ArchiveStore(
                    source[5:].split("/", 1)[0],
                    self.config.environment,
                    make_session(self.config.aws_region, self.config.aws_profile),
                )
                archive = tmp_dir / source.rsplit("/", 1)[-1]
                s3.download(source, str(archive))
            if not archive.is_file():
                raise RestoreError(f"Backup file not found: {source}")

            log.info(f"Starting restore from: {source}")
            backup_dir = self._extract(archive, tmp_dir / "extract")

            if not self._confirm_environment(backup_dir, assume_yes):
                log.info("Restore cancelled")
                return False

            self.restore_database(backup_dir)
            self.restore_n8n_data(backup_dir)

        log.info(f"Restore completed from: {source}")
        return True

    def _extract(self, archive: Path, destination: Path) -> Path:
        try:
            with tarfile.open(archive, "r:gz") as tar:
                members = _safe_members(tar)
                if not members:
                    raise RestoreError("Invalid backup structure: empty archive")
                top = Path(members[0].name).parts[0]
                tar.extractall(destination, members=members, filter="data")
        except tarfile.TarError as e:
            raise RestoreError(f"Cannot read backup archive {archive}: {e}") from e
        backup_dir = destination / top
        if not backup_dir.is_dir():
            raise RestoreError("Invalid backup structure")
        return backup_dir

    def _confirm_environment(self, backup_dir: Path, assume_yes: bool) -> bool:
        metadata_file = backup_dir / "metadata.json"
        if not metadata_file.is_file():
            log.warning("  [WARN] Backup has no metadata.json")
            return True
        metadata = json.loads(metadata_file.read_text())
        backup_env = metadata.get("environment")
        log.info(f"Backup environment: {backup_env}")
        log.info(f"Backup date: {metadata.get('backup_timestamp')}")
        if backup_env == self.config.environment or assume_yes:
            return True
        log.warning(
            f"Backup environment ({backup_env}) differs from current environment "
            f"({self.config.environment})"
        )
        return self.confirm("Continue?")

    def restore_database(self, backup_dir: Path) -> None:
        log.info("Restoring PostgreSQL database...")
        sql_file = backup_dir / "database.sql"
        if not sql_file.is_file():
            raise RestoreError(f"Database backup file not found: {sql_file}")

        ns = self.config.namespace
        pod = self.kube.first_pod(ns, "postgres")
        if pod is None:
            raise RestoreError(f"No postgres pod found in namespace {ns}")

        # Stop n8n to prevent writes during restore
        self.kube.scale_deployment(ns, "n8n", 0)
        try:
            self.sleep(SCALE_DOWN_SETTLE_SECONDS)
            self.kube.upload_to_pod(ns, pod, sql_file.read_bytes(), "/tmp/restore.sql")
            result = self.kube.exec_in_pod(ns, pod, [
                "sh", "-c",
                f"psql -U {self.config.db_user} -d {self.config.db_name} -f /tmp/restore.sql; "
                "status=$?; rm -f /tmp/restore.sql; exit $status",
            ])
            if not result.ok:
                raise RestoreError(f"psql restore failed: {result.stderr.strip()}")
        finally:
            self.kube.scale_deployment(ns, "n8n", self.config.n8n_replicas)

        n8n = ServiceRef("deployment", "n8n", ns, RESTORE_READY_TIMEOUT)
        ready = wait_until(
            lambda: self.kube.is_ready(n8n),
            attempts=attempts_for(RESTORE_READY_TIMEOUT, self.poll_interval),
            interval=self.poll_interval,
            sleep=self.sleep,
            description=str(n8n),
        )
        if not ready:
            raise RestoreError(f"{n8n} did not become ready within {RESTORE_READY_TIMEOUT}s")
        log.info("  [OK] Database restored")

    def restore_n8n_data(self, backup_dir: Path) -> None:
        log.info("Restoring n8n data...")
        ns = self.config.namespace
        pod = self.kube.first_pod(ns, "n8n")
        if pod is None:
            log.warning("  [WARN] No n8n pod found, skipping n8n data restore")
            return

        workflows = backup_dir / "workflows.json"
        if workflows.is_file():
            self.kube.upload_to_pod(ns, pod, workflows.read_bytes(), "/tmp/workflows.json")
            result = self.kube.exec_in_pod(ns, pod, [
                "sh", "-c",
                "if command -v n8n >/dev/null 2>&1; then n8n import:workflow --input=/tmp/workflows.json; fi",
            ])
            if not result.ok:
                log.warning(f"  [WARN] Workflow import failed: {result.stderr.strip()}")

        data_archive = backup_dir / "n8n-data.tar.gz"
        if data_archive.is_file():
            self.kube.upload_to_pod(ns, pod, data_archive.read_bytes(), "/tmp/n8n-data.tar.gz")
            result = self.kube.exec_in_pod(ns, pod, [
                "sh", "-c", f"tar xzf /tmp/n8n-data.tar.gz -C {N8N_HOME} && rm -f /tmp/n8n-data.tar.gz",
            ])
            if not result.ok:
                log.warning(f"  [WARN] Could not restore n8n data directory: {result.stderr.strip()}")
        log.info("  [OK] n8n data restored")

    # ------------------------------------------------------------------
    # List / cleanup
    # ------------------------------------------------------------------

    def local_archives(self) -> list[Path]:
        if not self.config.backup_dir.is_dir():
            return []
        return sorted(self.config.backup_dir.glob("*.tar.gz"), reverse=True)

    def list_backups(self, console: Console) -> None:
        table = Table(title="Available backups", header_style="bold cyan", border_style="blue")
        table.add_column("Location")
        table.add_column("Backup")
        table.add_column("Size", justify="right")
        table.add_column("Date", justify="center")

        for archive in self.local_archives():
            stat = archive.stat()
            date = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).strftime("%Y-%m-%d")
            table.add_row("local", archive.name, human_size(stat.st_size), date)
        if self.s3 is not None:
            for obj in self.s3.list_archives():
                table.add_row(
                    "s3", obj["Key"], human_size(obj["Size"]),
                    obj["LastModified"].strftime("%Y-%m-%d %H:%M"),
                )
        if not table.row_count:
            log.info("No backups found")
            return
        console.print(table)

    def cleanup(self) -> tuple[int, int]:
        """Delete archives older than the retention period. Returns (local, s3) counts."""
        days = self.config.retention_days
        log.info(f"Cleaning up old backups (older than {days} days)...")
        cutoff = self.clock() - timedelta(days=days)

        removed_local = 0
        for archive in self.local_archives():
            if archive.stat().st_mtime < cutoff.timestamp():
                archive.unlink()
                removed_local += 1
        log.info(f"Removed {removed_local} old local backups")

        removed_s3 = 0
        if self.s3 is not None:
            for obj in self.s3.list_archives():
                if obj["LastModified"] < cutoff:
                    self.s3.delete(obj["Key"])
                    log.info(f"Removed S3 backup: {obj['Key']}")
                    removed_s3 += 1
        log.info("Cleanup completed")
        return removed_local, removed_s3


USAGE = """\
Flow Backup and Restore Automation

Usage: flow-backup [command] [options]

Commands:
  backup                Create a full backup
  restore <file>        Restore from backup file or S3 URL
  list                  List available backups
  cleanup               Remove old backups
  help                  Show this help message
"""


def build_platform_backup(config: BackupConfig, with_cluster: bool = True) -> PlatformBackup:
    s3 = None
    if config.s3_bucket:
        s3 = S3ArchiveStore(
            config.s3_bucket, config.environment, make_session(config.aws_region, config.aws_profile)
        )
    kube = None
    if with_cluster:
        try:
            kube = KubernetesBackend(context=config.kube_context)
        except ConfigException as e:
            raise PrerequisiteError(f"No Kubernetes configuration available: {e}") from e
    return PlatformBackup(config, kube, s3)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="flow-backup",
        description="Flow platform backup and restore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=USAGE,
    )
    parser.add_argument("command", nargs="?", default="backup")
    parser.add_argument("argument", nargs="?")
    parser.add_argument("--yes", action="store_true", help="Do not prompt on environment mismatch")
    args = parser.parse_args(argv)

    console = Console()
    if args.command == "help":
        console.print(USAGE, markup=False, highlight=False)
        return 0

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    if args.command not in ("backup", "restore", "list", "cleanup"):
        log.error(f"Unknown command: {args.command}")
        console.print(USAGE, markup=False, highlight=False)
        return 1

    config = BackupConfig.from_env()
    try:
        tool = build_platform_backup(config, with_cluster=args.command != "list")
        if args.command == "list":
            tool.list_backups(console)
            return 0
        tool.check_prerequisites()
        if args.command == "backup":
            tool.backup()
        elif args.command == "restore":
            return 0 if tool.restore(args.argument, assume_yes=args.yes) else 1
        else:
            tool.cleanup()
        return 0
    except (PrerequisiteError, BackupError, RestoreError) as e:
        log.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
