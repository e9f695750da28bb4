#!/usr/bin/env python3
"""
flowops/rotate.py - Main orchestrator for Flow credential rotation.

Usage:
    flow-rotate full                                   # Full rotation
    flow-rotate postgres                               # PostgreSQL only
    flow-rotate n8n | grafana | ssl | aws | api        # One target only
    flow-rotate verify                                 # Verify services
    flow-rotate rollback secret-backups/20240101_120000  # Emergency rollback

Environment variables:
    ENVIRONMENT (default: production)
    SLACK_WEBHOOK_URL, NOTIFICATION_EMAIL (optional notifications)
    see flowops/config.py for the full list

Run states:
    INIT -> PREREQ_CHECK -> BACKING_UP -> ROTATING(target_1..n) -> VERIFYING -> NOTIFYING -> DONE
A failed prerequisite check or a backup that captured nothing ends the run
before any mutation. Every other failure is recorded and the run moves on.
Rollback is never automatic.
"""
import argparse
import logging
import sys
import time
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator

from botocore.exceptions import BotoCoreError
from kubernetes.config import ConfigException
from rich.console import Console
from rich.table import Table
from rich.text import Text

from flowops.audit import AuditLog, make_event
from flowops.backends import AccessKeyManager, CertificateAuthority, SecretStore, WorkloadController
from flowops.backup import RollbackOperation, SecretBackupWriter
from flowops.config import RotationConfig
from flowops.errors import BackupError, PrerequisiteError, RollbackError
from flowops.models import (
    OutcomeStatus,
    RotationRun,
    RotationTarget,
    SecretRef,
    TargetName,
    VerificationResult,
    utcnow,
)
from flowops.notify import Notifier
from flowops.targets import RotationContext, build_targets, get_operation
from flowops.verify import verify_services

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S"

log = logging.getLogger("flow.rotation")

ROTATION_COMMANDS = ("postgres", "n8n", "grafana", "ssl", "aws", "api")

USAGE = """\
Flow Credential Rotation Automation

Usage: flow-rotate [command] [options]

Commands:
  full                  Perform full credential rotation
  postgres              Rotate PostgreSQL password only
  n8n                   Rotate n8n admin credentials only
  grafana               Rotate Grafana admin password only
  ssl                   Rotate SSL certificates only
  aws                   Rotate AWS IAM keys only
  api                   Rotate API tokens only
  verify                Verify services after rotation
  rollback <backup_dir> Emergency rollback to previous credentials
  help                  Show this help message

Environment Variables:
  ENVIRONMENT           Environment name (default: production)
  SLACK_WEBHOOK_URL     Slack webhook for notifications
  NOTIFICATION_EMAIL    Email for notifications

Examples:
  flow-rotate full                                    # Full rotation
  flow-rotate postgres                                # PostgreSQL only
  flow-rotate rollback secret-backups/20240101_120000 # Emergency rollback
"""


class RunState(str, Enum):
    INIT = "INIT"
    PREREQ_CHECK = "PREREQ_CHECK"
    BACKING_UP = "BACKING_UP"
    ROTATING = "ROTATING"
    VERIFYING = "VERIFYING"
    NOTIFYING = "NOTIFYING"
    DONE = "DONE"


class Orchestrator:
    """
    Sequences backup, rotation, verification and notification for one run.

    Targets are processed strictly one after another; several of them write
    into the same secret object, so they must never run concurrently.
    """

    def __init__(
        self,
        config: RotationConfig,
        store: SecretStore,
        controller: WorkloadController,
        authority: CertificateAuthority | None = None,
        keys: AccessKeyManager | None = None,
        notifier: Notifier | None = None,
        audit: AuditLog | None = None,
        sleep: Callable[[float], None] = time.sleep,
        poll_interval: float = 5,
    ) -> None:
        self.config = config
        self.targets = build_targets(config)
        self.audit = audit or AuditLog(config.audit_log)
        self.notifier = notifier or Notifier(config, self.audit)
        self.ctx = RotationContext(
            config=config,
            store=store,
            controller=controller,
            authority=authority,
            keys=keys,
            sleep=sleep,
            poll_interval=poll_interval,
        )
        self.state = RunState.INIT

    @property
    def labels(self) -> dict[TargetName, str]:
        return {t.name: t.label for t in self.targets}

    def target(self, command: str) -> RotationTarget:
        for target in self.targets:
            if target.command == command:
                return target
        raise ValueError(f"Unknown rotation target: {command}")

    def _enter(self, state: RunState, detail: str = "") -> None:
        self.state = state
        log.debug(f"state -> {state.value}{f' ({detail})' if detail else ''}")

    def check_prerequisites(self) -> None:
        self._enter(RunState.PREREQ_CHECK)
        log.info("Checking prerequisites...")
        if not self.ctx.controller.cluster_reachable():
            raise PrerequisiteError("Cannot access Kubernetes cluster")
        if self.ctx.keys is None:
            log.warning("AWS credentials not configured, AWS key rotation will be skipped")
        log.info("  [OK] Prerequisites check passed")

    def run(self, targets: list[RotationTarget]) -> RotationRun:
        """
        Rotate `targets` in order.

        Backup and verification only happen when at least one target owns
        secrets that a snapshot can capture; certificate and cloud key
        rotation on their own go straight from the prerequisite check to
        rotation and notification.

        Raises:
            PrerequisiteError: the cluster cannot be reached; nothing was changed.
            BackupError: no snapshot could be taken; nothing was changed.
        """
        self._enter(RunState.INIT)
        env = self.config.environment
        log.info(f"Starting credential rotation for environment: {env}")
        run = RotationRun(environment=env)

        self.check_prerequisites()
        guarded = any(t.backup_keys for t in targets)

        if guarded:
            self._enter(RunState.BACKING_UP)
            run.backup = SecretBackupWriter(self.config, self.ctx.store, self.targets).write()
            self.audit.write(make_event(
                "secrets_backed_up", str(run.backup.location), env, "success", run.backup.to_dict()
            ))

        for target in targets:
            self._enter(RunState.ROTATING, target.name.value)
            outcome = get_operation(target).rotate(self.ctx)
            run.record(outcome)
            self.audit.write(make_event(
                f"rotation_{outcome.status.value}", target.name.value, env,
                "failure" if outcome.status is OutcomeStatus.FAILED else "success",
                outcome.to_dict(),
            ))

        if guarded:
            self._enter(RunState.VERIFYING)
            run.verification = verify_services(self.ctx.controller, self.config)

        self._enter(RunState.NOTIFYING)
        self._notify(run)

        run.finished_at = utcnow()
        self._enter(RunState.DONE)
        if run.backup is not None:
            log.info(f"Backup location: {run.backup.location}")
        return run

    def _notify(self, run: RotationRun) -> None:
        summary = "\n".join(run.summary_lines(self.labels))
        try:
            self.notifier.send(summary, cluster=self.ctx.controller.current_context())
        except Exception as e:
            log.warning(f"Notification failed (non-fatal): {e}")

    def verify(self) -> VerificationResult:
        self.check_prerequisites()
        self._enter(RunState.VERIFYING)
        result = verify_services(self.ctx.controller, self.config)
        self._enter(RunState.DONE)
        return result

    def rollback(self, location: str | Path | None) -> list[SecretRef]:
        """
        Restore a snapshot and restart dependent services.

        Raises:
            RollbackError: the snapshot is missing/empty (nothing restarted), or
                some secrets or services could not be restored.
        """
        self.check_prerequisites()
        try:
            restored = RollbackOperation(self.ctx, self.targets).run(location)
        except RollbackError as e:
            self.audit.write(make_event(
                "rotation_rollback", str(location), self.config.environment, "failure", {"error": str(e)}
            ))
            raise
        self.audit.write(make_event(
            "rotation_rollback", str(location), self.config.environment, "success",
            {"restored": [str(ref) for ref in restored]},
        ))
        return restored


def render_summary(run: RotationRun, labels: dict[TargetName, str], console: Console) -> None:
    table = Table(
        title=f"Credential Rotation Summary  [dim]({run.environment})[/dim]",
        show_header=True,
        header_style="bold cyan",
        border_style="blue",
    )
    table.add_column("", justify="center", width=2)
    table.add_column("Target", min_width=24)
    table.add_column("Result", justify="center", min_width=9)
    table.add_column("Detail")

    marks = {
        OutcomeStatus.SUCCEEDED: Text("✓", style="green"),
        OutcomeStatus.SKIPPED: Text("–", style="yellow"),
        OutcomeStatus.FAILED: Text("✗", style="bold red"),
    }
    for outcome in run.outcomes:
        table.add_row(
            marks[outcome.status],
            labels.get(outcome.target, outcome.target.value),
            outcome.status.value,
            outcome.message,
        )
    if run.verification is not None:
        passed = run.verification.passed
        table.add_row(
            Text("✓", style="green") if passed else Text("✗", style="bold red"),
            "Service verification",
            "passed" if passed else "failed",
            ", ".join(run.verification.failing_checks),
        )
    if run.backup is not None:
        table.caption = f"[dim]Backup location: {run.backup.location} | rollback: flow-rotate rollback {run.backup.location}[/dim]"
    console.print(table)


def configure_logging() -> None:
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, datefmt=LOG_DATEFMT)


@contextmanager
def rotation_log(path: Path | None) -> Iterator[None]:
    """Mirror every log record of the run into the rotation log file."""
    handler = None
    if path is not None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(path)
        except OSError as e:
            log.warning(f"Cannot open rotation log {path} (continuing without it): {e}")
        else:
            handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATEFMT))
            logging.getLogger().addHandler(handler)
    try:
        yield
    finally:
        if handler is not None:
            logging.getLogger().removeHandler(handler)
            handler.close()


def build_orchestrator(config: RotationConfig) -> Orchestrator:
    from flowops.backends.kubernetes_backend import KubernetesBackend

    try:
        backend = KubernetesBackend(context=config.kube_context)
    except ConfigException as e:
        raise PrerequisiteError(f"No Kubernetes configuration available: {e}") from e

    keys = None
    try:
        from flowops.backends.aws_backend import IAMKeyManager, make_session
        keys = IAMKeyManager(make_session(config.aws_region, config.aws_profile))
    except BotoCoreError as e:
        log.warning(f"AWS session unavailable: {e}")

    return Orchestrator(config, backend, backend, authority=backend, keys=keys)


def dispatch(orchestrator: Orchestrator, command: str, argument: str | None, console: Console) -> int:
    if command == "verify":
        return 0 if orchestrator.verify().passed else 1

    if command == "rollback":
        orchestrator.rollback(argument)
        return 0

    if command == "full":
        targets = orchestrator.targets
    else:
        targets = [orchestrator.target(command)]

    run = orchestrator.run(targets)
    render_summary(run, orchestrator.labels, console)
    for line in run.summary_lines(orchestrator.labels):
        log.info(f"  {line}")

    if command == "full":
        log.info("Full credential rotation completed")
        return 0
    if run.failed_targets:
        return 1
    return 0 if run.verification is None or run.verification.passed else 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="flow-rotate",
        description="Flow credential rotation orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        usage=argparse.SUPPRESS,
        epilog=USAGE,
    )
    parser.add_argument("command", nargs="?", default="full")
    parser.add_argument("argument", nargs="?")
    args = parser.parse_args(argv)

    console = Console()
    if args.command == "help":
        console.print(USAGE, markup=False, highlight=False)
        return 0

    configure_logging()
    if args.command not in ("full", "verify", "rollback") + ROTATION_COMMANDS:
        log.error(f"Unknown command: {args.command}")
        console.print(USAGE, markup=False, highlight=False)
        return 1

    config = RotationConfig.from_env()
    with rotation_log(config.rotation_log):
        try:
            orchestrator = build_orchestrator(config)
            return dispatch(orchestrator, args.command, args.argument, console)
        except (PrerequisiteError, BackupError, RollbackError) as e:
            log.error(str(e))
            return 1


if __name__ == "__main__":
    sys.exit(main())
