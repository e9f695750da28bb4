"""
flowops/models.py - In-memory records for a rotation run.

Nothing here is persisted as structured state: a RotationRun lives for one
process, is rendered to the log/summary/notification, and is then discarded.
The durable state is the cluster secret store and the snapshot directory.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TargetName(str, Enum):
    DATABASE_PASSWORD = "database-password"
    ADMIN_PASSWORD = "admin-password"
    MONITORING_PASSWORD = "monitoring-password"
    TLS_CERTIFICATES = "tls-certificates"
    CLOUD_ACCESS_KEYS = "cloud-access-keys"
    API_TOKENS = "api-tokens"


class OutcomeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class SecretRef:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ServiceRef:
    """A workload that must be restarted to pick up a rotated credential."""

    kind: str  # "deployment" or "statefulset"
    name: str
    namespace: str
    timeout: int  # seconds to wait for the rollout to become ready

    def __post_init__(self) -> None:
        if self.kind not in ("deployment", "statefulset"):
            raise ValueError(f"Unsupported workload kind: {self.kind}")

    def __str__(self) -> str:
        return f"{self.kind}/{self.name} -n {self.namespace}"


@dataclass(frozen=True)
class RotationTarget:
    """
    One credential class eligible for rotation.

    `backup_keys` are the secret objects this target mutates; they are
    snapshotted before the run and are what a rollback re-applies.
    """

    name: TargetName
    command: str
    label: str
    dependent_services: tuple[ServiceRef, ...] = ()
    backup_keys: tuple[SecretRef, ...] = ()

    @property
    def backup_key(self) -> SecretRef | None:
        return self.backup_keys[0] if self.backup_keys else None


@dataclass
class RotationOutcome:
    target: TargetName
    status: OutcomeStatus
    message: str = ""
    # Operator-facing new values (admin passwords, tokens). Shown once in the
    # run log, never serialized with the outcome.
    revealed: dict[str, str] = field(default_factory=dict, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.status is OutcomeStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {"target": self.target.value, "status": self.status.value, "message": self.message}


@dataclass
class BackupSnapshot:
    location: Path
    created_at: datetime
    environment: str
    secrets: list[SecretRef] = field(default_factory=list)
    contained_targets: frozenset[TargetName] = frozenset()

    def to_dict(self) -> dict[str, Any]:
        return {
            "location": str(self.location),
            "created_at": self.created_at.isoformat(),
            "environment": self.environment,
            "secrets": [str(s) for s in self.secrets],
            "contained_targets": sorted(t.value for t in self.contained_targets),
        }


@dataclass
class VerificationResult:
    passed: bool
    failing_checks: list[str] = field(default_factory=list)


@dataclass
class RotationRun:
    environment: str
    started_at: datetime = field(default_factory=utcnow)
    backup: BackupSnapshot | None = None
    outcomes: list[RotationOutcome] = field(default_factory=list)
    verification: VerificationResult | None = None
    finished_at: datetime | None = None

    def record(self, outcome: RotationOutcome) -> None:
        self.outcomes.append(outcome)

    @property
    def verification_passed(self) -> bool:
        return self.verification is not None and self.verification.passed

    @property
    def failed_targets(self) -> list[TargetName]:
        return [o.target for o in self.outcomes if o.status is OutcomeStatus.FAILED]

    def summary_lines(self, labels: dict[TargetName, str]) -> list[str]:
        lines = []
        for outcome in self.outcomes:
            label = labels.get(outcome.target, outcome.target.value)
            if outcome.status is OutcomeStatus.SUCCEEDED:
                lines.append(f"✓ {label} rotated")
            elif outcome.status is OutcomeStatus.SKIPPED:
                lines.append(f"– {label} skipped ({outcome.message})")
            else:
                lines.append(f"✗ {label} rotation failed: {outcome.message}")
        if self.verification is not None:
            if self.verification.passed:
                lines.append("✓ All services verified")
            else:
                lines.append(
                    "✗ Service verification failed: " + ", ".join(self.verification.failing_checks)
                )
        return lines

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "backup": self.backup.to_dict() if self.backup else None,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "verification_passed": self.verification_passed,
            "failing_checks": self.verification.failing_checks if self.verification else [],
        }
