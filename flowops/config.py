"""
flowops/config.py - Runtime configuration for the rotation and backup tools.

All settings come from environment variables and are gathered into plain
dataclasses that are handed to each component explicitly.

Rotation:
    ENVIRONMENT, N8N_NAMESPACE, MONITORING_NAMESPACE, SECRET_BACKUP_DIR,
    ROTATION_LOG, AUDIT_LOG, SLACK_WEBHOOK_URL, NOTIFICATION_EMAIL,
    SMTP_HOST, SMTP_PORT, SMTP_USERNAME, SMTP_PASSWORD, SMTP_FROM,
    HEALTH_ENDPOINTS, AWS_KEY_GRACE_SECONDS, AWS_REGION, AWS_PROFILE, KUBE_CONTEXT

Platform backup:
    BACKUP_DIR, S3_BACKUP_BUCKET, BACKUP_RETENTION_DAYS
"""
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Mapping

DEFAULT_HEALTH_ENDPOINTS = ("n8n-service:5678/healthz",)


def _split_list(raw: str | None, default: tuple[str, ...]) -> list[str]:
    if raw is None:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e


@dataclass
class RotationConfig:
    """Settings for a credential rotation or rollback run."""

    environment: str = "production"
    namespace: str = "n8n"
    monitoring_namespace: str = "monitoring"
    backup_root: Path = Path("secret-backups")
    rotation_log: Path | None = Path("/var/log/credential-rotation.log")
    audit_log: Path | None = Path("/var/log/audit-credential-rotation.log")
    slack_webhook_url: str = ""
    notification_email: str = ""
    smtp_host: str = "localhost"
    smtp_port: int = 25
    smtp_username: str = ""
    smtp_password: str = field(default="", repr=False)
    smtp_from: str = "flow-rotation@localhost"
    health_endpoints: list[str] = field(default_factory=lambda: list(DEFAULT_HEALTH_ENDPOINTS))
    aws_key_grace_seconds: int = 60
    aws_region: str | None = None
    aws_profile: str | None = None
    kube_context: str | None = None

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "RotationConfig":
        env = os.environ if env is None else env
        rotation_log = env.get("ROTATION_LOG", "/var/log/credential-rotation.log")
        audit_log = env.get("AUDIT_LOG", "/var/log/audit-credential-rotation.log")
        return cls(
            environment=env.get("ENVIRONMENT") or "production",
            namespace=env.get("N8N_NAMESPACE") or "n8n",
            monitoring_namespace=env.get("MONITORING_NAMESPACE") or "monitoring",
            backup_root=Path(env.get("SECRET_BACKUP_DIR") or "secret-backups"),
            rotation_log=Path(rotation_log) if rotation_log else None,
            audit_log=Path(audit_log) if audit_log else None,
            slack_webhook_url=env.get("SLACK_WEBHOOK_URL", ""),
            notification_email=env.get("NOTIFICATION_EMAIL", ""),
            smtp_host=env.get("SMTP_HOST") or "localhost",
            smtp_port=_int(env, "SMTP_PORT", 25),
            smtp_username=env.get("SMTP_USERNAME", ""),
            smtp_password=env.get("SMTP_PASSWORD", ""),
            smtp_from=env.get("SMTP_FROM") or "flow-rotation@localhost",
            health_endpoints=_split_list(env.get("HEALTH_ENDPOINTS"), DEFAULT_HEALTH_ENDPOINTS),
            aws_key_grace_seconds=_int(env, "AWS_KEY_GRACE_SECONDS", 60),
            aws_region=env.get("AWS_REGION") or None,
            aws_profile=env.get("AWS_PROFILE") or None,
            kube_context=env.get("KUBE_CONTEXT") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("smtp_password")
        return {k: str(v) if isinstance(v, Path) else v for k, v in data.items()}


@dataclass
class BackupConfig:
    """Settings for full platform backups (database, workflows, cluster config)."""

    environment: str = "production"
    namespace: str = "n8n"
    monitoring_namespace: str = "monitoring"
    backup_dir: Path = Path("./backups")
    s3_bucket: str = ""
    retention_days: int = 30
    n8n_replicas: int = 2
    db_user: str = "n8n"
    db_name: str = "n8n"
    aws_region: str | None = None
    aws_profile: str | None = None
    kube_context: str | None = None

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "BackupConfig":
        env = os.environ if env is None else env
        return cls(
            environment=env.get("ENVIRONMENT") or "production",
            namespace=env.get("N8N_NAMESPACE") or "n8n",
            monitoring_namespace=env.get("MONITORING_NAMESPACE") or "monitoring",
            backup_dir=Path(env.get("BACKUP_DIR") or "./backups"),
            s3_bucket=env.get("S3_BACKUP_BUCKET", ""),
            retention_days=_int(env, "BACKUP_RETENTION_DAYS", 30),
            aws_region=env.get("AWS_REGION") or None,
            aws_profile=env.get("AWS_PROFILE") or None,
            kube_context=env.get("KUBE_CONTEXT") or None,
        )
