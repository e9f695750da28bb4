"""
flowops/targets/__init__.py - Rotation targets and the base class for rotation operations.

Each operation knows how to:
  1. Generate new credential value(s)
  2. Write them into the owned fields of the cluster secret store
  3. Restart its dependent services and wait for them to become ready

Operations never raise: any error becomes a failed RotationOutcome so the
orchestrator can move on to the next target.
"""
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Iterable

from flowops.backends import AccessKeyManager, CertificateAuthority, SecretStore, WorkloadController
from flowops.config import RotationConfig
from flowops.errors import RotationError
from flowops.models import (
    OutcomeStatus,
    RotationOutcome,
    RotationTarget,
    SecretRef,
    ServiceRef,
    TargetName,
)
from flowops.polling import attempts_for, wait_until

log = logging.getLogger(__name__)

STATEFUL_TIMEOUT = 300
APPLICATION_TIMEOUT = 600
MONITORING_TIMEOUT = 300
CERTIFICATE_TIMEOUT = 600


class SkipRotation(Exception):
    """Raised by an operation when an optional capability is absent."""


@dataclass
class RotationContext:
    config: RotationConfig
    store: SecretStore
    controller: WorkloadController
    authority: CertificateAuthority | None = None
    keys: AccessKeyManager | None = None
    sleep: Callable[[float], None] = time.sleep
    poll_interval: float = 5


def build_targets(config: RotationConfig) -> list[RotationTarget]:
    """All rotation targets in the fixed order a full rotation processes them."""
    ns, mon = config.namespace, config.monitoring_namespace
    postgres = ServiceRef("statefulset", "postgres", ns, STATEFUL_TIMEOUT)
    n8n = ServiceRef("deployment", "n8n", ns, APPLICATION_TIMEOUT)
    grafana = ServiceRef("deployment", "grafana", mon, MONITORING_TIMEOUT)
    return [
        RotationTarget(
            TargetName.DATABASE_PASSWORD, "postgres", "PostgreSQL password",
            dependent_services=(postgres, n8n),
            backup_keys=(SecretRef(ns, "postgres-secrets"), SecretRef(ns, "n8n-secrets")),
        ),
        RotationTarget(
            TargetName.ADMIN_PASSWORD, "n8n", "n8n admin credentials",
            dependent_services=(n8n,),
            backup_keys=(SecretRef(ns, "n8n-secrets"),),
        ),
        RotationTarget(
            TargetName.MONITORING_PASSWORD, "grafana", "Grafana admin password",
            dependent_services=(grafana,),
            backup_keys=(SecretRef(mon, "grafana-secrets"),),
        ),
        RotationTarget(TargetName.TLS_CERTIFICATES, "ssl", "SSL certificates"),
        RotationTarget(TargetName.CLOUD_ACCESS_KEYS, "aws", "AWS IAM keys"),
        RotationTarget(
            TargetName.API_TOKENS, "api", "API tokens",
            backup_keys=(SecretRef(ns, "n8n-api-tokens"),),
        ),
    ]


def known_secrets(targets: Iterable[RotationTarget]) -> list[SecretRef]:
    """Secret objects captured by a snapshot, de-duplicated, in target order."""
    seen: list[SecretRef] = []
    for target in targets:
        for ref in target.backup_keys:
            if ref not in seen:
                seen.append(ref)
    return seen


def services_for(targets: Iterable[RotationTarget], secrets: Iterable[SecretRef]) -> list[ServiceRef]:
    """Dependent services of every target that owns one of `secrets`, de-duplicated."""
    wanted = set(secrets)
    services: list[ServiceRef] = []
    for target in targets:
        if wanted.intersection(target.backup_keys):
            for service in target.dependent_services:
                if service not in services:
                    services.append(service)
    return services


def wait_for_ready(ctx: RotationContext, service: ServiceRef) -> bool:
    """Block until `service` reports ready or its timeout expires."""
    return wait_until(
        lambda: ctx.controller.is_ready(service),
        attempts=attempts_for(service.timeout, ctx.poll_interval),
        interval=ctx.poll_interval,
        sleep=ctx.sleep,
        description=f"rollout of {service}",
    )


def restart_and_wait(ctx: RotationContext, services: Iterable[ServiceRef]) -> None:
    """Restart each service in order and wait for it; a timeout is a hard failure."""
    for service in services:
        ctx.controller.restart(service)
        if not wait_for_ready(ctx, service):
            raise RotationError(f"{service} did not become ready within {service.timeout}s")
        log.info(f"  [OK] {service} is ready")


class RotationOperation(ABC):
    """Abstract rotation of one credential class."""

    def __init__(self, target: RotationTarget) -> None:
        self.target = target

    @abstractmethod
    def apply(self, ctx: RotationContext) -> dict[str, str]:
        """
        Perform the rotation.

        Returns:
            New values the operator must see (admin passwords, tokens).
            Empty when nothing needs to be revealed.

        Raises:
            SkipRotation: the optional capability this target relies on is absent.
        """
        ...

    def rotate(self, ctx: RotationContext) -> RotationOutcome:
        log.info(f"Rotating {self.target.label}...")
        try:
            revealed = self.apply(ctx)
        except SkipRotation as e:
            log.warning(f"  [SKIP] {self.target.label}: {e}")
            return RotationOutcome(self.target.name, OutcomeStatus.SKIPPED, str(e))
        except Exception as e:
            log.error(f"  [FAIL] {self.target.label}: {e}")
            return RotationOutcome(self.target.name, OutcomeStatus.FAILED, str(e))

        log.info(f"  [OK] {self.target.label} rotated")
        for key, value in revealed.items():
            log.info(f"  New {key}: {value}")
        return RotationOutcome(self.target.name, OutcomeStatus.SUCCEEDED, "rotated", revealed)


def get_operation(target: RotationTarget) -> RotationOperation:
    if target.name is TargetName.DATABASE_PASSWORD:
        from flowops.targets.postgres import PostgresPasswordRotation
        return PostgresPasswordRotation(target)
    if target.name is TargetName.ADMIN_PASSWORD:
        from flowops.targets.admin import N8nAdminRotation
        return N8nAdminRotation(target)
    if target.name is TargetName.MONITORING_PASSWORD:
        from flowops.targets.admin import GrafanaAdminRotation
        return GrafanaAdminRotation(target)
    if target.name is TargetName.TLS_CERTIFICATES:
        from flowops.targets.tls import CertificateRotation
        return CertificateRotation(target)
    if target.name is TargetName.CLOUD_ACCESS_KEYS:
        from flowops.targets.aws_keys import AccessKeyRotation
        return AccessKeyRotation(target)
    if target.name is TargetName.API_TOKENS:
        from flowops.targets.api_tokens import ApiTokenRotation
        return ApiTokenRotation(target)
    raise ValueError(f"Unknown rotation target: {target.name}")
