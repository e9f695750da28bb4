"""
flowops/backends/__init__.py - Abstract interfaces to the platform.

The rotation logic only talks to these narrow interfaces. The Kubernetes
implementation lives in kubernetes_backend.py; tests use in-memory fakes.
"""
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from flowops.models import ServiceRef

# Same rule the API server applies to secret data keys.
SECRET_KEY_PATTERN = re.compile(r"^[-._a-zA-Z0-9]+$")


@dataclass(frozen=True)
class SecretPatch:
    """
    A field-level update of one secret object.

    Only the named fields are written; every other key in the secret is left
    as it is.
    """

    namespace: str
    name: str
    fields: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.namespace or not self.name:
            raise ValueError("SecretPatch needs a namespace and a secret name")
        if not self.fields:
            raise ValueError(f"SecretPatch for {self.namespace}/{self.name} has no fields")
        for key, value in self.fields.items():
            if not isinstance(key, str) or not SECRET_KEY_PATTERN.match(key):
                raise ValueError(f"Invalid secret key {key!r} for {self.namespace}/{self.name}")
            if not isinstance(value, str):
                raise ValueError(f"Value for {key} must be a string")


class SecretStore(ABC):
    """Abstract interface for the secret storage of the cluster."""

    @abstractmethod
    def exists(self, namespace: str, name: str) -> bool:
        ...

    @abstractmethod
    def get_fields(self, namespace: str, name: str) -> dict[str, str]:
        """
        Return the decoded key/value pairs of a secret.

        Raises:
            KeyError: if the secret does not exist.
        """
        ...

    @abstractmethod
    def patch_fields(self, patch: SecretPatch) -> None:
        """Overwrite the fields named in `patch`, leaving other fields untouched."""
        ...

    @abstractmethod
    def create_or_replace(self, namespace: str, name: str, fields: dict[str, str]) -> None:
        """Write a secret holding exactly `fields`, creating it if needed."""
        ...

    @abstractmethod
    def export(self, namespace: str, name: str) -> str:
        """
        Serialize the current secret object as a re-appliable YAML manifest.

        Raises:
            KeyError: if the secret does not exist.
        """
        ...

    @abstractmethod
    def restore(self, manifest: str) -> tuple[str, str]:
        """
        Re-apply a manifest produced by `export`.

        Returns:
            (namespace, name) of the restored secret.
        """
        ...


class WorkloadController(ABC):
    """Restarts workloads and reports on their health."""

    @abstractmethod
    def restart(self, service: ServiceRef) -> None:
        """Trigger a rolling restart of `service`."""
        ...

    @abstractmethod
    def is_ready(self, service: ServiceRef) -> bool:
        """True once the latest rollout of `service` is fully ready."""
        ...

    @abstractmethod
    def non_running_pods(self, namespace: str) -> list[str]:
        """Names of pods in `namespace` whose phase is not Running."""
        ...

    @abstractmethod
    def probe(self, endpoint: str, namespace: str) -> bool:
        """
        Check a health endpoint.

        Args:
            endpoint: "http(s)://..." URL, or "service:port/path" reached
                through the cluster API.
            namespace: namespace used for "service:port/path" endpoints.
        """
        ...

    @abstractmethod
    def cluster_reachable(self) -> bool:
        ...

    @abstractmethod
    def current_context(self) -> str:
        ...


class CertificateAuthority(ABC):
    """Certificate issuance integration (cert-manager on Kubernetes)."""

    @abstractmethod
    def issuer_available(self) -> bool:
        ...

    @abstractmethod
    def list_certificates(self, namespace: str) -> list[str]:
        ...

    @abstractmethod
    def recreate_certificate(self, namespace: str, name: str) -> None:
        """Delete the certificate and create it again to force re-issuance."""
        ...

    @abstractmethod
    def certificate_ready(self, namespace: str, name: str) -> bool:
        ...


class AccessKeyManager(ABC):
    """Cloud identity access key operations."""

    @abstractmethod
    def current_user(self) -> str | None:
        """IAM user name of the active credentials, or None if unresolvable."""
        ...

    @abstractmethod
    def create_access_key(self, user: str) -> dict[str, Any]:
        """Returns {"AccessKeyId": ..., "SecretAccessKey": ...}."""
        ...

    @abstractmethod
    def list_access_key_ids(self, user: str) -> list[str]:
        ...

    @abstractmethod
    def delete_access_key(self, user: str, access_key_id: str) -> None:
        ...
