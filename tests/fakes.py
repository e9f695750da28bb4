"""
In-memory stand-ins for the cluster and cloud interfaces used by the tests.
"""
import base64

import yaml

from flowops.backends import (
    AccessKeyManager,
    CertificateAuthority,
    SecretPatch,
    SecretStore,
    WorkloadController,
)
from flowops.config import RotationConfig
from flowops.models import ServiceRef


def make_config(tmp_path, **overrides) -> RotationConfig:
    settings = dict(
        environment="test",
        backup_root=tmp_path / "secret-backups",
        rotation_log=None,
        audit_log=tmp_path / "audit.log",
        health_endpoints=["n8n-service:5678/healthz"],
        aws_key_grace_seconds=60,
    )
    settings.update(overrides)
    return RotationConfig(**settings)


def seeded_secrets() -> dict[tuple[str, str], dict[str, str]]:
    return {
        ("n8n", "postgres-secrets"): {"POSTGRES_USER": "n8n", "POSTGRES_PASSWORD": "old-db-password"},
        ("n8n", "n8n-secrets"): {
            "DB_POSTGRESDB_PASSWORD": "old-db-password",
            "N8N_BASIC_AUTH_PASSWORD": "old-admin",
            "N8N_ENCRYPTION_KEY": "encryption-key",
        },
        ("monitoring", "grafana-secrets"): {"admin-user": "admin", "admin-password": "old-grafana"},
    }


class FakeCluster(SecretStore, WorkloadController, CertificateAuthority):
    def __init__(self, secrets=None, events=None) -> None:
        self.secrets = seeded_secrets() if secrets is None else secrets
        self.events = [] if events is None else events
        self.restarts: list[ServiceRef] = []
        self.never_ready: set[str] = set()
        self.failing_exports: set[str] = set()
        self.not_running: list[str] = []
        self.probes: dict[str, bool] = {}
        self.reachable = True
        self.has_issuer = False
        self.certificates: dict[str, bool] = {}
        self.recreated: list[str] = []
        self.deleted_certificates: list[str] = []

    # SecretStore
    def exists(self, namespace, name):
        return (namespace, name) in self.secrets

    def get_fields(self, namespace, name):
        return dict(self.secrets[(namespace, name)])

    def patch_fields(self, patch: SecretPatch):
        if (patch.namespace, patch.name) not in self.secrets:
            raise RuntimeError(f"secrets \"{patch.name}\" not found")
        self.secrets[(patch.namespace, patch.name)].update(patch.fields)
        self.events.append(("patch", patch.name, tuple(sorted(patch.fields))))

    def create_or_replace(self, namespace, name, fields):
        self.secrets[(namespace, name)] = dict(fields)
        self.events.append(("apply", name))

    def export(self, namespace, name):
        if name in self.failing_exports:
            raise RuntimeError("forbidden")
        fields = self.secrets[(namespace, name)]
        return yaml.safe_dump({
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": name, "namespace": namespace},
            "type": "Opaque",
            "data": {k: base64.b64encode(v.encode()).decode() for k, v in fields.items()},
        })

    def restore(self, manifest):
        doc = yaml.safe_load(manifest)
        meta = doc["metadata"]
        self.secrets[(meta["namespace"], meta["name"])] = {
            k: base64.b64decode(v).decode() for k, v in doc["data"].items()
        }
        self.events.append(("restore", meta["name"]))
        return meta["namespace"], meta["name"]

    # WorkloadController
    def restart(self, service):
        self.restarts.append(service)
        self.events.append(("restart", service.name))

    def is_ready(self, service):
        return service.name not in self.never_ready

    def non_running_pods(self, namespace):
        return list(self.not_running)

    def probe(self, endpoint, namespace):
        return self.probes.get(endpoint, True)

    def cluster_reachable(self):
        return self.reachable

    def current_context(self):
        return "test-cluster"

    # CertificateAuthority
    def issuer_available(self):
        return self.has_issuer

    def list_certificates(self, namespace):
        return list(self.certificates)

    def recreate_certificate(self, namespace, name):
        self.deleted_certificates.append(name)
        self.recreated.append(name)

    def certificate_ready(self, namespace, name):
        return self.certificates[name]


class FakeKeys(AccessKeyManager):
    def __init__(self, user="deploy-bot", keys=None, events=None) -> None:
        self.user = user
        self.keys = ["AKIAOLD0000000000001"] if keys is None else list(keys)
        self.events = [] if events is None else events
        self._counter = 0

    def current_user(self):
        return self.user

    def create_access_key(self, user):
        self._counter += 1
        key_id = f"AKIANEW{self._counter:013d}"
        self.keys.append(key_id)
        self.events.append(("create_key", key_id))
        return {"AccessKeyId": key_id, "SecretAccessKey": f"secret-{key_id}"}

    def list_access_key_ids(self, user):
        return list(self.keys)

    def delete_access_key(self, user, access_key_id):
        self.keys.remove(access_key_id)
        self.events.append(("delete_key", access_key_id))


class RecordingSleep:
    def __init__(self, events=None) -> None:
        self.calls: list[float] = []
        self.events = events

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.events is not None:
            self.events.append(("sleep", seconds))
