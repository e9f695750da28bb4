"""
flowops/backends/kubernetes_backend.py - Kubernetes backend using the official client.

This is the backend for every cluster-facing step: secret reads/patches,
snapshot export and re-apply, rolling restarts, rollout readiness, pod health,
cert-manager certificates and pod exec for the platform backup tool.

Authentication: kubeconfig (optionally a named context), falling back to the
in-cluster service account when no kubeconfig is present.
"""
import base64
import logging
import shlex
from datetime import datetime, timezone
from typing import Any

import requests
import yaml
from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from kubernetes.stream import stream

from flowops.backends import CertificateAuthority, SecretPatch, SecretStore, WorkloadController
from flowops.models import ServiceRef

log = logging.getLogger(__name__)

ROTATED_AT_ANNOTATION = "flowops.io/rotated-at"
RESTARTED_AT_ANNOTATION = "kubectl.kubernetes.io/restartedAt"
LAST_APPLIED_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"

CERT_MANAGER_GROUP = "cert-manager.io"
CERT_MANAGER_VERSION = "v1"
CLUSTER_ISSUER = "letsencrypt-prod"

HTTP_PROBE_TIMEOUT = 10
# Keeps each exec argument well under the kernel's per-argument limit.
UPLOAD_CHUNK_BYTES = 48 * 1024


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _b64encode(value: str) -> str:
    return base64.b64encode(value.encode()).decode()


def _b64decode(value: str) -> str:
    return base64.b64decode(value).decode()


class ExecResult:
    def __init__(self, returncode: int, stdout: str, stderr: str) -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class KubernetesBackend(SecretStore, WorkloadController, CertificateAuthority):
    """
    Kubernetes implementation of the platform interfaces.

    API objects can be injected (tests pass mocks); otherwise they are built
    from the loaded kubeconfig.
    """

    def __init__(
        self,
        context: str | None = None,
        *,
        core_api: Any = None,
        apps_api: Any = None,
        custom_api: Any = None,
        networking_api: Any = None,
        version_api: Any = None,
    ) -> None:
        self._context_name = context or "in-cluster"
        if core_api is None:
            self._load_config(context)
        self.core = core_api or client.CoreV1Api()
        self.apps = apps_api or client.AppsV1Api()
        self.custom = custom_api or client.CustomObjectsApi()
        self.networking = networking_api or client.NetworkingV1Api()
        self.version = version_api or client.VersionApi()

    def _load_config(self, context: str | None) -> None:
        try:
            config.load_kube_config(context=context)
            _, active = config.list_kube_config_contexts()
            self._context_name = context or (active or {}).get("name", "unknown")
        except config.ConfigException:
            log.info("No usable kubeconfig, trying in-cluster configuration")
            config.load_incluster_config()
            self._context_name = "in-cluster"

    # ------------------------------------------------------------------
    # SecretStore
    # ------------------------------------------------------------------

    def _read_secret(self, namespace: str, name: str) -> Any:
        try:
            return self.core.read_namespaced_secret(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                raise KeyError(f"{namespace}/{name}") from e
            raise

    def exists(self, namespace: str, name: str) -> bool:
        try:
            self._read_secret(namespace, name)
            return True
        except KeyError:
            return False

    def get_fields(self, namespace: str, name: str) -> dict[str, str]:
        secret = self._read_secret(namespace, name)
        return {k: _b64decode(v) for k, v in (secret.data or {}).items()}

    def patch_fields(self, patch: SecretPatch) -> None:
        body = {
            "metadata": {"annotations": {ROTATED_AT_ANNOTATION: _now()}},
            "data": {k: _b64encode(v) for k, v in patch.fields.items()},
        }
        try:
            self.core.patch_namespaced_secret(name=patch.name, namespace=patch.namespace, body=body)
        except ApiException as e:
            raise RuntimeError(
                f"Failed to patch secret {patch.namespace}/{patch.name}: {e.status} {e.reason} {e.body}"
            ) from e
        log.info(f"  [OK] Patched {', '.join(sorted(patch.fields))} in secret {patch.namespace}/{patch.name}")

    def create_or_replace(self, namespace: str, name: str, fields: dict[str, str]) -> None:
        body = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {
                "name": name,
                "namespace": namespace,
                "annotations": {ROTATED_AT_ANNOTATION: _now()},
            },
            "type": "Opaque",
            "data": {k: _b64encode(v) for k, v in fields.items()},
        }
        self._apply_secret(namespace, name, body)
        log.info(f"  [OK] Applied secret {namespace}/{name}")

    def _apply_secret(self, namespace: str, name: str, body: dict[str, Any]) -> None:
        try:
            self.core.replace_namespaced_secret(name=name, namespace=namespace, body=body)
        except ApiException as e:
            if e.status != 404:
                raise RuntimeError(
                    f"Failed to write secret {namespace}/{name}: {e.status} {e.reason} {e.body}"
                ) from e
            try:
                self.core.create_namespaced_secret(namespace=namespace, body=body)
            except ApiException as create_error:
                raise RuntimeError(
                    f"Failed to create secret {namespace}/{name}: "
                    f"{create_error.status} {create_error.reason} {create_error.body}"
                ) from create_error

    def last_rotated(self, namespace: str, name: str) -> str | None:
        """ISO timestamp of the last rotation, falling back to the creation time."""
        secret = self._read_secret(namespace, name)
        annotations = secret.metadata.annotations or {}
        if ROTATED_AT_ANNOTATION in annotations:
            return annotations[ROTATED_AT_ANNOTATION]
        created = secret.metadata.creation_timestamp
        return created.isoformat() if created else None

    def export(self, namespace: str, name: str) -> str:
        secret = self._read_secret(namespace, name)
        metadata: dict[str, Any] = {"name": name, "namespace": namespace}
        if secret.metadata is not None:
            if secret.metadata.labels:
                metadata["labels"] = dict(secret.metadata.labels)
            annotations = {
                k: v for k, v in (secret.metadata.annotations or {}).items()
                if k != LAST_APPLIED_ANNOTATION
            }
            if annotations:
                metadata["annotations"] = annotations
        manifest = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": metadata,
            "type": secret.type or "Opaque",
            "data": dict(secret.data or {}),
        }
        return yaml.safe_dump(manifest, sort_keys=False)

    def restore(self, manifest: str) -> tuple[str, str]:
        doc = yaml.safe_load(manifest)
        if not isinstance(doc, dict) or doc.get("kind") != "Secret":
            raise ValueError("Manifest is not a Secret export")
        metadata = doc.get("metadata") or {}
        name, namespace = metadata.get("name"), metadata.get("namespace")
        if not name or not namespace:
            raise ValueError("Secret export is missing metadata.name or metadata.namespace")
        self._apply_secret(namespace, name, doc)
        return namespace, name

    # ------------------------------------------------------------------
    # WorkloadController
    # ------------------------------------------------------------------

    def restart(self, service: ServiceRef) -> None:
        body = {"spec": {"template": {"metadata": {"annotations": {RESTARTED_AT_ANNOTATION: _now()}}}}}
        try:
            if service.kind == "statefulset":
                self.apps.patch_namespaced_stateful_set(
                    name=service.name, namespace=service.namespace, body=body
                )
            else:
                self.apps.patch_namespaced_deployment(
                    name=service.name, namespace=service.namespace, body=body
                )
        except ApiException as e:
            raise RuntimeError(f"Failed to restart {service}: {e.status} {e.reason} {e.body}") from e
        log.info(f"  Restart triggered for {service}")

    def is_ready(self, service: ServiceRef) -> bool:
        if service.kind == "statefulset":
            obj = self.apps.read_namespaced_stateful_set_status(
                name=service.name, namespace=service.namespace
            )
            return _statefulset_rolled_out(obj)
        obj = self.apps.read_namespaced_deployment_status(name=service.name, namespace=service.namespace)
        return _deployment_rolled_out(obj)

    def non_running_pods(self, namespace: str) -> list[str]:
        pods = self.core.list_namespaced_pod(
            namespace=namespace, field_selector="status.phase!=Running"
        )
        return [pod.metadata.name for pod in pods.items]

    def probe(self, endpoint: str, namespace: str) -> bool:
        if endpoint.startswith(("http://", "https://")):
            try:
                resp = requests.get(endpoint, timeout=HTTP_PROBE_TIMEOUT)
            except requests.RequestException as e:
                log.warning(f"  [WARN] Could not reach {endpoint}: {e}")
                return False
            return resp.status_code < 400

        service_port, _, path = endpoint.partition("/")
        try:
            self.core.connect_get_namespaced_service_proxy_with_path(
                name=service_port, namespace=namespace, path=path
            )
            return True
        except ApiException as e:
            log.warning(f"  [WARN] Health probe {endpoint} returned {e.status} {e.reason}")
            return False

    def cluster_reachable(self) -> bool:
        try:
            self.version.get_code()
            return True
        except Exception as e:
            log.error(f"Cannot access Kubernetes cluster: {e}")
            return False

    def current_context(self) -> str:
        return self._context_name

    def server_version(self) -> str:
        return self.version.get_code().git_version

    def server_host(self) -> str:
        return self.core.api_client.configuration.host

    # ------------------------------------------------------------------
    # CertificateAuthority (cert-manager)
    # ------------------------------------------------------------------

    def issuer_available(self) -> bool:
        try:
            self.custom.get_cluster_custom_object(
                group=CERT_MANAGER_GROUP,
                version=CERT_MANAGER_VERSION,
                plural="clusterissuers",
                name=CLUSTER_ISSUER,
            )
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise

    def list_certificates(self, namespace: str) -> list[str]:
        result = self.custom.list_namespaced_custom_object(
            group=CERT_MANAGER_GROUP,
            version=CERT_MANAGER_VERSION,
            namespace=namespace,
            plural="certificates",
        )
        return [item["metadata"]["name"] for item in result.get("items", [])]

    def _get_certificate(self, namespace: str, name: str) -> dict[str, Any]:
        return self.custom.get_namespaced_custom_object(
            group=CERT_MANAGER_GROUP,
            version=CERT_MANAGER_VERSION,
            namespace=namespace,
            plural="certificates",
            name=name,
        )

    def recreate_certificate(self, namespace: str, name: str) -> None:
        current = self._get_certificate(namespace, name)
        source_meta = current.get("metadata", {})
        metadata: dict[str, Any] = {"name": name, "namespace": namespace}
        for key in ("labels", "annotations"):
            if source_meta.get(key):
                metadata[key] = source_meta[key]
        body = {
            "apiVersion": f"{CERT_MANAGER_GROUP}/{CERT_MANAGER_VERSION}",
            "kind": "Certificate",
            "metadata": metadata,
            "spec": current["spec"],
        }
        self.custom.delete_namespaced_custom_object(
            group=CERT_MANAGER_GROUP,
            version=CERT_MANAGER_VERSION,
            namespace=namespace,
            plural="certificates",
            name=name,
        )
        self.custom.create_namespaced_custom_object(
            group=CERT_MANAGER_GROUP,
            version=CERT_MANAGER_VERSION,
            namespace=namespace,
            plural="certificates",
            body=body,
        )

    def certificate_ready(self, namespace: str, name: str) -> bool:
        cert = self._get_certificate(namespace, name)
        conditions = (cert.get("status") or {}).get("conditions") or []
        return any(c.get("type") == "Ready" and c.get("status") == "True" for c in conditions)

    # ------------------------------------------------------------------
    # Pod exec and workload helpers (platform backup)
    # ------------------------------------------------------------------

    def first_pod(self, namespace: str, app_name: str) -> str | None:
        pods = self.core.list_namespaced_pod(
            namespace=namespace, label_selector=f"app.kubernetes.io/name={app_name}"
        )
        return pods.items[0].metadata.name if pods.items else None

    def exec_in_pod(self, namespace: str, pod: str, command: list[str]) -> ExecResult:
        resp = stream(
            self.core.connect_get_namespaced_pod_exec,
            pod,
            namespace,
            command=command,
            stderr=True,
            stdin=False,
            stdout=True,
            tty=False,
            _preload_content=False,
        )
        stdout: list[str] = []
        stderr: list[str] = []
        while resp.is_open():
            resp.update(timeout=1)
            if resp.peek_stdout():
                stdout.append(resp.read_stdout())
            if resp.peek_stderr():
                stderr.append(resp.read_stderr())
        returncode = resp.returncode
        resp.close()
        return ExecResult(returncode or 0, "".join(stdout), "".join(stderr))

    def upload_to_pod(self, namespace: str, pod: str, data: bytes, remote_path: str) -> None:
        """Write `data` to `remote_path` inside the pod, in base64 chunks."""
        target = shlex.quote(remote_path)
        result = self.exec_in_pod(namespace, pod, ["sh", "-c", f": > {target}"])
        if not result.ok:
            raise RuntimeError(f"Cannot create {remote_path} in {pod}: {result.stderr.strip()}")
        for offset in range(0, len(data), UPLOAD_CHUNK_BYTES):
            chunk = base64.b64encode(data[offset:offset + UPLOAD_CHUNK_BYTES]).decode()
            result = self.exec_in_pod(
                namespace, pod, ["sh", "-c", f"printf %s '{chunk}' | base64 -d >> {target}"]
            )
            if not result.ok:
                raise RuntimeError(f"Upload to {pod}:{remote_path} failed: {result.stderr.strip()}")

    def scale_deployment(self, namespace: str, name: str, replicas: int) -> None:
        self.apps.patch_namespaced_deployment_scale(
            name=name, namespace=namespace, body={"spec": {"replicas": replicas}}
        )
        log.info(f"  Scaled deployment/{name} -n {namespace} to {replicas}")

    def dump_namespace(self, namespace: str, include_ingress: bool = True) -> str:
        """YAML List of workloads, services, secrets, configmaps, pvcs (and ingresses)."""
        serializer = client.ApiClient()
        listings = [
            ("v1", "Pod", self.core.list_namespaced_pod),
            ("v1", "Service", self.core.list_namespaced_service),
            ("apps/v1", "Deployment", self.apps.list_namespaced_deployment),
            ("apps/v1", "StatefulSet", self.apps.list_namespaced_stateful_set),
            ("apps/v1", "ReplicaSet", self.apps.list_namespaced_replica_set),
            ("v1", "Secret", self.core.list_namespaced_secret),
            ("v1", "ConfigMap", self.core.list_namespaced_config_map),
            ("v1", "PersistentVolumeClaim", self.core.list_namespaced_persistent_volume_claim),
        ]
        if include_ingress:
            listings.append(("networking.k8s.io/v1", "Ingress", self.networking.list_namespaced_ingress))

        items = []
        for api_version, kind, list_fn in listings:
            for obj in list_fn(namespace=namespace).items:
                item = serializer.sanitize_for_serialization(obj)
                item["apiVersion"] = api_version
                item["kind"] = kind
                items.append(item)
        return yaml.safe_dump({"apiVersion": "v1", "kind": "List", "items": items}, sort_keys=False)


def _deployment_rolled_out(obj: Any) -> bool:
    status, spec = obj.status, obj.spec
    desired = spec.replicas if spec.replicas is not None else 1
    if (status.observed_generation or 0) < (obj.metadata.generation or 0):
        return False
    updated = status.updated_replicas or 0
    if updated < desired:
        return False
    if (status.replicas or 0) > updated:
        return False
    return (status.available_replicas or 0) >= updated and (status.ready_replicas or 0) >= desired


def _statefulset_rolled_out(obj: Any) -> bool:
    status, spec = obj.status, obj.spec
    desired = spec.replicas if spec.replicas is not None else 1
    if (status.observed_generation or 0) < (obj.metadata.generation or 0):
        return False
    if (status.ready_replicas or 0) < desired:
        return False
    if (status.updated_replicas or 0) < desired:
        return False
    if status.update_revision and status.current_revision:
        return status.update_revision == status.current_revision
    return True
