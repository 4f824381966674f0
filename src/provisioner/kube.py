"""Kubernetes adapter: service accounts, external-secrets resources, secrets.

Uses the official kubernetes client. In-cluster configuration is tried
first so the tool can run as a Job; otherwise the local kubeconfig is used.
"""

from __future__ import annotations

import base64
import logging
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any, TypeVar

import urllib3
from kubernetes import client
from kubernetes import config as kube_config
from kubernetes.client.exceptions import ApiException

from .backends import ClusterSecret, ObservedServiceAccount, StoreStatus
from .errors import PreconditionUnmet, ResourceConflict, TransientUnavailable
from .models import (
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    SecretSyncRequest,
    StoreBinding,
    SyncStatus,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ES_GROUP = "external-secrets.io"
ES_VERSION = "v1beta1"
STORE_PLURAL = "secretstores"
SYNC_PLURAL = "externalsecrets"

REQUIRED_CRDS = (f"{STORE_PLURAL}.{ES_GROUP}", f"{SYNC_PLURAL}.{ES_GROUP}")

ROLE_ARN_ANNOTATION = "eks.amazonaws.com/role-arn"
RESTARTED_AT_ANNOTATION = "kubectl.kubernetes.io/restartedAt"

# external-secrets reports sync failures under this reason
SYNC_ERROR_REASON = "SecretSyncedError"


@contextmanager
def kube_errors(resource_key: str) -> Iterator[None]:
    """Translate Kubernetes API failures raised inside the block."""
    try:
        yield
    except ApiException as e:
        status = e.status or 0
        if status == 429 or status >= 500:
            raise TransientUnavailable(
                f"Kubernetes API unavailable for {resource_key} ({status})",
                resource_key=resource_key,
            ) from e
        if status == 409:
            raise TransientUnavailable(
                f"{resource_key} changed concurrently, re-reading", resource_key=resource_key
            ) from e
        if status in (401, 403):
            raise PreconditionUnmet(
                f"Not authorized for {resource_key}: {e.reason}",
                resource_key=resource_key,
                suggestion="kubectl auth can-i --list",
            ) from e
        raise
    except urllib3.exceptions.HTTPError as e:
        raise TransientUnavailable(
            f"Cannot reach Kubernetes API for {resource_key}: {e}", resource_key=resource_key
        ) from e


def _read_or_none(read: Callable[..., T], *args: Any) -> T | None:
    try:
        return read(*args)
    except ApiException as e:
        if e.status == 404:
            return None
        raise


def _ready_condition(obj: dict[str, Any]) -> dict[str, Any] | None:
    for condition in obj.get("status", {}).get("conditions") or []:
        if condition.get("type") == "Ready":
            return condition
    return None


def parse_sync_status(obj: dict[str, Any] | None) -> SyncStatus:
    """Reduce an ExternalSecret's Ready condition to a SyncStatus."""
    if obj is None:
        return SyncStatus.pending("not found")
    condition = _ready_condition(obj)
    if condition is None:
        return SyncStatus.pending("no status reported yet")
    if condition.get("status") == "True":
        return SyncStatus.synced()
    if condition.get("status") == "False":
        message = condition.get("message") or condition.get("reason") or SYNC_ERROR_REASON
        return SyncStatus.error(message)
    return SyncStatus.pending(condition.get("reason"))


def parse_store_status(obj: dict[str, Any] | None) -> StoreStatus:
    """Reduce a SecretStore's Ready condition to a StoreStatus."""
    if obj is None:
        return StoreStatus(False, "not found")
    condition = _ready_condition(obj)
    if condition is None:
        return StoreStatus(False, "no status reported yet")
    if condition.get("status") == "True":
        return StoreStatus(True, condition.get("reason"))
    return StoreStatus(False, condition.get("message") or condition.get("reason"))


def load_api_client() -> client.ApiClient:
    try:
        kube_config.load_incluster_config()
        logger.debug("Loaded in-cluster Kubernetes configuration")
    except kube_config.ConfigException:
        kube_config.load_kube_config()
        logger.debug("Loaded Kubernetes configuration from kubeconfig")
    return client.ApiClient()


class KubeCluster:
    """Cluster-side half of the chain."""

    def __init__(
        self,
        core: client.CoreV1Api,
        custom: client.CustomObjectsApi,
        apps: client.AppsV1Api,
        extensions: client.ApiextensionsV1Api,
    ) -> None:
        self._core = core
        self._custom = custom
        self._apps = apps
        self._extensions = extensions

    @classmethod
    def from_kubeconfig(cls) -> KubeCluster:
        api_client = load_api_client()
        return cls(
            core=client.CoreV1Api(api_client),
            custom=client.CustomObjectsApi(api_client),
            apps=client.AppsV1Api(api_client),
            extensions=client.ApiextensionsV1Api(api_client),
        )

    # -------------------------------------------------------------------------
    # Service accounts
    # -------------------------------------------------------------------------

    def get_service_account(self, namespace: str, name: str) -> ObservedServiceAccount | None:
        with kube_errors(f"serviceaccount/{namespace}/{name}"):
            account = _read_or_none(self._core.read_namespaced_service_account, name, namespace)
        if account is None:
            return None
        annotations = account.metadata.annotations or {}
        return ObservedServiceAccount(
            name=name,
            namespace=namespace,
            role_arn=annotations.get(ROLE_ARN_ANNOTATION),
        )

    def apply_service_account(self, namespace: str, name: str, role_arn: str) -> None:
        """Create the service account, or add the role annotation to it."""
        with kube_errors(f"serviceaccount/{namespace}/{name}"):
            existing = _read_or_none(self._core.read_namespaced_service_account, name, namespace)
            if existing is None:
                body = client.V1ServiceAccount(
                    metadata=client.V1ObjectMeta(
                        name=name,
                        namespace=namespace,
                        annotations={ROLE_ARN_ANNOTATION: role_arn},
                        labels={MANAGED_BY_LABEL: MANAGED_BY_VALUE},
                    )
                )
                self._core.create_namespaced_service_account(namespace, body)
            else:
                patch = {"metadata": {"annotations": {ROLE_ARN_ANNOTATION: role_arn}}}
                self._core.patch_namespaced_service_account(name, namespace, patch)

    # -------------------------------------------------------------------------
    # external-secrets resources
    # -------------------------------------------------------------------------

    def missing_crds(self, names: Sequence[str]) -> list[str]:
        missing: list[str] = []
        with kube_errors("customresourcedefinitions"):
            for name in names:
                if _read_or_none(self._extensions.read_custom_resource_definition, name) is None:
                    missing.append(name)
        return missing

    def _get_custom(self, namespace: str, plural: str, name: str) -> dict[str, Any] | None:
        return _read_or_none(
            self._custom.get_namespaced_custom_object, ES_GROUP, ES_VERSION, namespace, plural, name
        )

    def _replace_custom(self, plural: str, manifest: dict[str, Any]) -> None:
        metadata = manifest["metadata"]
        current = self._get_custom(metadata["namespace"], plural, metadata["name"])
        if current is not None:
            # Optimistic concurrency: a stale version surfaces as 409
            metadata["resourceVersion"] = current["metadata"]["resourceVersion"]
        self._custom.replace_namespaced_custom_object(
            ES_GROUP, ES_VERSION, metadata["namespace"], plural, metadata["name"], manifest
        )

    def get_store_binding(self, namespace: str, name: str) -> StoreBinding | None:
        key = f"secretstore/{namespace}/{name}"
        with kube_errors(key):
            obj = self._get_custom(namespace, STORE_PLURAL, name)
        if obj is None:
            return None
        try:
            return StoreBinding.from_manifest(obj)
        except ValueError as e:
            raise ResourceConflict(str(e), resource_key=key) from e

    def create_store_binding(self, store: StoreBinding) -> None:
        with kube_errors(f"secretstore/{store.key}"):
            self._custom.create_namespaced_custom_object(
                ES_GROUP, ES_VERSION, store.namespace, STORE_PLURAL, store.to_manifest()
            )

    def replace_store_binding(self, store: StoreBinding) -> None:
        with kube_errors(f"secretstore/{store.key}"):
            self._replace_custom(STORE_PLURAL, store.to_manifest())

    def get_store_status(self, namespace: str, name: str) -> StoreStatus:
        with kube_errors(f"secretstore/{namespace}/{name}"):
            return parse_store_status(self._get_custom(namespace, STORE_PLURAL, name))

    def get_sync_request(self, namespace: str, name: str) -> SecretSyncRequest | None:
        key = f"externalsecret/{namespace}/{name}"
        with kube_errors(key):
            obj = self._get_custom(namespace, SYNC_PLURAL, name)
        if obj is None:
            return None
        try:
            return SecretSyncRequest.from_manifest(obj)
        except ValueError as e:
            raise ResourceConflict(str(e), resource_key=key) from e

    def list_sync_requests(self, namespace: str) -> list[SecretSyncRequest]:
        """Every single-key ExternalSecret in the namespace.

        ExternalSecrets mapping several keys cannot be compared to a
        descriptor and are skipped.
        """
        with kube_errors(f"externalsecrets/{namespace}"):
            listing = self._custom.list_namespaced_custom_object(
                ES_GROUP, ES_VERSION, namespace, SYNC_PLURAL
            )
        requests: list[SecretSyncRequest] = []
        for obj in listing.get("items", []):
            try:
                requests.append(SecretSyncRequest.from_manifest(obj))
            except ValueError:
                logger.debug(
                    "Skipping multi-key ExternalSecret",
                    extra={"name": obj.get("metadata", {}).get("name")},
                )
        return requests

    def create_sync_request(self, request: SecretSyncRequest) -> None:
        with kube_errors(f"externalsecret/{request.key}"):
            self._custom.create_namespaced_custom_object(
                ES_GROUP, ES_VERSION, request.namespace, SYNC_PLURAL, request.to_manifest()
            )

    def replace_sync_request(self, request: SecretSyncRequest) -> None:
        with kube_errors(f"externalsecret/{request.key}"):
            self._replace_custom(SYNC_PLURAL, request.to_manifest())

    def get_sync_status(self, namespace: str, name: str) -> SyncStatus:
        with kube_errors(f"externalsecret/{namespace}/{name}"):
            return parse_sync_status(self._get_custom(namespace, SYNC_PLURAL, name))

    # -------------------------------------------------------------------------
    # Cluster secrets and consumers
    # -------------------------------------------------------------------------

    def read_secret(self, namespace: str, name: str) -> ClusterSecret | None:
        with kube_errors(f"secret/{namespace}/{name}"):
            secret = _read_or_none(self._core.read_namespaced_secret, name, namespace)
        if secret is None:
            return None
        data = {
            key: base64.b64decode(encoded).decode("utf-8")
            for key, encoded in (secret.data or {}).items()
        }
        return ClusterSecret(
            name=name,
            namespace=namespace,
            data=data,
            labels=dict(secret.metadata.labels or {}),
            annotations=dict(secret.metadata.annotations or {}),
            owner_references=list(secret.metadata.owner_references or []),
        )

    def delete_secret(self, namespace: str, name: str) -> None:
        with kube_errors(f"secret/{namespace}/{name}"):
            _read_or_none(self._core.delete_namespaced_secret, name, namespace)

    def restore_secret(self, secret: ClusterSecret) -> None:
        """Write a snapshot back, replacing whatever the operator left."""
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=secret.name,
                namespace=secret.namespace,
                labels=secret.labels or None,
                annotations=secret.annotations or None,
                owner_references=secret.owner_references or None,
            ),
            data={
                key: base64.b64encode(value.encode("utf-8")).decode("ascii")
                for key, value in secret.data.items()
            },
            type="Opaque",
        )
        with kube_errors(f"secret/{secret.namespace}/{secret.name}"):
            try:
                self._core.create_namespaced_secret(secret.namespace, body)
            except ApiException as e:
                if e.status != 409:
                    raise
                self._core.replace_namespaced_secret(secret.name, secret.namespace, body)

    def restart_workload(self, namespace: str, name: str) -> None:
        """Rolling restart, the same patch `kubectl rollout restart` sends."""
        patch = {
            "spec": {
                "template": {
                    "metadata": {
                        "annotations": {RESTARTED_AT_ANNOTATION: datetime.now(UTC).isoformat()}
                    }
                }
            }
        }
        with kube_errors(f"deployment/{namespace}/{name}"):
            try:
                self._apps.patch_namespaced_deployment(name, namespace, patch)
            except ApiException as e:
                if e.status == 404:
                    raise PreconditionUnmet(
                        f"Consumer deployment {namespace}/{name} not found",
                        resource_key=f"deployment/{namespace}/{name}",
                        suggestion=f"kubectl get deployments -n {namespace}",
                    ) from e
                raise
