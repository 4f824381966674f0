"""Interfaces to the external systems the orchestrator drives.

The orchestrator only talks to these protocols. Production adapters live in
aws.py (Secrets Manager, IAM, STS, EKS via boto3) and kube.py (the official
Kubernetes client); tests substitute in-memory fakes.

All methods are synchronous and may raise TransientUnavailable; callers run
them off the event loop.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from .models import (
    IdentityBinding,
    PolicyDescriptor,
    SecretSyncRequest,
    StoreBinding,
    SyncStatus,
)

if TYPE_CHECKING:
    from .config import Config


@dataclass(frozen=True)
class SecretRecord:
    """Description of an upstream secret. Never carries the value."""

    name: str
    arn: str
    description: str = ""


@dataclass(frozen=True)
class ObservedPolicy:
    """Default version of an IAM policy, reduced to its Allow statements."""

    name: str
    arn: str
    actions: frozenset[str]
    resources: frozenset[str]
    version_id: str = "v1"


@dataclass(frozen=True)
class ObservedRole:
    """IAM role with its federated trust conditions and attached policies."""

    name: str
    arn: str
    trust_subjects: frozenset[str]
    audiences: frozenset[str]
    attached_policy_arns: frozenset[str] = frozenset()

    # StringLike conditions or wildcards anywhere in the trust policy
    loose_trust: bool = False


@dataclass(frozen=True)
class ObservedServiceAccount:
    name: str
    namespace: str
    role_arn: str | None = None


@dataclass(frozen=True)
class StoreStatus:
    ready: bool
    reason: str | None = None

    def __str__(self) -> str:
        state = "Ready" if self.ready else "NotReady"
        return f"{state}({self.reason})" if self.reason else state


@dataclass(frozen=True)
class ClusterSecret:
    """Snapshot of a cluster secret, enough to restore it unchanged.

    Decoded data is kept out of repr so a snapshot can be logged safely.
    """

    name: str
    namespace: str
    data: dict[str, str] = field(repr=False)
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    owner_references: list[Any] = field(default_factory=list)


class SecretStore(Protocol):
    def describe_secret(self, name: str) -> SecretRecord | None: ...

    def create_secret(self, name: str, value: str, description: str) -> SecretRecord: ...

    def put_secret_value(self, name: str, value: str) -> None: ...

    def get_secret_value(self, name: str) -> str: ...


class PolicyStore(Protocol):
    def get_policy(self, name: str) -> ObservedPolicy | None: ...

    def create_policy(self, policy: PolicyDescriptor) -> ObservedPolicy: ...

    def update_policy(self, policy: PolicyDescriptor) -> ObservedPolicy: ...


class IdentityProvider(Protocol):
    def get_role(self, role_name: str) -> ObservedRole | None: ...

    def create_role(self, binding: IdentityBinding) -> ObservedRole: ...

    def attach_policy(self, role_name: str, policy_arn: str) -> None: ...


class ClusterApi(Protocol):
    def get_service_account(self, namespace: str, name: str) -> ObservedServiceAccount | None: ...

    def apply_service_account(self, namespace: str, name: str, role_arn: str) -> None: ...

    def missing_crds(self, names: Sequence[str]) -> list[str]: ...

    def get_store_binding(self, namespace: str, name: str) -> StoreBinding | None: ...

    def create_store_binding(self, store: StoreBinding) -> None: ...

    def replace_store_binding(self, store: StoreBinding) -> None: ...

    def get_store_status(self, namespace: str, name: str) -> StoreStatus: ...

    def get_sync_request(self, namespace: str, name: str) -> SecretSyncRequest | None: ...

    def list_sync_requests(self, namespace: str) -> list[SecretSyncRequest]: ...

    def create_sync_request(self, request: SecretSyncRequest) -> None: ...

    def replace_sync_request(self, request: SecretSyncRequest) -> None: ...

    def get_sync_status(self, namespace: str, name: str) -> SyncStatus: ...

    def read_secret(self, namespace: str, name: str) -> ClusterSecret | None: ...

    def delete_secret(self, namespace: str, name: str) -> None: ...

    def restore_secret(self, secret: ClusterSecret) -> None: ...

    def restart_workload(self, namespace: str, name: str) -> None: ...


@dataclass
class Backends:
    """Every external system one invocation talks to."""

    secrets: SecretStore
    policies: PolicyStore
    identities: IdentityProvider
    cluster: ClusterApi


def build_backends(config: Config) -> Backends:
    """Build production adapters for the configured region and cluster."""
    import boto3

    from .aws import AwsIdentityProvider, AwsPolicyStore, AwsSecretStore
    from .kube import KubeCluster

    session = boto3.session.Session(region_name=config.region)
    return Backends(
        secrets=AwsSecretStore(session, config.region),
        policies=AwsPolicyStore(session),
        identities=AwsIdentityProvider(session, config.region),
        cluster=KubeCluster.from_kubeconfig(),
    )
