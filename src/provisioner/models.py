"""Pydantic models for the resource descriptor set.

These models provide:
1. Type-safe YAML parsing
2. Validation of the chain's security invariants at the boundary
3. Rendering to IAM documents and external-secrets manifests, and parsing
   observed manifests back for drift comparison
"""

from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Annotated, Any, Literal

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

from .security import (
    SECRET_ARN_PATTERN,
    check_actions,
    check_policy_scope,
    check_trust_subject,
    expected_subject,
)

if TYPE_CHECKING:
    from .config import Config

EXTERNAL_SECRETS_API_VERSION = "external-secrets.io/v1beta1"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "secprov"

DEFAULT_AUDIENCE = "sts.amazonaws.com"
DEFAULT_POLICY_ACTIONS = ("secretsmanager:GetSecretValue", "secretsmanager:DescribeSecret")

# =============================================================================
# State Machine
# =============================================================================


class ProvisioningState(str, Enum):
    """States of the provisioning chain, in dependency order."""

    UNPROVISIONED = "Unprovisioned"
    POLICY_READY = "PolicyReady"
    IDENTITY_BOUND = "IdentityBound"
    STORE_READY = "StoreReady"
    SYNC_REQUESTED = "SyncRequested"
    SECRET_SYNCED = "SecretSynced"
    VERIFIED = "Verified"

    @property
    def rank(self) -> int:
        return PROVISIONING_ORDER.index(self)

    def at_least(self, other: ProvisioningState) -> bool:
        return self.rank >= other.rank


PROVISIONING_ORDER: tuple[ProvisioningState, ...] = tuple(ProvisioningState)


class ReconcileAction(str, Enum):
    """What a reconcile call did."""

    CREATED = "Created"
    ALREADY_PRESENT = "AlreadyPresent"
    UPDATED = "Updated"


class SyncPhase(str, Enum):
    """Observed phase of a secret sync request."""

    PENDING = "Pending"
    SYNCED = "Synced"
    ERROR = "Error"


@dataclass(frozen=True)
class SyncStatus:
    """Observed state of a SecretSyncRequest, owned by the sync operator."""

    phase: SyncPhase
    reason: str | None = None

    @classmethod
    def pending(cls, reason: str | None = None) -> SyncStatus:
        return cls(SyncPhase.PENDING, reason)

    @classmethod
    def synced(cls) -> SyncStatus:
        return cls(SyncPhase.SYNCED)

    @classmethod
    def error(cls, reason: str) -> SyncStatus:
        return cls(SyncPhase.ERROR, reason)

    def __str__(self) -> str:
        if self.reason:
            return f"{self.phase.value}({self.reason})"
        return self.phase.value


# =============================================================================
# Durations
# =============================================================================

_DURATION_PART = re.compile(r"(\d+)(h|m|s)")
_DURATION_UNITS = {"h": 3600, "m": 60, "s": 1}


def parse_duration(value: str | int) -> int:
    """Parse a Go-style duration ("1h", "15m", "3600s", "1h30m") into seconds."""
    if isinstance(value, int):
        return value
    text = value.strip()
    if text.isdigit():
        return int(text)
    parts = _DURATION_PART.findall(text)
    if not parts or "".join(n + u for n, u in parts) != text:
        raise ValueError(f"Invalid duration: {value!r}")
    return sum(int(n) * _DURATION_UNITS[u] for n, u in parts)


def format_duration(seconds: int) -> str:
    return f"{seconds}s"


# =============================================================================
# Descriptors
# =============================================================================


class SecretDescriptor(BaseModel):
    """Upstream secret in the cloud secret store.

    The value is opaque: it is excluded from dumps and masked in repr.
    """

    model_config = {"extra": "forbid", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=512)]
    region: str
    cluster_name: str = Field(alias="clusterName")
    description: str = ""
    value: SecretStr | None = Field(default=None, exclude=True, repr=False)

    @property
    def app_name(self) -> str:
        return self.name.split("/", 1)[0]

    def with_value(self, value: str) -> SecretDescriptor:
        return self.model_copy(update={"value": SecretStr(value)})


class PolicyDescriptor(BaseModel):
    """Read-only access policy for the sync identity.

    Policies are never widened in place: an action-set change becomes a new
    policy version, a resource-scope change is a conflict.
    """

    model_config = {"extra": "forbid", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=128)]
    actions: list[str] = Field(default_factory=lambda: list(DEFAULT_POLICY_ACTIONS))
    resource_pattern: str = Field(alias="resourcePattern")
    effect: Literal["Allow"] = "Allow"
    description: str = ""

    @field_validator("actions")
    @classmethod
    def validate_actions(cls, v: list[str]) -> list[str]:
        check_actions(v)
        return sorted(set(v))

    @field_validator("resource_pattern")
    @classmethod
    def validate_resource_pattern(cls, v: str) -> str:
        if not SECRET_ARN_PATTERN.match(v):
            raise ValueError(f"resourcePattern must be a Secrets Manager ARN pattern: {v}")
        return v

    def to_document(self) -> dict[str, Any]:
        return {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": self.effect,
                    "Action": list(self.actions),
                    "Resource": self.resource_pattern,
                }
            ],
        }


class IdentityBinding(BaseModel):
    """Kubernetes service account federated to an IAM role (IRSA)."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    role_name: Annotated[str, Field(min_length=1, max_length=64, alias="roleName")]
    namespace: str
    service_account: str = Field(alias="serviceAccount")
    cluster_name: str = Field(alias="clusterName")
    policy_name: str = Field(alias="policyName")
    audience: str = DEFAULT_AUDIENCE
    subject: str | None = None

    @model_validator(mode="after")
    def validate_subject(self) -> IdentityBinding:
        # SECURITY: a looser subject would let other workloads assume the role
        if self.subject is None:
            self.subject = expected_subject(self.namespace, self.service_account)
        else:
            check_trust_subject(self.subject, self.namespace, self.service_account)
        return self

    @property
    def key(self) -> str:
        return f"{self.role_name} <- {self.subject}"

    def trust_document(self, oidc_provider_arn: str, issuer_host: str) -> dict[str, Any]:
        return {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"Federated": oidc_provider_arn},
                    "Action": "sts:AssumeRoleWithWebIdentity",
                    "Condition": {
                        "StringEquals": {
                            f"{issuer_host}:aud": self.audience,
                            f"{issuer_host}:sub": self.subject,
                        }
                    },
                }
            ],
        }


class StoreBinding(BaseModel):
    """Namespaced SecretStore backed by AWS, authenticated via the identity binding."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    name: str
    namespace: str
    region: str
    service: Literal["SecretsManager", "ParameterStore"] = "SecretsManager"
    service_account: str = Field(alias="serviceAccount")

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def to_manifest(self) -> dict[str, Any]:
        return {
            "apiVersion": EXTERNAL_SECRETS_API_VERSION,
            "kind": "SecretStore",
            "metadata": {
                "name": self.name,
                "namespace": self.namespace,
                "labels": {MANAGED_BY_LABEL: MANAGED_BY_VALUE},
            },
            "spec": {
                "provider": {
                    "aws": {
                        "service": self.service,
                        "region": self.region,
                        "auth": {"jwt": {"serviceAccountRef": {"name": self.service_account}}},
                    }
                }
            },
        }

    @classmethod
    def from_manifest(cls, obj: dict[str, Any]) -> StoreBinding:
        """Parse an observed SecretStore.

        Raises:
            ValueError: If the store is not an AWS provider with JWT auth.
        """
        metadata = obj.get("metadata", {})
        aws = obj.get("spec", {}).get("provider", {}).get("aws")
        if not aws:
            raise ValueError(f"SecretStore {metadata.get('name')} is not backed by AWS")
        account_ref = aws.get("auth", {}).get("jwt", {}).get("serviceAccountRef", {})
        if not account_ref.get("name"):
            raise ValueError(f"SecretStore {metadata.get('name')} does not use JWT auth")
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            region=aws.get("region", ""),
            service=aws.get("service", "SecretsManager"),
            service_account=account_ref["name"],
        )


class SecretSyncRequest(BaseModel):
    """ExternalSecret mapping one upstream secret to one cluster secret key."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    name: str
    namespace: str
    store_name: str = Field(alias="storeName")
    source_key: str = Field(alias="sourceKey")
    target_secret_name: str = Field(alias="targetSecretName")
    target_key: str = Field(alias="targetKey")
    refresh_interval_seconds: Annotated[
        int, Field(ge=60, le=86400, alias="refreshIntervalSeconds")
    ] = 3600

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def mapping(self) -> tuple[str, str, str, str]:
        """Upstream-to-cluster mapping; any difference here is a conflict."""
        return (self.store_name, self.source_key, self.target_secret_name, self.target_key)

    def to_manifest(self) -> dict[str, Any]:
        return {
            "apiVersion": EXTERNAL_SECRETS_API_VERSION,
            "kind": "ExternalSecret",
            "metadata": {
                "name": self.name,
                "namespace": self.namespace,
                "labels": {MANAGED_BY_LABEL: MANAGED_BY_VALUE},
            },
            "spec": {
                "refreshInterval": format_duration(self.refresh_interval_seconds),
                "secretStoreRef": {"name": self.store_name, "kind": "SecretStore"},
                "target": {"name": self.target_secret_name, "creationPolicy": "Owner"},
                "data": [
                    {
                        "secretKey": self.target_key,
                        "remoteRef": {"key": self.source_key},
                    }
                ],
            },
        }

    @classmethod
    def from_manifest(cls, obj: dict[str, Any]) -> SecretSyncRequest:
        """Parse an observed ExternalSecret.

        Raises:
            ValueError: If the ExternalSecret maps anything other than one key.
        """
        metadata = obj.get("metadata", {})
        spec = obj.get("spec", {})
        data = spec.get("data") or []
        if len(data) != 1 or spec.get("dataFrom"):
            raise ValueError(
                f"ExternalSecret {metadata.get('name')} does not map exactly one key"
            )
        entry = data[0]
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            store_name=spec.get("secretStoreRef", {}).get("name", ""),
            source_key=entry.get("remoteRef", {}).get("key", ""),
            # ExternalSecret defaults the target name to its own name
            target_secret_name=spec.get("target", {}).get("name") or metadata.get("name", ""),
            target_key=entry.get("secretKey", ""),
            refresh_interval_seconds=parse_duration(spec.get("refreshInterval", "1h")),
        )


class ConsumerWorkload(BaseModel):
    """Workload that reads the synced secret at process start."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    name: str
    namespace: str
    kind: Literal["Deployment"] = "Deployment"


# =============================================================================
# Descriptor Set
# =============================================================================


class DescriptorSet(BaseModel):
    """Declarative target state of the whole credential-delivery chain."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    app_name: str = Field(alias="appName")
    secret: SecretDescriptor
    policy: PolicyDescriptor
    identity: IdentityBinding
    store: StoreBinding
    sync: SecretSyncRequest
    consumer: ConsumerWorkload | None = None

    @model_validator(mode="after")
    def validate_chain(self) -> DescriptorSet:
        errors: list[str] = []

        if self.secret.app_name != self.app_name:
            errors.append(
                f"secret {self.secret.name!r} is outside the '{self.app_name}/' namespace"
            )

        try:
            check_policy_scope(self.policy.resource_pattern, self.app_name, self.secret.region)
        except ValueError as e:
            errors.append(str(e))
        else:
            if not _pattern_covers(self.policy.resource_pattern, self.secret):
                errors.append(
                    f"policy {self.policy.name!r} does not cover secret {self.secret.name!r}"
                )

        if self.identity.policy_name != self.policy.name:
            errors.append("identity.policyName must reference the policy descriptor")
        if self.store.service_account != self.identity.service_account:
            errors.append("store.serviceAccount must be the identity binding's service account")
        if self.store.namespace != self.identity.namespace:
            errors.append("store and identity binding must share a namespace")
        if self.store.region != self.secret.region:
            errors.append("store.region must match the secret's region")
        if self.sync.store_name != self.store.name:
            errors.append("sync.storeName must reference the store binding")
        if self.sync.source_key != self.secret.name:
            errors.append("sync.sourceKey must be the secret descriptor's name")
        if self.sync.namespace != self.store.namespace:
            errors.append("sync request and store binding must share a namespace")
        if self.consumer is not None and self.consumer.namespace != self.sync.namespace:
            errors.append("consumer must run in the sync request's namespace")

        if errors:
            raise ValueError("; ".join(errors))
        return self

    @classmethod
    def from_config(cls, config: Config) -> DescriptorSet:
        """Derive the default chain from configuration."""
        consumer = (
            ConsumerWorkload(name=config.consumer_deployment, namespace=config.namespace)
            if config.consumer_deployment
            else None
        )
        return cls(
            app_name=config.app_name,
            secret=SecretDescriptor(
                name=config.secret_name,
                region=config.region,
                cluster_name=config.cluster_name,
                description=f"Database URL for {config.app_name}",
            ),
            policy=PolicyDescriptor(
                name=config.policy_name,
                resource_pattern=(
                    f"arn:aws:secretsmanager:{config.region}:*:secret:{config.secret_name}*"
                ),
                description=f"Read access to {config.secret_name} for external-secrets",
            ),
            identity=IdentityBinding(
                role_name=config.role_name,
                namespace=config.namespace,
                service_account=config.service_account_name,
                cluster_name=config.cluster_name,
                policy_name=config.policy_name,
            ),
            store=StoreBinding(
                name=config.store_name,
                namespace=config.namespace,
                region=config.region,
                service_account=config.service_account_name,
            ),
            sync=SecretSyncRequest(
                name=config.sync_request_name,
                namespace=config.namespace,
                store_name=config.store_name,
                source_key=config.secret_name,
                target_secret_name=config.target_secret_name,
                target_key=config.target_key,
                refresh_interval_seconds=config.refresh_interval_seconds,
            ),
            consumer=consumer,
        )


def _pattern_covers(pattern: str, secret: SecretDescriptor) -> bool:
    """Check that a policy pattern matches the secret's real ARN shape."""
    match = SECRET_ARN_PATTERN.match(pattern)
    if match is None:
        return False
    account = match.group("account")
    if account == "*":
        account = "000000000000"
    # Secrets Manager appends "-" plus six random characters to the name
    sample = f"arn:aws:secretsmanager:{secret.region}:{account}:secret:{secret.name}-AbCdEf"
    return fnmatch.fnmatchcase(sample, pattern) or fnmatch.fnmatchcase(sample[:-7], pattern)
