"""AWS adapters for the secret store, access policies and IRSA roles.

Wraps boto3 clients for Secrets Manager, IAM, STS and EKS behind the
protocols in backends.py. SDK errors are translated at this boundary:
throttling, 5xx, connection failures and creation races become
TransientUnavailable; access denials become PreconditionUnmet; everything
else propagates unchanged.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any
from urllib.parse import unquote

from boto3.session import Session
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)

from .backends import ObservedPolicy, ObservedRole, SecretRecord
from .errors import PreconditionUnmet, TransientUnavailable
from .models import IdentityBinding, PolicyDescriptor

logger = logging.getLogger(__name__)

# IAM keeps at most five versions per managed policy
MAX_POLICY_VERSIONS = 5

MANAGED_BY_TAG = {"Key": "managed-by", "Value": "secprov"}

TRANSIENT_ERROR_CODES: frozenset[str] = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "InternalFailure",
        "InternalServiceError",
        "InternalServiceErrorException",
        "ServiceFailure",
    }
)

# Another invocation created or changed the resource between lookup and write
RACE_ERROR_CODES: frozenset[str] = frozenset(
    {"ResourceExistsException", "EntityAlreadyExists", "ConcurrentModification"}
)

ACCESS_DENIED_CODES: frozenset[str] = frozenset(
    {"AccessDenied", "AccessDeniedException", "UnauthorizedOperation"}
)


def error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code", ""))


def translate_client_error(e: ClientError, resource_key: str) -> Exception | None:
    """Map a ClientError onto the provisioning error taxonomy.

    Returns:
        The translated error, or None if the error should propagate as-is.
    """
    code = error_code(e)
    status = int(e.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0)

    if code in TRANSIENT_ERROR_CODES or status == 429 or status >= 500:
        return TransientUnavailable(
            f"AWS API unavailable for {resource_key} ({code or status})",
            resource_key=resource_key,
        )
    if code in RACE_ERROR_CODES:
        return TransientUnavailable(
            f"{resource_key} changed concurrently ({code}), re-reading",
            resource_key=resource_key,
        )
    if code in ACCESS_DENIED_CODES:
        return PreconditionUnmet(
            f"Access denied for {resource_key}: {e}",
            resource_key=resource_key,
            suggestion="aws sts get-caller-identity",
        )
    return None


@contextmanager
def aws_errors(resource_key: str) -> Iterator[None]:
    """Translate botocore failures raised inside the block."""
    try:
        yield
    except (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError) as e:
        raise TransientUnavailable(
            f"Cannot reach AWS for {resource_key}: {e}", resource_key=resource_key
        ) from e
    except NoCredentialsError as e:
        raise PreconditionUnmet(
            "AWS credentials are not configured",
            resource_key=resource_key,
            suggestion="aws configure",
        ) from e
    except ClientError as e:
        translated = translate_client_error(e, resource_key)
        if translated is None:
            raise
        raise translated from e


def _load_document(document: Any) -> dict[str, Any]:
    # IAM returns URL-encoded JSON when botocore does not decode it for us
    if isinstance(document, str):
        return json.loads(unquote(document))
    return document


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def parse_policy_document(document: Any) -> tuple[frozenset[str], frozenset[str]]:
    """Reduce a policy document to the actions and resources it allows.

    NotAction/NotResource statements are recorded as "*" since they grant
    everything outside their exclusion list.
    """
    doc = _load_document(document)
    actions: set[str] = set()
    resources: set[str] = set()
    for statement in _as_list(doc.get("Statement")):
        if statement.get("Effect") != "Allow":
            continue
        actions.update(_as_list(statement.get("Action")))
        resources.update(_as_list(statement.get("Resource")))
        if "NotAction" in statement:
            actions.add("*")
        if "NotResource" in statement:
            resources.add("*")
    return frozenset(actions), frozenset(resources)


def parse_trust_document(document: Any) -> tuple[frozenset[str], frozenset[str], bool]:
    """Extract federated subjects and audiences from a role trust policy.

    Returns:
        (subjects, audiences, loose) where loose is True if any Allow
        statement can match more than one exact service account.
    """
    doc = _load_document(document)
    subjects: set[str] = set()
    audiences: set[str] = set()
    loose = False

    for statement in _as_list(doc.get("Statement")):
        if statement.get("Effect") != "Allow":
            continue
        statement_subjects: list[str] = []
        for operator, conditions in (statement.get("Condition") or {}).items():
            for condition_key, values in conditions.items():
                values = [str(v) for v in _as_list(values)]
                if condition_key.endswith(":sub"):
                    statement_subjects.extend(values)
                    if operator != "StringEquals":
                        loose = True
                elif condition_key.endswith(":aud"):
                    audiences.update(values)
        if not statement_subjects:
            loose = True
        if any("*" in s or "?" in s for s in statement_subjects):
            loose = True
        subjects.update(statement_subjects)

    return frozenset(subjects), frozenset(audiences), loose


class _AccountMixin:
    _sts: Any
    _account_id: str | None = None

    @property
    def account_id(self) -> str:
        if self._account_id is None:
            with aws_errors("sts:caller-identity"):
                self._account_id = self._sts.get_caller_identity()["Account"]
        return self._account_id


class AwsSecretStore:
    """Secrets Manager. Values pass through but are never logged."""

    def __init__(self, session: Session, region: str) -> None:
        self._client = session.client("secretsmanager", region_name=region)

    def describe_secret(self, name: str) -> SecretRecord | None:
        with aws_errors(name):
            try:
                response = self._client.describe_secret(SecretId=name)
            except ClientError as e:
                if error_code(e) == "ResourceNotFoundException":
                    return None
                raise
        return SecretRecord(
            name=response["Name"],
            arn=response["ARN"],
            description=response.get("Description", ""),
        )

    def create_secret(self, name: str, value: str, description: str) -> SecretRecord:
        with aws_errors(name):
            response = self._client.create_secret(
                Name=name,
                Description=description,
                SecretString=value,
                Tags=[MANAGED_BY_TAG],
            )
        return SecretRecord(name=response["Name"], arn=response["ARN"], description=description)

    def put_secret_value(self, name: str, value: str) -> None:
        with aws_errors(name):
            self._client.put_secret_value(SecretId=name, SecretString=value)

    def get_secret_value(self, name: str) -> str:
        with aws_errors(name):
            try:
                return self._client.get_secret_value(SecretId=name)["SecretString"]
            except ClientError as e:
                if error_code(e) == "ResourceNotFoundException":
                    raise PreconditionUnmet(
                        f"Secret {name} does not exist", resource_key=name
                    ) from e
                raise


class AwsPolicyStore(_AccountMixin):
    """Customer-managed IAM policies, updated through policy versions."""

    def __init__(self, session: Session) -> None:
        self._iam = session.client("iam")
        self._sts = session.client("sts")

    def policy_arn(self, name: str) -> str:
        return f"arn:aws:iam::{self.account_id}:policy/{name}"

    def get_policy(self, name: str) -> ObservedPolicy | None:
        arn = self.policy_arn(name)
        with aws_errors(name):
            try:
                policy = self._iam.get_policy(PolicyArn=arn)["Policy"]
            except ClientError as e:
                if error_code(e) == "NoSuchEntity":
                    return None
                raise
            version_id = policy["DefaultVersionId"]
            version = self._iam.get_policy_version(PolicyArn=arn, VersionId=version_id)
        actions, resources = parse_policy_document(version["PolicyVersion"]["Document"])
        return ObservedPolicy(
            name=name,
            arn=arn,
            actions=actions,
            resources=resources,
            version_id=version_id,
        )

    def create_policy(self, policy: PolicyDescriptor) -> ObservedPolicy:
        kwargs: dict[str, Any] = {
            "PolicyName": policy.name,
            "PolicyDocument": json.dumps(policy.to_document()),
            "Tags": [MANAGED_BY_TAG],
        }
        if policy.description:
            kwargs["Description"] = policy.description
        with aws_errors(policy.name):
            created = self._iam.create_policy(**kwargs)["Policy"]
        return ObservedPolicy(
            name=policy.name,
            arn=created["Arn"],
            actions=frozenset(policy.actions),
            resources=frozenset({policy.resource_pattern}),
            version_id=created.get("DefaultVersionId", "v1"),
        )

    def update_policy(self, policy: PolicyDescriptor) -> ObservedPolicy:
        """Publish the descriptor as a new default policy version."""
        arn = self.policy_arn(policy.name)
        with aws_errors(policy.name):
            versions = self._iam.list_policy_versions(PolicyArn=arn)["Versions"]
            if len(versions) >= MAX_POLICY_VERSIONS:
                stale = sorted(
                    (v for v in versions if not v["IsDefaultVersion"]),
                    key=lambda v: v["CreateDate"],
                )
                if stale:
                    logger.info(
                        "Pruning oldest policy version",
                        extra={"policy": policy.name, "version_id": stale[0]["VersionId"]},
                    )
                    self._iam.delete_policy_version(PolicyArn=arn, VersionId=stale[0]["VersionId"])
            created = self._iam.create_policy_version(
                PolicyArn=arn,
                PolicyDocument=json.dumps(policy.to_document()),
                SetAsDefault=True,
            )["PolicyVersion"]
        return ObservedPolicy(
            name=policy.name,
            arn=arn,
            actions=frozenset(policy.actions),
            resources=frozenset({policy.resource_pattern}),
            version_id=created["VersionId"],
        )


class AwsIdentityProvider(_AccountMixin):
    """IAM roles trusted by the cluster's OIDC provider (IRSA)."""

    def __init__(self, session: Session, region: str) -> None:
        self._iam = session.client("iam")
        self._sts = session.client("sts")
        self._eks = session.client("eks", region_name=region)
        self._issuer_hosts: dict[str, str] = {}

    def issuer_host(self, cluster_name: str) -> str:
        """OIDC issuer of the cluster without its scheme."""
        if cluster_name not in self._issuer_hosts:
            with aws_errors(cluster_name):
                try:
                    cluster = self._eks.describe_cluster(name=cluster_name)["cluster"]
                except ClientError as e:
                    if error_code(e) == "ResourceNotFoundException":
                        raise PreconditionUnmet(
                            f"EKS cluster {cluster_name} not found",
                            resource_key=cluster_name,
                            suggestion="aws eks list-clusters",
                        ) from e
                    raise
            issuer = cluster.get("identity", {}).get("oidc", {}).get("issuer")
            if not issuer:
                raise PreconditionUnmet(
                    f"EKS cluster {cluster_name} has no OIDC issuer",
                    resource_key=cluster_name,
                    suggestion=(
                        "eksctl utils associate-iam-oidc-provider "
                        f"--cluster {cluster_name} --approve"
                    ),
                )
            self._issuer_hosts[cluster_name] = issuer.removeprefix("https://")
        return self._issuer_hosts[cluster_name]

    def oidc_provider_arn(self, cluster_name: str) -> str:
        return f"arn:aws:iam::{self.account_id}:oidc-provider/{self.issuer_host(cluster_name)}"

    def get_role(self, role_name: str) -> ObservedRole | None:
        with aws_errors(role_name):
            try:
                role = self._iam.get_role(RoleName=role_name)["Role"]
            except ClientError as e:
                if error_code(e) == "NoSuchEntity":
                    return None
                raise
            attached: set[str] = set()
            paginator = self._iam.get_paginator("list_attached_role_policies")
            for page in paginator.paginate(RoleName=role_name):
                attached.update(p["PolicyArn"] for p in page["AttachedPolicies"])
        subjects, audiences, loose = parse_trust_document(role["AssumeRolePolicyDocument"])
        return ObservedRole(
            name=role_name,
            arn=role["Arn"],
            trust_subjects=subjects,
            audiences=audiences,
            attached_policy_arns=frozenset(attached),
            loose_trust=loose,
        )

    def create_role(self, binding: IdentityBinding) -> ObservedRole:
        provider_arn = self.oidc_provider_arn(binding.cluster_name)
        with aws_errors(binding.role_name):
            try:
                self._iam.get_open_id_connect_provider(OpenIDConnectProviderArn=provider_arn)
            except ClientError as e:
                if error_code(e) == "NoSuchEntity":
                    raise PreconditionUnmet(
                        f"IAM OIDC provider for cluster {binding.cluster_name} is not registered",
                        resource_key=provider_arn,
                        suggestion=(
                            "eksctl utils associate-iam-oidc-provider "
                            f"--cluster {binding.cluster_name} --approve"
                        ),
                    ) from e
                raise
            document = binding.trust_document(provider_arn, self.issuer_host(binding.cluster_name))
            role = self._iam.create_role(
                RoleName=binding.role_name,
                AssumeRolePolicyDocument=json.dumps(document),
                Description=f"external-secrets access for {binding.subject}",
                Tags=[MANAGED_BY_TAG],
            )["Role"]
        return ObservedRole(
            name=binding.role_name,
            arn=role["Arn"],
            trust_subjects=frozenset({binding.subject or ""}),
            audiences=frozenset({binding.audience}),
        )

    def attach_policy(self, role_name: str, policy_arn: str) -> None:
        with aws_errors(role_name):
            self._iam.attach_role_policy(RoleName=role_name, PolicyArn=policy_arn)
