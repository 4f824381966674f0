"""Security invariants for the credential-delivery chain.

SECURITY INVARIANTS:
1. Secret values are never logged; only SHA-256 digests leave this process
2. Access policies never reach past the application's secret namespace
3. Federated trust names exactly one namespace/service-account subject
4. Digest comparison is constant-time
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re

logger = logging.getLogger(__name__)

REDACTED = "***"

SERVICE_ACCOUNT_SUBJECT_PREFIX = "system:serviceaccount"

# arn:aws:secretsmanager:<region>:<account|*>:secret:<name>[*]
SECRET_ARN_PATTERN = re.compile(
    r"^arn:aws:secretsmanager:(?P<region>[a-z0-9-]+):(?P<account>\d{12}|\*):secret:(?P<name>.+)$"
)

# Actions that would turn a read-only sync identity into a writer/admin
FORBIDDEN_ACTIONS: frozenset[str] = frozenset(
    {
        "*",
        "secretsmanager:*",
        "secretsmanager:DeleteSecret",
        "secretsmanager:PutResourcePolicy",
        "secretsmanager:PutSecretValue",
        "secretsmanager:UpdateSecret",
    }
)


def value_digest(value: str) -> str:
    """Return the SHA-256 hex digest of a secret value."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def digests_match(left: str | None, right: str | None) -> bool:
    """Compare two digests in constant time. None never matches."""
    if left is None or right is None:
        return False
    return hmac.compare_digest(left, right)


def redact(text: str, *values: str | None) -> str:
    """Mask every occurrence of the given secret values in text."""
    for value in values:
        if value:
            text = text.replace(value, REDACTED)
    return text


def expected_subject(namespace: str, service_account: str) -> str:
    """Federated subject for a Kubernetes service account."""
    return f"{SERVICE_ACCOUNT_SUBJECT_PREFIX}:{namespace}:{service_account}"


def check_trust_subject(subject: str, namespace: str, service_account: str) -> None:
    """Validate that a trust subject names exactly one service account.

    Raises:
        ValueError: If the subject is looser than, or different from, the
            binding's namespace/account pair.
    """
    if "*" in subject or "?" in subject:
        raise ValueError(f"Trust subject must not contain wildcards: {subject}")
    wanted = expected_subject(namespace, service_account)
    if subject != wanted:
        raise ValueError(f"Trust subject {subject!r} does not match {wanted!r}")


def check_policy_scope(resource_pattern: str, app_name: str, region: str | None = None) -> None:
    """Validate that a Secrets Manager resource pattern stays inside the app namespace.

    A trailing '*' is allowed (Secrets Manager appends a random suffix to
    every ARN, and a name prefix may cover several of the app's secrets).
    Any other wildcard position could match outside the namespace.

    Raises:
        ValueError: If the pattern could grant access beyond '<app_name>/'.
    """
    match = SECRET_ARN_PATTERN.match(resource_pattern)
    if match is None:
        raise ValueError(f"Not a Secrets Manager secret ARN pattern: {resource_pattern}")

    if region is not None and match.group("region") != region:
        raise ValueError(
            f"Resource pattern region {match.group('region')!r} does not match {region!r}"
        )

    name = match.group("name")
    body = name[:-1] if name.endswith("*") else name
    if "*" in body or "?" in body:
        raise ValueError(f"Wildcards are only allowed as a trailing suffix: {resource_pattern}")

    prefix = f"{app_name}/"
    if not body.startswith(prefix):
        raise ValueError(
            f"Resource pattern {resource_pattern!r} reaches outside the '{prefix}' namespace"
        )


def check_actions(actions: list[str]) -> None:
    """Reject empty or over-broad action lists.

    Raises:
        ValueError: If no actions are given or any action is forbidden.
    """
    if not actions:
        raise ValueError("At least one action is required")
    broad = sorted(set(actions) & FORBIDDEN_ACTIONS)
    if broad:
        raise ValueError(f"Actions too broad for a sync identity: {broad}")


def log_security_audit_event(
    event_type: str,
    resource_kind: str,
    resource_key: str,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event.

    All security events are logged with structured data for SIEM ingestion.

    Args:
        event_type: Type of security event (reconcile, rotation, restart, ...)
        resource_kind: Kind of resource touched (policy, identity, ...)
        resource_key: Stable identity key of the resource.
        action: Action performed (Created, Updated, AlreadyPresent, ...)
        result: Result of the action (success, conflict, failure).
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "resource_kind": resource_kind,
            "resource_key": resource_key,
            "action": action,
            "result": result,
        },
    )
