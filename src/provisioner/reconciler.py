"""Idempotent reconciliation of each resource kind in the chain.

Every kind follows the same shape:
1. Look up the resource by its stable key
2. Plan: a pure function comparing observed to desired state, returning
   Created / Updated / AlreadyPresent or raising ResourceConflict
3. Execute the planned call
4. Log the action and emit a security audit event (never the value)

The lookup-plan-execute cycle is retried as a whole on TransientUnavailable,
so a creation race ("already exists") resolves by re-reading the winner's
resource on the next attempt.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from .backends import (
    Backends,
    ObservedPolicy,
    ObservedRole,
    ObservedServiceAccount,
    SecretRecord,
)
from .config import BackoffConfig
from .errors import PreconditionUnmet, ResourceConflict, TransientUnavailable
from .kube import REQUIRED_CRDS
from .models import (
    IdentityBinding,
    PolicyDescriptor,
    ReconcileAction,
    SecretDescriptor,
    SecretSyncRequest,
    StoreBinding,
)
from .security import log_security_audit_event
from .verifier import BackoffPolicy, cancellable_sleep

logger = logging.getLogger(__name__)

T = TypeVar("T")

ValueSource = Callable[[], str | None]

OPERATOR_INSTALL_HINT = (
    "helm repo add external-secrets https://charts.external-secrets.io && "
    "helm upgrade --install external-secrets external-secrets/external-secrets "
    "-n external-secrets --create-namespace --set installCRDs=true"
)


async def run_blocking(fn: Callable[..., T], *args: Any) -> T:
    """Run a synchronous SDK call in the default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(fn, *args))


@dataclass(frozen=True)
class ReconcileOutcome:
    """Result of reconciling one resource."""

    kind: str
    key: str
    action: ReconcileAction
    detail: str = ""

    # Cloud identifier of the resource, when it has one
    arn: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind, "key": self.key, "action": self.action.value}
        if self.detail:
            data["detail"] = self.detail
        return data


# =============================================================================
# Plans
# =============================================================================


def plan_secret(observed: SecretRecord | None) -> ReconcileAction:
    """Secrets are created once; their value only changes through rotation."""
    if observed is None:
        return ReconcileAction.CREATED
    return ReconcileAction.ALREADY_PRESENT


def plan_policy(desired: PolicyDescriptor, observed: ObservedPolicy | None) -> ReconcileAction:
    """Plan an access policy.

    A changed action set is published as a new policy version. A changed
    resource scope belongs to a different descriptor and is a conflict:
    widening or repointing scope in place is never automatic.
    """
    if observed is None:
        return ReconcileAction.CREATED
    if observed.resources != frozenset({desired.resource_pattern}):
        raise ResourceConflict(
            f"Policy {desired.name} grants {sorted(observed.resources)}, "
            f"expected {desired.resource_pattern}",
            resource_key=desired.name,
            suggestion=f"aws iam get-policy-version --policy-arn {observed.arn} "
            f"--version-id {observed.version_id}",
        )
    if observed.actions != frozenset(desired.actions):
        return ReconcileAction.UPDATED
    return ReconcileAction.ALREADY_PRESENT


def plan_role(
    desired: IdentityBinding, observed: ObservedRole | None, policy_arn: str
) -> ReconcileAction:
    """Plan the federated role. Trust is never rewritten, only checked."""
    if observed is None:
        return ReconcileAction.CREATED
    suggestion = f"aws iam get-role --role-name {desired.role_name}"
    # SECURITY: anything but the exact subject lets other workloads assume the role
    if observed.loose_trust or observed.trust_subjects != frozenset({desired.subject}):
        raise ResourceConflict(
            f"Role {desired.role_name} trusts {sorted(observed.trust_subjects)}, "
            f"expected exactly {desired.subject}",
            resource_key=desired.key,
            suggestion=suggestion,
        )
    if desired.audience not in observed.audiences:
        raise ResourceConflict(
            f"Role {desired.role_name} does not trust audience {desired.audience}",
            resource_key=desired.key,
            suggestion=suggestion,
        )
    if policy_arn not in observed.attached_policy_arns:
        return ReconcileAction.UPDATED
    return ReconcileAction.ALREADY_PRESENT


def plan_service_account(
    desired: IdentityBinding, observed: ObservedServiceAccount | None, role_arn: str
) -> ReconcileAction:
    if observed is None:
        return ReconcileAction.CREATED
    if observed.role_arn is None:
        return ReconcileAction.UPDATED
    if observed.role_arn != role_arn:
        raise ResourceConflict(
            f"Service account {desired.namespace}/{desired.service_account} "
            f"is bound to {observed.role_arn}",
            resource_key=f"{desired.namespace}/{desired.service_account}",
            suggestion=(
                f"kubectl get serviceaccount {desired.service_account} "
                f"-n {desired.namespace} -o yaml"
            ),
        )
    return ReconcileAction.ALREADY_PRESENT


def plan_store(desired: StoreBinding, observed: StoreBinding | None) -> ReconcileAction:
    """Plan the store binding.

    Rebinding a store to another service account would switch the identity
    of every sync request using it, so that is a conflict; provider
    settings converge in place.
    """
    if observed is None:
        return ReconcileAction.CREATED
    if observed.service_account != desired.service_account:
        raise ResourceConflict(
            f"SecretStore {desired.key} authenticates as {observed.service_account}, "
            f"expected {desired.service_account}",
            resource_key=desired.key,
            suggestion=f"kubectl get secretstore {desired.name} -n {desired.namespace} -o yaml",
        )
    if observed != desired:
        return ReconcileAction.UPDATED
    return ReconcileAction.ALREADY_PRESENT


def plan_sync_request(
    desired: SecretSyncRequest, existing: list[SecretSyncRequest]
) -> ReconcileAction:
    """Plan the sync request against every request in its namespace.

    A request with the same name or the same target secret but a different
    mapping is a conflict: silently repointing a cluster secret at another
    upstream value is never safe. Only the refresh interval converges.
    """
    observed: SecretSyncRequest | None = None
    for request in existing:
        same_target = request.target_secret_name == desired.target_secret_name
        if request.name != desired.name and not same_target:
            continue
        if request.mapping != desired.mapping:
            raise ResourceConflict(
                f"ExternalSecret {request.key} maps {request.source_key} -> "
                f"{request.target_secret_name}[{request.target_key}], expected "
                f"{desired.source_key} -> {desired.target_secret_name}[{desired.target_key}]",
                resource_key=desired.key,
                suggestion=(
                    f"kubectl get externalsecret {request.name} -n {request.namespace} -o yaml"
                ),
            )
        if request.name != desired.name:
            raise ResourceConflict(
                f"Cluster secret {desired.target_secret_name} is already owned by "
                f"ExternalSecret {request.key}",
                resource_key=desired.key,
                suggestion=f"kubectl get externalsecrets -n {desired.namespace}",
            )
        observed = request

    if observed is None:
        return ReconcileAction.CREATED
    if observed.refresh_interval_seconds != desired.refresh_interval_seconds:
        return ReconcileAction.UPDATED
    return ReconcileAction.ALREADY_PRESENT


# =============================================================================
# Reconciler
# =============================================================================


class ResourceReconciler:
    """Executes plans against the backends, retrying transient failures."""

    def __init__(
        self,
        backends: Backends,
        backoff: BackoffConfig,
        cancel_event: asyncio.Event | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._backends = backends
        self._retries = backoff.transient_retries
        self._backoff = BackoffPolicy.from_config(backoff)
        self._cancel_event = cancel_event
        self._rng = rng

    async def with_retry(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run operation, retrying TransientUnavailable with backoff.

        Raises:
            TransientUnavailable: If every attempt fails transiently.
        """
        last_error: TransientUnavailable | None = None

        for attempt in range(1, self._retries + 1):
            try:
                return await operation()
            except TransientUnavailable as e:
                last_error = e

                if attempt < self._retries:
                    wait_time = self._backoff.delay(attempt, self._rng)
                    logger.warning(
                        "Transient failure, retrying",
                        extra={
                            "resource_key": key,
                            "attempt": attempt,
                            "max_attempts": self._retries,
                            "wait_seconds": round(wait_time, 3),
                            "error": str(e),
                        },
                    )
                    await cancellable_sleep(wait_time, self._cancel_event)

        # SAFETY: transient_retries >= 1 is validated by Config
        assert last_error is not None, "Retry loop completed without setting last_error"
        raise last_error

    def _record(self, outcome: ReconcileOutcome) -> ReconcileOutcome:
        logger.info(
            "Reconciled resource",
            extra={
                "resource_kind": outcome.kind,
                "resource_key": outcome.key,
                "action": outcome.action.value,
                "detail": outcome.detail,
            },
        )
        log_security_audit_event(
            "reconcile", outcome.kind, outcome.key, action=outcome.action.value, result="success"
        )
        return outcome

    async def _planned(
        self, kind: str, key: str, attempt: Callable[[], Awaitable[ReconcileOutcome]]
    ) -> ReconcileOutcome:
        try:
            outcome = await self.with_retry(key, attempt)
        except ResourceConflict:
            log_security_audit_event("reconcile", kind, key, result="conflict")
            raise
        return self._record(outcome)

    # -------------------------------------------------------------------------
    # Kinds
    # -------------------------------------------------------------------------

    async def reconcile_secret(
        self, secret: SecretDescriptor, value_source: ValueSource | None = None
    ) -> ReconcileOutcome:
        """Ensure the upstream secret exists. An existing value is never touched.

        Args:
            value_source: Called at most once, only when the secret must be created.

        Raises:
            PreconditionUnmet: If the secret is absent and no value is available.
        """
        store = self._backends.secrets
        value = secret.value.get_secret_value() if secret.value is not None else None
        source = value_source

        async def attempt() -> ReconcileOutcome:
            nonlocal value, source
            observed = await run_blocking(store.describe_secret, secret.name)
            action = plan_secret(observed)
            if action is ReconcileAction.ALREADY_PRESENT:
                assert observed is not None
                return ReconcileOutcome("secret", secret.name, action, arn=observed.arn)

            # The source may be a one-shot stream; retries reuse what it returned
            if value is None and source is not None:
                value, source = source(), None
            if not value:
                raise PreconditionUnmet(
                    f"Secret {secret.name} does not exist and no value was supplied",
                    resource_key=secret.name,
                    suggestion="secprov provision --value-stdin < value.txt",
                )
            created = await run_blocking(
                store.create_secret, secret.name, value, secret.description
            )
            return ReconcileOutcome("secret", secret.name, action, arn=created.arn)

        return await self._planned("secret", secret.name, attempt)

    async def reconcile_policy(self, policy: PolicyDescriptor) -> ReconcileOutcome:
        policies = self._backends.policies

        async def attempt() -> ReconcileOutcome:
            observed = await run_blocking(policies.get_policy, policy.name)
            action = plan_policy(policy, observed)
            if action is ReconcileAction.CREATED:
                observed = await run_blocking(policies.create_policy, policy)
                detail = ""
            elif action is ReconcileAction.UPDATED:
                observed = await run_blocking(policies.update_policy, policy)
                detail = f"published version {observed.version_id}"
            else:
                detail = ""
            assert observed is not None
            return ReconcileOutcome("policy", policy.name, action, detail, arn=observed.arn)

        return await self._planned("policy", policy.name, attempt)

    async def reconcile_identity(
        self, binding: IdentityBinding, policy_arn: str
    ) -> ReconcileOutcome:
        """Ensure the role, its policy attachment and the annotated service account."""
        identities = self._backends.identities
        cluster = self._backends.cluster

        async def attempt() -> ReconcileOutcome:
            steps: list[str] = []
            role = await run_blocking(identities.get_role, binding.role_name)
            role_action = plan_role(binding, role, policy_arn)
            if role_action is ReconcileAction.CREATED:
                role = await run_blocking(identities.create_role, binding)
                steps.append("role created")
            assert role is not None
            if policy_arn not in role.attached_policy_arns:
                await run_blocking(identities.attach_policy, binding.role_name, policy_arn)
                steps.append("policy attached")

            account = await run_blocking(
                cluster.get_service_account, binding.namespace, binding.service_account
            )
            account_action = plan_service_account(binding, account, role.arn)
            if account_action is not ReconcileAction.ALREADY_PRESENT:
                await run_blocking(
                    cluster.apply_service_account,
                    binding.namespace,
                    binding.service_account,
                    role.arn,
                )
                steps.append("service account annotated")

            if role_action is ReconcileAction.CREATED:
                action = ReconcileAction.CREATED
            elif steps:
                action = ReconcileAction.UPDATED
            else:
                action = ReconcileAction.ALREADY_PRESENT
            return ReconcileOutcome(
                "identity", binding.key, action, ", ".join(steps), arn=role.arn
            )

        return await self._planned("identity", binding.key, attempt)

    async def reconcile_store(self, store: StoreBinding) -> ReconcileOutcome:
        """Ensure the store binding.

        Raises:
            PreconditionUnmet: If the external-secrets CRDs are not installed.
        """
        cluster = self._backends.cluster

        async def attempt() -> ReconcileOutcome:
            missing = await run_blocking(cluster.missing_crds, REQUIRED_CRDS)
            if missing:
                raise PreconditionUnmet(
                    f"external-secrets is not installed (missing CRDs: {', '.join(missing)})",
                    resource_key=store.key,
                    suggestion=OPERATOR_INSTALL_HINT,
                )
            observed = await run_blocking(cluster.get_store_binding, store.namespace, store.name)
            action = plan_store(store, observed)
            if action is ReconcileAction.CREATED:
                await run_blocking(cluster.create_store_binding, store)
            elif action is ReconcileAction.UPDATED:
                await run_blocking(cluster.replace_store_binding, store)
            return ReconcileOutcome("store", store.key, action)

        return await self._planned("store", store.key, attempt)

    async def reconcile_sync_request(self, request: SecretSyncRequest) -> ReconcileOutcome:
        cluster = self._backends.cluster

        async def attempt() -> ReconcileOutcome:
            existing = await run_blocking(cluster.list_sync_requests, request.namespace)
            action = plan_sync_request(request, existing)
            if action is ReconcileAction.CREATED:
                await run_blocking(cluster.create_sync_request, request)
            elif action is ReconcileAction.UPDATED:
                await run_blocking(cluster.replace_sync_request, request)
            return ReconcileOutcome(
                "sync",
                request.key,
                action,
                f"{request.source_key} -> {request.target_secret_name}[{request.target_key}]",
            )

        return await self._planned("sync", request.key, attempt)
