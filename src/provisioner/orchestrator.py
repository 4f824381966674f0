"""Provisioning orchestrator: walks the chain in dependency order.

    Unprovisioned -> PolicyReady -> IdentityBound -> StoreReady
                  -> SyncRequested -> SecretSynced -> Verified

Each transition runs the reconciler for that link and, where the external
system needs time to converge, the readiness verifier. The orchestrator
never tears anything down: on failure it halts at the last state reached,
and re-running provision skips every link that is already satisfied.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .backends import Backends
from .config import Config
from .errors import (
    InvocationCancelled,
    PreconditionUnmet,
    PropagationTimeout,
    ProvisioningError,
    ResourceConflict,
    TransientUnavailable,
)
from .models import (
    PROVISIONING_ORDER,
    DescriptorSet,
    ProvisioningState,
    ReconcileAction,
    SyncPhase,
)
from .reconciler import (
    ReconcileOutcome,
    ResourceReconciler,
    ValueSource,
    plan_policy,
    run_blocking,
)
from .security import digests_match, value_digest
from .verifier import BackoffPolicy, Probe, ReadinessVerifier, VerifyResult

logger = logging.getLogger(__name__)

ProbeFn = Callable[[], Awaitable[Probe]]

# Shown instead of full digests in observations
DIGEST_PREFIX_LENGTH = 12


@dataclass
class StepRecord:
    """One state transition and what it took to get there."""

    state: ProvisioningState
    outcomes: list[ReconcileOutcome] = field(default_factory=list)
    verify: VerifyResult | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "state": self.state.value,
            "resources": [o.to_dict() for o in self.outcomes],
        }
        if self.verify is not None:
            data["verify"] = {
                "outcome": self.verify.outcome.value,
                "attempts": self.verify.attempts,
                "elapsed_seconds": round(self.verify.elapsed_seconds, 3),
                "observation": self.verify.last_observation,
            }
        return data


@dataclass
class ProvisionResult:
    """Result of a provision, verify or status invocation."""

    operation: str
    state_reached: ProvisioningState = ProvisioningState.UNPROVISIONED
    steps: list[StepRecord] = field(default_factory=list)
    observations: dict[str, str] = field(default_factory=dict)
    error: ProvisioningError | None = None
    diagnostics: list[str] = field(default_factory=list)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.error is None

    def advance(
        self,
        state: ProvisioningState,
        outcomes: list[ReconcileOutcome] | None = None,
        verify: VerifyResult | None = None,
    ) -> None:
        self.steps.append(StepRecord(state, outcomes or [], verify))
        self.state_reached = state
        logger.info(
            "State reached",
            extra={"operation": self.operation, "state": state.value},
        )

    def created_count(self) -> int:
        return sum(
            1
            for step in self.steps
            for outcome in step.outcomes
            if outcome.action is ReconcileAction.CREATED
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "operation": self.operation,
            "state": self.state_reached.value,
            "success": self.success,
            "duration_seconds": round(self.duration_seconds, 3),
            "created": self.created_count(),
        }
        if self.steps:
            payload["steps"] = [s.to_dict() for s in self.steps]
        if self.observations:
            payload["observations"] = dict(self.observations)
        if self.error is not None:
            payload["error_kind"] = self.error.kind
            payload["error"] = self.error.message
            if self.error.resource_key:
                payload["resource_key"] = self.error.resource_key
            if isinstance(self.error, PropagationTimeout) and self.error.last_observation:
                payload["last_observation"] = self.error.last_observation
        if self.diagnostics:
            payload["suggestions"] = list(self.diagnostics)
        return payload


class ProvisioningOrchestrator:
    """Sequences reconcilers and verifiers over one descriptor set."""

    def __init__(
        self,
        config: Config,
        descriptors: DescriptorSet,
        backends: Backends,
        cancel_event: asyncio.Event | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config
        self._descriptors = descriptors
        self._backends = backends
        self._cancel_event = cancel_event
        self._rng = rng
        self._reconciler = ResourceReconciler(backends, config.backoff, cancel_event, rng)

    @property
    def descriptors(self) -> DescriptorSet:
        return self._descriptors

    @property
    def reconciler(self) -> ResourceReconciler:
        return self._reconciler

    def verifier(self) -> ReadinessVerifier:
        """A verifier bounded by this invocation's overall deadline."""
        return ReadinessVerifier(
            BackoffPolicy.from_config(self._config.backoff),
            cancel_event=self._cancel_event,
            deadline=time.monotonic() + self._config.invocation_timeout_seconds,
            rng=self._rng,
        )

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def provision(self, value_source: ValueSource | None = None) -> ProvisionResult:
        """Reconcile the whole chain up to Verified.

        The consumer workload is never restarted here: on first provisioning
        it is expected to start after the secret exists and read it at boot.

        Args:
            value_source: Supplies the secret value if the upstream secret
                has to be created. Not called otherwise.
        """
        d = self._descriptors
        cfg = self._config
        reconciler = self._reconciler
        verifier = self.verifier()
        result = ProvisionResult("provision")

        logger.info(
            "Starting provisioning",
            extra={"app": d.app_name, "cluster": cfg.cluster_name, "namespace": cfg.namespace},
        )

        try:
            secret = await reconciler.reconcile_secret(d.secret, value_source)
            policy = await reconciler.reconcile_policy(d.policy)
            result.advance(ProvisioningState.POLICY_READY, [secret, policy])

            assert policy.arn is not None
            identity = await reconciler.reconcile_identity(d.identity, policy.arn)
            check = await verifier.await_condition(
                self.probe_identity, cfg.identity_timeout_seconds, "identity binding propagated"
            )
            self._require(check, d.identity.key)
            result.advance(ProvisioningState.IDENTITY_BOUND, [identity], check)

            store = await reconciler.reconcile_store(d.store)
            check = await verifier.await_condition(
                self.probe_store, cfg.sync_timeout_seconds, "secret store ready"
            )
            self._require(check, d.store.key)
            result.advance(ProvisioningState.STORE_READY, [store], check)

            sync = await reconciler.reconcile_sync_request(d.sync)
            result.advance(ProvisioningState.SYNC_REQUESTED, [sync])

            check = await verifier.await_condition(
                self.probe_synced, cfg.sync_timeout_seconds, "secret synced"
            )
            self._require(check, d.sync.key)
            result.advance(ProvisioningState.SECRET_SYNCED, verify=check)

            check = await verifier.await_condition(
                self.probe_secret_digest,
                cfg.sync_timeout_seconds,
                "cluster secret matches upstream",
            )
            self._require(check, f"{d.sync.namespace}/{d.sync.target_secret_name}")
            result.advance(ProvisioningState.VERIFIED, verify=check)

        except ProvisioningError as e:
            self._fail(result, e)

        return self._finish(result)

    async def verify(self) -> ProvisionResult:
        """Re-run every readiness check without mutating anything.

        Links that need no propagation time are checked once; the others
        are polled with their usual timeouts.
        """
        verifier = self.verifier()
        result = ProvisionResult("verify")

        try:
            for state, probe, timeout in self._links():
                if timeout is None:
                    observed = await self._probe_once(probe)
                    result.observations[state.value] = observed.observation
                    if not observed.ready:
                        raise PreconditionUnmet(
                            f"{state.value} not reached: {observed.observation}",
                            resource_key=self._link_key(state),
                            suggestion="secprov provision",
                        )
                    result.advance(state)
                else:
                    check = await verifier.await_condition(
                        probe, timeout, state.value
                    )
                    result.observations[state.value] = check.last_observation
                    self._require(check, self._link_key(state))
                    result.advance(state, verify=check)
        except ProvisioningError as e:
            self._fail(result, e)

        return self._finish(result)

    async def status(self) -> ProvisionResult:
        """Observe every link once and report the highest contiguous state."""
        result = ProvisionResult("status")
        try:
            state, observations = await self.observe_state()
            result.state_reached = state
            result.observations = observations
        except ProvisioningError as e:
            self._fail(result, e)
        return self._finish(result)

    async def observe_state(self) -> tuple[ProvisioningState, dict[str, str]]:
        """Single-shot, read-only probe of every link.

        Returns:
            The highest state whose link and every earlier link hold, and
            an observation per link.
        """
        reached = ProvisioningState.UNPROVISIONED
        contiguous = True
        observations: dict[str, str] = {}

        for state, probe, _ in self._links():
            try:
                observed = await self._probe_once(probe)
            except (TransientUnavailable, PreconditionUnmet) as e:
                observed = Probe(False, e.message)
            observations[state.value] = observed.observation
            if contiguous and observed.ready:
                reached = state
            else:
                contiguous = False

        logger.info("Observed state", extra={"state": reached.value})
        return reached, observations

    # -------------------------------------------------------------------------
    # Probes (read-only)
    # -------------------------------------------------------------------------

    def _links(self) -> list[tuple[ProvisioningState, ProbeFn, float | None]]:
        cfg = self._config
        return [
            (ProvisioningState.POLICY_READY, self.probe_policy, None),
            (ProvisioningState.IDENTITY_BOUND, self.probe_identity, cfg.identity_timeout_seconds),
            (ProvisioningState.STORE_READY, self.probe_store, cfg.sync_timeout_seconds),
            (ProvisioningState.SYNC_REQUESTED, self.probe_sync_request, None),
            (ProvisioningState.SECRET_SYNCED, self.probe_synced, cfg.sync_timeout_seconds),
            (ProvisioningState.VERIFIED, self.probe_secret_digest, cfg.sync_timeout_seconds),
        ]

    def _link_key(self, state: ProvisioningState) -> str:
        d = self._descriptors
        return {
            ProvisioningState.POLICY_READY: d.policy.name,
            ProvisioningState.IDENTITY_BOUND: d.identity.key,
            ProvisioningState.STORE_READY: d.store.key,
            ProvisioningState.SYNC_REQUESTED: d.sync.key,
            ProvisioningState.SECRET_SYNCED: d.sync.key,
            ProvisioningState.VERIFIED: f"{d.sync.namespace}/{d.sync.target_secret_name}",
        }.get(state, d.app_name)

    async def _probe_once(self, probe: ProbeFn) -> Probe:
        return await self._reconciler.with_retry("probe", probe)

    async def probe_policy(self) -> Probe:
        d = self._descriptors
        secret = await run_blocking(self._backends.secrets.describe_secret, d.secret.name)
        if secret is None:
            return Probe(False, f"secret {d.secret.name} not found")
        policy = await run_blocking(self._backends.policies.get_policy, d.policy.name)
        if policy is None:
            return Probe(False, f"policy {d.policy.name} not found")
        try:
            action = plan_policy(d.policy, policy)
        except ResourceConflict as e:
            return Probe(False, e.message)
        if action is not ReconcileAction.ALREADY_PRESENT:
            return Probe(False, f"policy {d.policy.name} actions differ from descriptor")
        return Probe(True, f"policy {policy.arn} ({policy.version_id})")

    async def probe_identity(self) -> Probe:
        d = self._descriptors
        binding = d.identity
        role = await run_blocking(self._backends.identities.get_role, binding.role_name)
        if role is None:
            return Probe(False, f"role {binding.role_name} not found")
        if role.loose_trust or role.trust_subjects != frozenset({binding.subject}):
            return Probe(False, f"role trusts {sorted(role.trust_subjects)}")
        if not any(arn.endswith(f":policy/{d.policy.name}") for arn in role.attached_policy_arns):
            return Probe(False, f"policy {d.policy.name} not attached to {binding.role_name}")
        account = await run_blocking(
            self._backends.cluster.get_service_account, binding.namespace, binding.service_account
        )
        if account is None:
            return Probe(False, f"service account {binding.service_account} not found")
        if account.role_arn != role.arn:
            return Probe(
                False, f"service account {binding.service_account} not annotated with {role.arn}"
            )
        return Probe(True, f"{role.arn} trusted by {binding.subject}")

    async def probe_store(self) -> Probe:
        store = self._descriptors.store
        status = await run_blocking(
            self._backends.cluster.get_store_status, store.namespace, store.name
        )
        return Probe(status.ready, f"secretstore {store.name}: {status}")

    async def probe_sync_request(self) -> Probe:
        desired = self._descriptors.sync
        observed = await run_blocking(
            self._backends.cluster.get_sync_request, desired.namespace, desired.name
        )
        if observed is None:
            return Probe(False, f"externalsecret {desired.name} not found")
        if observed.mapping != desired.mapping:
            return Probe(False, f"externalsecret {desired.name} maps {observed.source_key}")
        return Probe(True, f"externalsecret {desired.name} present")

    async def probe_synced(self) -> Probe:
        request = self._descriptors.sync
        status = await run_blocking(
            self._backends.cluster.get_sync_status, request.namespace, request.name
        )
        return Probe(status.phase is SyncPhase.SYNCED, f"externalsecret {request.name}: {status}")

    async def probe_secret_digest(self) -> Probe:
        """Compare the cluster secret to the upstream value by digest only."""
        upstream = await run_blocking(
            self._backends.secrets.get_secret_value, self._descriptors.secret.name
        )
        return await self.probe_cluster_digest(value_digest(upstream))

    async def probe_cluster_digest(self, expected: str) -> Probe:
        request = self._descriptors.sync
        observed = await self.cluster_digest()
        if observed is None:
            return Probe(
                False,
                f"secret {request.target_secret_name}[{request.target_key}] not present",
            )
        if not digests_match(observed, expected):
            return Probe(
                False,
                f"secret {request.target_secret_name} digest "
                f"{observed[:DIGEST_PREFIX_LENGTH]} != {expected[:DIGEST_PREFIX_LENGTH]}",
            )
        return Probe(True, f"secret {request.target_secret_name} matches upstream")

    async def cluster_digest(self) -> str | None:
        """Digest of the target key in the cluster secret, or None if absent."""
        request = self._descriptors.sync
        secret = await run_blocking(
            self._backends.cluster.read_secret, request.namespace, request.target_secret_name
        )
        if secret is None or request.target_key not in secret.data:
            return None
        return value_digest(secret.data[request.target_key])

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _require(self, check: VerifyResult, resource_key: str) -> None:
        """Turn a timed-out verification into a soft PropagationTimeout."""
        if check.ready:
            return
        raise PropagationTimeout(
            f"Timed out waiting for {check.description} after {check.attempts} attempts",
            resource_key=resource_key,
            last_observation=check.last_observation,
        )

    def _fail(self, result: ProvisionResult, error: ProvisioningError) -> None:
        result.error = error
        log = logger.warning if isinstance(error, PropagationTimeout) else logger.error
        log(
            "Halted",
            extra={
                "operation": result.operation,
                "state": result.state_reached.value,
                "error_kind": error.kind,
                "error": error.message,
                "resource_key": error.resource_key,
            },
        )

    def _finish(self, result: ProvisionResult) -> ProvisionResult:
        result.end_time = datetime.now(UTC)
        if result.error is not None and not isinstance(result.error, InvocationCancelled):
            result.diagnostics = self.diagnostics(result.state_reached, result.error)
        logger.info(
            "Operation complete",
            extra={
                "operation": result.operation,
                "state": result.state_reached.value,
                "success": result.success,
                "duration_seconds": round(result.duration_seconds, 3),
            },
        )
        return result

    def diagnostics(
        self, reached: ProvisioningState, error: ProvisioningError | None = None
    ) -> list[str]:
        """Commands that show why the state after `reached` is not holding.

        Secrets are only ever described, never printed.
        """
        d = self._descriptors
        cfg = self._config
        commands: list[str] = []
        if error is not None and error.suggestion:
            commands.append(error.suggestion)

        if reached is ProvisioningState.VERIFIED:
            return commands
        pending = PROVISIONING_ORDER[reached.rank + 1]
        ns = d.sync.namespace

        if pending is ProvisioningState.POLICY_READY:
            commands += [
                f"aws secretsmanager describe-secret --secret-id {d.secret.name} "
                f"--region {d.secret.region}",
                "aws iam list-policies --scope Local "
                f"--query \"Policies[?PolicyName=='{d.policy.name}']\"",
            ]
        elif pending is ProvisioningState.IDENTITY_BOUND:
            commands += [
                f"aws iam get-role --role-name {d.identity.role_name}",
                f"aws iam list-attached-role-policies --role-name {d.identity.role_name}",
                f"kubectl get serviceaccount {d.identity.service_account} "
                f"-n {d.identity.namespace} -o yaml",
                f"aws eks describe-cluster --name {cfg.cluster_name} "
                "--query cluster.identity.oidc.issuer",
            ]
        elif pending is ProvisioningState.STORE_READY:
            commands += [
                "kubectl get crd secretstores.external-secrets.io",
                f"kubectl describe secretstore {d.store.name} -n {d.store.namespace}",
            ]
        elif pending is ProvisioningState.SYNC_REQUESTED:
            commands += [f"kubectl get externalsecrets -n {ns}"]
        elif pending is ProvisioningState.SECRET_SYNCED:
            commands += [
                f"kubectl describe externalsecret {d.sync.name} -n {ns}",
                "kubectl logs -n external-secrets deploy/external-secrets --tail=50",
            ]
        else:
            commands += [f"kubectl describe secret {d.sync.target_secret_name} -n {ns}"]
        return commands
