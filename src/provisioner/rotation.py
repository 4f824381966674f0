"""Credential rotation.

Rotation re-walks only the tail of the chain:

1. Write the new value to the existing upstream secret
2. Force a resync by deleting the cluster secret (the sync operator
   recreates it from upstream), or wait for the scheduled refresh
3. Verify the cluster secret's digest equals the new value's digest
4. Restart the consumer, only after step 3 succeeds

If step 3 does not succeed in time the rotation is incomplete: the
consumer is left alone and the cluster secret keeps its prior content,
restored from a snapshot if the operator left it missing or different.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .backends import Backends, ClusterSecret
from .config import Config
from .errors import PreconditionUnmet, ProvisioningError
from .models import ProvisioningState, SecretDescriptor
from .orchestrator import DIGEST_PREFIX_LENGTH, ProvisioningOrchestrator
from .reconciler import run_blocking
from .security import digests_match, log_security_audit_event, value_digest
from .verifier import VerifyResult

logger = logging.getLogger(__name__)


class RotationStatus(str, Enum):
    ROTATED = "Rotated"
    UNCHANGED = "Unchanged"
    INCOMPLETE = "RotationIncomplete"


def _short(digest: str | None) -> str | None:
    return digest[:DIGEST_PREFIX_LENGTH] if digest else None


@dataclass
class RotationResult:
    """Outcome of one rotation. Carries digests, never values."""

    secret_name: str
    status: RotationStatus = RotationStatus.INCOMPLETE
    previous_digest: str | None = None
    expected_digest: str | None = None
    observed_digest: str | None = None
    forced_refresh: bool = False
    reload_issued: bool = False
    restored_previous: bool = False
    verify: VerifyResult | None = None
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
        return self.status is not RotationStatus.INCOMPLETE and self.error is None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "operation": "rotate",
            "state": self.status.value,
            "success": self.success,
            "secret": self.secret_name,
            "previous_digest": _short(self.previous_digest),
            "expected_digest": _short(self.expected_digest),
            "observed_digest": _short(self.observed_digest),
            "forced_refresh": self.forced_refresh,
            "reload_issued": self.reload_issued,
            "restored_previous": self.restored_previous,
            "duration_seconds": round(self.duration_seconds, 3),
        }
        if self.verify is not None:
            payload["last_observation"] = self.verify.last_observation
        if self.error is not None:
            payload["error_kind"] = self.error.kind
            payload["error"] = self.error.message
        elif self.status is RotationStatus.INCOMPLETE:
            payload["error_kind"] = RotationStatus.INCOMPLETE.value
            payload["error"] = "Cluster secret did not pick up the new value in time"
        if self.diagnostics:
            payload["suggestions"] = list(self.diagnostics)
        return payload


class RotationController:
    """Rotates the value behind an already-synced descriptor set."""

    def __init__(
        self, config: Config, orchestrator: ProvisioningOrchestrator, backends: Backends
    ) -> None:
        self._config = config
        self._orchestrator = orchestrator
        self._backends = backends

    async def rotate(
        self,
        secret: SecretDescriptor,
        new_value: str,
        *,
        force_refresh: bool = True,
        restart: bool = True,
    ) -> RotationResult:
        """Rotate secret to new_value.

        Args:
            force_refresh: Delete the cluster secret so the operator resyncs
                immediately. Otherwise wait for the scheduled refresh.
            restart: Restart the consumer workload after verification.

        Raises:
            PreconditionUnmet: If the chain has not reached SecretSynced.
                Nothing is mutated in that case.
        """
        orchestrator = self._orchestrator
        reconciler = orchestrator.reconciler
        d = orchestrator.descriptors
        cluster = self._backends.cluster
        request = d.sync
        result = RotationResult(secret.name)

        if secret.name != d.secret.name:
            raise PreconditionUnmet(
                f"Secret {secret.name} is not part of this descriptor set",
                resource_key=secret.name,
            )

        state, _ = await orchestrator.observe_state()
        if not state.at_least(ProvisioningState.SECRET_SYNCED):
            raise PreconditionUnmet(
                f"Rotation requires {ProvisioningState.SECRET_SYNCED.value}, "
                f"{secret.name} is at {state.value}",
                resource_key=secret.name,
                suggestion="secprov provision",
                state=state.value,
            )

        snapshot: ClusterSecret | None = await reconciler.with_retry(
            request.key,
            lambda: run_blocking(
                cluster.read_secret, request.namespace, request.target_secret_name
            ),
        )
        if snapshot is None or request.target_key not in snapshot.data:
            raise PreconditionUnmet(
                f"Cluster secret {request.target_secret_name}[{request.target_key}] is missing",
                resource_key=request.key,
                suggestion=f"kubectl describe externalsecret {request.name} -n {request.namespace}",
            )

        result.previous_digest = value_digest(snapshot.data[request.target_key])
        result.expected_digest = value_digest(new_value)

        upstream = await reconciler.with_retry(
            secret.name, lambda: run_blocking(self._backends.secrets.get_secret_value, secret.name)
        )
        if digests_match(value_digest(upstream), result.expected_digest) and digests_match(
            result.previous_digest, result.expected_digest
        ):
            logger.info("Secret value unchanged, nothing to rotate", extra={"secret": secret.name})
            result.status = RotationStatus.UNCHANGED
            result.observed_digest = result.previous_digest
            return self._finish(result)

        logger.info(
            "Starting rotation",
            extra={
                "secret": secret.name,
                "state": state.value,
                "force_refresh": force_refresh,
                "previous_digest": _short(result.previous_digest),
                "expected_digest": _short(result.expected_digest),
            },
        )

        # 1. Upstream write, under the existing key
        await reconciler.with_retry(
            secret.name,
            lambda: run_blocking(self._backends.secrets.put_secret_value, secret.name, new_value),
        )
        log_security_audit_event(
            "rotation", "secret", secret.name, action="PutSecretValue", result="success"
        )

        # 2. Forced refresh
        if force_refresh:
            await reconciler.with_retry(
                request.key,
                lambda: run_blocking(
                    cluster.delete_secret, request.namespace, request.target_secret_name
                ),
            )
            result.forced_refresh = True
            log_security_audit_event(
                "rotation", "cluster-secret", request.key, action="ForcedRefresh", result="success"
            )

        # 3. Verify by digest
        timeout = self._config.rotation_timeout_seconds
        if not force_refresh:
            timeout += request.refresh_interval_seconds
        expected = result.expected_digest
        result.verify = await orchestrator.verifier().await_condition(
            lambda: orchestrator.probe_cluster_digest(expected),
            timeout,
            "cluster secret carries the rotated value",
        )
        result.observed_digest = await reconciler.with_retry(
            request.key, orchestrator.cluster_digest
        )

        if not result.verify.ready and not digests_match(result.observed_digest, expected):
            await self._leave_prior_value(result, snapshot)
            return self._finish(result)

        result.status = RotationStatus.ROTATED

        # 4. Reload consumers, exactly once, only after verification
        if restart and d.consumer is not None:
            consumer = d.consumer
            try:
                await reconciler.with_retry(
                    f"{consumer.namespace}/{consumer.name}",
                    lambda: run_blocking(
                        cluster.restart_workload, consumer.namespace, consumer.name
                    ),
                )
            except ProvisioningError as e:
                result.error = e
                result.diagnostics = [
                    e.suggestion or f"kubectl rollout restart deployment/{consumer.name} "
                    f"-n {consumer.namespace}"
                ]
            else:
                result.reload_issued = True
                log_security_audit_event(
                    "rotation",
                    "consumer",
                    f"{consumer.namespace}/{consumer.name}",
                    action="RolloutRestart",
                    result="success",
                )

        return self._finish(result)

    async def _leave_prior_value(self, result: RotationResult, snapshot: ClusterSecret) -> None:
        """Keep the pre-rotation cluster secret after an incomplete rotation."""
        request = self._orchestrator.descriptors.sync
        result.status = RotationStatus.INCOMPLETE
        if not digests_match(result.observed_digest, result.previous_digest):
            await self._orchestrator.reconciler.with_retry(
                request.key, lambda: run_blocking(self._backends.cluster.restore_secret, snapshot)
            )
            result.restored_previous = True
            result.observed_digest = result.previous_digest
            log_security_audit_event(
                "rotation",
                "cluster-secret",
                request.key,
                action="RestoreSnapshot",
                result="success",
            )
        result.diagnostics = self._orchestrator.diagnostics(ProvisioningState.SYNC_REQUESTED)
        logger.warning(
            "Rotation incomplete, prior cluster secret left in place",
            extra={
                "secret": result.secret_name,
                "restored_previous": result.restored_previous,
                "last_observation": result.verify.last_observation if result.verify else None,
            },
        )

    def _finish(self, result: RotationResult) -> RotationResult:
        result.end_time = datetime.now(UTC)
        logger.info(
            "Rotation complete",
            extra={
                "secret": result.secret_name,
                "status": result.status.value,
                "reload_issued": result.reload_issued,
                "duration_seconds": round(result.duration_seconds, 3),
            },
        )
        return result
