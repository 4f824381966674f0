"""Error taxonomy for provisioning and rotation.

TransientUnavailable is retried internally and only surfaces once retries are
exhausted. ResourceConflict and PreconditionUnmet are never retried.
PropagationTimeout is a soft failure: the resource exists and may still
converge after the tool exits.
"""

from __future__ import annotations


class ProvisioningError(Exception):
    """Base class for every failure the orchestrator reports."""

    kind = "ProvisioningError"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        resource_key: str | None = None,
        suggestion: str | None = None,
        state: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.resource_key = resource_key
        self.suggestion = suggestion

        # Last provisioning state reached, when known at the raise site
        self.state = state


class TransientUnavailable(ProvisioningError):
    """Network failure, throttling, or a creation race; safe to retry."""

    kind = "TransientUnavailable"
    retryable = True


class ResourceConflict(ProvisioningError):
    """An existing resource is incompatible with its descriptor.

    Requires manual resolution. Never overwritten automatically.
    """

    kind = "ResourceConflict"


class PropagationTimeout(ProvisioningError):
    """Resource was reconciled but did not become observably ready in time."""

    kind = "PropagationTimeout"

    def __init__(
        self,
        message: str,
        *,
        resource_key: str | None = None,
        suggestion: str | None = None,
        state: str | None = None,
        last_observation: str | None = None,
    ) -> None:
        super().__init__(message, resource_key=resource_key, suggestion=suggestion, state=state)
        self.last_observation = last_observation


class PreconditionUnmet(ProvisioningError):
    """The operation depends on a state that was never reached."""

    kind = "PreconditionUnmet"


class InvocationCancelled(ProvisioningError):
    """The invocation was cancelled by a signal while waiting."""

    kind = "Cancelled"
