"""Secret provisioning CLI (secprov).

Provisions, rotates and checks the chain that delivers a Secrets Manager
value into a Kubernetes workload through external-secrets.

Usage:
    secprov --cluster tiles provision --value-stdin < url.txt
    secprov --cluster tiles status
    secprov --cluster tiles verify
    secprov --cluster tiles rotate --value-stdin < new-url.txt

Every command prints one JSON payload on stdout; logs go to stderr.

Exit codes:
    0    success
    1    hard failure (ResourceConflict, retries exhausted, unexpected error)
    2    configuration or descriptor error
    3    PreconditionUnmet
    4    soft failure (PropagationTimeout, RotationIncomplete)
    130  cancelled by signal
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import click

from .backends import Backends, build_backends
from .config import Config, ConfigurationError
from .descriptor_loader import DescriptorLoadError, load_descriptor_set
from .errors import InvocationCancelled, PreconditionUnmet, PropagationTimeout, ProvisioningError
from .main import run_cancellable, setup_logging
from .models import DescriptorSet
from .orchestrator import ProvisioningOrchestrator, ProvisionResult
from .rotation import RotationController, RotationResult, RotationStatus
from .security import redact

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2
EXIT_PRECONDITION_UNMET = 3
EXIT_SOFT_FAILURE = 4
EXIT_CANCELLED = 130

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def exit_code_for(error: BaseException | None) -> int:
    if error is None:
        return EXIT_OK
    if isinstance(error, InvocationCancelled):
        return EXIT_CANCELLED
    if isinstance(error, PreconditionUnmet):
        return EXIT_PRECONDITION_UNMET
    if isinstance(error, PropagationTimeout):
        return EXIT_SOFT_FAILURE
    if isinstance(error, (ConfigurationError, DescriptorLoadError)):
        return EXIT_CONFIG_ERROR
    return EXIT_FAILURE


def emit(payload: dict[str, Any]) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=False))


def error_payload(operation: str, error: Exception, *secrets: str | None) -> dict[str, Any]:
    """Build the failure payload. Any of secrets found in the message is masked."""
    payload: dict[str, Any] = {"operation": operation, "success": False}
    if isinstance(error, ProvisioningError):
        if error.state:
            payload["state"] = error.state
        payload["error_kind"] = error.kind
        payload["error"] = redact(error.message, *secrets)
        if error.suggestion:
            payload["suggestions"] = [redact(error.suggestion, *secrets)]
    elif isinstance(error, (ConfigurationError, DescriptorLoadError)):
        payload["error_kind"] = "ConfigurationError"
        payload["error"] = str(error)
    else:
        payload["error_kind"] = type(error).__name__
        payload["error"] = redact(str(error), *secrets)
    return payload


def read_value(from_stdin: bool, prompt: str, *, confirm: bool = False) -> str:
    """Read a secret value without echoing it. A trailing newline is dropped."""
    if from_stdin:
        return click.get_text_stream("stdin").read().rstrip("\r\n")
    return click.prompt(prompt, hide_input=True, confirmation_prompt=confirm)


def initial_value(
    ctx: click.Context, backends: Backends, descriptors: DescriptorSet, from_stdin: bool
) -> str | None:
    """Read the value for a first provisioning, before any event loop runs.

    Without --value-stdin the prompt is skipped when the secret already exists.
    """
    name = descriptors.secret.name
    if from_stdin:
        return read_value(True, name) or None
    try:
        existing = backends.secrets.describe_secret(name)
    except ProvisioningError as e:
        logger.error(
            "Secret lookup failed",
            extra={"operation": "provision", "error_kind": e.kind, "error": e.message},
        )
        emit(error_payload("provision", e))
        ctx.exit(exit_code_for(e))
    if existing is not None:
        return None
    return read_value(False, f"Value for {name}") or None


def load_context(ctx: click.Context) -> tuple[Config, DescriptorSet]:
    """Build configuration and descriptors, exiting with code 2 on error."""
    operation = ctx.invoked_subcommand or (ctx.info_name or "secprov")
    try:
        config = Config.from_env(ctx.obj["overrides"])
        if config.descriptors_file is not None:
            descriptors = load_descriptor_set(config.descriptors_file, config)
        else:
            descriptors = DescriptorSet.from_config(config)
    except (ConfigurationError, DescriptorLoadError) as e:
        logger.error("Configuration error", extra={"error": str(e)})
        emit(error_payload(operation, e))
        ctx.exit(EXIT_CONFIG_ERROR)
    return config, descriptors


def connect(ctx: click.Context, config: Config, operation: str) -> Backends:
    """Build the cloud and cluster adapters, exiting with code 1 on error."""
    try:
        return build_backends(config)
    except Exception as e:
        logger.error(
            "Failed to initialize backends",
            extra={"operation": operation, "error": str(e), "error_type": type(e).__name__},
        )
        emit(error_payload(operation, e))
        ctx.exit(EXIT_FAILURE)


def finish(ctx: click.Context, result: ProvisionResult | RotationResult) -> None:
    emit(result.to_payload())
    if isinstance(result, RotationResult):
        if result.error is not None:
            ctx.exit(exit_code_for(result.error))
        if result.status is RotationStatus.INCOMPLETE:
            ctx.exit(EXIT_SOFT_FAILURE)
        ctx.exit(EXIT_OK)
    ctx.exit(exit_code_for(result.error))


def run_operation(
    ctx: click.Context, operation: str, coroutine: Any, secrets: tuple[str | None, ...] = ()
) -> Any:
    """Run an async operation, reporting errors raised outside the result.

    Error text is masked for every value in secrets before it is logged or
    printed.
    """
    try:
        return run_cancellable(coroutine)
    except ProvisioningError as e:
        logger.error(
            "Operation rejected",
            extra={
                "operation": operation,
                "error_kind": e.kind,
                "error": redact(e.message, *secrets),
            },
        )
        emit(error_payload(operation, e, *secrets))
        ctx.exit(exit_code_for(e))
    except Exception as e:
        # No traceback, only the redacted message
        logger.error(
            "Operation failed unexpectedly",
            extra={
                "operation": operation,
                "error": redact(str(e), *secrets),
                "error_type": type(e).__name__,
            },
        )
        emit(error_payload(operation, e, *secrets))
        ctx.exit(EXIT_FAILURE)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="secprov")
@click.option("--cluster", help="EKS cluster name (env: CLUSTER_NAME)")
@click.option("--region", help="AWS region (env: AWS_REGION)")
@click.option("--namespace", "-n", help="Kubernetes namespace (env: NAMESPACE)")
@click.option("--secret-name", help="Secrets Manager name, <app>/<resource> (env: SECRET_NAME)")
@click.option("--app", help="Application name (env: APP_NAME)")
@click.option(
    "--descriptors",
    type=click.Path(dir_okay=False, path_type=Path),
    help="YAML descriptor overlay (env: DESCRIPTORS_FILE)",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
)
@click.pass_context
def cli(
    ctx: click.Context,
    cluster: str | None,
    region: str | None,
    namespace: str | None,
    secret_name: str | None,
    app: str | None,
    descriptors: Path | None,
    log_level: str,
) -> None:
    """Secret provisioning CLI (secprov).

    Establishes Secrets Manager -> IAM policy -> IRSA role -> SecretStore ->
    ExternalSecret -> cluster secret, idempotently, and rotates the value.

    \b
    Quick Start:
        secprov --cluster tiles provision     # Create or resume the chain
        secprov --cluster tiles status        # Show the state reached
        secprov --cluster tiles rotate        # Rotate the value
    """
    setup_logging(log_level)
    ctx.ensure_object(dict)
    ctx.obj["overrides"] = {
        "CLUSTER_NAME": cluster,
        "AWS_REGION": region,
        "NAMESPACE": namespace,
        "SECRET_NAME": secret_name,
        "APP_NAME": app,
        "DESCRIPTORS_FILE": descriptors,
    }


# =============================================================================
# Commands
# =============================================================================


@cli.command()
@click.option("--value-stdin", is_flag=True, help="Read the secret value from stdin")
@click.pass_context
def provision(ctx: click.Context, value_stdin: bool) -> None:
    """Reconcile the whole chain up to Verified.

    The secret value is only asked for if the upstream secret does not exist.
    """
    config, descriptors = load_context(ctx)
    backends = connect(ctx, config, "provision")
    value = initial_value(ctx, backends, descriptors, value_stdin)

    async def operation(cancel_event: asyncio.Event) -> ProvisionResult:
        orchestrator = ProvisioningOrchestrator(config, descriptors, backends, cancel_event)
        return await orchestrator.provision(None if value is None else lambda: value)

    finish(ctx, run_operation(ctx, "provision", operation, (value,)))


@cli.command()
@click.option("--value-stdin", is_flag=True, help="Read the new value from stdin")
@click.option("--passive", is_flag=True, help="Wait for the scheduled refresh, do not force one")
@click.option("--no-restart", is_flag=True, help="Do not restart the consumer deployment")
@click.pass_context
def rotate(ctx: click.Context, value_stdin: bool, passive: bool, no_restart: bool) -> None:
    """Write a new value, resync the cluster secret, restart the consumer."""
    config, descriptors = load_context(ctx)

    new_value = read_value(value_stdin, f"New value for {descriptors.secret.name}", confirm=True)
    if not new_value:
        emit(error_payload("rotate", ConfigurationError("New secret value is empty")))
        ctx.exit(EXIT_CONFIG_ERROR)
    backends = connect(ctx, config, "rotate")

    async def operation(cancel_event: asyncio.Event) -> RotationResult:
        orchestrator = ProvisioningOrchestrator(config, descriptors, backends, cancel_event)
        controller = RotationController(config, orchestrator, backends)
        return await controller.rotate(
            descriptors.secret,
            new_value,
            force_refresh=not passive,
            restart=not no_restart,
        )

    finish(ctx, run_operation(ctx, "rotate", operation, (new_value,)))


@cli.command()
@click.pass_context
def verify(ctx: click.Context) -> None:
    """Re-run every readiness check without changing anything."""
    config, descriptors = load_context(ctx)
    backends = connect(ctx, config, "verify")

    async def operation(cancel_event: asyncio.Event) -> ProvisionResult:
        return await ProvisioningOrchestrator(config, descriptors, backends, cancel_event).verify()

    finish(ctx, run_operation(ctx, "verify", operation))


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the highest state reached, observing each link once."""
    config, descriptors = load_context(ctx)
    backends = connect(ctx, config, "status")

    async def operation(cancel_event: asyncio.Event) -> ProvisionResult:
        return await ProvisioningOrchestrator(config, descriptors, backends, cancel_event).status()

    finish(ctx, run_operation(ctx, "status", operation))


if __name__ == "__main__":
    cli()
