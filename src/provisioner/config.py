"""Configuration management with validation.

Every entry point (provision, rotate, verify, status) builds the same frozen
Config. Defaults mirror the pg_tileserv deployment this tool was written for;
environment variables override them, and CLI flags override the environment.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Defaults carried over from the original setup script
DEFAULT_APP_NAME = "pg-tileserv"
DEFAULT_REGION = "us-east-1"
DEFAULT_NAMESPACE = "default"
DEFAULT_TARGET_KEY = "DATABASE_URL"
DEFAULT_SERVICE_ACCOUNT_NAME = "external-secrets-sa"
DEFAULT_STORE_NAME = "aws-secrets-manager"

# Timing defaults (seconds)
DEFAULT_REFRESH_INTERVAL_SECONDS = 3600
MIN_REFRESH_INTERVAL_SECONDS = 60
MAX_REFRESH_INTERVAL_SECONDS = 86400

DEFAULT_IDENTITY_TIMEOUT_SECONDS = 60.0  # federated trust propagation
DEFAULT_SYNC_TIMEOUT_SECONDS = 120.0  # sync operator reconcile loop
DEFAULT_ROTATION_TIMEOUT_SECONDS = 120.0
DEFAULT_INVOCATION_TIMEOUT_SECONDS = 900.0
MAX_TIMEOUT_SECONDS = 3600.0

DEFAULT_BACKOFF_BASE_SECONDS = 2.0
DEFAULT_BACKOFF_CAP_SECONDS = 30.0
DEFAULT_BACKOFF_JITTER_RATIO = 0.2
DEFAULT_TRANSIENT_RETRIES = 4

MAX_DESCRIPTOR_FILE_SIZE_BYTES = 256 * 1024

# Input validation patterns
VALID_K8S_NAME_PATTERN = r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$"
VALID_CLUSTER_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_-]{0,99}$"
VALID_REGION_PATTERN = r"^[a-z]{2}(-gov)?-[a-z]+-\d$"
VALID_SECRET_NAME_PATTERN = r"^[A-Za-z0-9/_+=.@-]{1,512}$"
VALID_ENV_KEY_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*$"


@dataclass(frozen=True)
class BackoffConfig:
    """Polling and retry backoff: exponential from base, capped, jittered."""

    base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS
    cap_seconds: float = DEFAULT_BACKOFF_CAP_SECONDS
    jitter_ratio: float = DEFAULT_BACKOFF_JITTER_RATIO

    # Attempts for TransientUnavailable before it is surfaced
    transient_retries: int = DEFAULT_TRANSIENT_RETRIES


@dataclass(frozen=True)
class Config:
    """Provisioning configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing halfway through
    a provisioning run.
    """

    # Required
    cluster_name: str

    # Target
    region: str = DEFAULT_REGION
    namespace: str = DEFAULT_NAMESPACE
    app_name: str = DEFAULT_APP_NAME

    # Secret chain naming. Empty names are derived from app_name.
    secret_name: str = ""
    target_secret_name: str = ""
    target_key: str = DEFAULT_TARGET_KEY
    service_account_name: str = DEFAULT_SERVICE_ACCOUNT_NAME
    store_name: str = DEFAULT_STORE_NAME
    # Empty derives the deployment from app_name, None disables restarts
    consumer_deployment: str | None = ""

    # Timing
    refresh_interval_seconds: int = DEFAULT_REFRESH_INTERVAL_SECONDS
    identity_timeout_seconds: float = DEFAULT_IDENTITY_TIMEOUT_SECONDS
    sync_timeout_seconds: float = DEFAULT_SYNC_TIMEOUT_SECONDS
    rotation_timeout_seconds: float = DEFAULT_ROTATION_TIMEOUT_SECONDS
    invocation_timeout_seconds: float = DEFAULT_INVOCATION_TIMEOUT_SECONDS

    # Optional YAML descriptor overlay
    descriptors_file: Path | None = None

    backoff: BackoffConfig = field(default_factory=BackoffConfig)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        # Frozen dataclass: derived defaults are set through object.__setattr__
        if not self.secret_name:
            object.__setattr__(self, "secret_name", f"{self.app_name}/database-url")
        if not self.target_secret_name:
            object.__setattr__(self, "target_secret_name", f"{self.app_name}-db-secret")
        if self.consumer_deployment == "":
            object.__setattr__(self, "consumer_deployment", self.app_name)

        errors: list[str] = []

        if not self.cluster_name:
            errors.append("CLUSTER_NAME is required")
        elif not re.match(VALID_CLUSTER_NAME_PATTERN, self.cluster_name):
            errors.append(f"CLUSTER_NAME is not a valid EKS cluster name: {self.cluster_name}")

        if not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"AWS_REGION must be a valid AWS region: {self.region}")

        for label, value in (
            ("NAMESPACE", self.namespace),
            ("APP_NAME", self.app_name),
            ("TARGET_SECRET_NAME", self.target_secret_name),
            ("SERVICE_ACCOUNT_NAME", self.service_account_name),
            ("STORE_NAME", self.store_name),
        ):
            if not re.match(VALID_K8S_NAME_PATTERN, value):
                errors.append(f"{label} must be a DNS-1123 label: {value!r}")

        if self.consumer_deployment is not None and not re.match(
            VALID_K8S_NAME_PATTERN, self.consumer_deployment
        ):
            errors.append(
                f"CONSUMER_DEPLOYMENT must be a DNS-1123 label: {self.consumer_deployment!r}"
            )

        # The secret must live inside the application's namespace so the
        # generated policy never reaches another application's secrets
        if "*" in self.secret_name or "?" in self.secret_name:
            errors.append("SECRET_NAME must not contain wildcards")
        elif not re.match(VALID_SECRET_NAME_PATTERN, self.secret_name):
            errors.append(f"SECRET_NAME contains invalid characters: {self.secret_name!r}")
        elif not self.secret_name.startswith(f"{self.app_name}/"):
            errors.append(f"SECRET_NAME must start with '{self.app_name}/': {self.secret_name}")

        if not re.match(VALID_ENV_KEY_PATTERN, self.target_key):
            errors.append(
                f"TARGET_KEY must be a valid environment variable name: {self.target_key}"
            )

        if not (
            MIN_REFRESH_INTERVAL_SECONDS
            <= self.refresh_interval_seconds
            <= MAX_REFRESH_INTERVAL_SECONDS
        ):
            errors.append(
                f"REFRESH_INTERVAL must be between {MIN_REFRESH_INTERVAL_SECONDS} "
                f"and {MAX_REFRESH_INTERVAL_SECONDS} seconds"
            )

        for label, timeout in (
            ("IDENTITY_TIMEOUT", self.identity_timeout_seconds),
            ("SYNC_TIMEOUT", self.sync_timeout_seconds),
            ("ROTATION_TIMEOUT", self.rotation_timeout_seconds),
            ("INVOCATION_TIMEOUT", self.invocation_timeout_seconds),
        ):
            if not (0 < timeout <= MAX_TIMEOUT_SECONDS):
                errors.append(f"{label} must be in (0, {MAX_TIMEOUT_SECONDS:g}] seconds")

        if self.backoff.base_seconds <= 0 or self.backoff.cap_seconds < self.backoff.base_seconds:
            errors.append("backoff cap must be >= base and base must be positive")
        if not (0 <= self.backoff.jitter_ratio < 1):
            errors.append("backoff jitter ratio must be in [0, 1)")
        if self.backoff.transient_retries < 1:
            errors.append("transient retries must be at least 1")

        if self.descriptors_file is not None and not self.descriptors_file.exists():
            errors.append(f"Descriptors file does not exist: {self.descriptors_file}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def policy_name(self) -> str:
        return f"ExternalSecretsPolicy-{self.app_name}"

    @property
    def role_name(self) -> str:
        return f"{self.app_name}-external-secrets"

    @property
    def sync_request_name(self) -> str:
        return self.target_secret_name

    @classmethod
    def from_env(cls, overrides: dict[str, Any] | None = None) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            CLUSTER_NAME: EKS cluster hosting the workload (required)
            AWS_REGION: Region of the cluster and secret (default: us-east-1)
            NAMESPACE: Kubernetes namespace (default: default)
            APP_NAME: Application name, prefix of every derived name
            SECRET_NAME: Secrets Manager name (default: <app>/database-url)
            TARGET_SECRET_NAME: Cluster secret name (default: <app>-db-secret)
            TARGET_KEY: Key inside the cluster secret (default: DATABASE_URL)
            SERVICE_ACCOUNT_NAME: Service account used by the secret store
            STORE_NAME: SecretStore name (default: aws-secrets-manager)
            CONSUMER_DEPLOYMENT: Deployment restarted after rotation
                (default: <app>; "none" disables restarts)
            REFRESH_INTERVAL: Sync refresh interval in seconds (default: 3600)
            IDENTITY_TIMEOUT / SYNC_TIMEOUT / ROTATION_TIMEOUT: Readiness
                timeouts in seconds (defaults: 60 / 120 / 120)
            INVOCATION_TIMEOUT: Overall bound for one invocation (default: 900)
            DESCRIPTORS_FILE: Optional YAML descriptor overlay
            BACKOFF_BASE / BACKOFF_CAP / BACKOFF_JITTER / TRANSIENT_RETRIES

        Args:
            overrides: Values taken from CLI flags, keyed by env var name.
                None values are ignored.
        """
        values: dict[str, str] = dict(os.environ)
        for key, value in (overrides or {}).items():
            if value is not None:
                values[key] = str(value)

        def get_int(key: str, default: int) -> int:
            value = values.get(key)
            if value is None or value == "":
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = values.get(key)
            if value is None or value == "":
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        app_name = values.get("APP_NAME") or DEFAULT_APP_NAME

        consumer: str | None = values.get("CONSUMER_DEPLOYMENT") or app_name
        if consumer.lower() == "none":
            consumer = None

        descriptors_file = values.get("DESCRIPTORS_FILE")

        return cls(
            cluster_name=values.get("CLUSTER_NAME", ""),
            region=values.get("AWS_REGION") or DEFAULT_REGION,
            namespace=values.get("NAMESPACE") or DEFAULT_NAMESPACE,
            app_name=app_name,
            secret_name=values.get("SECRET_NAME", ""),
            target_secret_name=values.get("TARGET_SECRET_NAME", ""),
            target_key=values.get("TARGET_KEY") or DEFAULT_TARGET_KEY,
            service_account_name=(
                values.get("SERVICE_ACCOUNT_NAME") or DEFAULT_SERVICE_ACCOUNT_NAME
            ),
            store_name=values.get("STORE_NAME") or DEFAULT_STORE_NAME,
            consumer_deployment=consumer,
            refresh_interval_seconds=get_int("REFRESH_INTERVAL", DEFAULT_REFRESH_INTERVAL_SECONDS),
            identity_timeout_seconds=get_float(
                "IDENTITY_TIMEOUT", DEFAULT_IDENTITY_TIMEOUT_SECONDS
            ),
            sync_timeout_seconds=get_float("SYNC_TIMEOUT", DEFAULT_SYNC_TIMEOUT_SECONDS),
            rotation_timeout_seconds=get_float(
                "ROTATION_TIMEOUT", DEFAULT_ROTATION_TIMEOUT_SECONDS
            ),
            invocation_timeout_seconds=get_float(
                "INVOCATION_TIMEOUT", DEFAULT_INVOCATION_TIMEOUT_SECONDS
            ),
            descriptors_file=Path(descriptors_file) if descriptors_file else None,
            backoff=BackoffConfig(
                base_seconds=get_float("BACKOFF_BASE", DEFAULT_BACKOFF_BASE_SECONDS),
                cap_seconds=get_float("BACKOFF_CAP", DEFAULT_BACKOFF_CAP_SECONDS),
                jitter_ratio=get_float("BACKOFF_JITTER", DEFAULT_BACKOFF_JITTER_RATIO),
                transient_retries=get_int("TRANSIENT_RETRIES", DEFAULT_TRANSIENT_RETRIES),
            ),
        )
