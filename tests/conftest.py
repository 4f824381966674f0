"""Pytest configuration and fixtures."""

import random
import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for aws_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from aws_mock import MockCloudState, make_backends  # noqa: E402

from provisioner.backends import Backends  # noqa: E402
from provisioner.config import BackoffConfig, Config  # noqa: E402
from provisioner.models import DescriptorSet  # noqa: E402
from provisioner.orchestrator import ProvisioningOrchestrator  # noqa: E402


@pytest.fixture
def config() -> Config:
    """Configuration for the app/db-url chain with millisecond backoff."""
    return Config(
        cluster_name="tiles",
        app_name="app",
        secret_name="app/db-url",
        target_secret_name="app-db-secret",
        consumer_deployment="app",
        identity_timeout_seconds=0.05,
        sync_timeout_seconds=0.05,
        rotation_timeout_seconds=0.05,
        invocation_timeout_seconds=5.0,
        backoff=BackoffConfig(base_seconds=0.001, cap_seconds=0.005, transient_retries=3),
    )


@pytest.fixture
def descriptors(config: Config) -> DescriptorSet:
    return DescriptorSet.from_config(config)


@pytest.fixture
def state() -> MockCloudState:
    cloud = MockCloudState()
    cloud.deployments.add(("default", "app"))
    return cloud


@pytest.fixture
def backends(state: MockCloudState) -> Backends:
    return make_backends(state)


@pytest.fixture
def orchestrator(
    config: Config, descriptors: DescriptorSet, backends: Backends
) -> ProvisioningOrchestrator:
    return ProvisioningOrchestrator(config, descriptors, backends, rng=random.Random(7))
