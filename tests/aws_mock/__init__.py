"""In-memory AWS and Kubernetes fakes for orchestration tests.

Key Features:
- One shared state for Secrets Manager, IAM, the service account, the
  external-secrets resources and cluster secrets
- Simulated external-secrets operator (healthy or broken, with sync lag)
- Call and creation counters for idempotence assertions
- Error injection per operation

Usage:
    from aws_mock import MockCloudState, make_backends

    state = MockCloudState()
    orchestrator = ProvisioningOrchestrator(config, descriptors, make_backends(state))
    result = await orchestrator.provision(lambda: "postgres://...")

    assert state.creations["policy"] == 1
"""

from .backends import (
    FakeCluster,
    FakeIdentityProvider,
    FakePolicyStore,
    FakeSecretStore,
    make_backends,
)
from .context import MockCloudContext, mock_cloud_context
from .state import ACCOUNT_ID, ISSUER_HOST, MockCloudState, OperatorMode

__all__ = [
    "ACCOUNT_ID",
    "ISSUER_HOST",
    "FakeCluster",
    "FakeIdentityProvider",
    "FakePolicyStore",
    "FakeSecretStore",
    "MockCloudContext",
    "MockCloudState",
    "OperatorMode",
    "make_backends",
    "mock_cloud_context",
]
