"""Mock context for CLI-level tests.

Patches the backend factory the CLI uses so every command runs against
one MockCloudState.
"""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from typing import Any
from unittest import mock

from .backends import make_backends
from .state import MockCloudState


class MockCloudContext:
    """Context manager patching provisioner.cli.build_backends.

    Usage:
        with MockCloudContext() as ctx:
            result = CliRunner().invoke(cli, ["--cluster", "tiles", "status"])
            assert ctx.state.creations["policy"] == 0
    """

    def __init__(self, state: MockCloudState | None = None) -> None:
        self._state = state or MockCloudState()
        self._patch: Any = None

    @property
    def state(self) -> MockCloudState:
        return self._state

    def __enter__(self) -> MockCloudContext:
        self._patch = mock.patch(
            "provisioner.cli.build_backends",
            side_effect=lambda config: make_backends(self._state),
        )
        self._patch.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._patch is not None:
            self._patch.stop()
            self._patch = None


@contextmanager
def mock_cloud_context(
    state: MockCloudState | None = None,
) -> Generator[MockCloudContext, None, None]:
    with MockCloudContext(state) as ctx:
        yield ctx
