"""Readiness verification by bounded, cancellable polling.

A probe is awaited repeatedly, spaced by capped exponential backoff with
jitter, until it reports ready or the timeout elapses. The wait between
probes is the only suspension point of an invocation, so it observes both
the overall invocation deadline and the cancellation event set by the
signal handlers.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from .config import BackoffConfig
from .errors import InvocationCancelled, TransientUnavailable

logger = logging.getLogger(__name__)


class VerifyOutcome(str, Enum):
    READY = "Ready"
    TIMED_OUT = "TimedOut"


@dataclass(frozen=True)
class Probe:
    """One observation of an external system."""

    ready: bool
    observation: str


@dataclass(frozen=True)
class VerifyResult:
    outcome: VerifyOutcome
    attempts: int
    elapsed_seconds: float
    last_observation: str
    description: str = ""

    @property
    def ready(self) -> bool:
        return self.outcome is VerifyOutcome.READY


@dataclass(frozen=True)
class BackoffPolicy:
    base_seconds: float = 2.0
    cap_seconds: float = 30.0
    jitter_ratio: float = 0.2

    @classmethod
    def from_config(cls, config: BackoffConfig) -> BackoffPolicy:
        return cls(config.base_seconds, config.cap_seconds, config.jitter_ratio)

    def delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay after the given 1-based attempt.

        min(cap, base * 2^(attempt-1)), then jittered by +/- jitter_ratio.
        """
        backoff = min(self.cap_seconds, self.base_seconds * (2 ** (attempt - 1)))
        spread = backoff * self.jitter_ratio
        jitter = (rng or random).uniform(-spread, spread)
        return max(0.0, backoff + jitter)


async def cancellable_sleep(delay: float, cancel_event: asyncio.Event | None) -> None:
    """Sleep for delay seconds unless the cancel event fires first.

    Raises:
        InvocationCancelled: If the event is set before or during the wait.
    """
    if cancel_event is None:
        await asyncio.sleep(delay)
        return
    if cancel_event.is_set():
        raise InvocationCancelled("Invocation cancelled")
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except TimeoutError:
        return
    raise InvocationCancelled("Invocation cancelled while waiting")


class ReadinessVerifier:
    """Polls a probe until ready, the timeout, or the invocation deadline."""

    def __init__(
        self,
        backoff: BackoffPolicy,
        cancel_event: asyncio.Event | None = None,
        deadline: float | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """
        Args:
            backoff: Spacing between probes.
            cancel_event: Set externally to abort the wait.
            deadline: Absolute time.monotonic() bound for the whole invocation.
            rng: Source of jitter, for deterministic tests.
        """
        self._backoff = backoff
        self._cancel_event = cancel_event
        self._deadline = deadline
        self._rng = rng

    async def await_condition(
        self,
        probe: Callable[[], Awaitable[Probe]],
        timeout: float,
        description: str,
    ) -> VerifyResult:
        """Await probe() until it reports ready or the timeout elapses.

        A TransientUnavailable from the probe counts as "not ready yet".
        The last probe runs at the deadline itself, so a condition that
        becomes true during the final wait is still observed.

        Raises:
            InvocationCancelled: If the cancel event is set.
        """
        start = time.monotonic()
        end = start + timeout
        if self._deadline is not None:
            end = min(end, self._deadline)

        attempt = 0
        while True:
            attempt += 1
            try:
                result = await probe()
            except TransientUnavailable as e:
                result = Probe(False, f"transient: {e.message}")

            elapsed = time.monotonic() - start
            if result.ready:
                logger.info(
                    "Condition ready",
                    extra={
                        "condition": description,
                        "attempts": attempt,
                        "elapsed_seconds": round(elapsed, 3),
                    },
                )
                return VerifyResult(
                    VerifyOutcome.READY, attempt, elapsed, result.observation, description
                )

            remaining = end - time.monotonic()
            if remaining <= 0:
                logger.warning(
                    "Condition timed out",
                    extra={
                        "condition": description,
                        "attempts": attempt,
                        "elapsed_seconds": round(elapsed, 3),
                        "last_observation": result.observation,
                    },
                )
                return VerifyResult(
                    VerifyOutcome.TIMED_OUT, attempt, elapsed, result.observation, description
                )

            delay = min(self._backoff.delay(attempt, self._rng), remaining)
            logger.debug(
                "Condition not ready, waiting",
                extra={
                    "condition": description,
                    "attempt": attempt,
                    "wait_seconds": round(delay, 3),
                    "observation": result.observation,
                },
            )
            await cancellable_sleep(delay, self._cancel_event)
