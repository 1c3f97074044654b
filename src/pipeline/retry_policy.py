"""Bounded fixed-delay retry of supervised runs.

RetryPolicy re-invokes a failing run up to a maximum number of attempts.
Between two attempts it runs the cleanup hook and then waits a fixed delay.
The delay does not grow between attempts.

Shutdown awareness: once the interrupt event is set (SignalCoordinator), no
new attempt is started and the pending delay is cut short.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from src.core.models import CleanupOutcome, RetryAttempt

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from src.core.models import ExecutionOutcome
    from src.core.protocols import CleanupPort

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryConfig:
    """Attempt budget and inter-attempt delay."""

    max_attempts: int = 3
    delay_between: float = 2.0

    def __post_init__(self) -> None:
        """Validate configuration invariants."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.delay_between < 0:
            raise ValueError(
                f"delay_between must be non-negative, got {self.delay_between}"
            )


async def await_interruptible(
    delay: float, interrupt_event: asyncio.Event | None
) -> bool:
    """Sleep for delay seconds, returning early if the event gets set.

    Returns:
        True if interrupted before the delay elapsed.
    """
    if interrupt_event is None:
        await asyncio.sleep(delay)
        return False
    if interrupt_event.is_set():
        return True
    try:
        await asyncio.wait_for(interrupt_event.wait(), timeout=delay)
        return True
    except TimeoutError:
        return False


class RetryPolicy:
    """Runs an invocation until it succeeds or the attempt budget is spent.

    Example:
        policy = RetryPolicy(RetryConfig(max_attempts=3), cleanup=CleanupHook())
        attempts = await policy.run_with_retry(
            lambda n: supervisor.run("npx", ["playwright", "test"])
        )
        if not attempts[-1].success:
            ...  # exhausted: hard failure
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        cleanup: CleanupPort | None = None,
        interrupt_event: asyncio.Event | None = None,
    ) -> None:
        self.config = config or RetryConfig()
        self.cleanup = cleanup
        self.interrupt_event = interrupt_event

    @property
    def interrupted(self) -> bool:
        return self.interrupt_event is not None and self.interrupt_event.is_set()

    async def run_with_retry(
        self,
        invocation: Callable[[int], Awaitable[ExecutionOutcome]],
        max_attempts: int | None = None,
        delay_between: float | None = None,
    ) -> list[RetryAttempt]:
        """Invoke until success, exhaustion or interrupt.

        Cleanup runs after a failed attempt, before the delay, whenever
        another attempt is planned. An interrupt during the delay stops the
        run with that cleanup already done, so cleanup then ran once per
        attempt rather than once per retry.

        Args:
            invocation: Called with the 1-based attempt number. May raise;
                the exception is recorded as an attempt without outcome.
            max_attempts: Overrides the configured attempt budget.
            delay_between: Overrides the configured delay in seconds.

        Returns:
            The attempts in order. The last one is successful iff the run
            succeeded. Never longer than max_attempts.

        Raises:
            ValueError: If max_attempts < 1 or delay_between < 0.
        """
        # Re-validates overrides through the config invariants
        config = RetryConfig(
            max_attempts=(
                max_attempts if max_attempts is not None else self.config.max_attempts
            ),
            delay_between=(
                delay_between
                if delay_between is not None
                else self.config.delay_between
            ),
        )

        attempts: list[RetryAttempt] = []
        for index in range(1, config.max_attempts + 1):
            if index > 1 and self.interrupted:
                logger.info("Shutdown requested, not starting attempt %d", index)
                break

            attempt = await self._invoke(invocation, index)
            logger.info(
                "Attempt %d/%d: %s", index, config.max_attempts, attempt.describe()
            )
            if attempt.success:
                attempts.append(attempt)
                return attempts

            is_last = index == config.max_attempts
            if is_last or self.interrupted:
                attempts.append(attempt)
                break

            cleanup = await self._run_cleanup()
            attempts.append(
                RetryAttempt(
                    index=attempt.index,
                    outcome=attempt.outcome,
                    error=attempt.error,
                    cleanup=cleanup,
                )
            )
            if await await_interruptible(config.delay_between, self.interrupt_event):
                logger.info("Shutdown requested during retry delay")
                break

        logger.warning(
            "Giving up after %d of %d attempt(s)", len(attempts), config.max_attempts
        )
        return attempts

    async def _invoke(
        self,
        invocation: Callable[[int], Awaitable[ExecutionOutcome]],
        index: int,
    ) -> RetryAttempt:
        try:
            outcome = await invocation(index)
        except Exception as e:
            logger.warning("Attempt %d raised: %s", index, e, exc_info=True)
            return RetryAttempt(
                index=index, outcome=None, error=str(e) or type(e).__name__
            )
        return RetryAttempt(index=index, outcome=outcome)

    async def _run_cleanup(self) -> CleanupOutcome | None:
        if self.cleanup is None:
            return None
        try:
            return await self.cleanup.run()
        except Exception as e:
            logger.warning("Cleanup hook raised: %s", e)
            return CleanupOutcome(errors=(str(e) or type(e).__name__,))
