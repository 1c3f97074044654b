"""Validator units and their registry.

A validator unit is a name plus an invokable that returns a ValidatorResult
(directly or as an awaitable) or raises. The orchestrator knows nothing else
about it.

Built-in unit factories:
- command_validator: runs an external command under RetryPolicy and
  ProcessSupervisor; passes iff an attempt exits 0.
- env_presence_validator: checks that environment variables are set.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from src.core.models import ValidatorResult

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterator, Mapping, Sequence

    from src.core.models import ExecutionOutcome, RetryAttempt
    from src.core.protocols import SupervisorPort, ValidatorCheck
    from src.infra.tools.command_builder import CommandSpec
    from src.pipeline.retry_policy import RetryPolicy

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


@dataclass(frozen=True)
class ValidatorUnit:
    name: str
    check: ValidatorCheck


class ValidatorRegistry:
    """Ordered name -> check mapping. Declaration order is run order.

    Example:
        registry = ValidatorRegistry()
        registry.add("env", env_presence_validator("env", ["BASE_URL"]))
        registry.add("lint", command_validator("lint", spec, supervisor, policy))
    """

    def __init__(self, units: Sequence[ValidatorUnit] = ()) -> None:
        self._units: list[ValidatorUnit] = []
        for unit in units:
            self.add(unit.name, unit.check)

    def add(self, name: str, check: ValidatorCheck) -> ValidatorUnit:
        if not name:
            raise ValueError("validator name must be non-empty")
        if name in self.names:
            raise ValueError(f"duplicate validator name: {name}")
        unit = ValidatorUnit(name=name, check=check)
        self._units.append(unit)
        return unit

    @property
    def names(self) -> list[str]:
        return [u.name for u in self._units]

    @property
    def units(self) -> list[ValidatorUnit]:
        return list(self._units)

    def __iter__(self) -> Iterator[ValidatorUnit]:
        return iter(list(self._units))

    def __len__(self) -> int:
        return len(self._units)


def attempt_log_name(name: str, index: int) -> str:
    safe = _UNSAFE_NAME_CHARS.sub("-", name).strip("-.") or "validator"
    return f"{safe}.attempt-{index}"


def _attempt_details(attempt: RetryAttempt) -> dict[str, Any]:
    details: dict[str, Any] = {"index": attempt.index, "error": attempt.error}
    outcome = attempt.outcome
    if outcome is not None:
        details.update(
            exit_code=outcome.exit_code,
            duration_seconds=round(outcome.duration_seconds, 3),
            timed_out=outcome.timed_out,
            killed=outcome.killed,
            spawn_error=outcome.spawn_error,
            stdout_log=str(outcome.stdout_log) if outcome.stdout_log else None,
            stderr_log=str(outcome.stderr_log) if outcome.stderr_log else None,
        )
    if attempt.cleanup is not None and attempt.cleanup.errors:
        details["cleanup_errors"] = list(attempt.cleanup.errors)
    return details


def result_from_attempts(
    name: str, attempts: Sequence[RetryAttempt], max_attempts: int
) -> ValidatorResult:
    """Convert a retry sequence into one ValidatorResult.

    Errors name the attempt number of each failed attempt. A pass after
    earlier failures is reported as a flaky warning.
    """
    if not attempts:
        return ValidatorResult.failed(name, ["no attempt was started"])

    dropped = sum(a.outcome.dropped_writes for a in attempts if a.outcome is not None)
    details: dict[str, Any] = {
        "attempts": [_attempt_details(a) for a in attempts],
        "max_attempts": max_attempts,
        "dropped_writes": dropped,
    }
    warnings = [
        f"cleanup after attempt {a.index}/{max_attempts}: {error}"
        for a in attempts
        if a.cleanup is not None
        for error in a.cleanup.errors
    ]

    last = attempts[-1]
    if last.success:
        if len(attempts) > 1:
            warnings.insert(
                0,
                f"flaky: passed on attempt {last.index}/{max_attempts} "
                f"after {len(attempts) - 1} failed attempt(s)",
            )
        return ValidatorResult.passed(name, warnings=warnings, details=details)

    errors = [f"attempt {a.index}/{max_attempts}: {a.describe()}" for a in attempts]
    if len(attempts) < max_attempts:
        errors.append(f"stopped after {len(attempts)} of {max_attempts} attempts")
    if last.outcome is not None and last.outcome.stderr_tail:
        details["stderr_tail"] = last.outcome.stderr_tail
    timed_out = last.outcome is not None and last.outcome.timed_out
    return ValidatorResult.failed(
        name, errors, warnings=warnings, details=details, timed_out=timed_out
    )


def command_validator(
    name: str,
    command: CommandSpec,
    supervisor: SupervisorPort,
    policy: RetryPolicy,
    *,
    timeout: float | None = None,
    max_attempts: int | None = None,
) -> Callable[[], Awaitable[ValidatorResult]]:
    """Validator that passes iff the command exits 0 within its attempts."""
    attempts_budget = max_attempts or policy.config.max_attempts

    async def check() -> ValidatorResult:
        async def invoke(index: int) -> ExecutionOutcome:
            return await supervisor.run_spec(
                command,
                timeout,
                log_name=attempt_log_name(name, index),
                source=name,
            )

        attempts = await policy.run_with_retry(invoke, max_attempts=attempts_budget)
        return result_from_attempts(name, attempts, attempts_budget)

    return check


def env_presence_validator(
    name: str,
    required: Sequence[str],
    optional: Sequence[str] = (),
    environ: Mapping[str, str] | None = None,
) -> Callable[[], ValidatorResult]:
    """Validator that checks environment variables are set and non-empty.

    Missing required variables are errors; missing optional ones are warnings.
    The environment is read when the check runs, not when it is built.
    """

    def check() -> ValidatorResult:
        env = os.environ if environ is None else environ
        errors = [f"{var} is not set" for var in required if not env.get(var)]
        warnings = [
            f"optional {var} is not set" for var in optional if not env.get(var)
        ]
        details = {
            "required": list(required),
            "optional": list(optional),
        }
        if errors:
            return ValidatorResult.failed(name, errors, warnings, details=details)
        return ValidatorResult.passed(name, warnings, details=details)

    return check
