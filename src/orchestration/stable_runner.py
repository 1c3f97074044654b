"""Stable runner for the external test tool.

Builds the test-tool command (configured argv, pass-through arguments, a
default worker count, and the tuning environment overlay) and runs it under
RetryPolicy and ProcessSupervisor. The attempt sequence is reported as one
ValidatorResult, so the test run can stand alone (`warden test`) or sit in a
validator registry next to other checks (`warden validate --with-tests`).

Around the attempts:
- Preflight runs first; a missing tool fails the unit without an attempt and
  low memory lowers the default worker count.
- Afterwards the tool's own JSON report and the critical stderr lines of the
  last attempt are summarized into the result details.
- build_run_summary() gives the `stable-test-summary.json` payload.
"""

from __future__ import annotations

import dataclasses
import logging
import platform
import sys
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

import psutil

from src.core.models import ValidatorResult
from src.domain.validation.report import utc_timestamp
from src.domain.validation.tool_results import summarize
from src.domain.validation.validators import command_validator
from src.infra.tools.command_builder import CommandSpec
from src.orchestration.preflight import memory_snapshot

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping, Sequence

    from src.core.protocols import SupervisorPort
    from src.orchestration.preflight import Preflight, PreflightResult
    from src.pipeline.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

TESTS_VALIDATOR_NAME = "tests"

RUN_SUMMARY_NAME = "stable-test-summary.json"


class StableRunner:
    """Runs the test tool with retries, cleanup and a timeout per attempt."""

    def __init__(
        self,
        supervisor: SupervisorPort,
        policy: RetryPolicy,
        *,
        test_command: Sequence[str],
        child_env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        workers: int | None = None,
        name: str = TESTS_VALIDATOR_NAME,
        preflight: Preflight | None = None,
        results_file: Path | None = None,
    ) -> None:
        self.supervisor = supervisor
        self.policy = policy
        self.test_command = tuple(test_command)
        self.child_env = dict(child_env or {})
        self.timeout = timeout
        self.workers = workers
        self.name = name
        self.preflight = preflight
        self.results_file = results_file

    def build_command(
        self, tool_args: Sequence[str] = (), *, workers: int | None = None
    ) -> CommandSpec:
        """The test-tool command with pass-through arguments appended.

        --workers=<n> is added only when the caller did not choose a value.
        workers overrides the configured default.
        """
        spec = CommandSpec.from_argv(self.test_command, env=self.child_env)
        spec = spec.with_args(*tool_args)
        count = workers if workers is not None else self.workers
        if count is not None and not spec.has_option("--workers"):
            spec = spec.with_args(f"--workers={count}")
        return spec

    def as_validator(
        self, tool_args: Sequence[str] = ()
    ) -> Callable[[], Awaitable[ValidatorResult]]:
        async def check() -> ValidatorResult:
            return await self.run(tool_args)

        return check

    async def run(self, tool_args: Sequence[str] = ()) -> ValidatorResult:
        started = time.time()
        preflight = None
        workers = self.workers
        if self.preflight is not None:
            caller_chose = (
                CommandSpec.from_argv(self.test_command)
                .with_args(*tool_args)
                .has_option("--workers")
            )
            preflight = await self.preflight.run(
                self.test_command[0], None if caller_chose else workers
            )
            if not preflight.ok:
                return ValidatorResult.failed(
                    self.name,
                    [f"preflight: {error}" for error in preflight.errors],
                    details={"preflight": preflight.to_dict()},
                )
            if not caller_chose:
                workers = preflight.workers

        command = self.build_command(tool_args, workers=workers)
        logger.info(
            "Running %s (max %d attempt(s))",
            command.display(),
            self.policy.config.max_attempts,
        )
        result = await command_validator(
            self.name,
            command,
            self.supervisor,
            self.policy,
            timeout=self.timeout,
        )()
        return self._with_reports(result, preflight, started)

    def _with_reports(
        self,
        result: ValidatorResult,
        preflight: PreflightResult | None,
        started: float,
    ) -> ValidatorResult:
        details = dict(result.details or {})
        warnings = list(result.warnings)
        if preflight is not None:
            details["preflight"] = preflight.to_dict()
            warnings.extend(f"preflight: {w}" for w in preflight.warnings)

        tool_results = summarize(
            self.results_file, _last_stderr_log(details), since=started
        )
        if not tool_results.empty:
            details["tool_results"] = tool_results.to_dict()
        return dataclasses.replace(result, warnings=tuple(warnings), details=details)


def _last_stderr_log(details: Mapping[str, Any]) -> Path | None:
    attempts = details.get("attempts") or []
    if not attempts:
        return None
    path = attempts[-1].get("stderr_log")
    return Path(path) if path else None


def build_run_summary(
    result: ValidatorResult | None,
    *,
    exit_code: int,
    duration_seconds: float,
    configuration: Mapping[str, Any],
) -> dict[str, Any]:
    """Payload of stable-test-summary.json for one `warden test` run."""
    try:
        memory: dict[str, int] | None = memory_snapshot().to_dict()
    except (psutil.Error, OSError) as e:
        logger.debug("Cannot read system memory: %s", e)
        memory = None
    return {
        "timestamp": utc_timestamp(),
        "success": exit_code == 0,
        "exit_code": exit_code,
        "duration_seconds": round(duration_seconds, 3),
        "environment": {
            "python": platform.python_version(),
            "platform": sys.platform,
            "memory": memory,
        },
        "configuration": dict(configuration),
        "result": result.to_dict() if result is not None else None,
    }
