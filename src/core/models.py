"""Shared dataclasses for warden.

This module provides the types that flow between the supervisor, the retry
loop, the validation orchestrator and the report writer. They live here to
avoid circular dependencies between the infra, pipeline and domain layers.

Types:
- ProcessState: Lifecycle state of a supervised child process
- ProcessHandle: Identifies one spawned child process
- ExecutionOutcome: Result of one supervised run
- CleanupOutcome: Result of one cleanup pass between attempts
- RetryAttempt: One attempt inside a retry sequence
- ExecutionMode: Parallel or sequential validator execution
- ValidatorResult: Result of one validator unit
- ValidationReport: Aggregated results of an orchestrator run
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Mapping
    from pathlib import Path

# Exit code used for runs killed by the wall-clock timeout (GNU timeout convention)
TIMEOUT_EXIT_CODE = 124

# Exit code used when the executable could not be spawned (shell convention)
SPAWN_FAILURE_EXIT_CODE = 127


class ProcessState(Enum):
    """Lifecycle state of a supervised child process."""

    STARTING = "starting"
    RUNNING = "running"
    TERMINATING = "terminating"
    EXITED = "exited"


@dataclass(eq=False)
class ProcessHandle:
    """Identifies one spawned child process.

    Owned by ProcessSupervisor for the lifetime of the child. The
    SignalCoordinator only holds references to handles in its tracking set.

    Attributes:
        pid: OS process id.
        command: Command and arguments the process was started with.
        started_at: Monotonic timestamp of the spawn.
        state: Current lifecycle state.
        process_group: True when the child leads its own process group, in
            which case signals are delivered to the whole group.
    """

    pid: int
    command: tuple[str, ...]
    started_at: float = field(default_factory=time.monotonic)
    state: ProcessState = ProcessState.STARTING
    process_group: bool = True

    @property
    def is_alive(self) -> bool:
        return self.state is not ProcessState.EXITED

    def send_signal(self, sig: int) -> bool:
        """Deliver a signal to the process (or its group).

        Returns:
            True if the signal was delivered, False if the process is already
            gone or cannot be signalled.
        """
        if not self.is_alive:
            return False
        try:
            if self.process_group and hasattr(os, "killpg"):
                os.killpg(self.pid, sig)
            else:
                os.kill(self.pid, sig)
        except (ProcessLookupError, PermissionError):
            return False
        self.state = ProcessState.TERMINATING
        return True

    def mark_exited(self) -> None:
        self.state = ProcessState.EXITED


@dataclass(frozen=True)
class ExecutionOutcome:
    """Result of one supervised run. Immutable once produced.

    Attributes:
        command: Command and arguments that were run.
        exit_code: Natural exit code, TIMEOUT_EXIT_CODE when killed by the
            timeout, SPAWN_FAILURE_EXIT_CODE when the spawn failed.
        duration_seconds: Wall-clock duration from spawn to confirmed exit.
        stdout_log: Path of the captured stdout log.
        stderr_log: Path of the captured stderr log.
        timed_out: True if the timeout fired.
        killed: True if SIGKILL had to be sent after the grace window.
        spawn_error: Error message when the process could not be started.
        stdout_tail: Last captured stdout lines.
        stderr_tail: Last captured stderr lines.
        dropped_writes: Number of log/display writes that failed and were
            dropped (broken pipes and similar).
    """

    command: tuple[str, ...]
    exit_code: int
    duration_seconds: float
    stdout_log: Path | None = None
    stderr_log: Path | None = None
    timed_out: bool = False
    killed: bool = False
    spawn_error: str | None = None
    stdout_tail: str = ""
    stderr_tail: str = ""
    dropped_writes: int = 0

    @property
    def success(self) -> bool:
        return (
            self.exit_code == 0
            and not self.timed_out
            and not self.killed
            and self.spawn_error is None
        )

    def describe(self) -> str:
        """One-line description of the outcome for summaries."""
        if self.spawn_error is not None:
            return f"could not start: {self.spawn_error}"
        if self.timed_out:
            suffix = " (force-killed)" if self.killed else ""
            return f"timed out after {self.duration_seconds:.1f}s{suffix}"
        if self.success:
            return f"passed in {self.duration_seconds:.1f}s"
        return f"exited with code {self.exit_code} after {self.duration_seconds:.1f}s"


@dataclass(frozen=True)
class CleanupOutcome:
    """Result of one cleanup pass run between attempts or at shutdown."""

    killed_patterns: tuple[str, ...] = ()
    removed_dirs: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class RetryAttempt:
    """One attempt inside a RetryPolicy sequence.

    Attributes:
        index: Attempt number, starting at 1.
        outcome: The ExecutionOutcome, or None if the invocation itself raised.
        error: Exception message when the invocation raised.
        cleanup: The cleanup that ran after this attempt, if any.
    """

    index: int
    outcome: ExecutionOutcome | None
    error: str | None = None
    cleanup: CleanupOutcome | None = None

    @property
    def success(self) -> bool:
        return self.outcome is not None and self.outcome.success

    def describe(self) -> str:
        if self.outcome is None:
            return f"raised: {self.error or 'unknown error'}"
        return self.outcome.describe()


class ExecutionMode(Enum):
    """How the ValidationOrchestrator schedules validator units."""

    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


@dataclass(frozen=True)
class ValidatorResult:
    """Result of one validator unit. Never mutated after creation.

    Attributes:
        name: Validator name (as registered).
        success: Whether the check passed.
        errors: Ordered error strings.
        warnings: Ordered warning strings.
        details: Optional structured payload (JSON-serializable).
        timed_out: True when the failure was caused by a supervised timeout.
    """

    name: str
    success: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    details: Mapping[str, Any] | None = None
    timed_out: bool = False

    @classmethod
    def passed(
        cls,
        name: str,
        warnings: list[str] | tuple[str, ...] = (),
        details: Mapping[str, Any] | None = None,
    ) -> ValidatorResult:
        return cls(name=name, success=True, warnings=tuple(warnings), details=details)

    @classmethod
    def failed(
        cls,
        name: str,
        errors: list[str] | tuple[str, ...],
        warnings: list[str] | tuple[str, ...] = (),
        details: Mapping[str, Any] | None = None,
        timed_out: bool = False,
    ) -> ValidatorResult:
        return cls(
            name=name,
            success=False,
            errors=tuple(errors),
            warnings=tuple(warnings),
            details=details,
            timed_out=timed_out,
        )

    @classmethod
    def from_exception(cls, name: str, exc: BaseException) -> ValidatorResult:
        message = str(exc) or type(exc).__name__
        return cls(name=name, success=False, errors=(message,))

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "success": self.success,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "details": dict(self.details) if self.details is not None else None,
            "timed_out": self.timed_out,
        }


@dataclass(frozen=True)
class ValidationReport:
    """Aggregated results of one orchestrator run.

    Created by ReportAggregator at the end of a run. Results are in
    declaration order regardless of completion order.
    """

    results: tuple[ValidatorResult, ...]
    mode: ExecutionMode
    started_at: str
    finished_at: str
    duration_seconds: float
    skipped: tuple[str, ...] = ()

    @property
    def passed_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def warned_count(self) -> int:
        """Validators that passed but reported warnings."""
        return sum(1 for r in self.results if r.success and r.warnings)

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def dropped_writes(self) -> int:
        total = 0
        for result in self.results:
            if result.details:
                value = result.details.get("dropped_writes", 0)
                if isinstance(value, int):
                    total += value
        return total

    @property
    def overall_exit_code(self) -> int:
        """0 iff every result succeeded; 124 if a failure timed out; else 1."""
        failures = [r for r in self.results if not r.success]
        if not failures:
            return 0
        if any(r.timed_out for r in failures):
            return TIMEOUT_EXIT_CODE
        return 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_seconds": round(self.duration_seconds, 3),
            "mode": self.mode.value,
            "summary": {
                "total": len(self.results),
                "passed": self.passed_count,
                "warned": self.warned_count,
                "failed": self.failed_count,
                "skipped": len(self.skipped),
                "dropped_writes": self.dropped_writes,
            },
            "overall_exit_code": self.overall_exit_code,
            "results": [r.to_dict() for r in self.results],
            "skipped": list(self.skipped),
        }
