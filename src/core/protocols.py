"""Protocol definitions for the seams between warden components.

These protocols let the orchestration layer depend on shapes rather than on
concrete infra classes, so tests can inject in-memory fakes (see tests/fakes).

Design principles:
- Protocols use structural typing (typing.Protocol) for flexibility
- Methods match exactly what the callers actually use
- The canonical implementations live in src/infra and src/pipeline
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from src.core.models import (
        CleanupOutcome,
        ExecutionOutcome,
        ProcessHandle,
        ValidatorResult,
    )
    from src.infra.tools.command_builder import CommandSpec


@runtime_checkable
class DisplaySink(Protocol):
    """Receives important output lines for display (best-effort).

    source names the validator the line came from, when known.
    """

    def __call__(self, line: str, source: str | None = None) -> None: ...


@runtime_checkable
class ProcessTracker(Protocol):
    """Keeps references to live child processes for shutdown purposes.

    The canonical implementation is SignalCoordinator in
    src/infra/signal_coordinator.py.
    """

    def track(self, handle: ProcessHandle) -> None: ...

    def untrack(self, handle: ProcessHandle) -> None: ...


@runtime_checkable
class CleanupPort(Protocol):
    """Cleanup run between retry attempts and during shutdown."""

    async def run(self) -> CleanupOutcome: ...


@runtime_checkable
class SupervisorPort(Protocol):
    """Protocol for abstracting supervised command execution.

    The canonical implementation is ProcessSupervisor in
    src/infra/tools/process_supervisor.py.
    """

    async def run_spec(
        self,
        spec: CommandSpec,
        timeout: float | None = None,
        *,
        log_name: str | None = None,
        source: str | None = None,
    ) -> ExecutionOutcome: ...


class ValidatorCheck(Protocol):
    """Invokable body of a validator unit.

    May return the result directly (pure in-process checks) or an awaitable
    (checks that supervise external processes). May raise; the orchestrator
    converts exceptions into failed results.
    """

    def __call__(self) -> ValidatorResult | Awaitable[ValidatorResult]: ...
