"""Supervised execution of external processes.

ProcessSupervisor runs one external command at a time per call:

- the child gets its own session (process group) so a timeout or shutdown can
  signal every descendant at once;
- stdout and stderr are each drained by an OutputStreamManager into per-run
  log files that are truncated at the start of the run;
- a wall-clock timeout triggers the escalating shutdown: SIGTERM to the group,
  a grace window, then SIGKILL;
- every failure mode (missing executable, timeout, non-zero exit) resolves to
  an ExecutionOutcome; nothing is raised to the caller.

The live ProcessHandle is registered with an optional ProcessTracker (the
SignalCoordinator) from spawn until confirmed exit.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import re
import signal
import sys
import time
from pathlib import Path
from typing import TYPE_CHECKING

from src.core.models import (
    SPAWN_FAILURE_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    ExecutionOutcome,
    ProcessHandle,
    ProcessState,
)
from src.infra.io.output_stream import LineFilter, OutputStreamManager
from src.infra.tools.command_builder import CommandSpec

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from src.core.protocols import DisplaySink, ProcessTracker

logger = logging.getLogger(__name__)

# Grace window between SIGTERM and SIGKILL
DEFAULT_KILL_GRACE_SECONDS = 5.0

# Lines of stdout/stderr kept on the outcome
OUTCOME_TAIL_LINES = 20

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")

_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


def default_log_name(spec: CommandSpec) -> str:
    """File-system safe log name derived from the program name."""
    name = _UNSAFE_NAME_CHARS.sub("-", Path(spec.program).name).strip("-.")
    return name or "process"


def normalize_returncode(returncode: int | None) -> int:
    """Map asyncio's negative 'killed by signal N' codes to 128 + N."""
    if returncode is None:
        return 1
    if returncode < 0:
        return 128 + (-returncode)
    return returncode


class ProcessSupervisor:
    """Spawns a command, captures its output and enforces its timeout.

    Example:
        supervisor = ProcessSupervisor(log_dir=Path("test-results/logs"))
        outcome = await supervisor.run("npx", ["playwright", "test"], timeout=600)
        if not outcome.success:
            print(outcome.describe())
    """

    def __init__(
        self,
        log_dir: Path | None = None,
        *,
        timeout_seconds: float | None = None,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
        stdout_filter: LineFilter | None = None,
        stderr_filter: LineFilter | None = None,
        display: DisplaySink | None = None,
        tracker: ProcessTracker | None = None,
        use_process_group: bool = True,
        cwd: Path | None = None,
    ) -> None:
        """Initialize the supervisor.

        Args:
            log_dir: Directory for per-run capture logs. None disables logs.
            timeout_seconds: Default timeout when run() is given none.
            kill_grace_seconds: Wait between SIGTERM and SIGKILL.
            stdout_filter: Which stdout lines reach the display sink.
            stderr_filter: Which stderr lines reach the display sink.
            display: Sink for important lines. None disables display.
            tracker: Receives the ProcessHandle for shutdown coordination.
            use_process_group: Start the child in its own session and signal
                the whole group. Ignored on Windows.
            cwd: Default working directory for commands without one.
        """
        self.log_dir = log_dir
        self.timeout_seconds = timeout_seconds
        self.kill_grace_seconds = kill_grace_seconds
        self.stdout_filter = stdout_filter or LineFilter.stdout_default()
        self.stderr_filter = stderr_filter or LineFilter.stderr_default()
        self.display = display
        self.tracker = tracker
        self.use_process_group = use_process_group and sys.platform != "win32"
        self.cwd = cwd

    async def run(
        self,
        command: str,
        arguments: Sequence[str] = (),
        environment: Mapping[str, str] | None = None,
        timeout: float | None = None,
        *,
        log_name: str | None = None,
        source: str | None = None,
    ) -> ExecutionOutcome:
        """Run command with arguments and an environment overlay."""
        spec = CommandSpec(
            program=command,
            args=tuple(str(a) for a in arguments),
            env=dict(environment or {}),
            cwd=self.cwd,
        )
        return await self.run_spec(
            spec, timeout=timeout, log_name=log_name, source=source
        )

    async def run_spec(
        self,
        spec: CommandSpec,
        timeout: float | None = None,
        *,
        log_name: str | None = None,
        source: str | None = None,
    ) -> ExecutionOutcome:
        """Run a CommandSpec under supervision.

        Args:
            spec: The command to run.
            timeout: Wall-clock limit in seconds. Falls back to the
                supervisor default; None means no limit.
            log_name: Base name of the capture logs.
            source: Passed to the display sink with every displayed line.

        Returns:
            ExecutionOutcome describing the run. Never raises for spawn
            failures, timeouts or non-zero exits.
        """
        effective_timeout = timeout if timeout is not None else self.timeout_seconds
        name = log_name or default_log_name(spec)
        stdout_mgr = self._make_manager(name, "stdout", self.stdout_filter, source)
        stderr_mgr = self._make_manager(name, "stderr", self.stderr_filter, source)
        stdout_mgr.open()
        stderr_mgr.open()

        command = tuple(spec.argv)
        start = time.monotonic()
        logger.info("Spawning %s (timeout=%s)", spec.display(), effective_timeout)
        try:
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=spec.merged_env(),
                cwd=spec.cwd or self.cwd,
                start_new_session=self.use_process_group,
            )
        except (OSError, ValueError) as e:
            stdout_mgr.finish()
            stderr_mgr.finish()
            error = _describe_spawn_error(spec, e)
            logger.warning("Spawn failed: %s", error)
            return ExecutionOutcome(
                command=command,
                exit_code=SPAWN_FAILURE_EXIT_CODE,
                duration_seconds=time.monotonic() - start,
                stdout_log=stdout_mgr.log_path,
                stderr_log=stderr_mgr.log_path,
                spawn_error=error,
            )

        handle = ProcessHandle(
            pid=process.pid,
            command=command,
            started_at=start,
            state=ProcessState.RUNNING,
            process_group=self.use_process_group,
        )
        if self.tracker is not None:
            self.tracker.track(handle)

        assert process.stdout is not None and process.stderr is not None
        readers = [
            asyncio.create_task(stdout_mgr.consume(process.stdout)),
            asyncio.create_task(stderr_mgr.consume(process.stderr)),
        ]
        timed_out = False
        killed = False
        try:
            try:
                await asyncio.wait_for(process.wait(), timeout=effective_timeout)
            except TimeoutError:
                timed_out = True
                logger.warning(
                    "Timeout after %ss, terminating pid %d", effective_timeout, process.pid
                )
                killed = await self._escalate(process, handle)
            duration = time.monotonic() - start
            handle.mark_exited()
            await self._drain(readers)
        except asyncio.CancelledError:
            # Do not let the child outlive a cancelled supervisor
            if handle.is_alive:
                handle.send_signal(_SIGKILL)
            for reader in readers:
                reader.cancel()
            await asyncio.gather(*readers, return_exceptions=True)
            raise
        finally:
            handle.mark_exited()
            if self.tracker is not None:
                self.tracker.untrack(handle)

        exit_code = (
            TIMEOUT_EXIT_CODE if timed_out else normalize_returncode(process.returncode)
        )
        outcome = ExecutionOutcome(
            command=command,
            exit_code=exit_code,
            duration_seconds=duration,
            stdout_log=stdout_mgr.log_path,
            stderr_log=stderr_mgr.log_path,
            timed_out=timed_out,
            killed=killed,
            stdout_tail=stdout_mgr.tail(OUTCOME_TAIL_LINES),
            stderr_tail=stderr_mgr.tail(OUTCOME_TAIL_LINES),
            dropped_writes=stdout_mgr.stats.dropped_writes
            + stderr_mgr.stats.dropped_writes,
        )
        logger.info("Finished %s: %s", spec.display(), outcome.describe())
        return outcome

    def _make_manager(
        self, name: str, stream: str, line_filter: LineFilter, source: str | None
    ) -> OutputStreamManager:
        log_path = self.log_dir / f"{name}.{stream}.log" if self.log_dir else None
        display = self.display
        if display is not None and source is not None:
            display = functools.partial(display, source=source)
        return OutputStreamManager(
            log_path=log_path, line_filter=line_filter, display=display
        )

    async def _escalate(
        self, process: asyncio.subprocess.Process, handle: ProcessHandle
    ) -> bool:
        """SIGTERM, wait the grace window, then SIGKILL.

        Returns:
            True if SIGKILL had to be sent.
        """
        handle.send_signal(signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace_seconds)
            return False
        except TimeoutError:
            logger.warning(
                "pid %d ignored SIGTERM for %ss, sending SIGKILL",
                process.pid,
                self.kill_grace_seconds,
            )
            handle.send_signal(_SIGKILL)
            await process.wait()
            return True

    async def _drain(self, readers: list[asyncio.Task[None]]) -> None:
        """Wait for both streams to reach EOF.

        Descendants outside the process group can keep a pipe open after the
        child exited; such readers are cancelled after the grace window.
        """
        _, pending = await asyncio.wait(readers, timeout=self.kill_grace_seconds)
        for reader in pending:
            reader.cancel()
        if pending:
            logger.debug("Cancelled %d stream reader(s) still open", len(pending))
        results = await asyncio.gather(*readers, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning("Stream reader failed: %s", result)


def _describe_spawn_error(spec: CommandSpec, error: Exception) -> str:
    if isinstance(error, FileNotFoundError):
        if spec.cwd is not None and not Path(spec.cwd).exists():
            return f"working directory not found: {spec.cwd}"
        return f"executable not found: {spec.program}"
    if isinstance(error, PermissionError):
        return f"permission denied: {spec.program}"
    return f"failed to start {spec.program}: {error}"
