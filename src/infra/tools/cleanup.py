"""Cleanup run between retry attempts and after a shutdown.

A failed test-tool run tends to leave browsers, dev servers and scratch
directories behind. CleanupHook removes them so the next attempt starts from
a clean slate:

1. kill stray processes whose command line matches a configured pattern
   (``pkill -f <pattern>``);
2. delete the configured scratch directories;
3. request a garbage collection in this process.

Every step is best-effort: failures are collected as strings on the
CleanupOutcome and logged, never raised.
"""

from __future__ import annotations

import asyncio
import gc
import logging
import shutil
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from src.core.models import CleanupOutcome

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

logger = logging.getLogger(__name__)

# Stray browser processes left behind by an aborted test-tool run
DEFAULT_PROCESS_PATTERNS: tuple[str, ...] = ("chrome", "firefox", "webkit")

# Scratch directories the test tool recreates on every run
DEFAULT_SCRATCH_DIRS: tuple[str, ...] = (
    "test-results/temp",
    "playwright/.auth/temp",
)

# Upper bound for one pkill invocation
PKILL_TIMEOUT_SECONDS = 10.0


async def pkill_pattern(pattern: str) -> bool:
    """Kill processes whose full command line matches pattern.

    Returns:
        True if at least one process matched (pkill exit 0), False if none
        did (exit 1).

    Raises:
        OSError: pkill is unavailable or failed for another reason.
    """
    if sys.platform == "win32":
        return False
    proc = await asyncio.create_subprocess_exec(
        "pkill",
        "-f",
        pattern,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        _, stderr = await asyncio.wait_for(
            proc.communicate(), timeout=PKILL_TIMEOUT_SECONDS
        )
    except TimeoutError:
        proc.kill()
        await proc.wait()
        raise OSError(f"pkill -f {pattern} timed out") from None
    if proc.returncode == 0:
        return True
    if proc.returncode == 1:
        return False
    message = stderr.decode("utf-8", errors="replace").strip()
    raise OSError(f"pkill -f {pattern} exited {proc.returncode}: {message}")


class CleanupHook:
    """Kills stray processes and removes scratch directories.

    Example:
        hook = CleanupHook(process_patterns=["chrome"], scratch_dirs=[tmp])
        outcome = await hook.run()
        if not outcome.ok:
            logger.warning("cleanup: %s", outcome.errors)
    """

    def __init__(
        self,
        process_patterns: Sequence[str] = DEFAULT_PROCESS_PATTERNS,
        scratch_dirs: Sequence[str | Path] = DEFAULT_SCRATCH_DIRS,
        *,
        base_dir: Path | None = None,
        process_killer: Callable[[str], Awaitable[bool]] | None = None,
        collect_garbage: bool = True,
    ) -> None:
        """Initialize the hook.

        Args:
            process_patterns: ``pkill -f`` patterns for stray processes.
            scratch_dirs: Directories to delete; relative paths are resolved
                against base_dir.
            base_dir: Base for relative scratch dirs (default: cwd at run time).
            process_killer: Replaces pkill_pattern, mainly for tests.
            collect_garbage: Whether to call gc.collect().
        """
        self.process_patterns = tuple(process_patterns)
        self.scratch_dirs = tuple(Path(d) for d in scratch_dirs)
        self.base_dir = base_dir
        self._kill = process_killer or pkill_pattern
        self.collect_garbage = collect_garbage

    async def run(self) -> CleanupOutcome:
        killed: list[str] = []
        removed: list[str] = []
        errors: list[str] = []

        for pattern in self.process_patterns:
            try:
                if await self._kill(pattern):
                    killed.append(pattern)
            except OSError as e:
                errors.append(f"kill {pattern}: {e}")

        base = self.base_dir or Path.cwd()
        for scratch in self.scratch_dirs:
            path = scratch if scratch.is_absolute() else base / scratch
            if not path.exists():
                continue
            try:
                shutil.rmtree(path)
                removed.append(str(path))
            except OSError as e:
                errors.append(f"remove {path}: {e}")

        if self.collect_garbage:
            gc.collect()

        outcome = CleanupOutcome(
            killed_patterns=tuple(killed),
            removed_dirs=tuple(removed),
            errors=tuple(errors),
        )
        if outcome.ok:
            logger.debug(
                "Cleanup done: killed=%s removed=%s", outcome.killed_patterns, removed
            )
        else:
            logger.warning("Cleanup finished with errors: %s", "; ".join(errors))
        return outcome
