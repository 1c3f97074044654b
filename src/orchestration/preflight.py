"""Checks run before the test tool starts.

Preflight answers four questions before the first attempt:

- is the test tool on PATH? (missing tool: the run fails without an attempt)
- do the directories the tool writes into exist? (created when missing)
- is there enough free memory for the configured workers? (if not, the
  worker count drops, unless the caller chose one)
- does the server under test answer? (a warning only; the tool may start
  its own server)

Checks are injectable so the checks can be exercised without a real system.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx
import psutil

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from src.domain.validation.config_loader import PreflightConfig

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


@dataclass(frozen=True)
class MemorySnapshot:
    total_mb: int
    available_mb: int

    def to_dict(self) -> dict[str, int]:
        return {"total_mb": self.total_mb, "available_mb": self.available_mb}


def memory_snapshot() -> MemorySnapshot:
    memory = psutil.virtual_memory()
    return MemorySnapshot(
        total_mb=memory.total // _MB, available_mb=memory.available // _MB
    )


async def check_http(url: str, timeout: float = 5.0) -> bool:
    """Check that url answers with a non-error status.

    Raises:
        httpx.HTTPError: On connection failure, timeout or an error status.
    """
    async with httpx.AsyncClient(timeout=timeout) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return True


@dataclass(frozen=True)
class PreflightResult:
    """What preflight found. errors make the run fail before any attempt."""

    tool_path: str | None = None
    workers: int | None = None
    created_dirs: tuple[str, ...] = ()
    memory: MemorySnapshot | None = None
    server_url: str | None = None
    server_reachable: bool | None = None
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_path": self.tool_path,
            "workers": self.workers,
            "created_dirs": list(self.created_dirs),
            "memory": self.memory.to_dict() if self.memory else None,
            "server_url": self.server_url,
            "server_reachable": self.server_reachable,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


@dataclass
class Preflight:
    """Runs the preflight checks for one test-tool invocation.

    Example:
        preflight = Preflight(runner.preflight, default_server_url=base_url)
        result = await preflight.run("npx", workers=2)
        if not result.ok:
            ...  # fail without starting the tool
    """

    config: PreflightConfig
    default_server_url: str | None = None
    cwd: Path | None = None
    which: Callable[[str], str | None] = shutil.which
    read_memory: Callable[[], MemorySnapshot] = memory_snapshot
    check_server: Callable[[str, float], Awaitable[bool]] = check_http

    @property
    def server_url(self) -> str | None:
        return self.config.server_url or self.default_server_url

    async def run(self, program: str, workers: int | None) -> PreflightResult:
        """Run every check.

        Args:
            program: Executable of the test tool.
            workers: Worker count that would be passed, or None when the
                caller chose one (or workers are disabled); None is never
                lowered.
        """
        logger.info("Running preflight checks for %s", program)
        tool_path = self.which(program)
        if tool_path is None:
            return PreflightResult(
                errors=(f"test tool not found on PATH: {program}",)
            )

        warnings: list[str] = []
        created = self._ensure_dirs(warnings)
        memory = self._memory(warnings)
        if (
            memory is not None
            and workers is not None
            and self.config.min_free_memory_mb is not None
            and memory.available_mb < self.config.min_free_memory_mb
            and workers > self.config.low_memory_workers
        ):
            warnings.append(
                f"low memory ({memory.available_mb} MB available), "
                f"reducing workers from {workers} to {self.config.low_memory_workers}"
            )
            workers = self.config.low_memory_workers

        reachable = None
        url = self.server_url
        if url:
            reachable = await self._server_up(url)
            if not reachable:
                warnings.append(f"server not reachable at {url}")

        for warning in warnings:
            logger.warning("Preflight: %s", warning)
        return PreflightResult(
            tool_path=tool_path,
            workers=workers,
            created_dirs=created,
            memory=memory,
            server_url=url,
            server_reachable=reachable,
            warnings=tuple(warnings),
        )

    def _ensure_dirs(self, warnings: list[str]) -> tuple[str, ...]:
        base = self.cwd or Path.cwd()
        created = []
        for name in self.config.required_dirs:
            path = base / name
            if path.is_dir():
                continue
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                warnings.append(f"cannot create {name}: {e}")
                continue
            logger.info("Created directory %s", path)
            created.append(name)
        return tuple(created)

    def _memory(self, warnings: list[str]) -> MemorySnapshot | None:
        if self.config.min_free_memory_mb is None:
            return None
        try:
            return self.read_memory()
        except (psutil.Error, OSError) as e:
            warnings.append(f"cannot read system memory: {e}")
            return None

    async def _server_up(self, url: str) -> bool:
        try:
            return await self.check_server(url, self.config.server_timeout)
        except (httpx.HTTPError, OSError) as e:
            logger.debug("Server check of %s failed: %s", url, e)
            return False
