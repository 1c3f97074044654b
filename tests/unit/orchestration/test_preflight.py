"""Unit tests for the preflight checks."""

from __future__ import annotations

from pathlib import Path

import httpx
import psutil
import pytest

from src.domain.validation.config_loader import PreflightConfig
from src.orchestration.preflight import MemorySnapshot, Preflight


def make_preflight(
    tmp_path: Path,
    config: PreflightConfig | None = None,
    *,
    tool: str | None = "/usr/bin/npx",
    available_mb: int = 8192,
    server_up: bool = True,
    default_server_url: str | None = None,
) -> tuple[Preflight, list[tuple[str, float]]]:
    requested: list[tuple[str, float]] = []

    async def check_server(url: str, timeout: float) -> bool:
        requested.append((url, timeout))
        if not server_up:
            raise httpx.ConnectError("connection refused")
        return True

    preflight = Preflight(
        config or PreflightConfig(),
        default_server_url=default_server_url,
        cwd=tmp_path,
        which=lambda program: tool,
        read_memory=lambda: MemorySnapshot(total_mb=16384, available_mb=available_mb),
        check_server=check_server,
    )
    return preflight, requested


class TestTool:
    @pytest.mark.asyncio
    async def test_missing_tool_is_an_error(self, tmp_path: Path) -> None:
        preflight, requested = make_preflight(tmp_path, tool=None)

        result = await preflight.run("npx", workers=2)

        assert not result.ok
        assert result.errors == ("test tool not found on PATH: npx",)
        assert requested == []
        assert not (tmp_path / "test-results").exists()

    @pytest.mark.asyncio
    async def test_found_tool(self, tmp_path: Path) -> None:
        preflight, _ = make_preflight(tmp_path)

        result = await preflight.run("npx", workers=2)

        assert result.ok
        assert result.tool_path == "/usr/bin/npx"
        assert result.warnings == ()


class TestDirectories:
    @pytest.mark.asyncio
    async def test_missing_dirs_created(self, tmp_path: Path) -> None:
        (tmp_path / "e2e").mkdir()
        config = PreflightConfig(required_dirs=("e2e", "test-results", "playwright/.auth"))
        preflight, _ = make_preflight(tmp_path, config)

        result = await preflight.run("npx", workers=2)

        assert result.created_dirs == ("test-results", "playwright/.auth")
        assert (tmp_path / "playwright" / ".auth").is_dir()

    @pytest.mark.asyncio
    async def test_uncreatable_dir_is_a_warning(self, tmp_path: Path) -> None:
        (tmp_path / "blocker").write_text("a file, not a directory")
        config = PreflightConfig(required_dirs=("blocker/results",))
        preflight, _ = make_preflight(tmp_path, config)

        result = await preflight.run("npx", workers=2)

        assert result.ok
        assert result.created_dirs == ()
        assert result.warnings[0].startswith("cannot create blocker/results:")


class TestMemory:
    @pytest.mark.asyncio
    async def test_low_memory_reduces_workers(self, tmp_path: Path) -> None:
        preflight, _ = make_preflight(tmp_path, available_mb=1500)

        result = await preflight.run("npx", workers=4)

        assert result.workers == 1
        assert result.memory == MemorySnapshot(total_mb=16384, available_mb=1500)
        assert result.warnings == (
            "low memory (1500 MB available), reducing workers from 4 to 1",
        )

    @pytest.mark.asyncio
    async def test_enough_memory_keeps_workers(self, tmp_path: Path) -> None:
        preflight, _ = make_preflight(tmp_path, available_mb=4096)

        result = await preflight.run("npx", workers=4)

        assert result.workers == 4

    @pytest.mark.asyncio
    async def test_caller_workers_never_lowered(self, tmp_path: Path) -> None:
        preflight, _ = make_preflight(tmp_path, available_mb=100)

        result = await preflight.run("npx", workers=None)

        assert result.workers is None
        assert result.warnings == ()

    @pytest.mark.asyncio
    async def test_threshold_disabled(self, tmp_path: Path) -> None:
        preflight, _ = make_preflight(
            tmp_path, PreflightConfig(min_free_memory_mb=None), available_mb=100
        )

        result = await preflight.run("npx", workers=4)

        assert result.workers == 4
        assert result.memory is None

    @pytest.mark.asyncio
    async def test_unreadable_memory_is_a_warning(self, tmp_path: Path) -> None:
        preflight, _ = make_preflight(tmp_path)

        def broken() -> MemorySnapshot:
            raise OSError("no /proc")

        preflight.read_memory = broken

        result = await preflight.run("npx", workers=4)

        assert result.ok
        assert result.workers == 4
        assert result.warnings[0].startswith("cannot read system memory")


class TestServer:
    @pytest.mark.asyncio
    async def test_no_url_no_request(self, tmp_path: Path) -> None:
        preflight, requested = make_preflight(tmp_path)

        result = await preflight.run("npx", workers=1)

        assert requested == []
        assert result.server_reachable is None

    @pytest.mark.asyncio
    async def test_default_url_requested(self, tmp_path: Path) -> None:
        preflight, requested = make_preflight(
            tmp_path, default_server_url="http://localhost:3000"
        )

        result = await preflight.run("npx", workers=1)

        assert requested == [("http://localhost:3000", 5.0)]
        assert result.server_reachable is True

    @pytest.mark.asyncio
    async def test_configured_url_wins(self, tmp_path: Path) -> None:
        config = PreflightConfig(server_url="http://app.test:8080/health", server_timeout=2.0)
        preflight, requested = make_preflight(
            tmp_path, config, default_server_url="http://localhost:3000"
        )

        await preflight.run("npx", workers=1)

        assert requested == [("http://app.test:8080/health", 2.0)]

    @pytest.mark.asyncio
    async def test_unreachable_server_is_a_warning(self, tmp_path: Path) -> None:
        preflight, _ = make_preflight(
            tmp_path, default_server_url="http://localhost:3000", server_up=False
        )

        result = await preflight.run("npx", workers=1)

        assert result.ok
        assert result.server_reachable is False
        assert result.warnings == ("server not reachable at http://localhost:3000",)
        assert result.to_dict()["server_reachable"] is False
