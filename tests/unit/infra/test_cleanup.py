"""Unit tests for CleanupHook."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from src.infra.tools.cleanup import CleanupHook

if TYPE_CHECKING:
    from pathlib import Path


class RecordingKiller:
    """Stands in for pkill: matches the patterns in `running`."""

    def __init__(self, running: set[str] | None = None, broken: bool = False):
        self.running = running or set()
        self.broken = broken
        self.patterns: list[str] = []

    async def __call__(self, pattern: str) -> bool:
        self.patterns.append(pattern)
        if self.broken:
            raise FileNotFoundError(2, "No such file or directory: 'pkill'")
        return pattern in self.running


class TestCleanupHook:
    @pytest.mark.asyncio
    async def test_kills_matching_patterns(self, tmp_path: Path) -> None:
        killer = RecordingKiller(running={"chrome"})
        hook = CleanupHook(
            ["chrome", "firefox"], [], base_dir=tmp_path, process_killer=killer
        )

        outcome = await hook.run()

        assert killer.patterns == ["chrome", "firefox"]
        assert outcome.killed_patterns == ("chrome",)
        assert outcome.ok

    @pytest.mark.asyncio
    async def test_removes_scratch_dirs(self, tmp_path: Path) -> None:
        scratch = tmp_path / "test-results" / "temp"
        (scratch / "nested").mkdir(parents=True)
        (scratch / "nested" / "trace.zip").write_bytes(b"zip")
        hook = CleanupHook(
            [],
            ["test-results/temp", "missing/dir"],
            base_dir=tmp_path,
            process_killer=RecordingKiller(),
        )

        outcome = await hook.run()

        assert not scratch.exists()
        assert (tmp_path / "test-results").exists()
        assert outcome.removed_dirs == (str(scratch),)
        assert outcome.ok

    @pytest.mark.asyncio
    async def test_absolute_scratch_dir(self, tmp_path: Path) -> None:
        scratch = tmp_path / "abs"
        scratch.mkdir()
        hook = CleanupHook([], [scratch], process_killer=RecordingKiller())

        outcome = await hook.run()

        assert not scratch.exists()
        assert outcome.removed_dirs == (str(scratch),)

    @pytest.mark.asyncio
    async def test_killer_failure_is_collected(self, tmp_path: Path) -> None:
        scratch = tmp_path / "temp"
        scratch.mkdir()
        hook = CleanupHook(
            ["chrome"],
            ["temp"],
            base_dir=tmp_path,
            process_killer=RecordingKiller(broken=True),
        )

        outcome = await hook.run()

        assert not outcome.ok
        assert outcome.errors[0].startswith("kill chrome:")
        # Later steps still run
        assert not scratch.exists()

    @pytest.mark.asyncio
    async def test_unremovable_dir_is_collected(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        scratch = tmp_path / "temp"
        scratch.mkdir()

        def failing_rmtree(path: object) -> None:
            raise PermissionError(13, "Permission denied")

        monkeypatch.setattr("src.infra.tools.cleanup.shutil.rmtree", failing_rmtree)
        hook = CleanupHook(
            [], ["temp"], base_dir=tmp_path, process_killer=RecordingKiller()
        )

        outcome = await hook.run()

        assert outcome.removed_dirs == ()
        assert len(outcome.errors) == 1
        assert "Permission denied" in outcome.errors[0]

    @pytest.mark.asyncio
    async def test_garbage_collection_requested(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        collected: list[bool] = []
        monkeypatch.setattr(
            "src.infra.tools.cleanup.gc.collect", lambda: collected.append(True)
        )

        await CleanupHook([], [], base_dir=tmp_path, process_killer=RecordingKiller()).run()
        await CleanupHook(
            [],
            [],
            base_dir=tmp_path,
            process_killer=RecordingKiller(),
            collect_garbage=False,
        ).run()

        assert collected == [True]
