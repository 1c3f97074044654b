"""Tests for the warden CLI commands.

Commands are called as plain functions; typer.Exit carries the exit code.
"""

from __future__ import annotations

import io
import json
import sys
from typing import TYPE_CHECKING

import pytest
import typer
import yaml
from typer.testing import CliRunner

import src.cli.cli as cli
import src.infra.io.log_output.console as console
from src.core.models import ExecutionMode
from src.domain.validation.config_loader import RunnerConfig
from src.domain.validation.report import REPORT_JSON_NAME, SUMMARY_TEXT_NAME, ReportFormat
from src.orchestration.stable_runner import RUN_SUMMARY_NAME

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Empty project directory used as cwd, with artifacts under it."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("WARDEN_ARTIFACTS_DIR", str(tmp_path / "artifacts"))
    for var in ("WARDEN_MAX_HEAP_MB", "WARDEN_THREADPOOL_SIZE", "WARDEN_BASE_URL"):
        monkeypatch.delenv(var, raising=False)
    return tmp_path


def write_config(directory: Path, data: dict[str, object]) -> Path:
    path = directory / "warden.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


class TestBootstrap:
    def test_bootstrap_is_idempotent(self, monkeypatch: pytest.MonkeyPatch) -> None:
        calls = {"count": 0}

        def counting_load() -> bool:
            calls["count"] += 1
            return False

        monkeypatch.setattr(cli, "load_user_env", counting_load)
        monkeypatch.setattr(cli, "_bootstrapped", False)

        cli.bootstrap()
        cli.bootstrap()

        assert calls["count"] == 1


class TestApplyOverrides:
    def test_none_means_not_given(self) -> None:
        runner = RunnerConfig(max_attempts=5)
        assert cli._apply_overrides(runner, max_attempts=None) == runner

    def test_given_values_win(self) -> None:
        runner = cli._apply_overrides(
            RunnerConfig(), max_attempts=1, mode=ExecutionMode.SEQUENTIAL
        )
        assert runner.max_attempts == 1
        assert runner.mode is ExecutionMode.SEQUENTIAL

    def test_zero_timeout_disables(self) -> None:
        assert cli._apply_overrides(RunnerConfig(), timeout=0).timeout is None


class TestShowConfig:
    def test_prints_defaults(
        self, project: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        with pytest.raises(typer.Exit) as excinfo:
            cli.show_config(config=None)

        assert excinfo.value.exit_code == 0
        out = capsys.readouterr().out
        assert out.startswith("# warden.yaml: defaults")
        assert "max_attempts: 3" in out
        assert "--max-old-space-size=2048" in out

    def test_invalid_config_exits_2(
        self, project: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        write_config(project, {"max_attempts": 0, "colour": "blue"})

        with pytest.raises(typer.Exit) as excinfo:
            cli.show_config(config=None)

        assert excinfo.value.exit_code == 2
        out = capsys.readouterr().out
        assert "max_attempts must be a positive integer" in out
        assert "Unknown field 'colour'" in out

    def test_missing_explicit_config_exits_2(self, project: Path) -> None:
        with pytest.raises(typer.Exit) as excinfo:
            cli.show_config(config=project / "nope.yaml")
        assert excinfo.value.exit_code == 2

    def test_invalid_environment_exits_2(
        self, project: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("WARDEN_MAX_HEAP_MB", "plenty")
        with pytest.raises(typer.Exit) as excinfo:
            cli.show_config(config=None)
        assert excinfo.value.exit_code == 2

    def test_through_typer(self, project: Path) -> None:
        result = CliRunner().invoke(cli.app, ["show-config"])
        assert result.exit_code == 0
        assert "test_command:" in result.output


class TestValidate:
    def test_env_validator_passes(
        self,
        project: Path,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        monkeypatch.setenv("WARDEN_CLI_TOKEN", "secret")
        write_config(
            project,
            {"validators": [{"name": "env", "required_env": ["WARDEN_CLI_TOKEN"]}]},
        )

        with pytest.raises(typer.Exit) as excinfo:
            cli.validate(config=None)

        assert excinfo.value.exit_code == 0
        out = capsys.readouterr().out
        assert "Validation summary (parallel" in out
        report = json.loads((project / "artifacts" / REPORT_JSON_NAME).read_text())
        assert report["overall_exit_code"] == 0
        assert report["results"][0]["name"] == "env"
        assert (project / "artifacts" / SUMMARY_TEXT_NAME).exists()

    def test_missing_env_fails_and_respects_format(
        self, project: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("WARDEN_CLI_ABSENT", raising=False)
        write_config(
            project,
            {"validators": [{"name": "env", "required_env": ["WARDEN_CLI_ABSENT"]}]},
        )

        with pytest.raises(typer.Exit) as excinfo:
            cli.validate(fmt=ReportFormat.JSON, parallel=False, config=None)

        assert excinfo.value.exit_code == 1
        data = json.loads((project / "artifacts" / REPORT_JSON_NAME).read_text())
        assert data["mode"] == "sequential"
        assert data["results"][0]["errors"] == ["WARDEN_CLI_ABSENT is not set"]
        assert not (project / "artifacts" / SUMMARY_TEXT_NAME).exists()

    def test_artifacts_dir_option(
        self, project: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("WARDEN_CLI_TOKEN", "secret")
        write_config(
            project,
            {"validators": [{"name": "env", "required_env": ["WARDEN_CLI_TOKEN"]}]},
        )

        with pytest.raises(typer.Exit):
            cli.validate(artifacts_dir=project / "elsewhere", config=None)

        assert (project / "elsewhere" / REPORT_JSON_NAME).exists()
        assert not (project / "artifacts").exists()

    def test_no_validators_exits_2(self, project: Path) -> None:
        with pytest.raises(typer.Exit) as excinfo:
            cli.validate(config=None)
        assert excinfo.value.exit_code == 2

    def test_tests_name_collision_exits_2(self, project: Path) -> None:
        write_config(
            project, {"validators": [{"name": "tests", "required_env": ["HOME"]}]}
        )
        with pytest.raises(typer.Exit) as excinfo:
            cli.validate(with_tests=True, config=None)
        assert excinfo.value.exit_code == 2


class TestRunTests:
    def test_missing_test_tool_fails_preflight(
        self, project: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        write_config(project, {"test_command": ["warden-missing-test-tool-xyz"]})

        with pytest.raises(typer.Exit) as excinfo:
            cli.run_tests(tool_args=None, retries=1, fmt=ReportFormat.JSON, config=None)

        assert excinfo.value.exit_code == 1
        out = capsys.readouterr().out
        assert "test tool not found on PATH: warden-missing-test-tool-xyz" in out
        data = json.loads((project / "artifacts" / REPORT_JSON_NAME).read_text())
        result = data["results"][0]
        assert result["name"] == "tests"
        assert result["errors"] == [
            "preflight: test tool not found on PATH: warden-missing-test-tool-xyz"
        ]
        assert "attempts" not in result["details"]

    def test_missing_test_tool_without_preflight(
        self, project: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        write_config(project, {"test_command": ["warden-missing-test-tool-xyz"]})

        with pytest.raises(typer.Exit) as excinfo:
            cli.run_tests(
                tool_args=None,
                retries=1,
                no_preflight=True,
                fmt=ReportFormat.JSON,
                config=None,
            )

        assert excinfo.value.exit_code == 1
        out = capsys.readouterr().out
        assert "executable not found: warden-missing-test-tool-xyz" in out
        data = json.loads((project / "artifacts" / REPORT_JSON_NAME).read_text())
        assert data["results"][0]["details"]["max_attempts"] == 1

    def test_run_summary_written(self, project: Path) -> None:
        write_config(project, {"test_command": ["warden-missing-test-tool-xyz"]})

        with pytest.raises(typer.Exit):
            cli.run_tests(tool_args=["--grep", "cart"], retries=1, config=None)

        summary = json.loads((project / "artifacts" / RUN_SUMMARY_NAME).read_text())
        assert summary["success"] is False
        assert summary["exit_code"] == 1
        assert summary["environment"]["platform"]
        configuration = summary["configuration"]
        assert configuration["command"][:3] == [
            "warden-missing-test-tool-xyz",
            "--grep",
            "cart",
        ]
        assert configuration["runner"]["max_attempts"] == 1
        assert "NODE_OPTIONS" in configuration["child_env"]
        assert summary["result"]["name"] == "tests"

    def test_no_run_summary_with_format_none(self, project: Path) -> None:
        write_config(project, {"test_command": ["warden-missing-test-tool-xyz"]})

        with pytest.raises(typer.Exit):
            cli.run_tests(
                tool_args=None, retries=1, fmt=ReportFormat.NONE, config=None
            )

        assert not (project / "artifacts" / RUN_SUMMARY_NAME).exists()


class BrokenStdout:
    """A stdout whose reader has gone away."""

    def write(self, text: str) -> int:
        raise BrokenPipeError(32, "Broken pipe")

    def flush(self) -> None:
        raise BrokenPipeError(32, "Broken pipe")

    def fileno(self) -> int:
        raise io.UnsupportedOperation("fileno")


class TestClosedStdout:
    def test_report_written_and_exit_code_kept(
        self, project: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("WARDEN_CLI_TOKEN", "secret")
        write_config(
            project,
            {
                "validators": [
                    {"name": "env", "required_env": ["WARDEN_CLI_TOKEN"]},
                    {"name": "env-missing", "required_env": ["WARDEN_CLI_ABSENT"]},
                ]
            },
        )
        monkeypatch.delenv("WARDEN_CLI_ABSENT", raising=False)
        monkeypatch.setattr(sys, "stdout", BrokenStdout())

        with pytest.raises(typer.Exit) as excinfo:
            cli.validate(parallel=True, config=None)

        assert excinfo.value.exit_code == 1
        report = json.loads((project / "artifacts" / REPORT_JSON_NAME).read_text())
        assert [r["name"] for r in report["results"]] == ["env", "env-missing"]
        assert (project / "artifacts" / SUMMARY_TEXT_NAME).exists()

    def test_display_line_with_source(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.setattr(console, "_verbose_enabled", False)
        cli._display_line("x" * 1000, source="lint")

        out = capsys.readouterr().out
        assert "[lint]" in out
        assert "x" * cli.MAX_DISPLAY_LINE + "..." in out
        assert "x" * (cli.MAX_DISPLAY_LINE + 1) not in out
