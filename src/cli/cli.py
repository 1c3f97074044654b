#!/usr/bin/env python3
# ruff: noqa: E402
"""
warden CLI: resilient runner for flaky external test processes.

Usage:
    warden test [OPTIONS] [-- TOOL_ARGS...]
    warden validate [OPTIONS]
    warden show-config [OPTIONS]

Exit codes:
    0    every validator passed
    1    at least one validator failed
    2    invalid configuration or usage
    124  a supervised process was killed by its timeout
    128+N  interrupted by signal N
"""

from __future__ import annotations

from ..infra.tools.env import load_user_env

# Bootstrap state: tracks whether bootstrap() has been called
_bootstrapped = False


def bootstrap() -> None:
    """Initialize environment.

    Must be called before WardenConfig.from_env(). Idempotent.

    Side effects:
        - Loads environment variables from ~/.config/warden/.env
    """
    global _bootstrapped

    if _bootstrapped:
        return

    load_user_env()

    _bootstrapped = True


import asyncio
import dataclasses
import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Never

import typer
import yaml

from src.config import ConfigError, WardenConfig
from src.core.models import ExecutionMode
from src.domain.validation.config_loader import (
    config_to_dict,
    dump_config,
    load_config,
)
from src.domain.validation.report import ReportFormat
from src.domain.validation.validators import ValidatorRegistry
from src.infra.io.log_output.console import (
    Colors,
    emit,
    log,
    log_output_line,
    log_verbose,
    release_stdout,
    set_verbose,
    truncate_text,
)
from src.infra.io.log_output.run_metadata import (
    cleanup_debug_logging,
    configure_debug_logging,
    new_run_id,
)
from src.orchestration.factory import build_registry, create_runtime
from src.orchestration.stable_runner import RUN_SUMMARY_NAME, build_run_summary

if TYPE_CHECKING:
    from collections.abc import Callable

    from src.core.models import ValidationReport, ValidatorResult
    from src.domain.validation.config_loader import RunnerConfig
    from src.orchestration.factory import WardenRuntime

logger = logging.getLogger(__name__)

# Longest captured child line echoed to the console (full lines are in the logs)
MAX_DISPLAY_LINE = 240

# Exit code for configuration and usage errors
USAGE_EXIT_CODE = 2


app = typer.Typer(
    name="warden",
    help="Resilient runner for flaky external test processes",
    add_completion=False,
)


def _display_line(line: str, source: str | None = None) -> None:
    log_output_line(truncate_text(line, MAX_DISPLAY_LINE), source=source)


def _report_result(result: ValidatorResult) -> None:
    if result.success:
        if result.warnings:
            log("⚠", f"{result.name}: {result.warnings[0]}", Colors.YELLOW)
        else:
            log("✓", f"{result.name} passed", Colors.GREEN)
        return
    first = result.errors[-1] if result.errors else "failed"
    log("✗", f"{result.name}: {truncate_text(first, MAX_DISPLAY_LINE)}", Colors.RED)


def _load_settings(config_path: Path | None) -> tuple[WardenConfig, RunnerConfig]:
    """Read environment and warden.yaml, exiting 2 on invalid configuration."""
    try:
        return WardenConfig.from_env(), load_config(config_path)
    except ConfigError as e:
        log("✗", str(e), Colors.RED)
        raise typer.Exit(USAGE_EXIT_CODE) from None


def _apply_overrides(runner: RunnerConfig, **overrides: object) -> RunnerConfig:
    """CLI options win over warden.yaml; None means 'not given'."""
    given = {k: v for k, v in overrides.items() if v is not None}
    if given.get("timeout") == 0:
        # --timeout 0 disables the per-attempt timeout
        given["timeout"] = None
    return dataclasses.replace(runner, **given)


async def _execute(
    runtime: WardenRuntime,
    registry: ValidatorRegistry,
    mode: ExecutionMode,
    stop_on_first_failure: bool,
) -> ValidationReport | None:
    """Run the registry under the signal coordinator.

    Returns:
        The report, or None when the run was interrupted.
    """
    coordinator = runtime.coordinator
    coordinator.install(asyncio.get_running_loop())
    coordinator.attach(asyncio.current_task())
    try:
        return await runtime.orchestrator(on_result=_report_result).run(
            registry, mode, stop_on_first_failure
        )
    except asyncio.CancelledError:
        if not coordinator.shutdown_requested:
            raise
        await coordinator.shutdown(coordinator.reason or "interrupted")
        return None
    except Exception as e:
        logger.exception("Orchestration failed")
        await coordinator.shutdown(f"unexpected error: {e}")
        raise
    finally:
        coordinator.uninstall()


def _finish(
    runtime: WardenRuntime,
    registry: ValidatorRegistry,
    mode: ExecutionMode,
    stop_on_first_failure: bool,
    fmt: ReportFormat,
    after_run: Callable[[ValidationReport | None, int, float], None] | None = None,
) -> Never:
    """Run, persist the report and exit with the run's exit code.

    Artifacts are written before anything is printed so a closed stdout
    cannot lose them. after_run gets (report, exit_code, duration).
    """
    settings = runtime.settings
    run_id = new_run_id()
    debug_log = None
    if settings.debug_log_enabled:
        debug_log = configure_debug_logging(runtime.artifacts_dir, run_id)
        if debug_log is not None:
            log_verbose("◦", f"Debug log: {debug_log}")

    start = time.monotonic()
    report = None
    exit_code = 1
    try:
        try:
            report = asyncio.run(
                _execute(runtime, registry, mode, stop_on_first_failure)
            )
        except Exception as e:
            exit_code = runtime.coordinator.exit_code or 1
            log("✗", f"Internal error: {e}", Colors.RED)
            raise typer.Exit(exit_code) from None

        if report is None:
            exit_code = runtime.coordinator.exit_code or 1
            log("✗", f"Interrupted ({runtime.coordinator.reason})", Colors.RED)
            raise typer.Exit(exit_code)

        exit_code = runtime.coordinator.exit_code or report.overall_exit_code
        written = runtime.aggregator.write_artifacts(report, runtime.artifacts_dir, fmt)

        emit("")
        emit(runtime.aggregator.render_summary(report).rstrip("\n"))
        for path in written:
            log_verbose("◦", f"Wrote {path}")
        if exit_code == 0:
            log("✓", "All validators passed", Colors.GREEN)
        raise typer.Exit(exit_code)
    finally:
        if after_run is not None:
            try:
                after_run(report, exit_code, time.monotonic() - start)
            except Exception as e:
                logger.warning("Post-run step failed: %s", e)
        if debug_log is not None:
            cleanup_debug_logging(run_id)
        release_stdout()


# Shared option declarations
ConfigOption = Annotated[
    Path | None,
    typer.Option(
        "--config",
        "-c",
        help="Path to warden.yaml (default: ./warden.yaml if present)",
        rich_help_panel="Configuration",
    ),
]
ArtifactsOption = Annotated[
    Path | None,
    typer.Option(
        "--artifacts-dir",
        help="Directory for reports and logs (default: $WARDEN_ARTIFACTS_DIR)",
        rich_help_panel="Output",
    ),
]
FormatOption = Annotated[
    ReportFormat,
    typer.Option(
        "--format",
        help="Report artifacts to write",
        rich_help_panel="Output",
    ),
]
RetriesOption = Annotated[
    int | None,
    typer.Option(
        "--retries",
        "-r",
        min=1,
        help="Maximum attempts per command (default: 3)",
        rich_help_panel="Retries & Timeouts",
    ),
]
TimeoutOption = Annotated[
    float | None,
    typer.Option(
        "--timeout",
        "-t",
        min=0,
        help="Timeout per attempt in seconds, 0 disables (default: 1800)",
        rich_help_panel="Retries & Timeouts",
    ),
]
VerboseOption = Annotated[
    bool,
    typer.Option(
        "--verbose",
        "-v",
        help="Show full output lines and artifact paths",
        rich_help_panel="Debugging",
    ),
]


@app.command("test")
def run_tests(
    tool_args: Annotated[
        list[str] | None,
        typer.Argument(
            help="Arguments passed verbatim to the test tool (after --)",
        ),
    ] = None,
    retries: RetriesOption = None,
    timeout: TimeoutOption = None,
    retry_delay: Annotated[
        float | None,
        typer.Option(
            "--retry-delay",
            min=0,
            help="Seconds to wait between attempts (default: 5)",
            rich_help_panel="Retries & Timeouts",
        ),
    ] = None,
    grace: Annotated[
        float | None,
        typer.Option(
            "--grace",
            min=0,
            help="Seconds between SIGTERM and SIGKILL (default: 5)",
            rich_help_panel="Retries & Timeouts",
        ),
    ] = None,
    no_preflight: Annotated[
        bool,
        typer.Option(
            "--no-preflight",
            help="Skip the tool, directory, memory and server checks",
            rich_help_panel="Execution",
        ),
    ] = False,
    fmt: FormatOption = ReportFormat.BOTH,
    artifacts_dir: ArtifactsOption = None,
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> Never:
    """Run the test tool under supervision with retries."""
    set_verbose(verbose)
    settings, runner = _load_settings(config)
    runner = _apply_overrides(
        runner,
        max_attempts=retries,
        timeout=timeout,
        retry_delay=retry_delay,
        kill_grace=grace,
    )
    if no_preflight:
        runner = dataclasses.replace(
            runner, preflight=dataclasses.replace(runner.preflight, enabled=False)
        )

    runtime = create_runtime(
        settings, runner, artifacts_dir=artifacts_dir, display=_display_line
    )
    stable = runtime.stable_runner()
    command = stable.build_command(tool_args or [])
    log(
        "●",
        f"Running {command.display()} (max {runner.max_attempts} attempt(s))",
        Colors.CYAN,
    )
    registry = ValidatorRegistry()
    registry.add(stable.name, stable.as_validator(tool_args or []))

    def write_run_summary(
        report: ValidationReport | None, exit_code: int, duration: float
    ) -> None:
        if fmt is ReportFormat.NONE:
            return
        payload = build_run_summary(
            report.results[0] if report and report.results else None,
            exit_code=exit_code,
            duration_seconds=duration,
            configuration={
                "runner": config_to_dict(runner),
                "command": command.argv,
                "child_env": settings.child_env(),
            },
        )
        path = runtime.artifacts_dir / RUN_SUMMARY_NAME
        if runtime.aggregator.write_json(path, payload):
            log_verbose("◦", f"Wrote {path}")

    _finish(
        runtime,
        registry,
        ExecutionMode.SEQUENTIAL,
        False,
        fmt,
        after_run=write_run_summary,
    )


@app.command()
def validate(
    parallel: Annotated[
        bool | None,
        typer.Option(
            "--parallel/--sequential",
            help="Run validators concurrently or one by one (default: from warden.yaml)",
            rich_help_panel="Execution",
        ),
    ] = None,
    stop_on_failure: Annotated[
        bool,
        typer.Option(
            "--stop-on-failure",
            help="Sequential mode: skip remaining validators after a failure",
            rich_help_panel="Execution",
        ),
    ] = False,
    with_tests: Annotated[
        bool,
        typer.Option(
            "--with-tests",
            help="Also run the test tool as the last validator",
            rich_help_panel="Execution",
        ),
    ] = False,
    retries: RetriesOption = None,
    timeout: TimeoutOption = None,
    fmt: FormatOption = ReportFormat.BOTH,
    artifacts_dir: ArtifactsOption = None,
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> Never:
    """Run every validator from warden.yaml and report the results."""
    set_verbose(verbose)
    settings, runner = _load_settings(config)
    mode = None
    if parallel is not None:
        mode = ExecutionMode.PARALLEL if parallel else ExecutionMode.SEQUENTIAL
    runner = _apply_overrides(
        runner,
        max_attempts=retries,
        timeout=timeout,
        mode=mode,
        stop_on_first_failure=stop_on_failure or None,
        include_tests=with_tests or None,
    )

    runtime = create_runtime(
        settings, runner, artifacts_dir=artifacts_dir, display=_display_line
    )
    try:
        registry = build_registry(runtime, include_tests=runner.include_tests)
    except ValueError as e:
        log("✗", f"Invalid validator setup: {e}", Colors.RED)
        raise typer.Exit(USAGE_EXIT_CODE) from None

    if len(registry) == 0:
        log(
            "✗",
            "No validators configured (add 'validators' to warden.yaml or use --with-tests)",
            Colors.RED,
        )
        raise typer.Exit(USAGE_EXIT_CODE)

    log(
        "●",
        f"Running {len(registry)} validator(s) in {runner.mode.value} mode",
        Colors.CYAN,
    )
    _finish(runtime, registry, runner.mode, runner.stop_on_first_failure, fmt)


@app.command("show-config")
def show_config(
    config: ConfigOption = None,
) -> Never:
    """Print the effective configuration as YAML."""
    settings, runner = _load_settings(config)
    source = str(runner.source) if runner.source else "defaults"
    print(f"# warden.yaml: {source}")
    print(dump_config(runner), end="")
    environment = {
        "artifacts_dir": str(settings.artifacts_dir),
        "debug_log": settings.debug_log_enabled,
        "child_env": settings.child_env(),
    }
    print("# environment")
    print(yaml.safe_dump(environment, sort_keys=False), end="")
    raise typer.Exit(0)
