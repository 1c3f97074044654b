"""Wiring of warden's components for one CLI invocation.

Design principles:
- Configuration objects are built once (WardenConfig from the environment,
  RunnerConfig from warden.yaml) and passed in explicitly
- create_runtime() builds the shared collaborators: one CleanupHook, one
  SignalCoordinator tracking every child of one ProcessSupervisor, and one
  RetryPolicy stopping on the coordinator's interrupt event
- build_registry() maps warden.yaml validator entries onto the built-in
  validator factories

Usage:
    runtime = create_runtime(WardenConfig.from_env(), load_config())
    registry = build_registry(runtime, include_tests=True)
    report = await runtime.orchestrator().run(registry, runtime.runner.mode)
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from src.domain.validation.config_loader import (
    CommandValidatorConfig,
    EnvValidatorConfig,
)
from src.domain.validation.report import ReportAggregator
from src.domain.validation.validators import (
    ValidatorRegistry,
    command_validator,
    env_presence_validator,
)
from src.infra.signal_coordinator import SignalCoordinator
from src.infra.tools.cleanup import CleanupHook
from src.infra.tools.command_builder import CommandSpec
from src.infra.tools.process_supervisor import ProcessSupervisor
from src.orchestration.preflight import Preflight
from src.orchestration.stable_runner import StableRunner
from src.orchestration.validation_orchestrator import ValidationOrchestrator
from src.pipeline.retry_policy import RetryConfig, RetryPolicy

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from src.config import WardenConfig
    from src.core.models import ValidatorResult
    from src.core.protocols import DisplaySink
    from src.domain.validation.config_loader import RunnerConfig


@dataclass
class WardenRuntime:
    """Collaborators shared by every validator of one run."""

    settings: WardenConfig
    runner: RunnerConfig
    artifacts_dir: Path
    cleanup: CleanupHook
    coordinator: SignalCoordinator
    supervisor: ProcessSupervisor
    policy: RetryPolicy
    aggregator: ReportAggregator

    def stable_runner(self) -> StableRunner:
        checks = None
        if self.runner.preflight.enabled:
            checks = Preflight(
                self.runner.preflight, default_server_url=self.settings.base_url
            )
        results_file = self.runner.results_file
        return StableRunner(
            self.supervisor,
            self.policy,
            test_command=self.runner.test_command,
            child_env=self.settings.child_env(),
            timeout=self.runner.timeout,
            workers=self.runner.workers,
            preflight=checks,
            results_file=Path(results_file) if results_file else None,
        )

    def orchestrator(
        self, on_result: Callable[[ValidatorResult], None] | None = None
    ) -> ValidationOrchestrator:
        return ValidationOrchestrator(
            self.aggregator,
            on_result=on_result,
            interrupt_event=self.coordinator.interrupt_event,
        )


def create_runtime(
    settings: WardenConfig,
    runner: RunnerConfig,
    *,
    artifacts_dir: Path | None = None,
    display: DisplaySink | None = None,
) -> WardenRuntime:
    """Build the collaborators for one run.

    Args:
        settings: Environment-level configuration.
        runner: Project configuration (CLI overrides already applied).
        artifacts_dir: Overrides settings.artifacts_dir.
        display: Sink for important child-process lines.
    """
    effective_dir = artifacts_dir or settings.artifacts_dir
    cleanup = CleanupHook(
        process_patterns=runner.cleanup.process_patterns,
        scratch_dirs=runner.cleanup.scratch_dirs,
    )
    coordinator = SignalCoordinator(
        kill_grace_seconds=runner.kill_grace, cleanup=cleanup
    )
    supervisor = ProcessSupervisor(
        log_dir=effective_dir / "logs",
        kill_grace_seconds=runner.kill_grace,
        stdout_filter=runner.output.stdout_filter(),
        stderr_filter=runner.output.stderr_filter(),
        display=display,
        tracker=coordinator,
    )
    policy = RetryPolicy(
        RetryConfig(max_attempts=runner.max_attempts, delay_between=runner.retry_delay),
        cleanup=cleanup,
        interrupt_event=coordinator.interrupt_event,
    )
    return WardenRuntime(
        settings=settings,
        runner=runner,
        artifacts_dir=effective_dir,
        cleanup=cleanup,
        coordinator=coordinator,
        supervisor=supervisor,
        policy=policy,
        aggregator=ReportAggregator(),
    )


def _validator_timeout(own: float | None, default: float | None) -> float | None:
    """None inherits the global timeout; 0 disables it."""
    if own is None:
        return default
    return own or None


def build_registry(
    runtime: WardenRuntime,
    *,
    include_tests: bool = False,
    tool_args: Sequence[str] = (),
) -> ValidatorRegistry:
    """Registry of the configured validators, in declaration order.

    The test tool, when included, runs last.
    """
    registry = ValidatorRegistry()
    runner = runtime.runner
    for entry in runner.validators:
        if isinstance(entry, CommandValidatorConfig):
            registry.add(
                entry.name,
                command_validator(
                    entry.name,
                    CommandSpec.from_argv(entry.command, env=entry.env),
                    runtime.supervisor,
                    runtime.policy,
                    timeout=_validator_timeout(entry.timeout, runner.timeout),
                    max_attempts=entry.max_attempts,
                ),
            )
        elif isinstance(entry, EnvValidatorConfig):
            registry.add(
                entry.name,
                env_presence_validator(
                    entry.name, entry.required_env, entry.optional_env
                ),
            )
    if include_tests:
        stable = runtime.stable_runner()
        registry.add(stable.name, stable.as_validator(tool_args))
    return registry
