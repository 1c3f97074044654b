"""YAML configuration loader for warden.yaml.

This module loads, parses and validates the optional warden.yaml project
file. The schema is strict: unknown keys and wrong types are errors, and every
problem found is reported in one ConfigError.

Key functions:
- load_config: Load and validate warden.yaml (or defaults when absent)
- parse_config: Validate an already-parsed mapping into RunnerConfig
- dump_config: Render a RunnerConfig back to YAML (show-config)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from src.config import ConfigError
from src.core.models import ExecutionMode
from src.infra.io.output_stream import (
    DEFAULT_STDERR_IMPORTANT,
    DEFAULT_STDERR_NOISE,
    DEFAULT_STDOUT_IMPORTANT,
    DEFAULT_STDOUT_NOISE,
    LineFilter,
)
from src.infra.tools.cleanup import DEFAULT_PROCESS_PATTERNS, DEFAULT_SCRATCH_DIRS
from src.infra.tools.process_supervisor import DEFAULT_KILL_GRACE_SECONDS

if TYPE_CHECKING:
    from collections.abc import Mapping

CONFIG_FILE_NAME = "warden.yaml"

DEFAULT_TEST_COMMAND: tuple[str, ...] = ("npx", "playwright", "test")

# JSON report written by the test tool; summarized after the run
DEFAULT_RESULTS_FILE = "test-results/results.json"


class ConfigMissingError(ConfigError):
    """Raised when an explicitly requested config file does not exist."""

    path: Path

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"{path} not found")


@dataclass(frozen=True)
class CleanupConfig:
    process_patterns: tuple[str, ...] = DEFAULT_PROCESS_PATTERNS
    scratch_dirs: tuple[str, ...] = DEFAULT_SCRATCH_DIRS


@dataclass(frozen=True)
class PreflightConfig:
    """Checks run before the test tool starts.

    Attributes:
        enabled: Run the checks at all.
        required_dirs: Created (relative to the working directory) if missing.
        min_free_memory_mb: Below this much available memory the worker count
            drops to low_memory_workers. None disables the memory check.
        low_memory_workers: Worker count used on low memory.
        server_url: URL requested for reachability. Defaults to WARDEN_BASE_URL.
        server_timeout: Seconds before the server check gives up.
    """

    enabled: bool = True
    required_dirs: tuple[str, ...] = ("test-results",)
    min_free_memory_mb: int | None = 2048
    low_memory_workers: int = 1
    server_url: str | None = None
    server_timeout: float = 5.0


@dataclass(frozen=True)
class OutputConfig:
    """Line patterns deciding which child output reaches the console."""

    stdout_important: tuple[str, ...] = DEFAULT_STDOUT_IMPORTANT
    stdout_noise: tuple[str, ...] = DEFAULT_STDOUT_NOISE
    stderr_important: tuple[str, ...] = DEFAULT_STDERR_IMPORTANT
    stderr_noise: tuple[str, ...] = DEFAULT_STDERR_NOISE

    def stdout_filter(self) -> LineFilter:
        return LineFilter.from_patterns(self.stdout_important, self.stdout_noise)

    def stderr_filter(self) -> LineFilter:
        return LineFilter.from_patterns(self.stderr_important, self.stderr_noise)


@dataclass(frozen=True)
class CommandValidatorConfig:
    """Validator that runs a command; passes iff it exits 0."""

    name: str
    command: tuple[str, ...]
    # None inherits the global timeout; 0 disables it for this validator
    timeout: float | None = None
    max_attempts: int | None = None
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class EnvValidatorConfig:
    """Validator that checks environment variables are set."""

    name: str
    required_env: tuple[str, ...]
    optional_env: tuple[str, ...] = ()


ValidatorConfig = CommandValidatorConfig | EnvValidatorConfig


@dataclass(frozen=True)
class RunnerConfig:
    """Project configuration from warden.yaml.

    Attributes:
        test_command: argv of the external test tool.
        max_attempts: Attempts per supervised command (>= 1).
        retry_delay: Fixed delay between attempts, seconds.
        timeout: Wall-clock limit per attempt, seconds. None disables it.
        kill_grace: Wait between SIGTERM and SIGKILL, seconds.
        workers: Appended as --workers=<n> unless the caller passes one.
        mode: Default validator execution mode.
        stop_on_first_failure: Sequential mode stops after the first failure.
        include_tests: `validate` also runs the test tool as a validator.
        cleanup: What to clean between attempts.
        output: Console line filters.
        preflight: Checks run before the test tool starts.
        results_file: JSON report of the test tool, summarized after the run.
            None disables the summary.
        validators: Validator entries in declaration order.
    """

    test_command: tuple[str, ...] = DEFAULT_TEST_COMMAND
    max_attempts: int = 3
    retry_delay: float = 5.0
    timeout: float | None = 1800.0
    kill_grace: float = DEFAULT_KILL_GRACE_SECONDS
    workers: int | None = 2
    mode: ExecutionMode = ExecutionMode.PARALLEL
    stop_on_first_failure: bool = False
    include_tests: bool = False
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    preflight: PreflightConfig = field(default_factory=PreflightConfig)
    results_file: str | None = DEFAULT_RESULTS_FILE
    validators: tuple[ValidatorConfig, ...] = ()
    source: Path | None = None


# Fields allowed at the top level of warden.yaml
_ALLOWED_TOP_LEVEL_FIELDS = frozenset(
    {
        "test_command",
        "max_attempts",
        "retry_delay",
        "timeout",
        "kill_grace",
        "workers",
        "mode",
        "stop_on_first_failure",
        "include_tests",
        "cleanup",
        "output",
        "preflight",
        "results_file",
        "validators",
    }
)
_CLEANUP_FIELDS = frozenset({"process_patterns", "scratch_dirs"})
_OUTPUT_FIELDS = frozenset(
    {"stdout_important", "stdout_noise", "stderr_important", "stderr_noise"}
)
_PREFLIGHT_FIELDS = frozenset(
    {
        "enabled",
        "required_dirs",
        "min_free_memory_mb",
        "low_memory_workers",
        "server_url",
        "server_timeout",
    }
)
_COMMAND_VALIDATOR_FIELDS = frozenset(
    {"name", "command", "timeout", "max_attempts", "env"}
)
_ENV_VALIDATOR_FIELDS = frozenset({"name", "required_env", "optional_env"})


def load_config(path: Path | None = None, *, cwd: Path | None = None) -> RunnerConfig:
    """Load warden.yaml.

    Args:
        path: Explicit config file. Must exist.
        cwd: Directory searched for warden.yaml when path is None. A missing
            file there means defaults.

    Raises:
        ConfigError: On unreadable files, invalid YAML or schema problems.
    """
    if path is None:
        candidate = (cwd or Path.cwd()) / CONFIG_FILE_NAME
        if not candidate.exists():
            return RunnerConfig()
        path = candidate
    elif not path.exists():
        raise ConfigMissingError(path)

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read {path}: {e}") from e
    except UnicodeDecodeError as e:
        raise ConfigError(f"Failed to decode {path}: {e}") from e

    return parse_config(_parse_yaml(content, path), source=path)


def _parse_yaml(content: str, path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {path.name}: {e}") from e

    # Empty file or only comments
    if data is None:
        return {}

    if not isinstance(data, dict):
        raise ConfigError(
            f"{path.name} must be a YAML mapping, got {type(data).__name__}"
        )
    return data


class _Checker:
    """Collects schema problems instead of failing on the first one."""

    def __init__(self) -> None:
        self.errors: list[str] = []

    def unknown(self, data: Mapping[Any, Any], allowed: frozenset[str], where: str) -> None:
        for key in sorted(str(k) for k in set(data) - allowed):
            self.errors.append(f"Unknown field '{key}' in {where}")

    def string_list(self, value: Any, where: str, *, non_empty: bool = False) -> tuple[str, ...]:
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            self.errors.append(f"{where} must be a list of strings")
            return ()
        if non_empty and not value:
            self.errors.append(f"{where} must not be empty")
        return tuple(value)

    def positive_int(self, value: Any, where: str) -> int | None:
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            self.errors.append(f"{where} must be a positive integer, got {value!r}")
            return None
        return value

    def seconds(self, value: Any, where: str, *, allow_zero: bool = True) -> float | None:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            self.errors.append(f"{where} must be a number of seconds, got {value!r}")
            return None
        if value < 0 or (value == 0 and not allow_zero):
            self.errors.append(f"{where} must be positive, got {value!r}")
            return None
        return float(value)

    def boolean(self, value: Any, where: str) -> bool | None:
        if not isinstance(value, bool):
            self.errors.append(f"{where} must be true or false, got {value!r}")
            return None
        return value

    def mapping(self, value: Any, where: str) -> dict[str, Any] | None:
        if not isinstance(value, dict):
            self.errors.append(f"{where} must be a mapping")
            return None
        return value


def parse_config(data: Mapping[str, Any], *, source: Path | None = None) -> RunnerConfig:
    """Validate a parsed warden.yaml mapping and build RunnerConfig.

    Raises:
        ConfigError: Listing every problem found.
    """
    check = _Checker()
    check.unknown(data, _ALLOWED_TOP_LEVEL_FIELDS, CONFIG_FILE_NAME)
    values: dict[str, Any] = {}

    if "test_command" in data:
        values["test_command"] = check.string_list(
            data["test_command"], "test_command", non_empty=True
        )
    if "max_attempts" in data:
        values["max_attempts"] = check.positive_int(data["max_attempts"], "max_attempts")
    if "retry_delay" in data:
        values["retry_delay"] = check.seconds(data["retry_delay"], "retry_delay")
    if "timeout" in data:
        # null disables the timeout
        values["timeout"] = (
            None
            if data["timeout"] is None
            else check.seconds(data["timeout"], "timeout", allow_zero=False)
        )
    if "kill_grace" in data:
        values["kill_grace"] = check.seconds(data["kill_grace"], "kill_grace")
    if "workers" in data:
        values["workers"] = (
            None if data["workers"] is None else check.positive_int(data["workers"], "workers")
        )
    if "mode" in data:
        try:
            values["mode"] = ExecutionMode(data["mode"])
        except ValueError:
            check.errors.append(
                f"mode must be 'parallel' or 'sequential', got {data['mode']!r}"
            )
    for flag in ("stop_on_first_failure", "include_tests"):
        if flag in data:
            values[flag] = check.boolean(data[flag], flag)

    if "cleanup" in data:
        values["cleanup"] = _parse_cleanup(check, data["cleanup"])
    if "output" in data:
        values["output"] = _parse_output(check, data["output"])
    if "preflight" in data:
        values["preflight"] = _parse_preflight(check, data["preflight"])
    if "results_file" in data:
        values["results_file"] = _optional_string(
            check, data["results_file"], "results_file"
        )
    if "validators" in data:
        values["validators"] = _parse_validators(check, data["validators"])

    if check.errors:
        raise ConfigError(check.errors)

    return RunnerConfig(**values, source=source)


def _parse_cleanup(check: _Checker, value: Any) -> CleanupConfig:
    data = check.mapping(value, "cleanup")
    if data is None:
        return CleanupConfig()
    check.unknown(data, _CLEANUP_FIELDS, "cleanup")
    kwargs = {
        key: check.string_list(data[key], f"cleanup.{key}")
        for key in _CLEANUP_FIELDS
        if key in data
    }
    return CleanupConfig(**kwargs)


def _parse_output(check: _Checker, value: Any) -> OutputConfig:
    data = check.mapping(value, "output")
    if data is None:
        return OutputConfig()
    check.unknown(data, _OUTPUT_FIELDS, "output")
    kwargs = {
        key: check.string_list(data[key], f"output.{key}")
        for key in _OUTPUT_FIELDS
        if key in data
    }
    config = OutputConfig(**kwargs)
    try:
        config.stdout_filter()
        config.stderr_filter()
    except re.error as e:
        check.errors.append(f"output contains an invalid regular expression: {e}")
    return config


def _optional_string(check: _Checker, value: Any, where: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        check.errors.append(f"{where} must be a non-empty string or null")
        return None
    return value


def _parse_preflight(check: _Checker, value: Any) -> PreflightConfig:
    data = check.mapping(value, "preflight")
    if data is None:
        return PreflightConfig()
    check.unknown(data, _PREFLIGHT_FIELDS, "preflight")
    kwargs: dict[str, Any] = {}
    if "enabled" in data:
        kwargs["enabled"] = check.boolean(data["enabled"], "preflight.enabled")
    if "required_dirs" in data:
        kwargs["required_dirs"] = check.string_list(
            data["required_dirs"], "preflight.required_dirs"
        )
    if "min_free_memory_mb" in data:
        kwargs["min_free_memory_mb"] = (
            None
            if data["min_free_memory_mb"] is None
            else check.positive_int(
                data["min_free_memory_mb"], "preflight.min_free_memory_mb"
            )
        )
    if "low_memory_workers" in data:
        kwargs["low_memory_workers"] = check.positive_int(
            data["low_memory_workers"], "preflight.low_memory_workers"
        )
    if "server_url" in data:
        url = _optional_string(check, data["server_url"], "preflight.server_url")
        if url is not None and "://" not in url:
            check.errors.append(
                f"preflight.server_url must include a scheme, got: {url}"
            )
        kwargs["server_url"] = url
    if "server_timeout" in data:
        kwargs["server_timeout"] = check.seconds(
            data["server_timeout"], "preflight.server_timeout", allow_zero=False
        )
    return PreflightConfig(**kwargs)


def _parse_validators(check: _Checker, value: Any) -> tuple[ValidatorConfig, ...]:
    if not isinstance(value, list):
        check.errors.append("validators must be a list")
        return ()

    parsed: list[ValidatorConfig] = []
    seen: set[str] = set()
    for index, entry in enumerate(value):
        where = f"validators[{index}]"
        if not isinstance(entry, dict):
            check.errors.append(f"{where} must be a mapping")
            continue
        name = entry.get("name")
        if not isinstance(name, str) or not name:
            check.errors.append(f"{where}.name must be a non-empty string")
            continue
        where = f"validator '{name}'"
        if name in seen:
            check.errors.append(f"duplicate validator name '{name}'")
            continue
        seen.add(name)

        if "command" in entry and "required_env" in entry:
            check.errors.append(f"{where} cannot have both command and required_env")
        elif "command" in entry:
            parsed.append(_parse_command_validator(check, entry, name, where))
        elif "required_env" in entry:
            check.unknown(entry, _ENV_VALIDATOR_FIELDS, where)
            parsed.append(
                EnvValidatorConfig(
                    name=name,
                    required_env=check.string_list(
                        entry["required_env"], f"{where}.required_env"
                    ),
                    optional_env=check.string_list(
                        entry.get("optional_env", []), f"{where}.optional_env"
                    ),
                )
            )
        else:
            check.errors.append(f"{where} needs either command or required_env")
    return tuple(parsed)


def _parse_command_validator(
    check: _Checker, entry: dict[str, Any], name: str, where: str
) -> CommandValidatorConfig:
    check.unknown(entry, _COMMAND_VALIDATOR_FIELDS, where)
    command = check.string_list(entry["command"], f"{where}.command", non_empty=True)
    timeout = None
    if entry.get("timeout") is not None:
        # 0 disables the timeout for this validator only
        timeout = check.seconds(entry["timeout"], f"{where}.timeout")
    max_attempts = None
    if entry.get("max_attempts") is not None:
        max_attempts = check.positive_int(entry["max_attempts"], f"{where}.max_attempts")
    env: dict[str, str] = {}
    if "env" in entry:
        raw_env = check.mapping(entry["env"], f"{where}.env") or {}
        for key, val in raw_env.items():
            if not isinstance(key, str) or not isinstance(val, (str, int, float)):
                check.errors.append(f"{where}.env entries must be string: string")
                break
            env[key] = str(val)
    return CommandValidatorConfig(
        name=name,
        command=command,
        timeout=timeout,
        max_attempts=max_attempts,
        env=env,
    )


def config_to_dict(config: RunnerConfig) -> dict[str, Any]:
    """Plain-data form of the configuration, as accepted by parse_config."""
    validators: list[dict[str, Any]] = []
    for v in config.validators:
        if isinstance(v, CommandValidatorConfig):
            entry: dict[str, Any] = {"name": v.name, "command": list(v.command)}
            if v.timeout is not None:
                entry["timeout"] = v.timeout
            if v.max_attempts is not None:
                entry["max_attempts"] = v.max_attempts
            if v.env:
                entry["env"] = dict(v.env)
        else:
            entry = {"name": v.name, "required_env": list(v.required_env)}
            if v.optional_env:
                entry["optional_env"] = list(v.optional_env)
        validators.append(entry)

    return {
        "test_command": list(config.test_command),
        "max_attempts": config.max_attempts,
        "retry_delay": config.retry_delay,
        "timeout": config.timeout,
        "kill_grace": config.kill_grace,
        "workers": config.workers,
        "mode": config.mode.value,
        "stop_on_first_failure": config.stop_on_first_failure,
        "include_tests": config.include_tests,
        "cleanup": {
            "process_patterns": list(config.cleanup.process_patterns),
            "scratch_dirs": list(config.cleanup.scratch_dirs),
        },
        "output": {
            "stdout_important": list(config.output.stdout_important),
            "stdout_noise": list(config.output.stdout_noise),
            "stderr_important": list(config.output.stderr_important),
            "stderr_noise": list(config.output.stderr_noise),
        },
        "preflight": {
            "enabled": config.preflight.enabled,
            "required_dirs": list(config.preflight.required_dirs),
            "min_free_memory_mb": config.preflight.min_free_memory_mb,
            "low_memory_workers": config.preflight.low_memory_workers,
            "server_url": config.preflight.server_url,
            "server_timeout": config.preflight.server_timeout,
        },
        "results_file": config.results_file,
        "validators": validators,
    }


def dump_config(config: RunnerConfig) -> str:
    return yaml.safe_dump(
        config_to_dict(config), sort_keys=False, allow_unicode=True
    )
