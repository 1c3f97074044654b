"""Unit tests for src/domain/validation/config_loader.py."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
import yaml

from src.config import ConfigError
from src.core.models import ExecutionMode
from src.domain.validation.config_loader import (
    CONFIG_FILE_NAME,
    DEFAULT_TEST_COMMAND,
    CommandValidatorConfig,
    ConfigMissingError,
    EnvValidatorConfig,
    PreflightConfig,
    RunnerConfig,
    config_to_dict,
    dump_config,
    load_config,
    parse_config,
)

if TYPE_CHECKING:
    from pathlib import Path


FULL_CONFIG = """\
test_command: [npx, playwright, test, --project=chromium]
max_attempts: 2
retry_delay: 0.5
timeout: 600
kill_grace: 3
workers: 4
mode: sequential
stop_on_first_failure: true
include_tests: true
cleanup:
  process_patterns: [chrome]
  scratch_dirs: [tmp/scratch]
output:
  stdout_important: ["passed"]
validators:
  - name: env
    required_env: [BASE_URL]
    optional_env: [SENTRY_DSN]
  - name: lint
    command: [npm, run, lint]
    timeout: 120
    max_attempts: 1
    env:
      CI: 1
"""


class TestLoadConfig:
    def test_missing_default_file_gives_defaults(self, tmp_path: Path) -> None:
        config = load_config(cwd=tmp_path)

        assert config == RunnerConfig()
        assert config.test_command == DEFAULT_TEST_COMMAND
        assert config.max_attempts == 3
        assert config.retry_delay == 5.0
        assert config.timeout == 1800.0
        assert config.workers == 2
        assert config.source is None

    def test_missing_explicit_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigMissingError) as exc_info:
            load_config(tmp_path / "custom.yaml")
        assert exc_info.value.path == tmp_path / "custom.yaml"
        assert isinstance(exc_info.value, ConfigError)

    def test_full_file(self, tmp_path: Path) -> None:
        path = tmp_path / CONFIG_FILE_NAME
        path.write_text(FULL_CONFIG)

        config = load_config(cwd=tmp_path)

        assert config.source == path
        assert config.test_command == ("npx", "playwright", "test", "--project=chromium")
        assert config.max_attempts == 2
        assert config.retry_delay == 0.5
        assert config.timeout == 600.0
        assert config.kill_grace == 3.0
        assert config.workers == 4
        assert config.mode is ExecutionMode.SEQUENTIAL
        assert config.stop_on_first_failure is True
        assert config.include_tests is True
        assert config.cleanup.process_patterns == ("chrome",)
        assert config.cleanup.scratch_dirs == ("tmp/scratch",)
        assert config.output.stdout_important == ("passed",)
        # Unspecified output keys keep their defaults
        assert config.output.stderr_noise == RunnerConfig().output.stderr_noise
        assert config.validators == (
            EnvValidatorConfig(
                name="env", required_env=("BASE_URL",), optional_env=("SENTRY_DSN",)
            ),
            CommandValidatorConfig(
                name="lint",
                command=("npm", "run", "lint"),
                timeout=120.0,
                max_attempts=1,
                env={"CI": "1"},
            ),
        )

    def test_empty_file_gives_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / CONFIG_FILE_NAME
        path.write_text("# nothing configured yet\n")

        config = load_config(path)

        assert config.max_attempts == 3
        assert config.source == path

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / CONFIG_FILE_NAME
        path.write_text("max_attempts: [1, 2\n")

        with pytest.raises(ConfigError, match="Invalid YAML syntax"):
            load_config(path)

    def test_non_mapping_root(self, tmp_path: Path) -> None:
        path = tmp_path / CONFIG_FILE_NAME
        path.write_text("- just\n- a list\n")

        with pytest.raises(ConfigError, match="must be a YAML mapping, got list"):
            load_config(path)


class TestParseConfig:
    def test_unknown_field(self) -> None:
        with pytest.raises(ConfigError, match="Unknown field 'retries'"):
            parse_config({"retries": 3})

    def test_all_errors_reported_together(self) -> None:
        with pytest.raises(ConfigError) as exc_info:
            parse_config(
                {
                    "max_attempts": 0,
                    "retry_delay": -1,
                    "mode": "sideways",
                    "include_tests": "yes",
                }
            )

        errors = exc_info.value.errors
        assert len(errors) == 4
        assert "max_attempts must be a positive integer, got 0" in errors
        assert "mode must be 'parallel' or 'sequential', got 'sideways'" in errors
        assert str(exc_info.value).startswith("Configuration validation failed:")

    def test_bool_is_not_an_integer(self) -> None:
        with pytest.raises(ConfigError, match="max_attempts must be a positive integer"):
            parse_config({"max_attempts": True})

    def test_null_timeout_disables_it(self) -> None:
        assert parse_config({"timeout": None}).timeout is None

    def test_zero_timeout_rejected(self) -> None:
        with pytest.raises(ConfigError, match="timeout must be positive"):
            parse_config({"timeout": 0})

    def test_null_workers(self) -> None:
        assert parse_config({"workers": None}).workers is None

    def test_empty_test_command(self) -> None:
        with pytest.raises(ConfigError, match="test_command must not be empty"):
            parse_config({"test_command": []})

    def test_test_command_must_be_list(self) -> None:
        with pytest.raises(ConfigError, match="test_command must be a list of strings"):
            parse_config({"test_command": "npx playwright test"})

    def test_invalid_output_regex(self) -> None:
        with pytest.raises(ConfigError, match="invalid regular expression"):
            parse_config({"output": {"stdout_noise": ["("]}})

    def test_unknown_cleanup_field(self) -> None:
        with pytest.raises(ConfigError, match="Unknown field 'browsers' in cleanup"):
            parse_config({"cleanup": {"browsers": ["chrome"]}})


class TestParseValidators:
    def test_duplicate_names(self) -> None:
        with pytest.raises(ConfigError, match="duplicate validator name 'lint'"):
            parse_config(
                {
                    "validators": [
                        {"name": "lint", "command": ["npm", "run", "lint"]},
                        {"name": "lint", "command": ["eslint", "."]},
                    ]
                }
            )

    def test_missing_name(self) -> None:
        with pytest.raises(ConfigError, match=r"validators\[0\]\.name"):
            parse_config({"validators": [{"command": ["true"]}]})

    def test_needs_kind(self) -> None:
        with pytest.raises(ConfigError, match="needs either command or required_env"):
            parse_config({"validators": [{"name": "empty"}]})

    def test_both_kinds_rejected(self) -> None:
        with pytest.raises(ConfigError, match="cannot have both"):
            parse_config(
                {
                    "validators": [
                        {"name": "x", "command": ["true"], "required_env": ["A"]}
                    ]
                }
            )

    def test_unknown_validator_field(self) -> None:
        with pytest.raises(ConfigError, match="Unknown field 'retries' in validator 'lint'"):
            parse_config(
                {"validators": [{"name": "lint", "command": ["true"], "retries": 2}]}
            )

    def test_bad_env_entry(self) -> None:
        with pytest.raises(ConfigError, match="env entries must be string: string"):
            parse_config(
                {
                    "validators": [
                        {"name": "lint", "command": ["true"], "env": {"A": ["x"]}}
                    ]
                }
            )

    def test_validators_must_be_list(self) -> None:
        with pytest.raises(ConfigError, match="validators must be a list"):
            parse_config({"validators": {"lint": ["true"]}})

    def test_validator_timeout_zero_disables(self) -> None:
        config = parse_config(
            {"validators": [{"name": "slow", "command": ["make"], "timeout": 0}]}
        )

        entry = config.validators[0]
        assert isinstance(entry, CommandValidatorConfig)
        assert entry.timeout == 0.0

    def test_validator_null_timeout_inherits(self) -> None:
        config = parse_config(
            {"validators": [{"name": "lint", "command": ["true"], "timeout": None}]}
        )

        assert config.validators[0].timeout is None

    def test_validator_negative_timeout_rejected(self) -> None:
        with pytest.raises(ConfigError, match=r"validators\[0\]\.timeout must be positive"):
            parse_config(
                {"validators": [{"name": "lint", "command": ["true"], "timeout": -1}]}
            )


class TestParsePreflight:
    def test_defaults(self) -> None:
        config = parse_config({})

        assert config.preflight == PreflightConfig()
        assert config.preflight.enabled is True
        assert config.preflight.min_free_memory_mb == 2048
        assert config.results_file == "test-results/results.json"

    def test_full_section(self) -> None:
        config = parse_config(
            {
                "preflight": {
                    "enabled": False,
                    "required_dirs": ["e2e", "test-results", "playwright/.auth"],
                    "min_free_memory_mb": 4096,
                    "low_memory_workers": 2,
                    "server_url": "http://localhost:3000",
                    "server_timeout": 2,
                },
                "results_file": None,
            }
        )

        assert config.preflight == PreflightConfig(
            enabled=False,
            required_dirs=("e2e", "test-results", "playwright/.auth"),
            min_free_memory_mb=4096,
            low_memory_workers=2,
            server_url="http://localhost:3000",
            server_timeout=2.0,
        )
        assert config.results_file is None

    def test_null_memory_threshold_disables_check(self) -> None:
        config = parse_config({"preflight": {"min_free_memory_mb": None}})
        assert config.preflight.min_free_memory_mb is None

    def test_invalid_values_collected(self) -> None:
        with pytest.raises(ConfigError) as exc_info:
            parse_config(
                {
                    "preflight": {
                        "server_url": "localhost:3000",
                        "server_timeout": 0,
                        "low_memory_workers": 0,
                    },
                    "results_file": "",
                }
            )

        errors = exc_info.value.errors
        assert "preflight.server_url must include a scheme, got: localhost:3000" in errors
        assert "preflight.server_timeout must be positive, got 0" in errors
        assert "preflight.low_memory_workers must be a positive integer, got 0" in errors
        assert "results_file must be a non-empty string or null" in errors

    def test_unknown_preflight_field(self) -> None:
        with pytest.raises(ConfigError, match="Unknown field 'port' in preflight"):
            parse_config({"preflight": {"port": 3000}})


class TestDumpConfig:
    def test_round_trips_through_parse(self, tmp_path: Path) -> None:
        path = tmp_path / CONFIG_FILE_NAME
        path.write_text(FULL_CONFIG)
        original = load_config(path)

        reparsed = parse_config(yaml.safe_load(dump_config(original)), source=path)

        assert reparsed == original

    def test_defaults_dict(self) -> None:
        data = config_to_dict(RunnerConfig())
        assert data["test_command"] == ["npx", "playwright", "test"]
        assert data["mode"] == "parallel"
        assert data["validators"] == []
