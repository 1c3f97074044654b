"""Configuration dataclass for warden.

Provides WardenConfig, the process-level tuning read once at startup. It can
be constructed programmatically or loaded from environment variables with
from_env(). Project-level settings (test command, retries, validators) live in
warden.yaml, see src/domain/validation/config_loader.py.

Environment Variables:
    WARDEN_MAX_HEAP_MB: Heap limit for the test tool, passed to children as
        NODE_OPTIONS=--max-old-space-size=<n> (default: 2048)
    WARDEN_THREADPOOL_SIZE: Passed to children as UV_THREADPOOL_SIZE (default: 4)
    WARDEN_TELEMETRY_DISABLED: "0" re-enables framework telemetry in children
        (default: disabled, NEXT_TELEMETRY_DISABLED=1)
    WARDEN_BASE_URL: Passed to children as BASE_URL and PLAYWRIGHT_BASE_URL
    WARDEN_ARTIFACTS_DIR: Report and log directory (default: test-results/warden)
    WARDEN_DISABLE_DEBUG_LOG: "1" disables the per-run debug log file
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping

DEFAULT_ARTIFACTS_DIR = Path("test-results") / "warden"

_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


class ConfigError(Exception):
    """Raised when configuration validation fails. Lists every problem."""

    def __init__(self, errors: str | list[str]) -> None:
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        if len(self.errors) == 1:
            message = self.errors[0]
        else:
            message = "Configuration validation failed:\n" + "\n".join(
                f"  - {e}" for e in self.errors
            )
        super().__init__(message)


def _parse_int(
    environ: Mapping[str, str], name: str, default: int, errors: list[str]
) -> int:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        errors.append(f"{name} must be an integer, got: {raw!r}")
        return default


@dataclass(frozen=True)
class WardenConfig:
    """Process-level configuration for warden.

    Attributes:
        max_heap_mb: Heap limit for the test tool in MiB.
            Env: WARDEN_MAX_HEAP_MB (default: 2048)
        threadpool_size: libuv thread pool size of the test tool.
            Env: WARDEN_THREADPOOL_SIZE (default: 4)
        telemetry_disabled: Disable framework telemetry in children.
            Env: WARDEN_TELEMETRY_DISABLED (default: True)
        base_url: Base URL of the system under test, if any.
            Env: WARDEN_BASE_URL
        artifacts_dir: Directory for reports, capture logs and debug logs.
            Env: WARDEN_ARTIFACTS_DIR (default: test-results/warden)
        debug_log_enabled: Write the per-run debug log file.
            Env: WARDEN_DISABLE_DEBUG_LOG=1 turns it off

    Example:
        config = WardenConfig(max_heap_mb=4096, base_url="http://localhost:3000")
        env = config.child_env()
        # {"NODE_OPTIONS": "--max-old-space-size=4096", ...}
    """

    max_heap_mb: int = 2048
    threadpool_size: int = 4
    telemetry_disabled: bool = True
    base_url: str | None = None
    artifacts_dir: Path = field(default_factory=lambda: DEFAULT_ARTIFACTS_DIR)
    debug_log_enabled: bool = True

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None, *, validate: bool = True
    ) -> WardenConfig:
        """Create WardenConfig from environment variables.

        Args:
            environ: Mapping to read instead of os.environ.
            validate: If True (default), raise ConfigError on any problem.

        Raises:
            ConfigError: If validate=True and configuration is invalid.
        """
        env = os.environ if environ is None else environ
        errors: list[str] = []

        max_heap_mb = _parse_int(env, "WARDEN_MAX_HEAP_MB", 2048, errors)
        threadpool_size = _parse_int(env, "WARDEN_THREADPOOL_SIZE", 4, errors)
        telemetry_raw = env.get("WARDEN_TELEMETRY_DISABLED", "1").strip().lower()
        artifacts_dir = Path(
            env.get("WARDEN_ARTIFACTS_DIR") or str(DEFAULT_ARTIFACTS_DIR)
        )

        config = cls(
            max_heap_mb=max_heap_mb,
            threadpool_size=threadpool_size,
            telemetry_disabled=telemetry_raw not in _FALSE_VALUES,
            base_url=env.get("WARDEN_BASE_URL") or None,
            artifacts_dir=artifacts_dir,
            debug_log_enabled=env.get("WARDEN_DISABLE_DEBUG_LOG") != "1",
        )

        if validate:
            errors.extend(config.validate())
            if errors:
                raise ConfigError(errors)

        return config

    def validate(self) -> list[str]:
        """Return a list of problems. Empty list if the configuration is valid."""
        errors: list[str] = []
        if self.max_heap_mb < 1:
            errors.append(f"max_heap_mb must be positive, got: {self.max_heap_mb}")
        if self.threadpool_size < 1:
            errors.append(
                f"threadpool_size must be positive, got: {self.threadpool_size}"
            )
        if self.base_url is not None and "://" not in self.base_url:
            errors.append(f"base_url must include a scheme, got: {self.base_url}")
        return errors

    @property
    def logs_dir(self) -> Path:
        """Directory for per-attempt capture logs."""
        return self.artifacts_dir / "logs"

    def child_env(self) -> dict[str, str]:
        """Environment overlay applied to the supervised test tool."""
        env = {
            "NODE_OPTIONS": f"--max-old-space-size={self.max_heap_mb}",
            "UV_THREADPOOL_SIZE": str(self.threadpool_size),
        }
        if self.telemetry_disabled:
            env["NEXT_TELEMETRY_DISABLED"] = "1"
        if self.base_url:
            env["BASE_URL"] = self.base_url
            env["PLAYWRIGHT_BASE_URL"] = self.base_url
        return env
