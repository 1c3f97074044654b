"""Structured command construction for supervised processes.

Commands are always an explicit argv list plus an explicit environment
overlay. Nothing is ever joined into a shell string for execution; shlex is
only used to render a command for display.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping


@dataclass(frozen=True)
class CommandSpec:
    """An executable, its arguments, an environment overlay and a cwd.

    Attributes:
        program: Executable name or path (looked up on PATH by the OS).
        args: Arguments passed verbatim.
        env: Variables overlaid on the parent environment.
        cwd: Working directory, or None for the current one.
    """

    program: str
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: Path | None = None

    def __post_init__(self) -> None:
        if not self.program:
            raise ValueError("program must be a non-empty string")

    @classmethod
    def from_argv(
        cls,
        argv: Iterable[str],
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
    ) -> CommandSpec:
        """Build from a full argv list (program first)."""
        parts = [str(a) for a in argv]
        if not parts:
            raise ValueError("argv must contain at least the program")
        return cls(
            program=parts[0], args=tuple(parts[1:]), env=dict(env or {}), cwd=cwd
        )

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]

    def with_args(self, *args: str) -> CommandSpec:
        """Return a copy with extra arguments appended."""
        return replace(self, args=(*self.args, *(str(a) for a in args)))

    def has_option(self, name: str) -> bool:
        """True if an argument is ``name`` or ``name=...``."""
        return any(a == name or a.startswith(f"{name}=") for a in self.args)

    def merged_env(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
        """Parent environment (os.environ by default) overlaid with env."""
        source = os.environ if base is None else base
        return {**source, **self.env}

    def display(self) -> str:
        return shlex.join(self.argv)
