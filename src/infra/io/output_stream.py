"""Buffered, broken-pipe tolerant capture of child-process output.

OutputStreamManager consumes one byte stream (a child's stdout or stderr),
splits it into lines, writes every line to a log file that is truncated at the
start of each run, and forwards the important lines to a display sink.

Every write in this module goes through tolerant_write(), so a reader that has
gone away (EPIPE), a closed file or a full disk turns into a counter increment
instead of an exception unwinding the supervisor. Display sinks are third-party
callables: any exception they raise is counted the same way.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections import deque
from dataclasses import dataclass, field
from typing import IO, TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from pathlib import Path

    from src.core.protocols import DisplaySink

logger = logging.getLogger(__name__)

# Bytes read per chunk from the child pipe
READ_CHUNK_SIZE = 64 * 1024

# Lines kept in memory for the outcome tail
DEFAULT_TAIL_LINES = 50

DEFAULT_STDOUT_IMPORTANT = (
    r"Running \d+ tests?",
    r"[✓✗⚠✘]",
    r"\d+ passed",
    r"\d+ failed",
    r"\d+ skipped",
    r"\d+ flaky",
    r"Slow test file",
    r"Error:",
    r"Failed:",
)
DEFAULT_STDOUT_NOISE = (
    r"^\s*$",
    r"\[chromium\]",
    r"page\.goto",
    r"expect\(",
    r"Timeout",
)
# Every non-empty stderr line is shown unless it is known chatter
DEFAULT_STDERR_IMPORTANT = (r"\S",)
DEFAULT_STDERR_NOISE = (
    r"^\s*$",
    r"DevTools listening on",
    r"\[Chromium\]",
)


def tolerant_write(write: Callable[[str], object], text: str) -> bool:
    """Attempt one write, absorbing broken-pipe class failures.

    The write is never retried and the target is never re-opened.

    Returns:
        True if the write went through, False if it was dropped.
    """
    try:
        write(text)
    except (BrokenPipeError, ConnectionResetError):
        return False
    except OSError as e:
        logger.debug("Dropped write after OSError: %s", e)
        return False
    except ValueError:
        # Write to a closed file object
        return False
    return True


@dataclass(frozen=True)
class LineFilter:
    """Classifies lines as important (displayed) and/or noise (hidden)."""

    important: tuple[re.Pattern[str], ...] = ()
    noise: tuple[re.Pattern[str], ...] = ()

    @classmethod
    def from_patterns(
        cls, important: Iterable[str], noise: Iterable[str] = ()
    ) -> LineFilter:
        return cls(
            important=tuple(re.compile(p) for p in important),
            noise=tuple(re.compile(p) for p in noise),
        )

    @classmethod
    def stdout_default(cls) -> LineFilter:
        return cls.from_patterns(DEFAULT_STDOUT_IMPORTANT, DEFAULT_STDOUT_NOISE)

    @classmethod
    def stderr_default(cls) -> LineFilter:
        return cls.from_patterns(DEFAULT_STDERR_IMPORTANT, DEFAULT_STDERR_NOISE)

    def should_display(self, line: str) -> bool:
        if any(p.search(line) for p in self.noise):
            return False
        return any(p.search(line) for p in self.important)


@dataclass
class StreamStats:
    """Counters for one managed stream."""

    lines: int = 0
    displayed: int = 0
    dropped_log_writes: int = 0
    dropped_display_writes: int = 0

    @property
    def dropped_writes(self) -> int:
        return self.dropped_log_writes + self.dropped_display_writes


@dataclass
class OutputStreamManager:
    """Line-buffers one child stream into a log file and a display sink.

    Usage:
        manager = OutputStreamManager(log_path, LineFilter.stdout_default(), sink)
        manager.open()
        await manager.consume(process.stdout)   # closes the log on EOF

    feed()/finish() are the synchronous building blocks used by consume(),
    exposed so the line handling can be driven without a real pipe.
    """

    log_path: Path | None
    line_filter: LineFilter = field(default_factory=LineFilter)
    display: DisplaySink | None = None
    tail_lines: int = DEFAULT_TAIL_LINES
    stats: StreamStats = field(default_factory=StreamStats)

    def __post_init__(self) -> None:
        self._buffer = bytearray()
        self._tail: deque[str] = deque(maxlen=self.tail_lines)
        self._log_file: IO[str] | None = None
        self._finished = False

    def open(self) -> None:
        """Open (and truncate) the log file. Failure to open disables logging."""
        if self.log_path is None or self._log_file is not None:
            return
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            self._log_file = open(  # noqa: SIM115 - closed in finish()
                self.log_path, "w", encoding="utf-8", errors="replace"
            )
        except OSError as e:
            logger.warning("Cannot open log file %s: %s", self.log_path, e)
            self._log_file = None

    def feed(self, data: bytes) -> None:
        """Append bytes and process every completed line."""
        if not data:
            return
        self._buffer.extend(data)
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            raw = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]
            self._handle_line(raw)

    def finish(self) -> None:
        """Flush a partial trailing line and close the log file. Idempotent."""
        if self._finished:
            return
        self._finished = True
        if self._buffer:
            raw = bytes(self._buffer)
            self._buffer.clear()
            self._handle_line(raw)
        log_file, self._log_file = self._log_file, None
        if log_file is not None:
            try:
                log_file.close()
            except OSError as e:
                # Buffered lines could not be flushed
                self.stats.dropped_log_writes += 1
                logger.debug("Error closing %s: %s", self.log_path, e)

    async def consume(self, reader: asyncio.StreamReader) -> None:
        """Read the stream until EOF, then finish()."""
        try:
            while True:
                chunk = await reader.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                self.feed(chunk)
        finally:
            self.finish()

    def tail(self, max_lines: int | None = None) -> str:
        lines = list(self._tail)
        if max_lines is not None:
            lines = lines[-max_lines:]
        return "\n".join(lines)

    def _handle_line(self, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace")
        if line.endswith("\r"):
            line = line[:-1]
        self.stats.lines += 1
        self._tail.append(line)

        if self._log_file is not None:
            if not tolerant_write(self._log_file.write, line + "\n"):
                self.stats.dropped_log_writes += 1

        if self.display is not None and self.line_filter.should_display(line):
            if self._show(line):
                self.stats.displayed += 1
            else:
                self.stats.dropped_display_writes += 1

    def _show(self, line: str) -> bool:
        assert self.display is not None
        try:
            return tolerant_write(self.display, line)
        except Exception as e:
            # A failing sink must not stop the reader, or the child blocks on
            # a full pipe
            logger.debug("Display sink failed: %s", e)
            return False
