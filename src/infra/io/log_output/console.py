"""Console logging helpers for warden.

Colored, timestamped status lines with an optional source tag so output from
concurrent validators can be told apart. Every line goes through
tolerant_write(): a closed or broken stdout (`warden validate | head -1`)
drops the line instead of raising into the run.
"""

import logging
import os
import sys
from datetime import datetime

from src.infra.io.output_stream import tolerant_write

logger = logging.getLogger(__name__)

# Global verbose setting (can be modified at runtime)
_verbose_enabled: bool = False


def set_verbose(enabled: bool) -> None:
    """Enable or disable verbose output globally."""
    global _verbose_enabled
    _verbose_enabled = enabled


def truncate_text(text: str, max_length: int) -> str:
    """Truncate text to max_length, adding ellipsis if truncated.

    Respects global verbose setting. If verbose is enabled,
    returns the original text unchanged.
    """
    if _verbose_enabled:
        return text
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text


class Colors:
    """ANSI color codes for terminal output (bright variants)."""

    RESET = "\033[0m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    CYAN = "\033[96m"
    RED = "\033[91m"
    GRAY = "\033[90m"  # Bright black - more visible on dark terminals
    MUTED = "\033[90m"


# Palette for distinguishing concurrent validators
SOURCE_COLORS = [
    "\033[96m",  # Bright Cyan
    "\033[93m",  # Bright Yellow
    "\033[95m",  # Bright Magenta
    "\033[92m",  # Bright Green
    "\033[94m",  # Bright Blue
    "\033[97m",  # Bright White
]

# Maps source names to their assigned colors
_source_color_map: dict[str, str] = {}
_source_color_index = 0


def get_source_color(source: str) -> str:
    """Get a consistent color for a validator or process name."""
    global _source_color_index
    if source not in _source_color_map:
        _source_color_map[source] = SOURCE_COLORS[
            _source_color_index % len(SOURCE_COLORS)
        ]
        _source_color_index += 1
    return _source_color_map[source]


def emit(text: str) -> bool:
    """Print one line to stdout. Returns False if the line was dropped."""
    return tolerant_write(print, text)


def release_stdout() -> None:
    """Flush stdout, pointing it at /dev/null if the reader went away.

    Without this the interpreter fails again flushing the same buffer at
    exit and replaces the exit code.
    """
    try:
        sys.stdout.flush()
    except (BrokenPipeError, ConnectionResetError):
        try:
            fd = sys.stdout.fileno()
            devnull = os.open(os.devnull, os.O_WRONLY)
            os.dup2(devnull, fd)
            os.close(devnull)
        except (OSError, ValueError) as e:
            logger.debug("Cannot redirect broken stdout: %s", e)
    except (OSError, ValueError) as e:
        logger.debug("Cannot flush stdout: %s", e)


def log(
    icon: str,
    message: str,
    color: str = Colors.RESET,
    dim: bool = False,
    source: str | None = None,
) -> None:
    """Print one status line with timestamp and optional source tag."""
    style = Colors.MUTED if dim else ""
    timestamp = datetime.now().strftime("%H:%M:%S")

    if source:
        prefix = f"{get_source_color(source)}[{source}]{Colors.RESET} "
    else:
        prefix = ""

    emit(
        f"{Colors.GRAY}{timestamp}{Colors.RESET} {prefix}{style}{color}{icon} {message}{Colors.RESET}"
    )


def log_verbose(
    icon: str,
    message: str,
    color: str = Colors.MUTED,
    source: str | None = None,
) -> None:
    """Print a status line only when verbose output is enabled."""
    if _verbose_enabled:
        log(icon, message, color, source=source)


def log_output_line(line: str, source: str | None = None) -> None:
    """Echo one captured child-process line, tagged with its source."""
    if source:
        prefix = f"{get_source_color(source)}[{source}]{Colors.RESET} "
    else:
        prefix = "  "
    emit(f"{prefix}{line}")
