"""I/O utilities for warden.

This package contains:
- output_stream: line-buffered, broken-pipe tolerant child output capture
- log_output/: console logging and per-run debug log files
"""

from src.infra.io.output_stream import (
    LineFilter,
    OutputStreamManager,
    StreamStats,
    tolerant_write,
)

__all__ = [
    "LineFilter",
    "OutputStreamManager",
    "StreamStats",
    "tolerant_write",
]
