"""Summary of what the test tool itself reported.

After a run, two sources are read (both optional, both best-effort):

- the tool's JSON report (Playwright's `stats` block: expected, unexpected,
  skipped, flaky), giving pass/fail/skip counts;
- the stderr capture log of the last attempt, scanned for critical lines.

A JSON report older than the run is ignored so a stale file from an earlier
run is never reported as this run's result.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Mapping
    from pathlib import Path

logger = logging.getLogger(__name__)

CRITICAL_LINE = re.compile(r"Error:|Failed:|EPIPE")

# Critical lines kept in the summary; the rest are only counted
MAX_CRITICAL_LINES = 5

# File mtimes come from a coarse clock and can trail time.time()
STALE_SLACK_SECONDS = 2.0


@dataclass(frozen=True)
class ResultCounts:
    total: int
    passed: int
    failed: int
    skipped: int
    flaky: int = 0

    def describe(self) -> str:
        return (
            f"{self.total} total, {self.passed} passed, {self.failed} failed, "
            f"{self.skipped} skipped, {self.flaky} flaky"
        )


@dataclass(frozen=True)
class ToolResultsSummary:
    counts: ResultCounts | None = None
    critical_lines: tuple[str, ...] = ()
    more_critical: int = 0

    @property
    def empty(self) -> bool:
        return self.counts is None and not self.critical_lines

    def to_dict(self) -> dict[str, Any]:
        counts = self.counts
        return {
            "counts": (
                {
                    "total": counts.total,
                    "passed": counts.passed,
                    "failed": counts.failed,
                    "skipped": counts.skipped,
                    "flaky": counts.flaky,
                }
                if counts is not None
                else None
            ),
            "critical_lines": list(self.critical_lines),
            "more_critical": self.more_critical,
        }


def _count(stats: Mapping[str, Any], key: str) -> int:
    value = stats.get(key, 0)
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


def parse_counts(data: Any) -> ResultCounts | None:
    """Counts from a parsed JSON report, or None if it has no stats block."""
    if not isinstance(data, dict) or not isinstance(data.get("stats"), dict):
        return None
    stats = data["stats"]
    passed = _count(stats, "expected")
    failed = _count(stats, "unexpected")
    skipped = _count(stats, "skipped")
    flaky = _count(stats, "flaky")
    total = _count(stats, "total") or passed + failed + skipped + flaky
    return ResultCounts(
        total=total, passed=passed, failed=failed, skipped=skipped, flaky=flaky
    )


def read_counts(results_file: Path, *, since: float | None = None) -> ResultCounts | None:
    """Read the tool's JSON report.

    Args:
        results_file: Path of the report.
        since: Epoch seconds; a report last modified more than
            STALE_SLACK_SECONDS before it is ignored.
    """
    try:
        mtime = results_file.stat().st_mtime
        if since is not None and mtime < since - STALE_SLACK_SECONDS:
            logger.debug("Ignoring stale results file %s", results_file)
            return None
        data = json.loads(results_file.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning("Cannot read test results %s: %s", results_file, e)
        return None
    return parse_counts(data)


def read_critical_lines(log_path: Path) -> tuple[tuple[str, ...], int]:
    """First critical lines of a capture log and how many more there were."""
    try:
        text = log_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return (), 0
    lines = [line.strip() for line in text.splitlines() if CRITICAL_LINE.search(line)]
    kept = tuple(lines[:MAX_CRITICAL_LINES])
    return kept, len(lines) - len(kept)


def summarize(
    results_file: Path | None,
    stderr_log: Path | None,
    *,
    since: float | None = None,
) -> ToolResultsSummary:
    counts = read_counts(results_file, since=since) if results_file else None
    critical: tuple[str, ...] = ()
    more = 0
    if stderr_log is not None:
        critical, more = read_critical_lines(stderr_log)
    return ToolResultsSummary(counts=counts, critical_lines=critical, more_critical=more)
