"""Aggregation, rendering and persistence of validation reports.

ReportAggregator turns the per-validator results of one orchestrator run into
a ValidationReport, renders the human-readable summary and writes the report
artifacts. Artifact writes are best-effort: a failure is logged as a warning
and never changes the exit code.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from tabulate import tabulate

from src.core.models import ExecutionMode, ValidationReport

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from pathlib import Path

    from src.core.models import ValidatorResult

logger = logging.getLogger(__name__)

REPORT_JSON_NAME = "validation-report.json"
SUMMARY_TEXT_NAME = "validation-summary.txt"


class ReportFormat(Enum):
    """Which report artifacts to write."""

    JSON = "json"
    TEXT = "text"
    BOTH = "both"
    NONE = "none"

    @property
    def writes_json(self) -> bool:
        return self in (ReportFormat.JSON, ReportFormat.BOTH)

    @property
    def writes_text(self) -> bool:
        return self in (ReportFormat.TEXT, ReportFormat.BOTH)


def utc_timestamp() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


def _status(result: ValidatorResult) -> str:
    if result.success:
        return "WARN" if result.warnings else "PASS"
    return "TIMEOUT" if result.timed_out else "FAIL"


def _dedupe(lines: list[str]) -> list[str]:
    seen: set[str] = set()
    ordered = []
    for line in lines:
        if line not in seen:
            seen.add(line)
            ordered.append(line)
    return ordered


def _tool_results_lines(result: ValidatorResult) -> list[str]:
    tool_results = (result.details or {}).get("tool_results")
    if not tool_results:
        return []
    lines = ["", f"Test tool results ({result.name}):"]
    counts = tool_results.get("counts")
    if counts:
        lines.append(
            f"  {counts['total']} total, {counts['passed']} passed, "
            f"{counts['failed']} failed, {counts['skipped']} skipped, "
            f"{counts['flaky']} flaky"
        )
    critical = tool_results.get("critical_lines") or []
    if critical:
        lines.append("  Critical output:")
        lines.extend(f"    {line}" for line in critical)
        more = tool_results.get("more_critical", 0)
        if more:
            lines.append(f"    ... and {more} more")
    return lines


class ReportAggregator:
    """Builds, renders and persists ValidationReports."""

    def aggregate(
        self,
        results: Sequence[ValidatorResult],
        *,
        mode: ExecutionMode = ExecutionMode.PARALLEL,
        started_at: str | None = None,
        duration_seconds: float = 0.0,
        skipped: Sequence[str] = (),
        finished_at: str | None = None,
    ) -> ValidationReport:
        """Build the report. Results must already be in declaration order."""
        finished = finished_at or utc_timestamp()
        return ValidationReport(
            results=tuple(results),
            mode=mode,
            started_at=started_at or finished,
            finished_at=finished,
            duration_seconds=duration_seconds,
            skipped=tuple(skipped),
        )

    def render_summary(self, report: ValidationReport) -> str:
        """Render the human-readable summary.

        Layout: header with counts, a table of validators, errors (prefixed
        with the validator name, in first-occurrence order), then warnings,
        skipped units, the test tool's own results and the dropped-write
        count.
        """
        warned = f" ({report.warned_count} with warnings)" if report.warned_count else ""
        lines = [
            f"Validation summary ({report.mode.value}, "
            f"{report.duration_seconds:.1f}s): "
            f"{len(report.results)} run, {report.passed_count} passed{warned}, "
            f"{report.failed_count} failed, {len(report.skipped)} skipped",
        ]

        if report.results:
            rows = [
                [r.name, _status(r), len(r.errors), len(r.warnings)]
                for r in report.results
            ]
            rows.extend([name, "SKIPPED", "-", "-"] for name in report.skipped)
            lines.append("")
            lines.append(
                tabulate(
                    rows,
                    headers=["Validator", "Status", "Errors", "Warnings"],
                    tablefmt="simple",
                )
            )

        errors = _dedupe(
            [f"[{r.name}] {error}" for r in report.results for error in r.errors]
        )
        if errors:
            lines.append("")
            lines.append("Errors:")
            lines.extend(f"  {e}" for e in errors)

        warnings = _dedupe(
            [f"[{r.name}] {warning}" for r in report.results for warning in r.warnings]
        )
        if warnings:
            lines.append("")
            lines.append("Warnings:")
            lines.extend(f"  {w}" for w in warnings)

        if report.skipped:
            lines.append("")
            lines.append(f"Skipped: {', '.join(report.skipped)}")

        for result in report.results:
            lines.extend(_tool_results_lines(result))

        if report.dropped_writes:
            lines.append("")
            lines.append(f"Dropped output writes: {report.dropped_writes}")

        lines.append("")
        lines.append(f"Exit code: {report.overall_exit_code}")
        return "\n".join(lines) + "\n"

    def write_json(self, path: Path, payload: Mapping[str, Any]) -> bool:
        """Write one JSON document, creating its directory. Best-effort."""
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("Cannot create report directory %s: %s", path.parent, e)
            return False
        return self._write(path, json.dumps(payload, indent=2, default=str) + "\n")

    def write_artifacts(
        self,
        report: ValidationReport,
        directory: Path,
        formats: ReportFormat = ReportFormat.BOTH,
    ) -> list[Path]:
        """Write the selected artifacts into directory.

        Returns:
            Paths that were written successfully.
        """
        if formats is ReportFormat.NONE:
            return []

        written: list[Path] = []
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("Cannot create report directory %s: %s", directory, e)
            return written

        if formats.writes_json:
            path = directory / REPORT_JSON_NAME
            payload = json.dumps(report.to_dict(), indent=2, default=str) + "\n"
            if self._write(path, payload):
                written.append(path)
        if formats.writes_text:
            path = directory / SUMMARY_TEXT_NAME
            if self._write(path, self.render_summary(report)):
                written.append(path)
        return written

    def _write(self, path: Path, content: str) -> bool:
        try:
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            logger.warning("Failed to write %s: %s", path, e)
            return False
        logger.debug("Wrote %s", path)
        return True
