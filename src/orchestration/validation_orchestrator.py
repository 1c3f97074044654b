"""Concurrent or sequential execution of validator units.

ValidationOrchestrator invokes every unit of a registry and hands the results
to ReportAggregator. It never raises for validator failures: a unit that
raises, or returns something other than a ValidatorResult, becomes a failed
result while its siblings keep running.

Results are always in declaration order, whatever order the units finish in.
"""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import logging
import time
from typing import TYPE_CHECKING

from src.core.models import ExecutionMode, ValidatorResult
from src.domain.validation.report import ReportAggregator, utc_timestamp

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from src.core.models import ValidationReport
    from src.domain.validation.validators import ValidatorUnit

logger = logging.getLogger(__name__)


class ValidationOrchestrator:
    """Runs validator units and aggregates their results.

    Example:
        orchestrator = ValidationOrchestrator()
        report = await orchestrator.run(registry, ExecutionMode.PARALLEL)
        raise typer.Exit(report.overall_exit_code)
    """

    def __init__(
        self,
        aggregator: ReportAggregator | None = None,
        *,
        on_result: Callable[[ValidatorResult], None] | None = None,
        interrupt_event: asyncio.Event | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            aggregator: Builds the final report.
            on_result: Called once per finished unit, in completion order.
            interrupt_event: When set, sequential runs stop starting units and
                list the rest as skipped.
        """
        self.aggregator = aggregator or ReportAggregator()
        self.on_result = on_result
        self.interrupt_event = interrupt_event

    async def run(
        self,
        units: Iterable[ValidatorUnit],
        mode: ExecutionMode = ExecutionMode.PARALLEL,
        stop_on_first_failure: bool = False,
    ) -> ValidationReport:
        """Run every unit and return the aggregated report.

        Args:
            units: Units in declaration order.
            mode: PARALLEL starts all units at once; SEQUENTIAL runs them one
                after another in declaration order.
            stop_on_first_failure: Sequential only. After the first failed
                unit the remaining ones are not run and are reported as
                skipped.
        """
        unit_list = list(units)
        started_at = utc_timestamp()
        start = time.monotonic()
        skipped: list[str] = []

        logger.info("Running %d validator(s) in %s mode", len(unit_list), mode.value)
        if mode is ExecutionMode.PARALLEL:
            if stop_on_first_failure:
                logger.debug("stop_on_first_failure has no effect in parallel mode")
            results = list(
                await asyncio.gather(*(self._run_unit(u) for u in unit_list))
            )
        else:
            results = []
            for position, unit in enumerate(unit_list):
                if self._interrupted():
                    skipped = [u.name for u in unit_list[position:]]
                    logger.info("Interrupted, skipping %s", ", ".join(skipped))
                    break
                result = await self._run_unit(unit)
                results.append(result)
                if stop_on_first_failure and not result.success:
                    skipped = [u.name for u in unit_list[position + 1 :]]
                    if skipped:
                        logger.info(
                            "%s failed, skipping %s", unit.name, ", ".join(skipped)
                        )
                    break

        return self.aggregator.aggregate(
            results,
            mode=mode,
            started_at=started_at,
            duration_seconds=time.monotonic() - start,
            skipped=skipped,
        )

    async def _run_unit(self, unit: ValidatorUnit) -> ValidatorResult:
        logger.debug("Validator %s started", unit.name)
        try:
            value = unit.check()
            if inspect.isawaitable(value):
                value = await value
        except Exception as e:
            logger.warning("Validator %s raised: %s", unit.name, e, exc_info=True)
            result = ValidatorResult.from_exception(unit.name, e)
        else:
            if isinstance(value, ValidatorResult):
                result = value
                if result.name != unit.name:
                    result = dataclasses.replace(result, name=unit.name)
            else:
                result = ValidatorResult.failed(
                    unit.name,
                    [
                        f"validator returned {type(value).__name__}, "
                        "expected ValidatorResult"
                    ],
                )
        logger.info(
            "Validator %s %s", unit.name, "passed" if result.success else "failed"
        )
        if self.on_result is not None:
            try:
                self.on_result(result)
            except Exception as e:
                # Progress output only; the result still counts
                logger.warning("Result callback failed for %s: %s", unit.name, e)
        return result

    def _interrupted(self) -> bool:
        return self.interrupt_event is not None and self.interrupt_event.is_set()
