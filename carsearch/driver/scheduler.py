"""Concurrent scheduler for extraction tasks.

Fans one ExtractionTask per enabled source out in parallel, each with its
own automation session, and collects exactly one outcome per source.
Failures are isolated per task: anything a task lets escape is converted
into an ExtractionFailure for that task alone, and the run always returns
a complete AggregatedReport.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

from carsearch.aggregator import ResultAggregator
from carsearch.config import AutomationOptions
from carsearch.data_types import (
    AggregatedReport,
    ExtractionFailure,
    ExtractionOutcome,
    SearchCriteria,
)
from carsearch.driver.automation_client import (
    AutomationClient,
    AutomationSession,
)
from carsearch.extraction.strategy import SourceStrategy
from carsearch.extraction.task import ExtractionTask

logger = logging.getLogger(__name__)

SessionFactory = Callable[
    [str, AutomationOptions, asyncio.Event], AutomationSession
]


@dataclass(frozen=True)
class SourceSpec:
    """One enabled source: its id and configured strategy."""

    source_id: str
    strategy: SourceStrategy


def default_session_factory(
    source_id: str, options: AutomationOptions, stop_event: asyncio.Event
) -> AutomationSession:
    """Create a fresh AutomationClient for one task."""
    return AutomationClient(
        options, session_name=source_id, stop_event=stop_event
    )


class Scheduler:
    """Runs a batch of extraction tasks concurrently.

    Example usage:
        scheduler = Scheduler(build_sources(config), config.automation)
        report = await scheduler.run(criteria, stop_event=stop_event)
        for outcome in report:
            print(outcome.source, outcome.succeeded)
    """

    def __init__(
        self,
        sources: Sequence[SourceSpec],
        options: AutomationOptions | None = None,
        session_factory: SessionFactory | None = None,
        max_concurrency: int | None = None,
        on_outcome: Callable[[ExtractionOutcome], Awaitable[None]]
        | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            sources: Enabled sources in registration order. The report
                follows this order.
            options: Automation options shared read-only by every session.
            session_factory: Creates one session per task. Defaults to a
                new AutomationClient per source.
            max_concurrency: Optional cap on tasks running at once. None
                runs every task concurrently.
            on_outcome: Optional async callback invoked with each outcome as
                soon as its task finishes, in completion order.
        """
        ids = [spec.source_id for spec in sources]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"Duplicate source ids: {', '.join(duplicates)}")
        if max_concurrency is not None and max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        self.sources = list(sources)
        self.options = options or AutomationOptions()
        self.session_factory = session_factory or default_session_factory
        self.max_concurrency = max_concurrency
        self.on_outcome = on_outcome

    def _options_for(self, criteria: SearchCriteria) -> AutomationOptions:
        if criteria.timeout_ms is None:
            return self.options
        return self.options.model_copy(
            update={"default_timeout_ms": criteria.timeout_ms}
        )

    async def run(
        self,
        criteria: SearchCriteria,
        stop_event: asyncio.Event | None = None,
    ) -> AggregatedReport:
        """Run one task per source and aggregate their outcomes.

        Args:
            criteria: Search criteria shared by every task.
            stop_event: Cancellation signal. Setting it makes every running
                task end with a "cancelled" failure at its next suspension
                point. A private event is used when None.

        Returns:
            AggregatedReport with one outcome per source, in registration
            order.
        """
        aggregator = ResultAggregator([spec.source_id for spec in self.sources])
        if not self.sources:
            logger.info("No sources enabled; nothing to run")
            return aggregator.build()

        stop_event = stop_event or asyncio.Event()
        options = self._options_for(criteria)
        semaphore = (
            asyncio.Semaphore(self.max_concurrency)
            if self.max_concurrency
            else None
        )

        logger.info(
            f"Starting {len(self.sources)} extraction task(s) for "
            f"{criteria.make} {criteria.model} near {criteria.postal_code}: "
            f"{', '.join(spec.source_id for spec in self.sources)}"
        )
        started = time.monotonic()

        async def run_one(index: int, spec: SourceSpec) -> None:
            if semaphore is None:
                outcome = await self._run_isolated(
                    spec, criteria, options, stop_event
                )
            else:
                async with semaphore:
                    outcome = await self._run_isolated(
                        spec, criteria, options, stop_event
                    )
            aggregator.record(index, outcome)
            if self.on_outcome is not None:
                try:
                    await self.on_outcome(outcome)
                except Exception:
                    logger.exception(
                        f"[{spec.source_id}] Outcome callback failed"
                    )

        await asyncio.gather(
            *(run_one(i, spec) for i, spec in enumerate(self.sources))
        )

        report = aggregator.build()
        logger.info(
            f"Completed {report.summary.total} task(s) in "
            f"{time.monotonic() - started:.1f}s: "
            f"{report.summary.succeeded} succeeded, "
            f"{report.summary.failed} failed, "
            f"{report.summary.record_count} listing(s)"
        )
        return report

    async def _run_isolated(
        self,
        spec: SourceSpec,
        criteria: SearchCriteria,
        options: AutomationOptions,
        stop_event: asyncio.Event,
    ) -> ExtractionOutcome:
        """Run one task; any escaped exception becomes its failure."""
        started = time.monotonic()
        try:
            session = self.session_factory(spec.source_id, options, stop_event)
            task = ExtractionTask(
                spec.source_id, spec.strategy, criteria, session, stop_event
            )
            return await task.run()
        except Exception as e:
            logger.error(
                f"[{spec.source_id}] Task crashed: {e}", exc_info=True
            )
            return ExtractionFailure(
                source=spec.source_id,
                display_name=spec.strategy.display_name or spec.source_id,
                reason=str(e) or type(e).__name__,
                elapsed=time.monotonic() - started,
                detail=repr(e),
            )
