"""Per-source extraction task.

One ExtractionTask runs one source's pipeline against its own automation
session:

    INIT -> NAVIGATED -> FILTERED -> CAPTURED -> DONE

with FAILED reachable from any state. Errors never escape run(): every
exception a transition raises is turned into an ExtractionFailure, and the
session is always closed before the outcome is returned.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum

from carsearch.common.exceptions import (
    CarSearchException,
    ElementNotFoundException,
    NavigationException,
    TaskCancelledException,
    TransientException,
)
from carsearch.data_types import (
    ExtractionFailure,
    ExtractionOutcome,
    ExtractionSuccess,
    SearchCriteria,
)
from carsearch.driver.automation_client import AutomationSession
from carsearch.extraction.interaction import Interaction
from carsearch.extraction.strategy import (
    ExtractedPage,
    SourceStrategy,
    order_filter_steps,
)

logger = logging.getLogger(__name__)

NAVIGATION_FAILURE = "navigation"
CANCELLED_FAILURE = "cancelled"


class TaskState(Enum):
    INIT = "init"
    NAVIGATED = "navigated"
    FILTERED = "filtered"
    CAPTURED = "captured"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.DONE, TaskState.FAILED)


class ExtractionTask:
    """Runs one source's extraction exactly once.

    Attributes:
        source_id: Id of the source this task extracts from.
        strategy: The source's capability set.
        criteria: The run's search criteria.
        session: The automation session this task owns exclusively.
        stop_event: Cancellation signal shared by the run.
        state: Current state.
        history: Every state entered, in order, starting with INIT.
        applied_filters: Descriptions of filter steps that succeeded.
        skipped_filters: Descriptions of filter steps whose control was
            not found.
    """

    def __init__(
        self,
        source_id: str,
        strategy: SourceStrategy,
        criteria: SearchCriteria,
        session: AutomationSession,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self.source_id = source_id
        self.strategy = strategy
        self.criteria = criteria
        self.session = session
        self.stop_event = stop_event
        self.interaction = Interaction(session, source_id)
        self.state = TaskState.INIT
        self.history: list[TaskState] = [TaskState.INIT]
        self.applied_filters: list[str] = []
        self.skipped_filters: list[str] = []
        self._started = False

    @property
    def display_name(self) -> str:
        return self.strategy.display_name or self.source_id

    def _transition(self, state: TaskState) -> None:
        if self.state.is_terminal:
            raise RuntimeError(
                f"Task {self.source_id} is already {self.state.value}"
            )
        logger.debug(
            f"[{self.source_id}] {self.state.value} -> {state.value}"
        )
        self.state = state
        self.history.append(state)

    def _checkpoint(self, operation: str) -> None:
        if self.stop_event is not None and self.stop_event.is_set():
            raise TaskCancelledException(operation)

    async def run(self) -> ExtractionOutcome:
        """Execute the pipeline and return its outcome.

        Returns:
            ExtractionSuccess on DONE, ExtractionFailure on FAILED.

        Raises:
            RuntimeError: If the task has already been run.
        """
        if self._started:
            raise RuntimeError(f"Task {self.source_id} has already run")
        self._started = True

        started = time.monotonic()
        try:
            outcome = await self._execute(started)
        finally:
            await self._close()

        if outcome.succeeded:
            logger.info(
                f"[{self.source_id}] Found {len(outcome.records)} listing(s) "
                f"in {outcome.elapsed:.1f}s"
            )
        else:
            logger.warning(
                f"[{self.source_id}] Failed after {outcome.elapsed:.1f}s: "
                f"{outcome.reason}"
            )
        return outcome

    async def _execute(self, started: float) -> ExtractionOutcome:
        try:
            await self._navigate()
            await self._setup()
            await self._apply_filters()
            page = await self._capture()
        except TaskCancelledException as e:
            logger.info(f"[{self.source_id}] Cancelled during {e.operation}")
            return self._fail(CANCELLED_FAILURE, started, e.operation)
        except NavigationException as e:
            return self._fail(NAVIGATION_FAILURE, started, str(e.cause))
        except (CarSearchException, TransientException) as e:
            reason = getattr(e, "message", None) or str(e)
            return self._fail(reason, started, str(e))
        except Exception as e:
            logger.exception(f"[{self.source_id}] Unexpected extraction error")
            return self._fail(str(e) or type(e).__name__, started, repr(e))

        self._transition(TaskState.DONE)
        return ExtractionSuccess(
            source=self.source_id,
            display_name=self.display_name,
            records=page.records,
            total_count=page.total_count,
            location_label=page.location_label,
            elapsed=time.monotonic() - started,
        )

    def _fail(
        self, reason: str, started: float, detail: str | None = None
    ) -> ExtractionFailure:
        if not self.state.is_terminal:
            self._transition(TaskState.FAILED)
        return ExtractionFailure(
            source=self.source_id,
            display_name=self.display_name,
            reason=reason,
            elapsed=time.monotonic() - started,
            detail=detail,
        )

    async def _navigate(self) -> None:
        """INIT -> NAVIGATED: open the listing page."""
        self._checkpoint("navigate")
        url = self.strategy.listing_url(self.criteria)
        logger.info(f"[{self.source_id}] Opening {url}")
        try:
            await self.session.open(url)
        except TaskCancelledException:
            raise
        except (TransientException, CarSearchException, OSError) as e:
            raise NavigationException(url, e) from e

        self._transition(TaskState.NAVIGATED)
        await self.interaction.settle(self.strategy.settle_after_open)

    async def _setup(self) -> None:
        """Run setup steps. Optional steps are best effort."""
        for step in self.strategy.setup_steps(self.criteria):
            self._checkpoint(step.description)
            if step.required:
                await step.action(self.interaction, self.criteria)
                continue
            try:
                await step.action(self.interaction, self.criteria)
            except TaskCancelledException:
                raise
            except (CarSearchException, TransientException) as e:
                logger.debug(
                    f"[{self.source_id}] Skipped {step.description}: {e}"
                )

    async def _apply_filters(self) -> None:
        """NAVIGATED -> FILTERED: apply filter steps in kind order.

        A filter whose control cannot be found is skipped with a warning.
        Any other error fails the task.
        """
        steps = order_filter_steps(self.strategy.filter_steps(self.criteria))
        for step in steps:
            self._checkpoint(step.description)
            try:
                await step.action(self.interaction, self.criteria)
            except ElementNotFoundException as e:
                logger.warning(
                    f"[{self.source_id}] Skipping {step.description}: "
                    f"{e.message}"
                )
                self.skipped_filters.append(step.description)
                continue
            logger.debug(f"[{self.source_id}] Applied {step.description}")
            self.applied_filters.append(step.description)

        self._transition(TaskState.FILTERED)

    async def _capture(self) -> ExtractedPage:
        """FILTERED -> CAPTURED: final snapshot and record extraction."""
        await self.interaction.settle(self.strategy.settle_before_capture)
        self._checkpoint("capture")
        snapshot = await self.interaction.snapshot()
        page = self.strategy.extract(snapshot, self.criteria)
        self._transition(TaskState.CAPTURED)
        return page

    async def _close(self) -> None:
        try:
            await self.session.close()
        except Exception as e:
            logger.warning(f"[{self.source_id}] Error closing session: {e}")
