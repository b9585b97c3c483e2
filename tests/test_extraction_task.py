"""Tests for the per-source extraction task.

These tests run ExtractionTask against FakeSession with a small strategy
defined here, so every transition can be observed without a browser.

Key behaviors tested:
- INIT -> NAVIGATED -> FILTERED -> CAPTURED -> DONE on success
- Navigation errors end in FAILED with reason "navigation"
- A filter whose control is missing is skipped, not fatal
- Filters run in kind order regardless of declaration order
- Required setup steps are fatal; optional ones are best effort
- The session is closed exactly once, and close errors never propagate
- A set stop event ends the task with reason "cancelled"
"""

import asyncio
import re

import pytest

from carsearch.common.exceptions import (
    CommandFailedException,
    CommandTimeoutException,
    ElementNotFoundException,
    SnapshotUnavailableException,
)
from carsearch.common.listing_rules import FieldRule, ListingRules
from carsearch.common.snapshot import Selector
from carsearch.data_types import ExtractionFailure, ExtractionSuccess
from carsearch.extraction.interaction import Interaction
from carsearch.extraction.strategy import (
    FilterKind,
    FilterStep,
    PageStep,
    SourceStrategy,
)
from carsearch.extraction.task import (
    CANCELLED_FAILURE,
    NAVIGATION_FAILURE,
    ExtractionTask,
    TaskState,
)
from tests.utils import FakeSession

LISTING_PAGE = """\
- heading "3 vehicles" [level=1] [ref=e1]
- button "Colour" [ref=e2]
- link "2022 Range Rover Sport" [ref=e10]:
  - /url: /used/rrs-2022.html
  - text: $84,900
- link "2021 Range Rover Velar" [ref=e11]:
  - /url: /used/velar-2021.html
- link "2020 Discovery" [ref=e12]:
  - /url: /used/discovery-2020.html
"""


class ExampleStrategy(SourceStrategy):
    name = "example"
    display_name = "Example Motors"
    settle_after_open = 0.0
    settle_before_capture = 0.0
    listing_rules = ListingRules(
        anchor=re.compile(
            r'link\s+"(?P<year>\d{4})\s+(?P<title>[^"]+)"\s+\[ref='
        ),
        window=3,
        fields={
            "url": FieldRule(r"/url:\s+(\S+)"),
            "price": FieldRule(r"(\$[\d,]+)"),
        },
        dealer="Example Motors",
    )

    def __init__(self, filters=None, setup=None, **kwargs) -> None:
        super().__init__("https://example.com/", **kwargs)
        self._filters = filters or []
        self._setup = setup or []

    def listing_url(self, criteria):
        return f"{self.base_url}/used/"

    def setup_steps(self, criteria):
        return list(self._setup)

    def filter_steps(self, criteria):
        return list(self._filters)

    def parse_total_count(self, snapshot, records):
        match = snapshot.search(r'heading "(\d+) vehicles"')
        return int(match.group(1)) if match else len(records)


def recording_step(kind, description, log, selector=None):
    """A filter step that records its description and clicks selector."""

    async def action(interaction: Interaction, criteria) -> None:
        log.append(description)
        if selector is not None:
            await interaction.click(selector, description, settle=0)

    return FilterStep(kind, description, action)


class TestSuccessfulRun:
    """Tests for the happy path."""

    @pytest.mark.asyncio
    async def test_reaches_done(self, criteria) -> None:
        """A clean run shall pass through every state and return its records."""
        session = FakeSession(snapshots=[LISTING_PAGE])
        task = ExtractionTask("example", ExampleStrategy(), criteria, session)

        outcome = await task.run()

        assert isinstance(outcome, ExtractionSuccess)
        assert task.history == [
            TaskState.INIT,
            TaskState.NAVIGATED,
            TaskState.FILTERED,
            TaskState.CAPTURED,
            TaskState.DONE,
        ]
        assert outcome.source == "example"
        assert outcome.display_name == "Example Motors"
        assert outcome.total_count == 3
        assert [record.title for record in outcome.records] == [
            "2022 Range Rover Sport",
            "2021 Range Rover Velar",
            "2020 Discovery",
        ]
        assert outcome.records[0].url == "https://example.com/used/rrs-2022.html"
        assert outcome.records[0].price == "$84,900"
        assert outcome.elapsed >= 0

    @pytest.mark.asyncio
    async def test_opens_listing_url_and_closes(self, criteria) -> None:
        """The task shall open the strategy's listing URL and close the session once."""
        session = FakeSession(snapshots=[LISTING_PAGE])
        task = ExtractionTask("example", ExampleStrategy(), criteria, session)

        await task.run()

        assert session.calls[0] == ("open", "https://example.com/used/")
        assert session.operations.count("close") == 1
        assert session.operations[-1] == "close"

    @pytest.mark.asyncio
    async def test_run_twice_raises(self, criteria) -> None:
        """A task shall only run once."""
        task = ExtractionTask(
            "example", ExampleStrategy(), criteria, FakeSession()
        )
        await task.run()

        with pytest.raises(RuntimeError):
            await task.run()


class TestNavigationFailure:
    """Tests for failures while opening the listing page."""

    @pytest.mark.asyncio
    async def test_open_failure_is_navigation(self, criteria) -> None:
        """A failing open shall end in FAILED with reason 'navigation'."""
        session = FakeSession(
            open_error=CommandFailedException("open", 1, "net::ERR_NAME")
        )
        task = ExtractionTask("example", ExampleStrategy(), criteria, session)

        outcome = await task.run()

        assert isinstance(outcome, ExtractionFailure)
        assert outcome.reason == NAVIGATION_FAILURE
        assert "net::ERR_NAME" in outcome.detail
        assert task.history == [TaskState.INIT, TaskState.FAILED]
        assert session.operations == ["open", "close"]

    @pytest.mark.asyncio
    async def test_open_timeout_is_navigation(self, criteria) -> None:
        """A timed-out open shall also be reported as a navigation failure."""
        session = FakeSession(open_error=CommandTimeoutException("open", 15.0))
        task = ExtractionTask("example", ExampleStrategy(), criteria, session)

        outcome = await task.run()

        assert outcome.reason == NAVIGATION_FAILURE


class TestFilters:
    """Tests for filter application."""

    @pytest.mark.asyncio
    async def test_missing_control_skips_filter(self, criteria) -> None:
        """A filter whose control is absent shall be skipped and the task shall succeed."""
        log: list[str] = []
        filters = [
            recording_step(
                FilterKind.ATTRIBUTE,
                "colour filter",
                log,
                Selector.exact("button", "Colour"),
            ),
            recording_step(
                FilterKind.CATEGORY,
                "model filter",
                log,
                Selector.exact("button", "Model"),
            ),
        ]
        session = FakeSession(snapshots=[LISTING_PAGE])
        task = ExtractionTask(
            "example", ExampleStrategy(filters), criteria, session
        )

        outcome = await task.run()

        assert outcome.succeeded
        assert task.skipped_filters == ["model filter"]
        assert task.applied_filters == ["colour filter"]
        assert ("click", "e2") in session.calls
        assert TaskState.FILTERED in task.history

    @pytest.mark.asyncio
    async def test_filters_run_in_kind_order(self, criteria) -> None:
        """Filters shall run category, attribute, range, then page size."""
        log: list[str] = []
        filters = [
            recording_step(FilterKind.PAGE_SIZE, "display count", log),
            recording_step(FilterKind.RANGE, "year range", log),
            recording_step(FilterKind.ATTRIBUTE, "colour", log),
            recording_step(FilterKind.CATEGORY, "make", log),
            recording_step(FilterKind.CATEGORY, "model", log),
        ]
        task = ExtractionTask(
            "example", ExampleStrategy(filters), criteria, FakeSession()
        )

        await task.run()

        assert log == ["make", "model", "colour", "year range", "display count"]

    @pytest.mark.asyncio
    async def test_other_filter_errors_are_fatal(self, criteria) -> None:
        """A filter raising anything but a missing control shall fail the task."""

        async def crash(interaction, criteria) -> None:
            raise CommandFailedException("click e2", 1, "page crashed")

        filters = [FilterStep(FilterKind.ATTRIBUTE, "colour", crash)]
        session = FakeSession()
        task = ExtractionTask(
            "example", ExampleStrategy(filters), criteria, session
        )

        outcome = await task.run()

        assert not outcome.succeeded
        assert "page crashed" in outcome.reason
        assert task.state is TaskState.FAILED
        assert session.operations[-1] == "close"


class TestSetupSteps:
    """Tests for setup steps."""

    @pytest.mark.asyncio
    async def test_optional_step_failure_is_ignored(self, criteria) -> None:
        """An optional setup step whose control is missing shall not fail the task."""

        async def accept_cookies(interaction, criteria) -> None:
            await interaction.click(
                Selector.exact("button", "Accept all"), "cookie consent"
            )

        setup = [PageStep("cookie consent", accept_cookies)]
        task = ExtractionTask(
            "example",
            ExampleStrategy(setup=setup),
            criteria,
            FakeSession(snapshots=[LISTING_PAGE]),
        )

        outcome = await task.run()

        assert outcome.succeeded

    @pytest.mark.asyncio
    async def test_required_step_failure_is_fatal(self, criteria) -> None:
        """A required setup step whose control is missing shall fail the task."""

        async def choose_make(interaction, criteria) -> None:
            await interaction.select(
                Selector.exact("combobox", "make"), criteria.make, "make"
            )

        setup = [PageStep("make", choose_make, required=True)]
        task = ExtractionTask(
            "example",
            ExampleStrategy(setup=setup),
            criteria,
            FakeSession(snapshots=[LISTING_PAGE]),
        )

        outcome = await task.run()

        assert isinstance(outcome, ExtractionFailure)
        assert outcome.reason == "Could not find make"
        assert task.history == [
            TaskState.INIT,
            TaskState.NAVIGATED,
            TaskState.FAILED,
        ]


class TestCaptureFailure:
    """Tests for failures taking the final snapshot."""

    @pytest.mark.asyncio
    async def test_snapshot_unavailable(self, criteria) -> None:
        """Exhausted snapshot retries shall fail the task with the error's message."""
        session = FakeSession(snapshot_error=SnapshotUnavailableException(3))
        task = ExtractionTask("example", ExampleStrategy(), criteria, session)

        outcome = await task.run()

        assert outcome.reason == "Failed to take snapshot after 3 attempt(s)"
        assert task.history[-2] == TaskState.FILTERED
        assert task.state is TaskState.FAILED

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(self, criteria) -> None:
        """An unexpected exception shall become a failure, not escape run()."""

        class BrokenStrategy(ExampleStrategy):
            def parse_location(self, snapshot):
                raise KeyError("city")

        task = ExtractionTask(
            "example", BrokenStrategy(), criteria, FakeSession()
        )

        outcome = await task.run()

        assert isinstance(outcome, ExtractionFailure)
        assert outcome.detail == "KeyError('city')"


class TestCleanup:
    """Tests for session cleanup."""

    @pytest.mark.asyncio
    async def test_close_error_does_not_change_outcome(self, criteria) -> None:
        """A failing close shall neither raise nor turn success into failure."""
        session = FakeSession(
            snapshots=[LISTING_PAGE],
            close_error=CommandFailedException("close", 1, "gone"),
        )
        task = ExtractionTask("example", ExampleStrategy(), criteria, session)

        outcome = await task.run()

        assert outcome.succeeded
        assert session.operations[-1] == "close"

    @pytest.mark.asyncio
    async def test_close_error_after_failure(self, criteria) -> None:
        """A failing close after a failed navigation shall keep the navigation reason."""
        session = FakeSession(
            open_error=CommandFailedException("open", 1, "refused"),
            close_error=RuntimeError("close crashed"),
        )
        task = ExtractionTask("example", ExampleStrategy(), criteria, session)

        outcome = await task.run()

        assert outcome.reason == NAVIGATION_FAILURE


class TestCancellation:
    """Tests for the cancellation signal."""

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, criteria) -> None:
        """A task whose stop event is already set shall fail as cancelled without opening."""
        stop_event = asyncio.Event()
        stop_event.set()
        session = FakeSession(stop_event=stop_event)
        task = ExtractionTask(
            "example", ExampleStrategy(), criteria, session, stop_event
        )

        outcome = await task.run()

        assert outcome.reason == CANCELLED_FAILURE
        assert session.operations == ["close"]

    @pytest.mark.asyncio
    async def test_cancelled_while_navigating(self, criteria) -> None:
        """Setting the stop event during a slow open shall cancel the task promptly."""
        stop_event = asyncio.Event()
        session = FakeSession(open_delay=30, stop_event=stop_event)
        task = ExtractionTask(
            "example", ExampleStrategy(), criteria, session, stop_event
        )

        async def cancel_soon() -> None:
            await asyncio.sleep(0.05)
            stop_event.set()

        canceller = asyncio.create_task(cancel_soon())
        outcome = await asyncio.wait_for(task.run(), timeout=5)
        await canceller

        assert outcome.reason == CANCELLED_FAILURE
        assert outcome.detail == "open"
        assert task.history == [TaskState.INIT, TaskState.FAILED]

    @pytest.mark.asyncio
    async def test_cancelled_between_filters(self, criteria) -> None:
        """No further filter shall run once the stop event is set."""
        stop_event = asyncio.Event()
        log: list[str] = []

        async def stop_after(interaction, criteria) -> None:
            log.append("make")
            stop_event.set()

        filters = [
            FilterStep(FilterKind.CATEGORY, "make", stop_after),
            recording_step(FilterKind.ATTRIBUTE, "colour", log),
        ]
        task = ExtractionTask(
            "example",
            ExampleStrategy(filters),
            criteria,
            FakeSession(),
            stop_event,
        )

        outcome = await task.run()

        assert log == ["make"]
        assert outcome.reason == CANCELLED_FAILURE
        assert outcome.detail == "colour"


class TestElementNotFound:
    """Tests for ElementNotFoundException details."""

    def test_message_names_control(self) -> None:
        """The exception message shall name the missing control."""
        error = ElementNotFoundException('button:"Apply"', "apply button")
        assert error.message == "Could not find apply button"
        assert 'button:"Apply"' in str(error)
