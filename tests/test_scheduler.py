"""Tests for the concurrent scheduler and result aggregation.

Key behaviors tested:
- Exactly one outcome per source, in registration order, regardless of
  completion order
- A failing or crashing task never affects its siblings
- Setting the stop event turns every unfinished task into a
  "cancelled" failure
- max_concurrency bounds the number of tasks in flight
- The aggregator's summary counts successes, failures and records
"""

import asyncio
import re

import pytest

from carsearch.aggregator import ResultAggregator, aggregate, summarize
from carsearch.common.exceptions import CommandFailedException
from carsearch.common.listing_rules import FieldRule, ListingRules
from carsearch.config import AutomationOptions
from carsearch.data_types import (
    ExtractionFailure,
    ExtractionSuccess,
    SearchCriteria,
    VehicleListing,
)
from carsearch.driver.scheduler import Scheduler, SourceSpec
from carsearch.extraction.strategy import SourceStrategy
from carsearch.extraction.task import CANCELLED_FAILURE, NAVIGATION_FAILURE
from tests.utils import FakeSession, collect_outcomes_async, session_factory_for


class LinkListStrategy(SourceStrategy):
    name = "links"
    display_name = "Link List"
    settle_after_open = 0.0
    settle_before_capture = 0.0
    listing_rules = ListingRules(
        anchor=re.compile(r'link\s+"(?P<year>\d{4})\s+(?P<title>[^"]+)"'),
        window=2,
        fields={"url": FieldRule(r"/url:\s+(\S+)")},
    )


def listing_page(count: int, start_year: int = 2015) -> str:
    lines = []
    for i in range(count):
        year = start_year + i
        lines.append(f'- link "{year} Range Rover" [ref=e{i}]:')
        lines.append(f"  - /url: /used/{year}.html")
    return "\n".join(lines)


def spec(source_id: str) -> SourceSpec:
    return SourceSpec(source_id, LinkListStrategy(f"https://{source_id}.example"))


class ConcurrencyProbe:
    """Tracks how many sessions are opening at the same time."""

    def __init__(self) -> None:
        self.active = 0
        self.peak = 0


class ProbedSession(FakeSession):
    def __init__(self, probe: ConcurrencyProbe, **kwargs) -> None:
        super().__init__(**kwargs)
        self.probe = probe

    async def open(self, url=None) -> None:
        self.probe.active += 1
        self.probe.peak = max(self.probe.peak, self.probe.active)
        try:
            await super().open(url)
        finally:
            self.probe.active -= 1


class TestSchedulerOrdering:
    """Tests for outcome count and order."""

    @pytest.mark.asyncio
    async def test_report_follows_registration_order(self, criteria) -> None:
        """Outcomes shall be in registration order even when tasks finish in reverse."""
        sessions = {
            "slow": FakeSession([listing_page(1)], open_delay=0.15),
            "medium": FakeSession([listing_page(2)], open_delay=0.05),
            "fast": FakeSession([listing_page(3)]),
        }
        callback, completed = collect_outcomes_async()
        scheduler = Scheduler(
            [spec("slow"), spec("medium"), spec("fast")],
            session_factory=session_factory_for(sessions),
            on_outcome=callback,
        )

        report = await scheduler.run(criteria)

        assert report.sources == ["slow", "medium", "fast"]
        assert [o.source for o in completed] == ["fast", "medium", "slow"]
        assert [len(o.records) for o in report] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_no_sources(self, criteria) -> None:
        """A run with no sources shall return an empty report immediately."""
        report = await Scheduler([]).run(criteria)

        assert len(report) == 0
        assert report.summary.total == 0

    def test_duplicate_source_ids_rejected(self) -> None:
        """Registering the same source twice shall raise ValueError."""
        with pytest.raises(ValueError, match="Duplicate"):
            Scheduler([spec("a"), spec("a")])

    def test_invalid_concurrency_rejected(self) -> None:
        """A concurrency cap below one shall raise ValueError."""
        with pytest.raises(ValueError):
            Scheduler([spec("a")], max_concurrency=0)


class TestFaultIsolation:
    """Tests for per-task failure isolation."""

    @pytest.mark.asyncio
    async def test_end_to_end_with_one_failure(self, criteria) -> None:
        """Two successes and one navigation failure shall aggregate to 2/1/8."""
        sessions = {
            "alpha": FakeSession([listing_page(5)]),
            "beta": FakeSession(
                open_error=CommandFailedException("open", 1, "DNS failure")
            ),
            "gamma": FakeSession([listing_page(3)], open_delay=0.05),
        }
        scheduler = Scheduler(
            [spec("alpha"), spec("beta"), spec("gamma")],
            session_factory=session_factory_for(sessions),
        )

        report = await scheduler.run(criteria)

        assert report.summary.total == 3
        assert report.summary.succeeded == 2
        assert report.summary.failed == 1
        assert report.summary.record_count == 8
        alpha, beta, gamma = report.outcomes
        assert isinstance(alpha, ExtractionSuccess)
        assert isinstance(beta, ExtractionFailure)
        assert beta.reason == NAVIGATION_FAILURE
        assert isinstance(gamma, ExtractionSuccess)
        assert gamma.records[0].url == "https://gamma.example/used/2015.html"
        assert all(s.operations[-1] == "close" for s in sessions.values())

    @pytest.mark.asyncio
    async def test_session_factory_crash_is_isolated(self, criteria) -> None:
        """A task whose session cannot be created shall fail alone."""
        good = FakeSession([listing_page(2)])

        def factory(source_id, options, stop_event):
            if source_id == "broken":
                raise OSError("cannot start browser")
            return good

        scheduler = Scheduler(
            [spec("broken"), spec("good")], session_factory=factory
        )

        report = await scheduler.run(criteria)

        broken, ok = report.outcomes
        assert isinstance(broken, ExtractionFailure)
        assert broken.reason == "cannot start browser"
        assert broken.display_name == "Link List"
        assert ok.succeeded

    @pytest.mark.asyncio
    async def test_callback_error_is_contained(self, criteria) -> None:
        """An outcome callback that raises shall not affect the report."""

        async def broken_callback(outcome) -> None:
            raise RuntimeError("callback broke")

        scheduler = Scheduler(
            [spec("a")],
            session_factory=session_factory_for({"a": FakeSession()}),
            on_outcome=broken_callback,
        )

        report = await scheduler.run(criteria)

        assert report.summary.total == 1


class TestSchedulerCancellation:
    """Tests for run-wide cancellation."""

    @pytest.mark.asyncio
    async def test_stop_event_cancels_every_task(self, criteria) -> None:
        """Setting the stop event shall end all running tasks as cancelled."""
        sessions = {
            source_id: FakeSession(open_delay=30)
            for source_id in ("a", "b", "c")
        }
        stop_event = asyncio.Event()
        scheduler = Scheduler(
            [spec("a"), spec("b"), spec("c")],
            session_factory=session_factory_for(sessions),
        )

        async def cancel_soon() -> None:
            await asyncio.sleep(0.05)
            stop_event.set()

        canceller = asyncio.create_task(cancel_soon())
        report = await asyncio.wait_for(
            scheduler.run(criteria, stop_event=stop_event), timeout=5
        )
        await canceller

        assert len(report) == 3
        assert all(o.reason == CANCELLED_FAILURE for o in report)
        assert all(s.operations[-1] == "close" for s in sessions.values())

    @pytest.mark.asyncio
    async def test_stop_before_run(self, criteria) -> None:
        """A stop event set before the run shall cancel every task without navigating."""
        sessions = {"a": FakeSession(), "b": FakeSession()}
        stop_event = asyncio.Event()
        stop_event.set()
        scheduler = Scheduler(
            [spec("a"), spec("b")],
            session_factory=session_factory_for(sessions),
        )

        report = await scheduler.run(criteria, stop_event=stop_event)

        assert [o.reason for o in report] == [CANCELLED_FAILURE] * 2
        assert all("open" not in s.operations for s in sessions.values())


class TestConcurrency:
    """Tests for parallel execution."""

    @pytest.mark.asyncio
    async def test_tasks_run_concurrently(self, criteria) -> None:
        """Without a cap every task shall be in flight at once."""
        probe = ConcurrencyProbe()
        sessions = {
            source_id: ProbedSession(probe, open_delay=0.05)
            for source_id in ("a", "b", "c", "d")
        }
        scheduler = Scheduler(
            [spec(source_id) for source_id in sessions],
            session_factory=session_factory_for(sessions),
        )

        await scheduler.run(criteria)

        assert probe.peak == 4

    @pytest.mark.asyncio
    async def test_max_concurrency(self, criteria) -> None:
        """A concurrency cap shall bound the number of tasks in flight."""
        probe = ConcurrencyProbe()
        sessions = {
            source_id: ProbedSession(probe, open_delay=0.05)
            for source_id in ("a", "b", "c", "d")
        }
        scheduler = Scheduler(
            [spec(source_id) for source_id in sessions],
            session_factory=session_factory_for(sessions),
            max_concurrency=2,
        )

        report = await scheduler.run(criteria)

        assert probe.peak == 2
        assert report.summary.succeeded == 4

    @pytest.mark.asyncio
    async def test_timeout_override_reaches_sessions(self) -> None:
        """A per-run timeout shall override the configured command timeout."""
        seen: list[AutomationOptions] = []

        def factory(source_id, options, stop_event):
            seen.append(options)
            return FakeSession()

        criteria = SearchCriteria(
            make="Dodge",
            model="Grand Caravan",
            postal_code="L5B1C2",
            timeout_ms=4000,
        )
        scheduler = Scheduler(
            [spec("a")],
            options=AutomationOptions(default_timeout_ms=15000),
            session_factory=factory,
        )

        await scheduler.run(criteria)

        assert seen[0].default_timeout_ms == 4000


def success(source: str, records: int = 0) -> ExtractionSuccess:
    return ExtractionSuccess(
        source=source,
        display_name=source,
        records=tuple(
            VehicleListing(title=f"20{10 + i} Range Rover", year=2010 + i)
            for i in range(records)
        ),
        total_count=records,
    )


def failure(source: str) -> ExtractionFailure:
    return ExtractionFailure(source=source, display_name=source, reason="x")


class TestAggregator:
    """Tests for ResultAggregator and aggregate()."""

    def test_summary(self) -> None:
        """The summary shall count successes, failures and records."""
        summary = summarize([success("a", 5), failure("b"), success("c", 3)])

        assert (
            summary.total,
            summary.succeeded,
            summary.failed,
            summary.record_count,
        ) == (3, 2, 1, 8)

    def test_registration_order(self) -> None:
        """Outcomes recorded in any order shall be reported in registration order."""
        aggregator = ResultAggregator(["a", "b", "c"])
        aggregator.record(2, success("c"))
        aggregator.record(0, failure("a"))
        aggregator.record(1, success("b"))

        report = aggregator.build()

        assert report.sources == ["a", "b", "c"]
        assert aggregator.completion_order == ["c", "a", "b"]

    def test_missing_outcome(self) -> None:
        """Building with an outcome missing shall raise ValueError."""
        aggregator = ResultAggregator(["a", "b"])
        aggregator.record(0, success("a"))

        assert aggregator.pending == ["b"]
        with pytest.raises(ValueError, match="b"):
            aggregator.build()

    def test_duplicate_outcome(self) -> None:
        """Recording a source twice shall raise ValueError."""
        aggregator = ResultAggregator(["a"])
        aggregator.record(0, success("a"))

        with pytest.raises(ValueError):
            aggregator.record(0, failure("a"))

    def test_mismatched_slot(self) -> None:
        """Recording an outcome in another source's slot shall raise ValueError."""
        aggregator = ResultAggregator(["a", "b"])

        with pytest.raises(ValueError):
            aggregator.record(0, success("b"))

    def test_aggregate_unordered(self) -> None:
        """aggregate() shall reorder outcomes and reject unknown sources."""
        report = aggregate(["a", "b"], [success("b", 1), success("a", 2)])
        assert report.sources == ["a", "b"]
        assert report.summary.record_count == 3

        with pytest.raises(ValueError, match="Unknown"):
            aggregate(["a"], [success("z")])

    def test_report_to_dict(self) -> None:
        """The serialized report shall carry the summary and every outcome."""
        report = aggregate(["a", "b"], [success("a", 1), failure("b")])

        data = report.to_dict()

        assert data["summary"] == {
            "total": 2,
            "succeeded": 1,
            "failed": 1,
            "record_count": 1,
        }
        assert data["outcomes"][0]["listings"][0]["title"] == "2010 Range Rover"
        assert data["outcomes"][1]["reason"] == "x"
