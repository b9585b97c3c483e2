"""Test utilities for extraction task and scheduler tests.

This module provides an in-memory automation session and small helpers
shared by the test modules.
"""

import asyncio
import json
import logging
import shlex
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from carsearch.common.exceptions import TaskCancelledException
from carsearch.common.snapshot import Snapshot
from carsearch.config import AutomationOptions

logger = logging.getLogger(__name__)

FAKE_CLI = Path(__file__).parent / "fake_playwright_cli.py"


class FakeSession:
    """In-memory AutomationSession.

    Snapshots are served from a list; the last one repeats. Every call is
    recorded in ``calls`` as a tuple of the operation name and arguments.

    Example:
        session = FakeSession(snapshots=[LISTING_PAGE])
        task = ExtractionTask("example", strategy, criteria, session)
        outcome = await task.run()
        assert ("close",) in session.calls
    """

    def __init__(
        self,
        snapshots: list[str] | None = None,
        open_error: Exception | None = None,
        close_error: Exception | None = None,
        snapshot_error: Exception | None = None,
        open_delay: float = 0.0,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self.snapshots = snapshots or ["- generic [ref=e1]: empty"]
        self.open_error = open_error
        self.close_error = close_error
        self.snapshot_error = snapshot_error
        self.open_delay = open_delay
        self.stop_event = stop_event
        self.calls: list[tuple[Any, ...]] = []
        self._snapshot_index = 0

    @property
    def operations(self) -> list[str]:
        return [call[0] for call in self.calls]

    async def _suspend(self, seconds: float, operation: str) -> None:
        if self.stop_event is None:
            await asyncio.sleep(seconds)
            return
        if self.stop_event.is_set():
            raise TaskCancelledException(operation)
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
        except TimeoutError:
            return
        raise TaskCancelledException(operation)

    async def open(self, url: str | None = None) -> None:
        self.calls.append(("open", url))
        if self.open_delay:
            await self._suspend(self.open_delay, "open")
        if self.open_error is not None:
            raise self.open_error

    async def snapshot(self) -> Snapshot:
        self.calls.append(("snapshot",))
        if self.snapshot_error is not None:
            raise self.snapshot_error
        text = self.snapshots[min(self._snapshot_index, len(self.snapshots) - 1)]
        self._snapshot_index += 1
        return Snapshot(text)

    async def click(self, ref: str) -> None:
        self.calls.append(("click", ref))

    async def fill(self, ref: str, text: str) -> None:
        self.calls.append(("fill", ref, text))

    async def select(self, ref: str, value: str) -> None:
        self.calls.append(("select", ref, value))

    async def evaluate(self, script: str) -> None:
        self.calls.append(("evaluate", script))

    async def wait(self, seconds: float) -> None:
        self.calls.append(("wait", seconds))
        if self.stop_event is not None and self.stop_event.is_set():
            raise TaskCancelledException("wait")
        await asyncio.sleep(0)

    async def close(self) -> None:
        self.calls.append(("close",))
        if self.close_error is not None:
            raise self.close_error


def session_factory_for(
    sessions: dict[str, FakeSession],
) -> Callable[[str, AutomationOptions, asyncio.Event], FakeSession]:
    """Build a scheduler session factory serving prepared FakeSessions.

    The run's stop event is attached to each session as it is handed out.
    """

    def factory(
        source_id: str, options: AutomationOptions, stop_event: asyncio.Event
    ) -> FakeSession:
        session = sessions[source_id]
        session.stop_event = stop_event
        return session

    return factory


def collect_outcomes_async() -> tuple[
    Callable[[Any], Awaitable[None]], list[Any]
]:
    """Create an async callback that collects outcomes in a list.

    Returns:
        A tuple of (async_callback_function, outcomes_list), for use as the
        scheduler's on_outcome callback.

    Example:
        callback, outcomes = collect_outcomes_async()
        scheduler = Scheduler(sources, on_outcome=callback)
        await scheduler.run(criteria)
        assert len(outcomes) == len(sources)
    """
    outcomes: list[Any] = []

    async def callback(outcome: Any) -> None:
        outcomes.append(outcome)

    return callback, outcomes


def fake_command(scenario: Path) -> str:
    """Command line running the fake automation command for a scenario."""
    return shlex.join([sys.executable, str(FAKE_CLI), str(scenario)])


def read_invocations(scenario: Path) -> list[list[str]]:
    """Argument vectors the fake command received, in call order."""
    log_path = scenario.with_suffix(".log")
    if not log_path.exists():
        return []
    return [
        json.loads(line)
        for line in log_path.read_text(encoding="utf-8").splitlines()
        if line.strip()
    ]
