"""Snapshot-resolve-act helpers for filter and preparation steps.

Every interaction with a page follows the same pattern: take a fresh
snapshot, resolve a selector to an element reference within it, act on the
reference, then give the page time to settle. References are never reused
across snapshots.
"""

from __future__ import annotations

import logging

from carsearch.common.exceptions import ElementNotFoundException
from carsearch.common.snapshot import Selector, Snapshot
from carsearch.data_types import ElementReference
from carsearch.driver.automation_client import AutomationSession

logger = logging.getLogger(__name__)


class Interaction:
    """Page interactions for one task's session.

    Attributes:
        session: The task's automation session.
        source: Source id used in log messages.
        last_snapshot: The most recent snapshot taken through this helper.
    """

    def __init__(self, session: AutomationSession, source: str) -> None:
        self.session = session
        self.source = source
        self.last_snapshot: Snapshot | None = None

    async def snapshot(self) -> Snapshot:
        self.last_snapshot = await self.session.snapshot()
        return self.last_snapshot

    async def settle(self, seconds: float) -> None:
        if seconds > 0:
            await self.session.wait(seconds)

    async def locate(
        self, selector: Selector, description: str
    ) -> ElementReference:
        """Resolve a selector against a fresh snapshot.

        Raises:
            ElementNotFoundException: If nothing matches.
        """
        snapshot = await self.snapshot()
        return snapshot.require(selector, description)

    async def find(self, selector: Selector) -> ElementReference | None:
        """Resolve a selector against a fresh snapshot, or None."""
        snapshot = await self.snapshot()
        return snapshot.resolve(selector)

    async def click(
        self, selector: Selector, description: str, settle: float = 1.0
    ) -> None:
        ref = await self.locate(selector, description)
        logger.debug(f"[{self.source}] Clicking {description} ({ref})")
        await self.session.click(ref)
        await self.settle(settle)

    async def try_click(
        self, selector: Selector, description: str, settle: float = 1.0
    ) -> bool:
        """Click if the element exists; report whether it did."""
        try:
            await self.click(selector, description, settle)
        except ElementNotFoundException:
            logger.debug(f"[{self.source}] No {description} to click")
            return False
        return True

    async def fill(
        self,
        selector: Selector,
        text: str,
        description: str,
        settle: float = 1.0,
    ) -> None:
        ref = await self.locate(selector, description)
        logger.debug(f"[{self.source}] Filling {description} with '{text}'")
        await self.session.fill(ref, text)
        await self.settle(settle)

    async def select(
        self,
        selector: Selector,
        value: str,
        description: str,
        settle: float = 1.0,
    ) -> None:
        ref = await self.locate(selector, description)
        logger.debug(f"[{self.source}] Selecting '{value}' in {description}")
        await self.session.select(ref, value)
        await self.settle(settle)

    async def evaluate(self, script: str, settle: float = 0.5) -> None:
        await self.session.evaluate(script)
        await self.settle(settle)
