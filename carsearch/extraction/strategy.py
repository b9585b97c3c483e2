"""Per-source strategy: the capability set that differentiates sources.

Every source runs the same ExtractionTask. What differs is captured by a
SourceStrategy:

- where the listing page lives (listing_url)
- how to get from the landing page to the results page (setup_steps:
  cookie banners, search forms, pop-ups)
- which filters to apply and how (filter_steps)
- how to read records, total count and location from the final snapshot
  (listing_rules, parse_listings, parse_total_count, parse_location)
- optional in-code refinement for sources that cannot filter on the page
  (refine)

Strategies are constructed with the source's base address and its
free-form settings map; they hold no other state.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, replace
from enum import IntEnum
from typing import ClassVar

from carsearch.common.listing_rules import ListingRules, extract_listings
from carsearch.common.snapshot import Snapshot
from carsearch.data_types import SearchCriteria, VehicleListing
from carsearch.extraction.interaction import Interaction

StepAction = Callable[[Interaction, SearchCriteria], Awaitable[None]]


class FilterKind(IntEnum):
    """Filter categories, in the order a task applies them.

    Broader filters come before display-density changes, mirroring the
    dependency order of paginated result pages.
    """

    CATEGORY = 1
    ATTRIBUTE = 2
    RANGE = 3
    PAGE_SIZE = 4


@dataclass(frozen=True)
class FilterStep:
    """One optional, best-effort filter step.

    Attributes:
        kind: Filter category; decides the step's position.
        description: Human-readable name used in log messages.
        action: Coroutine applying the filter. Raising
            ElementNotFoundException skips the step.
    """

    kind: FilterKind
    description: str
    action: StepAction


@dataclass(frozen=True)
class PageStep:
    """A setup step run after navigation and before any filter.

    Attributes:
        description: Human-readable name used in log messages.
        action: Coroutine performing the step.
        required: If True, any error fails the task (a search form that
            cannot be filled). If False, errors are logged and ignored (a
            cookie banner that is not shown).
    """

    description: str
    action: StepAction
    required: bool = False


@dataclass(frozen=True)
class ExtractedPage:
    """What a strategy reads from the final snapshot."""

    records: tuple[VehicleListing, ...]
    total_count: int
    location_label: str | None


class SourceStrategy:
    """Base capability set for one source.

    Subclasses set name, display_name and either listing_rules or
    parse_listings(), and override the hooks they need.

    Attributes:
        name: Source id.
        display_name: Human-readable source name.
        listing_rules: Record extraction rules used by parse_listings().
        settle_after_open: Seconds to wait after opening the listing page.
        settle_before_capture: Seconds to wait before the final snapshot.
    """

    name: ClassVar[str] = ""
    display_name: ClassVar[str] = ""
    listing_rules: ClassVar[ListingRules | None] = None
    settle_after_open: ClassVar[float] = 3.0
    settle_before_capture: ClassVar[float] = 2.0

    def __init__(
        self, base_url: str = "", settings: Mapping[str, str] | None = None
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.settings: Mapping[str, str] = dict(settings or {})

    def __repr__(self) -> str:
        return f"{type(self).__name__}(base_url={self.base_url!r})"

    def setting(self, key: str, default: str) -> str:
        return self.settings.get(key, default)

    def int_setting(self, key: str, default: int) -> int:
        try:
            return int(self.settings.get(key, default))
        except ValueError:
            return default

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def listing_url(self, criteria: SearchCriteria) -> str:
        return self.base_url

    def setup_steps(self, criteria: SearchCriteria) -> list[PageStep]:
        return []

    def filter_steps(self, criteria: SearchCriteria) -> list[FilterStep]:
        return []

    def parse_listings(self, snapshot: Snapshot) -> list[VehicleListing]:
        if self.listing_rules is None:
            raise NotImplementedError(
                f"{type(self).__name__} defines no listing rules"
            )
        rules = self.listing_rules
        if not rules.url_prefix and self.base_url:
            rules = replace(rules, url_prefix=self.base_url)
        return extract_listings(snapshot, rules, self.name)

    def parse_total_count(
        self, snapshot: Snapshot, records: list[VehicleListing]
    ) -> int:
        return len(records)

    def parse_location(self, snapshot: Snapshot) -> str | None:
        return None

    def refine(
        self, records: list[VehicleListing], criteria: SearchCriteria
    ) -> list[VehicleListing]:
        """Filter records in code for sources that cannot filter on page."""
        return records

    def extract(
        self, snapshot: Snapshot, criteria: SearchCriteria
    ) -> ExtractedPage:
        """Read records, total count and location from the final snapshot."""
        records = self.parse_listings(snapshot)
        total_count = self.parse_total_count(snapshot, records)
        location = self.parse_location(snapshot)
        refined = self.refine(records, criteria)
        if len(refined) != len(records):
            total_count = len(refined)
        return ExtractedPage(
            records=tuple(refined),
            total_count=total_count,
            location_label=location,
        )


def order_filter_steps(steps: list[FilterStep]) -> list[FilterStep]:
    """Sort steps by kind, keeping declaration order within a kind."""
    return sorted(steps, key=lambda step: step.kind)
