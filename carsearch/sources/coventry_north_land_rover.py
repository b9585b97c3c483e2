"""Coventry North Land Rover strategy (LeadBox inventory platform).

Filters are clickable ``generic [cursor=pointer]`` dropdowns whose options
are clickable generics too. A listing starts at a condition-and-year link
(``link "Used 2025 Land Rover"``); its model name is the next link that is
not a button-like label.
"""

from __future__ import annotations

import re

from carsearch.common.fields import (
    CONDITIONS,
    DRIVETRAINS,
    category_parser,
    category_pattern,
    parse_count,
    parse_currency,
    search_group,
)
from carsearch.common.listing_rules import FieldRule, ListingRules
from carsearch.common.snapshot import LabelMatch, Selector, Snapshot
from carsearch.data_types import SearchCriteria, VehicleListing
from carsearch.extraction.interaction import Interaction
from carsearch.extraction.strategy import (
    FilterKind,
    FilterStep,
    SourceStrategy,
)

LOOKAHEAD_LINES = 40

COUNT_PATTERN = re.compile(
    r'text:\s+Vehicles\s*\n\s*-\s*generic\s+\[ref=[^\]]+\]:\s+"(\d+)"'
)
CITY_PATTERN = re.compile(r'in\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)"')
DEFAULT_CITY = "Woodbridge"


def clickable(text: str, match: LabelMatch = LabelMatch.EXACT) -> Selector:
    """A ``generic [cursor=pointer]: <text>`` element."""
    return Selector(
        "generic", text=text, match=match, attrs=("cursor=pointer",)
    )


class CoventryNorthLandRoverStrategy(SourceStrategy):
    name = "coventry_north_land_rover"
    display_name = "Coventry North Land Rover"
    inventory_path = "/pre-owned-inventory/"
    listing_rules = ListingRules(
        anchor=re.compile(
            rf'link\s+"(?P<condition>{category_pattern(CONDITIONS)})\s+'
            r'(?P<year>\d{4})[^"]*"\s*\[ref='
        ),
        window=LOOKAHEAD_LINES,
        fields={
            "url": FieldRule(r"/url:\s+(/view/\S+)"),
            "title": FieldRule(
                r'link\s+"([^"]+)"\s*\[ref=[^\]]+\]\s*\[cursor=pointer\]',
                reject=(
                    '"Learn More"',
                    '"Check Availability"',
                    '"STOCK',
                    '"New',
                    '"Used',
                    '"Pre-Owned',
                    '"Certified',
                    '"Exterior',
                    '"noopener',
                    "$",
                ),
            ),
            "price": FieldRule(
                r"generic\s+\[ref=[^\]]+\]:\s+(\$[\d,]+)", parser=parse_currency
            ),
            "fuel_type": FieldRule(
                r"generic\s+\[ref=[^\]]+\]:\s+(\d+\s+Cylinder\s+Engine)"
            ),
            "transmission": FieldRule(
                rf"generic\s+\[ref=[^\]]+\]:\s+({category_pattern(DRIVETRAINS)})",
                parser=category_parser(DRIVETRAINS),
            ),
        },
        dealer="Coventry North Land Rover",
        location="Woodbridge, ON",
    )

    def listing_url(self, criteria: SearchCriteria) -> str:
        return self.base_url + self.inventory_path

    def filter_steps(self, criteria: SearchCriteria) -> list[FilterStep]:
        steps = [FilterStep(FilterKind.CATEGORY, "model filter", select_model)]
        if criteria.color:
            steps.append(
                FilterStep(FilterKind.ATTRIBUTE, "colour filter", select_color)
            )
        return steps

    def parse_total_count(
        self, snapshot: Snapshot, records: list[VehicleListing]
    ) -> int:
        return parse_count(search_group(snapshot.text, COUNT_PATTERN)) or 0

    def parse_location(self, snapshot: Snapshot) -> str | None:
        return search_group(snapshot.text, CITY_PATTERN) or DEFAULT_CITY


async def _pick(
    interaction: Interaction, dropdown: str, option: str
) -> None:
    await interaction.click(clickable(dropdown), f"{dropdown} dropdown")
    await interaction.click(
        clickable(option, LabelMatch.PREFIX),
        f"{dropdown} option '{option}'",
        settle=2.0,
    )


async def select_model(interaction: Interaction, criteria: SearchCriteria) -> None:
    await _pick(interaction, "Model", criteria.model)


async def select_color(interaction: Interaction, criteria: SearchCriteria) -> None:
    await _pick(interaction, "Colour", criteria.color or "")
