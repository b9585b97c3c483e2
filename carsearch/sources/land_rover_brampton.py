"""Land Rover Brampton strategy.

The dealer's used-inventory page filters by clicking list items (make,
model, colour) and offers two year spin buttons. Each listing starts with
a descriptive link::

    link "2023 Range Rover Sport Dynamic SE in Brampton" [ref=e201]

followed, within about 30 lines, by its URL, price and a specs line like
``"104,092 KM. Auto., Ext: White, Int: Black"``. Other dealers on the same
inventory platform reuse this strategy with their own name and dealer.
"""

from __future__ import annotations

import logging
import re

from carsearch.common.exceptions import ElementNotFoundException
from carsearch.common.fields import (
    parse_count,
    parse_currency,
    parse_distance,
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

logger = logging.getLogger(__name__)

LISTING_LINK = re.compile(
    r'link\s+"(?P<year>(?:19|20)\d{2})\s+(?P<title>.+?)\s+in\s+'
    r'(?P<location>[^"]+)"\s*\[ref='
)
YEAR_SPINBUTTON = Selector("spinbutton", text=r"^\d{4}$", match=LabelMatch.REGEX)

USED_COUNT_PATTERN = re.compile(r'button\s+"Used vehicles\s+(\d+)"')
CITY_PATTERN = re.compile(
    r'heading\s+"[^"]*for\s+sale\s+in\s+([^"]+)"\s*\[level=1\]'
)

LOOKAHEAD_LINES = 30


class LandRoverBramptonStrategy(SourceStrategy):
    name = "land_rover_brampton"
    display_name = "Land Rover Brampton"
    inventory_path = "/used/search.html"
    listing_rules = ListingRules(
        anchor=LISTING_LINK,
        window=LOOKAHEAD_LINES,
        fields={
            "url": FieldRule(r"/url:\s+(/(?:used|new)/\d{4}-\S+\.html)"),
            "price": FieldRule(r"text:\s+([\d,]+\s+\$)", parser=parse_currency),
            "mileage": FieldRule(r'"([\d,]+\s+KM)\.', parser=parse_distance),
            "transmission": FieldRule(r'"[\d,]+\s+KM\.\s+([^,]+),\s+Ext:'),
            "exterior_color": FieldRule(
                r'"[\d,]+\s+KM\.\s+[^,]+,\s+Ext:\s+([^,"]+)'
            ),
        },
        dealer="Land Rover Brampton",
    )

    def listing_url(self, criteria: SearchCriteria) -> str:
        return self.base_url + self.inventory_path

    def filter_steps(self, criteria: SearchCriteria) -> list[FilterStep]:
        steps = [
            FilterStep(FilterKind.CATEGORY, "make filter", select_make),
            FilterStep(FilterKind.CATEGORY, "model filter", select_model),
        ]
        if criteria.color:
            steps.append(
                FilterStep(FilterKind.ATTRIBUTE, "colour filter", select_color)
            )
        if criteria.has_year_range:
            steps.append(
                FilterStep(FilterKind.RANGE, "year range", fill_year_range)
            )
        return steps

    def parse_total_count(
        self, snapshot: Snapshot, records: list[VehicleListing]
    ) -> int:
        count = parse_count(search_group(snapshot.text, USED_COUNT_PATTERN))
        if count is not None:
            return count
        return sum(1 for line in snapshot.lines if LISTING_LINK.search(line))

    def parse_location(self, snapshot: Snapshot) -> str | None:
        return search_group(snapshot.text, CITY_PATTERN)


async def select_make(interaction: Interaction, criteria: SearchCriteria) -> None:
    await interaction.click(
        Selector.prefix("listitem", criteria.make),
        f"make filter '{criteria.make}'",
        settle=2.0,
    )


async def select_model(interaction: Interaction, criteria: SearchCriteria) -> None:
    await interaction.click(
        Selector.prefix("listitem", criteria.model),
        f"model filter '{criteria.model}'",
        settle=2.0,
    )


async def select_color(interaction: Interaction, criteria: SearchCriteria) -> None:
    color = criteria.color or ""
    await interaction.click(
        Selector.exact("listitem", color), f"colour filter '{color}'", settle=2.0
    )


async def fill_year_range(
    interaction: Interaction, criteria: SearchCriteria
) -> None:
    """Fill the minimum and maximum year spin buttons, in page order."""
    snapshot = await interaction.snapshot()
    refs = [
        element.ref
        for element in snapshot.find_all(YEAR_SPINBUTTON)
        if element.ref is not None
    ]
    if len(refs) < 2:
        raise ElementNotFoundException(
            selector=str(YEAR_SPINBUTTON), description="year spin buttons"
        )

    bounds = (criteria.year_from, criteria.year_to)
    for ref, year in zip(refs[:2], bounds):
        if year is not None:
            await interaction.session.fill(ref, str(year))
    await interaction.settle(2.0)
