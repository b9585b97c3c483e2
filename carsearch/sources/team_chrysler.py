"""Team Chrysler Mississauga strategy.

The inventory page is opened pre-filtered by make only; model and year are
filtered in code. Each listing has a short title link followed within three
lines by its ``/inventory/`` URL. Image-description links repeat the title
with "for sale at" and are skipped.
"""

from __future__ import annotations

import re
from urllib.parse import quote

from carsearch.common.fields import (
    TRANSMISSIONS,
    category_parser,
    category_pattern,
    parse_currency,
    parse_distance,
)
from carsearch.common.listing_rules import FieldRule, ListingRules
from carsearch.common.snapshot import Snapshot
from carsearch.data_types import SearchCriteria, VehicleListing
from carsearch.extraction.strategy import SourceStrategy

TITLE_LINK = re.compile(
    r'link\s+"(?P<year>(?:19|20)\d{2})\s+(?P<title>[^"]+)"\s*'
    r"\[ref=[^\]]+\]\s*\[cursor=pointer\]"
)

SPECS_LOOKAHEAD_LINES = 80


class TeamChryslerStrategy(SourceStrategy):
    name = "team_chrysler"
    display_name = "Team Chrysler Mississauga"
    settle_after_open = 4.0
    listing_rules = ListingRules(
        anchor=TITLE_LINK,
        window=SPECS_LOOKAHEAD_LINES,
        fields={
            # The URL must follow the title link closely
            "url": FieldRule(
                re.compile(r"\A(?:[^\n]*\n){0,2}[^\n]*?/url:\s+(/inventory/\S+)")
            ),
            "mileage": FieldRule(
                r"generic\s+\[ref=[^\]]+\]:\s+([\d,]+\s+km)", parser=parse_distance
            ),
            # Bi-weekly payments are not prices
            "price": FieldRule(
                r"text:\s+(\$[\d,]+)",
                parser=parse_currency,
                reject=("/ bw", "/bw"),
            ),
            "transmission": FieldRule(
                rf"generic\s+\[ref=[^\]]+\]:\s+({category_pattern(TRANSMISSIONS)})",
                parser=category_parser(TRANSMISSIONS),
            ),
            "fuel_type": FieldRule(
                r"generic\s+\[ref=[^\]]+\]:\s+(\d+\.\d+L\s+\d+Cyl)"
            ),
        },
        exclude=(
            " for sale at ",
            " for sale in ",
            "for Sale |",
            "View Details",
            "Carfax",
            "Gallery",
        ),
        required=("url",),
        dealer="Team Chrysler",
        location="Mississauga, ON",
    )

    def listing_url(self, criteria: SearchCriteria) -> str:
        make = quote(criteria.make.upper(), safe="")
        return f"{self.base_url}/inventory/used/?make[]={make}"

    def parse_location(self, snapshot: Snapshot) -> str | None:
        return "Mississauga"

    def refine(
        self, records: list[VehicleListing], criteria: SearchCriteria
    ) -> list[VehicleListing]:
        """Keep records matching the model and year range."""
        model = criteria.model.casefold()
        refined = [r for r in records if model in r.title.casefold()]
        if criteria.year_from is not None:
            refined = [r for r in refined if r.year >= criteria.year_from]
        if criteria.year_to is not None:
            refined = [r for r in refined if r.year <= criteria.year_to]
        return refined
