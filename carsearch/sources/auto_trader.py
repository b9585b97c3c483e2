"""AutoTrader.ca strategy.

The search form on the landing page selects make, model and postal code;
the results page then offers year, colour and page-size controls. Listings
are ``article`` blocks, read by indentation subtree.
"""

from __future__ import annotations

import logging
import re

from carsearch.common.fields import (
    PRICE_RATINGS,
    category_parser,
    category_pattern,
    parse_count,
    parse_currency,
    parse_distance,
    search_group,
)
from carsearch.common.listing_rules import FieldRule, ListingRules
from carsearch.common.snapshot import Selector, Snapshot
from carsearch.data_types import SearchCriteria, VehicleListing
from carsearch.extraction.interaction import Interaction
from carsearch.extraction.strategy import (
    FilterKind,
    FilterStep,
    PageStep,
    SourceStrategy,
)

logger = logging.getLogger(__name__)

MAKE_COMBOBOX = Selector.prefix("combobox", "cars-make-filter")
MODEL_COMBOBOX = Selector.containing("combobox", "models")
POSTAL_COMBOBOX = Selector.containing("combobox", "Postal code")
SUGGESTIONS = Selector("listbox", "Suggestions")
RESULTS_LINK = Selector.pattern("link", r"^[\d,]+\s+results")
ACCEPT_COOKIES = Selector.prefix("button", "Accept")
YEAR_FILTER_BUTTON = Selector.prefix("button", "Model year filter")
MIN_YEAR_COMBOBOX = Selector.containing("combobox", "Minimum model year")
MAX_YEAR_COMBOBOX = Selector.containing("combobox", "Maximum model year")
COLOR_FILTER_BUTTON = Selector.prefix("button", "Exterior color filter")
APPLY_BUTTON = Selector.pattern("button", r"^(?:See\s+[\d,]+\s+results|Apply)")
DISPLAY_COMBOBOX = Selector.prefix("combobox", "Display")

HIDE_WELCOME_POPUP = (
    "async page => { const el = await page.$('#welcome-popup'); "
    "if (el) await el.evaluate(e => e.style.display = 'none'); }"
)

_FOOTER = r"generic\s+\[ref=[^\]]+\]:\s+(.+)"

RESULT_COUNT_PATTERN = re.compile(r'heading\s+"([\d,]+)\s+results?\s+for')
CITY_PATTERN = re.compile(r'(?:km\s+around|sale\s+in)\s+\S+\s+([^,"]+),\s*\w+')


class AutoTraderStrategy(SourceStrategy):
    name = "auto_trader"
    display_name = "AutoTrader.ca"
    settle_after_open = 2.0
    listing_rules = ListingRules(
        anchor=re.compile(r"^\s*-?\s*article\s+\[ref="),
        window=None,
        fields={
            "title": FieldRule(r'heading\s+"([^"]+)"\s+\[level=2\]'),
            # The second offer link is usually the one without query params
            "url": (
                FieldRule(
                    r"- /url:\s+(https://www\.autotrader\.ca/offers/[^\s?]+)",
                    index=1,
                ),
                FieldRule(
                    r"- /url:\s+(https://www\.autotrader\.ca/offers/[^\s?]+)"
                ),
            ),
            "price": FieldRule(
                r"paragraph\s+\[ref=[^\]]+\]:\s+(\$[\d,]+)", parser=parse_currency
            ),
            "msrp_price": FieldRule(
                r"paragraph\s+\[ref=[^\]]+\]:\s+(\$[\d,]+)\s+MSRP",
                parser=parse_currency,
            ),
            "is_new": FieldRule(r'generic\s+"New\s+vehicle"', value=True),
            "price_rating": FieldRule(
                rf'generic\s+"({category_pattern(PRICE_RATINGS)})"',
                parser=category_parser(PRICE_RATINGS),
            ),
            "mileage": FieldRule(
                r'cell\s+"([^"]*)"\s+\[ref=', index=0, parser=parse_distance
            ),
            "transmission": (
                FieldRule(r'cell\s+"([^"]*)"\s+\[ref=', index=1),
                FieldRule(
                    r"cell\s+\[ref=[^\]]+\]:\s*\n\s*.*?text:\s+n/a",
                    value="N/A",
                ),
            ),
            "fuel_type": FieldRule(r'cell\s+"([^"]*)"\s+\[ref=', index=2),
            "dealer": FieldRule(_FOOTER, index=-2),
            "location": FieldRule(_FOOTER, index=-1),
        },
    )

    @property
    def display_count(self) -> int:
        return self.int_setting("DefaultDisplayCount", 100)

    def setup_steps(self, criteria: SearchCriteria) -> list[PageStep]:
        return [
            PageStep("cookie consent", dismiss_cookie_consent),
            PageStep("make", select_make, required=True),
            PageStep("model", enter_model, required=True),
            PageStep("postal code", enter_postal_code, required=True),
            PageStep("results link", open_results, required=True),
            PageStep("welcome popup", hide_welcome_popup),
        ]

    def filter_steps(self, criteria: SearchCriteria) -> list[FilterStep]:
        steps: list[FilterStep] = []
        if criteria.has_year_range:
            steps.append(
                FilterStep(FilterKind.RANGE, "model year filter", apply_year_filter)
            )
        if criteria.color:
            steps.append(
                FilterStep(
                    FilterKind.ATTRIBUTE, "exterior colour filter", apply_color_filter
                )
            )

        count = self.display_count

        async def change_display_count(
            interaction: Interaction, criteria: SearchCriteria
        ) -> None:
            await interaction.select(
                DISPLAY_COMBOBOX, str(count), "display count dropdown", settle=3.0
            )

        steps.append(
            FilterStep(FilterKind.PAGE_SIZE, "display count", change_display_count)
        )
        return steps

    def parse_total_count(
        self, snapshot: Snapshot, records: list[VehicleListing]
    ) -> int:
        return parse_count(search_group(snapshot.text, RESULT_COUNT_PATTERN)) or 0

    def parse_location(self, snapshot: Snapshot) -> str | None:
        return search_group(snapshot.text, CITY_PATTERN)


async def dismiss_cookie_consent(
    interaction: Interaction, criteria: SearchCriteria
) -> None:
    await interaction.try_click(ACCEPT_COOKIES, "cookie consent", settle=0.5)


async def select_make(interaction: Interaction, criteria: SearchCriteria) -> None:
    logger.info(f"[{interaction.source}] Selecting make: {criteria.make}")
    await interaction.select(MAKE_COMBOBOX, criteria.make, "make dropdown", settle=1.5)


async def enter_model(interaction: Interaction, criteria: SearchCriteria) -> None:
    logger.info(f"[{interaction.source}] Entering model: {criteria.model}")
    await interaction.fill(MODEL_COMBOBOX, criteria.model, "model input")
    await interaction.try_click(
        Selector.exact("option", criteria.model), "model suggestion"
    )


async def enter_postal_code(
    interaction: Interaction, criteria: SearchCriteria
) -> None:
    logger.info(
        f"[{interaction.source}] Entering postal code: {criteria.postal_code}"
    )
    await interaction.fill(
        POSTAL_COMBOBOX, criteria.postal_code, "postal code input", settle=2.0
    )
    snapshot = await interaction.snapshot()
    suggestion = snapshot.resolve(
        Selector("option", within=SUGGESTIONS)
    ) or snapshot.resolve(Selector("option", attrs=("selected",)))
    if suggestion is not None:
        await interaction.session.click(suggestion)
        await interaction.settle(1.0)


async def open_results(interaction: Interaction, criteria: SearchCriteria) -> None:
    logger.info(f"[{interaction.source}] Navigating to search results")
    await interaction.click(RESULTS_LINK, "results link", settle=3.0)


async def hide_welcome_popup(
    interaction: Interaction, criteria: SearchCriteria
) -> None:
    await interaction.evaluate(HIDE_WELCOME_POPUP)


async def _pick_year(
    interaction: Interaction, combobox: Selector, year: int, description: str
) -> None:
    ref = await interaction.find(combobox)
    if ref is None:
        logger.debug(f"[{interaction.source}] No {description} dropdown")
        return
    await interaction.session.click(ref)
    await interaction.settle(0.5)
    await interaction.try_click(
        Selector.exact("option", str(year)), f"{description} option {year}"
    )


async def apply_year_filter(
    interaction: Interaction, criteria: SearchCriteria
) -> None:
    logger.info(
        f"[{interaction.source}] Applying year filter: "
        f"{criteria.year_from} - {criteria.year_to}"
    )
    await interaction.click(YEAR_FILTER_BUTTON, "year filter button")
    if criteria.year_from is not None:
        await _pick_year(
            interaction, MIN_YEAR_COMBOBOX, criteria.year_from, "minimum year"
        )
    if criteria.year_to is not None:
        await _pick_year(
            interaction, MAX_YEAR_COMBOBOX, criteria.year_to, "maximum year"
        )
    await interaction.try_click(APPLY_BUTTON, "apply button", settle=2.0)


async def apply_color_filter(
    interaction: Interaction, criteria: SearchCriteria
) -> None:
    color = criteria.color or ""
    logger.info(f"[{interaction.source}] Applying color filter: {color}")
    await interaction.click(COLOR_FILTER_BUTTON, "colour filter button")
    # "White (13)": the label carries the result count
    await interaction.click(
        Selector.prefix("checkbox", color), f"checkbox for colour {color}"
    )
    await interaction.try_click(APPLY_BUTTON, "apply button", settle=2.0)
