"""Block-scoped extraction of repeating records from a snapshot.

A listing page repeats one block per vehicle. Extraction finds each block
by an anchor line and then searches a bounded region after it for the
record's fields:

- window mode: the K lines starting at the anchor
- subtree mode: the lines nested below the anchor by indentation

The look-ahead size is tuned per source and is part of each source's rules,
not of the protocol.

Example::

    rules = ListingRules(
        anchor=re.compile(
            r'link\\s+"(?P<year>(?:19|20)\\d{2})\\s+(?P<title>.+?)"'
        ),
        window=30,
        fields={
            "url": FieldRule(r"/url:\\s+(/used/\\S+\\.html)"),
            "price": FieldRule(r"text:\\s+([\\d,]+)\\s+\\$", template="${}"),
        },
        url_prefix="https://www.example.com",
    )
    listings = extract_listings(snapshot, rules, source="example")
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from carsearch.common.fields import parse_year
from carsearch.common.snapshot import Snapshot
from carsearch.data_types import VehicleListing

logger = logging.getLogger(__name__)

MIN_PLAUSIBLE_YEAR = 2000


def _compile(pattern: str | re.Pattern[str]) -> re.Pattern[str]:
    return re.compile(pattern) if isinstance(pattern, str) else pattern


@dataclass(frozen=True)
class FieldRule:
    """How to find one field inside a record's block.

    Attributes:
        pattern: Regex whose first group is the value.
        template: Format string applied to the value (``"{} km"``).
        index: Which match to use; negative counts from the end.
        reject: Matches whose line contains any of these substrings are
            skipped before indexing.
        value: Fixed value to emit when the pattern matches, instead of the
            captured group (used for flags like ``"New vehicle"``).
        parser: Typed parser from carsearch.common.fields applied to the
            formatted value; a None result counts as not found.
    """

    pattern: str | re.Pattern[str]
    template: str = "{}"
    index: int = 0
    reject: tuple[str, ...] = ()
    value: Any = None
    parser: Callable[[str], Any] | None = None

    def extract(self, block: str) -> Any:
        """Return the formatted value, or None when absent."""
        regex = _compile(self.pattern)
        candidates: list[re.Match[str]] = []
        for match in regex.finditer(block):
            if self.reject:
                line_start = block.rfind("\n", 0, match.start()) + 1
                line_end = block.find("\n", match.start())
                line = block[line_start : line_end if line_end >= 0 else None]
                if any(token in line for token in self.reject):
                    continue
            candidates.append(match)

        try:
            match = candidates[self.index]
        except IndexError:
            return None

        if self.value is not None:
            return self.value
        raw = match.group(1) if regex.groups else match.group(0)
        if raw is None:
            return None
        text = self.template.format(raw.strip())
        return self.parser(text) if self.parser is not None else text


@dataclass(frozen=True)
class ListingRules:
    """Per-source extraction rules for repeating listing blocks.

    Attributes:
        anchor: Regex matched against each line; a match starts a record.
            Named groups ``year``, ``title``, ``location`` and
            ``condition`` are used when present.
        window: Look-ahead in lines for window mode; None selects subtree
            mode.
        fields: Field name to one rule or a tuple of alternatives tried in
            order. Names are VehicleListing attributes.
        title_template: Format for the title when the anchor captures one.
        exclude: Anchor titles containing any of these are skipped.
        required: Fields that must be found or the record is skipped.
        url_prefix: Prepended to relative URLs.
        dealer: Fixed dealer name for single-dealer sources.
        location: Fixed location for single-dealer sources.
        min_year: Records with an older (or missing) year are dropped.
    """

    anchor: str | re.Pattern[str]
    window: int | None = 30
    fields: Mapping[str, FieldRule | tuple[FieldRule, ...]] = field(
        default_factory=dict
    )
    title_template: str = "{year} {title}"
    exclude: tuple[str, ...] = ()
    required: tuple[str, ...] = ()
    url_prefix: str = ""
    dealer: str = ""
    location: str = ""
    min_year: int = MIN_PLAUSIBLE_YEAR


def is_viable(listing: VehicleListing, min_year: int = MIN_PLAUSIBLE_YEAR) -> bool:
    """A record needs a title and a plausible model year to be kept."""
    return bool(listing.title.strip()) and listing.year >= min_year


def _extract_field(
    rules: FieldRule | tuple[FieldRule, ...], block: str
) -> Any:
    alternatives = rules if isinstance(rules, tuple) else (rules,)
    for rule in alternatives:
        value = rule.extract(block)
        if value is not None:
            return value
    return None


def _absolute_url(url: str, prefix: str) -> str:
    if not url or not prefix or url.startswith(("http://", "https://")):
        return url
    return prefix.rstrip("/") + "/" + url.lstrip("/")


def extract_listings(
    snapshot: Snapshot, rules: ListingRules, source: str
) -> list[VehicleListing]:
    """Extract every viable listing from a snapshot.

    Records missing optional fields are still emitted. Records without a
    title or with a year below rules.min_year are dropped silently.

    Args:
        snapshot: The snapshot to search.
        rules: The source's extraction rules.
        source: Source id stamped on every listing.

    Returns:
        Listings in snapshot order.
    """
    anchor = _compile(rules.anchor)
    listings: list[VehicleListing] = []
    dropped = 0

    for line_no, line in enumerate(snapshot.lines):
        anchor_match = anchor.search(line)
        if anchor_match is None:
            continue

        groups = anchor_match.groupdict()
        anchor_title = (groups.get("title") or "").strip()
        if anchor_title and any(
            token in anchor_title for token in rules.exclude
        ):
            continue

        if rules.window is None:
            block = line + "\n" + snapshot.subtree_text(line_no)
        else:
            block = snapshot.window(line_no, rules.window)

        values: dict[str, Any] = {}
        for name, field_rules in rules.fields.items():
            value = _extract_field(field_rules, block)
            if value is not None:
                values[name] = value

        missing = [name for name in rules.required if name not in values]
        if missing:
            logger.debug(
                f"[{source}] Skipping block at line {line_no}: "
                f"missing {', '.join(missing)}"
            )
            continue

        title_value = values.pop("title", "")
        year = (
            int(groups["year"])
            if groups.get("year")
            else parse_year(anchor_title or title_value) or 0
        )

        if anchor_title:
            title = rules.title_template.format(year=year, title=anchor_title)
        elif title_value and groups.get("year") and str(year) not in title_value:
            title = f"{year} {title_value}"
        else:
            title = title_value

        condition = groups.get("condition")
        if condition is not None and "is_new" not in values:
            values["is_new"] = condition == "New"

        if groups.get("location") and "location" not in values:
            values["location"] = groups["location"].strip()

        values["url"] = _absolute_url(values.get("url", ""), rules.url_prefix)
        values.setdefault("dealer", rules.dealer)
        values.setdefault("location", rules.location)

        listing = VehicleListing(
            title=title, year=year, source=source, **values
        )
        if is_viable(listing, rules.min_year):
            listings.append(listing)
        else:
            dropped += 1

    if dropped:
        logger.debug(
            f"[{source}] Dropped {dropped} block(s) without a title "
            f"or a year >= {rules.min_year}"
        )
    return listings
