"""Typed leaf patterns for values found inside snapshot text.

Each parser returns None when the value is absent or malformed. Missing
fields never fail an extraction; the record is emitted with the field
unset.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from functools import partial

CURRENCY_PATTERN = re.compile(
    r"\$\s?(?P<prefixed>\d[\d,]*(?:\.\d{2})?)"
    r"|(?P<suffixed>\d[\d,]*(?:\.\d{2})?)\s?\$"
)
DISTANCE_PATTERN = re.compile(
    r"(?P<value>\d[\d,]*(?:\.\d+)?)\s*(?P<unit>kms?|mi|miles)\b",
    re.IGNORECASE,
)
YEAR_PATTERN = re.compile(r"\b(?P<year>19\d{2}|20\d{2})\b")
COUNT_PATTERN = re.compile(r"\d[\d,]*")

TRANSMISSIONS = ("Automatic", "Manual", "CVT")
DRIVETRAINS = ("AWD", "4x4", "4WD", "FWD", "RWD")
PRICE_RATINGS = ("Great price", "Good price", "Fair price", "High price")
CONDITIONS = ("New", "Used", "Pre-Owned", "Certified")


def parse_currency(text: str | None) -> str | None:
    """Find the first amount of money and format it as ``$12,345``.

    Both ``$12,345`` and ``12,345 $`` (French-Canadian sites) are
    recognized.
    """
    if not text:
        return None
    match = CURRENCY_PATTERN.search(text)
    if match is None:
        return None
    amount = match.group("prefixed") or match.group("suffixed")
    return f"${amount}"


def parse_distance(text: str | None) -> str | None:
    """Find the first distance and format it as ``104,092 km``."""
    if not text:
        return None
    match = DISTANCE_PATTERN.search(text)
    if match is None:
        return None
    unit = match.group("unit").lower()
    unit = "km" if unit.startswith("km") else "mi"
    return f"{match.group('value')} {unit}"


def parse_year(text: str | None) -> int | None:
    """Find the first four-digit model year between 1900 and 2099."""
    if not text:
        return None
    match = YEAR_PATTERN.search(text)
    return int(match.group("year")) if match else None


def parse_count(text: str | None) -> int | None:
    """Parse the first integer, ignoring thousands separators."""
    if not text:
        return None
    match = COUNT_PATTERN.search(text)
    if match is None:
        return None
    return int(match.group(0).replace(",", ""))


def parse_category(
    text: str | None,
    values: Iterable[str],
    ignore_case: bool = True,
) -> str | None:
    """Return the first enumerated value found in text, as spelled in values.

    Values are tried in order and matched on word boundaries.
    """
    if not text:
        return None
    flags = re.IGNORECASE if ignore_case else 0
    for value in values:
        if re.search(rf"(?<!\w){re.escape(value)}(?!\w)", text, flags):
            return value
    return None


def search_group(
    text: str | None,
    pattern: str | re.Pattern[str],
    group: int | str = 1,
    flags: int = 0,
) -> str | None:
    """Return one group of the first regex match, stripped, or None."""
    if not text:
        return None
    match = (
        re.search(pattern, text, flags)
        if isinstance(pattern, str)
        else pattern.search(text)
    )
    if match is None:
        return None
    value = match.group(group)
    return value.strip() if value is not None else None


def category_pattern(values: Iterable[str]) -> str:
    """Regex alternation matching any of the enumerated values literally."""
    return "|".join(re.escape(value) for value in values)


def category_parser(values: Iterable[str]) -> Callable[[str], str | None]:
    """Bind parse_category to one enumeration, for use as a field parser."""
    return partial(parse_category, values=tuple(values))
