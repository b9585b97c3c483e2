"""Snapshot protocol: addressing elements in an accessibility-tree snapshot.

The automation command prints the page's accessibility tree as
indentation-delimited YAML-like text::

    - generic [ref=e2]:
      - combobox "cars-make-filter" [ref=e73]
      - button "Exterior color filter" [ref=e117] [cursor=pointer]
      - heading "13 results for Land Rover Range Rover" [level=1] [ref=e5]
      - link "2023 Range Rover Sport" [ref=e201] [cursor=pointer]:
        - /url: /used/2023-Land-Rover-Range-Rover-id123.html
      - paragraph [ref=e9]: $45,000

The format is not formally specified upstream, so it is treated as a
grammar of lines, each one element with an optional quoted label, bracketed
attributes and trailing text, nested by indentation. Lines that do not fit
the grammar are kept as raw text and still take part in windowed searches.

Selectors resolve by first match in document order; nothing else breaks
ties. Element references are only valid for the snapshot they came from.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from carsearch.common.exceptions import ElementNotFoundException
from carsearch.data_types import ElementReference

_LINE_PATTERN = re.compile(
    r"^(?P<indent>[ \t]*)-\s+"
    r"(?P<role>[^\s\"\[:]+)"
    r"(?:\s+\"(?P<label>(?:[^\"\\]|\\.)*)\")?"
    r"(?P<attrs>(?:\s*\[[^\]]*\])*)"
    r"\s*(?::(?P<text>.*))?$"
)
_ATTR_PATTERN = re.compile(r"\[([^\]=]+)(?:=([^\]]*))?\]")


def _indent_of(line: str) -> int:
    return len(line) - len(line.lstrip(" "))


def _unquote(text: str) -> str:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] == '"':
        return text[1:-1].replace('\\"', '"')
    return text


@dataclass(frozen=True)
class SnapshotElement:
    """One parsed line of a snapshot.

    Attributes:
        line: Zero-based line number in the snapshot text.
        indent: Number of leading spaces.
        role: Accessibility role (``button``, ``link``) or pseudo-role
            (``/url``, ``text``).
        label: Quoted accessible name, if present.
        attributes: Bracketed attributes; flag attributes map to True.
        text: Trailing text after the colon, unquoted.
        raw: The original line.
    """

    line: int
    indent: int
    role: str
    label: str | None = None
    attributes: dict[str, str | bool] = field(default_factory=dict)
    text: str = ""
    raw: str = ""

    @property
    def ref(self) -> ElementReference | None:
        value = self.attributes.get("ref")
        return value if isinstance(value, str) else None

    def has_attribute(self, spec: str) -> bool:
        """Check for ``name`` or ``name=value`` among the attributes."""
        name, _, value = spec.partition("=")
        if name not in self.attributes:
            return False
        if not value:
            return True
        return self.attributes[name] == value


def parse_line(line: str, line_no: int) -> SnapshotElement | None:
    """Parse one snapshot line, or None if it is not an element line."""
    match = _LINE_PATTERN.match(line.rstrip())
    if match is None:
        return None

    attributes: dict[str, str | bool] = {}
    for attr_match in _ATTR_PATTERN.finditer(match.group("attrs") or ""):
        name = attr_match.group(1).strip()
        value = attr_match.group(2)
        attributes[name] = value if value is not None else True

    label = match.group("label")
    return SnapshotElement(
        line=line_no,
        indent=_indent_of(line),
        role=match.group("role"),
        label=label.replace('\\"', '"') if label is not None else None,
        attributes=attributes,
        text=_unquote(match.group("text") or ""),
        raw=line,
    )


class LabelMatch(Enum):
    """How a selector compares its label (and text) to an element's."""

    EXACT = "exact"
    PREFIX = "prefix"
    CONTAINS = "contains"
    REGEX = "regex"


@dataclass(frozen=True)
class Selector:
    """A human-meaningful description of one element.

    Attributes:
        role: Required role, a tuple of accepted roles, or None for any.
        label: Expected label; None places no constraint on the label.
        match: How label and text are compared.
        text: Expected trailing text (``generic [ref=e1]: Model``).
        within: Containment constraint; the element must sit inside the
            subtree of the first element matching this selector.
        attrs: Required attributes, as ``name`` or ``name=value``.
        ignore_case: Compare label and text case-insensitively.
    """

    role: str | tuple[str, ...] | None
    label: str | None = None
    match: LabelMatch = LabelMatch.EXACT
    text: str | None = None
    within: Selector | None = None
    attrs: tuple[str, ...] = ()
    ignore_case: bool = False

    @classmethod
    def exact(cls, role: str, label: str, **kwargs: Any) -> Selector:
        return cls(role, label, LabelMatch.EXACT, **kwargs)

    @classmethod
    def prefix(cls, role: str, label: str, **kwargs: Any) -> Selector:
        return cls(role, label, LabelMatch.PREFIX, **kwargs)

    @classmethod
    def containing(cls, role: str, label: str, **kwargs: Any) -> Selector:
        return cls(role, label, LabelMatch.CONTAINS, **kwargs)

    @classmethod
    def pattern(cls, role: str, label: str, **kwargs: Any) -> Selector:
        return cls(role, label, LabelMatch.REGEX, **kwargs)

    def _compare(self, expected: str, actual: str | None) -> bool:
        if actual is None:
            return False
        if self.match is LabelMatch.REGEX:
            flags = re.IGNORECASE if self.ignore_case else 0
            return re.search(expected, actual, flags) is not None
        if self.ignore_case:
            expected = expected.casefold()
            actual = actual.casefold()
        match self.match:
            case LabelMatch.EXACT:
                return actual == expected
            case LabelMatch.PREFIX:
                return actual.startswith(expected)
            case LabelMatch.CONTAINS:
                return expected in actual
        return False

    def matches(self, element: SnapshotElement) -> bool:
        """Check the element against role, label, text and attributes.

        The containment constraint is checked by Snapshot, not here.
        """
        if self.role is not None:
            roles = (self.role,) if isinstance(self.role, str) else self.role
            if element.role not in roles:
                return False
        if self.label is not None and not self._compare(
            self.label, element.label
        ):
            return False
        if self.text is not None and not self._compare(
            self.text, element.text
        ):
            return False
        return all(element.has_attribute(spec) for spec in self.attrs)

    def __str__(self) -> str:
        parts = [
            "|".join(self.role)
            if isinstance(self.role, tuple)
            else (self.role or "*")
        ]
        if self.label is not None:
            parts.append(f'{self.match.value}:"{self.label}"')
        if self.text is not None:
            parts.append(f'text {self.match.value}:"{self.text}"')
        parts.extend(f"[{spec}]" for spec in self.attrs)
        if self.within is not None:
            parts.append(f"within ({self.within})")
        return " ".join(parts)


class Snapshot:
    """An immutable, indexed accessibility-tree snapshot.

    Example:
        snapshot = Snapshot(text)
        ref = snapshot.resolve(Selector.prefix("combobox", "cars-make"))
        for element in snapshot.find_all(Selector("article")):
            block = snapshot.subtree_text(element)
    """

    __slots__ = ("_text", "_lines", "_elements", "_by_line")

    def __init__(self, text: str) -> None:
        self._text = text
        self._lines: tuple[str, ...] = tuple(text.splitlines())
        elements = []
        for line_no, line in enumerate(self._lines):
            element = parse_line(line, line_no)
            if element is not None:
                elements.append(element)
        self._elements: tuple[SnapshotElement, ...] = tuple(elements)
        self._by_line = {element.line: element for element in elements}

    @property
    def text(self) -> str:
        return self._text

    @property
    def lines(self) -> tuple[str, ...]:
        return self._lines

    @property
    def elements(self) -> tuple[SnapshotElement, ...]:
        return self._elements

    def __len__(self) -> int:
        return len(self._lines)

    def __repr__(self) -> str:
        return (
            f"Snapshot(lines={len(self._lines)}, "
            f"elements={len(self._elements)})"
        )

    def element_at(self, line: int) -> SnapshotElement | None:
        return self._by_line.get(line)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _scope(self, selector: Selector) -> tuple[int, int] | None:
        """Line range [start, end) a selector's candidates must fall in."""
        if selector.within is None:
            return (0, len(self._lines))
        container = self.find(selector.within)
        if container is None:
            return None
        return (container.line + 1, self._subtree_end(container.line))

    def find_all(self, selector: Selector) -> list[SnapshotElement]:
        """All elements matching the selector, in document order."""
        scope = self._scope(selector)
        if scope is None:
            return []
        start, end = scope
        return [
            element
            for element in self._elements
            if start <= element.line < end and selector.matches(element)
        ]

    def find(self, selector: Selector) -> SnapshotElement | None:
        """First element matching the selector in document order."""
        scope = self._scope(selector)
        if scope is None:
            return None
        start, end = scope
        for element in self._elements:
            if start <= element.line < end and selector.matches(element):
                return element
        return None

    def resolve(self, selector: Selector) -> ElementReference | None:
        """Reference of the first matching element that carries one."""
        scope = self._scope(selector)
        if scope is None:
            return None
        start, end = scope
        for element in self._elements:
            if (
                start <= element.line < end
                and element.ref is not None
                and selector.matches(element)
            ):
                return element.ref
        return None

    def require(
        self, selector: Selector, description: str | None = None
    ) -> ElementReference:
        """Like resolve(), but raise if nothing matches.

        Raises:
            ElementNotFoundException: If no element with a reference matches.
        """
        ref = self.resolve(selector)
        if ref is None:
            raise ElementNotFoundException(
                selector=str(selector),
                description=description or str(selector),
            )
        return ref

    def search(
        self, pattern: str | re.Pattern[str], flags: int = 0
    ) -> re.Match[str] | None:
        """Regex search over the whole snapshot text."""
        if isinstance(pattern, str):
            return re.search(pattern, self._text, flags)
        return pattern.search(self._text)

    # ------------------------------------------------------------------
    # Block-scoped regions
    # ------------------------------------------------------------------

    def _subtree_end(self, line: int) -> int:
        """First line after the indentation subtree rooted at line."""
        root_indent = _indent_of(self._lines[line])
        end = line + 1
        while end < len(self._lines):
            current = self._lines[end]
            if current.strip() and _indent_of(current) <= root_indent:
                break
            end += 1
        return end

    def subtree(self, root: SnapshotElement | int) -> list[SnapshotElement]:
        """Elements nested below root by indentation."""
        line = root.line if isinstance(root, SnapshotElement) else root
        end = self._subtree_end(line)
        return [e for e in self._elements if line < e.line < end]

    def subtree_text(self, root: SnapshotElement | int) -> str:
        """Text of the lines nested below root by indentation."""
        line = root.line if isinstance(root, SnapshotElement) else root
        return "\n".join(self._lines[line + 1 : self._subtree_end(line)])

    def window(self, start: SnapshotElement | int, lines: int) -> str:
        """Text of up to ``lines`` lines starting at start (inclusive).

        A fixed look-ahead bounds the cost of searching for a record's
        fields without assuming how deeply the page nests them.
        """
        line = start.line if isinstance(start, SnapshotElement) else start
        return "\n".join(self._lines[line : line + lines])
