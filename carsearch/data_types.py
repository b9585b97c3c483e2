"""Data types shared by the automation client, tasks and scheduler.

This module defines the values that flow through one search run:

1. SearchCriteria - immutable input supplied by the caller
2. VehicleListing - one record extracted from a snapshot
3. ExtractionSuccess / ExtractionFailure - the outcome of one task
4. AggregatedReport - every outcome, in source-registration order

Outcomes are frozen dataclasses so they can be matched exhaustively with
``match``; input and records are pydantic models so they validate on
construction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    ValidationError,
    field_validator,
    model_validator,
)

from carsearch.common.exceptions import InvalidSearchCriteriaException

# Opaque, snapshot-scoped handle to one interactive element (e.g. "e73").
ElementReference = str


# =============================================================================
# Input
# =============================================================================


class SearchCriteria(BaseModel):
    """Immutable search input shared by every task in a run.

    Attributes:
        make: Target category (vehicle make).
        model: Target identifier (vehicle model).
        postal_code: Location key.
        color: Optional attribute filter (exterior colour).
        year_from: Optional lower bound of the model-year range.
        year_to: Optional upper bound of the model-year range.
        timeout_ms: Per-command timeout budget; None uses the configured
            default.
    """

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    make: str
    model: str
    postal_code: str
    color: str | None = None
    year_from: int | None = None
    year_to: int | None = None
    timeout_ms: int | None = None

    @field_validator("make", "model", "postal_code")
    @classmethod
    def _required_not_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("color")
    @classmethod
    def _blank_color_is_none(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("timeout_ms")
    @classmethod
    def _positive_timeout(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError("must be positive")
        return value

    @model_validator(mode="after")
    def _ordered_bounds(self) -> SearchCriteria:
        if (
            self.year_from is not None
            and self.year_to is not None
            and self.year_from > self.year_to
        ):
            raise ValueError(
                f"year_from ({self.year_from}) must not exceed "
                f"year_to ({self.year_to})"
            )
        return self

    @classmethod
    def from_raw(cls, **data: Any) -> SearchCriteria:
        """Validate raw input and build criteria.

        Returns:
            Validated SearchCriteria.

        Raises:
            InvalidSearchCriteriaException: If validation fails.
        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            errors = [
                f"{'.'.join(str(p) for p in err['loc']) or 'criteria'}: "
                f"{err['msg']}"
                for err in e.errors()
            ]
            raise InvalidSearchCriteriaException(errors) from e

    @property
    def has_year_range(self) -> bool:
        return self.year_from is not None or self.year_to is not None


# =============================================================================
# Records
# =============================================================================


class VehicleListing(BaseModel):
    """One listing extracted from a snapshot.

    Fields that could not be found are left empty; a partial record is
    still a record. Listings have no identity beyond their position in a
    task's output.
    """

    model_config = ConfigDict(frozen=True)

    title: str = ""
    year: int = 0
    price: str = ""
    price_rating: str | None = None
    mileage: str = ""
    transmission: str = ""
    fuel_type: str = ""
    exterior_color: str = ""
    url: str = ""
    dealer: str = ""
    location: str = ""
    is_new: bool = False
    msrp_price: str | None = None
    source: str = ""


# =============================================================================
# Outcomes
# =============================================================================


@dataclass(frozen=True)
class ExtractionSuccess:
    """A task that reached Done.

    Attributes:
        source: Source id.
        display_name: Human-readable source name.
        records: Extracted listings, in snapshot order.
        total_count: Result count reported by the source (may exceed the
            number of records extracted).
        location_label: City or area the source reported, if any.
        elapsed: Wall-clock seconds spent in the task.
    """

    source: str
    display_name: str
    records: tuple[VehicleListing, ...] = ()
    total_count: int = 0
    location_label: str | None = None
    elapsed: float = 0.0

    @property
    def succeeded(self) -> bool:
        return True


@dataclass(frozen=True)
class ExtractionFailure:
    """A task that reached Failed.

    Attributes:
        source: Source id.
        display_name: Human-readable source name.
        reason: ``"navigation"``, ``"cancelled"`` or the message of the
            error that ended the task.
        elapsed: Wall-clock seconds spent in the task.
        detail: Underlying error text when ``reason`` is a category.
    """

    source: str
    display_name: str
    reason: str
    elapsed: float = 0.0
    detail: str | None = None

    @property
    def succeeded(self) -> bool:
        return False


ExtractionOutcome = ExtractionSuccess | ExtractionFailure


# =============================================================================
# Report
# =============================================================================


@dataclass(frozen=True)
class ReportSummary:
    """Read-only counts over an AggregatedReport."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    record_count: int = 0


@dataclass(frozen=True)
class AggregatedReport:
    """Every outcome of a run, ordered by source registration.

    The order is part of the contract: downstream rendering relies on it
    being independent of task completion order.
    """

    outcomes: tuple[ExtractionOutcome, ...] = ()
    summary: ReportSummary = field(default_factory=ReportSummary)

    def __len__(self) -> int:
        return len(self.outcomes)

    def __iter__(self):
        return iter(self.outcomes)

    @property
    def sources(self) -> list[str]:
        return [outcome.source for outcome in self.outcomes]

    def to_dict(self) -> dict[str, Any]:
        """Serialize the report to plain JSON-compatible data."""
        outcomes: list[dict[str, Any]] = []
        for outcome in self.outcomes:
            match outcome:
                case ExtractionSuccess():
                    outcomes.append(
                        {
                            "source": outcome.source,
                            "display_name": outcome.display_name,
                            "success": True,
                            "total_count": outcome.total_count,
                            "location": outcome.location_label,
                            "elapsed": round(outcome.elapsed, 3),
                            "listings": [
                                record.model_dump()
                                for record in outcome.records
                            ],
                        }
                    )
                case ExtractionFailure():
                    outcomes.append(
                        {
                            "source": outcome.source,
                            "display_name": outcome.display_name,
                            "success": False,
                            "reason": outcome.reason,
                            "detail": outcome.detail,
                            "elapsed": round(outcome.elapsed, 3),
                        }
                    )
        return {
            "summary": {
                "total": self.summary.total,
                "succeeded": self.summary.succeeded,
                "failed": self.summary.failed,
                "record_count": self.summary.record_count,
            },
            "outcomes": outcomes,
        }
