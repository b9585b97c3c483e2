"""Result aggregation: merge per-task outcomes into one ordered report.

Outcomes arrive in completion order; the report is always in
source-registration order. The aggregator adds count totals and nothing
else.
"""

from __future__ import annotations

from collections.abc import Sequence

from carsearch.data_types import (
    AggregatedReport,
    ExtractionOutcome,
    ReportSummary,
)


def summarize(outcomes: Sequence[ExtractionOutcome]) -> ReportSummary:
    succeeded = sum(1 for outcome in outcomes if outcome.succeeded)
    record_count = sum(
        len(outcome.records) for outcome in outcomes if outcome.succeeded
    )
    return ReportSummary(
        total=len(outcomes),
        succeeded=succeeded,
        failed=len(outcomes) - succeeded,
        record_count=record_count,
    )


class ResultAggregator:
    """Collects exactly one outcome per registered source.

    Example usage:
        aggregator = ResultAggregator(["a", "b"])
        aggregator.record(1, outcome_b)
        aggregator.record(0, outcome_a)
        report = aggregator.build()  # [outcome_a, outcome_b]
    """

    def __init__(self, source_ids: Sequence[str]) -> None:
        self.source_ids = list(source_ids)
        self._outcomes: list[ExtractionOutcome | None] = [None] * len(
            self.source_ids
        )
        self.completion_order: list[str] = []

    def record(self, index: int, outcome: ExtractionOutcome) -> None:
        """Store the outcome of the source registered at index.

        Raises:
            ValueError: If the outcome's source does not match the source
                registered at index, or if the slot is already filled.
        """
        expected = self.source_ids[index]
        if outcome.source != expected:
            raise ValueError(
                f"Outcome for '{outcome.source}' recorded in slot of "
                f"'{expected}'"
            )
        if self._outcomes[index] is not None:
            raise ValueError(f"Outcome for '{expected}' already recorded")
        self._outcomes[index] = outcome
        self.completion_order.append(expected)

    @property
    def pending(self) -> list[str]:
        return [
            source_id
            for source_id, outcome in zip(self.source_ids, self._outcomes)
            if outcome is None
        ]

    def build(self) -> AggregatedReport:
        """Build the report in registration order.

        Raises:
            ValueError: If any source has no outcome yet.
        """
        missing = self.pending
        if missing:
            raise ValueError(f"No outcome for: {', '.join(missing)}")
        outcomes = tuple(o for o in self._outcomes if o is not None)
        return AggregatedReport(outcomes=outcomes, summary=summarize(outcomes))


def aggregate(
    source_ids: Sequence[str], outcomes: Sequence[ExtractionOutcome]
) -> AggregatedReport:
    """Order outcomes (in any order) by source registration order."""
    aggregator = ResultAggregator(source_ids)
    positions = {source_id: i for i, source_id in enumerate(source_ids)}
    for outcome in outcomes:
        if outcome.source not in positions:
            raise ValueError(f"Unknown source '{outcome.source}'")
        aggregator.record(positions[outcome.source], outcome)
    return aggregator.build()
