"""carsearch CLI: run a search across the configured sources.

Usage:
    carsearch sources                                   # List sources
    carsearch search --make "Land Rover" --model "Range Rover" \\
        --postal-code L5B1C2                            # Search all sources
    carsearch search ... --source auto_trader --json    # One source, JSON
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from typing import Any

import click

from carsearch.common.exceptions import (
    ConfigurationException,
    InvalidSearchCriteriaException,
)
from carsearch.config import CarSearchConfig, load_config
from carsearch.data_types import (
    AggregatedReport,
    ExtractionFailure,
    ExtractionSuccess,
    SearchCriteria,
)
from carsearch.driver.scheduler import Scheduler
from carsearch.sources import STRATEGIES, build_sources

logger = logging.getLogger(__name__)


def _load(config_path: str | None) -> CarSearchConfig:
    try:
        return load_config(config_path)
    except ConfigurationException as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(package_name="carsearch")
def cli() -> None:
    """carsearch: vehicle listing search across dealer and marketplace sites."""


@cli.command("sources")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="JSON configuration file.",
)
def list_sources(config_path: str | None) -> None:
    """List the bundled sources and whether each is enabled."""
    config = _load(config_path)
    for source_id, strategy in STRATEGIES.items():
        options = config.sources.get(source_id)
        if options is None:
            status = "not configured"
        else:
            status = "enabled" if options.enabled else "disabled"
        base_url = options.base_url if options else ""
        click.echo(
            f"{source_id:<28} {strategy.display_name:<30} {status:<15} "
            f"{base_url}"
        )


@cli.command()
@click.option("--make", required=True, help="Vehicle make.")
@click.option("--model", required=True, help="Vehicle model.")
@click.option("--postal-code", required=True, help="Postal code to search near.")
@click.option("--color", default=None, help="Exterior colour filter.")
@click.option("--year-from", type=int, default=None, help="Minimum model year.")
@click.option("--year-to", type=int, default=None, help="Maximum model year.")
@click.option(
    "--timeout",
    "timeout_ms",
    type=int,
    default=None,
    help="Per-command timeout in milliseconds.",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="JSON configuration file.",
)
@click.option(
    "--source",
    "only",
    multiple=True,
    help="Run only this source (repeatable).",
)
@click.option(
    "--command",
    default=None,
    help="Automation command (overrides the configuration).",
)
@click.option(
    "--max-concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum number of sources searched at once.",
)
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON.")
@click.option("-v", "--verbose", is_flag=True, help="Verbose logging.")
def search(
    make: str,
    model: str,
    postal_code: str,
    color: str | None,
    year_from: int | None,
    year_to: int | None,
    timeout_ms: int | None,
    config_path: str | None,
    only: tuple[str, ...],
    command: str | None,
    max_concurrency: int | None,
    as_json: bool,
    verbose: bool,
) -> None:
    """Search every enabled source and print one line per source.

    \b
    Examples:
        carsearch search --make "Land Rover" --model "Range Rover" \\
            --postal-code L5B1C2
        carsearch search --make Dodge --model "Grand Caravan" \\
            --postal-code L5B1C2 --year-from 2015 --source team_chrysler
    """
    log_level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        criteria = SearchCriteria.from_raw(
            make=make,
            model=model,
            postal_code=postal_code,
            color=color,
            year_from=year_from,
            year_to=year_to,
            timeout_ms=timeout_ms,
        )
    except InvalidSearchCriteriaException as e:
        raise click.BadParameter("; ".join(e.errors)) from e

    try:
        config = _load(config_path).with_overrides(
            command=command, max_concurrency=max_concurrency
        )
        sources = build_sources(config, list(only) if only else None)
    except ConfigurationException as e:
        raise click.ClickException(str(e)) from e

    scheduler = Scheduler(
        sources,
        config.automation,
        max_concurrency=config.max_concurrency,
    )
    report = asyncio.run(_run(scheduler, criteria))

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        _print_summary(report)


async def _run(
    scheduler: Scheduler, criteria: SearchCriteria
) -> AggregatedReport:
    """Run the scheduler with SIGINT/SIGTERM mapped to the stop event."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def handle_signal(signum: int, frame: Any) -> None:
        sig_name = signal.Signals(signum).name
        logger.info(f"Received {sig_name}, cancelling running searches...")
        loop.call_soon_threadsafe(stop_event.set)

    previous = {
        sig: signal.signal(sig, handle_signal)
        for sig in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        return await scheduler.run(criteria, stop_event=stop_event)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _print_summary(report: AggregatedReport) -> None:
    for outcome in report:
        match outcome:
            case ExtractionSuccess():
                location = (
                    f" near {outcome.location_label}"
                    if outcome.location_label
                    else ""
                )
                click.echo(
                    f"{outcome.display_name}: {len(outcome.records)} listing(s) "
                    f"of {outcome.total_count}{location} "
                    f"({outcome.elapsed:.1f}s)"
                )
                for record in outcome.records:
                    details = ", ".join(
                        value
                        for value in (record.price, record.mileage, record.location)
                        if value
                    )
                    click.echo(f"  {record.title}  {details}  {record.url}")
            case ExtractionFailure():
                click.echo(
                    f"{outcome.display_name}: FAILED ({outcome.reason}) "
                    f"({outcome.elapsed:.1f}s)"
                )

    summary = report.summary
    click.echo(
        f"\n{summary.succeeded}/{summary.total} source(s) succeeded, "
        f"{summary.failed} failed, {summary.record_count} listing(s)."
    )


def main() -> None:
    """Entry point for the ``carsearch`` console script."""
    cli()

