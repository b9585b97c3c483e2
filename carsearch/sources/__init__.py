"""Bundled source strategies.

STRATEGIES maps each source id to its strategy class, in default
registration order. build_sources() turns a configuration into the ordered
list of enabled SourceSpecs the scheduler runs.
"""

from __future__ import annotations

import logging

from carsearch.common.exceptions import ConfigurationException
from carsearch.config import CarSearchConfig
from carsearch.driver.scheduler import SourceSpec
from carsearch.extraction.strategy import SourceStrategy
from carsearch.sources.auto_trader import AutoTraderStrategy
from carsearch.sources.budds_land_rover import BuddsLandRoverStrategy
from carsearch.sources.coventry_north_land_rover import (
    CoventryNorthLandRoverStrategy,
)
from carsearch.sources.land_rover_brampton import LandRoverBramptonStrategy
from carsearch.sources.team_chrysler import TeamChryslerStrategy

logger = logging.getLogger(__name__)

STRATEGIES: dict[str, type[SourceStrategy]] = {
    strategy.name: strategy
    for strategy in (
        AutoTraderStrategy,
        LandRoverBramptonStrategy,
        BuddsLandRoverStrategy,
        TeamChryslerStrategy,
        CoventryNorthLandRoverStrategy,
    )
}


def build_sources(
    config: CarSearchConfig, only: list[str] | None = None
) -> list[SourceSpec]:
    """Build the enabled sources in configuration order.

    Args:
        config: Run configuration.
        only: Optional source ids to restrict the run to. Listed sources
            run even if disabled in the configuration.

    Returns:
        One SourceSpec per source to run.

    Raises:
        ConfigurationException: If a configured or requested source has no
            strategy.
    """
    unknown = [
        source_id
        for source_id in [*config.sources, *(only or [])]
        if source_id not in STRATEGIES
    ]
    if unknown:
        raise ConfigurationException(
            f"Unknown source(s): {', '.join(sorted(set(unknown)))}",
            {"known": ", ".join(STRATEGIES)},
        )
    unconfigured = [s for s in only or [] if s not in config.sources]
    if unconfigured:
        raise ConfigurationException(
            f"Source(s) not configured: {', '.join(unconfigured)}"
        )

    specs: list[SourceSpec] = []
    for source_id, options in config.sources.items():
        if only is not None:
            if source_id not in only:
                continue
        elif not options.enabled:
            logger.debug(f"[{source_id}] Disabled; skipping")
            continue

        strategy = STRATEGIES[source_id](options.base_url, options.settings)
        specs.append(SourceSpec(source_id, strategy))

    return specs
