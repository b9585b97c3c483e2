"""Budds' Land Rover Oakville strategy.

Same dealer inventory platform as Land Rover Brampton.
"""

from __future__ import annotations

from dataclasses import replace

from carsearch.sources.land_rover_brampton import LandRoverBramptonStrategy


class BuddsLandRoverStrategy(LandRoverBramptonStrategy):
    name = "budds_land_rover"
    display_name = "Budds' Land Rover Oakville"
    listing_rules = replace(
        LandRoverBramptonStrategy.listing_rules, dealer="Budds' Land Rover"
    )
