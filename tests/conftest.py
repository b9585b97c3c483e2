"""Shared fixtures for carsearch tests."""

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from carsearch.config import AutomationOptions
from carsearch.data_types import SearchCriteria
from tests.utils import fake_command

SNAPSHOTS_DIR = Path(__file__).parent / "snapshots"


@pytest.fixture
def criteria() -> SearchCriteria:
    """Search criteria used by most tests.

    Returns:
        SearchCriteria for a Land Rover Range Rover near L5B1C2.
    """
    return SearchCriteria(
        make="Land Rover", model="Range Rover", postal_code="L5B1C2"
    )


@pytest.fixture
def load_snapshot() -> Callable[[str], str]:
    """Load a recorded snapshot from tests/snapshots/.

    Returns:
        Function taking a file name and returning its text.
    """

    def load(name: str) -> str:
        return (SNAPSHOTS_DIR / name).read_text(encoding="utf-8")

    return load


# =============================================================================
# Fake automation command
# =============================================================================


@pytest.fixture
def scenario(tmp_path: Path) -> Callable[[dict[str, Any]], Path]:
    """Write a scenario file for the fake automation command.

    Returns:
        Function taking the scenario's ``commands`` mapping and returning
        the scenario file path.
    """

    def write(commands: dict[str, Any]) -> Path:
        path = tmp_path / "scenario.json"
        path.write_text(json.dumps({"commands": commands}), encoding="utf-8")
        return path

    return write


@pytest.fixture
def fake_options(
    tmp_path: Path,
) -> Callable[..., AutomationOptions]:
    """Build AutomationOptions that invoke the fake automation command.

    Returns:
        Function taking the scenario path plus option overrides.
    """

    def build(scenario_path: Path, **overrides: Any) -> AutomationOptions:
        values: dict[str, Any] = {
            "command": fake_command(scenario_path),
            "default_timeout_ms": 10000,
            "retry_count": 3,
            "retry_delay_ms": 10,
            "working_dir": tmp_path,
        }
        values.update(overrides)
        return AutomationOptions(**values)

    return build
