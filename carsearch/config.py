"""Configuration models for a search run.

Configuration is built once at startup and passed explicitly into the
scheduler; nothing reads it from a global afterwards. The JSON shape
accepted by load_config() is::

    {
        "automation": {
            "command": "playwright-cli",
            "default_timeout_ms": 15000,
            "retry_count": 3,
            "retry_delay_ms": 2000
        },
        "sources": {
            "auto_trader": {
                "enabled": true,
                "base_url": "https://www.autotrader.ca",
                "settings": {"DefaultDisplayCount": "100"}
            }
        }
    }

The ``PlaywrightCli`` / ``Providers`` section names and their PascalCase
keys are accepted as aliases.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from carsearch.common.exceptions import ConfigurationException


class AutomationOptions(BaseModel):
    """Options for the external automation command.

    Attributes:
        command: Command used to invoke the automation CLI. Split with
            shell rules, so it may carry leading arguments.
        default_timeout_ms: Deadline for each command invocation.
        retry_count: Snapshot attempts before giving up.
        retry_delay_ms: Delay between snapshot attempts.
        session_option: Optional format string inserted before every
            subcommand to select a named browser session, e.g.
            ``"-s={session}"``. None runs every command against the CLI's
            default session.
        working_dir: Working directory for the command; relative snapshot
            paths are resolved against it.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    command: str = Field(default="playwright-cli", alias="Command")
    default_timeout_ms: int = Field(
        default=15000, gt=0, alias="DefaultTimeoutMs"
    )
    retry_count: int = Field(default=3, ge=1, alias="RetryCount")
    retry_delay_ms: int = Field(default=2000, ge=0, alias="RetryDelayMs")
    session_option: str | None = Field(default=None, alias="SessionOption")
    working_dir: Path | None = Field(default=None, alias="WorkingDir")

    @property
    def default_timeout(self) -> float:
        return self.default_timeout_ms / 1000

    @property
    def retry_delay(self) -> float:
        return self.retry_delay_ms / 1000


class SourceOptions(BaseModel):
    """Per-source options.

    Attributes:
        enabled: Whether the source takes part in a run.
        base_url: Base address of the source's site.
        settings: Free-form, source-specific knobs.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    enabled: bool = Field(default=True, alias="Enabled")
    base_url: str = Field(default="", alias="BaseUrl")
    settings: dict[str, str] = Field(default_factory=dict, alias="Settings")


DEFAULT_SOURCES: dict[str, SourceOptions] = {
    "auto_trader": SourceOptions(
        base_url="https://www.autotrader.ca",
        settings={"DefaultDisplayCount": "100"},
    ),
    "land_rover_brampton": SourceOptions(
        base_url="https://www.landroverbrampton.com"
    ),
    "budds_land_rover": SourceOptions(
        base_url="https://www.buddslandrover.com"
    ),
    "team_chrysler": SourceOptions(base_url="https://www.teamchrysler.ca"),
    "coventry_north_land_rover": SourceOptions(
        base_url="https://coventrynorthlandrover.com"
    ),
}


class CarSearchConfig(BaseModel):
    """Top-level configuration for a run.

    Attributes:
        automation: Automation command options.
        sources: Source id to options, in registration order.
        max_concurrency: Optional cap on concurrently running tasks.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    automation: AutomationOptions = Field(
        default_factory=AutomationOptions, alias="PlaywrightCli"
    )
    sources: dict[str, SourceOptions] = Field(
        default_factory=lambda: dict(DEFAULT_SOURCES), alias="Providers"
    )
    max_concurrency: int | None = Field(
        default=None, ge=1, alias="MaxConcurrency"
    )

    def with_overrides(
        self,
        *,
        command: str | None = None,
        timeout_ms: int | None = None,
        retry_count: int | None = None,
        retry_delay_ms: int | None = None,
        max_concurrency: int | None = None,
    ) -> CarSearchConfig:
        """Return a copy with per-run overrides applied.

        None leaves the configured value unchanged.
        """
        updates: dict[str, Any] = {}
        if command is not None:
            updates["command"] = command
        if timeout_ms is not None:
            updates["default_timeout_ms"] = timeout_ms
        if retry_count is not None:
            updates["retry_count"] = retry_count
        if retry_delay_ms is not None:
            updates["retry_delay_ms"] = retry_delay_ms

        try:
            automation = AutomationOptions.model_validate(
                {**self.automation.model_dump(), **updates}
            )
        except ValidationError as e:
            raise ConfigurationException(
                "Invalid automation override", {"errors": e.errors()}
            ) from e

        return self.model_copy(
            update={
                "automation": automation,
                "max_concurrency": max_concurrency
                if max_concurrency is not None
                else self.max_concurrency,
            }
        )


def _normalize_source_keys(sources: dict[str, Any]) -> dict[str, Any]:
    """Map PascalCase provider names (``LandRoverBrampton``) to source ids."""
    normalized: dict[str, Any] = {}
    for key, value in sources.items():
        source_id = "".join(
            f"_{ch.lower()}" if ch.isupper() else ch for ch in key
        ).lstrip("_")
        normalized[source_id] = value
    return normalized


def load_config(path: Path | str | None = None) -> CarSearchConfig:
    """Load configuration from a JSON file.

    Args:
        path: JSON file path. None returns the defaults.

    Returns:
        Validated CarSearchConfig. Sources named in the file replace the
        defaults entirely, in file order.

    Raises:
        ConfigurationException: If the file is unreadable or invalid.
    """
    if path is None:
        return CarSearchConfig()

    path = Path(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationException(
            f"Could not read configuration: {e}", {"path": str(path)}
        ) from e

    if not isinstance(raw, dict):
        raise ConfigurationException(
            "Configuration root must be a JSON object", {"path": str(path)}
        )

    for key in ("sources", "Providers"):
        if isinstance(raw.get(key), dict):
            raw[key] = _normalize_source_keys(raw[key])

    try:
        return CarSearchConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationException(
            "Invalid configuration",
            {"path": str(path), "errors": e.errors()},
        ) from e
