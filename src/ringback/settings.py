"""User settings persisted under the ``settings`` key.

Loading always merges the stored values over the defaults: unknown keys are
dropped and missing or invalid keys fall back to their default, so a
settings record written by an older or newer version still loads.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ringback.core.state import StateStore

logger = logging.getLogger(__name__)

SETTINGS_KEY = "settings"


class Settings(BaseModel):
    """User-facing preferences."""

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    notification_lead_minutes: float = Field(default=5.0, gt=0)
    auto_join: bool = False
    ringtone: str = Field(default="classic", min_length=1)
    first_run: bool = True


def merge_with_defaults(raw: Any, defaults: Settings) -> Settings:
    """Overlay the valid known keys of *raw* onto *defaults*."""
    merged = defaults.model_copy()
    if not isinstance(raw, dict):
        return merged
    for key, value in raw.items():
        if key not in Settings.model_fields:
            continue
        try:
            setattr(merged, key, value)
        except ValidationError:
            logger.warning("Ignoring invalid stored setting %s=%r", key, value)
    return merged


class SettingsStore:
    """Reads and writes :class:`Settings` through the state store."""

    def __init__(self, store: StateStore, defaults: Settings | None = None) -> None:
        self._store = store
        self._defaults = defaults or Settings()

    @property
    def defaults(self) -> Settings:
        return self._defaults

    async def load(self) -> Settings:
        raw = await self._store.get_value(SETTINGS_KEY)
        return merge_with_defaults(raw, self._defaults)

    async def save(self, settings: Settings) -> None:
        await self._store.set({SETTINGS_KEY: settings.model_dump(mode="json")})

    async def update(self, **changes: Any) -> Settings:
        """Apply *changes* to the stored settings and persist the result.

        Raises
        ------
        ValueError
            If a key is unknown or a value fails validation.
        """
        settings = await self.load()
        for key, value in changes.items():
            if key not in Settings.model_fields:
                raise ValueError(f"Unknown setting: {key}")
            setattr(settings, key, value)
        await self.save(settings)
        return settings

    async def ensure_initialized(self) -> Settings:
        """Write the defaults on first run; otherwise rewrite the merged record."""
        raw = await self._store.get_value(SETTINGS_KEY)
        settings = merge_with_defaults(raw, self._defaults)
        if raw is None:
            logger.info("First run: writing default settings")
        await self.save(settings)
        return settings
