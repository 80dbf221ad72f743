"""Local user settings: definitions, current values and change listeners."""

import logging
from dataclasses import dataclass, field
from typing import Callable

from ..models import SettingValue

logger = logging.getLogger(__name__)

SettingsListener = Callable[[dict[str, SettingValue]], None]


@dataclass
class SettingDefinition:
    """Metadata for one setting."""

    id: str
    name: str
    type: str  # "select" or "toggle"
    initial_value: SettingValue
    category: str
    options: list[str] = field(default_factory=list)
    description: str = ""

    def validate(self, value: SettingValue) -> None:
        if self.type == "toggle" and not isinstance(value, bool):
            raise ValueError(f"Setting {self.id} expects a boolean, got {value!r}")
        if self.type == "select" and self.options and value not in self.options:
            raise ValueError(
                f"Setting {self.id} must be one of {self.options}, got {value!r}"
            )


DEFAULT_DEFINITIONS = [
    SettingDefinition(
        id="theme",
        name="Theme Mode",
        type="select",
        initial_value="system",
        options=["light", "dark", "system"],
        category="appearance",
        description="Control light or dark mode",
    ),
    SettingDefinition(
        id="colorTheme",
        name="Color Theme",
        type="select",
        initial_value="default",
        category="appearance",
        description="Choose your preferred color palette",
    ),
    SettingDefinition(
        id="showNoteDates",
        name="Show Note Dates",
        type="toggle",
        initial_value=True,
        category="display",
        description="Show creation dates under note titles in the sidebar",
    ),
]


class SettingsStore:
    """Flat mapping of setting id to scalar value."""

    def __init__(self, definitions: list[SettingDefinition] | None = None):
        self.definitions = {
            d.id: d for d in (definitions if definitions is not None else DEFAULT_DEFINITIONS)
        }
        self._values: dict[str, SettingValue] = {
            d.id: d.initial_value for d in self.definitions.values()
        }
        self._listeners: list[SettingsListener] = []

    def values(self) -> dict[str, SettingValue]:
        return dict(self._values)

    def get_setting(self, setting_id: str) -> SettingValue:
        return self._values.get(setting_id)

    def set_setting(self, setting_id: str, value: SettingValue) -> None:
        """Change one setting, validating against its definition."""
        definition = self.definitions.get(setting_id)
        if definition is None:
            raise KeyError(f"Unknown setting: {setting_id}")
        definition.validate(value)
        if self._values.get(setting_id) == value:
            return
        self._values[setting_id] = value
        self._notify()

    def replace_values(self, values: dict[str, SettingValue]) -> None:
        """Adopt a whole set of values (e.g. from the remote record).

        Unknown keys are kept so that settings written by newer clients
        survive a round trip through this one.
        """
        merged = {**self._values, **values}
        if merged == self._values:
            return
        self._values = merged
        self._notify()

    def add_listener(self, listener: SettingsListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: SettingsListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self) -> None:
        snapshot = self.values()
        for listener in list(self._listeners):
            listener(snapshot)
