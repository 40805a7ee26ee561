"""
Configuration management and loading.

Handles user preferences for display, refresh timing and budgets.
"""

from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

DEFAULT_SETTINGS_PATH = Path.home() / ".config" / "claude-usage-tracker" / "settings.yaml"

MAX_DECIMAL_PLACES = 10


@dataclass(frozen=True)
class TrackerSettings:
    """User preferences. None of these affect aggregation results."""
    cost_decimal_places: int = 2
    auto_refresh_interval: int = 60  # seconds, 0 disables the timer
    show_cost_in_menu_bar: bool = True
    launch_at_login: bool = True
    daily_budget: float = 0.0  # 0 disables the alert
    monthly_budget: float = 0.0

    def __post_init__(self):
        """Validate setting ranges."""
        if not 0 <= self.cost_decimal_places <= MAX_DECIMAL_PLACES:
            raise ValueError(f"cost_decimal_places must be between 0 and {MAX_DECIMAL_PLACES}")
        if self.auto_refresh_interval < 0:
            raise ValueError("auto_refresh_interval must be >= 0")
        if self.daily_budget < 0:
            raise ValueError("daily_budget must be >= 0")
        if self.monthly_budget < 0:
            raise ValueError("monthly_budget must be >= 0")


_INT_KEYS = {'cost_decimal_places', 'auto_refresh_interval'}
_BOOL_KEYS = {'show_cost_in_menu_bar', 'launch_at_login'}
_FLOAT_KEYS = {'daily_budget', 'monthly_budget'}
ALLOWED_KEYS = _INT_KEYS | _BOOL_KEYS | _FLOAT_KEYS


def _coerce_value(key: str, value: Any) -> Union[int, bool, float]:
    """Validate the type of a single setting value.

    Raises:
        ValueError: If the key is unknown or the value has the wrong type
    """
    if key not in ALLOWED_KEYS:
        raise ValueError(f"Unknown setting: {key}")

    if key in _BOOL_KEYS:
        if not isinstance(value, bool):
            raise ValueError(f"'{key}' must be true or false")
        return value

    if isinstance(value, bool):
        raise ValueError(f"'{key}' must be a number")

    if key in _INT_KEYS:
        if not isinstance(value, int):
            raise ValueError(f"'{key}' must be an integer")
        return value

    if not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' must be a number")
    return float(value)


def parse_settings(raw_config: Optional[Dict[str, Any]]) -> TrackerSettings:
    """Validate a raw settings mapping.

    Args:
        raw_config: Decoded YAML mapping; None or empty yields defaults

    Returns:
        Validated TrackerSettings

    Raises:
        ValueError: If the configuration is invalid
    """
    if not raw_config:
        return TrackerSettings()
    if not isinstance(raw_config, dict):
        raise ValueError("Settings file must contain a mapping")

    unknown_keys = set(raw_config.keys()) - ALLOWED_KEYS
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    values = {key: _coerce_value(key, value) for key, value in raw_config.items()}
    return TrackerSettings(**values)


def load_settings(path: Optional[Union[str, Path]] = None) -> TrackerSettings:
    """Load and validate settings from a YAML file.

    A missing file is not an error: defaults are returned.

    Args:
        path: Path to the YAML settings file

    Returns:
        Validated TrackerSettings

    Raises:
        yaml.YAMLError: If the YAML is invalid
        ValueError: If the configuration is invalid
    """
    settings_path = Path(path) if path else DEFAULT_SETTINGS_PATH
    if not settings_path.exists():
        return TrackerSettings()

    with open(settings_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in settings file {settings_path}: {e}")

    return parse_settings(raw_config)


class SettingsStore:
    """YAML-file backed key-value store for user preferences.

    Every ``set`` validates the full settings object before the file is
    rewritten, so the file on disk always holds a loadable configuration.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else DEFAULT_SETTINGS_PATH
        self._settings = load_settings(self.path)

    def as_settings(self) -> TrackerSettings:
        return self._settings

    def get(self, key: str) -> Any:
        """Return the current value of a setting.

        Raises:
            KeyError: If the key is unknown
        """
        if key not in ALLOWED_KEYS:
            raise KeyError(key)
        return getattr(self._settings, key)

    def set(self, key: str, value: Any) -> TrackerSettings:
        """Update a setting and persist the file.

        Args:
            key: Setting name
            value: New value

        Returns:
            The updated settings

        Raises:
            ValueError: If the key is unknown or the value is invalid
        """
        updated = replace(self._settings, **{key: _coerce_value(key, value)})
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(asdict(updated), f, sort_keys=True)
        self._settings = updated
        return updated
