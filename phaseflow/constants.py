# Load and structure station settings from YAML config file.
# Version: 1.0.0
# Provides type aliases, status markers, and the dead-time code catalogue.

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Literal

import yaml

from .errors import ConfigurationError, FileLoadError


# Type aliases for clarity
StageType = Literal["find", "setup", "production"]
LiveStatusKind = Literal["search", "setup", "production", "multi"]

# Stage -> status string reported to the live dashboard
STAGE_LIVE_STATUS: dict[str, LiveStatusKind] = {
    "find": "search",
    "setup": "setup",
    "production": "production",
}

MULTI_STATUS: LiveStatusKind = "multi"

# Production position marker written for removed phases
DELETED_MARKER = "DELETED"

# A multi-job session never runs with fewer jobs than this
MIN_MULTI_JOBS = 2

SETTINGS_ENV_VAR = "PHASEFLOW_SETTINGS"
BACKEND_URL_ENV_VAR = "PHASEFLOW_BACKEND_URL"


@dataclass(frozen=True)
class DeadTimeCode:
    """One entry of the dead-time catalogue.

    Attributes:
        code: Numeric dead-time code.
        label: Short description shown to the operator.
        requires_product_manual: A product id must be typed in by hand.
        requires_product_or_sheet: A product id or scanned sheet must be linked.
    """
    code: int
    label: str = ""
    requires_product_manual: bool = False
    requires_product_or_sheet: bool = False


@dataclass(frozen=True)
class StationSettings:
    """Container for all station settings loaded from YAML.

    Attributes:
        backend_url: Base URL of the production backend.
        request_timeout_seconds: Timeout applied to every backend request.
        poll_interval_seconds: Interval of the idle resume poll.
        autosave_debounce_ms: Debounce delay for job-list autosave.
        min_multi_jobs: Minimum number of jobs for a multi-job session.
        max_quantity_attempts: Re-prompts allowed for an invalid quantity.
        dead_time_codes: Dict mapping code to DeadTimeCode.
    """
    backend_url: str = "http://localhost:4000"
    request_timeout_seconds: float = 15.0
    poll_interval_seconds: float = 15.0
    autosave_debounce_ms: int = 200
    min_multi_jobs: int = MIN_MULTI_JOBS
    max_quantity_attempts: int = 3
    dead_time_codes: dict[int, DeadTimeCode] = field(default_factory=dict)

    @property
    def autosave_debounce_seconds(self) -> float:
        """Autosave debounce expressed in seconds."""
        return self.autosave_debounce_ms / 1000.0

    def get_dead_time_code(self, code: int) -> DeadTimeCode:
        """Get a dead-time code from the catalogue.

        Args:
            code: Numeric dead-time code.

        Returns:
            Matching DeadTimeCode object.

        Raises:
            ConfigurationError: If the code is not configured.
        """
        if code in self.dead_time_codes:
            return self.dead_time_codes[code]
        raise ConfigurationError("dead_time_codes", f"Unknown dead-time code: {code}")


def load_settings_from_yaml(yaml_path: str | Path) -> StationSettings:
    """Load station settings from YAML file.

    Args:
        yaml_path: Path to the YAML config file.

    Returns:
        StationSettings object with all loaded data.

    Raises:
        FileLoadError: If file cannot be read.
        ConfigurationError: If file format is invalid.
    """
    yaml_path = Path(yaml_path)

    try:
        with open(yaml_path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise FileLoadError(str(yaml_path), e)

    if not isinstance(data, dict):
        raise ConfigurationError(str(yaml_path), "Top level must be a mapping")

    backend = data.get('backend', {}) or {}
    station = data.get('station', {}) or {}

    # Parse dead-time codes - create dict keyed by code
    dead_time_codes = {}
    for entry in data.get('dead_time_codes', []) or []:
        try:
            code = int(entry['code'])
        except (KeyError, TypeError, ValueError):
            raise ConfigurationError(str(yaml_path), f"Invalid dead-time entry: {entry!r}")
        if code in dead_time_codes:
            raise ConfigurationError(str(yaml_path), f"Duplicate dead-time code: {code}")
        dead_time_codes[code] = DeadTimeCode(
            code=code,
            label=str(entry.get('label', '')),
            requires_product_manual=bool(entry.get('requires_product_manual', False)),
            requires_product_or_sheet=bool(entry.get('requires_product_or_sheet', False)),
        )

    try:
        settings = StationSettings(
            backend_url=str(backend.get('base_url', StationSettings.backend_url)),
            request_timeout_seconds=float(backend.get('timeout_seconds', 15.0)),
            poll_interval_seconds=float(station.get('poll_interval_seconds', 15.0)),
            autosave_debounce_ms=int(station.get('autosave_debounce_ms', 200)),
            min_multi_jobs=int(station.get('min_multi_jobs', MIN_MULTI_JOBS)),
            max_quantity_attempts=int(station.get('max_quantity_attempts', 3)),
            dead_time_codes=dead_time_codes,
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(str(yaml_path), str(e))

    _validate_settings(settings, str(yaml_path))
    return settings


def _validate_settings(settings: StationSettings, source: str) -> None:
    """Check cross-field rules of loaded settings.

    Args:
        settings: Settings to check.
        source: Config source name for error messages.

    Raises:
        ConfigurationError: If a value is out of range.
    """
    if settings.min_multi_jobs < MIN_MULTI_JOBS:
        raise ConfigurationError(
            source, f"min_multi_jobs must be at least {MIN_MULTI_JOBS}, got {settings.min_multi_jobs}"
        )
    if settings.poll_interval_seconds <= 0:
        raise ConfigurationError(source, "poll_interval_seconds must be positive")
    if settings.autosave_debounce_ms < 0:
        raise ConfigurationError(source, "autosave_debounce_ms cannot be negative")
    if settings.max_quantity_attempts < 1:
        raise ConfigurationError(source, "max_quantity_attempts must be at least 1")


def save_settings_to_yaml(settings: StationSettings, yaml_path: str | Path) -> None:
    """Save station settings to YAML file.

    Args:
        settings: StationSettings object to save.
        yaml_path: Path to save the YAML config file.
    """
    data = {
        'backend': {
            'base_url': settings.backend_url,
            'timeout_seconds': settings.request_timeout_seconds,
        },
        'station': {
            'poll_interval_seconds': settings.poll_interval_seconds,
            'autosave_debounce_ms': settings.autosave_debounce_ms,
            'min_multi_jobs': settings.min_multi_jobs,
            'max_quantity_attempts': settings.max_quantity_attempts,
        },
        'dead_time_codes': [],
    }

    for c in sorted(settings.dead_time_codes.values(), key=lambda c: c.code):
        entry = {'code': c.code}
        if c.label:
            entry['label'] = c.label
        if c.requires_product_manual:
            entry['requires_product_manual'] = True
        if c.requires_product_or_sheet:
            entry['requires_product_or_sheet'] = True
        data['dead_time_codes'].append(entry)

    yaml_path = Path(yaml_path)
    with open(yaml_path, 'w') as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)


def load_station_settings(path: str | Path | None = None) -> StationSettings:
    """Load settings from a file, the environment, or built-in defaults.

    The file named by PHASEFLOW_SETTINGS wins over ``path``; when neither
    exists the defaults are used. PHASEFLOW_BACKEND_URL overrides the
    backend URL in every case.

    Args:
        path: Default settings file location.

    Returns:
        StationSettings object.
    """
    env_path = os.environ.get(SETTINGS_ENV_VAR)
    candidate = Path(env_path) if env_path else (Path(path) if path else None)

    if candidate is not None and candidate.exists():
        settings = load_settings_from_yaml(candidate)
    elif env_path:
        raise FileLoadError(env_path, FileNotFoundError(f"Settings file not found: {env_path}"))
    else:
        settings = StationSettings()

    backend_url = os.environ.get(BACKEND_URL_ENV_VAR)
    if backend_url:
        settings = replace(settings, backend_url=backend_url)
    return settings
