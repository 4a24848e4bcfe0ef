"""
HVAC Runtime Configuration Settings

One explicit configuration structure per concern, passed into the engine at
construction. User-facing settings are loaded from /data/options.json
(Home Assistant add-on), config.yaml (development) or environment variables.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field, fields

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

OPTIONS_PATH = "/data/options.json"


def _camel_to_snake(name: str) -> str:
    """Convert camelCase to snake_case."""
    s1 = re.sub("(.)([A-Z][a-z]+)", r"\1_\2", name)
    return re.sub("([a-z0-9])([A-Z])", r"\1_\2", s1).lower()


def _known_kwargs(cls, data: dict) -> dict:
    """Convert keys to snake_case and drop the ones the dataclass does not know."""
    known = {f.name for f in fields(cls)}
    converted = {_camel_to_snake(k): v for k, v in (data or {}).items()}
    unknown = set(converted) - known
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys: {sorted(unknown)}")
    return {k: v for k, v in converted.items() if k in known}


@dataclass
class EngineSettings:
    """Thresholds and windows for the runtime session engine."""

    temp_change_threshold: float = 0.1  # °C change that justifies an update post
    setpoint_change_threshold: float = 0.1  # °C setpoint change that justifies an update post
    min_post_interval_ms: int = 60_000  # heartbeat floor between update posts
    fan_tail_ms: int = 30_000  # blower purge tail after heat/cool stops
    session_timeout_ms: int = 4 * 3600 * 1000  # older running sessions are runaways
    min_runtime_seconds: int = 5
    max_runtime_seconds: int = 24 * 3600
    cool_on_delta: float = 0.3  # °C above cool setpoint to infer cooling
    heat_on_delta: float = 0.3  # °C below heat setpoint to infer heating
    trend_delta: float = 0.05  # °C change between readings that counts as a trend
    recency_window_ms: int = 120_000  # sticky fallback window
    stale_device_ms: int = 24 * 3600 * 1000  # idle devices unseen this long are purged

    @classmethod
    def from_dict(cls, data: dict) -> "EngineSettings":
        """Create from dictionary."""
        settings = cls(**_known_kwargs(cls, data))
        settings.validate()
        return settings

    def validate(self) -> None:
        for name in ("temp_change_threshold", "setpoint_change_threshold", "cool_on_delta",
                     "heat_on_delta", "trend_delta"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be >= 0")
        for name in ("min_post_interval_ms", "fan_tail_ms", "recency_window_ms"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be >= 0")
        if self.session_timeout_ms <= 0 or self.stale_device_ms <= 0:
            raise ConfigurationError("session_timeout_ms and stale_device_ms must be > 0")
        if not 0 <= self.min_runtime_seconds <= self.max_runtime_seconds:
            raise ConfigurationError(
                "Runtime bounds must satisfy 0 <= min_runtime_seconds <= max_runtime_seconds"
            )


@dataclass
class SinkSettings:
    """Outbound delivery targets and retry policy."""

    status_webhook_url: str = ""
    core_ingest_url: str = ""
    core_api_key: str = ""
    max_attempts: int = 3
    retry_delay_ms: int = 2000  # first backoff delay, doubled per attempt
    timeout_seconds: float = 10.0
    max_queue: int = 1000

    @classmethod
    def from_dict(cls, data: dict) -> "SinkSettings":
        """Create from dictionary."""
        settings = cls(**_known_kwargs(cls, data))
        if settings.max_attempts < 1:
            raise ConfigurationError("max_attempts must be >= 1")
        return settings


@dataclass
class ServiceSettings:
    """Process-level settings: concurrency, timers, storage and polling."""

    max_workers: int = 8  # devices processed concurrently
    event_timeout_seconds: float = 60.0
    sweep_interval_seconds: float = 10.0
    poll_interval_seconds: float = 300.0
    stale_poll_after_seconds: float = 1200.0
    database_path: str = ""  # empty = in-memory store
    sdm_project_id: str = ""
    sdm_access_token: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "ServiceSettings":
        """Create from dictionary."""
        settings = cls(**_known_kwargs(cls, data))
        if settings.max_workers < 1:
            raise ConfigurationError("max_workers must be >= 1")
        if settings.event_timeout_seconds <= 0:
            raise ConfigurationError("event_timeout_seconds must be > 0")
        return settings


@dataclass
class AppConfig:
    """Complete application configuration."""

    engine: EngineSettings = field(default_factory=EngineSettings)
    sinks: SinkSettings = field(default_factory=SinkSettings)
    service: ServiceSettings = field(default_factory=ServiceSettings)

    @classmethod
    def from_dict(cls, options: dict) -> "AppConfig":
        return cls(
            engine=EngineSettings.from_dict(options.get("engine", {})),
            sinks=SinkSettings.from_dict(options.get("sinks", {})),
            service=ServiceSettings.from_dict(options.get("service", {})),
        )


# Environment variable -> (section, key)
ENV_OVERRIDES = {
    "STATUS_WEBHOOK_URL": ("sinks", "status_webhook_url"),
    "CORE_INGEST_URL": ("sinks", "core_ingest_url"),
    "CORE_API_KEY": ("sinks", "core_api_key"),
    "INGEST_MAX_RETRY_ATTEMPTS": ("sinks", "max_attempts"),
    "INGEST_RETRY_DELAY_MS": ("sinks", "retry_delay_ms"),
    "FAN_TAIL_MS": ("engine", "fan_tail_ms"),
    "DATABASE_PATH": ("service", "database_path"),
    "GOOGLE_PROJECT_ID": ("service", "sdm_project_id"),
    "SDM_ACCESS_TOKEN": ("service", "sdm_access_token"),
}


def _coerce(raw: str, current):
    """Coerce an environment string to the type of the current default."""
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw


def load_config(options_path: str = OPTIONS_PATH, config_path: str | None = None) -> AppConfig:
    """Load configuration.

    Resolution order:
    1. Home Assistant options.json (production)
    2. config.yaml ``options:`` section (development)
    3. Environment variables (optionally from .env) override single values

    Raises:
        ConfigurationError: If a file cannot be parsed or a value is invalid
    """
    options: dict = {}

    if os.path.exists(options_path):
        try:
            with open(options_path) as f:
                options = json.load(f)
            logger.info(f"Loaded configuration from {options_path}")
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Failed to read {options_path}: {e}")
    elif config_path and os.path.exists(config_path):
        try:
            with open(config_path) as f:
                config = yaml.safe_load(f) or {}
            options = config.get("options", {}) or {}
            logger.info(f"Loaded configuration from {config_path}")
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to read {config_path}: {e}")
    else:
        logger.warning("No configuration file found, using defaults and environment")

    load_dotenv()
    defaults = AppConfig()
    for env_name, (section, key) in ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None or raw == "":
            continue
        current = getattr(getattr(defaults, section), key)
        try:
            options.setdefault(section, {})[key] = _coerce(raw, current)
        except ValueError:
            raise ConfigurationError(f"Invalid value for {env_name}: {raw!r}")

    return AppConfig.from_dict(options)
