"""ChatItNow application configuration.

Settings are resolved in three layers, later layers winning:
  * built-in defaults declared on the pydantic models below
  * chatitnow.settings.yaml (path overridable via CHATITNOW_SETTINGS)
  * environment variables (PORT, GRACE_PERIOD_SECONDS, ...)

Every timing constant of the matching engine lives here. Deployments tune
them by orders of magnitude (seconds for tests, a day-long grace window
for some hosts), so none of them is hard-coded elsewhere.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("chatitnow.settings.yaml")
SETTINGS_PATH_ENV = "CHATITNOW_SETTINGS"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 3001
    log_level:       str       = "info"
    allowed_origins: List[str] = Field(default_factory=lambda: [
        "https://chatitnow.com",
        "https://www.chatitnow.com",
        "https://chatitnow-frontend.vercel.app",
        "http://localhost:5173",
    ])


class MatchingSettings(BaseModel):
    """Waiting-pool timing and topic rules."""
    # First scan happens only after this delay, even if a partner is waiting.
    phase1_delay_seconds:   float     = 3.0
    phase2_delay_seconds:   float     = 2.0
    generic_fields:         List[str] = Field(default_factory=lambda: ["", "Others"])
    default_display_name:   str       = "Stranger"
    block_duration_seconds: float     = 3600.0

    @field_validator("phase1_delay_seconds", "phase2_delay_seconds", "block_duration_seconds")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("durations must be >= 0")
        return value


class LifecycleSettings(BaseModel):
    """Reconnect grace window and idle eviction."""
    grace_period_seconds:        float = 180.0
    idle_timeout_seconds:        float = 600.0
    idle_sweep_interval_seconds: float = 60.0

    @field_validator("grace_period_seconds", "idle_timeout_seconds", "idle_sweep_interval_seconds")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("durations must be >= 0")
        return value


class AppConfig(BaseModel):
    server:    ServerSettings    = Field(default_factory=ServerSettings)
    matching:  MatchingSettings  = Field(default_factory=MatchingSettings)
    lifecycle: LifecycleSettings = Field(default_factory=LifecycleSettings)


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------

# env var -> (section, field)
_ENV_OVERRIDES = {
    "HOST":                        ("server", "host"),
    "PORT":                        ("server", "port"),
    "LOG_LEVEL":                   ("server", "log_level"),
    "ALLOWED_ORIGINS":             ("server", "allowed_origins"),
    "PHASE1_DELAY_SECONDS":        ("matching", "phase1_delay_seconds"),
    "PHASE2_DELAY_SECONDS":        ("matching", "phase2_delay_seconds"),
    "BLOCK_DURATION_SECONDS":      ("matching", "block_duration_seconds"),
    "GRACE_PERIOD_SECONDS":        ("lifecycle", "grace_period_seconds"),
    "IDLE_TIMEOUT_SECONDS":        ("lifecycle", "idle_timeout_seconds"),
    "IDLE_SWEEP_INTERVAL_SECONDS": ("lifecycle", "idle_sweep_interval_seconds"),
}


def _apply_env_overrides(data: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    """Overlay environment variables onto the raw settings dict.

    Values stay strings; pydantic coerces them into the declared types.
    """
    for env_name, (section, field) in _ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        value: Any = raw
        if field == "allowed_origins":
            value = [origin.strip() for origin in raw.split(",") if origin.strip()]
        data.setdefault(section, {})
        data[section][field] = value
        logger.debug("Config override from env: %s -> %s.%s", env_name, section, field)
    return data


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AppConfig:
    """Load settings from YAML and the environment into an *AppConfig*."""
    env = os.environ if environ is None else environ
    if settings_path is None:
        settings_path = Path(env.get(SETTINGS_PATH_ENV) or SETTINGS_FILE)

    data = _load_yaml(Path(settings_path))
    data = _apply_env_overrides(data, env)

    config = AppConfig(**data)
    logger.info(
        "Settings loaded (port=%s, phase1=%ss, phase2=%ss, grace=%ss, idle=%ss)",
        config.server.port,
        config.matching.phase1_delay_seconds,
        config.matching.phase2_delay_seconds,
        config.lifecycle.grace_period_seconds,
        config.lifecycle.idle_timeout_seconds,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Forget the cached config (tests and reloads)."""
    global _config
    _config = None
