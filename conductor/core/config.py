"""Orchestrator configuration.

Settings live in a YAML file (default ~/.conductor/config.yaml, or the path
in CONDUCTOR_CONFIG). Precedence: file values > defaults, and provider API
keys left empty in the file are filled from GROQ_API_KEY / OPENAI_API_KEY.
The coordinator reads the configuration once per session start.
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from conductor.core.models import DecisionProvider, SafetyLevel

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "CONDUCTOR_CONFIG"
API_KEY_ENV_VARS = {
    DecisionProvider.GROQ: "GROQ_API_KEY",
    DecisionProvider.OPENAI: "OPENAI_API_KEY",
}


class ConfigError(Exception):
    """Configuration file is unreadable or holds invalid values."""

    pass


class OrchestratorConfig(BaseModel):
    """Persisted orchestrator settings."""

    groq_api_key: str = Field(default="", repr=False)
    groq_model: str = "llama-3.3-70b-versatile"
    openai_api_key: str = Field(default="", repr=False)
    openai_model: str = "gpt-4o-mini"
    default_provider: DecisionProvider = DecisionProvider.GROQ
    idle_timeout: float = Field(default=5.0, gt=0)  # seconds
    max_duration: float = Field(default=30.0, ge=0)  # minutes, 0 = unlimited
    default_safety_level: SafetyLevel = SafetyLevel.SAFE
    cli_provider: str = "claude"
    max_concurrent_calls: int = Field(default=3, ge=1)
    call_stagger_ms: int = Field(default=100, ge=0)

    def api_key_for(self, provider: DecisionProvider) -> str:
        if provider == DecisionProvider.OPENAI:
            return self.openai_api_key
        return self.groq_api_key

    def model_for(self, provider: DecisionProvider) -> str:
        if provider == DecisionProvider.OPENAI:
            return self.openai_model
        return self.groq_model


def default_home() -> Path:
    return Path.home() / ".conductor"


def default_config_path() -> Path:
    override = os.getenv(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return default_home() / "config.yaml"


def default_history_path() -> Path:
    """History database lives next to the config file."""
    return default_config_path().parent / "history.db"


def _apply_env_keys(config: OrchestratorConfig) -> OrchestratorConfig:
    """Fill empty provider keys from the environment."""
    updates: dict[str, str] = {}
    for provider, env_key in API_KEY_ENV_VARS.items():
        field_name = f"{provider.value}_api_key"
        value = os.getenv(env_key)
        if value and not getattr(config, field_name):
            updates[field_name] = value
    if updates:
        return config.model_copy(update=updates)
    return config


class ConfigStore:
    """Load and save OrchestratorConfig as YAML."""

    def __init__(self, path: Path | None = None):
        self.path = path or default_config_path()

    def _read_file(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {self.path}: {e}")
        except OSError as e:
            raise ConfigError(f"Cannot read {self.path}: {e}")

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config must be a mapping, got {type(data).__name__} in {self.path}")
        return data

    def load(self) -> OrchestratorConfig:
        """Load config with precedence: file > defaults, env fills empty keys.

        Raises:
            ConfigError: If the file is malformed or holds invalid values
        """
        data = self._read_file()
        unknown = sorted(set(data) - set(OrchestratorConfig.model_fields))
        if unknown:
            logger.warning(f"Ignoring unknown config keys in {self.path}: {', '.join(unknown)}")
            data = {k: v for k, v in data.items() if k not in unknown}
        try:
            config = OrchestratorConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration in {self.path}: {e}")
        return _apply_env_keys(config)

    def save(self, config: OrchestratorConfig) -> None:
        """Write config to disk, creating the parent directory."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = config.model_dump(mode="json")
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, sort_keys=False)
        logger.debug(f"Saved config to {self.path}")

    def set(self, key: str, value: str) -> OrchestratorConfig:
        """Update one key in the file and return the resulting config.

        Raises:
            ConfigError: If key is unknown or value is invalid for it
        """
        if key not in OrchestratorConfig.model_fields:
            raise ConfigError(f"Unknown config key '{key}'")
        data = self._read_file()
        data[key] = value
        try:
            config = OrchestratorConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid value for '{key}': {e}")
        self.save(config)
        return _apply_env_keys(config)
