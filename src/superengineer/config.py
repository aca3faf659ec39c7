"""Configuration management for Superengineer.

Settings come from ``~/.superengineer/config.json`` when present, otherwise
from ``SUPERENGINEER_*`` environment variables and the defaults below.
"""

import json
import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

SUPPORTED_MODELS: tuple[str, ...] = (
    "claude-opus-4-6",
    "claude-sonnet-4-5-20250929",
    "claude-haiku-4-5-20251001",
)

DEFAULT_MODEL = "claude-opus-4-6"

MODEL_DISPLAY_NAMES: dict[str, str] = {
    "claude-opus-4-6": "Claude Opus 4.6",
    "claude-sonnet-4-5-20250929": "Claude Sonnet 4.5",
    "claude-haiku-4-5-20251001": "Claude Haiku 4.5",
}


def is_valid_model(model: str) -> bool:
    return model in SUPPORTED_MODELS


def get_model_display_name(model: str) -> str:
    return MODEL_DISPLAY_NAMES.get(model, model)


def get_config_dir() -> Path:
    """Get the config directory, creating if needed."""
    config_dir = Path.home() / ".superengineer"
    config_dir.mkdir(exist_ok=True)
    return config_dir


def get_config_path() -> Path:
    """Get the config file path."""
    return get_config_dir() / "config.json"


def get_pid_file_path() -> Path:
    """File the process tracker persists running agent PIDs to."""
    return get_config_dir() / "agent_pids.json"


class Settings(BaseSettings):
    """Superengineer settings with env and file support."""

    model_config = SettingsConfigDict(
        env_prefix="SUPERENGINEER_",
        env_file=".env",
        extra="ignore",
    )

    # Subprocess
    claude_command: str = Field(default="claude", description="Agent CLI executable")
    default_model: str | None = Field(
        default=None, description="Model passed via --model (None lets the CLI decide)"
    )
    default_mode: str = Field(
        default="interactive", description="Agent mode: 'interactive' or 'autonomous'"
    )
    chrome_enabled: bool = Field(default=False, description="Pass --chrome to the CLI")

    # Permissions
    skip_permissions: bool = Field(
        default=False, description="Run with --dangerously-skip-permissions"
    )
    permission_mode: str | None = Field(
        default="acceptEdits", description="Permission mode: 'acceptEdits' or 'plan'"
    )

    # Limits
    max_context_tokens: int = Field(
        default=200_000, description="Context window size used for percent-used"
    )
    stop_timeout: float = Field(
        default=5.0, description="Seconds to wait for SIGTERM before SIGKILL"
    )

    # Misc
    mcp_temp_dir_name: str = Field(
        default="superengineer-mcp", description="Temp sub-directory for MCP config files"
    )
    log_level: str = Field(default="INFO", description="Log level")

    def save(self) -> None:
        """Save settings to the config file."""
        config_path = get_config_path()
        config_path.write_text(json.dumps(self.model_dump(), indent=2))

    @classmethod
    def load(cls) -> "Settings":
        """Load settings from config file, falling back to env/defaults."""
        config_path = get_config_path()
        if config_path.exists():
            try:
                data = json.loads(config_path.read_text())
                return cls(**data)
            except (json.JSONDecodeError, ValueError) as e:
                logger.warning("Ignoring unreadable config %s: %s", config_path, e)
        return cls()


@lru_cache
def _cached_settings() -> Settings:
    return Settings.load()


def get_settings(force_reload: bool = False) -> Settings:
    """Get cached settings instance."""
    if force_reload:
        _cached_settings.cache_clear()
    return _cached_settings()
