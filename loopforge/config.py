"""Runtime settings loaded from the environment and an optional JSON file."""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Tuple, Type

from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from loopforge.constants import (
    CONTINUATION_DELAY_SECONDS,
    DEFAULT_AGENT_CLI,
    DEFAULT_MODEL,
    PUSH_TIMEOUT_SECONDS,
    RESTART_DELAY_SECONDS,
    REVIEW_TIMEOUT_SECONDS,
    STOP_GRACE_SECONDS,
)

logger = logging.getLogger(__name__)

ENV_PREFIX = "LOOPFORGE_"
SETTINGS_FILE_ENV = "LOOPFORGE_SETTINGS_FILE"
DEFAULT_SETTINGS_FILE = Path("data") / "settings.json"

# Keys used by the JSON settings file
FILE_KEYS = {
    "claudeCliPath": "agent_cli_path",
    "defaultModel": "default_model",
}


def settings_file_path() -> Path:
    return Path(os.environ.get(SETTINGS_FILE_ENV, DEFAULT_SETTINGS_FILE))


class SettingsFileSource(JsonConfigSettingsSource):
    """JSON settings file source.

    File keys are mapped onto field names and empty values are dropped. A
    malformed file is logged and contributes no values.
    """

    def _read_file(self, file_path: Path) -> Dict[str, Any]:
        try:
            raw = super()._read_file(file_path)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable settings file {file_path}: {e}")
            return {}

        if not isinstance(raw, dict):
            logger.warning(f"Ignoring settings file {file_path}: expected a JSON object")
            return {}
        return {
            FILE_KEYS.get(key, key): value
            for key, value in raw.items()
            if value not in (None, "")
        }


class Settings(BaseSettings):
    """Loop timing and agent defaults.

    Precedence: constructor arguments, then ``LOOPFORGE_*`` environment
    variables, then the JSON settings file, then defaults.
    """

    agent_cli_path: str = DEFAULT_AGENT_CLI
    default_model: str = DEFAULT_MODEL
    restart_delay_seconds: float = RESTART_DELAY_SECONDS
    continuation_delay_seconds: float = CONTINUATION_DELAY_SECONDS
    stop_grace_seconds: float = STOP_GRACE_SECONDS
    review_timeout_seconds: float = REVIEW_TIMEOUT_SECONDS
    push_timeout_seconds: float = PUSH_TIMEOUT_SECONDS
    event_buffer_size: int = 1000

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, extra="ignore")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            SettingsFileSource(settings_cls, json_file=settings_file_path()),
        )


def load_settings() -> Settings:
    """Build Settings from the environment and the JSON settings file."""
    settings = Settings()
    logger.debug(f"Loaded settings (file: {settings_file_path()})")
    return settings


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return load_settings()
