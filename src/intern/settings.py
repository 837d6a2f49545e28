"""Environment overrides for INTERN using Pydantic Settings."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from intern.config import DEFAULT_CONFIG_PATH, InternConfig


class InternSettings(BaseSettings):
    """Values read from ``INTERN_*`` environment variables (and an optional ``.env``)."""

    model_config = SettingsConfigDict(
        env_prefix="INTERN_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    config: Path = Field(default=DEFAULT_CONFIG_PATH, description="Path of the JSON configuration file")
    log_level: str | None = Field(
        default=None,
        pattern=r"^(?i:debug|info|warning|error|critical)$",
        description="Overrides log.level from the configuration file",
    )
    index_path: str | None = Field(default=None, description="Overrides index_path from the configuration file")
    query_port: int | None = Field(default=None, ge=0, le=65535, description="Overrides query_port")

    def load_config(self, path: Path | None = None, *, allow_missing: bool = False) -> InternConfig:
        """Load the configuration file and apply the environment overrides.

        With ``allow_missing`` a missing file yields the defaults instead of an error.
        """
        config_path = Path(path or self.config).expanduser()
        if allow_missing and not config_path.exists():
            config = InternConfig()
        else:
            config = InternConfig.from_json_file(config_path)
        return self.apply(config)

    def apply(self, config: InternConfig) -> InternConfig:
        updates: dict = {}
        if self.index_path:
            updates["index_path"] = self.index_path
        if self.query_port is not None:
            updates["query_port"] = self.query_port
        if self.log_level:
            updates["log"] = config.log.model_copy(update={"level": self.log_level.lower()})
        return config.model_copy(update=updates) if updates else config
