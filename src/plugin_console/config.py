"""
Plugin Console Configuration.

Settings are resolved in this order (highest priority first):
- explicit init arguments
- `global_config.toml` (or the file named by PLUGIN_CONSOLE_CONFIG)
- environment variables prefixed with PLUGIN_CONSOLE_ (nested with `__`)
- `.env` file
- secrets directory
"""
import os
from typing import Literal, Tuple, Callable, Type, Optional
from pathlib import Path

from pydantic import BaseModel, Field

from pydantic_settings import (
    BaseSettings,
    SettingsConfigDict,
    TomlConfigSettingsSource,
    InitSettingsSource,
    EnvSettingsSource,
    DotEnvSettingsSource,
    SecretsSettingsSource,
)

# Project root: src/plugin_console/config.py -> ../../..
BASE_DIR = Path(__file__).resolve().parent.parent.parent
TOML_PATH = Path(os.environ.get("PLUGIN_CONSOLE_CONFIG", BASE_DIR / "global_config.toml"))


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_to_file: bool = False
    log_file: str = "logs/plugin_console.log"
    rotation_size_mb: int = 10
    rotation_backup_count: int = 5
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class SQLiteConfig(BaseModel):
    type: Literal["sqlite3"] = "sqlite3"
    db_location: str = "plugin_console.sqlite3"
    in_memory: bool = False


class PluginsConfig(BaseModel):
    """Where the game server keeps its plugins and the registry describing them."""

    plugins_dir: Path = Path("plugins")
    registry_file: Path = Path("plugins.json")
    # JSON-lines record of every install attempt, successful or not
    install_log: Path = Path("data/install-attempts.log")


class DownloadConfig(BaseModel):
    """Network limits for downloads and marketplace lookups. Every call is bounded."""

    connect_timeout_seconds: float = 10.0
    read_timeout_seconds: float = 30.0
    total_timeout_seconds: float = 120.0
    lookup_timeout_seconds: float = 15.0
    max_size_mb: int = 100
    chunk_size: int = 64 * 1024
    staging_dir: Optional[Path] = None  # None = system temp dir
    github_token: Optional[str] = Field(default_factory=lambda: os.environ.get("GITHUB_TOKEN"))
    user_agent: str = "plugin-console/1.0"


class WorkerSettings(BaseModel):
    poll_interval_seconds: float = 2.0
    job_retention: int = 100


class HistoryConfig(BaseModel):
    retention: int = 100


class AppSettings(BaseSettings):
    """
    Main settings class that loads configuration from various sources.
    Uses defaults if the file or keys are missing.
    """

    logging: LoggingConfig = LoggingConfig()
    database: SQLiteConfig = Field(default_factory=SQLiteConfig)
    plugins: PluginsConfig = PluginsConfig()
    downloads: DownloadConfig = DownloadConfig()
    worker: WorkerSettings = WorkerSettings()
    history: HistoryConfig = HistoryConfig()

    model_config = SettingsConfigDict(
        env_prefix="PLUGIN_CONSOLE_",
        env_nested_delimiter="__",
        extra="forbid",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: InitSettingsSource,
        env_settings: EnvSettingsSource,
        dotenv_settings: DotEnvSettingsSource,
        file_secret_settings: SecretsSettingsSource,
    ) -> Tuple[Callable, ...]:
        """
        Define the priority order for loading settings sources.
        Our custom TOML file is inserted with high priority.
        """
        return (
            init_settings,
            TomlConfigSettingsSource(settings_cls, toml_file=TOML_PATH),
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )


# Singleton used throughout the app.
settings = AppSettings()
