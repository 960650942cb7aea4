"""Configuration management for Skillshelf."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.skillshelf/config.yaml").expanduser()
DEFAULT_STATE_DB_PATH = Path("~/.skillshelf/state.db").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"


class ScriptsConfig(BaseModel):
    """Skill script runtime configuration."""

    interpreter: str = "node"
    # Required in packaged mode, where the interpreter is not used.
    host_executable: str = ""
    host_env: dict[str, str] = Field(default_factory=lambda: {"ELECTRON_RUN_AS_NODE": "1"})
    kill_grace_ms: int = 2000
    connectivity_timeout_ms: int = 20000


class SkillsConfig(BaseModel):
    """Skill roots, acquisition and watching configuration."""

    managed_dir: str = "~/.skillshelf/SKILLs"
    bundled_dir: str = ""
    external_dir: str = "~/.claude/skills"
    packaged: bool = False
    resources_dir: str = ""
    app_dir: str = ""
    temp_dir: str = ""
    watch_debounce_ms: int = 250
    clone_timeout_seconds: int = 300
    download_timeout_seconds: int = 60
    scripts: ScriptsConfig = Field(default_factory=ScriptsConfig)


class StoreConfig(BaseModel):
    """Enable-state store configuration."""

    path: str = str(DEFAULT_STATE_DB_PATH)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Skillshelf."""

    skills: SkillsConfig = Field(default_factory=SkillsConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="SKILLSHELF_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration, preferring env vars over YAML."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH

        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_managed_dir(self) -> Path:
        """Resolve the primary, user-writable skills root."""
        return Path(self.skills.managed_dir).expanduser().resolve()


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
