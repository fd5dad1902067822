"""Settings and configuration management."""

import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import ClassVar

from pydantic import Field, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

logger = logging.getLogger(__name__)

# Regex for ${ENV_VAR} placeholders in YAML values
_ENV_VAR_PLACEHOLDER_RE = re.compile(r"^\$\{[A-Z_][A-Z0-9_]*\}$")

# YAML config search paths (checked in order, first found wins)
_YAML_SEARCH_PATHS = [
    Path("appforge.yaml"),
    Path("config/appforge.yaml"),
    Path.home() / ".config" / "appforge" / "appforge.yaml",
]


def _find_yaml_config() -> Path | None:
    """Find the first appforge.yaml in search paths."""
    for path in _YAML_SEARCH_PATHS:
        if path.is_file():
            return path
    return None


class Settings(BaseSettings):
    """Application settings.

    Priority chain: init kwargs > env vars > .env file > appforge.yaml > defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Class-level cache for the resolved YAML path (not a pydantic field)
    _yaml_path: ClassVar[Path | None] = None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customise settings source priority.

        Priority: init kwargs > env vars > .env file > appforge.yaml > file secrets > defaults
        """
        sources: list[PydanticBaseSettingsSource] = [
            init_settings,
            env_settings,
            dotenv_settings,
        ]

        yaml_path = _find_yaml_config()
        cls._yaml_path = yaml_path
        if yaml_path:
            sources.append(
                YamlConfigSettingsSource(
                    settings_cls,
                    yaml_file=yaml_path,
                    yaml_file_encoding="utf-8",
                )
            )

        sources.append(file_secret_settings)
        return tuple(sources)

    @model_validator(mode="before")
    @classmethod
    def _resolve_env_var_placeholders(cls, data: dict) -> dict:
        """Drop unresolved ${VAR} placeholders so the field default applies.

        YAML files may contain ${ENV_VAR} syntax for secrets. When the env var
        is not set, the raw placeholder string would pollute the field value.
        """
        if not isinstance(data, dict):
            return data
        return {
            key: value
            for key, value in data.items()
            if not (isinstance(value, str) and _ENV_VAR_PLACEHOLDER_RE.match(value))
        }

    # Application Settings
    app_name: str = Field("AppForge", description="Application name")
    log_level: str = Field("INFO", description="Logging level")
    log_format: str = Field("text", description="Log format: 'text' or 'json'")
    sanitize_logs: bool = Field(True, description="Sanitize sensitive data from logs")

    # Paths
    apps_dir: Path = Field(Path("tmp"), description="Root directory of live app directories")
    backups_dir: Path = Field(
        Path(".appforge/backups"),
        description="Snapshot root, kept outside the live app directories",
    )
    ledger_path: Path = Field(Path("apps.json"), description="Persisted version ledger file")

    # Ports
    base_port: int = Field(3100, ge=1024, le=65535, description="First external port handed out")
    temp_port_offset: int = Field(
        1000, ge=1, description="Offset from the production port used for pre-swap validation"
    )
    container_port: int = Field(3000, description="Port the app listens on inside its container")

    # Container engine
    docker_binary: str = Field("docker", description="Container engine CLI executable")
    optimized_builds: bool = Field(
        True, description="Use BuildKit multi-stage builds with cache sources"
    )
    build_timeout_seconds: float = Field(300.0, gt=0, description="Ceiling per image build")
    engine_timeout_seconds: float = Field(
        60.0, gt=0, description="Ceiling for run/stop/rm/inspect/logs engine calls"
    )
    diagnostics_max_chars: int = Field(
        4000, ge=200, description="Size bound for captured engine diagnostics"
    )

    # Health checks
    health_timeout_seconds: float = Field(15.0, gt=0, description="Health-check time budget")
    health_startup_grace_seconds: float = Field(
        2.0, ge=0, description="Wait before the first readiness request (inside the budget)"
    )
    health_poll_interval_seconds: float = Field(
        0.5, gt=0, description="Delay between readiness requests"
    )
    health_host: str = Field("localhost", description="Host used for readiness requests")

    # Orchestration
    max_build_attempts: int = Field(3, ge=1, description="Bounded build attempts per cycle")
    backup_retention: int = Field(5, ge=1, description="Snapshots kept per app")
    auto_prune_backups: bool = Field(
        True, description="Apply backup retention after each successful commit"
    )

    # Content-generation collaborator
    cerebras_api_key: str | None = Field(None, description="API key for the generation endpoint")
    llm_api_url: str = Field(
        "https://api.cerebras.ai/v1/chat/completions",
        description="OpenAI-compatible chat completions endpoint",
    )
    llm_model: str = Field("qwen-3-coder-480b", description="Model used for generation")
    llm_timeout_seconds: float = Field(120.0, gt=0, description="Generation request timeout")
    llm_max_tokens: int = Field(16000, description="Max tokens for file generation")

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        if value.lower() not in ("text", "json"):
            raise ValueError("log_format must be 'text' or 'json'")
        return value.lower()

    @property
    def has_generator_credentials(self) -> bool:
        """Check whether the generation collaborator can be called."""
        return bool(self.cerebras_api_key)

    def app_dir(self, app_name: str) -> Path:
        """Live directory for an app."""
        return self.apps_dir / app_name


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Alias for CLI and other consumers that expect get_config()
get_config = get_settings
