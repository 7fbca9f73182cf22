"""Configuration system for tokensession using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.tokensession] section (project-level)
3. ./tokensession.toml (project-level, explicit)
4. ~/.config/tokensession/config.toml (user-level, overrides project)
5. Environment variables (highest priority)

Environment variables use TOKENSESSION_ prefix with nested delimiter __.
Example: TOKENSESSION_SESSION__MODE, TOKENSESSION_MUTEX__MAX_RETRIES
"""

from __future__ import annotations

import os
import sys

from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


if TYPE_CHECKING:
    from pydantic.fields import FieldInfo


def _find_config_files() -> list[Path]:
    """Find all configuration files in order of precedence (lowest first)."""
    files = []

    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    explicit = Path("tokensession.toml")
    if explicit.exists():
        files.append(explicit)

    if sys.platform == "win32":
        user_config = Path(os.environ.get("APPDATA", "~")) / "tokensession" / "config.toml"
    else:
        user_config = Path("~/.config/tokensession/config.toml")
    user_config = user_config.expanduser()
    if user_config.exists():
        files.append(user_config)

    env_config = os.environ.get("TOKENSESSION_CONFIG_FILE")
    if env_config:
        env_path = Path(env_config)
        if env_path.exists():
            files.append(env_path)

    return files


def _load_toml_config() -> dict[str, Any]:
    """Load and merge all TOML configuration files."""
    merged: dict[str, Any] = {}

    for config_file in _find_config_files():
        try:
            data = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError):
            continue  # Unreadable config files are skipped

        if config_file.name == "pyproject.toml":
            data = data.get("tool", {}).get("tokensession", {})

        merged = _deep_merge(merged, data)

    return merged


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


class TomlSectionSource(PydanticBaseSettingsSource):
    """Settings source reading one section of the merged TOML files."""

    def __init__(self, settings_cls: type[BaseSettings], section: str) -> None:
        super().__init__(settings_cls)
        data = _load_toml_config().get(section, {})
        self.data: dict[str, Any] = data if isinstance(data, dict) else {}

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return self.data.get(field_name), field_name, False

    def __call__(self) -> dict[str, Any]:
        return {
            name: self.data[name] for name in self.settings_cls.model_fields if name in self.data
        }


class _SectionSettings(BaseSettings):
    """A configuration section: env beats TOML files, which beat defaults."""

    toml_section: ClassVar[str] = ""

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlSectionSource(settings_cls, cls.toml_section),
            file_secret_settings,
        )


# Field names that contain sensitive data and must be redacted in output.
_SENSITIVE_FIELDS: set[str] = {"redis_url"}

_REDACTED = "********"


class SessionSettings(_SectionSettings):
    """Auth session behaviour.

    Environment prefix: TOKENSESSION_SESSION__
    Example: TOKENSESSION_SESSION__MODE=json
    """

    toml_section = "session"
    model_config = SettingsConfigDict(
        env_prefix="TOKENSESSION_SESSION__",
        extra="ignore",
    )

    mode: Literal["cookie", "json", "session"] = Field(
        default="cookie",
        description="How refresh/logout carry the refresh token",
    )
    refresh_lead_ms: int = Field(
        default=30_000,
        ge=0,
        description="Milliseconds before expiry to refresh proactively",
    )
    auto_refresh: bool = Field(
        default=True,
        description="Arm a refresh timer whenever credentials are issued",
    )
    credentials_policy: Literal["include", "omit", "same-origin"] | None = Field(
        default=None,
        description="Ambient credential policy passed to the transport",
    )


class TransportSettings(_SectionSettings):
    """HTTP transport settings.

    Environment prefix: TOKENSESSION_TRANSPORT__
    """

    toml_section = "transport"
    model_config = SettingsConfigDict(
        env_prefix="TOKENSESSION_TRANSPORT__",
        extra="ignore",
    )

    base_url: str = "http://localhost:8055"
    timeout_seconds: float = Field(default=30.0, gt=0)


class StorageSettings(_SectionSettings):
    """Credential persistence settings.

    Environment prefix: TOKENSESSION_STORAGE__
    """

    toml_section = "storage"
    model_config = SettingsConfigDict(
        env_prefix="TOKENSESSION_STORAGE__",
        extra="ignore",
    )

    backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    prefix: str = "tokensession"
    credential_key: str = "auth_data"


class MutexSettings(_SectionSettings):
    """Cross-context refresh lock settings.

    Environment prefix: TOKENSESSION_MUTEX__
    """

    toml_section = "mutex"
    model_config = SettingsConfigDict(
        env_prefix="TOKENSESSION_MUTEX__",
        extra="ignore",
    )

    enabled: bool = Field(
        default=True,
        description="Guard refreshes with a lock when storage is shared",
    )
    key: str = "auth_refresh"
    lease_ms: int = Field(default=10_000, gt=0)
    poll_interval_ms: int = Field(default=50, gt=0)
    max_retries: int = Field(default=10, ge=1)
    raise_on_timeout: bool = Field(
        default=False,
        description="Raise MutexTimeout instead of skipping the refresh",
    )


class LogSettings(_SectionSettings):
    """Logging settings.

    Environment prefix: TOKENSESSION_LOG__
    Example: TOKENSESSION_LOG__LEVEL=DEBUG
    """

    toml_section = "log"
    model_config = SettingsConfigDict(
        env_prefix="TOKENSESSION_LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: str = "%(name)s - %(levelname)s - %(message)s"


class TokenSessionSettings(BaseSettings):
    """Main settings aggregating all configuration sections.

    Configuration sources (in order of precedence):
    1. Built-in defaults
    2. pyproject.toml [tool.tokensession] section
    3. ./tokensession.toml (project-level)
    4. ~/.config/tokensession/config.toml (user-level, overrides project)
    5. Environment variables (highest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="TOKENSESSION__",
        env_nested_delimiter="__",
        extra="ignore",
    )

    session: SessionSettings = Field(default_factory=SessionSettings)
    transport: TransportSettings = Field(default_factory=TransportSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    mutex: MutexSettings = Field(default_factory=MutexSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    def __init__(self, **data: Any) -> None:
        # Keyword data for a section is layered over its env and TOML values
        for name, value in list(data.items()):
            section_cls = _SECTIONS.get(name)
            if section_cls is not None and isinstance(value, dict):
                data[name] = section_cls(**value)
        super().__init__(**data)

    def show(self) -> str:
        """Format settings as a readable table with secrets redacted."""
        lines = ["tokensession Configuration", "=" * 60]
        sections = ["session", "transport", "storage", "mutex", "log"]
        all_data = self.model_dump(exclude=dict.fromkeys(sections, _SENSITIVE_FIELDS))

        for section_name in sections:
            lines.append(f"\n[{section_name}]")
            for field_name, field_value in all_data.get(section_name, {}).items():
                lines.append(f"  {field_name:20} = {field_value}")
            section_cls = type(getattr(self, section_name))
            lines.extend(
                f"  {rn:20} = {_REDACTED}"
                for rn in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys())
            )

        return "\n".join(lines)


_SECTIONS: dict[str, type[_SectionSettings]] = {
    "session": SessionSettings,
    "transport": TransportSettings,
    "storage": StorageSettings,
    "mutex": MutexSettings,
    "log": LogSettings,
}


@lru_cache(maxsize=1)
def get_settings() -> TokenSessionSettings:
    """Get the global settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return TokenSessionSettings()


def clear_settings() -> None:
    """Clear the cached settings to force reload."""
    get_settings.cache_clear()


def reload_settings() -> TokenSessionSettings:
    """Reload settings from all sources."""
    clear_settings()
    return get_settings()
