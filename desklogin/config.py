"""Configuration system for desklogin using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.desklogin] section (project-level)
3. ./desklogin.toml (project-level, explicit)
4. ~/.config/desklogin/config.toml (user-level, overrides project)
5. Environment variables
6. Constructor arguments (highest priority)

Environment variables use DESKLOGIN_ prefix with nested delimiter __.
Example: DESKLOGIN_PROVIDER__CLIENT_ID, DESKLOGIN_LISTENER__PORT
"""

from __future__ import annotations

import os
import sys

from functools import lru_cache
from pathlib import Path
from typing import Any, ClassVar, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


def _find_config_files() -> list[Path]:
    """Find all configuration files in order of precedence (lowest first)."""
    files = []

    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    desklogin_toml = Path("desklogin.toml")
    if desklogin_toml.exists():
        files.append(desklogin_toml)

    if sys.platform == "win32":
        user_config = Path(os.environ.get("APPDATA", "~")) / "desklogin" / "config.toml"
    else:
        user_config = Path("~/.config/desklogin/config.toml")
    user_config = user_config.expanduser()
    if user_config.exists():
        files.append(user_config)

    env_config = os.environ.get("DESKLOGIN_CONFIG_FILE")
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
            data = data.get("tool", {}).get("desklogin", {})

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


def _env_values(section_cls: type[BaseSettings]) -> dict[str, Any]:
    """Values a section reads from its own environment variables."""
    from_env = section_cls()
    return from_env.model_dump(include=from_env.model_fields_set)


def _env_is_set(name: str) -> bool:
    lowered = name.lower()
    return any(key.lower() == lowered for key in os.environ)


# Field names that contain sensitive data and must be redacted in output.
_SENSITIVE_FIELDS: set[str] = {"client_secret"}

_REDACTED = "********"


class ProviderSettings(BaseSettings):
    """Identity provider and client registration.

    Environment prefix: DESKLOGIN_PROVIDER__
    Example: DESKLOGIN_PROVIDER__SERVER=login.example.com

    TOML section: [tool.desklogin.provider]
    """

    model_config = SettingsConfigDict(
        env_prefix="DESKLOGIN_PROVIDER__",
        extra="ignore",
    )

    server: str = Field(
        default="",
        description="Host name of the identity provider (e.g. login.example.com)",
    )
    authority_path: str = Field(
        default="/",
        description="Path of the OIDC authority on the provider host",
    )
    client_id: str = Field(
        default="",
        description="Client identifier registered with the provider",
    )
    client_secret: str = Field(
        default="",
        description="Client secret (empty for public clients with PKCE)",
    )
    scopes: str = Field(
        default="openid profile offline_access",
        description="Space-separated scopes to request",
    )
    load_profile: bool = Field(
        default=True,
        description="Merge userinfo endpoint claims into the login result",
    )

    @field_validator("authority_path")
    @classmethod
    def _normalize_authority_path(cls, v: str) -> str:
        """Ensure the authority path starts with a slash."""
        return v if v.startswith("/") else f"/{v}"

    @property
    def authority(self) -> str:
        """The HTTPS authority (issuer) URL built from server and path."""
        return f"https://{self.server}{self.authority_path}"

    @property
    def scope_list(self) -> list[str]:
        """Scopes as a list."""
        return self.scopes.split()


class ListenerSettings(BaseSettings):
    """Local redirect listener settings.

    Environment prefix: DESKLOGIN_LISTENER__
    Example: DESKLOGIN_LISTENER__PORT=18989

    The resulting redirect URI must match the one registered with the
    provider: ``http://<redirect_host>:<port><callback_path>``.
    """

    model_config = SettingsConfigDict(
        env_prefix="DESKLOGIN_LISTENER__",
        extra="ignore",
    )

    callback_path: str = "/signin-oidc/"
    port: int = Field(default=18989, ge=0, le=65535)
    redirect_host: str = "localhost"
    bind_address: str = "127.0.0.1"
    allow_unsolicited: bool = Field(
        default=False,
        description=(
            "Accept redirect responses not started by this process. "
            "Insecure, testing only."
        ),
    )
    app_name: str = Field(
        default="desklogin",
        description="Application name shown on the browser result page",
    )
    template_file: str = Field(
        default="",
        description="HTML file with {{title}} and {{body}} placeholders",
    )

    @property
    def redirect_uri(self) -> str:
        """The redirect URI for the configured port."""
        return f"http://{self.redirect_host}:{self.port}{self.callback_path}"


class RefreshSettings(BaseSettings):
    """Background access token renewal.

    Environment prefix: DESKLOGIN_REFRESH__
    """

    model_config = SettingsConfigDict(
        env_prefix="DESKLOGIN_REFRESH__",
        extra="ignore",
    )

    window_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Renew once the access token has less than this much validity left",
    )
    retry_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Delay between failed renewal attempts",
    )
    request_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Maximum seconds to wait for one renewal request",
    )


class LogSettings(BaseSettings):
    """Logging settings.

    Environment prefix: DESKLOGIN_LOG__
    Example: DESKLOGIN_LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="DESKLOGIN_LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: str = "%(name)s - %(levelname)s - %(message)s"


class DeskLoginSettings(BaseSettings):
    """Main settings aggregating all configuration sections.

    Environment prefix: DESKLOGIN__

    Configuration sources (in order of precedence):
    1. Built-in defaults
    2. pyproject.toml [tool.desklogin] section
    3. ./desklogin.toml (project-level)
    4. ~/.config/desklogin/config.toml (user-level, overrides project)
    5. Environment variables
    6. Constructor arguments (highest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="DESKLOGIN__",
        env_nested_delimiter="__",
        extra="ignore",
    )

    provider: ProviderSettings = Field(default_factory=ProviderSettings)
    listener: ListenerSettings = Field(default_factory=ListenerSettings)
    refresh: RefreshSettings = Field(default_factory=RefreshSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    pending_login_ttl: float = Field(
        default=600.0,
        gt=0,
        description="Seconds a started login may wait for its callback",
    )

    _sections: ClassVar[list[tuple[str, str, str]]] = [
        ("Identity Provider", "PROVIDER", "provider"),
        ("Redirect Listener", "LISTENER", "listener"),
        ("Token Refresh", "REFRESH", "refresh"),
        ("Logging", "LOG", "log"),
    ]

    def __init__(self, **data: Any) -> None:
        merged = _load_toml_config()
        # Environment variables outrank TOML values; explicit arguments outrank both.
        for attr, section_cls in self._section_classes().items():
            section_values = merged.get(attr)
            if not isinstance(section_values, dict):
                section_values = {}
            section_values = {**section_values, **_env_values(section_cls)}
            if section_values:
                merged[attr] = section_values
        for key in [k for k in merged if k not in self._section_classes()]:
            if _env_is_set(f"DESKLOGIN__{key}"):
                del merged[key]
        super().__init__(**_deep_merge(merged, data))

    @classmethod
    def _section_classes(cls) -> dict[str, type[BaseSettings]]:
        return {
            "provider": ProviderSettings,
            "listener": ListenerSettings,
            "refresh": RefreshSettings,
            "log": LogSettings,
        }

    def _section_data(self) -> dict[str, Any]:
        """Dump all sections with sensitive fields excluded."""
        return self.model_dump(
            exclude={attr: _SENSITIVE_FIELDS for _, _, attr in self._sections},
        )

    def _redacted_fields(self, attr_name: str) -> list[str]:
        section_cls = type(getattr(self, attr_name))
        return sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys())

    def to_toml(self) -> str:
        """Export settings as TOML string."""
        lines = ["# desklogin Configuration", "# Generated by: desklogin config --toml", ""]
        lines.append(f"pending_login_ttl = {self.pending_login_ttl}")
        lines.append("")

        all_data = self._section_data()

        for _, _, section_name in self._sections:
            lines.append(f"[{section_name}]")
            for field_name, field_value in all_data.get(section_name, {}).items():
                if isinstance(field_value, bool):
                    value_str = "true" if field_value else "false"
                elif isinstance(field_value, str):
                    value_str = f'"{field_value}"'
                else:
                    value_str = str(field_value)
                lines.append(f"{field_name} = {value_str}")
            lines.extend(f'{rn} = "{_REDACTED}"' for rn in self._redacted_fields(section_name))
            lines.append("")

        return "\n".join(lines)

    def to_env(self) -> str:
        """Export settings as shell environment variables."""
        lines = [
            "# desklogin Environment Variables",
            "# Generated by: desklogin config --env",
            "",
            f'export DESKLOGIN__PENDING_LOGIN_TTL="{self.pending_login_ttl}"',
        ]

        all_data = self._section_data()

        for _, env_prefix, attr_name in self._sections:
            for field_name, field_value in all_data.get(attr_name, {}).items():
                env_name = f"DESKLOGIN_{env_prefix}__{field_name.upper()}"
                if isinstance(field_value, bool):
                    value_str = "true" if field_value else "false"
                else:
                    value_str = str(field_value)
                lines.append(f'export {env_name}="{value_str}"')
            for redacted_name in self._redacted_fields(attr_name):
                env_name = f"DESKLOGIN_{env_prefix}__{redacted_name.upper()}"
                lines.append(f'export {env_name}="{_REDACTED}"')

        return "\n".join(lines)

    def show(self) -> str:
        """Format settings as a readable table."""
        lines = ["desklogin Configuration", "=" * 60, ""]
        lines.append(f"  {'pending_login_ttl':20} = {self.pending_login_ttl}")

        all_data = self._section_data()

        for display_name, _, attr_name in self._sections:
            lines.append(f"\n{display_name}")
            lines.append("-" * 40)
            for field_name, field_value in all_data.get(attr_name, {}).items():
                value_str = str(field_value)
                if len(value_str) > 50:
                    value_str = value_str[:47] + "..."
                lines.append(f"  {field_name:20} = {value_str}")
            lines.extend(f"  {rn:20} = {_REDACTED}" for rn in self._redacted_fields(attr_name))

        return "\n".join(lines)


@lru_cache(maxsize=1)
def get_settings() -> DeskLoginSettings:
    """Get the global settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return DeskLoginSettings()


def clear_settings() -> None:
    """Clear the cached settings to force reload."""
    get_settings.cache_clear()


def reload_settings() -> DeskLoginSettings:
    """Reload settings from all sources."""
    clear_settings()
    return get_settings()
