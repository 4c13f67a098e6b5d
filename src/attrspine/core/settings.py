"""
Centralized settings for attribute-spine.

Manifesto:
    Connector wiring needs the same handful of values everywhere: where the
    directory lives, which database to query, which templates to render.
    One validated, cached settings object reads them from ``ATTRSPINE_*``
    environment variables and ``.env`` files, so the factory and the CLI
    never parse the environment themselves.

    - **Pydantic validation:** Type-checked at startup, not at first query
    - **Environment-driven:** ``ATTRSPINE_LDAP_URL=ldap://dir:389``
    - **Secrets stay secret:** bind password is a ``SecretStr``

Examples:
    >>> from attrspine.core.settings import get_settings
    >>> settings = get_settings()
    >>> settings.ldap_pool_size
    4

Tags:
    configuration, settings, pydantic, environment, attribute-spine
"""

from __future__ import annotations

import json
from typing import Annotated

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class AttrSpineSettings(BaseSettings):
    """attribute-spine process configuration.

    All fields can be set via ``ATTRSPINE_*`` environment variables (e.g.
    ``ATTRSPINE_DATABASE_URL=postgresql+psycopg://idp@db/people``) or a
    ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="ATTRSPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console", description="console or json")

    # ── Connector policy defaults ────────────────────────────────
    connector_id: str | None = Field(default=None, description="Overrides the per-backend default id")
    no_result_is_error: bool = Field(default=False)
    fail_fast_initialize: bool = Field(default=False)
    query_timeout: float | None = Field(default=5.0, gt=0)
    results_cache_ttl: int | None = Field(default=None, ge=1)
    results_cache_size: int = Field(default=500, ge=1)
    redis_cache_url: str | None = Field(default=None, description="Use Redis for the results cache")

    # ── Directory (LDAP) ─────────────────────────────────────────
    ldap_url: str = Field(default="ldap://localhost:389")
    ldap_bind_dn: str | None = Field(default=None)
    ldap_bind_password: SecretStr | None = Field(default=None)
    ldap_use_starttls: bool = Field(default=False)
    ldap_base_dn: str = Field(default="")
    ldap_filter_template: str = Field(default="(uid={principal})")
    ldap_return_attributes: Annotated[list[str], NoDecode] = Field(default_factory=list)
    ldap_lowercase_attribute_names: bool = Field(default=False)
    ldap_pool_size: int = Field(default=4, ge=1)
    ldap_acquire_timeout: float = Field(default=5.0, gt=0)
    ldap_connect_timeout: float = Field(default=5.0, gt=0)

    # ── Relational (SQL) ─────────────────────────────────────────
    database_url: str = Field(default="sqlite:///attrspine.db")
    database_pool_size: int = Field(default=5, ge=1)
    database_max_overflow: int = Field(default=10, ge=0)
    database_pool_timeout: float = Field(default=5.0, gt=0)
    database_echo: bool = Field(default=False)
    sql_template: str = Field(default="SELECT * FROM people WHERE uid = :principal")

    # ── Storage service ──────────────────────────────────────────
    storage_url: str = Field(default="memory://", description="memory:// or redis://host:port/db")
    storage_context_template: str = Field(default="attributes")
    storage_key_template: str = Field(default="{principal}")

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("console", "json"):
            raise ValueError("log_format must be 'console' or 'json'")
        return value

    @field_validator("ldap_return_attributes", mode="before")
    @classmethod
    def _split_attributes(cls, value: object) -> object:
        # ATTRSPINE_LDAP_RETURN_ATTRIBUTES=uid,mail,cn or a JSON list
        if not isinstance(value, str):
            return value
        if value.lstrip().startswith("["):
            return json.loads(value)
        return [part.strip() for part in value.split(",") if part.strip()]


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, AttrSpineSettings] = {}


def get_settings(*, _force_reload: bool = False) -> AttrSpineSettings:
    """Load, validate, and cache an :class:`AttrSpineSettings` instance."""
    if not _force_reload and "default" in _settings_cache:
        return _settings_cache["default"]
    settings = AttrSpineSettings()
    _settings_cache["default"] = settings
    return settings


def reset_settings() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()


__all__ = ["AttrSpineSettings", "get_settings", "reset_settings"]
