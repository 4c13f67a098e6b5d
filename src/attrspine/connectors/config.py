"""Per-connector policy configuration."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from attrspine.core.settings import AttrSpineSettings


class ConnectorConfig(BaseModel):
    """
    Policy knobs of one DataConnector.

    Frozen: attribute assignment raises. A connector accepts a new config
    through ``DataConnector.configure()`` only before ``initialize()``.

    Attributes:
        no_result_is_error: Raise NoResultError instead of returning ``{}``
        fail_fast_initialize: A failed validation at initialize is fatal
        query_timeout: Seconds per query execution, ``None`` for unlimited
        results_cache_ttl: Seconds a cached result lives, ``None`` for the cache default
        revalidate_when_degraded: Re-run validation on retrieval while degraded

    Example:
        >>> config = ConnectorConfig(no_result_is_error=True, query_timeout=2.0)
        >>> config.model_copy(update={"fail_fast_initialize": True}).fail_fast_initialize
        True
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    no_result_is_error: bool = False
    fail_fast_initialize: bool = False
    query_timeout: float | None = Field(default=None, gt=0)
    results_cache_ttl: int | None = Field(default=None, ge=1)
    revalidate_when_degraded: bool = True

    @classmethod
    def from_settings(cls, settings: AttrSpineSettings) -> ConnectorConfig:
        """Derive connector policy from process settings."""
        return cls(
            no_result_is_error=settings.no_result_is_error,
            fail_fast_initialize=settings.fail_fast_initialize,
            query_timeout=settings.query_timeout,
            results_cache_ttl=settings.results_cache_ttl,
        )


__all__ = ["ConnectorConfig"]
