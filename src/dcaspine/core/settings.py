"""
Centralized settings for the DCA scheduler.

Manifesto:
    Lease durations, transaction timeouts and the tick cadence are coupled:
    a per-plan lease shorter than a transaction, or a scan lease longer
    than the tick, silently breaks mutual exclusion. ``DcaSettings``
    validates those relationships once, at start-up, so a bad deployment
    fails loudly instead of double-executing plans.

All fields can be set via ``DCA_*`` environment variables (e.g.
``DCA_REDIS_URL=redis://cache:6379/0``) or a ``.env`` file.

Tags:
    dcaspine, configuration, settings, pydantic, caching, validation

Doc-Types:
    api-reference
"""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import InvalidConfigError

LOCK_BACKENDS = ("redis", "database")
CACHE_BACKENDS = ("redis", "memory")
ISOLATION_LEVELS = ("SERIALIZABLE", "REPEATABLE READ", "READ COMMITTED")


class DcaSettings(BaseSettings):
    """DCA scheduler configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DCA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Identity ─────────────────────────────────────────────────
    service_name: str = Field(default="dca-spine")
    instance_id: str | None = Field(default=None, description="Defaults to a random uuid per process")

    # ── Database ─────────────────────────────────────────────────
    database_url: str = Field(default="sqlite:///dca.db")
    database_echo: bool = Field(default=False)
    database_pool_size: int = Field(default=5)

    # ── Transactions ─────────────────────────────────────────────
    transaction_isolation_level: str = Field(default="SERIALIZABLE")
    transaction_max_wait_seconds: float = Field(default=10.0)
    transaction_timeout_seconds: float = Field(default=30.0)

    # ── Redis / locks ────────────────────────────────────────────
    redis_url: str = Field(default="redis://localhost:6379/0")
    lock_backend: str = Field(default="redis")
    lock_prefix: str = Field(default="lock:")
    execution_lock_ttl_seconds: int = Field(default=45)

    # ── Scheduler ────────────────────────────────────────────────
    tick_interval_seconds: int = Field(default=60)
    scan_lock_margin_seconds: int = Field(default=5)
    scan_batch_limit: int = Field(default=100)

    # ── Execution ────────────────────────────────────────────────
    deposit_decimals: int = Field(default=6, description="Smallest-unit exponent of the deposit asset")
    amount_out_decimals: int = Field(default=8)
    retry_cooldown_seconds: int = Field(default=30)
    max_attempts_per_execution: int = Field(default=10, description="0 disables pausing")

    # ── Price oracle ─────────────────────────────────────────────
    price_api_url: str = Field(default="https://api.coingecko.com/api/v3")
    price_api_key: str = Field(default="")
    cache_backend: str = Field(default="redis", description="redis or memory (per process)")
    price_cache_ttl_seconds: int = Field(default=60)
    price_timeout_seconds: float = Field(default=10.0)
    price_coin_ids: dict[str, str] = Field(default_factory=dict)
    price_default_coin_id: str = Field(default="bitcoin")
    price_vs_currency: str = Field(default="usd")

    # ── Notifications ────────────────────────────────────────────
    email_service_url: str = Field(default="")
    email_service_api_key: str = Field(default="")
    email_timeout_seconds: float = Field(default=15.0)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    @model_validator(mode="after")
    def _validate_leases(self) -> DcaSettings:
        """Reject lease/timeout combinations that would break mutual exclusion."""
        if self.lock_backend not in LOCK_BACKENDS:
            raise InvalidConfigError("lock_backend", self.lock_backend)
        if self.cache_backend not in CACHE_BACKENDS:
            raise InvalidConfigError("cache_backend", self.cache_backend)
        if self.transaction_isolation_level.upper() not in ISOLATION_LEVELS:
            raise InvalidConfigError("transaction_isolation_level", self.transaction_isolation_level)
        if self.tick_interval_seconds <= 0:
            raise InvalidConfigError("tick_interval_seconds", self.tick_interval_seconds)
        if self.scan_lock_ttl_seconds <= 0:
            raise InvalidConfigError(
                "scan_lock_margin_seconds",
                self.scan_lock_margin_seconds,
                "Scan lock lease (tick interval minus margin) must be positive",
            )
        if self.execution_lock_ttl_seconds <= self.transaction_timeout_seconds:
            raise InvalidConfigError(
                "execution_lock_ttl_seconds",
                self.execution_lock_ttl_seconds,
                "Execution lock lease must outlast one transaction timeout",
            )
        if self.scan_batch_limit <= 0:
            raise InvalidConfigError("scan_batch_limit", self.scan_batch_limit)
        return self

    # ── Derived properties ───────────────────────────────────────

    @property
    def scan_lock_ttl_seconds(self) -> int:
        return self.tick_interval_seconds - self.scan_lock_margin_seconds

    @property
    def price_stale_ttl_seconds(self) -> int:
        return self.price_cache_ttl_seconds * 60

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


_settings_cache: dict[str, DcaSettings] = {}


def get_settings(*, _force_reload: bool = False) -> DcaSettings:
    """Load, validate, and cache a :class:`DcaSettings` instance."""
    if not _force_reload and "default" in _settings_cache:
        return _settings_cache["default"]
    settings = DcaSettings()
    _settings_cache["default"] = settings
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()
