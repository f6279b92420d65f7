"""
Centralized configuration for the enriched order read model.

Configuration is loaded from environment variables with sensible defaults.

Usage:
    from orderview.config import config

    ttl = config.cache.ttl_seconds
    interval = config.refresh.interval_seconds
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class DatabaseConfig:
    """DuckDB configuration."""

    path: Path = field(
        default_factory=lambda: Path(
            os.getenv("ORDERVIEW_DB_PATH", str(Path(__file__).parent.parent / "data" / "orders.duckdb"))
        )
    )
    query_timeout: float = field(
        default_factory=lambda: float(os.getenv("ORDERVIEW_QUERY_TIMEOUT", "30"))
    )
    # Live join is the most expensive query in the system
    fallback_timeout: float = field(
        default_factory=lambda: float(os.getenv("ORDERVIEW_FALLBACK_TIMEOUT", "10"))
    )
    rebuild_timeout: float = field(
        default_factory=lambda: float(os.getenv("ORDERVIEW_REBUILD_TIMEOUT", "120"))
    )


@dataclass(frozen=True)
class CacheConfig:
    """Redis cache configuration."""

    url: str = field(default_factory=lambda: os.getenv("REDIS_URL", "redis://localhost:6379/0"))
    enabled: bool = field(default_factory=lambda: _env_bool("CACHE_ENABLED", "true"))
    ttl_seconds: int = field(default_factory=lambda: int(os.getenv("CACHE_DEFAULT_TTL", "300")))
    key_prefix: str = "orderview"


@dataclass(frozen=True)
class RefreshConfig:
    """Projection refresh policy."""

    interval_seconds: int = field(
        default_factory=lambda: int(os.getenv("REFRESH_INTERVAL_SECONDS", "300"))
    )
    trigger_on_write: bool = field(default_factory=lambda: _env_bool("REFRESH_ON_WRITE", "true"))
    debounce_seconds: float = field(
        default_factory=lambda: float(os.getenv("REFRESH_DEBOUNCE_SECONDS", "5"))
    )
    queue_size: int = 1000
    # Dirty projections older than this are bypassed in favour of the live join
    max_staleness_seconds: float = field(
        default_factory=lambda: float(os.getenv("REFRESH_MAX_STALENESS_SECONDS", "600"))
    )
    lock_timeout_seconds: int = 300
    history_size: int = 50


@dataclass(frozen=True)
class WebConfig:
    """HTTP surface configuration."""

    host: str = field(default_factory=lambda: os.getenv("WEB_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: int(os.getenv("WEB_PORT", "8080")))
    default_page_size: int = 50
    default_stock_page_size: int = 30
    max_page_size: int = 100
    rate_limit_per_minute: int = 60


@dataclass(frozen=True)
class RoleConfig:
    """Role classes (mirrors the legacy role enum)."""

    privileged: List[str] = field(default_factory=lambda: ["admin", "supervisor"])
    frontline: List[str] = field(
        default_factory=lambda: ["fitter", "factory", "customsaddler", "user"]
    )


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""

    version: str = "1.0.0"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    web: WebConfig = field(default_factory=WebConfig)
    roles: RoleConfig = field(default_factory=RoleConfig)


# Global config instance
config = AppConfig()

VERSION = config.version


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def validate_config(cfg: AppConfig = config) -> None:
    """
    Validate configuration on startup.

    Raises:
        ConfigurationError: If any value is out of range
    """
    errors = []

    if cfg.cache.ttl_seconds <= 0:
        errors.append("CACHE_DEFAULT_TTL must be positive")

    if cfg.refresh.interval_seconds < 10:
        errors.append("REFRESH_INTERVAL_SECONDS must be at least 10")

    if cfg.refresh.debounce_seconds < 0:
        errors.append("REFRESH_DEBOUNCE_SECONDS must not be negative")

    if cfg.database.fallback_timeout <= 0:
        errors.append("ORDERVIEW_FALLBACK_TIMEOUT must be positive")

    overlap = set(cfg.roles.privileged) & set(cfg.roles.frontline)
    if overlap:
        errors.append(f"Roles cannot be both privileged and frontline: {sorted(overlap)}")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)
