"""Cache configuration management."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigurationError

# Option names as documented for operators, mapped to dataclass fields.
_OPTION_ALIASES = {
    "l1.enabled": "l1_enabled",
    "l1.maxSize": "l1_max_size",
    "l1.defaultTtlSeconds": "l1_default_ttl",
    "l1.sweepIntervalSeconds": "l1_sweep_interval",
    "l2.enabled": "l2_enabled",
    "l2.defaultTtlSeconds": "l2_default_ttl",
    "l2.keyPrefix": "l2_key_prefix",
    "l2.tagPrefix": "l2_tag_prefix",
    "l2.maxRetries": "l2_max_retries",
    "l2.retryDelayMs": "l2_retry_delay_ms",
    "l2.operationTimeoutSeconds": "l2_operation_timeout",
    "l2.redisUrl": "redis_url",
    "metrics.enabled": "metrics_enabled",
    "metrics.collectIntervalSeconds": "metrics_collect_interval",
    "metrics.windowSeconds": "metrics_window_seconds",
    "alerts.l1HitRateMin": "alert_l1_hit_rate_min",
    "alerts.avgResponseMsMax": "alert_avg_response_ms_max",
    "warmup.batchSize": "warmup_batch_size",
    "invalidation.queueEnabled": "invalidation_queue_enabled",
    "invalidation.batchSize": "invalidation_batch_size",
    "invalidation.timeoutSeconds": "invalidation_timeout",
    "cacheNullValues": "cache_null_values",
}


@dataclass
class CacheConfig:
    """Configuration for the two-tier caching engine."""

    # L1 Cache (In-Memory) Configuration
    l1_enabled: bool = True
    l1_max_size: int = 1000  # Maximum number of entries
    l1_default_ttl: int = 300  # 5 minutes
    l1_sweep_interval: float = 60.0  # Expiry sweep interval in seconds

    # L2 Cache (Redis) Configuration
    l2_enabled: bool = True
    l2_default_ttl: int = 1800  # 30 minutes
    l2_key_prefix: str = "cache:"
    l2_tag_prefix: str = "cache-tags:"
    l2_max_retries: int = 3
    l2_retry_delay_ms: int = 100
    l2_operation_timeout: float = 2.0

    # Redis Configuration
    redis_url: str = "redis://localhost:6379/0"
    redis_max_connections: int = 20
    redis_socket_timeout: float = 5.0
    redis_socket_connect_timeout: float = 5.0

    # Cache Strategy Configuration
    cache_null_values: bool = False

    # Metrics Configuration
    metrics_enabled: bool = True
    metrics_collect_interval: float = 60.0
    metrics_window_seconds: int = 86400  # 24 hours of snapshots
    alert_l1_hit_rate_min: float = 0.70
    alert_avg_response_ms_max: float = 100.0

    # Warmup Configuration
    warmup_batch_size: int = 10

    # Invalidation Configuration
    invalidation_queue_enabled: bool = False
    invalidation_batch_size: int = 100
    invalidation_timeout: float = 1.0

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Reject values the cache cannot operate with."""
        _require_min(self.l1_max_size, "l1_max_size", 1)
        _require_min(self.l1_default_ttl, "l1_default_ttl", 1)
        _require_min(self.l1_sweep_interval, "l1_sweep_interval", 0.001)
        _require_min(self.l2_default_ttl, "l2_default_ttl", 1)
        _require_min(self.l2_max_retries, "l2_max_retries", 0)
        _require_min(self.l2_retry_delay_ms, "l2_retry_delay_ms", 0)
        _require_min(self.l2_operation_timeout, "l2_operation_timeout", 0.001)
        _require_min(self.metrics_collect_interval, "metrics_collect_interval", 0.001)
        _require_min(self.metrics_window_seconds, "metrics_window_seconds", 1)
        _require_min(self.warmup_batch_size, "warmup_batch_size", 1)
        _require_min(self.invalidation_batch_size, "invalidation_batch_size", 1)
        if not 0.0 <= self.alert_l1_hit_rate_min <= 1.0:
            raise ConfigurationError(f"alert_l1_hit_rate_min must be within [0, 1], got {self.alert_l1_hit_rate_min}")
        if self.l2_key_prefix == self.l2_tag_prefix:
            raise ConfigurationError("l2_key_prefix and l2_tag_prefix must differ")

    @property
    def l2_retry_delay(self) -> float:
        """Retry delay in seconds."""
        return self.l2_retry_delay_ms / 1000.0

    @classmethod
    def from_environment(cls) -> CacheConfig:
        """Create cache configuration from environment variables."""
        return cls(
            # L1 Configuration
            l1_enabled=_env_bool("CACHE_L1_ENABLED", True),
            l1_max_size=int(os.getenv("CACHE_L1_MAX_SIZE", "1000")),
            l1_default_ttl=int(os.getenv("CACHE_L1_TTL", "300")),
            l1_sweep_interval=float(os.getenv("CACHE_L1_SWEEP_INTERVAL", "60")),
            # L2 Configuration
            l2_enabled=_env_bool("CACHE_L2_ENABLED", True),
            l2_default_ttl=int(os.getenv("CACHE_L2_TTL", "1800")),
            l2_key_prefix=os.getenv("CACHE_L2_KEY_PREFIX", "cache:"),
            l2_tag_prefix=os.getenv("CACHE_L2_TAG_PREFIX", "cache-tags:"),
            l2_max_retries=int(os.getenv("CACHE_L2_MAX_RETRIES", "3")),
            l2_retry_delay_ms=int(os.getenv("CACHE_L2_RETRY_DELAY_MS", "100")),
            l2_operation_timeout=float(os.getenv("CACHE_L2_TIMEOUT", "2.0")),
            # Redis Configuration
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            redis_max_connections=int(os.getenv("REDIS_MAX_CONNECTIONS", "20")),
            redis_socket_timeout=float(os.getenv("REDIS_SOCKET_TIMEOUT", "5.0")),
            redis_socket_connect_timeout=float(os.getenv("REDIS_SOCKET_CONNECT_TIMEOUT", "5.0")),
            cache_null_values=_env_bool("CACHE_NULL_VALUES", False),
            # Metrics Configuration
            metrics_enabled=_env_bool("CACHE_METRICS_ENABLED", True),
            metrics_collect_interval=float(os.getenv("CACHE_METRICS_COLLECT_INTERVAL", "60")),
            metrics_window_seconds=int(os.getenv("CACHE_METRICS_WINDOW_SECONDS", "86400")),
            alert_l1_hit_rate_min=float(os.getenv("CACHE_ALERT_L1_HIT_RATE_MIN", "0.70")),
            alert_avg_response_ms_max=float(os.getenv("CACHE_ALERT_AVG_RESPONSE_MS_MAX", "100")),
            # Warmup / Invalidation Configuration
            warmup_batch_size=int(os.getenv("CACHE_WARMUP_BATCH_SIZE", "10")),
            invalidation_queue_enabled=_env_bool("CACHE_INVALIDATION_QUEUE_ENABLED", False),
            invalidation_batch_size=int(os.getenv("CACHE_INVALIDATION_BATCH_SIZE", "100")),
            invalidation_timeout=float(os.getenv("CACHE_INVALIDATION_TIMEOUT", "1.0")),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheConfig:
        """Create configuration from a mapping.

        Accepts dataclass field names, dotted option names (``l1.maxSize``) or
        the same options nested (``{"l1": {"maxSize": 10}}``).
        """
        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {}
        for name, value in _flatten(data).items():
            field_name = _OPTION_ALIASES.get(name, name)
            if field_name not in known:
                raise ConfigurationError(f"Unknown cache option: {name}")
            values[field_name] = value
        return cls(**values)

    @classmethod
    def from_yaml(cls, path: str | Path) -> CacheConfig:
        """Load configuration from a YAML file, optionally under a top-level ``cache`` key."""
        config_path = Path(path)
        try:
            with config_path.open(encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load cache config from {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Cache config in {config_path} must be a mapping")
        if isinstance(data.get("cache"), dict):
            data = data["cache"]
        return cls.from_dict(data)


def _flatten(data: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in data.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(_flatten(value, f"{name}."))
        else:
            flat[name] = value
    return flat


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() == "true"


def _require_min(value: int | float, field_name: str, min_val: int | float) -> None:
    if value < min_val:
        raise ConfigurationError(f"Field '{field_name}' must be >= {min_val}, got {value}")
