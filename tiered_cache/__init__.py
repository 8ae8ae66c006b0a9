"""Two-tier caching engine: in-process L1 backed by a shared Redis L2."""

from .cache_config import CacheConfig
from .cache_coordinator import CacheCoordinator
from .cache_metrics import Alert, MetricsCollector, MetricsSnapshot, TierStats
from .errors import (
    CacheError,
    CapacityExceeded,
    ConfigurationError,
    ErrorCode,
    PartialInvalidationFailure,
    SerializationError,
    StoreUnavailable,
)
from .eviction import EvictionManager
from .invalidation import InvalidationBroker, InvalidationResult
from .l1_cache import CacheEntry, L1Cache
from .l2_cache import L2Cache, NoOpL2Cache, RedisL2Cache
from .tag_index import TagIndex
from .warmup import WarmupReport, WarmupScheduler

__version__ = "0.1.0"

__all__ = [
    "Alert",
    "CacheConfig",
    "CacheCoordinator",
    "CacheEntry",
    "CacheError",
    "CapacityExceeded",
    "ConfigurationError",
    "ErrorCode",
    "EvictionManager",
    "InvalidationBroker",
    "InvalidationResult",
    "L1Cache",
    "L2Cache",
    "MetricsCollector",
    "MetricsSnapshot",
    "NoOpL2Cache",
    "PartialInvalidationFailure",
    "RedisL2Cache",
    "SerializationError",
    "StoreUnavailable",
    "TagIndex",
    "TierStats",
    "WarmupReport",
    "WarmupScheduler",
]
