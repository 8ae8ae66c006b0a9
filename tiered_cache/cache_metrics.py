"""Cache metrics collection, rolling-window trends and threshold alerting."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from .logging_utils import get_logger
from .scheduling import PeriodicTask

logger = logging.getLogger(__name__)
_events = get_logger("tiered_cache.alerts")

TIERS = ("l1", "l2")


@dataclass
class TierStats:
    """Counters for one tier over one collection cycle."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    errors: int = 0

    @property
    def requests(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        return self.hits / self.requests if self.requests else 0.0

    @property
    def miss_rate(self) -> float:
        return self.misses / self.requests if self.requests else 0.0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["hit_rate"] = self.hit_rate
        data["miss_rate"] = self.miss_rate
        return data


@dataclass
class MetricsSnapshot:
    """Point-in-time view of the counters of one cycle."""

    timestamp: float
    tiers: dict[str, TierStats]
    avg_response_ms: float = 0.0
    response_samples: int = 0

    @property
    def requests(self) -> int:
        # Every lookup consults L1 first; without L1 traffic, L2 sees the lookups.
        l1 = self.tiers["l1"]
        return l1.requests if l1.requests else self.tiers["l2"].requests

    @property
    def hit_rate(self) -> float:
        hits = self.tiers["l1"].hits + self.tiers["l2"].hits
        return hits / self.requests if self.requests else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "tiers": {name: stats.to_dict() for name, stats in self.tiers.items()},
            "requests": self.requests,
            "hit_rate": self.hit_rate,
            "avg_response_ms": self.avg_response_ms,
            "response_samples": self.response_samples,
        }


@dataclass
class Alert:
    """Threshold breach found during ``collect()``."""

    name: str
    message: str
    value: float
    threshold: float
    timestamp: float = field(default_factory=time.time)
    severity: str = "warning"


AlertHandler = Callable[[Alert], None]


class MetricsCollector:
    """Per-tier hit/miss telemetry with a bounded history of snapshots."""

    def __init__(
        self,
        collect_interval: float = 60.0,
        window_seconds: int = 86400,
        l1_hit_rate_min: float = 0.70,
        avg_response_ms_max: float = 100.0,
        namespace: str = "cache",
        registry: CollectorRegistry | None = None,
    ):
        self.collect_interval = collect_interval
        self.window_seconds = window_seconds
        self.l1_hit_rate_min = l1_hit_rate_min
        self.avg_response_ms_max = avg_response_ms_max

        self._lock = threading.Lock()
        self._tiers = {tier: TierStats() for tier in TIERS}
        self._response_total = 0.0
        self._response_samples = 0

        self._history: deque[MetricsSnapshot] = deque(maxlen=max(1, int(window_seconds // collect_interval)))
        self._alerts: deque[Alert] = deque(maxlen=100)
        self._alert_handlers: list[AlertHandler] = []
        self._task = PeriodicTask("cache-metrics-collect", collect_interval, self.collect)

        # Prometheus exposition, one registry per collector
        self.registry = registry or CollectorRegistry()
        self.hits_total = Counter(f"{namespace}_hits_total", "Cache hits", ["tier"], registry=self.registry)
        self.misses_total = Counter(f"{namespace}_misses_total", "Cache misses", ["tier"], registry=self.registry)
        self.evictions_total = Counter(
            f"{namespace}_evictions_total", "Entries removed by LRU eviction", ["tier"], registry=self.registry
        )
        self.expirations_total = Counter(
            f"{namespace}_expirations_total", "Entries removed after TTL", ["tier"], registry=self.registry
        )
        self.errors_total = Counter(f"{namespace}_errors_total", "Tier errors", ["tier"], registry=self.registry)
        self.hit_ratio = Gauge(
            f"{namespace}_hit_ratio", "Hit ratio over the last collection cycle", ["tier"], registry=self.registry
        )
        self.alerts_total = Counter(f"{namespace}_alerts_total", "Threshold alerts", ["alert"], registry=self.registry)
        self.operation_duration = Histogram(
            f"{namespace}_operation_duration_seconds",
            "Cache operation latency",
            ["operation"],
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
            registry=self.registry,
        )

    # -- recording ---------------------------------------------------------

    def _stats(self, tier: str) -> TierStats:
        try:
            return self._tiers[tier]
        except KeyError:
            raise ValueError(f"Unknown cache tier: {tier!r}") from None

    def record_hit(self, tier: str) -> None:
        with self._lock:
            self._stats(tier).hits += 1
        self.hits_total.labels(tier=tier).inc()

    def record_miss(self, tier: str) -> None:
        with self._lock:
            self._stats(tier).misses += 1
        self.misses_total.labels(tier=tier).inc()

    def record_eviction(self, tier: str = "l1", count: int = 1) -> None:
        with self._lock:
            self._stats(tier).evictions += count
        self.evictions_total.labels(tier=tier).inc(count)

    def record_expiration(self, tier: str = "l1", count: int = 1) -> None:
        with self._lock:
            self._stats(tier).expirations += count
        self.expirations_total.labels(tier=tier).inc(count)

    def record_error(self, tier: str = "l2") -> None:
        with self._lock:
            self._stats(tier).errors += 1
        self.errors_total.labels(tier=tier).inc()

    def record_response_time(self, duration_seconds: float, operation: str = "get") -> None:
        with self._lock:
            self._response_total += duration_seconds
            self._response_samples += 1
        self.operation_duration.labels(operation=operation).observe(duration_seconds)

    # -- aggregation -------------------------------------------------------

    def snapshot(self) -> MetricsSnapshot:
        """Counters of the current, not yet collected, cycle."""
        with self._lock:
            return self._snapshot_locked()

    def _snapshot_locked(self) -> MetricsSnapshot:
        samples = self._response_samples
        return MetricsSnapshot(
            timestamp=time.time(),
            tiers={name: TierStats(**asdict(stats)) for name, stats in self._tiers.items()},
            avg_response_ms=(self._response_total / samples) * 1000.0 if samples else 0.0,
            response_samples=samples,
        )

    def collect(self) -> MetricsSnapshot:
        """Close the current cycle: store its snapshot, reset counters, evaluate alerts."""
        with self._lock:
            snapshot = self._snapshot_locked()
            self._tiers = {tier: TierStats() for tier in TIERS}
            self._response_total = 0.0
            self._response_samples = 0
            self._history.append(snapshot)
            cutoff = snapshot.timestamp - self.window_seconds
            while self._history and self._history[0].timestamp < cutoff:
                self._history.popleft()

        for tier, stats in snapshot.tiers.items():
            self.hit_ratio.labels(tier=tier).set(stats.hit_rate)

        for alert in self._evaluate(snapshot):
            self._emit(alert)

        logger.debug(
            f"Collected cache metrics - requests: {snapshot.requests}, hit rate: {snapshot.hit_rate:.2%}, "
            f"avg response: {snapshot.avg_response_ms:.2f}ms"
        )
        return snapshot

    def _evaluate(self, snapshot: MetricsSnapshot) -> list[Alert]:
        alerts = []
        l1 = snapshot.tiers["l1"]
        if l1.requests and l1.hit_rate < self.l1_hit_rate_min:
            alerts.append(
                Alert(
                    name="l1_hit_rate_low",
                    message=f"L1 hit rate {l1.hit_rate:.2%} below {self.l1_hit_rate_min:.0%}",
                    value=l1.hit_rate,
                    threshold=self.l1_hit_rate_min,
                    timestamp=snapshot.timestamp,
                )
            )
        if snapshot.response_samples and snapshot.avg_response_ms > self.avg_response_ms_max:
            alerts.append(
                Alert(
                    name="avg_response_time_high",
                    message=f"Average response time {snapshot.avg_response_ms:.1f}ms above {self.avg_response_ms_max:.0f}ms",
                    value=snapshot.avg_response_ms,
                    threshold=self.avg_response_ms_max,
                    timestamp=snapshot.timestamp,
                )
            )
        return alerts

    def _emit(self, alert: Alert) -> None:
        self._alerts.append(alert)
        self.alerts_total.labels(alert=alert.name).inc()
        _events.warning("cache_alert", **asdict(alert))
        for handler in list(self._alert_handlers):
            try:
                handler(alert)
            except Exception as e:
                logger.error(f"Cache alert handler failed for {alert.name}: {e}")

    def add_alert_handler(self, handler: AlertHandler) -> None:
        self._alert_handlers.append(handler)

    def history(self) -> list[MetricsSnapshot]:
        with self._lock:
            return list(self._history)

    def recent_alerts(self) -> list[Alert]:
        return list(self._alerts)

    def trend(self, tier: str | None = None) -> float:
        """Hit-rate change between the older and newer half of the window.

        Positive means the hit rate is improving. ``tier=None`` uses the
        overall hit rate. Fewer than two snapshots yield 0.0.
        """
        history = self.history()
        if len(history) < 2:
            return 0.0

        def rate(snapshot: MetricsSnapshot) -> float:
            return snapshot.hit_rate if tier is None else snapshot.tiers[tier].hit_rate

        middle = len(history) // 2
        older, newer = history[:middle], history[middle:]
        return sum(map(rate, newer)) / len(newer) - sum(map(rate, older)) / len(older)

    def export(self) -> bytes:
        """Prometheus text exposition of this collector's metrics."""
        return generate_latest(self.registry)

    def get_statistics(self) -> dict[str, Any]:
        return {
            "current": self.snapshot().to_dict(),
            "history_size": len(self._history),
            "l1_trend": self.trend("l1"),
            "overall_trend": self.trend(),
            "recent_alerts": [asdict(alert) for alert in self._alerts],
        }

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> bool:
        return self._task.start()

    async def stop(self) -> None:
        await self._task.stop()
