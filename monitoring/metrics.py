"""
Metrics Collection - Monitoring Layer

In-process Prometheus-style metrics for the sync engine and the WebSocket
transport, exported as text at GET /v1/metrics.

@.architecture
Incoming: core/sync/broadcast.py, core/sync/engine.py, ws/hub.py, api/v1/endpoints/health.py --- {metric name, float value, label keyword arguments}
Processing: inc(), dec(), set(), observe(), collect_all(), export_prometheus() --- {3 jobs: recording, collection, text_export}
Outgoing: api/v1/endpoints/health.py (/v1/metrics) --- {Counter/Gauge/Histogram instances, Dict[str, Any] snapshot, Prometheus text}
"""

import bisect
import threading
from typing import Any, Dict, List, Optional, Tuple

LabelKey = Tuple[str, ...]

# Turns run from sub-second echo replies to minutes of provider streaming
TURN_BUCKETS = [0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]


class _Metric:
    metric_type = "untyped"

    def __init__(self, name: str, help_text: str, labels: Optional[List[str]] = None):
        self.name = name
        self.help_text = help_text
        self.label_names = list(labels or [])
        self._lock = threading.Lock()
        self._series: Dict[LabelKey, Any] = {}

    def _key(self, labels: Dict[str, str]) -> LabelKey:
        if sorted(labels) != sorted(self.label_names):
            raise ValueError(f"{self.name} takes labels {self.label_names}, got {sorted(labels)}")
        return tuple(str(labels[name]) for name in self.label_names)

    def _labels(self, key: LabelKey) -> Dict[str, str]:
        return dict(zip(self.label_names, key))


class Counter(_Metric):
    """Monotonic count, e.g. published events or finished turns."""

    metric_type = "counter"

    def _add(self, amount: float, labels: Dict[str, str]) -> None:
        key = self._key(labels)
        with self._lock:
            self._series[key] = self._series.get(key, 0.0) + amount

    def inc(self, value: float = 1.0, **labels: str) -> None:
        if value < 0:
            raise ValueError(f"{self.name} is a counter and cannot decrease")
        self._add(value, labels)

    def get(self, **labels: str) -> float:
        return self._series.get(self._key(labels), 0.0)

    def collect(self) -> List[Tuple[Dict[str, str], float]]:
        with self._lock:
            return [(self._labels(key), value) for key, value in self._series.items()]


class Gauge(Counter):
    """Point-in-time value, e.g. open subscriptions or connected sockets."""

    metric_type = "gauge"

    def inc(self, value: float = 1.0, **labels: str) -> None:
        self._add(value, labels)

    def dec(self, value: float = 1.0, **labels: str) -> None:
        self._add(-value, labels)

    def set(self, value: float, **labels: str) -> None:
        key = self._key(labels)
        with self._lock:
            self._series[key] = float(value)


class Histogram(_Metric):
    """
    Observations counted into cumulative buckets.

    Each series holds per-bucket counts (the last slot is +Inf), the sum and
    the count of observations.
    """

    metric_type = "histogram"

    def __init__(
        self,
        name: str,
        help_text: str,
        labels: Optional[List[str]] = None,
        buckets: Optional[List[float]] = None
    ):
        super().__init__(name, help_text, labels)
        self.buckets = sorted(buckets or TURN_BUCKETS)

    def observe(self, value: float, **labels: str) -> None:
        key = self._key(labels)
        with self._lock:
            counts, total, n = self._series.get(key) or ([0] * (len(self.buckets) + 1), 0.0, 0)
            counts[bisect.bisect_left(self.buckets, value)] += 1
            self._series[key] = (counts, total + value, n + 1)

    def _stats(self, key: LabelKey) -> Dict[str, Any]:
        counts, total, n = self._series.get(key) or ([0] * (len(self.buckets) + 1), 0.0, 0)
        cumulative, running = [], 0
        for count in counts:
            running += count
            cumulative.append(running)
        return {
            'count': n,
            'sum': total,
            'average': total / n if n else 0.0,
            'buckets': dict(zip([*self.buckets, float('inf')], cumulative)),
        }

    def get_stats(self, **labels: str) -> Dict[str, Any]:
        key = self._key(labels)
        with self._lock:
            return self._stats(key)

    def collect(self) -> List[Tuple[Dict[str, str], Dict[str, Any]]]:
        with self._lock:
            return [(self._labels(key), self._stats(key)) for key in self._series]


def _render_labels(labels: Dict[str, str]) -> str:
    if not labels:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in labels.items()) + "}"


class MetricsRegistry:
    """
    Named metrics, get-or-create.

    Components ask for their metrics independently; asking for an existing
    name with a different type is an error.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._metrics: Dict[str, _Metric] = {}

    def _get_or_create(self, cls, name: str, *args) -> Any:
        with self._lock:
            existing = self._metrics.get(name)
            if existing is None:
                existing = self._metrics[name] = cls(name, *args)
            elif type(existing) is not cls:
                raise ValueError(f"Metric {name} already registered as {existing.metric_type}")
            return existing

    def counter(self, name: str, help_text: str, labels: Optional[List[str]] = None) -> Counter:
        return self._get_or_create(Counter, name, help_text, labels)

    def gauge(self, name: str, help_text: str, labels: Optional[List[str]] = None) -> Gauge:
        return self._get_or_create(Gauge, name, help_text, labels)

    def histogram(
        self,
        name: str,
        help_text: str,
        labels: Optional[List[str]] = None,
        buckets: Optional[List[float]] = None
    ) -> Histogram:
        return self._get_or_create(Histogram, name, help_text, labels, buckets)

    def _snapshot(self) -> List[_Metric]:
        with self._lock:
            return list(self._metrics.values())

    def collect_all(self) -> Dict[str, Any]:
        """Snapshot of every metric keyed by name."""
        snapshot = {}
        for metric in self._snapshot():
            entry = {'type': metric.metric_type, 'help': metric.help_text, 'values': metric.collect()}
            if isinstance(metric, Histogram):
                entry['buckets'] = metric.buckets
            snapshot[metric.name] = entry
        return snapshot

    def export_prometheus(self) -> str:
        """Render the Prometheus text exposition format (version 0.0.4)."""
        lines = []
        for metric in self._snapshot():
            name = metric.name
            lines += [f"# HELP {name} {metric.help_text}", f"# TYPE {name} {metric.metric_type}"]

            if not isinstance(metric, Histogram):
                lines += [f"{name}{_render_labels(labels)} {value}" for labels, value in metric.collect()]
                continue

            for labels, stats in metric.collect():
                for bound, count in stats['buckets'].items():
                    le = "+Inf" if bound == float('inf') else str(bound)
                    lines.append(f"{name}_bucket{_render_labels({**labels, 'le': le})} {count}")
                lines.append(f"{name}_sum{_render_labels(labels)} {stats['sum']}")
                lines.append(f"{name}_count{_render_labels(labels)} {stats['count']}")

        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        with self._lock:
            self._metrics.clear()


_global_registry: Optional[MetricsRegistry] = None


def get_registry() -> MetricsRegistry:
    global _global_registry
    if _global_registry is None:
        _global_registry = MetricsRegistry()
    return _global_registry


def setup_sync_metrics(registry: Optional[MetricsRegistry] = None) -> Dict[str, Any]:
    """
    Get or create the Relay metrics.

    Returns:
        Metric objects keyed by short name
    """
    registry = registry or get_registry()

    return {
        'events_published': registry.counter(
            'relay_events_published_total',
            'Lifecycle events published to the broadcast hub',
            labels=['kind']
        ),
        'events_dropped': registry.counter(
            'relay_events_dropped_total',
            'Events not delivered to a listener',
            labels=['reason']
        ),
        'subscriptions_active': registry.gauge(
            'relay_subscriptions_active',
            'Listeners currently registered with the broadcast hub'
        ),
        'turns_total': registry.counter(
            'relay_turns_total',
            'Assistant turns finished',
            labels=['outcome']
        ),
        'turn_duration_seconds': registry.histogram(
            'relay_turn_duration_seconds',
            'Assistant turn duration in seconds'
        ),
        'ws_connections_active': registry.gauge(
            'relay_ws_connections_active',
            'Connected WebSocket clients'
        ),
    }
