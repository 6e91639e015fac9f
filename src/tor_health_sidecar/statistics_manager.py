from __future__ import annotations

import bisect
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Tuple

from .tor_status import StatusSnapshot
from .version import build_info

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

LabelValues = Tuple[str, ...]


class MetricsSink(Protocol):
    """Named observations emitted by the sidecar core."""

    def observe_request(self, path: str, method: str, code: int, duration: float) -> None: ...

    def observe_tor_status(self, snapshot: StatusSnapshot) -> None: ...

    def set_tor_ready(self, ready: bool) -> None: ...

    def observe_external_check(self, endpoint: str, success: bool, is_tor: bool) -> None: ...

    def observe_webhook(self, event: str, success: bool, duration: float) -> None: ...


class NullMetricsSink:
    def observe_request(self, path: str, method: str, code: int, duration: float) -> None:
        pass

    def observe_tor_status(self, snapshot: StatusSnapshot) -> None:
        pass

    def set_tor_ready(self, ready: bool) -> None:
        pass

    def observe_external_check(self, endpoint: str, success: bool, is_tor: bool) -> None:
        pass

    def observe_webhook(self, event: str, success: bool, duration: float) -> None:
        pass


@dataclass(frozen=True)
class MetricDefinition:
    name: str
    kind: str
    help: str
    labels: Tuple[str, ...] = ()


@dataclass
class _HistogramState:
    bucket_counts: List[int] = field(default_factory=lambda: [0] * len(DEFAULT_BUCKETS))
    total: float = 0.0
    count: int = 0

    def observe(self, value: float) -> None:
        index = bisect.bisect_left(DEFAULT_BUCKETS, value)
        if index < len(self.bucket_counts):
            self.bucket_counts[index] += 1
        self.total += value
        self.count += 1


HTTP_REQUESTS_TOTAL = MetricDefinition(
    "torarr_http_requests_total", "counter",
    "Total HTTP requests processed by the health server.", ("path", "method", "code"),
)
HTTP_REQUEST_DURATION = MetricDefinition(
    "torarr_http_request_duration_seconds", "histogram",
    "HTTP request duration for the health server.", ("path", "method", "code"),
)
TOR_BOOTSTRAP = MetricDefinition(
    "torarr_tor_bootstrap_percent", "gauge", "Bootstrap progress reported by Tor.",
)
TOR_CIRCUIT = MetricDefinition(
    "torarr_tor_circuit_established", "gauge",
    "Whether Tor reports an established circuit (1 = yes, 0 = no).",
)
TOR_READY = MetricDefinition(
    "torarr_tor_ready", "gauge",
    "Tor readiness derived from bootstrap progress (1 = ready, 0 = not ready).",
)
TOR_BYTES_READ = MetricDefinition(
    "torarr_tor_bytes_read", "gauge", "Bytes read as reported by Tor traffic stats.",
)
TOR_BYTES_WRITTEN = MetricDefinition(
    "torarr_tor_bytes_written", "gauge", "Bytes written as reported by Tor traffic stats.",
)
EXTERNAL_CHECKS = MetricDefinition(
    "torarr_external_check_total", "counter",
    "External check attempts with result labels.", ("endpoint", "success", "is_tor"),
)
WEBHOOK_REQUESTS = MetricDefinition(
    "torarr_webhook_requests_total", "counter",
    "Total webhook notification attempts.", ("event", "status"),
)
WEBHOOK_DURATION = MetricDefinition(
    "torarr_webhook_duration_seconds", "histogram",
    "Webhook notification duration.", ("event",),
)
BUILD_INFO = MetricDefinition(
    "torarr_info", "gauge", "Information about the sidecar build.",
    ("version", "commit", "date", "python_version"),
)

ALL_METRICS = (
    HTTP_REQUESTS_TOTAL,
    HTTP_REQUEST_DURATION,
    TOR_BOOTSTRAP,
    TOR_CIRCUIT,
    TOR_READY,
    TOR_BYTES_READ,
    TOR_BYTES_WRITTEN,
    EXTERNAL_CHECKS,
    WEBHOOK_REQUESTS,
    WEBHOOK_DURATION,
    BUILD_INFO,
)


def _bool_label(value: bool) -> str:
    return "true" if value else "false"


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_labels(names: Tuple[str, ...], values: LabelValues, extra: str = "") -> str:
    pairs = [f'{name}="{_escape_label(value)}"' for name, value in zip(names, values)]
    if extra:
        pairs.append(extra)
    return "{" + ",".join(pairs) + "}" if pairs else ""


def _format_value(value: float) -> str:
    if isinstance(value, int) or float(value).is_integer():
        return str(int(value))
    return repr(float(value))


class StatisticsManager:
    """In-memory metrics sink rendered in the Prometheus text format."""

    def __init__(self) -> None:
        self._values: Dict[str, Dict[LabelValues, float]] = {
            metric.name: {} for metric in ALL_METRICS if metric.kind != "histogram"
        }
        self._histograms: Dict[str, Dict[LabelValues, _HistogramState]] = {
            metric.name: {} for metric in ALL_METRICS if metric.kind == "histogram"
        }
        self.lock = threading.Lock()
        info = build_info()
        self._set(BUILD_INFO, 1, tuple(info[label] for label in BUILD_INFO.labels))

    def _inc(self, metric: MetricDefinition, labels: LabelValues = ()) -> None:
        with self.lock:
            series = self._values[metric.name]
            series[labels] = series.get(labels, 0) + 1

    def _set(self, metric: MetricDefinition, value: float, labels: LabelValues = ()) -> None:
        with self.lock:
            self._values[metric.name][labels] = value

    def _observe(self, metric: MetricDefinition, value: float, labels: LabelValues = ()) -> None:
        with self.lock:
            series = self._histograms[metric.name]
            series.setdefault(labels, _HistogramState()).observe(value)

    def observe_request(self, path: str, method: str, code: int, duration: float) -> None:
        labels = (path, method, str(code))
        self._inc(HTTP_REQUESTS_TOTAL, labels)
        self._observe(HTTP_REQUEST_DURATION, duration, labels)

    def observe_tor_status(self, snapshot: StatusSnapshot) -> None:
        self._set(TOR_BOOTSTRAP, snapshot.bootstrap_phase)
        self._set(TOR_CIRCUIT, 1 if snapshot.circuit_established else 0)
        self._set(TOR_READY, 1 if snapshot.ready else 0)
        self._set(TOR_BYTES_READ, snapshot.traffic.bytes_read)
        self._set(TOR_BYTES_WRITTEN, snapshot.traffic.bytes_written)

    def set_tor_ready(self, ready: bool) -> None:
        self._set(TOR_READY, 1 if ready else 0)

    def observe_external_check(self, endpoint: str, success: bool, is_tor: bool) -> None:
        self._inc(EXTERNAL_CHECKS, (endpoint, _bool_label(success), _bool_label(is_tor)))

    def observe_webhook(self, event: str, success: bool, duration: float) -> None:
        self._inc(WEBHOOK_REQUESTS, (event, "success" if success else "failed"))
        self._observe(WEBHOOK_DURATION, duration, (event,))

    def get_value(self, name: str, *labels: str) -> Optional[float]:
        with self.lock:
            return self._values.get(name, {}).get(tuple(labels))

    def get_histogram_count(self, name: str, *labels: str) -> int:
        with self.lock:
            state = self._histograms.get(name, {}).get(tuple(labels))
            return state.count if state else 0

    def render_prometheus(self) -> str:
        lines: List[str] = []
        with self.lock:
            for metric in ALL_METRICS:
                lines.append(f"# HELP {metric.name} {metric.help}")
                lines.append(f"# TYPE {metric.name} {metric.kind}")
                if metric.kind == "histogram":
                    lines.extend(self._render_histogram(metric))
                    continue
                for labels, value in sorted(self._values[metric.name].items()):
                    lines.append(
                        f"{metric.name}{_format_labels(metric.labels, labels)} {_format_value(value)}"
                    )
        return "\n".join(lines) + "\n"

    def _render_histogram(self, metric: MetricDefinition) -> List[str]:
        lines: List[str] = []
        for labels, state in sorted(self._histograms[metric.name].items()):
            cumulative = 0
            for bound, count in zip(DEFAULT_BUCKETS, state.bucket_counts):
                cumulative += count
                le = _format_labels(metric.labels, labels, f'le="{bound}"')
                lines.append(f"{metric.name}_bucket{le} {cumulative}")
            inf = _format_labels(metric.labels, labels, 'le="+Inf"')
            lines.append(f"{metric.name}_bucket{inf} {state.count}")
            plain = _format_labels(metric.labels, labels)
            lines.append(f"{metric.name}_sum{plain} {repr(state.total)}")
            lines.append(f"{metric.name}_count{plain} {state.count}")
        return lines

