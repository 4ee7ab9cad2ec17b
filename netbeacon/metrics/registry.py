"""Prometheus-style instrumentation for the beacon.

This module defines small counter, gauge and histogram types, a registry
that renders them in the Prometheus text exposition format, and the
beacon's eighteen instruments, all registered on :data:`REGISTRY` at
import time. Callers update the module-level instruments directly, for
example ``POLL_TOTAL.labels("modified").inc()``.

The metrics endpoint that serves :data:`REGISTRY` binds to loopback only
by default; operators who need remote scraping put a tunnel or a reverse
proxy in front of it.
"""

from __future__ import annotations

import math
import re
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Union

_NAME_RE = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_RE = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

_LabelKey = tuple[str, ...]


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == int(value) and abs(value) < 1e15:
        return str(int(value))
    return repr(float(value))


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _label_text(pairs: Iterable[tuple[str, str]]) -> str:
    body = ",".join(f'{name}="{_escape_label(value)}"' for name, value in pairs)
    return "{" + body + "}" if body else ""


class _Metric:
    """Shared naming, label handling and locking for all instrument types."""

    kind = "untyped"

    def __init__(self, name: str, help: str, labelnames: Sequence[str] = ()) -> None:
        if not _NAME_RE.fullmatch(name):
            raise ValueError(f"invalid metric name: {name!r}")
        labels = tuple(labelnames)
        for label in labels:
            if not _LABEL_RE.fullmatch(label) or label.startswith("__"):
                raise ValueError(f"invalid label name: {label!r}")
        if len(set(labels)) != len(labels):
            raise ValueError(f"duplicate label names: {labels!r}")
        self.name = name
        self.help = help
        self.labelnames = labels
        self._lock = threading.Lock()

    def _key(self, args: Sequence[object]) -> _LabelKey:
        if len(args) != len(self.labelnames):
            raise ValueError(
                f"{self.name}: expected {len(self.labelnames)} label values, got {len(args)}"
            )
        return tuple(str(a) for a in args)

    def _pairs(self, key: _LabelKey) -> list[tuple[str, str]]:
        return sorted(zip(self.labelnames, key))

    def _header(self) -> list[str]:
        return [f"# HELP {self.name} {_escape_help(self.help)}", f"# TYPE {self.name} {self.kind}"]


class _ScalarMetric(_Metric):
    """A metric holding one float per label combination."""

    def __init__(self, name: str, help: str, labelnames: Sequence[str] = ()) -> None:
        super().__init__(name, help, labelnames)
        self._values: dict[_LabelKey, float] = {}
        if not self.labelnames:
            self._values[()] = 0.0

    def _add(self, key: _LabelKey, amount: float) -> None:
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def _store(self, key: _LabelKey, value: float) -> None:
        with self._lock:
            self._values[key] = float(value)

    def _value(self, args: Sequence[object]) -> float:
        key = self._key(args)
        with self._lock:
            return self._values.get(key, 0.0)

    def _render(self) -> str:
        with self._lock:
            items = sorted(self._values.items())
        if not items:
            return ""
        lines = self._header()
        lines.extend(
            f"{self.name}{_label_text(self._pairs(key))} {_format_value(value)}"
            for key, value in items
        )
        return "\n".join(lines) + "\n"


class _CounterChild:
    def __init__(self, metric: Counter, key: _LabelKey) -> None:
        self._metric = metric
        self._key = key

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError(f"{self._metric.name}: counters can only increase")
        self._metric._add(self._key, amount)


class Counter(_ScalarMetric):
    """A monotonically increasing count, optionally split by labels."""

    kind = "counter"

    def __init__(self, name: str, help: str, labelnames: Sequence[str] = ()) -> None:
        super().__init__(name, help, labelnames)

    def labels(self, *args: object) -> _CounterChild:
        """The counter for one combination of label values."""
        return _CounterChild(self, self._key(args))

    def inc(self, amount: float = 1.0) -> None:
        """Increase an unlabelled counter by amount (must not be negative)."""
        self.labels().inc(amount)

    def value(self, *args: object) -> float:
        """The current count for the given label values; 0 if never touched."""
        return self._value(args)

    def render(self) -> str:
        """This counter in the text exposition format; empty if it has no samples."""
        return self._render()


class _GaugeChild:
    def __init__(self, metric: Gauge, key: _LabelKey) -> None:
        self._metric = metric
        self._key = key

    def set(self, value: float) -> None:
        self._metric._store(self._key, value)

    def inc(self, amount: float = 1.0) -> None:
        self._metric._add(self._key, amount)

    def dec(self, amount: float = 1.0) -> None:
        self._metric._add(self._key, -amount)


class Gauge(_ScalarMetric):
    """A value that can go up and down, optionally split by labels."""

    kind = "gauge"

    def __init__(self, name: str, help: str, labelnames: Sequence[str] = ()) -> None:
        super().__init__(name, help, labelnames)

    def labels(self, *args: object) -> _GaugeChild:
        """The gauge for one combination of label values."""
        return _GaugeChild(self, self._key(args))

    def set(self, value: float) -> None:
        """Set an unlabelled gauge."""
        self.labels().set(value)

    def inc(self, amount: float = 1.0) -> None:
        """Raise an unlabelled gauge by amount."""
        self.labels().inc(amount)

    def dec(self, amount: float = 1.0) -> None:
        """Lower an unlabelled gauge by amount."""
        self.labels().dec(amount)

    def value(self, *args: object) -> float:
        """The current value for the given label values; 0 if never touched."""
        return self._value(args)

    def render(self) -> str:
        """This gauge in the text exposition format; empty if it has no samples."""
        return self._render()


@dataclass
class _HistogramState:
    counts: list[int]
    total: float = 0.0
    observations: int = 0


@dataclass
class _HistogramChild:
    metric: Histogram
    key: _LabelKey = field(default_factory=tuple)

    def observe(self, value: float) -> None:
        self.metric._observe(self.key, value)


class Histogram(_Metric):
    """Observations counted into cumulative buckets, with their sum and count."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        help: str,
        buckets: Sequence[float] = DEFAULT_BUCKETS,
        labelnames: Sequence[str] = (),
    ) -> None:
        super().__init__(name, help, labelnames)
        if "le" in self.labelnames:
            raise ValueError(f"{name}: 'le' is reserved for histogram buckets")
        bounds = [float(b) for b in buckets if not (math.isinf(b) and b > 0)]
        if not bounds:
            raise ValueError(f"{name}: histogram needs at least one finite bucket")
        if any(a >= b for a, b in zip(bounds, bounds[1:])):
            raise ValueError(f"{name}: buckets must be strictly increasing")
        self.buckets = tuple(bounds)
        self._states: dict[_LabelKey, _HistogramState] = {}
        if not self.labelnames:
            self._states[()] = self._new_state()

    def _new_state(self) -> _HistogramState:
        return _HistogramState(counts=[0] * len(self.buckets))

    def _observe(self, key: _LabelKey, value: float) -> None:
        with self._lock:
            state = self._states.get(key)
            if state is None:
                state = self._states[key] = self._new_state()
            for index, bound in enumerate(self.buckets):
                if value <= bound:
                    state.counts[index] += 1
                    break
            state.total += value
            state.observations += 1

    def labels(self, *args: object) -> _HistogramChild:
        """The histogram for one combination of label values."""
        return _HistogramChild(self, self._key(args))

    def observe(self, value: float) -> None:
        """Record one observation on an unlabelled histogram."""
        self.labels().observe(value)

    def render(self) -> str:
        """This metric in the text exposition format; empty if it has no samples."""
        with self._lock:
            items = sorted(
                (key, list(s.counts), s.total, s.observations) for key, s in self._states.items()
            )
        if not items:
            return ""
        lines = self._header()
        for key, counts, total, observations in items:
            pairs = self._pairs(key)
            cumulative = 0
            for bound, count in zip(self.buckets, counts):
                cumulative += count
                le = _label_text(pairs + [("le", _format_value(bound))])
                lines.append(f"{self.name}_bucket{le} {cumulative}")
            lines.append(f"{self.name}_bucket{_label_text(pairs + [('le', '+Inf')])} {observations}")
            lines.append(f"{self.name}_sum{_label_text(pairs)} {_format_value(total)}")
            lines.append(f"{self.name}_count{_label_text(pairs)} {observations}")
        return "\n".join(lines) + "\n"


Metric = Union[Counter, Gauge, Histogram]


class Registry:
    """A set of uniquely named metrics rendered together."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._metrics: dict[str, Metric] = {}

    def register(self, metric: Metric) -> Metric:
        """Add metric; raises ValueError if its name is already registered."""
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"metric already registered: {metric.name}")
            self._metrics[metric.name] = metric
        return metric

    def render(self) -> str:
        """Every registered metric in the text exposition format, sorted by name."""
        with self._lock:
            metrics = [m for _, m in sorted(self._metrics.items())]
        return "".join(m.render() for m in metrics)


REGISTRY = Registry()

# Enrollment
ENROLLMENT_TOTAL = Counter(
    "beacon_enrollment_total", "Beacon enrollment attempts by outcome.", ("result",)
)

# Config poll
POLL_DURATION_SECONDS = Histogram(
    "beacon_poll_duration_seconds",
    "Config-poll round-trip latency.",
    (0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
    ("result",),
)
POLL_TOTAL = Counter("beacon_poll_total", "Config-poll cycles by outcome.", ("result",))

# Heartbeat
HEARTBEAT_TOTAL = Counter("beacon_heartbeat_total", "Heartbeat round-trips by outcome.", ("result",))

# Data-key rotation
DEK_VERIFY_FAILED_TOTAL = Counter(
    "beacon_dek_verify_failed_total",
    "X-Beacon-DataKey-Signature verification failures (fail-closed events). "
    "Each increment is a P1 security signal.",
)
DEK_VERSION = Gauge(
    "beacon_dek_version",
    "Currently-trusted DEK version (updates only after signature verify succeeds).",
)

# Certificate rotation
CERT_ROTATION_TOTAL = Counter(
    "beacon_cert_rotation_total", "Beacon cert-rotation attempts by outcome.", ("result",)
)
CERT_EXPIRES_IN_SECONDS = Gauge(
    "beacon_cert_expires_in_seconds", "Seconds until the active beacon cert expires."
)

# Store
STORE_BYTES_BY_BUCKET = Gauge("beacon_store_bytes", "Current byte total per bucket.", ("bucket",))
STORE_RECORDS_BY_BUCKET = Gauge(
    "beacon_store_records", "Current record count per bucket.", ("bucket",)
)
STORE_EVICTIONS_TOTAL = Counter(
    "beacon_store_evictions_total",
    "Records evicted by bucket (configs is NEVER incremented by design).",
    ("bucket",),
)

# Sender
SENDER_DELIVERED_TOTAL = Counter(
    "beacon_sender_delivered_total",
    "Records successfully delivered to /api/v1/beacons/{id}/data/{type}.",
    ("bucket",),
)
SENDER_FAILED_TOTAL = Counter(
    "beacon_sender_failed_total",
    "Records the sender failed to deliver by reason.",
    ("bucket", "reason"),
)

# Collectors
COLLECTOR_RECEIVED_TOTAL = Counter(
    "beacon_collector_received_total",
    "Raw inbound records per collector (pre-parse, pre-persist).",
    ("collector",),
)
COLLECTOR_DROPPED_TOTAL = Counter(
    "beacon_collector_dropped_total",
    "Records dropped due to worker-queue back-pressure.",
    ("collector",),
)
COLLECTOR_PARSE_FAILED_TOTAL = Counter(
    "beacon_collector_parse_failed_total",
    "Records the collector workers couldn't parse.",
    ("collector",),
)

# SSRF allow-list
SAFEDIAL_REJECTED_TOTAL = Counter(
    "beacon_safedial_rejected_total",
    "Device-IP dials rejected by the SSRF allow-list. Each increment is a config/attack signal.",
)

# Build info
BUILD_INFO = Gauge(
    "beacon_build_info",
    "Static build metadata (version, commit). Always 1; the labels carry the info.",
    ("version", "commit"),
)

ALL: tuple[Metric, ...] = (
    ENROLLMENT_TOTAL,
    POLL_DURATION_SECONDS,
    POLL_TOTAL,
    HEARTBEAT_TOTAL,
    DEK_VERIFY_FAILED_TOTAL,
    DEK_VERSION,
    CERT_ROTATION_TOTAL,
    CERT_EXPIRES_IN_SECONDS,
    STORE_BYTES_BY_BUCKET,
    STORE_RECORDS_BY_BUCKET,
    STORE_EVICTIONS_TOTAL,
    SENDER_DELIVERED_TOTAL,
    SENDER_FAILED_TOTAL,
    COLLECTOR_RECEIVED_TOTAL,
    COLLECTOR_DROPPED_TOTAL,
    COLLECTOR_PARSE_FAILED_TOTAL,
    SAFEDIAL_REJECTED_TOTAL,
    BUILD_INFO,
)

for _metric in ALL:
    REGISTRY.register(_metric)


def set_build_info(version: str, commit: str) -> None:
    """Publish the build labels once at startup."""
    BUILD_INFO.labels(version, commit).set(1)