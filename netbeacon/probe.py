"""TCP-connect latency probe used to deduplicate devices seen by several beacons.

Each probe cycle measures the round-trip time to a device by attempting
TCP connects on its management ports (22, then 161, then 80; the first
port that answers wins). The per-device result is the median of N samples,
which the heartbeat reports so the platform can elect one owning beacon
per device.

TCP connect is used rather than ICMP: many networks block ICMP, the
handshake follows the same path as SSH and SNMP traffic, and no raw-socket
privilege is needed.

Every connect goes through :mod:`netbeacon.safedial`, so loopback,
link-local, multicast and similar targets are refused before any packet
is sent, and DNS is resolved once per dial.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Protocol

from netbeacon import safedial
from netbeacon.safedial import SafeDialError

DEFAULT_PORTS = (22, 161, 80)
"""Probe order: SSH, then SNMP, then HTTP; the first successful connect wins."""

DEFAULT_SAMPLE_COUNT = 3
"""Samples per cycle; the result is their median."""

DEFAULT_PER_PROBE_TIMEOUT = 2.0
"""Seconds allowed for each single connect attempt."""

DEFAULT_INTERVAL = 300.0
"""Seconds between scheduler probe cycles."""

_DIAL_ERRORS = (OSError, SafeDialError)


class AllPortsFailedError(Exception):
    """Every port failed to connect within the per-probe timeout."""


class NoSamplesError(Exception):
    """Every sample of a probe cycle failed.

    ``result`` holds the partially filled ProbeResult (device and capture
    time set, no latency), so callers can still record the attempt.
    """

    def __init__(self, message: str, result: ProbeResult) -> None:
        super().__init__(message)
        self.result = result


class _Dialer(Protocol):
    def dial(
        self, network: str, host: str, port: int, timeout: float
    ) -> tuple[Optional[Callable[[], None]], float]: ...


class SafeDialAdapter:
    """Dials through safedial and times the connect."""

    def dial(
        self, network: str, host: str, port: int, timeout: float
    ) -> tuple[Callable[[], None], float]:
        """Connect, returning the socket's close function and the latency in ms."""
        start = time.perf_counter()
        conn = safedial.dial(network, host, port, timeout)
        elapsed_us = int((time.perf_counter() - start) * 1_000_000)
        return conn.close, elapsed_us / 1000.0


DEFAULT_DIALER = SafeDialAdapter()


@dataclass(frozen=True)
class ProbeResult:
    """The outcome of one probe cycle for one device."""

    device_ip: str
    median_latency_ms: float = 0.0
    probe_count: int = 0
    port_hit: int = 0
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class ProbeOptions:
    """Settings for median_probe; empty or zero values take the defaults."""

    ports: Sequence[int] = ()
    sample_count: int = 0
    per_probe_timeout: float = 0.0
    dialer: Optional[_Dialer] = None


def median(values: Sequence[float]) -> float:
    """The median of values; 0 for an empty sequence."""
    ordered = sorted(values)
    if not ordered:
        return 0.0
    mid = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[mid - 1] + ordered[mid]) / 2
    return ordered[mid]


def _cancelled(cancel: Optional[threading.Event]) -> bool:
    return cancel is not None and cancel.is_set()


def _single_sample(
    dialer: _Dialer,
    device_ip: str,
    ports: Sequence[int],
    timeout: float,
    cancel: Optional[threading.Event],
) -> tuple[float, int]:
    """Walk the ports in order; return (latency_ms, port) of the first that connects."""
    last_error: Optional[BaseException] = None
    for port in ports:
        if _cancelled(cancel):
            raise AllPortsFailedError("probe: all ports failed to connect: cancelled") from last_error
        try:
            close, latency = dialer.dial("tcp", device_ip, port, timeout)
        except _DIAL_ERRORS as exc:
            last_error = exc
            continue
        if close is not None:
            try:
                close()
            except OSError:
                pass
        return latency, port
    raise AllPortsFailedError(
        f"probe: all ports failed to connect: last={last_error}"
    ) from last_error


def median_probe(
    device_ip: str,
    options: Optional[ProbeOptions] = None,
    cancel: Optional[threading.Event] = None,
) -> ProbeResult:
    """Probe device_ip sample_count times and return the median latency.

    Each sample walks the port list and stops at the first port that
    connects. Raises NoSamplesError, carrying the partial result, when no
    sample succeeded.
    """
    opts = options if options is not None else ProbeOptions()
    ports = tuple(opts.ports) or DEFAULT_PORTS
    samples = opts.sample_count or DEFAULT_SAMPLE_COUNT
    timeout = opts.per_probe_timeout or DEFAULT_PER_PROBE_TIMEOUT
    dialer = opts.dialer if opts.dialer is not None else DEFAULT_DIALER

    latencies: list[float] = []
    port_hit = 0
    last_error: Optional[AllPortsFailedError] = None

    for _ in range(samples):
        try:
            latency, port = _single_sample(dialer, device_ip, ports, timeout, cancel)
        except AllPortsFailedError as exc:
            last_error = exc
            continue
        latencies.append(latency)
        if port_hit == 0:
            port_hit = port

    if not latencies:
        result = ProbeResult(device_ip=device_ip, captured_at=datetime.now(timezone.utc))
        raise NoSamplesError(f"probe: no successful samples: {last_error}", result) from last_error

    return ProbeResult(
        device_ip=device_ip,
        median_latency_ms=median(latencies),
        probe_count=len(latencies),
        port_hit=port_hit,
        captured_at=datetime.now(timezone.utc),
    )


class Scheduler:
    """Probes a device list on a fixed cadence and keeps the latest results.

    Safe for concurrent use: the device list and results are guarded by a lock.
    """

    def __init__(self, interval: float = DEFAULT_INTERVAL, options: Optional[ProbeOptions] = None) -> None:
        self.interval = interval
        self.options = options if options is not None else ProbeOptions()
        self._lock = threading.Lock()
        self._devices: list[str] = []
        self._results: dict[str, ProbeResult] = {}

    def set_devices(self, device_ips: Sequence[str]) -> None:
        """Replace the probe target list; earlier results are kept."""
        with self._lock:
            self._devices = list(device_ips)

    def devices(self) -> list[str]:
        """A copy of the current probe target list."""
        with self._lock:
            return list(self._devices)

    def snapshot(self) -> dict[str, ProbeResult]:
        """A copy of the latest result per device."""
        with self._lock:
            return dict(self._results)

    def run(self, stop: threading.Event) -> None:
        """Run a probe cycle every interval until stop is set.

        The first cycle starts after one interval, not immediately.
        """
        interval = self.interval if self.interval > 0 else DEFAULT_INTERVAL
        while not stop.wait(interval):
            self._run_one_cycle(stop)

    def run_once(self, stop: Optional[threading.Event] = None) -> None:
        """Probe every current device once and record the results."""
        self._run_one_cycle(stop)

    def _run_one_cycle(self, stop: Optional[threading.Event]) -> None:
        for ip in self.devices():
            if _cancelled(stop):
                return
            try:
                result = median_probe(ip, self.options, stop)
            except NoSamplesError as exc:
                # Keep the zero-latency record so the heartbeat reports the attempt.
                result = exc.result
            with self._lock:
                self._results[ip] = result