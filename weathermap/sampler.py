"""
Counter sampler.

Turns raw cumulative octet counters into rates, utilization and a health
status, one router at a time.

State across cycles is a `CounterCache` keyed by (router id, interface name).
The poll loop owns the cache and passes it in; it also guarantees that two
cycles never overlap, so the cache needs no locking.

Rules:
- no previous reading, elapsed <= 0 or a missing current value -> rate 0, not fresh
- current < previous (wrap or device reset)                   -> rate 0, not fresh
- otherwise rate_bps = (current - previous) * 8 / (elapsed_ms / 1000)

Any problem with one interface (bad OID, probe failure, odd value) becomes
that interface's error; it never stops its siblings or other routers.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from weathermap.schemas import InterfaceMetrics, MetricStatus
from weathermap.snmp_client import SnmpError, VarbindResult
from weathermap.topology import InterfacePollConfig, RouterPollConfig, RuntimeConfig

log = logging.getLogger("weathermap.sampler")

WARNING_THRESHOLD = 0.75
CRITICAL_THRESHOLD = 0.90

# Divisor used when no capacity is known. The resulting utilization is
# flagged via `capacity_known=False` and ignored by status/colouring.
FALLBACK_CAPACITY = 1.0

_OID_SEGMENT = re.compile(r"^\d+$")


class OidValidationError(ValueError):
    """Raised for an OID string that is not dotted-numeric."""


def sanitize_oid(raw: Optional[str]) -> str:
    """
    Normalise a dotted numeric OID ("1.3.6..." or ".1.3.6...").

    Raises OidValidationError for empty strings or non-numeric segments.
    """
    trimmed = (raw or "").strip()
    if not trimmed:
        raise OidValidationError("OID is required")

    segments = [segment for segment in trimmed.split(".") if segment]
    if not segments:
        raise OidValidationError(f'OID "{raw}" is not a dotted numeric string')

    for segment in segments:
        if not _OID_SEGMENT.match(segment):
            raise OidValidationError(f'OID "{raw}" contains invalid segment "{segment}"')

    return ".".join(segments)


# ---------------------------------------------------------------------------
# Status helpers
# ---------------------------------------------------------------------------


def metric_status(utilization: float, has_error: bool) -> MetricStatus:
    if has_error:
        return MetricStatus.ERROR
    if utilization >= CRITICAL_THRESHOLD:
        return MetricStatus.CRITICAL
    if utilization >= WARNING_THRESHOLD:
        return MetricStatus.WARNING
    return MetricStatus.OK


def combine_statuses(statuses: Iterable[MetricStatus]) -> MetricStatus:
    """Most severe status among `statuses`; OK for an empty iterable."""
    return max(statuses, key=lambda status: status.severity, default=MetricStatus.OK)


# ---------------------------------------------------------------------------
# Counter cache
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CacheEntry:
    in_octets: int
    out_octets: int
    timestamp_ms: float


class CounterCache:
    """Last good counter reading per (router id, interface name)."""

    def __init__(self) -> None:
        self._entries: Dict[Tuple[str, str], CacheEntry] = {}
        self._hosts: Dict[str, Tuple[str, int]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Tuple[str, str]) -> bool:
        return key in self._entries

    def get(self, router_id: str, iface_name: str) -> Optional[CacheEntry]:
        return self._entries.get((router_id, iface_name))

    def put(self, router_id: str, iface_name: str, entry: CacheEntry) -> None:
        self._entries[(router_id, iface_name)] = entry

    def remember_host(self, router_id: str, ip: str, port: int) -> None:
        self._hosts[router_id] = (ip, port)

    def evict(self, runtime: RuntimeConfig) -> int:
        """
        Drop entries that no longer belong to the configuration.

        An entry survives only if its router and interface still exist and the
        router still points at the same address; counters from a different
        device would otherwise produce a bogus first delta.
        """
        keep = set()
        for router_id, router in runtime.routers.items():
            if self._hosts.get(router_id, (router.ip, router.port)) != (router.ip, router.port):
                continue
            keep.update((router_id, iface.name) for iface in router.interfaces)

        stale = [key for key in self._entries if key not in keep]
        for key in stale:
            del self._entries[key]
        for router_id in list(self._hosts):
            if router_id not in runtime.routers:
                del self._hosts[router_id]
        return len(stale)


# ---------------------------------------------------------------------------
# Pure computations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Throughput:
    bps: float
    fresh: bool


def compute_throughput(current: Optional[int], previous: Optional[int], elapsed_ms: float) -> Throughput:
    if current is None or previous is None or elapsed_ms <= 0:
        return Throughput(0.0, False)
    if current < previous:
        # Counter wrapped or device reset; wait for the next sample.
        return Throughput(0.0, False)
    return Throughput((current - previous) * 8 / (elapsed_ms / 1000), True)


def resolve_capacity(
    probed: Optional[float],
    scale: Optional[float],
    static: Optional[float],
) -> Optional[float]:
    """
    Effective capacity in bits/s.

    Priority: a speed probed this cycle (times `scale`), then the configured
    value, then unknown (None).
    """
    multiplier = scale if scale is not None and scale > 0 else 1
    if probed is not None and probed > 0:
        return probed * multiplier
    if static is not None and static > 0:
        return static
    return None


# ---------------------------------------------------------------------------
# Per-router sampling
# ---------------------------------------------------------------------------


@dataclass
class TargetSample:
    status: MetricStatus
    interfaces: Dict[str, InterfaceMetrics]
    error: Optional[str] = None


@dataclass
class _Reading:
    """Mutable scratch state for one interface during one cycle."""

    config: InterfacePollConfig
    requests: List[Tuple[str, str]] = field(default_factory=list)
    in_octets: Optional[int] = None
    out_octets: Optional[int] = None
    probed_speed: Optional[int] = None
    error: Optional[str] = None

    @property
    def has_counters(self) -> bool:
        return any(kind != "speed" for kind, _ in self.requests)

    def absorb(self, kind: str, result: VarbindResult) -> None:
        if result.error:
            self.error = result.error
            return
        if result.value is None:
            target = "speed" if kind == "speed" else f"{kind}put"
            self.error = f"Unexpected value type for {target} OID"
            return
        if kind == "speed":
            self.probed_speed = result.value
        elif kind == "in":
            self.in_octets = result.value
        else:
            self.out_octets = result.value


def _prepare(iface: InterfacePollConfig) -> _Reading:
    reading = _Reading(config=iface)
    oids = [("in", iface.oid_in), ("out", iface.oid_out)]
    if iface.oid_speed:
        oids.append(("speed", iface.oid_speed))

    for kind, raw in oids:
        try:
            reading.requests.append((kind, sanitize_oid(raw)))
        except OidValidationError as exc:
            reading.error = str(exc)
    return reading


def _finish(router_id: str, reading: _Reading, cache: CounterCache, now_ms: float) -> InterfaceMetrics:
    iface = reading.config
    previous = cache.get(router_id, iface.name)
    elapsed_ms = now_ms - previous.timestamp_ms if previous else 0

    inbound = compute_throughput(reading.in_octets, previous.in_octets if previous else None, elapsed_ms)
    outbound = compute_throughput(reading.out_octets, previous.out_octets if previous else None, elapsed_ms)

    capacity = resolve_capacity(reading.probed_speed, iface.oid_speed_scale, iface.max_bandwidth)
    denominator = capacity if capacity is not None else FALLBACK_CAPACITY
    in_util = inbound.bps / denominator
    out_util = outbound.bps / denominator

    has_error = reading.error is not None
    utilization = max(in_util, out_util) if capacity is not None else 0.0

    if reading.in_octets is not None and reading.out_octets is not None:
        cache.put(router_id, iface.name, CacheEntry(reading.in_octets, reading.out_octets, now_ms))

    return InterfaceMetrics(
        name=iface.name,
        in_bps=inbound.bps,
        out_bps=outbound.bps,
        in_utilization=in_util,
        out_utilization=out_util,
        status=metric_status(utilization, has_error),
        max_bandwidth=capacity,
        capacity_known=capacity is not None,
        fresh=inbound.fresh and outbound.fresh,
        error=reading.error,
    )


async def sample_target(
    router_id: str,
    router: RouterPollConfig,
    probe,
    cache: CounterCache,
    now_ms: float,
) -> TargetSample:
    """
    Poll every interface of one router and derive its metrics.

    The device is contacted once per interface that has at least one valid
    counter OID. Cache entries are written only when both counters were read.
    """
    if not router.interfaces:
        return TargetSample(status=MetricStatus.ERROR, interfaces={}, error="No interfaces configured")

    readings = [_prepare(iface) for iface in router.interfaces]

    if any(reading.has_counters for reading in readings):
        cache.remember_host(router_id, router.ip, router.port)
        for reading in readings:
            if not reading.has_counters:
                continue
            try:
                results = await probe.get(
                    router.ip, router.community, router.port, [oid for _, oid in reading.requests]
                )
            except SnmpError as exc:
                log.warning("[%s] SNMP error for %s: %s", router_id, reading.config.name, exc)
                reading.error = str(exc) or exc.__class__.__name__
                continue
            for (kind, _), result in zip(reading.requests, results):
                reading.absorb(kind, result)

    interfaces = {reading.config.name: _finish(router_id, reading, cache, now_ms) for reading in readings}
    return TargetSample(
        status=combine_statuses(metrics.status for metrics in interfaces.values()),
        interfaces=interfaces,
    )
