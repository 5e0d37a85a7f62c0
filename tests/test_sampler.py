"""Tests for counter-to-rate conversion, capacity resolution and per-router sampling."""

import asyncio

import pytest

from conftest import IN_OID, OUT_OID
from weathermap.sampler import (
    FALLBACK_CAPACITY,
    CacheEntry,
    CounterCache,
    OidValidationError,
    combine_statuses,
    compute_throughput,
    metric_status,
    resolve_capacity,
    sample_target,
    sanitize_oid,
)
from weathermap.schemas import MetricStatus
from weathermap.snmp_client import VarbindResult
from weathermap.topology import InterfacePollConfig, RouterPollConfig, parse_config


def _router(*interfaces: InterfacePollConfig) -> RouterPollConfig:
    return RouterPollConfig(ip="10.9.9.9", community="public", port=161, label="x", interfaces=list(interfaces))


class TestComputeThroughput:
    """Rates from consecutive counter readings."""

    @pytest.mark.parametrize(
        "current,previous",
        [(0, 1), (10, 4_294_967_295), (999, 1_000), (0, 2**64 - 1)],
    )
    def test_wrap_or_reset_yields_zero_and_stale(self, current, previous):
        result = compute_throughput(current, previous, 5_000)
        assert result.bps == 0
        assert result.fresh is False

    @pytest.mark.parametrize(
        "current,previous,elapsed_ms",
        [(1_125_000, 1_000_000, 1_000), (10, 10, 5_000), (7_777_777, 1_234, 333)],
    )
    def test_rate_formula_is_exact(self, current, previous, elapsed_ms):
        result = compute_throughput(current, previous, elapsed_ms)
        assert result.bps == (current - previous) * 8 / (elapsed_ms / 1000)
        assert result.fresh is True

    def test_no_previous_reading(self):
        assert compute_throughput(100, None, 1_000) == compute_throughput(None, 100, 1_000)
        assert compute_throughput(100, None, 1_000).fresh is False

    @pytest.mark.parametrize("elapsed_ms", [0, -1, -5_000])
    def test_non_positive_elapsed(self, elapsed_ms):
        result = compute_throughput(200, 100, elapsed_ms)
        assert result.bps == 0
        assert result.fresh is False


class TestResolveCapacity:
    def test_probed_speed_wins_and_is_scaled(self):
        assert resolve_capacity(1_000, 1_000_000, 100_000_000) == 1_000_000_000

    def test_probed_zero_falls_back_to_static(self):
        assert resolve_capacity(0, 1_000_000, 100_000_000) == 100_000_000

    def test_missing_scale_means_one(self):
        assert resolve_capacity(100_000_000, None, None) == 100_000_000
        assert resolve_capacity(100_000_000, 0, None) == 100_000_000

    def test_nothing_positive_is_unknown(self):
        assert resolve_capacity(None, None, None) is None
        assert resolve_capacity(0, 1, 0) is None
        assert resolve_capacity(-5, 1, -1) is None


class TestStatus:
    def test_thresholds(self):
        assert metric_status(0.95, False) == MetricStatus.CRITICAL
        assert metric_status(0.90, False) == MetricStatus.CRITICAL
        assert metric_status(0.75, False) == MetricStatus.WARNING
        assert metric_status(0.74, False) == MetricStatus.OK

    def test_error_dominates_utilization(self):
        assert metric_status(0.10, True) == MetricStatus.ERROR
        assert metric_status(0.0, True) == MetricStatus.ERROR

    def test_combine_takes_most_severe(self):
        assert combine_statuses([MetricStatus.OK, MetricStatus.WARNING]) == MetricStatus.WARNING
        assert combine_statuses([MetricStatus.OK, MetricStatus.ERROR]) == MetricStatus.ERROR
        assert combine_statuses([MetricStatus.CRITICAL, MetricStatus.WARNING]) == MetricStatus.CRITICAL
        assert combine_statuses([]) == MetricStatus.OK


class TestSanitizeOid:
    def test_accepts_leading_dot(self):
        assert sanitize_oid(" .1.3.6.1.2.1.2.2.1.10.3 ") == "1.3.6.1.2.1.2.2.1.10.3"

    @pytest.mark.parametrize("raw", ["", "   ", None])
    def test_rejects_empty(self, raw):
        with pytest.raises(OidValidationError, match="OID is required"):
            sanitize_oid(raw)

    def test_rejects_non_numeric_segment(self):
        with pytest.raises(OidValidationError, match='invalid segment "ifInOctets"'):
            sanitize_oid("1.3.6.ifInOctets.1")

    def test_rejects_only_dots(self):
        with pytest.raises(OidValidationError, match="not a dotted numeric string"):
            sanitize_oid("...")


class TestCounterCache:
    def test_evict_removes_unconfigured_routers_and_interfaces(self, runtime, tmp_path):
        cache = CounterCache()
        cache.put("a", "eth0", CacheEntry(1, 2, 0))
        cache.put("a", "gone", CacheEntry(1, 2, 0))
        cache.put("zombie", "eth0", CacheEntry(1, 2, 0))

        assert cache.evict(runtime) == 2
        assert ("a", "eth0") in cache
        assert ("a", "gone") not in cache
        assert ("zombie", "eth0") not in cache

    def test_evict_drops_router_whose_address_changed(self, config_dict, tmp_path):
        cache = CounterCache()
        cache.remember_host("a", "10.0.0.1", 161)
        cache.put("a", "eth0", CacheEntry(1, 2, 0))
        cache.put("b", "eth0", CacheEntry(1, 2, 0))

        config_dict["routers"]["a"]["ip"] = "10.0.0.99"
        cache.evict(parse_config(config_dict, tmp_path))

        assert ("a", "eth0") not in cache
        assert ("b", "eth0") in cache


class TestSampleTarget:
    """sample_target against a scripted probe."""

    def test_first_cycle_establishes_baseline(self, runtime, probe):
        cache = CounterCache()
        sample = asyncio.run(sample_target("a", runtime.routers["a"], probe, cache, now_ms=0))

        eth0 = sample.interfaces["eth0"]
        assert eth0.in_bps == 0 and eth0.out_bps == 0
        assert eth0.fresh is False
        assert eth0.status == MetricStatus.OK
        assert cache.get("a", "eth0") == CacheEntry(1_000, 2_000, 0)

    def test_second_cycle_computes_rates_and_utilization(self, runtime, probe):
        cache = CounterCache()
        router = runtime.routers["a"]
        asyncio.run(sample_target("a", router, probe, cache, now_ms=10_000))

        # +125 kB in / +0 out over one second on a 1 Gbps port.
        probe.set_counters("10.0.0.1", 1, 126_000, 2_000)
        sample = asyncio.run(sample_target("a", router, probe, cache, now_ms=11_000))

        eth0 = sample.interfaces["eth0"]
        assert eth0.in_bps == 1_000_000
        assert eth0.out_bps == 0
        assert eth0.in_utilization == 1_000_000 / 1_000_000_000
        assert eth0.fresh is True
        assert eth0.capacity_known is True
        assert eth0.max_bandwidth == 1_000_000_000
        assert sample.status == MetricStatus.OK

    def test_high_utilization_raises_status(self, runtime, probe):
        cache = CounterCache()
        router = runtime.routers["a"]
        asyncio.run(sample_target("a", router, probe, cache, now_ms=0))

        # 950 Mbps out on the 1 Gbps port.
        probe.set_counters("10.0.0.1", 1, 1_000, 2_000 + 118_750_000)
        sample = asyncio.run(sample_target("a", router, probe, cache, now_ms=1_000))

        assert sample.interfaces["eth0"].status == MetricStatus.CRITICAL
        assert sample.status == MetricStatus.CRITICAL

    def test_counter_wrap_waits_for_next_cycle(self, runtime, probe):
        cache = CounterCache()
        router = runtime.routers["a"]
        asyncio.run(sample_target("a", router, probe, cache, now_ms=0))

        probe.set_counters("10.0.0.1", 1, 10, 20)
        sample = asyncio.run(sample_target("a", router, probe, cache, now_ms=1_000))

        eth0 = sample.interfaces["eth0"]
        assert eth0.in_bps == 0 and eth0.fresh is False
        assert eth0.error is None
        assert cache.get("a", "eth0") == CacheEntry(10, 20, 1_000)

    def test_bad_oid_fails_only_that_interface(self, probe):
        router = _router(
            InterfacePollConfig(name="bad", oid_in="1.3.x", oid_out=OUT_OID.format(1)),
            InterfacePollConfig(name="good", oid_in=IN_OID.format(2), oid_out=OUT_OID.format(2), max_bandwidth=1e9),
        )
        probe.set_counters("10.9.9.9", 1, 1, 1)
        probe.set_counters("10.9.9.9", 2, 1, 1)

        sample = asyncio.run(sample_target("x", router, probe, CounterCache(), now_ms=0))

        assert sample.interfaces["bad"].status == MetricStatus.ERROR
        assert "invalid segment" in sample.interfaces["bad"].error
        assert sample.interfaces["good"].status == MetricStatus.OK
        assert sample.status == MetricStatus.ERROR

    def test_probe_error_is_recorded_per_interface(self, runtime, probe):
        probe.failing_hosts.add("10.0.0.1")
        sample = asyncio.run(sample_target("a", runtime.routers["a"], probe, CounterCache(), now_ms=0))

        for metrics in sample.interfaces.values():
            assert metrics.status == MetricStatus.ERROR
            assert "timeout" in metrics.error
        # Both interfaces were still attempted.
        assert len(probe.calls) == 2

    def test_varbind_error_and_unexpected_type(self, probe):
        router = _router(
            InterfacePollConfig(name="missing", oid_in=IN_OID.format(1), oid_out=OUT_OID.format(1)),
            InterfacePollConfig(name="string", oid_in=IN_OID.format(2), oid_out=OUT_OID.format(2)),
        )
        probe.set_counters("10.9.9.9", 2, 1, 1)
        probe.values[("10.9.9.9", IN_OID.format(2))] = VarbindResult(oid=IN_OID.format(2))

        sample = asyncio.run(sample_target("x", router, probe, CounterCache(), now_ms=0))

        assert "NoSuchInstance" in sample.interfaces["missing"].error
        assert sample.interfaces["string"].error == "Unexpected value type for input OID"

    def test_no_valid_counter_oids_skips_the_device(self, probe):
        router = _router(InterfacePollConfig(name="eth0", oid_in="", oid_out="abc"))
        sample = asyncio.run(sample_target("x", router, probe, CounterCache(), now_ms=0))

        assert probe.calls == []
        assert sample.status == MetricStatus.ERROR
        assert sample.interfaces["eth0"].error is not None

    def test_router_without_interfaces_is_an_error(self, probe):
        sample = asyncio.run(sample_target("x", _router(), probe, CounterCache(), now_ms=0))
        assert sample.status == MetricStatus.ERROR
        assert sample.error == "No interfaces configured"

    def test_probed_speed_overrides_static_capacity(self, probe):
        speed_oid = "1.3.6.1.2.1.31.1.1.1.15.1"
        router = _router(
            InterfacePollConfig(
                name="eth0",
                oid_in=IN_OID.format(1),
                oid_out=OUT_OID.format(1),
                max_bandwidth=100_000_000,
                oid_speed=speed_oid,
                oid_speed_scale=1_000_000,
            )
        )
        probe.set_counters("10.9.9.9", 1, 1, 1)
        probe.values[("10.9.9.9", speed_oid)] = 10_000

        sample = asyncio.run(sample_target("x", router, probe, CounterCache(), now_ms=0))

        assert sample.interfaces["eth0"].max_bandwidth == 10_000_000_000
        assert probe.calls[0][1] == (IN_OID.format(1), OUT_OID.format(1), speed_oid)

    def test_unknown_capacity_is_flagged_not_alarmed(self, probe):
        router = _router(InterfacePollConfig(name="eth0", oid_in=IN_OID.format(1), oid_out=OUT_OID.format(1)))
        cache = CounterCache()
        probe.set_counters("10.9.9.9", 1, 0, 0)
        asyncio.run(sample_target("x", router, probe, cache, now_ms=0))
        probe.set_counters("10.9.9.9", 1, 1_000_000, 0)
        sample = asyncio.run(sample_target("x", router, probe, cache, now_ms=1_000))

        eth0 = sample.interfaces["eth0"]
        assert eth0.capacity_known is False
        assert eth0.max_bandwidth is None
        assert eth0.in_utilization == eth0.in_bps / FALLBACK_CAPACITY
        assert eth0.utilization is None
        assert eth0.status == MetricStatus.OK
