"""Shared fixtures: a two-router topology, a scriptable SNMP probe, a recording surface."""

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple, Union

import matplotlib

matplotlib.use("Agg")

import pytest  # noqa: E402

from weathermap.render import DrawingSurface  # noqa: E402
from weathermap.schemas import InterfaceMetrics, MetricStatus  # noqa: E402
from weathermap.snmp_client import SnmpError, VarbindResult  # noqa: E402
from weathermap.topology import RuntimeConfig, parse_config  # noqa: E402

IN_OID = "1.3.6.1.2.1.2.2.1.10.{}"
OUT_OID = "1.3.6.1.2.1.2.2.1.16.{}"


def _iface(name: str, index: int, max_bandwidth: Optional[float] = 1_000_000_000) -> dict:
    iface = {"name": name, "oid_in": IN_OID.format(index), "oid_out": OUT_OID.format(index)}
    if max_bandwidth is not None:
        iface["max_bandwidth"] = max_bandwidth
    return iface


def make_config() -> dict:
    """Routers a (100,100) and b (400,100), two parallel links a1 and b2."""
    return {
        "meta": {"title": "Test map", "poll_interval_ms": 1000},
        "map": {"size": {"width": 800, "height": 600}},
        "routers": {
            "a": {
                "ip": "10.0.0.1",
                "community": "public",
                "label": "Router A",
                "position": {"x": 100, "y": 100},
                "interfaces": [_iface("eth0", 1), _iface("eth1", 2, 10_000_000_000)],
            },
            "b": {
                "ip": "10.0.0.2",
                "community": "public",
                "position": {"x": 400, "y": 100},
                "interfaces": [_iface("eth0", 1), _iface("eth1", 2, 10_000_000_000)],
            },
        },
        "links": [
            {"id": "b2", "from": "a", "to": "b", "iface_from": "eth1", "iface_to": "eth1", "label": "10G"},
            {"id": "a1", "from": "a", "to": "b", "iface_from": "eth0", "iface_to": "eth0"},
        ],
    }


@pytest.fixture
def config_dict() -> dict:
    return make_config()


@pytest.fixture
def runtime(tmp_path: Path) -> RuntimeConfig:
    return parse_config(make_config(), tmp_path)


class FakeProbe:
    """
    Scriptable stand-in for an SNMP agent.

    `values[(host, oid)]` is returned for each request; a VarbindResult value
    is returned verbatim. Hosts in `failing_hosts` raise SnmpError, hosts in
    `crashing_hosts` raise RuntimeError.
    """

    def __init__(self) -> None:
        self.values: Dict[Tuple[str, str], Union[int, VarbindResult]] = {}
        self.failing_hosts: Set[str] = set()
        self.crashing_hosts: Set[str] = set()
        self.calls: List[Tuple[str, Tuple[str, ...]]] = []
        self.closed = False

    def set_counters(self, host: str, index: int, in_octets: int, out_octets: int) -> None:
        self.values[(host, IN_OID.format(index))] = in_octets
        self.values[(host, OUT_OID.format(index))] = out_octets

    async def get(self, host: str, community: str, port: int, oids: Sequence[str]) -> List[VarbindResult]:
        self.calls.append((host, tuple(oids)))
        if host in self.crashing_hosts:
            raise RuntimeError(f"agent on {host} crashed")
        if host in self.failing_hosts:
            raise SnmpError("No SNMP response received before timeout")

        results = []
        for oid in oids:
            value = self.values.get((host, oid))
            if isinstance(value, VarbindResult):
                results.append(value)
            elif value is None:
                results.append(VarbindResult(oid=oid, error=f"NoSuchInstance for OID {oid}"))
            else:
                results.append(VarbindResult(oid=oid, value=value))
        return results

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def probe() -> FakeProbe:
    fake = FakeProbe()
    for host in ("10.0.0.1", "10.0.0.2"):
        fake.set_counters(host, 1, 1_000, 2_000)
        fake.set_counters(host, 2, 5_000, 6_000)
    return fake


class RecordingSurface(DrawingSurface):
    """Records every drawing call; text is 7 px per character at 12 px."""

    def __init__(self, width: int = 800, height: int = 600) -> None:
        self.width = width
        self.height = height
        self.ops: List[tuple] = []

    def draw_background(self, image_path):
        self.ops.append(("background", image_path))

    def begin_path(self):
        self.ops.append(("begin",))

    def move_to(self, x, y):
        self.ops.append(("move", x, y))

    def line_to(self, x, y):
        self.ops.append(("line", x, y))

    def quad_to(self, cx, cy, x, y):
        self.ops.append(("quad", cx, cy, x, y))

    def arc(self, x, y, radius):
        self.ops.append(("arc", x, y, radius))

    def close_path(self):
        self.ops.append(("close",))

    def fill(self, color):
        self.ops.append(("fill", color))

    def stroke(self, color, width, dash=None):
        self.ops.append(("stroke", color, width, tuple(dash) if dash else None))

    def fill_rect(self, x, y, w, h, color):
        self.ops.append(("fill_rect", x, y, w, h, color))

    def stroke_rect(self, x, y, w, h, color, width):
        self.ops.append(("stroke_rect", x, y, w, h, color, width))

    def measure_text(self, text, size):
        return 7 * len(text) * size / 12

    def fill_text(self, text, x, y, color, size):
        self.ops.append(("text", text, x, y, color, size))

    def named(self, name: str) -> List[tuple]:
        return [op for op in self.ops if op[0] == name]


def iface_metrics(
    name: str,
    in_util: float = 0.0,
    out_util: float = 0.0,
    capacity: Optional[float] = 1_000_000_000,
    status: MetricStatus = MetricStatus.OK,
    error: Optional[str] = None,
) -> InterfaceMetrics:
    denominator = capacity or 1
    return InterfaceMetrics(
        name=name,
        in_bps=in_util * denominator,
        out_bps=out_util * denominator,
        in_utilization=in_util,
        out_utilization=out_util,
        status=status,
        max_bandwidth=capacity,
        capacity_known=capacity is not None,
        fresh=True,
        error=error,
    )
