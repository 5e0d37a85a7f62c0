"""
Pydantic models ("schemas") shared by the poller, the renderer and the API.

Two families live here:

- the topology definition (routers, interfaces, links) that the config loader
  produces and the renderer draws. Router positions are mutable because the
  interactive map lets an operator drag routers around.
- the per-cycle metrics snapshot. These models are frozen, collections
  included: a snapshot is built once per poll cycle and then only ever read.

Field names are snake_case in Python and camelCase on the wire
(`model_dump(by_alias=True)`), which is the shape the browser expects.
"""

from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Tuple, TypeVar

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, WrapSerializer
from pydantic.alias_generators import to_camel


class MetricStatus(str, Enum):
    """Health of an interface, router or link, ordered by severity."""

    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"
    ERROR = "error"

    @property
    def severity(self) -> int:
        return list(MetricStatus).index(self)


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_message(self) -> Dict[str, Any]:
        """JSON-ready dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


class FrozenWireModel(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


V = TypeVar("V")


def _dump_mapping(value: Mapping[str, Any], handler) -> Any:
    return handler(dict(value))


# A dict on the way in, a read-only mapping once validated, a plain object on
# the wire. Snapshots are shared between subscribers and threads.
ReadOnlyMap = Annotated[Dict[str, V], AfterValidator(MappingProxyType), WrapSerializer(_dump_mapping)]


# ---------------------------------------------------------------------------
# Topology
# ---------------------------------------------------------------------------


class Position(WireModel):
    x: float
    y: float


class MapSize(WireModel):
    width: int
    height: int


class InterfaceDefinition(WireModel):
    name: str
    display_name: str
    max_bandwidth: Optional[float] = None


class RouterDefinition(WireModel):
    id: str
    label: str
    position: Position
    interfaces: List[InterfaceDefinition]

    def interface(self, name: str) -> Optional[InterfaceDefinition]:
        for iface in self.interfaces:
            if iface.name == name:
                return iface
        return None


class LinkDefinition(WireModel):
    id: str
    from_router: str = Field(alias="from")
    to_router: str = Field(alias="to")
    iface_from: str
    iface_to: str
    label: Optional[str] = None
    path: Optional[List[Position]] = None


class TopologyDefinition(WireModel):
    """
    A validated topology.

    Every link endpoint is guaranteed (by the config loader) to reference a
    declared router and interface; consumers do not re-check that.
    """

    title: str
    background_ref: str
    map_size: Optional[MapSize] = None
    poll_interval_ms: int
    routers: List[RouterDefinition]
    links: List[LinkDefinition]

    def router_map(self) -> Dict[str, RouterDefinition]:
        return {router.id: router for router in self.routers}


class TopologyPayload(TopologyDefinition):
    """Push message sent on connect and whenever the configuration is replaced."""

    type: Literal["topology"] = "topology"

    @classmethod
    def from_topology(cls, topology: TopologyDefinition) -> "TopologyPayload":
        return cls(**topology.model_dump())


# ---------------------------------------------------------------------------
# Metrics snapshot
# ---------------------------------------------------------------------------


class InterfaceMetrics(FrozenWireModel):
    """
    Derived metrics for one interface in one cycle.

    - in_bps / out_bps:       rates from the counter delta (0 when not fresh)
    - in/out_utilization:     rate / max_bandwidth; when the capacity is unknown
                              the rate is divided by 1 and `capacity_known` is
                              False, so the number must not be read as a ratio
    - fresh:                  both rates come from a valid, non-wrapped delta
    """

    name: str
    in_bps: float = 0.0
    out_bps: float = 0.0
    in_utilization: float = 0.0
    out_utilization: float = 0.0
    status: MetricStatus = MetricStatus.OK
    max_bandwidth: Optional[float] = None
    capacity_known: bool = False
    fresh: bool = False
    error: Optional[str] = None

    @property
    def utilization(self) -> Optional[float]:
        """Worst direction, or None when there is no capacity to compare against."""
        if not self.capacity_known:
            return None
        return max(self.in_utilization, self.out_utilization)


class RouterMetrics(FrozenWireModel):
    id: str
    label: str
    status: MetricStatus
    interfaces: ReadOnlyMap[InterfaceMetrics]
    error: Optional[str] = None


class LinkMetrics(FrozenWireModel):
    """
    Both directions of one link. `status` is the worse endpoint status, or
    error when an endpoint has no metrics at all.
    """

    id: str
    label: Optional[str] = None
    from_router: str = Field(alias="from")
    to_router: str = Field(alias="to")
    forward: Optional[InterfaceMetrics] = None
    reverse: Optional[InterfaceMetrics] = None
    aggregate_utilization: Optional[float] = None
    status: MetricStatus = MetricStatus.ERROR


class MetricsPayload(FrozenWireModel):
    """One poll cycle's complete result, published atomically."""

    type: Literal["metrics"] = "metrics"
    timestamp: datetime
    routers: ReadOnlyMap[RouterMetrics]
    links: Tuple[LinkMetrics, ...]

    def link(self, link_id: str) -> Optional[LinkMetrics]:
        for link in self.links:
            if link.id == link_id:
                return link
        return None
