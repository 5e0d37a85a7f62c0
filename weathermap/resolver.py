"""
Topology resolver.

Joins one cycle's per-router samples with the topology definition:

- every configured router and interface gets an entry; anything missing from
  the cycle is reported as an error ("No SNMP data"), never silently dropped
- every link gets forward metrics (from-router/iface-from), reverse metrics
  (to-router/iface-to), an aggregate utilization and the worse endpoint status
- link capacities (for stroke widths) are the smallest positive capacity of
  the two endpoints

The resolver trusts the config loader's referential integrity.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from weathermap.sampler import TargetSample, combine_statuses
from weathermap.schemas import (
    InterfaceDefinition,
    InterfaceMetrics,
    LinkDefinition,
    LinkMetrics,
    MetricsPayload,
    MetricStatus,
    RouterDefinition,
    RouterMetrics,
    TopologyDefinition,
)

NO_DATA = "No SNMP data"
MISSING_INTERFACE = "Interface missing from SNMP poll"


def _error_interface(iface: InterfaceDefinition, message: str) -> InterfaceMetrics:
    return InterfaceMetrics(
        name=iface.name,
        status=MetricStatus.ERROR,
        max_bandwidth=iface.max_bandwidth if iface.max_bandwidth and iface.max_bandwidth > 0 else None,
        capacity_known=bool(iface.max_bandwidth and iface.max_bandwidth > 0),
        fresh=False,
        error=message,
    )


def to_router_metrics(
    topology: TopologyDefinition,
    samples: Mapping[str, Optional[TargetSample]],
) -> Dict[str, RouterMetrics]:
    metrics: Dict[str, RouterMetrics] = {}

    for router in topology.routers:
        sample = samples.get(router.id)

        if sample is None or (sample.error and not sample.interfaces):
            message = sample.error if sample is not None else NO_DATA
            metrics[router.id] = RouterMetrics(
                id=router.id,
                label=router.label,
                status=MetricStatus.ERROR,
                error=message,
                interfaces={iface.name: _error_interface(iface, message) for iface in router.interfaces},
            )
            continue

        interfaces: Dict[str, InterfaceMetrics] = {}
        for iface in router.interfaces:
            found = sample.interfaces.get(iface.name)
            interfaces[iface.name] = found if found is not None else _error_interface(iface, MISSING_INTERFACE)

        metrics[router.id] = RouterMetrics(
            id=router.id,
            label=router.label,
            status=combine_statuses([sample.status] + [iface.status for iface in interfaces.values()]),
            interfaces=interfaces,
            error=sample.error,
        )

    return metrics


def aggregate_utilization(forward: Optional[float], reverse: Optional[float]) -> Optional[float]:
    """max() of the present directions, None when neither has data."""
    present = [value for value in (forward, reverse) if value is not None]
    return max(present) if present else None


def link_status(forward: Optional[InterfaceMetrics], reverse: Optional[InterfaceMetrics]) -> MetricStatus:
    if forward is None or reverse is None:
        return MetricStatus.ERROR
    return combine_statuses([forward.status, reverse.status])


def to_link_metrics(routers: Mapping[str, RouterMetrics], links: Iterable[LinkDefinition]) -> List[LinkMetrics]:
    result: List[LinkMetrics] = []
    for link in links:
        from_router = routers.get(link.from_router)
        to_router = routers.get(link.to_router)
        forward = from_router.interfaces.get(link.iface_from) if from_router else None
        reverse = to_router.interfaces.get(link.iface_to) if to_router else None

        result.append(
            LinkMetrics(
                id=link.id,
                label=link.label,
                from_router=link.from_router,
                to_router=link.to_router,
                forward=forward,
                reverse=reverse,
                aggregate_utilization=aggregate_utilization(
                    forward.utilization if forward else None,
                    reverse.utilization if reverse else None,
                ),
                status=link_status(forward, reverse),
            )
        )
    return result


def build_snapshot(
    topology: TopologyDefinition,
    samples: Mapping[str, Optional[TargetSample]],
    timestamp: datetime,
) -> MetricsPayload:
    routers = to_router_metrics(topology, samples)
    return MetricsPayload(
        timestamp=timestamp,
        routers=routers,
        links=to_link_metrics(routers, topology.links),
    )


# ---------------------------------------------------------------------------
# Capacities
# ---------------------------------------------------------------------------


def _endpoint_capacity(
    topology_routers: Mapping[str, RouterDefinition],
    snapshot: Optional[MetricsPayload],
    router_id: str,
    iface_name: str,
) -> Optional[float]:
    if snapshot is not None:
        router_metrics = snapshot.routers.get(router_id)
        iface_metrics = router_metrics.interfaces.get(iface_name) if router_metrics else None
        if iface_metrics is not None and iface_metrics.capacity_known:
            return iface_metrics.max_bandwidth

    router = topology_routers.get(router_id)
    iface = router.interface(iface_name) if router else None
    return iface.max_bandwidth if iface else None


def link_capacities(
    topology: TopologyDefinition,
    snapshot: Optional[MetricsPayload] = None,
) -> Dict[str, Optional[float]]:
    """
    Capacity per link id: min of the positive endpoint capacities, else None.

    Effective capacities from `snapshot` (which include probed speeds) win over
    the statically configured ones.
    """
    routers = topology.router_map()
    capacities: Dict[str, Optional[float]] = {}
    for link in topology.links:
        candidates = [
            value
            for value in (
                _endpoint_capacity(routers, snapshot, link.from_router, link.iface_from),
                _endpoint_capacity(routers, snapshot, link.to_router, link.iface_to),
            )
            if value is not None and value > 0
        ]
        capacities[link.id] = min(candidates) if candidates else None
    return capacities


def capacity_range(capacities: Iterable[Optional[float]]) -> Optional[Tuple[float, float]]:
    values = [value for value in capacities if value is not None and value > 0]
    if not values:
        return None
    return min(values), max(values)
