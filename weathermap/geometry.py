"""
Link geometry.

Pure functions shared by every renderer:

- fan-out of parallel links between the same two routers
- splitting a polyline at half its arc length, so a link can be drawn as two
  independently coloured halves (forward / reverse)
- mapping link capacity to a stroke width

Nothing here raises on degenerate input; zero-length and single-point paths
get an explicit fallback instead.
"""

import math
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from weathermap.schemas import LinkDefinition, TopologyDefinition

MIN_SPACING = 40.0
MAX_SPACING = 160.0

MIN_LINK_WIDTH = 2.0
MAX_LINK_WIDTH = 14.0


class Point(NamedTuple):
    x: float
    y: float


Path = List[Point]


class SplitPath(NamedTuple):
    midpoint: Point
    first_half: Path
    second_half: Path


def distance(a: Point, b: Point) -> float:
    return math.hypot(b.x - a.x, b.y - a.y)


def fan_out_spacing(length: float) -> float:
    return min(MAX_SPACING, max(MIN_SPACING, length / 3))


def fan_out_offset(length: float, group_size: int, index: int) -> float:
    """Signed perpendicular offset of member `index` in a group of `group_size`."""
    return (index - (group_size - 1) / 2) * fan_out_spacing(length)


def compute_auto_path(start: Point, end: Point, group_size: int, index: int) -> Path:
    """
    Path for member `index` of `group_size` links sharing the same endpoints.

    A single link, or the member whose offset rounds to nothing, is a straight
    [start, end]. Other members get a control point pushed perpendicular to
    the straight line at its midpoint, giving [start, control, end].
    """
    dx = end.x - start.x
    dy = end.y - start.y
    length = math.hypot(dx, dy) or 1.0
    offset = fan_out_offset(length, group_size, index)

    if group_size == 1 or abs(offset) < 1:
        return [start, end]

    midpoint = Point(start.x + dx / 2, start.y + dy / 2)
    perpendicular = Point(-dy / length, dx / length)
    control = Point(midpoint.x + perpendicular.x * offset, midpoint.y + perpendicular.y * offset)
    return [start, control, end]


def group_key(link: LinkDefinition) -> Tuple[str, str]:
    a, b = sorted((link.from_router, link.to_router))
    return a, b


def compute_link_paths(topology: TopologyDefinition) -> Dict[str, Path]:
    """
    Path for every link whose routers exist.

    Links carrying manual waypoints are drawn through them verbatim and skip
    fan-out; they still count towards their group's size so auto-routed
    siblings keep the same offsets.
    """
    routers = topology.router_map()
    groups: Dict[Tuple[str, str], List[LinkDefinition]] = {}
    for link in topology.links:
        groups.setdefault(group_key(link), []).append(link)

    paths: Dict[str, Path] = {}
    for group in groups.values():
        group.sort(key=lambda link: link.id)
        for index, link in enumerate(group):
            from_router = routers.get(link.from_router)
            to_router = routers.get(link.to_router)
            if from_router is None or to_router is None:
                continue
            start = Point(from_router.position.x, from_router.position.y)
            end = Point(to_router.position.x, to_router.position.y)

            if link.path:
                paths[link.id] = [start] + [Point(p.x, p.y) for p in link.path] + [end]
            else:
                paths[link.id] = compute_auto_path(start, end, len(group), index)

    return paths


def split_path_at_half(path: Sequence[Point]) -> SplitPath:
    """
    Split `path` at half its total length.

    The split point ends `first_half` and starts `second_half`. Degenerate
    input: no points -> the origin; one point -> that point for everything.
    A zero-length path (all vertices coincide) splits at the middle vertex
    with halves [first, middle] and [middle, last]; the points coincide, so
    each half is still a single location, but stroking it yields a dot.
    """
    if not path:
        origin = Point(0.0, 0.0)
        return SplitPath(origin, [origin], [origin])

    points = [Point(*p) for p in path]
    if len(points) == 1:
        return SplitPath(points[0], [points[0]], [points[0]])

    segment_lengths = [distance(points[i], points[i + 1]) for i in range(len(points) - 1)]
    total = sum(segment_lengths)

    if total == 0:
        midpoint = points[len(points) // 2]
        return SplitPath(midpoint, [points[0], midpoint], [midpoint, points[-1]])

    halfway = total / 2
    accumulated = 0.0
    for i, length in enumerate(segment_lengths):
        if accumulated + length >= halfway:
            start, end = points[i], points[i + 1]
            ratio = (halfway - accumulated) / length if length else 0.0
            midpoint = Point(start.x + (end.x - start.x) * ratio, start.y + (end.y - start.y) * ratio)
            return SplitPath(midpoint, points[: i + 1] + [midpoint], [midpoint] + points[i + 1:])
        accumulated += length

    # Only reachable through floating point drift.
    return SplitPath(points[-1], points, [points[-1]])


def path_midpoint(path: Sequence[Point]) -> Point:
    return split_path_at_half(path).midpoint


def capacity_to_width(capacity: Optional[float], observed_range: Optional[Tuple[float, float]]) -> float:
    """
    Stroke width for a link, log-linear between MIN_LINK_WIDTH and
    MAX_LINK_WIDTH across the smallest and largest capacity on the map.
    """
    if not capacity or observed_range is None:
        return MIN_LINK_WIDTH
    low, high = observed_range
    if capacity <= 0 or low <= 0:
        return MIN_LINK_WIDTH
    if high == low:
        return (MIN_LINK_WIDTH + MAX_LINK_WIDTH) / 2

    t = (math.log(capacity) - math.log(low)) / (math.log(high) - math.log(low))
    t = min(1.0, max(0.0, t))
    return MIN_LINK_WIDTH + (MAX_LINK_WIDTH - MIN_LINK_WIDTH) * t
