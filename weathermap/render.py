"""
Map renderer.

All drawing decisions (what to draw, where, in which colour) live here and
are expressed against the small `DrawingSurface` interface. The live window
and the PNG exporter in `weathermap.backends` only implement the surface,
so the two can never disagree about how a map looks.

Drawing order: background, links (forward half then reverse half, then the
optional label box), routers (marker then label box), layout rings, legend.
"""

import abc
import math
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path as FilePath
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple, Union

from weathermap.geometry import Path, Point, capacity_to_width, compute_link_paths, split_path_at_half
from weathermap.resolver import capacity_range, link_capacities
from weathermap.schemas import MetricsPayload, MetricStatus, TopologyDefinition

# Hex string or an (r, g, b, a) tuple with components in 0..1.
Color = Union[str, Tuple[float, float, float, float]]

DEFAULT_SIZE = (1600, 900)
FONT_SIZE = 12
TITLE_FONT_SIZE = 16


def _rgba(r: int, g: int, b: int, a: float) -> Tuple[float, float, float, float]:
    return (r / 255, g / 255, b / 255, a)


class UtilizationBucket(NamedTuple):
    low: float
    high: float
    color: str
    label: str


UTILIZATION_BUCKETS = (
    UtilizationBucket(0.0, 0.01, "#0ea5e9", "0-1%"),
    UtilizationBucket(0.01, 0.2, "#22c55e", "1-20%"),
    UtilizationBucket(0.2, 0.4, "#84cc16", "20-40%"),
    UtilizationBucket(0.4, 0.6, "#facc15", "40-60%"),
    UtilizationBucket(0.6, 0.8, "#f97316", "60-80%"),
    UtilizationBucket(0.8, 0.9, "#ea580c", "80-90%"),
    UtilizationBucket(0.9, 0.99, "#ef4444", "90-99%"),
    UtilizationBucket(0.99, 1.01, "#991b1b", "99-100%"),
)
UNKNOWN_COLOR = "#5a646d"

STATUS_COLORS: Dict[MetricStatus, str] = {
    MetricStatus.OK: "#22c55e",
    MetricStatus.WARNING: "#f97316",
    MetricStatus.CRITICAL: "#ef4444",
    MetricStatus.ERROR: "#f87171",
}

BOX_FILL = _rgba(15, 23, 42, 0.85)
LINK_BOX_BORDER = _rgba(148, 163, 184, 0.7)
ROUTER_BOX_BORDER = _rgba(148, 163, 184, 0.6)
TEXT_COLOR = "#e2e8f0"
PANEL_FILL = _rgba(15, 23, 42, 0.82)
PANEL_BORDER = _rgba(59, 130, 246, 0.35)
PANEL_MUTED_TEXT = _rgba(226, 232, 240, 0.8)
LEGEND_TEXT = _rgba(226, 232, 240, 0.85)
SWATCH_BORDER = _rgba(15, 23, 42, 0.4)
LAYOUT_RING = _rgba(59, 130, 246, 0.8)

ROUTER_RADIUS = 12
LAYOUT_RING_RADIUS = 20


def util_to_color(utilization: Optional[float]) -> str:
    """
    Colour for a utilization ratio.

    Anything at or past 0.99 (including >100%) lands in the last bucket;
    None, NaN and negative values are "unknown".
    """
    if utilization is None or math.isnan(utilization) or utilization < 0:
        return UNKNOWN_COLOR
    for bucket in UTILIZATION_BUCKETS:
        if bucket.low <= utilization < bucket.high:
            return bucket.color
    return UTILIZATION_BUCKETS[-1].color


def status_color(status: Optional[MetricStatus]) -> str:
    if status is None:
        return UNKNOWN_COLOR
    return STATUS_COLORS.get(status, STATUS_COLORS[MetricStatus.ERROR])


# ---------------------------------------------------------------------------
# Drawing surface
# ---------------------------------------------------------------------------


class DrawingSurface(abc.ABC):
    """
    Minimal 2-D canvas. Coordinates are map pixels, y pointing down.

    A path is built with begin_path/move_to/line_to/quad_to/arc/close_path and
    consumed by fill or stroke (which may both be called on the same path).
    """

    width: int
    height: int

    @abc.abstractmethod
    def draw_background(self, image_path: Optional[FilePath]) -> None:
        ...

    @abc.abstractmethod
    def begin_path(self) -> None:
        ...

    @abc.abstractmethod
    def move_to(self, x: float, y: float) -> None:
        ...

    @abc.abstractmethod
    def line_to(self, x: float, y: float) -> None:
        ...

    @abc.abstractmethod
    def quad_to(self, cx: float, cy: float, x: float, y: float) -> None:
        ...

    @abc.abstractmethod
    def arc(self, x: float, y: float, radius: float) -> None:
        """Full circle as a closed sub-path."""

    @abc.abstractmethod
    def close_path(self) -> None:
        ...

    @abc.abstractmethod
    def fill(self, color: Color) -> None:
        ...

    @abc.abstractmethod
    def stroke(self, color: Color, width: float, dash: Optional[Sequence[float]] = None) -> None:
        ...

    @abc.abstractmethod
    def fill_rect(self, x: float, y: float, w: float, h: float, color: Color) -> None:
        ...

    @abc.abstractmethod
    def stroke_rect(self, x: float, y: float, w: float, h: float, color: Color, width: float) -> None:
        ...

    @abc.abstractmethod
    def measure_text(self, text: str, size: float) -> float:
        """Advance width of `text` in pixels."""

    @abc.abstractmethod
    def fill_text(self, text: str, x: float, y: float, color: Color, size: float) -> None:
        """Draw `text` with its baseline starting at (x, y)."""


# ---------------------------------------------------------------------------
# Scene: everything the painter needs, computed once
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LinkScene:
    link_id: str
    path: Path
    forward_utilization: Optional[float]
    reverse_utilization: Optional[float]
    width: float
    label: Optional[str]


@dataclass(frozen=True)
class RouterScene:
    router_id: str
    label: str
    position: Point
    status: Optional[MetricStatus]


@dataclass(frozen=True)
class Scene:
    width: int
    height: int
    title: str
    updated_label: str
    background_path: Optional[FilePath]
    links: List[LinkScene]
    routers: List[RouterScene]


def map_size(topology: TopologyDefinition) -> Tuple[int, int]:
    if topology.map_size is not None:
        return topology.map_size.width, topology.map_size.height
    return DEFAULT_SIZE


def build_scene(
    topology: TopologyDefinition,
    snapshot: Optional[MetricsPayload],
    paths: Optional[Dict[str, Path]] = None,
    background_path: Optional[FilePath] = None,
) -> Scene:
    """
    Resolve a topology and (possibly absent) snapshot into drawable values.

    Without a snapshot, routers and links use the neutral colour and the
    legend says "Waiting for data…".
    """
    width, height = map_size(topology)
    if paths is None:
        paths = compute_link_paths(topology)
    capacities = link_capacities(topology, snapshot)
    observed = capacity_range(capacities.values())
    routers = topology.router_map()

    links: List[LinkScene] = []
    for link in topology.links:
        from_router = routers.get(link.from_router)
        to_router = routers.get(link.to_router)
        if from_router is None or to_router is None:
            continue
        metrics = snapshot.link(link.id) if snapshot is not None else None
        path = paths.get(link.id) or [
            Point(from_router.position.x, from_router.position.y),
            Point(to_router.position.x, to_router.position.y),
        ]
        links.append(
            LinkScene(
                link_id=link.id,
                path=path,
                forward_utilization=metrics.forward.utilization if metrics and metrics.forward else None,
                reverse_utilization=metrics.reverse.utilization if metrics and metrics.reverse else None,
                width=capacity_to_width(capacities.get(link.id), observed),
                label=(metrics.label if metrics else None) or link.label,
            )
        )

    router_scenes: List[RouterScene] = []
    for router in topology.routers:
        status: Optional[MetricStatus] = None
        if snapshot is not None:
            router_metrics = snapshot.routers.get(router.id)
            status = router_metrics.status if router_metrics else MetricStatus.ERROR
        router_scenes.append(
            RouterScene(router.id, router.label, Point(router.position.x, router.position.y), status)
        )

    return Scene(
        width=width,
        height=height,
        title=topology.title,
        updated_label=format_updated(snapshot.timestamp if snapshot else None),
        background_path=background_path,
        links=links,
        routers=router_scenes,
    )


def format_updated(timestamp: Optional[datetime]) -> str:
    if timestamp is None:
        return "Waiting for data…"
    return f"Last updated {timestamp:%Y-%m-%d %H:%M:%S}"


# ---------------------------------------------------------------------------
# Painting
# ---------------------------------------------------------------------------


def rounded_rect(surface: DrawingSurface, x: float, y: float, w: float, h: float, radius: float) -> None:
    r = min(radius, w / 2, h / 2)
    surface.begin_path()
    surface.move_to(x + r, y)
    surface.line_to(x + w - r, y)
    surface.quad_to(x + w, y, x + w, y + r)
    surface.line_to(x + w, y + h - r)
    surface.quad_to(x + w, y + h, x + w - r, y + h)
    surface.line_to(x + r, y + h)
    surface.quad_to(x, y + h, x, y + h - r)
    surface.line_to(x, y + r)
    surface.quad_to(x, y, x + r, y)
    surface.close_path()


def trace_path(surface: DrawingSurface, points: Sequence[Point]) -> None:
    """Straight for two points; otherwise smoothed through segment midpoints."""
    surface.begin_path()
    surface.move_to(points[0].x, points[0].y)
    if len(points) == 2:
        surface.line_to(points[1].x, points[1].y)
        return
    for current, following in zip(points[1:-1], points[2:]):
        surface.quad_to(current.x, current.y, (current.x + following.x) / 2, (current.y + following.y) / 2)
    surface.line_to(points[-1].x, points[-1].y)


def draw_label_box(
    surface: DrawingSurface,
    text: str,
    center_x: float,
    top: float,
    box_height: float,
    border: Color,
    baseline_offset: float,
) -> None:
    padding = 6
    text_width = surface.measure_text(text, FONT_SIZE)
    box_width = text_width + padding * 2
    rounded_rect(surface, center_x - box_width / 2, top, box_width, box_height, 4)
    surface.fill(BOX_FILL)
    surface.stroke(border, 1)
    surface.fill_text(text, center_x - text_width / 2, top + baseline_offset, TEXT_COLOR, FONT_SIZE)


def draw_link(surface: DrawingSurface, link: LinkScene) -> None:
    if len(link.path) < 2:
        return
    midpoint, first_half, second_half = split_path_at_half(link.path)

    for half, utilization in ((first_half, link.forward_utilization), (second_half, link.reverse_utilization)):
        if len(half) >= 2:
            trace_path(surface, half)
            surface.stroke(util_to_color(utilization), link.width)

    if link.label:
        box_height = 18
        draw_label_box(
            surface, link.label, midpoint.x, midpoint.y - box_height / 2, box_height, LINK_BOX_BORDER, box_height / 2 + 4
        )


def draw_router(surface: DrawingSurface, router: RouterScene) -> None:
    surface.begin_path()
    surface.arc(router.position.x, router.position.y, ROUTER_RADIUS)
    surface.fill(status_color(router.status))

    draw_label_box(surface, router.label, router.position.x, router.position.y + 18, 20, ROUTER_BOX_BORDER, 14)


def draw_layout_ring(surface: DrawingSurface, router: RouterScene) -> None:
    surface.begin_path()
    surface.arc(router.position.x, router.position.y, LAYOUT_RING_RADIUS)
    surface.stroke(LAYOUT_RING, 1.5, dash=(6, 6))


def draw_legend(surface: DrawingSurface, title: str, updated_label: str, width: float) -> None:
    panel_width = 280
    panel_height = 250
    padding = 16
    x = width - panel_width - padding
    y = padding

    rounded_rect(surface, x, y, panel_width, panel_height, 18)
    surface.fill(PANEL_FILL)
    surface.stroke(PANEL_BORDER, 1.2)

    surface.fill_text(title, x + 20, y + 32, TEXT_COLOR, TITLE_FONT_SIZE)
    surface.fill_text(updated_label, x + 20, y + 52, PANEL_MUTED_TEXT, FONT_SIZE)

    top = y + 72
    for index, bucket in enumerate(UTILIZATION_BUCKETS):
        item_y = top + index * 18
        surface.fill_rect(x + 20, item_y, 18, 18, bucket.color)
        surface.stroke_rect(x + 20, item_y, 18, 18, SWATCH_BORDER, 1)
        surface.fill_text(bucket.label, x + 48, item_y + 14, LEGEND_TEXT, FONT_SIZE)


def render_map(surface: DrawingSurface, scene: Scene, layout_mode: bool = False) -> None:
    surface.draw_background(scene.background_path)
    for link in scene.links:
        draw_link(surface, link)
    for router in scene.routers:
        draw_router(surface, router)
    if layout_mode:
        for router in scene.routers:
            draw_layout_ring(surface, router)
    draw_legend(surface, scene.title, scene.updated_label, scene.width)
