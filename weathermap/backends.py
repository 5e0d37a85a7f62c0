"""
Rendering back-ends.

Both back-ends paint through `MatplotlibSurface`; the only difference is what
owns the figure:

- `LiveMapView` keeps one pyplot figure open, redraws it whenever a topology
  or metrics message arrives and supports dragging routers in layout mode.
- `SnapshotExporter` builds a fresh off-screen (Agg) figure per export and
  writes it as a timestamped PNG.

One map pixel is one figure pixel: the figure is sized width/DPI x height/DPI
inches and the axes span the whole figure with y pointing down.
"""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import matplotlib.image as mpimg
from matplotlib.backends.backend_agg import FigureCanvasAgg
from matplotlib.colors import LinearSegmentedColormap
from matplotlib.figure import Figure
from matplotlib.font_manager import FontProperties
from matplotlib.patches import PathPatch, Rectangle
from matplotlib.path import Path as MplPath
from matplotlib.textpath import TextPath

from weathermap.geometry import Point, compute_link_paths, distance
from weathermap.render import Color, DrawingSurface, build_scene, map_size, render_map
from weathermap.schemas import MetricsPayload, TopologyDefinition, TopologyPayload

log = logging.getLogger("weathermap.backends")

DPI = 100
POINTS_PER_PIXEL = 72 / DPI
FONT = FontProperties(family="DejaVu Sans")
ROUTER_HIT_RADIUS = 24

_BACKDROP = LinearSegmentedColormap.from_list("backdrop", ["#0b1120", "#111827"])


class MatplotlibSurface(DrawingSurface):
    """`DrawingSurface` over a matplotlib Axes; every call adds one artist on top."""

    def __init__(self, figure: Figure, width: int, height: int) -> None:
        self.figure = figure
        self.width = width
        self.height = height
        self.axes = None
        self._vertices: List[Tuple[float, float]] = []
        self._codes: List[int] = []
        self._subpath_start: Tuple[float, float] = (0.0, 0.0)
        self._z = 0
        self.reset()

    def reset(self) -> None:
        """Clear everything; makes the next paint start from scratch."""
        self.figure.clear()
        self.figure.set_dpi(DPI)
        self.figure.set_size_inches(self.width / DPI, self.height / DPI)
        self.axes = self.figure.add_axes((0, 0, 1, 1))
        self.axes.set_xlim(0, self.width)
        self.axes.set_ylim(self.height, 0)
        self.axes.set_axis_off()
        self._vertices = []
        self._codes = []
        self._z = 0

    def _next_z(self) -> int:
        self._z += 1
        return self._z

    def draw_background(self, image_path: Optional[Path]) -> None:
        extent = (0, self.width, self.height, 0)
        if image_path is not None and image_path.exists():
            try:
                image = mpimg.imread(str(image_path))
            except (OSError, ValueError, SyntaxError) as exc:
                log.warning("Could not load background %s: %s", image_path, exc)
            else:
                self.axes.imshow(image, extent=extent, aspect="auto", zorder=self._next_z())
                return
        # Diagonal gradient, top-left to bottom-right.
        gradient = [[(i + j) / 2 for i in (0.0, 1.0)] for j in (0.0, 1.0)]
        self.axes.imshow(
            gradient, cmap=_BACKDROP, extent=extent, aspect="auto", interpolation="bilinear", zorder=self._next_z()
        )

    def begin_path(self) -> None:
        self._vertices = []
        self._codes = []

    def move_to(self, x: float, y: float) -> None:
        self._subpath_start = (x, y)
        self._vertices.append((x, y))
        self._codes.append(MplPath.MOVETO)

    def line_to(self, x: float, y: float) -> None:
        self._vertices.append((x, y))
        self._codes.append(MplPath.LINETO)

    def quad_to(self, cx: float, cy: float, x: float, y: float) -> None:
        self._vertices.extend([(cx, cy), (x, y)])
        self._codes.extend([MplPath.CURVE3, MplPath.CURVE3])

    def arc(self, x: float, y: float, radius: float) -> None:
        circle = MplPath.circle((x, y), radius)
        self._vertices.extend(tuple(vertex) for vertex in circle.vertices)
        self._codes.extend(int(code) for code in circle.codes)

    def close_path(self) -> None:
        self._vertices.append(self._subpath_start)
        self._codes.append(MplPath.CLOSEPOLY)

    def _current_path(self) -> Optional[MplPath]:
        if not self._vertices:
            return None
        return MplPath(self._vertices, self._codes)

    def fill(self, color: Color) -> None:
        path = self._current_path()
        if path is None:
            return
        patch = PathPatch(path, facecolor=color, edgecolor="none", linewidth=0, zorder=self._next_z())
        self.axes.add_patch(patch)

    def stroke(self, color: Color, width: float, dash: Optional[Sequence[float]] = None) -> None:
        path = self._current_path()
        if path is None:
            return
        linestyle = (0, tuple(d / width for d in dash)) if dash else "solid"
        patch = PathPatch(
            path,
            fill=False,
            edgecolor=color,
            linewidth=width * POINTS_PER_PIXEL,
            linestyle=linestyle,
            capstyle="round",
            joinstyle="round",
            zorder=self._next_z(),
        )
        self.axes.add_patch(patch)

    def fill_rect(self, x: float, y: float, w: float, h: float, color: Color) -> None:
        self.axes.add_patch(Rectangle((x, y), w, h, facecolor=color, edgecolor="none", zorder=self._next_z()))

    def stroke_rect(self, x: float, y: float, w: float, h: float, color: Color, width: float) -> None:
        self.axes.add_patch(
            Rectangle((x, y), w, h, fill=False, edgecolor=color, linewidth=width * POINTS_PER_PIXEL, zorder=self._next_z())
        )

    def measure_text(self, text: str, size: float) -> float:
        if not text:
            return 0.0
        # TextPath units equal `size`, which here is pixels.
        return float(TextPath((0, 0), text, size=size, prop=FONT).get_extents().width)

    def fill_text(self, text: str, x: float, y: float, color: Color, size: float) -> None:
        self.axes.text(
            x,
            y,
            text,
            color=color,
            fontproperties=FONT,
            fontsize=size * POINTS_PER_PIXEL,
            ha="left",
            va="baseline",
            zorder=self._next_z(),
        )


# ---------------------------------------------------------------------------
# Offline PNG snapshots
# ---------------------------------------------------------------------------


class SnapshotExporter:
    """Writes `<output_dir>/YYYY-MM-DD-HH-MM-SS.png`; remembers the newest file."""

    def __init__(self, output_dir: Path, background_path: Optional[Path] = None) -> None:
        self.output_dir = output_dir
        self.background_path = background_path
        self.latest_image: Optional[Path] = None
        self._lock = threading.Lock()

    def export(
        self,
        topology: TopologyDefinition,
        snapshot: Optional[MetricsPayload],
        now: Optional[datetime] = None,
        background_path: Optional[Path] = None,
    ) -> Path:
        """`background_path` overrides the one given at construction for this export only."""
        background = background_path if background_path is not None else self.background_path
        scene = build_scene(topology, snapshot, background_path=background)
        figure = Figure()
        FigureCanvasAgg(figure)
        surface = MatplotlibSurface(figure, scene.width, scene.height)
        render_map(surface, scene)

        self.output_dir.mkdir(parents=True, exist_ok=True)
        output_path = self.output_dir / f"{(now or datetime.now()):%Y-%m-%d-%H-%M-%S}.png"
        figure.savefig(output_path, dpi=DPI)

        with self._lock:
            self.latest_image = output_path
        log.info("Map snapshot written to %s", output_path)
        return output_path


# ---------------------------------------------------------------------------
# Interactive window
# ---------------------------------------------------------------------------


class LiveMapView:
    """
    A persistent map window.

    Messages may arrive from another thread through `submit()`; they are
    applied on the GUI thread by `sync()`, which a figure timer calls.

    Layout mode ('l' toggles, Escape leaves) lets the operator drag routers.
    Every move mutates the router position and recomputes link geometry
    before the next redraw. `layout_snippet()` returns the positions as JSON
    ready to paste into config.yaml.
    """

    def __init__(self, figure: Optional[Figure] = None, background_path: Optional[Path] = None) -> None:
        if figure is None:
            import matplotlib.pyplot as plt

            figure = plt.figure()
        self.figure = figure
        self.background_path = background_path
        self.topology: Optional[TopologyDefinition] = None
        self.metrics: Optional[MetricsPayload] = None
        self.layout_mode = False
        self.surface: Optional[MatplotlibSurface] = None
        self._paths: Dict[str, List[Point]] = {}
        self._drag: Optional[Tuple[str, float, float]] = None
        self._pending: List[object] = []
        self._pending_lock = threading.Lock()

        canvas = self.figure.canvas
        canvas.mpl_connect("button_press_event", self._on_press)
        canvas.mpl_connect("motion_notify_event", self._on_motion)
        canvas.mpl_connect("button_release_event", self._on_release)
        canvas.mpl_connect("key_press_event", self._on_key)

    # -- messages ------------------------------------------------------------

    def submit(self, message) -> None:
        """Queue a topology or metrics message from any thread."""
        with self._pending_lock:
            self._pending.append(message)

    def sync(self) -> bool:
        with self._pending_lock:
            pending, self._pending = self._pending, []
        for message in pending:
            if isinstance(message, TopologyPayload):
                self.apply_topology(message, redraw=False)
            elif isinstance(message, MetricsPayload):
                self.metrics = message
        if pending:
            self.redraw()
        return bool(pending)

    def apply_topology(self, topology: TopologyDefinition, redraw: bool = True) -> None:
        # Own a copy: dragging mutates positions.
        self.topology = TopologyDefinition(**topology.model_dump())
        self._drag = None
        self._paths = compute_link_paths(self.topology)
        width, height = map_size(self.topology)
        self.surface = MatplotlibSurface(self.figure, width, height)
        if redraw:
            self.redraw()

    def apply_metrics(self, metrics: MetricsPayload) -> None:
        self.metrics = metrics
        self.redraw()

    # -- drawing -------------------------------------------------------------

    def redraw(self) -> None:
        """Repaint from current state; safe to call any number of times."""
        if self.topology is None or self.surface is None:
            return
        self.surface.reset()
        scene = build_scene(self.topology, self.metrics, self._paths, self.background_path)
        render_map(self.surface, scene, layout_mode=self.layout_mode)
        self.figure.canvas.draw_idle()

    def set_layout_mode(self, enabled: bool) -> None:
        if self.layout_mode == enabled:
            return
        self.layout_mode = enabled
        self._drag = None
        self.redraw()

    def move_router(self, router_id: str, x: float, y: float) -> None:
        if self.topology is None:
            return
        for router in self.topology.routers:
            if router.id == router_id:
                router.position.x = round(x)
                router.position.y = round(y)
                break
        else:
            return
        self._paths = compute_link_paths(self.topology)
        self.redraw()

    def find_router(self, x: float, y: float) -> Optional[str]:
        if self.topology is None:
            return None
        for router in self.topology.routers:
            if distance(Point(router.position.x, router.position.y), Point(x, y)) <= ROUTER_HIT_RADIUS:
                return router.id
        return None

    def layout_snippet(self) -> str:
        if self.topology is None:
            return ""
        positions = {
            router.id: {"position": {"x": round(router.position.x), "y": round(router.position.y)}}
            for router in self.topology.routers
        }
        return json.dumps(positions, indent=2)

    # -- pointer / keyboard --------------------------------------------------

    def _on_press(self, event) -> None:
        if not self.layout_mode or event.xdata is None or event.ydata is None:
            return
        router_id = self.find_router(event.xdata, event.ydata)
        if router_id is None:
            return
        router = self.topology.router_map()[router_id]
        self._drag = (router_id, router.position.x - event.xdata, router.position.y - event.ydata)

    def _on_motion(self, event) -> None:
        if self._drag is None or event.xdata is None or event.ydata is None:
            return
        router_id, dx, dy = self._drag
        self.move_router(router_id, event.xdata + dx, event.ydata + dy)

    def _on_release(self, event) -> None:
        self._drag = None

    def _on_key(self, event) -> None:
        if event.key == "l":
            self.set_layout_mode(not self.layout_mode)
        elif event.key == "escape":
            self.set_layout_mode(False)
        elif event.key == "c" and self.layout_mode:
            log.info("Router positions:\n%s", self.layout_snippet())
