"""
Topology configuration loader.

Reads the YAML map definition, validates it with pydantic and normalises it
into:

- a `TopologyDefinition` (what the renderer and the browser see)
- per-router poll settings (what the sampler needs: address, community, OIDs)

Example `config.yaml`:

    meta:
      title: Core network
      poll_interval_ms: 5000
    map:
      background: background.png
      size: {width: 1600, height: 900}
    routers:
      core1:
        ip: 10.0.0.1
        community: public
        position: {x: 200, y: 300}
        interfaces:
          - name: ge-0/0/0
            oid_in: 1.3.6.1.2.1.31.1.1.1.6.1
            oid_out: 1.3.6.1.2.1.31.1.1.1.10.1
            max_bandwidth: 1000000000
    links:
      - from: core1
        to: core2
        iface_from: ge-0/0/0
        iface_to: ge-0/0/1
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from weathermap.schemas import (
    InterfaceDefinition,
    LinkDefinition,
    MapSize,
    Position,
    RouterDefinition,
    TopologyDefinition,
)

log = logging.getLogger("weathermap.topology")

DEFAULT_TITLE = "Weathermap"
DEFAULT_POLL_INTERVAL_MS = 5000
BACKGROUND_ROUTE = "/background.png"


class ConfigError(Exception):
    """Raised when the topology file is missing or inconsistent."""


# ---------------------------------------------------------------------------
# Raw YAML shape
# ---------------------------------------------------------------------------


class RawInterface(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    # Kept as plain strings: a malformed OID fails that interface at poll
    # time, not the whole file.
    oid_in: str = ""
    oid_out: str = ""
    max_bandwidth: Optional[float] = None
    oid_speed: Optional[str] = None
    oid_speed_scale: Optional[float] = None
    display_name: Optional[str] = None


class RawRouter(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ip: str
    community: str
    port: int = 161
    label: Optional[str] = None
    position: Optional[Position] = None
    interfaces: List[RawInterface] = Field(default_factory=list)


class RawLink(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Optional[str] = None
    from_router: str = Field(alias="from")
    to_router: str = Field(alias="to")
    iface_from: str
    iface_to: str
    label: Optional[str] = None
    path: Optional[List[Position]] = None


class RawMeta(BaseModel):
    title: Optional[str] = None
    poll_interval_ms: Optional[int] = Field(default=None, gt=0)


class RawMap(BaseModel):
    background: Optional[str] = None
    size: Optional[MapSize] = None


class RawConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    meta: RawMeta = Field(default_factory=RawMeta)
    map: RawMap = Field(default_factory=RawMap)
    routers: Dict[str, RawRouter]
    links: List[RawLink] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Normalised runtime configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InterfacePollConfig:
    name: str
    oid_in: str
    oid_out: str
    max_bandwidth: Optional[float] = None
    oid_speed: Optional[str] = None
    oid_speed_scale: Optional[float] = None


@dataclass(frozen=True)
class RouterPollConfig:
    ip: str
    community: str
    port: int
    label: str
    interfaces: List[InterfacePollConfig]


@dataclass
class RuntimeConfig:
    topology: TopologyDefinition
    routers: Dict[str, RouterPollConfig]
    poll_interval_ms: int
    background_path: Path


def _normalise_routers(raw: Dict[str, RawRouter]):
    poll_config: Dict[str, RouterPollConfig] = {}
    definitions: List[RouterDefinition] = []

    for router_id, router in raw.items():
        if not router.ip or not router.community:
            raise ConfigError(f'Router "{router_id}" must define both ip and community')
        if not router.interfaces:
            raise ConfigError(f'Router "{router_id}" must define at least one interface')

        names = [iface.name for iface in router.interfaces]
        if len(set(names)) != len(names):
            raise ConfigError(f'Router "{router_id}" declares the same interface name twice')

        label = router.label or router_id
        poll_config[router_id] = RouterPollConfig(
            ip=router.ip,
            community=router.community,
            port=router.port,
            label=label,
            interfaces=[
                InterfacePollConfig(
                    name=iface.name,
                    oid_in=iface.oid_in,
                    oid_out=iface.oid_out,
                    max_bandwidth=iface.max_bandwidth,
                    oid_speed=iface.oid_speed,
                    oid_speed_scale=iface.oid_speed_scale,
                )
                for iface in router.interfaces
            ],
        )
        position = router.position or Position(x=0, y=0)
        definitions.append(
            RouterDefinition(
                id=router_id,
                label=label,
                position=Position(x=position.x, y=position.y),
                interfaces=[
                    InterfaceDefinition(
                        name=iface.name,
                        display_name=iface.display_name or iface.name,
                        max_bandwidth=iface.max_bandwidth,
                    )
                    for iface in router.interfaces
                ],
            )
        )

    return poll_config, definitions


def _normalise_links(raw_links: List[RawLink], routers: Dict[str, RawRouter]) -> List[LinkDefinition]:
    links: List[LinkDefinition] = []
    seen = set()

    for index, raw in enumerate(raw_links):
        link_id = raw.id or f"{raw.from_router}-{raw.to_router}-{index}"
        if link_id in seen:
            raise ConfigError(f'Link id "{link_id}" is declared more than once')
        seen.add(link_id)

        for router_id, iface_name in ((raw.from_router, raw.iface_from), (raw.to_router, raw.iface_to)):
            router = routers.get(router_id)
            if router is None:
                raise ConfigError(f'Link "{link_id}" references unknown router "{router_id}"')
            if not any(iface.name == iface_name for iface in router.interfaces):
                raise ConfigError(
                    f'Link "{link_id}" references unknown interface "{iface_name}" on router "{router_id}"'
                )

        links.append(
            LinkDefinition(
                id=link_id,
                from_router=raw.from_router,
                to_router=raw.to_router,
                iface_from=raw.iface_from,
                iface_to=raw.iface_to,
                label=raw.label,
                # An empty waypoint list means "auto-route".
                path=[Position(x=p.x, y=p.y) for p in raw.path] if raw.path else None,
            )
        )

    return links


def parse_config(document: dict, data_dir: Path) -> RuntimeConfig:
    """Validate an already-parsed YAML document and build the runtime config."""
    if not isinstance(document, dict):
        raise ConfigError("Invalid configuration file")
    try:
        raw = RawConfig.model_validate(document)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration file: {exc}") from exc

    if not raw.routers:
        raise ConfigError("Configuration must define at least one router")

    poll_config, router_definitions = _normalise_routers(raw.routers)
    links = _normalise_links(raw.links, raw.routers)

    poll_interval_ms = raw.meta.poll_interval_ms or DEFAULT_POLL_INTERVAL_MS

    background = Path(raw.map.background) if raw.map.background else Path("background.png")
    background_path = background if background.is_absolute() else data_dir / background
    if not background_path.exists():
        log.warning("Background image not found at %s; the map will use a plain backdrop", background_path)

    topology = TopologyDefinition(
        title=raw.meta.title or DEFAULT_TITLE,
        background_ref=BACKGROUND_ROUTE,
        map_size=raw.map.size,
        poll_interval_ms=poll_interval_ms,
        routers=router_definitions,
        links=links,
    )

    return RuntimeConfig(
        topology=topology,
        routers=poll_config,
        poll_interval_ms=poll_interval_ms,
        background_path=background_path,
    )


def load_runtime_config(config_path: Path, data_dir: Optional[Path] = None) -> RuntimeConfig:
    """Read and validate the YAML file at `config_path`."""
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found at {config_path}")
    try:
        with config_path.open("r", encoding="utf-8") as fh:
            document = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Could not parse {config_path}: {exc}") from exc

    return parse_config(document, data_dir if data_dir is not None else config_path.parent)


# ---------------------------------------------------------------------------
# Hot reload
# ---------------------------------------------------------------------------


class ConfigWatcher:
    """
    Poll the config file's mtime and hand every valid new version to
    `on_change`. An invalid edit is logged and ignored, so the running
    topology stays in place until the file is fixed.
    """

    def __init__(
        self,
        config_path: Path,
        on_change: Callable[[RuntimeConfig], Awaitable[None]],
        interval: float = 2.0,
        data_dir: Optional[Path] = None,
    ) -> None:
        self.config_path = config_path
        self.on_change = on_change
        self.interval = interval
        self.data_dir = data_dir
        self._last_mtime = self._mtime()

    def _mtime(self) -> Optional[float]:
        try:
            return self.config_path.stat().st_mtime
        except FileNotFoundError:
            return None

    async def check(self) -> bool:
        """Reload once if the file changed since the last check."""
        mtime = self._mtime()
        if mtime is None or mtime == self._last_mtime:
            return False
        self._last_mtime = mtime

        try:
            runtime = load_runtime_config(self.config_path, self.data_dir)
        except ConfigError as exc:
            log.error("Failed to reload configuration: %s", exc)
            return False

        log.info("Configuration reloaded from %s", self.config_path)
        await self.on_change(runtime)
        return True

    async def run(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                await self.check()
