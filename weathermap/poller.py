"""
Poll loop.

One cycle:

    IDLE -> POLLING   apply a pending topology replacement, then sample every
                      router concurrently
         -> PUBLISH   merge the samples into one MetricsPayload, swap it in as
                      `latest`, notify subscribers
         -> SCHEDULED wait poll_interval_ms
         -> IDLE

The next cycle never starts before the previous one (including its counter
cache writes) has finished. A cycle that blows up is logged; the previous
snapshot keeps being served and the loop carries on.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Union

from weathermap.resolver import build_snapshot
from weathermap.sampler import CounterCache, TargetSample, sample_target
from weathermap.schemas import MetricsPayload, MetricStatus, TopologyPayload
from weathermap.topology import RuntimeConfig

log = logging.getLogger("weathermap.poller")

Message = Union[TopologyPayload, MetricsPayload]
Subscriber = Callable[[Message], Awaitable[None]]


class LoopState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    PUBLISH = "publish"
    SCHEDULED = "scheduled"


class PollLoop:
    """
    Owns the runtime config, the counter cache and the latest snapshot.

    `replace_topology()` only records the new config; it takes effect
    wholesale at the top of the next cycle.
    """

    def __init__(
        self,
        runtime: RuntimeConfig,
        probe,
        target_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.runtime = runtime
        self.probe = probe
        self.target_timeout = target_timeout if target_timeout else None
        self.clock = clock
        self.cache = CounterCache()
        self.latest: Optional[MetricsPayload] = None
        self.state = LoopState.IDLE
        self._pending: Optional[RuntimeConfig] = None
        self._subscribers: List[Subscriber] = []

    @property
    def topology_message(self) -> TopologyPayload:
        return TopologyPayload.from_topology(self.runtime.topology)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register `callback` for every published message; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def publish(self, message: Message) -> None:
        for callback in list(self._subscribers):
            try:
                await callback(message)
            except Exception:
                log.exception("Subscriber %r failed to handle %s message", callback, message.type)

    def replace_topology(self, runtime: RuntimeConfig) -> None:
        self._pending = runtime

    async def _apply_pending(self) -> None:
        runtime, self._pending = self._pending, None
        if runtime is None:
            return
        self.runtime = runtime
        evicted = self.cache.evict(runtime)
        log.info(
            "Topology replaced: %d routers, %d links (%d stale counter entries evicted)",
            len(runtime.topology.routers),
            len(runtime.topology.links),
            evicted,
        )
        await self.publish(self.topology_message)

    async def _sample(self, router_id: str, now_ms: float) -> TargetSample:
        router = self.runtime.routers[router_id]
        coro = sample_target(router_id, router, self.probe, self.cache, now_ms)
        if self.target_timeout is None:
            return await coro
        try:
            return await asyncio.wait_for(coro, timeout=self.target_timeout)
        except asyncio.TimeoutError:
            log.warning("[%s] Timed out after %.1fs", router_id, self.target_timeout)
            return TargetSample(
                status=MetricStatus.ERROR,
                interfaces={},
                error=f"Timed out after {self.target_timeout:g}s",
            )

    async def run_cycle(self) -> MetricsPayload:
        await self._apply_pending()
        runtime = self.runtime

        self.state = LoopState.POLLING
        now_ms = self.clock() * 1000
        router_ids = list(runtime.routers)
        results = await asyncio.gather(
            *(self._sample(router_id, now_ms) for router_id in router_ids),
            return_exceptions=True,
        )

        samples: Dict[str, Optional[TargetSample]] = {}
        for router_id, result in zip(router_ids, results):
            if isinstance(result, Exception):
                log.error("[%s] Sampling failed: %s", router_id, result, exc_info=result)
                samples[router_id] = TargetSample(
                    status=MetricStatus.ERROR, interfaces={}, error=str(result) or result.__class__.__name__
                )
            elif isinstance(result, BaseException):
                raise result
            else:
                samples[router_id] = result

        self.state = LoopState.PUBLISH
        snapshot = build_snapshot(runtime.topology, samples, datetime.now(timezone.utc))
        self.latest = snapshot
        await self.publish(snapshot)
        return snapshot

    def interval_seconds(self) -> float:
        return self.runtime.poll_interval_ms / 1000

    async def run_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        stop = stop or asyncio.Event()
        log.info("Starting poll loop: %d routers every %.1fs", len(self.runtime.routers), self.interval_seconds())

        while not stop.is_set():
            try:
                await self.run_cycle()
            except Exception:
                log.exception("Poll cycle failed; keeping the previous snapshot")

            self.state = LoopState.SCHEDULED
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval_seconds())
            except asyncio.TimeoutError:
                pass
            self.state = LoopState.IDLE

        log.info("Poll loop stopped")


class PeriodicExporter:
    """
    Subscriber that renders a PNG at most every `interval` seconds.

    Rendering runs in a worker thread so the poll loop is not blocked.
    """

    def __init__(self, exporter, loop: PollLoop, interval: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.exporter = exporter
        self.loop = loop
        self.interval = interval
        self.clock = clock
        self._last_export: Optional[float] = None

    async def __call__(self, message: Message) -> None:
        if not isinstance(message, MetricsPayload):
            return
        now = self.clock()
        if self._last_export is not None and now - self._last_export < self.interval:
            return
        self._last_export = now
        runtime = self.loop.runtime
        await asyncio.to_thread(
            self.exporter.export, runtime.topology, message, background_path=runtime.background_path
        )
