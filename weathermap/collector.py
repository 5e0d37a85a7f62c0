"""
Headless collector process.

This module:
- loads the topology from CONFIG_PATH
- runs the poll loop (stub or real SNMP, see USE_SNMP_STUB)
- logs a one-line summary per cycle
- exports a PNG of the map every SNAPSHOT_INTERVAL_SECONDS

Run it as:

    USE_SNMP_STUB=1 python -m weathermap.collector

or (for real SNMP):

    USE_SNMP_STUB=0 python -m weathermap.collector
"""

import asyncio
import logging
from collections import Counter

from weathermap.backends import SnapshotExporter
from weathermap.config import settings, setup_logging
from weathermap.poller import Message, PeriodicExporter, PollLoop
from weathermap.schemas import MetricsPayload
from weathermap.snmp_client import get_probe
from weathermap.topology import ConfigWatcher, RuntimeConfig, load_runtime_config

log = logging.getLogger("weathermap.collector")


async def log_summary(message: Message) -> None:
    """Print router health counts for each published snapshot."""
    if not isinstance(message, MetricsPayload):
        return
    counts = Counter(router.status.value for router in message.routers.values())
    busiest = max(
        (link for link in message.links if link.aggregate_utilization is not None),
        key=lambda link: link.aggregate_utilization,
        default=None,
    )
    log.info(
        "Snapshot %s: %s%s",
        message.timestamp.isoformat(timespec="seconds"),
        ", ".join(f"{count} {status}" for status, count in sorted(counts.items())),
        f"; busiest link {busiest.id} at {busiest.aggregate_utilization:.1%}" if busiest else "",
    )


async def run() -> None:
    config_path = settings.resolved_config_path
    data_dir = settings.data_dir.resolve()
    runtime = load_runtime_config(config_path, data_dir)
    probe = get_probe(settings)

    log.info("Starting collector with %d routers", len(runtime.routers))
    log.info("Config: %s (stub SNMP: %s)", config_path, settings.use_snmp_stub)

    poll_loop = PollLoop(runtime, probe, target_timeout=settings.target_timeout_seconds)
    poll_loop.subscribe(log_summary)
    if settings.snapshot_interval_seconds > 0:
        exporter = SnapshotExporter(settings.resolved_snapshot_dir, runtime.background_path)
        poll_loop.subscribe(PeriodicExporter(exporter, poll_loop, settings.snapshot_interval_seconds))

    async def on_config_change(new_runtime: RuntimeConfig) -> None:
        poll_loop.replace_topology(new_runtime)

    watcher = ConfigWatcher(config_path, on_config_change, settings.config_watch_interval_seconds, data_dir)

    stop = asyncio.Event()
    try:
        await asyncio.gather(poll_loop.run_forever(stop), watcher.run(stop))
    finally:
        await probe.close()


def main() -> None:
    setup_logging()
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        log.info("Collector stopped")


if __name__ == "__main__":
    main()
