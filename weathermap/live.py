"""
Interactive map window.

Runs the poll loop on a background thread and shows the map in a matplotlib
window that refreshes whenever a new snapshot is published.

    python -m weathermap.live

Keys: `l` toggles layout mode (drag routers with the mouse), `c` logs the
current router positions as JSON, Escape leaves layout mode.
"""

import asyncio
import logging
import threading

import matplotlib.pyplot as plt

from weathermap.backends import LiveMapView
from weathermap.config import settings, setup_logging
from weathermap.poller import Message, PollLoop
from weathermap.snmp_client import get_probe
from weathermap.topology import ConfigWatcher, RuntimeConfig, load_runtime_config

log = logging.getLogger("weathermap.live")

REFRESH_MS = 250


def _run_poller(poll_loop: PollLoop, watcher: ConfigWatcher, stop_flag: threading.Event) -> None:
    async def runner() -> None:
        stop = asyncio.Event()

        async def watch_stop_flag() -> None:
            while not stop_flag.is_set():
                await asyncio.sleep(0.2)
            stop.set()

        try:
            await asyncio.gather(poll_loop.run_forever(stop), watcher.run(stop), watch_stop_flag())
        finally:
            await poll_loop.probe.close()

    asyncio.run(runner())


def main() -> None:
    setup_logging()
    config_path = settings.resolved_config_path
    data_dir = settings.data_dir.resolve()
    runtime = load_runtime_config(config_path, data_dir)

    view = LiveMapView(background_path=runtime.background_path)
    poll_loop = PollLoop(runtime, get_probe(settings), target_timeout=settings.target_timeout_seconds)

    async def forward(message: Message) -> None:
        view.submit(message)

    async def on_config_change(new_runtime: RuntimeConfig) -> None:
        view.background_path = new_runtime.background_path
        poll_loop.replace_topology(new_runtime)

    poll_loop.subscribe(forward)
    view.apply_topology(poll_loop.topology_message)

    watcher = ConfigWatcher(config_path, on_config_change, settings.config_watch_interval_seconds, data_dir)
    stop_flag = threading.Event()
    worker = threading.Thread(target=_run_poller, args=(poll_loop, watcher, stop_flag), daemon=True)
    worker.start()

    timer = view.figure.canvas.new_timer(interval=REFRESH_MS)
    timer.add_callback(view.sync)
    timer.start()

    try:
        plt.show()
    finally:
        stop_flag.set()
        worker.join(timeout=5)


if __name__ == "__main__":
    main()
