"""
Dockhand Agent — Main Daemon
============================

Entry point for the host-side daemon.

Startup sequence:
  1. Load config (flags, DOCKHAND_* env, ~/.dockhand/agent.json)
  2. --register: register with the remote service, store the key, exit
  3. Check the runtime answers at all (fatal if not)
  4. Start the inventory pipeline (containers + images, queue of 2) and,
     with --metrics-interval, the metrics pipeline (queue of 1)
  5. Serve the runtime proxy on --address:--port

Shutdown:
  SIGTERM / SIGINT → stop the proxy → stop ticking → drain queues → exit
"""

from __future__ import annotations
import logging
import signal
import sys
import threading
from dataclasses import dataclass
from typing import Optional, Sequence

import requests

from .collectors import collect_containers, collect_images
from .config import VERSION, AgentConfig, load_agent_config, load_config, save_config
from .errors import ConfigError, RegistrationError, RuntimeUnreachable
from .metrics import ProcessSampler, collect_metrics
from .pipeline import CycleScheduler, Uploader, WorkQueue
from .proxy import create_proxy_app, serve
from .registration import register
from .runtime import RuntimeClient

# ─── Logging ──────────────────────────────────────────────────────────────────

logging.basicConfig(
    level  = logging.INFO,
    format = "[%(asctime)s] %(levelname)s %(name)s - %(message)s",
    datefmt= "%Y-%m-%dT%H:%M:%S",
)
log = logging.getLogger("dockhand.agent")

# ─── Pipelines ────────────────────────────────────────────────────────────────

@dataclass
class Pipeline:
    queue:     WorkQueue
    uploader:  Uploader
    scheduler: CycleScheduler

    def start(self):
        self.uploader.start()
        self.scheduler.start()

    def stop(self, timeout: Optional[float] = None):
        self.scheduler.stop(timeout)
        self.queue.close()
        self.uploader.join(timeout)

# ─── Agent ────────────────────────────────────────────────────────────────────

class DockhandAgent:
    def __init__(
        self,
        config:  AgentConfig,
        client:  Optional[RuntimeClient]    = None,
        sampler: Optional[ProcessSampler]   = None,
        session: Optional[requests.Session] = None,
    ):
        self.config  = config
        self.client  = client or RuntimeClient(config.runtime, config.api_version, config.request_timeout)
        self.session = session or requests.Session()
        self.app     = create_proxy_app(self.client)

        self.pipelines = [self._pipeline(
            "inventory",
            {
                "containers": lambda: collect_containers(self.client),
                "images":     lambda: collect_images(self.client),
            },
            capacity = 2,
            interval = config.interval,
        )]
        if config.metrics_enabled:
            sampler = sampler or ProcessSampler()
            self.pipelines.append(self._pipeline(
                "metrics",
                {"metrics": lambda: collect_metrics(sampler)},
                capacity = 1,
                interval = config.metrics_interval,
            ))

        self._server = None
        self._server_thread: Optional[threading.Thread] = None
        self._stopped = threading.Event()

    def _pipeline(self, name: str, tasks: dict, capacity: int, interval: int) -> Pipeline:
        work = WorkQueue(capacity)
        return Pipeline(
            queue     = work,
            uploader  = Uploader(self.config, work, session=self.session, name=f"{name}-uploader"),
            scheduler = CycleScheduler(name, tasks, work, interval),
        )

    # ─── Lifecycle ────────────────────────────────────────────────────────────

    def start_sync(self):
        for p in self.pipelines:
            p.start()

    def stop_sync(self, timeout: Optional[float] = None):
        for p in self.pipelines:
            p.stop(timeout)

    def start_proxy(self):
        self._server = serve(self.app, self.config.listen_address, self.config.listen_port)
        self._server_thread = threading.Thread(
            target = self._server.serve_forever,
            name   = "proxy",
            daemon = True,
        )
        self._server_thread.start()
        log.info(f"Listening on {self.config.listen_address}:{self.config.listen_port}")

    def run(self):
        log.info(f"Dockhand Agent {VERSION} — remote {self.config.remote_url}")
        log.info(f"Runtime:  {self.config.runtime}")
        if not self.config.agent_key:
            log.warning("No agent key configured — uploads will be rejected until you --register")

        # Raises RuntimeUnreachable: the agent is useless without a runtime
        if not self.client.ping():
            log.warning("Runtime answered /_ping with an error status — continuing")

        self.start_sync()
        self.start_proxy()
        try:
            self._stopped.wait()
        finally:
            log.info("Shutting down — draining upload queues…")
            if self._server is not None:
                self._server.shutdown()
            self.stop_sync(timeout=30)
            self.client.close()
            log.info("Agent exited cleanly.")

    def stop(self):
        self._stopped.set()

# ─── Entry Point ──────────────────────────────────────────────────────────────

def register_and_store(config: AgentConfig) -> str:
    key = register(config)
    stored = load_config(config.config_path)
    stored.update({"url": config.remote_url, "key": key})
    save_config(config.config_path, stored)
    log.info(f"Key saved to {config.config_path}")
    return key


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        config, args = load_agent_config(argv)
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    try:
        logging.getLogger().setLevel(args.log_level.upper())
    except ValueError as e:
        print(f"ERROR: invalid log level: {e}", file=sys.stderr)
        return 1

    if config.register:
        try:
            register_and_store(config)
        except RegistrationError as e:
            log.error(f"Error registering: {e}")
            return 1
        return 0

    agent = DockhandAgent(config)
    signal.signal(signal.SIGTERM, lambda s, f: agent.stop())
    signal.signal(signal.SIGINT,  lambda s, f: agent.stop())

    try:
        agent.run()
    except RuntimeUnreachable as e:
        log.error(f"Error connecting to runtime: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
