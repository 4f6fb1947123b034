#!/usr/bin/env python3
"""
# POV ROUTER
# VERSION: v1.0.0
#
# Overview:
# The POV Router follows the player being spectated in Counter-Strike 2 and keeps that player's
# camera source as the only visible source inside one OBS scene. CS2 Game State Integration posts
# the observed player's SteamID to /gsi; the router looks the player up in a persisted
# SteamID -> source mapping and toggles scene item visibility over obs-websocket v5.
#
# Key Features:
# - Single routing worker: focus events, force switches and mapping edits are applied in order
# - Topology cache of the router scene, including items nested in groups
# - Fallback source when a mapped camera is missing, hide-all for unmapped players
# - Per-player debounce of repeated GSI posts
# - Supervised OBS reconnect with fixed backoff; the cache is invalidated on every reconnect
# - Small HTTP control surface plus a WebSocket push channel for the dashboard
#
# Usage:
# Configure $POV_CONFIG_DIR/config.json (default /etc/pov-router/config.json; created on first run)
# or use the OBS_URL / OBS_PASS / ROUTER_SCENE / MAPPING_FILE / PORT / GSI_TOKEN /
# MIN_SWITCH_INTERVAL_MS / DEFAULT_SOURCE environment variables, then run `python main.py`.
# Point the CS2 gamestate_integration_*.cfg "uri" at http://<host>:<port>/gsi.
#
# Dependencies:
# - Python packages: websockets>=12.0, fastapi, uvicorn, pydantic
"""

import sys
import signal
import asyncio
import logging
from typing import Dict, Any, Optional, List

import uvicorn

from pov_config import load_or_create_config, setup_logging, LOGGER_NAME
from pov_errors import ConfigError
from pov_mapping import MappingStore
from pov_notify import NotificationHub, NOTIFY_STATE
from pov_obs_session import ObsSession
from pov_router import FocusRouter
from pov_server import create_app
from pov_switcher import SourceSwitcher
from pov_topology import TopologyCache


class POVRouterApplication:
    """Wires the router components together and runs them on one event loop."""

    def __init__(self, config: Dict[str, Any], logger: Optional[logging.Logger] = None):
        self.config = config
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.exit_event: Optional[asyncio.Event] = None
        self.tasks: List[asyncio.Task] = []

        routing = config['routing']
        self.mapping_store = MappingStore(config['mapping']['file'], self.logger.getChild("Mapping"))
        self.session = ObsSession(config, self.logger.getChild("Session"))
        self.topology = TopologyCache(self.session, self.logger.getChild("Topology"),
                                      max_group_depth=int(routing.get('max_group_depth', 1)))
        self.switcher = SourceSwitcher(config, self.session, self.topology, self.logger.getChild("Switcher"))
        self.hub = NotificationHub(self.logger.getChild("Notify"))
        self.router = FocusRouter(config, self.switcher, self.hub, self.logger.getChild("Router"),
                                  mapping=self.mapping_store.load())
        self.app = create_app(config, self.router, self.mapping_store, self.hub, self.logger.getChild("HTTP"))

        # Item ids die with the session
        self.session.on_connected(self._on_obs_connected)
        self.session.on_disconnected(self._on_obs_disconnected)
        self.session.on_event(self.topology.handle_obs_event)

        self.server = uvicorn.Server(uvicorn.Config(
            self.app,
            host=config['server']['host'],
            port=config['server']['port'],
            log_level="warning",
            lifespan="off"
        ))

    def _on_obs_connected(self):
        self.topology.invalidate()
        self.hub.publish(NOTIFY_STATE, **self.router.get_state())

    def _on_obs_disconnected(self):
        self.topology.invalidate()
        self.hub.publish(NOTIFY_STATE, **self.router.get_state())

    def _signal_handler(self, sig):
        """Handle shutdown signals gracefully."""
        self.logger.info(f"Received signal {sig}. Initiating shutdown...")
        if self.exit_event is not None:
            self.exit_event.set()

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._signal_handler, sig)
            except NotImplementedError:
                signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(self._signal_handler, s))

    async def run(self) -> bool:
        """Main execution: start session, worker, heartbeat and HTTP server; wait for shutdown."""
        self.exit_event = asyncio.Event()
        self._install_signal_handlers()

        routing = self.config['routing']
        self.logger.info(f"Router scene: {routing['router_scene']}, "
                         f"fallback: {routing.get('default_source') or '(none)'}, "
                         f"debounce: {float(routing['debounce_window']) * 1000:.0f} ms")

        self.tasks = [
            self.session.start(),
            self.router.start(),
            asyncio.create_task(self.hub.heartbeat(float(self.config['server']['heartbeat_interval']))),
        ]
        server_task = asyncio.create_task(self.server.serve())
        self.logger.info(f"HTTP listening on http://{self.config['server']['host']}:{self.config['server']['port']}")

        exit_wait = asyncio.create_task(self.exit_event.wait())
        try:
            done, _ = await asyncio.wait({server_task, exit_wait}, return_when=asyncio.FIRST_COMPLETED)
            if server_task in done and not self.exit_event.is_set():
                error = server_task.exception()
                if error is not None:
                    self.logger.error(f"HTTP server failed: {error}")
                    return False
                if not self.server.started:
                    self.logger.error("HTTP server could not start")
                    return False
            return True

        finally:
            self.logger.info("Shutting down...")
            exit_wait.cancel()
            self.server.should_exit = True
            try:
                await asyncio.wait_for(server_task, timeout=5)
            except asyncio.TimeoutError:
                self.logger.warning("HTTP server did not stop in time")
            except Exception as e:
                self.logger.debug(f"HTTP server stopped with error: {e}")

            session_task, _, heartbeat_task = self.tasks
            heartbeat_task.cancel()
            await self.router.stop()
            await self.session.close()
            if not session_task.done():
                session_task.cancel()


async def main():
    """Main entry point."""
    try:
        config = load_or_create_config()
    except ConfigError as e:
        logging.basicConfig(level=logging.ERROR)
        logging.error(f"Configuration error: {e}")
        return 1

    logger = setup_logging(config)
    application = POVRouterApplication(config, logger)
    success = await application.run()
    return 0 if success else 1


def cli():
    """Console script entry point."""
    try:
        exit_code = asyncio.run(main())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        logging.info("Received keyboard interrupt")
        sys.exit(130)
    except Exception as e:
        logging.error(f"Unhandled exception: {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli()
