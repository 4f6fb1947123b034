#!/usr/bin/env python3
"""
POV Router Focus Router
Version: 1.0.0

Routes "player focused" events to camera sources:
- Player -> source lookup with optional auto-naming for unmapped players
- Per-player debounce window
- Force switches that bypass mapping and debounce
- Bind-next mode: the next observed player is bound to a chosen source
- One routing worker consuming a FIFO work queue, so activations never race
- State / players / mapping notifications for observers
"""

import time
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Any, Callable

from pov_notify import NotificationHub, NOTIFY_PLAYERS, NOTIFY_STATE, NOTIFY_MAPPING
from pov_switcher import SourceSwitcher


class RouteState(Enum):
    """Focus router states."""
    IDLE = "idle"
    ROUTED = "routed"


class WorkType(Enum):
    """Routing work item types."""
    FOCUS = "focus"
    FORCE = "force"
    MAPPING = "mapping"
    SOURCES = "sources"
    BIND = "bind"


@dataclass
class PlayerFocusEvent:
    """A player became the observed one."""
    player_id: str
    display_name: str = "unknown"
    observed_at: float = field(default_factory=time.time)


@dataclass
class RoutingState:
    """Single-writer routing state, owned by the routing worker."""
    last_routed_player_id: Optional[str] = None
    last_switch_at: float = 0
    route_state: RouteState = RouteState.IDLE
    active_source: Optional[str] = None


@dataclass
class WorkItem:
    work_type: WorkType
    payload: Any = None
    future: Optional[asyncio.Future] = None


class FocusRouter:
    """Single routing authority between focus events and the source switcher."""

    def __init__(self, config: Dict[str, Any], switcher: SourceSwitcher, hub: NotificationHub,
                 logger: logging.Logger, mapping: Optional[Dict[str, str]] = None,
                 clock: Callable[[], float] = time.monotonic):
        routing = config.get('routing', {})
        self.debounce_window = float(routing.get('debounce_window', 0.15))
        self.auto_source_template = routing.get('auto_source_template') or ""
        self.switcher = switcher
        self.hub = hub
        self.logger = logger
        self.clock = clock

        self.state = RoutingState()
        self.mapping: Dict[str, str] = dict(mapping or {})
        self.players: Dict[str, Dict[str, Any]] = {}
        self.pending_bind: Optional[str] = None
        self._bind_handlers: List[Callable[[str, str], Any]] = []

        self.queue: asyncio.Queue = asyncio.Queue(maxsize=int(routing.get('queue_size', 256)))
        self._worker_task: Optional[asyncio.Task] = None

        self.events_received = 0
        self.events_dropped = 0
        self.switches_attempted = 0
        self.duplicates_suppressed = 0
        self.worker_errors = 0

    # ------------------------------------------------------------------
    # Public API (called from request handlers)
    # ------------------------------------------------------------------

    def on_player_focus_event(self, player_id: str, display_name: str = "unknown") -> bool:
        """Queue a focus event. Returns False if the routing queue is full."""
        self.events_received += 1
        event = PlayerFocusEvent(str(player_id), display_name or "unknown")
        try:
            self.queue.put_nowait(WorkItem(WorkType.FOCUS, event))
            return True
        except asyncio.QueueFull:
            self.events_dropped += 1
            self.logger.warning(f"Routing queue full, dropping focus event for {player_id}")
            return False

    async def force_switch(self, source_name: str) -> bool:
        """Activate source_name directly, bypassing mapping and debounce."""
        return await self._submit(WorkType.FORCE, source_name)

    async def on_mapping_changed(self, mapping: Dict[str, str]):
        """Replace the mapping snapshot; takes effect on the next focus event."""
        await self.queue.put(WorkItem(WorkType.MAPPING, dict(mapping)))

    async def arm_bind(self, source_name: str) -> bool:
        """Bind the next observed player to source_name."""
        return await self._submit(WorkType.BIND, source_name)

    def on_bind(self, handler: Callable[[str, str], Any]):
        """Register a handler called with (player_id, source_name) when a pending bind completes."""
        self._bind_handlers.append(handler)

    async def list_sources(self) -> List[Any]:
        """Current router-scene topology, read on the routing worker."""
        return await self._submit(WorkType.SOURCES)

    async def join(self):
        """Wait until every queued work item has been processed."""
        await self.queue.join()

    def get_state(self) -> Dict[str, Any]:
        return {
            'lastSteamId': self.state.last_routed_player_id,
            'activeSource': self.state.active_source,
            'routeState': self.state.route_state.value,
            'obsConnected': self.switcher.session.is_ready(),
            'scene': self.switcher.router_scene
        }

    def get_players(self) -> List[Dict[str, Any]]:
        """Seen players, most recent first."""
        return sorted(self.players.values(), key=lambda p: p['lastSeen'], reverse=True)

    def get_metrics(self) -> Dict[str, Any]:
        return {
            'events_received': self.events_received,
            'events_dropped': self.events_dropped,
            'switches_attempted': self.switches_attempted,
            'duplicates_suppressed': self.duplicates_suppressed,
            'worker_errors': self.worker_errors,
            'queue_depth': self.queue.qsize(),
            'switcher': self.switcher.get_metrics()
        }

    async def _submit(self, work_type: WorkType, payload: Any = None):
        future = asyncio.get_running_loop().create_future()
        await self.queue.put(WorkItem(work_type, payload, future))
        return await future

    # ------------------------------------------------------------------
    # Routing worker
    # ------------------------------------------------------------------

    def start(self) -> asyncio.Task:
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.create_task(self.run())
        return self._worker_task

    async def stop(self):
        if self._worker_task is not None:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None

    async def run(self):
        """Process work items one at a time, in submission order."""
        self.logger.info("Routing worker started")
        handlers = {
            WorkType.FOCUS: self._handle_focus,
            WorkType.FORCE: self._handle_force,
            WorkType.MAPPING: self._handle_mapping,
            WorkType.SOURCES: self._handle_sources,
            WorkType.BIND: self._handle_bind,
        }

        while True:
            item = await self.queue.get()
            try:
                result = await handlers[item.work_type](item.payload)
            except asyncio.CancelledError:
                if item.future is not None and not item.future.done():
                    item.future.cancel()
                self.queue.task_done()
                raise
            except Exception as e:
                # Treated as a failed toggle for this item only
                self.worker_errors += 1
                self.logger.exception(f"Routing worker error on {item.work_type.value}: {e}")
                result = [] if item.work_type == WorkType.SOURCES else False

            if item.future is not None and not item.future.done():
                item.future.set_result(result)
            self.queue.task_done()

    async def _handle_focus(self, event: PlayerFocusEvent) -> bool:
        self._record_player(event)
        if self.pending_bind is not None:
            self._complete_bind(event.player_id)

        source_name = self.mapping.get(event.player_id)
        if source_name is None and self.auto_source_template:
            source_name = self.auto_source_template.format(player_id=event.player_id, steamid=event.player_id)

        if source_name is None:
            await self.switcher.hide_all()
            self.state.route_state = RouteState.IDLE
            self.state.active_source = None
            self.logger.info(f"Unmapped player {event.player_id} ({event.display_name}) -> all POVs hidden")
            return False

        now = self.clock()
        if (event.player_id == self.state.last_routed_player_id
                and now - self.state.last_switch_at < self.debounce_window):
            self.duplicates_suppressed += 1
            return False

        if not self.switcher.session.is_ready():
            self.logger.warning(f"OBS not connected yet; skipping switch for {event.player_id}")
            return False

        self.switches_attempted += 1
        ok = await self.switcher.activate(source_name)

        self.state.last_routed_player_id = event.player_id
        self.state.last_switch_at = now
        self.state.route_state = RouteState.ROUTED
        self.state.active_source = self.switcher.metrics.last_active_source
        self.logger.info(f"Routed {event.player_id} ({event.display_name}) -> {source_name}")
        self.hub.publish(NOTIFY_STATE, **self.get_state())
        return ok

    async def _handle_force(self, source_name: str) -> bool:
        self.switches_attempted += 1
        ok = await self.switcher.activate(source_name)

        self.state.last_routed_player_id = None
        self.state.route_state = RouteState.IDLE
        self.state.active_source = self.switcher.metrics.last_active_source
        self.logger.info(f"Forced source: {source_name} ({'ok' if ok else 'failed'})")
        self.hub.publish(NOTIFY_STATE, **self.get_state())
        return ok

    async def _handle_mapping(self, mapping: Dict[str, str]) -> bool:
        self.mapping = mapping
        self.logger.info(f"Mapping updated ({len(mapping)} entries)")
        self.hub.publish(NOTIFY_MAPPING, mapping=dict(mapping))
        return True

    async def _handle_bind(self, source_name: str) -> bool:
        self.pending_bind = source_name
        self.logger.info(f"Bind mode on: next observed player -> {source_name}")
        return True

    def _complete_bind(self, player_id: str):
        source_name, self.pending_bind = self.pending_bind, None
        self.mapping[player_id] = source_name
        self.logger.info(f"Bound {player_id} -> {source_name}")
        for handler in list(self._bind_handlers):
            try:
                handler(player_id, source_name)
            except Exception as e:
                self.logger.error(f"Bind handler failed for {player_id}: {e}")
        self.hub.publish(NOTIFY_MAPPING, mapping=dict(self.mapping))

    async def _handle_sources(self, _payload=None) -> List[Any]:
        return await self.switcher.topology.get(self.switcher.router_scene)

    def _record_player(self, event: PlayerFocusEvent):
        self.players[event.player_id] = {
            'steamid': event.player_id,
            'name': event.display_name,
            'lastSeen': int(event.observed_at * 1000)
        }
        self.hub.publish(NOTIFY_PLAYERS, players=self.get_players())
