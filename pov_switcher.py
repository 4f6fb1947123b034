#!/usr/bin/env python3
"""
POV Router Source Switcher
Version: 1.0.0

Makes exactly one camera source visible inside the router scene:
- Enables every group that (transitively) contains the target
- Enables the target, disables every other non-group item
- Refreshes a stale topology once before giving up
- Falls back to a configured default source when the target is missing
- Best-effort batches: one failed toggle never aborts the rest
"""

import re
import time
import logging
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Any, Callable

from pov_errors import RouterError, SessionNotReady, TargetNotFound, ToggleFailed
from pov_topology import SceneItem, TopologyCache


@dataclass
class SwitchMetrics:
    """Execution metrics for source switching."""
    activations: int = 0
    successes: int = 0
    failures: int = 0
    skipped: int = 0
    fallbacks: int = 0
    not_found: int = 0
    toggle_failures: int = 0
    hide_all_count: int = 0
    last_active_source: Optional[str] = None
    last_switch_time: float = 0
    total_switch_time: float = 0
    average_switch_time: float = 0


def camera_predicate(pattern: str) -> Callable[[str], bool]:
    """Case-insensitive name matcher for the player camera naming convention."""
    regex = re.compile(pattern or "^pov_", re.IGNORECASE)
    return lambda name: bool(regex.search(name))


class SourceSwitcher:
    """Topology-aware visibility transitions for the router scene."""

    def __init__(self, config: Dict[str, Any], session, topology: TopologyCache, logger: logging.Logger):
        routing = config.get('routing', {})
        self.router_scene = routing.get('router_scene', 'POV_ROUTER')
        self.default_source = routing.get('default_source') or ""
        self.is_camera = camera_predicate(routing.get('camera_pattern', '^pov_'))
        self.session = session
        self.topology = topology
        self.logger = logger
        self.metrics = SwitchMetrics()

    async def activate(self, target_source_name: str, allow_fallback: bool = True) -> bool:
        """Make target_source_name the only visible source. True iff matched and every toggle succeeded."""
        self.metrics.activations += 1

        if not self.session.is_ready():
            self.metrics.skipped += 1
            self.logger.warning(f'OBS not connected; skipping switch to "{target_source_name}"')
            return False

        started = time.time()
        try:
            items, matches = await self._resolve_target(target_source_name)
        except TargetNotFound as e:
            self.metrics.not_found += 1
            if allow_fallback and self.default_source and self.default_source != target_source_name:
                self.metrics.fallbacks += 1
                self.logger.warning(f'Target "{target_source_name}" not found. Fallback -> "{self.default_source}"')
                return await self.activate(self.default_source, allow_fallback=False)

            self.metrics.failures += 1
            self.logger.warning(f"WARNING: {e}")
            return False

        ok = await self._enable_ancestors(items, matches)
        for item in items:
            if item.is_container:
                continue
            if not await self._toggle(item, item.source_name == target_source_name):
                ok = False

        elapsed = time.time() - started
        self.metrics.last_active_source = target_source_name
        self.metrics.last_switch_time = time.time()
        if ok:
            self.metrics.successes += 1
            self.metrics.total_switch_time += elapsed
            self.metrics.average_switch_time = self.metrics.total_switch_time / self.metrics.successes
            self.logger.info(f"Active source: {target_source_name} ({elapsed * 1000:.0f} ms)")
        else:
            self.metrics.failures += 1
            self.logger.warning(f"Active source: {target_source_name} (some visibility changes failed)")
        return ok

    async def hide_all(self, name_predicate: Optional[Callable[[str], bool]] = None) -> bool:
        """Disable every non-group item matching the camera naming convention."""
        predicate = name_predicate or self.is_camera
        self.metrics.hide_all_count += 1

        if not self.session.is_ready():
            self.metrics.skipped += 1
            self.logger.warning("OBS not connected; skipping hide-all")
            return False

        ok = True
        hidden = 0
        for item in await self.topology.get(self.router_scene):
            if item.is_container or not predicate(item.source_name):
                continue
            if await self._toggle(item, False):
                hidden += 1
            else:
                ok = False

        self.metrics.last_active_source = None
        self.logger.info(f"All POV sources hidden ({hidden} items)")
        return ok

    async def _resolve_target(self, target_source_name: str):
        """Topology plus matching items; refreshes a cached topology once on a miss."""
        was_cached = self.topology.is_cached(self.router_scene)
        items = await self.topology.get(self.router_scene)
        matches = [it for it in items if it.source_name == target_source_name]

        if not matches and was_cached:
            self.logger.debug(f'"{target_source_name}" not in cached topology, refreshing')
            self.topology.invalidate(self.router_scene)
            items = await self.topology.get(self.router_scene)
            matches = [it for it in items if it.source_name == target_source_name]

        if not matches:
            raise TargetNotFound(target_source_name, self.router_scene)
        return items, matches

    async def _enable_ancestors(self, items: List[SceneItem], matches: List[SceneItem]) -> bool:
        """Enable every group containing a match, walking up to the router scene."""
        groups = {it.source_name: it for it in items if it.is_container}
        enabled = set()
        ok = True

        for match in matches:
            scope = match.container_scene
            while scope != self.router_scene and scope in groups and scope not in enabled:
                group = groups[scope]
                enabled.add(scope)
                if not await self._toggle(group, True):
                    ok = False
                scope = group.container_scene
        return ok

    async def _toggle(self, item: SceneItem, enabled: bool) -> bool:
        try:
            await self._set_enabled(item, enabled)
            return True
        except ToggleFailed as e:
            self.metrics.toggle_failures += 1
            self.logger.error(str(e))
            return False

    async def _set_enabled(self, item: SceneItem, enabled: bool):
        try:
            await self.session.call("SetSceneItemEnabled", {
                "sceneName": item.container_scene,
                "sceneItemId": item.item_id,
                "sceneItemEnabled": enabled
            })
        except SessionNotReady:
            raise ToggleFailed(f'{item.container_scene}/{item.source_name}: OBS disconnected')
        except RouterError as e:
            raise ToggleFailed(f'{item.container_scene}/{item.source_name} -> {enabled}: {e}') from e

    def get_metrics(self) -> Dict[str, Any]:
        return asdict(self.metrics)
