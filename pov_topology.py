#!/usr/bin/env python3
"""
POV Router Topology Cache
Version: 1.0.0

Flattened, depth-first view of a scene's item tree. Group items are followed
immediately by their children; each child records the group it lives under so
visibility requests can target the right scope. Item ids are only valid for the
OBS session that produced them, so the cache is invalidated on every reconnect.
"""

import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Any, Tuple

from pov_errors import RouterError, TopologyFetchFailed

# Scene-item structure changes that make cached item ids or names stale
INVALIDATING_EVENTS = frozenset({
    "SceneItemCreated",
    "SceneItemRemoved",
    "SceneItemListReindexed",
    "SceneNameChanged",
    "SceneRemoved",
    "InputNameChanged",
})


@dataclass(frozen=True)
class SceneItem:
    """One entry in a scene's composition tree."""
    container_scene: str
    item_id: int
    source_name: str
    is_container: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TopologyCache:
    """Lazily fetched, explicitly invalidated scene-item topology per scene name."""

    def __init__(self, session, logger: logging.Logger, max_group_depth: int = 1):
        self.session = session
        self.logger = logger
        self.max_group_depth = max_group_depth
        self._items: Dict[str, Tuple[SceneItem, ...]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._generation = 0
        self.fetch_count = 0

    def is_cached(self, scene_name: str) -> bool:
        return scene_name in self._items

    def invalidate(self, scene_name: Optional[str] = None):
        """Drop one scene's topology, or all of them."""
        self._generation += 1
        if scene_name is None:
            if self._items:
                self.logger.debug("Topology cache cleared")
            self._items.clear()
        elif self._items.pop(scene_name, None) is not None:
            self.logger.debug(f"Topology cache invalidated for {scene_name}")

    def handle_obs_event(self, event_type: str, event_data: Dict[str, Any]):
        """Session event hook: structural edits invalidate everything."""
        if event_type in INVALIDATING_EVENTS:
            self.logger.debug(f"{event_type} received, invalidating topology cache")
            self.invalidate()

    async def get(self, scene_name: str) -> List[SceneItem]:
        """Cached topology for scene_name, fetching it on a miss. Fetch failures yield []."""
        cached = self._items.get(scene_name)
        if cached is not None:
            return list(cached)

        lock = self._locks.setdefault(scene_name, asyncio.Lock())
        async with lock:
            cached = self._items.get(scene_name)
            if cached is not None:
                return list(cached)

            generation = self._generation
            try:
                items = await self._fetch(scene_name)
            except TopologyFetchFailed as e:
                self.logger.error(f"Scene item listing failed: {e}")
                return []

            if generation == self._generation:
                self._items[scene_name] = tuple(items)
            else:
                self.logger.debug(f"Topology for {scene_name} invalidated during fetch, not caching")
            return items

    async def _fetch(self, scene_name: str) -> List[SceneItem]:
        self.fetch_count += 1
        try:
            items: List[SceneItem] = []
            await self._list_into(items, scene_name, group=False, depth=0, seen={scene_name})
        except RouterError as e:
            raise TopologyFetchFailed(f"{scene_name}: {e}") from e
        except (TypeError, ValueError, AttributeError) as e:
            raise TopologyFetchFailed(f"{scene_name}: malformed scene item listing ({e})") from e

        groups = sum(1 for it in items if it.is_container)
        self.logger.info(f"Fetched topology for {scene_name}: {len(items)} items, {groups} groups")
        return items

    async def _list_into(self, out: List[SceneItem], scene_name: str, group: bool, depth: int, seen: set):
        request_type = "GetGroupSceneItemList" if group else "GetSceneItemList"
        response = await self.session.call(request_type, {"sceneName": scene_name})

        for raw in response.get('sceneItems', []):
            if not isinstance(raw, dict) or raw.get('sceneItemId') is None or not raw.get('sourceName'):
                self.logger.warning(f"Skipping incomplete scene item in {scene_name}: {raw!r}")
                continue
            item = SceneItem(
                container_scene=scene_name,
                item_id=int(raw['sceneItemId']),
                source_name=str(raw['sourceName']),
                is_container=bool(raw.get('isGroup'))
            )
            out.append(item)

            if item.is_container and depth < self.max_group_depth and item.source_name not in seen:
                await self._list_into(out, item.source_name, group=True, depth=depth + 1,
                                      seen=seen | {item.source_name})
