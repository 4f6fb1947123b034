#!/usr/bin/env python3
"""
POV Router HTTP Control Surface
Version: 1.0.0

FastAPI app in front of the routing worker:
- POST /gsi                      CS2 Game State Integration webhook
- /api/mapping (GET/POST/DELETE) player -> source bindings
- /api/players, /api/sources, /api/state, /health
- POST /api/force, /force/{source} force a source
- POST /api/bind                 bind the next observed player to a source
- POST /reload-mapping           re-read the mapping file
- WS /ws                         push channel (mapping / players / state / ping)

Handlers never touch the switcher directly; all routing work goes through the router queue.
"""

import re
import asyncio
import logging
from pathlib import Path
from typing import Dict, Optional, Any

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from pov_mapping import MappingStore
from pov_notify import NotificationHub, NOTIFY_MAPPING, NOTIFY_PLAYERS, NOTIFY_STATE
from pov_router import FocusRouter

STEAMID64 = re.compile(r"^\d{17}$")


class MappingIn(BaseModel):
    steamid: str = ""
    source: str = ""


class ForceIn(BaseModel):
    source: str = ""


class BindIn(BaseModel):
    source: str = ""


def extract_steam_id(gsi: Any) -> str:
    """Observed player's SteamID from a GSI payload ("" when absent)."""
    if not isinstance(gsi, dict):
        return ""
    for section in ('player', 'provider'):
        block = gsi.get(section)
        if isinstance(block, dict) and block.get('steamid'):
            return str(block['steamid']).strip()
    return ""


def extract_player_name(gsi: Any) -> str:
    player = gsi.get('player') if isinstance(gsi, dict) else None
    if isinstance(player, dict) and player.get('name'):
        return str(player['name'])
    return "unknown"


def create_app(config: Dict[str, Any], router: FocusRouter, mapping_store: MappingStore,
               hub: NotificationHub, logger: Optional[logging.Logger] = None) -> FastAPI:
    """Build the control-surface app around an already constructed router."""
    logger = logger or logging.getLogger("POV-Router.HTTP")
    gsi_token = config.get('gsi', {}).get('token') or ""
    require_steamid64 = bool(config.get('gsi', {}).get('require_steamid64', True))
    session = router.switcher.session
    topology = router.switcher.topology
    router.on_bind(mapping_store.set)

    app = FastAPI(title="POV Router", docs_url=None, redoc_url=None)

    def check_token(request: Request) -> bool:
        if not gsi_token:
            return True
        supplied = request.headers.get('x-gsi-token') or request.query_params.get('token') or ""
        return supplied == gsi_token

    # ==== GSI ====

    @app.post("/gsi")
    async def gsi(request: Request):
        if not check_token(request):
            return JSONResponse({"error": "invalid token"}, status_code=401)
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"error": "invalid json"}, status_code=400)

        steam_id = extract_steam_id(body)
        if not steam_id or (require_steamid64 and not STEAMID64.match(steam_id)):
            return Response(status_code=204)

        if not router.on_player_focus_event(steam_id, extract_player_name(body)):
            return Response(status_code=503)
        if not session.is_ready():
            return Response(status_code=202)
        return Response(status_code=200)

    # ==== Mapping ====

    @app.get("/api/mapping")
    async def get_mapping():
        return mapping_store.snapshot()

    @app.post("/api/mapping")
    async def set_mapping(entry: MappingIn):
        steam_id = entry.steamid.strip()
        source = entry.source.strip()
        if not steam_id or not source:
            return JSONResponse({"error": "invalid"}, status_code=400)
        mapping_store.set(steam_id, source)
        await router.on_mapping_changed(mapping_store.snapshot())
        return {"ok": True}

    @app.delete("/api/mapping/{steam_id}")
    async def delete_mapping(steam_id: str):
        removed = mapping_store.remove(steam_id)
        if removed:
            await router.on_mapping_changed(mapping_store.snapshot())
        return {"ok": True, "removed": removed}

    @app.post("/reload-mapping")
    async def reload_mapping():
        try:
            mapping = mapping_store.reload()
        except OSError as e:
            logger.error(f"Mapping reload failed: {e}")
            return JSONResponse({"error": str(e)}, status_code=500)
        topology.invalidate()
        await router.on_mapping_changed(mapping)
        return {"ok": True, "mapping": mapping}

    # ==== State ====

    @app.get("/api/players")
    async def get_players():
        return router.get_players()

    @app.get("/api/sources")
    async def get_sources():
        items = await router.list_sources()
        return [
            {"sourceName": it.source_name, "sceneName": it.container_scene,
             "id": it.item_id, "isGroup": it.is_container}
            for it in items
        ]

    @app.get("/api/state")
    async def get_state():
        return router.get_state()

    @app.get("/api/metrics")
    async def get_metrics():
        return {"router": router.get_metrics(), "obs": session.get_status(),
                "observers": hub.subscriber_count}

    @app.get("/health")
    async def health():
        return {
            "ok": True,
            "obsConnected": session.is_ready(),
            "scene": router.switcher.router_scene,
            "lastSteamId": router.state.last_routed_player_id
        }

    # ==== Force ====

    @app.post("/api/force")
    async def force(body: ForceIn):
        source = body.source.strip()
        if not source:
            return JSONResponse({"error": "no source"}, status_code=400)
        ok = await router.force_switch(source)
        return {"ok": ok, "forced": source}

    @app.post("/api/bind")
    async def bind_next(body: BindIn):
        source = body.source.strip()
        if not source:
            return JSONResponse({"error": "no source"}, status_code=400)
        await router.arm_bind(source)
        return {"ok": True, "bind": source}

    @app.post("/force/{source}")
    async def force_path(source: str):
        ok = await router.force_switch(source)
        return {"ok": ok, "forced": source}

    # ==== Push channel ====

    @app.websocket("/ws")
    async def ws_endpoint(websocket: WebSocket):
        await websocket.accept()
        subscription = hub.subscribe()

        async def pump():
            while True:
                notification = await subscription.get()
                if notification is None:
                    await websocket.close()
                    return
                await websocket.send_json(notification.to_wire())

        async def drain():
            try:
                while True:
                    await websocket.receive_text()
            except WebSocketDisconnect:
                return

        try:
            await websocket.send_json({"type": NOTIFY_MAPPING, "mapping": mapping_store.snapshot()})
            await websocket.send_json({"type": NOTIFY_PLAYERS, "players": router.get_players()})
            await websocket.send_json({"type": NOTIFY_STATE, **router.get_state()})

            tasks = {asyncio.create_task(pump()), asyncio.create_task(drain())}
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.debug(f"Observer socket ended: {task.exception()}")
        except WebSocketDisconnect:
            pass
        finally:
            hub.unsubscribe(subscription)

    # ==== Static UI ====

    dist = Path(config.get('server', {}).get('client_dist') or "")
    if str(dist) not in ("", ".") and dist.is_dir():
        app.mount("/", StaticFiles(directory=str(dist), html=True), name="client")
    else:
        @app.get("/")
        async def index():
            return PlainTextResponse("Build the dashboard first and set server.client_dist to its dist/ directory")

    return app
