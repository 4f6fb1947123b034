"""
obs-websocket v5 mock for pytest.

SceneModel is an in-memory scene/group tree answering the scene-item requests the
router uses. MockObsServer serves it over a real websocket with the Hello /
Identify / Identified handshake (optionally password protected), so session code
can be exercised end to end. FakeSession answers the same requests in-process.
"""
import base64, hashlib, json
from typing import Dict, List

import websockets

from pov_errors import SessionNotReady, RemoteCallError

RESOURCE_NOT_FOUND = 600
AUTHENTICATION_FAILED = 4009


class SceneModel:
    def __init__(self):
        self.scenes: Dict[str, List[dict]] = {}
        self.groups: Dict[str, List[dict]] = {}
        self.requests: List[tuple] = []
        self.fail_toggles = set()
        self._next_id = 1

    def _new_item(self, source_name, is_group=False, enabled=True):
        item = {"sceneItemId": self._next_id, "sourceName": source_name,
                "isGroup": is_group, "sceneItemEnabled": enabled}
        self._next_id += 1
        return item

    def add_item(self, container, source_name, enabled=True):
        items = self.groups[container] if container in self.groups else self.scenes.setdefault(container, [])
        item = self._new_item(source_name, enabled=enabled)
        items.append(item)
        return item["sceneItemId"]

    def add_group(self, container, group_name, children=(), enabled=True):
        items = self.groups[container] if container in self.groups else self.scenes.setdefault(container, [])
        items.append(self._new_item(group_name, is_group=True, enabled=enabled))
        self.groups[group_name] = []
        for child in children:
            self.add_item(group_name, child)

    def all_items(self):
        for items in list(self.scenes.values()) + list(self.groups.values()):
            for item in items:
                yield item

    def item(self, source_name):
        for item in self.all_items():
            if item["sourceName"] == source_name:
                return item
        raise KeyError(source_name)

    def enabled(self, source_name):
        return self.item(source_name)["sceneItemEnabled"]

    def set_all(self, enabled):
        for item in self.all_items():
            item["sceneItemEnabled"] = enabled

    def reassign_ids(self):
        """What OBS does to item ids across a restart."""
        for item in self.all_items():
            item["sceneItemId"] = self._next_id
            self._next_id += 1

    def toggle_requests(self):
        return [data for kind, data in self.requests if kind == "SetSceneItemEnabled"]

    def list_requests(self):
        return [(kind, data) for kind, data in self.requests if kind.endswith("SceneItemList")]

    def handle(self, request_type, data):
        """Returns (requestStatus, responseData)."""
        data = data or {}
        self.requests.append((request_type, dict(data)))

        def fail(comment, code=RESOURCE_NOT_FOUND):
            return {"result": False, "code": code, "comment": comment}, None

        if request_type == "GetVersion":
            return {"result": True, "code": 100}, {"obsVersion": "30.0.0-mock", "obsWebSocketVersion": "5.0.0-mock"}

        if request_type == "GetSceneItemList":
            items = self.scenes.get(data.get("sceneName"))
            if items is None:
                return fail(f"No source was found by the name of `{data.get('sceneName')}`.")
            return {"result": True, "code": 100}, {"sceneItems": [dict(i) for i in items]}

        if request_type == "GetGroupSceneItemList":
            items = self.groups.get(data.get("sceneName"))
            if items is None:
                return fail(f"No group was found by the name of `{data.get('sceneName')}`.")
            return {"result": True, "code": 100}, {"sceneItems": [dict(i) for i in items]}

        if request_type == "SetSceneItemEnabled":
            container = data.get("sceneName")
            items = self.scenes.get(container, self.groups.get(container))
            if items is None:
                return fail(f"No scene was found by the name of `{container}`.")
            for item in items:
                if item["sceneItemId"] == data.get("sceneItemId"):
                    if item["sourceName"] in self.fail_toggles:
                        return fail("Simulated toggle failure", code=700)
                    item["sceneItemEnabled"] = bool(data.get("sceneItemEnabled"))
                    return {"result": True, "code": 100}, {}
            return fail(f"No scene items were found in `{container}` with the ID `{data.get('sceneItemId')}`.")

        return fail(f"Unknown request type `{request_type}`", code=204)


def build_router_scene(model, scene="POV_ROUTER"):
    """POV_Alice, POV_Bob and group Team holding POV_Carol."""
    model.add_item(scene, "POV_Alice")
    model.add_item(scene, "POV_Bob")
    model.add_group(scene, "Team", ["POV_Carol"])
    return model


class FakeSession:
    """In-process stand-in for ObsSession backed by a SceneModel."""

    def __init__(self, model, ready=True):
        self.model = model
        self.ready = ready
        self.calls = []

    def is_ready(self):
        return self.ready

    async def call(self, request_type, request_data=None):
        if not self.ready:
            raise SessionNotReady(f"OBS not connected; cannot send {request_type}")
        self.calls.append((request_type, dict(request_data or {})))
        status, response = self.model.handle(request_type, request_data)
        if not status["result"]:
            raise RemoteCallError(request_type, status.get("comment", ""), status.get("code"))
        return response or {}

    def get_status(self):
        return {"url": "ws://fake", "ready": self.ready, "state": "connected" if self.ready else "disconnected",
                "last_connected": 0, "reconnect_attempts": 0, "total_failures": 0, "error": "",
                "obs_version": "5.0.0-fake"}


def _auth_string(password, salt, challenge):
    secret = base64.b64encode(hashlib.sha256((password + salt).encode()).digest()).decode()
    return base64.b64encode(hashlib.sha256((secret + challenge).encode()).digest()).decode()


class MockObsServer:
    def __init__(self, model=None, password=""):
        self.model = model or SceneModel()
        self.password = password
        self.salt = "bW9ja3NhbHQ="
        self.challenge = "bW9ja2NoYWxsZW5nZQ=="
        self.connections = set()
        self.identified_count = 0
        self.auth_failures = 0
        self.unanswered = set()
        self.server = None
        self.port = None

    @property
    def url(self):
        return f"ws://127.0.0.1:{self.port}"

    async def start(self, host="127.0.0.1", port=0):
        self.server = await websockets.serve(self._handler, host, port)
        self.port = next(iter(self.server.sockets)).getsockname()[1]
        return self

    async def stop(self):
        await self.drop_clients()
        self.server.close()
        await self.server.wait_closed()

    async def drop_clients(self):
        for ws in list(self.connections):
            await ws.close(code=1001, reason="OBS shutting down")
        self.connections.clear()

    async def emit_event(self, event_type, event_data=None):
        message = json.dumps({"op": 5, "d": {"eventType": event_type, "eventIntent": 1,
                                             "eventData": event_data or {}}})
        for ws in list(self.connections):
            await ws.send(message)

    async def _handler(self, ws, path=None):
        hello = {"obsWebSocketVersion": "5.0.0-mock", "rpcVersion": 1}
        if self.password:
            hello["authentication"] = {"challenge": self.challenge, "salt": self.salt}
        await ws.send(json.dumps({"op": 0, "d": hello}))

        try:
            identify = json.loads(await ws.recv())
            if identify.get("op") != 1:
                await ws.close(code=4007, reason="Not identified")
                return
            if self.password:
                expected = _auth_string(self.password, self.salt, self.challenge)
                if identify.get("d", {}).get("authentication") != expected:
                    self.auth_failures += 1
                    await ws.close(code=AUTHENTICATION_FAILED, reason="Authentication failed")
                    return

            await ws.send(json.dumps({"op": 2, "d": {"negotiatedRpcVersion": 1}}))
            self.identified_count += 1
            self.connections.add(ws)

            async for raw in ws:
                message = json.loads(raw)
                if message.get("op") != 6:
                    continue
                d = message["d"]
                if d["requestType"] in self.unanswered:
                    continue
                status, response = self.model.handle(d["requestType"], d.get("requestData"))
                reply = {"requestType": d["requestType"], "requestId": d["requestId"], "requestStatus": status}
                if response is not None:
                    reply["responseData"] = response
                await ws.send(json.dumps({"op": 7, "d": reply}))
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            self.connections.discard(ws)
