#!/usr/bin/env python3
"""
POV Router OBS Session
Version: 1.0.0

Single obs-websocket v5 connection with:
- Hello / Identify handshake with SHA-256 challenge authentication
- Request/response correlation by requestId on a background reader
- Per-request timeout, calls serialized on the session
- Supervised reconnect (fixed backoff) publishing readiness transitions
- Connected / disconnected / event handler registration
"""

import json
import time
import uuid
import base64
import asyncio
import hashlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Any, Callable

import websockets
from websockets.exceptions import ConnectionClosed

from pov_config import obs_url
from pov_errors import SessionNotReady, RemoteCallError, RemoteCallTimeout

# obs-websocket v5 opcodes
OP_HELLO = 0
OP_IDENTIFY = 1
OP_IDENTIFIED = 2
OP_EVENT = 5
OP_REQUEST = 6
OP_REQUEST_RESPONSE = 7

RPC_VERSION = 1

# EventSubscription bits: Scenes (1 << 2) | Inputs (1 << 3) | SceneItems (1 << 7)
EVENT_SUBSCRIPTIONS = (1 << 2) | (1 << 3) | (1 << 7)


class ConnectionState(Enum):
    """OBS session connection state."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass
class ConnectionStatus:
    """Connection status tracking."""
    state: ConnectionState = ConnectionState.DISCONNECTED
    last_connected: float = 0
    last_attempt: float = 0
    reconnect_attempts: int = 0
    total_failures: int = 0
    error_message: str = ""
    obs_version: str = ""


def build_auth_response(password: str, salt: str, challenge: str) -> str:
    """Compute the obs-websocket authentication string."""
    secret = base64.b64encode(
        hashlib.sha256((password + salt).encode()).digest()
    ).decode()
    return base64.b64encode(
        hashlib.sha256((secret + challenge).encode()).digest()
    ).decode()


class ObsSession:
    """Owns the one connection to OBS. Connection failure is logged state, never fatal."""

    def __init__(self, config: Dict[str, Any], logger: logging.Logger):
        obs_config = config.get('obs', {})
        self.url = obs_url(config)
        self.password = obs_config.get('password') or ""
        self.request_timeout = float(obs_config.get('request_timeout', 3.0))
        self.connect_retry_delay = float(obs_config.get('connect_retry_delay', 2.0))
        self.reconnect_delay = float(obs_config.get('reconnect_delay', 1.0))
        self.logger = logger

        self.status = ConnectionStatus()
        self._ws = None
        self._reader_task: Optional[asyncio.Task] = None
        self._supervisor_task: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._call_lock = asyncio.Lock()
        self._ready = False
        self._running = False
        self._closed_event: Optional[asyncio.Event] = None

        self._connected_handlers: List[Callable[[], Any]] = []
        self._disconnected_handlers: List[Callable[[], Any]] = []
        self._event_handlers: List[Callable[[str, Dict[str, Any]], Any]] = []

    # ------------------------------------------------------------------
    # Handler registration
    # ------------------------------------------------------------------

    def on_connected(self, handler: Callable[[], Any]):
        self._connected_handlers.append(handler)

    def on_disconnected(self, handler: Callable[[], Any]):
        self._disconnected_handlers.append(handler)

    def on_event(self, handler: Callable[[str, Dict[str, Any]], Any]):
        """Register a handler called with (eventType, eventData) for every OBS event.

        Handlers run on the reader task and must not await call().
        """
        self._event_handlers.append(handler)

    def is_ready(self) -> bool:
        return self._ready

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def _authenticate(self, websocket) -> Dict[str, Any]:
        """Handle the Hello / Identify / Identified exchange."""
        hello = json.loads(await websocket.recv())
        if hello.get('op') != OP_HELLO:
            raise ConnectionError(f"Expected Hello, got op {hello.get('op')}")

        hello_data = hello.get('d', {})
        identify = {
            "rpcVersion": RPC_VERSION,
            "eventSubscriptions": EVENT_SUBSCRIPTIONS
        }
        if 'authentication' in hello_data:
            auth_data = hello_data['authentication']
            identify['authentication'] = build_auth_response(
                self.password, auth_data['salt'], auth_data['challenge']
            )

        await websocket.send(json.dumps({"op": OP_IDENTIFY, "d": identify}))

        identified = json.loads(await websocket.recv())
        if identified.get('op') != OP_IDENTIFIED:
            raise ConnectionError(f"Identification rejected (op {identified.get('op')})")
        return hello_data

    async def connect(self) -> bool:
        """One connection attempt. Returns True once identified; never raises."""
        if self._ready:
            return True

        self.status.state = ConnectionState.CONNECTING
        self.status.last_attempt = time.time()
        self.logger.info(f"Connecting to OBS at {self.url} (attempt {self.status.reconnect_attempts + 1})")

        websocket = None
        try:
            websocket = await websockets.connect(
                self.url,
                open_timeout=self.request_timeout,
                ping_interval=10,
                ping_timeout=5,
                close_timeout=2
            )
            hello_data = await asyncio.wait_for(self._authenticate(websocket), timeout=self.request_timeout)
        except asyncio.CancelledError:
            if websocket is not None:
                await websocket.close()
            raise
        except Exception as e:
            self.status.reconnect_attempts += 1
            self.status.total_failures += 1
            self.status.error_message = str(e) or type(e).__name__
            self.status.state = ConnectionState.RECONNECTING
            self.logger.warning(f"OBS connection failed: {self.status.error_message}")
            if websocket is not None:
                try:
                    await websocket.close()
                except Exception as close_error:
                    self.logger.debug(f"Error closing failed OBS socket: {close_error}")
            return False

        self._ws = websocket
        self._closed_event = asyncio.Event()
        self._reader_task = asyncio.create_task(self._read_loop(websocket))
        self._ready = True
        self.status.state = ConnectionState.CONNECTED
        self.status.last_connected = time.time()
        self.status.reconnect_attempts = 0
        self.status.error_message = ""
        self.status.obs_version = hello_data.get('obsWebSocketVersion', '')
        self.logger.info(f"OBS connected: {self.url} (obs-websocket {self.status.obs_version or 'unknown'})")

        await self._fire(self._connected_handlers)
        return True

    async def run(self):
        """Supervisor: keep the session connected until close() is called."""
        self._running = True
        self.logger.info("Starting OBS session supervisor...")

        while self._running:
            if not await self.connect():
                await asyncio.sleep(self.connect_retry_delay)
                continue

            await self._closed_event.wait()
            if self._running:
                self.logger.warning(f"OBS disconnected, reconnecting in {self.reconnect_delay:.1f}s")
                self.status.state = ConnectionState.RECONNECTING
                await asyncio.sleep(self.reconnect_delay)

    def start(self) -> asyncio.Task:
        """Spawn the supervisor task."""
        if self._supervisor_task is None or self._supervisor_task.done():
            self._supervisor_task = asyncio.create_task(self.run())
        return self._supervisor_task

    async def close(self):
        """Stop reconnecting and close the socket."""
        self._running = False
        if self._supervisor_task is not None:
            self._supervisor_task.cancel()
            try:
                await self._supervisor_task
            except asyncio.CancelledError:
                pass
            self._supervisor_task = None

        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
                self.logger.info("OBS WebSocket connection closed")
            except Exception as e:
                self.logger.warning(f"Error closing OBS connection: {e}")

        if self._reader_task is not None:
            try:
                await asyncio.wait_for(self._reader_task, timeout=2.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                self._reader_task.cancel()
            self._reader_task = None

        self.status.state = ConnectionState.CLOSED

    async def _read_loop(self, websocket):
        """Dispatch responses and events until the socket closes."""
        reason = "connection closed"
        try:
            async for raw in websocket:
                try:
                    message = json.loads(raw)
                except (TypeError, ValueError):
                    self.logger.debug(f"Ignoring non-JSON OBS frame: {raw!r}")
                    continue
                await self._dispatch(message)
        except ConnectionClosed as e:
            reason = f"connection closed: {e}"
        except Exception as e:
            reason = f"reader error: {e}"
            self.logger.error(f"OBS reader failed: {e}")
        finally:
            await self._mark_disconnected(reason)

    async def _dispatch(self, message: Dict[str, Any]):
        op = message.get('op')
        data = message.get('d', {}) or {}

        if op == OP_REQUEST_RESPONSE:
            future = self._pending.pop(data.get('requestId'), None)
            if future is not None and not future.done():
                future.set_result(data)
        elif op == OP_EVENT:
            event_type = data.get('eventType', '')
            self.logger.debug(f"OBS event: {event_type}")
            for handler in list(self._event_handlers):
                try:
                    result = handler(event_type, data.get('eventData', {}) or {})
                    if asyncio.iscoroutine(result):
                        await result
                except Exception as e:
                    self.logger.error(f"OBS event handler failed for {event_type}: {e}")

    async def _mark_disconnected(self, reason: str):
        was_ready = self._ready
        self._ready = False
        self._ws = None
        self.status.state = ConnectionState.DISCONNECTED
        self.status.error_message = reason

        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(SessionNotReady(f"OBS {reason}"))

        if was_ready:
            self.status.total_failures += 1
            self.logger.warning(f"Connection lost to OBS: {reason} (Total failures: {self.status.total_failures})")
            await self._fire(self._disconnected_handlers)

        if self._closed_event is not None:
            self._closed_event.set()

    async def _fire(self, handlers: List[Callable[[], Any]]):
        for handler in list(handlers):
            try:
                result = handler()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self.logger.error(f"OBS session handler failed: {e}")

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def call(self, request_type: str, request_data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send one request and return its responseData."""
        if not self._ready or self._ws is None:
            raise SessionNotReady(f"OBS not connected; cannot send {request_type}")

        async with self._call_lock:
            ws = self._ws
            if not self._ready or ws is None:
                raise SessionNotReady(f"OBS not connected; cannot send {request_type}")

            request_id = str(uuid.uuid4())
            future = asyncio.get_running_loop().create_future()
            self._pending[request_id] = future

            request = {
                "op": OP_REQUEST,
                "d": {
                    "requestType": request_type,
                    "requestId": request_id,
                    "requestData": request_data or {}
                }
            }

            try:
                await ws.send(json.dumps(request))
                response = await asyncio.wait_for(future, timeout=self.request_timeout)
            except asyncio.TimeoutError:
                raise RemoteCallTimeout(request_type, self.request_timeout)
            except ConnectionClosed as e:
                raise SessionNotReady(f"OBS connection closed during {request_type}: {e}")
            finally:
                self._pending.pop(request_id, None)

        status = response.get('requestStatus', {}) or {}
        if not status.get('result', False):
            raise RemoteCallError(request_type, status.get('comment', 'Unknown error'), status.get('code'))
        return response.get('responseData', {}) or {}

    def get_status(self) -> Dict[str, Any]:
        """Connection status for health reporting."""
        return {
            'url': self.url,
            'ready': self._ready,
            'state': self.status.state.value,
            'last_connected': self.status.last_connected,
            'reconnect_attempts': self.status.reconnect_attempts,
            'total_failures': self.status.total_failures,
            'error': self.status.error_message,
            'obs_version': self.status.obs_version
        }
