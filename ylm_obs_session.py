#!/usr/bin/env python3
"""
YLM OBS Controller Session
Version: 1.0.0

Single long-lived, authenticated obs-websocket (v5) session:
- Hello / Identify / Identified handshake with SHA-256 challenge authentication
- Lazy (re)connection: nothing reconnects until a caller needs the session
- Fixed-interval keepalive while identified
- Fire-and-forget requests; responses are logged and handed to listeners

Callers must not assume any ordering between sending a request and seeing its
response beyond "the response follows the send, eventually, or never if the
connection drops".
"""

import json
import errno
import time
import uuid
import base64
import asyncio
import hashlib
import logging
from typing import Dict, List, Optional, Any, Callable
from dataclasses import dataclass
from enum import Enum

import websockets
from websockets.exceptions import ConnectionClosed

from ylm_config import ObsAction, OBSSettings

# obs-websocket opcodes
OP_HELLO = 0
OP_IDENTIFY = 1
OP_IDENTIFIED = 2
OP_REQUEST = 6
OP_REQUEST_RESPONSE = 7
OP_PING = 9

RPC_VERSION = 1
KEEPALIVE_INTERVAL = 10.0

START_REQUESTS = {
    ObsAction.STREAM: "StartStream",
    ObsAction.RECORD: "StartRecord",
}
STOP_REQUESTS = ("StopStream", "StopRecord")

RESULT_MESSAGES = {
    "StartStream": ("streaming started", "start streaming"),
    "StartRecord": ("recording started", "start recording"),
    "StopStream": ("streaming stopped", "stop streaming"),
    "StopRecord": ("recording stopped", "stop recording"),
}


class OBSConfigurationError(Exception):
    """OBS host or port missing; needs reconfiguration, not a retry."""


class OBSProtocolError(Exception):
    """The server said something the handshake cannot make sense of."""


class SessionState(Enum):
    """Connection lifecycle of the controller session."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_AUTH = "awaiting_auth"
    IDENTIFIED = "identified"


@dataclass
class PendingRequest:
    """An outbound request still waiting for its RequestResponse."""
    request_id: str
    request_type: str
    sent_at: float


@dataclass
class RequestResult:
    """A RequestResponse as delivered to listeners."""
    request_type: str
    request_id: str
    result: bool
    code: Optional[int] = None
    comment: str = ""


ResponseListener = Callable[[RequestResult], Any]


def compute_auth_response(password: str, salt: str, challenge: str) -> str:
    """base64(sha256(base64(sha256(password + salt)) + challenge))"""
    secret = base64.b64encode(
        hashlib.sha256((password + salt).encode()).digest()
    ).decode()

    return base64.b64encode(
        hashlib.sha256((secret + challenge).encode()).digest()
    ).decode()


def build_identify(hello_data: Dict[str, Any], password: str) -> Dict[str, Any]:
    """Identify message answering a Hello, with authentication when challenged."""
    identify = {"rpcVersion": RPC_VERSION, "eventSubscriptions": 0}

    auth = hello_data.get('authentication')
    if auth:
        try:
            salt = auth['salt']
            challenge = auth['challenge']
        except (KeyError, TypeError) as e:
            raise OBSProtocolError(f"Malformed authentication challenge: {auth!r}") from e
        if not isinstance(salt, str) or not isinstance(challenge, str):
            raise OBSProtocolError(f"Malformed authentication challenge: {auth!r}")
        identify["authentication"] = compute_auth_response(password or "", salt, challenge)

    return {"op": OP_IDENTIFY, "d": identify}


def build_request(request_type: str, request_id: Optional[str] = None) -> Dict[str, Any]:
    if request_id is None:
        request_id = f"{request_type.lower()}_{uuid.uuid4().hex[:12]}"
    return {
        "op": OP_REQUEST,
        "d": {
            "requestType": request_type,
            "requestId": request_id
        }
    }


def is_connection_refused(error: BaseException) -> bool:
    """True for a refused TCP connect, including the multi-address form."""
    if isinstance(error, ConnectionRefusedError):
        return True
    if isinstance(error, OSError) and error.errno == errno.ECONNREFUSED:
        return True
    return isinstance(error, OSError) and f"[Errno {errno.ECONNREFUSED}]" in str(error)


class OBSControllerSession:
    """The one and only connection to the OBS automation server."""

    def __init__(self, settings: OBSSettings, logger: logging.Logger,
                 keepalive_interval: float = KEEPALIVE_INTERVAL,
                 identify_timeout: Optional[float] = None,
                 connector: Optional[Callable[..., Any]] = None):
        self.settings = settings
        self.logger = logger
        self.keepalive_interval = keepalive_interval
        self.identify_timeout = identify_timeout
        self.connector = connector or websockets.connect

        self.state = SessionState.DISCONNECTED
        self.pending: Dict[str, PendingRequest] = {}
        self.connect_count = 0

        self._ws = None
        self._reader_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._connect_future: Optional[asyncio.Future] = None
        self._listeners: List[ResponseListener] = []
        self._stopping = False

    @property
    def is_identified(self) -> bool:
        return self.state == SessionState.IDENTIFIED and self._ws is not None

    @property
    def keepalive_running(self) -> bool:
        return self._keepalive_task is not None and not self._keepalive_task.done()

    def add_response_listener(self, listener: ResponseListener):
        self._listeners.append(listener)

    async def update_settings(self, settings: OBSSettings):
        """Apply new connection settings; an open session to the old endpoint is closed."""
        if settings == self.settings:
            return

        old_settings = self.settings
        self.settings = settings
        if self._ws is not None:
            self.logger.info(f"OBS settings changed ({old_settings.url} -> {settings.url}), closing session")
            await self.close()

    async def ensure_connected(self):
        """Connect and identify if needed. No-op when already identified."""
        if not self.settings.is_configured:
            self.logger.error("OBS settings not configured. Please set host and port.")
            raise OBSConfigurationError("OBS settings not configured")

        if self.is_identified:
            self.logger.debug("WebSocket already open and identified")
            return

        if self._connect_future is not None and not self._connect_future.done():
            self.logger.debug("OBS connection already in progress, waiting for it")
            await self._wait_for_identified(self._connect_future)
            return

        url = self.settings.url
        self.logger.debug(
            f"Attempting connection to OBS at {url}, password: {'set' if self.settings.password else 'not set'}"
        )

        loop = asyncio.get_running_loop()
        connect_future = loop.create_future()
        self._connect_future = connect_future
        self.state = SessionState.CONNECTING

        try:
            ws = await self.connector(url, ping_interval=None, close_timeout=10)
        except asyncio.CancelledError:
            self.logger.debug(f"Connection attempt to {url} cancelled")
            self._reset_after_failed_connect(connect_future)
            raise
        except Exception as e:
            if is_connection_refused(e):
                self.logger.warning(f"WebSocket connection failed: {e}")
                self._reset_after_failed_connect(connect_future)
                return
            self.logger.error(f"WebSocket error connecting to {url}: {e}")
            self._reset_after_failed_connect(connect_future)
            raise

        self.connect_count += 1
        self._ws = ws
        self.logger.debug("WebSocket connection opened")
        self._reader_task = asyncio.create_task(self._read_loop(ws))

        await self._wait_for_identified(connect_future)

    def _reset_after_failed_connect(self, connect_future: asyncio.Future):
        self.state = SessionState.DISCONNECTED
        if not connect_future.done():
            connect_future.set_result(None)

    async def _wait_for_identified(self, connect_future: asyncio.Future):
        waiter = asyncio.shield(connect_future)
        if self.identify_timeout is None:
            await waiter
            return

        try:
            await asyncio.wait_for(waiter, timeout=self.identify_timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"OBS did not identify within {self.identify_timeout}s, dropping connection")
            await self.close()

    async def _read_loop(self, ws):
        error = None
        try:
            async for raw in ws:
                await self._handle_message(ws, raw)
        except ConnectionClosed as e:
            self.logger.debug(f"WebSocket connection closed: {e}")
        except OBSProtocolError as e:
            self.logger.error(f"OBS protocol error: {e}")
            error = e
            await self._close_quietly(ws)
        except Exception as e:
            self.logger.error(f"WebSocket error: {e}")
            await self._close_quietly(ws)
        finally:
            self._handle_close(ws, error)

    async def _close_quietly(self, ws):
        try:
            await ws.close()
        except Exception as e:
            self.logger.debug(f"Error closing OBS connection: {e}")

    async def _handle_message(self, ws, raw):
        try:
            message = json.loads(raw)
            op = message['op']
            data = message.get('d') or {}
        except (ValueError, TypeError, KeyError) as e:
            raise OBSProtocolError(f"Malformed message from OBS: {raw!r}") from e

        self.logger.debug(f"Received message: {message}")

        if op == OP_HELLO:
            self.state = SessionState.AWAITING_AUTH
            if data.get('authentication'):
                self.logger.debug("Authentication required")
            else:
                self.logger.debug("No authentication required")
            identify = build_identify(data, self.settings.password)
            await ws.send(json.dumps(identify))
            self.logger.debug("Sent Identify message")

        elif op == OP_IDENTIFIED:
            self.logger.info("OBS WebSocket identified successfully")
            self.state = SessionState.IDENTIFIED
            self._start_keepalive(ws)
            if self._connect_future is not None and not self._connect_future.done():
                self._connect_future.set_result(None)

        elif op == OP_REQUEST_RESPONSE:
            self._handle_request_response(data)

        else:
            self.logger.debug(f"Ignoring OBS message with op {op}")

    def _handle_request_response(self, data: Dict[str, Any]):
        status = data.get('requestStatus') or {}
        result = RequestResult(
            request_type=data.get('requestType', ''),
            request_id=data.get('requestId', ''),
            result=bool(status.get('result', False)),
            code=status.get('code'),
            comment=status.get('comment', '')
        )
        self.pending.pop(result.request_id, None)

        done_msg, failed_msg = RESULT_MESSAGES.get(
            result.request_type, (f"{result.request_type} succeeded", result.request_type)
        )
        if result.result:
            self.logger.info(f"OBS {done_msg} successfully")
        else:
            self.logger.warning(f"Failed to {failed_msg}: {status}")

        for listener in list(self._listeners):
            try:
                listener(result)
            except Exception as e:
                self.logger.error(f"Response listener failed for {result.request_type}: {e}")

    def _handle_close(self, ws, error: Optional[Exception] = None):
        """Tear down everything tied to a connection. Stale connections are ignored."""
        if ws is not self._ws:
            return

        self.logger.info("OBS WebSocket connection closed")
        self._ws = None
        self.state = SessionState.DISCONNECTED
        self._stop_keepalive()

        if self.pending:
            abandoned = ", ".join(p.request_type for p in self.pending.values())
            self.logger.debug(f"Abandoning {len(self.pending)} unanswered requests: {abandoned}")
            self.pending.clear()

        future = self._connect_future
        if future is not None and not future.done():
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(None)

    def _start_keepalive(self, ws):
        if self.keepalive_running:
            return
        self._keepalive_task = asyncio.create_task(self._keepalive(ws))

    def _stop_keepalive(self) -> bool:
        """Cancel the keepalive task. Returns True only if one was running."""
        task = self._keepalive_task
        self._keepalive_task = None
        if task is None or task.done():
            return False
        task.cancel()
        self.logger.debug("Keepalive stopped")
        return True

    async def _keepalive(self, ws):
        """Send periodic pings to keep the OBS connection alive."""
        while True:
            await asyncio.sleep(self.keepalive_interval)
            try:
                await ws.send(json.dumps({"op": OP_PING, "d": {"eventType": "Ping"}}))
                self.logger.debug("Sent WebSocket ping to keep connection alive")
            except ConnectionClosed as e:
                self.logger.warning(f"Keep-alive ping failed: {e}")
                break

    async def send_request(self, request_type: str) -> Optional[str]:
        """Send a request without waiting for its response. Returns the request id."""
        if not self.is_identified:
            self.logger.warning(f"WebSocket not identified (state: {self.state.value}), cannot send {request_type} request")
            return None

        message = build_request(request_type)
        request_id = message['d']['requestId']
        self.pending[request_id] = PendingRequest(request_id, request_type, time.time())

        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed as e:
            self.pending.pop(request_id, None)
            self.logger.warning(f"Could not send {request_type} request: {e}")
            return None

        self.logger.info(f"Sent {request_type} request ({request_id})")
        return request_id

    async def start_action(self, action: ObsAction):
        """Start streaming or recording. Failures are logged, never raised."""
        request_type = START_REQUESTS.get(action)
        if request_type is None:
            self.logger.debug(f"No OBS request for action {action.value}")
            return

        try:
            self.logger.info(f"Attempting to start OBS {action.value}")
            await self.ensure_connected()
            if not self.is_identified:
                self.logger.warning(f"OBS session not identified, cannot send {action.value} request")
                return
            await self.send_request(request_type)
        except Exception as e:
            self.logger.error(f"Error starting OBS {action.value}: {e}")

    async def stop_all(self):
        """Stop both streaming and recording.

        Guarded by a plain boolean latch rather than a lock: a second caller
        arriving while a stop is in flight returns immediately. Call sites are
        sequential, so the window between check and set is not contended.
        """
        if self._stopping:
            self.logger.debug("Stop streaming/recording already in progress, skipping")
            return
        self._stopping = True

        try:
            self.logger.info("Attempting to stop OBS streaming and recording")
            await self.ensure_connected()
            if not self.is_identified:
                self.logger.warning("OBS session not identified, cannot stop streaming/recording")
                return
            for request_type in STOP_REQUESTS:
                await self.send_request(request_type)
        except Exception as e:
            self.logger.error(f"Error stopping OBS: {e}")
        finally:
            self._stopping = False

    async def close(self):
        """Close the session and wait for the reader to finish."""
        ws = self._ws
        reader = self._reader_task
        if ws is not None:
            await self._close_quietly(ws)
        if reader is not None and not reader.done():
            await reader
        if ws is not None:
            self._handle_close(ws)
        self._reader_task = None
