"""Delivery of pose messages to the local renderer or to network subscribers."""
from __future__ import annotations

import asyncio
import json
import logging
import ssl
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Dict, Mapping, Optional, Set, Union
from urllib.parse import urlparse

from .errors import ListenerBindError
from .runtime import MessageChannel
from .settings import ForwardSettings, ModelDescriptor, SettingsStore
from .solvers import PoseMessage

LOGGER = logging.getLogger(__name__)

START_WEB_SERVER = "start-web-server"
STOP_WEB_SERVER = "stop-web-server"
POSE_FRAME_LOCAL = "pose-frame-local"
POSE_FRAME_BROADCAST = "pose-frame-broadcast"
FORWARDING_FAILED = "forwarding-failed"

WEBXR_SESSION_PATH = "/webxr/session"
MODEL_PATH = "/model"
PROTOCOL_VERSION = 1


class PoseTransport:
    """Interface for sending pose messages to a consumer."""

    async def connect(self) -> None:
        """Connect the transport to its endpoint."""

    def send(self, message: PoseMessage) -> None:
        """Send one pose message."""
        raise NotImplementedError

    async def close(self) -> None:
        """Close the transport."""


@dataclass
class LocalChannelTransport(PoseTransport):
    """Hand pose messages to the single co-located renderer."""

    channel: MessageChannel

    def send(self, message: PoseMessage) -> None:
        self.channel.send(POSE_FRAME_LOCAL, message.to_dict())


def build_ssl_context(forward: ForwardSettings) -> Optional[ssl.SSLContext]:
    """Server TLS context for ``wss://``, or ``None`` to serve plain ``ws://``."""

    if not forward.use_ssl:
        return None
    if not forward.ssl_certfile:
        LOGGER.warning("SSL requested for forwarding but no certificate configured; serving ws://")
        return None
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    try:
        context.load_cert_chain(forward.ssl_certfile, forward.ssl_keyfile or None)
    except (OSError, ssl.SSLError) as exc:
        LOGGER.error("Cannot load SSL certificate %s: %s; serving ws://", forward.ssl_certfile, exc)
        return None
    return context


@dataclass
class WebSocketPoseServer:
    """WebSocket listener that every viewer can subscribe to."""

    host: str = "0.0.0.0"
    port: int = 8080
    path: Optional[str] = None
    support_webxr: bool = False
    model: Optional[ModelDescriptor] = None
    ssl_context: Optional[ssl.SSLContext] = None
    send_timeout: float = 0.5
    _server: Any = field(default=None, init=False, repr=False)
    _subscribers: Set[Any] = field(default_factory=set, init=False, repr=False)
    _closing: Set[asyncio.Future] = field(default_factory=set, init=False, repr=False)

    @staticmethod
    def _normalize_path(path: Optional[str]) -> Optional[str]:
        """Return a canonical path (leading slash, no query, no trailing slash)."""
        if not path:
            return None
        parsed_path = urlparse(str(path)).path or "/"
        if not parsed_path.startswith("/"):
            parsed_path = f"/{parsed_path}"
        parsed_path = parsed_path.rstrip("/")
        return parsed_path or None

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def bound_port(self) -> Optional[int]:
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    def session_descriptor(self) -> Dict[str, Any]:
        return {
            "protocol": "pose-frame",
            "version": PROTOCOL_VERSION,
            "stream": self.path or "/",
            "secure": self.ssl_context is not None,
            "model": self.model.to_dict() if self.model else None,
        }

    async def start(self) -> None:
        from websockets.asyncio.server import serve  # type: ignore

        if self._server:
            LOGGER.debug("WebSocket server already running")
            return
        self.path = self._normalize_path(self.path)
        LOGGER.info("Starting WebSocket server on %s:%d%s", self.host, self.port, self.path or "")
        try:
            self._server = await serve(
                self._handle_subscriber,
                self.host,
                self.port,
                ssl=self.ssl_context,
                process_request=self._process_request,
            )
        except OSError as exc:
            raise ListenerBindError(self.port, exc.strerror or str(exc)) from exc
        if self.support_webxr:
            LOGGER.info("WebXR session endpoint available at %s", WEBXR_SESSION_PATH)

    def _json_response(self, connection, body: Any):
        response = connection.respond(HTTPStatus.OK, json.dumps(body))
        del response.headers["Content-Type"]
        response.headers["Content-Type"] = "application/json"
        response.headers["Access-Control-Allow-Origin"] = "*"
        return response

    def _process_request(self, connection, request):
        if not self.support_webxr:
            return None
        path = self._normalize_path(request.path)
        if path == WEBXR_SESSION_PATH:
            LOGGER.debug("Serving WebXR session descriptor to %s", connection.remote_address)
            return self._json_response(connection, self.session_descriptor())
        if path == MODEL_PATH:
            return self._json_response(connection, self.model.to_dict() if self.model else None)
        return None

    async def _handle_subscriber(self, connection) -> None:
        request = getattr(connection, "request", None)
        raw_path = getattr(request, "path", None)
        normalized_path = self._normalize_path(raw_path)
        if self.path and normalized_path != self.path:
            LOGGER.warning(
                "Rejected WebSocket client on unexpected path %s (expected %s)",
                normalized_path or "/",
                self.path,
            )
            await connection.close(code=1008, reason="Unexpected path")
            return

        self._subscribers.add(connection)
        LOGGER.info("Subscriber connected from %s (%d total)", connection.remote_address, len(self._subscribers))
        try:
            await connection.wait_closed()
        finally:
            self._subscribers.discard(connection)
            LOGGER.info("Subscriber disconnected (%d remaining)", len(self._subscribers))

    async def broadcast(self, message: Union[PoseMessage, Mapping[str, Any]]) -> int:
        """Send to every subscriber; returns how many writes succeeded."""

        if not self._subscribers:
            LOGGER.debug("No subscribers connected; dropping frame")
            return 0
        body = message.to_dict() if isinstance(message, PoseMessage) else dict(message)
        payload = json.dumps(body, separators=(",", ":"))
        subscribers = list(self._subscribers)
        results = await asyncio.gather(*(self._send(connection, payload) for connection in subscribers))
        return sum(results)

    async def _send(self, connection, payload: str) -> bool:
        try:
            await asyncio.wait_for(connection.send(payload), self.send_timeout)
            return True
        except asyncio.TimeoutError:
            LOGGER.warning("Subscriber %s is too slow; disconnecting", connection.remote_address)
        except Exception as exc:  # websockets.ConnectionClosed and similar
            LOGGER.warning("Failed to send pose frame to %s: %s", connection.remote_address, exc)
        self._drop(connection)
        return False

    def _drop(self, connection) -> None:
        self._subscribers.discard(connection)
        task = asyncio.ensure_future(connection.close(code=1011, reason="Send failed"))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)
        task.add_done_callback(lambda t: t.cancelled() or t.exception())

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        self._subscribers.clear()
        LOGGER.info("Stopped WebSocket server")


def _parse_model(value: Any) -> Optional[ModelDescriptor]:
    if not value:
        return None
    try:
        if isinstance(value, str):
            value = json.loads(value)
        return ModelDescriptor.from_dict(value)
    except (KeyError, TypeError, ValueError) as exc:
        LOGGER.warning("Ignoring invalid model descriptor for forwarding: %s", exc)
        return None


class BroadcastService:
    """Hosts the network listener and serves the forwarding topics of a channel.

    Frames are queued and written by a single pump task so every subscriber
    sees them in arrival order. When the queue is full new frames are dropped.
    """

    def __init__(
        self,
        channel: MessageChannel,
        host: str = "0.0.0.0",
        ssl_context: Optional[ssl.SSLContext] = None,
        send_timeout: float = 0.5,
        queue_size: int = 8,
    ) -> None:
        self.channel = channel
        self.host = host
        self.ssl_context = ssl_context
        self.send_timeout = send_timeout
        self.server: Optional[WebSocketPoseServer] = None
        self._queue_size = queue_size
        self._queue: Optional[asyncio.Queue] = None
        self._pump_task: Optional[asyncio.Task] = None
        # start and stop requests arrive as separate tasks; run them in arrival order
        self._lock = asyncio.Lock()

    def attach(self) -> None:
        self.channel.on(START_WEB_SERVER, self._on_start)
        self.channel.on(STOP_WEB_SERVER, self._on_stop)
        self.channel.on(POSE_FRAME_BROADCAST, self._on_frame)

    def detach(self) -> None:
        self.channel.off(START_WEB_SERVER, self._on_start)
        self.channel.off(STOP_WEB_SERVER, self._on_stop)
        self.channel.off(POSE_FRAME_BROADCAST, self._on_frame)

    @property
    def running(self) -> bool:
        return self.server is not None and self.server.running

    async def start_server(
        self,
        port: int,
        model: Optional[ModelDescriptor] = None,
        support_webxr: bool = False,
    ) -> WebSocketPoseServer:
        async with self._lock:
            if self.server is not None and self.server.running:
                LOGGER.debug("Forwarding server already listening on %s", self.server.bound_port)
                return self.server
            server = WebSocketPoseServer(
                host=self.host,
                port=port,
                support_webxr=support_webxr,
                model=model,
                ssl_context=self.ssl_context,
                send_timeout=self.send_timeout,
            )
            await server.start()
            self.server = server
            self._queue = asyncio.Queue(maxsize=self._queue_size)
            self._pump_task = asyncio.create_task(self._pump(self._queue))
            return server

    async def stop_server(self) -> None:
        async with self._lock:
            if self._pump_task is not None:
                self._pump_task.cancel()
                try:
                    await self._pump_task
                except asyncio.CancelledError:
                    pass
            self._pump_task = None
            self._queue = None
            if self.server is not None:
                await self.server.stop()
            self.server = None

    async def broadcast(self, message: Union[PoseMessage, Mapping[str, Any]]) -> int:
        if self.server is None:
            return 0
        return await self.server.broadcast(message)

    async def _pump(self, queue: asyncio.Queue) -> None:
        while True:
            payload = await queue.get()
            try:
                await self.broadcast(payload)
            except Exception as exc:
                LOGGER.warning("Broadcast failed: %s", exc)

    async def _on_start(self, payload: Optional[Mapping[str, Any]]) -> None:
        payload = payload or {}
        port = int(payload.get("port", 8080))
        try:
            await self.start_server(
                port,
                model=_parse_model(payload.get("modelDescriptor")),
                support_webxr=bool(payload.get("supportForWebXR", False)),
            )
        except ListenerBindError as exc:
            LOGGER.error("Forwarding disabled: %s", exc)
            self.channel.send(FORWARDING_FAILED, {"port": exc.port, "reason": exc.reason})

    async def _on_stop(self, payload: Any = None) -> None:
        await self.stop_server()

    def _on_frame(self, payload: Mapping[str, Any]) -> None:
        if self._queue is None:
            LOGGER.debug("Forwarding server not running; dropping frame")
            return
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            LOGGER.debug("Broadcast queue full; dropping frame")


class TransportRouter:
    """Routes each pose message to the local renderer or to the broadcast service.

    The choice follows ``forward.enable_forwarding`` at publish time, so
    toggling it takes effect on the next frame.
    """

    def __init__(self, channel: MessageChannel, settings_store: SettingsStore) -> None:
        self.channel = channel
        self.settings_store = settings_store
        self.local = LocalChannelTransport(channel)
        self._model: Optional[ModelDescriptor] = None
        self._server_requested = False
        self._forwarding_failed = False
        self._forwarding_enabled = False
        self._active = False

    @property
    def forwarding(self) -> bool:
        return (
            self._active
            and self.settings_store.current.forward.enable_forwarding
            and not self._forwarding_failed
        )

    def start(self, model: Optional[ModelDescriptor] = None) -> None:
        self._model = model
        self._forwarding_failed = False
        self._forwarding_enabled = self.settings_store.current.forward.enable_forwarding
        self._active = True
        self.channel.on(FORWARDING_FAILED, self._on_forwarding_failed)
        self.settings_store.on_change(self._on_settings_changed)
        if self.forwarding:
            self._request_server()

    def publish(self, message: PoseMessage) -> None:
        try:
            if self.forwarding:
                if not self._server_requested:
                    self._request_server()
                self.channel.send(POSE_FRAME_BROADCAST, message.to_dict())
                return
            if self._server_requested:
                self._release_server()
            self.local.send(message)
        except Exception as exc:
            LOGGER.warning("Failed to publish pose frame: %s", exc)

    def stop(self) -> None:
        if self._server_requested:
            self._release_server()
        if self._active:
            self.channel.off(FORWARDING_FAILED, self._on_forwarding_failed)
            self.settings_store.remove_listener(self._on_settings_changed)
        self._active = False
        self._model = None
        self._forwarding_failed = False

    def _request_server(self) -> None:
        forward = self.settings_store.current.forward
        LOGGER.info("Requesting forwarding server on port %d", forward.port)
        self._server_requested = True
        self.channel.send(
            START_WEB_SERVER,
            {
                "port": forward.port,
                "modelDescriptor": json.dumps(self._model.to_dict()) if self._model else None,
                "supportForWebXR": forward.support_for_webxr,
            },
        )

    def _release_server(self) -> None:
        LOGGER.info("Stopping forwarding server")
        self._server_requested = False
        self.channel.send(STOP_WEB_SERVER)

    def _on_forwarding_failed(self, payload: Optional[Mapping[str, Any]]) -> None:
        payload = payload or {}
        LOGGER.error(
            "Forwarding on port %s failed (%s); publishing locally for this session",
            payload.get("port"),
            payload.get("reason"),
        )
        self._forwarding_failed = True
        self._server_requested = False

    def _on_settings_changed(self, settings) -> None:
        enabled = settings.forward.enable_forwarding
        if enabled and not self._forwarding_enabled:
            # switching forwarding back on retries a listener that failed to bind
            self._forwarding_failed = False
        elif not enabled and self._server_requested:
            self._release_server()
        self._forwarding_enabled = enabled
