"""Host environment detection plus the message channel and key/value store."""
from __future__ import annotations

import asyncio
import enum
import json
import logging
import os
import sys
from dataclasses import dataclass
from inspect import isawaitable
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

LOGGER = logging.getLogger(__name__)

RUNTIME_OVERRIDE_ENV = "MOCAP_STREAM_RUNTIME"
DEFAULT_PROFILE_PATH = Path.home() / "MocapStream" / "profile.json"

Handler = Callable[[Any], Any]


class RuntimeKind(enum.Enum):
    HOST_PROCESS = "host"
    LIGHT_HOST = "light"
    SANDBOXED = "sandboxed"


@dataclass(frozen=True)
class RuntimeDescriptor:
    """Which host the process runs in. Determined once at start-up."""

    kind: RuntimeKind
    has_native_access: bool
    platform: str


_DESKTOP_PLATFORMS = ("win32", "cygwin", "darwin")
_NATIVE_PLATFORMS = _DESKTOP_PLATFORMS + ("linux", "freebsd", "openbsd", "netbsd", "sunos", "aix")


def _browser_platform() -> str:
    try:
        import js  # type: ignore  # only importable inside Pyodide
    except ImportError:
        return "web"
    user_agent = str(getattr(js.navigator, "userAgent", ""))
    if "Android" in user_agent:
        return "android"
    if "iPhone" in user_agent or "iPad" in user_agent:
        return "ios"
    return "web"


def detect(environ: Optional[Mapping[str, str]] = None, platform: Optional[str] = None) -> RuntimeDescriptor:
    """Return the descriptor for the current host.

    The full desktop host is checked first because a desktop process also
    satisfies the headless indicator. Platforms that are not a recognised
    native OS are treated as sandboxed. Reads only ``sys.platform`` and the
    environment, so repeated calls give the same answer.
    """

    environ = os.environ if environ is None else environ
    platform = sys.platform if platform is None else platform

    override = environ.get(RUNTIME_OVERRIDE_ENV)
    if override:
        try:
            kind = RuntimeKind(override.strip().lower())
        except ValueError:
            LOGGER.warning("Ignoring unknown %s value %r", RUNTIME_OVERRIDE_ENV, override)
        else:
            if kind is RuntimeKind.SANDBOXED:
                return RuntimeDescriptor(kind, False, "web")
            return RuntimeDescriptor(kind, True, platform)

    native = platform.startswith(_NATIVE_PLATFORMS)
    if native and (platform.startswith(_DESKTOP_PLATFORMS) or environ.get("DISPLAY") or environ.get("WAYLAND_DISPLAY")):
        return RuntimeDescriptor(RuntimeKind.HOST_PROCESS, True, platform)
    if native:
        return RuntimeDescriptor(RuntimeKind.LIGHT_HOST, True, platform)
    return RuntimeDescriptor(RuntimeKind.SANDBOXED, False, _browser_platform())


class MessageChannel:
    """Named-topic messaging. Delivery is at-most-once with no acknowledgement."""

    def send(self, topic: str, payload: Any = None) -> None:
        raise NotImplementedError

    def on(self, topic: str, handler: Handler) -> None:
        raise NotImplementedError

    def off(self, topic: str, handler: Handler) -> None:
        raise NotImplementedError


class LocalChannel(MessageChannel):
    """In-process channel that dispatches straight to registered handlers."""

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = {}
        self._tasks: Set["asyncio.Future"] = set()

    def on(self, topic: str, handler: Handler) -> None:
        self._handlers.setdefault(topic, []).append(handler)

    def off(self, topic: str, handler: Handler) -> None:
        handlers = self._handlers.get(topic)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def send(self, topic: str, payload: Any = None) -> None:
        self._dispatch(topic, payload)

    def _dispatch(self, topic: str, payload: Any) -> None:
        handlers = list(self._handlers.get(topic, ()))
        if not handlers:
            LOGGER.debug("No handler for topic %s; dropping message", topic)
            return
        for handler in handlers:
            try:
                result = handler(payload)
                if isawaitable(result):
                    self._schedule(topic, result)
            except Exception as exc:
                LOGGER.warning("Handler for topic %s failed: %s", topic, exc)

    def _schedule(self, topic: str, awaitable) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.warning("No running event loop for async handler on %s; dropping message", topic)
            close = getattr(awaitable, "close", None)
            if close:
                close()
            return
        task = asyncio.ensure_future(awaitable, loop=loop)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(self._log_task_error)

    @staticmethod
    def _log_task_error(task: "asyncio.Future") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.warning("Async channel handler failed: %s", exc)


class PipeChannel(LocalChannel):
    """Channel bridged to another process over a ``multiprocessing`` connection.

    ``send`` reaches local handlers and the peer; messages from the peer are
    dispatched to local handlers whenever :meth:`pump` runs.
    """

    def __init__(self, connection) -> None:
        super().__init__()
        self._connection = connection

    def send(self, topic: str, payload: Any = None) -> None:
        self._dispatch(topic, payload)
        try:
            self._connection.send((topic, payload))
        except (OSError, ValueError, EOFError) as exc:
            LOGGER.debug("Dropping %s message; peer unavailable: %s", topic, exc)

    def pump(self, timeout: float = 0.0) -> int:
        """Dispatch every pending message from the peer. Returns how many ran."""

        handled = 0
        try:
            while self._connection.poll(timeout):
                topic, payload = self._connection.recv()
                self._dispatch(topic, payload)
                handled += 1
                timeout = 0.0
        except (OSError, EOFError) as exc:
            LOGGER.debug("Peer connection closed: %s", exc)
        return handled

    def close(self) -> None:
        self._connection.close()


class KeyValueStore:
    """Persistence contract: a ``set`` is visible to a later ``get`` in this process."""

    def get(self, key: str) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError


class MemoryStore(KeyValueStore):
    """Process-local store. Values are kept as JSON text, like the other stores."""

    def __init__(self, initial: Optional[Mapping[str, Any]] = None) -> None:
        self._data: Dict[str, str] = {}
        for key, value in (initial or {}).items():
            self.set(key, value)

    def get(self, key: str) -> Any:
        item = self._data.get(key)
        return json.loads(item) if item is not None else None

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)


class JsonFileStore(KeyValueStore):
    """All keys live in one JSON profile file."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path else DEFAULT_PROFILE_PATH

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.error("Failed to read profile %s: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str) -> Any:
        return self._read().get(key)

    def set(self, key: str, value: Any) -> None:
        data = self._read()
        data[key] = value
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        except OSError as exc:
            LOGGER.error("Failed to save profile %s: %s", self.path, exc)


class BrowserStore(KeyValueStore):
    """Wraps a ``localStorage``-like object; values are stored as JSON text."""

    def __init__(self, backend) -> None:
        self._backend = backend

    def get(self, key: str) -> Any:
        try:
            item = self._backend.getItem(key)
            return json.loads(item) if item else None
        except (TypeError, ValueError):
            return None

    def set(self, key: str, value: Any) -> None:
        try:
            self._backend.setItem(key, json.dumps(value))
        except Exception as exc:  # quota errors surface as JS exceptions
            LOGGER.error("Failed to save %s to browser storage: %s", key, exc)


def _browser_local_storage():
    try:
        import js  # type: ignore
    except ImportError:
        return None
    return getattr(js, "localStorage", None)


@dataclass
class Environment:
    descriptor: RuntimeDescriptor
    channel: MessageChannel
    store: KeyValueStore


def create_environment(
    descriptor: Optional[RuntimeDescriptor] = None,
    storage_path: Optional[Path] = None,
) -> Environment:
    """Build the channel and store that match the host."""

    descriptor = descriptor or detect()
    if descriptor.has_native_access:
        store: KeyValueStore = JsonFileStore(storage_path)
    else:
        local_storage = _browser_local_storage()
        store = BrowserStore(local_storage) if local_storage is not None else MemoryStore()
    LOGGER.info(
        "Runtime %s on %s using %s",
        descriptor.kind.value,
        descriptor.platform,
        type(store).__name__,
    )
    return Environment(descriptor=descriptor, channel=LocalChannel(), store=store)
