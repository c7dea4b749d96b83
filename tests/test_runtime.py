import asyncio
import json

from mocap_stream.runtime import (
    BrowserStore,
    JsonFileStore,
    LocalChannel,
    MemoryStore,
    RuntimeKind,
    create_environment,
    detect,
)

from conftest import LIGHT_HOST


def test_detect_prefers_desktop_host_over_headless():
    descriptor = detect(environ={"DISPLAY": ":0"}, platform="linux")
    assert descriptor.kind is RuntimeKind.HOST_PROCESS
    assert descriptor.has_native_access
    assert descriptor.platform == "linux"


def test_detect_headless_and_sandboxed():
    assert detect(environ={}, platform="linux").kind is RuntimeKind.LIGHT_HOST
    assert detect(environ={}, platform="darwin").kind is RuntimeKind.HOST_PROCESS

    sandboxed = detect(environ={"DISPLAY": ":0"}, platform="emscripten")
    assert sandboxed.kind is RuntimeKind.SANDBOXED
    assert not sandboxed.has_native_access
    assert sandboxed.platform == "web"


def test_detect_unrecognised_platform_is_sandboxed():
    assert detect(environ={}, platform="wasi").kind is RuntimeKind.SANDBOXED
    assert detect(environ={"DISPLAY": ":0"}, platform="plan9").kind is RuntimeKind.SANDBOXED
    assert detect(environ={}, platform="freebsd14").kind is RuntimeKind.LIGHT_HOST


def test_detect_override_and_idempotence():
    environ = {"MOCAP_STREAM_RUNTIME": "light", "DISPLAY": ":0"}
    assert detect(environ=environ, platform="linux").kind is RuntimeKind.LIGHT_HOST
    assert detect(environ={"MOCAP_STREAM_RUNTIME": "bogus"}, platform="linux").kind is RuntimeKind.LIGHT_HOST
    assert detect(environ=environ, platform="linux") == detect(environ=environ, platform="linux")


def test_local_channel_delivers_once_and_isolates_handler_errors():
    channel = LocalChannel()
    received = []

    def broken(payload):
        raise ValueError("boom")

    channel.on("topic", broken)
    channel.on("topic", received.append)
    channel.send("topic", {"n": 1})
    channel.send("unheard", {"n": 2})

    assert received == [{"n": 1}]

    channel.off("topic", received.append)
    channel.send("topic", {"n": 3})
    assert received == [{"n": 1}]


def test_local_channel_schedules_coroutine_handlers():
    channel = LocalChannel()
    received = []

    async def handler(payload):
        received.append(payload)

    async def scenario():
        channel.on("topic", handler)
        channel.send("topic", "hello")
        await asyncio.sleep(0.01)

    asyncio.run(scenario())
    assert received == ["hello"]


def test_memory_store_returns_copies():
    store = MemoryStore()
    value = {"list": [1, 2]}
    store.set("key", value)
    value["list"].append(3)

    assert store.get("key") == {"list": [1, 2]}
    assert store.get("missing") is None


def test_json_file_store_persists_between_instances(tmp_path):
    path = tmp_path / "profile" / "profile.json"
    JsonFileStore(path).set("settings", {"a": 1})

    assert JsonFileStore(path).get("settings") == {"a": 1}
    assert json.loads(path.read_text())["settings"] == {"a": 1}


def test_json_file_store_treats_corrupt_file_as_empty(tmp_path):
    path = tmp_path / "profile.json"
    path.write_text("{not json")
    store = JsonFileStore(path)

    assert store.get("settings") is None
    store.set("settings", {"b": 2})
    assert store.get("settings") == {"b": 2}


class FakeLocalStorage:
    def __init__(self):
        self.items = {}

    def getItem(self, key):
        return self.items.get(key)

    def setItem(self, key, value):
        self.items[key] = value


def test_browser_store_encodes_json():
    backend = FakeLocalStorage()
    store = BrowserStore(backend)
    store.set("is-dark", True)

    assert backend.items["is-dark"] == "true"
    assert store.get("is-dark") is True
    backend.items["broken"] = "{"
    assert store.get("broken") is None


def test_create_environment_selects_store_per_host(tmp_path):
    native = create_environment(LIGHT_HOST, storage_path=tmp_path / "profile.json")
    assert isinstance(native.store, JsonFileStore)
    assert isinstance(native.channel, LocalChannel)

    sandboxed = create_environment(detect(environ={}, platform="emscripten"))
    assert isinstance(sandboxed.store, MemoryStore)
