import asyncio
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from mocap_stream.capture import CaptureSource
from mocap_stream.runtime import LocalChannel, MemoryStore, RuntimeDescriptor, RuntimeKind
from mocap_stream.settings import SettingsStore

LIGHT_HOST = RuntimeDescriptor(RuntimeKind.LIGHT_HOST, True, "linux")

POINTS = [(0.1, 0.2, 0.3), (0.4, 0.5, 0.6)]


class StubSource(CaptureSource):
    """Serves a fixed list of images, then ends the stream."""

    def __init__(self, images, mode="file", mirrored=False):
        super().__init__()
        self._images = list(images)
        self.mode = mode
        self.mirrored = mirrored
        self.play_calls = 0
        self.closed = False

    def play(self):
        self.play_calls += 1

    async def read(self):
        await asyncio.sleep(0)
        if self._index >= len(self._images):
            return None
        return self._next_frame(self._images[self._index])

    def close(self):
        self.closed = True


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def channel():
    return LocalChannel()


@pytest.fixture
def settings_store():
    return SettingsStore(MemoryStore(), LIGHT_HOST)
