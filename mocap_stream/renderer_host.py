"""Hosting the renderer in its own process, next to the control surface."""
from __future__ import annotations

import asyncio
import logging
import multiprocessing
from typing import Any, Callable, Optional, Tuple

from .runtime import PipeChannel
from .transports import POSE_FRAME_LOCAL

LOGGER = logging.getLogger(__name__)

RENDERER_BOUNDS = "renderer-bounds"
RENDERER_CLOSE = "renderer-close"

RendererTarget = Callable[[PipeChannel], None]


def renderer_bounds(window_width: int, anchor_y: int) -> Tuple[int, int, int, int]:
    """Place the renderer in the right half of the control window.

    Returns ``(x, y, width, height)`` with a 32:10 aspect ratio.
    """

    half = int(window_width / 2)
    return (half, int(anchor_y), half - 20, int((window_width - 40) * 10 / 32))


def serve_renderer(
    channel: PipeChannel,
    on_pose: Callable[[Any], None],
    on_bounds: Optional[Callable[[Any], None]] = None,
    poll_interval: float = 0.05,
) -> None:
    """Blocking loop for the renderer process: dispatch frames until told to close."""

    closed = []
    channel.on(POSE_FRAME_LOCAL, on_pose)
    channel.on(RENDERER_CLOSE, closed.append)
    if on_bounds is not None:
        channel.on(RENDERER_BOUNDS, on_bounds)
    while not closed:
        channel.pump(poll_interval)


def _renderer_main(connection, target: RendererTarget) -> None:
    channel = PipeChannel(connection)
    try:
        target(channel)
    finally:
        channel.close()


class RendererProcess:
    """Runs ``target`` in a child process connected by a :class:`PipeChannel`.

    Messages sent on the returned channel reach local handlers and the child.
    """

    def __init__(self, target: RendererTarget, context: Optional[Any] = None) -> None:
        self._target = target
        self._context = context or multiprocessing.get_context()
        self._process = None
        self.channel: Optional[PipeChannel] = None

    @property
    def alive(self) -> bool:
        return self._process is not None and self._process.is_alive()

    def start(self) -> PipeChannel:
        if self.channel is not None:
            return self.channel
        parent, child = self._context.Pipe()
        self._process = self._context.Process(
            target=_renderer_main,
            args=(child, self._target),
            name="mocap-renderer",
            daemon=True,
        )
        self._process.start()
        child.close()
        self.channel = PipeChannel(parent)
        LOGGER.info("Renderer process started (pid %s)", self._process.pid)
        return self.channel

    def resize(self, window_width: int, anchor_y: int) -> None:
        if self.channel is None:
            return
        x, y, width, height = renderer_bounds(window_width, anchor_y)
        self.channel.send(RENDERER_BOUNDS, {"x": x, "y": y, "width": width, "height": height})

    async def pump_forever(self, interval: float = 0.05) -> None:
        """Dispatch messages coming back from the renderer until cancelled."""

        while self.channel is not None:
            self.channel.pump()
            await asyncio.sleep(interval)

    def close(self, timeout: float = 2.0) -> None:
        if self.channel is not None:
            self.channel.send(RENDERER_CLOSE, True)
        if self._process is not None:
            self._process.join(timeout)
            if self._process.is_alive():
                LOGGER.warning("Renderer process did not exit; terminating")
                self._process.terminate()
                self._process.join(timeout)
        if self.channel is not None:
            self.channel.close()
        self.channel = None
        self._process = None
