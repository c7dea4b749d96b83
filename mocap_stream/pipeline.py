"""Frame pipeline: capture source -> landmark solver -> rig solver -> transport."""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from .capture import CaptureSource, Frame, open_capture_source
from .errors import SolverFailure
from .settings import CaptureSelection, ModelDescriptor, SettingsStore
from .solvers import LandmarkRigSolver, LandmarkSet, LandmarkSolver, RigSolver, build_pose_message
from .transports import TransportRouter

LOGGER = logging.getLogger(__name__)

# Only VRM models take right-hand rig data; the detector's right-hand
# landmarks do not line up with the other formats' hand bones.
RIGHT_HAND_MODEL_TYPES = frozenset({"vrm"})


class PipelineState(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class PipelineConfig:
    """Solvers and source factory used by :class:`MocapPipeline`."""

    landmark_solver: LandmarkSolver
    rig_solver: RigSolver = field(default_factory=LandmarkRigSolver)
    source_factory: Callable[[CaptureSelection], CaptureSource] = open_capture_source


class MocapPipeline:
    """Drives frames from the capture source through the solvers to the transport."""

    def __init__(self, config: PipelineConfig, settings_store: SettingsStore, transport: TransportRouter) -> None:
        self.config = config
        self.settings_store = settings_store
        self.transport = transport
        self._state = PipelineState.IDLE
        self._source: Optional[CaptureSource] = None
        self._task: Optional[asyncio.Task] = None
        self._generation = 0
        self._solve_right_hand = True
        self._first_solve_done = False
        self.frames_processed = 0
        self.messages_published = 0

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def source(self) -> Optional[CaptureSource]:
        return self._source

    async def __aenter__(self) -> "MocapPipeline":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def start(self, model: ModelDescriptor, selection: Optional[CaptureSelection] = None) -> None:
        """Open the capture source and begin processing frames.

        Capture errors propagate to the caller and leave the pipeline idle.
        """

        if self._state is not PipelineState.IDLE:
            raise RuntimeError(f"Pipeline cannot start while {self._state.value}")
        LOGGER.info("Starting pipeline for model %s (%s)", model.name, model.file_type)
        self._state = PipelineState.STARTING
        settings = self.settings_store.current
        self._solve_right_hand = model.file_type in RIGHT_HAND_MODEL_TYPES
        try:
            self.config.landmark_solver.configure(settings.solver)
            selection = selection or self.settings_store.load_capture_selection()
            self._source = self.config.source_factory(selection)
        except Exception:
            self._state = PipelineState.IDLE
            raise
        self.transport.start(model)
        self._generation += 1
        self._first_solve_done = False
        self.frames_processed = 0
        self.messages_published = 0
        self._task = asyncio.create_task(self._run_source(self._source, self._generation))
        self._state = PipelineState.RUNNING
        LOGGER.info("Pipeline running on %s input", self._source.mode or "custom")

    async def run(self, model: ModelDescriptor, selection: Optional[CaptureSelection] = None) -> None:
        await self.start(model, selection)
        await self.wait()

    async def wait(self) -> None:
        """Wait for the frame loop to end (end of stream or :meth:`stop`)."""

        task = self._task
        if task is None:
            return
        await asyncio.wait({task})

    async def stop(self) -> None:
        """Stop the frame loop and release the source. Safe to call in any state."""

        if self._state is PipelineState.IDLE and self._task is None:
            return
        LOGGER.info("Stopping pipeline")
        self._state = PipelineState.STOPPING
        self._generation += 1
        source, task = self._source, self._task
        self._source = None
        self._task = None
        if source is not None:
            source.stop()
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if source is not None:
            source.close()
        self.transport.stop()
        self._state = PipelineState.IDLE

    async def _run_source(self, source: CaptureSource, generation: int) -> None:
        async def on_frame(frame: Frame) -> None:
            await self._process_frame(source, frame, generation)

        try:
            await source.run(on_frame)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.exception("Capture loop terminated unexpectedly: %s", exc)

    async def _solve_landmarks(self, frame: Frame) -> Optional[LandmarkSet]:
        try:
            return await self.config.landmark_solver.solve(frame.image)
        except Exception as exc:
            LOGGER.warning("%s", SolverFailure(f"Landmark detection failed on frame {frame.index}: {exc}"))
            return None

    async def _process_frame(self, source: CaptureSource, frame: Frame, generation: int) -> None:
        landmarks = await self._solve_landmarks(frame)
        if generation != self._generation:
            LOGGER.debug("Discarding result for frame %d after stop", frame.index)
            return
        if not self._first_solve_done:
            self._first_solve_done = True
            source.play()
        if landmarks is None or landmarks.is_empty():
            LOGGER.debug("No landmarks in frame %d", frame.index)
            return
        if source.mirrored:
            landmarks = landmarks.mirrored()
        try:
            message = build_pose_message(
                landmarks,
                self.config.rig_solver,
                frame.size,
                solve_right_hand=self._solve_right_hand,
            )
        except Exception as exc:
            LOGGER.warning("%s", SolverFailure(f"Rig solving failed on frame {frame.index}: {exc}"))
            return
        self.frames_processed += 1
        if message is None:
            return
        self.transport.publish(message)
        self.messages_published += 1
