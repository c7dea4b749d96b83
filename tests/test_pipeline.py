import asyncio

import pytest

from mocap_stream.errors import DeviceUnavailableError
from mocap_stream.pipeline import MocapPipeline, PipelineConfig, PipelineState
from mocap_stream.settings import CaptureSelection, ModelDescriptor
from mocap_stream.solvers import LandmarkSet, LandmarkSolver
from mocap_stream.transports import POSE_FRAME_BROADCAST, POSE_FRAME_LOCAL, START_WEB_SERVER, TransportRouter

from conftest import POINTS, StubSource, wait_until

VRM_MODEL = ModelDescriptor(name="Alicia", path="alicia.vrm")
FBX_MODEL = ModelDescriptor(name="Bot", path="bot.fbx")
FILE_SELECTION = CaptureSelection(source="file", video_file="clip.mp4")
CAMERA_SELECTION = CaptureSelection(source="camera")

HAND = [(0.5, 0.5, 0.0)]


class ScriptedSolver(LandmarkSolver):
    """Returns canned landmarks per image and records how it was called."""

    def __init__(self, script, delay=0.0, on_call=None):
        self.script = script
        self.delay = delay
        self.on_call = on_call
        self.options = None
        self.calls = []
        self.active = 0
        self.max_active = 0

    def configure(self, options):
        self.options = options

    async def solve(self, image):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.on_call:
                self.on_call(len(self.calls))
            self.calls.append(image)
            if self.delay:
                await asyncio.sleep(self.delay)
            result = self.script[image]
            if isinstance(result, Exception):
                raise result
            return result
        finally:
            self.active -= 1


def build_pipeline(channel, settings_store, solver, source):
    config = PipelineConfig(landmark_solver=solver, source_factory=lambda selection: source)
    return MocapPipeline(config, settings_store, TransportRouter(channel, settings_store))


def collect(channel, topic):
    received = []
    channel.on(topic, received.append)
    return received


def test_file_mode_publishes_only_frames_with_landmarks(channel, settings_store):
    local = collect(channel, POSE_FRAME_LOCAL)
    source = StubSource(["f1", "f2"])
    solver = ScriptedSolver({"f1": LandmarkSet(pose_3d=POINTS, pose_2d=POINTS), "f2": LandmarkSet()})
    pipeline = build_pipeline(channel, settings_store, solver, source)

    async def scenario():
        await pipeline.run(VRM_MODEL, FILE_SELECTION)
        await pipeline.stop()

    asyncio.run(scenario())

    assert len(local) == 1
    assert set(local[0]) == {"type", "riggedPose"}
    assert local[0]["type"] == "pose-frame"
    assert pipeline.state is PipelineState.IDLE
    assert source.closed


def test_frames_are_processed_one_at_a_time(channel, settings_store):
    images = [f"f{i}" for i in range(5)]
    solver = ScriptedSolver({image: LandmarkSet(face=POINTS) for image in images}, delay=0.01)
    pipeline = build_pipeline(channel, settings_store, solver, StubSource(images))

    async def scenario():
        await pipeline.run(VRM_MODEL, FILE_SELECTION)

    asyncio.run(scenario())

    assert solver.calls == images
    assert solver.max_active == 1
    assert pipeline.messages_published == 5


def test_start_configures_solver_from_settings(channel, settings_store):
    settings_store.save(settings_store.current.updated("solver", model_complexity=0, min_tracking_confidence=0.3))
    solver = ScriptedSolver({})
    pipeline = build_pipeline(channel, settings_store, solver, StubSource([]))

    asyncio.run(pipeline.run(VRM_MODEL, FILE_SELECTION))

    assert solver.options.model_complexity == 0
    assert solver.options.min_tracking_confidence == 0.3


def test_solver_failure_skips_only_that_frame(channel, settings_store):
    local = collect(channel, POSE_FRAME_LOCAL)
    solver = ScriptedSolver({"f1": RuntimeError("detector crashed"), "f2": LandmarkSet(face=POINTS)})
    pipeline = build_pipeline(channel, settings_store, solver, StubSource(["f1", "f2"]))

    asyncio.run(pipeline.run(VRM_MODEL, FILE_SELECTION))

    assert solver.calls == ["f1", "f2"]
    assert len(local) == 1
    assert "riggedFace" in local[0]


def test_file_playback_waits_for_first_solve(channel, settings_store):
    source = StubSource(["f1", "f2"])
    plays_seen = []
    solver = ScriptedSolver(
        {"f1": None, "f2": None},
        on_call=lambda index: plays_seen.append(source.play_calls),
    )
    pipeline = build_pipeline(channel, settings_store, solver, source)

    asyncio.run(pipeline.run(VRM_MODEL, FILE_SELECTION))

    assert plays_seen == [0, 1]


def test_right_hand_is_not_rigged_for_fbx_models(channel, settings_store):
    local = collect(channel, POSE_FRAME_LOCAL)
    landmarks = LandmarkSet(left_hand=HAND, right_hand=HAND)
    solver = ScriptedSolver({"f1": landmarks})

    asyncio.run(build_pipeline(channel, settings_store, solver, StubSource(["f1"])).run(FBX_MODEL, FILE_SELECTION))
    asyncio.run(build_pipeline(channel, settings_store, solver, StubSource(["f1"])).run(VRM_MODEL, FILE_SELECTION))

    fbx_message, vrm_message = local
    assert "riggedLeftHand" in fbx_message and "riggedRightHand" not in fbx_message
    assert "riggedLeftHand" in vrm_message and "riggedRightHand" in vrm_message


def test_camera_input_swaps_hands(channel, settings_store):
    local = collect(channel, POSE_FRAME_LOCAL)
    solver = ScriptedSolver({"f1": LandmarkSet(left_hand=HAND)})
    source = StubSource(["f1"], mode="camera", mirrored=True)

    asyncio.run(build_pipeline(channel, settings_store, solver, source).run(VRM_MODEL, CAMERA_SELECTION))

    assert len(local) == 1
    assert "riggedRightHand" in local[0]
    assert "riggedLeftHand" not in local[0]


def test_capture_error_leaves_pipeline_idle(channel, settings_store):
    def failing_factory(selection):
        raise DeviceUnavailableError("no camera")

    config = PipelineConfig(landmark_solver=ScriptedSolver({}), source_factory=failing_factory)
    pipeline = MocapPipeline(config, settings_store, TransportRouter(channel, settings_store))

    with pytest.raises(DeviceUnavailableError):
        asyncio.run(pipeline.start(VRM_MODEL, CAMERA_SELECTION))
    assert pipeline.state is PipelineState.IDLE


def test_stop_discards_in_flight_result_and_is_idempotent(channel, settings_store):
    local = collect(channel, POSE_FRAME_LOCAL)
    release = None

    class BlockingSolver(ScriptedSolver):
        async def solve(self, image):
            self.calls.append(image)
            await release.wait()
            return LandmarkSet(face=POINTS)

    solver = BlockingSolver({})
    source = StubSource(["f1", "f2"])
    pipeline = build_pipeline(channel, settings_store, solver, source)

    async def scenario():
        nonlocal release
        release = asyncio.Event()
        await pipeline.stop()
        await pipeline.start(VRM_MODEL, FILE_SELECTION)
        assert pipeline.state is PipelineState.RUNNING
        await wait_until(lambda: solver.calls)
        await pipeline.stop()
        release.set()
        await asyncio.sleep(0.01)
        await pipeline.stop()

    asyncio.run(scenario())

    assert local == []
    assert source.closed
    assert pipeline.state is PipelineState.IDLE


def test_enabling_forwarding_while_running_switches_to_broadcast(channel, settings_store):
    local = collect(channel, POSE_FRAME_LOCAL)
    broadcast = collect(channel, POSE_FRAME_BROADCAST)
    server_requests = collect(channel, START_WEB_SERVER)
    images = ["f1", "f2", "f3"]
    states = []
    pipeline = None

    def toggle(index):
        states.append(pipeline.state)
        if index == 1:
            settings_store.save(settings_store.current.updated("forward", enable_forwarding=True, port=9100))

    solver = ScriptedSolver({image: LandmarkSet(face=POINTS) for image in images}, on_call=toggle)
    pipeline = build_pipeline(channel, settings_store, solver, StubSource(images))

    asyncio.run(pipeline.run(VRM_MODEL, FILE_SELECTION))

    assert len(local) == 1
    assert len(broadcast) == 2
    assert len(server_requests) == 1
    assert server_requests[0]["port"] == 9100
    assert states == [PipelineState.RUNNING] * 3
