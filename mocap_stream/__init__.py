"""Pose frame capture and broadcast package."""

from .capture import CameraCaptureSource, CaptureSource, Frame, VideoFileCaptureSource
from .pipeline import MocapPipeline, PipelineConfig, PipelineState
from .runtime import Environment, RuntimeDescriptor, RuntimeKind, create_environment, detect
from .settings import CaptureSelection, ModelDescriptor, Settings, SettingsStore
from .solvers import LandmarkSet, LandmarkSolver, MediaPipeHolisticSolver, PoseMessage, RigSolver
from .transports import BroadcastService, TransportRouter, WebSocketPoseServer

__all__ = [
    "CameraCaptureSource",
    "CaptureSource",
    "Frame",
    "VideoFileCaptureSource",
    "MocapPipeline",
    "PipelineConfig",
    "PipelineState",
    "Environment",
    "RuntimeDescriptor",
    "RuntimeKind",
    "create_environment",
    "detect",
    "CaptureSelection",
    "ModelDescriptor",
    "Settings",
    "SettingsStore",
    "LandmarkSet",
    "LandmarkSolver",
    "MediaPipeHolisticSolver",
    "PoseMessage",
    "RigSolver",
    "BroadcastService",
    "TransportRouter",
    "WebSocketPoseServer",
]
