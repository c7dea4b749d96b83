"""Landmark detection and rig solving adapters."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

try:
    import mediapipe as mp  # type: ignore
except ImportError:  # pragma: no cover - optional dependency
    mp = None  # type: ignore

from .settings import SolverSettings

LOGGER = logging.getLogger(__name__)

POSE_FRAME_TYPE = "pose-frame"

Landmark = Tuple[float, ...]
Landmarks = List[Landmark]


@dataclass(frozen=True)
class LandmarkSet:
    """Landmarks found in one frame. Regions the detector missed are ``None``."""

    pose_3d: Optional[Landmarks] = None
    pose_2d: Optional[Landmarks] = None
    face: Optional[Landmarks] = None
    left_hand: Optional[Landmarks] = None
    right_hand: Optional[Landmarks] = None

    def is_empty(self) -> bool:
        return not any((self.pose_3d, self.pose_2d, self.face, self.left_hand, self.right_hand))

    def mirrored(self) -> "LandmarkSet":
        """Swap hands, for input that is displayed as a mirror image."""
        return replace(self, left_hand=self.right_hand, right_hand=self.left_hand)


@dataclass
class PoseMessage:
    """Rigged output for one processed frame."""

    rigged_pose: Optional[Dict[str, Any]] = None
    rigged_left_hand: Optional[Dict[str, Any]] = None
    rigged_right_hand: Optional[Dict[str, Any]] = None
    rigged_face: Optional[Dict[str, Any]] = None
    type: str = POSE_FRAME_TYPE

    def is_empty(self) -> bool:
        return not any((self.rigged_pose, self.rigged_left_hand, self.rigged_right_hand, self.rigged_face))

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type}
        for key, value in (
            ("riggedPose", self.rigged_pose),
            ("riggedLeftHand", self.rigged_left_hand),
            ("riggedRightHand", self.rigged_right_hand),
            ("riggedFace", self.rigged_face),
        ):
            if value is not None:
                payload[key] = value
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PoseMessage":
        return cls(
            rigged_pose=payload.get("riggedPose"),
            rigged_left_hand=payload.get("riggedLeftHand"),
            rigged_right_hand=payload.get("riggedRightHand"),
            rigged_face=payload.get("riggedFace"),
            type=payload.get("type", POSE_FRAME_TYPE),
        )


class LandmarkSolver:
    """Turns an RGB image into a :class:`LandmarkSet`."""

    def configure(self, options: SolverSettings) -> None:
        """Apply detection thresholds and model complexity."""

    async def solve(self, image: Any) -> Optional[LandmarkSet]:
        raise NotImplementedError

    def close(self) -> None:
        """Release model resources."""


def _points(landmark_list, with_visibility: bool = False) -> Optional[Landmarks]:
    if landmark_list is None:
        return None
    points: Landmarks = []
    for landmark in landmark_list.landmark:
        if with_visibility:
            points.append((landmark.x, landmark.y, landmark.z, float(getattr(landmark, "visibility", 1.0))))
        else:
            points.append((landmark.x, landmark.y, landmark.z))
    return points


class MediaPipeHolisticSolver(LandmarkSolver):
    """Landmark solver backed by MediaPipe Holistic."""

    def __init__(self) -> None:
        if mp is None:  # pragma: no cover - optional dependency
            raise RuntimeError("mediapipe is not installed")
        self._holistic = None
        self._options = SolverSettings()

    def configure(self, options: SolverSettings) -> None:
        self.close()
        self._options = options
        LOGGER.info(
            "Configuring MediaPipe Holistic (complexity=%d, detection=%.2f, tracking=%.2f)",
            options.model_complexity,
            options.min_detection_confidence,
            options.min_tracking_confidence,
        )
        self._holistic = mp.solutions.holistic.Holistic(
            static_image_mode=False,
            model_complexity=options.model_complexity,
            smooth_landmarks=options.smooth_landmarks,
            min_detection_confidence=options.min_detection_confidence,
            min_tracking_confidence=options.min_tracking_confidence,
            refine_face_landmarks=options.refine_face_landmarks,
        )

    def _process(self, image) -> Optional[LandmarkSet]:
        image.flags.writeable = False
        results = self._holistic.process(image)
        landmarks = LandmarkSet(
            pose_3d=_points(getattr(results, "pose_world_landmarks", None), with_visibility=True),
            pose_2d=_points(results.pose_landmarks, with_visibility=True),
            face=_points(results.face_landmarks),
            left_hand=_points(results.left_hand_landmarks),
            right_hand=_points(results.right_hand_landmarks),
        )
        return None if landmarks.is_empty() else landmarks

    async def solve(self, image: Any) -> Optional[LandmarkSet]:
        if self._holistic is None:
            self.configure(self._options)
        return await asyncio.to_thread(self._process, image)

    def close(self) -> None:
        if self._holistic is not None:
            self._holistic.close()
        self._holistic = None


class RigSolver:
    """Converts landmark regions into rig parameters. Implementations must be pure."""

    def solve_pose(self, pose_3d: Landmarks, pose_2d: Landmarks, image_size: Tuple[int, int]) -> Dict[str, Any]:
        raise NotImplementedError

    def solve_face(self, face: Landmarks, image_size: Tuple[int, int]) -> Dict[str, Any]:
        raise NotImplementedError

    def solve_hand(self, hand: Landmarks, side: str) -> Dict[str, Any]:
        raise NotImplementedError


def _as_vectors(points: Sequence[Landmark]) -> List[Dict[str, float]]:
    vectors = []
    for point in points:
        vector = {"x": point[0], "y": point[1], "z": point[2]}
        if len(point) > 3:
            vector["visibility"] = point[3]
        vectors.append(vector)
    return vectors


class LandmarkRigSolver(RigSolver):
    """Forwards landmark coordinates unchanged, for consumers that rig on their side."""

    def solve_pose(self, pose_3d, pose_2d, image_size):
        width, height = image_size
        return {
            "worldLandmarks": _as_vectors(pose_3d),
            "imageLandmarks": _as_vectors(pose_2d),
            "imageSize": {"width": width, "height": height},
        }

    def solve_face(self, face, image_size):
        width, height = image_size
        return {"landmarks": _as_vectors(face), "imageSize": {"width": width, "height": height}}

    def solve_hand(self, hand, side):
        return {"side": side, "landmarks": _as_vectors(hand)}


def build_pose_message(
    landmarks: LandmarkSet,
    rig_solver: RigSolver,
    image_size: Tuple[int, int],
    solve_right_hand: bool = True,
) -> Optional[PoseMessage]:
    """Rig each region present in ``landmarks``; ``None`` when nothing was rigged."""

    message = PoseMessage()
    if landmarks.face:
        message.rigged_face = rig_solver.solve_face(landmarks.face, image_size)
    if landmarks.pose_3d and landmarks.pose_2d:
        message.rigged_pose = rig_solver.solve_pose(landmarks.pose_3d, landmarks.pose_2d, image_size)
    if landmarks.left_hand:
        message.rigged_left_hand = rig_solver.solve_hand(landmarks.left_hand, "Left")
    if landmarks.right_hand and solve_right_hand:
        message.rigged_right_hand = rig_solver.solve_hand(landmarks.right_hand, "Right")
    return None if message.is_empty() else message
