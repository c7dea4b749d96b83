"""Versioned settings document, user model list and capture selection."""
from __future__ import annotations

import locale
import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import PurePath
from typing import Any, Callable, Dict, List, Mapping, Optional

from .runtime import KeyValueStore, RuntimeDescriptor, RuntimeKind

LOGGER = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 0.5

SETTINGS_KEY = "settings"
USER_MODELS_KEY = "user-models"
USE_DISCRETE_GPU_KEY = "use-discrete-gpu"
USE_SEPARATE_PROCESS_KEY = "use-separate-process"
IS_DARK_KEY = "is-dark"
USED_KEY = "used"
INPUT_SOURCE_KEY = "input-source"
CAMERA_ID_KEY = "camera-id"
VIDEO_FILE_KEY = "video-file"
MODEL_INFO_KEY = "model-info"

MODEL_FILE_TYPES = ("vrm", "glb", "gltf", "fbx")
INPUT_SOURCES = ("camera", "file")

_KEY_OVERRIDES = {
    "show_fps": "showFPS",
    "use_new_model_ui": "useNewModelUI",
    "support_for_webxr": "supportForWebXR",
}


def _camel(name: str) -> str:
    if name in _KEY_OVERRIDES:
        return _KEY_OVERRIDES[name]
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


class _Section:
    """Mixin converting a flat settings section to and from camelCase JSON."""

    def to_dict(self) -> Dict[str, Any]:
        return {_camel(f.name): getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, payload: Any):
        if not isinstance(payload, Mapping):
            raise ValueError(f"{cls.__name__} must be a mapping")
        values = {}
        for f in fields(cls):
            key = _camel(f.name)
            if key not in payload:
                raise ValueError(f"{cls.__name__} is missing {key!r}")
            values[f.name] = _coerce(payload[key], f.default, key)
        return cls(**values)


def _coerce(value: Any, default: Any, key: str) -> Any:
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
    elif isinstance(default, int):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    elif isinstance(default, float):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    elif isinstance(default, str):
        if isinstance(value, str):
            return value
    raise ValueError(f"Invalid value for {key!r}: {value!r}")


@dataclass(frozen=True)
class UISettings(_Section):
    theme_color: str = "indigo"
    is_dark: bool = False
    use_glass: bool = True
    language: str = "en"
    use_new_model_ui: bool = True


@dataclass(frozen=True)
class PreviewSettings(_Section):
    show_skeleton_on_input: bool = True
    mirroring_when_camera: bool = True
    mirroring_when_video_file: bool = True


@dataclass(frozen=True)
class OutputSettings(_Section):
    antialias: bool = True
    show_fps: bool = True
    use_pic_instead_of_color: bool = False
    bg_color: str = "#ffffff"
    bg_pic_path: str = ""


@dataclass(frozen=True)
class ForwardSettings(_Section):
    enable_forwarding: bool = False
    port: int = 8080
    use_ssl: bool = True
    support_for_webxr: bool = False
    # PEM files used when use_ssl is set; empty means plain ws://
    ssl_certfile: str = ""
    ssl_keyfile: str = ""


@dataclass(frozen=True)
class SolverSettings(_Section):
    model_complexity: int = 2
    smooth_landmarks: bool = True
    min_detection_confidence: float = 0.7
    min_tracking_confidence: float = 0.7
    refine_face_landmarks: bool = True


@dataclass(frozen=True)
class DevSettings(_Section):
    allow_dev_tools: bool = False
    open_dev_tools_when_mocap: bool = False


@dataclass(frozen=True)
class PerformanceSettings(_Section):
    use_discrete_gpu: bool = False
    gpu_index: int = 0
    use_separate_process: bool = False


_SECTIONS = {
    "ui": UISettings,
    "preview": PreviewSettings,
    "output": OutputSettings,
    "forward": ForwardSettings,
    "solver": SolverSettings,
    "dev": DevSettings,
    "performance": PerformanceSettings,
}


@dataclass(frozen=True)
class Settings:
    """The whole settings document. Change it with :meth:`updated` and save it."""

    ui: UISettings = field(default_factory=UISettings)
    preview: PreviewSettings = field(default_factory=PreviewSettings)
    output: OutputSettings = field(default_factory=OutputSettings)
    forward: ForwardSettings = field(default_factory=ForwardSettings)
    solver: SolverSettings = field(default_factory=SolverSettings)
    dev: DevSettings = field(default_factory=DevSettings)
    performance: PerformanceSettings = field(default_factory=PerformanceSettings)
    valid: bool = True
    schema_version: float = CURRENT_SCHEMA_VERSION

    def updated(self, section: str, **changes: Any) -> "Settings":
        """Return a copy with ``changes`` applied to one section."""

        if section not in _SECTIONS:
            raise KeyError(f"Unknown settings section {section!r}")
        return replace(self, **{section: replace(getattr(self, section), **changes)})

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {name: getattr(self, name).to_dict() for name in _SECTIONS}
        payload["valid"] = self.valid
        payload["schemaVersion"] = self.schema_version
        return payload

    @classmethod
    def from_dict(cls, payload: Any) -> "Settings":
        """Parse a stored document; raise ``ValueError`` unless it is complete and current."""

        if not isinstance(payload, Mapping):
            raise ValueError("Settings document must be a mapping")
        if payload.get("valid") is not True:
            raise ValueError("Settings document is not flagged as valid")
        version = payload.get("schemaVersion")
        if isinstance(version, bool) or not isinstance(version, (int, float)):
            raise ValueError("Settings document has no schema version")
        if version < CURRENT_SCHEMA_VERSION:
            raise ValueError(f"Settings schema {version} is older than {CURRENT_SCHEMA_VERSION}")
        sections = {name: section.from_dict(payload.get(name)) for name, section in _SECTIONS.items()}
        return cls(valid=True, schema_version=float(version), **sections)


def _default_language() -> str:
    try:
        language = locale.getlocale()[0] or ""
    except ValueError:
        language = ""
    return "zh" if language.lower().startswith("zh") else "en"


def default_settings(descriptor: RuntimeDescriptor) -> Settings:
    sandboxed = descriptor.kind is RuntimeKind.SANDBOXED
    return Settings(
        ui=UISettings(use_glass=not sandboxed, language=_default_language()),
        performance=PerformanceSettings(
            use_separate_process=descriptor.has_native_access and descriptor.platform == "darwin",
        ),
    )


@dataclass(frozen=True)
class ModelDescriptor:
    """An avatar model the renderer can load."""

    name: str
    path: str
    file_type: str = ""
    binding: Dict[str, str] = field(default_factory=dict)
    picture: str = ""

    def __post_init__(self) -> None:
        file_type = (self.file_type or PurePath(self.path).suffix.lstrip(".")).lower()
        if file_type not in MODEL_FILE_TYPES:
            raise ValueError(f"Unsupported model type {file_type!r} for {self.name!r}")
        object.__setattr__(self, "file_type", file_type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "fileType": self.file_type,
            "path": self.path,
            "binding": dict(self.binding),
            "picture": self.picture,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ModelDescriptor":
        return cls(
            name=str(payload["name"]),
            path=str(payload["path"]),
            file_type=str(payload.get("fileType") or payload.get("type") or ""),
            binding=dict(payload.get("binding") or {}),
            picture=str(payload.get("picture") or ""),
        )


@dataclass(frozen=True)
class CaptureSelection:
    """Input chosen for the next capture session."""

    source: str = "camera"
    camera_id: Optional[str] = None
    video_file: Optional[str] = None
    model: Optional[ModelDescriptor] = None

    def __post_init__(self) -> None:
        if self.source not in INPUT_SOURCES:
            raise ValueError(f"Unknown input source {self.source!r}")


SettingsListener = Callable[[Settings], None]


class SettingsStore:
    """Loads and saves the settings document through a :class:`KeyValueStore`."""

    def __init__(self, store: KeyValueStore, descriptor: RuntimeDescriptor) -> None:
        self._store = store
        self._descriptor = descriptor
        self._current: Optional[Settings] = None
        self._listeners: List[SettingsListener] = []

    @property
    def current(self) -> Settings:
        if self._current is None:
            self._current = self.load()
        return self._current

    def defaults(self) -> Settings:
        return default_settings(self._descriptor)

    def load(self) -> Settings:
        payload = self._store.get(SETTINGS_KEY)
        if payload is None:
            LOGGER.debug("No stored settings; using defaults")
            settings = self.defaults()
        else:
            try:
                settings = Settings.from_dict(payload)
            except ValueError as exc:
                LOGGER.info("Discarding stored settings: %s", exc)
                settings = self.defaults()
        self._current = settings
        return settings

    def save(self, settings: Optional[Settings] = None) -> None:
        settings = settings or self.current
        self._store.set(SETTINGS_KEY, settings.to_dict())
        self._store.set(USE_DISCRETE_GPU_KEY, bool(settings.performance.use_discrete_gpu))
        self._store.set(USE_SEPARATE_PROCESS_KEY, bool(settings.performance.use_separate_process))
        self._store.set(IS_DARK_KEY, bool(settings.ui.is_dark))
        self._store.set(USED_KEY, True)
        self._current = settings
        for listener in list(self._listeners):
            try:
                listener(settings)
            except Exception as exc:
                LOGGER.warning("Settings listener failed: %s", exc)

    def on_change(self, listener: SettingsListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: SettingsListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def list_user_models(self) -> List[ModelDescriptor]:
        models = []
        for entry in self._store.get(USER_MODELS_KEY) or []:
            try:
                models.append(ModelDescriptor.from_dict(entry))
            except (KeyError, TypeError, ValueError) as exc:
                LOGGER.warning("Skipping malformed user model %r: %s", entry, exc)
        return models

    def add_user_model(self, model: Optional[ModelDescriptor]) -> None:
        if model is None:
            return
        models = self.list_user_models()
        models.append(model)
        self._store.set(USER_MODELS_KEY, [m.to_dict() for m in models])

    def remove_user_model(self, name: str) -> None:
        models = self.list_user_models()
        for index, model in enumerate(models):
            if model.name == name:
                del models[index]
                self._store.set(USER_MODELS_KEY, [m.to_dict() for m in models])
                return
        LOGGER.debug("No user model named %s", name)

    def load_capture_selection(self) -> CaptureSelection:
        source = self._store.get(INPUT_SOURCE_KEY)
        model_info = self._store.get(MODEL_INFO_KEY)
        model = None
        if model_info:
            try:
                model = ModelDescriptor.from_dict(model_info)
            except (KeyError, TypeError, ValueError) as exc:
                LOGGER.warning("Ignoring stored model selection: %s", exc)
        camera_id = self._store.get(CAMERA_ID_KEY)
        return CaptureSelection(
            source=source if source in INPUT_SOURCES else "camera",
            camera_id=str(camera_id) if camera_id not in (None, "") else None,
            video_file=self._store.get(VIDEO_FILE_KEY) or None,
            model=model,
        )

    def save_capture_selection(self, selection: CaptureSelection) -> None:
        self._store.set(INPUT_SOURCE_KEY, selection.source)
        self._store.set(CAMERA_ID_KEY, selection.camera_id)
        self._store.set(VIDEO_FILE_KEY, selection.video_file)
        self._store.set(MODEL_INFO_KEY, selection.model.to_dict() if selection.model else None)
