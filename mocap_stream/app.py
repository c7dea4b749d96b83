"""Command line entry point wiring the pipeline together."""
from __future__ import annotations

import argparse
import asyncio
import importlib
import logging
from pathlib import Path
from typing import Optional

from .capture import open_capture_source
from .control import ControlSurface
from .errors import CaptureError
from .pipeline import MocapPipeline, PipelineConfig
from .renderer_host import RendererProcess
from .runtime import Environment, create_environment
from .settings import CaptureSelection, ModelDescriptor, Settings, SettingsStore
from .solvers import MediaPipeHolisticSolver
from .transports import BroadcastService, TransportRouter, build_ssl_context

LOGGER = logging.getLogger(__name__)


def create_argument_parser() -> argparse.ArgumentParser:
    """Construct an argument parser for the capture CLI."""

    parser = argparse.ArgumentParser(description="Stream rigged pose frames from a camera or video file")
    parser.add_argument("--source", choices=["camera", "file"], help="Input source (default: last used)")
    parser.add_argument("--camera-id", help="OpenCV camera index or device path")
    parser.add_argument("--video", type=Path, help="Video file to loop when --source=file")
    parser.add_argument("--model", type=Path, help="Avatar model file (vrm, glb, gltf or fbx)")
    parser.add_argument("--model-name", help="Display name for --model")
    parser.add_argument("--forward", action=argparse.BooleanOptionalAction, default=None, help="Broadcast frames over WebSocket")
    parser.add_argument("--port", type=int, help="Forwarding port")
    parser.add_argument("--webxr", action=argparse.BooleanOptionalAction, default=None, help="Serve the WebXR session endpoint")
    parser.add_argument("--renderer", help="module:function run in a separate renderer process")
    parser.add_argument("--profile", type=Path, help="Profile JSON file used for persistence")
    parser.add_argument("--debug", action="store_true", help="Enable verbose debug logging")
    return parser


def configure_logging(debug: bool = False) -> None:
    """Configure the root logger for the CLI."""

    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        force=True,
    )


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    """Fold forwarding flags from the command line into ``settings``."""

    changes = {}
    if args.forward is not None:
        changes["enable_forwarding"] = args.forward
    if args.port is not None:
        changes["port"] = args.port
    if args.webxr is not None:
        changes["support_for_webxr"] = args.webxr
    return settings.updated("forward", **changes) if changes else settings


def build_selection(args: argparse.Namespace, stored: CaptureSelection) -> CaptureSelection:
    model = stored.model
    if args.model:
        model = ModelDescriptor(name=args.model_name or args.model.stem, path=str(args.model))
    return CaptureSelection(
        source=args.source or stored.source,
        camera_id=args.camera_id if args.camera_id is not None else stored.camera_id,
        video_file=str(args.video) if args.video else stored.video_file,
        model=model,
    )


def _load_renderer_target(target: str):
    module_name, _, func_name = target.partition(":")
    if not func_name:
        raise ValueError(f"Renderer target {target!r} must be in module:function form")
    return getattr(importlib.import_module(module_name), func_name)


def _start_renderer(environment: Environment, settings: Settings, target: Optional[str]) -> Optional[RendererProcess]:
    if not target:
        LOGGER.info("No renderer configured; local frames go to in-process listeners only")
        return None
    if not (settings.performance.use_separate_process and environment.descriptor.has_native_access):
        LOGGER.warning("Renderer %s ignored: separate-process mode is off or unsupported here", target)
        return None
    renderer = RendererProcess(_load_renderer_target(target))
    # the pipe channel also dispatches locally, so it replaces the in-process channel
    environment.channel = renderer.start()
    return renderer


async def main(args: Optional[argparse.Namespace] = None) -> int:
    if args is None:
        parser = create_argument_parser()
        args = parser.parse_args()

    configure_logging(getattr(args, "debug", False))

    environment = create_environment(storage_path=args.profile)
    settings_store = SettingsStore(environment.store, environment.descriptor)
    settings = apply_overrides(settings_store.current, args)
    if settings != settings_store.current:
        settings_store.save(settings)

    selection = build_selection(args, settings_store.load_capture_selection())
    if selection.model is None:
        LOGGER.error("No avatar model selected; pass --model")
        return 2
    settings_store.save_capture_selection(selection)

    renderer = _start_renderer(environment, settings, args.renderer)
    channel = environment.channel
    broadcast = BroadcastService(channel, ssl_context=build_ssl_context(settings.forward))
    broadcast.attach()
    control = ControlSurface(channel)
    router = TransportRouter(channel, settings_store)
    config = PipelineConfig(landmark_solver=MediaPipeHolisticSolver(), source_factory=open_capture_source)
    pump_task = asyncio.create_task(renderer.pump_forever()) if renderer else None

    try:
        async with MocapPipeline(config, settings_store, router) as pipeline:
            await pipeline.run(selection.model, selection)
    except CaptureError as exc:
        LOGGER.error("Cannot start capture: %s", exc)
        return 1
    finally:
        if pump_task is not None:
            pump_task.cancel()
        await broadcast.stop_server()
        broadcast.detach()
        control.close()
        config.landmark_solver.close()
        if renderer is not None:
            renderer.close()
    return 0


def cli() -> None:  # pragma: no cover - CLI entry point
    try:
        raise SystemExit(asyncio.run(main()))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    cli()
