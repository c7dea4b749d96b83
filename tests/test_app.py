import asyncio
import json
from pathlib import Path

import pytest

from mocap_stream.app import apply_overrides, build_selection, create_argument_parser, main
from mocap_stream.settings import CaptureSelection, ModelDescriptor, default_settings

from conftest import LIGHT_HOST


def parse(*argv):
    return create_argument_parser().parse_args(list(argv))


def test_parser_leaves_unset_flags_as_none():
    args = parse()

    assert args.source is None
    assert args.forward is None
    assert args.webxr is None
    assert args.port is None
    assert not args.debug


def test_forwarding_flags_override_settings():
    settings = default_settings(LIGHT_HOST)

    updated = apply_overrides(settings, parse("--forward", "--port", "9000", "--no-webxr"))

    assert updated.forward.enable_forwarding
    assert updated.forward.port == 9000
    assert not updated.forward.support_for_webxr
    assert updated.solver == settings.solver
    assert apply_overrides(settings, parse()) is settings


def test_selection_prefers_command_line_over_stored():
    stored = CaptureSelection(
        source="camera",
        camera_id="1",
        model=ModelDescriptor(name="Stored", path="stored.vrm"),
    )

    selection = build_selection(parse("--source", "file", "--video", "clip.mp4", "--model", "avatars/bot.fbx"), stored)

    assert selection.source == "file"
    assert selection.camera_id == "1"
    assert selection.video_file == "clip.mp4"
    assert selection.model == ModelDescriptor(name="bot", path=str(Path("avatars/bot.fbx")))


def test_selection_falls_back_to_stored_values():
    stored = CaptureSelection(source="file", video_file="old.mp4")

    assert build_selection(parse(), stored) == stored


def test_main_without_model_exits_with_usage_error(tmp_path, monkeypatch):
    monkeypatch.setenv("MOCAP_STREAM_RUNTIME", "light")
    profile = tmp_path / "profile.json"

    code = asyncio.run(main(parse("--profile", str(profile), "--forward", "--port", "9001")))

    assert code == 2
    saved = json.loads(profile.read_text(encoding="utf-8"))
    assert saved["settings"]["forward"]["port"] == 9001
    assert saved["settings"]["forward"]["enableForwarding"] is True


def test_unknown_source_is_rejected():
    with pytest.raises(SystemExit):
        parse("--source", "screen")
