"""Tests for the command line entry point and component wiring."""

import asyncio
import json
import socket

from arowss.controller import ControllerPhase
from arowss.main import async_main, build_controller, main
from config import Settings


def _settings(**overrides):
    data = {
        "pipeline": {"width": 1280, "height": 720, "framerate": 30, "bitrate": 1_500_000},
        "link": {"probe_host": "127.0.0.1", "interface": None, "sample_interval": 0.1},
        "host": "127.0.0.1",
        "port": 0,
    }
    data.update(overrides)
    return Settings(**data)


def _free_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def test_missing_config_exits_with_config_status(tmp_path):
    assert main(["--config", str(tmp_path / "absent.json")]) == 2


def test_invalid_config_exits_with_config_status(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"pipeline": {"width": 0, "height": 720, "framerate": 30, "bitrate": 1}}))
    assert main(["--config", str(path), "status"]) == 2


def test_status_without_running_controller(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(_settings().model_dump_json())
    assert main(["--config", str(path), "status", "--port", str(_free_port())]) == 1


def test_build_controller_uses_settings():
    settings = _settings(
        controller={"tick_interval": 0.5, "hold_samples": 3, "max_start_attempts": 7},
        supervisor={"startup_timeout": 4.0, "stop_timeout": 1.5},
    )
    controller = build_controller(settings)

    assert controller.state.phase is ControllerPhase.IDLE
    assert controller.load_base_spec() == settings.pipeline
    assert controller.tick_interval == 0.5
    assert controller.hold_samples == 3
    assert controller.backoff.max_attempts == 7
    assert controller.supervisor.startup_timeout == 4.0
    assert controller.supervisor.stop_timeout == 1.5
    assert controller.monitor.probe.host == "127.0.0.1"

    capture, encoder = controller.supervisor.command_factory(settings.pipeline)
    assert capture[0] == "libcamera-vid"
    assert "Title=full" in encoder


def test_async_main_reports_fatal_launch_failures():
    settings = _settings(
        tools={"capture_binary": "/nonexistent/libcamera-vid"},
        controller={"backoff_initial": 0.01, "max_start_attempts": 2},
    )
    assert asyncio.run(asyncio.wait_for(async_main(settings), timeout=10.0)) == 1
