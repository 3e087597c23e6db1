"""
Startup / shutdown tests for the entry point: teardown order on setup
failures, and a full process that must exit when the camera stalls even
while the operator prompt is waiting for input.

Run with: pytest tests/test_main.py -v
"""
import asyncio
import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

import sorter.main as sorter_main
from sorter.actuator import DryRunDriver
from sorter.config import DEFAULT_CONFIG
from sorter.errors import ActuationError, ConfigurationError

REPO_ROOT = Path(__file__).resolve().parents[1]


class RecordingCamera:
    instances = []

    def __init__(self, config, state, fail_open=False):
        self.state = state
        self.fail_open = fail_open
        self.opened = False
        self.released = False
        RecordingCamera.instances.append(self)

    def open(self):
        if self.fail_open:
            raise ConfigurationError("Camera 0 failed to open")
        self.opened = True

    def release(self):
        self.released = True


@pytest.fixture
def patched_main(monkeypatch, config):
    RecordingCamera.instances = []
    monkeypatch.setattr(sorter_main, "load_config", lambda: config)
    return monkeypatch


class TestStartupFailures:

    def test_gpio_failure_never_touches_camera(self, patched_main):
        def broken_driver(config, channels):
            raise ActuationError("GPIO setup failed: pin 12 busy")

        patched_main.setattr(sorter_main, "make_driver", broken_driver)
        patched_main.setattr(sorter_main, "CameraPipeline", RecordingCamera)

        with pytest.raises(ActuationError):
            asyncio.run(sorter_main.run())
        assert RecordingCamera.instances == []

    def test_camera_failure_neutralises_gates(self, patched_main):
        driver = DryRunDriver()
        patched_main.setattr(sorter_main, "make_driver", lambda config, channels: driver)
        patched_main.setattr(
            sorter_main, "CameraPipeline",
            lambda config, state: RecordingCamera(config, state, fail_open=True),
        )

        with pytest.raises(ConfigurationError):
            asyncio.run(sorter_main.run())

        camera = RecordingCamera.instances[0]
        assert camera.released
        # close() drives every gate neutral then off
        assert driver.calls[-2:] == [("set_pulse", "blue_small", 1500, 20000.0),
                                     ("clear", "blue_small")]


STALLING_RUN = """
import asyncio
import sorter.main as sorter_main
from sorter.errors import AcquisitionError


class DeadCamera:
    def __init__(self, config, state):
        self.state = state
        self.pool = None

    def open(self):
        self.state.camera_ok = True

    async def run(self):
        await asyncio.Event().wait()

    async def get_frame(self, timeout):
        await asyncio.sleep(timeout)
        raise AcquisitionError(f"No frame within {timeout:.1f}s")

    def release_frame(self, frame):
        pass

    def release(self):
        self.state.camera_ok = False


sorter_main.CameraPipeline = DeadCamera
sorter_main.main()
"""


class TestShutdown:

    def test_stall_exits_while_prompt_waits(self, tmp_path):
        cfg = dict(DEFAULT_CONFIG)
        cfg.update({
            "actuator_backend": "dry",
            "preview_enable": False,
            "frame_timeout_s": 0.2,
            "max_acquire_retries": 2,
        })
        (tmp_path / "sorter_config.json").write_text(json.dumps(cfg))

        env = dict(os.environ)
        env["PYTHONPATH"] = os.pathsep.join(
            p for p in (str(REPO_ROOT), env.get("PYTHONPATH")) if p
        )
        env["PYTHONIOENCODING"] = "utf-8"
        out_path = tmp_path / "out.txt"

        with open(out_path, "wb") as out:
            # stdin stays open and silent: the prompt blocks for the whole run
            proc = subprocess.Popen(
                [sys.executable, "-c", STALLING_RUN],
                cwd=tmp_path, env=env,
                stdin=subprocess.PIPE, stdout=out, stderr=subprocess.STDOUT,
            )
            try:
                code = proc.wait(timeout=30)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
                code = None
            finally:
                proc.stdin.close()

        output = out_path.read_text(encoding="utf-8", errors="replace")
        assert code == 1, output
        assert "CAMERA STALLED after 2 timeouts" in output
        assert "[MAIN] ✗ Camera stalled" in output
