"""Bench-safe config (no settle wait, no status printing) and shared state."""

import pytest

from sorter.config import DEFAULT_CONFIG
from sorter.state import SharedState
from sorter.telemetry import StatusChannel


@pytest.fixture
def config():
    cfg = dict(DEFAULT_CONFIG)
    cfg.update({
        "settle_time_s": 0.0,
        "actuator_backend": "dry",
        "preview_enable": False,
        "statustext_enable": False,
        "frame_timeout_s": 0.1,
        "max_acquire_retries": 3,
    })
    return cfg


@pytest.fixture
def state():
    return SharedState()


@pytest.fixture
def status(config, state):
    return StatusChannel(config, state)
