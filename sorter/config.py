"""
config.py — Load, save, and validate sorter configuration.
"""

import json
import os

from sorter.errors import ConfigurationError

CONFIG_FILE = "sorter_config.json"

CHANNEL_NAMES = ("red_large", "red_small", "blue_large", "blue_small")

DEFAULT_CONFIG = {
    # --- COLOUR THRESHOLDS (OpenCV HSV: H 0-179, S/V 0-255) ---
    "red_hsv_low": [0, 100, 100],
    "red_hsv_high": [10, 255, 255],
    "blue_hsv_low": [90, 100, 100],
    "blue_hsv_high": [140, 255, 255],

    # --- CONTOUR FILTER ---
    "red_min_area": 5000,           # px², contours below this are ignored
    "blue_min_area": 5000,

    # --- CAMERA ---
    "camera_backend": "opencv",     # "opencv" or "picamera2"
    "camera_index": 0,
    "image_w": 640,
    "image_h": 480,
    "frame_pool_size": 4,           # preallocated buffers handed back after each frame
    "frame_queue_size": 2,
    "frame_timeout_s": 2.0,         # bounded wait for one frame
    "max_acquire_retries": 5,       # consecutive timeouts before STALLED

    # --- DROPZONE / SIZE ---
    "dropzone_fraction": 0.375,     # trigger line = image_w * fraction (240px at 640)
    "size_threshold_px": 300,       # box width > this → LARGE

    # --- ACTUATORS ---
    "settle_time_s": 3.0,           # hold the gate open this long
    "pwm_period_ms": 20.0,
    "neutral_pulse_us": 1500,
    "red_large_pin": 12,
    "red_large_active_us": 900,
    "red_small_pin": 13,
    "red_small_active_us": 900,
    "blue_large_pin": 19,
    "blue_large_active_us": 900,
    "blue_small_pin": 16,
    "blue_small_active_us": 2100,
    "actuator_backend": "gpio",     # "gpio" or "dry" (log only, no pins)

    # --- LOOP ---
    "auto_start": True,
    "preview_enable": True,
    "preview_window": "sorter",
    "preview_wait_ms": 20,
    "telemetry_rate_hz": 2,
    "statustext_enable": True,
}

_REQUIRED_KEYS = list(DEFAULT_CONFIG.keys())


def load_config(path: str = CONFIG_FILE) -> dict:
    if not os.path.exists(path):
        save_config(DEFAULT_CONFIG, path)
        print(f"[CONFIG] Created default config at {path}")

    with open(path, "r") as f:
        try:
            cfg = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"{path} is not valid JSON: {e}") from e

    # Merge any missing keys from defaults
    updated = False
    for k, v in DEFAULT_CONFIG.items():
        if k not in cfg:
            cfg[k] = v
            updated = True

    if updated:
        save_config(cfg, path)

    return cfg


def save_config(cfg: dict, path: str = CONFIG_FILE):
    with open(path, "w") as f:
        json.dump(cfg, f, indent=4)


def set_param(cfg: dict, key: str, value: str, path: str = CONFIG_FILE) -> tuple[bool, str]:
    """
    Parse and set a config value from a CLI string.
    Returns (success, message).
    """
    if key not in DEFAULT_CONFIG:
        return False, f"Unknown key: {key}. Valid keys: {list(DEFAULT_CONFIG.keys())}"

    default_val = DEFAULT_CONFIG[key]
    try:
        if isinstance(default_val, bool):
            typed_val = value.lower() in ("true", "1", "yes")
        elif isinstance(default_val, int):
            typed_val = int(value)
        elif isinstance(default_val, float):
            typed_val = float(value)
        elif isinstance(default_val, list):
            typed_val = [int(p) for p in value.replace(" ", "").split(",")]
            if len(typed_val) != len(default_val):
                return False, f"{key} needs {len(default_val)} comma-separated values"
        else:
            typed_val = value
    except ValueError:
        return False, f"Could not cast '{value}' to {type(default_val).__name__}"

    candidate = dict(cfg)
    candidate[key] = typed_val
    try:
        validate_config(candidate)
    except ConfigurationError as e:
        return False, str(e)

    cfg[key] = typed_val
    save_config(cfg, path)
    return True, f"Set {key} = {typed_val}"


def _check_hsv(cfg: dict, colour: str):
    low = cfg[f"{colour}_hsv_low"]
    high = cfg[f"{colour}_hsv_high"]
    limits = (179, 255, 255)
    for name, triplet in ((f"{colour}_hsv_low", low), (f"{colour}_hsv_high", high)):
        if not isinstance(triplet, list) or len(triplet) != 3:
            raise ConfigurationError(f"{name} must be a list of 3 ints, got {triplet!r}")
        for v, top in zip(triplet, limits):
            if not isinstance(v, int) or not 0 <= v <= top:
                raise ConfigurationError(f"{name} value {v!r} outside 0..{top}")
    for lo, hi in zip(low, high):
        if lo > hi:
            raise ConfigurationError(f"{colour} HSV low {low} exceeds high {high}")


def validate_config(cfg: dict):
    """Raise ConfigurationError on the first invalid value."""
    missing = [k for k in _REQUIRED_KEYS if k not in cfg]
    if missing:
        raise ConfigurationError(f"Missing config keys: {missing}")

    for colour in ("red", "blue"):
        _check_hsv(cfg, colour)
        if cfg[f"{colour}_min_area"] <= 0:
            raise ConfigurationError(f"{colour}_min_area must be > 0")

    if cfg["camera_backend"] not in ("opencv", "picamera2"):
        raise ConfigurationError(f"Unknown camera_backend: {cfg['camera_backend']}")
    if cfg["actuator_backend"] not in ("gpio", "dry"):
        raise ConfigurationError(f"Unknown actuator_backend: {cfg['actuator_backend']}")
    if cfg["image_w"] <= 0 or cfg["image_h"] <= 0:
        raise ConfigurationError("image_w and image_h must be > 0")
    if cfg["frame_pool_size"] < 2:
        raise ConfigurationError("frame_pool_size must be >= 2")
    if cfg["frame_queue_size"] < 1 or cfg["frame_queue_size"] >= cfg["frame_pool_size"]:
        raise ConfigurationError("frame_queue_size must be >= 1 and < frame_pool_size")
    if cfg["frame_timeout_s"] <= 0:
        raise ConfigurationError("frame_timeout_s must be > 0")
    if cfg["max_acquire_retries"] < 1:
        raise ConfigurationError("max_acquire_retries must be >= 1")

    if not 0.0 < cfg["dropzone_fraction"] <= 1.0:
        raise ConfigurationError("dropzone_fraction must be in (0, 1]")
    if cfg["size_threshold_px"] <= 0:
        raise ConfigurationError("size_threshold_px must be > 0")

    if cfg["settle_time_s"] < 0:
        raise ConfigurationError("settle_time_s must be >= 0")
    period_us = cfg["pwm_period_ms"] * 1000
    if period_us <= 0:
        raise ConfigurationError("pwm_period_ms must be > 0")
    if not 0 < cfg["neutral_pulse_us"] < period_us:
        raise ConfigurationError("neutral_pulse_us must be inside the PWM period")

    pins = []
    for name in CHANNEL_NAMES:
        if not 0 < cfg[f"{name}_active_us"] < period_us:
            raise ConfigurationError(f"{name}_active_us must be inside the PWM period")
        pins.append(cfg[f"{name}_pin"])
    if len(set(pins)) != len(pins):
        raise ConfigurationError(f"Channel pins must be distinct, got {pins}")

    if cfg["telemetry_rate_hz"] <= 0:
        raise ConfigurationError("telemetry_rate_hz must be > 0")
