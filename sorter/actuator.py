"""
actuator.py — Sorting gate dispatch.

Four gates, one per (colour, size). Exactly one may be ENGAGED at a time.
Every dispatch runs the same sequence:
  1. All channels → neutral pulse
  2. Selected channel → its active pulse, the others de-energised
  3. Hold for the settle time (the gate stays open until release_at)
  4. Selected channel → neutral pulse, then de-energised

Whatever happens in 2–4 (driver error, cancellation) every channel is
driven back to neutral before the call returns or raises, so a gate is
never left open.
"""

import asyncio
import json
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from gpiozero import GPIOZeroError, PWMOutputDevice

from sorter.config import CHANNEL_NAMES
from sorter.errors import ActuationError
from sorter.geometry import SizeCategory
from sorter.state import SharedState
from sorter.vision import Colour

SORT_LOG_PATH = "logs/sort_events.json"


@dataclass(frozen=True)
class ChannelSpec:
    name: str
    pin: int
    active_us: int


def channel_table(config: dict) -> dict:
    """(Colour, SizeCategory) → ChannelSpec. Add rows here for more bins."""
    def spec(name):
        return ChannelSpec(name, config[f"{name}_pin"], config[f"{name}_active_us"])

    return {
        (Colour.RED,  SizeCategory.LARGE): spec("red_large"),
        (Colour.RED,  SizeCategory.SMALL): spec("red_small"),
        (Colour.BLUE, SizeCategory.LARGE): spec("blue_large"),
        (Colour.BLUE, SizeCategory.SMALL): spec("blue_small"),
    }


# =====================================================================
# STATE
# =====================================================================

class ChannelStatus(Enum):
    OFF     = "OFF"        # no pulse output
    NEUTRAL = "NEUTRAL"    # centre pulse, gate closed
    ENGAGED = "ENGAGED"    # active pulse, gate open


@dataclass
class ActuatorState:
    channels: dict = field(default_factory=dict)
    engaged: Optional[str] = None
    release_at: Optional[float] = None   # monotonic time the engaged gate closes

    @classmethod
    def for_channels(cls, names) -> "ActuatorState":
        return cls(channels={n: ChannelStatus.OFF for n in names})

    def mark(self, name: str, status: ChannelStatus):
        if status is ChannelStatus.ENGAGED:
            if self.engaged not in (None, name):
                raise RuntimeError(
                    f"Cannot engage {name}: {self.engaged} is still engaged"
                )
            self.engaged = name
        elif self.engaged == name:
            self.engaged = None
            self.release_at = None
        self.channels[name] = status

    def engaged_channels(self) -> list:
        return [n for n, s in self.channels.items() if s is ChannelStatus.ENGAGED]

    def all_neutral(self) -> bool:
        return not self.engaged_channels()

    def release_due(self, now: float) -> bool:
        return self.release_at is not None and now >= self.release_at

    def snapshot(self) -> dict:
        return {n: s.value for n, s in self.channels.items()}


# =====================================================================
# DRIVERS
# =====================================================================

class GpioActuatorDriver:
    """
    One gpiozero PWMOutputDevice per channel. A pulse of width w µs in a
    period of p µs is a duty cycle of w / p at 1e6 / p Hz.
    """

    def __init__(self, channels, period_us: float, pin_factory=None):
        self._devices = {}
        try:
            for ch in channels:
                self._devices[ch.name] = PWMOutputDevice(
                    ch.pin, initial_value=0, frequency=1_000_000 / period_us,
                    pin_factory=pin_factory,
                )
        except GPIOZeroError as e:
            self.close()
            raise ActuationError(f"GPIO setup failed: {e}") from e

    def set_pulse(self, channel: str, pulse_us: float, period_us: float):
        dev = self._devices[channel]
        try:
            freq = 1_000_000 / period_us
            if dev.frequency != freq:
                dev.frequency = freq
            dev.value = pulse_us / period_us
        except (GPIOZeroError, OSError) as e:
            raise ActuationError(f"set_pulse failed on {channel}: {e}", channel) from e

    def clear(self, channel: str):
        try:
            self._devices[channel].off()
        except (GPIOZeroError, OSError) as e:
            raise ActuationError(f"clear failed on {channel}: {e}", channel) from e

    def close(self):
        for dev in self._devices.values():
            dev.close()
        self._devices = {}


class DryRunDriver:
    """Logs every call instead of touching pins. Bench use without gates."""

    def __init__(self, channels=(), period_us: float = 20_000):
        self.calls = []

    def set_pulse(self, channel: str, pulse_us: float, period_us: float):
        self.calls.append(("set_pulse", channel, pulse_us, period_us))
        print(f"[ACTUATOR] (dry) {channel} → {pulse_us:.0f}µs / {period_us:.0f}µs")

    def clear(self, channel: str):
        self.calls.append(("clear", channel))
        print(f"[ACTUATOR] (dry) {channel} → off")

    def close(self):
        pass


def make_driver(config: dict, channels):
    period_us = config["pwm_period_ms"] * 1000
    if config["actuator_backend"] == "dry":
        return DryRunDriver(channels, period_us)
    return GpioActuatorDriver(channels, period_us)


# =====================================================================
# DISPATCHER
# =====================================================================

class ActuatorDispatcher:

    def __init__(self, config: dict, state: SharedState, driver,
                 log_path: Optional[str] = SORT_LOG_PATH,
                 sleep=asyncio.sleep, clock=time.monotonic):
        self.config = config
        self.state = state
        self.driver = driver
        self.log_path = log_path
        self._sleep = sleep
        self._clock = clock
        self.table = channel_table(config)
        self.channels = [self.table[k] for k in self.table]
        self.actuators = ActuatorState.for_channels(CHANNEL_NAMES)
        self.period_us = config["pwm_period_ms"] * 1000
        self.neutral_us = config["neutral_pulse_us"]
        self.settle_s = config["settle_time_s"]
        self._lock = asyncio.Lock()

    def channel_for(self, colour: Colour, size: SizeCategory) -> ChannelSpec:
        return self.table[(colour, size)]

    # =====================================================================
    # LOW LEVEL
    # =====================================================================

    def _neutral(self, ch: ChannelSpec):
        self.driver.set_pulse(ch.name, self.neutral_us, self.period_us)
        self.actuators.mark(ch.name, ChannelStatus.NEUTRAL)

    def _off(self, ch: ChannelSpec):
        self.driver.clear(ch.name)
        self.actuators.mark(ch.name, ChannelStatus.OFF)

    def _engage(self, ch: ChannelSpec):
        self.driver.set_pulse(ch.name, ch.active_us, self.period_us)
        self.actuators.mark(ch.name, ChannelStatus.ENGAGED)
        self.actuators.release_at = self._clock() + self.settle_s

    async def _hold(self):
        remaining = self.actuators.release_at - self._clock()
        if remaining > 0:
            await self._sleep(remaining)

    def neutralise_all(self) -> list:
        """
        Best effort: neutral pulse then off on every channel. Keeps going
        past failures and returns them. A channel whose clear failed keeps
        its previous status.
        """
        failures = []
        for ch in self.channels:
            try:
                self._neutral(ch)
            except ActuationError as e:
                failures.append(e)
            try:
                self._off(ch)
            except ActuationError as e:
                failures.append(e)
        for e in failures:
            print(f"[ACTUATOR] ✗ Neutralise: {e}")
        return failures

    # =====================================================================
    # DISPATCH
    # =====================================================================

    async def dispatch(self, colour: Colour, size: SizeCategory, candidate=None) -> ChannelSpec:
        """
        Open the gate for (colour, size), hold it, close it. Blocks the
        caller for the settle time. Raises ActuationError after all
        channels have been neutralised.
        """
        ch = self.channel_for(colour, size)
        async with self._lock:
            error = None
            completed = False
            print(f"[ACTUATOR] 🔴 {colour.value}/{size.value} → {ch.name} "
                  f"(pin {ch.pin}) {ch.active_us}µs for {self.settle_s:.1f}s")
            try:
                for other in self.channels:
                    self._neutral(other)

                self._engage(ch)
                for other in self.channels:
                    if other is not ch:
                        self._off(other)

                await self._hold()

                self._neutral(ch)
                self._off(ch)
                completed = True
                print(f"[ACTUATOR] ✓ {ch.name} returned to neutral")
            except ActuationError as e:
                error = e
                raise
            finally:
                if not completed:
                    self.neutralise_all()
                if error is None and not completed:
                    error = "interrupted before release"
                self._log_event(colour, size, ch, candidate, error)
        return ch

    async def test_channel(self, name: str, hold_s: Optional[float] = None) -> bool:
        """Bench check: open one gate by name, hold, close."""
        ch = next((c for c in self.channels if c.name == name), None)
        if ch is None:
            print(f"[ACTUATOR] ✗ Unknown channel '{name}'. Valid: {list(CHANNEL_NAMES)}")
            return False
        hold = self.settle_s if hold_s is None else hold_s
        async with self._lock:
            try:
                for other in self.channels:
                    self._neutral(other)
                self._engage(ch)
                self.actuators.release_at = self._clock() + hold
                await self._hold()
                self._neutral(ch)
                self._off(ch)
            except ActuationError as e:
                print(f"[ACTUATOR] ✗ Channel test failed: {e}")
                self.neutralise_all()
                return False
            finally:
                if not self.actuators.all_neutral():
                    self.neutralise_all()
        return True

    # =====================================================================
    # LOG
    # =====================================================================

    def _log_event(self, colour, size, ch, candidate, error):
        event = {
            "timestamp": datetime.now().isoformat(),
            "colour": colour.value,
            "size": size.value,
            "channel": ch.name,
            "pin": ch.pin,
            "box": list(candidate.box.as_tuple()) if candidate else None,
            "area": candidate.area if candidate else None,
            "ok": error is None,
            "error": str(error) if error else None,
        }
        if error is None:
            self.state.dispatch_count += 1
            self.state.last_sort = f"{colour.value}/{size.value} → {ch.name}"
        else:
            self.state.dispatch_failures += 1
            self.state.last_error = str(error)
        if self.log_path:
            self._write_sort_log(event)

    def _write_sort_log(self, event: dict):
        directory = os.path.dirname(self.log_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        existing = []
        if os.path.exists(self.log_path):
            with open(self.log_path, "r") as f:
                try:
                    existing = json.load(f)
                except json.JSONDecodeError:
                    existing = []
        existing.append(event)
        with open(self.log_path, "w") as f:
            json.dump(existing, f, indent=2)

    def close(self):
        self.neutralise_all()
        self.driver.close()
