"""
Gate dispatch tests: command order, hold time, failure and cancellation
always ending with every channel neutral.

Run with: pytest tests/test_actuator.py -v
"""
import asyncio
import json
from unittest.mock import Mock

import pytest
from gpiozero.pins.mock import MockFactory, MockPWMPin

from sorter.actuator import (
    ActuatorDispatcher, ActuatorState, ChannelStatus, DryRunDriver,
    GpioActuatorDriver, channel_table,
)
from sorter.config import CHANNEL_NAMES
from sorter.errors import ActuationError
from sorter.geometry import SizeCategory
from sorter.vision import BoundingBox, Candidate, Colour


class FailingDriver(DryRunDriver):
    """Fails whenever a channel is driven to a non-neutral pulse."""

    def __init__(self, neutral_us=1500):
        super().__init__()
        self.neutral_us = neutral_us

    def set_pulse(self, channel, pulse_us, period_us):
        if pulse_us != self.neutral_us:
            raise ActuationError(f"{channel} stuck", channel)
        super().set_pulse(channel, pulse_us, period_us)


def make_dispatcher(config, state, driver=None, **kw):
    kw.setdefault("log_path", None)
    return ActuatorDispatcher(config, state, driver or DryRunDriver(), **kw)


class TestChannelTable:

    def test_every_pair_has_a_channel(self, config):
        table = channel_table(config)
        assert {spec.name for spec in table.values()} == set(CHANNEL_NAMES)
        assert table[(Colour.BLUE, SizeCategory.SMALL)].active_us == 2100
        assert table[(Colour.RED, SizeCategory.LARGE)].pin == 12


class TestActuatorState:

    def test_second_engage_refused(self):
        st = ActuatorState.for_channels(CHANNEL_NAMES)
        st.mark("red_large", ChannelStatus.ENGAGED)
        with pytest.raises(RuntimeError):
            st.mark("blue_small", ChannelStatus.ENGAGED)

    def test_neutral_clears_engaged(self):
        st = ActuatorState.for_channels(CHANNEL_NAMES)
        st.mark("red_large", ChannelStatus.ENGAGED)
        st.release_at = 10.0
        assert st.release_due(10.0)
        st.mark("red_large", ChannelStatus.NEUTRAL)
        assert st.all_neutral()
        assert st.release_at is None


class TestDispatch:

    def test_command_sequence(self, config, state):
        driver = DryRunDriver()
        disp = make_dispatcher(config, state, driver)
        ch = asyncio.run(disp.dispatch(Colour.BLUE, SizeCategory.LARGE))

        assert ch.name == "blue_large"
        neutral = [("set_pulse", n, 1500, 20000.0) for n in CHANNEL_NAMES]
        assert driver.calls[:4] == neutral
        assert driver.calls[4] == ("set_pulse", "blue_large", 900, 20000.0)
        assert sorted(c[1] for c in driver.calls[5:8]) == ["blue_small", "red_large", "red_small"]
        assert all(c[0] == "clear" for c in driver.calls[5:8])
        assert driver.calls[8:] == [
            ("set_pulse", "blue_large", 1500, 20000.0),
            ("clear", "blue_large"),
        ]
        assert disp.actuators.all_neutral()
        assert state.dispatch_count == 1
        assert state.last_sort == "BLUE/LARGE → blue_large"

    def test_only_one_engage_per_dispatch(self, config, state):
        driver = DryRunDriver()
        disp = make_dispatcher(config, state, driver)
        asyncio.run(disp.dispatch(Colour.RED, SizeCategory.SMALL))
        engages = [c for c in driver.calls if c[0] == "set_pulse" and c[2] != 1500]
        assert engages == [("set_pulse", "red_small", 900, 20000.0)]

    def test_holds_for_settle_time(self, config, state):
        config["settle_time_s"] = 3.0
        slept = []

        async def fake_sleep(s):
            slept.append(s)

        disp = make_dispatcher(config, state, sleep=fake_sleep, clock=lambda: 100.0)
        asyncio.run(disp.dispatch(Colour.RED, SizeCategory.LARGE))
        assert slept == [pytest.approx(3.0)]

    def test_engage_failure_neutralises_and_raises(self, config, state):
        driver = FailingDriver()
        disp = make_dispatcher(config, state, driver)
        with pytest.raises(ActuationError):
            asyncio.run(disp.dispatch(Colour.BLUE, SizeCategory.SMALL))

        assert disp.actuators.all_neutral()
        cleared = {c[1] for c in driver.calls if c[0] == "clear"}
        assert cleared == set(CHANNEL_NAMES)
        assert state.dispatch_failures == 1
        assert state.dispatch_count == 0
        assert "blue_small stuck" in state.last_error

    def test_cancel_during_hold_neutralises(self, config, state):
        config["settle_time_s"] = 5.0
        driver = DryRunDriver()

        async def scenario():
            disp = make_dispatcher(config, state, driver, sleep=lambda s: asyncio.Event().wait())
            task = asyncio.create_task(disp.dispatch(Colour.RED, SizeCategory.LARGE))
            for _ in range(3):
                await asyncio.sleep(0)
            assert disp.actuators.engaged == "red_large"
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return disp

        disp = asyncio.run(scenario())
        assert disp.actuators.all_neutral()
        assert driver.calls[-1] == ("clear", "blue_small")
        assert state.dispatch_failures == 1
        assert state.last_error == "interrupted before release"

    def test_sort_event_logged(self, config, state, tmp_path):
        log = tmp_path / "logs" / "sort_events.json"
        disp = make_dispatcher(config, state, log_path=str(log))
        cand = Candidate(Colour.RED, BoundingBox(250, 40, 320, 90), 28000.0)
        asyncio.run(disp.dispatch(Colour.RED, SizeCategory.LARGE, cand))

        events = json.loads(log.read_text())
        assert len(events) == 1
        assert events[0]["channel"] == "red_large"
        assert events[0]["box"] == [250, 40, 320, 90]
        assert events[0]["ok"] is True


class TestChannelCheck:

    def test_unknown_channel(self, config, state):
        disp = make_dispatcher(config, state)
        assert asyncio.run(disp.test_channel("green_large")) is False

    def test_channel_opens_and_closes(self, config, state):
        driver = DryRunDriver()
        disp = make_dispatcher(config, state, driver)
        assert asyncio.run(disp.test_channel("red_small", hold_s=0.0)) is True
        assert ("set_pulse", "red_small", 900, 20000.0) in driver.calls
        assert driver.calls[-1] == ("clear", "red_small")
        assert disp.actuators.all_neutral()
        assert state.dispatch_count == 0


class TestGpioDriver:

    @pytest.fixture
    def driver(self, config):
        factory = MockFactory(pin_class=MockPWMPin)
        drv = GpioActuatorDriver(channel_table(config).values(), 20000.0, pin_factory=factory)
        yield drv
        drv.close()
        factory.reset()

    def test_neutral_pulse_duty(self, driver):
        driver.set_pulse("red_large", 1500, 20000.0)
        dev = driver._devices["red_large"]
        assert dev.value == pytest.approx(0.075)
        assert dev.frequency == pytest.approx(50.0)

    def test_clear_turns_output_off(self, driver):
        driver.set_pulse("blue_small", 2100, 20000.0)
        driver.clear("blue_small")
        assert driver._devices["blue_small"].value == 0


class TestNeutraliseAll:

    def test_keeps_going_past_failures(self, config, state):
        driver = Mock()
        driver.clear.side_effect = ActuationError("bus error")
        disp = make_dispatcher(config, state, driver)
        failures = disp.neutralise_all()
        assert len(failures) == len(CHANNEL_NAMES)
        assert driver.set_pulse.call_count == len(CHANNEL_NAMES)
        assert disp.actuators.snapshot() == {n: "NEUTRAL" for n in CHANNEL_NAMES}

    def test_close_neutralises_then_closes_driver(self, config, state):
        driver = Mock()
        make_dispatcher(config, state, driver).close()
        assert driver.clear.call_count == len(CHANNEL_NAMES)
        driver.close.assert_called_once()
