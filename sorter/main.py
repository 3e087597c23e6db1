"""
Colour / size brick sorter
Entry point: loads config, opens camera and gates, starts all async tasks and CLI
"""

import asyncio
import signal
import sys

from sorter.actuator import ActuatorDispatcher, channel_table, make_driver
from sorter.camera import CameraPipeline
from sorter.cli import SorterCLI
from sorter.config import load_config, validate_config
from sorter.errors import AcquisitionError, ActuationError, ConfigurationError
from sorter.preview import PreviewWindow
from sorter.sort_fsm import SortingFSM
from sorter.state import SharedState
from sorter.telemetry import StatusChannel, TelemetryLoop
from sorter.vision import ColourDetector


async def run():
    config = load_config()
    validate_config(config)
    state = SharedState()

    status = StatusChannel(config, state)

    # Gates first: a GPIO failure must not leave the camera open
    driver = make_driver(config, list(channel_table(config).values()))
    dispatcher = ActuatorDispatcher(config, state, driver)
    preview = PreviewWindow(config)
    camera = None
    try:
        dispatcher.neutralise_all()
        camera = CameraPipeline(config, state)
        camera.open()

        detector = ColourDetector(config)
        telemetry = TelemetryLoop(config, state)
        fsm = SortingFSM(config, state, camera, detector, dispatcher, status, preview)
        cli = SorterCLI(config, state, fsm, camera, detector, dispatcher, status)

        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, lambda: fsm.trigger_stop("SIGINT"))

        tasks = [
            asyncio.create_task(camera.run()),
            asyncio.create_task(telemetry.run()),
            asyncio.create_task(cli.run()),
        ]
        try:
            # The loop task decides the lifetime; everything else is torn down after it.
            await fsm.run()
        finally:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
    finally:
        dispatcher.close()
        if camera is not None:
            camera.release()
        preview.close()


def main():
    try:
        asyncio.run(run())
    except ConfigurationError as e:
        print(f"[MAIN] ✗ Configuration error: {e}")
        sys.exit(2)
    except ActuationError as e:
        print(f"[MAIN] ✗ Actuator setup failed: {e}")
        sys.exit(2)
    except AcquisitionError as e:
        print(f"[MAIN] ✗ Camera stalled: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
