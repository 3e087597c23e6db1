"""
sort_fsm.py — Per-frame sorting state machine.

  CAPTURING → DETECTING → APPROACHING ──────────────┐
                        → ARRIVED → DISPATCHING ────┴→ CAPTURING

Each frame is decided on its own; nothing carries over except the gate
state inside the dispatcher. The frame is handed back to the camera pool
at the end of every iteration, whether or not a gate was fired.

Runs until stop is triggered (CLI, SPACE in the preview) or the camera
stalls for max_acquire_retries consecutive timeouts.
"""

import asyncio
from datetime import datetime
from typing import Optional

from sorter.errors import AcquisitionError, ActuationError
from sorter.geometry import classify_size, has_arrived, trigger_x
from sorter.state import LoopPhase, SharedState
from sorter.telemetry import StatusChannel


class SortingFSM:

    def __init__(self, config: dict, state: SharedState, camera, detector,
                 dispatcher, status: StatusChannel, preview=None):
        self.config = config
        self.state = state
        self.camera = camera
        self.detector = detector
        self.dispatcher = dispatcher
        self.status = status
        self.preview = preview
        self._start_event = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._paused = False

    # =====================================================================
    # EXTERNAL TRIGGERS (called from CLI / preview)
    # =====================================================================

    def trigger_start(self):
        self._start_event.set()

    def trigger_stop(self, reason: str = "Operator stop"):
        if not self._stop_event.is_set():
            self.state.stop_reason = reason
        self._stop_event.set()
        self._start_event.set()   # release a loop still waiting in IDLE

    def pause(self):
        self._paused = True

    def resume(self):
        self._paused = False

    @property
    def running(self) -> bool:
        return self._start_event.is_set() and not self._stop_event.is_set()

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    # =====================================================================
    # MAIN LOOP
    # =====================================================================

    async def run(self):
        if self.config.get("auto_start", True):
            self.trigger_start()
        else:
            self.state.phase = LoopPhase.IDLE
            print("[FSM] Waiting for 'start'...")
        await self._start_event.wait()
        if self._stop_event.is_set():
            self.state.phase = LoopPhase.STOPPED
            return

        self.state.started_at = datetime.now()
        self.status.send("Sorting loop started", "NOTICE")

        try:
            while not self._stop_event.is_set():
                if self._paused:
                    self.state.phase = LoopPhase.PAUSED
                    await asyncio.sleep(0.1)
                    continue
                await self.step()
                await asyncio.sleep(0)   # let the producer and CLI run
        finally:
            if self.state.phase is not LoopPhase.STALLED:
                self.state.phase = LoopPhase.STOPPED
            reason = self.state.stop_reason or self.state.phase.value
            self.status.send(
                f"Sorting loop ended ({reason}). "
                f"Sorted {self.state.dispatch_count}, failed {self.state.dispatch_failures}",
                "NOTICE",
            )

    async def step(self) -> Optional[tuple]:
        """
        One iteration. Returns (Colour, SizeCategory) when a gate fired
        successfully, else None. Raises AcquisitionError once the camera
        is considered stalled.
        """
        self.state.phase = LoopPhase.CAPTURING
        try:
            frame = await self.camera.get_frame(self.config["frame_timeout_s"])
        except AcquisitionError as e:
            self._on_acquire_timeout(e)
            return None

        if self.state.acquire_fail_count:
            self.status.send("Camera frames flowing again", "INFO")
        self.state.acquire_fail_count = 0
        self.state.stalled = False

        try:
            return await self._process(frame)
        finally:
            self.camera.release_frame(frame)

    # =====================================================================
    # PHASES
    # =====================================================================

    async def _process(self, frame) -> Optional[tuple]:
        self.state.phase = LoopPhase.DETECTING
        self.state.frames_processed += 1

        image = frame.image
        width = image.shape[1]
        fraction = self.config["dropzone_fraction"]
        tx = trigger_x(width, fraction)

        candidate = self.detector.detect(image)
        self.state.candidate = candidate

        if candidate is None:
            self.state.arrived = False
            self.state.phase = LoopPhase.APPROACHING
            self._show(image, None, False, tx)
            return None

        arrived = has_arrived(candidate.box, width, fraction)
        self.state.arrived = arrived
        self._show(image, candidate.box, arrived, tx)

        if not arrived:
            self.state.phase = LoopPhase.APPROACHING
            return None

        self.state.phase = LoopPhase.ARRIVED
        size = classify_size(candidate.box.width, self.config["size_threshold_px"])

        self.state.phase = LoopPhase.DISPATCHING
        try:
            await self.dispatcher.dispatch(candidate.colour, size, candidate)
        except ActuationError as e:
            self.state.last_error = str(e)
            self.status.send(
                f"SORT FAILED {candidate.colour.value}/{size.value}: {e} — object skipped",
                "ERROR",
            )
            return None
        return candidate.colour, size

    def _on_acquire_timeout(self, err: AcquisitionError):
        self.state.acquire_fail_count += 1
        n = self.state.acquire_fail_count
        limit = self.config["max_acquire_retries"]
        if n >= limit:
            self.state.stalled = True
            self.state.phase = LoopPhase.STALLED
            self.state.stop_reason = f"Camera stalled: {err}"
            self.status.send(f"CAMERA STALLED after {n} timeouts — stopping", "CRITICAL")
            raise err
        self.status.send(f"Frame timeout {n}/{limit}: {err}. Retrying", "WARNING")

    def _show(self, image, box, arrived: bool, tx: float):
        if self.preview is None:
            return
        if self.preview.show(image, box, arrived, tx):
            self.trigger_stop("SPACE pressed in preview")
