"""
camera.py — Frame source with an explicit buffer pool.

A fixed set of buffers is preallocated. The producer (run) fills a free
buffer in an executor thread so the blocking read never stalls the event
loop, then queues it. The consumer takes a Frame with get_frame(timeout)
and MUST hand it back with release_frame() when the iteration is done,
or the pool runs dry and acquisition stops.
"""

import asyncio
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from sorter.errors import AcquisitionError, ConfigurationError
from sorter.state import SharedState


@dataclass
class Frame:
    index: int
    image: np.ndarray
    timestamp: float


# =====================================================================
# BUFFER POOL
# =====================================================================

class FramePool:

    def __init__(self, size: int, shape: tuple):
        self.shape = shape
        self._buffers = [np.zeros(shape, dtype=np.uint8) for _ in range(size)]
        self._free: queue.Queue = queue.Queue()
        for buf in self._buffers:
            self._free.put(buf)
        self._out = set()
        self._lock = threading.Lock()

    @property
    def size(self) -> int:
        return len(self._buffers)

    @property
    def in_use(self) -> int:
        with self._lock:
            return len(self._out)

    def acquire(self, timeout: Optional[float] = None) -> Optional[np.ndarray]:
        try:
            buf = self._free.get(timeout=timeout)
        except queue.Empty:
            return None
        with self._lock:
            self._out.add(id(buf))
        return buf

    def release(self, buf: np.ndarray):
        with self._lock:
            if id(buf) not in self._out:
                raise ValueError("Buffer is not checked out from this pool")
            self._out.discard(id(buf))
        self._free.put(buf)


# =====================================================================
# BACKENDS
# =====================================================================

class OpenCVBackend:
    """USB / V4L2 camera through cv2.VideoCapture."""

    name = "opencv"

    def __init__(self, config: dict):
        self.config = config
        self._cap = None

    def open(self) -> tuple:
        idx = self.config.get("camera_index", 0)
        self._cap = cv2.VideoCapture(idx)
        if not self._cap.isOpened():
            raise ConfigurationError(f"Camera {idx} failed to open")
        self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.config["image_w"])
        self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.config["image_h"])
        return (int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
                int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT)))

    def read_into(self, buf: np.ndarray) -> bool:
        if self._cap is None:
            return False
        ret, frame = self._cap.read()
        if not ret or frame is None:
            return False
        if frame.shape != buf.shape:
            frame = cv2.resize(frame, (buf.shape[1], buf.shape[0]))
        np.copyto(buf, frame)
        return True

    def close(self):
        if self._cap:
            self._cap.release()
            self._cap = None


class Picamera2Backend:
    """Raspberry Pi CSI camera. RGB888 from libcamera is BGR in memory."""

    name = "picamera2"

    def __init__(self, config: dict):
        self.config = config
        self._cam = None

    def open(self) -> tuple:
        from picamera2 import Picamera2

        size = (self.config["image_w"], self.config["image_h"])
        try:
            self._cam = Picamera2(self.config.get("camera_index", 0))
            cfg = self._cam.create_video_configuration(
                main={"size": size, "format": "RGB888"}
            )
            self._cam.configure(cfg)
            self._cam.start()
        except (RuntimeError, IndexError, ValueError) as e:
            raise ConfigurationError(f"Picamera2 setup failed: {e}") from e
        actual = self._cam.camera_configuration()["main"]["size"]
        return int(actual[0]), int(actual[1])

    def read_into(self, buf: np.ndarray) -> bool:
        if self._cam is None:
            return False
        frame = self._cam.capture_array("main")
        if frame is None:
            return False
        if frame.shape[:2] != buf.shape[:2]:
            frame = cv2.resize(frame, (buf.shape[1], buf.shape[0]))
        np.copyto(buf, frame[:, :, :3])
        return True

    def close(self):
        if self._cam:
            self._cam.stop()
            self._cam.close()
            self._cam = None


BACKENDS = {
    "opencv": OpenCVBackend,
    "picamera2": Picamera2Backend,
}


# =====================================================================
# PIPELINE
# =====================================================================

class CameraPipeline:

    def __init__(self, config: dict, state: SharedState, backend=None):
        self.config = config
        self.state = state
        self.backend = backend or BACKENDS[config["camera_backend"]](config)
        self.pool = FramePool(
            config["frame_pool_size"],
            (config["image_h"], config["image_w"], 3),
        )
        self.frame_queue: asyncio.Queue = asyncio.Queue(maxsize=config["frame_queue_size"])
        self._executor = ThreadPoolExecutor(max_workers=1)
        self._running = False
        self._index = 0
        self.read_fail_count = 0

    # =====================================================================
    # STARTUP
    # =====================================================================

    def open(self):
        """Raises ConfigurationError if the camera cannot be opened."""
        w, h = self.backend.open()
        want = (self.config["image_w"], self.config["image_h"])
        if (w, h) != want:
            print(f"[CAMERA] Configuration adjusted: requested {want[0]}x{want[1]}, "
                  f"got {w}x{h} (frames are resized)")
        print(f"[CAMERA] ✓ {self.backend.name} camera opened "
              f"({want[0]}x{want[1]}, {self.pool.size} buffers)")
        self.state.camera_ok = True

    def _blocking_read(self) -> Optional[np.ndarray]:
        """Fill one free buffer — runs in executor thread."""
        buf = self.pool.acquire(timeout=0.5)
        if buf is None:
            return None
        if not self.backend.read_into(buf):
            self.pool.release(buf)
            self.read_fail_count += 1
            return None
        return buf

    # =====================================================================
    # PRODUCER
    # =====================================================================

    async def run(self):
        loop = asyncio.get_running_loop()
        self._running = True

        while self._running:
            buf = await loop.run_in_executor(self._executor, self._blocking_read)
            if buf is None:
                await asyncio.sleep(0.01)
                continue

            self.read_fail_count = 0
            self._index += 1
            frame = Frame(self._index, buf, time.monotonic())

            # Drop the oldest queued frame so the consumer always sees the latest
            if self.frame_queue.full():
                try:
                    stale = self.frame_queue.get_nowait()
                    self.pool.release(stale.image)
                except asyncio.QueueEmpty:
                    pass
            self.frame_queue.put_nowait(frame)

            await asyncio.sleep(0)   # yield to event loop

    # =====================================================================
    # CONSUMER
    # =====================================================================

    async def get_frame(self, timeout: float) -> Frame:
        try:
            return await asyncio.wait_for(self.frame_queue.get(), timeout)
        except asyncio.TimeoutError:
            raise AcquisitionError(f"No frame within {timeout:.1f}s") from None

    def release_frame(self, frame: Frame):
        self.pool.release(frame.image)

    def stop(self):
        self._running = False

    def release(self):
        self.stop()
        # Return anything still queued
        while not self.frame_queue.empty():
            self.pool.release(self.frame_queue.get_nowait().image)
        self.backend.close()
        self._executor.shutdown(wait=False)
        self.state.camera_ok = False
