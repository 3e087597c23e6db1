"""
Frame pool and camera pipeline tests with an in-memory backend.

Run with: pytest tests/test_camera.py -v
"""
import asyncio

import numpy as np
import pytest

from sorter.camera import CameraPipeline, FramePool
from sorter.errors import AcquisitionError


class CountingBackend:
    """Fills each buffer with the read number (mod 256)."""

    name = "fake"

    def __init__(self, size=(64, 48), ok=True):
        self.size = size
        self.ok = ok
        self.reads = 0
        self.closed = False

    def open(self):
        return self.size

    def read_into(self, buf):
        if not self.ok:
            return False
        self.reads += 1
        buf.fill(self.reads % 256)
        return True

    def close(self):
        self.closed = True


@pytest.fixture
def small_config(config):
    config.update({"image_w": 64, "image_h": 48, "frame_pool_size": 3, "frame_queue_size": 1})
    return config


class TestFramePool:

    def test_acquire_release_round_trip(self):
        pool = FramePool(2, (4, 4, 3))
        a = pool.acquire(0)
        b = pool.acquire(0)
        assert pool.in_use == 2
        assert pool.acquire(0) is None
        pool.release(a)
        pool.release(b)
        assert pool.in_use == 0

    def test_buffers_are_reused_not_reallocated(self):
        pool = FramePool(1, (4, 4, 3))
        first = pool.acquire(0)
        pool.release(first)
        assert pool.acquire(0) is first

    def test_double_release_rejected(self):
        pool = FramePool(2, (4, 4, 3))
        buf = pool.acquire(0)
        pool.release(buf)
        with pytest.raises(ValueError):
            pool.release(buf)

    def test_foreign_buffer_rejected(self):
        pool = FramePool(2, (4, 4, 3))
        with pytest.raises(ValueError):
            pool.release(np.zeros((4, 4, 3), dtype=np.uint8))


class TestCameraPipeline:

    def test_frame_delivered_and_returned(self, small_config, state):
        backend = CountingBackend()

        async def scenario():
            cam = CameraPipeline(small_config, state, backend)
            cam.open()
            task = asyncio.create_task(cam.run())
            frame = await cam.get_frame(2.0)
            assert frame.image.shape == (48, 64, 3)
            assert frame.image[0, 0, 0] >= 1
            cam.release_frame(frame)
            cam.stop()
            await task
            cam.release()
            return cam

        cam = asyncio.run(scenario())
        assert cam.pool.in_use == 0
        assert backend.closed
        assert state.camera_ok is False

    def test_timeout_raises_acquisition_error(self, small_config, state):
        backend = CountingBackend(ok=False)

        async def scenario():
            cam = CameraPipeline(small_config, state, backend)
            task = asyncio.create_task(cam.run())
            try:
                with pytest.raises(AcquisitionError):
                    await cam.get_frame(0.05)
            finally:
                cam.stop()
                await task
                cam.release()
            return cam

        cam = asyncio.run(scenario())
        assert backend.reads == 0
        assert cam.pool.in_use == 0

    def test_slow_consumer_sees_latest_frame(self, small_config, state):
        backend = CountingBackend()

        async def scenario():
            cam = CameraPipeline(small_config, state, backend)
            task = asyncio.create_task(cam.run())
            while backend.reads < 6:
                await asyncio.sleep(0.01)
            cam.stop()
            await task
            # stale frames were handed back as newer ones arrived
            assert cam.pool.in_use == cam.frame_queue.qsize() == 1
            frame = await cam.get_frame(0.1)
            latest = cam._index
            cam.release_frame(frame)
            cam.release()
            return frame.index, latest

        index, latest = asyncio.run(scenario())
        assert index == latest
