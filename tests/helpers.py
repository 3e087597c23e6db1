"""Synthetic frames and a scripted frame source for the sorter tests."""

import numpy as np

from sorter.camera import Frame
from sorter.errors import AcquisitionError

BLUE_BGR = (255, 0, 0)
RED_BGR = (0, 0, 255)


def blank_frame(w=640, h=480):
    return np.zeros((h, w, 3), dtype=np.uint8)


def frame_with_blocks(*blocks, w=640, h=480):
    """blocks: (x, y, width, height, bgr) filled rectangles."""
    img = blank_frame(w, h)
    for x, y, bw, bh, bgr in blocks:
        img[y:y + bh, x:x + bw] = bgr
    return img


class ScriptedCamera:
    """
    Hands out the given images in order, then raises AcquisitionError.
    Tracks every frame that has not been handed back yet.
    """

    def __init__(self, images):
        self.images = list(images)
        self.outstanding = set()
        self.released = []
        self._index = 0

    async def get_frame(self, timeout):
        if not self.images:
            raise AcquisitionError(f"No frame within {timeout:.1f}s")
        self._index += 1
        frame = Frame(self._index, self.images.pop(0), 0.0)
        self.outstanding.add(frame.index)
        return frame

    def release_frame(self, frame):
        self.outstanding.remove(frame.index)
        self.released.append(frame.index)
