"""
geometry.py — Dropzone gate and size classification.
"""

from enum import Enum


class SizeCategory(Enum):
    SMALL = "SMALL"
    LARGE = "LARGE"


def trigger_x(frame_width: int, dropzone_fraction: float) -> float:
    """Horizontal pixel position of the dropzone line."""
    return frame_width * dropzone_fraction


def has_arrived(box, frame_width: int, dropzone_fraction: float) -> bool:
    """
    True once the box's left edge is within half its width of the trigger
    line, i.e. the box centre has reached or passed the line.
    """
    return box.x >= trigger_x(frame_width, dropzone_fraction) - box.width / 2


def classify_size(width: int, size_threshold: int) -> SizeCategory:
    """LARGE only when strictly wider than the threshold."""
    return SizeCategory.LARGE if width > size_threshold else SizeCategory.SMALL
