"""
vision.py — Colour segmentation, contour extraction and candidate selection.

One frame in, at most one Candidate out:
  BGR frame → HSV → in-range mask per colour → external contours
  → drop small contours → rightmost per colour → rightmost overall.

Nothing here keeps state between frames.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import cv2
import numpy as np


class Colour(Enum):
    RED  = "RED"
    BLUE = "BLUE"


# Evaluation order. On equal x the earlier colour wins.
COLOUR_ORDER = (Colour.RED, Colour.BLUE)


@dataclass(frozen=True)
class BoundingBox:
    x: int
    y: int
    width: int
    height: int

    @classmethod
    def of(cls, contour: np.ndarray) -> "BoundingBox":
        x, y, w, h = cv2.boundingRect(contour)
        return cls(int(x), int(y), int(w), int(h))

    def as_tuple(self) -> tuple:
        return self.x, self.y, self.width, self.height


@dataclass(frozen=True)
class Candidate:
    colour: Colour
    box: BoundingBox
    area: float


@dataclass(frozen=True)
class HSVRange:
    low: tuple
    high: tuple


def colour_ranges(config: dict) -> dict:
    return {
        c: HSVRange(
            tuple(config[f"{c.value.lower()}_hsv_low"]),
            tuple(config[f"{c.value.lower()}_hsv_high"]),
        )
        for c in COLOUR_ORDER
    }


def min_areas(config: dict) -> dict:
    return {c: float(config[f"{c.value.lower()}_min_area"]) for c in COLOUR_ORDER}


# =====================================================================
# SEGMENT / EXTRACT
# =====================================================================

def to_hsv(frame: np.ndarray) -> np.ndarray:
    return cv2.cvtColor(frame, cv2.COLOR_BGR2HSV)


def segment(hsv: np.ndarray, rng: HSVRange) -> np.ndarray:
    """Binary mask: 255 where all three HSV channels are inside the range."""
    return cv2.inRange(hsv, np.array(rng.low, dtype=np.uint8),
                       np.array(rng.high, dtype=np.uint8))


def extract_contours(mask: np.ndarray) -> list:
    """External boundaries only, simplified chain. Empty list on an empty mask."""
    contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    return list(contours)


# =====================================================================
# SELECT
# =====================================================================

def find_rightmost(contours, colour: Colour, min_area: float) -> Optional[Candidate]:
    """
    Largest bounding-box x among contours with area >= min_area.
    First contour wins on equal x. None when nothing passes the filter.
    """
    best = None
    for contour in contours:
        area = float(cv2.contourArea(contour))
        if area < min_area:
            continue
        box = BoundingBox.of(contour)
        if best is None or box.x > best.box.x:
            best = Candidate(colour, box, area)
    return best


def pick_overall(per_colour: dict) -> Optional[Candidate]:
    """Rightmost of the per-colour winners; COLOUR_ORDER breaks ties."""
    best = None
    for colour in COLOUR_ORDER:
        cand = per_colour.get(colour)
        if cand is None:
            continue
        if best is None or cand.box.x > best.box.x:
            best = cand
    return best


def select_candidate(contours_by_colour: dict, min_area_by_colour: dict) -> Optional[Candidate]:
    per_colour = {
        colour: find_rightmost(contours_by_colour.get(colour, []), colour,
                               min_area_by_colour[colour])
        for colour in COLOUR_ORDER
    }
    return pick_overall(per_colour)


# =====================================================================
# DETECTOR
# =====================================================================

class ColourDetector:
    """Frame → Optional[Candidate] with thresholds bound from config."""

    def __init__(self, config: dict):
        self.config = config
        self.ranges = colour_ranges(config)
        self.min_area = min_areas(config)

    def masks(self, frame: np.ndarray) -> dict:
        hsv = to_hsv(frame)
        return {c: segment(hsv, self.ranges[c]) for c in COLOUR_ORDER}

    def contours(self, frame: np.ndarray) -> dict:
        return {c: extract_contours(m) for c, m in self.masks(frame).items()}

    def detect(self, frame: np.ndarray) -> Optional[Candidate]:
        if frame is None:
            return None
        return select_candidate(self.contours(frame), self.min_area)
