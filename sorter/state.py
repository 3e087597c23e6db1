"""
state.py — Single shared state object read by the CLI and telemetry.
"""

from dataclasses import dataclass
from enum import Enum
from datetime import datetime
from typing import Optional


class LoopPhase(Enum):
    IDLE        = "IDLE"
    CAPTURING   = "CAPTURING"
    DETECTING   = "DETECTING"
    APPROACHING = "APPROACHING"
    ARRIVED     = "ARRIVED"
    DISPATCHING = "DISPATCHING"
    PAUSED      = "PAUSED"
    STALLED     = "STALLED"
    STOPPED     = "STOPPED"


@dataclass
class SharedState:
    # --- Loop ---
    phase: LoopPhase        = LoopPhase.IDLE
    frames_processed: int   = 0
    started_at: Optional[datetime] = None
    stop_reason: str        = ""

    # --- Detection (last frame) ---
    candidate               = None   # vision.Candidate, untyped to keep state import-free
    arrived: bool           = False

    # --- Sorting ---
    dispatch_count: int     = 0
    dispatch_failures: int  = 0
    last_sort: str          = ""     # e.g. "BLUE/LARGE → blue_large"
    last_error: str         = ""

    # --- Camera ---
    acquire_fail_count: int = 0
    camera_ok: bool         = False
    stalled: bool           = False

    # --- Status messages for the operator ---
    last_status_text: str   = ""

    def to_dict(self) -> dict:
        c = self.candidate
        return {
            "timestamp": datetime.now().isoformat(),
            "phase": self.phase.value,
            "frames_processed": self.frames_processed,
            "cand_colour": c.colour.value if c else None,
            "cand_x": c.box.x if c else None,
            "cand_w": c.box.width if c else None,
            "cand_area": round(c.area, 1) if c else None,
            "arrived": self.arrived,
            "dispatch_count": self.dispatch_count,
            "dispatch_failures": self.dispatch_failures,
            "acquire_fail_count": self.acquire_fail_count,
            "stalled": self.stalled,
        }
