"""
telemetry.py — Operator status channel and CSV telemetry log.

StatusChannel is where anything the operator must see goes (stalls,
actuation failures, start/stop). TelemetryLoop snapshots SharedState
into logs/telemetry_<ts>.csv for post-run analysis.
"""

import asyncio
import csv
import os
from collections import deque
from datetime import datetime

from sorter.state import SharedState

SEVERITIES = ("EMERGENCY", "ALERT", "CRITICAL", "ERROR",
              "WARNING", "NOTICE", "INFO", "DEBUG")


class StatusChannel:

    def __init__(self, config: dict, state: SharedState, maxlen: int = 200):
        self.config = config
        self.state = state
        self._lines: deque = deque(maxlen=maxlen)

    def send(self, message: str, severity: str = "INFO"):
        """
        Severity levels: EMERGENCY, ALERT, CRITICAL, ERROR,
                         WARNING, NOTICE, INFO, DEBUG
        Unknown severities are sent as INFO.
        """
        sev = severity.upper()
        if sev not in SEVERITIES:
            sev = "INFO"
        full_msg = f"[SORTER] {message}"
        self.state.last_status_text = full_msg
        self._lines.append(f"{datetime.now():%H:%M:%S} {sev:<8} {message}")
        if not self.config.get("statustext_enable", True):
            return
        print(f"[STATUS/{sev}] {full_msg}")

    def tail(self, n: int = 20) -> list:
        return list(self._lines)[-n:]


class TelemetryLoop:

    FIELDNAMES = [
        "timestamp", "phase", "frames_processed",
        "cand_colour", "cand_x", "cand_w", "cand_area", "arrived",
        "dispatch_count", "dispatch_failures",
        "acquire_fail_count", "stalled",
    ]

    def __init__(self, config: dict, state: SharedState, log_dir: str = "logs"):
        self.config = config
        self.state = state
        self.log_dir = log_dir
        self.csv_path = None
        self._csv_writer = None
        self._csv_file = None

    def _init_csv(self):
        os.makedirs(self.log_dir, exist_ok=True)
        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.csv_path = os.path.join(self.log_dir, f"telemetry_{ts}.csv")
        self._csv_file = open(self.csv_path, "w", newline="")
        self._csv_writer = csv.DictWriter(self._csv_file, fieldnames=self.FIELDNAMES)
        self._csv_writer.writeheader()
        print(f"[TELEMETRY] Logging to {self.csv_path}")

    def write_row(self):
        try:
            self._csv_writer.writerow(self.state.to_dict())
            self._csv_file.flush()
        except (OSError, ValueError) as e:
            print(f"[TELEMETRY] CSV write error: {e}")

    async def run(self):
        self._init_csv()
        interval = 1.0 / self.config.get("telemetry_rate_hz", 2)
        try:
            while True:
                self.write_row()
                await asyncio.sleep(interval)
        finally:
            self.close()

    def close(self):
        if self._csv_file:
            self._csv_file.close()
            self._csv_file = None
