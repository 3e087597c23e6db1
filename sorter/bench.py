"""
bench.py — Sorter bench checks | Progressive hardware suite
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

Run from CLI:  bench   (then B1 | B3 | all)

Sequence (run in order — each builds on the previous):

  B1  Camera Check             — frames arrive within the timeout, right size
  B2  Frame Pool Check         — every buffer comes back after a burst
  B3  Gate Neutral Check       — all gates neutral then de-energised
  B4  Gate Sweep               — each gate opens / holds / closes in turn
  B5  Detection Check          — live frames give a stable candidate

Pause the sorting loop before running; B3/B4 move the gates.
"""

import asyncio
import json
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from sorter.errors import AcquisitionError
from sorter.operator_input import ask
from sorter.state import SharedState

console = Console()

RESULTS_PATH = "logs/test_results.json"


# ══════════════════════════════════════════════════════════════════════════════
# RESULT TRACKING
# ══════════════════════════════════════════════════════════════════════════════

class BenchStatus(Enum):
    PASS    = "PASS"
    FAIL    = "FAIL"
    SKIP    = "SKIP"
    ABORT   = "ABORT"   # operator abort


@dataclass
class BenchResult:
    test_id:     str
    name:        str
    status:      BenchStatus
    duration_s:  float
    notes:       str        = ""
    timestamp:   str        = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self):
        return {
            "test_id":    self.test_id,
            "name":       self.name,
            "status":     self.status.value,
            "duration_s": round(self.duration_s, 2),
            "notes":      self.notes,
            "timestamp":  self.timestamp,
        }


# ══════════════════════════════════════════════════════════════════════════════
# BENCH SUITE
# ══════════════════════════════════════════════════════════════════════════════

class BenchSuite:

    def __init__(self, config: dict, state: SharedState, camera, detector,
                 dispatcher, status, confirm=None, results_path: str = RESULTS_PATH):
        self.config     = config
        self.state      = state
        self.camera     = camera
        self.detector   = detector
        self.dispatcher = dispatcher
        self.status     = status
        self.results_path = results_path
        self.results: list[BenchResult] = []
        self._confirm = confirm or self._ask_confirm

        # Registry: ID → (name, method)
        self._tests = {
            "B1": ("Camera Check",        self._b1_camera),
            "B2": ("Frame Pool Check",    self._b2_pool),
            "B3": ("Gate Neutral Check",  self._b3_neutral),
            "B4": ("Gate Sweep",          self._b4_sweep),
            "B5": ("Detection Check",     self._b5_detection),
        }

    # ─────────────────────────────────────────────────────────────────────────
    # PUBLIC ENTRY POINTS
    # ─────────────────────────────────────────────────────────────────────────

    async def run(self, test_id: str):
        """
        Run a single check by ID (e.g. 'B3') or 'all' to run every check.
        Returns BenchResult for single, list for 'all'.
        """
        if test_id.lower() == "all":
            return await self._run_all()

        tid = test_id.upper()
        if tid not in self._tests:
            console.print(f"[red]Unknown check: {tid}. Valid: {list(self._tests.keys())} or 'all'[/red]")
            return None

        return await self._execute(tid)

    async def run_cli(self):
        """Interactive selection menu."""
        self._print_menu()
        while True:
            choice = await ask(
                lambda: Prompt.ask(
                    "\n[cyan]Enter check ID[/cyan] (B1–B5), [cyan]all[/cyan], "
                    "[cyan]results[/cyan], or [cyan]back[/cyan]"
                )
            )
            choice = choice.strip().lower()
            if choice == "back":
                break
            elif choice == "results":
                self._print_results()
            elif choice == "all":
                await self._run_all()
            elif choice.upper() in self._tests:
                await self._execute(choice.upper())
            else:
                console.print(f"[red]Invalid: '{choice}'[/red]")

    # ─────────────────────────────────────────────────────────────────────────
    # INTERNAL RUNNER
    # ─────────────────────────────────────────────────────────────────────────

    async def _execute(self, tid: str) -> BenchResult:
        name, method = self._tests[tid]
        console.print(Panel(
            f"[bold cyan]▶  {tid} — {name}[/bold cyan]",
            border_style="cyan"
        ))
        self.status.send(f"BENCH START: {tid} {name}", "INFO")

        t_start = time.time()
        notes   = ""
        status  = BenchStatus.FAIL

        try:
            status, notes = await method()
        except asyncio.CancelledError:
            self.dispatcher.neutralise_all()
            self.results.append(BenchResult(tid, name, BenchStatus.ABORT,
                                            time.time() - t_start, "Cancelled"))
            self._save_results()
            raise
        except Exception as e:
            status = BenchStatus.FAIL
            notes  = str(e)
            console.print(f"[red]Check exception: {e}[/red]")
            self.dispatcher.neutralise_all()

        duration = time.time() - t_start
        result   = BenchResult(tid, name, status, duration, notes)
        self.results.append(result)
        self._print_result(result)
        self._save_results()

        self.status.send(
            f"BENCH {status.value}: {tid} ({duration:.1f}s) {notes[:30]}",
            "NOTICE" if status == BenchStatus.PASS else "WARNING"
        )
        return result

    async def _run_all(self) -> list[BenchResult]:
        console.print(Panel(
            "[bold]Running ALL checks in sequence[/bold]\n"
            "[dim]Each check must PASS to continue to next.[/dim]",
            border_style="cyan"
        ))
        results = []
        for tid in self._tests:
            result = await self._execute(tid)
            results.append(result)
            if result.status in (BenchStatus.FAIL, BenchStatus.ABORT):
                console.print(f"[red]Stopping — {tid} {result.status.value}. Fix before continuing.[/red]")
                break
        self._print_results()
        return results

    async def _ask_confirm(self, question: str) -> bool:
        return await ask(lambda: Confirm.ask(question, default=False))

    # ─────────────────────────────────────────────────────────────────────────
    # ══ B1: CAMERA CHECK ════════════════════════════════════════════════════
    # ─────────────────────────────────────────────────────────────────────────

    async def _b1_camera(self) -> tuple[BenchStatus, str]:
        """
        Checks:
          • 10 frames arrive, each within frame_timeout_s
          • Frame shape matches image_h × image_w × 3
        """
        timeout = self.config["frame_timeout_s"]
        want = (self.config["image_h"], self.config["image_w"], 3)
        gaps = []
        last = time.monotonic()
        for _ in range(10):
            try:
                frame = await self.camera.get_frame(timeout)
            except AcquisitionError as e:
                return BenchStatus.FAIL, str(e)
            try:
                if frame.image.shape != want:
                    return BenchStatus.FAIL, f"Frame shape {frame.image.shape} != {want}"
            finally:
                self.camera.release_frame(frame)
            now = time.monotonic()
            gaps.append(now - last)
            last = now

        fps = len(gaps) / sum(gaps) if sum(gaps) > 0 else 0.0
        console.print(f"  [green]✓[/green] 10 frames, {want[1]}x{want[0]}, ~{fps:.1f} fps")
        return BenchStatus.PASS, f"~{fps:.1f} fps"

    # ─────────────────────────────────────────────────────────────────────────
    # ══ B2: FRAME POOL CHECK ════════════════════════════════════════════════
    # ─────────────────────────────────────────────────────────────────────────

    async def _b2_pool(self) -> tuple[BenchStatus, str]:
        """
        Checks:
          • After taking and returning 3 × pool size frames, the only buffers
            still out are the ones sitting in the hand-off queue
        """
        pool = self.camera.pool
        n = pool.size * 3
        for _ in range(n):
            try:
                frame = await self.camera.get_frame(self.config["frame_timeout_s"])
            except AcquisitionError as e:
                return BenchStatus.FAIL, f"Pool starved after handback: {e}"
            self.camera.release_frame(frame)

        queued = self.camera.frame_queue.qsize()
        # the producer may be holding one buffer mid-read
        leaked = pool.in_use - queued
        if leaked > 1:
            return BenchStatus.FAIL, f"{leaked} buffers not returned"
        console.print(f"  [green]✓[/green] {n} frames cycled, "
                      f"{pool.in_use}/{pool.size} out ({queued} queued)")
        return BenchStatus.PASS, f"{n} frames cycled"

    # ─────────────────────────────────────────────────────────────────────────
    # ══ B3: GATE NEUTRAL CHECK ══════════════════════════════════════════════
    # ─────────────────────────────────────────────────────────────────────────

    async def _b3_neutral(self) -> tuple[BenchStatus, str]:
        """
        Checks:
          • Every gate accepts the neutral pulse and the clear
          • No gate reports ENGAGED afterwards
        """
        failures = self.dispatcher.neutralise_all()
        if failures:
            return BenchStatus.FAIL, "; ".join(str(f) for f in failures)
        if not self.dispatcher.actuators.all_neutral():
            return BenchStatus.FAIL, f"Still engaged: {self.dispatcher.actuators.engaged_channels()}"
        console.print("  [green]✓[/green] All gates neutral: "
                      f"{self.dispatcher.actuators.snapshot()}")
        return BenchStatus.PASS, "All neutral"

    # ─────────────────────────────────────────────────────────────────────────
    # ══ B4: GATE SWEEP ══════════════════════════════════════════════════════
    # ─────────────────────────────────────────────────────────────────────────

    async def _b4_sweep(self) -> tuple[BenchStatus, str]:
        """
        Checks:
          • Each gate opens for 1s and closes, one at a time
          • Never more than one gate engaged
        Watch each flap — confirm it is the right bin and direction.
        """
        console.print(Panel(
            "[bold yellow]⚠  GATE SWEEP[/bold yellow]\n\n"
            "Each gate opens for 1s then closes, in table order.\n"
            "[red]KEEP HANDS CLEAR OF THE MECHANISM.[/red]",
            border_style="yellow"
        ))
        if not await self._confirm("Proceed with gate sweep?"):
            return BenchStatus.SKIP, "Operator skipped"

        for ch in self.dispatcher.channels:
            console.print(f"  → {ch.name} (pin {ch.pin}, {ch.active_us}µs)")
            ok = await self.dispatcher.test_channel(ch.name, hold_s=1.0)
            if not ok:
                return BenchStatus.FAIL, f"{ch.name} failed"
            if not self.dispatcher.actuators.all_neutral():
                return BenchStatus.FAIL, f"{ch.name} left engaged"
        return BenchStatus.PASS, f"{len(self.dispatcher.channels)} gates swept"

    # ─────────────────────────────────────────────────────────────────────────
    # ══ B5: DETECTION CHECK ═════════════════════════════════════════════════
    # ─────────────────────────────────────────────────────────────────────────

    async def _b5_detection(self) -> tuple[BenchStatus, str]:
        """
        Checks:
          • Place one brick in view, then 20 frames are analysed
          • The same colour is selected in at least 15 of them
        """
        if not await self._confirm("Brick placed in camera view?"):
            return BenchStatus.SKIP, "No brick placed"

        counts = {}
        for _ in range(20):
            try:
                frame = await self.camera.get_frame(self.config["frame_timeout_s"])
            except AcquisitionError as e:
                return BenchStatus.FAIL, str(e)
            try:
                cand = self.detector.detect(frame.image)
            finally:
                self.camera.release_frame(frame)
            key = cand.colour.value if cand else "NONE"
            counts[key] = counts.get(key, 0) + 1

        best, hits = max(counts.items(), key=lambda kv: kv[1])
        console.print(f"  Detections: {counts}")
        if best == "NONE" or hits < 15:
            return BenchStatus.FAIL, f"Unstable detection {counts} — tune HSV/min area"
        return BenchStatus.PASS, f"{best} in {hits}/20 frames"

    # ─────────────────────────────────────────────────────────────────────────
    # DISPLAY / PERSIST
    # ─────────────────────────────────────────────────────────────────────────

    def _print_menu(self):
        table = Table(title="Bench Suite", box=box.ROUNDED, show_header=True,
                      header_style="bold cyan")
        table.add_column("ID",    style="cyan",  width=6)
        table.add_column("Check", style="white", width=22)
        table.add_column("Gates?", width=8)
        table.add_column("Description", style="dim", width=40)
        table.add_column("Last", width=8)

        rows = [
            ("B1", "Camera Check",       "No",  "Frames on time, right size"),
            ("B2", "Frame Pool Check",   "No",  "Buffers all come back"),
            ("B3", "Gate Neutral Check", "Yes", "All gates neutral then off"),
            ("B4", "Gate Sweep",         "Yes", "Open/close each gate in turn"),
            ("B5", "Detection Check",    "No",  "Stable candidate on a placed brick"),
        ]
        for r in rows:
            last_result = next(
                (res for res in reversed(self.results) if res.test_id == r[0]), None
            )
            last = last_result.status.value if last_result else ""
            table.add_row(*r, last)
        console.print(table)

    def _print_result(self, result: BenchResult):
        colors = {
            BenchStatus.PASS:  "green",
            BenchStatus.FAIL:  "red",
            BenchStatus.SKIP:  "yellow",
            BenchStatus.ABORT: "yellow",
        }
        c = colors[result.status]
        console.print(Panel(
            f"[bold {c}]{result.status.value}[/bold {c}]  "
            f"{result.test_id} — {result.name}\n"
            f"[dim]Duration: {result.duration_s:.1f}s   Notes: {result.notes}[/dim]",
            border_style=c
        ))

    def _print_results(self):
        if not self.results:
            console.print("[dim]No bench results yet.[/dim]")
            return

        table = Table(title="Bench Results", box=box.ROUNDED)
        table.add_column("ID")
        table.add_column("Name")
        table.add_column("Status")
        table.add_column("Duration")
        table.add_column("Notes", style="dim")

        for r in self.results:
            c = {"PASS": "green", "FAIL": "red", "SKIP": "yellow", "ABORT": "yellow"}.get(r.status.value, "white")
            table.add_row(
                r.test_id, r.name,
                f"[{c}]{r.status.value}[/{c}]",
                f"{r.duration_s:.1f}s",
                r.notes[:50]
            )
        console.print(table)

    def _save_results(self):
        if not self.results_path:
            return
        directory = os.path.dirname(self.results_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        existing = []
        if os.path.exists(self.results_path):
            with open(self.results_path) as f:
                try:
                    existing = json.load(f)
                except json.JSONDecodeError:
                    existing = []
        existing.extend([r.to_dict() for r in self.results[-1:]])
        with open(self.results_path, "w") as f:
            json.dump(existing, f, indent=2)
