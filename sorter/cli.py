"""
cli.py — Rich terminal for the sorter operator.

Features:
  • Live status (phase, last candidate, sort counters, camera health)
  • Start / pause / resume / stop of the sorting loop
  • Config parameter editing (saved to sorter_config.json)
  • Ground checks: live camera, live detection, single gate test, bench suite
"""

import glob
import json
import os

from rich import box
from rich.columns import Columns
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from sorter.actuator import SORT_LOG_PATH, ActuatorDispatcher
from sorter.bench import BenchSuite
from sorter.camera import CameraPipeline
from sorter.config import CHANNEL_NAMES, set_param
from sorter.geometry import classify_size, trigger_x
from sorter.operator_input import ask
from sorter.preview import live_view
from sorter.sort_fsm import SortingFSM
from sorter.state import LoopPhase, SharedState
from sorter.telemetry import StatusChannel
from sorter.vision import ColourDetector

console = Console()

BANNER = """
╔══════════════════════════════════════════════════════════════╗
║            COLOUR / SIZE SORTER  —  Gate Controller          ║
║            HSV segmentation  |  4-channel PWM gates          ║
╚══════════════════════════════════════════════════════════════╝
"""

HELP_TEXT = """
[bold cyan]═══════════════════════════  COMMAND REFERENCE  ══════════════════════════[/bold cyan]

[bold yellow]LOOP CONTROL[/bold yellow]
  start              Start sorting (when auto_start is off)
  pause              Stop taking decisions, gates stay neutral
  resume             Resume after pause
  stop               End the sorting loop and exit

[bold yellow]MONITORING[/bold yellow]
  status             Phase, last candidate, counters, camera
  detect             Last candidate with dropzone / size verdict
  health             Camera, gates, loop snapshot
  log                Last 20 operator status messages

[bold yellow]CONFIGURATION[/bold yellow]
  params             View or edit any config parameter

[bold yellow]GROUND CHECKS (pause first)[/bold yellow]
  testcam            Live raw camera view (press Q to close)
  testdetect         Live view with masks + candidate box (press Q)
  testservo <ch>     Open one gate for 2s: red_large red_small blue_large blue_small
  bench              Interactive bench test suite

[bold yellow]POST-RUN[/bold yellow]
  sortlog            Show saved sort events
  savelog            List telemetry CSV files
  reset              Reset counters

[bold yellow]SYSTEM[/bold yellow]
  help               Show this help
  clear              Clear terminal
  exit               Stop the loop and exit

[bold cyan]══════════════════════════════════════════════════════════════════════════[/bold cyan]
"""


class SorterCLI:

    def __init__(self, config: dict, state: SharedState, fsm: SortingFSM,
                 camera: CameraPipeline, detector: ColourDetector,
                 dispatcher: ActuatorDispatcher, status: StatusChannel):
        self.config = config
        self.state = state
        self.fsm = fsm
        self.camera = camera
        self.detector = detector
        self.dispatcher = dispatcher
        self.status = status
        self.suite = BenchSuite(config, state, camera, detector, dispatcher, status)

    # =====================================================================
    # MAIN ENTRY
    # =====================================================================

    async def run(self):
        console.print(BANNER, style="bold cyan")
        console.print("[dim]Type [bold]help[/bold] for all commands.[/dim]\n")

        while True:
            try:
                phase_color = self._phase_color(self.state.phase)
                prompt_str = (
                    f"[{phase_color}]{self.state.phase.value}[/{phase_color}] "
                    f"[dim]sorted={self.state.dispatch_count} "
                    f"failed={self.state.dispatch_failures}[/dim] "
                    f"[bold]>[/bold] "
                )
                cmd = await self._ask(lambda: console.input(prompt_str).strip().lower())

                if not cmd:
                    continue

                await self._dispatch(cmd)
                if self.fsm.stopped:
                    break

            except (EOFError, KeyboardInterrupt):
                console.print("\n[yellow]Stopping sorting loop...[/yellow]")
                self.fsm.trigger_stop("CLI exit")
                break

    @staticmethod
    async def _ask(fn):
        return await ask(fn)

    # =====================================================================
    # COMMAND DISPATCHER
    # =====================================================================

    async def _dispatch(self, cmd: str):
        parts = cmd.split()
        base = parts[0] if parts else ""
        args = parts[1:]

        handlers = {
            "help":       self._cmd_help,
            "start":      self._cmd_start,
            "pause":      self._cmd_pause,
            "resume":     self._cmd_resume,
            "stop":       self._cmd_stop,
            "status":     self._cmd_status,
            "detect":     self._cmd_detect,
            "health":     self._cmd_health,
            "log":        self._cmd_log,
            "params":     self._cmd_params,
            "testcam":    self._cmd_testcam,
            "testdetect": self._cmd_testdetect,
            "bench":      self._cmd_bench,
            "sortlog":    self._cmd_sortlog,
            "savelog":    self._cmd_savelog,
            "reset":      self._cmd_reset,
            "clear":      self._cmd_clear,
            "exit":       self._cmd_stop,
        }

        if base == "testservo":
            await self._cmd_testservo(args)
        elif base in handlers:
            await handlers[base]()
        else:
            console.print(f"[red]Unknown command: '{base}'. Type [bold]help[/bold].[/red]")

    # =====================================================================
    # LOOP CONTROL
    # =====================================================================

    async def _cmd_start(self):
        if self.fsm.running:
            console.print("[dim]Sorting loop already running.[/dim]")
            return
        self.fsm.trigger_start()
        console.print("[green]✓ Sorting started. Use 'status' to monitor.[/green]")

    async def _cmd_pause(self):
        self.fsm.pause()
        self.status.send("Sorting PAUSED by operator", "WARNING")
        console.print("[yellow]Paused. Type 'resume' to continue.[/yellow]")

    async def _cmd_resume(self):
        if not self.fsm.paused:
            console.print("[dim]Sorting is not paused.[/dim]")
            return
        self.fsm.resume()
        self.status.send("Sorting RESUMED", "NOTICE")
        console.print("[green]✓ Resumed.[/green]")

    async def _cmd_stop(self):
        confirmed = await self._ask(
            lambda: Confirm.ask("[yellow]Stop sorting and exit?[/yellow]", default=False)
        )
        if confirmed:
            self.fsm.trigger_stop("Operator stop")
            console.print("[dim]Stopping — gates will be neutralised.[/dim]")

    # =====================================================================
    # STATUS
    # =====================================================================

    async def _cmd_status(self):
        s = self.state
        phase_color = self._phase_color(s.phase)

        phase_panel = Panel(
            f"[bold {phase_color}]{s.phase.value}[/bold {phase_color}]"
            + (f"\n[dim]{s.stop_reason}[/dim]" if s.stop_reason else ""),
            title="Loop Phase", border_style=phase_color
        )

        sort_panel = Panel(
            f"Sorted:   [green]{s.dispatch_count}[/green]\n"
            f"Failed:   [{'red' if s.dispatch_failures else 'dim'}]"
            f"{s.dispatch_failures}[/]\n"
            f"Frames:   [cyan]{s.frames_processed}[/cyan]\n"
            f"Last:     {s.last_sort or '[dim]—[/dim]'}",
            title="Sorting", border_style="blue"
        )

        cam_color = "red" if s.stalled else ("green" if s.camera_ok else "yellow")
        cam_panel = Panel(
            f"Camera:   [{cam_color}]{'STALLED' if s.stalled else ('OK' if s.camera_ok else 'CLOSED')}[/]\n"
            f"Timeouts: {s.acquire_fail_count}/{self.config['max_acquire_retries']}\n"
            f"Pool:     {self.camera.pool.in_use}/{self.camera.pool.size} buffers out",
            title="Camera", border_style=cam_color
        )

        gates = self.dispatcher.actuators
        gate_panel = Panel(
            "\n".join(
                f"{name:<11} [{'red' if st == 'ENGAGED' else 'green'}]{st}[/]"
                for name, st in gates.snapshot().items()
            ),
            title="Gates", border_style="red" if gates.engaged else "green"
        )

        console.print(Columns([phase_panel, sort_panel]))
        console.print(Columns([cam_panel, gate_panel]))
        await self._cmd_detect()

        if s.last_error:
            console.print(f"[red]Last error: {s.last_error}[/red]")
        if s.last_status_text:
            console.print(f"[dim]Last status: {s.last_status_text}[/dim]")

    async def _cmd_detect(self):
        c = self.state.candidate
        if c is None:
            console.print(Panel(
                "[dim]No candidate in latest frame.[/dim]\n"
                "Check lighting and thresholds with 'testdetect'.",
                title="Detection", border_style="dim"
            ))
            return
        tx = trigger_x(self.config["image_w"], self.config["dropzone_fraction"])
        size = classify_size(c.box.width, self.config["size_threshold_px"])
        console.print(Panel(
            f"[bold]{c.colour.value}[/bold]  area={c.area:.0f}px²\n"
            f"  box x={c.box.x} y={c.box.y} w={c.box.width} h={c.box.height}\n"
            f"  trigger line: x={tx:.0f}  (arrives at x ≥ {tx - c.box.width / 2:.0f})\n"
            f"  arrived: " + ("[green]YES ✓[/green]" if self.state.arrived else "[yellow]NO[/yellow]")
            + f"\n  size:    {size.value} (threshold {self.config['size_threshold_px']}px)",
            title="Detection", border_style="green" if self.state.arrived else "blue"
        ))

    async def _cmd_health(self):
        s = self.state
        gates = self.dispatcher.actuators
        items = [
            ("Camera",     "OK" if s.camera_ok else "CLOSED", s.camera_ok),
            ("Stalled",    "YES" if s.stalled else "NO",      not s.stalled),
            ("Frame pool", f"{self.camera.pool.in_use}/{self.camera.pool.size}",
                           self.camera.pool.in_use < self.camera.pool.size),
            ("Gates",      gates.engaged or "all neutral",    gates.all_neutral()),
            ("Actuators",  self.config["actuator_backend"],   True),
            ("Phase",      s.phase.value,                     True),
        ]
        table = Table(box=box.ROUNDED)
        table.add_column("System")
        table.add_column("Value")
        table.add_column("Status")
        for name, val, ok in items:
            table.add_row(name, val, "[green]✓[/green]" if ok else "[red]✗[/red]")
        console.print(table)

    async def _cmd_log(self):
        lines = self.status.tail(20)
        if not lines:
            console.print("[dim]No status messages yet.[/dim]")
        for line in lines:
            console.print(line, markup=False)

    # =====================================================================
    # PARAMS
    # =====================================================================

    async def _cmd_params(self):
        """View or edit any config parameter."""
        console.print(Panel(
            "[bold]Configuration Parameters[/bold]\n"
            "[dim]Lists are comma-separated (e.g. 90,100,100). "
            "Thresholds apply after restart.[/dim]",
            border_style="cyan"
        ))

        table = Table(box=box.SIMPLE, show_header=True)
        table.add_column("Key", style="cyan", width=24)
        table.add_column("Value", style="white", width=20)
        for k, v in self.config.items():
            table.add_row(k, str(v))
        console.print(table)

        key = await self._ask(lambda: Prompt.ask("\nKey to edit (or Enter to cancel)", default=""))
        if not key:
            return
        val = await self._ask(lambda: Prompt.ask(f"New value for '{key}'"))
        ok, msg = set_param(self.config, key, val)
        style = "green" if ok else "red"
        console.print(f"[{style}]{msg}[/{style}]")
        if ok:
            self.status.send(f"Param updated: {key}={val}", "DEBUG")

    # =====================================================================
    # GROUND CHECKS
    # =====================================================================

    def _require_paused(self) -> bool:
        if self.fsm.running and not self.fsm.paused:
            console.print("[red]Pause the sorting loop first ('pause').[/red]")
            return False
        return True

    async def _cmd_testcam(self):
        if not self._require_paused():
            return
        console.print("[cyan]Opening camera — press Q in the window to close.[/cyan]")
        await live_view(self.camera, self.config)

    async def _cmd_testdetect(self):
        if not self._require_paused():
            return
        console.print("[cyan]Opening detection view — press Q in the window to close.[/cyan]")
        await live_view(self.camera, self.config, self.detector)

    async def _cmd_testservo(self, args=None):
        if not self._require_paused():
            return
        name = args[0] if args else await self._ask(
            lambda: Prompt.ask("Channel", choices=list(CHANNEL_NAMES))
        )
        if name not in CHANNEL_NAMES:
            console.print(f"[red]Unknown channel '{name}'. Valid: {', '.join(CHANNEL_NAMES)}[/red]")
            return
        console.print(Panel(
            f"[bold yellow]⚠  GATE TEST: {name}[/bold yellow]\n\n"
            "The gate will OPEN for 2 seconds then CLOSE.\n"
            "[red]KEEP HANDS CLEAR OF THE MECHANISM.[/red]",
            border_style="yellow"
        ))
        confirmed = await self._ask(lambda: Confirm.ask("Proceed with gate test?", default=False))
        if confirmed:
            ok = await self.dispatcher.test_channel(name, hold_s=2.0)
            if ok:
                console.print("[green]✓ Gate test complete.[/green]")
            else:
                console.print("[red]✗ Gate test failed — see [ACTUATOR] output.[/red]")

    async def _cmd_bench(self):
        if not self._require_paused():
            return
        await self.suite.run_cli()

    # =====================================================================
    # POST-RUN
    # =====================================================================

    async def _cmd_sortlog(self):
        if not os.path.exists(SORT_LOG_PATH):
            console.print("[dim]No sort events logged yet.[/dim]")
            return
        with open(SORT_LOG_PATH) as f:
            events = json.load(f)

        table = Table(title="Sort Events", box=box.ROUNDED)
        for col in ("Time", "Colour", "Size", "Channel", "Box", "OK"):
            table.add_column(col)
        for ev in events[-30:]:
            table.add_row(
                ev["timestamp"][11:19], ev["colour"], ev["size"], ev["channel"],
                str(ev["box"]),
                "[green]✓[/green]" if ev["ok"] else f"[red]✗ {ev['error']}[/red]",
            )
        console.print(table)

    async def _cmd_savelog(self):
        logs = sorted(glob.glob("logs/telemetry_*.csv"))
        if not logs:
            console.print("[dim]No telemetry logs found in logs/[/dim]")
        for path in logs[-3:]:
            console.print(f"  [cyan]{path}[/cyan]")

    async def _cmd_reset(self):
        confirmed = await self._ask(lambda: Confirm.ask("Reset counters?", default=False))
        if confirmed:
            self.state.dispatch_count = 0
            self.state.dispatch_failures = 0
            self.state.frames_processed = 0
            self.state.last_sort = ""
            self.state.last_error = ""
            console.print("[green]✓ Counters reset.[/green]")
            self.status.send("Counters RESET", "INFO")

    async def _cmd_help(self):
        console.print(HELP_TEXT)

    async def _cmd_clear(self):
        console.clear()

    # =====================================================================
    # UTILS
    # =====================================================================

    @staticmethod
    def _phase_color(phase: LoopPhase) -> str:
        colors = {
            LoopPhase.IDLE:        "dim",
            LoopPhase.CAPTURING:   "cyan",
            LoopPhase.DETECTING:   "cyan",
            LoopPhase.APPROACHING: "blue",
            LoopPhase.ARRIVED:     "green",
            LoopPhase.DISPATCHING: "magenta",
            LoopPhase.PAUSED:      "yellow",
            LoopPhase.STALLED:     "red",
            LoopPhase.STOPPED:     "dim",
        }
        return colors.get(phase, "white")
