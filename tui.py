# tui.py
"""
pingwatch TUI: renders a live status table of per-target ping statistics and
hosts the command-line entry point.

Features:
- One table row per target, in the order the targets were given
- Colorized success % (loss thresholds) and latency (dynamic thresholds)
- Scrolling output by default; --watch redraws the table in place
- Ctrl-C stops the run cleanly (exit 0); a target that cannot be probed at all
  is reported in red and makes the exit status 1

Requirements:
  rich
  typer
  PyYAML (via probe.py)

Usage:
  python tui.py 1.1.1.1 example.com --count 10
  python tui.py 8.8.8.8 --continuous --watch --interval 500
  cat hosts.txt | python tui.py --watch
"""
from __future__ import annotations

import asyncio
import logging
import sys
import time
from typing import IO, List, Optional, Tuple

import typer
from rich import box
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from aggregate import ProbeStatus, Snapshot, TargetView
from coordinator import Coordinator, RunReport
from logconfig import configure_logging
from probe import (
    DEFAULT_COUNT,
    DEFAULT_INTERVAL_MS,
    DEFAULT_PAUSE_SECS,
    DEFAULT_TIMEOUT_SECS,
    Config,
    IPFamily,
    load_config,
    make_pinger,
)

app = typer.Typer(add_completion=False, help="Ping several targets and show live statistics")
console = Console()
logger = logging.getLogger("pingwatch.cli")

TITLE = "pingwatch"


# --------------------
# Cell formatting
# --------------------

def fmt_success(view: TargetView) -> Text:
    if view.total_count < 1:
        return Text("--", style="dim")
    val = max(0.0, min(100.0, view.percent_success))
    loss = 100.0 - val
    if loss <= 1.0:
        style = "bold green"
    elif loss <= 5.0:
        style = "yellow"
    elif loss <= 20.0:
        style = "red"
    else:
        style = "bold red"
    return Text(f"{val:.1f}%", style=style)


def calculate_rtt_thresholds(snapshot: Snapshot) -> Tuple[float, float]:
    all_rtts = sorted(v.average_latency for v in snapshot if v.success_count > 0)
    if len(all_rtts) < 3:
        return 50.0, 100.0
    n = len(all_rtts)
    return all_rtts[n // 3], all_rtts[(2 * n) // 3]


def fmt_latency(ms: float, present: bool, thresh_low: float, thresh_high: float) -> Text:
    if not present:
        return Text("--", style="dim")
    s = f"{ms:.1f}ms" if ms < 10.0 else f"{ms:.0f}ms"
    if ms <= thresh_low:
        style = "bold green"
    elif ms <= thresh_high:
        style = "yellow"
    else:
        style = "bold red"
    return Text(s, style=style)


def fmt_status(view: TargetView) -> Text:
    if view.error is not None:
        return Text("ERROR", style="bold white on red")
    if view.last_status is ProbeStatus.SUCCESS:
        return Text("OK", style="bold green")
    if view.last_status is ProbeStatus.FAILURE:
        return Text("FAIL", style="bold red")
    return Text("--", style="dim")


def fmt_last_ok(ts: Optional[float]) -> Text:
    if ts is None:
        return Text("--", style="dim")
    return Text(time.strftime("%H:%M:%S", time.localtime(ts)))


# --------------------
# Table
# --------------------

LABEL_MIN_WIDTH = 10
# panel border and padding, column gaps and the seven metric columns
METRICS_WIDTH = 66


def build_table(snapshot: Snapshot, console_width: int = 120) -> Table:
    thresh_low, thresh_high = calculate_rtt_thresholds(snapshot)
    # names longer than the space left over fold onto a second line, never truncated
    label_max = max(LABEL_MIN_WIDTH, console_width - METRICS_WIDTH)

    tbl = Table(box=box.SIMPLE_HEAVY, padding=(0, 1), pad_edge=False, show_edge=False)
    tbl.add_column("Target", min_width=LABEL_MIN_WIDTH, max_width=label_max, overflow="fold")
    tbl.add_column("Status", justify="center", no_wrap=True)
    tbl.add_column("Last", justify="right", no_wrap=True)
    tbl.add_column("Avg", justify="right", no_wrap=True)
    tbl.add_column("Sent", justify="right", no_wrap=True)
    tbl.add_column("Lost", justify="right", no_wrap=True)
    tbl.add_column("Success", justify="right", no_wrap=True)
    tbl.add_column("Last OK", justify="right", no_wrap=True)

    for view in snapshot:
        last_ok = view.last_status is ProbeStatus.SUCCESS
        lost = Text(str(view.loss_count), style="red" if view.loss_count else "")
        tbl.add_row(
            Text(view.name, style="bold"),
            fmt_status(view),
            fmt_latency(view.last_latency, last_ok, thresh_low, thresh_high),
            fmt_latency(view.average_latency, view.success_count > 0, thresh_low, thresh_high),
            str(view.total_count),
            lost,
            fmt_success(view),
            fmt_last_ok(view.last_success_at),
        )
    return tbl


def build_view(snapshot: Snapshot, tick: int, console_width: int = 120) -> Panel:
    table = build_table(snapshot, console_width)
    errors = [
        Text(f" {view.name}: {view.error}", style="red")
        for view in snapshot
        if view.error is not None
    ]
    title = f"{TITLE} | tick {tick} | {time.strftime('%H:%M:%S')}"
    return Panel(Group(table, *errors), title=title, box=box.SQUARE)


# --------------------
# Renderers
# --------------------

class ScrollRenderer:
    """Prints a fresh table every tick."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()
        self.ticks = 0
        self.last_snapshot: Snapshot = ()

    def __enter__(self) -> "ScrollRenderer":
        return self

    def __exit__(self, *exc_info) -> None:
        return None

    def _view(self, snapshot: Snapshot) -> Panel:
        self.ticks += 1
        self.last_snapshot = snapshot
        return build_view(snapshot, self.ticks, self.console.width)

    def render(self, snapshot: Snapshot) -> None:
        self.console.print(self._view(snapshot))


class LiveRenderer(ScrollRenderer):
    """Redraws the table in place (watch mode)."""

    def __init__(self, console: Optional[Console] = None):
        super().__init__(console)
        self._live: Optional[Live] = None

    def __enter__(self) -> "LiveRenderer":
        self._live = Live(console=self.console, auto_refresh=False)
        self._live.start()
        return self

    def __exit__(self, *exc_info) -> None:
        if self._live is not None:
            self._live.stop()
            self._live = None

    def render(self, snapshot: Snapshot) -> None:
        view = self._view(snapshot)
        if self._live is None:
            self.console.print(view)
            return
        self._live.update(view, refresh=True)


# --------------------
# Target collection
# --------------------

def read_piped_targets(stream: Optional[IO[str]]) -> List[str]:
    """Targets piped on stdin: whitespace separated, '#' starts a comment line."""
    if stream is None or stream.isatty():
        return []
    names: List[str] = []
    for line in stream.read().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        names.extend(line.split())
    return names


def print_report(report: RunReport) -> None:
    if report.cancelled:
        typer.secho(f"Stopped after {report.ticks} ticks", fg=typer.colors.YELLOW)
    for failure in report.failures:
        kind = "could not start" if failure.startup else "failed"
        typer.secho(f"❌ {failure.name}: {kind}: {failure.message}", fg=typer.colors.RED, err=True)


# --------------------
# Main command
# --------------------

@app.command()
def run(targets: Optional[List[str]] = typer.Argument(None, help="Hostnames or addresses to ping"),
        count: Optional[int] = typer.Option(None, "--count", "-n", min=1, help=f"Pings per target [default: {DEFAULT_COUNT}]"),
        continuous: Optional[bool] = typer.Option(None, "--continuous/--no-continuous", "-t", help="Ping until interrupted (ignores --count)"),
        interval: Optional[int] = typer.Option(None, "--interval", "-i", min=1, help=f"Refresh interval in ms [default: {DEFAULT_INTERVAL_MS}]"),
        watch_mode: bool = typer.Option(False, "--watch", "-w", help="Redraw the table in place"),
        timeout: Optional[int] = typer.Option(None, min=1, help=f"Per-ping timeout in seconds [default: {DEFAULT_TIMEOUT_SECS}]"),
        family: Optional[IPFamily] = typer.Option(None, case_sensitive=False, help="Address family"),
        pause: Optional[float] = typer.Option(None, min=0.0, help=f"Seconds between pings to one target [default: {DEFAULT_PAUSE_SECS}]"),
        config: Optional[str] = typer.Option(None, help="Path to config.yaml"),
        log_file: Optional[str] = typer.Option(None, help="Write logs to this file instead of stderr"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")):
    """Ping every target concurrently and render live statistics."""
    configure_logging(verbose=verbose, log_file=log_file)
    cfg = Config()
    if config:
        try:
            cfg = load_config(config)
        except (OSError, ValueError) as e:
            typer.secho(f"Invalid config: {e}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=2)

    names = list(targets or [])
    if not names:
        names = read_piped_targets(sys.stdin)
    names.extend(cfg.targets)
    if not names:
        typer.secho("No targets given (pass them as arguments or on stdin)", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)

    fam = family or IPFamily(cfg.family)
    renderer = LiveRenderer(console) if watch_mode else ScrollRenderer(console)
    coordinator = Coordinator(
        names,
        renderer,
        count=count or cfg.count,
        continuous=cfg.continuous if continuous is None else continuous,
        tick_secs=(interval or cfg.interval_ms) / 1000.0,
        pinger=make_pinger(timeout or cfg.timeout_secs, fam),
        pause_secs=cfg.pause_secs if pause is None else pause,
    )
    logger.info("run_start", extra={"target": ",".join(names)})

    with renderer:
        report = asyncio.run(coordinator.run())

    print_report(report)
    if not report.ok:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
