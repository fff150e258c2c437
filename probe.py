# probe.py
"""
pingwatch probe side: config loading, the ICMP probe primitive and the per-target
probe task.

Each ProbeTask pings one target, one check at a time, and appends a ProbeResult to
its own asyncio.Queue. It never touches aggregate state; the coordinator drains
the queue once per tick.

Probing is delegated to the system ping/ping6 binaries (no raw sockets here).

CLI:
  python probe.py --config ./config.yaml
"""
from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import enum
import ipaddress
import logging
import re
import shutil
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Tuple

import typer
import yaml

from aggregate import ProbeResult, ProbeStatus

app = typer.Typer(add_completion=False, help="pingwatch probe utilities")
logger = logging.getLogger("pingwatch.probe")

DEFAULT_COUNT = 4
DEFAULT_INTERVAL_MS = 1000
DEFAULT_TIMEOUT_SECS = 2
DEFAULT_PAUSE_SECS = 1.0


# -------------------------
# Errors
# -------------------------

class ProbeUnavailableError(Exception):
    """The probe mechanism itself cannot run (missing binary, no privilege)."""


class ProbeTaskError(Exception):
    """A probe task stopped for good. Never raised for an ordinary failed check."""

    def __init__(self, target: str, reason: str):
        super().__init__(f"{target}: {reason}")
        self.target = target
        self.reason = reason


class TaskStartupFailure(ProbeTaskError):
    """A probe task could not start probing its target at all."""


# -------------------------
# Config
# -------------------------

class IPFamily(enum.Enum):
    AUTO = "auto"
    V4 = "v4"
    V6 = "v6"


@dataclass
class Config:
    targets: List[str] = dataclasses.field(default_factory=list)
    count: int = DEFAULT_COUNT
    continuous: bool = False
    interval_ms: int = DEFAULT_INTERVAL_MS
    timeout_secs: int = DEFAULT_TIMEOUT_SECS
    pause_secs: float = DEFAULT_PAUSE_SECS
    family: str = IPFamily.AUTO.value


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")

    raw_targets = raw.get("targets", [])
    if not isinstance(raw_targets, list):
        raise ValueError("Config key 'targets' must be a list")
    targets = []
    for t in raw_targets:
        if isinstance(t, dict):
            if "host" not in t:
                raise ValueError(f"Target missing key host: {t}")
            targets.append(str(t["host"]))
        else:
            targets.append(str(t))

    family = str(raw.get("family", IPFamily.AUTO.value))
    if family not in {f.value for f in IPFamily}:
        raise ValueError(f"Invalid family '{family}'")

    cfg = Config(
        targets=targets,
        count=int(raw.get("count", DEFAULT_COUNT)),
        continuous=bool(raw.get("continuous", False)),
        interval_ms=int(raw.get("interval_ms", DEFAULT_INTERVAL_MS)),
        timeout_secs=int(raw.get("timeout_secs", DEFAULT_TIMEOUT_SECS)),
        pause_secs=float(raw.get("pause_secs", DEFAULT_PAUSE_SECS)),
        family=family,
    )
    for key in ("count", "interval_ms", "timeout_secs"):
        if getattr(cfg, key) <= 0:
            raise ValueError(f"Config key '{key}' must be positive")
    if cfg.pause_secs < 0:
        raise ValueError("Config key 'pause_secs' must not be negative")
    return cfg


# -------------------------
# Probe primitive
# -------------------------

PING_RTT_RE = re.compile(r"time[=<](?P<ms>[0-9]+\.?[0-9]*) ?ms")
PRIVILEGE_RE = re.compile(r"operation not permitted|permission denied", re.IGNORECASE)
HOSTNAME_RE = re.compile(r"^(?=.{1,253}\.?$)(?!-)[A-Za-z0-9_-]{1,63}(?<!-)(\.(?!-)[A-Za-z0-9_-]{1,63}(?<!-))*\.?$")

Pinger = Callable[[str], Awaitable[Tuple[bool, Optional[float]]]]


def _ping_commands(host: str, timeout: int, family: IPFamily) -> List[List[str]]:
    v4 = ["ping", "-n", "-c", "1", "-w", str(timeout), host]
    v6 = ["ping6", "-n", "-c", "1", "-w", str(timeout), host]
    if family == IPFamily.V4:
        return [v4]
    if family == IPFamily.V6:
        return [v6]
    return [v4, v6]


async def _reap(proc: asyncio.subprocess.Process) -> None:
    """Kill a ping that is still running and wait for it to exit and close its pipes."""
    with contextlib.suppress(ProcessLookupError):
        proc.kill()
    await proc.communicate()


async def run_ping(host: str, timeout: int, family: IPFamily) -> Tuple[bool, Optional[float]]:
    """Return (ok, rtt_ms). Raises ProbeUnavailableError if ping cannot run at all."""
    missing = 0
    cmds = _ping_commands(host, timeout, family)
    for cmd in cmds:
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError:
            missing += 1
            continue
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout + 1)
        except asyncio.TimeoutError:
            await _reap(proc)
            continue
        except asyncio.CancelledError:
            await asyncio.shield(_reap(proc))
            raise
        if proc.returncode == 0:
            text = stdout.decode(errors="ignore")
            m = PING_RTT_RE.search(text)
            rtt_ms = float(m.group("ms")) if m else None
            return True, rtt_ms
        err = stderr.decode(errors="ignore")
        if PRIVILEGE_RE.search(err):
            raise ProbeUnavailableError(err.strip().splitlines()[-1])
    if missing == len(cmds):
        raise ProbeUnavailableError(f"missing binaries: {', '.join(c[0] for c in cmds)}")
    return False, None


def make_pinger(timeout: int = DEFAULT_TIMEOUT_SECS, family: IPFamily = IPFamily.AUTO) -> Pinger:
    async def pinger(host: str) -> Tuple[bool, Optional[float]]:
        return await run_ping(host, timeout, family)
    return pinger


def validate_target(name: str) -> str:
    host = name.strip()
    if not host:
        raise TaskStartupFailure(name, "empty target name")
    if host.startswith("-"):
        raise TaskStartupFailure(host, "target must not start with '-'")
    with contextlib.suppress(ValueError):
        ipaddress.ip_address(host)
        return host
    try:
        ascii_host = host.encode("idna").decode("ascii")
    except UnicodeError:
        raise TaskStartupFailure(host, "not a valid hostname or address") from None
    if not HOSTNAME_RE.match(ascii_host):
        raise TaskStartupFailure(host, "not a valid hostname or address")
    return host


# -------------------------
# Probe task
# -------------------------

class ProbeTask:
    """Probe one target `count` times, or forever when count is None."""

    def __init__(self, target: str, count: Optional[int], pinger: Pinger,
                 pause_secs: float = DEFAULT_PAUSE_SECS):
        self.target = target
        self.count = count
        self.pinger = pinger
        self.pause_secs = pause_secs
        self.results: asyncio.Queue[ProbeResult] = asyncio.Queue()
        self.sent = 0

    @property
    def continuous(self) -> bool:
        return self.count is None

    async def run(self) -> int:
        host = validate_target(self.target)
        logger.debug("task_started", extra={"target": host})
        while self.continuous or self.sent < self.count:
            if self.sent:
                await asyncio.sleep(self.pause_secs)
            result = await self._check(host, self.sent + 1)
            self.sent = result.sequence
            self.results.put_nowait(result)
        logger.debug("task_complete", extra={"target": host, "sequence": self.sent})
        return self.sent

    async def _check(self, host: str, sequence: int) -> ProbeResult:
        started = time.perf_counter()
        try:
            ok, rtt_ms = await self.pinger(host)
        except ProbeUnavailableError as exc:
            if sequence == 1:
                raise TaskStartupFailure(host, str(exc)) from exc
            raise ProbeTaskError(host, str(exc)) from exc
        if not ok:
            logger.debug("probe_failed", extra={"target": host, "sequence": sequence})
            return ProbeResult(sequence, ProbeStatus.FAILURE, 0.0, time.time())
        if rtt_ms is None:
            rtt_ms = round((time.perf_counter() - started) * 1000, 3)
        return ProbeResult(sequence, ProbeStatus.SUCCESS, rtt_ms, time.time())


# -------------------------
# CLI commands
# -------------------------

@app.command()
def check(config: Optional[str] = typer.Option(None, help="Path to config.yaml")):
    """Check presence of the ping binaries and print a config summary."""
    ping_ok = shutil.which("ping")
    ping6_ok = shutil.which("ping6")
    typer.echo(f"ping present: {'yes' if ping_ok else 'NO'}")
    typer.echo(f"ping6 present: {'yes' if ping6_ok else 'NO'}")
    if config:
        try:
            cfg = load_config(config)
        except (OSError, ValueError) as e:
            typer.secho(f"Invalid config: {e}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=2)
        mode = "continuous" if cfg.continuous else f"count={cfg.count}"
        typer.echo(f"Targets: {len(cfg.targets)} | {mode} | interval: {cfg.interval_ms}ms")
    if not ping_ok and not ping6_ok:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
