# aggregate.py
"""
Per-target statistics for pingwatch.

A TargetAggregate consumes ProbeResults one at a time and keeps running totals,
so a tick never has to re-scan history. Results are applied by sequence number:
anything at or below the current total is stale and dropped.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional, Tuple


class ProbeStatus(enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class ProbeResult:
    sequence: int
    status: ProbeStatus
    latency_ms: float = 0.0
    timestamp: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is ProbeStatus.SUCCESS


@dataclass(frozen=True)
class TargetView:
    """Read-only view of one target at one tick."""
    name: str
    last_status: ProbeStatus
    last_latency: float
    average_latency: float
    total_count: int
    success_count: int
    loss_count: int
    percent_success: float
    last_success_at: Optional[float]
    latency_sum: float
    error: Optional[str] = None


Snapshot = Tuple[TargetView, ...]


class TargetAggregate:
    def __init__(self, name: str):
        self.name = name
        self.total_count = 0
        self.success_count = 0
        self.latency_sum = 0.0
        self.last_status = ProbeStatus.PENDING
        self.last_latency = 0.0
        self.last_success_at: Optional[float] = None

    def apply(self, result: ProbeResult) -> bool:
        """Fold one result into the totals. Returns False if it was stale."""
        if result.sequence <= self.total_count:
            return False
        # skipped sequences count as sent but never answered
        self.total_count = result.sequence
        self.last_status = result.status
        if result.ok:
            self.success_count += 1
            self.latency_sum += result.latency_ms
            self.last_latency = result.latency_ms
            self.last_success_at = result.timestamp
        else:
            self.last_latency = 0.0
        return True

    @property
    def percent_success(self) -> float:
        if self.total_count == 0:
            return 0.0
        return self.success_count / self.total_count * 100

    @property
    def average_latency(self) -> float:
        if self.success_count == 0:
            return 0.0
        return self.latency_sum / self.success_count

    @property
    def loss_count(self) -> int:
        return self.total_count - self.success_count

    def snapshot(self, error: Optional[str] = None) -> TargetView:
        return TargetView(
            name=self.name,
            last_status=self.last_status,
            last_latency=self.last_latency,
            average_latency=self.average_latency,
            total_count=self.total_count,
            success_count=self.success_count,
            loss_count=self.loss_count,
            percent_success=self.percent_success,
            last_success_at=self.last_success_at,
            latency_sum=self.latency_sum,
            error=error,
        )

    def __repr__(self) -> str:
        return (f"TargetAggregate({self.name!r}, total={self.total_count}, "
                f"ok={self.success_count}, status={self.last_status.value})")
