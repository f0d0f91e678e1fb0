"""
Per-bot and fleet-wide metrics records.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import asdict, dataclass, field, replace
from types import MappingProxyType
from typing import Any

from .movement import MovementPattern


def pattern_counts(patterns: Iterable[MovementPattern]) -> Mapping[str, int]:
    """Read-only count of bots per pattern; every pattern is present."""
    counts = {pattern.value: 0 for pattern in MovementPattern}
    for pattern in patterns:
        counts[pattern.value] += 1
    return MappingProxyType(counts)


@dataclass(frozen=True)
class BotMetrics:
    """Snapshot of one bot's update timing and latency."""

    latency_ms: float | None = None  # None until a round trip has been measured
    last_update_ms: float = 0.0
    update_count: int = 0
    average_update_ms: float = 0.0
    error_count: int = 0
    consecutive_failures: int = 0

    @property
    def tick_rate(self) -> float | None:
        """Updates per second the bot could sustain at its average update cost."""
        if self.update_count == 0 or self.average_update_ms <= 0:
            return None
        return 1000.0 / self.average_update_ms


class UpdateStats:
    """Running counters behind ``BotMetrics``. Only the owning bot writes them."""

    def __init__(self) -> None:
        self.latency_ms: float | None = None
        self.last_update_ms = 0.0
        self.update_count = 0
        self.average_update_ms = 0.0
        self.error_count = 0
        self.consecutive_failures = 0

    def record_update(self, duration_ms: float) -> None:
        self.update_count += 1
        self.last_update_ms = duration_ms
        n = self.update_count
        self.average_update_ms = (self.average_update_ms * (n - 1) + duration_ms) / n

    def record_success(self) -> None:
        self.consecutive_failures = 0

    def record_failure(self) -> None:
        self.error_count += 1
        self.consecutive_failures += 1

    def record_latency(self, latency_ms: float) -> None:
        self.latency_ms = latency_ms

    def snapshot(self) -> BotMetrics:
        return BotMetrics(
            latency_ms=self.latency_ms,
            last_update_ms=self.last_update_ms,
            update_count=self.update_count,
            average_update_ms=self.average_update_ms,
            error_count=self.error_count,
            consecutive_failures=self.consecutive_failures,
        )


@dataclass(frozen=True)
class FleetMetrics:
    """Aggregate snapshot recomputed on every control tick."""

    total_bots: int = 0
    average_latency_ms: float = 0.0
    average_tick_rate: float = 0.0
    memory_usage_mb: float = 0.0
    cpu_usage_percent: float = 0.0
    total_errors: int = 0
    active_patterns: Mapping[str, int] = field(default_factory=lambda: pattern_counts(()))
    timestamp: float = 0.0

    def copy(self) -> FleetMetrics:
        """Detached copy whose pattern table shares nothing with this snapshot."""
        return replace(self, active_patterns=MappingProxyType(dict(self.active_patterns)))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(replace(self, active_patterns={}))
        data["active_patterns"] = dict(self.active_patterns)
        return data


def summarize_history(history: Sequence[FleetMetrics]) -> dict[str, Any]:
    """Condense a run's snapshots into the figures worth reporting."""
    if not history:
        return {
            "samples": 0,
            "duration_seconds": 0.0,
            "peak_bots": 0,
            "max_latency_ms": 0.0,
            "min_tick_rate": 0.0,
            "peak_memory_mb": 0.0,
            "peak_cpu_percent": 0.0,
            "total_errors": 0,
        }

    # Rates of 0.0 mean "nothing measured yet", not a stalled fleet
    measured_rates = [m.average_tick_rate for m in history if m.average_tick_rate > 0]
    return {
        "samples": len(history),
        "duration_seconds": max(0.0, history[-1].timestamp - history[0].timestamp),
        "peak_bots": max(m.total_bots for m in history),
        "max_latency_ms": max(m.average_latency_ms for m in history),
        "min_tick_rate": min(measured_rates) if measured_rates else 0.0,
        "peak_memory_mb": max(m.memory_usage_mb for m in history),
        "peak_cpu_percent": max(m.cpu_usage_percent for m in history),
        "total_errors": history[-1].total_errors,
    }
