"""Spectre Stats Aggregator.

Run-scoped counters plus a bounded ring buffer of recent latency samples.
Workers submit deltas; the dashboard and control API read immutable
snapshots. Writers hold the lock only for a few integer additions, and
readers copy out under the same short lock, so neither side waits on
the other for long.

Usage:
    stats = StatsAggregator()
    stats.submit(StatsDelta.for_outcome(RequestOutcome.SUCCESS, latency_ms=120.0))
    snapshot = stats.snapshot()
"""

from collections import deque
from dataclasses import asdict, dataclass
from threading import Lock
from typing import Any

from .analyzer import RequestOutcome

_OUTCOME_FIELDS = {
    RequestOutcome.SUCCESS: "success",
    RequestOutcome.BLOCKED: "blocked",
    RequestOutcome.TRANSPORT_ERROR: "failed",
    RequestOutcome.UNKNOWN: "unknown",
}


@dataclass(frozen=True)
class StatsDelta:
    """Increment submitted by a worker for one finished attempt or event."""

    total: int = 0
    success: int = 0
    blocked: int = 0
    failed: int = 0
    unknown: int = 0
    challenge_escalations: int = 0
    challenges_solved: int = 0
    proxy_exhausted: int = 0
    latency_ms: float | None = None

    @classmethod
    def for_outcome(cls, outcome: RequestOutcome, latency_ms: float | None = None) -> "StatsDelta":
        """One finished request. CHALLENGE is not final and is counted via escalations."""
        field_name = _OUTCOME_FIELDS.get(outcome)
        kwargs: dict[str, Any] = {"total": 1, "latency_ms": latency_ms}
        if field_name:
            kwargs[field_name] = 1
        return cls(**kwargs)


@dataclass(frozen=True)
class StatsSnapshot:
    total: int
    success: int
    blocked: int
    failed: int
    unknown: int
    challenge_escalations: int
    challenges_solved: int
    proxy_exhausted: int
    latencies_ms: tuple[float, ...]

    @property
    def success_rate(self) -> float:
        return self.success / self.total if self.total else 0.0

    def timing(self) -> dict[str, Any]:
        """Timing statistics over the ring buffer."""
        if not self.latencies_ms:
            return {"samples": 0}

        sorted_times = sorted(self.latencies_ms)
        count = len(sorted_times)

        return {
            "samples": count,
            "min_ms": round(sorted_times[0], 2),
            "max_ms": round(sorted_times[-1], 2),
            "mean_ms": round(sum(sorted_times) / count, 2),
            "p50_ms": round(sorted_times[count // 2], 2),
            "p90_ms": round(sorted_times[int(count * 0.9)], 2),
            "p99_ms": (round(sorted_times[int(count * 0.99)], 2) if count >= 100 else None),
        }

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("latencies_ms")
        data["success_rate_pct"] = round(self.success_rate * 100, 2)
        data["timing"] = self.timing()
        return data


class StatsAggregator:
    """Thread-safe counters owned by the engine."""

    def __init__(self, latency_samples: int = 1000) -> None:
        self._lock = Lock()
        self._counters = {
            "total": 0,
            "success": 0,
            "blocked": 0,
            "failed": 0,
            "unknown": 0,
            "challenge_escalations": 0,
            "challenges_solved": 0,
            "proxy_exhausted": 0,
        }
        self._latencies: deque[float] = deque(maxlen=latency_samples)

    def submit(self, delta: StatsDelta) -> None:
        with self._lock:
            for name in self._counters:
                value = getattr(delta, name)
                if value:
                    self._counters[name] += value
            if delta.latency_ms is not None:
                self._latencies.append(delta.latency_ms)

    def snapshot(self) -> StatsSnapshot:
        with self._lock:
            counters = dict(self._counters)
            latencies = tuple(self._latencies)
        return StatsSnapshot(latencies_ms=latencies, **counters)

    def to_prometheus(self) -> str:
        """Export counters in Prometheus text format."""
        snapshot = self.snapshot()
        lines = [
            f"spectre_requests_total {snapshot.total}",
            f"spectre_success_total {snapshot.success}",
            f"spectre_blocked_total {snapshot.blocked}",
            f"spectre_failed_total {snapshot.failed}",
            f"spectre_unknown_total {snapshot.unknown}",
            f"spectre_challenge_escalations_total {snapshot.challenge_escalations}",
            f"spectre_challenges_solved_total {snapshot.challenges_solved}",
            f"spectre_proxy_exhausted_total {snapshot.proxy_exhausted}",
        ]
        return "\n".join(lines)
