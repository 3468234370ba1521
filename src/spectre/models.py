"""
SPECTRE - Run Models

Work items fed to the worker pool and the records a run produces.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from .analyzer import RequestOutcome
from .config import GeneralConfig

ItemStatus = Literal["completed", "failed", "cancelled"]


@dataclass(frozen=True)
class WorkItem:
    index: int
    url: str
    payload: str | None = None
    param: str = "q"

    @property
    def request_url(self) -> str:
        """url with the payload appended to its query string, if there is one."""
        if self.payload is None:
            return self.url
        parsed = urlparse(self.url)
        query = parse_qsl(parsed.query, keep_blank_values=True)
        query.append((self.param, self.payload))
        return urlunparse(parsed._replace(query=urlencode(query)))


def build_work_items(general: GeneralConfig) -> list[WorkItem]:
    """targets x payloads x requests_per_target, in a stable order."""
    items: list[WorkItem] = []
    payloads: list[str | None] = list(general.payloads) or [None]

    for target in general.all_targets:
        for payload in payloads:
            for _ in range(general.requests_per_target):
                items.append(WorkItem(index=len(items), url=target, payload=payload, param=general.payload_param))
    return items


@dataclass
class TargetResult:
    """Final record of one work item."""

    index: int
    url: str
    status: ItemStatus
    outcome: RequestOutcome | None = None
    payload: str | None = None
    attempts: int = 0
    escalated: bool = False
    solved: bool = False
    proxy: str | None = None
    status_code: int | None = None
    latency_ms: float | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "url": self.url,
            "payload": self.payload,
            "status": self.status,
            "outcome": self.outcome.value if self.outcome else None,
            "attempts": self.attempts,
            "escalated": self.escalated,
            "solved": self.solved,
            "proxy": self.proxy,
            "status_code": self.status_code,
            "latency_ms": round(self.latency_ms, 2) if self.latency_ms is not None else None,
            "error": self.error,
        }


@dataclass
class RunSummary:
    """Aggregated results of one run."""

    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    timed_out: bool = False
    cancelled: bool = False
    results: list[TargetResult] = field(default_factory=list)
    stats: dict[str, Any] = field(default_factory=dict)
    grid: dict[str, Any] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or datetime.now(UTC)
        return (end - self.started_at).total_seconds()

    def count(self, status: ItemStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    def count_outcome(self, outcome: RequestOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def completed(self) -> int:
        return self.count("completed")

    @property
    def failed(self) -> int:
        return self.count("failed")

    @property
    def cancelled_items(self) -> int:
        return self.count("cancelled")

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "timed_out": self.timed_out,
            "cancelled": self.cancelled,
            "items": {
                "total": len(self.results),
                "completed": self.completed,
                "failed": self.failed,
                "cancelled": self.cancelled_items,
            },
            "outcomes": {o.value: self.count_outcome(o) for o in RequestOutcome},
            "stats": self.stats,
            "grid": self.grid,
            "results": [r.to_dict() for r in sorted(self.results, key=lambda r: r.index)],
        }
