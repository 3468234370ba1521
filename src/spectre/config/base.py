"""
SPECTRE - General Configuration

Run-wide configuration models: target selection, profiles, the proxy
network, grid health policy, sticky sessions and worker-pool tuning.
"""

import random
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class GeneralConfig(BaseModel):
    """The `[general]` table.

    target_url is the single target of the original configuration format;
    targets extends it to a list. Each target is requested
    requests_per_target times, once per payload when payloads are given.
    """

    target_url: str | None = None
    targets: list[str] = Field(default_factory=list)
    concurrency: int = Field(default=10, ge=1)
    profile: str = "desktop"
    authorized: bool = False
    time_limit: float | None = Field(default=None, gt=0)
    requests_per_target: int = Field(default=1, ge=1)
    payloads: list[str] = Field(default_factory=list)
    payload_param: str = "q"

    @field_validator("target_url", "targets", mode="before")
    @classmethod
    def strip_blank(cls, v):
        if isinstance(v, str):
            return v.strip() or None
        if isinstance(v, list):
            return [t.strip() for t in v if isinstance(t, str) and t.strip()]
        return v

    @property
    def all_targets(self) -> list[str]:
        """target_url followed by targets, without duplicates."""
        seen: list[str] = []
        for t in ([self.target_url] if self.target_url else []) + self.targets:
            if t not in seen:
                seen.append(t)
        return seen


class NetworkConfig(BaseModel):
    """The `[network]` table. proxies seeds the grid."""

    proxies: list[str] = Field(default_factory=list)
    request_timeout: float = Field(default=30.0, gt=0)
    verify_tls: bool = True


class GridConfig(BaseModel):
    """Proxy health policy."""

    failure_threshold: int = Field(default=3, ge=0)
    cooldown_seconds: float = Field(default=60.0, ge=0)
    selection_strategy: Literal["round_robin", "least_recently_used"] = "round_robin"


class SessionConfig(BaseModel):
    """Sticky-session policy."""

    ttl_seconds: float = Field(default=25 * 60, gt=0)
    trust_step: float = Field(default=0.1, ge=0, le=1)
    clearance_trust: float = Field(default=0.5, ge=0, le=1)


class RequestDelayConfig(BaseModel):
    """Jitter before every HTTP request a worker sends, the post-clearance retry included."""

    enabled: bool = False
    min_ms: int = Field(default=50, ge=0)
    max_ms: int = Field(default=250, ge=0)
    distribution: Literal["uniform", "normal"] = "uniform"

    @model_validator(mode="after")
    def check_bounds(self) -> "RequestDelayConfig":
        if self.max_ms < self.min_ms:
            raise ValueError("request_delay.max_ms must be >= min_ms")
        return self

    def get_delay(self) -> float:
        """Get a random delay in seconds."""
        if not self.enabled:
            return 0.0

        if self.distribution == "uniform":
            delay_ms = random.uniform(self.min_ms, self.max_ms)
        else:
            mean = (self.min_ms + self.max_ms) / 2
            std = (self.max_ms - self.min_ms) / 4
            delay_ms = random.gauss(mean, std)
            delay_ms = max(self.min_ms, min(self.max_ms, delay_ms))

        return delay_ms / 1000.0


class EngineConfig(BaseModel):
    """Worker-pool retry and backoff settings."""

    max_attempts: int = Field(default=3, ge=1)
    backoff_base: float = Field(default=0.25, ge=0)
    backoff_max: float = Field(default=5.0, ge=0)
    max_exhaustion_retries: int = Field(default=5, ge=0)
    latency_samples: int = Field(default=1000, ge=1)
    request_delay: RequestDelayConfig = Field(default_factory=RequestDelayConfig)

    def calculate_backoff(self, attempt: int) -> float:
        """Bounded exponential backoff for the given retry number (0-based)."""
        return min(self.backoff_base * (2**attempt), self.backoff_max)
