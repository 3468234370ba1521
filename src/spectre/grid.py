"""
SPECTRE - Grid Manager

Owns the proxy pool: selects an eligible node, records success/failure
and enforces cooldown after repeated failures.

Selection strategies:
    - round_robin: Sequential rotation from a shared cursor
    - least_recently_used: Oldest last_used first

Cooldown is re-evaluated lazily on every select(); there is no background
timer. A cooling node is never handed out before its timer expires.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal
from urllib.parse import urlparse

from .config import GridConfig
from .exceptions import ProxyBindError, ProxyExhaustedError, mask_proxy

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMES = ("http", "https", "socks4", "socks5", "socks5h")


class NodeStatus(str, Enum):
    AVAILABLE = "available"
    COOLING = "cooling"


@dataclass
class ProxyNode:
    """A single proxy in the grid.

    The address (scheme://[user:pass@]host:port) is the node's identity.
    Health fields are mutated only under the node's own lock.
    """

    address: str
    consecutive_failures: int = 0
    status: NodeStatus = NodeStatus.AVAILABLE
    cooling_until: float | None = None
    success_count: int = 0
    failure_count: int = 0
    last_used: float | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @classmethod
    def from_address(cls, address: str) -> "ProxyNode":
        """Parse a configured proxy entry. A bare host:port defaults to http.

        Raises:
            ProxyBindError: If the entry is malformed or the scheme unsupported
        """
        raw = (address or "").strip()
        if not raw:
            raise ProxyBindError("Empty proxy entry", proxy_url=address)

        if "://" not in raw:
            raw = f"http://{raw}"

        parsed = urlparse(raw)
        if parsed.scheme.lower() not in SUPPORTED_SCHEMES:
            raise ProxyBindError(f"Unsupported proxy scheme: {parsed.scheme}", proxy_url=raw)

        try:
            port = parsed.port
        except ValueError as e:
            raise ProxyBindError(f"Invalid proxy port: {e}", proxy_url=raw) from e

        if not parsed.hostname or port is None:
            raise ProxyBindError("Proxy entry must be host:port", proxy_url=raw)

        return cls(address=raw)

    @property
    def id(self) -> str:
        return self.address

    @property
    def masked(self) -> str:
        return mask_proxy(self.address) or ""

    @property
    def server(self) -> str:
        """scheme://host:port without credentials (for browser --proxy-server)."""
        parsed = urlparse(self.address)
        return f"{parsed.scheme}://{parsed.hostname}:{parsed.port}"

    @property
    def has_credentials(self) -> bool:
        return urlparse(self.address).username is not None

    def to_dict(self, now: float | None = None) -> dict[str, Any]:
        remaining = None
        if self.status == NodeStatus.COOLING and self.cooling_until is not None and now is not None:
            remaining = max(0.0, self.cooling_until - now)
        return {
            "proxy": self.masked,
            "status": self.status.value,
            "consecutive_failures": self.consecutive_failures,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "cooldown_remaining": remaining,
        }


class GridManager:
    """
    Shared proxy pool with failure-driven cooldown.

    A node may be handed to several workers at once; the grid is shared,
    not partitioned. Mutations are serialized per node, the rotation
    cursor by the pool lock.
    """

    def __init__(
        self,
        proxies: Iterable[str | ProxyNode] = (),
        failure_threshold: int = 3,
        cooldown_seconds: float = 60.0,
        strategy: Literal["round_robin", "least_recently_used"] = "round_robin",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._nodes: list[ProxyNode] = []
        self._by_id: dict[str, ProxyNode] = {}
        self._threshold = failure_threshold
        self._cooldown = cooldown_seconds
        self._strategy = strategy
        self._clock = clock
        self._cursor = 0
        self._pool_lock = threading.Lock()

        for proxy in proxies:
            self.add_proxy(proxy)

        logger.info(
            f"GridManager initialized: strategy={strategy}, proxies={len(self._nodes)}, "
            f"threshold={failure_threshold}, cooldown={cooldown_seconds}s"
        )

    @classmethod
    def from_config(
        cls,
        config: GridConfig,
        proxies: Iterable[str],
        clock: Callable[[], float] = time.monotonic,
    ) -> "GridManager":
        return cls(
            proxies=proxies,
            failure_threshold=config.failure_threshold,
            cooldown_seconds=config.cooldown_seconds,
            strategy=config.selection_strategy,
            clock=clock,
        )

    @property
    def proxy_count(self) -> int:
        return len(self._nodes)

    @property
    def available_count(self) -> int:
        now = self._clock()
        return sum(1 for n in self._nodes if self._is_eligible(n, now))

    def add_proxy(self, proxy: str | ProxyNode) -> ProxyNode:
        """Add a proxy to the pool. Duplicate addresses are ignored."""
        node = proxy if isinstance(proxy, ProxyNode) else ProxyNode.from_address(proxy)
        with self._pool_lock:
            if node.id in self._by_id:
                return self._by_id[node.id]
            self._nodes.append(node)
            self._by_id[node.id] = node
        return node

    def get(self, node_id: str) -> ProxyNode | None:
        return self._by_id.get(node_id)

    def is_available(self, node: ProxyNode | str) -> bool:
        """True if the node exists and is selectable right now."""
        resolved = self._resolve(node)
        if resolved is None:
            return False
        return self._is_eligible(resolved, self._clock())

    def select(self, exclude: Iterable[ProxyNode | str] = ()) -> ProxyNode:
        """Pick an eligible node.

        Raises:
            ProxyExhaustedError: Pool empty, fully cooling, or fully excluded
        """
        excluded = {n.id if isinstance(n, ProxyNode) else n for n in exclude}

        with self._pool_lock:
            now = self._clock()
            count = len(self._nodes)
            candidates: list[tuple[int, ProxyNode]] = []

            for offset in range(count):
                index = (self._cursor + offset) % count
                node = self._nodes[index]
                if node.id in excluded:
                    continue
                if self._is_eligible(node, now):
                    candidates.append((index, node))
                    if self._strategy == "round_robin":
                        break

            if not candidates:
                raise ProxyExhaustedError(
                    pool_size=count,
                    retry_after=self._next_release(now),
                )

            if self._strategy == "least_recently_used":
                index, chosen = min(
                    candidates,
                    key=lambda c: (c[1].last_used is not None, c[1].last_used or 0.0),
                )
            else:
                index, chosen = candidates[0]

            self._cursor = (index + 1) % count
            with chosen._lock:
                chosen.last_used = now

        return chosen

    def report_success(self, node: ProxyNode | str) -> None:
        """Reset the failure streak. A cooling node stays cooling."""
        resolved = self._resolve(node)
        if resolved is None:
            return
        with resolved._lock:
            resolved.success_count += 1
            resolved.consecutive_failures = 0

    def report_failure(self, node: ProxyNode | str) -> bool:
        """Record a failure. Returns True if the node entered cooldown."""
        resolved = self._resolve(node)
        if resolved is None:
            return False

        with resolved._lock:
            resolved.failure_count += 1
            if resolved.status == NodeStatus.COOLING:
                return False

            resolved.consecutive_failures += 1
            if resolved.consecutive_failures > self._threshold:
                resolved.status = NodeStatus.COOLING
                resolved.cooling_until = self._clock() + self._cooldown
                resolved.consecutive_failures = 0
                logger.warning(f"Proxy cooling for {self._cooldown}s: {resolved.masked}")
                return True
        return False

    def snapshot(self) -> dict[str, Any]:
        """Pool statistics for dashboards."""
        now = self._clock()
        nodes = [n.to_dict(now) for n in self._nodes]
        return {
            "total_proxies": len(nodes),
            "available_proxies": sum(1 for n in self._nodes if self._is_eligible(n, now)),
            "cooling_proxies": sum(1 for n in nodes if n["status"] == NodeStatus.COOLING.value),
            "strategy": self._strategy,
            "nodes": nodes,
        }

    def _resolve(self, node: ProxyNode | str) -> ProxyNode | None:
        node_id = node.id if isinstance(node, ProxyNode) else node
        return self._by_id.get(node_id)

    def _is_eligible(self, node: ProxyNode, now: float) -> bool:
        with node._lock:
            if node.status == NodeStatus.COOLING:
                if node.cooling_until is not None and now >= node.cooling_until:
                    node.status = NodeStatus.AVAILABLE
                    node.cooling_until = None
                    logger.info(f"Proxy back in rotation: {node.masked}")
                else:
                    return False
            return True

    def _next_release(self, now: float) -> float | None:
        waits = [
            n.cooling_until - now
            for n in self._nodes
            if n.status == NodeStatus.COOLING and n.cooling_until is not None
        ]
        return max(0.0, min(waits)) if waits else None
