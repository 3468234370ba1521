"""
Sticky Session Manager for Spectre.

Keeps one active session per target origin: a cookie jar, a trust score
and the proxy the session is bound to. Reusing the same exit IP and
cookies preserves the trust a WAF has accumulated for this client.

Sessions are immutable. Every change produces a new Session object, and
a blocked session is replaced, never edited, so a worker holding an old
reference cannot leak stale cookies into the new identity. Writes carry
the generation they were based on; writes against a replaced generation
are dropped.

Lifecycle:
1. get_or_create() on first request to an origin binds a fresh proxy
2. Successful requests raise the trust score
3. A solved challenge merges clearance cookies via update_cookies()
4. BLOCKED / unsolved challenge -> invalidate(); next request starts over
"""

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any
from urllib.parse import urlparse

from .config import SessionConfig
from .exceptions import mask_proxy
from .grid import GridManager, ProxyNode

logger = logging.getLogger(__name__)


def origin_of(url: str) -> str:
    """scheme://host[:port] of a URL, lowercased."""
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return url.lower()
    return f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"


@dataclass(frozen=True)
class Session:
    """One generation of the sticky identity for an origin."""

    origin: str
    generation: int
    proxy_id: str
    profile_key: str
    cookies: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    trust_score: float = 0.0
    created_at: float = 0.0

    def age(self, now: float) -> float:
        return now - self.created_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "origin": self.origin,
            "generation": self.generation,
            "proxy": mask_proxy(self.proxy_id),
            "profile": self.profile_key,
            "cookies": sorted(self.cookies),
            "trust_score": round(self.trust_score, 3),
        }


class SessionManager:
    """
    Per-origin sticky sessions backed by the grid for proxy binding.

    Access is serialized per origin, so replacement is linearizable: once
    invalidate() returns, the next get_or_create() for that origin builds
    a new generation.
    """

    def __init__(
        self,
        grid: GridManager,
        profile_picker: Callable[[], str],
        config: SessionConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._grid = grid
        self._pick_profile = profile_picker
        self._config = config or SessionConfig()
        self._clock = clock

        self._sessions: dict[str, Session] = {}
        self._generations: dict[str, int] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, origin: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(origin)
            if lock is None:
                lock = self._locks[origin] = threading.Lock()
            return lock

    def get(self, origin: str) -> Session | None:
        return self._sessions.get(origin_of(origin))

    def get_or_create(
        self,
        origin: str,
        exclude: Iterable[ProxyNode | str] = (),
    ) -> Session:
        """Return the active session for origin, creating one if needed.

        A session whose proxy is cooling or excluded, or that outlived its
        TTL, is replaced.

        Raises:
            ProxyExhaustedError: A new session is needed and no proxy is eligible
        """
        origin = origin_of(origin)
        excluded = {n.id if isinstance(n, ProxyNode) else n for n in exclude}

        with self._lock_for(origin):
            now = self._clock()
            current = self._sessions.get(origin)

            if current is not None:
                reason = self._stale_reason(current, now, excluded)
                if reason is None:
                    return current
                logger.info(f"Replacing session for {origin} (gen={current.generation}): {reason}")
                del self._sessions[origin]

            node = self._grid.select(exclude=excluded)
            generation = self._generations.get(origin, 0) + 1
            self._generations[origin] = generation

            session = Session(
                origin=origin,
                generation=generation,
                proxy_id=node.id,
                profile_key=self._pick_profile(),
                created_at=now,
            )
            self._sessions[origin] = session
            logger.debug(f"Created session for {origin}: gen={generation}, proxy={node.masked}")
            return session

    def invalidate(self, origin: str, generation: int | None = None) -> bool:
        """Atomically drop the active session.

        With a generation, only that generation is dropped; a newer session
        created by another worker is left alone.
        """
        origin = origin_of(origin)
        with self._lock_for(origin):
            current = self._sessions.get(origin)
            if current is None:
                return False
            if generation is not None and current.generation != generation:
                logger.debug(f"Ignoring stale invalidate for {origin}: gen={generation}, active={current.generation}")
                return False
            del self._sessions[origin]
            logger.info(f"Invalidated session for {origin} (gen={current.generation})")
            return True

    def update_cookies(
        self,
        origin: str,
        cookies: Mapping[str, str],
        generation: int,
        trust_floor: float | None = None,
    ) -> Session | None:
        """Merge cookies into the active session, producing a new Session.

        Returns None when the generation was replaced in the meantime.
        """
        origin = origin_of(origin)
        with self._lock_for(origin):
            current = self._sessions.get(origin)
            if current is None or current.generation != generation:
                logger.debug(f"Dropping cookie update for replaced session {origin} gen={generation}")
                return None

            merged = dict(current.cookies)
            merged.update(cookies)
            trust = current.trust_score
            if trust_floor is not None:
                trust = max(trust, trust_floor)

            updated = replace(current, cookies=MappingProxyType(merged), trust_score=trust)
            self._sessions[origin] = updated
            return updated

    def apply_clearance(self, origin: str, cookies: Mapping[str, str], generation: int) -> Session | None:
        """Merge solver cookies and lift trust to the clearance floor."""
        return self.update_cookies(origin, cookies, generation, trust_floor=self._config.clearance_trust)

    def record_success(self, origin: str, generation: int) -> Session | None:
        origin = origin_of(origin)
        with self._lock_for(origin):
            current = self._sessions.get(origin)
            if current is None or current.generation != generation:
                return None
            updated = replace(
                current,
                trust_score=min(1.0, current.trust_score + self._config.trust_step),
            )
            self._sessions[origin] = updated
            return updated

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def snapshot(self) -> list[dict[str, Any]]:
        return [s.to_dict() for s in list(self._sessions.values())]

    def _stale_reason(self, session: Session, now: float, excluded: set[str]) -> str | None:
        if session.age(now) > self._config.ttl_seconds:
            return "expired"
        if session.proxy_id in excluded:
            return "proxy excluded"
        if not self._grid.is_available(session.proxy_id):
            return "proxy cooling"
        return None
