"""
SPECTRE Core Engine - Concurrent Probe Worker Pool

Drains a queue of work items with a fixed number of asyncio workers. Each
item goes through the request lifecycle:

    Session -> Grid (proxy) -> Client (plain HTTP) -> Analyzer -> react

Reactions:
- SUCCESS: proxy health reset, session trust bumped
- BLOCKED: one proxy failure, session invalidated, no retry this cycle
- CHALLENGE: browser escalation, then exactly one cookie-carrying retry
- TRANSPORT_ERROR: proxy failure, session invalidated, retried through a
  different proxy up to max_attempts
- UNKNOWN: recorded, no health update

Shared state (grid, sessions, stats) is owned here and handed to workers
by reference. A global time limit or RunHandle.cancel() stops the pool;
items that never finished are reported as cancelled.

Usage:
    engine = CoreEngine(config)
    summary = await engine.run()
"""

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from .analyzer import RawResponse, RequestOutcome, ResponseAnalyzer
from .audit import AuditEventType, AuditLog
from .browser import BrowserSolver
from .config import ConfigLoader, SpectreConfig
from .exceptions import (
    ChallengeUnsolvedError,
    ConfigurationError,
    ProfileNotFoundError,
    ProxyExhaustedError,
    TransportError,
)
from .grid import GridManager, ProxyNode
from .models import RunSummary, TargetResult, WorkItem, build_work_items
from .profiles import RANDOM_PROFILE, ClientFactory, ClientProfile, ProfileRegistry
from .session import Session, SessionManager, origin_of
from .stats import StatsAggregator, StatsDelta
from .waf import WafIdentity, identify_waf

logger = logging.getLogger(__name__)


class RunHandle:
    """Control surface of a run started with CoreEngine.start()."""

    def __init__(self, engine: "CoreEngine", total: int) -> None:
        self._engine = engine
        self._cancel_event = asyncio.Event()
        self._task: asyncio.Task[RunSummary] | None = None
        self.total = total
        self.results: dict[int, TargetResult] = {}

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def cancel(self) -> None:
        """Stop accepting work and abandon in-flight requests and solves."""
        if not self._cancel_event.is_set():
            logger.info("Run cancellation requested")
            self._cancel_event.set()

    async def wait_cancelled(self) -> None:
        await self._cancel_event.wait()

    def snapshot(self) -> dict[str, Any]:
        """Read-only progress view for status endpoints and dashboards."""
        data = self._engine.snapshot()
        data["progress"] = {
            "total": self.total,
            "finished": len(self.results),
            "cancel_requested": self.cancel_requested,
            "done": self.done,
        }
        return data

    async def wait(self) -> RunSummary:
        if self._task is None:
            raise RuntimeError("Run was not started")
        return await self._task

    def __await__(self):
        return self.wait().__await__()


class CoreEngine:
    """
    Worker pool tying grid, sessions, clients, analyzer and solver together.

    Collaborators are built from config unless injected. Configuration
    problems (missing authorization, unknown profile, malformed proxy)
    raise ConfigurationError here, before any request is sent.
    """

    def __init__(
        self,
        config: SpectreConfig,
        grid: GridManager | None = None,
        client_factory: ClientFactory | None = None,
        solver: BrowserSolver | None = None,
        analyzer: ResponseAnalyzer | None = None,
        stats: StatsAggregator | None = None,
        audit: AuditLog | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        general = config.general

        if not general.authorized:
            raise ConfigurationError(
                "Refusing to run without explicit authorization",
                config_key="general.authorized",
                actual_value=general.authorized,
            )

        self.registry = ProfileRegistry(config.profiles)
        self.registry.validate()
        if general.profile not in self.registry:
            raise ProfileNotFoundError(general.profile)

        self.grid = grid or GridManager.from_config(config.grid, config.network.proxies, clock=clock)
        self.client_factory = client_factory or ClientFactory(
            self.registry,
            timeout=config.network.request_timeout,
            verify=config.network.verify_tls,
        )
        self.solver = solver or BrowserSolver(config.browser)
        self.analyzer = analyzer or ResponseAnalyzer(config.analyzer)
        self.stats = stats or StatsAggregator(latency_samples=config.engine.latency_samples)
        self.audit = audit or AuditLog()
        self.sessions = SessionManager(
            self.grid,
            profile_picker=self._pick_profile,
            config=config.session,
            clock=clock,
        )
        self._clock = clock
        self._sleep = sleep

        logger.info(
            f"CoreEngine initialized: concurrency={general.concurrency}, profile={general.profile}, "
            f"proxies={self.grid.proxy_count}, browser={'on' if self.solver.enabled else 'off'}"
        )

    # =========================================================================
    # Entry points
    # =========================================================================

    def start(self, work: Iterable[WorkItem] | None = None) -> RunHandle:
        """Start a run in the background and return its handle.

        Must be called from a running event loop.

        Raises:
            ConfigurationError: No targets or an empty proxy pool
        """
        items = list(work) if work is not None else build_work_items(self.config.general)
        if not items:
            raise ConfigurationError("No targets configured", config_key="general.target_url")
        if self.grid.proxy_count == 0:
            raise ConfigurationError("Proxy pool is empty", config_key="network.proxies")

        handle = RunHandle(self, total=len(items))
        handle._task = asyncio.create_task(self._execute(items, handle))
        return handle

    async def run(self, work: Iterable[WorkItem] | None = None) -> RunSummary:
        """Run to completion, time limit or cancellation."""
        return await self.start(work).wait()

    async def detect(self, target: str | None = None) -> WafIdentity:
        """Send one plain request and identify the WAF in front of target.

        Goes through a proxy when the pool has an eligible one, direct
        otherwise. No escalation is attempted.
        """
        url = target or next(iter(self.config.general.all_targets), None)
        if not url:
            raise ConfigurationError("No target to detect", config_key="general.target_url")

        node: ProxyNode | None = None
        if self.grid.proxy_count:
            try:
                node = self.grid.select()
            except ProxyExhaustedError:
                logger.warning("No eligible proxy for detection, going direct")

        profile = self.client_factory.resolve(self._pick_profile())
        client = self.client_factory.build(profile, node)
        async with client:
            response = await client.fetch(url)

        marker = self.analyzer.challenge_marker(response.body)
        identity = identify_waf(response.status, response.headers, response.body, challenge_marker=marker)
        logger.info(f"Detection for {url}: waf={identity.name} evidence={identity.evidence}")
        return identity

    def snapshot(self) -> dict[str, Any]:
        return {
            "stats": self.stats.snapshot().to_dict(),
            "grid": self.grid.snapshot(),
            "sessions": self.sessions.snapshot(),
            "browser": self.solver.get_stats(),
        }

    # =========================================================================
    # Pool
    # =========================================================================

    async def _execute(self, items: list[WorkItem], handle: RunHandle) -> RunSummary:
        summary = RunSummary()
        queue: asyncio.Queue[WorkItem] = asyncio.Queue()
        for item in items:
            queue.put_nowait(item)

        worker_count = min(self.config.general.concurrency, len(items))
        workers = [
            asyncio.create_task(self._worker(f"worker-{i}", queue, handle.results)) for i in range(worker_count)
        ]
        drained = asyncio.gather(*workers, return_exceptions=True)
        cancelled = asyncio.create_task(handle.wait_cancelled())
        time_limit = self.config.general.time_limit

        logger.info(f"Run started: items={len(items)}, workers={worker_count}, time_limit={time_limit}")

        try:
            done, _ = await asyncio.wait(
                {drained, cancelled},
                timeout=time_limit,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if drained not in done:
                if cancelled in done:
                    summary.cancelled = True
                else:
                    summary.timed_out = True
                    logger.warning(f"Time limit of {time_limit}s reached, stopping workers")
        finally:
            for task in workers:
                task.cancel()
            cancelled.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            await asyncio.gather(cancelled, return_exceptions=True)
            await self.solver.aclose()

        for item in items:
            result = handle.results.get(item.index)
            if result is None:
                result = TargetResult(index=item.index, url=item.url, payload=item.payload, status="cancelled")
            summary.results.append(result)

        summary.finished_at = datetime.now(UTC)
        summary.stats = self.stats.snapshot().to_dict()
        summary.stats["browser"] = self.solver.get_stats()
        summary.grid = self.grid.snapshot()

        logger.info(
            f"Run finished in {summary.duration_seconds:.1f}s: completed={summary.completed}, "
            f"failed={summary.failed}, cancelled={summary.cancelled_items}"
        )
        return summary

    async def _worker(self, name: str, queue: "asyncio.Queue[WorkItem]", results: dict[int, TargetResult]) -> None:
        while True:
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            try:
                results[item.index] = await self._process(item, name)
            except Exception as e:
                logger.exception(f"[{name}] Unexpected error on {item.url}")
                self.stats.submit(StatsDelta(total=1, failed=1))
                results[item.index] = TargetResult(
                    index=item.index,
                    url=item.url,
                    payload=item.payload,
                    status="failed",
                    error=f"{type(e).__name__}: {e}",
                )
            finally:
                queue.task_done()

    # =========================================================================
    # Request lifecycle
    # =========================================================================

    async def _process(self, item: WorkItem, worker: str) -> TargetResult:
        engine_config = self.config.engine
        url = item.request_url
        origin = origin_of(item.url)
        result = TargetResult(index=item.index, url=item.url, payload=item.payload, status="failed")
        excluded: set[str] = set()
        last_error: Exception | None = None
        exhaustion_retries = 0
        start_time = time.monotonic()

        self.audit.emit(worker, AuditEventType.REQ_START, f"Start {url}", index=item.index)

        while True:
            try:
                session = self.sessions.get_or_create(origin, exclude=excluded)
            except ProxyExhaustedError as e:
                if excluded and e.retry_after is None:
                    # Every untried proxy is gone and none is cooling; waiting cannot help.
                    logger.debug(f"[{worker}] No untried proxy left for {url} after transport errors")
                    result.outcome = RequestOutcome.TRANSPORT_ERROR
                    result.error = str(last_error) if last_error else "transport_error"
                    break
                self.stats.submit(StatsDelta(proxy_exhausted=1))
                self.audit.emit(
                    worker,
                    AuditEventType.PROXY_EXHAUSTED,
                    "No eligible proxy",
                    retry=exhaustion_retries,
                    retry_after=e.retry_after,
                )
                if exhaustion_retries >= engine_config.max_exhaustion_retries:
                    result.error = "proxy_exhausted"
                    break
                delay = engine_config.calculate_backoff(exhaustion_retries)
                exhaustion_retries += 1
                await self._sleep(delay)
                continue

            node = self.grid.get(session.proxy_id)
            profile = self.client_factory.resolve(session.profile_key)
            result.attempts += 1
            result.proxy = node.masked if node else None
            self.audit.emit(
                worker,
                AuditEventType.PROXY_SELECTED,
                f"Attempt {result.attempts}",
                proxy=result.proxy,
                profile=session.profile_key,
                generation=session.generation,
            )

            outcome, response, error = await self._send(url, session, node, profile, worker)

            if outcome == RequestOutcome.CHALLENGE and response is not None:
                outcome, response, error, retried = await self._escalate(
                    url, session, node, profile, response, worker, result
                )
                if retried is None:
                    # Session replaced while solving; its failure was already reported.
                    result.outcome = outcome
                    result.status = "completed"
                    result.status_code = response.status if response is not None else None
                    result.error = "session_replaced"
                    break
                session = retried

            if outcome == RequestOutcome.TRANSPORT_ERROR:
                last_error = error
                self._report_failure(node, session)
                if node is not None:
                    excluded.add(node.id)
                if result.attempts < engine_config.max_attempts:
                    logger.debug(f"[{worker}] Transport error on {url}, retrying with another proxy: {error}")
                    continue
                result.outcome = outcome
                result.error = str(error) if error else "transport_error"
                break

            result.outcome = outcome
            result.status = "completed"
            if response is not None:
                result.status_code = response.status
            if error is not None:
                result.error = str(error)
            self._apply_verdict(outcome, session, node, response)
            break

        result.latency_ms = (time.monotonic() - start_time) * 1000

        if result.status == "completed":
            self.audit.emit(
                worker,
                AuditEventType.VERDICT,
                f"{result.outcome.value if result.outcome else 'none'} for {url}",
                outcome=result.outcome.value if result.outcome else None,
                attempts=result.attempts,
                escalated=result.escalated,
                status=result.status_code,
            )
        else:
            self.audit.emit(
                worker,
                AuditEventType.REQ_FAILED,
                f"Failed {url}: {result.error}",
                attempts=result.attempts,
                error=result.error,
            )
        return result

    async def _send(
        self,
        url: str,
        session: Session,
        node: ProxyNode | None,
        profile: ClientProfile,
        worker: str,
    ) -> tuple[RequestOutcome, RawResponse | None, Exception | None]:
        """One plain HTTP request. CHALLENGE results are not counted in stats here."""
        delay = self.config.engine.request_delay.get_delay()
        if delay:
            await self._sleep(delay)

        client = self.client_factory.build(profile, node)
        try:
            async with client:
                response = await client.fetch(url, cookies=session.cookies)
        except TransportError as e:
            outcome = self.analyzer.classify_error(e)
            self.stats.submit(StatsDelta.for_outcome(outcome))
            self.audit.emit(worker, AuditEventType.RESPONSE, f"Transport error: {e.kind}", kind=e.kind)
            return outcome, None, e

        outcome = self.analyzer.classify_response(response)
        if outcome != RequestOutcome.CHALLENGE:
            self.stats.submit(StatsDelta.for_outcome(outcome, latency_ms=response.elapsed_ms))
        self.audit.emit(
            worker,
            AuditEventType.RESPONSE,
            f"HTTP {response.status}",
            status=response.status,
            size=response.size_bytes,
            elapsed_ms=round(response.elapsed_ms, 1),
            outcome=outcome.value,
        )
        return outcome, response, None

    async def _escalate(
        self,
        url: str,
        session: Session,
        node: ProxyNode | None,
        profile: ClientProfile,
        challenge: RawResponse,
        worker: str,
        result: TargetResult,
    ) -> tuple[RequestOutcome, RawResponse | None, Exception | None, Session | None]:
        """Solve the challenge in a browser and retry once with its cookies.

        An unsolved challenge, or a second challenge on the retry, is a block.
        Returns the session the verdict applies to, or None when the session
        was replaced during the solve and no retry was sent.
        """
        result.escalated = True
        self.stats.submit(StatsDelta(challenge_escalations=1))
        self.audit.emit(
            worker,
            AuditEventType.ESCALATION_START,
            "Challenge detected, escalating to browser",
            marker=self.analyzer.challenge_marker(challenge.body),
            proxy=node.masked if node else None,
        )

        try:
            clearance = await self.solver.solve(url, node, profile)
        except ChallengeUnsolvedError as e:
            self.stats.submit(StatsDelta.for_outcome(RequestOutcome.BLOCKED, latency_ms=challenge.elapsed_ms))
            self.audit.emit(worker, AuditEventType.ESCALATION_RESULT, "Challenge unsolved", solved=False, state=e.state)
            return RequestOutcome.BLOCKED, challenge, e, session

        result.solved = True
        self.stats.submit(StatsDelta(challenges_solved=1))
        self.audit.emit(
            worker,
            AuditEventType.ESCALATION_RESULT,
            "Challenge solved",
            solved=True,
            **clearance.to_dict(),
        )

        updated = self._rebind_clearance(session, clearance.cookies)
        if updated is None:
            logger.info(f"[{worker}] Session for {session.origin} replaced during solve, dropping clearance")
            self.stats.submit(StatsDelta.for_outcome(RequestOutcome.BLOCKED, latency_ms=challenge.elapsed_ms))
            return RequestOutcome.BLOCKED, challenge, None, None

        outcome, response, error = await self._send(url, updated, node, profile, worker)
        if outcome == RequestOutcome.CHALLENGE:
            logger.info(f"[{worker}] Challenge persisted after clearance on {url}, treating as blocked")
            elapsed = response.elapsed_ms if response is not None else None
            self.stats.submit(StatsDelta.for_outcome(RequestOutcome.BLOCKED, latency_ms=elapsed))
            return RequestOutcome.BLOCKED, response, None, updated
        return outcome, response, error, updated

    def _rebind_clearance(self, session: Session, cookies: dict[str, str]) -> Session | None:
        """Attach clearance cookies to the live session on the solving proxy.

        The old generation's cookie jar is never reused. When the origin was
        re-bound to the same proxy meanwhile, the clearance goes to the new
        generation instead; on any other proxy it is useless.
        """
        updated = self.sessions.apply_clearance(session.origin, cookies, session.generation)
        if updated is not None:
            return updated
        current = self.sessions.get(session.origin)
        if current is None or current.proxy_id != session.proxy_id:
            return None
        return self.sessions.apply_clearance(session.origin, cookies, current.generation)

    def _apply_verdict(
        self,
        outcome: RequestOutcome,
        session: Session,
        node: ProxyNode | None,
        response: RawResponse | None,
    ) -> None:
        if outcome == RequestOutcome.SUCCESS:
            if node is not None:
                self.grid.report_success(node)
            if response is not None and response.cookies:
                self.sessions.update_cookies(session.origin, response.cookies, session.generation)
            self.sessions.record_success(session.origin, session.generation)
        elif outcome == RequestOutcome.BLOCKED:
            self._report_failure(node, session)
        elif outcome == RequestOutcome.UNKNOWN:
            if response is not None and response.cookies:
                self.sessions.update_cookies(session.origin, response.cookies, session.generation)

    def _report_failure(self, node: ProxyNode | None, session: Session) -> None:
        if node is not None and self.grid.report_failure(node):
            logger.warning(f"Proxy {node.masked} entered cooldown")
        self.sessions.invalidate(session.origin, session.generation)

    def _pick_profile(self) -> str:
        """Profile for a new session; "random" is fixed once per session."""
        key = self.config.general.profile
        if key == RANDOM_PROFILE:
            return random.choice(self.registry.random_pool)
        return key


async def run(config: SpectreConfig, work: Iterable[WorkItem] | None = None) -> RunSummary:
    """Build an engine from config and run it to completion."""
    return await CoreEngine(config).run(work)


async def detect(target: str, config: SpectreConfig | None = None, authorized: bool = False) -> WafIdentity:
    """Identify the WAF in front of target.

    Without a config, a default one is used with the given authorization.
    """
    if config is None:
        config = ConfigLoader.from_dict({"general": {"authorized": authorized}})
    return await CoreEngine(config).detect(target)
