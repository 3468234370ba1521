"""Unit tests for the core engine worker pool.

End-to-end scenarios run against scripted HTTP clients and a fake browser
launcher:
- A: plain success
- B: repeated blocks cool the only proxy, the next item finds none
- C: challenge, browser clearance, exactly one cookie-carrying retry
- D: solver timeout treated as a block with a single failure report
Plus transport retries, time limit, cancellation, and configuration errors.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

import pytest
from conftest import CHALLENGE_BODY, PROXY, TARGET, FakeClientFactory, FakeClock, FakeLauncher, make_config, no_sleep

from spectre.analyzer import RawResponse, RequestOutcome
from spectre.audit import AuditEventType, AuditLog
from spectre.browser import BrowserSolver, Clearance
from spectre.config import BrowserConfig, SpectreConfig
from spectre.engine import CoreEngine, detect
from spectre.exceptions import ConfigurationError, ProfileNotFoundError, ProxyBindError, TransportError
from spectre.grid import NodeStatus, ProxyNode
from spectre.models import WorkItem
from spectre.profiles import ClientProfile
from spectre.session import SessionManager, origin_of

P2 = "http://10.0.0.2:8080"
P3 = "http://10.0.0.3:8080"


def ok(body: str = "Welcome") -> RawResponse:
    return RawResponse(status=200, body=body, url=TARGET, elapsed_ms=12.0)


def build_engine(
    config: SpectreConfig,
    factory: FakeClientFactory,
    launcher: FakeLauncher | None = None,
    clock: FakeClock | None = None,
    audit: AuditLog | None = None,
    solver: BrowserSolver | None = None,
    sleep: Callable[[float], Awaitable[Any]] = no_sleep,
) -> CoreEngine:
    solver = solver or BrowserSolver(config.browser, launcher=launcher or FakeLauncher())
    kwargs: dict[str, Any] = {"client_factory": factory, "solver": solver, "sleep": sleep}
    if clock is not None:
        kwargs["clock"] = clock
    if audit is not None:
        kwargs["audit"] = audit
    return CoreEngine(config, **kwargs)


class SessionSwapSolver(BrowserSolver):
    """Replaces the origin's session mid-solve, as a concurrent block would."""

    def __init__(self, rebind: bool) -> None:
        super().__init__(BrowserConfig(), launcher=FakeLauncher())
        self.rebind = rebind
        self.sessions: SessionManager | None = None

    async def solve(self, url: str, proxy: ProxyNode | None, profile: ClientProfile) -> Clearance:
        origin = origin_of(url)
        self.sessions.invalidate(origin)
        if self.rebind:
            self.sessions.get_or_create(origin)
        return Clearance(
            cookies={"cf_clearance": "tok"},
            user_agent=profile.user_agent,
            proxy_id=proxy.id if proxy else None,
            elapsed_seconds=0.1,
        )


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# =============================================================================
# END-TO-END SCENARIOS
# =============================================================================
class TestScenarios:
    @pytest.mark.asyncio
    async def test_a_success(self, clock: FakeClock) -> None:
        factory = FakeClientFactory([ok()])
        engine = build_engine(make_config(), factory, clock=clock)

        summary = await engine.run()

        result = summary.results[0]
        assert result.status == "completed"
        assert result.outcome == RequestOutcome.SUCCESS
        assert result.attempts == 1
        assert result.status_code == 200
        assert summary.stats["success"] == 1
        assert summary.stats["total"] == 1
        assert engine.grid.get(PROXY).status == NodeStatus.AVAILABLE
        assert engine.grid.get(PROXY).success_count == 1
        assert engine.sessions.get(origin_of(TARGET)).trust_score > 0

    @pytest.mark.asyncio
    async def test_b_blocks_cool_single_proxy(self, clock: FakeClock) -> None:
        factory = FakeClientFactory([RawResponse(status=403, body="Forbidden")] * 4)
        config = make_config(
            general={"requests_per_target": 5},
            engine={"max_exhaustion_retries": 1},
        )
        engine = build_engine(config, factory, clock=clock)

        summary = await engine.run()

        outcomes = [r.outcome for r in summary.results[:4]]
        assert outcomes == [RequestOutcome.BLOCKED] * 4
        assert engine.grid.get(PROXY).status == NodeStatus.COOLING

        fifth = summary.results[4]
        assert fifth.status == "failed"
        assert fifth.error == "proxy_exhausted"
        assert fifth.attempts == 0
        assert len(factory.calls) == 4
        assert summary.stats["blocked"] == 4
        assert summary.stats["proxy_exhausted"] == 2

    @pytest.mark.asyncio
    async def test_c_challenge_then_single_cookie_retry(self, clock: FakeClock) -> None:
        factory = FakeClientFactory([RawResponse(status=503, body=CHALLENGE_BODY), ok()])
        launcher = FakeLauncher(cookies={"cf_clearance": "tok"})
        audit = AuditLog(keep_last=50)
        engine = build_engine(make_config(), factory, launcher=launcher, clock=clock, audit=audit)

        summary = await engine.run()

        result = summary.results[0]
        assert result.outcome == RequestOutcome.SUCCESS
        assert result.escalated and result.solved
        assert len(factory.calls) == 2
        assert factory.calls[0]["cookies"] == {}
        assert factory.calls[1]["cookies"] == {"cf_clearance": "tok"}
        assert factory.calls[0]["proxy"] == factory.calls[1]["proxy"] == PROXY
        assert (launcher.launched, launcher.closed) == (1, 1)

        stats = summary.stats
        assert (stats["total"], stats["success"]) == (1, 1)
        assert (stats["challenge_escalations"], stats["challenges_solved"]) == (1, 1)

        session = engine.sessions.get(origin_of(TARGET))
        assert session.cookies["cf_clearance"] == "tok"
        assert session.trust_score >= 0.5

        events = [e.event for e in audit.recent]
        assert events.index(AuditEventType.ESCALATION_START) < events.index(AuditEventType.ESCALATION_RESULT)
        assert events[-1] == AuditEventType.VERDICT

    @pytest.mark.asyncio
    async def test_c_second_challenge_is_blocked(self, clock: FakeClock) -> None:
        challenge = RawResponse(status=503, body=CHALLENGE_BODY)
        factory = FakeClientFactory([challenge, challenge, ok()])
        engine = build_engine(make_config(), factory, launcher=FakeLauncher(cookies={"cf_clearance": "t"}), clock=clock)

        summary = await engine.run()

        assert summary.results[0].outcome == RequestOutcome.BLOCKED
        assert len(factory.calls) == 2
        assert engine.grid.get(PROXY).consecutive_failures == 1
        assert engine.sessions.get(origin_of(TARGET)) is None

    @pytest.mark.asyncio
    async def test_d_solver_timeout_is_single_block(self, clock: FakeClock) -> None:
        factory = FakeClientFactory([RawResponse(status=503, body=CHALLENGE_BODY)])
        launcher = FakeLauncher(content="still checking your browser")
        config = make_config(browser={"timeout_seconds": 0.1, "poll_interval_seconds": 0.01})
        engine = build_engine(config, factory, launcher=launcher, clock=clock)

        summary = await engine.run()

        result = summary.results[0]
        assert result.outcome == RequestOutcome.BLOCKED
        assert result.escalated and not result.solved
        assert "timed_out" in result.error
        assert len(factory.calls) == 1
        assert engine.grid.get(PROXY).consecutive_failures == 1
        assert engine.grid.get(PROXY).failure_count == 1
        assert engine.sessions.get(origin_of(TARGET)) is None
        assert (launcher.launched, launcher.closed) == (1, 1)
        assert summary.stats["blocked"] == 1

    @pytest.mark.asyncio
    async def test_disabled_browser_treats_challenge_as_block(self, clock: FakeClock) -> None:
        factory = FakeClientFactory([RawResponse(status=503, body=CHALLENGE_BODY)])
        launcher = FakeLauncher()
        engine = build_engine(make_config(browser={"enabled": False}), factory, launcher=launcher, clock=clock)

        summary = await engine.run()

        assert summary.results[0].outcome == RequestOutcome.BLOCKED
        assert launcher.launched == 0


# =============================================================================
# SESSION REPLACED DURING A SOLVE
# =============================================================================
class TestSessionReplacedDuringSolve:
    @pytest.mark.asyncio
    async def test_retry_never_carries_replaced_cookies(self, clock: FakeClock) -> None:
        factory = FakeClientFactory(
            [
                RawResponse(status=200, body="Welcome", cookies={"sid": "old"}),
                RawResponse(status=503, body=CHALLENGE_BODY),
                ok(),
            ]
        )
        solver = SessionSwapSolver(rebind=True)
        engine = build_engine(make_config(general={"requests_per_target": 2}), factory, clock=clock, solver=solver)
        solver.sessions = engine.sessions

        summary = await engine.run()

        assert factory.calls[1]["cookies"] == {"sid": "old"}
        assert factory.calls[2]["cookies"] == {"cf_clearance": "tok"}
        assert all("sid" not in c["cookies"] for c in factory.calls[2:])
        assert summary.results[1].outcome == RequestOutcome.SUCCESS
        session = engine.sessions.get(origin_of(TARGET))
        assert session.generation == 2
        assert session.cookies == {"cf_clearance": "tok"}

    @pytest.mark.asyncio
    async def test_no_retry_when_session_gone(self, clock: FakeClock) -> None:
        factory = FakeClientFactory([RawResponse(status=503, body=CHALLENGE_BODY), ok()])
        solver = SessionSwapSolver(rebind=False)
        engine = build_engine(make_config(), factory, clock=clock, solver=solver)
        solver.sessions = engine.sessions

        summary = await engine.run()

        result = summary.results[0]
        assert result.status == "completed"
        assert result.outcome == RequestOutcome.BLOCKED
        assert result.error == "session_replaced"
        assert result.solved is True
        assert len(factory.calls) == 1
        assert engine.grid.get(PROXY).failure_count == 0
        assert engine.sessions.get(origin_of(TARGET)) is None
        assert summary.stats["blocked"] == 1


# =============================================================================
# OUTCOME BRANCHES
# =============================================================================
class TestOutcomes:
    @pytest.mark.asyncio
    async def test_unknown_has_no_health_effect(self, clock: FakeClock) -> None:
        factory = FakeClientFactory([ok("<html>plain</html>")])
        engine = build_engine(make_config(), factory, clock=clock)

        summary = await engine.run()

        assert summary.results[0].outcome == RequestOutcome.UNKNOWN
        node = engine.grid.get(PROXY)
        assert (node.success_count, node.failure_count) == (0, 0)
        assert summary.stats["unknown"] == 1

    @pytest.mark.asyncio
    async def test_transport_error_retries_through_other_proxy(self, clock: FakeClock) -> None:
        factory = FakeClientFactory(
            [
                TransportError("refused", kind="connection"),
                TransportError("reset", kind="connection"),
                ok(),
            ]
        )
        config = make_config(network={"proxies": [PROXY, P2, P3]})
        engine = build_engine(config, factory, clock=clock)

        summary = await engine.run()

        result = summary.results[0]
        assert result.outcome == RequestOutcome.SUCCESS
        assert result.attempts == 3
        assert len({c["proxy"] for c in factory.calls}) == 3
        assert summary.stats["failed"] == 2
        assert summary.stats["success"] == 1

    @pytest.mark.asyncio
    async def test_transport_error_gives_up_after_max_attempts(self, clock: FakeClock) -> None:
        factory = FakeClientFactory([TransportError("refused", kind="connection")] * 2)
        config = make_config(network={"proxies": [PROXY, P2]}, engine={"max_attempts": 2})
        engine = build_engine(config, factory, clock=clock)

        summary = await engine.run()

        result = summary.results[0]
        assert result.status == "failed"
        assert result.outcome == RequestOutcome.TRANSPORT_ERROR
        assert "refused" in result.error
        assert summary.failed == 1

    @pytest.mark.asyncio
    async def test_transport_error_on_only_proxy_fails_without_backoff(self, clock: FakeClock) -> None:
        factory = FakeClientFactory([TransportError("refused", kind="connection")])
        sleep = SleepRecorder()
        engine = build_engine(make_config(), factory, clock=clock, sleep=sleep)

        summary = await engine.run()

        result = summary.results[0]
        assert result.status == "failed"
        assert result.outcome == RequestOutcome.TRANSPORT_ERROR
        assert "refused" in result.error
        assert result.attempts == 1
        assert sleep.delays == []
        assert len(factory.calls) == 1
        assert summary.stats["proxy_exhausted"] == 0
        assert summary.stats["failed"] == 1

    @pytest.mark.asyncio
    async def test_transport_errors_on_every_proxy_stop_early(self, clock: FakeClock) -> None:
        factory = FakeClientFactory([TransportError("reset", kind="connection")] * 2)
        sleep = SleepRecorder()
        engine = build_engine(make_config(network={"proxies": [PROXY, P2]}), factory, clock=clock, sleep=sleep)

        summary = await engine.run()

        result = summary.results[0]
        assert result.outcome == RequestOutcome.TRANSPORT_ERROR
        assert result.attempts == 2
        assert "reset" in result.error
        assert sleep.delays == []
        assert summary.stats["proxy_exhausted"] == 0

    @pytest.mark.asyncio
    async def test_request_delay_precedes_clearance_retry(self, clock: FakeClock) -> None:
        factory = FakeClientFactory([RawResponse(status=503, body=CHALLENGE_BODY), ok()])
        sleep = SleepRecorder()
        config = make_config(engine={"request_delay": {"enabled": True, "min_ms": 100, "max_ms": 100}})
        launcher = FakeLauncher(cookies={"cf_clearance": "tok"})
        engine = build_engine(config, factory, launcher=launcher, clock=clock, sleep=sleep)

        summary = await engine.run()

        assert summary.results[0].outcome == RequestOutcome.SUCCESS
        assert sleep.delays == [0.1, 0.1]

    @pytest.mark.asyncio
    async def test_sticky_session_reuses_proxy_and_cookies(self, clock: FakeClock) -> None:
        first = RawResponse(status=200, body="Welcome", cookies={"sid": "abc"})
        factory = FakeClientFactory([first, ok()])
        config = make_config(general={"requests_per_target": 2}, network={"proxies": [PROXY, P2]})
        engine = build_engine(config, factory, clock=clock)

        await engine.run()

        assert factory.calls[0]["proxy"] == factory.calls[1]["proxy"]
        assert factory.calls[1]["cookies"] == {"sid": "abc"}

    @pytest.mark.asyncio
    async def test_random_profile_fixed_per_session(self, clock: FakeClock) -> None:
        config = make_config(
            general={"profile": "random", "requests_per_target": 4},
            profiles={"a": "chrome_120", "b": "firefox_133"},
        )
        factory = FakeClientFactory()
        engine = build_engine(config, factory, clock=clock)

        await engine.run()

        profiles = {c["profile"] for c in factory.calls}
        assert len(profiles) == 1
        assert profiles <= {"chrome_120", "chrome_130", "firefox_133"}

    @pytest.mark.asyncio
    async def test_payloads_expand_work(self, clock: FakeClock) -> None:
        config = make_config(general={"payloads": ["<script>", "' or 1=1"], "payload_param": "id"})
        factory = FakeClientFactory()
        engine = build_engine(config, factory, clock=clock)

        summary = await engine.run()

        assert len(summary.results) == 2
        urls = [c["url"] for c in factory.calls]
        assert any("id=%3Cscript%3E" in u for u in urls)
        assert all(r.payload is not None for r in summary.results)

    @pytest.mark.asyncio
    async def test_explicit_work_items(self, clock: FakeClock) -> None:
        factory = FakeClientFactory()
        engine = build_engine(make_config(), factory, clock=clock)

        summary = await engine.run([WorkItem(index=0, url="https://other.example/a")])

        assert factory.calls[0]["url"] == "https://other.example/a"
        assert summary.completed == 1

    @pytest.mark.asyncio
    async def test_summary_is_json_serializable(self, clock: FakeClock) -> None:
        engine = build_engine(make_config(), FakeClientFactory(), clock=clock)

        summary = await engine.run()
        data = json.loads(json.dumps(summary.to_dict()))

        assert data["items"] == {"total": 1, "completed": 1, "failed": 0, "cancelled": 0}
        assert data["outcomes"]["success"] == 1
        assert data["results"][0]["proxy"] == PROXY
        assert "browser" in data["stats"]


# =============================================================================
# TIME LIMIT / CANCELLATION
# =============================================================================
class TestCancellation:
    @pytest.mark.asyncio
    async def test_time_limit_cancels_remaining_items(self) -> None:
        factory = FakeClientFactory(delay=1.0)
        config = make_config(general={"time_limit": 0.1, "requests_per_target": 3})
        engine = build_engine(config, factory)

        summary = await engine.run()

        assert summary.timed_out is True
        assert summary.cancelled_items == 3
        assert all(r.status == "cancelled" for r in summary.results)

    @pytest.mark.asyncio
    async def test_time_limit_tears_down_inflight_solve(self) -> None:
        factory = FakeClientFactory([RawResponse(status=503, body=CHALLENGE_BODY)])
        launcher = FakeLauncher(content="checking your browser")
        config = make_config(
            general={"time_limit": 0.2},
            browser={"timeout_seconds": 10, "poll_interval_seconds": 0.01},
        )
        engine = build_engine(config, factory, launcher=launcher)

        summary = await engine.run()

        assert summary.timed_out is True
        assert summary.results[0].status == "cancelled"
        assert (launcher.launched, launcher.closed) == (1, 1)

    @pytest.mark.asyncio
    async def test_time_limit_during_launch_leaves_no_browser(self) -> None:
        factory = FakeClientFactory([RawResponse(status=503, body=CHALLENGE_BODY)])
        launcher = FakeLauncher(launch_delay=0.5, cookies={"cf_clearance": "t"})
        engine = build_engine(make_config(general={"time_limit": 0.1}), factory, launcher=launcher)

        summary = await engine.run()

        assert summary.timed_out is True
        assert summary.results[0].status == "cancelled"
        assert launcher.spawned == 1
        assert (launcher.launched, launcher.closed) == (1, 1)
        assert engine.solver.pending_launches == 0

    @pytest.mark.asyncio
    async def test_handle_cancel(self) -> None:
        factory = FakeClientFactory(delay=0.5)
        config = make_config(general={"requests_per_target": 4, "concurrency": 2})
        engine = build_engine(config, factory)

        handle = engine.start()
        await asyncio.sleep(0.05)
        progress = handle.snapshot()["progress"]
        assert progress == {"total": 4, "finished": 0, "cancel_requested": False, "done": False}

        handle.cancel()
        summary = await handle

        assert summary.cancelled is True
        assert summary.timed_out is False
        assert summary.cancelled_items == 4
        assert handle.done

    @pytest.mark.asyncio
    async def test_completed_items_survive_cancel(self) -> None:
        factory = FakeClientFactory()
        config = make_config(general={"requests_per_target": 2})
        engine = build_engine(config, factory)

        handle = engine.start()
        summary = await handle.wait()
        handle.cancel()

        assert summary.completed == 2
        assert summary.cancelled is False


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================
class TestConfigurationErrors:
    def test_requires_authorization(self) -> None:
        config = make_config(general={"authorized": False})
        with pytest.raises(ConfigurationError) as exc_info:
            CoreEngine(config)
        assert exc_info.value.config_key == "general.authorized"

    def test_unknown_profile(self) -> None:
        with pytest.raises(ProfileNotFoundError):
            CoreEngine(make_config(general={"profile": "netscape"}))

    def test_bad_profile_alias(self) -> None:
        with pytest.raises(ProfileNotFoundError):
            CoreEngine(make_config(profiles={"desktop": "chrome_999"}))

    def test_malformed_proxy(self) -> None:
        with pytest.raises(ProxyBindError):
            CoreEngine(make_config(network={"proxies": ["not a proxy"]}))

    @pytest.mark.asyncio
    async def test_empty_pool_rejected_before_run(self) -> None:
        factory = FakeClientFactory()
        engine = build_engine(make_config(network={"proxies": []}), factory)
        with pytest.raises(ConfigurationError):
            await engine.run()
        assert factory.calls == []

    @pytest.mark.asyncio
    async def test_no_targets(self) -> None:
        engine = build_engine(make_config(general={"target_url": None}), FakeClientFactory())
        with pytest.raises(ConfigurationError):
            await engine.run()


# =============================================================================
# DETECT
# =============================================================================
class TestDetect:
    @pytest.mark.asyncio
    async def test_detect_through_proxy(self) -> None:
        response = RawResponse(status=403, body="", headers={"Server": "cloudflare", "CF-RAY": "1-FRA"})
        factory = FakeClientFactory([response])
        engine = build_engine(make_config(), factory)

        identity = await engine.detect()

        assert identity.name == "Cloudflare"
        assert identity.status_code == 403
        assert factory.calls[0]["proxy"] == PROXY

    @pytest.mark.asyncio
    async def test_detect_direct_without_proxies(self) -> None:
        factory = FakeClientFactory([RawResponse(status=503, body=CHALLENGE_BODY)])
        engine = build_engine(make_config(network={"proxies": []}), factory)

        identity = await engine.detect("https://other.example")

        assert factory.calls[0]["proxy"] is None
        assert identity.challenge is True
        assert identity.detected

    @pytest.mark.asyncio
    async def test_module_detect_requires_authorization(self) -> None:
        with pytest.raises(ConfigurationError):
            await detect("https://target.example")
