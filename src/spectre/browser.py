"""
SPECTRE - Browser Solver

Escalation path for JS challenges. Drives an isolated headless browser
through the same proxy as the failed HTTP attempt, waits for the
challenge to clear and hands back the trust cookies.

State machine:
    IDLE -> LAUNCHING -> NAVIGATING_AND_WAITING -> SOLVED
                 |                  |------------> FAILED
                 |                  `------------> TIMED_OUT
                 `--> FAILED / TIMED_OUT

The browser instance is torn down exactly once on every exit edge,
including cancellation. One instance per solve; instances are never
shared between concurrent solves.

Usage:
    solver = BrowserSolver(config.browser)
    clearance = await solver.solve(url, proxy, profile)
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import BrowserConfig
from .exceptions import ChallengeUnsolvedError
from .grid import ProxyNode
from .profiles import ClientProfile

logger = logging.getLogger(__name__)

WEBDRIVER_PATCH = """
Object.defineProperty(Navigator.prototype, 'webdriver', {
    get: () => undefined,
    configurable: true,
});
if (window.chrome && !window.chrome.runtime) {
    window.chrome.runtime = {};
}
"""

NAVIGATOR_PLATFORMS = {
    "Windows": "Win32",
    "macOS": "MacIntel",
    "Linux": "Linux x86_64",
}


class SolverState(str, Enum):
    IDLE = "idle"
    LAUNCHING = "launching"
    NAVIGATING_AND_WAITING = "navigating_and_waiting"
    SOLVED = "solved"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = frozenset({SolverState.SOLVED, SolverState.FAILED, SolverState.TIMED_OUT})

_TRANSITIONS: dict[SolverState, frozenset[SolverState]] = {
    SolverState.IDLE: frozenset({SolverState.LAUNCHING, SolverState.FAILED}),
    SolverState.LAUNCHING: frozenset(
        {SolverState.NAVIGATING_AND_WAITING, SolverState.FAILED, SolverState.TIMED_OUT}
    ),
    SolverState.NAVIGATING_AND_WAITING: frozenset(
        {SolverState.SOLVED, SolverState.FAILED, SolverState.TIMED_OUT}
    ),
}


@dataclass
class SolveAttempt:
    """Transition log of one solve."""

    url: str
    proxy_id: str | None
    history: list[SolverState] = field(default_factory=lambda: [SolverState.IDLE])

    @property
    def state(self) -> SolverState:
        return self.history[-1]

    def transition(self, new_state: SolverState) -> None:
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise RuntimeError(f"Illegal solver transition {self.state.value} -> {new_state.value}")
        self.history.append(new_state)


@dataclass
class Clearance:
    """Trust artifacts recovered from a solved challenge."""

    cookies: dict[str, str]
    user_agent: str
    proxy_id: str | None
    elapsed_seconds: float
    clearance_cookie: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cookies": sorted(self.cookies),
            "clearance_cookie": self.clearance_cookie,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


class BrowserHandle(ABC):
    """One running browser instance."""

    @abstractmethod
    async def navigate(self, url: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def content(self) -> str:
        raise NotImplementedError

    @abstractmethod
    async def cookies(self) -> dict[str, str]:
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Terminate the instance. Must be safe to call on a half-started browser."""
        raise NotImplementedError


class BrowserLauncher(ABC):
    """Starts isolated, already-patched browser instances."""

    @abstractmethod
    async def launch(self, proxy: ProxyNode | None, profile: ClientProfile) -> BrowserHandle:
        raise NotImplementedError


class NodriverHandle(BrowserHandle):
    def __init__(self, browser: Any, tab: Any) -> None:
        self._browser = browser
        self._tab = tab

    async def navigate(self, url: str) -> None:
        await self._tab.get(url)

    async def content(self) -> str:
        return await self._tab.get_content()

    async def cookies(self) -> dict[str, str]:
        cookies = await self._browser.cookies.get_all()
        return {c.name: c.value for c in cookies}

    async def close(self) -> None:
        if self._browser is not None:
            self._browser.stop()
            self._browser = None
            logger.debug("[NODRIVER] Browser stopped")


class NodriverLauncher(BrowserLauncher):
    """
    Launches Chrome through nodriver (direct CDP, no webdriver binary).

    Anti-automation patches are applied before any navigation:
    AutomationControlled blink feature disabled, navigator.webdriver
    masked, user agent overridden to the active profile's.
    """

    def __init__(self, config: BrowserConfig) -> None:
        self.config = config

    async def launch(self, proxy: ProxyNode | None, profile: ClientProfile) -> BrowserHandle:
        import nodriver as uc

        browser_args = list(self.config.args)
        browser_args.append(f"--user-agent={profile.user_agent}")
        if proxy is not None:
            if proxy.has_credentials:
                logger.warning(f"[NODRIVER] Chrome ignores proxy credentials: {proxy.masked}")
            browser_args.append(f"--proxy-server={proxy.server}")

        browser = await uc.start(
            headless=self.config.headless,
            browser_executable_path=self.config.executable_path,
            lang=self.config.lang,
            browser_args=browser_args,
        )
        handle = NodriverHandle(browser, browser.main_tab)

        try:
            tab = browser.main_tab
            await tab.send(uc.cdp.network.enable())
            await tab.send(
                uc.cdp.network.set_user_agent_override(
                    user_agent=profile.user_agent,
                    accept_language=f"{self.config.lang},en;q=0.9",
                    platform=NAVIGATOR_PLATFORMS.get(profile.platform, "Win32"),
                )
            )
            await tab.send(uc.cdp.page.add_script_to_evaluate_on_new_document(source=WEBDRIVER_PATCH))
        except BaseException:
            await handle.close()
            raise

        logger.debug(f"[NODRIVER] Browser started (proxy={proxy.masked if proxy else None})")
        return handle


class BrowserSolver:
    """
    Runs the escalation state machine.

    Concurrent solves are capped by config.concurrency, independently of
    the HTTP worker count.
    """

    def __init__(
        self,
        config: BrowserConfig | None = None,
        launcher: BrowserLauncher | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or BrowserConfig()
        self._launcher = launcher or NodriverLauncher(self.config)
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(self.config.concurrency)
        self._stats = {
            "solves": 0,
            "solved": 0,
            "failed": 0,
            "timed_out": 0,
            "launched": 0,
            "terminated": 0,
        }
        self.last_attempt: SolveAttempt | None = None
        self._reapers: set["asyncio.Future[None]"] = set()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    async def solve(
        self,
        url: str,
        proxy: ProxyNode | None,
        profile: ClientProfile,
    ) -> Clearance:
        """Clear the challenge at url through proxy.

        Raises:
            ChallengeUnsolvedError: state is "failed" or "timed_out"
        """
        if not self.config.enabled:
            raise ChallengeUnsolvedError("Browser escalation disabled", url=url, state=SolverState.FAILED.value)

        async with self._semaphore:
            return await self._run(url, proxy, profile)

    async def _run(self, url: str, proxy: ProxyNode | None, profile: ClientProfile) -> Clearance:
        self._stats["solves"] += 1
        attempt = SolveAttempt(url=url, proxy_id=proxy.id if proxy else None)
        self.last_attempt = attempt
        proxy_url = proxy.address if proxy else None
        start_time = time.monotonic()
        handle: BrowserHandle | None = None

        try:
            attempt.transition(SolverState.LAUNCHING)
            logger.info(f"[SOLVER] Launching browser for {url}")
            handle = await self._launch(proxy, profile)

            attempt.transition(SolverState.NAVIGATING_AND_WAITING)
            cookies, clearance_cookie = await asyncio.wait_for(
                self._navigate_and_wait(handle, url),
                timeout=self.config.timeout_seconds,
            )

            attempt.transition(SolverState.SOLVED)
            elapsed = time.monotonic() - start_time
            self._stats["solved"] += 1
            logger.info(f"[SOLVER] Challenge solved in {elapsed:.1f}s (cookie={clearance_cookie})")
            return Clearance(
                cookies=cookies,
                user_agent=profile.user_agent,
                proxy_id=attempt.proxy_id,
                elapsed_seconds=elapsed,
                clearance_cookie=clearance_cookie,
            )

        except asyncio.TimeoutError as e:
            attempt.transition(SolverState.TIMED_OUT)
            self._stats["timed_out"] += 1
            elapsed = time.monotonic() - start_time
            logger.warning(f"[SOLVER] Timed out after {elapsed:.1f}s in {attempt.history[-2].value}")
            raise ChallengeUnsolvedError(
                "Browser failed to solve challenge within timeout",
                url=url,
                state=SolverState.TIMED_OUT.value,
                proxy_url=proxy_url,
                elapsed_seconds=elapsed,
            ) from e

        except asyncio.CancelledError:
            attempt.transition(SolverState.FAILED)
            self._stats["failed"] += 1
            logger.info(f"[SOLVER] Solve cancelled for {url}")
            raise

        except Exception as e:
            attempt.transition(SolverState.FAILED)
            self._stats["failed"] += 1
            logger.warning(f"[SOLVER] Browser error: {type(e).__name__}: {e}")
            raise ChallengeUnsolvedError(
                f"Browser error: {e}",
                url=url,
                state=SolverState.FAILED.value,
                proxy_url=proxy_url,
                elapsed_seconds=time.monotonic() - start_time,
            ) from e

        finally:
            if handle is not None:
                await self._teardown(handle)

    async def _launch(self, proxy: ProxyNode | None, profile: ClientProfile) -> BrowserHandle:
        """Start an instance within the launch timeout.

        The launch runs shielded so a timeout or cancellation never orphans
        a browser that finishes starting afterwards. Such a late launch is
        handed to a reaper task that aclose() awaits.
        """
        task = asyncio.ensure_future(self._launcher.launch(proxy, profile))
        try:
            handle = await asyncio.wait_for(asyncio.shield(task), timeout=self.config.launch_timeout_seconds)
        except BaseException:
            reaper = asyncio.ensure_future(self._reap_late_launch(task))
            self._reapers.add(reaper)
            reaper.add_done_callback(self._reapers.discard)
            raise
        self._stats["launched"] += 1
        return handle

    async def _reap_late_launch(self, task: "asyncio.Future[BrowserHandle]") -> None:
        try:
            handle = await task
        except Exception as e:
            logger.debug(f"[SOLVER] Late launch failed: {type(e).__name__}: {e}")
            return
        self._stats["launched"] += 1
        logger.info("[SOLVER] Reaping browser that finished launching after its solve ended")
        await self._teardown(handle)

    @property
    def pending_launches(self) -> int:
        return len(self._reapers)

    async def aclose(self) -> None:
        """Wait for late launches to finish and tear their browsers down.

        A launch still running after launch_timeout_seconds is cancelled.
        """
        if not self._reapers:
            return
        pending = set(self._reapers)
        logger.info(f"[SOLVER] Waiting for {len(pending)} late browser launch(es)")
        finished, still_running = await asyncio.wait(pending, timeout=self.config.launch_timeout_seconds)
        self._reapers.difference_update(finished)
        for reaper in still_running:
            logger.warning("[SOLVER] Browser launch did not finish in time, cancelling it")
            reaper.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            self._reapers.difference_update(still_running)

    async def _navigate_and_wait(self, handle: BrowserHandle, url: str) -> tuple[dict[str, str], str | None]:
        await handle.navigate(url)

        while True:
            cookies = await handle.cookies()
            for name in self.config.clearance_cookie_names:
                if name in cookies:
                    return cookies, name

            content = await handle.content()
            if any(marker in content for marker in self.config.solved_markers):
                return await handle.cookies(), None

            await self._sleep(self.config.poll_interval_seconds)

    async def _teardown(self, handle: BrowserHandle) -> None:
        try:
            await handle.close()
        except Exception as e:
            logger.error(f"[SOLVER] Error stopping browser: {e}")
        finally:
            self._stats["terminated"] += 1

    def get_stats(self) -> dict[str, int]:
        return dict(self._stats)
