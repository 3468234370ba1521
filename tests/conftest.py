import asyncio
from collections.abc import Mapping
from typing import Any

import pytest

from spectre.analyzer import RawResponse
from spectre.browser import BrowserHandle, BrowserLauncher
from spectre.config import ConfigLoader, SpectreConfig
from spectre.grid import ProxyNode
from spectre.profiles import ClientProfile, ProfileRegistry

TARGET = "https://target.example/"
PROXY = "http://10.0.0.1:8080"

CHALLENGE_BODY = "<html><title>Just a moment...</title>Checking your browser before accessing</html>"


# ============== Test doubles ==============
class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeClient:
    def __init__(self, factory: "FakeClientFactory", profile: ClientProfile, proxy: ProxyNode | None) -> None:
        self._factory = factory
        self.profile = profile
        self.proxy = proxy
        self.closed = False

    async def fetch(
        self,
        url: str,
        cookies: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
        method: str = "GET",
    ) -> RawResponse:
        self._factory.calls.append(
            {
                "url": url,
                "cookies": dict(cookies or {}),
                "proxy": self.proxy.id if self.proxy else None,
                "profile": self.profile.key,
            }
        )
        if self._factory.delay:
            await asyncio.sleep(self._factory.delay)
        if not self._factory.script:
            return RawResponse(status=200, body="Welcome", url=url, elapsed_ms=10.0)
        step = self._factory.script.pop(0)
        if isinstance(step, Exception):
            raise step
        return step

    async def close(self) -> None:
        self.closed = True

    async def __aenter__(self) -> "FakeClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


class FakeClientFactory:
    """Hands out FakeClients that replay a shared script of responses/errors.

    An exhausted script answers 200 "Welcome".
    """

    def __init__(self, script: list[RawResponse | Exception] | None = None, delay: float = 0.0) -> None:
        self.registry = ProfileRegistry({"desktop": "chrome_130"})
        self.script = list(script or [])
        self.delay = delay
        self.calls: list[dict[str, Any]] = []
        self.clients: list[FakeClient] = []

    def resolve(self, profile_key: str) -> ClientProfile:
        return self.registry.resolve(profile_key)

    def build(self, profile_key: str | ClientProfile, proxy: ProxyNode | None) -> FakeClient:
        profile = profile_key if isinstance(profile_key, ClientProfile) else self.resolve(profile_key)
        client = FakeClient(self, profile, proxy)
        self.clients.append(client)
        return client


class FakeHandle(BrowserHandle):
    def __init__(self, launcher: "FakeLauncher") -> None:
        self._launcher = launcher
        self.url: str | None = None

    async def navigate(self, url: str) -> None:
        self.url = url
        if self._launcher.navigate_error:
            raise self._launcher.navigate_error

    async def content(self) -> str:
        return self._launcher.content

    async def cookies(self) -> dict[str, str]:
        return dict(self._launcher.cookies)

    async def close(self) -> None:
        self._launcher.closed += 1


class FakeLauncher(BrowserLauncher):
    """Counts launch/close pairs. spawned counts launches begun, finished or not."""

    def __init__(
        self,
        cookies: dict[str, str] | None = None,
        content: str = "",
        launch_delay: float = 0.0,
        navigate_error: Exception | None = None,
    ) -> None:
        self.cookies = cookies or {}
        self.content = content
        self.launch_delay = launch_delay
        self.navigate_error = navigate_error
        self.spawned = 0
        self.launched = 0
        self.closed = 0
        self.handles: list[FakeHandle] = []

    async def launch(self, proxy: ProxyNode | None, profile: ClientProfile) -> BrowserHandle:
        self.spawned += 1
        if self.launch_delay:
            await asyncio.sleep(self.launch_delay)
        self.launched += 1
        handle = FakeHandle(self)
        self.handles.append(handle)
        return handle


def make_config(**sections: dict[str, Any]) -> SpectreConfig:
    """Authorized single-target, single-proxy config with section overrides."""
    data: dict[str, Any] = {
        "general": {"target_url": TARGET, "authorized": True, "concurrency": 1},
        "profiles": {"desktop": "chrome_130"},
        "network": {"proxies": [PROXY]},
    }
    for name, values in sections.items():
        data.setdefault(name, {}).update(values)
    return ConfigLoader.from_dict(data)


async def no_sleep(_delay: float) -> None:
    return None


# ============== Fixtures ==============
@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def chrome_profile() -> ClientProfile:
    return ProfileRegistry().resolve("chrome_130")


@pytest.fixture
def proxy_node() -> ProxyNode:
    return ProxyNode.from_address(PROXY)
