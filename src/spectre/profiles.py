"""
SPECTRE - Client Profiles and Client Factory

Maps profile identifiers to immutable fingerprint/header templates and
builds curl_cffi clients bound to a proxy:
    - TLS fingerprint impersonation (JA3/JA4 via curl_cffi targets)
    - Navigation header set matching a real top-level page load
    - Sec-CH-UA client hints for Chromium profiles

Profile keys resolve in two steps: a configured alias (e.g. "desktop")
maps to an emulation name (e.g. "chrome_130"), which names a registry
entry. "random" picks one of the configured emulations; the engine draws
it once per session so a sticky session keeps one fingerprint.
"""

import asyncio
import logging
import random
import re
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from curl_cffi import CurlError
from curl_cffi.requests import AsyncSession, Cookies

from .analyzer import RawResponse
from .exceptions import ProfileNotFoundError, ProxyBindError, TransportError
from .grid import ProxyNode

logger = logging.getLogger(__name__)

RANDOM_PROFILE = "random"

NAVIGATION_HEADERS: Mapping[str, str] = MappingProxyType(
    {
        "Accept": (
            "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,"
            "image/webp,image/apng,*/*;q=0.8,application/signed-exchange;v=b3;q=0.7"
        ),
        "Accept-Language": "en-US,en;q=0.9",
        "Upgrade-Insecure-Requests": "1",
        "Sec-Fetch-Site": "none",
        "Sec-Fetch-Mode": "navigate",
        "Sec-Fetch-User": "?1",
        "Sec-Fetch-Dest": "document",
    }
)


@dataclass(frozen=True)
class ClientProfile:
    """Immutable fingerprint identity of one emulated browser."""

    key: str
    impersonate: str
    user_agent: str
    browser: str
    platform: str
    extra_headers: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def major_version(self) -> str:
        match = re.search(r"(?:Chrome|Edg|Version|Firefox)/(\d+)", self.user_agent)
        return match.group(1) if match else ""

    def client_hints(self) -> dict[str, str]:
        """Sec-CH-UA hints. Only Chromium browsers send them."""
        if self.browser not in ("chrome", "edge"):
            return {}

        version = self.major_version
        brand = "Microsoft Edge" if self.browser == "edge" else "Google Chrome"
        return {
            "Sec-Ch-Ua": f'"Chromium";v="{version}", "{brand}";v="{version}", "Not(A:Brand";v="24"',
            "Sec-Ch-Ua-Mobile": "?0",
            "Sec-Ch-Ua-Platform": f'"{self.platform}"',
        }

    def build_headers(self, custom_headers: Mapping[str, str] | None = None) -> dict[str, str]:
        headers = dict(NAVIGATION_HEADERS)
        headers.update(self.client_hints())
        headers.update(self.extra_headers)
        headers["User-Agent"] = self.user_agent
        if custom_headers:
            headers.update(custom_headers)
        return headers


def _profile(key: str, impersonate: str, user_agent: str, browser: str, platform: str) -> ClientProfile:
    return ClientProfile(
        key=key,
        impersonate=impersonate,
        user_agent=user_agent,
        browser=browser,
        platform=platform,
    )


# Emulation name -> profile. impersonate values are curl_cffi targets.
BUILTIN_PROFILES: Mapping[str, ClientProfile] = MappingProxyType(
    {
        "chrome_120": _profile(
            "chrome_120",
            "chrome120",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
            "chrome",
            "Windows",
        ),
        "chrome_124": _profile(
            "chrome_124",
            "chrome124",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
            "chrome",
            "Windows",
        ),
        # curl_cffi has no chrome130 target; 131 shares its TLS and HTTP/2 stack
        "chrome_130": _profile(
            "chrome_130",
            "chrome131",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
            "chrome",
            "Windows",
        ),
        "edge_101": _profile(
            "edge_101",
            "edge101",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/101.0.4951.67 Safari/537.36 Edg/101.0.1210.47",
            "edge",
            "Windows",
        ),
        # curl_cffi has no safari16 target; 15.5 is the closest Safari fingerprint it ships
        "safari_16": _profile(
            "safari_16",
            "safari15_5",
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
            "(KHTML, like Gecko) Version/15.5 Safari/605.1.15",
            "safari",
            "macOS",
        ),
        "safari_17": _profile(
            "safari_17",
            "safari17_0",
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
            "(KHTML, like Gecko) Version/17.0 Safari/605.1.15",
            "safari",
            "macOS",
        ),
        "firefox_133": _profile(
            "firefox_133",
            "firefox133",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:133.0) Gecko/20100101 Firefox/133.0",
            "firefox",
            "Windows",
        ),
    }
)


class ProfileRegistry:
    """Resolves profile keys against configured aliases and the builtin table."""

    def __init__(
        self,
        aliases: Mapping[str, str] | None = None,
        profiles: Mapping[str, ClientProfile] = BUILTIN_PROFILES,
    ) -> None:
        self._aliases = dict(aliases or {})
        self._profiles = profiles

    @property
    def random_pool(self) -> list[str]:
        """Emulations eligible for "random": the configured ones, else all."""
        configured = [e for e in self._aliases.values() if e in self._profiles]
        return sorted(set(configured)) if configured else sorted(self._profiles)

    def validate(self) -> None:
        """Check that every configured alias resolves.

        Raises:
            ProfileNotFoundError: On the first alias naming an unknown emulation
        """
        for alias, emulation in self._aliases.items():
            if emulation not in self._profiles:
                logger.error(f"Profile alias {alias!r} points at unknown emulation {emulation!r}")
                raise ProfileNotFoundError(emulation)

    def resolve(self, key: str) -> ClientProfile:
        if key == RANDOM_PROFILE:
            return self._profiles[random.choice(self.random_pool)]

        emulation = self._aliases.get(key, key)
        profile = self._profiles.get(emulation)
        if profile is None:
            raise ProfileNotFoundError(key)
        return profile

    def __contains__(self, key: str) -> bool:
        return key == RANDOM_PROFILE or self._aliases.get(key, key) in self._profiles


class SpectreClient:
    """
    Async HTTP client carrying one profile's fingerprint, bound to one proxy.

    Built on curl_cffi for TLS fingerprint spoofing.
    """

    def __init__(
        self,
        profile: ClientProfile,
        proxy: ProxyNode | None = None,
        timeout: float = 30.0,
        verify: bool = True,
    ) -> None:
        self.profile = profile
        self.proxy = proxy
        self._timeout = timeout
        self._session = AsyncSession(impersonate=profile.impersonate, timeout=timeout, verify=verify)

    async def fetch(
        self,
        url: str,
        cookies: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
        method: str = "GET",
    ) -> RawResponse:
        """Send one request.

        Raises:
            TransportError: DNS, connection, TLS, proxy or timeout failure
        """
        kwargs: dict[str, Any] = {
            "headers": self.profile.build_headers(headers),
            "allow_redirects": True,
            "timeout": self._timeout,
        }
        if cookies:
            kwargs["cookies"] = dict(cookies)
        if self.proxy is not None:
            kwargs["proxy"] = self.proxy.address

        start_time = time.monotonic()
        try:
            response = await self._session.request(method, url, **kwargs)
        except CurlError as e:
            raise TransportError(
                str(e),
                url=url,
                kind=categorize_curl_error(e),
                proxy_url=self.proxy.address if self.proxy else None,
            ) from e
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"Request timed out after {self._timeout}s",
                url=url,
                kind="timeout",
                proxy_url=self.proxy.address if self.proxy else None,
            ) from e

        return RawResponse(
            status=response.status_code,
            body=response.text,
            headers=dict(response.headers),
            url=str(response.url),
            elapsed_ms=(time.monotonic() - start_time) * 1000,
            cookies=_flatten_cookies(response.cookies),
        )

    async def close(self) -> None:
        await self._session.close()

    async def __aenter__(self) -> "SpectreClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def _flatten_cookies(cookies: Cookies) -> dict[str, str]:
    """Name -> value over the whole jar; the last domain wins on duplicate names."""
    return {c.name: c.value or "" for c in cookies.jar}


class ClientFactory:
    """Builds per-request clients from the profile registry."""

    def __init__(
        self,
        registry: ProfileRegistry,
        timeout: float = 30.0,
        verify: bool = True,
    ) -> None:
        self.registry = registry
        self._timeout = timeout
        self._verify = verify

    def resolve(self, profile_key: str) -> ClientProfile:
        return self.registry.resolve(profile_key)

    def build(
        self,
        profile_key: str | ClientProfile,
        proxy: ProxyNode | str | None,
    ) -> SpectreClient:
        """Build a client for a profile, bound to a proxy.

        Raises:
            ProfileNotFoundError: Unknown profile key
            ProxyBindError: Proxy cannot be configured on the transport
        """
        profile = profile_key if isinstance(profile_key, ClientProfile) else self.registry.resolve(profile_key)

        if isinstance(proxy, str):
            proxy = ProxyNode.from_address(proxy)
        if proxy is not None and not proxy.address:
            raise ProxyBindError("Proxy has no address", proxy_url=proxy.address)

        return SpectreClient(profile, proxy=proxy, timeout=self._timeout, verify=self._verify)


def categorize_curl_error(error: Exception) -> str:
    """Map a curl error to a TransportError kind."""
    error_str = str(error).lower()

    if any(ind in error_str for ind in ("could not resolve host", "no such host", "curl: (6)")):
        return "dns"
    if any(ind in error_str for ind in ("could not resolve proxy", "curl: (5)", "proxy", "curl: (97)")):
        return "proxy"
    if any(ind in error_str for ind in ("connection refused", "curl: (7)", "connection reset")):
        return "connection"
    if any(ind in error_str for ind in ("timed out", "timeout", "curl: (28)")):
        return "timeout"
    if any(ind in error_str for ind in ("ssl", "tls", "certificate", "curl: (35)", "curl: (60)")):
        return "tls"
    return "unknown"
