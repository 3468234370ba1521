"""
SPECTRE - Exception Classes

Exception Hierarchy:
    SpectreException (base)
    |-- TransportError          - Network-level failures (DNS, connection, TLS, timeout)
    |-- ProxyExhaustedError     - No eligible proxy in the grid (retryable backoff)
    |-- ChallengeUnsolvedError  - Browser solver failed or timed out
    |-- ConfigurationError      - Invalid configuration (fatal at startup)
        |-- ProfileNotFoundError  - Unknown client profile key
        |-- ProxyBindError        - Proxy cannot be configured on the transport
"""

from typing import Any
from urllib.parse import urlparse


def mask_proxy(proxy_url: str | None) -> str | None:
    """Mask credentials in a proxy URL for logging."""
    if not proxy_url:
        return proxy_url
    try:
        parsed = urlparse(proxy_url)
        if parsed.username:
            masked = proxy_url.replace(parsed.username, "***", 1)
            if parsed.password:
                masked = masked.replace(parsed.password, "***", 1)
            return masked
        return proxy_url
    except ValueError:
        return "[masked]"


class SpectreException(Exception):
    """Base exception for all Spectre errors."""

    def __init__(
        self,
        message: str,
        url: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.url = url
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.url:
            parts.append(f"url={self.url}")
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            parts.append(f"[{details_str}]")
        return " | ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """Serialize exception for logging/reports."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "url": self.url,
            "details": self.details,
        }


class TransportError(SpectreException):
    """Connection-level failure that never reached body inspection.

    kind is one of: dns, connection, timeout, tls, proxy, unknown.
    Retried through a different proxy up to the configured attempt count.
    """

    KINDS = ("dns", "connection", "timeout", "tls", "proxy", "unknown")

    def __init__(
        self,
        message: str,
        url: str | None = None,
        kind: str = "unknown",
        proxy_url: str | None = None,
    ) -> None:
        details = {"kind": kind, "proxy": mask_proxy(proxy_url)}
        super().__init__(message, url, details)
        self.kind = kind if kind in self.KINDS else "unknown"
        self.proxy_url = proxy_url


class ProxyExhaustedError(SpectreException):
    """No eligible proxy: the pool is empty or entirely cooling.

    Not fatal. Callers back off for a bounded delay and try again.
    """

    def __init__(
        self,
        message: str = "No eligible proxy available",
        pool_size: int = 0,
        retry_after: float | None = None,
    ) -> None:
        details = {"pool_size": pool_size, "retry_after": retry_after}
        super().__init__(message, details=details)
        self.pool_size = pool_size
        self.retry_after = retry_after


class ChallengeUnsolvedError(SpectreException):
    """The browser solver could not clear the challenge.

    Treated as a block: the session is invalidated and the same proxy is
    not retried for the origin in this cycle.
    """

    def __init__(
        self,
        message: str,
        url: str | None = None,
        state: str = "failed",
        proxy_url: str | None = None,
        elapsed_seconds: float | None = None,
    ) -> None:
        details = {
            "state": state,
            "proxy": mask_proxy(proxy_url),
            "elapsed_seconds": elapsed_seconds,
        }
        super().__init__(message, url, details)
        self.state = state
        self.proxy_url = proxy_url
        self.elapsed_seconds = elapsed_seconds

    @property
    def timed_out(self) -> bool:
        return self.state == "timed_out"


class ConfigurationError(SpectreException):
    """Invalid or missing configuration. The run does not begin."""

    def __init__(
        self,
        message: str,
        config_key: str | None = None,
        actual_value: Any = None,
    ) -> None:
        details = {
            "config_key": config_key,
            "actual_value": str(actual_value) if actual_value is not None else None,
        }
        super().__init__(message, details=details)
        self.config_key = config_key


class ProfileNotFoundError(ConfigurationError):
    """Requested client profile does not resolve in the registry."""

    def __init__(self, profile_key: str) -> None:
        super().__init__(
            f"Profile not found: {profile_key}",
            config_key="profiles",
            actual_value=profile_key,
        )
        self.profile_key = profile_key


class ProxyBindError(ConfigurationError):
    """Proxy entry is malformed or cannot be bound to the HTTP transport."""

    def __init__(self, message: str, proxy_url: str | None = None) -> None:
        super().__init__(message, config_key="network.proxies", actual_value=mask_proxy(proxy_url))
        self.proxy_url = proxy_url
