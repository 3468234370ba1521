"""
SPECTRE - Response Analyzer

Classifies one attempt into a RequestOutcome. Checks run in a fixed
priority order with early exit on the first match:

    transport error > challenge > success > blocked > unknown

Challenge pages often come back as 200 or 503, so challenge markers are
checked before any status code.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from .config import AnalyzerConfig
from .exceptions import TransportError


class RequestOutcome(str, Enum):
    SUCCESS = "success"
    BLOCKED = "blocked"
    CHALLENGE = "challenge"
    TRANSPORT_ERROR = "transport_error"
    # 200 without a success marker and with no challenge/block signal
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class RawResponse:
    """What came back from the wire, before classification."""

    status: int
    body: str
    headers: Mapping[str, str] = field(default_factory=dict)
    url: str = ""
    elapsed_ms: float = 0.0
    cookies: Mapping[str, str] = field(default_factory=dict)

    @property
    def size_bytes(self) -> int:
        return len(self.body.encode("utf-8", errors="ignore"))


class ResponseAnalyzer:
    """Pure classifier over (status, headers, body)."""

    def __init__(self, config: AnalyzerConfig | None = None) -> None:
        config = config or AnalyzerConfig()
        self._success = tuple(config.success_markers)
        self._challenge = tuple(config.challenge_markers)
        self._block = tuple(config.block_markers)
        self._blocked_codes = frozenset(config.blocked_status_codes)

    def classify(
        self,
        status: int,
        headers: Mapping[str, str] | None,
        body: str | None,
    ) -> RequestOutcome:
        body = body or ""

        if self.challenge_marker(body) is not None:
            return RequestOutcome.CHALLENGE

        if status == 200 and (not self._success or any(m in body for m in self._success)):
            return RequestOutcome.SUCCESS

        if status in self._blocked_codes:
            return RequestOutcome.BLOCKED

        if self._block:
            body_lower = body.lower()
            if any(m in body_lower for m in self._block):
                return RequestOutcome.BLOCKED

        return RequestOutcome.UNKNOWN

    def classify_response(self, response: RawResponse) -> RequestOutcome:
        return self.classify(response.status, response.headers, response.body)

    def classify_error(self, error: TransportError) -> RequestOutcome:
        return RequestOutcome.TRANSPORT_ERROR

    def challenge_marker(self, body: str) -> str | None:
        """First configured challenge marker found in body, if any."""
        if not self._challenge or not body:
            return None
        body_lower = body.lower()
        for marker in self._challenge:
            if marker in body_lower:
                return marker
        return None
