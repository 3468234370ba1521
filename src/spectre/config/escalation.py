"""
SPECTRE - Escalation Configuration

Response classification markers and browser-solver settings. Marker
lists are configuration, not code, since WAF vendors vary.
"""

from pydantic import BaseModel, Field, field_validator


class AnalyzerConfig(BaseModel):
    """Response classification markers.

    success_markers are literal, case-sensitive substrings.
    challenge_markers and block_markers are matched case-insensitively.
    """

    success_markers: list[str] = Field(default_factory=lambda: ["Access Granted", "Welcome"])
    challenge_markers: list[str] = Field(
        default_factory=lambda: [
            "checking your browser",
            "enable javascript",
            "just a moment",
            "cf-browser-verification",
            "__cf_chl",
        ]
    )
    block_markers: list[str] = Field(default_factory=lambda: ["access denied", "captcha"])
    blocked_status_codes: list[int] = Field(default_factory=lambda: [403, 429])

    @field_validator("challenge_markers", "block_markers")
    @classmethod
    def lowercase_markers(cls, v: list[str]) -> list[str]:
        return [m.lower() for m in v if m]

    @field_validator("success_markers")
    @classmethod
    def drop_empty(cls, v: list[str]) -> list[str]:
        return [m for m in v if m]


class BrowserConfig(BaseModel):
    """Headless browser escalation settings."""

    enabled: bool = True
    headless: bool = True
    executable_path: str | None = None
    concurrency: int = Field(default=2, ge=1)
    launch_timeout_seconds: float = Field(default=30.0, gt=0)
    timeout_seconds: float = Field(default=25.0, gt=0)
    poll_interval_seconds: float = Field(default=0.5, gt=0)
    lang: str = "en-US"
    solved_markers: list[str] = Field(default_factory=lambda: ["Access Granted", "Welcome"])
    clearance_cookie_names: list[str] = Field(default_factory=lambda: ["waf_clearance", "cf_clearance"])
    args: list[str] = Field(
        default_factory=lambda: [
            "--no-sandbox",
            "--disable-gpu",
            "--disable-dev-shm-usage",
            "--window-size=1920,1080",
            "--disable-blink-features=AutomationControlled",
            "--disable-software-rasterizer",
        ]
    )
