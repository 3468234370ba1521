"""
SPECTRE - WAF Identification

Detect-only mode: one plain response is matched against vendor
signatures in headers, cookies and body. Header evidence is checked
before body evidence since it is far less prone to false positives.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class WafSignature:
    name: str
    header_names: tuple[str, ...] = ()
    header_values: tuple[tuple[str, str], ...] = ()
    cookie_prefixes: tuple[str, ...] = ()
    body_markers: tuple[str, ...] = ()


SIGNATURES: tuple[WafSignature, ...] = (
    WafSignature(
        name="Cloudflare",
        header_names=("cf-ray", "cf-mitigated", "cf-chl-bypass"),
        header_values=(("server", "cloudflare"),),
        cookie_prefixes=("__cf_bm", "cf_clearance", "__cfduid"),
        body_markers=("cf-browser-verification", "__cf_chl", "cf_chl_opt", "ray id:"),
    ),
    WafSignature(
        name="Imperva Incapsula",
        header_names=("x-iinfo",),
        header_values=(("x-cdn", "incapsula"),),
        cookie_prefixes=("incap_ses", "visid_incap", "reese84"),
        body_markers=("incapsula incident id", "_incapsula_resource"),
    ),
    WafSignature(
        name="Akamai",
        header_names=("x-akamai-transformed", "akamai-grn"),
        header_values=(("server", "akamaighost"),),
        cookie_prefixes=("_abck", "bm_sz", "ak_bmsc"),
        body_markers=("errors.edgesuite.net",),
    ),
    WafSignature(
        name="Sucuri CloudProxy",
        header_names=("x-sucuri-id", "x-sucuri-cache"),
        header_values=(("server", "sucuri"),),
        body_markers=("sucuri website firewall", "cloudproxy@sucuri.net"),
    ),
    WafSignature(
        name="AWS WAF",
        header_names=("x-amzn-waf-action", "x-amzn-requestid"),
        header_values=(("server", "awselb"),),
        cookie_prefixes=("aws-waf-token",),
        body_markers=("awswafintegration", "aws-waf-token"),
    ),
    WafSignature(
        name="DataDome",
        header_names=("x-datadome", "x-dd-b"),
        header_values=(("server", "datadome"),),
        cookie_prefixes=("datadome",),
        body_markers=("captcha-delivery.com", "datadome"),
    ),
    WafSignature(
        name="PerimeterX",
        header_names=("x-px-authorization",),
        cookie_prefixes=("_px", "_pxhd"),
        body_markers=("perimeterx", "px-captcha"),
    ),
)


@dataclass
class WafIdentity:
    """Result of detect-only mode."""

    name: str | None
    status_code: int | None = None
    challenge: bool = False
    evidence: list[str] = field(default_factory=list)

    @property
    def detected(self) -> bool:
        return self.name is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "waf": self.name,
            "detected": self.detected,
            "status_code": self.status_code,
            "challenge": self.challenge,
            "evidence": list(self.evidence),
        }


def _cookie_names(headers: Mapping[str, str]) -> list[str]:
    raw = headers.get("set-cookie", "")
    names = []
    for part in raw.split(","):
        name = part.split("=", 1)[0].strip()
        if name and ";" not in name:
            names.append(name.lower())
    return names


def identify_waf(
    status: int | None,
    headers: Mapping[str, str] | None,
    body: str | None,
    challenge_marker: str | None = None,
) -> WafIdentity:
    """Match one response against the vendor signature table.

    challenge_marker is the analyzer's challenge hit for the same body,
    if any; it marks the identity as challenge-protected.
    """
    lowered = {k.lower(): str(v).lower() for k, v in (headers or {}).items()}
    cookies = _cookie_names(lowered)
    body_lower = (body or "").lower()

    identity = WafIdentity(name=None, status_code=status, challenge=challenge_marker is not None)
    if challenge_marker:
        identity.evidence.append(f"challenge:{challenge_marker}")

    for sig in SIGNATURES:
        evidence = [f"header:{h}" for h in sig.header_names if h in lowered]
        evidence += [f"header:{h}={v}" for h, v in sig.header_values if v in lowered.get(h, "")]
        if sig.cookie_prefixes:
            evidence += [f"cookie:{c}" for c in cookies if c.startswith(sig.cookie_prefixes)]
        if evidence:
            identity.name = sig.name
            identity.evidence.extend(evidence)
            return identity

    for sig in SIGNATURES:
        evidence = [f"body:{m}" for m in sig.body_markers if m in body_lower]
        if evidence:
            identity.name = sig.name
            identity.evidence.extend(evidence)
            return identity

    if identity.challenge or status in (403, 429):
        identity.name = "Generic"
        identity.evidence.append(f"status:{status}")

    return identity
