"""
SPECTRE - Concurrent WAF Probe Engine

Probes targets over plain HTTP with TLS-fingerprinted clients, rotates
through a health-tracked proxy grid, and escalates to a real browser only
when a JavaScript challenge is detected.

Quick Start:
    from spectre import ConfigLoader, CoreEngine

    config = ConfigLoader.from_file("profiles.toml")
    summary = await CoreEngine(config).run()
    print(summary.to_dict())

Detect only:
    from spectre import detect

    identity = await detect("https://example.com", authorized=True)
"""

# Engine
from .analyzer import RawResponse, RequestOutcome, ResponseAnalyzer
from .audit import AuditEvent, AuditEventType, AuditLog
from .browser import BrowserSolver, Clearance, SolverState

# Configuration
from .config import (
    AnalyzerConfig,
    BrowserConfig,
    ConfigLoader,
    EngineConfig,
    GeneralConfig,
    GridConfig,
    NetworkConfig,
    SessionConfig,
    SpectreConfig,
)
from .engine import CoreEngine, RunHandle, detect, run

# Exceptions
from .exceptions import (
    ChallengeUnsolvedError,
    ConfigurationError,
    ProfileNotFoundError,
    ProxyBindError,
    ProxyExhaustedError,
    SpectreException,
    TransportError,
)
from .grid import GridManager, NodeStatus, ProxyNode
from .models import RunSummary, TargetResult, WorkItem
from .profiles import BUILTIN_PROFILES, ClientFactory, ClientProfile, ProfileRegistry, SpectreClient
from .session import Session, SessionManager
from .stats import StatsAggregator, StatsDelta, StatsSnapshot
from .waf import WafIdentity, identify_waf

__version__ = "1.0.0"

__all__ = [
    # Engine
    "CoreEngine",
    "RunHandle",
    "run",
    "detect",
    "WorkItem",
    "TargetResult",
    "RunSummary",
    # Components
    "GridManager",
    "ProxyNode",
    "NodeStatus",
    "SessionManager",
    "Session",
    "ResponseAnalyzer",
    "RequestOutcome",
    "RawResponse",
    "BrowserSolver",
    "SolverState",
    "Clearance",
    "ClientFactory",
    "ClientProfile",
    "ProfileRegistry",
    "SpectreClient",
    "BUILTIN_PROFILES",
    "StatsAggregator",
    "StatsDelta",
    "StatsSnapshot",
    "AuditLog",
    "AuditEvent",
    "AuditEventType",
    "WafIdentity",
    "identify_waf",
    # Configuration
    "SpectreConfig",
    "ConfigLoader",
    "GeneralConfig",
    "NetworkConfig",
    "GridConfig",
    "SessionConfig",
    "EngineConfig",
    "AnalyzerConfig",
    "BrowserConfig",
    # Exceptions
    "SpectreException",
    "TransportError",
    "ProxyExhaustedError",
    "ChallengeUnsolvedError",
    "ConfigurationError",
    "ProfileNotFoundError",
    "ProxyBindError",
]
