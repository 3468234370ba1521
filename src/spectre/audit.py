"""Structured audit events for the request lifecycle.

One event per lifecycle step (proxy chosen, outcome, escalation triggered
and its result), serialized as a single JSON object and logged on the
``spectre.audit`` logger. Persisting them is the job of whatever handler
is attached there; see ``logging_config.configure_logging``.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any

logger = logging.getLogger("spectre.audit")


class AuditEventType:
    REQ_START = "REQ_START"
    PROXY_SELECTED = "PROXY_SELECTED"
    RESPONSE = "RESPONSE"
    VERDICT = "VERDICT"
    ESCALATION_START = "ESCALATION_START"
    ESCALATION_RESULT = "ESCALATION_RESULT"
    PROXY_EXHAUSTED = "PROXY_EXHAUSTED"
    REQ_FAILED = "REQ_FAILED"


@dataclass
class AuditEvent:
    worker: str
    event: str
    msg: str
    meta: dict[str, Any] = field(default_factory=dict)
    ts: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)


class AuditLog:
    """Emits AuditEvents. Keeps the last few in memory for inspection."""

    def __init__(self, keep_last: int = 0) -> None:
        self._keep_last = keep_last
        self.recent: list[AuditEvent] = []

    def emit(self, worker: str, event: str, msg: str, **meta: Any) -> AuditEvent:
        record = AuditEvent(worker=worker, event=event, msg=msg, meta=meta)
        if self._keep_last:
            self.recent.append(record)
            if len(self.recent) > self._keep_last:
                del self.recent[: len(self.recent) - self._keep_last]

        if event in (AuditEventType.REQ_FAILED, AuditEventType.PROXY_EXHAUSTED):
            logger.warning(record.to_json())
        else:
            logger.info(record.to_json())
        return record
