"""Logging setup for command-line runs.

Console output goes through the root logger. Audit events already are
JSON strings, so the audit file handler writes the bare message, one
object per line, to an append-only ``session_<ts>.jsonl``.
"""

import logging
import time
from pathlib import Path

from .settings import settings

AUDIT_LOGGER = "spectre.audit"


def configure_logging(level: str | None = None, audit_dir: str | None = None) -> Path | None:
    """Configure console logging and the JSON-lines audit sink.

    Returns the audit file path, or None when no audit directory is set.
    """
    level = (level or settings.SPECTRE_LOG_LEVEL).upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    audit_dir = audit_dir if audit_dir is not None else settings.SPECTRE_AUDIT_DIR
    if not audit_dir:
        return None

    directory = Path(audit_dir)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"session_{int(time.time())}.jsonl"

    handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(message)s"))

    audit_logger = logging.getLogger(AUDIT_LOGGER)
    audit_logger.setLevel(logging.INFO)
    audit_logger.addHandler(handler)
    audit_logger.propagate = False
    return path
