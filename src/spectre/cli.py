"""
Spectre command line.

Examples:
  # Full run from a config file (authorization flag is mandatory):
  spectre run profiles.toml --authorized

  # Override the config for a quick run:
  spectre run profiles.toml --authorized --concurrency 4 --profile random --time-limit 120

  # Fuzz one parameter with payloads from a file, write the report:
  spectre run profiles.toml --authorized --payloads payloads.txt --output report.json

  # Only identify the WAF in front of a target:
  spectre detect https://example.com --authorized
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from .config import ConfigLoader, SpectreConfig
from .engine import CoreEngine
from .exceptions import SpectreException
from .logging_config import configure_logging
from .settings import settings

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="spectre",
        description="Concurrent WAF probe with proxy rotation and browser escalation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help=f"Console log level (default: {settings.SPECTRE_LOG_LEVEL})",
    )
    parser.add_argument(
        "--audit-dir",
        type=str,
        default=None,
        help="Directory for the JSON-lines audit log, '' to disable",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    run_parser = commands.add_parser("run", help="Run the probe against the configured targets")
    run_parser.add_argument(
        "config",
        nargs="?",
        default=settings.SPECTRE_CONFIG_PATH,
        help="Path to the TOML configuration file",
    )
    run_parser.add_argument(
        "--authorized",
        action="store_true",
        help="Confirm you are authorized to test the targets",
    )
    run_parser.add_argument("--target", type=str, help="Override the target URL")
    run_parser.add_argument("--time-limit", type=float, help="Global time limit in seconds")
    run_parser.add_argument("--profile", type=str, help="Client profile alias, emulation, or 'random'")
    run_parser.add_argument("--concurrency", type=int, help="Number of workers")
    run_parser.add_argument("--payloads", type=str, help="File with one payload per line")
    run_parser.add_argument(
        "--detect-only",
        action="store_true",
        help="Only identify the WAF in front of the first target",
    )
    run_parser.add_argument("--output", "-o", type=str, help="Write the JSON report to this file")

    detect_parser = commands.add_parser("detect", help="Identify the WAF in front of a URL")
    detect_parser.add_argument("url", help="Target URL")
    detect_parser.add_argument(
        "--authorized",
        action="store_true",
        help="Confirm you are authorized to test the target",
    )
    detect_parser.add_argument("--config", type=str, help="Optional configuration file for proxies and profiles")
    detect_parser.add_argument("--output", "-o", type=str, help="Write the JSON result to this file")

    return parser


def load_config(args: argparse.Namespace) -> SpectreConfig:
    """Config file plus command line and environment overrides."""
    path = getattr(args, "config", None)
    config = ConfigLoader.from_file(path) if path else ConfigLoader.default()

    general: dict[str, Any] = {}
    if args.authorized:
        general["authorized"] = True
    if getattr(args, "target", None):
        general["target_url"] = args.target
        general["targets"] = []
    if getattr(args, "time_limit", None) is not None:
        general["time_limit"] = args.time_limit
    if getattr(args, "profile", None):
        general["profile"] = args.profile
    if getattr(args, "concurrency", None) is not None:
        general["concurrency"] = args.concurrency
    if getattr(args, "payloads", None):
        general["payloads"] = read_payloads(args.payloads)

    browser: dict[str, Any] = {}
    if settings.SPECTRE_BROWSER_PATH:
        browser["executable_path"] = settings.SPECTRE_BROWSER_PATH
    if settings.SPECTRE_HEADLESS is not None:
        browser["headless"] = settings.SPECTRE_HEADLESS

    overrides: dict[str, Any] = {}
    if general:
        overrides["general"] = general
    if browser:
        overrides["browser"] = browser
    return ConfigLoader.merge(config, overrides) if overrides else config


def read_payloads(path: str) -> list[str]:
    lines = Path(path).read_text(encoding="utf-8").splitlines()
    return [line for line in lines if line.strip() and not line.startswith("#")]


def write_report(data: dict[str, Any], output: str | None) -> None:
    text = json.dumps(data, indent=2, default=str)
    if output:
        Path(output).write_text(text + "\n", encoding="utf-8")
        logger.info(f"Report written to {output}")
    else:
        print(text)


async def _run(args: argparse.Namespace) -> int:
    config = load_config(args)
    engine = CoreEngine(config)

    if args.command == "detect":
        identity = await engine.detect(args.url)
        write_report(identity.to_dict(), args.output)
        return 0

    if args.detect_only:
        identity = await engine.detect()
        write_report(identity.to_dict(), args.output)
        return 0

    summary = await engine.run()
    write_report(summary.to_dict(), args.output)
    return 0 if summary.failed == 0 else 2


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.authorized:
        parser.error("refusing to run without --authorized")

    audit_path = configure_logging(level=args.log_level, audit_dir=args.audit_dir)
    if audit_path:
        logger.info(f"Audit log: {audit_path}")

    try:
        return asyncio.run(_run(args))
    except SpectreException as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
