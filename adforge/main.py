#!/usr/bin/env python3
"""
adForge - Vulnerable Active Directory Fabrication Tool
======================================================

Command-line interface for planning and running fabrication runs.

Usage:
    # Show what a configuration would create (no directory writes)
    adforge plan -c lab.yaml

    # Fabricate into an in-memory directory (offline run, answer key only)
    adforge run -c lab.yaml --dry-run

    # Fabricate into a lab domain controller over LDAPS
    adforge run -c lab.yaml -s 192.168.56.10 -u Administrator --use-ssl

    # Print the grading sheet of a finished run
    adforge answer-key output/answer_key.json

Options:
    --config, -c        JSON or YAML configuration document
    --domain, -d        Override the configured domain
    --seed              Override the configured seed
    --output, -o        Override the output directory
    --server, -s        Domain controller (LDAP mode)
    --username, -u      Bind user (LDAP mode)
    --use-ssl           Use LDAPS (needed to set account passwords)
    --dry-run           Use the in-memory directory instead of LDAP
    --verbose, -v       Debug logging

Environment Variables:
    ADFORGE_LDAP_PASSWORD   Bind password for LDAP mode

Exit status is 0 when the run completed, 1 when it was cancelled, a
critical stage exceeded its failure threshold, or an error occurred.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
import traceback

from . import __version__
from .config import ForgeConfig, load_config
from .directory.memory_adapter import InMemoryDirectory
from .engine.runner import ForgeRunner
from .engine.scheduler import CancellationToken
from .errors import AdForgeError
from .generation.planner import GenerationPlanner
from .ledger.answer_key import read_answer_key
from .reporting.summary import generate_answer_key_report, generate_plan_report, generate_run_report
from .rules.builtin import BUILTIN_CATALOG

logger = logging.getLogger("adforge")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="adforge",
        description="adForge - fabricate a deliberately misconfigured AD domain with an answer key",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s plan -c lab.yaml
  %(prog)s run -c lab.yaml --dry-run
  %(prog)s run -c lab.yaml -s 192.168.56.10 -u Administrator --use-ssl
  %(prog)s answer-key output/answer_key.json
        """
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"adForge {__version__}"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    plan_parser = subparsers.add_parser("plan", help="Print the generation plan (no writes)")
    _add_config_arguments(plan_parser)
    plan_parser.add_argument("--json", action="store_true", help="Print the plan as JSON")

    run_parser = subparsers.add_parser("run", help="Fabricate the domain")
    _add_config_arguments(run_parser)
    run_parser.add_argument("-o", "--output", help="Output directory for the answer key and summary")
    run_parser.add_argument("--dry-run", action="store_true", help="Write to an in-memory directory")

    ldap_group = run_parser.add_argument_group("LDAP Target")
    ldap_group.add_argument("-s", "--server", help="Domain controller hostname or IP")
    ldap_group.add_argument("-u", "--username", help="Bind user (DOMAIN\\user or user@domain)")
    ldap_group.add_argument("--use-ssl", action="store_true", default=None, help="Use LDAPS (port 636)")

    key_parser = subparsers.add_parser("answer-key", help="Print an answer key as a grading sheet")
    key_parser.add_argument("path", help="Path to answer_key.json")
    key_parser.add_argument("--json", action="store_true", help="Print (target, rule, remediation) as JSON")

    return parser


def _add_config_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-c", "--config", help="JSON or YAML configuration document")
    parser.add_argument("-d", "--domain", help="Domain name (e.g., corp.local)")
    parser.add_argument("--seed", type=int, help="Seed for every random choice")


def load_run_config(args) -> ForgeConfig:
    """Configuration from file (or defaults) with command-line overrides applied."""
    config = load_config(args.config) if args.config else ForgeConfig()
    if args.domain:
        config.domain = args.domain
    if args.seed is not None:
        config.seed = args.seed
    if getattr(args, "output", None):
        config.ledger.output_dir = args.output
    if getattr(args, "server", None):
        config.ldap.server = args.server
    if getattr(args, "username", None):
        config.ldap.username = args.username
    if getattr(args, "use_ssl", None):
        config.ldap.use_ssl = True
        config.ldap.port = 636
    config.validate()
    return config


def cmd_plan(args) -> int:
    config = load_run_config(args)
    plan = GenerationPlanner(config, BUILTIN_CATALOG).plan()
    if args.json:
        print(json.dumps(plan.to_dict(), indent=2))
    else:
        print(generate_plan_report(plan))
    return 0


async def _run(config: ForgeConfig, adapter) -> int:
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, token.cancel)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handlers are not supported on this platform")

    runner = ForgeRunner(config, adapter, token=token)
    summary = await runner.run()
    print(generate_run_report(summary))
    return summary.exit_status


def cmd_run(args) -> int:
    config = load_run_config(args)
    if args.dry_run:
        adapter = InMemoryDirectory()
    else:
        if not config.ldap.server:
            raise AdForgeError("LDAP mode needs a server (-s) and credentials; use --dry-run for an offline run")
        from .directory.ldap_adapter import LDAPDirectoryAdapter
        print("[!] WARNING: This will modify Active Directory!")
        adapter = LDAPDirectoryAdapter(config.domain, config.ldap, verbose=config.verbose)
    return asyncio.run(_run(config, adapter))


def cmd_answer_key(args) -> int:
    entries = read_answer_key(args.path)
    if args.json:
        print(json.dumps([
            {"target": e.target, "rule_id": e.rule_id, "remediation": e.remediation}
            for e in entries
        ], indent=2))
    else:
        print(generate_answer_key_report(entries))
    return 0


COMMANDS = {
    "plan": cmd_plan,
    "run": cmd_run,
    "answer-key": cmd_answer_key,
}


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return COMMANDS[args.command](args)
    except AdForgeError as e:
        print(f"\n[!] Error: {e}")
        if args.verbose:
            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
