#!/usr/bin/env python3
"""hostcraft command line.

Usage:
    hostcraft plan --file configuration.nix [--host HOST]
    hostcraft apply --file configuration.nix [--host HOST] [--dry-run]
    hostcraft validate --file configuration.nix
    hostcraft render --file configuration.nix

Exit codes:
    0  success (or nothing to do)
    1  an action failed during apply (or the apply was cancelled)
    2  the declaration could not be parsed, validated or planned
    3  the host could not be probed
"""
import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

from .config import HostInventory
from .reconcile_engine import (
    EXIT_INVALID,
    EXIT_OK,
    ConfigValidator,
    ConflictError,
    DeclarationParser,
    ModelBuilder,
    ParseError,
    ReconcileEngine,
    ResourceKind,
    RunReport,
    ValidationError,
    default_schema,
    format_error,
    format_report,
    render,
)
from .reconcile_engine.parser import default_env
from .utils.audit_log import setup_audit_logging
from .utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hostcraft",
        description="Bring a host to the state described in a declaration file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Show what would change on this machine
    hostcraft plan --file configuration.nix

    # Apply to a host from the inventory
    hostcraft apply --file configuration.nix --host build-box

    # Apply, but only record what would be done
    hostcraft apply --file configuration.nix --dry-run

Environment:
    HOSTCRAFT_PASSWORD          SSH password for inventory hosts
    HOSTCRAFT_LOG_LEVEL         Console log level (default: WARNING)
    HOSTCRAFT_PROBE_TIMEOUT     Per-kind probe timeout in seconds
    HOSTCRAFT_EXCLUSIVE_KINDS   Kinds whose unmanaged resources are removed
""",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="More log output (-v info, -vv debug)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--file", "-f",
        type=Path,
        required=True,
        help="Declaration file (.nix or .yaml)",
    )
    common.add_argument(
        "--no-imports",
        action="store_true",
        help="Ignore files listed under `imports`",
    )

    host_options = argparse.ArgumentParser(add_help=False)
    host_options.add_argument(
        "--host",
        help="Host ID from the inventory (default: the only host, or localhost)",
    )
    host_options.add_argument(
        "--inventory",
        help="Path to hosts.yaml (default: searched for, then localhost only)",
    )
    host_options.add_argument(
        "--exclusive",
        action="append",
        default=[],
        metavar="KIND",
        choices=[k.value for k in ResourceKind],
        help="Remove resources of KIND that are not declared (repeatable)",
    )
    host_options.add_argument(
        "--json",
        action="store_true",
        help="Print the run report as JSON",
    )

    subparsers.add_parser(
        "plan",
        parents=[common, host_options],
        help="Show the changes needed, without applying them",
    )
    apply_parser = subparsers.add_parser(
        "apply",
        parents=[common, host_options],
        help="Apply the changes",
    )
    apply_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Record the actions in the audit log without running them",
    )
    apply_parser.add_argument(
        "--user",
        default=os.environ.get("USER"),
        help="Operator name recorded in the audit log",
    )

    subparsers.add_parser(
        "validate",
        parents=[common],
        help="Parse and validate the declaration without contacting a host",
    )
    subparsers.add_parser(
        "render",
        parents=[common],
        help="Print the declaration in canonical form",
    )
    return parser


def _log_level(verbose: int) -> Optional[int]:
    if verbose >= 2:
        return logging.DEBUG
    if verbose == 1:
        return logging.INFO
    return None


def _make_engine(args: argparse.Namespace) -> ReconcileEngine:
    inventory = HostInventory(args.inventory)
    settings = inventory.engine_settings()
    if args.no_imports:
        settings.follow_imports = False
    if args.exclusive:
        settings.exclusive_kinds |= {ResourceKind(k) for k in args.exclusive}

    host_id = args.host or inventory.default_host_id()
    return ReconcileEngine(inventory.get_backend(host_id), settings=settings)


def _print_report(report: RunReport, as_json: bool) -> None:
    if as_json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        text = format_report(report)
        if text:
            print(text)


async def _run_with_cancel(engine: ReconcileEngine, coro) -> RunReport:
    """Run an apply; the first Ctrl-C stops it before the next action."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, engine.cancel)
    except NotImplementedError:
        logger.debug("Signal handlers not supported, Ctrl-C aborts immediately")
        return await coro
    try:
        return await coro
    finally:
        loop.remove_signal_handler(signal.SIGINT)


def cmd_plan(args: argparse.Namespace) -> int:
    engine = _make_engine(args)
    report = asyncio.run(engine.plan_file(args.file))
    _print_report(report, args.json)
    return report.exit_code


def cmd_apply(args: argparse.Namespace) -> int:
    engine = _make_engine(args)
    audit_file = setup_audit_logging(engine.settings.audit_dir)
    logger.info(f"Audit log: {audit_file}")

    report = asyncio.run(_run_with_cancel(
        engine,
        engine.apply_file(args.file, dry_run=args.dry_run, user=args.user),
    ))
    _print_report(report, args.json)
    return report.exit_code


def _load_checked(args: argparse.Namespace):
    """Parse and validate locally. Returns (tree, errors)."""
    schema = default_schema()
    try:
        tree = DeclarationParser().load_file(
            args.file,
            default_env(),
            follow_imports=not args.no_imports,
        )
    except (ParseError, ConflictError) as e:
        return None, [e]

    validation = ConfigValidator(schema).validate(tree)
    for warning in validation.warnings:
        print(f"warning: {warning}", file=sys.stderr)
    if not validation.valid:
        return None, list(validation.errors)

    try:
        ModelBuilder(schema).build(validation.tree)
    except (ConflictError, ValidationError) as e:
        return None, [e]
    return validation.tree, []


def cmd_validate(args: argparse.Namespace) -> int:
    tree, errors = _load_checked(args)
    if errors:
        for error in errors:
            print(f"error: {format_error(error.to_dict())}", file=sys.stderr)
        return EXIT_INVALID
    print(f"{args.file}: ok")
    return EXIT_OK


def cmd_render(args: argparse.Namespace) -> int:
    tree, errors = _load_checked(args)
    if errors:
        for error in errors:
            print(f"error: {format_error(error.to_dict())}", file=sys.stderr)
        return EXIT_INVALID
    print(render(tree), end="")
    return EXIT_OK


COMMANDS = {
    "plan": cmd_plan,
    "apply": cmd_apply,
    "validate": cmd_validate,
    "render": cmd_render,
}


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the hostcraft CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(level=_log_level(args.verbose))

    try:
        return COMMANDS[args.command](args)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return EXIT_INTERRUPTED
    except (KeyError, ValueError, FileNotFoundError) as e:
        # Inventory and settings problems
        logger.error(str(e))
        print(f"error: {e}", file=sys.stderr)
        return EXIT_INVALID


if __name__ == "__main__":
    sys.exit(main())
