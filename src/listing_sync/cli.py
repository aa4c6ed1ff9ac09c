"""Command-line trigger for the listing sync engine.

Each subcommand maps onto one engine entry point; ``run`` and ``resume``
execute a single step unless ``--until-complete`` is given, so the CLI
works both from cron (one chunk per invocation) and interactively.
"""

import argparse
import json
import logging
import sys

from . import __version__
from .config import load_runtime_config
from .config_loader import ensure_config
from .logger import setup_logging
from .sync.driver import drive
from .sync.engine import SyncEngine
from .sync.models import ACTION_KINDS, InitMode, Outcome, Phase, PhaseParams
from .sync.reporter import format_progress, format_status, status_to_json

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="listing-sync",
        description="Resumable, chunked import of listings into the local store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Import everything, one page per step, until done
  listing-sync run import_all --until-complete

  # Cron: prune stale listings, then import changes since yesterday
  listing-sync run sync_changed --date 2026-10-17 --until-complete

  # Recover a crashed run and continue it
  listing-sync cancel --force && listing-sync resume --until-complete
        """,
    )
    add_connection_args(parser)
    parser.add_argument("--log-file", help="Also log to this file")
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging"
    )
    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        default="text",
        help="Log line format (default: text)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"listing-sync version {__version__}",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one step (or all steps) of an action")
    run.add_argument("action", choices=ACTION_KINDS)
    run.add_argument(
        "--init",
        choices=["hard", "soft", "resume"],
        default="hard",
        help="Counter initialization (default: hard)",
    )
    run.add_argument("--date", help="Start of the date window (YYYY-MM-DD)")
    run.add_argument("--listing-id", help="Listing id for import_single")
    run.add_argument("--page", type=int, help="Explicit page to fetch")
    run.add_argument(
        "--phase",
        choices=[phase.value for phase in Phase],
        help="Phase of a multi-phase action",
    )
    _add_step_options(run)

    resume = sub.add_parser("resume", help="Continue the last run")
    _add_step_options(resume)

    cancel = sub.add_parser("cancel", help="Cancel the running phase")
    cancel.add_argument(
        "--force",
        action="store_true",
        help="Release a stuck or failed run immediately",
    )

    status = sub.add_parser("status", help="Show the run state")
    status.add_argument(
        "--json", action="store_true", help="Print machine-readable JSON"
    )

    purge = sub.add_parser("purge-cache", help="Delete every cached remote page")
    purge.add_argument(
        "--json", action="store_true", help="Print machine-readable JSON"
    )
    sub.add_parser("init", help="Create a starter config file")
    return parser


def add_connection_args(parser: argparse.ArgumentParser) -> None:
    """Add the API/storage override flags shared with ``listing-sync-mcp``."""
    parser.add_argument(
        "--url",
        help="Override listings API URL (takes precedence over LISTING_API_URL and config files)",
    )
    parser.add_argument(
        "--username",
        help="Override API username (takes precedence over LISTING_API_USERNAME)",
    )
    parser.add_argument(
        "--password",
        help="Override API password (visible in process list -- prefer LISTING_API_PASSWORD)",
    )
    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Skip SSL certificate verification (use only for development)",
    )
    parser.add_argument(
        "--data-dir",
        help="Directory for run state, page cache and local store",
    )


def connection_overrides(args: argparse.Namespace) -> dict:
    """Collect the flags added by ``add_connection_args`` that were given."""
    overrides = {}
    for key in ("url", "username", "password", "data_dir"):
        value = getattr(args, key, None)
        if value:
            overrides[key] = value
    if args.insecure:
        overrides["insecure"] = True
    if getattr(args, "debug", False):
        overrides["debug"] = True
    return overrides


def _add_step_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--until-complete",
        action="store_true",
        help="Follow continuations until the action completes",
    )
    parser.add_argument(
        "--max-steps", type=int, help="Stop after this many steps"
    )
    parser.add_argument(
        "--delay",
        type=float,
        default=0.0,
        help="Seconds to wait between steps",
    )
    parser.add_argument(
        "--json", action="store_true", help="Print machine-readable JSON"
    )


def _params(args: argparse.Namespace) -> PhaseParams:
    return PhaseParams(
        init_mode=None if args.init == "resume" else InitMode(args.init),
        date=args.date,
        listing_id=args.listing_id,
        page=args.page,
        phase=Phase(args.phase) if args.phase else None,
    )


def _print_result(result, as_json: bool) -> None:
    if as_json:
        print(json.dumps(status_to_json(result), indent=2))
    else:
        print(format_status(result))


def _step(engine: SyncEngine, args: argparse.Namespace, first):
    """Run *first* (a zero-arg callable) and optionally every continuation."""
    result = first()
    if not args.until_complete or result.outcome != Outcome.CONTINUE:
        return result
    if not args.json:
        print(format_progress(1, result), file=sys.stderr)

    max_steps = args.max_steps - 1 if args.max_steps else None
    if max_steps is not None and max_steps < 1:
        return result

    def _report(step: int, res) -> None:
        if not args.json:
            print(format_progress(step + 1, res), file=sys.stderr)

    return drive(
        engine,
        result.next.action,
        result.next.to_params(),
        max_steps=max_steps,
        delay=args.delay,
        on_step=_report,
    )


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "init":
        setup_logging(mode="cli", debug=args.debug)
        path = ensure_config()
        print(f"Config file: {path}")
        return EXIT_OK

    try:
        config, unified, _ = load_runtime_config(connection_overrides(args))
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    setup_logging(
        mode="cli",
        debug=config.debug,
        log_file=args.log_file or unified.logging.file,
        debug_format=args.log_format,
        level=unified.logging.level,
    )

    engine = SyncEngine.from_config(config)
    try:
        match args.command:
            case "run":
                result = _step(
                    engine,
                    args,
                    lambda: engine.run_phase(args.action, _params(args)),
                )
            case "resume":
                result = _step(engine, args, engine.resume)
            case "cancel":
                result = engine.cancel(force=args.force)
            case "status":
                result = engine.fetch_status()
            case "purge-cache":
                result = engine.run_phase(
                    "delete_cache", PhaseParams(init_mode=InitMode.HARD)
                )
            case _:
                parser.error(f"Unknown command: {args.command}")

        _print_result(result, getattr(args, "json", False))
        ok = getattr(result, "ok", True)
        return EXIT_OK if ok else EXIT_FAILED
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_FAILED
    finally:
        engine.cache.close()
        engine.store.close()


if __name__ == "__main__":
    sys.exit(main())
