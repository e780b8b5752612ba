"""Command line entry point for dedup runs, consistency checks and the admin API."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import TYPE_CHECKING
from uuid import uuid4

import uvicorn

from recman.cancellation import CancellationToken, install_signal_handlers
from recman.config import (
    DataSourceConfigError,
    SettingsValidationError,
    load_recman_config,
    load_settings,
)
from recman.config.logging import init_logging, run_id
from recman.dedup import build_dedup_services
from recman.storage import (
    MigrationStartupError,
    create_storage_runtime,
    dispose_storage_runtime,
    run_startup_migrations,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from recman.config import AppSettings, RecmanConfig

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    """Create the `recman` argument parser."""
    parser = argparse.ArgumentParser(
        prog="recman",
        description="Incremental deduplication of bibliographic records.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    deduplicate = subparsers.add_parser(
        "deduplicate",
        help="Evaluate records flagged for dedup.",
    )
    deduplicate.add_argument(
        "--source",
        default=None,
        help="Source id to process, or '*' for every dedup-enabled source.",
    )
    deduplicate.add_argument(
        "--all",
        dest="all_records",
        action="store_true",
        help="Flag every record of the selected sources before processing.",
    )
    deduplicate.add_argument(
        "--single",
        default=None,
        help="Evaluate only this record id.",
    )
    deduplicate.add_argument(
        "--mark",
        dest="mark_only",
        action="store_true",
        help="Only flag records; do not process them.",
    )

    check = subparsers.add_parser(
        "check-dedup",
        help="Repair inconsistencies between records and dedup records.",
    )
    check.add_argument(
        "--single",
        default=None,
        help="Check only this record id and its dedup record.",
    )
    check.add_argument(
        "--strict",
        action="store_true",
        help="Re-verify every dedup record member against the others.",
    )

    _ = subparsers.add_parser("serve", help="Run the admin API.")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Parse arguments, run the requested command and return its exit status."""
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings()
    except SettingsValidationError as exc:
        _ = sys.stderr.write(f"{exc}\n")
        return EXIT_FAILED
    init_logging(settings.log_level)

    if args.command == "serve":
        uvicorn.run(
            "recman.api.app:create_app",
            factory=True,
            host=settings.bind,
            port=settings.port,
            log_config=None,
        )
        return EXIT_OK

    _ = run_id.set(uuid4().hex)
    try:
        config = load_recman_config(settings.datasources_path)
        run_startup_migrations(settings)
    except (DataSourceConfigError, MigrationStartupError) as exc:
        logger.error("Startup failed: %s", exc)  # noqa: TRY400
        return EXIT_FAILED

    if args.command == "deduplicate":
        return asyncio.run(_deduplicate(settings, config, args))
    return asyncio.run(_check_dedup(settings, config, args))


async def _deduplicate(
    settings: AppSettings,
    config: RecmanConfig,
    args: argparse.Namespace,
) -> int:
    runtime = create_storage_runtime(settings)
    token = CancellationToken()
    install_signal_handlers(asyncio.get_running_loop(), token)
    try:
        services = build_dedup_services(runtime, config)
        summary = await services.controller.run(
            args.source,
            all_records=args.all_records,
            single_id=args.single,
            mark_only=args.mark_only,
            token=token,
        )
    finally:
        await dispose_storage_runtime(runtime)
    if summary.status == "cancelled":
        return EXIT_CANCELLED
    if summary.status == "failed":
        return EXIT_FAILED
    return EXIT_OK


async def _check_dedup(
    settings: AppSettings,
    config: RecmanConfig,
    args: argparse.Namespace,
) -> int:
    runtime = create_storage_runtime(settings)
    token = CancellationToken()
    install_signal_handlers(asyncio.get_running_loop(), token)
    try:
        services = build_dedup_services(runtime, config)
        summary = await services.checker.run(
            single_record_id=args.single,
            strict=args.strict,
            token=token,
        )
    finally:
        await dispose_storage_runtime(runtime)
    if summary.status == "cancelled":
        return EXIT_CANCELLED
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
