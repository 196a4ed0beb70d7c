"""
Harvest - Entry Point

Run with: python -m harvest import
          python -m harvest migrate
"""

import argparse
import asyncio
import dataclasses
import logging
import sys
from pathlib import Path

import httpx

from harvest import __version__
from harvest.config import Settings, load_settings
from harvest.core.cursor import CursorStore
from harvest.core.dedup import DedupChecker
from harvest.core.media import MediaTransferEngine
from harvest.core.migration import StorageMigration
from harvest.core.models import ImportReport, MigrationStats
from harvest.core.pipeline import ImportPipeline
from harvest.core.writer import BatchWriter
from harvest.sources import build_sources
from harvest.store import open_backends

USER_AGENT = f"spotfly-harvest/{__version__}"


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Reduce noise from third-party libraries
    for name in ("asyncio", "httpx", "httpcore", "google", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="harvest",
        description="Import open-licensed tracks into the Spotfly catalog",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help="Path to harvest.toml (default: $HARVEST_CONFIG or the bundled defaults)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    imp = commands.add_parser("import", help="Harvest all sources into the catalog")
    imp.add_argument("--dry-run", action="store_true", help="Fetch and dedupe only (DRY_RUN=1)")
    imp.add_argument(
        "--source",
        action="append",
        dest="sources",
        metavar="NAME",
        help="Only run this source (repeatable)",
    )
    imp.add_argument(
        "--no-media",
        action="store_true",
        help="Write provider URLs without relocating media",
    )

    mig = commands.add_parser("migrate", help="Relocate catalog media into our storage")
    mig.add_argument("--dry-run", action="store_true", help="Scan only (DRY_RUN=1)")
    mig.add_argument("--limit", type=int, default=None, help="Max items to scan (LIMIT)")
    mig.add_argument(
        "--start-after",
        default=None,
        metavar="ID",
        help="Resume after this document id (START_AFTER)",
    )
    mig.add_argument(
        "--resume",
        action="store_true",
        help="Resume after the last document id persisted by a previous pass",
    )

    return parser.parse_args(argv)


def apply_args(settings: Settings, args: argparse.Namespace) -> Settings:
    """Command line flags win over environment and config file."""
    importer = settings.importer
    migration = settings.migration
    if args.dry_run:
        importer = dataclasses.replace(importer, dry_run=True)
    if args.command == "import":
        if args.sources:
            importer = dataclasses.replace(importer, sources=tuple(args.sources))
        if args.no_media:
            importer = dataclasses.replace(importer, transfer_media=False)
    else:
        if args.limit is not None:
            migration = dataclasses.replace(migration, limit=args.limit)
        if args.start_after:
            migration = dataclasses.replace(migration, start_after=args.start_after)
    return dataclasses.replace(settings, importer=importer, migration=migration)


async def run_import(settings: Settings) -> ImportReport:
    backends = await open_backends(settings)
    try:
        async with httpx.AsyncClient(headers={"User-Agent": USER_AGENT}) as client:
            media = None
            if settings.importer.transfer_media:
                media = MediaTransferEngine(client, backends.objects, settings.media)
            pipeline = ImportPipeline(
                build_sources(settings.importer.sources, client, settings),
                CursorStore(backends.catalog, settings.catalog.state_collection),
                DedupChecker(
                    backends.catalog,
                    settings.catalog.tracks_collection,
                    settings.importer.dedup_chunk_size,
                ),
                BatchWriter(
                    backends.catalog,
                    settings.catalog.tracks_collection,
                    settings.importer.batch_size,
                ),
                media,
                dry_run=settings.importer.dry_run,
            )
            return await pipeline.run()
    finally:
        await backends.close()


async def run_migration(settings: Settings, *, resume: bool = False) -> MigrationStats:
    backends = await open_backends(settings)
    try:
        cursors = CursorStore(backends.catalog, settings.catalog.state_collection)
        migration_settings = settings.migration
        if resume and not migration_settings.start_after:
            marker = await cursors.load_marker()
            if marker:
                migration_settings = dataclasses.replace(migration_settings, start_after=marker)
        async with httpx.AsyncClient(headers={"User-Agent": USER_AGENT}) as client:
            migration = StorageMigration(
                backends.catalog,
                MediaTransferEngine(client, backends.objects, settings.media),
                cursors,
                migration_settings,
                collection=settings.catalog.tracks_collection,
                concurrency=settings.media.concurrency,
                dry_run=settings.importer.dry_run,
            )
            return await migration.run()
    finally:
        await backends.close()


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the application."""
    args = parse_args(argv)
    setup_logging(verbose=args.verbose)

    logger = logging.getLogger(__name__)

    try:
        settings = apply_args(load_settings(args.config), args)
        if args.command == "import":
            asyncio.run(run_import(settings))
        else:
            asyncio.run(run_migration(settings, resume=args.resume))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
