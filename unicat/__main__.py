"""Module executed when running ``python -m unicat``.

Without a command the HTTP API is served. ``build-bundle`` crawls every
configured source into a seed bundle and ``refresh-bundle`` folds the newest
upstream listings into an existing one.
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Sequence

import uvicorn

from app.config import Settings, settings
from app.main import service_scope
from app.services.catalog_service import CatalogService


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="unicat", description="Unified catalog aggregator"
    )
    commands = parser.add_subparsers(dest="command")
    commands.add_parser("serve", help="Run the HTTP API (default)")

    build = commands.add_parser(
        "build-bundle", help="Crawl every source into a seed bundle"
    )
    build.add_argument("path", type=Path, help="Output file, gzip-compressed for .gz")
    build.add_argument(
        "--max-pages", type=int, default=None, help="Pages to crawl per source"
    )

    refresh = commands.add_parser(
        "refresh-bundle", help="Fold the newest listings into an existing bundle"
    )
    refresh.add_argument("path", type=Path, help="Bundle to refresh")
    refresh.add_argument(
        "--output", type=Path, default=None, help="Write here instead of PATH"
    )
    refresh.add_argument(
        "--dry-run", action="store_true", help="Report changes without saving"
    )
    return parser


async def build_bundle_command(
    service: CatalogService, path: Path, max_pages: int | None = None
) -> int:
    bundle = await service.build_bundle(path, max_pages=max_pages)
    print(
        f"Wrote {bundle.stats.total_series} series to {path} "
        f"({bundle.stats.duplicates_merged} duplicates merged)"
    )
    return 0


async def refresh_bundle_command(
    service: CatalogService,
    path: Path,
    output: Path | None = None,
    dry_run: bool = False,
) -> int:
    await service.load_seed(path)
    result = await service.refresh_recent()
    print(f"Added {result.added} series and updated {result.merged}")
    if dry_run:
        print("Dry run, bundle not written")
        return 0
    target = output or path
    bundle = await service.save_seed(target)
    print(f"Wrote {bundle.stats.total_series} series to {target}")
    return 0


async def run_command(args: argparse.Namespace, config: Settings) -> int:
    """Run an offline bundle command against a freshly built service."""

    async with service_scope(config, schedule_refresh=False) as service:
        if args.command == "build-bundle":
            return await build_bundle_command(service, args.path, args.max_pages)
        if args.command == "refresh-bundle":
            if not args.path.exists():
                print(f"Bundle {args.path} not found")
                return 1
            return await refresh_bundle_command(
                service, args.path, args.output, args.dry_run
            )
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command in (None, "serve"):
        uvicorn.run(
            "app.main:app",
            host=settings.server_host,
            port=settings.server_port,
            reload=settings.environment == "development",
        )
        return 0
    return asyncio.run(run_command(args, settings))


if __name__ == "__main__":  # pragma: no cover - runtime entrypoint
    raise SystemExit(main())
