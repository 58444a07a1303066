"""Script to re-derive effort history (initial/last/done remaining work) for recent work items."""

import argparse
import asyncio
import sys
from pathlib import Path

# Add the parent directory to the path so we can import from app
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config.settings import settings
from app.db.db import init_db, close_db
from app.services.work_item_sync import run_sync


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Backfill effort history from Azure DevOps revisions")
    parser.add_argument(
        "--days-back",
        type=int,
        default=settings.BACKFILL_DAYS_BACK,
        help=f"Only items changed in the last N days (default {settings.BACKFILL_DAYS_BACK})",
    )
    parser.add_argument(
        "--projects",
        default=settings.TARGET_PROJECTS,
        help="Comma separated project names (default TARGET_PROJECTS)",
    )
    parser.add_argument(
        "--only-missing",
        action="store_true",
        help="Skip items that already have initial and last remaining work",
    )
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    if args.days_back < 1:
        print("--days-back must be at least 1")
        return 1
    if not settings.azure_configured:
        print("AZURE_DEVOPS_ORG_URL and AZURE_DEVOPS_PAT must be set")
        return 1

    projects = [p.strip() for p in args.projects.split(",") if p.strip()] or None
    print(f"Backfilling effort history for the last {args.days_back} days...")

    await init_db()
    try:
        summary = await run_sync(
            "backfill",
            days_back=args.days_back,
            project_names=projects,
            only_missing=args.only_missing,
        )
    finally:
        await close_db()

    print("=" * 50)
    print(f"Evaluated: {summary.evaluated}")
    print(f"History updated: {summary.updated_history}")
    print(f"History skipped: {summary.history_skipped}")
    print(f"Revisions stored: {summary.revisions_stored}")
    print(f"Errors: {summary.errors}")
    print("=" * 50)
    return 0 if summary.errors == 0 else 2


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
