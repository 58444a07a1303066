"""Script to run an incremental (smart) Azure DevOps sync, e.g. from cron."""

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
    parser = argparse.ArgumentParser(description="Sync Azure DevOps work items changed since the last run")
    parser.add_argument("--full", action="store_true", help="Run a full sync instead of an incremental one")
    parser.add_argument(
        "--projects",
        default="",
        help="Comma separated project names (defaults to TARGET_PROJECTS / AZURE_DEVOPS_PROJECT)",
    )
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    if not settings.azure_configured:
        print("AZURE_DEVOPS_ORG_URL and AZURE_DEVOPS_PAT must be set")
        return 1

    projects = [p.strip() for p in args.projects.split(",") if p.strip()] or None
    kind = "full" if args.full else "incremental"

    await init_db()
    try:
        summary = await run_sync(kind, project_names=projects)
    finally:
        await close_db()

    print("=" * 50)
    print(f"{summary.sync_type} finished")
    print("=" * 50)
    print(f"Evaluated: {summary.evaluated}")
    print(f"Updated (basic): {summary.updated_basic}")
    print(f"Updated (hierarchy): {summary.updated_hierarchy}")
    print(f"Updated (history): {summary.updated_history}")
    print(f"History skipped: {summary.history_skipped}")
    print(f"Errors: {summary.errors}")
    print("=" * 50)
    return 0 if summary.errors == 0 else 2


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
