#!/usr/bin/env python3
"""
Sweep Stale Documents Script

Marks documents stuck in ``processing`` (abandoned ingestion runs)
as ``failed``. The API runs the same sweep at startup.

Usage:
    Requires Docker stack running (make up):
    $ python scripts/sweep_stale_documents.py [--minutes 30]
"""

import argparse
import asyncio
import os
import sys

from rich.console import Console

# Required for direct script execution without package installation
sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from app.core.config import settings  # noqa: E402
from app.core.database import dispose_engine  # noqa: E402
from app.core.logging import setup_logging  # noqa: E402
from app.services.maintenance import sweep_stale_documents  # noqa: E402

console = Console()


async def main(minutes: int) -> None:
    setup_logging()
    try:
        swept = await sweep_stale_documents(older_than_minutes=minutes)
    finally:
        await dispose_engine()

    if swept:
        console.print(f"[yellow]⚠[/yellow] Marked {swept} stale document(s) as failed")
    else:
        console.print("[green]✓[/green] No stale documents")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument(
        "--minutes",
        type=int,
        default=settings.STALE_PROCESSING_MINUTES,
        help="Age threshold in minutes (default: %(default)s)",
    )
    args = parser.parse_args()
    asyncio.run(main(args.minutes))
