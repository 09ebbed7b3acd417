#!/usr/bin/env python3
"""
Seed Notes Script

Ingests local text/markdown files (and optionally a list of URLs) into
LATTICE through the streaming ingest endpoint, showing per-item progress.

Usage:
    Requires the API running (uvicorn or docker compose):
    $ python scripts/seed_notes.py notes/
    $ python scripts/seed_notes.py notes/a.md notes/b.txt --urls urls.txt
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
from rich import box
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

console = Console()

DEFAULT_API_URL = "http://localhost:8001"
NOTE_SUFFIXES = {".md", ".markdown", ".txt"}
TIMEOUT = 300.0


@dataclass
class IngestOutcome:
    label: str
    ok: bool
    message: str
    document_id: str | None = None


# ---------------------------------------------------------------------------
# Console Helpers
# ---------------------------------------------------------------------------


def log_info(msg: str) -> None:
    console.print(f"[blue]ℹ[/blue] {msg}")


def log_success(msg: str) -> None:
    console.print(f"[green]✓[/green] {msg}")


def log_error(msg: str) -> None:
    console.print(f"[red]✗[/red] {msg}")


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


def collect_notes(paths: list[Path]) -> list[Path]:
    """Expand directories into their note files, sorted by name."""
    files: list[Path] = []
    for path in paths:
        if path.is_dir():
            files.extend(
                sorted(p for p in path.rglob("*") if p.suffix.lower() in NOTE_SUFFIXES)
            )
        elif path.is_file():
            files.append(path)
        else:
            log_error(f"Not found: {path}")
    return files


def read_urls(path: Path) -> list[str]:
    lines = (line.strip() for line in path.read_text(encoding="utf-8").splitlines())
    return [line for line in lines if line and not line.startswith("#")]


def note_payload(path: Path) -> dict[str, Any]:
    """Title is the first markdown heading, else the file name."""
    content = path.read_text(encoding="utf-8")
    title = path.stem.replace("_", " ").replace("-", " ").strip()
    for line in content.splitlines():
        if line.startswith("# "):
            title = line[2:].strip()
            break
    return {"type": "text", "title": title, "content": content}


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


def ingest(
    client: httpx.Client,
    label: str,
    payload: dict[str, Any],
    progress: Progress,
) -> IngestOutcome:
    """Post one item and follow its NDJSON progress stream."""
    task = progress.add_task(label[:40], total=100)
    last: dict[str, Any] = {}
    try:
        with client.stream("POST", "/api/v1/ingest", json=payload) as response:
            response.raise_for_status()
            for line in response.iter_lines():
                if not line.strip():
                    continue
                last = json.loads(line)
                progress.update(
                    task,
                    completed=last.get("progress", 0),
                    description=f"{label[:24]} · {last.get('message', '')[:40]}",
                )
    except httpx.HTTPError as e:
        progress.remove_task(task)
        return IngestOutcome(label, False, f"{type(e).__name__}: {e}")

    progress.remove_task(task)
    if last.get("step") == "done":
        return IngestOutcome(label, True, "completed", last.get("documentId"))
    return IngestOutcome(label, False, last.get("message", "stream ended early"))


def print_report(outcomes: list[IngestOutcome]) -> None:
    table = Table(title="Ingestion Results", box=box.ROUNDED)
    table.add_column("Item", style="cyan")
    table.add_column("Status")
    table.add_column("Document / Error")

    for outcome in outcomes:
        status = "[green]done[/green]" if outcome.ok else "[red]failed[/red]"
        detail = outcome.document_id if outcome.ok else outcome.message
        table.add_row(outcome.label, status, detail or "")

    console.print()
    console.print(table)


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed LATTICE with notes and URLs")
    parser.add_argument("paths", nargs="*", type=Path, help="Note files or directories")
    parser.add_argument("--urls", type=Path, help="File with one URL per line")
    parser.add_argument("--api-url", default=DEFAULT_API_URL, help="API base URL")
    args = parser.parse_args()

    items: list[tuple[str, dict[str, Any]]] = [
        (path.name, note_payload(path)) for path in collect_notes(args.paths)
    ]
    if args.urls:
        items.extend((url, {"type": "url", "url": url}) for url in read_urls(args.urls))

    if not items:
        log_error("Nothing to ingest")
        return 1

    with httpx.Client(base_url=args.api_url, timeout=TIMEOUT) as client:
        try:
            client.get("/health", timeout=5.0).raise_for_status()
        except httpx.HTTPError:
            log_error(f"API not available at {args.api_url}")
            return 1
        log_success("API connected")
        log_info(f"Ingesting {len(items)} item(s)...")

        outcomes: list[IngestOutcome] = []
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.completed:>3.0f}%"),
            console=console,
        ) as progress:
            for label, payload in items:
                outcomes.append(ingest(client, label, payload, progress))

    print_report(outcomes)
    failed = sum(1 for o in outcomes if not o.ok)
    if failed:
        log_error(f"{failed}/{len(outcomes)} item(s) failed")
        return 1
    log_success(f"Ingested {len(outcomes)} item(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
