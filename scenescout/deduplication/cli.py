"""Command-line interface for event deduplication."""

import argparse
import json
import sys
from pathlib import Path
from typing import Any, List, Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import DedupConfig, load_config
from .errors import DeduplicationError
from .logging_config import setup_logging
from .merge_history import MergeHistoryTracker
from .system import DeduplicationSystem

console = Console()


def _load_json(path: str) -> Any:
    with open(path, "r") as f:
        return json.load(f)


def _load_events(path: str) -> List[Any]:
    data = _load_json(path)
    if isinstance(data, dict):
        data = data.get("events", [data])
    return list(data)


def _create_system(args) -> DeduplicationSystem:
    return DeduplicationSystem(load_config(args.config))


def check_duplicates(args) -> int:
    """Check one event against a file of candidates."""
    system = _create_system(args)
    target = _load_json(args.target)
    candidates = _load_events(args.candidates)

    result = system.check_for_duplicates(target, candidates)

    if args.json:
        print(json.dumps({
            "is_duplicate": result.is_duplicate,
            "confidence": result.confidence,
            "primary_event_id": result.primary_event_id,
            "duplicate_event_ids": result.duplicate_event_ids,
            "needs_review": result.needs_review,
            "matches": [m.to_dict() for m in result.matches],
            "recommendations": result.recommendations,
        }, indent=2))
        return 0

    if not result.is_duplicate:
        console.print("[green]No duplicates found[/green]")
        return 0

    table = Table(title="Duplicate Candidates", box=box.ROUNDED)
    table.add_column("Event", style="cyan")
    table.add_column("Confidence", justify="right", style="green")
    table.add_column("Title", justify="right")
    table.add_column("Venue", justify="right")
    table.add_column("Date", justify="right")
    table.add_column("Risks", style="yellow")
    for match in result.matches:
        score = match.similarity
        table.add_row(
            match.matched_id,
            f"{match.confidence:.1%}",
            f"{score.title:.2f}",
            f"{score.venue:.2f}",
            f"{score.date:.2f}",
            "\n".join(match.risk_factors) or "-",
        )
    console.print(table)

    style = "yellow" if result.needs_review else "green"
    console.print(Panel("\n".join(result.recommendations), title="Recommendations", border_style=style))
    return 0


def scan_events(args) -> int:
    """Deduplicate a whole file of events."""
    system = _create_system(args)
    events = _load_events(args.events)

    with console.status(f"Scanning {len(events)} events..."):
        result = system.batch_process_events(events, mode=args.mode)

    summary = Table(title=f"Scan Results ({args.mode})", box=box.SIMPLE)
    summary.add_column("Metric", style="cyan")
    summary.add_column("Value", justify="right", style="green")
    summary.add_row("Events processed", str(result.processed_count))
    summary.add_row("Duplicates found", str(result.duplicates_found))
    summary.add_row("Merges completed", str(result.merges_completed))
    summary.add_row("Queued for review", str(len(result.review_queue)))
    summary.add_row("Errors", str(len(result.errors)))
    summary.add_row("Processing time", f"{result.performance.get('processing_time', 0.0):.1f}ms")
    console.print(summary)

    for error in result.errors:
        console.print(f"[red]Error[/red] {error.get('event_id') or error.get('index')}: {error['error']}")

    if args.output:
        consumed = set()
        for event in result.merged_events:
            consumed.add(event.id)
            consumed.update(event.merged_from)
        kept = [e for e in events if isinstance(e, dict) and str(e.get("id")) not in consumed]
        output = {
            "events": [event.snapshot() for event in result.merged_events] + kept,
            "review_queue": [d.snapshot() for d in result.review_queue],
            "history": json.loads(system.export_history("json")),
        }
        Path(args.output).write_text(json.dumps(output, indent=2, default=str))
        console.print(f"💾 Results saved to: {args.output}")

    return 0 if not result.errors else 1


def show_report(args) -> int:
    """Render an audit report from an exported history file."""
    tracker = MergeHistoryTracker()
    data = _load_json(args.history)
    if isinstance(data, dict):
        data = data.get("history", [])
    tracker.import_history(data)

    report = tracker.generate_audit_report()
    if args.format == "json":
        print(json.dumps(report, indent=2, default=str))
    else:
        console.print(Panel(report["text"], title="Merge Audit Report"))
        for recommendation in report["recommendations"]:
            console.print(f"• {recommendation}")
    return 0


def generate_config(args) -> int:
    """Write the default configuration as JSON."""
    text = json.dumps(DedupConfig().model_dump(), indent=2)
    if args.output:
        Path(args.output).write_text(text)
        console.print(f"Configuration template saved to: {args.output}")
    else:
        print(text)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="scenescout-dedup",
        description="SceneScout event deduplication - find, merge and audit duplicate events",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Check one event against existing events
  scenescout-dedup check new_event.json existing.json

  # Deduplicate a whole export, saving merged events and history
  scenescout-dedup scan events.json --mode full_scan -o deduped.json

  # Audit report from a saved history
  scenescout-dedup report deduped.json
""",
    )
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    parser.add_argument("--log-format", choices=["json", "text"], default="text", help="Log format")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    check_parser = subparsers.add_parser("check", help="Check an event for duplicates")
    check_parser.add_argument("target", help="JSON file with the event to check")
    check_parser.add_argument("candidates", help="JSON file with candidate events")
    check_parser.add_argument("-c", "--config", help="Path to configuration file")
    check_parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")

    scan_parser = subparsers.add_parser("scan", help="Find and merge duplicates in a file of events")
    scan_parser.add_argument("events", help="JSON file with a list of events")
    scan_parser.add_argument("-c", "--config", help="Path to configuration file")
    scan_parser.add_argument("-m", "--mode", choices=["batch", "full_scan"], default="batch")
    scan_parser.add_argument("-o", "--output", help="Save merged events and history to file")

    report_parser = subparsers.add_parser("report", help="Audit report from exported merge history")
    report_parser.add_argument("history", help="JSON history export or scan output")
    report_parser.add_argument("-f", "--format", choices=["text", "json"], default="text")

    config_parser = subparsers.add_parser("generate-config", help="Generate configuration template")
    config_parser.add_argument("-o", "--output", help="Save to file (default: print to stdout)")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    setup_logging(format=args.log_format, level=args.log_level)

    commands = {
        "check": check_duplicates,
        "scan": scan_events,
        "report": show_report,
        "generate-config": generate_config,
    }

    try:
        return commands[args.command](args)
    except KeyboardInterrupt:
        console.print("\n⚠️  Interrupted by user")
        return 1
    except (DeduplicationError, OSError, json.JSONDecodeError) as e:
        console.print(f"\n[red]❌ Error:[/red] {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
