#!/usr/bin/env python3
"""Command-line entry point for the guild roster ingestion engine.

Runs a review session headlessly over local screenshots and exposes the
administrative operations on the snapshot store.

Subcommands::

    ingest     Extract screenshots, print QA, optionally fix, boost and commit.
    rollback   Delete the newest snapshot and restore the previous latest view.
    latest     Print the latest view (optionally write it to CSV).
    movers     Print the biggest percent gainers and losers.
    push       Mirror the latest view to Google Sheets.

Usage::

    python main.py --guild 123 ingest shots/ --type total
    python main.py --guild 123 ingest a.png b.png --manual fixes.txt --commit
    python main.py --guild 123 ingest shots/ --commit --force --actor admin
    python main.py --guild 123 rollback
    python main.py --guild 123 latest --csv out/latest.csv
    python main.py --guild 123 movers --metric sim --limit 5
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from config import (
    DATABASE_URL,
    MAX_OCR_BOOSTS,
    MAX_SCREENSHOTS,
    SPREADSHEET_ID,
    TOP_MOVERS_DEFAULT,
    USE_ENSEMBLE,
)
from database import init_db, make_engine
from exceptions import (
    GuardViolation,
    OracleError,
    RollbackUnavailable,
    SessionError,
    SheetSyncError,
)
from export import SheetMirror, write_latest_csv
from models import Metric
from session import Actor, QAReport, ReviewSession, SessionStore, open_session
from snapshots import SnapshotStore
from vision import AnthropicOracle, VisionExtractor

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg", ".webp"})


def collect_image_paths(inputs: list[str], limit: int = MAX_SCREENSHOTS) -> list[Path]:
    """Expand files and directories into a sorted list of screenshot paths.

    Raises:
        FileNotFoundError: If an input path does not exist.
    """
    paths: list[Path] = []
    for raw in inputs:
        path = Path(raw)
        if path.is_dir():
            paths.extend(
                sorted(p for p in path.iterdir() if p.suffix.lower() in SUPPORTED_EXTENSIONS)
            )
        elif path.is_file():
            paths.append(path)
        else:
            raise FileNotFoundError(f"No such file or directory: {path}")
    if len(paths) > limit:
        logger.warning("Using the first %d of %d screenshots", limit, len(paths))
    return paths[:limit]


def format_report(report: QAReport) -> str:
    lines = [
        f"Members: {report.total_rows} (last week {report.last_week_count}), "
        f"coverage {report.coverage_pct}%",
    ]
    if report.missing:
        lines.append(f"Missing ({len(report.missing)}): {', '.join(report.missing)}")
    if report.new_names:
        lines.append(f"New ({len(report.new_names)}): {', '.join(report.new_names)}")
    for change in report.suspicious:
        lines.append(
            f"Suspicious: {change.display_name} {change.previous:,} -> "
            f"{change.current:,} ({change.pct:+.2f}%)"
        )
    for metric, keys in report.low_confidence.items():
        if keys:
            lines.append(f"Low confidence {metric.value}: {', '.join(keys)}")
    if report.extreme_volatility:
        lines.append(f"Extreme volatility: {len(report.volatile)} members moved 40%+")
    if report.coverage_guard_triggered:
        lines.append("Coverage guard active: fix missing members or force commit.")
    return "\n".join(lines)


def _store(args: argparse.Namespace) -> SnapshotStore:
    return SnapshotStore(init_db(make_engine(args.database_url)))


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


async def _run_ingest(args: argparse.Namespace, store: SnapshotStore) -> ReviewSession:
    extractor = VisionExtractor(AnthropicOracle(), use_ensemble=args.ensemble or USE_ENSEMBLE)
    mirror = None if args.no_sheet or not SPREADSHEET_ID else SheetMirror()
    session = await open_session(
        SessionStore(),
        extractor,
        store,
        args.guild,
        Actor(args.actor, is_privileged=args.force),
        [str(path) for path in collect_image_paths(args.images)],
        metric_type=args.type,
        sheet_mirror=mirror,
        notes=args.notes,
    )
    for error in session.extraction_errors:
        print(f"Extraction error: {error}")

    if args.manual:
        result = session.apply_manual_fix(Path(args.manual).read_text(encoding="utf-8"))
        print(f"Manual fixes applied: {len(result.applied)}")
        for error in result.errors:
            print(f"  {error}")

    for _ in range(args.boost):
        report = session.qa
        if not report.missing_keys and not any(report.low_confidence.values()):
            break
        await session.ocr_boost()
    return session


def cmd_ingest(args: argparse.Namespace) -> None:
    """Run a review session over local screenshots and optionally commit it."""
    store = _store(args)
    try:
        session = asyncio.run(_run_ingest(args, store))
    except (FileNotFoundError, ValueError, OracleError) as exc:
        logger.error("Ingest failed: %s", exc)
        sys.exit(1)

    print(format_report(session.qa))
    if session.ensemble_stats is not None:
        stats = session.ensemble_stats
        print(
            f"Ensemble: {stats.both_models} both, {stats.only_strong} strong only, "
            f"{stats.only_fast} fast only, {stats.disagreements} digit disagreements"
        )

    if not args.commit:
        print("Dry run: nothing committed (use --commit).")
        return

    try:
        result = session.commit(force=args.force)
    except GuardViolation as exc:
        logger.error("Commit blocked: %s", exc)
        print(json.dumps(exc.to_dict(), indent=2))
        sys.exit(2)
    except SessionError as exc:
        logger.error("Commit refused: %s", exc)
        sys.exit(2)

    print(
        f"Committed snapshot {result.snapshot_id}: {result.member_count} members, "
        f"{result.metric_count} metric rows"
    )
    aggregates = store.get_aggregates(args.guild)
    print(
        f"Members={aggregates.members}, SUM={aggregates.total_power:,}, "
        f"AVG={(aggregates.average_power or 0):,}"
    )
    if result.sheet_sync is not None:
        if result.sheet_sync.ok:
            print(f"Sheet updated: {result.sheet_sync.row_count} rows")
        else:
            print(f"Sheet push failed: {result.sheet_sync.error}")
            sys.exit(1)


def cmd_rollback(args: argparse.Namespace) -> None:
    store = _store(args)
    try:
        result = store.rollback_latest(args.guild)
    except RollbackUnavailable as exc:
        logger.error("%s", exc)
        sys.exit(1)
    print(
        f"Removed snapshot {result.removed_snapshot_id}; latest view restored to "
        f"snapshot {result.restored_snapshot_id} ({result.restored_snapshot_at})"
    )


def cmd_latest(args: argparse.Namespace) -> None:
    rows = _store(args).get_latest(args.guild)
    if args.csv:
        write_latest_csv(rows, args.csv)
        return
    for row in rows:
        total = f"{row.total_power:,}" if row.total_power is not None else "-"
        sim = f"{row.sim_power:,}" if row.sim_power is not None else "-"
        pct = f"{row.total_pct_change:+.2f}%" if row.total_pct_change is not None else ""
        print(f"{row.display_name:<24} {sim:>16} {total:>16} {pct:>9}")


def cmd_movers(args: argparse.Namespace) -> None:
    movers = _store(args).get_top_movers(args.guild, Metric(args.metric), args.limit)
    for label, entries in (("Gainers", movers.gainers), ("Losers", movers.losers)):
        print(f"{label}:")
        for mover in entries:
            print(f"  {mover.display_name:<24} {mover.pct_change:+.2f}%")


def cmd_push(args: argparse.Namespace) -> None:
    rows = _store(args).get_latest(args.guild)
    try:
        result = SheetMirror()(args.guild, rows)
    except SheetSyncError as exc:
        logger.error("Sheet push failed: %s", exc)
        sys.exit(1)
    print(f"Pushed {result.row_count} rows to {result.sheet_name}")


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Guild roster screenshot ingestion and reconciliation.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--guild", required=True, help="Guild identifier")
    parser.add_argument(
        "--database-url",
        default=DATABASE_URL,
        help="SQLAlchemy database URL (default: ROSTER_DATABASE_URL or local SQLite)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command")

    # ingest ---
    ingest = subparsers.add_parser(
        "ingest",
        help="Extract screenshots and review (and optionally commit) a snapshot",
    )
    ingest.add_argument("images", nargs="+", help="Screenshot files or directories")
    ingest.add_argument(
        "--type",
        default="both",
        help="Metric shown on the screenshots: sim, total, or both (default)",
    )
    ingest.add_argument("--manual", help="File of 'Name = value' correction lines")
    ingest.add_argument(
        "--boost",
        type=int,
        default=0,
        choices=range(0, MAX_OCR_BOOSTS + 1),
        help=f"Strict OCR re-reads to run before commit (max {MAX_OCR_BOOSTS})",
    )
    ingest.add_argument("--ensemble", action="store_true", help="Use the two-model ensemble")
    ingest.add_argument("--commit", action="store_true", help="Commit the snapshot")
    ingest.add_argument(
        "--force",
        action="store_true",
        help="Commit despite the coverage guard (privileged)",
    )
    ingest.add_argument("--actor", default="cli", help="Recorded as the snapshot creator")
    ingest.add_argument("--notes", help="Free-text note stored with the snapshot")
    ingest.add_argument("--no-sheet", action="store_true", help="Skip the sheet mirror")

    # rollback ---
    subparsers.add_parser("rollback", help="Delete the newest snapshot")

    # latest ---
    latest = subparsers.add_parser("latest", help="Show the latest view")
    latest.add_argument("--csv", help="Write the view to this CSV file instead")

    # movers ---
    movers = subparsers.add_parser("movers", help="Show top percent movers")
    movers.add_argument("--metric", choices=[m.value for m in Metric], default="total")
    movers.add_argument("--limit", type=int, default=TOP_MOVERS_DEFAULT)

    # push ---
    subparsers.add_parser("push", help="Mirror the latest view to Google Sheets")

    return parser


COMMANDS = {
    "ingest": cmd_ingest,
    "rollback": cmd_rollback,
    "latest": cmd_latest,
    "movers": cmd_movers,
    "push": cmd_push,
}


def main(argv: Optional[list[str]] = None) -> None:
    """Entry point: parse arguments, configure logging, and dispatch."""
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    command = COMMANDS.get(args.command)
    if command is None:
        parser.print_help()
        return
    command(args)


if __name__ == "__main__":
    main()
