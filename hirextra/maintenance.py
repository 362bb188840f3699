"""
Maintenance commands for stored candidate records.

    python -m hirextra.maintenance reclean [--dry-run] [--page-size N]
    python -m hirextra.maintenance purge-job <job_id>

``reclean`` re-applies the current cleaning rules to every active record,
rewriting records whose cleaned form differs and soft-deleting records that
no longer pass validation.
"""
import argparse
import logging
import sys
from dataclasses import dataclass
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from hirextra.core.config import settings
from hirextra.core.logging_config import configure_logging
from hirextra.db.session import get_session_factory
from hirextra.domain.ingestion.cleaning import clean_record, validate_record
from hirextra.domain.ingestion.repository import CandidateRepository

logger = logging.getLogger(__name__)


@dataclass
class RecleanSummary:
    scanned: int = 0
    updated: int = 0
    deleted: int = 0
    dry_run: bool = False


def reclean(
    candidates: CandidateRepository,
    *,
    dry_run: bool = False,
    page_size: int = 1000,
    require_name: bool = True,
) -> RecleanSummary:
    summary = RecleanSummary(dry_run=dry_run)
    for page in candidates.iter_active(page_size):
        updates = {}
        deleted_ids: List[int] = []
        for candidate_id, fields in page:
            summary.scanned += 1
            cleaned = clean_record(fields)
            reason = validate_record(cleaned, require_name=require_name)
            if reason:
                deleted_ids.append(candidate_id)
                logger.debug(f"Candidate {candidate_id} no longer valid ({reason})")
            elif cleaned != fields:
                updates[candidate_id] = cleaned

        summary.updated += len(updates)
        summary.deleted += len(deleted_ids)
        if not dry_run and (updates or deleted_ids):
            candidates.apply_changes(updates, deleted_ids)

    logger.info(
        f"Reclean finished: {summary.scanned} scanned, {summary.updated} updated, "
        f"{summary.deleted} deleted{' (dry run)' if dry_run else ''}"
    )
    return summary


def _print_summary(console: Console, summary: RecleanSummary) -> None:
    table = Table(title="Reclean summary" + (" (dry run)" if summary.dry_run else ""))
    table.add_column("Records", style="cyan", no_wrap=True)
    table.add_column("Count", justify="right")
    table.add_row("Scanned", str(summary.scanned))
    table.add_row("Updated", str(summary.updated))
    table.add_row("Marked deleted", str(summary.deleted))
    console.print(table)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m hirextra.maintenance",
        description="Maintenance commands for stored candidate records",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    reclean_parser = subcommands.add_parser("reclean", help="Re-apply cleaning rules to stored records")
    reclean_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would change without writing",
    )
    reclean_parser.add_argument(
        "--page-size",
        type=int,
        default=1000,
        help="Records loaded per page (default: 1000)",
    )

    purge_parser = subcommands.add_parser("purge-job", help="Soft-delete every record of one job")
    purge_parser.add_argument("job_id", help="Ingestion job id")
    return parser


def main(argv: Optional[List[str]] = None, candidates: Optional[CandidateRepository] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(settings.log_level)
    console = Console()
    candidates = candidates or CandidateRepository(get_session_factory())

    if args.command == "reclean":
        summary = reclean(
            candidates,
            dry_run=args.dry_run,
            page_size=args.page_size,
            require_name=settings.require_name,
        )
        _print_summary(console, summary)
    elif args.command == "purge-job":
        purged = candidates.soft_delete_by_job(args.job_id)
        console.print(f"Soft-deleted [bold]{purged}[/bold] records of job {args.job_id}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
