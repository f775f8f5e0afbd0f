"""
Member Import Worker

Reads a CSV export of members and synchronizes it into an organization,
optionally publishing the members to a census and a group.

Usage:
- Standalone: python -m census.workers.import_worker ORG_ID members.csv --census CENSUS_ID

Recognized columns (snake_case or camelCase): id, email, phone, password,
member_number, national_id, name, surname, birth_date. Any other column
is kept in the member's `other` attributes.
"""

import argparse
import asyncio
import csv
import io
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from census.models import BulkJobReport, MemberRecord
from census.service import MemberSyncService
from census.storage import MemberStore

logger = logging.getLogger(__name__)


COLUMN_ALIASES = {
    "id": "id",
    "email": "email",
    "phone": "phone",
    "password": "password",
    "member_number": "member_number",
    "membernumber": "member_number",
    "national_id": "national_id",
    "nationalid": "national_id",
    "name": "name",
    "surname": "surname",
    "birth_date": "birth_date",
    "birthdate": "birth_date",
}


def parse_members_csv(file_content: str) -> List[MemberRecord]:
    """
    Parse CSV content into member records.

    Args:
        file_content: CSV file content as string

    Returns:
        One MemberRecord per non-empty row
    """
    reader = csv.DictReader(io.StringIO(file_content))
    records = []
    for row in reader:
        known: Dict[str, str] = {}
        other: Dict[str, str] = {}
        for column, value in row.items():
            if column is None:
                continue
            value = (value or "").strip()
            target = COLUMN_ALIASES.get(column.strip().lower())
            if target:
                known[target] = value
            elif value:
                other[column.strip()] = value

        if not any(known.values()) and not other:
            continue
        if not known.get("id"):
            known.pop("id", None)
        records.append(MemberRecord(**known, other=other))
    return records


class MemberImportWorker:
    """Runs one CSV import as a bulk job and logs its progress."""

    def __init__(self, service: MemberSyncService):
        self.service = service

    async def import_file(
        self,
        org_id: str,
        path: Path,
        salt: str,
        census_id: Optional[str] = None,
        group_id: Optional[str] = None,
    ) -> BulkJobReport:
        records = parse_members_csv(path.read_text(encoding="utf-8-sig"))
        logger.info(f"Read {len(records)} members from {path.name}")

        job = await self.service.start_bulk_sync(
            org_id, salt, records, census_id=census_id, group_id=group_id
        )
        async for status in job.stream:
            logger.info(
                f"Import {job.id}: {status.progress}% "
                f"({status.processed}/{status.total} processed, {status.added} added)"
            )

        report = await job.wait()
        logger.info(f"Import {job.id} finished: {report.summary()}")
        for line in report.diagnostics():
            logger.warning(line)
        return report


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Import organization members from CSV")
    parser.add_argument("org_id", help="Organization id")
    parser.add_argument("csv_path", type=Path, help="CSV file with one member per row")
    parser.add_argument("--census", dest="census_id", help="Publish members to this census")
    parser.add_argument("--group", dest="group_id", help="Add members to this group")
    parser.add_argument("--create-tables", action="store_true", help="Create census tables first")
    return parser


async def run_import(args: argparse.Namespace, store: Optional[MemberStore] = None) -> BulkJobReport:
    """Run an import with the configured database and salt."""
    from config import get_settings
    from census.db_storage import SqlMemberStore
    from database.connection import init_db, dispose_engine

    settings = get_settings()
    if not settings.MEMBER_HASH_SALT:
        raise ValueError("MEMBER_HASH_SALT environment variable is not set")

    if store is None:
        await init_db(create_tables=args.create_tables)
        store = SqlMemberStore()

    worker = MemberImportWorker(MemberSyncService(store))
    try:
        return await worker.import_file(
            args.org_id,
            args.csv_path,
            settings.MEMBER_HASH_SALT,
            census_id=args.census_id,
            group_id=args.group_id,
        )
    finally:
        if isinstance(store, SqlMemberStore):
            await dispose_engine()


def main(argv: Optional[List[str]] = None) -> int:
    from config import get_settings
    from logging_config import setup_logging
    from sentry_integration import init_sentry, capture_exception

    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.is_production)
    init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT)

    try:
        report = asyncio.run(run_import(args))
    except Exception as e:
        logger.error(f"Import failed: {e}")
        capture_exception(e, org_id=args.org_id)
        return 1

    return 0 if not report.errors else 2


if __name__ == "__main__":
    sys.exit(main())
