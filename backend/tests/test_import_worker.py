"""
Unit Tests for the Member Import Worker

Run with: pytest tests/test_import_worker.py -v
"""

import pytest

from census.workers.import_worker import (
    MemberImportWorker,
    build_parser,
    parse_members_csv,
)

CSV_CONTENT = """memberNumber,name,surname,email,phone,birthDate,Team
1,Ada,Lovelace,ada@example.org,600 000 001,10/12/1815,Analytical
2,Grace,Hopper,grace@example.org,,1906-12-09,
,,,,,,
3,Broken,Email,not-an-email,,,
"""


class TestParseMembersCsv:
    """Test CSV parsing."""

    def test_known_columns_mapped(self):
        records = parse_members_csv(CSV_CONTENT)

        assert len(records) == 3
        ada = records[0]
        assert ada.member_number == "1"
        assert ada.phone == "600 000 001"
        assert ada.birth_date == "10/12/1815"
        assert ada.id is None

    def test_unknown_columns_kept_in_other(self):
        records = parse_members_csv(CSV_CONTENT)
        assert records[0].other == {"Team": "Analytical"}
        assert records[1].other == {}

    def test_explicit_id(self):
        records = parse_members_csv("id,name\nm-1,Ada\n")
        assert records[0].id == "m-1"


class TestMemberImportWorker:
    """Test a full import against the in-memory store."""

    @pytest.mark.asyncio
    async def test_import_file(self, service, store, org, census, tmp_path):
        path = tmp_path / "members.csv"
        path.write_text(CSV_CONTENT, encoding="utf-8")

        report = await MemberImportWorker(service).import_file(
            org.id, path, "test-member-salt", census_id=census.id
        )

        assert report.total == 3
        assert report.added == 3
        assert [w.field for w in report.warnings] == ["email"]
        assert len(store.participants) == 3

    def test_parser(self):
        args = build_parser().parse_args(["org-1", "members.csv", "--census", "c-1"])
        assert args.org_id == "org-1"
        assert args.census_id == "c-1"
        assert args.group_id is None
        assert not args.create_tables
