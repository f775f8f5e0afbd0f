"""
Census Sync - SQL Store

MemberStore backed by SQLAlchemy async sessions (asyncpg in production,
aiosqlite in tests). Each grouped write runs in a single transaction.

Driver errors become StoreError; a unique fingerprint index violation on
the participants table becomes DuplicateFingerprintError.
"""

import logging
from contextlib import asynccontextmanager
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import select, delete, func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from census.errors import DuplicateFingerprintError, NotFoundError, StoreError
from census.models import (
    Census, CensusParticipant, JobRecord, MemberGroup, MemberUpdate, Organization, OrgMember,
    ParticipantUpsert, utc_now,
)
from census.storage import MemberStore
from database.census_models import (
    CensusDB, CensusParticipantDB, MemberGroupDB, OrganizationDB, OrgMemberDB, SyncJobDB,
)
from database.connection import get_session_factory

logger = logging.getLogger(__name__)


class SqlMemberStore(MemberStore):
    """MemberStore on top of the census tables"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        super().__init__()
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker:
        return self._session_factory or get_session_factory()

    @asynccontextmanager
    async def _transaction(self, operation: str, census_id: Optional[str] = None):
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    yield session
        except IntegrityError as e:
            if census_id:
                logger.warning(f"{operation}: fingerprint index violation in census {census_id}")
                raise DuplicateFingerprintError(census_id) from e
            raise StoreError(f"{operation} failed: {e.orig}") from e
        except SQLAlchemyError as e:
            logger.error(f"{operation} failed: {e}")
            raise StoreError(f"{operation} failed: {e}") from e

    # ==================== ORGANIZATIONS / CENSUSES / GROUPS ====================

    async def get_organization(self, org_id: str) -> Organization:
        async with self._transaction("get organization") as session:
            row = await session.get(OrganizationDB, org_id)
            if row is None:
                raise NotFoundError(f"organization {org_id} not found")
            return Organization.model_validate(row, from_attributes=True)

    async def save_organization(self, org: Organization) -> Organization:
        async with self._transaction("save organization") as session:
            await session.merge(OrganizationDB(**org.model_dump()))
        return org

    async def get_census(self, census_id: str) -> Census:
        async with self._transaction("get census") as session:
            row = await session.get(CensusDB, census_id)
            if row is None:
                raise NotFoundError(f"census {census_id} not found")
            return Census.model_validate(row, from_attributes=True)

    async def save_census(self, census: Census) -> Census:
        async with self._transaction("save census") as session:
            values = census.model_dump()
            values["auth_fields"] = [f.value for f in census.auth_fields]
            values["two_fa_fields"] = [f.value for f in census.two_fa_fields]
            await session.merge(CensusDB(**values))
        return census

    async def get_group(self, group_id: str) -> MemberGroup:
        async with self._transaction("get group") as session:
            row = await session.get(MemberGroupDB, group_id)
            if row is None:
                raise NotFoundError(f"group {group_id} not found")
            return MemberGroup.model_validate(row, from_attributes=True)

    async def save_group(self, group: MemberGroup) -> MemberGroup:
        async with self._transaction("save group") as session:
            await session.merge(MemberGroupDB(**group.model_dump()))
        return group

    async def add_members_to_group(self, group_id: str, member_ids: List[str]) -> int:
        async with self._transaction("add members to group") as session:
            row = await session.get(MemberGroupDB, group_id, with_for_update=True)
            if row is None:
                raise NotFoundError(f"group {group_id} not found")
            current = list(row.member_ids or [])
            new_ids = [m for m in dict.fromkeys(member_ids) if m not in current]
            if new_ids:
                row.member_ids = current + new_ids
                row.updated_at = utc_now()
            return len(new_ids)

    # ==================== MEMBERS ====================

    async def get_member(self, org_id: str, member_id: str) -> OrgMember:
        async with self._transaction("get member") as session:
            result = await session.execute(
                select(OrgMemberDB).where(OrgMemberDB.id == member_id, OrgMemberDB.org_id == org_id)
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise NotFoundError(f"member {member_id} not found in organization {org_id}")
            return OrgMember.model_validate(row, from_attributes=True)

    async def get_members(self, member_ids: Iterable[str]) -> Dict[str, OrgMember]:
        ids = list(member_ids)
        if not ids:
            return {}
        async with self._transaction("get members") as session:
            result = await session.execute(select(OrgMemberDB).where(OrgMemberDB.id.in_(ids)))
            return {
                row.id: OrgMember.model_validate(row, from_attributes=True)
                for row in result.scalars()
            }

    async def find_member_ids_by_number(self, org_id: str, member_numbers: Iterable[str]) -> Dict[str, str]:
        numbers = [n for n in member_numbers if n]
        if not numbers:
            return {}
        async with self._transaction("find members by number") as session:
            result = await session.execute(
                select(OrgMemberDB.member_number, OrgMemberDB.id).where(
                    OrgMemberDB.org_id == org_id,
                    OrgMemberDB.member_number.in_(numbers),
                )
            )
            return {number: member_id for number, member_id in result.all()}

    async def bulk_upsert_members(self, updates: List[MemberUpdate]) -> int:
        if not updates:
            return 0
        async with self._transaction("member batch write") as session:
            result = await session.execute(
                select(OrgMemberDB).where(OrgMemberDB.id.in_([u.member_id for u in updates]))
            )
            existing = {row.id: row for row in result.scalars()}

            for update in updates:
                row = existing.get(update.member_id)
                if row is None:
                    row = OrgMemberDB(id=update.member_id, **update.on_insert, **update.set_fields)
                    session.add(row)
                    existing[update.member_id] = row
                else:
                    for name, value in update.set_fields.items():
                        setattr(row, name, value)
        return len(updates)

    async def delete_members(self, org_id: str, member_ids: List[str]) -> int:
        if not member_ids:
            return 0
        async with self._transaction("member delete") as session:
            result = await session.execute(
                select(OrgMemberDB.id).where(
                    OrgMemberDB.org_id == org_id,
                    OrgMemberDB.id.in_(member_ids),
                )
            )
            doomed = set(result.scalars())
            if not doomed:
                return 0

            await session.execute(
                delete(CensusParticipantDB).where(CensusParticipantDB.participant_id.in_(doomed))
            )
            await session.execute(delete(OrgMemberDB).where(OrgMemberDB.id.in_(doomed)))

            groups = await session.execute(select(MemberGroupDB).where(MemberGroupDB.org_id == org_id))
            for group in groups.scalars():
                remaining = [m for m in (group.member_ids or []) if m not in doomed]
                if len(remaining) != len(group.member_ids or []):
                    group.member_ids = remaining
                    group.updated_at = utc_now()
            return len(doomed)

    # ==================== PARTICIPANTS ====================

    @staticmethod
    def _to_participant(row: CensusParticipantDB) -> CensusParticipant:
        return CensusParticipant.model_validate(row, from_attributes=True)

    async def get_participant(self, census_id: str, participant_id: str) -> CensusParticipant:
        async with self._transaction("get participant") as session:
            row = await session.get(CensusParticipantDB, (census_id, participant_id))
            if row is None:
                raise NotFoundError(f"participant {participant_id} not found in census {census_id}")
            return self._to_participant(row)

    async def list_member_participants(self, member_id: str) -> List[CensusParticipant]:
        async with self._transaction("list member participants") as session:
            result = await session.execute(
                select(CensusParticipantDB).where(CensusParticipantDB.participant_id == member_id)
            )
            return [self._to_participant(row) for row in result.scalars()]

    async def existing_participant_ids(self, census_id: str, participant_ids: Iterable[str]) -> Set[str]:
        ids = list(participant_ids)
        if not ids:
            return set()
        async with self._transaction("existing participants") as session:
            result = await session.execute(
                select(CensusParticipantDB.participant_id).where(
                    CensusParticipantDB.census_id == census_id,
                    CensusParticipantDB.participant_id.in_(ids),
                )
            )
            return set(result.scalars())

    @staticmethod
    def _matches_any(values: List[str]):
        return or_(
            CensusParticipantDB.login_hash.in_(values),
            CensusParticipantDB.login_hash_email.in_(values),
            CensusParticipantDB.login_hash_phone.in_(values),
        )

    async def count_fingerprint_matches(self, census_id: str, participant_id: str, values: List[str]) -> int:
        if not values:
            return 0
        async with self._transaction("fingerprint conflict count") as session:
            result = await session.execute(
                select(func.count()).select_from(CensusParticipantDB).where(
                    CensusParticipantDB.census_id == census_id,
                    CensusParticipantDB.participant_id != participant_id,
                    self._matches_any(values),
                )
            )
            return result.scalar_one()

    async def find_participant_by_fingerprints(self, census_id: str, values: List[str]) -> Optional[CensusParticipant]:
        if not values:
            return None
        async with self._transaction("participant lookup") as session:
            result = await session.execute(
                select(CensusParticipantDB).where(
                    CensusParticipantDB.census_id == census_id,
                    self._matches_any(values),
                ).limit(1)
            )
            row = result.scalar_one_or_none()
            return self._to_participant(row) if row is not None else None

    async def bulk_upsert_participants(self, upserts: List[ParticipantUpsert]) -> int:
        if not upserts:
            return 0
        async with self._transaction("participant batch write", census_id=upserts[0].census_id) as session:
            by_census: Dict[str, List[ParticipantUpsert]] = {}
            for upsert in upserts:
                by_census.setdefault(upsert.census_id, []).append(upsert)

            for census_id, group in by_census.items():
                result = await session.execute(
                    select(CensusParticipantDB).where(
                        CensusParticipantDB.census_id == census_id,
                        CensusParticipantDB.participant_id.in_([u.participant_id for u in group]),
                    )
                )
                existing = {row.participant_id: row for row in result.scalars()}

                for upsert in group:
                    row = existing.get(upsert.participant_id)
                    if row is None:
                        row = CensusParticipantDB(
                            census_id=census_id,
                            participant_id=upsert.participant_id,
                            **upsert.on_insert,
                            **upsert.set_fields,
                        )
                        session.add(row)
                        existing[upsert.participant_id] = row
                    else:
                        for name, value in upsert.set_fields.items():
                            setattr(row, name, value)
        return len(upserts)

    async def delete_participant(self, census_id: str, participant_id: str) -> bool:
        async with self._transaction("participant delete") as session:
            result = await session.execute(
                delete(CensusParticipantDB).where(
                    CensusParticipantDB.census_id == census_id,
                    CensusParticipantDB.participant_id == participant_id,
                )
            )
            return result.rowcount > 0

    # ==================== JOBS ====================

    async def create_job(self, job: JobRecord) -> JobRecord:
        async with self._transaction("create job") as session:
            values = job.model_dump()
            values["job_type"] = job.job_type.value
            await session.merge(SyncJobDB(**values))
        return job

    async def complete_job(
        self, job_id: str, added: int, errors: List[str], cancelled: bool = False
    ) -> JobRecord:
        async with self._transaction("complete job") as session:
            row = await session.get(SyncJobDB, job_id)
            if row is None:
                raise NotFoundError(f"job {job_id} not found")
            row.added = added
            row.errors = list(errors)
            row.cancelled = cancelled
            row.completed_at = utc_now()
            await session.flush()
            return JobRecord.model_validate(row, from_attributes=True)

    async def get_job(self, job_id: str) -> JobRecord:
        async with self._transaction("get job") as session:
            row = await session.get(SyncJobDB, job_id)
            if row is None:
                raise NotFoundError(f"job {job_id} not found")
            return JobRecord.model_validate(row, from_attributes=True)
