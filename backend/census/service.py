"""
Census Sync - Member Sync Service

Entry points of the sync subsystem:

- start_bulk_sync / add_bulk_members: background bulk jobs with progress
- upsert_member: single member edit that keeps every census consistent
- add_participants_by_member_ids / sync_group_to_census: publish members
- delete_members / remove_participant: unlink and delete
- find_participant_by_login: resolve login data to a participant
- check_group_members_fields: pre-flight check of a group before a census
- get_job: persisted outcome of a bulk job

Preconditions are checked before a job starts and raise InvalidInputError.
Once a job is accepted, failures are reported through BulkJob.wait().
"""

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from census.bulk import BulkUpsertEngine
from census.conflicts import ConflictDetector
from census.errors import (
    CensusSyncError, DuplicateFingerprintError, InvalidInputError, NotFoundError,
)
from census.fingerprints import (
    AUTH_FIELD_ATTRIBUTES, TWO_FA_FIELD_ATTRIBUTES, calculate_fingerprints, validate_census_fields,
)
from census.models import (
    AuthField, BulkJobReport, BulkJobStatus, Census, CensusParticipant, GroupFieldsCheck,
    JobRecord, JobType, MemberGroup, MemberRecord, MemberUpdate, MemberUpsertResult,
    Organization, ParticipantUpsert, TwoFaField, generate_id, utc_now,
)
from census.progress import ProgressReporter, ProgressStream
from census.sanitizer import sanitize_member
from census.storage import MemberStore, with_deadline
from config import get_settings
from logging_config import set_job_context, clear_job_context
from utils.hashing import Argon2Hasher

logger = logging.getLogger(__name__)


class BulkJob:
    """Handle to a running bulk sync"""

    def __init__(self, job_id: str, engine: Optional[BulkUpsertEngine], stream: ProgressStream):
        self.id = job_id
        self.engine = engine
        self.stream = stream
        self.task: Optional[asyncio.Task] = None
        self.reporter_task: Optional[asyncio.Task] = None
        self.cancel_event = asyncio.Event()
        self.done = asyncio.Event()

    @property
    def status(self) -> BulkJobStatus:
        if self.engine is None:
            return BulkJobStatus()
        return self.engine.counters.snapshot()

    @property
    def errors(self):
        return self.engine.errors if self.engine else []

    @property
    def warnings(self):
        return self.engine.warnings if self.engine else []

    @property
    def conflicts(self):
        return self.engine.conflicts if self.engine else []

    def cancel(self):
        """Stop after the chunk in progress; the final snapshot is marked cancelled."""
        self.cancel_event.set()

    async def wait(self) -> BulkJobReport:
        """Wait for the job and its reporter to finish and return the report."""
        if self.task is not None:
            await self.task
        if self.reporter_task is not None:
            await self.reporter_task

        status = self.status
        return BulkJobReport(
            total=status.total,
            processed=status.processed,
            added=status.added,
            cancelled=status.cancelled,
            warnings=list(self.warnings),
            conflicts=list(self.conflicts),
            errors=list(self.errors),
        )


class MemberSyncService:
    """Member and census participant synchronization"""

    def __init__(
        self,
        store: MemberStore,
        hasher: Optional[Argon2Hasher] = None,
        batch_size: Optional[int] = None,
        progress_interval: Optional[float] = None,
        progress_buffer: Optional[int] = None,
        timeout: Optional[float] = None,
        batch_timeout: Optional[float] = None,
        default_country: Optional[str] = None,
    ):
        settings = get_settings()
        self.store = store
        self.hasher = hasher
        self.batch_size = batch_size or settings.BULK_BATCH_SIZE
        self.progress_interval = progress_interval or settings.PROGRESS_INTERVAL_SECONDS
        self.progress_buffer = progress_buffer or settings.PROGRESS_BUFFER_SIZE
        self.timeout = timeout or settings.STORE_TIMEOUT_SECONDS
        self.batch_timeout = batch_timeout or settings.STORE_BATCH_TIMEOUT_SECONDS
        self.default_country = default_country or settings.DEFAULT_PHONE_COUNTRY
        self.detector = ConflictDetector(store, timeout=self.timeout)

    async def _lookup(self, call, operation: str):
        return await with_deadline(call, self.timeout, operation)

    async def _precondition(self, call, operation: str):
        """Store lookup whose NotFoundError means the caller passed a bad id."""
        try:
            return await self._lookup(call, operation)
        except NotFoundError as e:
            raise InvalidInputError(str(e)) from e

    # ==================== BULK ====================

    async def start_bulk_sync(
        self,
        org_id: str,
        salt: str,
        records: List[MemberRecord],
        census_id: Optional[str] = None,
        group_id: Optional[str] = None,
    ) -> BulkJob:
        """
        Start a bulk sync of `records` into the organization, optionally
        publishing them as participants of a census and members of a group.

        Raises:
            InvalidInputError: missing ids, unknown organization, census or
                group, or a census without login fields
        """
        if not org_id:
            raise InvalidInputError("organization id is required")
        if not salt:
            raise InvalidInputError("salt is required")

        org: Organization = await self._precondition(self.store.get_organization(org_id), "organization lookup")

        census: Optional[Census] = None
        if census_id:
            census = await self._precondition(self.store.get_census(census_id), "census lookup")
            if census.org_id != org.id:
                raise InvalidInputError(f"census {census_id} does not belong to organization {org_id}")
            validate_census_fields(census)

        group: Optional[MemberGroup] = None
        if group_id:
            group = await self._precondition(self.store.get_group(group_id), "group lookup")
            if group.org_id != org.id:
                raise InvalidInputError(f"group {group_id} does not belong to organization {org_id}")

        job_id = generate_id()
        job_record = JobRecord(
            job_id=job_id,
            org_id=org.id,
            job_type=JobType.CENSUS_PARTICIPANTS if census else JobType.ORG_MEMBERS,
            total=len(records),
        )

        if not records:
            logger.info(f"Bulk sync {job_id}: no records for organization {org_id}")
            await self._persist_job(self.store.create_job(job_record), job_id)
            await self._persist_job(self.store.complete_job(job_id, 0, []), job_id)
            return BulkJob(job_id, None, ProgressStream.closed_stream())

        await self._persist_job(self.store.create_job(job_record), job_id)

        engine = BulkUpsertEngine(
            self.store, org, salt, records,
            census=census,
            group=group,
            hasher=self.hasher,
            batch_size=self.batch_size,
            timeout=self.timeout,
            batch_timeout=self.batch_timeout,
            default_country=self.default_country,
        )
        job = BulkJob(job_id, engine, ProgressStream(capacity=self.progress_buffer))
        reporter = ProgressReporter(
            job.stream,
            engine.counters.snapshot,
            job.done,
            interval=self.progress_interval,
            job_id=job_id,
        )

        logger.info(
            f"Bulk sync {job_id} started: {len(records)} records, organization {org_id}",
            extra={"census_id": census_id, "group_id": group_id},
        )
        job.reporter_task = asyncio.create_task(reporter.run())
        job.task = asyncio.create_task(self._run_job(job, census_id))
        return job

    async def _run_job(self, job: BulkJob, census_id: Optional[str]):
        token = set_job_context(job_id=job.id, org_id=job.engine.org.id, census_id=census_id)
        try:
            await job.engine.run(job.cancel_event)
            status = job.status
            logger.info(
                f"Bulk sync {job.id} finished: {status.added} of {status.total} added, "
                f"{len(job.warnings)} warnings, {len(job.conflicts)} conflicts, "
                f"{len(job.errors)} failed batches"
            )
            await self._persist_job(
                self.store.complete_job(
                    job.id,
                    status.added,
                    [str(item) for item in (*job.errors, *job.conflicts)],
                    cancelled=status.cancelled,
                ),
                job.id,
            )
        finally:
            job.done.set()
            clear_job_context(token)

    async def _persist_job(self, call, job_id: str):
        """Job records are informational; failing to write one never fails the job."""
        try:
            await with_deadline(call, self.timeout, "job record write")
        except CensusSyncError as e:
            logger.warning(f"Could not persist job record {job_id}: {e}")

    async def get_job(self, job_id: str) -> JobRecord:
        """
        Persisted outcome of a bulk job.

        Raises:
            NotFoundError: unknown job id
        """
        return await self._lookup(self.store.get_job(job_id), "job lookup")

    async def add_bulk_members(self, org_id: str, records: List[MemberRecord], salt: str) -> BulkJob:
        """Bulk sync into the member pool only."""
        return await self.start_bulk_sync(org_id, salt, records)

    # ==================== SINGLE MEMBER ====================

    async def upsert_member(self, org_id: str, record: MemberRecord, salt: str) -> MemberUpsertResult:
        """
        Create or update one member and recompute its fingerprints in every
        census it participates in.

        Raises:
            InvalidInputError: unknown organization, or member owned by another one
            DuplicateFingerprintError: the update would collide in a census;
                nothing is written
            StoreError: infrastructure failure, safe to retry
        """
        if not org_id:
            raise InvalidInputError("organization id is required")

        org = await self._precondition(self.store.get_organization(org_id), "organization lookup")

        member, warnings = await asyncio.to_thread(
            sanitize_member, org, record, salt, utc_now(),
            hasher=self.hasher,
            default_country=self.default_country,
        )

        now = utc_now()
        async with self.store.write_lock:
            # Everything the write depends on is read under the lock
            existing = None
            participants: List[CensusParticipant] = []
            if record.id:
                found = await self._lookup(self.store.get_members([record.id]), "member lookup")
                existing = found.get(record.id)
            if existing is not None:
                if existing.org_id != org.id:
                    raise InvalidInputError(f"member {record.id} belongs to another organization")
                member.created_at = existing.created_at
                member.phone_hash = member.phone_hash or existing.phone_hash
                member.password_hash = member.password_hash or existing.password_hash
                participants = await self._lookup(
                    self.store.list_member_participants(member.id), "participant lookup"
                )

            upserts = []
            for participant in participants:
                census = await self._lookup(self.store.get_census(participant.census_id), "census lookup")
                fingerprints = calculate_fingerprints(census, member)
                await self.detector.check(census.id, member.id, fingerprints)
                upserts.append(ParticipantUpsert(
                    census_id=census.id,
                    participant_id=member.id,
                    fingerprints=fingerprints,
                    now=now,
                ))

            await with_deadline(
                self.store.bulk_upsert_members([MemberUpdate.from_member(member, now)]),
                self.timeout,
                "member write",
            )
            if upserts:
                await with_deadline(
                    self.store.bulk_upsert_participants(upserts),
                    self.timeout,
                    "participant write",
                )

        logger.info(f"Member {member.id} {'updated' if existing else 'created'} in organization {org_id}")
        return MemberUpsertResult(
            member_id=member.id,
            created=existing is None,
            warnings=warnings,
            censuses_updated=[u.census_id for u in upserts],
        )

    # ==================== PARTICIPANTS ====================

    async def add_participants_by_member_ids(
        self, census_id: str, member_ids: List[str]
    ) -> Tuple[int, List[CensusSyncError]]:
        """
        Publish existing members of the census organization as participants.

        Members that already participate are skipped. Returns the number of
        participants added and the per-member errors (unknown member,
        fingerprint conflict).
        """
        if not census_id:
            raise InvalidInputError("census id is required")
        census = await self._precondition(self.store.get_census(census_id), "census lookup")
        validate_census_fields(census)

        unique_ids = list(dict.fromkeys(member_ids))
        errors: List[CensusSyncError] = []
        added = 0
        now = utc_now()

        async with self.store.write_lock:
            existing = await self._lookup(
                self.store.existing_participant_ids(census.id, unique_ids), "participant lookup"
            )
            members = await self._lookup(self.store.get_members(unique_ids), "member lookup")

            upserts = []
            owners = {}
            for member_id in unique_ids:
                if member_id in existing:
                    continue
                member = members.get(member_id)
                if member is None or member.org_id != census.org_id:
                    errors.append(NotFoundError(f"member {member_id} not found in organization {census.org_id}"))
                    continue

                fingerprints = calculate_fingerprints(census, member)
                try:
                    await self.detector.check(census.id, member_id, fingerprints)
                except DuplicateFingerprintError as e:
                    errors.append(e)
                    continue
                if any(v in owners for v in fingerprints.values()):
                    errors.append(DuplicateFingerprintError(census.id, member_id))
                    continue
                owners.update({v: member_id for v in fingerprints.values()})

                upserts.append(ParticipantUpsert(
                    census_id=census.id,
                    participant_id=member_id,
                    fingerprints=fingerprints,
                    now=now,
                ))

            if upserts:
                added = await with_deadline(
                    self.store.bulk_upsert_participants(upserts),
                    self.batch_timeout,
                    "participant batch write",
                )

        logger.info(f"Census {census_id}: {added} participants added, {len(errors)} rejected")
        return added, errors

    async def sync_group_to_census(
        self, census_id: str, group_id: Optional[str] = None
    ) -> Tuple[int, List[CensusSyncError]]:
        """Publish the members of a group (the census group by default) as participants."""
        census = await self._precondition(self.store.get_census(census_id), "census lookup")
        group_id = group_id or census.group_id
        if not group_id:
            raise InvalidInputError(f"census {census_id} has no group")
        group = await self._precondition(self.store.get_group(group_id), "group lookup")
        if group.org_id != census.org_id:
            raise InvalidInputError(f"group {group_id} does not belong to organization {census.org_id}")

        added, errors = await self.add_participants_by_member_ids(census.id, group.member_ids)
        if census.group_id != group.id or census.id not in group.census_ids:
            census.group_id = group.id
            census.updated_at = utc_now()
            await self._lookup(self.store.save_census(census), "census write")
            if census.id not in group.census_ids:
                group.census_ids.append(census.id)
                await self._lookup(self.store.save_group(group), "group write")
        return added, errors

    async def check_group_members_fields(
        self,
        org_id: str,
        group_id: str,
        auth_fields: List[AuthField],
        two_fa_fields: List[TwoFaField],
    ) -> GroupFieldsCheck:
        """
        Check whether a group's members could be told apart at login with the
        given fields, before a census is created on it.

        Members missing any of the fields are reported in missing_data and not
        checked further. Members sharing the same auth field values are all
        reported in duplicates. Two-factor fields are only checked for
        presence.

        Raises:
            InvalidInputError: no fields, or unknown group of the organization
        """
        if not org_id:
            raise InvalidInputError("organization id is required")
        if not auth_fields and not two_fa_fields:
            raise InvalidInputError("no auth or two-factor fields provided")

        group = await self._precondition(self.store.get_group(group_id), "group lookup")
        if group.org_id != org_id:
            raise InvalidInputError(f"group {group_id} does not belong to organization {org_id}")

        stored = await self._lookup(self.store.get_members(group.member_ids), "member lookup")
        members = [stored[m] for m in dict.fromkeys(group.member_ids) if m in stored and stored[m].org_id == org_id]

        result = GroupFieldsCheck()
        owners: Dict[tuple, List[str]] = {}
        for member in members:
            auth_values = tuple(getattr(member, AUTH_FIELD_ATTRIBUTES[f]) for f in auth_fields)
            two_fa_values = [getattr(member, TWO_FA_FIELD_ATTRIBUTES[f]) for f in two_fa_fields]
            if not all(auth_values) or not all(two_fa_values):
                result.missing_data.append(member.id)
                continue
            if auth_fields:
                owners.setdefault(auth_values, []).append(member.id)
            else:
                result.members.append(member.id)

        for ids in owners.values():
            if len(ids) > 1:
                result.duplicates.extend(ids)
            else:
                result.members.extend(ids)

        logger.info(
            f"Group {group_id}: {len(result.members)} usable, {len(result.duplicates)} duplicated, "
            f"{len(result.missing_data)} with missing data"
        )
        return result

    async def remove_participant(self, census_id: str, member_id: str):
        """Unlink a member from a census. The member itself is kept."""
        async with self.store.write_lock:
            removed = await self._lookup(
                self.store.delete_participant(census_id, member_id), "participant delete"
            )
        if not removed:
            raise NotFoundError(f"participant {member_id} not found in census {census_id}")

    async def delete_members(self, org_id: str, member_ids: List[str]) -> int:
        """Delete members with their participant rows and group memberships."""
        if not org_id:
            raise InvalidInputError("organization id is required")
        if not member_ids:
            return 0
        async with self.store.write_lock:
            deleted = await with_deadline(
                self.store.delete_members(org_id, member_ids),
                self.batch_timeout,
                "member delete",
            )
        logger.info(f"Deleted {deleted} members from organization {org_id}")
        return deleted

    async def find_participant_by_login(self, census_id: str, record: MemberRecord) -> CensusParticipant:
        """
        Resolve login data to a census participant.

        The login record carries the census fields in plain text; the phone,
        if any, is normalized and hashed exactly as during import.
        """
        census = await self._precondition(self.store.get_census(census_id), "census lookup")
        org = await self._precondition(self.store.get_organization(census.org_id), "organization lookup")

        login = record.model_copy(update={"id": None, "password": ""})
        member, _ = await asyncio.to_thread(
            sanitize_member, org, login, "login", utc_now(),
            hasher=self.hasher,
            default_country=self.default_country,
        )
        fingerprints = calculate_fingerprints(census, member)
        participant = await self._lookup(
            self.store.find_participant_by_fingerprints(census.id, fingerprints.values()),
            "participant lookup",
        )
        if participant is None:
            raise NotFoundError(f"no participant of census {census_id} matches the login data")
        return participant
