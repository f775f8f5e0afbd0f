"""
Census Sync - Bulk Upsert Engine

Synchronizes a list of member records into an organization's member pool
and, optionally, into a census and a group.

Records are processed in sequential chunks. Per chunk:
1. Resolve identities (records without id are matched by member_number)
2. Sanitize and hash every record (outside the write lock)
3. Under the write lock: load the stored members (org ownership, preserved
   phone/password hashes), compute fingerprints, drop in-chunk duplicates,
   run conflict checks, then the grouped member write, grouped participant
   write and group membership append

A failing chunk is recorded as a ChunkError and the job moves on.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from census.conflicts import ConflictDetector
from census.errors import CensusSyncError, DuplicateFingerprintError
from census.fingerprints import calculate_fingerprints
from census.models import (
    Census, ChunkError, FieldWarning, Fingerprints, MemberConflict, MemberGroup,
    MemberRecord, MemberUpdate, Organization, OrgMember, ParticipantUpsert, utc_now,
)
from census.progress import JobCounters
from census.sanitizer import sanitize_member
from census.storage import MemberStore, with_deadline
from utils.hashing import Argon2Hasher
from sentry_integration import capture_exception

logger = logging.getLogger(__name__)

SanitizedMember = Tuple[OrgMember, List[FieldWarning]]


class BulkUpsertEngine:
    """Chunked member/participant synchronization for one job"""

    def __init__(
        self,
        store: MemberStore,
        org: Organization,
        salt: str,
        records: List[MemberRecord],
        census: Optional[Census] = None,
        group: Optional[MemberGroup] = None,
        hasher: Optional[Argon2Hasher] = None,
        batch_size: int = 200,
        timeout: float = 10.0,
        batch_timeout: float = 20.0,
        default_country: Optional[str] = None,
    ):
        self.store = store
        self.org = org
        self.salt = salt
        self.records = records
        self.census = census
        self.group = group
        self.hasher = hasher
        self.batch_size = batch_size
        self.timeout = timeout
        self.batch_timeout = batch_timeout
        self.default_country = default_country
        self.detector = ConflictDetector(store, timeout=timeout)

        self.counters = JobCounters(total=len(records))
        self.warnings: List[FieldWarning] = []
        self.conflicts: List[MemberConflict] = []
        self.errors: List[ChunkError] = []

    def chunks(self) -> List[List[MemberRecord]]:
        return [
            self.records[i:i + self.batch_size]
            for i in range(0, len(self.records), self.batch_size)
        ]

    async def run(self, cancel_event: Optional[asyncio.Event] = None):
        """Process every chunk in order, stopping early only on cancellation."""
        for index, chunk in enumerate(self.chunks()):
            if cancel_event is not None and cancel_event.is_set():
                self.counters.cancelled = True
                logger.info(
                    f"Bulk sync cancelled after {self.counters.processed}/{self.counters.total} records"
                )
                break

            try:
                added = await self.process_chunk(chunk)
            except CensusSyncError as e:
                self._record_chunk_error(index, chunk, e, e.retryable)
                added = 0
            except Exception as e:
                logger.exception(f"Unexpected error in chunk {index}")
                self._record_chunk_error(index, chunk, e, False)
                added = 0

            self.counters.advance(len(chunk), added)

    def _record_chunk_error(self, index: int, chunk: List[MemberRecord], error: Exception, retryable: bool):
        first = chunk[0].id or chunk[0].member_number or f"#{index * self.batch_size}"
        last = chunk[-1].id or chunk[-1].member_number or f"#{index * self.batch_size + len(chunk) - 1}"
        self.errors.append(ChunkError(
            first_member_id=first,
            last_member_id=last,
            message=str(error),
            retryable=retryable,
        ))
        logger.error(f"Chunk {index} ({first} - {last}) failed: {error}")
        capture_exception(error, chunk_index=index, org_id=self.org.id)

    # ==================== CHUNK PIPELINE ====================

    async def _resolve_identities(self, chunk: List[MemberRecord]) -> List[MemberRecord]:
        numbers = [r.member_number.strip() for r in chunk if not r.id and r.member_number.strip()]
        if not numbers:
            return list(chunk)

        known = await with_deadline(
            self.store.find_member_ids_by_number(self.org.id, numbers),
            self.timeout,
            "member number lookup",
        )
        resolved = []
        for record in chunk:
            number = record.member_number.strip()
            if not record.id and number in known:
                record = record.model_copy(update={"id": known[number]})
            resolved.append(record)
        return resolved

    def _sanitize_chunk(self, records: List[MemberRecord]) -> List[SanitizedMember]:
        now = utc_now()
        return [
            sanitize_member(
                self.org, record, self.salt, now,
                hasher=self.hasher,
                default_country=self.default_country,
            )
            for record in records
        ]

    async def _merge_stored(self, sanitized: List[SanitizedMember]) -> List[OrgMember]:
        """
        Reconcile sanitized members with the stored ones. Must run under the
        write lock: stored secrets and created_at are carried over from this
        read, and members created concurrently under the same member number
        are picked up instead of duplicated.
        """
        new_numbers = [m.member_number for m, _ in sanitized if m.created_at is not None and m.member_number]
        known: Dict[str, str] = {}
        if new_numbers:
            known = await with_deadline(
                self.store.find_member_ids_by_number(self.org.id, new_numbers),
                self.timeout,
                "member number lookup",
            )

        remapped: List[SanitizedMember] = []
        for member, warnings in sanitized:
            existing_id = known.get(member.member_number) if member.created_at is not None else None
            if existing_id:
                member = member.model_copy(update={
                    "id": existing_id,
                    "created_at": None,
                    "updated_at": member.created_at,
                })
                warnings = [w.model_copy(update={"member_id": existing_id}) for w in warnings]
            remapped.append((member, warnings))

        stored = await with_deadline(
            self.store.get_members([m.id for m, _ in remapped]),
            self.timeout,
            "member lookup",
        )

        members: Dict[str, OrgMember] = {}
        for member, warnings in remapped:
            previous = stored.get(member.id)
            if previous is not None and previous.org_id != self.org.id:
                self.warnings.append(FieldWarning(
                    member_id=member.id,
                    field="id",
                    message="member belongs to another organization",
                ))
                continue

            self.warnings.extend(warnings)
            if previous is not None:
                member.created_at = previous.created_at
                member.phone_hash = member.phone_hash or previous.phone_hash
                member.password_hash = member.password_hash or previous.password_hash

            # Later records for the same member replace earlier ones
            members.pop(member.id, None)
            members[member.id] = member
        return list(members.values())

    async def process_chunk(self, chunk: List[MemberRecord]) -> int:
        """Synchronize one chunk. Returns the number of members written."""
        records = await self._resolve_identities(chunk)

        # Argon2 is CPU bound; keep the event loop (and the reporter) running
        sanitized = await asyncio.to_thread(self._sanitize_chunk, records)
        if not sanitized:
            return 0

        async with self.store.write_lock:
            members = await self._merge_stored(sanitized)
            if not members:
                return 0

            accepted: List[Tuple[OrgMember, Optional[Fingerprints]]] = []
            if self.census is None:
                accepted = [(m, None) for m in members]
            else:
                computed = [(m, calculate_fingerprints(self.census, m)) for m in members]
                rejected = ConflictDetector.find_duplicates_in_batch(
                    [(m.id, fp) for m, fp in computed]
                )
                for member, fingerprints in computed:
                    if member.id in rejected:
                        self._record_conflict(member.id)
                        continue
                    try:
                        await self.detector.check(self.census.id, member.id, fingerprints)
                    except DuplicateFingerprintError:
                        self._record_conflict(member.id)
                        continue
                    accepted.append((member, fingerprints))

            if not accepted:
                return 0

            now = utc_now()
            written = await with_deadline(
                self.store.bulk_upsert_members([MemberUpdate.from_member(m, now) for m, _ in accepted]),
                self.batch_timeout,
                "member batch write",
            )

            if self.census is not None:
                await with_deadline(
                    self.store.bulk_upsert_participants([
                        ParticipantUpsert(
                            census_id=self.census.id,
                            participant_id=m.id,
                            fingerprints=fp,
                            now=now,
                        )
                        for m, fp in accepted
                    ]),
                    self.batch_timeout,
                    "participant batch write",
                )

            if self.group is not None:
                await with_deadline(
                    self.store.add_members_to_group(self.group.id, [m.id for m, _ in accepted]),
                    self.batch_timeout,
                    "group membership write",
                )

        return written

    def _record_conflict(self, member_id: str):
        self.conflicts.append(MemberConflict(census_id=self.census.id, member_id=member_id))
