"""
Census Sync - Store Collaborator

MemberStore is the persistence contract the sync engine is written
against. Lookups raise NotFoundError for missing documents and StoreError
for infrastructure failures; grouped writes are all-or-nothing.

InMemoryMemberStore keeps everything in dictionaries. It enforces the
same per-slot fingerprint uniqueness the SQL indexes enforce, so the
engine behaves identically on both.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Dict, Iterable, List, Optional, Set, TypeVar

from census.errors import DuplicateFingerprintError, NotFoundError, StoreTimeoutError
from census.models import (
    Census, CensusParticipant, JobRecord, MemberGroup, MemberUpdate, Organization, OrgMember,
    ParticipantUpsert, PARTICIPANT_FINGERPRINT_FIELDS, utc_now,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_deadline(call: Awaitable[T], timeout: float, operation: str = "store call") -> T:
    """
    Await a store call, turning an exceeded deadline into StoreTimeoutError.
    """
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise StoreTimeoutError(f"{operation} exceeded {timeout}s deadline") from e


class MemberStore(ABC):
    """Persistence contract for organizations, members and participants"""

    def __init__(self):
        # Coarse write region: conflict checks and the writes they guard
        self.write_lock = asyncio.Lock()

    # ==================== ORGANIZATIONS / CENSUSES / GROUPS ====================

    @abstractmethod
    async def get_organization(self, org_id: str) -> Organization: ...

    @abstractmethod
    async def save_organization(self, org: Organization) -> Organization: ...

    @abstractmethod
    async def get_census(self, census_id: str) -> Census: ...

    @abstractmethod
    async def save_census(self, census: Census) -> Census: ...

    @abstractmethod
    async def get_group(self, group_id: str) -> MemberGroup: ...

    @abstractmethod
    async def save_group(self, group: MemberGroup) -> MemberGroup: ...

    @abstractmethod
    async def add_members_to_group(self, group_id: str, member_ids: List[str]) -> int:
        """Append member ids not already in the group. Returns how many were added."""

    # ==================== MEMBERS ====================

    @abstractmethod
    async def get_member(self, org_id: str, member_id: str) -> OrgMember: ...

    @abstractmethod
    async def get_members(self, member_ids: Iterable[str]) -> Dict[str, OrgMember]:
        """Members by id, across organizations. Missing ids are omitted."""

    @abstractmethod
    async def find_member_ids_by_number(self, org_id: str, member_numbers: Iterable[str]) -> Dict[str, str]:
        """Map member_number -> member id for members of the organization."""

    @abstractmethod
    async def bulk_upsert_members(self, updates: List[MemberUpdate]) -> int:
        """Apply member field masks in one grouped write. Returns members written."""

    @abstractmethod
    async def delete_members(self, org_id: str, member_ids: List[str]) -> int:
        """
        Delete members of the organization together with every participant
        row they own and their group memberships. Returns members deleted.
        """

    # ==================== PARTICIPANTS ====================

    @abstractmethod
    async def get_participant(self, census_id: str, participant_id: str) -> CensusParticipant: ...

    @abstractmethod
    async def list_member_participants(self, member_id: str) -> List[CensusParticipant]:
        """Every participant row of a member, across censuses."""

    @abstractmethod
    async def existing_participant_ids(self, census_id: str, participant_ids: Iterable[str]) -> Set[str]: ...

    @abstractmethod
    async def count_fingerprint_matches(self, census_id: str, participant_id: str, values: List[str]) -> int:
        """
        Count participants of the census, other than `participant_id`, with
        any fingerprint slot equal to any of `values`.
        """

    @abstractmethod
    async def find_participant_by_fingerprints(self, census_id: str, values: List[str]) -> Optional[CensusParticipant]: ...

    @abstractmethod
    async def bulk_upsert_participants(self, upserts: List[ParticipantUpsert]) -> int:
        """
        Apply participant upserts in one grouped write. Raises
        DuplicateFingerprintError, writing nothing, if a slot value would be
        shared by two participants of one census.
        """

    @abstractmethod
    async def delete_participant(self, census_id: str, participant_id: str) -> bool: ...

    # ==================== JOBS ====================

    @abstractmethod
    async def create_job(self, job: JobRecord) -> JobRecord: ...

    @abstractmethod
    async def complete_job(
        self, job_id: str, added: int, errors: List[str], cancelled: bool = False
    ) -> JobRecord:
        """Record the final outcome of a job. Raises NotFoundError for unknown jobs."""

    @abstractmethod
    async def get_job(self, job_id: str) -> JobRecord: ...


class InMemoryMemberStore(MemberStore):
    """Dictionary backed store for tests and local tooling"""

    def __init__(self):
        super().__init__()
        self.organizations: Dict[str, Organization] = {}
        self.censuses: Dict[str, Census] = {}
        self.groups: Dict[str, MemberGroup] = {}
        self.members: Dict[str, OrgMember] = {}
        self.participants: Dict[tuple, CensusParticipant] = {}
        self.jobs: Dict[str, JobRecord] = {}

    async def get_organization(self, org_id: str) -> Organization:
        if org_id not in self.organizations:
            raise NotFoundError(f"organization {org_id} not found")
        return self.organizations[org_id].model_copy(deep=True)

    async def save_organization(self, org: Organization) -> Organization:
        self.organizations[org.id] = org.model_copy(deep=True)
        return org

    async def get_census(self, census_id: str) -> Census:
        if census_id not in self.censuses:
            raise NotFoundError(f"census {census_id} not found")
        return self.censuses[census_id].model_copy(deep=True)

    async def save_census(self, census: Census) -> Census:
        self.censuses[census.id] = census.model_copy(deep=True)
        return census

    async def get_group(self, group_id: str) -> MemberGroup:
        if group_id not in self.groups:
            raise NotFoundError(f"group {group_id} not found")
        return self.groups[group_id].model_copy(deep=True)

    async def save_group(self, group: MemberGroup) -> MemberGroup:
        self.groups[group.id] = group.model_copy(deep=True)
        return group

    async def add_members_to_group(self, group_id: str, member_ids: List[str]) -> int:
        if group_id not in self.groups:
            raise NotFoundError(f"group {group_id} not found")
        group = self.groups[group_id]
        added = 0
        for member_id in member_ids:
            if member_id not in group.member_ids:
                group.member_ids.append(member_id)
                added += 1
        group.updated_at = utc_now()
        return added

    async def get_member(self, org_id: str, member_id: str) -> OrgMember:
        member = self.members.get(member_id)
        if member is None or member.org_id != org_id:
            raise NotFoundError(f"member {member_id} not found in organization {org_id}")
        return member.model_copy(deep=True)

    async def get_members(self, member_ids: Iterable[str]) -> Dict[str, OrgMember]:
        return {
            member_id: self.members[member_id].model_copy(deep=True)
            for member_id in member_ids
            if member_id in self.members
        }

    async def find_member_ids_by_number(self, org_id: str, member_numbers: Iterable[str]) -> Dict[str, str]:
        wanted = set(member_numbers)
        return {
            m.member_number: m.id
            for m in self.members.values()
            if m.org_id == org_id and m.member_number and m.member_number in wanted
        }

    async def bulk_upsert_members(self, updates: List[MemberUpdate]) -> int:
        for update in updates:
            existing = self.members.get(update.member_id)
            if existing is None:
                values = {**update.on_insert, **update.set_fields}
                if values.get("updated_at") is None:
                    values.pop("updated_at", None)
                self.members[update.member_id] = OrgMember(id=update.member_id, **values)
            else:
                self.members[update.member_id] = existing.model_copy(update=update.set_fields, deep=True)
        return len(updates)

    async def delete_members(self, org_id: str, member_ids: List[str]) -> int:
        doomed = {
            member_id for member_id in member_ids
            if member_id in self.members and self.members[member_id].org_id == org_id
        }
        for member_id in doomed:
            del self.members[member_id]
        for key in [k for k in self.participants if k[1] in doomed]:
            del self.participants[key]
        for group in self.groups.values():
            if group.org_id == org_id:
                group.member_ids = [m for m in group.member_ids if m not in doomed]
        return len(doomed)

    async def get_participant(self, census_id: str, participant_id: str) -> CensusParticipant:
        participant = self.participants.get((census_id, participant_id))
        if participant is None:
            raise NotFoundError(f"participant {participant_id} not found in census {census_id}")
        return participant.model_copy()

    async def list_member_participants(self, member_id: str) -> List[CensusParticipant]:
        return [p.model_copy() for (_, pid), p in self.participants.items() if pid == member_id]

    async def existing_participant_ids(self, census_id: str, participant_ids: Iterable[str]) -> Set[str]:
        return {pid for pid in participant_ids if (census_id, pid) in self.participants}

    def _census_participants(self, census_id: str) -> List[CensusParticipant]:
        return [p for (cid, _), p in self.participants.items() if cid == census_id]

    async def count_fingerprint_matches(self, census_id: str, participant_id: str, values: List[str]) -> int:
        wanted = set(values)
        count = 0
        for participant in self._census_participants(census_id):
            if participant.participant_id == participant_id:
                continue
            if wanted.intersection(participant.fingerprints.values()):
                count += 1
        return count

    async def find_participant_by_fingerprints(self, census_id: str, values: List[str]) -> Optional[CensusParticipant]:
        wanted = set(values)
        for participant in self._census_participants(census_id):
            if wanted.intersection(participant.fingerprints.values()):
                return participant.model_copy()
        return None

    async def bulk_upsert_participants(self, upserts: List[ParticipantUpsert]) -> int:
        staged = dict(self.participants)
        for upsert in upserts:
            key = (upsert.census_id, upsert.participant_id)
            current = staged.get(key)
            if current is None:
                staged[key] = CensusParticipant(
                    participant_id=upsert.participant_id,
                    census_id=upsert.census_id,
                    **upsert.on_insert,
                    **upsert.set_fields,
                )
            else:
                staged[key] = current.model_copy(update=upsert.set_fields)

        # Per-slot uniqueness, as the SQL unique indexes enforce it
        seen = set()
        for (census_id, participant_id), participant in staged.items():
            for slot in PARTICIPANT_FINGERPRINT_FIELDS:
                value = getattr(participant, slot)
                if not value:
                    continue
                if (census_id, slot, value) in seen:
                    raise DuplicateFingerprintError(census_id, participant_id)
                seen.add((census_id, slot, value))

        self.participants = staged
        return len(upserts)

    async def delete_participant(self, census_id: str, participant_id: str) -> bool:
        return self.participants.pop((census_id, participant_id), None) is not None

    async def create_job(self, job: JobRecord) -> JobRecord:
        self.jobs[job.job_id] = job.model_copy(deep=True)
        return job

    async def complete_job(
        self, job_id: str, added: int, errors: List[str], cancelled: bool = False
    ) -> JobRecord:
        if job_id not in self.jobs:
            raise NotFoundError(f"job {job_id} not found")
        job = self.jobs[job_id].model_copy(update={
            "added": added,
            "errors": list(errors),
            "cancelled": cancelled,
            "completed_at": utc_now(),
        })
        self.jobs[job_id] = job
        return job.model_copy(deep=True)

    async def get_job(self, job_id: str) -> JobRecord:
        if job_id not in self.jobs:
            raise NotFoundError(f"job {job_id} not found")
        return self.jobs[job_id].model_copy(deep=True)
