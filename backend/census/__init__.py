"""
Census Sync

Bulk synchronization of organization members into census participants.

Usage:
    from census import MemberSyncService, InMemoryMemberStore

    service = MemberSyncService(store)
    job = await service.start_bulk_sync(org_id, salt, records, census_id=census_id)
    async for status in job.stream:
        logger.info(f"{status.progress}%")
    report = await job.wait()
"""

from .errors import (
    CensusSyncError,
    InvalidInputError,
    InvalidConfigurationError,
    NotFoundError,
    DuplicateFingerprintError,
    StoreError,
    StoreTimeoutError,
)
from .models import (
    AuthField,
    TwoFaField,
    Organization,
    Census,
    MemberGroup,
    MemberRecord,
    OrgMember,
    CensusParticipant,
    Fingerprints,
    BulkJobStatus,
    BulkJobReport,
    MemberUpsertResult,
    GroupFieldsCheck,
    JobRecord,
    JobType,
)
from .storage import MemberStore, InMemoryMemberStore
from .service import MemberSyncService, BulkJob

__all__ = [
    'CensusSyncError', 'InvalidInputError', 'InvalidConfigurationError',
    'NotFoundError', 'DuplicateFingerprintError', 'StoreError', 'StoreTimeoutError',
    'AuthField', 'TwoFaField', 'Organization', 'Census', 'MemberGroup',
    'MemberRecord', 'OrgMember', 'CensusParticipant', 'Fingerprints',
    'BulkJobStatus', 'BulkJobReport', 'MemberUpsertResult',
    'GroupFieldsCheck', 'JobRecord', 'JobType',
    'MemberStore', 'InMemoryMemberStore', 'MemberSyncService', 'BulkJob',
]
