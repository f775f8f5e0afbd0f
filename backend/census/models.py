"""
Census Sync - Domain Models

Core entities for member/participant synchronization:
- Organization: owner of a member pool
- Census: configured list of eligible participants and its login fields
- MemberGroup: a named subset of members, precursor of a census
- MemberRecord: raw member data as received (transient, may hold PII)
- OrgMember: sanitized member as persisted (no raw phone/password)
- CensusParticipant: member <-> census link carrying login fingerprints
- BulkJobStatus / BulkJobReport: progress and outcome of a bulk job

Write operations go through explicit field masks (MemberUpdate,
ParticipantUpsert) so every operation names exactly what it may change.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, date, timezone
from typing import List, Optional, Dict, Any
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field


def generate_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ==================== ENUMS ====================

class AuthField(str, Enum):
    """Member attributes usable as the identity half of a fingerprint"""
    NAME = "name"
    SURNAME = "surname"
    MEMBER_NUMBER = "memberNumber"
    NATIONAL_ID = "nationalId"
    BIRTH_DATE = "birthDate"


class TwoFaField(str, Enum):
    """Member attributes usable as a verification channel"""
    EMAIL = "email"
    PHONE = "phone"


class FingerprintSlot(str, Enum):
    PRIMARY = "primary"
    SECONDARY_EMAIL = "secondaryEmail"
    SECONDARY_PHONE = "secondaryPhone"


class CensusType(str, Enum):
    """Login channel mix derived from the two-factor fields"""
    AUTH_ONLY = "auth"
    MAIL = "mail"
    SMS = "sms"
    SMS_OR_MAIL = "sms_or_mail"


# ==================== ORGANIZATION / CENSUS / GROUP ====================

class Organization(BaseModel):
    id: str
    name: str = ""
    country: str = ""  # ISO-3166 alpha-2, default region for phone numbers
    created_at: datetime = Field(default_factory=utc_now)


class Census(BaseModel):
    id: str = Field(default_factory=generate_id)
    org_id: str
    auth_fields: List[AuthField] = Field(default_factory=list)
    two_fa_fields: List[TwoFaField] = Field(default_factory=list)
    group_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None

    @property
    def has_login_fields(self) -> bool:
        return bool(self.auth_fields or self.two_fa_fields)

    @property
    def census_type(self) -> CensusType:
        email = TwoFaField.EMAIL in self.two_fa_fields
        phone = TwoFaField.PHONE in self.two_fa_fields
        if email and phone:
            return CensusType.SMS_OR_MAIL
        if phone:
            return CensusType.SMS
        if email:
            return CensusType.MAIL
        return CensusType.AUTH_ONLY


class MemberGroup(BaseModel):
    id: str = Field(default_factory=generate_id)
    org_id: str
    title: str = ""
    description: str = ""
    member_ids: List[str] = Field(default_factory=list)
    census_ids: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None


# ==================== MEMBERS ====================

class MemberRecord(BaseModel):
    """
    A member as supplied by an import or an edit.

    `phone` and `password` are plaintext and must never reach the store;
    the sanitizer turns them into `phone_hash` / `password_hash`.
    """
    id: Optional[str] = None
    email: str = ""
    phone: str = ""
    password: str = ""
    member_number: str = ""
    national_id: str = ""
    name: str = ""
    surname: str = ""
    birth_date: str = ""
    other: Dict[str, Any] = Field(default_factory=dict)


class OrgMember(BaseModel):
    id: str
    org_id: str
    email: str = ""
    phone_hash: str = ""
    password_hash: str = ""
    member_number: str = ""
    national_id: str = ""
    name: str = ""
    surname: str = ""
    birth_date: str = ""  # normalized YYYY-MM-DD
    parsed_birth_date: Optional[date] = None
    other: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ==================== PARTICIPANTS ====================

class Fingerprints(BaseModel):
    """Login fingerprints of one member under one census configuration"""
    model_config = ConfigDict(frozen=True)

    primary: str
    secondary_email: Optional[str] = None
    secondary_phone: Optional[str] = None

    def slots(self) -> Dict[FingerprintSlot, str]:
        """Slot name -> value, only for the slots that are present."""
        result = {FingerprintSlot.PRIMARY: self.primary}
        if self.secondary_email:
            result[FingerprintSlot.SECONDARY_EMAIL] = self.secondary_email
        if self.secondary_phone:
            result[FingerprintSlot.SECONDARY_PHONE] = self.secondary_phone
        return result

    def values(self) -> List[str]:
        return list(self.slots().values())


class CensusParticipant(BaseModel):
    participant_id: str
    census_id: str
    login_hash: str
    login_hash_email: Optional[str] = None
    login_hash_phone: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def fingerprints(self) -> Fingerprints:
        return Fingerprints(
            primary=self.login_hash,
            secondary_email=self.login_hash_email,
            secondary_phone=self.login_hash_phone,
        )


# ==================== WRITE FIELD MASKS ====================

# Fields a sync overwrites on every run
MEMBER_PROFILE_FIELDS = (
    "org_id", "email", "member_number", "national_id", "name", "surname",
    "birth_date", "parsed_birth_date", "other",
)

# Fields only written when a new value was supplied
MEMBER_SECRET_FIELDS = ("phone_hash", "password_hash")

PARTICIPANT_FINGERPRINT_FIELDS = ("login_hash", "login_hash_email", "login_hash_phone")


@dataclass
class MemberUpdate:
    """Upsert-by-identity of one member"""
    member_id: str
    org_id: str
    set_fields: Dict[str, Any]
    on_insert: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_member(cls, member: OrgMember, now: datetime) -> "MemberUpdate":
        set_fields = {name: getattr(member, name) for name in MEMBER_PROFILE_FIELDS}
        for name in MEMBER_SECRET_FIELDS:
            value = getattr(member, name)
            if value:
                set_fields[name] = value
        set_fields["updated_at"] = member.updated_at
        return cls(
            member_id=member.id,
            org_id=member.org_id,
            set_fields=set_fields,
            on_insert={"created_at": member.created_at or now},
        )


@dataclass
class ParticipantUpsert:
    """Upsert-by-(participant, census) of one participant's fingerprints"""
    census_id: str
    participant_id: str
    fingerprints: Fingerprints
    now: datetime

    @property
    def set_fields(self) -> Dict[str, Any]:
        return {
            "login_hash": self.fingerprints.primary,
            "login_hash_email": self.fingerprints.secondary_email,
            "login_hash_phone": self.fingerprints.secondary_phone,
            "updated_at": self.now,
        }

    @property
    def on_insert(self) -> Dict[str, Any]:
        return {"created_at": self.now}


# ==================== DIAGNOSTICS ====================

class FieldWarning(BaseModel):
    """A single member field that failed normalization and was cleared"""
    member_id: Optional[str] = None
    field: str
    message: str

    def __str__(self) -> str:
        prefix = f"{self.member_id}: " if self.member_id else ""
        return f"{prefix}{self.field}: {self.message}"


class MemberConflict(BaseModel):
    """A member rejected because its fingerprints collide in a census"""
    census_id: str
    member_id: str
    message: str = "update would create duplicates"

    def __str__(self) -> str:
        return f"member {self.member_id} in census {self.census_id}: {self.message}"


class ChunkError(BaseModel):
    """A chunk whose store write failed; the job continued after it"""
    first_member_id: str
    last_member_id: str
    message: str
    retryable: bool = True

    def __str__(self) -> str:
        return f"batch {self.first_member_id} - {self.last_member_id}: {self.message}"


# ==================== JOB STATUS ====================

class BulkJobStatus(BaseModel):
    """Immutable progress snapshot of a bulk job"""
    model_config = ConfigDict(frozen=True)

    processed: int = 0
    total: int = 0
    added: int = 0
    cancelled: bool = False

    @property
    def progress(self) -> int:
        """Percentage of records processed."""
        if self.total == 0:
            return 100
        return (self.processed * 100) // self.total

    @property
    def is_complete(self) -> bool:
        return self.processed == self.total


class BulkJobReport(BaseModel):
    total: int
    processed: int
    added: int
    cancelled: bool = False
    warnings: List[FieldWarning] = Field(default_factory=list)
    conflicts: List[MemberConflict] = Field(default_factory=list)
    errors: List[ChunkError] = Field(default_factory=list)

    def summary(self) -> str:
        return (
            f"{self.added} of {self.total} added, "
            f"{len(self.warnings)} warnings, "
            f"{len(self.conflicts)} conflicts, "
            f"{len(self.errors)} failed batches"
        )

    def diagnostics(self) -> List[str]:
        return [str(item) for item in (*self.errors, *self.conflicts, *self.warnings)]


class MemberUpsertResult(BaseModel):
    member_id: str
    created: bool
    warnings: List[FieldWarning] = Field(default_factory=list)
    censuses_updated: List[str] = Field(default_factory=list)


# ==================== GROUP PRE-FLIGHT ====================

class GroupFieldsCheck(BaseModel):
    """
    Outcome of checking a group's members against candidate login fields.

    Members with an empty field are only listed in missing_data; members
    whose auth field values are shared with another member are all listed
    in duplicates.
    """
    members: List[str] = Field(default_factory=list)
    duplicates: List[str] = Field(default_factory=list)
    missing_data: List[str] = Field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not self.duplicates and not self.missing_data


# ==================== JOB RECORDS ====================

class JobType(str, Enum):
    ORG_MEMBERS = "org_members"
    CENSUS_PARTICIPANTS = "census_participants"


class JobRecord(BaseModel):
    """Persisted outcome of a bulk job, readable after its stream closed"""
    job_id: str
    org_id: str
    job_type: JobType = JobType.ORG_MEMBERS
    total: int = 0
    added: int = 0
    errors: List[str] = Field(default_factory=list)
    cancelled: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None
