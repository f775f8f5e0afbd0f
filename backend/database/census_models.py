"""
Census Sync - Database Models

Tables:
- organizations: member pool owners
- censuses: login field configuration per census
- member_groups: named member subsets (member ids kept as JSON list)
- org_members: sanitized members (hashes only, never raw phone/password)
- census_participants: member <-> census link with login fingerprints
- sync_jobs: persisted outcome of bulk jobs

Fingerprint uniqueness is enforced per census and per slot by unique
indexes; NULL secondary slots never collide.
"""

from sqlalchemy import (
    Column, String, Text, Date, DateTime, ForeignKey, Index, Integer, Boolean, JSON
)

from database.connection import Base
from census.models import utc_now


class OrganizationDB(Base):
    __tablename__ = "organizations"

    id = Column(String(64), primary_key=True)
    name = Column(Text, nullable=False, default="")
    country = Column(String(2), nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=utc_now)


class CensusDB(Base):
    __tablename__ = "censuses"

    id = Column(String(64), primary_key=True)
    org_id = Column(String(64), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)

    # Ordered field names, e.g. ["memberNumber", "birthDate"]
    auth_fields = Column(JSON, nullable=False, default=list)
    two_fa_fields = Column(JSON, nullable=False, default=list)

    group_id = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=True)


class MemberGroupDB(Base):
    __tablename__ = "member_groups"

    id = Column(String(64), primary_key=True)
    org_id = Column(String(64), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(Text, nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    member_ids = Column(JSON, nullable=False, default=list)
    census_ids = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=True)


class OrgMemberDB(Base):
    __tablename__ = "org_members"

    id = Column(String(64), primary_key=True)
    org_id = Column(String(64), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)

    email = Column(Text, nullable=False, default="")
    phone_hash = Column(String(128), nullable=False, default="")
    password_hash = Column(String(128), nullable=False, default="")
    member_number = Column(Text, nullable=False, default="")
    national_id = Column(Text, nullable=False, default="")
    name = Column(Text, nullable=False, default="")
    surname = Column(Text, nullable=False, default="")
    birth_date = Column(String(10), nullable=False, default="")
    parsed_birth_date = Column(Date, nullable=True)
    other = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('ix_org_members_org_number', 'org_id', 'member_number'),
    )


class CensusParticipantDB(Base):
    __tablename__ = "census_participants"

    census_id = Column(String(64), ForeignKey("censuses.id", ondelete="CASCADE"), primary_key=True)
    participant_id = Column(String(64), ForeignKey("org_members.id", ondelete="CASCADE"), primary_key=True, index=True)

    login_hash = Column(String(64), nullable=False)
    login_hash_email = Column(String(64), nullable=True)
    login_hash_phone = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('ux_participants_census_login_hash', 'census_id', 'login_hash', unique=True),
        Index('ux_participants_census_login_hash_email', 'census_id', 'login_hash_email', unique=True),
        Index('ux_participants_census_login_hash_phone', 'census_id', 'login_hash_phone', unique=True),
    )


class SyncJobDB(Base):
    __tablename__ = "sync_jobs"

    job_id = Column(String(64), primary_key=True)
    org_id = Column(String(64), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    job_type = Column(String(32), nullable=False)

    total = Column(Integer, nullable=False, default=0)
    added = Column(Integer, nullable=False, default=0)
    errors = Column(JSON, nullable=False, default=list)
    cancelled = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('ix_sync_jobs_org_created', 'org_id', 'created_at'),
    )
