"""
Shared fixtures for census sync tests.

Argon2 runs with minimal cost parameters so hashing stays fast.
"""

import pytest
import pytest_asyncio

from census.models import (
    AuthField, Census, MemberGroup, MemberRecord, Organization, TwoFaField,
)
from census.service import MemberSyncService
from census.storage import InMemoryMemberStore
from utils.hashing import Argon2Hasher


@pytest.fixture
def hasher():
    return Argon2Hasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def org():
    return Organization(id="org-1", name="Club Alpha", country="ES")


@pytest.fixture
def other_org():
    return Organization(id="org-2", name="Club Beta", country="AU")


@pytest.fixture
def census(org):
    return Census(
        id="census-1",
        org_id=org.id,
        auth_fields=[AuthField.NAME, AuthField.SURNAME],
        two_fa_fields=[TwoFaField.EMAIL],
    )


@pytest.fixture
def group(org):
    return MemberGroup(id="group-1", org_id=org.id, title="Board")


@pytest_asyncio.fixture
async def store(org, other_org, census, group):
    store = InMemoryMemberStore()
    await store.save_organization(org)
    await store.save_organization(other_org)
    await store.save_census(census)
    await store.save_group(group)
    return store


@pytest.fixture
def service(store, hasher):
    return MemberSyncService(
        store,
        hasher=hasher,
        batch_size=2,
        progress_interval=0.01,
        progress_buffer=10,
        timeout=1.0,
        batch_timeout=1.0,
        default_country="ES",
    )


@pytest.fixture
def make_records():
    """Factory for distinct members keyed by member number."""
    def factory(count: int, prefix: str = "M"):
        return [
            MemberRecord(
                member_number=f"{prefix}{i}",
                name=f"Name{i}",
                surname=f"Surname{i}",
                email=f"member{i}@example.org",
                phone=f"+3460000{i:04d}",
            )
            for i in range(count)
        ]
    return factory
