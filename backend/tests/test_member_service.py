"""
Integration Tests for single member and participant operations

Tests:
- Single member upsert (collision rejection, new identity exemption)
- Adding participants by member id and from a group
- Member deletion cascade and participant removal
- Participant lookup by login data
- Group pre-flight field check
- Consistency of concurrent edits

Run with: pytest tests/test_member_service.py -v
"""

import asyncio

import pytest
import pytest_asyncio

from census.errors import (
    DuplicateFingerprintError, InvalidInputError, NotFoundError,
)
from census.fingerprints import calculate_fingerprints
from census.models import AuthField, Census, MemberRecord, TwoFaField
from census.service import MemberSyncService
from census.storage import InMemoryMemberStore

SALT = "test-member-salt"

ADA = MemberRecord(member_number="1", name="Ada", surname="Lovelace", email="ada@example.org")
GRACE = MemberRecord(member_number="2", name="Grace", surname="Hopper", email="grace@example.org")


async def sync(service, org_id, records, **kwargs):
    job = await service.start_bulk_sync(org_id, SALT, records, **kwargs)
    return await job.wait()


async def member_id(store, org_id, number):
    ids = await store.find_member_ids_by_number(org_id, [number])
    return ids[number]


class SlowReadStore(InMemoryMemberStore):
    """Member reads take a while, widening any read-then-write window."""

    read_delay = 0.0

    async def get_members(self, member_ids):
        ids = list(member_ids)
        await asyncio.sleep(self.read_delay)
        return await super().get_members(ids)


@pytest_asyncio.fixture
async def slow_store(org, census):
    store = SlowReadStore()
    await store.save_organization(org)
    await store.save_census(census)
    await store.save_census(Census(
        id="census-2", org_id=org.id,
        auth_fields=[AuthField.NAME],
        two_fa_fields=[TwoFaField.EMAIL],
    ))
    return store


@pytest.fixture
def slow_service(slow_store, hasher):
    return MemberSyncService(
        slow_store, hasher=hasher, batch_size=2, progress_interval=0.01,
        timeout=2.0, batch_timeout=2.0, default_country="ES",
    )


class TestUpsertMember:
    """Single member create/update path."""

    @pytest.mark.asyncio
    async def test_create(self, service, store, org):
        result = await service.upsert_member(org.id, ADA, SALT)

        assert result.created
        assert result.censuses_updated == []
        member = await store.get_member(org.id, result.member_id)
        assert member.name == "Ada"
        assert member.created_at is not None

    @pytest.mark.asyncio
    async def test_unknown_organization(self, service):
        with pytest.raises(InvalidInputError):
            await service.upsert_member("nope", ADA, SALT)

    @pytest.mark.asyncio
    async def test_update_recomputes_fingerprints(self, service, store, org, census):
        await sync(service, org.id, [ADA, GRACE], census_id=census.id)
        grace_id = await member_id(store, org.id, "2")
        before = await store.get_participant(census.id, grace_id)

        update = GRACE.model_copy(update={"id": grace_id, "surname": "Murray Hopper"})
        result = await service.upsert_member(org.id, update, SALT)

        after = await store.get_participant(census.id, grace_id)
        assert not result.created
        assert result.censuses_updated == [census.id]
        assert after.login_hash != before.login_hash
        assert after.created_at == before.created_at

    @pytest.mark.asyncio
    async def test_collision_rejected_and_nothing_written(self, service, store, org, census):
        await sync(service, org.id, [ADA, GRACE], census_id=census.id)
        grace_id = await member_id(store, org.id, "2")
        participant_before = await store.get_participant(census.id, grace_id)

        clone = ADA.model_copy(update={"id": grace_id, "member_number": "2"})
        with pytest.raises(DuplicateFingerprintError) as exc_info:
            await service.upsert_member(org.id, clone, SALT)

        assert exc_info.value.census_id == census.id
        assert exc_info.value.participant_id == grace_id
        member = await store.get_member(org.id, grace_id)
        assert member.name == "Grace"
        assert await store.get_participant(census.id, grace_id) == participant_before

    @pytest.mark.asyncio
    async def test_non_colliding_update_succeeds(self, service, store, org, census):
        await sync(service, org.id, [ADA, GRACE], census_id=census.id)
        grace_id = await member_id(store, org.id, "2")

        update = GRACE.model_copy(update={"id": grace_id, "name": "Ada"})
        await service.upsert_member(org.id, update, SALT)

        assert (await store.get_member(org.id, grace_id)).name == "Ada"

    @pytest.mark.asyncio
    async def test_phone_change_leaves_other_member_untouched(self, service, store, org, hasher):
        both = Census(
            id="both", org_id=org.id,
            auth_fields=[AuthField.MEMBER_NUMBER],
            two_fa_fields=[TwoFaField.EMAIL, TwoFaField.PHONE],
        )
        await store.save_census(both)
        await sync(service, org.id, [
            ADA.model_copy(update={"phone": "600000001"}),
            GRACE.model_copy(update={"phone": "600000002"}),
        ], census_id=both.id)
        ada_id = await member_id(store, org.id, "1")
        grace_id = await member_id(store, org.id, "2")
        ada_member = await store.get_member(org.id, ada_id)
        ada_participant = await store.get_participant(both.id, ada_id)
        grace_before = await store.get_participant(both.id, grace_id)

        update = GRACE.model_copy(update={"id": grace_id, "phone": "600 000 003"})
        result = await service.upsert_member(org.id, update, SALT)

        assert result.censuses_updated == [both.id]
        grace_member = await store.get_member(org.id, grace_id)
        assert grace_member.phone_hash == hasher.hash_org_data(org.id, "+34600000003")
        grace_after = await store.get_participant(both.id, grace_id)
        assert grace_after.login_hash_phone != grace_before.login_hash_phone
        assert grace_after.login_hash_email == grace_before.login_hash_email
        assert await store.get_member(org.id, ada_id) == ada_member
        assert await store.get_participant(both.id, ada_id) == ada_participant

    @pytest.mark.asyncio
    async def test_new_identity_exemption(self, service, store, org, census):
        await sync(service, org.id, [ADA], census_id=census.id)

        result = await service.upsert_member(org.id, ADA.model_copy(update={"member_number": "99"}), SALT)

        assert result.created
        assert len(store.members) == 2
        assert len(store.participants) == 1

    @pytest.mark.asyncio
    async def test_organization_change_rejected(self, service, store, org, other_org):
        created = await service.upsert_member(org.id, ADA, SALT)

        with pytest.raises(InvalidInputError):
            await service.upsert_member(other_org.id, ADA.model_copy(update={"id": created.member_id}), SALT)
        assert (await store.get_member(org.id, created.member_id)).org_id == org.id

    @pytest.mark.asyncio
    async def test_phone_hash_preserved_without_new_phone(self, service, store, org):
        created = await service.upsert_member(org.id, ADA.model_copy(update={"phone": "600000001"}), SALT)
        phone_hash = (await store.get_member(org.id, created.member_id)).phone_hash
        assert phone_hash

        await service.upsert_member(org.id, ADA.model_copy(update={"id": created.member_id}), SALT)
        assert (await store.get_member(org.id, created.member_id)).phone_hash == phone_hash

    @pytest.mark.asyncio
    async def test_field_warnings_returned(self, service, org):
        result = await service.upsert_member(org.id, ADA.model_copy(update={"email": "broken"}), SALT)
        assert [w.field for w in result.warnings] == ["email"]


class TestParticipants:
    """Publishing, unlinking and lookup of participants."""

    @pytest.mark.asyncio
    async def test_add_by_member_ids(self, service, store, org, census):
        await sync(service, org.id, [ADA, GRACE])
        ids = [await member_id(store, org.id, "1"), await member_id(store, org.id, "2")]

        added, errors = await service.add_participants_by_member_ids(census.id, ids + ["missing"])

        assert added == 2
        assert len(errors) == 1
        assert isinstance(errors[0], NotFoundError)

        added, errors = await service.add_participants_by_member_ids(census.id, ids)
        assert (added, errors) == (0, [])

    @pytest.mark.asyncio
    async def test_add_by_member_ids_reports_conflicts(self, service, store, org, census):
        # The member pool tolerates duplicates; the census does not
        await sync(service, org.id, [ADA, ADA.model_copy(update={"member_number": "9"})])
        ids = [await member_id(store, org.id, "1"), await member_id(store, org.id, "9")]

        added, errors = await service.add_participants_by_member_ids(census.id, ids)

        assert added == 1
        assert len(errors) == 1
        assert isinstance(errors[0], DuplicateFingerprintError)
        assert len(store.participants) == 1

    @pytest.mark.asyncio
    async def test_add_by_member_ids_rejects_other_organization(self, service, store, other_org, census):
        await sync(service, other_org.id, [ADA])
        foreign = await member_id(store, other_org.id, "1")

        added, errors = await service.add_participants_by_member_ids(census.id, [foreign])
        assert added == 0
        assert isinstance(errors[0], NotFoundError)

    @pytest.mark.asyncio
    async def test_sync_group_to_census(self, service, store, org, census, group):
        await sync(service, org.id, [ADA, GRACE], group_id=group.id)

        added, errors = await service.sync_group_to_census(census.id, group.id)

        assert (added, errors) == (2, [])
        assert (await store.get_census(census.id)).group_id == group.id
        assert census.id in (await store.get_group(group.id)).census_ids

    @pytest.mark.asyncio
    async def test_sync_group_requires_group(self, service, census):
        with pytest.raises(InvalidInputError):
            await service.sync_group_to_census(census.id)

    @pytest.mark.asyncio
    async def test_delete_members_cascades(self, service, store, org, census, group):
        await sync(service, org.id, [ADA, GRACE], census_id=census.id, group_id=group.id)
        ada_id = await member_id(store, org.id, "1")

        deleted = await service.delete_members(org.id, [ada_id])

        assert deleted == 1
        with pytest.raises(NotFoundError):
            await store.get_member(org.id, ada_id)
        assert await store.list_member_participants(ada_id) == []
        assert ada_id not in (await store.get_group(group.id)).member_ids
        assert len(store.participants) == 1

    @pytest.mark.asyncio
    async def test_delete_members_ignores_other_organization(self, service, store, org, other_org):
        await sync(service, org.id, [ADA])
        ada_id = await member_id(store, org.id, "1")

        assert await service.delete_members(other_org.id, [ada_id]) == 0
        assert await store.get_member(org.id, ada_id)

    @pytest.mark.asyncio
    async def test_remove_participant(self, service, store, org, census):
        await sync(service, org.id, [ADA], census_id=census.id)
        ada_id = await member_id(store, org.id, "1")

        await service.remove_participant(census.id, ada_id)

        assert store.participants == {}
        assert await store.get_member(org.id, ada_id)
        with pytest.raises(NotFoundError):
            await service.remove_participant(census.id, ada_id)

    @pytest.mark.asyncio
    async def test_find_participant_by_login(self, service, store, org):
        sms = Census(
            id="sms", org_id=org.id,
            auth_fields=[AuthField.MEMBER_NUMBER],
            two_fa_fields=[TwoFaField.EMAIL, TwoFaField.PHONE],
        )
        await store.save_census(sms)
        await sync(service, org.id, [ADA.model_copy(update={"phone": "600 000 001"})], census_id="sms")
        ada_id = await member_id(store, org.id, "1")

        by_phone = await service.find_participant_by_login("sms", MemberRecord(member_number="1", phone="+34600000001"))
        by_email = await service.find_participant_by_login("sms", MemberRecord(member_number="1", email="ada@example.org"))

        assert by_phone.participant_id == by_email.participant_id == ada_id
        with pytest.raises(NotFoundError):
            await service.find_participant_by_login("sms", MemberRecord(member_number="2", email="ada@example.org"))

    @pytest.mark.asyncio
    async def test_find_participant_unknown_census(self, service):
        with pytest.raises(InvalidInputError):
            await service.find_participant_by_login("nope", ADA)


class TestGroupFieldsCheck:
    """Pre-flight check of a group against candidate login fields."""

    @pytest.mark.asyncio
    async def test_reports_members_duplicates_and_missing_data(self, service, store, org, group):
        await sync(service, org.id, [
            ADA,
            GRACE,
            ADA.model_copy(update={"member_number": "3", "email": "ada2@example.org"}),
            MemberRecord(member_number="4", name="Alan", email="alan@example.org"),
        ], group_id=group.id)
        ids = {n: await member_id(store, org.id, n) for n in ("1", "2", "3", "4")}

        result = await service.check_group_members_fields(
            org.id, group.id, [AuthField.NAME, AuthField.SURNAME], [TwoFaField.EMAIL]
        )

        assert result.members == [ids["2"]]
        assert sorted(result.duplicates) == sorted([ids["1"], ids["3"]])
        assert result.missing_data == [ids["4"]]
        assert not result.is_clean

    @pytest.mark.asyncio
    async def test_two_factor_fields_only_checked_for_presence(self, service, store, org, group):
        await sync(service, org.id, [ADA, ADA.model_copy(update={"member_number": "2"})], group_id=group.id)

        by_email = await service.check_group_members_fields(org.id, group.id, [], [TwoFaField.EMAIL])
        assert len(by_email.members) == 2
        assert by_email.is_clean

        by_phone = await service.check_group_members_fields(
            org.id, group.id, [AuthField.MEMBER_NUMBER], [TwoFaField.PHONE]
        )
        assert by_phone.members == []
        assert len(by_phone.missing_data) == 2

    @pytest.mark.asyncio
    async def test_requires_fields(self, service, org, group):
        with pytest.raises(InvalidInputError):
            await service.check_group_members_fields(org.id, group.id, [], [])

    @pytest.mark.asyncio
    async def test_group_must_belong_to_organization(self, service, other_org, group):
        with pytest.raises(InvalidInputError):
            await service.check_group_members_fields(other_org.id, group.id, [AuthField.NAME], [])
        with pytest.raises(InvalidInputError):
            await service.check_group_members_fields(other_org.id, "nope", [AuthField.NAME], [])


class TestConcurrentEdits:
    """Writes decided from reads taken under the store write lock."""

    @pytest.mark.asyncio
    async def test_publish_during_edit_keeps_fingerprints_current(self, slow_store, slow_service, org):
        await sync(slow_service, org.id, [ADA, GRACE], census_id="census-1")
        grace_id = await member_id(slow_store, org.id, "2")
        slow_store.read_delay = 0.2

        publish = asyncio.create_task(slow_service.add_participants_by_member_ids("census-2", [grace_id]))
        await asyncio.sleep(0.05)
        result = await slow_service.upsert_member(
            org.id, GRACE.model_copy(update={"id": grace_id, "name": "Amazing"}), SALT
        )
        added, errors = await publish

        assert (added, errors) == (1, [])
        assert sorted(result.censuses_updated) == ["census-1", "census-2"]
        stored = await slow_store.get_member(org.id, grace_id)
        assert stored.name == "Amazing"
        for census_id in ("census-1", "census-2"):
            census = await slow_store.get_census(census_id)
            participant = await slow_store.get_participant(census_id, grace_id)
            assert participant.fingerprints == calculate_fingerprints(census, stored)

    @pytest.mark.asyncio
    async def test_bulk_resync_during_edit_keeps_new_phone(self, slow_store, slow_service, org, hasher):
        await sync(slow_service, org.id, [GRACE.model_copy(update={"phone": "600000001"})])
        grace_id = await member_id(slow_store, org.id, "2")
        slow_store.read_delay = 0.2

        job = await slow_service.add_bulk_members(org.id, [GRACE], SALT)
        await asyncio.sleep(0.05)
        await slow_service.upsert_member(
            org.id, GRACE.model_copy(update={"id": grace_id, "phone": "600000002"}), SALT
        )
        report = await job.wait()

        assert report.added == 1
        stored = await slow_store.get_member(org.id, grace_id)
        assert stored.phone_hash == hasher.hash_org_data(org.id, "+34600000002")
