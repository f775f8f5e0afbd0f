"""
Unit Tests for Fingerprint Calculation and Hashing Utilities

Run with: pytest tests/test_fingerprints.py -v
"""

import pytest

from census.errors import InvalidConfigurationError
from census.fingerprints import calculate_fingerprints
from census.models import AuthField, Census, OrgMember, TwoFaField
from utils.hashing import Argon2Hasher, HashingError, fingerprint_digest


@pytest.fixture
def member():
    return OrgMember(
        id="m-1",
        org_id="org-1",
        name="Ada",
        surname="Lovelace",
        member_number="1815",
        birth_date="1815-12-10",
        email="ada@example.org",
        phone_hash="f00d",
    )


def make_census(auth=(), two_fa=(), census_id="census-1"):
    return Census(id=census_id, org_id="org-1", auth_fields=list(auth), two_fa_fields=list(two_fa))


class TestHashing:
    """Test the hashing primitives."""

    def test_argon2_is_deterministic(self, hasher):
        assert hasher.hash("value", "salt") == hasher.hash("value", "salt")

    def test_argon2_depends_on_salt(self, hasher):
        assert hasher.hash("value", "salt-a") != hasher.hash("value", "salt-b")

    def test_argon2_rejects_empty_salt(self, hasher):
        with pytest.raises(HashingError):
            hasher.hash("value", "")

    def test_org_data_scoped_by_org(self, hasher):
        assert hasher.hash_org_data("org-1", "+34600000001") != hasher.hash_org_data("org-2", "+34600000001")

    def test_hash_length(self):
        hasher = Argon2Hasher(time_cost=1, memory_cost=8, parallelism=1, hash_len=16)
        assert len(hasher.hash("value", "salt")) == 32

    def test_fingerprint_digest_is_keyed(self):
        assert fingerprint_digest("a", ["x", "y"]) != fingerprint_digest("b", ["x", "y"])

    def test_fingerprint_digest_separates_values(self):
        assert fingerprint_digest("a", ["ab", "c"]) != fingerprint_digest("a", ["a", "bc"])


class TestCalculateFingerprints:
    """Test fingerprint slots."""

    def test_deterministic(self, member):
        census = make_census([AuthField.MEMBER_NUMBER, AuthField.BIRTH_DATE], [TwoFaField.EMAIL])
        assert calculate_fingerprints(census, member) == calculate_fingerprints(census, member)

    def test_primary_depends_on_census(self, member):
        a = make_census([AuthField.MEMBER_NUMBER], census_id="census-a")
        b = make_census([AuthField.MEMBER_NUMBER], census_id="census-b")
        assert calculate_fingerprints(a, member).primary != calculate_fingerprints(b, member).primary

    def test_primary_follows_declaration_order(self, member):
        ab = make_census([AuthField.NAME, AuthField.SURNAME])
        ba = make_census([AuthField.SURNAME, AuthField.NAME])
        assert calculate_fingerprints(ab, member).primary != calculate_fingerprints(ba, member).primary

    def test_primary_value(self, member):
        census = make_census([AuthField.NAME, AuthField.SURNAME], [TwoFaField.EMAIL])
        expected = fingerprint_digest("census-1", ["Ada", "Lovelace", "ada@example.org"])
        assert calculate_fingerprints(census, member).primary == expected

    def test_single_two_fa_field_has_no_secondaries(self, member):
        census = make_census([AuthField.NAME], [TwoFaField.PHONE])
        fingerprints = calculate_fingerprints(census, member)

        assert fingerprints.secondary_email is None
        assert fingerprints.secondary_phone is None
        assert fingerprints.values() == [fingerprints.primary]

    def test_two_two_fa_fields_add_secondaries(self, member):
        census = make_census([AuthField.NAME], [TwoFaField.EMAIL, TwoFaField.PHONE])
        fingerprints = calculate_fingerprints(census, member)

        assert fingerprints.secondary_email == fingerprint_digest("census-1", ["Ada", "ada@example.org"])
        assert fingerprints.secondary_phone == fingerprint_digest("census-1", ["Ada", "f00d"])
        assert len(set(fingerprints.values())) == 3

    def test_missing_channel_has_no_secondary(self, member):
        census = make_census([AuthField.NAME], [TwoFaField.EMAIL, TwoFaField.PHONE])
        no_phone = member.model_copy(update={"phone_hash": ""})
        fingerprints = calculate_fingerprints(census, no_phone)

        assert fingerprints.secondary_phone is None
        # Empty two-factor values are skipped, so the primary equals the email slot
        assert fingerprints.primary == fingerprints.secondary_email

    def test_two_fa_only_census(self, member):
        census = make_census(two_fa=[TwoFaField.EMAIL])
        assert calculate_fingerprints(census, member).primary == fingerprint_digest("census-1", ["ada@example.org"])

    def test_empty_configuration_rejected(self, member):
        with pytest.raises(InvalidConfigurationError):
            calculate_fingerprints(make_census(), member)

    def test_more_than_two_two_fa_fields_rejected(self, member):
        census = make_census([AuthField.NAME], [TwoFaField.EMAIL, TwoFaField.PHONE, TwoFaField.EMAIL])
        with pytest.raises(InvalidConfigurationError):
            calculate_fingerprints(census, member)

    def test_repeated_auth_field_rejected(self, member):
        census = make_census([AuthField.NAME, AuthField.NAME])
        with pytest.raises(InvalidConfigurationError):
            calculate_fingerprints(census, member)
