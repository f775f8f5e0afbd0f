"""
Census Sync - Fingerprint Calculator

A fingerprint is a keyed digest over the login fields a census declares.
Two members of one census with the same fingerprint could not be told
apart at login, which is why the conflict detector forbids it.

Slots:
- primary: all auth fields followed by all two-factor fields
- secondary email / secondary phone: auth fields plus a single channel,
  only when the census accepts either email or phone for the second factor
"""

from typing import List

from census.errors import InvalidConfigurationError
from census.models import AuthField, Census, Fingerprints, OrgMember, TwoFaField
from utils.hashing import fingerprint_digest


AUTH_FIELD_ATTRIBUTES = {
    AuthField.NAME: "name",
    AuthField.SURNAME: "surname",
    AuthField.MEMBER_NUMBER: "member_number",
    AuthField.NATIONAL_ID: "national_id",
    AuthField.BIRTH_DATE: "birth_date",
}

TWO_FA_FIELD_ATTRIBUTES = {
    TwoFaField.EMAIL: "email",
    TwoFaField.PHONE: "phone_hash",
}


def validate_census_fields(census: Census):
    """Raise InvalidConfigurationError when the census cannot produce fingerprints."""
    if not census.auth_fields and not census.two_fa_fields:
        raise InvalidConfigurationError(f"census {census.id} has no login fields")
    if len(census.two_fa_fields) > 2:
        raise InvalidConfigurationError(f"census {census.id} has more than two two-factor fields")
    if len(set(census.auth_fields)) != len(census.auth_fields):
        raise InvalidConfigurationError(f"census {census.id} repeats an auth field")
    if len(set(census.two_fa_fields)) != len(census.two_fa_fields):
        raise InvalidConfigurationError(f"census {census.id} repeats a two-factor field")


def _auth_values(census: Census, member: OrgMember) -> List[str]:
    return [getattr(member, AUTH_FIELD_ATTRIBUTES[f]) for f in census.auth_fields]


def calculate_fingerprints(census: Census, member: OrgMember) -> Fingerprints:
    """
    Compute the login fingerprints of a member for a census.

    The digest key is the census id, so the same member yields unrelated
    fingerprints in different censuses.
    """
    validate_census_fields(census)

    auth_values = _auth_values(census, member)
    two_fa_values = [getattr(member, TWO_FA_FIELD_ATTRIBUTES[f]) for f in census.two_fa_fields]

    primary = fingerprint_digest(census.id, auth_values + [v for v in two_fa_values if v])

    secondary_email = None
    secondary_phone = None
    if len(census.two_fa_fields) == 2:
        if member.email:
            secondary_email = fingerprint_digest(census.id, auth_values + [member.email])
        if member.phone_hash:
            secondary_phone = fingerprint_digest(census.id, auth_values + [member.phone_hash])

    return Fingerprints(
        primary=primary,
        secondary_email=secondary_email,
        secondary_phone=secondary_phone,
    )
