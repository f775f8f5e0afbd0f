"""
Census Sync - Field Sanitizer

Turns a raw MemberRecord into a storable OrgMember:
- email is validated and stripped
- phone is normalized to E.164 then hashed with the organization as salt
- password is hashed with the member salt
- birth date is normalized to YYYY-MM-DD

A bad field never fails the record; the field is cleared and a
FieldWarning is returned instead. Raw phone and password values are
discarded here and never leave this module.
"""

import re
import logging
from datetime import date, datetime
from typing import List, Optional, Tuple

from email_validator import validate_email, EmailNotValidError
import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberFormat

from census.models import (
    Organization, MemberRecord, OrgMember, FieldWarning, generate_id,
)
from utils.hashing import Argon2Hasher, get_hasher

logger = logging.getLogger(__name__)


class FieldError(ValueError):
    """A single field could not be normalized"""
    pass


# ==================== FIELD NORMALIZERS ====================

def normalize_email(email: str) -> str:
    email = email.strip()
    try:
        result = validate_email(email, check_deliverability=False)
    except EmailNotValidError as e:
        raise FieldError(str(e)) from e
    return result.normalized


def normalize_phone_number(phone: str, country: str) -> str:
    """
    Normalize phone number to E.164 format.

    Parsing follows libphonenumber rules for the default region, so
    "600 000 001" (ES), "0034 600 000 001" and "+34 600-000-001" all give
    "+34600000001", and the Italian "06 1234 5678" keeps its leading zero.

    Args:
        phone: Phone number as typed
        country: ISO-3166 alpha-2 region used when no prefix is present

    Returns:
        Normalized phone number in E.164 format
    """
    try:
        parsed = phonenumbers.parse(phone, country.upper() or None)
    except NumberParseException as e:
        raise FieldError(f"not a valid phone number ({e})") from e

    if not phonenumbers.is_valid_number(parsed):
        raise FieldError("not a valid phone number")
    return phonenumbers.format_number(parsed, PhoneNumberFormat.E164)


def parse_birth_date(value: str) -> date:
    """
    Parse a birth date written year-first (1990-05-21, 1990/5/21) or
    day-first (21-05-1990, 21.5.1990).
    """
    parts = [p for p in re.split(r"\D+", value.strip()) if p]
    if len(parts) != 3:
        raise FieldError("expected day, month and year")

    if len(parts[0]) == 4:
        year, month, day = parts
    elif len(parts[2]) == 4:
        day, month, year = parts
    else:
        raise FieldError("year must have four digits")

    try:
        return date(int(year), int(month), int(day))
    except ValueError as e:
        raise FieldError(str(e)) from e


# ==================== SANITIZER ====================

def sanitize_member(
    org: Organization,
    record: MemberRecord,
    salt: str,
    now: datetime,
    hasher: Optional[Argon2Hasher] = None,
    default_country: Optional[str] = None,
) -> Tuple[OrgMember, List[FieldWarning]]:
    """
    Normalize and hash one member record.

    Args:
        org: Organization that owns the member
        record: Raw input record
        salt: Secret salt for password hashing
        now: Timestamp recorded as created_at (new) or updated_at (existing)
        hasher: Argon2 hasher, defaults to the configured one
        default_country: Phone region when the organization has none

    Returns:
        (sanitized member, field warnings)
    """
    hasher = hasher or get_hasher()
    warnings: List[FieldWarning] = []

    member = OrgMember(
        id=record.id or generate_id(),
        org_id=org.id,
        member_number=record.member_number.strip(),
        national_id=record.national_id.strip(),
        name=record.name.strip(),
        surname=record.surname.strip(),
        other=dict(record.other),
    )
    if record.id:
        member.updated_at = now
    else:
        member.created_at = now

    def warn(field_name: str, error: Exception):
        warnings.append(FieldWarning(member_id=member.id, field=field_name, message=str(error)))
        logger.debug(f"Member {member.id}: cleared {field_name} ({error})")

    if record.email.strip():
        try:
            member.email = normalize_email(record.email)
        except FieldError as e:
            warn("email", e)

    if record.phone.strip():
        country = org.country or default_country or _default_country()
        try:
            normalized = normalize_phone_number(record.phone, country)
            member.phone_hash = hasher.hash_org_data(org.id, normalized)
        except FieldError as e:
            warn("phone", e)

    if record.password:
        member.password_hash = hasher.hash_password(salt, record.password)

    if record.birth_date.strip():
        try:
            parsed = parse_birth_date(record.birth_date)
            member.parsed_birth_date = parsed
            member.birth_date = parsed.isoformat()
        except FieldError as e:
            warn("birth_date", e)

    return member, warnings


def _default_country() -> str:
    from config import get_settings
    return get_settings().DEFAULT_PHONE_COUNTRY
