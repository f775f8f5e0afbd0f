"""
Census Sync - Error Taxonomy

- InvalidInputError: malformed or missing identifiers, bad census config
- NotFoundError: referenced organization/census/group/member does not exist
- DuplicateFingerprintError: a write would give two participants the same login
- StoreError: infrastructure failure, safe to retry with the same input
"""

from typing import Optional


class CensusSyncError(Exception):
    """Base exception for the census sync subsystem"""
    retryable = False


class InvalidInputError(CensusSyncError):
    """Raised when inputs provided to an operation are invalid"""
    pass


class InvalidConfigurationError(InvalidInputError):
    """Raised when a census field configuration cannot produce fingerprints"""
    pass


class NotFoundError(CensusSyncError):
    """Raised when a referenced document does not exist"""
    pass


class DuplicateFingerprintError(CensusSyncError):
    """
    Raised when an update would make a participant share a fingerprint
    with another participant of the same census.
    """

    def __init__(
        self,
        census_id: str,
        participant_id: Optional[str] = None,
        message: str = "update would create duplicates"
    ):
        self.census_id = census_id
        self.participant_id = participant_id
        detail = f"member {participant_id} in census {census_id}" if participant_id else f"census {census_id}"
        super().__init__(f"{detail}: {message}")


class StoreError(CensusSyncError):
    """Raised when the backing store fails (connectivity, driver errors)"""
    retryable = True


class StoreTimeoutError(StoreError):
    """Raised when a store call exceeds its deadline"""
    pass
