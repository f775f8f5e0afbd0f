"""
Census Sync - Conflict Detector

Guards the census invariant: no two participants of one census share a
fingerprint value, in any slot. Callers must hold the store write lock
between `check` and the write it guards.
"""

import logging
from typing import Dict, List, Sequence, Set, Tuple

from census.errors import DuplicateFingerprintError
from census.models import Fingerprints
from census.storage import MemberStore, with_deadline

logger = logging.getLogger(__name__)


class ConflictDetector:
    """Fingerprint collision checks against stored participants"""

    def __init__(self, store: MemberStore, timeout: float = 10.0):
        self.store = store
        self.timeout = timeout

    async def count(self, census_id: str, participant_id: str, fingerprints: Fingerprints) -> int:
        """Number of other participants of the census sharing any fingerprint value."""
        return await with_deadline(
            self.store.count_fingerprint_matches(census_id, participant_id, fingerprints.values()),
            self.timeout,
            "fingerprint conflict count",
        )

    async def check(self, census_id: str, participant_id: str, fingerprints: Fingerprints):
        """Raise DuplicateFingerprintError if the fingerprints collide."""
        matches = await self.count(census_id, participant_id, fingerprints)
        if matches:
            logger.warning(
                f"Fingerprint conflict for member {participant_id} in census {census_id} "
                f"({matches} matching participants)"
            )
            raise DuplicateFingerprintError(census_id, participant_id)

    @staticmethod
    def find_duplicates_in_batch(items: Sequence[Tuple[str, Fingerprints]]) -> Set[str]:
        """
        Participant ids that collide with an earlier item of the same batch.

        The first occurrence of a value wins; repeated items for the same
        participant are not conflicts.
        """
        owners: Dict[str, str] = {}
        rejected: Set[str] = set()
        for participant_id, fingerprints in items:
            values: List[str] = fingerprints.values()
            if any(owners.get(v, participant_id) != participant_id for v in values):
                rejected.add(participant_id)
                continue
            for value in values:
                owners[value] = participant_id
        return rejected
