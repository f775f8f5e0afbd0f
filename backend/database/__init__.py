from .connection import (
    get_db, get_engine, get_session_factory, create_engine, create_session_factory,
    init_db, dispose_engine, Base,
)

# Import census models to ensure they are registered with Base
from .census_models import (
    OrganizationDB, CensusDB, MemberGroupDB, OrgMemberDB, CensusParticipantDB, SyncJobDB
)

__all__ = [
    'get_db', 'get_engine', 'get_session_factory', 'create_engine',
    'create_session_factory', 'init_db', 'dispose_engine', 'Base',
    # Census models
    'OrganizationDB', 'CensusDB', 'MemberGroupDB', 'OrgMemberDB', 'CensusParticipantDB', 'SyncJobDB',
]
