"""Database models — re-exports all models.

Import from here:  from fieldsync.models import SyncedRecord, SyncRun, ...
Or from submodules: from fieldsync.models.records import SyncedRecord
"""

from .base import Base  # noqa: F401

# Credentials
from .auth import OAuthToken  # noqa: F401

# Synced provider records
from .records import (  # noqa: F401
    ENTITY_JOB,
    ENTITY_QUOTE,
    ENTITY_REQUEST,
    SyncedRecord,
)

# Derived analytics
from .opportunity import Opportunity  # noqa: F401

# Sync bookkeeping
from .sync import (  # noqa: F401
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    STATUS_PARTIAL,
    STATUS_SUCCESS,
    SyncRun,
)
