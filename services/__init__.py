"""
Business logic services.

Each service handles one stage of the import pipeline.
"""

from services.field_mapper_service import (
    FieldMapperService,
    HeuristicSuggester,
    GuardedSuggester,
    get_field_mapper_service,
)
from services.progress_broadcaster import (
    ProgressBroadcaster,
    Subscription,
    CLOSED,
    get_progress_broadcaster,
)
from services.import_session_service import (
    ImportSessionService,
    SessionStore,
    get_import_session_service,
)
from services.recovery_service import RecoveryService, get_recovery_service
from services.import_executor_service import ImportExecutorService, get_import_executor_service

__all__ = [
    "FieldMapperService",
    "HeuristicSuggester",
    "GuardedSuggester",
    "get_field_mapper_service",
    "ProgressBroadcaster",
    "Subscription",
    "CLOSED",
    "get_progress_broadcaster",
    "ImportSessionService",
    "SessionStore",
    "get_import_session_service",
    "RecoveryService",
    "get_recovery_service",
    "ImportExecutorService",
    "get_import_executor_service",
]
