"""Database-backed repositories."""

from .attempts import SqlAttemptStore
from .reconciliation import ReconciliationJob, ReconciliationJobRepository, reconciliation_jobs
from .user_profiles import SqlProfileDirectory, UserProfileRepository, user_profiles

__all__ = [
    "ReconciliationJob",
    "ReconciliationJobRepository",
    "SqlAttemptStore",
    "SqlProfileDirectory",
    "UserProfileRepository",
    "reconciliation_jobs",
    "user_profiles",
]
