# Persistence layer
from .database import Database, get_database, set_database
from .job_store import JobRepository
from .repositories import (
    WorkflowRepository,
    ExecutionRepository,
    LogRepository,
)

__all__ = [
    "Database",
    "get_database",
    "set_database",
    "JobRepository",
    "WorkflowRepository",
    "ExecutionRepository",
    "LogRepository",
]
