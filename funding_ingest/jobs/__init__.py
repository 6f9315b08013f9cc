"""
Job lifecycle.

Components:
- transitions: Pure state transitions and retry policy
- state_machine: Claim / run / reset / reap against a repository
- processor: Per-job extraction pipeline
- repository: Repository interface and in-memory implementation
- postgres: asyncpg-backed repository (import directly)
"""

from .processor import JobProcessor
from .repository import (
    InMemoryJobRepository,
    JobRepository,
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
)
from .state_machine import Busy, JobStateMachine, Ownership, ProcessingResult
from .transitions import Outcome

__all__ = [
    "JobProcessor",
    "InMemoryJobRepository",
    "JobRepository",
    "RepositoryConflictError",
    "RepositoryError",
    "RepositoryNotFoundError",
    "RepositoryUnavailableError",
    "Busy",
    "JobStateMachine",
    "Ownership",
    "ProcessingResult",
    "Outcome",
]
