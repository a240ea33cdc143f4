"""
Core module for CrisisGate

Contains configuration management, logging, storage and the repository
interfaces the dispatch core is built on.
"""

from .errors import (
    CrisisGateError,
    ValidationError,
    NotFoundError,
    InvalidTransitionError,
    ConflictError,
    VersionConflictError,
    PermissionDeniedError,
    InternalError
)
from .repository import (
    EntityRepository,
    Page,
    Pagination,
    RepositoryProvider,
    SortOrder,
    UnitOfWork
)
