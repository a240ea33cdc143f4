"""
Entity Repository interfaces

The dispatch core only talks to storage through these abstractions so it
never depends on a specific storage engine.
"""

import math
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Iterator, List, Optional, TypeVar

from crisisgate.models.entities import EntityKind, GeoPoint


T = TypeVar('T')


@dataclass
class Pagination:
    """1-based page request"""
    page: int = 1
    limit: int = 10

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass
class SortOrder:
    """Sort specification; field names are storage columns"""
    field: str = "created_at"
    descending: bool = True


@dataclass
class Page(Generic[T]):
    """One page of results plus the total match count"""
    items: List[T] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 10

    @property
    def pages(self) -> int:
        if self.limit <= 0:
            return 0
        return math.ceil(self.total / self.limit)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'items': [item.to_dict() for item in self.items],
            'pagination': {
                'total': self.total,
                'page': self.page,
                'pages': self.pages,
                'limit': self.limit
            }
        }


class EntityRepository(ABC, Generic[T]):
    """
    Durable CRUD plus filtered, paginated retrieval for one entity kind.

    Updates are optimistic: the entity carries the version it was read at and
    the write fails with VersionConflictError if the stored version moved on.
    """

    kind: EntityKind

    @abstractmethod
    def create(self, entity: T) -> T:
        """Persist a new entity and return it with its initial version"""

    @abstractmethod
    def get_by_id(self, entity_id: str) -> T:
        """Fetch an entity; raises NotFoundError if absent or deleted"""

    @abstractmethod
    def update(self, entity: T) -> T:
        """Write an entity back; raises VersionConflictError on a stale version"""

    @abstractmethod
    def update_location(self, entity_id: str, point: GeoPoint) -> T:
        """Overwrite a moving entity's position without a version check"""

    @abstractmethod
    def list(
        self,
        filters: Optional[Dict[str, Any]] = None,
        pagination: Optional[Pagination] = None,
        sort: Optional[SortOrder] = None
    ) -> Page[T]:
        """Filter, sort and paginate entities"""

    @abstractmethod
    def delete(self, entity_id: str) -> None:
        """Soft-delete an entity"""

    @abstractmethod
    def iter_all(self) -> Iterator[T]:
        """Iterate every non-deleted entity"""


class UnitOfWork(ABC):
    """
    Stages versioned updates across entity kinds and applies them
    all-or-nothing on commit.
    """

    @abstractmethod
    def register_update(self, repository: EntityRepository, entity: Any) -> None:
        """Stage an update to be applied on commit"""

    @abstractmethod
    def commit(self) -> None:
        """Apply every staged update atomically"""


class RepositoryProvider(ABC):
    """Bundle of repositories sharing one storage transaction boundary"""

    sos_requests: EntityRepository
    crises: EntityRepository
    shelters: EntityRepository
    teams: EntityRepository
    users: EntityRepository

    @abstractmethod
    def new_unit_of_work(self) -> UnitOfWork:
        """Create an empty unit of work"""

    @contextmanager
    def unit_of_work(self):
        """Context manager that commits staged updates when the block succeeds"""
        uow = self.new_unit_of_work()
        yield uow
        uow.commit()
