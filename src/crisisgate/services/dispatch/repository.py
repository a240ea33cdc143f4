"""
SQLite Entity Repository

Stores each entity kind in its own table: indexed filter columns for the
query shapes the dispatch core needs, a JSON data column holding the full
record, and a version column for optimistic concurrency.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from crisisgate.core.database import DatabaseManager, DatabaseError
from crisisgate.core.errors import (
    ConflictError, InternalError, NotFoundError, PermissionDeniedError,
    ValidationError, VersionConflictError
)
from crisisgate.core.repository import (
    EntityRepository, Page, Pagination, RepositoryProvider, SortOrder, UnitOfWork
)
from crisisgate.models.entities import (
    Crisis, EntityKind, GeoPoint, SOSRequest, Shelter, Team, User, utcnow
)


def _timestamp(value: datetime) -> str:
    """Fixed-width UTC timestamp so column comparisons sort correctly"""
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, datetime):
        return _timestamp(value)
    return value


@dataclass
class TableMapping:
    """How one entity kind maps onto its table"""
    table: str
    kind: EntityKind
    model: Any
    columns: Callable[[Any], Dict[str, Any]]
    filterable: Set[str] = field(default_factory=set)
    sortable: Set[str] = field(default_factory=lambda: {'created_at', 'updated_at'})
    deletable: bool = True
    # Position is written only through update_location, never by versioned updates
    tracks_location: bool = False


SOS_MAPPING = TableMapping(
    table='sos_requests',
    kind=EntityKind.SOS_REQUEST,
    model=SOSRequest,
    columns=lambda e: {
        'status': e.status,
        'category': e.category,
        'priority': e.priority,
        'reporter_id': e.reporter_id,
        'assigned_to': e.assigned_to,
        'longitude': e.location.longitude,
        'latitude': e.location.latitude,
    },
    filterable={'status', 'category', 'priority', 'reporter_id', 'assigned_to'},
    deletable=False
)

CRISIS_MAPPING = TableMapping(
    table='crises',
    kind=EntityKind.CRISIS,
    model=Crisis,
    columns=lambda e: {
        'status': e.status,
        'category': e.category,
        'severity': e.severity,
        'longitude': e.location.longitude,
        'latitude': e.location.latitude,
    },
    filterable={'status', 'category', 'severity'}
)

SHELTER_MAPPING = TableMapping(
    table='shelters',
    kind=EntityKind.SHELTER,
    model=Shelter,
    columns=lambda e: {
        'status': e.status,
        'category': e.shelter_type,
        'has_medical': e.has_medical,
        'longitude': e.location.longitude,
        'latitude': e.location.latitude,
    },
    filterable={'status', 'category', 'has_medical'}
)

TEAM_MAPPING = TableMapping(
    table='teams',
    kind=EntityKind.TEAM,
    model=Team,
    columns=lambda e: {
        'status': e.status,
        'current_assignment': e.current_assignment,
        'longitude': e.location.longitude,
        'latitude': e.location.latitude,
    },
    filterable={'status', 'current_assignment'},
    tracks_location=True
)

USER_MAPPING = TableMapping(
    table='users',
    kind=EntityKind.USER,
    model=User,
    columns=lambda e: {
        'role': e.role,
        'email': e.email,
        'longitude': e.location.longitude if e.location else None,
        'latitude': e.location.latitude if e.location else None,
    },
    filterable={'role', 'email'},
    tracks_location=True
)


class SQLiteEntityRepository(EntityRepository):
    """EntityRepository backed by one SQLite table"""

    def __init__(self, db: DatabaseManager, mapping: TableMapping):
        self.db = db
        self.mapping = mapping
        self.kind = mapping.kind
        self.logger = logging.getLogger(__name__)

    @property
    def label(self) -> str:
        return self.kind.value

    def _row_to_entity(self, row: sqlite3.Row) -> Any:
        data = json.loads(row['data'])
        data['version'] = row['version']
        return self.mapping.model.from_dict(data)

    def _storage_failure(self, action: str, error: Exception) -> InternalError:
        self.logger.error(f"Storage failure during {action} on {self.mapping.table}: {error}")
        return InternalError(f"Storage unavailable during {action}")

    def create(self, entity: Any) -> Any:
        now = utcnow()
        entity.created_at = now
        entity.updated_at = now
        entity.version = 1

        columns = {
            'id': entity.id,
            'version': 1,
            'data': json.dumps(entity.to_dict()),
            'created_at': _timestamp(now),
            'updated_at': _timestamp(now),
        }
        columns.update({k: _column_value(v) for k, v in self.mapping.columns(entity).items()})

        names = ', '.join(columns)
        placeholders = ', '.join('?' for _ in columns)
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    f"INSERT INTO {self.mapping.table} ({names}) VALUES ({placeholders})",
                    tuple(columns.values())
                )
        except sqlite3.IntegrityError as e:
            entity.version = 0
            raise ConflictError(f"{self.label} {entity.id} conflicts with an existing record: {e}")
        except (sqlite3.Error, DatabaseError) as e:
            entity.version = 0
            raise self._storage_failure('create', e)

        self.logger.debug(f"Created {self.label} {entity.id}")
        return entity

    def get_by_id(self, entity_id: str) -> Any:
        try:
            rows = self.db.execute_query(
                f"SELECT data, version FROM {self.mapping.table} WHERE id = ? AND deleted = 0",
                (entity_id,)
            )
        except DatabaseError as e:
            raise self._storage_failure('get', e)

        if not rows:
            raise NotFoundError(self.label, entity_id)
        return self._row_to_entity(rows[0])

    def update(self, entity: Any) -> Any:
        uow = SQLiteUnitOfWork(self.db)
        uow.register_update(self, entity)
        uow.commit()
        return entity

    def _apply_update(self, conn: sqlite3.Connection, entity: Any) -> Tuple[int, datetime]:
        """
        Write one entity inside an open transaction.

        Returns the new version and timestamp; the caller applies them to the
        in-memory entity only after the transaction commits.
        """
        new_version = entity.version + 1
        now = utcnow()

        payload = entity.to_dict()
        payload['version'] = new_version
        payload['updatedAt'] = now.isoformat()

        columns = {k: _column_value(v) for k, v in self.mapping.columns(entity).items()}
        columns['data'] = json.dumps(payload)
        columns['version'] = new_version
        columns['updated_at'] = _timestamp(now)

        expressions = {name: '?' for name in columns}
        if self.mapping.tracks_location:
            # Keep whatever position is stored now; the copy read earlier may be stale
            del columns['longitude'], columns['latitude']
            del expressions['longitude'], expressions['latitude']
            expressions['data'] = "json_set(?, '$.location', json(json_extract(data, '$.location')))"

        assignments = ', '.join(f"{name} = {expressions[name]}" for name in columns)
        cursor = conn.execute(
            f"UPDATE {self.mapping.table} SET {assignments} "
            f"WHERE id = ? AND version = ? AND deleted = 0",
            tuple(columns.values()) + (entity.id, entity.version)
        )

        if cursor.rowcount == 0:
            exists = conn.execute(
                f"SELECT 1 FROM {self.mapping.table} WHERE id = ? AND deleted = 0",
                (entity.id,)
            ).fetchone()
            if not exists:
                raise NotFoundError(self.label, entity.id)
            raise VersionConflictError(self.label, entity.id, entity.version)

        return new_version, now

    def update_location(self, entity_id: str, point: GeoPoint) -> Any:
        """
        Overwrite an entity's position (last write wins).

        The version is neither checked nor bumped, so concurrent movement
        never conflicts with status or assignment updates.
        """
        if not self.mapping.tracks_location:
            raise ValidationError(f"{self.label} positions are not updated independently", field='location')

        now = utcnow()
        try:
            with self.db.transaction() as conn:
                cursor = conn.execute(
                    f"UPDATE {self.mapping.table} SET longitude = ?, latitude = ?, "
                    f"data = json_set(data, '$.location', json(?), '$.updatedAt', ?), updated_at = ? "
                    f"WHERE id = ? AND deleted = 0",
                    (point.longitude, point.latitude, json.dumps(point.to_dict()),
                     now.isoformat(), _timestamp(now), entity_id)
                )
                if cursor.rowcount == 0:
                    raise NotFoundError(self.label, entity_id)
                row = conn.execute(
                    f"SELECT data, version FROM {self.mapping.table} WHERE id = ?", (entity_id,)
                ).fetchone()
        except (sqlite3.Error, DatabaseError) as e:
            raise self._storage_failure('location update', e)

        return self._row_to_entity(row)

    def list(
        self,
        filters: Optional[Dict[str, Any]] = None,
        pagination: Optional[Pagination] = None,
        sort: Optional[SortOrder] = None
    ) -> Page:
        sort = sort or SortOrder()
        if sort.field not in self.mapping.sortable:
            raise ValidationError(f"Cannot sort {self.label} by {sort.field}", field='sort')

        clauses = ["deleted = 0"]
        params: List[Any] = []

        for key, value in (filters or {}).items():
            if value is None:
                continue
            if key == 'created_after':
                clauses.append("created_at >= ?")
                params.append(_column_value(value))
            elif key == 'created_before':
                clauses.append("created_at < ?")
                params.append(_column_value(value))
            elif key == 'ids' or key in self.mapping.filterable:
                column = 'id' if key == 'ids' else key
                if isinstance(value, (list, tuple, set, frozenset)):
                    values = [_column_value(v) for v in value]
                    if not values:
                        return Page(items=[], total=0,
                                    page=pagination.page if pagination else 1,
                                    limit=pagination.limit if pagination else 0)
                    clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
                    params.extend(values)
                else:
                    clauses.append(f"{column} = ?")
                    params.append(_column_value(value))
            else:
                raise ValidationError(f"Cannot filter {self.label} by {key}", field=key)

        where = ' AND '.join(clauses)
        direction = 'DESC' if sort.descending else 'ASC'
        query = (
            f"SELECT data, version FROM {self.mapping.table} WHERE {where} "
            f"ORDER BY {sort.field} {direction}, id ASC"
        )
        query_params = list(params)
        if pagination:
            query += " LIMIT ? OFFSET ?"
            query_params.extend([pagination.limit, pagination.offset])

        try:
            total_rows = self.db.execute_query(
                f"SELECT COUNT(*) FROM {self.mapping.table} WHERE {where}", tuple(params)
            )
            rows = self.db.execute_query(query, tuple(query_params))
        except DatabaseError as e:
            raise self._storage_failure('list', e)

        total = total_rows[0][0] if total_rows else 0
        return Page(
            items=[self._row_to_entity(row) for row in rows],
            total=total,
            page=pagination.page if pagination else 1,
            limit=pagination.limit if pagination else total
        )

    def delete(self, entity_id: str) -> None:
        if not self.mapping.deletable:
            raise PermissionDeniedError(f"{self.label} records are append-only and cannot be deleted")

        try:
            affected = self.db.execute_update(
                f"UPDATE {self.mapping.table} SET deleted = 1, version = version + 1, updated_at = ? "
                f"WHERE id = ? AND deleted = 0",
                (_timestamp(utcnow()), entity_id)
            )
        except DatabaseError as e:
            raise self._storage_failure('delete', e)

        if affected == 0:
            raise NotFoundError(self.label, entity_id)
        self.logger.info(f"Soft-deleted {self.label} {entity_id}")

    def iter_all(self) -> Iterator[Any]:
        try:
            rows = self.db.execute_query(
                f"SELECT data, version FROM {self.mapping.table} WHERE deleted = 0 ORDER BY created_at"
            )
        except DatabaseError as e:
            raise self._storage_failure('scan', e)

        for row in rows:
            yield self._row_to_entity(row)


class SQLiteUnitOfWork(UnitOfWork):
    """Applies staged updates in a single SQLite transaction"""

    def __init__(self, db: DatabaseManager):
        self.db = db
        self._staged: List[Tuple[SQLiteEntityRepository, Any]] = []
        self.logger = logging.getLogger(__name__)

    def register_update(self, repository: EntityRepository, entity: Any) -> None:
        self._staged.append((repository, entity))

    def commit(self) -> None:
        if not self._staged:
            return

        results = []
        try:
            with self.db.transaction() as conn:
                for repository, entity in self._staged:
                    results.append((entity, repository._apply_update(conn, entity)))
        except (sqlite3.Error, DatabaseError) as e:
            self.logger.error(f"Unit of work failed: {e}")
            raise InternalError("Storage unavailable during update")

        for entity, (version, updated_at) in results:
            entity.version = version
            entity.updated_at = updated_at
        self._staged.clear()


class SQLiteRepositoryProvider(RepositoryProvider):
    """All entity repositories over one DatabaseManager"""

    def __init__(self, db: DatabaseManager):
        self.db = db
        self.sos_requests = SQLiteEntityRepository(db, SOS_MAPPING)
        self.crises = SQLiteEntityRepository(db, CRISIS_MAPPING)
        self.shelters = SQLiteEntityRepository(db, SHELTER_MAPPING)
        self.teams = SQLiteEntityRepository(db, TEAM_MAPPING)
        self.users = SQLiteEntityRepository(db, USER_MAPPING)

    def new_unit_of_work(self) -> UnitOfWork:
        return SQLiteUnitOfWork(self.db)
