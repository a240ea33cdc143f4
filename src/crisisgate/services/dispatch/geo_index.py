"""
Geospatial Index

Keeps the current point of a dynamic set of entities (teams, shelters,
SOS requests, crises, users) and answers "nearest within radius" queries.

Points are bucketed into fixed-size latitude/longitude cells; a query only
visits the cells overlapping the radius' bounding box and then filters the
candidates by exact haversine distance, so no true match is ever omitted.
"""

import logging
import math
import threading
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from crisisgate.core.errors import ValidationError
from crisisgate.models.entities import EARTH_RADIUS_METERS, GeoPoint


CellKey = Tuple[int, int]


def validate_point(point: GeoPoint) -> None:
    """Raise ValidationError for out-of-range or non-numeric coordinates"""
    if not isinstance(point, GeoPoint) or not point.is_valid():
        raise ValidationError(f"Invalid coordinates: {point!r}", field='location')
    if math.isnan(point.longitude) or math.isnan(point.latitude):
        raise ValidationError(f"Invalid coordinates: {point!r}", field='location')


def validate_radius(radius_meters: float) -> None:
    """Radius must be a positive number; infinity means unbounded"""
    if (not isinstance(radius_meters, (int, float)) or isinstance(radius_meters, bool)
            or math.isnan(radius_meters) or radius_meters <= 0):
        raise ValidationError(f"Radius must be positive, got {radius_meters!r}", field='radius')


class GeospatialIndex:
    """Thread-safe point index with radius queries"""

    def __init__(self, name: str = "default", cell_size_degrees: float = 1.0):
        if cell_size_degrees <= 0 or cell_size_degrees > 180:
            raise ValueError(f"Invalid cell size: {cell_size_degrees}")

        self.name = name
        self.cell_size = float(cell_size_degrees)
        self.lon_cells = math.ceil(360.0 / self.cell_size)
        self.lat_cells = math.ceil(180.0 / self.cell_size)

        self._points: Dict[str, GeoPoint] = {}
        self._entity_cells: Dict[str, CellKey] = {}
        self._cells: Dict[CellKey, Set[str]] = defaultdict(set)
        self._lock = threading.RLock()
        self.logger = logging.getLogger(__name__)

    def __len__(self) -> int:
        with self._lock:
            return len(self._points)

    def __contains__(self, entity_id: str) -> bool:
        with self._lock:
            return entity_id in self._points

    def _lat_index(self, latitude: float) -> int:
        return min(int(math.floor((latitude + 90.0) / self.cell_size)), self.lat_cells - 1)

    def _lon_index(self, longitude: float) -> int:
        return int(math.floor((longitude + 180.0) / self.cell_size)) % self.lon_cells

    def _cell_for(self, point: GeoPoint) -> CellKey:
        return self._lat_index(point.latitude), self._lon_index(point.longitude)

    def upsert(self, entity_id: str, point: GeoPoint) -> None:
        """Replace the stored point for an entity (last write wins)"""
        validate_point(point)
        cell = self._cell_for(point)

        with self._lock:
            previous = self._entity_cells.get(entity_id)
            if previous is not None and previous != cell:
                self._discard_from_cell(previous, entity_id)
            self._points[entity_id] = point
            self._entity_cells[entity_id] = cell
            self._cells[cell].add(entity_id)

    def remove(self, entity_id: str) -> None:
        """Remove an entity; unknown IDs are ignored"""
        with self._lock:
            cell = self._entity_cells.pop(entity_id, None)
            self._points.pop(entity_id, None)
            if cell is not None:
                self._discard_from_cell(cell, entity_id)

    def _discard_from_cell(self, cell: CellKey, entity_id: str) -> None:
        members = self._cells.get(cell)
        if members is not None:
            members.discard(entity_id)
            if not members:
                del self._cells[cell]

    def get(self, entity_id: str) -> Optional[GeoPoint]:
        with self._lock:
            return self._points.get(entity_id)

    def clear(self) -> None:
        with self._lock:
            self._points.clear()
            self._entity_cells.clear()
            self._cells.clear()

    def bulk_load(self, entries: Iterable[Tuple[str, GeoPoint]]) -> int:
        """Upsert many points; returns the number loaded"""
        count = 0
        for entity_id, point in entries:
            self.upsert(entity_id, point)
            count += 1
        return count

    def query(
        self,
        point: GeoPoint,
        radius_meters: float,
        predicate: Optional[Callable[[str], bool]] = None,
        limit: Optional[int] = None
    ) -> List[Tuple[str, float]]:
        """
        Find entities within a radius of a point.

        Args:
            point: Query center
            radius_meters: Search radius; math.inf searches the whole globe
            predicate: Optional filter called with each candidate entity ID
            limit: Optional maximum number of results (K)

        Returns:
            (entity_id, distance_meters) pairs ascending by distance, ties
            broken by entity ID
        """
        validate_point(point)
        validate_radius(radius_meters)

        with self._lock:
            candidates = [
                (entity_id, self._points[entity_id])
                for cell in self._candidate_cells(point, radius_meters)
                for entity_id in self._cells.get(cell, ())
            ]

        matches = []
        for entity_id, location in candidates:
            distance = point.distance_to(location)
            if distance <= radius_meters and (predicate is None or predicate(entity_id)):
                matches.append((entity_id, distance))

        matches.sort(key=lambda match: (match[1], match[0]))
        if limit is not None:
            matches = matches[:limit]
        return matches

    def _candidate_cells(self, point: GeoPoint, radius_meters: float) -> List[CellKey]:
        """Occupied cells overlapping the radius' bounding box (must hold the lock)"""
        angular = radius_meters / EARTH_RADIUS_METERS
        if angular >= math.pi / 2:
            return list(self._cells.keys())

        lat_delta = math.degrees(angular)
        min_lat = point.latitude - lat_delta
        max_lat = point.latitude + lat_delta

        # Bounding box touching a pole spans every longitude
        full_longitude = min_lat <= -90.0 or max_lat >= 90.0
        lon_delta = 180.0
        if not full_longitude:
            ratio = math.sin(angular) / math.cos(math.radians(point.latitude))
            if ratio >= 1.0:
                full_longitude = True
            else:
                lon_delta = math.degrees(math.asin(ratio))
                full_longitude = lon_delta * 2 + 2 * self.cell_size >= 360.0

        lat_lo = max(self._lat_index(max(min_lat, -90.0)) - 1, 0)
        lat_hi = min(self._lat_index(min(max_lat, 90.0)) + 1, self.lat_cells - 1)

        if full_longitude:
            return [cell for cell in self._cells if lat_lo <= cell[0] <= lat_hi]

        lon_start = self._lon_index(point.longitude - lon_delta) - 1
        lon_span = int(math.ceil(2 * lon_delta / self.cell_size)) + 3
        lon_indexes = {(lon_start + k) % self.lon_cells for k in range(lon_span)}

        box_size = (lat_hi - lat_lo + 1) * len(lon_indexes)
        if box_size > len(self._cells):
            return [
                cell for cell in self._cells
                if lat_lo <= cell[0] <= lat_hi and cell[1] in lon_indexes
            ]
        return [
            (lat, lon)
            for lat in range(lat_lo, lat_hi + 1)
            for lon in lon_indexes
            if (lat, lon) in self._cells
        ]
