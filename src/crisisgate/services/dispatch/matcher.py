"""
Dispatch Matcher

Finds and ranks responder teams and shelters for an SOS request. The search
widens through a sequence of radii until it finds at least one available
candidate. Matching is read-only, so a caller may cancel it at any point.
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from crisisgate.core.repository import EntityRepository, RepositoryProvider
from crisisgate.models.entities import (
    Facility, SOSCategory, SOSRequest, Shelter, ShelterStatus, Team, TeamStatus
)
from .geo_index import GeospatialIndex


DEFAULT_SEARCH_RADII = (1000.0, 5000.0, 20000.0, math.inf)

# Keeps IN (...) lists under SQLite's bound-parameter limit
ID_CHUNK_SIZE = 500


class CandidateKind(Enum):
    TEAM = "team"
    SHELTER = "shelter"


@dataclass
class DispatchCandidate:
    """A ranked responder or shelter for one request"""
    kind: CandidateKind
    entity_id: str
    name: str
    distance_meters: float
    capability_match: bool
    search_radius_meters: float

    @property
    def rank_key(self) -> Tuple[int, float, str]:
        return (0 if self.capability_match else 1, self.distance_meters, self.entity_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'id': self.entity_id,
            'name': self.name,
            'distanceMeters': round(self.distance_meters, 1),
            'capabilityMatch': self.capability_match,
            'searchRadiusMeters': None if math.isinf(self.search_radius_meters) else self.search_radius_meters
        }


def team_matches(team: Team, category: SOSCategory) -> bool:
    return team.handles(category)


def shelter_matches(shelter: Shelter, category: SOSCategory) -> bool:
    """Check whether a shelter is equipped for a request category"""
    if category == SOSCategory.MEDICAL:
        return shelter.has_medical or shelter.has_facility(Facility.MEDICAL)
    if category == SOSCategory.FOOD:
        return shelter.has_facility(Facility.FOOD)
    if category == SOSCategory.SHELTER:
        return shelter.has_facility(Facility.BEDS)
    return False


def load_by_ids(repository: EntityRepository, ids: Sequence[str], **filters) -> List[Any]:
    """Fetch non-deleted entities by ID in bounded chunks"""
    entities = []
    for start in range(0, len(ids), ID_CHUNK_SIZE):
        chunk = list(ids[start:start + ID_CHUNK_SIZE])
        entities.extend(repository.list(filters=dict(filters, ids=chunk)).items)
    return entities


class DispatchMatcher:
    """Ranks available teams and shelters around an SOS request"""

    def __init__(
        self,
        repositories: RepositoryProvider,
        team_index: GeospatialIndex,
        shelter_index: GeospatialIndex,
        search_radii: Optional[Iterable[float]] = None
    ):
        self.logger = logging.getLogger(__name__)
        self.repositories = repositories
        self.team_index = team_index
        self.shelter_index = shelter_index
        self.search_radii = list(search_radii or DEFAULT_SEARCH_RADII)

        if not self.search_radii:
            raise ValueError("At least one search radius is required")

    async def find_candidates(
        self,
        request: SOSRequest,
        include_teams: bool = True,
        include_shelters: bool = True,
        limit: Optional[int] = None
    ) -> List[DispatchCandidate]:
        """
        Rank candidates for a request.

        Args:
            request: The request to match
            include_teams: Consider responder teams
            include_shelters: Consider shelters
            limit: Maximum number of candidates to return

        Returns:
            Candidates ordered by (capability match, distance, id); empty
            when nothing is available within the largest radius
        """
        for radius in self.search_radii:
            candidates = await asyncio.to_thread(
                self._collect, request, radius, include_teams, include_shelters
            )
            if candidates:
                candidates.sort(key=lambda candidate: candidate.rank_key)
                self.logger.debug(
                    f"Found {len(candidates)} candidate(s) for {request.id} within {radius} m"
                )
                return candidates[:limit] if limit is not None else candidates

        self.logger.info(f"No dispatch candidates available for SOS request {request.id}")
        return []

    def _collect(
        self,
        request: SOSRequest,
        radius: float,
        include_teams: bool,
        include_shelters: bool
    ) -> List[DispatchCandidate]:
        candidates = []

        if include_teams:
            hits = dict(self.team_index.query(request.location, radius))
            if hits:
                teams = load_by_ids(
                    self.repositories.teams, list(hits), status=TeamStatus.AVAILABLE
                )
                candidates.extend(
                    DispatchCandidate(
                        kind=CandidateKind.TEAM,
                        entity_id=team.id,
                        name=team.name,
                        distance_meters=hits[team.id],
                        capability_match=team_matches(team, request.category),
                        search_radius_meters=radius
                    )
                    for team in teams
                    if team.is_available()
                )

        if include_shelters:
            hits = dict(self.shelter_index.query(request.location, radius))
            if hits:
                shelters = load_by_ids(
                    self.repositories.shelters, list(hits), status=ShelterStatus.ACTIVE
                )
                candidates.extend(
                    DispatchCandidate(
                        kind=CandidateKind.SHELTER,
                        entity_id=shelter.id,
                        name=shelter.name,
                        distance_meters=hits[shelter.id],
                        capability_match=shelter_matches(shelter, request.category),
                        search_radius_meters=radius
                    )
                    for shelter in shelters
                    if shelter.is_available()
                )

        return candidates


class AssignmentStrategy(ABC):
    """Decides which candidate, if any, is assigned automatically"""

    name = "base"

    @abstractmethod
    def choose(
        self, request: SOSRequest, candidates: List[DispatchCandidate]
    ) -> Optional[DispatchCandidate]:
        pass


class ManualAssignmentStrategy(AssignmentStrategy):
    """Surface candidates only; a dispatcher assigns by hand"""

    name = "none"

    def choose(self, request, candidates):
        return None


class NearestAvailableStrategy(AssignmentStrategy):
    """Assign the best-ranked team"""

    name = "nearest_available"

    def choose(self, request, candidates):
        for candidate in candidates:
            if candidate.kind == CandidateKind.TEAM:
                return candidate
        return None


ASSIGNMENT_STRATEGIES = {
    ManualAssignmentStrategy.name: ManualAssignmentStrategy,
    NearestAvailableStrategy.name: NearestAvailableStrategy,
}


def get_assignment_strategy(name: str) -> AssignmentStrategy:
    try:
        return ASSIGNMENT_STRATEGIES[name]()
    except KeyError:
        raise ValueError(f"Unknown assignment strategy: {name}")
