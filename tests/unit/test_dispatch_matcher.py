"""
Unit tests for the Dispatch Matcher

Tests candidate ranking, the widening search, availability filtering and the
automatic assignment strategies.
"""

import asyncio
import math

import pytest

from crisisgate.models.entities import (
    Facility, GeoPoint, Priority, SOSCategory, SOSRequest, Shelter,
    ShelterStatus, Team, TeamStatus
)
from crisisgate.services.dispatch.geo_index import GeospatialIndex
from crisisgate.services.dispatch.matcher import (
    CandidateKind, DispatchCandidate, DispatchMatcher, ManualAssignmentStrategy,
    NearestAvailableStrategy, get_assignment_strategy, shelter_matches
)


ORIGIN = GeoPoint(77.59, 12.97)


def offset(north_meters: float) -> GeoPoint:
    """A point roughly north_meters due north of ORIGIN"""
    return GeoPoint(ORIGIN.longitude, ORIGIN.latitude + north_meters / 111195.0)


def sos(category: SOSCategory = SOSCategory.MEDICAL) -> SOSRequest:
    return SOSRequest(
        category=category, priority=Priority.HIGH, location=ORIGIN, description="Help"
    )


class MatcherFixture:
    """Repository plus indexes that stay in step"""

    def __init__(self, repositories):
        self.repositories = repositories
        self.team_index = GeospatialIndex("teams")
        self.shelter_index = GeospatialIndex("shelters")

    def matcher(self, radii=None) -> DispatchMatcher:
        return DispatchMatcher(self.repositories, self.team_index, self.shelter_index, radii)

    def add_team(self, name, location, capabilities=(), **kwargs) -> Team:
        team = self.repositories.teams.create(
            Team(name=name, location=location, capabilities=list(capabilities), **kwargs)
        )
        self.team_index.upsert(team.id, team.location)
        return team

    def add_shelter(self, name, location, capacity=20, occupancy=0, **kwargs) -> Shelter:
        shelter = self.repositories.shelters.create(
            Shelter(name=name, location=location, capacity=capacity,
                    current_occupancy=occupancy, manager_id="admin-1", **kwargs)
        )
        self.shelter_index.upsert(shelter.id, shelter.location)
        return shelter


@pytest.fixture
def world(repositories):
    return MatcherFixture(repositories)


class TestDispatchMatcher:
    """Test candidate search and ranking"""

    async def test_capability_match_outranks_distance(self, world):
        world.add_team("Generalists", offset(100))
        medics = world.add_team("Medics", offset(600), [SOSCategory.MEDICAL])

        candidates = await world.matcher().find_candidates(sos(), include_shelters=False)

        assert [c.name for c in candidates] == ["Medics", "Generalists"]
        assert candidates[0].entity_id == medics.id
        assert candidates[0].capability_match is True
        assert candidates[1].capability_match is False
        assert candidates[0].distance_meters == pytest.approx(600, rel=0.01)

    async def test_same_capability_ranked_by_distance(self, world):
        world.add_team("Far", offset(900), [SOSCategory.MEDICAL])
        world.add_team("Near", offset(200), [SOSCategory.MEDICAL])

        candidates = await world.matcher().find_candidates(sos(), include_shelters=False)

        assert [c.name for c in candidates] == ["Near", "Far"]

    async def test_search_widens_until_something_is_found(self, world):
        world.add_team("Across town", offset(3000), [SOSCategory.MEDICAL])
        world.add_team("Next district", offset(15000), [SOSCategory.MEDICAL])

        candidates = await world.matcher().find_candidates(sos())

        assert [c.name for c in candidates] == ["Across town"]
        assert candidates[0].search_radius_meters == 5000

    async def test_unavailable_teams_excluded(self, world):
        world.add_team("Busy", offset(100), [SOSCategory.MEDICAL],
                       status=TeamStatus.BUSY, current_assignment="other-request")
        world.add_team("Offline", offset(200), [SOSCategory.MEDICAL], status=TeamStatus.OFFLINE)
        world.add_team("Stale", offset(300), [SOSCategory.MEDICAL],
                       current_assignment="other-request")
        world.add_team("Free", offset(800))

        candidates = await world.matcher().find_candidates(sos(), include_shelters=False)

        assert [c.name for c in candidates] == ["Free"]

    async def test_unavailable_shelters_excluded(self, world):
        world.add_shelter("Full", offset(100), capacity=10, occupancy=10)
        world.add_shelter("Closed", offset(200), status=ShelterStatus.CLOSED)
        world.add_shelter("Open", offset(300), has_medical=True)

        candidates = await world.matcher().find_candidates(sos(), include_teams=False)

        assert [(c.kind, c.name) for c in candidates] == [(CandidateKind.SHELTER, "Open")]
        assert candidates[0].capability_match is True

    async def test_no_candidates_returns_empty(self, world):
        world.add_team("Too far", offset(3000))

        candidates = await world.matcher(radii=[1000]).find_candidates(sos())

        assert candidates == []

    async def test_unbounded_radius_reaches_anywhere(self, world):
        world.add_team("Overseas", GeoPoint(-0.12, 51.50))

        candidates = await world.matcher(radii=[1000, math.inf]).find_candidates(sos())

        assert [c.name for c in candidates] == ["Overseas"]
        assert candidates[0].to_dict()['searchRadiusMeters'] is None

    async def test_limit_and_mixed_kinds(self, world):
        world.add_team("Medics", offset(500), [SOSCategory.MEDICAL])
        world.add_shelter("Clinic", offset(100), has_medical=True)
        world.add_shelter("Gym", offset(50))

        candidates = await world.matcher().find_candidates(sos(), limit=2)

        assert [c.name for c in candidates] == ["Clinic", "Medics"]

    async def test_matching_is_read_only_and_cancellable(self, world):
        team = world.add_team("Medics", offset(500), [SOSCategory.MEDICAL])

        task = asyncio.create_task(world.matcher().find_candidates(sos()))
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        stored = world.repositories.teams.get_by_id(team.id)
        assert stored.version == team.version
        assert stored.is_available()


class TestShelterMatching:
    """Test shelter capability mapping"""

    @pytest.mark.parametrize("category,facilities,has_medical,expected", [
        (SOSCategory.MEDICAL, [], True, True),
        (SOSCategory.MEDICAL, [Facility.MEDICAL], False, True),
        (SOSCategory.MEDICAL, [Facility.BEDS], False, False),
        (SOSCategory.FOOD, [Facility.FOOD], False, True),
        (SOSCategory.SHELTER, [Facility.BEDS], False, True),
        (SOSCategory.FIRE, [Facility.BEDS, Facility.FOOD], True, False),
    ])
    def test_shelter_matches(self, category, facilities, has_medical, expected):
        shelter = Shelter(name="S", location=ORIGIN, capacity=5, manager_id="m",
                          facilities=facilities, has_medical=has_medical)

        assert shelter_matches(shelter, category) is expected


class TestAssignmentStrategies:
    """Test automatic assignment strategies"""

    def _candidates(self):
        return [
            DispatchCandidate(CandidateKind.SHELTER, "s1", "Clinic", 50.0, True, 1000),
            DispatchCandidate(CandidateKind.TEAM, "t1", "Medics", 400.0, True, 1000),
            DispatchCandidate(CandidateKind.TEAM, "t2", "Rescue", 200.0, False, 1000),
        ]

    def test_manual_strategy_never_assigns(self):
        assert ManualAssignmentStrategy().choose(sos(), self._candidates()) is None

    def test_nearest_available_picks_best_ranked_team(self):
        choice = NearestAvailableStrategy().choose(sos(), self._candidates())

        assert choice.entity_id == "t1"

    def test_nearest_available_without_teams(self):
        assert NearestAvailableStrategy().choose(sos(), self._candidates()[:1]) is None

    def test_lookup_by_name(self):
        assert isinstance(get_assignment_strategy("none"), ManualAssignmentStrategy)
        assert isinstance(get_assignment_strategy("nearest_available"), NearestAvailableStrategy)

        with pytest.raises(ValueError):
            get_assignment_strategy("round_robin")
