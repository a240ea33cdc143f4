"""
Unit tests for the Dispatch Service

Tests role checks, listing and proximity search, crisis correlation, shelter
occupancy, team management, automatic dispatch and index warm-up.
"""

import asyncio
import copy
import threading

import pytest

from crisisgate.core.errors import (
    ConflictError, InvalidTransitionError, NotFoundError, PermissionDeniedError,
    ValidationError
)
from crisisgate.models.entities import (
    CallerIdentity, CrisisStatus, SOSStatus, ShelterStatus, TeamStatus, UserRole
)
from crisisgate.services.dispatch.broadcaster import GLOBAL_TOPIC, EventKind, crisis_topic
from crisisgate.services.dispatch.dispatch_service import DispatchService


CRISIS_PAYLOAD = {
    'type': 'natural',
    'severity': 'high',
    'location': [77.59, 12.97],
    'description': 'Flash flood in the old town',
    'affectedArea': {'radius': 2, 'unit': 'kilometers'}
}


def sos_at(sos_payload, longitude, latitude, **overrides):
    payload = dict(sos_payload, location=[longitude, latitude])
    payload.update(overrides)
    return payload


class TestSOSOperations:
    """Test SOS creation, permissions and listing"""

    async def test_create_records_reporter(self, service, sos_payload, reporter):
        request = await service.create_sos_request(sos_payload, reporter)

        assert request.reporter_id == "reporter-1"
        assert request.status == SOSStatus.PENDING
        assert (await service.get_sos_request(request.id)).id == request.id

    async def test_anonymous_report_allowed(self, service, sos_payload):
        request = await service.create_sos_request(sos_payload)

        assert request.reporter_id is None

    async def test_anonymous_report_cannot_claim_a_user(self, service, sos_payload, reporter):
        request = await service.create_sos_request(dict(sos_payload, userId="someone-else"))

        assert request.reporter_id is None
        assert (await service.get_sos_request(request.id)).reporter_id is None

        owned = await service.create_sos_request(dict(sos_payload, userId="someone-else"), reporter)
        assert owned.reporter_id == "reporter-1"

    async def test_reporter_cannot_assign(self, service, sos_payload, team_payload, dispatcher, reporter):
        team = await service.create_team(team_payload, dispatcher)
        request = await service.create_sos_request(sos_payload, reporter)

        with pytest.raises(PermissionDeniedError):
            await service.assign_sos_request(request.id, team.id, reporter)
        with pytest.raises(PermissionDeniedError):
            await service.assign_sos_request(request.id, team.id, None)

    async def test_reporter_may_cancel_own_request_only(self, service, sos_payload, reporter):
        request = await service.create_sos_request(sos_payload, reporter)
        stranger = CallerIdentity(user_id="someone-else", role=UserRole.USER)

        with pytest.raises(PermissionDeniedError):
            await service.transition_sos_status(request.id, "cancelled", caller=stranger)
        with pytest.raises(PermissionDeniedError):
            await service.transition_sos_status(request.id, "inProgress", caller=reporter)
        with pytest.raises(PermissionDeniedError):
            await service.transition_sos_status(request.id, "cancelled")

        cancelled = await service.transition_sos_status(request.id, "cancelled", "Found help", reporter)
        assert cancelled.status == SOSStatus.CANCELLED
        assert cancelled.status_history[-1].updated_by == "reporter-1"

    async def test_unknown_status_rejected(self, service, sos_payload, dispatcher):
        request = await service.create_sos_request(sos_payload)

        with pytest.raises(ValidationError):
            await service.transition_sos_status(request.id, "done", caller=dispatcher)

    async def test_list_filters_and_pages(self, service, sos_payload, dispatcher):
        for priority in ("low", "critical", "critical"):
            await service.create_sos_request(dict(sos_payload, priority=priority))
        fire = await service.create_sos_request(dict(sos_payload, type="fire"))
        await service.transition_sos_status(fire.id, "inProgress", caller=dispatcher)

        critical = await service.list_sos_requests({'priority': 'critical', 'type': 'medical'})
        assert critical.total == 2

        in_progress = await service.list_sos_requests({'status': 'inProgress'})
        assert [r.id for r in in_progress.items] == [fire.id]

        paged = await service.list_sos_requests(page=2, limit=3)
        assert paged.total == 4
        assert len(paged.items) == 1
        assert paged.to_dict()['pagination'] == {'total': 4, 'page': 2, 'pages': 2, 'limit': 3}

    @pytest.mark.parametrize("filters,page,limit", [
        ({'priority': 'urgent'}, None, None),
        ({'description': 'x'}, None, None),
        (None, 0, None),
        (None, None, 0),
        (None, None, 101),
    ])
    async def test_list_rejects_bad_arguments(self, service, filters, page, limit):
        with pytest.raises(ValidationError):
            await service.list_sos_requests(filters, page, limit)

    async def test_list_near_filter(self, service, sos_payload):
        near = await service.create_sos_request(sos_at(sos_payload, 77.591, 12.971))
        await service.create_sos_request(sos_at(sos_payload, 72.88, 19.08))

        page = await service.list_sos_requests(
            {'near': {'location': [77.59, 12.97], 'radius': 1000}}
        )

        assert [r.id for r in page.items] == [near.id]

    async def test_pending_by_priority_oldest_first(self, service, sos_payload, team_payload, dispatcher):
        created = [await service.create_sos_request(sos_payload) for _ in range(3)]
        team = await service.create_team(team_payload, dispatcher)
        await service.assign_sos_request(created[1].id, team.id, dispatcher)
        await service.create_sos_request(dict(sos_payload, priority="low"))

        pending = await service.list_pending_by_priority("critical")

        assert {r.id for r in pending} == {created[0].id, created[2].id}
        assert [r.created_at for r in pending] == sorted(r.created_at for r in pending)

    async def test_find_nearby_requests_by_status(self, service, sos_payload, dispatcher):
        first = await service.create_sos_request(sos_at(sos_payload, 77.591, 12.971))
        second = await service.create_sos_request(sos_at(sos_payload, 77.60, 12.98))
        await service.transition_sos_status(second.id, "cancelled", caller=dispatcher)

        everything = await service.find_nearby_sos_requests([77.59, 12.97], 5000)
        pending = await service.find_nearby_sos_requests([77.59, 12.97], 5000, statuses=["pending"])

        assert [r.entity.id for r in everything] == [first.id, second.id]
        assert [r.entity.id for r in pending] == [first.id]
        assert everything[0].to_dict()['distanceMeters'] < everything[1].to_dict()['distanceMeters']

    async def test_statistics(self, service, sos_payload, dispatcher):
        request = await service.create_sos_request(sos_payload)
        await service.transition_sos_status(request.id, "inProgress", caller=dispatcher)
        await service.create_sos_request(sos_payload)

        stats = await service.get_sos_statistics()

        assert stats.total == 2
        assert stats.pending == 1
        assert stats.in_progress == 1
        assert stats.avg_response_time_seconds >= 0


class TestDispatch:
    """Test candidate ranking and automatic assignment"""

    async def _teams(self, service, team_payload, dispatcher):
        medics = await service.create_team(
            dict(team_payload, name="Medics", location=[77.59, 12.9754]), dispatcher
        )
        rescue = await service.create_team(
            dict(team_payload, name="Rescue", location=[77.59, 12.9709], capabilities=["rescue"]),
            dispatcher
        )
        return medics, rescue

    async def test_manual_strategy_only_ranks(self, service, sos_payload, team_payload, dispatcher):
        medics, rescue = await self._teams(service, team_payload, dispatcher)
        request = await service.create_sos_request(sos_payload)

        result = await service.dispatch(request.id, dispatcher)

        assert [c.entity_id for c in result.candidates] == [medics.id, rescue.id]
        assert result.assigned_team_id is None
        assert (await service.get_sos_request(request.id)).status == SOSStatus.PENDING

    async def test_nearest_available_strategy_assigns(
        self, database, test_config, sos_payload, team_payload, dispatcher
    ):
        config = copy.deepcopy(test_config)
        config['dispatch']['auto_assign'] = 'nearest_available'
        service = DispatchService(database, config)
        await service.start()
        try:
            medics, _ = await self._teams(service, team_payload, dispatcher)
            request = await service.create_sos_request(sos_payload)

            result = await service.dispatch(request.id, dispatcher)

            assert result.assigned_team_id == medics.id
            assert result.request.status == SOSStatus.IN_PROGRESS
            assert (await service.get_team(medics.id)).current_assignment == request.id
            assert result.to_dict()['assignedTeam'] == medics.id
        finally:
            await service.stop()

    async def test_dispatch_requires_active_request(self, service, sos_payload, dispatcher, reporter):
        request = await service.create_sos_request(sos_payload)

        with pytest.raises(PermissionDeniedError):
            await service.dispatch(request.id, reporter)

        await service.transition_sos_status(request.id, "cancelled", caller=dispatcher)
        with pytest.raises(InvalidTransitionError):
            await service.dispatch(request.id, dispatcher)

    async def test_no_candidates(self, service, sos_payload, dispatcher):
        request = await service.create_sos_request(sos_payload)

        result = await service.dispatch(request.id, dispatcher)

        assert result.candidates == []


class TestCrisisOperations:
    """Test crisis management and correlation with SOS requests"""

    async def test_sos_inside_crisis_area_published_on_crisis_topic(
        self, service, sos_payload, reporter
    ):
        crisis = await service.create_crisis(CRISIS_PAYLOAD, reporter)
        subscription = service.subscribe(crisis_topic(crisis.id))

        inside = await service.create_sos_request(sos_at(sos_payload, 77.595, 12.975))
        await service.create_sos_request(sos_at(sos_payload, 77.80, 13.20))

        events = subscription.drain()
        assert [(e.event_kind, e.entity_id) for e in events] == [(EventKind.REQUEST_CREATED, inside.id)]

    async def test_resolved_crisis_stops_correlating(self, service, sos_payload, reporter, dispatcher):
        crisis = await service.create_crisis(CRISIS_PAYLOAD, reporter)
        subscription = service.subscribe(crisis_topic(crisis.id))

        resolved = await service.resolve_crisis(crisis.id, dispatcher)
        assert resolved.status == CrisisStatus.RESOLVED
        assert subscription.get_nowait().event_kind == EventKind.CRISIS_RESOLVED

        await service.create_sos_request(sos_payload)
        assert subscription.pending == 0
        assert await service.find_nearby_crises([77.59, 12.97]) == []

        with pytest.raises(InvalidTransitionError):
            await service.resolve_crisis(crisis.id, dispatcher)

    async def test_correlation_while_crises_are_reindexed(self, service, sos_payload, reporter):
        """Correlation from worker threads tolerates crises entering and leaving the index"""
        crises = [
            await service.create_crisis(dict(CRISIS_PAYLOAD, description=f"Flood zone {i}"), reporter)
            for i in range(5)
        ]
        request = await service.create_sos_request(sos_payload)
        stop = threading.Event()

        def churn():
            while not stop.is_set():
                for crisis in crises:
                    service._unindex_crisis(crisis.id)
                    service._index_crisis(crisis)

        worker = threading.Thread(target=churn)
        worker.start()
        try:
            results = [await asyncio.to_thread(service.crisis_topics_for, request) for _ in range(50)]
        finally:
            stop.set()
            worker.join()

        known = {crisis_topic(c.id) for c in crises}
        assert all(set(topics) <= known for topics in results)
        assert sorted(service.crisis_topics_for(request)) == sorted(known)

    async def test_crisis_status_is_one_way(self, service, reporter, dispatcher):
        crisis = await service.create_crisis(CRISIS_PAYLOAD, reporter)

        with pytest.raises(InvalidTransitionError):
            await service.archive_crisis(crisis.id, dispatcher)

        await service.resolve_crisis(crisis.id, dispatcher)
        archived = await service.archive_crisis(crisis.id, dispatcher)
        assert archived.status == CrisisStatus.ARCHIVED

        with pytest.raises(InvalidTransitionError):
            await service.update_crisis(crisis.id, {'severity': 'low'}, dispatcher)

    async def test_crisis_permissions(self, service, reporter):
        with pytest.raises(PermissionDeniedError):
            await service.create_crisis(CRISIS_PAYLOAD, None)

        crisis = await service.create_crisis(CRISIS_PAYLOAD, reporter)
        with pytest.raises(PermissionDeniedError):
            await service.resolve_crisis(crisis.id, reporter)
        with pytest.raises(PermissionDeniedError):
            await service.delete_crisis(crisis.id, reporter)

    async def test_update_and_log(self, service, reporter, dispatcher):
        crisis = await service.create_crisis(CRISIS_PAYLOAD, reporter)

        updated = await service.update_crisis(
            crisis.id, {'severity': 'critical', 'affectedArea': {'radius': 500, 'unit': 'meters'}}, dispatcher
        )
        logged = await service.add_crisis_update(crisis.id, "Water level rising", reporter)

        assert updated.severity.value == "critical"
        assert updated.affected_area.radius_meters == 500
        assert [u.content for u in logged.updates] == ["Water level rising"]
        assert logged.updates[0].updated_by == "reporter-1"
        assert logged.version == 3

        with pytest.raises(ValidationError):
            await service.update_crisis(crisis.id, {'affectedArea': {'radius': -1}}, dispatcher)

    async def test_list_and_delete(self, service, reporter, dispatcher):
        crisis = await service.create_crisis(CRISIS_PAYLOAD, reporter)
        await service.create_crisis(dict(CRISIS_PAYLOAD, severity='low'), reporter)

        assert (await service.list_crises({'severity': 'high'})).total == 1
        nearby = await service.find_nearby_crises([77.59, 12.97], 1000)
        assert len(nearby) == 2

        await service.delete_crisis(crisis.id, dispatcher)
        with pytest.raises(NotFoundError):
            await service.get_crisis(crisis.id)
        assert len(await service.find_nearby_crises([77.59, 12.97], 1000)) == 1


class TestShelterOperations:
    """Test shelter management and occupancy bookkeeping"""

    async def test_occupancy_flips_between_active_and_full(self, service, shelter_payload, dispatcher):
        shelter = await service.create_shelter(shelter_payload, dispatcher)
        subscription = service.subscribe(GLOBAL_TOPIC)

        full = await service.update_shelter_occupancy(shelter.id, 50, dispatcher)
        assert full.status == ShelterStatus.FULL
        assert full.available_spaces == 0

        reopened = await service.update_shelter_occupancy(shelter.id, 45, dispatcher)
        assert reopened.status == ShelterStatus.ACTIVE

        kinds = [e.event_kind for e in subscription.drain()]
        assert kinds == [EventKind.SHELTER_CAPACITY_UPDATED, EventKind.SHELTER_CAPACITY_UPDATED]

    @pytest.mark.parametrize("occupancy", [-1, 51, "10"])
    async def test_occupancy_bounds(self, service, shelter_payload, dispatcher, occupancy):
        shelter = await service.create_shelter(shelter_payload, dispatcher)

        with pytest.raises(ValidationError):
            await service.update_shelter_occupancy(shelter.id, occupancy, dispatcher)

        assert (await service.get_shelter(shelter.id)).current_occupancy == 10

    async def test_closed_shelter_stays_closed(self, service, shelter_payload, dispatcher):
        shelter = await service.create_shelter(dict(shelter_payload, status='closed'), dispatcher)

        updated = await service.update_shelter_occupancy(shelter.id, 50, dispatcher)

        assert updated.status == ShelterStatus.CLOSED

    async def test_nearby_shelters_respect_availability(self, service, shelter_payload, dispatcher):
        open_shelter = await service.create_shelter(shelter_payload, dispatcher)
        full = await service.create_shelter(dict(shelter_payload, name="Gym"), dispatcher)
        await service.update_shelter_occupancy(full.id, 50, dispatcher)

        available = await service.find_nearby_shelters([77.58, 12.96], 1000)
        everything = await service.find_nearby_shelters([77.58, 12.96], 1000, available_only=False)

        assert [r.entity.id for r in available] == [open_shelter.id]
        assert {r.entity.id for r in everything} == {open_shelter.id, full.id}

    async def test_list_update_delete_and_overview(self, service, shelter_payload, dispatcher, reporter):
        with pytest.raises(PermissionDeniedError):
            await service.create_shelter(shelter_payload, reporter)

        medical = await service.create_shelter(shelter_payload, dispatcher)
        plain = await service.create_shelter(
            dict(shelter_payload, name="Depot", hasMedical=False, facilities=["beds"]), dispatcher
        )

        assert (await service.list_shelters({'hasMedical': 'true'})).total == 1
        assert (await service.list_shelters({'hasMedical': False})).items[0].id == plain.id

        moved = await service.update_shelter(plain.id, {'location': [77.70, 13.00], 'capacity': 30}, dispatcher)
        assert moved.capacity == 30
        with pytest.raises(ValidationError):
            await service.update_shelter(plain.id, {'capacity': 5, 'currentOccupancy': 10}, dispatcher)

        overview = await service.get_shelter_overview()
        assert overview.total == 2
        assert overview.total_capacity == 80
        assert overview.with_medical == 1

        await service.delete_shelter(medical.id, dispatcher)
        with pytest.raises(NotFoundError):
            await service.get_shelter(medical.id)
        assert await service.find_nearby_shelters([77.58, 12.96], 1000) == []


class TestTeamOperations:
    """Test team management"""

    async def test_location_update_moves_team_in_index(self, service, team_payload, sos_payload, dispatcher):
        team = await service.create_team(team_payload, dispatcher)
        subscription = service.subscribe(GLOBAL_TOPIC)

        moved = await service.update_team_location(team.id, [72.88, 19.08], dispatcher)

        assert moved.location.longitude == 72.88
        event = subscription.get_nowait()
        assert event.event_kind == EventKind.TEAM_LOCATION_UPDATED
        assert event.payload['location']['coordinates'] == [72.88, 19.08]

        request = await service.create_sos_request(sos_payload)
        result = await service.dispatch(request.id, dispatcher)
        assert result.candidates[0].distance_meters > 800000

    async def test_concurrent_pings_never_conflict_with_assignment(
        self, service, team_payload, sos_payload, dispatcher
    ):
        """A burst of location updates racing an assignment: every call succeeds"""
        for _ in range(5):
            team = await service.create_team(team_payload, dispatcher)
            request = await service.create_sos_request(sos_payload)
            pings = [[77.6 + i * 1e-4, 12.98] for i in range(30)]

            outcomes = await asyncio.gather(
                service.assign_sos_request(request.id, team.id, dispatcher),
                *(service.update_team_location(team.id, point, dispatcher) for point in pings),
                return_exceptions=True
            )

            assert [o for o in outcomes if isinstance(o, Exception)] == []
            stored = await service.get_team(team.id)
            assert stored.status == TeamStatus.BUSY
            assert stored.current_assignment == request.id
            assert stored.location == service.team_index.get(team.id)
            assert [stored.location.longitude, stored.location.latitude] in pings

    async def test_pings_do_not_consume_version(self, service, team_payload, dispatcher):
        team = await service.create_team(team_payload, dispatcher)

        await asyncio.gather(*(
            service.update_team_location(team.id, [77.6, 12.98 + i * 1e-4], dispatcher)
            for i in range(40)
        ))

        stored = await service.get_team(team.id)
        assert stored.version == team.version
        assert stored.location == service.team_index.get(team.id)

    async def test_status_changes(self, service, team_payload, sos_payload, dispatcher):
        team = await service.create_team(team_payload, dispatcher)
        request = await service.create_sos_request(sos_payload)
        await service.assign_sos_request(request.id, team.id, dispatcher)

        with pytest.raises(ValidationError):
            await service.set_team_status(team.id, "busy", dispatcher)
        with pytest.raises(ConflictError):
            await service.set_team_status(team.id, "offline", dispatcher)
        with pytest.raises(ConflictError):
            await service.delete_team(team.id, dispatcher)

        await service.transition_sos_status(request.id, "resolved", caller=dispatcher)
        offline = await service.set_team_status(team.id, "offline", dispatcher)
        assert offline.status == TeamStatus.OFFLINE

        listed = await service.list_teams({'status': 'offline'})
        assert [t.id for t in listed.items] == [team.id]

        await service.delete_team(team.id, dispatcher)
        with pytest.raises(NotFoundError):
            await service.get_team(team.id)

    async def test_team_permissions(self, service, team_payload, reporter):
        with pytest.raises(PermissionDeniedError):
            await service.create_team(team_payload, reporter)


class TestUsers:
    """Test user registration and location tracking"""

    async def test_register_and_move(self, service, admin):
        user = await service.register_user({'name': 'Asha', 'email': 'asha@example.org'})
        caller = CallerIdentity(user_id=user.id)

        with pytest.raises(ConflictError):
            await service.register_user({'name': 'Other', 'email': 'ASHA@example.org'})

        moved = await service.update_user_location(user.id, [77.59, 12.97], caller)
        assert moved.location.latitude == 12.97

        with pytest.raises(PermissionDeniedError):
            await service.update_user_location(user.id, [0, 0], CallerIdentity(user_id="intruder"))

        await service.update_user_location(user.id, [77.591, 12.971], admin)
        nearby = await service.find_nearby_users([77.59, 12.97], 500)
        assert [r.entity.id for r in nearby] == [user.id]

    async def test_concurrent_user_moves_last_write_wins(self, service):
        user = await service.register_user({'name': 'Asha', 'email': 'asha@example.org'})
        caller = CallerIdentity(user_id=user.id)

        await asyncio.gather(*(
            service.update_user_location(user.id, [77.59 + i * 1e-4, 12.97], caller)
            for i in range(30)
        ))

        stored = await service.get_user(user.id)
        assert stored.location == service.user_index.get(user.id)
        assert stored.version == user.version


class TestServiceLifecycle:
    """Test start-up index warm-up and shutdown"""

    async def test_warm_up_rebuilds_indexes(
        self, database, test_config, sos_payload, team_payload, shelter_payload, dispatcher, reporter
    ):
        first = DispatchService(database, test_config)
        await first.start()
        request = await first.create_sos_request(sos_payload)
        await first.create_team(team_payload, dispatcher)
        await first.create_shelter(shelter_payload, dispatcher)
        crisis = await first.create_crisis(CRISIS_PAYLOAD, reporter)
        await first.stop()

        second = DispatchService(database, test_config)
        await second.start()
        try:
            status = second.get_service_status()
            assert status['running'] is True
            assert status['indexed'] == {
                'sos_requests': 1, 'teams': 1, 'shelters': 1, 'crises': 1, 'users': 0
            }
            nearby = await second.find_nearby_sos_requests([77.59, 12.97], 100)
            assert [r.entity.id for r in nearby] == [request.id]
            assert second.crisis_topics_for(request) == [crisis_topic(crisis.id)]
        finally:
            await second.stop()

    async def test_stop_closes_subscriptions(self, database, test_config):
        service = DispatchService(database, test_config)
        await service.start()
        subscription = service.subscribe()

        await service.stop()

        assert subscription.closed
        assert not service.is_running
