"""
Dispatch Service

Entry point the HTTP layer calls into. Coordinates the SOS lifecycle engine,
the dispatch matcher, the geospatial indexes and the event broadcaster, and
manages the crises, shelters, teams and users the dispatch core works with.

Every mutating operation takes the caller's identity claim and checks its
role before touching storage.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from crisisgate.core.config import parse_radius
from crisisgate.core.database import DatabaseManager
from crisisgate.core.errors import (
    ConflictError, InvalidTransitionError, PermissionDeniedError,
    ValidationError, VersionConflictError
)
from crisisgate.core.logging import LogContext, get_structured_logger, log_async_function_call
from crisisgate.core.repository import EntityRepository, Page, Pagination, SortOrder
from crisisgate.models.entities import (
    CallerIdentity, Crisis, CrisisCategory, CrisisStatus, CrisisUpdate, GeoPoint,
    Priority, SOSCategory, SOSRequest, SOSStatus, Severity, Shelter, ShelterStatus,
    ShelterType, Team, TeamStatus, User, UserRole, AffectedArea, AreaUnit,
    ContactInfo, MediaReference
)
from .broadcaster import (
    GLOBAL_TOPIC, EventBroadcaster, EventKind, Subscription, crisis_topic
)
from .geo_index import GeospatialIndex, validate_radius
from .lifecycle import SOSLifecycleEngine
from .matcher import (
    DispatchCandidate, DispatchMatcher, get_assignment_strategy, load_by_ids
)
from .repository import SQLiteRepositoryProvider
from .statistics import ShelterOverview, SOSStatistics, StatisticsAggregator, TimeWindow
from . import validators


logger = logging.getLogger(__name__)


@dataclass
class NearbyResult:
    """An entity found by a proximity search"""
    entity: Any
    distance_meters: float

    def to_dict(self) -> Dict[str, Any]:
        data = self.entity.to_dict()
        data['distanceMeters'] = round(self.distance_meters, 1)
        return data


@dataclass
class DispatchResult:
    """Outcome of running the matcher for a request"""
    request: SOSRequest
    candidates: List[DispatchCandidate] = field(default_factory=list)
    assigned_team_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'request': self.request.to_dict(),
            'candidates': [c.to_dict() for c in self.candidates],
            'assignedTeam': self.assigned_team_id
        }


def require_dispatcher(caller: Optional[CallerIdentity], action: str) -> CallerIdentity:
    """Only responders and admins may change assignments and managed resources"""
    if caller is None or not caller.can_dispatch():
        raise PermissionDeniedError(f"{action} requires the responder or admin role")
    return caller


class DispatchService:
    """
    SOS lifecycle and geospatial dispatch service
    """

    SOS_FILTERS = {'status': 'status', 'type': 'category', 'priority': 'priority',
                   'userId': 'reporter_id', 'assignedTo': 'assigned_to'}
    CRISIS_FILTERS = {'status': 'status', 'type': 'category', 'severity': 'severity'}
    SHELTER_FILTERS = {'status': 'status', 'type': 'category', 'hasMedical': 'has_medical'}
    TEAM_FILTERS = {'status': 'status'}

    LOCATION_STRIPES = 64

    def __init__(
        self,
        db: DatabaseManager,
        config: Dict = None,
        broadcaster: Optional[EventBroadcaster] = None
    ):
        self.logger = logging.getLogger(__name__)
        self.audit_logger = get_structured_logger('dispatch.audit')
        self.config = config or {}

        dispatch_config = self.config.get('dispatch', {})
        index_config = self.config.get('geo_index', {})
        broadcaster_config = self.config.get('broadcaster', {})

        self.max_retries = dispatch_config.get('max_retries', 3)
        self.nearby_default_radius = float(dispatch_config.get('nearby_default_radius_meters', 5000))
        self.default_page_size = dispatch_config.get('default_page_size', 10)
        self.max_page_size = dispatch_config.get('max_page_size', 100)
        self.strategy = get_assignment_strategy(dispatch_config.get('auto_assign', 'none'))

        cell_size = index_config.get('cell_size_degrees', 1.0)
        self.sos_index = GeospatialIndex('sos_requests', cell_size)
        self.team_index = GeospatialIndex('teams', cell_size)
        self.shelter_index = GeospatialIndex('shelters', cell_size)
        self.crisis_index = GeospatialIndex('crises', cell_size)
        self.user_index = GeospatialIndex('users', cell_size)
        self._crisis_radii: Dict[str, float] = {}
        self._crisis_lock = threading.Lock()
        # Storage write and index upsert of one position happen under the same stripe
        self._location_stripes = [threading.Lock() for _ in range(self.LOCATION_STRIPES)]

        self.repositories = SQLiteRepositoryProvider(db)
        self.broadcaster = broadcaster or EventBroadcaster(broadcaster_config.get('max_queue_size', 0))

        self.lifecycle = SOSLifecycleEngine(
            self.repositories,
            self.broadcaster,
            sos_index=self.sos_index,
            max_retries=self.max_retries,
            related_topics=self.crisis_topics_for
        )
        self.matcher = DispatchMatcher(
            self.repositories,
            self.team_index,
            self.shelter_index,
            search_radii=[parse_radius(r) for r in dispatch_config.get('search_radii_meters') or []] or None
        )
        self.statistics = StatisticsAggregator(self.repositories)

        self._running = False

    async def start(self):
        """Start the service and rebuild the geospatial indexes"""
        if self._running:
            return

        await asyncio.to_thread(self._warm_up_indexes)
        self._running = True
        self.logger.info("Dispatch Service started")

    async def stop(self):
        """Stop the service and close every live subscription"""
        if not self._running:
            return

        self._running = False
        self.broadcaster.close()
        self.logger.info("Dispatch Service stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def _warm_up_indexes(self) -> None:
        for index in (self.sos_index, self.team_index, self.shelter_index,
                      self.crisis_index, self.user_index):
            index.clear()
        with self._crisis_lock:
            self._crisis_radii.clear()

        counts = {
            'sos_requests': self.sos_index.bulk_load(
                (r.id, r.location) for r in self.repositories.sos_requests.iter_all()
            ),
            'teams': self.team_index.bulk_load(
                (t.id, t.location) for t in self.repositories.teams.iter_all()
            ),
            'shelters': self.shelter_index.bulk_load(
                (s.id, s.location) for s in self.repositories.shelters.iter_all()
            ),
            'users': self.user_index.bulk_load(
                (u.id, u.location) for u in self.repositories.users.iter_all() if u.location
            ),
        }

        active_crises = 0
        for crisis in self.repositories.crises.iter_all():
            if crisis.is_active():
                self._index_crisis(crisis)
                active_crises += 1
        counts['crises'] = active_crises

        self.logger.info(
            "Geospatial indexes loaded: " + ", ".join(f"{k}={v}" for k, v in counts.items())
        )

    # Helpers

    def _pagination(self, page: Optional[int], limit: Optional[int]) -> Pagination:
        page = 1 if page is None else page
        limit = self.default_page_size if limit is None else limit
        if isinstance(page, bool) or not isinstance(page, int) or page < 1:
            raise ValidationError("page must be a positive integer", field='page')
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= self.max_page_size:
            raise ValidationError(
                f"limit must be between 1 and {self.max_page_size}", field='limit'
            )
        return Pagination(page=page, limit=limit)

    @staticmethod
    def _translate_filters(
        filters: Optional[Dict[str, Any]],
        mapping: Dict[str, str],
        enums: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Map client filter names onto storage columns, validating enum values"""
        translated = {}
        for key, value in (filters or {}).items():
            if value is None or key == 'near':
                continue
            if key not in mapping:
                raise ValidationError(f"Unsupported filter: {key}", field=key)
            if key in enums:
                value = validators.parse_enum(enums[key], value, key)
            translated[mapping[key]] = value
        return translated

    def _near_ids(self, index: GeospatialIndex, near: Optional[Dict[str, Any]]) -> Optional[List[str]]:
        if not near:
            return None
        point = validators.parse_point(near.get('location'))
        radius = near.get('radius', self.nearby_default_radius)
        validate_radius(radius)
        return [entity_id for entity_id, _ in index.query(point, radius)]

    async def _update_entity(
        self,
        repository: EntityRepository,
        entity_id: str,
        mutate: Callable[[Any], None]
    ) -> Any:
        """Read, mutate and write back an entity, retrying lost version races"""
        for attempt in range(1, self.max_retries + 1):
            try:
                return await asyncio.to_thread(self._update_once, repository, entity_id, mutate)
            except VersionConflictError as e:
                if attempt == self.max_retries:
                    raise
                self.logger.warning(f"Retrying update of {repository.kind.value} {entity_id}: {e}")

    @staticmethod
    def _update_once(repository: EntityRepository, entity_id: str, mutate: Callable[[Any], None]) -> Any:
        entity = repository.get_by_id(entity_id)
        mutate(entity)
        return repository.update(entity)

    def _move_entity(
        self,
        repository: EntityRepository,
        index: GeospatialIndex,
        entity_id: str,
        point: GeoPoint,
        announce: Optional[Callable[[Any], None]] = None
    ) -> Any:
        """Last-write-wins position update; the index ends on the last stored point"""
        with self._location_stripes[hash(entity_id) % self.LOCATION_STRIPES]:
            entity = repository.update_location(entity_id, point)
            index.upsert(entity_id, point)
            if announce is not None:
                announce(entity)
        return entity

    def _audit(self, event: str, caller: Optional[CallerIdentity], **fields) -> None:
        with LogContext(self.audit_logger, actor_id=caller.user_id if caller else None) as log:
            log.info(event, **fields)

    # SOS requests

    async def create_sos_request(
        self,
        payload: Dict[str, Any],
        caller: Optional[CallerIdentity] = None
    ) -> SOSRequest:
        """
        Create an SOS request from a client payload.

        Anonymous reports are allowed when no caller is given.
        """
        request = validators.parse_sos_payload(payload, caller.user_id if caller else None)
        await self.lifecycle.create(request)
        self._audit('sos_created', caller, request_id=request.id, priority=request.priority.value)
        return request

    async def get_sos_request(self, request_id: str) -> SOSRequest:
        return await asyncio.to_thread(self.repositories.sos_requests.get_by_id, request_id)

    async def list_sos_requests(
        self,
        filters: Optional[Dict[str, Any]] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None
    ) -> Page:
        """
        List SOS requests, newest first.

        Args:
            filters: Any of status, type, priority, userId, assignedTo, and
                near={'location': point, 'radius': meters}
            page: 1-based page number
            limit: Page size
        """
        storage_filters = self._translate_filters(
            filters, self.SOS_FILTERS,
            {'status': SOSStatus, 'type': SOSCategory, 'priority': Priority}
        )
        near_ids = self._near_ids(self.sos_index, (filters or {}).get('near'))
        if near_ids is not None:
            storage_filters['ids'] = near_ids

        pagination = self._pagination(page, limit)
        return await asyncio.to_thread(
            self.repositories.sos_requests.list, storage_filters, pagination, SortOrder()
        )

    async def list_recent_sos_requests(self, page: Optional[int] = None, limit: Optional[int] = None) -> Page:
        return await self.list_sos_requests(page=page, limit=limit)

    async def list_pending_by_priority(self, priority: Any) -> List[SOSRequest]:
        """Pending requests of one priority, oldest first"""
        priority = validators.parse_enum(Priority, priority, 'priority')
        page = await asyncio.to_thread(
            self.repositories.sos_requests.list,
            {'status': SOSStatus.PENDING, 'priority': priority},
            None,
            SortOrder(field='created_at', descending=False)
        )
        return page.items

    async def transition_sos_status(
        self,
        request_id: str,
        new_status: Any,
        note: str = "",
        caller: Optional[CallerIdentity] = None
    ) -> SOSRequest:
        """
        Move a request to a new status.

        Responders and admins may make any allowed transition; the reporter
        may cancel their own request.
        """
        new_status = validators.parse_enum(SOSStatus, new_status, 'status')
        if caller is None:
            raise PermissionDeniedError("Changing a request's status requires an identified caller")

        if not caller.can_dispatch():
            request = await self.get_sos_request(request_id)
            if new_status != SOSStatus.CANCELLED or request.reporter_id != caller.user_id:
                raise PermissionDeniedError(
                    "Only responders, admins or the reporter cancelling their own request "
                    "may change its status"
                )

        request = await self.lifecycle.transition(request_id, new_status, note, caller.user_id)
        self._audit('sos_transitioned', caller, request_id=request_id, status=new_status.value)
        return request

    async def assign_sos_request(
        self,
        request_id: str,
        team_id: str,
        caller: Optional[CallerIdentity] = None
    ) -> SOSRequest:
        caller = require_dispatcher(caller, "Assigning a request")
        request = await self.lifecycle.assign(request_id, team_id, caller.user_id)
        self._audit('sos_assigned', caller, request_id=request_id, team_id=team_id)
        return request

    async def find_nearby_sos_requests(
        self,
        location: Any,
        radius_meters: Optional[float] = None,
        statuses: Optional[Iterable[Any]] = None
    ) -> List[NearbyResult]:
        """SOS requests within a radius, nearest first"""
        point = validators.parse_point(location)
        radius = self.nearby_default_radius if radius_meters is None else radius_meters
        wanted = {validators.parse_enum(SOSStatus, s, 'status') for s in statuses} if statuses else None
        return await asyncio.to_thread(
            self._nearby, self.sos_index, self.repositories.sos_requests, point, radius,
            (lambda r: r.status in wanted) if wanted else None
        )

    def _nearby(
        self,
        index: GeospatialIndex,
        repository: EntityRepository,
        point: GeoPoint,
        radius: float,
        keep: Optional[Callable[[Any], bool]] = None
    ) -> List[NearbyResult]:
        hits = index.query(point, radius)
        if not hits:
            return []
        entities = {e.id: e for e in load_by_ids(repository, [entity_id for entity_id, _ in hits])}
        return [
            NearbyResult(entities[entity_id], distance)
            for entity_id, distance in hits
            if entity_id in entities and (keep is None or keep(entities[entity_id]))
        ]

    async def get_sos_statistics(self, window: Optional[TimeWindow] = None) -> SOSStatistics:
        return await asyncio.to_thread(self.statistics.get_sos_statistics, window)

    @log_async_function_call(logger)
    async def dispatch(
        self,
        request_id: str,
        caller: Optional[CallerIdentity] = None,
        limit: Optional[int] = None
    ) -> DispatchResult:
        """
        Rank candidates for a request and, under an auto-assignment
        strategy, assign the chosen team.
        """
        caller = require_dispatcher(caller, "Dispatching a request")
        request = await self.get_sos_request(request_id)
        if not request.is_active():
            raise InvalidTransitionError(
                request.status.value, SOSStatus.IN_PROGRESS.value,
                f"SOS request {request_id} is already {request.status.value}"
            )

        candidates = await self.matcher.find_candidates(request, limit=limit)
        result = DispatchResult(request=request, candidates=candidates)
        if request.assigned_to:
            result.assigned_team_id = request.assigned_to
            return result

        remaining = list(candidates)
        while remaining:
            choice = self.strategy.choose(request, remaining)
            if choice is None:
                break
            try:
                result.request = await self.assign_sos_request(request_id, choice.entity_id, caller)
                result.assigned_team_id = choice.entity_id
                break
            except ConflictError as e:
                self.logger.info(f"Candidate team {choice.entity_id} became unavailable: {e}")
                remaining.remove(choice)

        return result

    # Subscriptions

    def subscribe(self, topic: str = GLOBAL_TOPIC) -> Subscription:
        if not topic:
            raise ValidationError("topic is required", field='topic')
        return self.broadcaster.subscribe(topic)

    def unsubscribe(self, subscription: Subscription) -> None:
        self.broadcaster.unsubscribe(subscription)

    # Crises

    def _index_crisis(self, crisis: Crisis) -> None:
        with self._crisis_lock:
            self.crisis_index.upsert(crisis.id, crisis.location)
            self._crisis_radii[crisis.id] = crisis.affected_area.radius_meters

    def _unindex_crisis(self, crisis_id: str) -> None:
        with self._crisis_lock:
            self.crisis_index.remove(crisis_id)
            self._crisis_radii.pop(crisis_id, None)

    def crisis_topics_for(self, request: SOSRequest) -> List[str]:
        """Topics of active crises whose affected area contains the request"""
        # Called from worker threads while the event loop indexes crises
        with self._crisis_lock:
            radii = list(self._crisis_radii.values())
        if not radii:
            return []
        reach = max(max(radii), 1.0)
        hits = self.crisis_index.query(request.location, reach)
        if not hits:
            return []
        crises = load_by_ids(self.repositories.crises, [crisis_id for crisis_id, _ in hits],
                             status=CrisisStatus.ACTIVE)
        return [crisis_topic(c.id) for c in crises if c.covers(request.location)]

    def _publish_crisis(self, kind: EventKind, crisis: Crisis, **extra) -> None:
        payload = {'crisis': crisis.to_dict()}
        payload.update(extra)
        self.broadcaster.publish_many([GLOBAL_TOPIC, crisis_topic(crisis.id)], kind, crisis.id, payload)

    async def create_crisis(self, payload: Dict[str, Any], caller: Optional[CallerIdentity] = None) -> Crisis:
        if caller is None:
            raise PermissionDeniedError("Reporting a crisis requires an identified caller")
        crisis = validators.parse_crisis_payload(payload, caller.user_id)
        await asyncio.to_thread(self.repositories.crises.create, crisis)
        self._index_crisis(crisis)
        self.logger.info(f"Crisis {crisis.id} created: {crisis.category.value} severity {crisis.severity.value}")
        self._publish_crisis(EventKind.CRISIS_CREATED, crisis)
        return crisis

    async def get_crisis(self, crisis_id: str) -> Crisis:
        return await asyncio.to_thread(self.repositories.crises.get_by_id, crisis_id)

    async def list_crises(
        self,
        filters: Optional[Dict[str, Any]] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None
    ) -> Page:
        storage_filters = self._translate_filters(
            filters, self.CRISIS_FILTERS,
            {'status': CrisisStatus, 'type': CrisisCategory, 'severity': Severity}
        )
        pagination = self._pagination(page, limit)
        return await asyncio.to_thread(self.repositories.crises.list, storage_filters, pagination)

    async def update_crisis(
        self,
        crisis_id: str,
        changes: Dict[str, Any],
        caller: Optional[CallerIdentity] = None
    ) -> Crisis:
        """Update a crisis' descriptive fields (type, severity, description, location, area, media)"""
        require_dispatcher(caller, "Updating a crisis")

        def mutate(crisis: Crisis) -> None:
            if crisis.status == CrisisStatus.ARCHIVED:
                raise InvalidTransitionError(crisis.status.value, crisis.status.value,
                                             f"Crisis {crisis_id} is archived")
            if 'type' in changes:
                crisis.category = validators.parse_enum(CrisisCategory, changes['type'], 'type')
            if 'severity' in changes:
                crisis.severity = validators.parse_enum(Severity, changes['severity'], 'severity')
            if 'description' in changes:
                crisis.description = changes['description']
            if 'location' in changes:
                crisis.location = validators.parse_point(changes['location'])
            if 'affectedArea' in changes:
                area = changes['affectedArea'] or {}
                crisis.affected_area = AffectedArea(
                    radius=area.get('radius', crisis.affected_area.radius),
                    unit=validators.parse_enum(AreaUnit, area.get('unit', crisis.affected_area.unit.value),
                                               'affectedArea.unit')
                )
            if 'media' in changes:
                try:
                    crisis.media = [MediaReference.from_dict(m) for m in changes['media'] or []]
                except (KeyError, TypeError):
                    raise ValidationError("Media entries need a type and url", field='media')
            validators.validate_crisis(crisis)

        crisis = await self._update_entity(self.repositories.crises, crisis_id, mutate)
        if crisis.is_active():
            self._index_crisis(crisis)
        self._publish_crisis(EventKind.CRISIS_UPDATED, crisis)
        return crisis

    async def add_crisis_update(
        self,
        crisis_id: str,
        content: str,
        caller: Optional[CallerIdentity] = None
    ) -> Crisis:
        """Append an entry to a crisis' update log"""
        if caller is None:
            raise PermissionDeniedError("Posting a crisis update requires an identified caller")
        validators.check_text(content, 'content', validators.MAX_DESCRIPTION_LENGTH)

        def mutate(crisis: Crisis) -> None:
            crisis.updates.append(CrisisUpdate(content=content, updated_by=caller.user_id))

        crisis = await self._update_entity(self.repositories.crises, crisis_id, mutate)
        self._publish_crisis(EventKind.CRISIS_UPDATED, crisis, update=crisis.updates[-1].to_dict())
        return crisis

    async def resolve_crisis(self, crisis_id: str, caller: Optional[CallerIdentity] = None) -> Crisis:
        """One-way transition from active to resolved"""
        require_dispatcher(caller, "Resolving a crisis")

        def mutate(crisis: Crisis) -> None:
            if crisis.status != CrisisStatus.ACTIVE:
                raise InvalidTransitionError(crisis.status.value, CrisisStatus.RESOLVED.value)
            crisis.status = CrisisStatus.RESOLVED

        crisis = await self._update_entity(self.repositories.crises, crisis_id, mutate)
        self._unindex_crisis(crisis_id)
        self.logger.info(f"Crisis {crisis_id} resolved")
        self._publish_crisis(EventKind.CRISIS_RESOLVED, crisis)
        return crisis

    async def archive_crisis(self, crisis_id: str, caller: Optional[CallerIdentity] = None) -> Crisis:
        require_dispatcher(caller, "Archiving a crisis")

        def mutate(crisis: Crisis) -> None:
            if crisis.status != CrisisStatus.RESOLVED:
                raise InvalidTransitionError(crisis.status.value, CrisisStatus.ARCHIVED.value)
            crisis.status = CrisisStatus.ARCHIVED

        crisis = await self._update_entity(self.repositories.crises, crisis_id, mutate)
        self.logger.info(f"Crisis {crisis_id} archived")
        return crisis

    async def delete_crisis(self, crisis_id: str, caller: Optional[CallerIdentity] = None) -> None:
        require_dispatcher(caller, "Deleting a crisis")
        await asyncio.to_thread(self.repositories.crises.delete, crisis_id)
        self._unindex_crisis(crisis_id)

    async def find_nearby_crises(self, location: Any, radius_meters: Optional[float] = None) -> List[NearbyResult]:
        """Active crises whose center lies within the radius"""
        point = validators.parse_point(location)
        radius = self.nearby_default_radius if radius_meters is None else radius_meters
        return await asyncio.to_thread(
            self._nearby, self.crisis_index, self.repositories.crises, point, radius,
            lambda c: c.is_active()
        )

    # Shelters

    def _publish_shelter(self, shelter: Shelter) -> None:
        self.broadcaster.publish(
            GLOBAL_TOPIC, EventKind.SHELTER_CAPACITY_UPDATED, shelter.id,
            {'shelter': shelter.to_dict()}
        )

    async def create_shelter(self, payload: Dict[str, Any], caller: Optional[CallerIdentity] = None) -> Shelter:
        caller = require_dispatcher(caller, "Creating a shelter")
        shelter = validators.parse_shelter_payload(payload, caller.user_id)
        await asyncio.to_thread(self.repositories.shelters.create, shelter)
        self.shelter_index.upsert(shelter.id, shelter.location)
        self.logger.info(f"Shelter {shelter.id} created with capacity {shelter.capacity}")
        return shelter

    async def get_shelter(self, shelter_id: str) -> Shelter:
        return await asyncio.to_thread(self.repositories.shelters.get_by_id, shelter_id)

    async def list_shelters(
        self,
        filters: Optional[Dict[str, Any]] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None
    ) -> Page:
        storage_filters = self._translate_filters(
            filters, self.SHELTER_FILTERS, {'status': ShelterStatus, 'type': ShelterType}
        )
        if 'has_medical' in storage_filters:
            value = storage_filters['has_medical']
            if isinstance(value, str):
                value = value.strip().lower() == 'true'
            storage_filters['has_medical'] = bool(value)
        pagination = self._pagination(page, limit)
        return await asyncio.to_thread(self.repositories.shelters.list, storage_filters, pagination)

    async def update_shelter(
        self,
        shelter_id: str,
        changes: Dict[str, Any],
        caller: Optional[CallerIdentity] = None
    ) -> Shelter:
        require_dispatcher(caller, "Updating a shelter")

        def mutate(shelter: Shelter) -> None:
            if 'name' in changes:
                shelter.name = changes['name']
            if 'type' in changes:
                shelter.shelter_type = validators.parse_enum(ShelterType, changes['type'], 'type')
            if 'location' in changes:
                shelter.location = validators.parse_point(changes['location'])
            if 'capacity' in changes:
                shelter.capacity = changes['capacity']
            if 'currentOccupancy' in changes:
                shelter.current_occupancy = changes['currentOccupancy']
            if 'hasMedical' in changes:
                shelter.has_medical = bool(changes['hasMedical'])
            if 'facilities' in changes:
                shelter.facilities = validators.parse_facilities(changes['facilities'])
            if 'contactInfo' in changes:
                shelter.contact_info = ContactInfo.from_dict(changes['contactInfo'])
            if 'status' in changes:
                shelter.status = validators.parse_enum(ShelterStatus, changes['status'], 'status')
            if 'notes' in changes:
                shelter.notes = changes['notes']
            validators.validate_shelter(shelter)

        shelter = await self._update_entity(self.repositories.shelters, shelter_id, mutate)
        self.shelter_index.upsert(shelter.id, shelter.location)
        if 'currentOccupancy' in changes or 'capacity' in changes:
            self._publish_shelter(shelter)
        return shelter

    async def update_shelter_occupancy(
        self,
        shelter_id: str,
        occupancy: int,
        caller: Optional[CallerIdentity] = None
    ) -> Shelter:
        """
        Set a shelter's occupancy.

        An active shelter that reaches capacity becomes full; a full shelter
        that drops below capacity becomes active again.
        """
        require_dispatcher(caller, "Updating shelter occupancy")
        validators.check_int(occupancy, 'currentOccupancy', 0)

        def mutate(shelter: Shelter) -> None:
            if occupancy > shelter.capacity:
                raise ValidationError(
                    f"Occupancy {occupancy} exceeds capacity {shelter.capacity}",
                    field='currentOccupancy'
                )
            shelter.current_occupancy = occupancy
            if shelter.status == ShelterStatus.ACTIVE and shelter.available_spaces == 0:
                shelter.status = ShelterStatus.FULL
            elif shelter.status == ShelterStatus.FULL and shelter.available_spaces > 0:
                shelter.status = ShelterStatus.ACTIVE

        shelter = await self._update_entity(self.repositories.shelters, shelter_id, mutate)
        self.logger.info(
            f"Shelter {shelter_id} occupancy {shelter.current_occupancy}/{shelter.capacity} "
            f"({shelter.status.value})"
        )
        self._publish_shelter(shelter)
        return shelter

    async def delete_shelter(self, shelter_id: str, caller: Optional[CallerIdentity] = None) -> None:
        require_dispatcher(caller, "Deleting a shelter")
        await asyncio.to_thread(self.repositories.shelters.delete, shelter_id)
        self.shelter_index.remove(shelter_id)

    async def find_nearby_shelters(
        self,
        location: Any,
        radius_meters: Optional[float] = None,
        available_only: bool = True
    ) -> List[NearbyResult]:
        point = validators.parse_point(location)
        radius = self.nearby_default_radius if radius_meters is None else radius_meters
        return await asyncio.to_thread(
            self._nearby, self.shelter_index, self.repositories.shelters, point, radius,
            (lambda s: s.is_available()) if available_only else None
        )

    async def get_shelter_overview(self) -> ShelterOverview:
        return await asyncio.to_thread(self.statistics.get_shelter_overview)

    # Teams

    async def create_team(self, payload: Dict[str, Any], caller: Optional[CallerIdentity] = None) -> Team:
        require_dispatcher(caller, "Creating a team")
        team = validators.parse_team_payload(payload)
        await asyncio.to_thread(self.repositories.teams.create, team)
        self.team_index.upsert(team.id, team.location)
        self.logger.info(f"Team {team.id} ({team.name}) created")
        return team

    async def get_team(self, team_id: str) -> Team:
        return await asyncio.to_thread(self.repositories.teams.get_by_id, team_id)

    async def list_teams(
        self,
        filters: Optional[Dict[str, Any]] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None
    ) -> Page:
        storage_filters = self._translate_filters(filters, self.TEAM_FILTERS, {'status': TeamStatus})
        pagination = self._pagination(page, limit)
        return await asyncio.to_thread(self.repositories.teams.list, storage_filters, pagination)

    async def update_team_location(
        self,
        team_id: str,
        location: Any,
        caller: Optional[CallerIdentity] = None
    ) -> Team:
        """Record a team's latest position (last write wins)"""
        require_dispatcher(caller, "Updating a team location")
        point = validators.parse_point(location)

        def announce(team: Team) -> None:
            self.broadcaster.publish(
                GLOBAL_TOPIC, EventKind.TEAM_LOCATION_UPDATED, team.id,
                {'teamId': team.id, 'location': point.to_dict(), 'status': team.status.value}
            )

        return await asyncio.to_thread(
            self._move_entity, self.repositories.teams, self.team_index, team_id, point, announce
        )

    async def set_team_status(
        self,
        team_id: str,
        status: Any,
        caller: Optional[CallerIdentity] = None
    ) -> Team:
        """Mark a team available or offline; busy is only set by assignment"""
        require_dispatcher(caller, "Changing a team status")
        status = validators.parse_enum(TeamStatus, status, 'status')
        if status == TeamStatus.BUSY:
            raise ValidationError("Teams become busy only through assignment", field='status')

        def mutate(team: Team) -> None:
            if team.current_assignment:
                if self.lifecycle.holds_active_request(team):
                    raise ConflictError(
                        f"Team {team_id} is handling SOS request {team.current_assignment}",
                        {'currentAssignment': team.current_assignment}
                    )
                team.current_assignment = None
            team.status = status

        team = await self._update_entity(self.repositories.teams, team_id, mutate)
        self.logger.info(f"Team {team_id} is now {status.value}")
        return team

    async def delete_team(self, team_id: str, caller: Optional[CallerIdentity] = None) -> None:
        require_dispatcher(caller, "Deleting a team")
        team = await self.get_team(team_id)
        if team.current_assignment and await asyncio.to_thread(self.lifecycle.holds_active_request, team):
            raise ConflictError(f"Team {team_id} is handling SOS request {team.current_assignment}")
        await asyncio.to_thread(self.repositories.teams.delete, team_id)
        self.team_index.remove(team_id)

    # Users

    async def register_user(self, payload: Dict[str, Any]) -> User:
        user = validators.parse_user_payload(payload)
        await asyncio.to_thread(self.repositories.users.create, user)
        if user.location:
            self.user_index.upsert(user.id, user.location)
        self.logger.info(f"User {user.id} registered as {user.role.value}")
        return user

    async def get_user(self, user_id: str) -> User:
        return await asyncio.to_thread(self.repositories.users.get_by_id, user_id)

    async def update_user_location(
        self,
        user_id: str,
        location: Any,
        caller: Optional[CallerIdentity] = None
    ) -> User:
        """Record a user's last-known location; users may only move themselves"""
        if caller is None or (caller.user_id != user_id and caller.role != UserRole.ADMIN):
            raise PermissionDeniedError("Users may only update their own location")
        point = validators.parse_point(location)
        return await asyncio.to_thread(
            self._move_entity, self.repositories.users, self.user_index, user_id, point
        )

    async def find_nearby_users(self, location: Any, radius_meters: Optional[float] = None) -> List[NearbyResult]:
        point = validators.parse_point(location)
        radius = self.nearby_default_radius if radius_meters is None else radius_meters
        return await asyncio.to_thread(
            self._nearby, self.user_index, self.repositories.users, point, radius
        )

    def get_service_status(self) -> Dict[str, Any]:
        return {
            'running': self._running,
            'strategy': self.strategy.name,
            'subscribers': self.broadcaster.subscriber_count(),
            'indexed': {
                'sos_requests': len(self.sos_index),
                'teams': len(self.team_index),
                'shelters': len(self.shelter_index),
                'crises': len(self.crisis_index),
                'users': len(self.user_index),
            }
        }
