"""
SOS Lifecycle Engine

State machine for SOS requests: validates transitions against an explicit
table, appends immutable history entries and keeps a request's assignee in
step with the team's current assignment.

Writes are optimistic. A write that loses a race on a record's version is
re-read and retried a bounded number of times before the conflict is
surfaced to the caller.
"""

import asyncio
import logging
import threading
from datetime import datetime
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from crisisgate.core.errors import (
    ConflictError, InvalidTransitionError, NotFoundError, VersionConflictError
)
from crisisgate.core.repository import RepositoryProvider
from crisisgate.models.entities import (
    SOSRequest, SOSStatus, StatusUpdate, Team, TeamStatus, utcnow
)
from .broadcaster import GLOBAL_TOPIC, EventBroadcaster, EventKind, sos_topic
from .geo_index import GeospatialIndex
from .validators import validate_sos_request


TRANSITIONS: Dict[SOSStatus, FrozenSet[SOSStatus]] = {
    SOSStatus.PENDING: frozenset({SOSStatus.IN_PROGRESS, SOSStatus.CANCELLED}),
    SOSStatus.IN_PROGRESS: frozenset({SOSStatus.RESOLVED, SOSStatus.CANCELLED}),
    SOSStatus.RESOLVED: frozenset(),
    SOSStatus.CANCELLED: frozenset(),
}

ASSIGNABLE_STATUSES = frozenset({SOSStatus.PENDING, SOSStatus.IN_PROGRESS})

DEFAULT_MAX_RETRIES = 3


def can_transition(current: SOSStatus, new_status: SOSStatus) -> bool:
    """Check whether new_status is reachable from current in one step"""
    return new_status in TRANSITIONS[current]


def check_transition(current: SOSStatus, new_status: SOSStatus) -> None:
    if not can_transition(current, new_status):
        raise InvalidTransitionError(current.value, new_status.value)


class SOSLifecycleEngine:
    """
    Creates, transitions and assigns SOS requests.

    Repository calls run in worker threads so concurrent operations on the
    same request genuinely race on the version check; the persisting step of
    an operation runs to completion even if the awaiting task is cancelled.
    """

    LOCK_STRIPES = 64

    def __init__(
        self,
        repositories: RepositoryProvider,
        broadcaster: EventBroadcaster,
        sos_index: Optional[GeospatialIndex] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        related_topics: Optional[Callable[[SOSRequest], Iterable[str]]] = None
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        self.logger = logging.getLogger(__name__)
        self.repositories = repositories
        self.broadcaster = broadcaster
        self.sos_index = sos_index
        self.max_retries = max_retries
        self.related_topics = related_topics

        # Commit and publish for one request happen under the same stripe so
        # subscribers see that request's events in commit order
        self._stripes = [threading.Lock() for _ in range(self.LOCK_STRIPES)]

    def _stripe(self, request_id: str) -> threading.Lock:
        return self._stripes[hash(request_id) % self.LOCK_STRIPES]

    def topics_for(self, request: SOSRequest) -> List[str]:
        """Topics an event about this request is published on"""
        topics = [GLOBAL_TOPIC, sos_topic(request.id)]
        if self.related_topics is not None:
            topics.extend(self.related_topics(request))
        return topics

    def _publish(self, kind: EventKind, request: SOSRequest, **extra) -> None:
        payload = {'request': request.to_dict()}
        payload.update(extra)
        self.broadcaster.publish_many(self.topics_for(request), kind, request.id, payload)

    @staticmethod
    def _next_timestamp(request: SOSRequest) -> datetime:
        """Current time, never earlier than the last history entry"""
        now = utcnow()
        if request.status_history and request.status_history[-1].timestamp > now:
            return request.status_history[-1].timestamp
        return now

    async def create(self, request: SOSRequest) -> SOSRequest:
        """
        Persist a new SOS request in the pending state.

        Args:
            request: Unsaved request built by the caller

        Returns:
            The stored request with its initial history entry
        """
        validate_sos_request(request)

        request.status = SOSStatus.PENDING
        request.assigned_to = None
        request.status_history = [
            StatusUpdate(
                status=SOSStatus.PENDING,
                note="Request created",
                updated_by=request.reporter_id
            )
        ]

        await asyncio.to_thread(self._create_sync, request)
        return request

    def _create_sync(self, request: SOSRequest) -> None:
        with self._stripe(request.id):
            self.repositories.sos_requests.create(request)
            if self.sos_index is not None:
                self.sos_index.upsert(request.id, request.location)
            self.logger.info(
                f"SOS request {request.id} created: {request.category.value} "
                f"priority {request.priority.value}"
            )
            self._publish(EventKind.REQUEST_CREATED, request)

    async def transition(
        self,
        request_id: str,
        new_status: SOSStatus,
        note: str = "",
        actor_id: Optional[str] = None
    ) -> SOSRequest:
        """
        Move a request to a new status.

        Entering a terminal status releases the assigned team in the same
        unit of work; cancelling also clears the request's assignee.

        Raises:
            NotFoundError: unknown request
            InvalidTransitionError: new_status not reachable from the current status
            ConflictError: concurrent writers kept winning or moved the request first
        """
        for attempt in range(1, self.max_retries + 1):
            try:
                return await asyncio.to_thread(
                    self._transition_once, request_id, new_status, note, actor_id, attempt > 1
                )
            except VersionConflictError as e:
                if attempt == self.max_retries:
                    self.logger.error(
                        f"Giving up transition of {request_id} to {new_status.value} "
                        f"after {attempt} attempts"
                    )
                    raise
                self.logger.warning(f"Retrying transition of {request_id} (attempt {attempt}): {e}")

    def _transition_once(
        self,
        request_id: str,
        new_status: SOSStatus,
        note: str,
        actor_id: Optional[str],
        retrying: bool
    ) -> SOSRequest:
        request = self.repositories.sos_requests.get_by_id(request_id)
        previous_status = request.status

        try:
            check_transition(previous_status, new_status)
        except InvalidTransitionError:
            if retrying:
                raise ConflictError(
                    f"SOS request {request_id} was concurrently moved to {previous_status.value}",
                    {'current': previous_status.value, 'attempted': new_status.value}
                )
            raise

        request.status_history.append(StatusUpdate(
            status=new_status,
            timestamp=self._next_timestamp(request),
            note=note or "",
            updated_by=actor_id
        ))
        request.status = new_status

        released = None
        if new_status.is_terminal and request.assigned_to:
            released = self._release_team(request)
            if new_status == SOSStatus.CANCELLED:
                request.assigned_to = None

        with self._stripe(request.id):
            with self.repositories.unit_of_work() as uow:
                uow.register_update(self.repositories.sos_requests, request)
                if released is not None:
                    uow.register_update(self.repositories.teams, released)

            self.logger.info(
                f"SOS request {request.id} moved {previous_status.value} -> {new_status.value}"
                + (f", released team {released.id}" if released else "")
            )
            self._publish(
                EventKind.STATUS_CHANGED,
                request,
                previousStatus=previous_status.value,
                status=new_status.value,
                releasedTeam=released.id if released else None
            )

        return request

    def _release_team(self, request: SOSRequest) -> Optional[Team]:
        """Free the team holding this request, if it still holds it"""
        try:
            team = self.repositories.teams.get_by_id(request.assigned_to)
        except NotFoundError:
            self.logger.warning(f"Assigned team {request.assigned_to} of {request.id} no longer exists")
            return None

        if team.current_assignment != request.id:
            return None

        team.current_assignment = None
        team.status = TeamStatus.AVAILABLE
        return team

    async def assign(
        self,
        request_id: str,
        team_id: str,
        actor_id: Optional[str] = None
    ) -> SOSRequest:
        """
        Assign a team to a request.

        A pending request moves to inProgress. Assigning the same team again
        is a no-op.

        Raises:
            NotFoundError: unknown request or team
            InvalidTransitionError: request is resolved or cancelled
            ConflictError: request has another active assignee, or the team
                is offline or busy with another active request
        """
        for attempt in range(1, self.max_retries + 1):
            try:
                return await asyncio.to_thread(self._assign_once, request_id, team_id, actor_id)
            except VersionConflictError as e:
                if attempt == self.max_retries:
                    self.logger.error(
                        f"Giving up assignment of {request_id} to team {team_id} after {attempt} attempts"
                    )
                    raise
                self.logger.warning(f"Retrying assignment of {request_id} (attempt {attempt}): {e}")

    def _assign_once(self, request_id: str, team_id: str, actor_id: Optional[str]) -> SOSRequest:
        request = self.repositories.sos_requests.get_by_id(request_id)
        team = self.repositories.teams.get_by_id(team_id)

        if request.status not in ASSIGNABLE_STATUSES:
            raise InvalidTransitionError(
                request.status.value,
                SOSStatus.IN_PROGRESS.value,
                f"Cannot assign SOS request {request_id} in status {request.status.value}"
            )

        if request.assigned_to == team.id and team.current_assignment == request.id:
            self.logger.debug(f"Team {team_id} already assigned to {request_id}")
            return request

        if request.assigned_to and request.assigned_to != team.id:
            raise ConflictError(
                f"SOS request {request_id} is already assigned to team {request.assigned_to}",
                {'assignedTo': request.assigned_to}
            )

        if team.status == TeamStatus.OFFLINE:
            raise ConflictError(f"Team {team_id} is offline", {'teamStatus': team.status.value})

        if team.current_assignment and team.current_assignment != request.id:
            if self.holds_active_request(team):
                raise ConflictError(
                    f"Team {team_id} is already handling SOS request {team.current_assignment}",
                    {'currentAssignment': team.current_assignment}
                )

        previous_status = request.status
        request.assigned_to = team.id
        if previous_status == SOSStatus.PENDING:
            request.status_history.append(StatusUpdate(
                status=SOSStatus.IN_PROGRESS,
                timestamp=self._next_timestamp(request),
                note=f"Assigned to team {team.name}",
                updated_by=actor_id
            ))
            request.status = SOSStatus.IN_PROGRESS

        team.current_assignment = request.id
        team.status = TeamStatus.BUSY

        with self._stripe(request.id):
            with self.repositories.unit_of_work() as uow:
                uow.register_update(self.repositories.sos_requests, request)
                uow.register_update(self.repositories.teams, team)

            self.logger.info(f"SOS request {request.id} assigned to team {team.id}")
            self._publish(
                EventKind.ASSIGNED,
                request,
                teamId=team.id,
                previousStatus=previous_status.value,
                status=request.status.value
            )

        return request

    def holds_active_request(self, team: Team) -> bool:
        """A team pointing at a missing or terminal request counts as free"""
        try:
            held = self.repositories.sos_requests.get_by_id(team.current_assignment)
        except NotFoundError:
            return False
        return held.is_active() and held.assigned_to == team.id

    def history_consistent(self, request: SOSRequest) -> Tuple[bool, str]:
        """Check the status/history invariants of a stored request"""
        if not request.status_history:
            return False, "empty history"
        if request.status_history[-1].status != request.status:
            return False, "status differs from last history entry"
        timestamps = [entry.timestamp for entry in request.status_history]
        if any(later < earlier for earlier, later in zip(timestamps, timestamps[1:])):
            return False, "history out of order"
        if request.assigned_to and request.status not in (SOSStatus.IN_PROGRESS, SOSStatus.RESOLVED):
            return False, "assignee set outside inProgress/resolved"
        return True, ""
