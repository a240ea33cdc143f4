"""
Statistics Aggregator

Read-only counters over the repository. Never mutates and never fails on an
empty dataset.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from crisisgate.core.errors import ValidationError
from crisisgate.core.repository import RepositoryProvider
from crisisgate.models.entities import Priority, SOSRequest, SOSStatus, utcnow


@dataclass
class TimeWindow:
    """Half-open creation-time window [start, end)"""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def __post_init__(self):
        if self.start and self.end and self.start > self.end:
            raise ValidationError("Window start must not be after its end", field='window')

    @classmethod
    def last(cls, duration: timedelta) -> 'TimeWindow':
        return cls(start=utcnow() - duration)

    def to_filters(self) -> Dict[str, Any]:
        return {'created_after': self.start, 'created_before': self.end}


@dataclass
class SOSStatistics:
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    resolved: int = 0
    cancelled: int = 0
    avg_response_time_seconds: float = 0.0
    by_priority: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'pending': self.pending,
            'inProgress': self.in_progress,
            'resolved': self.resolved,
            'cancelled': self.cancelled,
            'avgResponseTimeSeconds': self.avg_response_time_seconds,
            'byPriority': dict(self.by_priority)
        }


@dataclass
class ShelterOverview:
    total: int = 0
    total_capacity: int = 0
    total_occupancy: int = 0
    available_spaces: int = 0
    with_medical: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'totalCapacity': self.total_capacity,
            'totalOccupancy': self.total_occupancy,
            'availableSpaces': self.available_spaces,
            'withMedical': self.with_medical
        }


def response_time_seconds(request: SOSRequest) -> Optional[float]:
    """Seconds from creation to the second history entry, whatever its status"""
    if len(request.status_history) < 2:
        return None
    return (request.status_history[1].timestamp - request.created_at).total_seconds()


class StatisticsAggregator:
    """Computes SOS and shelter statistics on demand"""

    def __init__(self, repositories: RepositoryProvider):
        self.repositories = repositories
        self.logger = logging.getLogger(__name__)

    def get_sos_statistics(self, window: Optional[TimeWindow] = None) -> SOSStatistics:
        filters = window.to_filters() if window else {}
        requests = self.repositories.sos_requests.list(filters=filters).items

        stats = SOSStatistics(by_priority={priority.value: 0 for priority in Priority})
        counters = {
            SOSStatus.PENDING: 'pending',
            SOSStatus.IN_PROGRESS: 'in_progress',
            SOSStatus.RESOLVED: 'resolved',
            SOSStatus.CANCELLED: 'cancelled',
        }

        response_times = []
        for request in requests:
            stats.total += 1
            attribute = counters[request.status]
            setattr(stats, attribute, getattr(stats, attribute) + 1)
            stats.by_priority[request.priority.value] += 1

            elapsed = response_time_seconds(request)
            if elapsed is not None:
                response_times.append(elapsed)

        if response_times:
            stats.avg_response_time_seconds = sum(response_times) / len(response_times)

        self.logger.debug(f"Computed SOS statistics over {stats.total} request(s)")
        return stats

    def get_shelter_overview(self) -> ShelterOverview:
        overview = ShelterOverview()
        for shelter in self.repositories.shelters.iter_all():
            overview.total += 1
            overview.total_capacity += shelter.capacity
            overview.total_occupancy += shelter.current_occupancy
            overview.available_spaces += shelter.available_spaces
            if shelter.has_medical:
                overview.with_medical += 1
        return overview
