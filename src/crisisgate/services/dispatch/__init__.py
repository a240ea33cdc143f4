"""
Dispatch Service Module

Provides the SOS dispatch core:
- SOS request lifecycle with optimistic concurrency
- Geospatial proximity search over teams, shelters, crises and users
- Ranked dispatch candidates and configurable auto-assignment
- Topic-scoped live event fan-out
- SOS and shelter statistics
"""

from .broadcaster import EventBroadcaster, EventKind, Event, Subscription
from .dispatch_service import DispatchService, DispatchResult, NearbyResult
from .geo_index import GeospatialIndex
from .lifecycle import SOSLifecycleEngine, TRANSITIONS
from .matcher import DispatchMatcher, DispatchCandidate
from .repository import SQLiteRepositoryProvider
from .statistics import StatisticsAggregator, TimeWindow

__all__ = [
    'DispatchService',
    'DispatchResult',
    'NearbyResult',
    'EventBroadcaster',
    'EventKind',
    'Event',
    'Subscription',
    'GeospatialIndex',
    'SOSLifecycleEngine',
    'TRANSITIONS',
    'DispatchMatcher',
    'DispatchCandidate',
    'SQLiteRepositoryProvider',
    'StatisticsAggregator',
    'TimeWindow'
]
