"""
Data models for CrisisGate

Contains all data classes and enumerations used throughout the dispatch core.
"""

from .entities import (
    EntityKind, GeoPoint, SOSCategory, Priority, SOSStatus, StatusUpdate,
    MedicalInfo, MediaAttachment, SOSRequest, CrisisCategory, Severity,
    CrisisStatus, AreaUnit, AffectedArea, CrisisUpdate, MediaReference, Crisis,
    ShelterType, ShelterStatus, Facility, ContactInfo, Shelter, TeamStatus, Team,
    UserRole, User, CallerIdentity, utcnow
)

__all__ = [
    'EntityKind', 'GeoPoint', 'SOSCategory', 'Priority', 'SOSStatus', 'StatusUpdate',
    'MedicalInfo', 'MediaAttachment', 'SOSRequest', 'CrisisCategory', 'Severity',
    'CrisisStatus', 'AreaUnit', 'AffectedArea', 'CrisisUpdate', 'MediaReference', 'Crisis',
    'ShelterType', 'ShelterStatus', 'Facility', 'ContactInfo', 'Shelter', 'TeamStatus', 'Team',
    'UserRole', 'User', 'CallerIdentity', 'utcnow'
]
