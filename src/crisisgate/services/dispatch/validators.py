"""
Payload validation for the dispatch core

Turns loosely-typed payloads (as they arrive from the HTTP layer) into entity
models, and checks entity invariants before they are persisted. Every
failure raises ValidationError naming the offending field.
"""

import math
import re
from typing import Any, Dict, List, Optional, Type, TypeVar

from crisisgate.core.errors import ValidationError
from crisisgate.models.entities import (
    AffectedArea, AreaUnit, ContactInfo, Crisis, CrisisCategory, Facility,
    GeoPoint, MediaAttachment, MediaReference, MedicalInfo, Priority,
    SOSCategory, SOSRequest, Severity, Shelter, ShelterStatus, ShelterType,
    Team, TeamStatus, User, UserRole
)


MAX_DESCRIPTION_LENGTH = 1000
MAX_NOTES_LENGTH = 1000
MAX_SHELTER_NAME_LENGTH = 100
MAX_USER_NAME_LENGTH = 50
MAX_TEAM_NAME_LENGTH = 100

EMAIL_PATTERN = re.compile(r'^\w+([.-]?\w+)*@\w+([.-]?\w+)*(\.\w{2,3})+$')
MEDIA_TYPES = ('image', 'video')

E = TypeVar('E')


def require(payload: Dict[str, Any], key: str) -> Any:
    """Fetch a required payload field"""
    value = payload.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{key} is required", field=key)
    return value


def parse_enum(enum_cls: Type[E], value: Any, field: str) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ', '.join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {field} {value!r}; expected one of {allowed}", field=field)


def parse_point(value: Any, field: str = 'location') -> GeoPoint:
    """Parse a GeoJSON point or [longitude, latitude] pair"""
    try:
        point = GeoPoint.from_value(value)
    except ValueError:
        raise ValidationError("Coordinates must be [longitude, latitude]", field=field)
    check_point(point, field)
    return point


def check_point(point: GeoPoint, field: str = 'location') -> None:
    if not point.is_valid() or math.isnan(point.longitude) or math.isnan(point.latitude):
        raise ValidationError(
            f"Invalid coordinates [{point.longitude}, {point.latitude}]", field=field
        )


def check_text(value: Any, field: str, max_length: int, required: bool = True) -> None:
    if value is None and not required:
        return
    if not isinstance(value, str) or (required and not value.strip()):
        raise ValidationError(f"{field} is required", field=field)
    if len(value) > max_length:
        raise ValidationError(
            f"{field} cannot be more than {max_length} characters", field=field
        )


def check_int(value: Any, field: str, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", field=field)
    if value < minimum:
        raise ValidationError(f"{field} must be at least {minimum}", field=field)
    return value


def check_email(email: Any, field: str = 'email') -> None:
    if not isinstance(email, str) or not EMAIL_PATTERN.match(email):
        raise ValidationError("Please provide a valid email", field=field)


def parse_attachment(data: Optional[Dict[str, Any]], field: str) -> Optional[MediaAttachment]:
    if not data:
        return None
    if not isinstance(data, dict) or not data.get('recordingUrl'):
        raise ValidationError(f"{field}.recordingUrl is required", field=field)
    try:
        return MediaAttachment.from_dict(data)
    except ValueError as e:
        raise ValidationError(f"Invalid {field} attachment: {e}", field=field)


# SOS requests

def validate_sos_request(request: SOSRequest) -> None:
    """Check an SOS request before it is stored"""
    check_point(request.location)
    check_text(request.description, 'description', MAX_DESCRIPTION_LENGTH)
    check_int(request.people_count, 'peopleCount', 1)
    if not isinstance(request.category, SOSCategory):
        raise ValidationError("type is required", field='type')
    if not isinstance(request.priority, Priority):
        raise ValidationError("priority is required", field='priority')
    for field, attachment in (('voice', request.voice), ('video', request.video)):
        if attachment is not None and not attachment.recording_url:
            raise ValidationError(f"{field}.recordingUrl is required", field=field)


def parse_sos_payload(payload: Dict[str, Any], reporter_id: Optional[str] = None) -> SOSRequest:
    """Build an unsaved SOS request from a client payload"""
    if not isinstance(payload, dict):
        raise ValidationError("SOS payload must be an object")

    medical = payload.get('medicalInfo')
    if medical is not None and not isinstance(medical, dict):
        raise ValidationError("medicalInfo must be an object", field='medicalInfo')

    request = SOSRequest(
        category=parse_enum(SOSCategory, require(payload, 'type'), 'type'),
        priority=parse_enum(Priority, require(payload, 'priority'), 'priority'),
        location=parse_point(require(payload, 'location')),
        description=require(payload, 'description'),
        reporter_id=reporter_id,
        people_count=payload.get('peopleCount', 1),
        medical_info=MedicalInfo.from_dict(medical),
        voice=parse_attachment(payload.get('voice'), 'voice'),
        video=parse_attachment(payload.get('video'), 'video'),
    )
    validate_sos_request(request)
    return request


# Crises

def validate_crisis(crisis: Crisis) -> None:
    check_point(crisis.location)
    check_text(crisis.description, 'description', MAX_DESCRIPTION_LENGTH)
    if not crisis.reported_by:
        raise ValidationError("Reporter is required", field='reportedBy')
    radius = crisis.affected_area.radius
    if (isinstance(radius, bool) or not isinstance(radius, (int, float))
            or math.isnan(radius) or radius < 0):
        raise ValidationError("Radius cannot be negative", field='affectedArea.radius')
    for media in crisis.media:
        if media.media_type not in MEDIA_TYPES:
            raise ValidationError(f"Invalid media type {media.media_type!r}", field='media')


def parse_crisis_payload(payload: Dict[str, Any], reported_by: str) -> Crisis:
    if not isinstance(payload, dict):
        raise ValidationError("Crisis payload must be an object")

    area = require(payload, 'affectedArea')
    if not isinstance(area, dict) or area.get('radius') is None:
        raise ValidationError("Affected area radius is required", field='affectedArea.radius')

    try:
        media = [MediaReference.from_dict(m) for m in payload.get('media') or []]
    except (KeyError, TypeError):
        raise ValidationError("Media entries need a type and url", field='media')

    crisis = Crisis(
        category=parse_enum(CrisisCategory, require(payload, 'type'), 'type'),
        severity=parse_enum(Severity, require(payload, 'severity'), 'severity'),
        location=parse_point(require(payload, 'location')),
        description=require(payload, 'description'),
        affected_area=AffectedArea(
            radius=area['radius'],
            unit=parse_enum(AreaUnit, area.get('unit', 'meters'), 'affectedArea.unit')
        ),
        reported_by=reported_by,
        media=media
    )
    validate_crisis(crisis)
    return crisis


# Shelters

def validate_shelter(shelter: Shelter) -> None:
    """Check shelter invariants, including 0 <= occupancy <= capacity"""
    check_text(shelter.name, 'name', MAX_SHELTER_NAME_LENGTH)
    check_point(shelter.location)
    check_int(shelter.capacity, 'capacity', 1)
    check_int(shelter.current_occupancy, 'currentOccupancy', 0)
    if shelter.current_occupancy > shelter.capacity:
        raise ValidationError(
            f"Current occupancy {shelter.current_occupancy} exceeds capacity {shelter.capacity}",
            field='currentOccupancy'
        )
    if not shelter.manager_id:
        raise ValidationError("Shelter manager is required", field='manager')
    check_text(shelter.notes, 'notes', MAX_NOTES_LENGTH, required=False)
    if shelter.contact_info.email:
        check_email(shelter.contact_info.email, 'contactInfo.email')


def parse_facilities(values: Any) -> List[Facility]:
    if values is None:
        return []
    if not isinstance(values, (list, tuple)):
        raise ValidationError("facilities must be a list", field='facilities')
    return [parse_enum(Facility, value, 'facilities') for value in values]


def parse_shelter_payload(payload: Dict[str, Any], manager_id: str) -> Shelter:
    if not isinstance(payload, dict):
        raise ValidationError("Shelter payload must be an object")

    shelter = Shelter(
        name=require(payload, 'name'),
        shelter_type=parse_enum(ShelterType, require(payload, 'type'), 'type'),
        location=parse_point(require(payload, 'location')),
        capacity=require(payload, 'capacity'),
        current_occupancy=payload.get('currentOccupancy', 0),
        has_medical=bool(payload.get('hasMedical', False)),
        facilities=parse_facilities(payload.get('facilities')),
        contact_info=ContactInfo.from_dict(payload.get('contactInfo')),
        status=parse_enum(ShelterStatus, payload.get('status', 'active'), 'status'),
        manager_id=payload.get('manager') or manager_id,
        notes=payload.get('notes')
    )
    validate_shelter(shelter)
    return shelter


# Teams

def validate_team(team: Team) -> None:
    check_text(team.name, 'name', MAX_TEAM_NAME_LENGTH)
    check_point(team.location)
    if team.status == TeamStatus.BUSY and not team.current_assignment:
        raise ValidationError("A busy team must hold an assignment", field='status')


def parse_team_payload(payload: Dict[str, Any]) -> Team:
    if not isinstance(payload, dict):
        raise ValidationError("Team payload must be an object")

    members = payload.get('members') or []
    if not isinstance(members, (list, tuple)):
        raise ValidationError("members must be a list", field='members')

    capabilities = payload.get('capabilities') or []
    if not isinstance(capabilities, (list, tuple)):
        raise ValidationError("capabilities must be a list", field='capabilities')

    status = parse_enum(TeamStatus, payload.get('status', 'available'), 'status')
    if status == TeamStatus.BUSY:
        raise ValidationError("A new team cannot start busy", field='status')

    team = Team(
        name=require(payload, 'name'),
        location=parse_point(require(payload, 'location')),
        status=status,
        members=[str(member) for member in members],
        vehicle=payload.get('vehicle'),
        capabilities=[parse_enum(SOSCategory, c, 'capabilities') for c in capabilities]
    )
    validate_team(team)
    return team


# Users

def validate_user(user: User) -> None:
    check_text(user.name, 'name', MAX_USER_NAME_LENGTH)
    check_email(user.email)
    if user.location is not None:
        check_point(user.location)


def parse_user_payload(payload: Dict[str, Any]) -> User:
    if not isinstance(payload, dict):
        raise ValidationError("User payload must be an object")

    location = payload.get('location')
    user = User(
        name=require(payload, 'name'),
        email=str(require(payload, 'email')).lower(),
        role=parse_enum(UserRole, payload.get('role', 'user'), 'role'),
        phone=payload.get('phone'),
        location=parse_point(location) if location is not None else None
    )
    validate_user(user)
    return user
