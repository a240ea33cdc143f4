"""
Entity data models for CrisisGate

Defines the SOS request, crisis, shelter, team and user records shared by
the dispatch core. Serialized field names are camelCase to stay compatible
with existing clients.
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


EARTH_RADIUS_METERS = 6371008.8


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp (or pass through a datetime)"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class EntityKind(Enum):
    """Persisted entity kinds"""
    SOS_REQUEST = "sos_request"
    CRISIS = "crisis"
    SHELTER = "shelter"
    TEAM = "team"
    USER = "user"


class SOSCategory(Enum):
    """What kind of help an SOS request asks for"""
    MEDICAL = "medical"
    RESCUE = "rescue"
    FIRE = "fire"
    SECURITY = "security"
    FOOD = "food"
    SHELTER = "shelter"
    OTHER = "other"


class Priority(Enum):
    """SOS priority levels"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SOSStatus(Enum):
    """SOS request lifecycle status"""
    PENDING = "pending"
    IN_PROGRESS = "inProgress"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SOSStatus.RESOLVED, SOSStatus.CANCELLED)


class CrisisCategory(Enum):
    """Crisis types"""
    NATURAL = "natural"
    MEDICAL = "medical"
    FIRE = "fire"
    SECURITY = "security"
    OTHER = "other"


class Severity(Enum):
    """Crisis severity levels"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CrisisStatus(Enum):
    """Crisis status"""
    ACTIVE = "active"
    RESOLVED = "resolved"
    ARCHIVED = "archived"


class AreaUnit(Enum):
    METERS = "meters"
    KILOMETERS = "kilometers"


class ShelterType(Enum):
    """Shelter types"""
    EMERGENCY = "emergency"
    TEMPORARY = "temporary"
    PERMANENT = "permanent"
    MEDICAL = "medical"
    OTHER = "other"


class ShelterStatus(Enum):
    """Shelter operating status"""
    ACTIVE = "active"
    FULL = "full"
    CLOSED = "closed"
    MAINTENANCE = "maintenance"


class Facility(Enum):
    """Shelter facility tags"""
    BEDS = "beds"
    FOOD = "food"
    WATER = "water"
    ELECTRICITY = "electricity"
    INTERNET = "internet"
    MEDICAL = "medical"
    OTHER = "other"


class TeamStatus(Enum):
    """Responder team status"""
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class UserRole(Enum):
    """Account roles"""
    USER = "user"
    RESPONDER = "responder"
    ADMIN = "admin"


@dataclass(frozen=True)
class GeoPoint:
    """A WGS84 point stored as (longitude, latitude)"""
    longitude: float
    latitude: float

    def is_valid(self) -> bool:
        """Check coordinate ranges"""
        return (
            isinstance(self.longitude, (int, float)) and
            isinstance(self.latitude, (int, float)) and
            not isinstance(self.longitude, bool) and
            not isinstance(self.latitude, bool) and
            -180 <= self.longitude <= 180 and
            -90 <= self.latitude <= 90
        )

    def distance_to(self, other: 'GeoPoint') -> float:
        """
        Great-circle distance to another point in meters (haversine formula)

        Args:
            other: Other point

        Returns:
            Distance in meters
        """
        lat1 = math.radians(self.latitude)
        lat2 = math.radians(other.latitude)
        delta_lat = lat2 - lat1
        delta_lon = math.radians(other.longitude - self.longitude)

        a = (math.sin(delta_lat / 2) ** 2 +
             math.cos(lat1) * math.cos(lat2) *
             math.sin(delta_lon / 2) ** 2)
        c = 2 * math.asin(min(1.0, math.sqrt(a)))

        return EARTH_RADIUS_METERS * c

    def to_dict(self) -> Dict[str, Any]:
        """GeoJSON point"""
        return {'type': 'Point', 'coordinates': [self.longitude, self.latitude]}

    @classmethod
    def from_value(cls, value: Any) -> 'GeoPoint':
        """Build a point from a GeoJSON dict, a [lon, lat] pair or a GeoPoint"""
        if isinstance(value, GeoPoint):
            return value
        if isinstance(value, dict):
            value = value.get('coordinates')
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise ValueError(f"Invalid point: {value!r}")
        return cls(longitude=value[0], latitude=value[1])


@dataclass
class StatusUpdate:
    """One immutable entry of an SOS request's status history"""
    status: SOSStatus
    timestamp: datetime = field(default_factory=utcnow)
    note: str = ""
    updated_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': format_datetime(self.timestamp),
            'status': self.status.value,
            'note': self.note,
            'updatedBy': self.updated_by
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StatusUpdate':
        return cls(
            status=SOSStatus(data['status']),
            timestamp=parse_datetime(data.get('timestamp')) or utcnow(),
            note=data.get('note') or "",
            updated_by=data.get('updatedBy')
        )


@dataclass
class MedicalInfo:
    """Medical details attached to an SOS request"""
    has_injuries: bool = False
    injury_description: Optional[str] = None
    requires_medical: bool = False
    medical_conditions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'hasInjuries': self.has_injuries,
            'injuryDescription': self.injury_description,
            'requiresMedical': self.requires_medical,
            'medicalConditions': list(self.medical_conditions)
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'MedicalInfo':
        data = data or {}
        return cls(
            has_injuries=bool(data.get('hasInjuries', False)),
            injury_description=data.get('injuryDescription'),
            requires_medical=bool(data.get('requiresMedical', False)),
            medical_conditions=list(data.get('medicalConditions') or [])
        )


@dataclass
class MediaAttachment:
    """Opaque reference to an uploaded voice or video recording"""
    recording_url: str
    uploaded_at: datetime = field(default_factory=utcnow)
    transcript: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'recordingUrl': self.recording_url,
            'uploadedAt': format_datetime(self.uploaded_at)
        }
        if self.transcript is not None:
            data['transcript'] = self.transcript
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['MediaAttachment']:
        if not data:
            return None
        return cls(
            recording_url=data['recordingUrl'],
            uploaded_at=parse_datetime(data.get('uploadedAt')) or utcnow(),
            transcript=data.get('transcript')
        )


@dataclass
class SOSRequest:
    """One emergency help call"""
    category: SOSCategory
    priority: Priority
    location: GeoPoint
    description: str
    id: str = field(default_factory=new_id)
    reporter_id: Optional[str] = None
    people_count: int = 1
    medical_info: MedicalInfo = field(default_factory=MedicalInfo)
    voice: Optional[MediaAttachment] = None
    video: Optional[MediaAttachment] = None
    assigned_to: Optional[str] = None
    status: SOSStatus = SOSStatus.PENDING
    status_history: List[StatusUpdate] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 0

    def is_active(self) -> bool:
        """Check if the request is still awaiting or under response"""
        return not self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'userId': self.reporter_id,
            'type': self.category.value,
            'priority': self.priority.value,
            'location': self.location.to_dict(),
            'description': self.description,
            'status': self.status.value,
            'peopleCount': self.people_count,
            'medicalInfo': self.medical_info.to_dict(),
            'assignedTo': self.assigned_to,
            'statusHistory': [entry.to_dict() for entry in self.status_history],
            'voice': self.voice.to_dict() if self.voice else None,
            'video': self.video.to_dict() if self.video else None,
            'createdAt': format_datetime(self.created_at),
            'updatedAt': format_datetime(self.updated_at),
            'version': self.version
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SOSRequest':
        return cls(
            id=data['id'],
            reporter_id=data.get('userId'),
            category=SOSCategory(data['type']),
            priority=Priority(data['priority']),
            location=GeoPoint.from_value(data['location']),
            description=data['description'],
            status=SOSStatus(data['status']),
            people_count=data.get('peopleCount', 1),
            medical_info=MedicalInfo.from_dict(data.get('medicalInfo')),
            assigned_to=data.get('assignedTo'),
            status_history=[StatusUpdate.from_dict(e) for e in data.get('statusHistory', [])],
            voice=MediaAttachment.from_dict(data.get('voice')),
            video=MediaAttachment.from_dict(data.get('video')),
            created_at=parse_datetime(data.get('createdAt')) or utcnow(),
            updated_at=parse_datetime(data.get('updatedAt')) or utcnow(),
            version=data.get('version', 0)
        )


@dataclass
class AffectedArea:
    radius: float
    unit: AreaUnit = AreaUnit.METERS

    @property
    def radius_meters(self) -> float:
        if self.unit == AreaUnit.KILOMETERS:
            return self.radius * 1000.0
        return float(self.radius)

    def to_dict(self) -> Dict[str, Any]:
        return {'radius': self.radius, 'unit': self.unit.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AffectedArea':
        return cls(radius=data['radius'], unit=AreaUnit(data.get('unit', 'meters')))


@dataclass
class CrisisUpdate:
    """Append-only crisis log entry"""
    content: str
    updated_by: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': format_datetime(self.timestamp),
            'content': self.content,
            'updatedBy': self.updated_by
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CrisisUpdate':
        return cls(
            content=data.get('content', ''),
            updated_by=data.get('updatedBy'),
            timestamp=parse_datetime(data.get('timestamp')) or utcnow()
        )


@dataclass
class MediaReference:
    """Crisis image or video reference; stored, never interpreted"""
    media_type: str
    url: str
    caption: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.media_type, 'url': self.url, 'caption': self.caption}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MediaReference':
        return cls(media_type=data['type'], url=data['url'], caption=data.get('caption'))


@dataclass
class Crisis:
    """A broader incident context correlated with SOS requests by proximity"""
    category: CrisisCategory
    severity: Severity
    location: GeoPoint
    description: str
    affected_area: AffectedArea
    reported_by: str
    id: str = field(default_factory=new_id)
    status: CrisisStatus = CrisisStatus.ACTIVE
    media: List[MediaReference] = field(default_factory=list)
    updates: List[CrisisUpdate] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 0

    def is_active(self) -> bool:
        return self.status == CrisisStatus.ACTIVE

    def covers(self, point: GeoPoint) -> bool:
        """Check if a point falls inside the affected area"""
        return self.location.distance_to(point) <= self.affected_area.radius_meters

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.category.value,
            'severity': self.severity.value,
            'location': self.location.to_dict(),
            'description': self.description,
            'status': self.status.value,
            'reportedBy': self.reported_by,
            'affectedArea': self.affected_area.to_dict(),
            'media': [m.to_dict() for m in self.media],
            'updates': [u.to_dict() for u in self.updates],
            'createdAt': format_datetime(self.created_at),
            'updatedAt': format_datetime(self.updated_at),
            'version': self.version
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Crisis':
        return cls(
            id=data['id'],
            category=CrisisCategory(data['type']),
            severity=Severity(data['severity']),
            location=GeoPoint.from_value(data['location']),
            description=data['description'],
            status=CrisisStatus(data['status']),
            reported_by=data['reportedBy'],
            affected_area=AffectedArea.from_dict(data['affectedArea']),
            media=[MediaReference.from_dict(m) for m in data.get('media', [])],
            updates=[CrisisUpdate.from_dict(u) for u in data.get('updates', [])],
            created_at=parse_datetime(data.get('createdAt')) or utcnow(),
            updated_at=parse_datetime(data.get('updatedAt')) or utcnow(),
            version=data.get('version', 0)
        )


@dataclass
class ContactInfo:
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'phone': self.phone, 'email': self.email, 'address': self.address}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ContactInfo':
        data = data or {}
        return cls(phone=data.get('phone'), email=data.get('email'), address=data.get('address'))


@dataclass
class Shelter:
    """A capacity-bounded resource"""
    name: str
    location: GeoPoint
    capacity: int
    manager_id: str
    id: str = field(default_factory=new_id)
    shelter_type: ShelterType = ShelterType.TEMPORARY
    current_occupancy: int = 0
    has_medical: bool = False
    facilities: List[Facility] = field(default_factory=list)
    contact_info: ContactInfo = field(default_factory=ContactInfo)
    status: ShelterStatus = ShelterStatus.ACTIVE
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 0

    @property
    def available_spaces(self) -> int:
        return self.capacity - self.current_occupancy

    def is_available(self) -> bool:
        """Check if the shelter can take people right now"""
        return self.status == ShelterStatus.ACTIVE and self.available_spaces > 0

    def has_facility(self, facility: Facility) -> bool:
        return facility in self.facilities

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'type': self.shelter_type.value,
            'location': self.location.to_dict(),
            'capacity': self.capacity,
            'currentOccupancy': self.current_occupancy,
            'availableSpaces': self.available_spaces,
            'hasMedical': self.has_medical,
            'facilities': [f.value for f in self.facilities],
            'contactInfo': self.contact_info.to_dict(),
            'status': self.status.value,
            'manager': self.manager_id,
            'notes': self.notes,
            'createdAt': format_datetime(self.created_at),
            'updatedAt': format_datetime(self.updated_at),
            'version': self.version
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Shelter':
        return cls(
            id=data['id'],
            name=data['name'],
            shelter_type=ShelterType(data.get('type', 'temporary')),
            location=GeoPoint.from_value(data['location']),
            capacity=data['capacity'],
            current_occupancy=data.get('currentOccupancy', 0),
            has_medical=bool(data.get('hasMedical', False)),
            facilities=[Facility(f) for f in data.get('facilities', [])],
            contact_info=ContactInfo.from_dict(data.get('contactInfo')),
            status=ShelterStatus(data.get('status', 'active')),
            manager_id=data['manager'],
            notes=data.get('notes'),
            created_at=parse_datetime(data.get('createdAt')) or utcnow(),
            updated_at=parse_datetime(data.get('updatedAt')) or utcnow(),
            version=data.get('version', 0)
        )


@dataclass
class Team:
    """A mobile responder unit"""
    name: str
    location: GeoPoint
    id: str = field(default_factory=new_id)
    status: TeamStatus = TeamStatus.AVAILABLE
    members: List[str] = field(default_factory=list)
    vehicle: Optional[str] = None
    capabilities: List[SOSCategory] = field(default_factory=list)
    current_assignment: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 0

    def is_available(self) -> bool:
        return self.status == TeamStatus.AVAILABLE and self.current_assignment is None

    def handles(self, category: SOSCategory) -> bool:
        """Check if the team is equipped for a request category"""
        return category in self.capabilities

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'status': self.status.value,
            'members': list(self.members),
            'vehicle': self.vehicle,
            'capabilities': [c.value for c in self.capabilities],
            'location': self.location.to_dict(),
            'currentAssignment': self.current_assignment,
            'createdAt': format_datetime(self.created_at),
            'updatedAt': format_datetime(self.updated_at),
            'version': self.version
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Team':
        return cls(
            id=data['id'],
            name=data['name'],
            status=TeamStatus(data.get('status', 'available')),
            members=list(data.get('members', [])),
            vehicle=data.get('vehicle'),
            capabilities=[SOSCategory(c) for c in data.get('capabilities', [])],
            location=GeoPoint.from_value(data['location']),
            current_assignment=data.get('currentAssignment'),
            created_at=parse_datetime(data.get('createdAt')) or utcnow(),
            updated_at=parse_datetime(data.get('updatedAt')) or utcnow(),
            version=data.get('version', 0)
        )


@dataclass
class User:
    """Reporter, responder or admin account"""
    name: str
    email: str
    id: str = field(default_factory=new_id)
    role: UserRole = UserRole.USER
    phone: Optional[str] = None
    location: Optional[GeoPoint] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'role': self.role.value,
            'phone': self.phone,
            'location': self.location.to_dict() if self.location else None,
            'createdAt': format_datetime(self.created_at),
            'updatedAt': format_datetime(self.updated_at),
            'version': self.version
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'User':
        location = data.get('location')
        return cls(
            id=data['id'],
            name=data['name'],
            email=data['email'],
            role=UserRole(data.get('role', 'user')),
            phone=data.get('phone'),
            location=GeoPoint.from_value(location) if location else None,
            created_at=parse_datetime(data.get('createdAt')) or utcnow(),
            updated_at=parse_datetime(data.get('updatedAt')) or utcnow(),
            version=data.get('version', 0)
        )


@dataclass(frozen=True)
class CallerIdentity:
    """Opaque identity claim supplied by the authentication layer"""
    user_id: str
    role: UserRole = UserRole.USER

    def can_dispatch(self) -> bool:
        """Responders and admins may change assignments and statuses"""
        return self.role in (UserRole.RESPONDER, UserRole.ADMIN)
