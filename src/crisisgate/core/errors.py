"""
Error taxonomy for CrisisGate

All errors raised across the dispatch core derive from CrisisGateError so the
HTTP layer can translate them with a single handler.
"""

from typing import Any, Dict, Optional


class CrisisGateError(Exception):
    """Base class for all dispatch-core errors"""

    code = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a serializable dictionary"""
        return {
            'error': self.code,
            'message': self.message,
            'details': self.details
        }


class ValidationError(CrisisGateError):
    """Malformed input: out-of-range coordinates, missing fields, length limits"""

    code = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, {'field': field} if field else None)
        self.field = field


class NotFoundError(CrisisGateError):
    """Unknown entity ID"""

    code = "not_found"

    def __init__(self, kind: str, entity_id: str):
        super().__init__(f"{kind} {entity_id} not found", {'kind': kind, 'id': entity_id})
        self.kind = kind
        self.entity_id = entity_id


class InvalidTransitionError(CrisisGateError):
    """Status-machine violation"""

    code = "invalid_transition"

    def __init__(self, current: str, attempted: str, message: Optional[str] = None):
        super().__init__(
            message or f"Cannot transition from {current} to {attempted}",
            {'current': current, 'attempted': attempted}
        )
        self.current = current
        self.attempted = attempted


class ConflictError(CrisisGateError):
    """Double assignment or an unavailable responder"""

    code = "conflict"


class VersionConflictError(ConflictError):
    """Optimistic-concurrency loss: the record changed since it was read"""

    code = "version_conflict"

    def __init__(self, kind: str, entity_id: str, expected_version: int):
        super().__init__(
            f"{kind} {entity_id} was modified concurrently (expected version {expected_version})",
            {'kind': kind, 'id': entity_id, 'expected_version': expected_version}
        )
        self.kind = kind
        self.entity_id = entity_id
        self.expected_version = expected_version


class PermissionDeniedError(CrisisGateError):
    """Caller role is not allowed to perform the operation"""

    code = "permission_denied"


class InternalError(CrisisGateError):
    """Storage or index unavailability"""

    code = "internal_error"
