"""
Domain error taxonomy for the queue engine.

Every error carries a machine readable ``code`` and an optional ``payload``
that the API layer renders next to the message. Storage and redis failures
are not wrapped here; they surface as infrastructure errors.
"""

from typing import Any, Dict, Optional


class QueueError(Exception):
    code = "QUEUE_ERROR"
    status_code = 400

    def __init__(self, message: str, code: Optional[str] = None, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.payload = payload or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.payload}


class NotFoundError(QueueError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(
            f"{entity.capitalize()} not found",
            code=f"{entity.upper()}_NOT_FOUND",
            payload={"id": str(entity_id)},
        )
        self.entity = entity


class ValidationFailed(QueueError):
    code = "VALIDATION_ERROR"
    status_code = 422


class InvalidStateError(QueueError):
    code = "INVALID_STATE"
    status_code = 409

    def __init__(self, current: str, requested: str):
        super().__init__(
            f"Cannot move token from {current} to {requested}",
            payload={"current_status": current, "requested_status": requested},
        )


class GeofenceViolation(QueueError):
    code = "GEOFENCE_VIOLATION"
    status_code = 400

    def __init__(self, current_distance: float, required_distance: float):
        super().__init__(
            f"You must be within {required_distance:g}m of the hospital",
            payload={
                "current_distance": current_distance,
                "required_distance": required_distance,
            },
        )


class NoDoctorAvailable(QueueError):
    code = "NO_DOCTOR_AVAILABLE"
    status_code = 404


class NoCapacityEscalate(QueueError):
    code = "NO_CAPACITY_ESCALATE"
    status_code = 409


class ConcurrencyConflict(QueueError):
    code = "CONCURRENCY_CONFLICT"
    status_code = 409
