"""
Fleet Error Taxonomy
====================

Typed failures raised by the coordination components. Each error carries
a machine-readable kind, the HTTP status the API layer reports, and a
message that is safe to show to clients.
"""

from typing import Optional


class FleetError(Exception):
    """Base class for all coordination failures"""

    kind = "InternalError"
    status_code = 500

    def __init__(self, message: str, entity_id: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message}


# ============================================
# NOT FOUND
# ============================================

class NotFoundError(FleetError):
    kind = "NotFound"
    status_code = 404


class UserNotFound(NotFoundError):
    kind = "UserNotFound"

    def __init__(self, user_id: int):
        super().__init__(f"User {user_id} not found", user_id)


class ScooterNotFound(NotFoundError):
    kind = "ScooterNotFound"

    def __init__(self, scooter_id: int):
        super().__init__(f"Scooter {scooter_id} not found", scooter_id)


class RideNotFound(NotFoundError):
    kind = "RideNotFound"

    def __init__(self, ride_id: int):
        super().__init__(f"Ride {ride_id} not found", ride_id)


class NoPricingConfigured(NotFoundError):
    kind = "NoPricingConfigured"

    def __init__(self):
        super().__init__("No active pricing found")


# ============================================
# CONFLICTS
# ============================================

class ConflictError(FleetError):
    kind = "Conflict"
    status_code = 409


class UserAlreadyRiding(ConflictError):
    kind = "UserAlreadyRiding"

    def __init__(self, user_id: int):
        super().__init__(f"User {user_id} already has an active ride", user_id)


class ScooterNotAvailable(ConflictError):
    kind = "ScooterNotAvailable"

    def __init__(self, scooter_id: int, status: Optional[str] = None):
        detail = f" (status: {status})" if status else ""
        super().__init__(f"Scooter {scooter_id} is not available{detail}", scooter_id)


class RideNotActive(ConflictError):
    kind = "RideNotActive"

    def __init__(self, ride_id: int, status: Optional[str] = None):
        detail = f" (status: {status})" if status else ""
        super().__init__(f"Ride {ride_id} is not active{detail}", ride_id)


class InvalidInput(FleetError):
    kind = "InvalidInput"
    status_code = 422


# ============================================
# HARDWARE
# ============================================

class HardwareError(FleetError):
    """Device command exhausted its retries or was refused"""

    kind = "HardwareError"
    status_code = 502


class UnlockFailed(HardwareError):
    kind = "UnlockFailed"

    def __init__(self, scooter_id: int, reason: str = ""):
        suffix = f": {reason}" if reason else ""
        super().__init__(f"Failed to unlock scooter {scooter_id}{suffix}", scooter_id)


class LockFailed(HardwareError):
    kind = "LockFailed"

    def __init__(self, scooter_id: int, reason: str = ""):
        suffix = f": {reason}" if reason else ""
        super().__init__(f"Failed to lock scooter {scooter_id}{suffix}", scooter_id)


class ConsistencyError(FleetError):
    """Persisted state contradicts a ride/scooter invariant"""

    kind = "ConsistencyError"
    status_code = 500


class DuplicateActiveRide(Exception):
    """Raised by stores when an insert would create a second active ride"""

    def __init__(self, field: str, value: int):
        super().__init__(f"Active ride already exists for {field}={value}")
        self.field = field
        self.value = value
