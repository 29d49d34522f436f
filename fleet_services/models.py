"""
Pydantic Models for Scooter Fleet Coordination
==============================================

Domain records (scooters, rides, pricing rules) and API request/response
models. Coordinates and money use Decimal with fixed precision:
7 fractional digits for degrees, 3 for kilometres, 2 for currency.
"""

from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Annotated, Literal, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, PlainSerializer


COORDINATE_PLACES = Decimal("0.0000001")
DISTANCE_PLACES = Decimal("0.001")
MONEY_PLACES = Decimal("0.01")

ScooterStatus = Literal["available", "reserving", "in_use", "maintenance", "charging"]
RideStatus = Literal["active", "completed", "cancelled"]
PaymentStatus = Literal["pending", "completed", "failed", "refunded"]
Command = Literal["lock", "unlock"]

# Statuses an operator may put an idle scooter into
SERVICE_STATUSES = ("available", "maintenance", "charging")


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def quantize(value, places: Decimal) -> Decimal:
    """Round a number to a fixed number of fractional digits"""
    return Decimal(str(value)).quantize(places, rounding=ROUND_HALF_UP)


def _quantizer(places: Decimal):
    def _apply(value: Decimal) -> Decimal:
        return quantize(value, places)
    return _apply


_as_json_number = PlainSerializer(float, return_type=float, when_used="json")

Coordinate = Annotated[Decimal, AfterValidator(_quantizer(COORDINATE_PLACES)), _as_json_number]
Distance = Annotated[Decimal, AfterValidator(_quantizer(DISTANCE_PLACES)), _as_json_number]
Money = Annotated[Decimal, AfterValidator(_quantizer(MONEY_PLACES)), _as_json_number]


# ============================================
# SCOOTER MODELS
# ============================================

class Scooter(BaseModel):
    """Scooter record owned by the fleet registry"""
    id: int = 0
    serial_number: str = Field(..., min_length=1)
    status: ScooterStatus = "available"
    battery_level: int = Field(100, ge=0, le=100)
    latitude: Coordinate
    longitude: Coordinate
    is_locked: bool = True
    last_ping: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": 1,
                "serial_number": "SC-0001",
                "status": "available",
                "battery_level": 80,
                "latitude": 40.7128,
                "longitude": -74.006,
                "is_locked": True,
                "last_ping": "2024-12-02T10:30:00Z",
                "created_at": "2024-12-01T08:00:00Z",
                "updated_at": "2024-12-02T10:30:00Z"
            }
        }
    )


class ScooterCreate(BaseModel):
    """Request model for onboarding a scooter"""
    serial_number: str = Field(..., min_length=1, max_length=64)
    latitude: Coordinate
    longitude: Coordinate


class TelemetryUpdate(BaseModel):
    """Periodic location/battery report from a scooter"""
    latitude: Coordinate
    longitude: Coordinate
    battery_level: int = Field(..., ge=0, le=100, description="Battery percentage (0 to 100)")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"latitude": 40.7130, "longitude": -74.0050, "battery_level": 76}
        }
    )


class ServiceStatusUpdate(BaseModel):
    """Operator request to move an idle scooter in or out of service"""
    status: Literal["available", "maintenance", "charging"]


class ScooterCommandRequest(BaseModel):
    """Request model for a lock/unlock command"""
    command: Command


class Acknowledgment(BaseModel):
    """Reply from scooter hardware for one issued command"""
    command_id: str
    status: str
    detail: Optional[str] = None


class CommandResult(BaseModel):
    """Outcome of a device command after retries"""
    success: bool
    message: str
    attempts: int = 0


# ============================================
# RIDE MODELS
# ============================================

class Ride(BaseModel):
    """Ride record owned by the ride coordinator"""
    id: int = 0
    user_id: int
    scooter_id: int
    status: RideStatus = "active"
    start_latitude: Coordinate
    start_longitude: Coordinate
    end_latitude: Optional[Coordinate] = None
    end_longitude: Optional[Coordinate] = None
    distance_km: Optional[Distance] = None
    duration_minutes: Optional[int] = None
    total_cost: Optional[Money] = None
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class StartRideRequest(BaseModel):
    """Request model for starting a ride"""
    user_id: int
    scooter_id: int
    start_latitude: Coordinate
    start_longitude: Coordinate

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "user_id": 1,
                "scooter_id": 1,
                "start_latitude": 40.7128,
                "start_longitude": -74.0060
            }
        }
    )


class EndRideRequest(BaseModel):
    """Request model for ending a ride"""
    end_latitude: Coordinate
    end_longitude: Coordinate
    distance_km: Distance = Field(..., ge=0)
    duration_minutes: int = Field(..., ge=0)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "end_latitude": 40.7580,
                "end_longitude": -73.9855,
                "distance_km": 2.5,
                "duration_minutes": 15
            }
        }
    )


# ============================================
# PRICING MODELS
# ============================================

class PricingRule(BaseModel):
    """Fare rule: base fee plus a per-minute rate"""
    id: int = 0
    base_price: Money = Field(..., gt=0)
    price_per_minute: Money = Field(..., gt=0)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PricingCreate(BaseModel):
    """Request model for creating a pricing rule"""
    base_price: Money = Field(..., gt=0)
    price_per_minute: Money = Field(..., gt=0)

    model_config = ConfigDict(
        json_schema_extra={"example": {"base_price": 2.50, "price_per_minute": 0.25}}
    )


# ============================================
# COLLABORATOR RECORDS
# ============================================

class UserRecord(BaseModel):
    """Minimal view of a user held by the user directory"""
    id: int = 0
    email: str
    full_name: str = ""
    is_admin: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class PaymentRecord(BaseModel):
    """Minimal view of a payment held by the payment ledger"""
    id: int = 0
    ride_id: int
    user_id: int
    amount: Money
    status: PaymentStatus = "pending"
    created_at: datetime = Field(default_factory=utcnow)


# ============================================
# DASHBOARD / HEALTH MODELS
# ============================================

class DashboardMetrics(BaseModel):
    """Fleet utilization and revenue snapshot"""
    total_users: int
    active_rides: int
    total_scooters: int
    available_scooters: int
    total_revenue: Money
    rides_today: int
    revenue_today: Money

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "total_users": 1200,
                "active_rides": 37,
                "total_scooters": 250,
                "available_scooters": 180,
                "total_revenue": 48210.75,
                "rides_today": 412,
                "revenue_today": 2315.50
            }
        }
    )


class HealthResponse(BaseModel):
    """Health check response"""
    status: Literal["healthy", "degraded", "unhealthy"]
    storage_backend: str
    storage_status: str
    device_channel: str
    uptime_seconds: float


class ErrorResponse(BaseModel):
    """Structured error body returned to clients"""
    error: str
    message: str
