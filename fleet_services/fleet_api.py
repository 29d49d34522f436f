"""
Fleet Coordination API Service
==============================

FastAPI service exposing ride lifecycle, scooter command/telemetry,
pricing and dashboard operations.

Run: uvicorn fleet_services.fleet_api:app --host 0.0.0.0 --port 8000
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import List, Literal, Optional

from fastapi import Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse

from fleet_services import __version__
from fleet_services.config import Settings
from fleet_services.container import FleetServices, build_services
from fleet_services.errors import ConsistencyError, FleetError
from fleet_services.models import (
    CommandResult, DashboardMetrics, EndRideRequest, HealthResponse, PricingCreate,
    PricingRule, Ride, Scooter, ScooterCommandRequest, ScooterCreate,
    ServiceStatusUpdate, StartRideRequest, TelemetryUpdate
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, services: Optional[FleetServices] = None) -> FastAPI:
    """
    Build the API application.

    Pass `services` to run against a prebuilt instance (tests); otherwise
    one is built from `settings` (or the environment) at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle manager for startup/shutdown"""
        # Startup
        logger.info("Starting Fleet Coordination API...")
        app.state.started_at = time.time()
        if services is None:
            resolved = settings or Settings.from_env()
            logging.getLogger().setLevel(resolved.log_level.upper())
            app.state.services = await build_services(resolved)
        else:
            app.state.services = services
        yield
        # Shutdown
        logger.info("Shutting down Fleet Coordination API...")
        await app.state.services.close()

    app = FastAPI(
        title="Fleet Coordination API",
        version=__version__,
        description="Ride lifecycle and fleet coordination for shared scooters",
        lifespan=lifespan
    )

    @app.exception_handler(FleetError)
    async def fleet_error_handler(request: Request, exc: FleetError):
        if isinstance(exc, ConsistencyError):
            logger.error(f"{request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "InternalError", "message": "Internal server error"}
        )

    register_routes(app)
    return app


def get_services(request: Request) -> FleetServices:
    return request.app.state.services


def register_routes(app: FastAPI):

    # ============================================
    # SERVICE INFO / HEALTH
    # ============================================

    @app.get("/")
    async def root():
        """Root endpoint with API info"""
        return {
            "service": "Fleet Coordination API",
            "version": __version__,
            "endpoints": {
                "start_ride": "POST /rides - Start a ride",
                "end_ride": "POST /rides/{id}/end - End a ride and compute the fare",
                "cancel_ride": "POST /rides/{id}/cancel - Cancel an active ride",
                "command": "POST /scooters/{id}/command - Send lock/unlock",
                "telemetry": "PUT /scooters/{id}/telemetry - Report location and battery",
                "pricing": "GET /pricing/active - Active fare rule",
                "dashboard": "GET /dashboard - Fleet and revenue snapshot"
            }
        }

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request, services: FleetServices = Depends(get_services)):
        """Health check endpoint"""
        storage = await services.health()
        healthy = storage["status"] == "healthy"
        body = HealthResponse(
            status="healthy" if healthy else "unhealthy",
            storage_backend=services.settings.storage_backend,
            storage_status=storage["status"],
            device_channel=services.channel.name,
            uptime_seconds=time.time() - request.app.state.started_at
        )
        if not healthy:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content=body.model_dump()
            )
        return body

    # ============================================
    # SCOOTER ENDPOINTS
    # ============================================

    @app.post("/scooters", response_model=Scooter, status_code=status.HTTP_201_CREATED)
    async def register_scooter(body: ScooterCreate, services: FleetServices = Depends(get_services)):
        """Onboard a scooter"""
        return await services.registry.register_scooter(body.serial_number, body.latitude, body.longitude)

    @app.get("/scooters", response_model=List[Scooter])
    async def list_scooters(
        status: Optional[Literal["available", "reserving", "in_use", "maintenance", "charging"]] = None,
        services: FleetServices = Depends(get_services)
    ):
        """List scooters, optionally filtered by status"""
        return await services.registry.list_scooters(status)

    @app.get("/scooters/available", response_model=List[Scooter])
    async def available_scooters(services: FleetServices = Depends(get_services)):
        return await services.registry.available_scooters()

    @app.get("/scooters/{scooter_id}", response_model=Scooter)
    async def get_scooter(scooter_id: int, services: FleetServices = Depends(get_services)):
        return await services.registry.get_scooter(scooter_id)

    @app.put("/scooters/{scooter_id}/telemetry", response_model=Scooter)
    async def update_telemetry(scooter_id: int, body: TelemetryUpdate,
                               services: FleetServices = Depends(get_services)):
        """Apply a location/battery report"""
        return await services.registry.update_telemetry(
            scooter_id, body.latitude, body.longitude, body.battery_level
        )

    @app.put("/scooters/{scooter_id}/status", response_model=Scooter)
    async def set_service_status(scooter_id: int, body: ServiceStatusUpdate,
                                 services: FleetServices = Depends(get_services)):
        """Move an idle scooter in or out of service"""
        return await services.registry.set_service_status(scooter_id, body.status)

    @app.post("/scooters/{scooter_id}/command", response_model=CommandResult)
    async def send_command(scooter_id: int, body: ScooterCommandRequest,
                           services: FleetServices = Depends(get_services)):
        """Send a lock/unlock command to the scooter"""
        return await services.coordinator.send_scooter_command(scooter_id, body.command)

    # ============================================
    # RIDE ENDPOINTS
    # ============================================

    @app.post("/rides", response_model=Ride, status_code=status.HTTP_201_CREATED)
    async def start_ride(body: StartRideRequest, services: FleetServices = Depends(get_services)):
        """Start a ride: reserve and unlock the scooter"""
        return await services.coordinator.start_ride(
            body.user_id, body.scooter_id, body.start_latitude, body.start_longitude
        )

    @app.get("/rides/{ride_id}", response_model=Ride)
    async def get_ride(ride_id: int, services: FleetServices = Depends(get_services)):
        return await services.coordinator.get_ride(ride_id)

    @app.post("/rides/{ride_id}/end", response_model=Ride)
    async def end_ride(ride_id: int, body: EndRideRequest, services: FleetServices = Depends(get_services)):
        """End a ride: price it, lock and release the scooter"""
        return await services.coordinator.end_ride(
            ride_id, body.end_latitude, body.end_longitude, body.distance_km, body.duration_minutes
        )

    @app.post("/rides/{ride_id}/cancel", response_model=Ride)
    async def cancel_ride(ride_id: int, services: FleetServices = Depends(get_services)):
        return await services.coordinator.cancel_ride(ride_id)

    @app.get("/users/{user_id}/rides", response_model=List[Ride])
    async def user_rides(user_id: int, services: FleetServices = Depends(get_services)):
        """Ride history, newest first"""
        return await services.coordinator.user_rides(user_id)

    # ============================================
    # PRICING / DASHBOARD ENDPOINTS
    # ============================================

    @app.get("/pricing/active", response_model=Optional[PricingRule])
    async def active_pricing(services: FleetServices = Depends(get_services)):
        return await services.pricing.active_rule()

    @app.post("/pricing", response_model=PricingRule, status_code=status.HTTP_201_CREATED)
    async def create_pricing(body: PricingCreate, services: FleetServices = Depends(get_services)):
        return await services.pricing.create_rule(body.base_price, body.price_per_minute)

    @app.post("/pricing/{rule_id}/deactivate", response_model=PricingRule)
    async def deactivate_pricing(rule_id: int, services: FleetServices = Depends(get_services)):
        return await services.pricing.deactivate(rule_id)

    @app.get("/dashboard", response_model=DashboardMetrics)
    async def dashboard(services: FleetServices = Depends(get_services)):
        return await services.dashboard.snapshot()


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
