"""
Scooter Fleet Coordination Services
===================================

This package contains the ride lifecycle and fleet coordination engine:
- fleet_registry.py: Scooter state, reservation and telemetry
- pricing.py: Active fare rule and fare computation
- device_gateway.py: Lock/unlock command channels with retries
- ride_coordinator.py: Ride start/end/cancel state machine
- dashboard.py: Fleet and revenue snapshot
- fleet_api.py: FastAPI service (port 8000)
- container.py: Builds one instance of all components from Settings
- models.py: Pydantic data models
- stores.py / database.py: In-memory and MongoDB persistence
- traffic_simulator.py: Rider traffic generator for a running API
"""

__version__ = "1.0.0"
__author__ = "Fleet Platform Team"
