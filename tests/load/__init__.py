"""
Load Testing Package
====================

Ride start/end contention and telemetry load for the fleet API.

    pip install -e ".[load]"
    python init-scripts/seed-fleet.py --riders 1000
    locust -f tests/load/locustfile.py --host http://localhost:8000
"""
