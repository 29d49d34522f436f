"""
Integration Tests Package
==========================

Integration tests need a MongoDB replica set (rs-fleet) on localhost:27017
and the fleet API on localhost:8000 running with STORAGE_BACKEND=mongo and
DEVICE_CHANNEL=simulated. They are deselected by default:
    pytest tests/integration/ -v -m integration
"""
