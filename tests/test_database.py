"""
Unit Tests for Database Connection Module
==========================================

DatabaseManager behavior without a server, and the Mongo stores
against mocked collections.
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

from bson.decimal128 import Decimal128
from pymongo.errors import DuplicateKeyError

from fleet_services.database import (
    DatabaseManager, MongoPaymentLedger, MongoPricingStore, MongoRideStore,
    MongoScooterStore, MongoUserDirectory, from_document, to_document
)
from fleet_services.errors import DuplicateActiveRide, InvalidInput
from fleet_services.models import Ride, Scooter


NOW = datetime(2024, 12, 2, 10, 30, tzinfo=timezone.utc)


def scooter_document(**overrides):
    document = {
        "_id": "65f0c0ffee",
        "id": 1,
        "serial_number": "SC-0001",
        "status": "available",
        "battery_level": 80,
        "latitude": Decimal128("40.7128000"),
        "longitude": Decimal128("-74.0060000"),
        "is_locked": True,
        "last_ping": NOW,
        "created_at": NOW,
        "updated_at": NOW
    }
    document.update(overrides)
    return document


def mock_manager(getter: str, collection):
    db_manager = MagicMock()
    db_manager.next_id = AsyncMock(return_value=7)
    getattr(db_manager, getter).return_value = collection
    return db_manager


class TestDatabaseManager:
    """Test DatabaseManager initialization and configuration"""

    def test_initialization(self):
        """Test connection settings are kept"""
        db_manager = DatabaseManager("mongodb://localhost:27017/?replicaSet=rs-fleet")
        assert db_manager.db_name == "scooter_fleet"
        assert "rs-fleet" in db_manager.mongo_uri
        assert db_manager.client is None

    def test_connection_not_established(self):
        """Test accessing collections before connection raises error"""
        db_mgr = DatabaseManager("mongodb://localhost:27017")
        with pytest.raises(RuntimeError) as exc_info:
            db_mgr.get_rides_collection()
        assert "Database not connected" in str(exc_info.value)

    async def test_health_check_without_connection(self):
        """Test health check reports unhealthy instead of raising"""
        db_mgr = DatabaseManager("mongodb://localhost:27017", db_name="fleet_test")
        health = await db_mgr.health_check()
        assert health["status"] == "unhealthy"
        assert health["database"] == "fleet_test"


class TestDocumentConversion:
    """Test Decimal <-> Decimal128 conversion"""

    def test_to_document(self):
        """Test Decimals become Decimal128"""
        document = to_document({"total_cost": Decimal("6.25"), "status": "completed"})
        assert document["total_cost"] == Decimal128("6.25")
        assert document["status"] == "completed"

    def test_from_document(self):
        """Test Decimal128 becomes Decimal and _id is dropped"""
        values = from_document(scooter_document())
        assert "_id" not in values
        assert values["latitude"] == Decimal("40.7128000")
        assert Scooter(**values).serial_number == "SC-0001"


class TestMongoScooterStore:
    """Test scooter persistence"""

    async def test_insert_assigns_id(self):
        """Test insert allocates an id from the counters collection"""
        collection = MagicMock()
        collection.insert_one = AsyncMock()
        store = MongoScooterStore(mock_manager("get_scooters_collection", collection))

        scooter = await store.insert(Scooter(serial_number="SC-9", latitude="40.7", longitude="-74.0"))

        assert scooter.id == 7
        stored = collection.insert_one.call_args[0][0]
        assert stored["id"] == 7
        assert isinstance(stored["latitude"], Decimal128)

    async def test_duplicate_serial(self):
        """Test the unique serial index maps to InvalidInput"""
        collection = MagicMock()
        collection.insert_one = AsyncMock(side_effect=DuplicateKeyError("E11000 duplicate key"))
        store = MongoScooterStore(mock_manager("get_scooters_collection", collection))

        with pytest.raises(InvalidInput):
            await store.insert(Scooter(serial_number="SC-9", latitude="40.7", longitude="-74.0"))

    async def test_conditional_update(self):
        """Test expected_status becomes part of the filter"""
        collection = MagicMock()
        collection.find_one_and_update = AsyncMock(return_value=scooter_document(status="reserving"))
        store = MongoScooterStore(mock_manager("get_scooters_collection", collection))

        scooter = await store.update(1, {"status": "reserving"}, expected_status=("available",))

        assert scooter.status == "reserving"
        query, update = collection.find_one_and_update.call_args[0][:2]
        assert query == {"id": 1, "status": {"$in": ["available"]}}
        assert update == {"$set": {"status": "reserving"}}

    async def test_conditional_update_lost(self):
        """Test a failed condition returns None"""
        collection = MagicMock()
        collection.find_one_and_update = AsyncMock(return_value=None)
        store = MongoScooterStore(mock_manager("get_scooters_collection", collection))
        assert await store.update(1, {"status": "reserving"}, expected_status=("available",)) is None


class TestMongoRideStore:
    """Test ride persistence"""

    @staticmethod
    def new_ride():
        return Ride(user_id=3, scooter_id=5, start_latitude="40.7", start_longitude="-74.0")

    async def test_duplicate_active_ride_per_scooter(self):
        """Test the partial unique index on scooter_id"""
        collection = MagicMock()
        collection.insert_one = AsyncMock(side_effect=DuplicateKeyError(
            "E11000", details={"keyPattern": {"scooter_id": 1}}
        ))
        store = MongoRideStore(mock_manager("get_rides_collection", collection))

        with pytest.raises(DuplicateActiveRide) as exc:
            await store.insert(self.new_ride())
        assert exc.value.field == "scooter_id"
        assert exc.value.value == 5

    async def test_duplicate_active_ride_per_user(self):
        """Test the partial unique index on user_id"""
        collection = MagicMock()
        collection.insert_one = AsyncMock(side_effect=DuplicateKeyError(
            "E11000", details={"keyPattern": {"user_id": 1}}
        ))
        store = MongoRideStore(mock_manager("get_rides_collection", collection))

        with pytest.raises(DuplicateActiveRide) as exc:
            await store.insert(self.new_ride())
        assert exc.value.field == "user_id"

    async def test_find_active_query(self):
        """Test active ride lookup filters on status"""
        collection = MagicMock()
        collection.find_one = AsyncMock(return_value=None)
        store = MongoRideStore(mock_manager("get_rides_collection", collection))

        assert await store.find_active(user_id=3) is None
        collection.find_one.assert_awaited_once_with({"status": "active", "user_id": 3})


class TestMongoReadModels:
    """Test pricing, user and payment reads"""

    async def test_latest_active_rule(self):
        """Test the newest active rule is read"""
        collection = MagicMock()
        cursor = collection.find.return_value.sort.return_value.limit.return_value
        cursor.to_list = AsyncMock(return_value=[{
            "_id": "x", "id": 2, "base_price": Decimal128("2.50"),
            "price_per_minute": Decimal128("0.25"), "is_active": True,
            "created_at": NOW, "updated_at": NOW
        }])
        store = MongoPricingStore(mock_manager("get_pricing_collection", collection))

        rule = await store.latest_active()
        assert rule.id == 2
        assert rule.base_price == Decimal("2.50")
        collection.find.assert_called_once_with({"is_active": True})

    async def test_user_exists(self):
        """Test user lookup against the account collection"""
        collection = MagicMock()
        collection.count_documents = AsyncMock(return_value=1)
        users = MongoUserDirectory(mock_manager("get_users_collection", collection))
        assert await users.exists(3) is True

    async def test_revenue_sum(self):
        """Test completed payments are summed by the server"""
        collection = MagicMock()
        collection.aggregate.return_value.to_list = AsyncMock(
            return_value=[{"_id": None, "total": Decimal128("12.50")}]
        )
        ledger = MongoPaymentLedger(mock_manager("get_payments_collection", collection))

        assert await ledger.sum_completed(since=NOW) == Decimal("12.50")
        pipeline = collection.aggregate.call_args[0][0]
        assert pipeline[0] == {"$match": {"status": "completed", "created_at": {"$gte": NOW}}}

    async def test_revenue_sum_empty(self):
        """Test no payments sums to zero"""
        collection = MagicMock()
        collection.aggregate.return_value.to_list = AsyncMock(return_value=[])
        ledger = MongoPaymentLedger(mock_manager("get_payments_collection", collection))
        assert await ledger.sum_completed() == Decimal("0")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
