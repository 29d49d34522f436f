"""
MongoDB Connection Management
==============================

Handles the connection to the fleet replica set and provides the MongoDB
backend for the entity stores.

Invariants that must hold across processes are enforced by the database:
- partial unique indexes allow one active ride per user and per scooter
- scooter reservation is a conditional find_one_and_update on status
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from bson.decimal128 import Decimal128
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, ServerSelectionTimeoutError

from fleet_services.errors import DuplicateActiveRide, InvalidInput
from fleet_services.models import PricingRule, Ride, Scooter
from fleet_services.stores import (
    PaymentLedger, PricingStore, RideStore, ScooterStore, UserDirectory
)

logger = logging.getLogger(__name__)


def to_document(values: dict) -> dict:
    """Convert Decimal fields to Decimal128 for BSON storage"""
    return {
        key: Decimal128(value) if isinstance(value, Decimal) else value
        for key, value in values.items()
    }


def from_document(document: dict) -> dict:
    """Strip the Mongo _id and convert Decimal128 fields back to Decimal"""
    document = dict(document)
    document.pop("_id", None)
    return {
        key: value.to_decimal() if isinstance(value, Decimal128) else value
        for key, value in document.items()
    }


class DatabaseManager:
    """Manages the MongoDB connection for the fleet service"""

    def __init__(self, mongo_uri: str, db_name: str = "scooter_fleet"):
        self.mongo_uri = mongo_uri
        self.db_name = db_name
        self.client: Optional[AsyncIOMotorClient] = None
        self.db = None

    async def connect(self):
        """Establish connection to MongoDB"""
        try:
            self.client = AsyncIOMotorClient(
                self.mongo_uri,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=5000,
                socketTimeoutMS=10000,
                retryWrites=True,
                tz_aware=True,
                w="majority"  # Write concern for durability
            )

            # Verify connection
            await self.client.admin.command('ping')
            self.db = self.client[self.db_name]

            logger.info(f"Connected to MongoDB database {self.db_name}")

        except (ConnectionFailure, ServerSelectionTimeoutError) as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def disconnect(self):
        """Close MongoDB connection"""
        if self.client:
            self.client.close()
            logger.info("Disconnected from MongoDB")

    async def ensure_indexes(self):
        """Create the indexes the ride invariants rely on"""
        await self.get_scooters_collection().create_index("id", unique=True)
        await self.get_scooters_collection().create_index("serial_number", unique=True)
        await self.get_scooters_collection().create_index("status")

        rides = self.get_rides_collection()
        await rides.create_index("id", unique=True)
        await rides.create_index(
            [("user_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"status": "active"},
            name="active_ride_per_user"
        )
        await rides.create_index(
            [("scooter_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"status": "active"},
            name="active_ride_per_scooter"
        )
        await rides.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])

        await self.get_pricing_collection().create_index(
            [("is_active", ASCENDING), ("created_at", DESCENDING), ("id", DESCENDING)]
        )
        await self.get_payments_collection().create_index(
            [("status", ASCENDING), ("created_at", ASCENDING)]
        )
        logger.info("Ensured MongoDB indexes")

    async def health_check(self) -> dict:
        """
        Check MongoDB health

        Returns:
            dict: Health check information
        """
        try:
            await self.client.admin.command('ping')
            return {"status": "healthy", "database": self.db_name}

        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return {"status": "unhealthy", "database": self.db_name, "error": str(e)}

    async def next_id(self, name: str) -> int:
        """Allocate the next integer id from the counters collection"""
        counter = await self._collection("counters").find_one_and_update(
            {"_id": name},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER
        )
        return counter["seq"]

    def _collection(self, name: str):
        if self.db is None:
            raise RuntimeError("Database not connected")
        return self.db[name]

    def get_scooters_collection(self):
        """Get scooters collection"""
        return self._collection("scooters")

    def get_rides_collection(self):
        """Get rides collection"""
        return self._collection("rides")

    def get_pricing_collection(self):
        """Get pricing collection"""
        return self._collection("pricing")

    def get_users_collection(self):
        """Get users collection (owned by the account service)"""
        return self._collection("users")

    def get_payments_collection(self):
        """Get payments collection (owned by the payment service)"""
        return self._collection("payments")


# ============================================
# MONGO STORES
# ============================================

def _status_filter(record_id: int, expected_status) -> dict:
    query = {"id": record_id}
    if expected_status is not None:
        query["status"] = {"$in": list(expected_status)}
    return query


class MongoScooterStore(ScooterStore):

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    async def insert(self, scooter: Scooter) -> Scooter:
        collection = self.db_manager.get_scooters_collection()
        scooter = scooter.model_copy(update={"id": await self.db_manager.next_id("scooters")})
        try:
            await collection.insert_one(to_document(scooter.model_dump()))
        except DuplicateKeyError:
            raise InvalidInput(f"Serial number {scooter.serial_number} already registered")
        return scooter

    async def get(self, scooter_id: int) -> Optional[Scooter]:
        document = await self.db_manager.get_scooters_collection().find_one({"id": scooter_id})
        return Scooter(**from_document(document)) if document else None

    async def list(self, status=None):
        query = {"status": status} if status else {}
        cursor = self.db_manager.get_scooters_collection().find(query).sort("id", ASCENDING)
        return [Scooter(**from_document(d)) async for d in cursor]

    async def count(self, status=None) -> int:
        query = {"status": status} if status else {}
        return await self.db_manager.get_scooters_collection().count_documents(query)

    async def update(self, scooter_id, changes, expected_status=None):
        document = await self.db_manager.get_scooters_collection().find_one_and_update(
            _status_filter(scooter_id, expected_status),
            {"$set": to_document(changes)},
            return_document=ReturnDocument.AFTER
        )
        return Scooter(**from_document(document)) if document else None


class MongoRideStore(RideStore):

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    async def insert(self, ride: Ride) -> Ride:
        collection = self.db_manager.get_rides_collection()
        ride = ride.model_copy(update={"id": await self.db_manager.next_id("rides")})
        try:
            await collection.insert_one(to_document(ride.model_dump()))
        except DuplicateKeyError as e:
            key_pattern = (e.details or {}).get("keyPattern", {})
            if "scooter_id" in key_pattern:
                raise DuplicateActiveRide("scooter_id", ride.scooter_id)
            raise DuplicateActiveRide("user_id", ride.user_id)
        return ride

    async def get(self, ride_id: int) -> Optional[Ride]:
        document = await self.db_manager.get_rides_collection().find_one({"id": ride_id})
        return Ride(**from_document(document)) if document else None

    async def find_active(self, user_id=None, scooter_id=None):
        query = {"status": "active"}
        if user_id is not None:
            query["user_id"] = user_id
        if scooter_id is not None:
            query["scooter_id"] = scooter_id
        document = await self.db_manager.get_rides_collection().find_one(query)
        return Ride(**from_document(document)) if document else None

    async def update(self, ride_id, changes, expected_status=None):
        document = await self.db_manager.get_rides_collection().find_one_and_update(
            _status_filter(ride_id, expected_status),
            {"$set": to_document(changes)},
            return_document=ReturnDocument.AFTER
        )
        return Ride(**from_document(document)) if document else None

    async def list_for_user(self, user_id: int):
        cursor = self.db_manager.get_rides_collection().find({"user_id": user_id}).sort(
            [("created_at", DESCENDING), ("id", DESCENDING)]
        )
        return [Ride(**from_document(d)) async for d in cursor]

    async def count(self, status=None, since: Optional[datetime] = None) -> int:
        query = {}
        if status:
            query["status"] = status
        if since is not None:
            query["created_at"] = {"$gte": since}
        return await self.db_manager.get_rides_collection().count_documents(query)


class MongoPricingStore(PricingStore):

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    async def insert(self, rule: PricingRule) -> PricingRule:
        rule = rule.model_copy(update={"id": await self.db_manager.next_id("pricing")})
        await self.db_manager.get_pricing_collection().insert_one(to_document(rule.model_dump()))
        return rule

    async def get(self, rule_id: int) -> Optional[PricingRule]:
        document = await self.db_manager.get_pricing_collection().find_one({"id": rule_id})
        return PricingRule(**from_document(document)) if document else None

    async def latest_active(self) -> Optional[PricingRule]:
        cursor = self.db_manager.get_pricing_collection().find({"is_active": True}).sort(
            [("created_at", DESCENDING), ("id", DESCENDING)]
        ).limit(1)
        documents = await cursor.to_list(length=1)
        return PricingRule(**from_document(documents[0])) if documents else None

    async def update(self, rule_id, changes):
        document = await self.db_manager.get_pricing_collection().find_one_and_update(
            {"id": rule_id},
            {"$set": to_document(changes)},
            return_document=ReturnDocument.AFTER
        )
        return PricingRule(**from_document(document)) if document else None


class MongoUserDirectory(UserDirectory):
    """Reads the users collection maintained by the account service"""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    async def exists(self, user_id: int) -> bool:
        users = self.db_manager.get_users_collection()
        return await users.count_documents({"id": user_id}, limit=1) > 0

    async def is_admin(self, user_id: int) -> bool:
        user = await self.db_manager.get_users_collection().find_one(
            {"id": user_id}, {"is_admin": 1}
        )
        return bool(user and user.get("is_admin"))

    async def count(self) -> int:
        return await self.db_manager.get_users_collection().count_documents({})


class MongoPaymentLedger(PaymentLedger):
    """Reads the payments collection maintained by the payment service"""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    async def sum_completed(self, since: Optional[datetime] = None) -> Decimal:
        match = {"status": "completed"}
        if since is not None:
            match["created_at"] = {"$gte": since}
        pipeline = [
            {"$match": match},
            {"$group": {"_id": None, "total": {"$sum": "$amount"}}}
        ]
        result = await self.db_manager.get_payments_collection().aggregate(pipeline).to_list(length=1)
        if not result:
            return Decimal("0")
        total = result[0]["total"]
        return total.to_decimal() if isinstance(total, Decimal128) else Decimal(str(total))
