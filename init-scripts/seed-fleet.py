#!/usr/bin/env python3
"""
Fleet Seed Script
=================

Prepares a local MongoDB replica set for development, the traffic
simulator and the load tests:

- Riders with ids 1..N in the users collection (normally owned by the
  account service)
- Scooters scattered around lower Manhattan, available and locked
- One active pricing rule (2.50 base + 0.25 per minute)

Indexes are created by the API on startup.

Usage:
    python init-scripts/seed-fleet.py --riders 1000 --scooters 200
"""

import argparse
import os
import random
import sys
from datetime import datetime, timezone

from bson.decimal128 import Decimal128
from faker import Faker
from pymongo import MongoClient, ReturnDocument, UpdateOne
from pymongo.errors import ConnectionFailure, ServerSelectionTimeoutError

MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017/?replicaSet=rs-fleet")
DB_NAME = os.getenv("MONGO_DB_NAME", "scooter_fleet")


def next_id(db, name):
    counter = db.counters.find_one_and_update(
        {"_id": name}, {"$inc": {"seq": 1}}, upsert=True, return_document=ReturnDocument.AFTER
    )
    return counter["seq"]


def seed_riders(db, count, fake):
    now = datetime.now(timezone.utc)
    ops = [
        UpdateOne(
            {"id": user_id},
            {"$setOnInsert": {
                "id": user_id,
                "email": f"rider{user_id}.{fake.user_name()}@example.com",
                "full_name": fake.name(),
                "is_admin": False,
                "created_at": now
            }},
            upsert=True
        )
        for user_id in range(1, count + 1)
    ]
    result = db.users.bulk_write(ops)
    print(f"✅ Riders: {result.upserted_count} created, {count - result.upserted_count} already present")


def seed_scooters(db, count, rng):
    now = datetime.now(timezone.utc)
    created = 0
    for n in range(1, count + 1):
        serial = f"SC-{n:04d}"
        if db.scooters.count_documents({"serial_number": serial}, limit=1):
            continue
        lat = round(40.70 + rng.random() * 0.05, 7)
        lon = round(-74.02 + rng.random() * 0.05, 7)
        db.scooters.insert_one({
            "id": next_id(db, "scooters"),
            "serial_number": serial,
            "status": "available",
            "battery_level": rng.randint(40, 100),
            "latitude": Decimal128(f"{lat:.7f}"),
            "longitude": Decimal128(f"{lon:.7f}"),
            "is_locked": True,
            "last_ping": now,
            "created_at": now,
            "updated_at": now
        })
        created += 1
    print(f"✅ Scooters: {created} created")


def seed_pricing(db):
    if db.pricing.count_documents({"is_active": True}, limit=1):
        print("⏭️  Active pricing rule already present")
        return
    now = datetime.now(timezone.utc)
    db.pricing.insert_one({
        "id": next_id(db, "pricing"),
        "base_price": Decimal128("2.50"),
        "price_per_minute": Decimal128("0.25"),
        "is_active": True,
        "created_at": now,
        "updated_at": now
    })
    print("✅ Pricing rule created: 2.50 + 0.25/min")


def main():
    parser = argparse.ArgumentParser(description="Seed the scooter fleet database")
    parser.add_argument("--riders", type=int, default=1000, help="Number of riders (default: 1000)")
    parser.add_argument("--scooters", type=int, default=200, help="Number of scooters (default: 200)")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    args = parser.parse_args()

    client = MongoClient(MONGO_URI, serverSelectionTimeoutMS=5000)
    try:
        client.admin.command("ping")
    except (ConnectionFailure, ServerSelectionTimeoutError) as e:
        print(f"❌ Cannot connect to MongoDB at {MONGO_URI}: {e}")
        sys.exit(1)

    db = client[DB_NAME]
    print(f"Seeding {DB_NAME}...")
    fake = Faker()
    Faker.seed(args.seed)
    seed_riders(db, args.riders, fake)
    seed_scooters(db, args.scooters, random.Random(args.seed))
    seed_pricing(db)
    client.close()


if __name__ == "__main__":
    main()
