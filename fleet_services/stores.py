"""
Entity Stores
=============

Persistence interfaces consumed by the coordination components, plus the
in-memory backend used for local development and tests. The MongoDB
backend lives in database.py.

Every write that guards an invariant is a conditional update
(`expected_status`), so concurrent callers observe exactly one winner.
"""

import itertools
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from fleet_services.errors import DuplicateActiveRide, InvalidInput
from fleet_services.models import (
    PaymentRecord, PricingRule, Ride, Scooter, UserRecord
)


# ============================================
# INTERFACES
# ============================================

class ScooterStore(ABC):

    @abstractmethod
    async def insert(self, scooter: Scooter) -> Scooter:
        """Persist a new scooter and return it with its generated id"""

    @abstractmethod
    async def get(self, scooter_id: int) -> Optional[Scooter]:
        ...

    @abstractmethod
    async def list(self, status: Optional[str] = None) -> List[Scooter]:
        ...

    @abstractmethod
    async def count(self, status: Optional[str] = None) -> int:
        ...

    @abstractmethod
    async def update(
        self,
        scooter_id: int,
        changes: dict,
        expected_status: Optional[Iterable[str]] = None
    ) -> Optional[Scooter]:
        """
        Apply changes and return the updated scooter.

        When expected_status is given the write only happens if the current
        status is one of them; None is returned when the scooter is missing
        or the condition does not hold.
        """


class RideStore(ABC):

    @abstractmethod
    async def insert(self, ride: Ride) -> Ride:
        """Persist a new ride; raises DuplicateActiveRide on a second active ride"""

    @abstractmethod
    async def get(self, ride_id: int) -> Optional[Ride]:
        ...

    @abstractmethod
    async def find_active(
        self,
        user_id: Optional[int] = None,
        scooter_id: Optional[int] = None
    ) -> Optional[Ride]:
        ...

    @abstractmethod
    async def update(
        self,
        ride_id: int,
        changes: dict,
        expected_status: Optional[Iterable[str]] = None
    ) -> Optional[Ride]:
        ...

    @abstractmethod
    async def list_for_user(self, user_id: int) -> List[Ride]:
        """Rides of one user, newest first"""

    @abstractmethod
    async def count(
        self,
        status: Optional[str] = None,
        since: Optional[datetime] = None
    ) -> int:
        ...


class PricingStore(ABC):

    @abstractmethod
    async def insert(self, rule: PricingRule) -> PricingRule:
        ...

    @abstractmethod
    async def get(self, rule_id: int) -> Optional[PricingRule]:
        ...

    @abstractmethod
    async def latest_active(self) -> Optional[PricingRule]:
        """Most recently created active rule, ties broken by the higher id"""

    @abstractmethod
    async def update(self, rule_id: int, changes: dict) -> Optional[PricingRule]:
        ...


class UserDirectory(ABC):
    """External user collaborator"""

    @abstractmethod
    async def exists(self, user_id: int) -> bool:
        ...

    @abstractmethod
    async def is_admin(self, user_id: int) -> bool:
        ...

    @abstractmethod
    async def count(self) -> int:
        ...


class PaymentLedger(ABC):
    """External payment collaborator"""

    @abstractmethod
    async def sum_completed(self, since: Optional[datetime] = None) -> Decimal:
        """Sum of completed payment amounts, optionally created at or after `since`"""


# ============================================
# IN-MEMORY BACKEND
# ============================================

def _matches(current: str, expected_status: Optional[Iterable[str]]) -> bool:
    return expected_status is None or current in tuple(expected_status)


class InMemoryScooterStore(ScooterStore):

    def __init__(self):
        self._rows: Dict[int, Scooter] = {}
        self._ids = itertools.count(1)

    async def insert(self, scooter: Scooter) -> Scooter:
        if any(s.serial_number == scooter.serial_number for s in self._rows.values()):
            raise InvalidInput(f"Serial number {scooter.serial_number} already registered")
        row = scooter.model_copy(update={"id": next(self._ids)}, deep=True)
        self._rows[row.id] = row
        return row.model_copy(deep=True)

    async def get(self, scooter_id: int) -> Optional[Scooter]:
        row = self._rows.get(scooter_id)
        return row.model_copy(deep=True) if row else None

    async def list(self, status: Optional[str] = None) -> List[Scooter]:
        return [
            row.model_copy(deep=True)
            for row in sorted(self._rows.values(), key=lambda s: s.id)
            if status is None or row.status == status
        ]

    async def count(self, status: Optional[str] = None) -> int:
        return sum(1 for row in self._rows.values() if status is None or row.status == status)

    async def update(self, scooter_id, changes, expected_status=None):
        row = self._rows.get(scooter_id)
        if row is None or not _matches(row.status, expected_status):
            return None
        row = row.model_copy(update=changes, deep=True)
        self._rows[scooter_id] = row
        return row.model_copy(deep=True)


class InMemoryRideStore(RideStore):

    def __init__(self):
        self._rows: Dict[int, Ride] = {}
        self._ids = itertools.count(1)

    def _active_for(self, field: str, value: int) -> Optional[Ride]:
        for row in self._rows.values():
            if row.status == "active" and getattr(row, field) == value:
                return row
        return None

    async def insert(self, ride: Ride) -> Ride:
        if ride.status == "active":
            # Mirrors the partial unique indexes of the Mongo backend
            for field in ("user_id", "scooter_id"):
                value = getattr(ride, field)
                if self._active_for(field, value) is not None:
                    raise DuplicateActiveRide(field, value)
        row = ride.model_copy(update={"id": next(self._ids)}, deep=True)
        self._rows[row.id] = row
        return row.model_copy(deep=True)

    async def get(self, ride_id: int) -> Optional[Ride]:
        row = self._rows.get(ride_id)
        return row.model_copy(deep=True) if row else None

    async def find_active(self, user_id=None, scooter_id=None):
        for row in self._rows.values():
            if row.status != "active":
                continue
            if user_id is not None and row.user_id != user_id:
                continue
            if scooter_id is not None and row.scooter_id != scooter_id:
                continue
            return row.model_copy(deep=True)
        return None

    async def update(self, ride_id, changes, expected_status=None):
        row = self._rows.get(ride_id)
        if row is None or not _matches(row.status, expected_status):
            return None
        row = row.model_copy(update=changes, deep=True)
        self._rows[ride_id] = row
        return row.model_copy(deep=True)

    async def list_for_user(self, user_id: int) -> List[Ride]:
        rows = [row for row in self._rows.values() if row.user_id == user_id]
        rows.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return [row.model_copy(deep=True) for row in rows]

    async def count(self, status=None, since=None) -> int:
        return sum(
            1 for row in self._rows.values()
            if (status is None or row.status == status)
            and (since is None or row.created_at >= since)
        )


class InMemoryPricingStore(PricingStore):

    def __init__(self):
        self._rows: Dict[int, PricingRule] = {}
        self._ids = itertools.count(1)

    async def insert(self, rule: PricingRule) -> PricingRule:
        row = rule.model_copy(update={"id": next(self._ids)}, deep=True)
        self._rows[row.id] = row
        return row.model_copy(deep=True)

    async def get(self, rule_id: int) -> Optional[PricingRule]:
        row = self._rows.get(rule_id)
        return row.model_copy(deep=True) if row else None

    async def latest_active(self) -> Optional[PricingRule]:
        active = [row for row in self._rows.values() if row.is_active]
        if not active:
            return None
        return max(active, key=lambda r: (r.created_at, r.id)).model_copy(deep=True)

    async def update(self, rule_id, changes):
        row = self._rows.get(rule_id)
        if row is None:
            return None
        row = row.model_copy(update=changes, deep=True)
        self._rows[rule_id] = row
        return row.model_copy(deep=True)


class InMemoryUserDirectory(UserDirectory):

    def __init__(self):
        self._rows: Dict[int, UserRecord] = {}
        self._ids = itertools.count(1)

    def add(self, email: str, full_name: str = "", is_admin: bool = False) -> UserRecord:
        """Register a user (stands in for the external signup flow)"""
        user = UserRecord(id=next(self._ids), email=email, full_name=full_name, is_admin=is_admin)
        self._rows[user.id] = user
        return user

    async def exists(self, user_id: int) -> bool:
        return user_id in self._rows

    async def is_admin(self, user_id: int) -> bool:
        user = self._rows.get(user_id)
        return bool(user and user.is_admin)

    async def count(self) -> int:
        return len(self._rows)


class InMemoryPaymentLedger(PaymentLedger):

    def __init__(self):
        self._rows: List[PaymentRecord] = []
        self._ids = itertools.count(1)

    def record(self, ride_id: int, user_id: int, amount, status: str = "completed",
               created_at: Optional[datetime] = None) -> PaymentRecord:
        """Record a payment (stands in for the external payment processor)"""
        fields = {"id": next(self._ids), "ride_id": ride_id, "user_id": user_id,
                  "amount": amount, "status": status}
        if created_at is not None:
            fields["created_at"] = created_at
        payment = PaymentRecord(**fields)
        self._rows.append(payment)
        return payment

    async def sum_completed(self, since: Optional[datetime] = None) -> Decimal:
        return sum(
            (p.amount for p in self._rows
             if p.status == "completed" and (since is None or p.created_at >= since)),
            Decimal("0")
        )
