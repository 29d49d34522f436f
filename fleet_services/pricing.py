"""
Pricing Resolver
================

Holds the fare rules and computes trip cost:

    fare = base_price + price_per_minute * max(duration_minutes, 0)

rounded to cents. When several rules are active the most recently created
one wins (ties broken by the higher id).
"""

import logging
from decimal import Decimal
from typing import Optional, Tuple

from fleet_services.errors import InvalidInput, NoPricingConfigured
from fleet_services.models import MONEY_PLACES, PricingRule, quantize, utcnow
from fleet_services.stores import PricingStore

logger = logging.getLogger(__name__)


class PricingResolver:

    def __init__(self, store: PricingStore):
        self.store = store

    async def active_rule(self) -> Optional[PricingRule]:
        return await self.store.latest_active()

    @staticmethod
    def compute_fare(rule: Optional[PricingRule], duration_minutes) -> Decimal:
        if rule is None:
            raise NoPricingConfigured()
        minutes = max(Decimal(str(duration_minutes)), Decimal("0"))
        return quantize(rule.base_price + rule.price_per_minute * minutes, MONEY_PLACES)

    async def fare_for(self, duration_minutes) -> Tuple[PricingRule, Decimal]:
        """Resolve the active rule and price a trip with it"""
        rule = await self.active_rule()
        return rule, self.compute_fare(rule, duration_minutes)

    async def create_rule(self, base_price, price_per_minute, active: bool = True) -> PricingRule:
        base = quantize(base_price, MONEY_PLACES)
        per_minute = quantize(price_per_minute, MONEY_PLACES)
        if base <= 0 or per_minute <= 0:
            raise InvalidInput("Prices must be positive")

        rule = await self.store.insert(PricingRule(
            base_price=base,
            price_per_minute=per_minute,
            is_active=active
        ))
        logger.info(f"Created pricing rule {rule.id}: {rule.base_price} + {rule.price_per_minute}/min")
        return rule

    async def deactivate(self, rule_id: int) -> PricingRule:
        rule = await self.store.update(rule_id, {"is_active": False, "updated_at": utcnow()})
        if rule is None:
            raise InvalidInput(f"Pricing rule {rule_id} not found")
        logger.info(f"Deactivated pricing rule {rule_id}")
        return rule
