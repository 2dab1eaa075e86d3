"""
Pricing composer.

Turns a base price, an active promotion, a redeemed reward and a payment
method's processing fee into the chargeable amount. Order of operations is
fixed:

    1. promotion discount on the base price
    2. reward credit, capped at the discounted price (remainder is forfeited)
    3. processing fee on the post-discount amount
    4. total = post-discount amount + fee

Nothing here touches the database or mutates promotions / rewards.
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from booking_engine.models import DiscountType
from booking_engine.services.errors import PricingInvariantViolation

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def to_money(value) -> Decimal:
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PromotionTerms:
    kind: DiscountType
    value: Decimal

    @classmethod
    def active_for(cls, service, now) -> Optional["PromotionTerms"]:
        """Terms of the service's promotion if it is running at ``now``."""
        promotion = getattr(service, "promotion", None)
        if promotion is None or not service.is_active:
            return None
        if not promotion.is_running(now):
            return None
        return cls(kind=DiscountType(promotion.discount_type), value=Decimal(promotion.discount_value))


@dataclass(frozen=True)
class FeeSchedule:
    percentage: Decimal = ZERO
    fixed: Decimal = ZERO

    @classmethod
    def for_method(cls, payment_method) -> "FeeSchedule":
        return cls(
            percentage=Decimal(payment_method.processing_fee_percentage or 0),
            fixed=Decimal(payment_method.processing_fee_fixed or 0),
        )


@dataclass(frozen=True)
class PriceBreakdown:
    base_price: Decimal
    discount: Decimal
    reward_applied: Decimal
    reward_forfeited: Decimal
    subtotal: Decimal
    fee: Decimal
    total: Decimal

    def to_dict(self) -> dict:
        return {
            "base_amount": float(self.base_price),
            "discount": float(self.discount),
            "reward_applied": float(self.reward_applied),
            "reward_forfeited": float(self.reward_forfeited),
            "subtotal": float(self.subtotal),
            "fee": float(self.fee),
            "total_amount": float(self.total),
        }


def _discounted(base_price: Decimal, promotion: Optional[PromotionTerms]) -> Decimal:
    if promotion is None:
        return base_price
    if promotion.kind == DiscountType.PERCENT:
        if not (1 <= promotion.value <= 99):
            raise PricingInvariantViolation(
                f"Promotion percentage {promotion.value} outside 1-99"
            )
        return to_money(base_price * (HUNDRED - promotion.value) / HUNDRED)
    if promotion.value <= 0:
        raise PricingInvariantViolation(
            f"Fixed promotion amount {promotion.value} must be positive"
        )
    return max(ZERO, to_money(base_price - promotion.value))


def compose(
    base_price,
    promotion: Optional[PromotionTerms] = None,
    reward_amount=None,
    fees: Optional[FeeSchedule] = None,
) -> PriceBreakdown:
    base_price = to_money(base_price)
    reward = to_money(reward_amount)
    fees = fees or FeeSchedule()

    if base_price < 0:
        raise PricingInvariantViolation(f"Base price {base_price} is negative")
    if reward < 0:
        raise PricingInvariantViolation(f"Reward amount {reward} is negative")
    if fees.percentage < 0 or fees.fixed < 0:
        raise PricingInvariantViolation("Processing fees must not be negative")

    discounted = _discounted(base_price, promotion)
    reward_applied = min(reward, discounted)
    after_reward = max(ZERO, discounted - reward_applied)
    fee = to_money(after_reward * fees.percentage / HUNDRED + fees.fixed)
    total = to_money(after_reward + fee)

    breakdown = PriceBreakdown(
        base_price=base_price,
        discount=base_price - discounted,
        reward_applied=reward_applied,
        reward_forfeited=reward - reward_applied,
        subtotal=after_reward,
        fee=fee,
        total=total,
    )
    _check_invariants(breakdown)
    return breakdown


def _check_invariants(breakdown: PriceBreakdown):
    problems = []
    if breakdown.total < 0:
        problems.append("total is negative")
    if breakdown.subtotal > breakdown.base_price:
        problems.append("subtotal exceeds base price")
    if breakdown.total != breakdown.subtotal + breakdown.fee:
        problems.append("total does not equal subtotal plus fee")
    if problems:
        logger.critical("Pricing invariant violated: %s (%s)", ", ".join(problems), breakdown)
        raise PricingInvariantViolation(
            "Computed price violates pricing invariants",
            details={"problems": problems},
        )
