"""
kiosk_kernel.domain.fees -- Order totals and rental charge calculations.

Responsibility:
    Compute the money amounts of an order (items total, coupon and loyalty
    discounts, tip, final amount) and the final charge of a returned rental
    (base fee, overtime, cleaning and implied damage fee).

Architecture position:
    Kernel > Domain -- pure calculation layer, zero I/O, no clock access.
    Consumed by the lifecycle services and the side-effect worker.

Invariants enforced:
    - Integer money: every amount is an ``int`` in the smallest currency
      unit.  Percentage coupons round down.
    - Non-negative charge: discounts never exceed what is payable, so
      ``final_amount`` is never negative.
    - Loyalty redemption never exceeds the balance.
    - Damaged returns are capped at the deposit and always flagged for
      manual review.

Failure modes:
    - TotalsCalculationError for negative prices, quantities, balances,
      tips or fee settings.  These indicate corrupted catalog or config
      data and are never returned to a caller as a charge.

Audit relevance:
    The breakdown objects are stored verbatim on the order or booking so an
    operator can see how every charged amount was derived.

Usage:
    from kiosk_kernel.domain.fees import LineItem, CouponTerms, calculate_order_totals

    totals = calculate_order_totals(
        [LineItem("p1", "Latte", 500, 2), LineItem("p2", "Bagel", 1000, 1)],
        coupon=CouponTerms(DiscountType.FIXED, 500),
        loyalty_units_requested=300,
        loyalty_balance=1000,
    )
    totals.final_amount  # 1200
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Sequence

from kiosk_kernel.domain.values import DiscountType, ReturnCondition
from kiosk_kernel.exceptions import TotalsCalculationError


@dataclass(frozen=True)
class LineItem:
    """Price snapshot of one ordered product."""

    product_id: Any
    name: str
    unit_price: int
    quantity: int

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": str(self.product_id),
            "name": self.name,
            "unit_price": self.unit_price,
            "quantity": self.quantity,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LineItem:
        return cls(
            product_id=data["product_id"],
            name=data["name"],
            unit_price=int(data["unit_price"]),
            quantity=int(data["quantity"]),
        )


@dataclass(frozen=True)
class CouponTerms:
    """Discount rule of a promo code. ``value`` is an amount or a percent."""

    discount_type: DiscountType
    value: int


@dataclass(frozen=True)
class OrderTotals:
    items_total: int
    coupon_discount: int
    loyalty_discount: int
    tip: int
    final_amount: int

    def to_dict(self) -> dict[str, int]:
        return {
            "items_total": self.items_total,
            "coupon_discount": self.coupon_discount,
            "loyalty_discount": self.loyalty_discount,
            "tip": self.tip,
            "final_amount": self.final_amount,
        }


def _require_non_negative(name: str, value: int) -> None:
    if value < 0:
        raise TotalsCalculationError(f"{name} is negative ({value})")


def coupon_discount_for(coupon: CouponTerms | None, items_total: int) -> int:
    """Discount a coupon grants on ``items_total``, never more than the total."""
    if coupon is None:
        return 0
    _require_non_negative("coupon value", coupon.value)
    if coupon.discount_type == DiscountType.PERCENTAGE:
        if coupon.value > 100:
            raise TotalsCalculationError(f"percentage coupon above 100 ({coupon.value})")
        return items_total * coupon.value // 100
    return min(coupon.value, items_total)


def calculate_order_totals(
    items: Sequence[LineItem],
    coupon: CouponTerms | None = None,
    loyalty_units_requested: int = 0,
    loyalty_balance: int = 0,
    tip: int = 0,
) -> OrderTotals:
    """
    Compute the totals of an order.

    Rules:
        items_total      = sum(unit_price * quantity)
        coupon_discount  = fixed value (capped at items_total) or
                           floor(items_total * percent / 100)
        loyalty_discount = min(requested, balance), capped at what is still
                           payable after the coupon
        final_amount     = items_total - coupon - loyalty + tip, floored at 0

    Raises:
        TotalsCalculationError: on any negative input.
    """
    for item in items:
        _require_non_negative(f"unit price of {item.product_id}", item.unit_price)
        _require_non_negative(f"quantity of {item.product_id}", item.quantity)
    _require_non_negative("loyalty units requested", loyalty_units_requested)
    _require_non_negative("loyalty balance", loyalty_balance)
    _require_non_negative("tip", tip)

    items_total = sum(item.line_total for item in items)
    coupon_discount = coupon_discount_for(coupon, items_total)
    payable = items_total - coupon_discount
    loyalty_discount = min(loyalty_units_requested, loyalty_balance, payable)
    final_amount = max(0, items_total - coupon_discount - loyalty_discount + tip)

    return OrderTotals(
        items_total=items_total,
        coupon_discount=coupon_discount,
        loyalty_discount=loyalty_discount,
        tip=tip,
        final_amount=final_amount,
    )


@dataclass(frozen=True)
class RentalCharge:
    """
    Final charge of a returned rental.

    For a damaged return ``final_charge`` is the whole deposit, held back
    for an operator even when ``subtotal`` is smaller.  It is a provisional
    ceiling, not a priced amount: nothing is captured automatically and the
    operator settles the real figure.  ``damage_fee`` is the part of the
    deposit not explained by the other fees, and ``requires_review`` is
    always True.
    """

    base_fee: int
    overtime_fee: int
    overtime_intervals: int
    cleaning_fee: int
    damage_fee: int
    final_charge: int
    requires_review: bool

    @property
    def subtotal(self) -> int:
        return self.base_fee + self.overtime_fee + self.cleaning_fee

    def to_dict(self) -> dict[str, Any]:
        return {
            "base_fee": self.base_fee,
            "overtime_fee": self.overtime_fee,
            "overtime_intervals": self.overtime_intervals,
            "cleaning_fee": self.cleaning_fee,
            "damage_fee": self.damage_fee,
            "final_charge": self.final_charge,
            "requires_review": self.requires_review,
        }


def overtime_intervals(
    expected_return: datetime | None,
    actual_return: datetime,
    interval: timedelta,
) -> int:
    """Number of started overtime intervals; 0 when not overdue or unscheduled."""
    if expected_return is None or interval <= timedelta(0):
        return 0
    overdue = actual_return - expected_return
    if overdue <= timedelta(0):
        return 0
    overdue_ms = overdue // timedelta(milliseconds=1)
    interval_ms = interval // timedelta(milliseconds=1)
    return math.ceil(overdue_ms / interval_ms)


def calculate_rental_charge(
    base_fee: int,
    deposit: int,
    condition: ReturnCondition,
    actual_return: datetime,
    expected_return: datetime | None = None,
    overtime_interval: timedelta = timedelta(minutes=60),
    overtime_fee_per_interval: int = 0,
    cleaning_fee: int = 0,
) -> RentalCharge:
    """
    Compute the charge settled against a rental deposit.

    Rules:
        overtime_fee = ceil(overdue / interval) * overtime_fee_per_interval
        cleaning_fee applies to DIRTY returns only
        DAMAGED: final_charge = deposit (the whole hold, provisional; not
                 min(subtotal, deposit)), damage_fee = deposit - subtotal
                 (never negative), requires_review = True

    Raises:
        TotalsCalculationError: on negative fees or deposit.
    """
    _require_non_negative("base fee", base_fee)
    _require_non_negative("deposit", deposit)
    _require_non_negative("overtime fee", overtime_fee_per_interval)
    _require_non_negative("cleaning fee", cleaning_fee)
    condition = ReturnCondition(condition)

    intervals = overtime_intervals(expected_return, actual_return, overtime_interval)
    overtime_fee = intervals * overtime_fee_per_interval
    applied_cleaning = cleaning_fee if condition == ReturnCondition.DIRTY else 0
    subtotal = base_fee + overtime_fee + applied_cleaning

    if condition == ReturnCondition.DAMAGED:
        return RentalCharge(
            base_fee=base_fee,
            overtime_fee=overtime_fee,
            overtime_intervals=intervals,
            cleaning_fee=applied_cleaning,
            damage_fee=max(0, deposit - subtotal),
            final_charge=deposit,
            requires_review=True,
        )

    return RentalCharge(
        base_fee=base_fee,
        overtime_fee=overtime_fee,
        overtime_intervals=intervals,
        cleaning_fee=applied_cleaning,
        damage_fee=0,
        final_charge=subtotal,
        requires_review=False,
    )
