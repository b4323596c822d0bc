"""
Order totals and rental charge calculations.

Pure functions, no database: amounts are integers in the smallest currency
unit and every negative input is rejected.
"""

from datetime import datetime, timedelta, timezone

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from kiosk_kernel.domain.fees import (
    CouponTerms,
    LineItem,
    calculate_order_totals,
    calculate_rental_charge,
    coupon_discount_for,
    overtime_intervals,
)
from kiosk_kernel.domain.values import DiscountType, ReturnCondition
from kiosk_kernel.exceptions import TotalsCalculationError

T0 = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)


class TestOrderTotals:

    def test_two_lines_with_coupon_and_loyalty(self):
        totals = calculate_order_totals(
            [LineItem("p1", "Latte", 500, 2), LineItem("p2", "Bagel", 1000, 1)],
            coupon=CouponTerms(DiscountType.FIXED, 500),
            loyalty_units_requested=300,
            loyalty_balance=1000,
        )

        assert totals.items_total == 2000
        assert totals.coupon_discount == 500
        assert totals.loyalty_discount == 300
        assert totals.final_amount == 1200

    def test_percentage_coupon_rounds_down(self):
        totals = calculate_order_totals(
            [LineItem("p1", "Tea", 333, 1)],
            coupon=CouponTerms(DiscountType.PERCENTAGE, 10),
        )
        assert totals.coupon_discount == 33
        assert totals.final_amount == 300

    def test_loyalty_limited_by_balance(self):
        totals = calculate_order_totals(
            [LineItem("p1", "Latte", 500, 1)],
            loyalty_units_requested=400,
            loyalty_balance=150,
        )
        assert totals.loyalty_discount == 150
        assert totals.final_amount == 350

    def test_discounts_never_make_the_amount_negative(self):
        totals = calculate_order_totals(
            [LineItem("p1", "Latte", 500, 1)],
            coupon=CouponTerms(DiscountType.FIXED, 400),
            loyalty_units_requested=1000,
            loyalty_balance=1000,
        )
        assert totals.coupon_discount == 400
        assert totals.loyalty_discount == 100
        assert totals.final_amount == 0

    def test_tip_is_added_after_discounts(self):
        totals = calculate_order_totals(
            [LineItem("p1", "Latte", 500, 1)],
            coupon=CouponTerms(DiscountType.FIXED, 500),
            tip=200,
        )
        assert totals.final_amount == 200

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"items": [LineItem("p1", "Bad", -1, 1)]},
            {"items": [LineItem("p1", "Bad", 100, -2)]},
            {"items": [LineItem("p1", "Latte", 500, 1)], "tip": -5},
            {"items": [LineItem("p1", "Latte", 500, 1)], "loyalty_units_requested": -1},
            {"items": [LineItem("p1", "Latte", 500, 1)], "loyalty_balance": -1},
        ],
    )
    def test_negative_inputs_raise(self, kwargs):
        with pytest.raises(TotalsCalculationError):
            calculate_order_totals(**kwargs)

    def test_percentage_above_hundred_raises(self):
        with pytest.raises(TotalsCalculationError):
            coupon_discount_for(CouponTerms(DiscountType.PERCENTAGE, 150), 1000)

    @given(
        prices=st.lists(st.integers(min_value=0, max_value=50_000), min_size=1, max_size=6),
        coupon=st.integers(min_value=0, max_value=100_000),
        loyalty=st.integers(min_value=0, max_value=100_000),
        balance=st.integers(min_value=0, max_value=100_000),
        tip=st.integers(min_value=0, max_value=5_000),
    )
    @settings(max_examples=200)
    def test_final_amount_is_never_negative(self, prices, coupon, loyalty, balance, tip):
        items = [LineItem(f"p{i}", "x", price, 1) for i, price in enumerate(prices)]
        totals = calculate_order_totals(
            items,
            coupon=CouponTerms(DiscountType.FIXED, coupon),
            loyalty_units_requested=loyalty,
            loyalty_balance=balance,
            tip=tip,
        )
        assert totals.final_amount >= 0
        assert totals.loyalty_discount <= balance
        assert totals.coupon_discount + totals.loyalty_discount <= totals.items_total


class TestOvertime:

    def test_started_intervals_are_charged(self):
        assert overtime_intervals(T0, T0 + timedelta(minutes=70), timedelta(minutes=60)) == 2

    def test_on_time_return_has_no_overtime(self):
        assert overtime_intervals(T0, T0, timedelta(minutes=60)) == 0
        assert overtime_intervals(T0, T0 - timedelta(minutes=5), timedelta(minutes=60)) == 0

    def test_unscheduled_return_has_no_overtime(self):
        assert overtime_intervals(None, T0, timedelta(minutes=60)) == 0


class TestRentalCharge:

    def test_late_return_charges_two_intervals(self):
        picked_up = T0
        charge = calculate_rental_charge(
            base_fee=2000,
            deposit=10000,
            condition=ReturnCondition.OK,
            expected_return=picked_up + timedelta(hours=2),
            actual_return=picked_up + timedelta(hours=3, minutes=10),
            overtime_interval=timedelta(minutes=60),
            overtime_fee_per_interval=500,
        )

        assert charge.overtime_intervals == 2
        assert charge.overtime_fee == 1000
        assert charge.final_charge == 3000
        assert charge.requires_review is False

    def test_cleaning_fee_only_for_dirty_returns(self):
        ok = calculate_rental_charge(2000, 10000, ReturnCondition.OK, T0, T0, cleaning_fee=1000)
        dirty = calculate_rental_charge(2000, 10000, ReturnCondition.DIRTY, T0, T0, cleaning_fee=1000)

        assert ok.cleaning_fee == 0
        assert ok.final_charge == 2000
        assert dirty.cleaning_fee == 1000
        assert dirty.final_charge == 3000

    def test_damaged_return_is_capped_at_deposit_and_flagged(self):
        charge = calculate_rental_charge(
            base_fee=8000,
            deposit=10000,
            condition=ReturnCondition.DAMAGED,
            expected_return=T0,
            actual_return=T0 + timedelta(hours=10),
            overtime_interval=timedelta(minutes=60),
            overtime_fee_per_interval=500,
        )

        assert charge.subtotal > 10000
        assert charge.final_charge == 10000
        assert charge.damage_fee == 0
        assert charge.requires_review is True

    def test_damaged_return_below_deposit_holds_the_whole_deposit(self):
        charge = calculate_rental_charge(2000, 10000, ReturnCondition.DAMAGED, T0, T0)
        assert charge.subtotal == 2000
        assert charge.final_charge == 10000
        assert charge.damage_fee == 8000

    def test_zero_fee_return_charges_nothing(self):
        charge = calculate_rental_charge(0, 10000, ReturnCondition.OK, T0, T0)
        assert charge.final_charge == 0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"base_fee": -1},
            {"deposit": -1},
            {"overtime_fee_per_interval": -500},
            {"cleaning_fee": -1000},
        ],
    )
    def test_negative_fee_settings_raise(self, kwargs):
        args = {
            "base_fee": 2000,
            "deposit": 10000,
            "condition": ReturnCondition.OK,
            "actual_return": T0,
        }
        args.update(kwargs)
        with pytest.raises(TotalsCalculationError):
            calculate_rental_charge(**args)
