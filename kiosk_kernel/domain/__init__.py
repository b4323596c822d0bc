"""
Pure domain layer.

Value types, fee calculation, status workflows and frozen DTOs, with NO
dependencies on:
- ORM (SQLAlchemy)
- Database
- I/O (except SystemClock)

All domain objects are immutable and deterministic.
"""

from kiosk_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from kiosk_kernel.domain.dtos import (
    BookingCreated,
    BoxInfo,
    ManualReviewRecord,
    OrderCreated,
    OrderRecord,
    ProductInfo,
    PromoCodeInfo,
    RentalBookingRecord,
    RentalItemInfo,
    StatusHistoryEntry,
    TransitionApplied,
    UserInfo,
)
from kiosk_kernel.domain.fees import (
    CouponTerms,
    LineItem,
    OrderTotals,
    RentalCharge,
    calculate_order_totals,
    calculate_rental_charge,
)
from kiosk_kernel.domain.state_machine import (
    StateMachine,
    Transition,
    TransitionDecision,
    TransitionScope,
    Workflow,
    validate_workflow,
)
from kiosk_kernel.domain.values import (
    ELEVATED_ROLES,
    DiscountType,
    LedgerPhase,
    PaymentMethod,
    PaymentStatus,
    ProcessingLedger,
    ReturnCondition,
    Role,
)
from kiosk_kernel.domain.workflows import (
    ORDER_STATE_MACHINE,
    RENTAL_STATE_MACHINE,
    OrderStatus,
    RentalStatus,
)

__all__ = [
    # Clock
    "Clock",
    "SystemClock",
    "DeterministicClock",
    # DTOs
    "StatusHistoryEntry",
    "UserInfo",
    "BoxInfo",
    "ProductInfo",
    "RentalItemInfo",
    "PromoCodeInfo",
    "OrderRecord",
    "RentalBookingRecord",
    "ManualReviewRecord",
    "OrderCreated",
    "BookingCreated",
    "TransitionApplied",
    # Fees
    "LineItem",
    "CouponTerms",
    "OrderTotals",
    "RentalCharge",
    "calculate_order_totals",
    "calculate_rental_charge",
    # State machine
    "StateMachine",
    "Transition",
    "TransitionDecision",
    "TransitionScope",
    "Workflow",
    "validate_workflow",
    "ORDER_STATE_MACHINE",
    "RENTAL_STATE_MACHINE",
    "OrderStatus",
    "RentalStatus",
    # Values
    "Role",
    "ELEVATED_ROLES",
    "DiscountType",
    "LedgerPhase",
    "PaymentMethod",
    "PaymentStatus",
    "ProcessingLedger",
    "ReturnCondition",
]
