"""
Order and Rental Booking Workflows.

Status tables for the two lifecycle aggregates.  Both tables are validated
when this module is imported.
"""

from enum import Enum

from kiosk_kernel.domain.state_machine import (
    Guard,
    StateMachine,
    Transition,
    TransitionScope,
    Workflow,
)
from kiosk_kernel.logging_config import get_logger

logger = get_logger("domain.workflows")


class OrderStatus(str, Enum):
    """
    Order lifecycle.

    State machine:
        CREATED -> PREPARING -> READY -> DELIVERED
        CREATED | PREPARING | READY -> CANCELLED    (any permitted actor)
        any non-terminal -> REQUIRES_MANUAL_REVIEW  (system)
        DELIVERED, CANCELLED, REQUIRES_MANUAL_REVIEW: terminal
    """

    CREATED = "created"
    PREPARING = "preparing"
    READY = "ready"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REQUIRES_MANUAL_REVIEW = "requires_manual_review"


class RentalStatus(str, Enum):
    """
    Rental booking lifecycle.

    State machine:
        PENDING_PICKUP -> PICKED_UP -> RETURNED_PENDING_INSPECTION -> COMPLETED
        PICKED_UP -> RETURN_OVERDUE -> RETURNED_PENDING_INSPECTION
        PENDING_PICKUP -> CANCELLED
        any non-terminal -> REQUIRES_MANUAL_REVIEW  (system)
        COMPLETED, CANCELLED, REQUIRES_MANUAL_REVIEW: terminal
    """

    PENDING_PICKUP = "pending_pickup"
    PICKED_UP = "picked_up"
    RETURN_OVERDUE = "return_overdue"
    RETURNED_PENDING_INSPECTION = "returned_pending_inspection"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REQUIRES_MANUAL_REVIEW = "requires_manual_review"


# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

PAYMENT_SETTLED = Guard(
    name="payment_settled",
    description="Authorized payment captured, or nothing left to capture",
)

COURIER_AT_BOX = Guard(
    name="courier_at_box",
    description="Acting courier is assigned to the box of the handover",
)

DEPOSIT_SETTLED = Guard(
    name="deposit_settled",
    description="Deposit authorization finalized by the settlement worker",
)


# -----------------------------------------------------------------------------
# Order Workflow
# -----------------------------------------------------------------------------

ORDER_WORKFLOW = Workflow(
    name="order",
    description="Kiosk product order lifecycle",
    initial_state=OrderStatus.CREATED,
    states=tuple(OrderStatus),
    terminal_states=frozenset({
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
        OrderStatus.REQUIRES_MANUAL_REVIEW,
    }),
    transitions=(
        Transition(OrderStatus.CREATED, OrderStatus.PREPARING, action="start_preparing"),
        Transition(OrderStatus.PREPARING, OrderStatus.READY, action="mark_ready"),
        Transition(OrderStatus.READY, OrderStatus.DELIVERED, action="deliver", guard=PAYMENT_SETTLED),
        Transition(OrderStatus.CREATED, OrderStatus.CANCELLED, action="cancel"),
        Transition(OrderStatus.PREPARING, OrderStatus.CANCELLED, action="cancel"),
        Transition(OrderStatus.READY, OrderStatus.CANCELLED, action="cancel"),
        Transition(
            OrderStatus.CREATED, OrderStatus.REQUIRES_MANUAL_REVIEW,
            action="flag_for_review", scope=TransitionScope.SYSTEM,
        ),
        Transition(
            OrderStatus.PREPARING, OrderStatus.REQUIRES_MANUAL_REVIEW,
            action="flag_for_review", scope=TransitionScope.SYSTEM,
        ),
        Transition(
            OrderStatus.READY, OrderStatus.REQUIRES_MANUAL_REVIEW,
            action="flag_for_review", scope=TransitionScope.SYSTEM,
        ),
    ),
)

ORDER_STATE_MACHINE: StateMachine[OrderStatus] = StateMachine(
    ORDER_WORKFLOW, OrderStatus, "Order",
)

logger.info(
    "order_workflow_registered",
    extra={
        "workflow_name": ORDER_WORKFLOW.name,
        "state_count": len(ORDER_WORKFLOW.states),
        "transition_count": len(ORDER_WORKFLOW.transitions),
        "initial_state": ORDER_WORKFLOW.initial_state.value,
    },
)


# -----------------------------------------------------------------------------
# Rental Workflow
# -----------------------------------------------------------------------------

RENTAL_WORKFLOW = Workflow(
    name="rental_booking",
    description="Rental item booking, handover, return and deposit settlement",
    initial_state=RentalStatus.PENDING_PICKUP,
    states=tuple(RentalStatus),
    terminal_states=frozenset({
        RentalStatus.COMPLETED,
        RentalStatus.CANCELLED,
        RentalStatus.REQUIRES_MANUAL_REVIEW,
    }),
    transitions=(
        Transition(
            RentalStatus.PENDING_PICKUP, RentalStatus.PICKED_UP,
            action="confirm_pickup", guard=COURIER_AT_BOX,
        ),
        Transition(RentalStatus.PENDING_PICKUP, RentalStatus.CANCELLED, action="cancel"),
        Transition(
            RentalStatus.PICKED_UP, RentalStatus.RETURN_OVERDUE,
            action="mark_overdue", scope=TransitionScope.SYSTEM,
        ),
        Transition(
            RentalStatus.PICKED_UP, RentalStatus.RETURNED_PENDING_INSPECTION,
            action="confirm_return", guard=COURIER_AT_BOX,
        ),
        Transition(
            RentalStatus.RETURN_OVERDUE, RentalStatus.RETURNED_PENDING_INSPECTION,
            action="confirm_return", guard=COURIER_AT_BOX,
        ),
        Transition(
            RentalStatus.RETURNED_PENDING_INSPECTION, RentalStatus.COMPLETED,
            action="settle_deposit", scope=TransitionScope.SYSTEM, guard=DEPOSIT_SETTLED,
        ),
        Transition(
            RentalStatus.PENDING_PICKUP, RentalStatus.REQUIRES_MANUAL_REVIEW,
            action="flag_for_review", scope=TransitionScope.SYSTEM,
        ),
        Transition(
            RentalStatus.PICKED_UP, RentalStatus.REQUIRES_MANUAL_REVIEW,
            action="flag_for_review", scope=TransitionScope.SYSTEM,
        ),
        Transition(
            RentalStatus.RETURN_OVERDUE, RentalStatus.REQUIRES_MANUAL_REVIEW,
            action="flag_for_review", scope=TransitionScope.SYSTEM,
        ),
        Transition(
            RentalStatus.RETURNED_PENDING_INSPECTION, RentalStatus.REQUIRES_MANUAL_REVIEW,
            action="flag_for_review", scope=TransitionScope.SYSTEM,
        ),
    ),
)

RENTAL_STATE_MACHINE: StateMachine[RentalStatus] = StateMachine(
    RENTAL_WORKFLOW, RentalStatus, "RentalBooking",
)

logger.info(
    "rental_workflow_registered",
    extra={
        "workflow_name": RENTAL_WORKFLOW.name,
        "state_count": len(RENTAL_WORKFLOW.states),
        "transition_count": len(RENTAL_WORKFLOW.transitions),
        "initial_state": RENTAL_WORKFLOW.initial_state.value,
    },
)
