"""
Public operations facade for external callers (HTTP handlers, RPC layers).

Wraps the lifecycle services so every public operation returns a stable
``OperationResult`` instead of raising.  Typed kernel errors become failure
responses with their code and message key; anything unexpected is logged
with its traceback and reported as ``INTERNAL_ERROR`` without internals.

Usage:

    from kiosk_kernel.services.operations import KioskOperations

    ops = KioskOperations(orders=order_service, rentals=rental_service)
    result = ops.create_order(actor_id, box_id, [{"product_id": p, "quantity": 2}], "credit_card_app")
    if not result.success:
        return result.to_response()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable
from uuid import uuid4

from kiosk_kernel.domain.dtos import (
    BookingCreated,
    OrderCreated,
    OrderEdited,
    TipAdded,
    TransitionApplied,
)
from kiosk_kernel.exceptions import InternalError, KioskError
from kiosk_kernel.logging_config import LogContext, get_logger
from kiosk_kernel.services.order_lifecycle import OrderLifecycleService
from kiosk_kernel.services.rental_lifecycle import RentalLifecycleService

logger = get_logger("services.operations")


@dataclass(frozen=True)
class OperationResult:
    """Stable result of one public operation."""

    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: KioskError | None = None

    @classmethod
    def ok(cls, **data: Any) -> OperationResult:
        return cls(success=True, data=data)

    @classmethod
    def failed(cls, error: KioskError) -> OperationResult:
        return cls(success=False, error=error)

    @property
    def error_code(self) -> str | None:
        return self.error.code if self.error is not None else None

    def to_response(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, **self.data}
        return self.error.to_response()


def _order_created(result: OrderCreated) -> dict[str, Any]:
    return {
        "orderId": str(result.order_id),
        "finalAmount": result.final_amount,
        "paymentStatus": result.payment_status.value,
    }


def _order_edited(result: OrderEdited) -> dict[str, Any]:
    return {
        "orderId": str(result.order_id),
        "finalAmount": result.final_amount,
        "paymentStatus": result.payment_status.value,
        "reauthorized": result.reauthorized,
    }


def _tip_added(result: TipAdded) -> dict[str, Any]:
    return {
        "orderId": str(result.order_id),
        "tip": result.tip,
        "finalAmount": result.final_amount,
    }


def _booking_created(result: BookingCreated) -> dict[str, Any]:
    return {
        "bookingId": str(result.booking_id),
        "requiresAction": result.requires_action,
        "actionUrl": result.action_url,
    }


def _transition(id_field: str) -> Callable[[TransitionApplied], dict[str, Any]]:
    def render(result: TransitionApplied) -> dict[str, Any]:
        return {
            id_field: str(result.entity_id),
            "status": result.status,
            "changed": result.changed,
        }

    return render


class KioskOperations:
    """The public lifecycle operations."""

    def __init__(
        self,
        orders: OrderLifecycleService,
        rentals: RentalLifecycleService,
    ):
        self._orders = orders
        self._rentals = rentals

    def _invoke(
        self,
        operation: str,
        actor_id: Any,
        call: Callable[[], Any],
        render: Callable[[Any], dict[str, Any]],
    ) -> OperationResult:
        with LogContext.bind(
            correlation_id=uuid4().hex,
            actor_id=actor_id,
            operation=operation,
        ):
            try:
                data = render(call())
            except KioskError as exc:
                logger.info(
                    "operation_rejected",
                    extra={
                        "error_code": exc.code,
                        "category": exc.category.value,
                        "detail": exc.detail,
                    },
                )
                return OperationResult.failed(exc)
            except Exception:
                logger.exception("operation_unexpected_error")
                return OperationResult.failed(InternalError("Unexpected error"))
            logger.info("operation_succeeded")
            return OperationResult.ok(**data)

    # -- orders -------------------------------------------------------------

    def create_order(
        self,
        actor_id: Any,
        box_id: Any,
        items: Any,
        payment_method: str,
        coupon_code: str | None = None,
        loyalty_units: int = 0,
        tip: int = 0,
        payment_token: str | None = None,
    ) -> OperationResult:
        return self._invoke(
            "createOrder",
            actor_id,
            lambda: self._orders.create_order(
                actor_id, box_id, items, payment_method,
                coupon_code=coupon_code,
                loyalty_units=loyalty_units,
                tip=tip,
                payment_token=payment_token,
            ),
            _order_created,
        )

    def update_order_status(
        self,
        actor_id: Any,
        order_id: Any,
        new_status: str,
        details: str | None = None,
    ) -> OperationResult:
        return self._invoke(
            "updateOrderStatus",
            actor_id,
            lambda: self._orders.update_order_status(actor_id, order_id, new_status, details),
            _transition("orderId"),
        )

    def cancel_order(self, actor_id: Any, order_id: Any, reason: str | None = None) -> OperationResult:
        return self._invoke(
            "cancelOrder",
            actor_id,
            lambda: self._orders.cancel_order(actor_id, order_id, reason),
            _transition("orderId"),
        )

    def edit_order(
        self,
        actor_id: Any,
        order_id: Any,
        items: Any,
        payment_token: str | None = None,
    ) -> OperationResult:
        return self._invoke(
            "editOrder",
            actor_id,
            lambda: self._orders.edit_order(actor_id, order_id, items, payment_token=payment_token),
            _order_edited,
        )

    def add_tip_to_order(
        self,
        actor_id: Any,
        order_id: Any,
        tip: int,
        payment_token: str | None = None,
    ) -> OperationResult:
        return self._invoke(
            "addTipToOrder",
            actor_id,
            lambda: self._orders.add_tip_to_order(actor_id, order_id, tip, payment_token=payment_token),
            _tip_added,
        )

    # -- rentals ------------------------------------------------------------

    def create_rental_booking(
        self,
        actor_id: Any,
        item_id: Any,
        pickup_box_id: Any,
        expected_return_at: Any = None,
        payment_token: str | None = None,
    ) -> OperationResult:
        return self._invoke(
            "createRentalBooking",
            actor_id,
            lambda: self._rentals.create_rental_booking(
                actor_id, item_id, pickup_box_id,
                expected_return_at=expected_return_at,
                payment_token=payment_token,
            ),
            _booking_created,
        )

    def confirm_pickup(self, actor_id: Any, booking_id: Any) -> OperationResult:
        return self._invoke(
            "confirmRentalPickup",
            actor_id,
            lambda: self._rentals.confirm_pickup(actor_id, booking_id),
            _transition("bookingId"),
        )

    def confirm_return(
        self,
        actor_id: Any,
        booking_id: Any,
        return_box_id: Any,
        condition: str,
        notes: str | None = None,
        photo_url: str | None = None,
    ) -> OperationResult:
        return self._invoke(
            "confirmRentalReturn",
            actor_id,
            lambda: self._rentals.confirm_return(
                actor_id, booking_id, return_box_id, condition, notes, photo_url,
            ),
            _transition("bookingId"),
        )

    def cancel_rental_booking(
        self,
        actor_id: Any,
        booking_id: Any,
        reason: str | None = None,
    ) -> OperationResult:
        return self._invoke(
            "cancelRentalBooking",
            actor_id,
            lambda: self._rentals.cancel_rental_booking(actor_id, booking_id, reason),
            _transition("bookingId"),
        )
