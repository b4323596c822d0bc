"""
Typed Exception Hierarchy for the Kiosk Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the lifecycle engine (HTTP handlers, queue consumers, operator
tooling) must react to errors without parsing message strings.  Every error:
  1. Has a TYPED exception class (catch by type, not message)
  2. Has a stable CODE attribute (machine-readable, API-safe)
  3. Belongs to one CATEGORY of the public taxonomy
  4. Carries a MESSAGE KEY for the client to localize, plus structured
     DATA (the offending id travels in ``detail``, never inside the key)

Example:
    try:
        orders.create_order(...)
    except InventoryUnavailableError as e:
        show_out_of_stock(e.item_id)
    except KioskError as e:
        return e.to_response()

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    KioskError (base)
    |
    +-- UnauthenticatedError
    +-- PermissionDeniedError
    |   +-- NotOwnerOrAdminError
    |   +-- CourierMismatchError
    |
    +-- InvalidArgumentError
    |   +-- InvalidPaymentMethodError
    |
    +-- NotFoundError
    |   +-- EntityNotFoundError
    |       +-- UserNotFoundError, BoxNotFoundError, ProductNotFoundError,
    |           RentalItemNotFoundError, PromoCodeNotFoundError,
    |           OrderNotFoundError, RentalBookingNotFoundError,
    |           ManualReviewNotFoundError
    |
    +-- FailedPreconditionError
    |   +-- EntityInactiveError
    |   |   +-- BoxInactiveError, ProductInactiveError, RentalItemInactiveError
    |   +-- CurrencyMismatchError
    |   +-- PromoCodeInvalidError
    |   +-- DepositNotConfiguredError
    |   +-- DepositNotAuthorizedError
    |   +-- InvalidStatusTransitionError
    |   +-- OrderNotEditableError
    |   +-- TipNotAllowedError
    |       +-- TipAlreadyAddedError
    |
    +-- ResourceExhaustedError
    |   +-- InventoryUnavailableError
    |   +-- InsufficientLoyaltyBalanceError
    |   +-- PromoCodeExhaustedError
    |
    +-- AbortedError
    |   +-- ConcurrencyError
    |   |   +-- OptimisticLockError
    |   |   +-- TransactionConflictError
    |   +-- PaymentError
    |       +-- PaymentDeclinedError
    |       +-- PaymentActionRequiredError
    |       +-- PaymentStatusUnknownError
    |       +-- PaymentCaptureFailedError
    |
    +-- InternalError
        +-- TotalsCalculationError
        +-- WorkflowDefinitionError
        +-- MissingPaymentInfoError

===============================================================================
DESIGN DECISIONS
===============================================================================

1. ``code`` and ``category`` are CLASS attributes: static per type, usable
   without instantiation.
2. ``message_key`` is a client-facing localization key.  Offending ids are
   kept in ``detail`` and emitted as a separate response field.
3. Errors raised after a successful payment authorization carry a
   ``compensation`` attribute describing what the compensating void did.

===============================================================================
"""

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Public error taxonomy shared by every operation."""

    UNAUTHENTICATED = "unauthenticated"
    PERMISSION_DENIED = "permission_denied"
    INVALID_ARGUMENT = "invalid_argument"
    NOT_FOUND = "not_found"
    FAILED_PRECONDITION = "failed_precondition"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    ABORTED = "aborted"
    INTERNAL = "internal"


class KioskError(Exception):
    """
    Base exception for all kiosk kernel errors.

    All subclasses must declare a ``code`` class attribute for
    machine-readable identification and a ``category``.
    """

    code: str = "KIOSK_ERROR"
    category: ErrorCategory = ErrorCategory.INTERNAL
    message_key: str = "error.internal"

    def __init__(self, message: str | None = None, detail: str | None = None):
        self.detail = detail
        self.compensation: Any = None
        super().__init__(message or self.code)

    def to_response(self) -> dict[str, Any]:
        """Render the error as a failure response payload."""
        return {
            "success": False,
            "errorCode": self.code,
            "category": self.category.value,
            "message": self.message_key,
            "detail": self.detail,
        }


# Unauthenticated / permission


class UnauthenticatedError(KioskError):
    """No caller identity was supplied."""

    code: str = "UNAUTHENTICATED"
    category = ErrorCategory.UNAUTHENTICATED
    message_key = "error.auth.unauthenticated"

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Operation {operation} requires an authenticated caller")


class PermissionDeniedError(KioskError):
    """Caller is not allowed to perform the operation."""

    code: str = "PERMISSION_DENIED"
    category = ErrorCategory.PERMISSION_DENIED
    message_key = "error.permissionDenied"

    def __init__(self, actor_id: Any, permission: str, reason: str | None = None):
        self.actor_id = actor_id
        self.permission = permission
        self.reason = reason
        super().__init__(
            f"Actor {actor_id} lacks permission {permission}"
            + (f": {reason}" if reason else "")
        )


class NotOwnerOrAdminError(PermissionDeniedError):
    """Only the owner or an administrator may act on this entity."""

    code: str = "NOT_OWNER_OR_ADMIN"
    message_key = "error.permissionDenied.notOwnerOrAdmin"


class CourierMismatchError(PermissionDeniedError):
    """Courier is not assigned to the box the operation happens at."""

    code: str = "COURIER_MISMATCH"
    message_key = "error.courier.notAtBox"

    def __init__(self, actor_id: Any, box_id: Any):
        self.box_id = box_id
        super().__init__(actor_id, "courier:atBox", f"not assigned to box {box_id}")
        self.detail = str(box_id)


# Invalid argument


class InvalidArgumentError(KioskError):
    """Malformed request input."""

    code: str = "INVALID_ARGUMENT"
    category = ErrorCategory.INVALID_ARGUMENT
    message_key = "error.invalidInput"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}", detail=field)


class InvalidPaymentMethodError(InvalidArgumentError):
    """Payment method cannot settle the computed amount."""

    code: str = "INVALID_PAYMENT_METHOD"
    message_key = "error.invalidInput.paymentMethod"

    def __init__(self, payment_method: str, reason: str):
        self.payment_method = payment_method
        super().__init__("payment_method", reason)
        self.detail = payment_method


# Not found


class NotFoundError(KioskError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"
    category = ErrorCategory.NOT_FOUND
    message_key = "error.notFound"


class EntityNotFoundError(NotFoundError):
    """A referenced entity does not exist."""

    code: str = "ENTITY_NOT_FOUND"
    entity_type: str = "entity"

    def __init__(self, entity_id: Any):
        self.entity_id = entity_id
        super().__init__(f"{self.entity_type} {entity_id} not found", detail=str(entity_id))


class UserNotFoundError(EntityNotFoundError):
    code: str = "USER_NOT_FOUND"
    entity_type = "User"
    message_key = "error.user.notFound"


class BoxNotFoundError(EntityNotFoundError):
    code: str = "BOX_NOT_FOUND"
    entity_type = "Box"
    message_key = "error.box.notFound"


class ProductNotFoundError(EntityNotFoundError):
    code: str = "PRODUCT_NOT_FOUND"
    entity_type = "Product"
    message_key = "error.product.notFound"


class RentalItemNotFoundError(EntityNotFoundError):
    code: str = "RENTAL_ITEM_NOT_FOUND"
    entity_type = "RentalItem"
    message_key = "error.rentalItem.notFound"


class PromoCodeNotFoundError(EntityNotFoundError):
    code: str = "COUPON_NOT_FOUND"
    entity_type = "PromoCode"
    message_key = "error.coupon.notFound"


class OrderNotFoundError(EntityNotFoundError):
    code: str = "ORDER_NOT_FOUND"
    entity_type = "Order"
    message_key = "error.order.notFound"


class RentalBookingNotFoundError(EntityNotFoundError):
    code: str = "BOOKING_NOT_FOUND"
    entity_type = "RentalBooking"
    message_key = "error.rental.bookingNotFound"


class ManualReviewNotFoundError(EntityNotFoundError):
    code: str = "MANUAL_REVIEW_NOT_FOUND"
    entity_type = "ManualReviewItem"


# Failed precondition


class FailedPreconditionError(KioskError):
    """Entity state does not allow the operation."""

    code: str = "FAILED_PRECONDITION"
    category = ErrorCategory.FAILED_PRECONDITION
    message_key = "error.failedPrecondition"


class EntityInactiveError(FailedPreconditionError):
    """A referenced entity is deactivated."""

    code: str = "ENTITY_INACTIVE"
    entity_type: str = "entity"

    def __init__(self, entity_id: Any):
        self.entity_id = entity_id
        super().__init__(f"{self.entity_type} {entity_id} is inactive", detail=str(entity_id))


class BoxInactiveError(EntityInactiveError):
    code: str = "BOX_INACTIVE"
    entity_type = "Box"
    message_key = "error.box.inactive"


class ProductInactiveError(EntityInactiveError):
    code: str = "PRODUCT_INACTIVE"
    entity_type = "Product"
    message_key = "error.product.inactive"


class RentalItemInactiveError(EntityInactiveError):
    code: str = "RENTAL_ITEM_INACTIVE"
    entity_type = "RentalItem"
    message_key = "error.rentalItem.inactive"


class CurrencyMismatchError(FailedPreconditionError):
    """Two entities in one operation are priced in different currencies."""

    code: str = "CURRENCY_MISMATCH"
    message_key = "error.currencyMismatch"

    def __init__(self, expected: str, actual: str, entity_id: Any):
        self.expected = expected
        self.actual = actual
        self.entity_id = entity_id
        super().__init__(
            f"Currency mismatch on {entity_id}: expected {expected}, got {actual}",
            detail=str(entity_id),
        )


class PromoCodeInvalidError(FailedPreconditionError):
    """Promo code is inactive or outside its validity window."""

    code: str = "COUPON_INVALID"
    message_key = "error.coupon.invalid"

    def __init__(self, promo_code: str, reason: str):
        self.promo_code = promo_code
        self.reason = reason
        super().__init__(f"Promo code {promo_code} invalid: {reason}", detail=promo_code)


class DepositNotConfiguredError(FailedPreconditionError):
    """Rental item has no positive deposit amount."""

    code: str = "DEPOSIT_NOT_CONFIGURED"
    message_key = "error.rentalItem.noDeposit"

    def __init__(self, rental_item_id: Any):
        self.rental_item_id = rental_item_id
        super().__init__(
            f"Rental item {rental_item_id} has no deposit configured",
            detail=str(rental_item_id),
        )


class DepositNotAuthorizedError(FailedPreconditionError):
    """Booking has no usable deposit authorization."""

    code: str = "DEPOSIT_NOT_AUTHORIZED"
    message_key = "error.rental.depositNotAuthorized"

    def __init__(self, booking_id: Any, payment_status: str):
        self.booking_id = booking_id
        self.payment_status = payment_status
        super().__init__(
            f"Booking {booking_id} deposit is {payment_status}, not authorized",
            detail=str(booking_id),
        )


class InvalidStatusTransitionError(FailedPreconditionError):
    """Requested status is not reachable from the current status."""

    code: str = "INVALID_STATUS_TRANSITION"
    message_key = "error.invalidStatusTransition"

    def __init__(
        self,
        entity_type: str,
        entity_id: Any,
        current_status: str,
        requested_status: str,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(
            f"{entity_type} {entity_id}: cannot transition "
            f"{current_status} -> {requested_status}",
            detail=f"{current_status}->{requested_status}",
        )


class OrderNotEditableError(FailedPreconditionError):
    """Order items can no longer be changed."""

    code: str = "ORDER_NOT_EDITABLE"
    message_key = "error.order.notEditable"

    def __init__(self, order_id: Any, reason: str):
        self.order_id = order_id
        self.reason = reason
        super().__init__(f"Order {order_id} cannot be edited: {reason}", detail=str(order_id))


class TipNotAllowedError(FailedPreconditionError):
    """Order is not in a state that accepts a tip."""

    code: str = "TIP_NOT_ALLOWED"
    message_key = "error.order.tipNotAllowed"

    def __init__(self, order_id: Any, reason: str):
        self.order_id = order_id
        self.reason = reason
        super().__init__(f"Order {order_id} cannot take a tip: {reason}", detail=str(order_id))


class TipAlreadyAddedError(TipNotAllowedError):
    code: str = "TIP_ALREADY_ADDED"
    message_key = "error.order.tipAlreadyAdded"

    def __init__(self, order_id: Any):
        super().__init__(order_id, "a tip was already added")


# Resource exhausted


class ResourceExhaustedError(KioskError):
    """A counter (inventory, balance, usage cap) is insufficient."""

    code: str = "RESOURCE_EXHAUSTED"
    category = ErrorCategory.RESOURCE_EXHAUSTED
    message_key = "error.resourceExhausted"


class InventoryUnavailableError(ResourceExhaustedError):
    """Box does not hold enough units of an item."""

    code: str = "INVENTORY_UNAVAILABLE"
    message_key = "error.inventory.unavailable"

    def __init__(self, box_id: Any, item_id: Any, requested: int):
        self.box_id = box_id
        self.item_id = item_id
        self.requested = requested
        super().__init__(
            f"Box {box_id} cannot supply {requested} of {item_id}",
            detail=str(item_id),
        )


class InsufficientLoyaltyBalanceError(ResourceExhaustedError):
    """User loyalty balance is lower than the redemption."""

    code: str = "INSUFFICIENT_LOYALTY_BALANCE"
    message_key = "error.loyalty.insufficient"

    def __init__(self, user_id: Any, requested: int):
        self.user_id = user_id
        self.requested = requested
        super().__init__(
            f"User {user_id} cannot redeem {requested} loyalty units",
            detail=str(user_id),
        )


class PromoCodeExhaustedError(ResourceExhaustedError):
    """Promo code reached its usage cap."""

    code: str = "COUPON_EXHAUSTED"
    message_key = "error.coupon.exhausted"

    def __init__(self, promo_code: str):
        self.promo_code = promo_code
        super().__init__(f"Promo code {promo_code} reached its usage cap", detail=promo_code)


# Aborted


class AbortedError(KioskError):
    """Operation aborted by a conflict or a payment outcome."""

    code: str = "ABORTED"
    category = ErrorCategory.ABORTED
    message_key = "error.aborted"


class ConcurrencyError(AbortedError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"
    message_key = "error.transaction.conflict"

    def __init__(self, entity_type: str, entity_id: Any):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction",
            detail=str(entity_id),
        )


class TransactionConflictError(ConcurrencyError):
    """Transaction kept conflicting and ran out of attempts."""

    code: str = "TRANSACTION_CONFLICT"
    message_key = "error.transaction.conflict"

    def __init__(self, operation: str, attempts: int):
        self.operation = operation
        self.attempts = attempts
        super().__init__(
            f"Transaction {operation} aborted after {attempts} conflicting attempts"
        )


class PaymentError(AbortedError):
    """Base exception for payment gateway outcomes."""

    code: str = "PAYMENT_ERROR"


class PaymentDeclinedError(PaymentError):
    """Gateway declined the authorization."""

    code: str = "PAYMENT_AUTH_FAILED"
    message_key = "error.payment.authFailed"

    def __init__(self, gateway_code: str | None):
        self.gateway_code = gateway_code
        super().__init__(
            f"Payment authorization declined ({gateway_code or 'unknown'})",
            detail=gateway_code,
        )


class PaymentActionRequiredError(PaymentError):
    """Gateway requires an extra customer action before authorizing."""

    code: str = "PAYMENT_ACTION_REQUIRED"
    message_key = "error.payment.actionRequired"

    def __init__(self, action_url: str | None):
        self.action_url = action_url
        super().__init__("Payment requires additional customer action", detail=action_url)


class PaymentStatusUnknownError(PaymentError):
    """Gateway did not answer in time; authorization outcome is unknown."""

    code: str = "PAYMENT_STATUS_UNKNOWN"
    message_key = "error.payment.statusUnknown"

    def __init__(self, gateway_code: str | None):
        self.gateway_code = gateway_code
        super().__init__(
            f"Payment authorization outcome unknown ({gateway_code or 'unknown'})",
            detail=gateway_code,
        )


class PaymentCaptureFailedError(PaymentError):
    """Capturing an authorized amount failed."""

    code: str = "PAYMENT_CAPTURE_FAILED"
    message_key = "error.payment.captureFailed"

    def __init__(self, entity_id: Any, gateway_code: str | None):
        self.entity_id = entity_id
        self.gateway_code = gateway_code
        super().__init__(
            f"Payment capture failed for {entity_id} ({gateway_code or 'unknown'})",
            detail=gateway_code,
        )


# Internal


class InternalError(KioskError):
    """Unexpected or defensive failure."""

    code: str = "INTERNAL_ERROR"
    category = ErrorCategory.INTERNAL
    message_key = "error.internalServer"


class TotalsCalculationError(InternalError):
    """Totals calculation received inputs that would yield a negative charge."""

    code: str = "TOTALS_CALCULATION_ERROR"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Totals calculation failed: {reason}")


class WorkflowDefinitionError(InternalError):
    """A status workflow table is malformed."""

    code: str = "INVALID_WORKFLOW_DEFINITION"

    def __init__(self, workflow_name: str, problems: list[str]):
        self.workflow_name = workflow_name
        self.problems = problems
        super().__init__(
            f"Workflow {workflow_name} is invalid: " + "; ".join(problems)
        )


class MissingPaymentInfoError(InternalError):
    """Entity claims an authorization but carries no gateway reference."""

    code: str = "MISSING_PAYMENT_INFO"

    def __init__(self, entity_id: Any):
        self.entity_id = entity_id
        super().__init__(f"Missing payment reference on {entity_id}", detail=str(entity_id))
