"""
OrderLifecycleService -- create, advance, edit, tip and cancel kiosk orders.

Responsibility:
    The saga behind every order operation: advisory validation, payment
    authorization, one atomic commit of the order together with its stock,
    loyalty and promo-code counters, and compensation when a step after
    the authorization fails.

Architecture position:
    Kernel > Services -- imperative shell.  Reads and writes only through
    ``EntityRepository``; talks to the processor only through
    ``PaymentGateway``.  Cancellation side effects (stock restore, loyalty
    refund) are handed to ``SideEffectWorker`` through the queue.

Invariants enforced:
    - Stock is never oversold: decrements are guarded UPDATEs inside the
      same transaction that inserts the order.
    - Promo codes are never over-redeemed: the use counter is a guarded
      increment in that same transaction.
    - An authorization is either attached to a committed order or voided;
      a failed void leaves an ``orphaned_authorization`` review item.
    - Status changes are evaluated twice: advisory before any gateway
      call, authoritative on the freshly read row inside the transaction.
    - Re-applying the current terminal status is a successful no-op.

Failure modes:
    - KioskError subclasses for every business rejection (see exceptions).
    - PaymentCaptureFailedError when delivery capture fails; the order
      keeps its status and carries ``capture_failed``.
    - OrderNotEditableError once the order is preparing or its payment
      has moved on; TipNotAllowedError for a tip before delivery or a
      second tip.

Audit relevance:
    Every status change appends a history entry with actor, role and
    reason.  Every money movement is logged with its gateway reference.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence
from uuid import UUID

from kiosk_kernel.domain.dtos import (
    OrderCreated,
    OrderEdited,
    OrderRecord,
    TipAdded,
    TransitionApplied,
    UserInfo,
)
from kiosk_kernel.domain.fees import CouponTerms, LineItem, calculate_order_totals
from kiosk_kernel.domain.state_machine import TransitionDecision, TransitionScope
from kiosk_kernel.domain.values import (
    PaymentMethod,
    PaymentStatus,
    ProcessingLedger,
)
from kiosk_kernel.domain.workflows import ORDER_STATE_MACHINE, OrderStatus
from kiosk_kernel.exceptions import (
    BoxInactiveError,
    CurrencyMismatchError,
    InvalidArgumentError,
    InvalidPaymentMethodError,
    InvalidStatusTransitionError,
    InventoryUnavailableError,
    MissingPaymentInfoError,
    NotOwnerOrAdminError,
    OrderNotEditableError,
    PaymentCaptureFailedError,
    ProductInactiveError,
    ProductNotFoundError,
    PromoCodeExhaustedError,
    PromoCodeInvalidError,
    PromoCodeNotFoundError,
    TipAlreadyAddedError,
    TipNotAllowedError,
)
from kiosk_kernel.logging_config import get_logger
from kiosk_kernel.models.manual_review import ReviewKind
from kiosk_kernel.models.order import Order
from kiosk_kernel.services.base import LifecycleService, parse_uuid, scope_for
from kiosk_kernel.services.payment_gateway import SettlementResult
from kiosk_kernel.services.repository import EntityKind, TransactionHandle

logger = get_logger("services.order_lifecycle")

PERM_CREATE = "order:create"
PERM_UPDATE_STATUS = "order:updateStatus"
PERM_CANCEL_OWN = "order:cancel:own"
PERM_CANCEL_ANY = "order:cancel:any"
PERM_EDIT_OWN = "order:edit:own"
PERM_EDIT_ANY = "order:edit:any"
PERM_TIP = "order:tip"

OWNER_CANCELLABLE = frozenset({OrderStatus.CREATED, OrderStatus.PREPARING})
EDITABLE_PAYMENT_STATUSES = frozenset({PaymentStatus.AUTHORIZED, PaymentStatus.PENDING_COURIER})


@dataclass(frozen=True)
class OrderItemRequest:
    product_id: Any
    quantity: int


@dataclass(frozen=True)
class _PaymentRelease:
    """Payment fields to write with a cancellation."""

    payment_status: PaymentStatus
    refund_id: str | None = None
    processing_error: str | None = None


def normalize_items(items: Sequence[Any]) -> list[OrderItemRequest]:
    """
    Validate requested items and merge repeated products.

    Accepts OrderItemRequest instances or ``{"product_id", "quantity"}``
    mappings; first-seen order is kept.
    """
    if not items:
        raise InvalidArgumentError("items", "order has no items")
    merged: dict[UUID, int] = {}
    for item in items:
        if isinstance(item, OrderItemRequest):
            raw_id, quantity = item.product_id, item.quantity
        else:
            try:
                raw_id, quantity = item["product_id"], item["quantity"]
            except (KeyError, TypeError):
                raise InvalidArgumentError("items", "each item needs product_id and quantity") from None
        product_id = parse_uuid("items.product_id", raw_id)
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise InvalidArgumentError("items.quantity", f"must be a positive integer, got {quantity!r}")
        merged[product_id] = merged.get(product_id, 0) + quantity
    return [OrderItemRequest(pid, qty) for pid, qty in merged.items()]


def _non_negative_int(field: str, value: Any) -> int:
    if value is None:
        return 0
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise InvalidArgumentError(field, f"must be a non-negative integer, got {value!r}")
    return value


class OrderLifecycleService(LifecycleService):
    """Orchestrates createOrder, updateOrderStatus, cancelOrder, editOrder and addTipToOrder."""

    entity_kind = EntityKind.ORDER

    def __init__(
        self,
        *args: Any,
        authorization_methods: frozenset[str] = frozenset({"credit_card_app", "bit_app"}),
        courier_methods: frozenset[str] = frozenset({"cash_on_delivery", "credit_on_delivery"}),
        cancellation_topic: str = "order-cancellation-side-effects",
        **kwargs: Any,
    ):
        super().__init__(*args, **kwargs)
        self._authorization_methods = frozenset(authorization_methods)
        self._courier_methods = frozenset(courier_methods)
        self._cancellation_topic = cancellation_topic

    # =========================================================================
    # createOrder
    # =========================================================================

    def create_order(
        self,
        actor_id: Any,
        box_id: Any,
        items: Sequence[Any],
        payment_method: str,
        coupon_code: str | None = None,
        loyalty_units: int | None = 0,
        tip: int | None = 0,
        payment_token: str | None = None,
    ) -> OrderCreated:
        """
        Place an order at a box.

        Steps:
            1. Load actor, box, products and promo code concurrently and
               validate them (existence, active, currency, advisory stock).
            2. Compute totals.
            3. Authorize the final amount when the method requires it.
            4. Commit the order, stock decrements, loyalty debit and promo
               redemption in one transaction, re-validating all of them.
            5. On failure after authorization, void it.
            6. Dispatch notifications and the activity entry.
        """
        actor = self._require_actor(actor_id, PERM_CREATE, "createOrder")
        box_id = parse_uuid("box_id", box_id)
        requested = normalize_items(items)
        loyalty_units = _non_negative_int("loyalty_units", loyalty_units)
        tip = _non_negative_int("tip", tip)
        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            raise InvalidPaymentMethodError(str(payment_method), "unknown payment method") from None
        coupon_code = coupon_code.strip() if coupon_code else None

        box, products, promo = self._gather(
            lambda: self._repository.get(EntityKind.BOX, box_id),
            lambda: self._repository.get_many(
                EntityKind.PRODUCT, [r.product_id for r in requested],
            ),
            lambda: self._repository.get_promo_code(coupon_code) if coupon_code else None,
        )

        if not box.is_active:
            raise BoxInactiveError(box.id)
        lines: list[LineItem] = []
        for req, product in zip(requested, products):
            if product is None:
                raise ProductNotFoundError(req.product_id)
            if not product.is_active:
                raise ProductInactiveError(product.id)
            if product.currency != box.currency:
                raise CurrencyMismatchError(box.currency, product.currency, product.id)
            if box.available(product.id) < req.quantity:
                raise InventoryUnavailableError(box.id, product.id, req.quantity)
            lines.append(LineItem(product.id, product.name, product.unit_price, req.quantity))

        coupon = None
        if promo is not None:
            invalid = promo.invalid_reason(self.clock.now())
            if invalid:
                raise PromoCodeInvalidError(promo.code, invalid)
            if promo.exhausted:
                raise PromoCodeExhaustedError(promo.code)
            coupon = CouponTerms(promo.discount_type, promo.discount_value)

        totals = calculate_order_totals(
            lines,
            coupon=coupon,
            loyalty_units_requested=loyalty_units,
            loyalty_balance=actor.loyalty_balance,
            tip=tip,
        )

        authorization = None
        if totals.final_amount == 0:
            payment_status = PaymentStatus.PAID
        elif method == PaymentMethod.LOYALTY_ONLY:
            raise InvalidPaymentMethodError(
                method.value, "loyalty balance does not cover the order total",
            )
        elif method.value in self._authorization_methods:
            authorization = self._authorize(
                totals.final_amount,
                box.currency,
                actor,
                f"Order at {box.name}",
                payment_token,
                allow_pending_action=False,
            )
            payment_status = PaymentStatus.AUTHORIZED
        elif method.value in self._courier_methods:
            payment_status = PaymentStatus.PENDING_COURIER
        else:
            raise InvalidPaymentMethodError(method.value, "payment method not accepted")

        history = self._history_entry(OrderStatus.CREATED, actor)
        promo_code = promo.code if promo is not None else None

        def write(tx: TransactionHandle) -> UUID:
            box_row = tx.require(EntityKind.BOX, box_id)
            if not box_row.is_active:
                raise BoxInactiveError(box_id)
            if promo_code is not None:
                promo_row = tx.find_promo_code(promo_code)
                if promo_row is None:
                    raise PromoCodeNotFoundError(promo_code)
                invalid_now = promo_row.to_dto().invalid_reason(tx.now())
                if invalid_now:
                    raise PromoCodeInvalidError(promo_code, invalid_now)
                tx.redeem_promo_code(promo_row)
            tx.debit_loyalty(actor.id, totals.loyalty_discount)
            for line in lines:
                tx.take_stock(box_id, line.product_id, line.quantity)
            order = tx.add(
                Order(
                    customer_id=actor.id,
                    box_id=box_id,
                    items=[line.to_dict() for line in lines],
                    status=OrderStatus.CREATED.value,
                    status_history=[history.to_dict()],
                    payment_method=method.value,
                    payment_status=payment_status.value,
                    currency=box.currency,
                    authorization_id=authorization.authorization_id if authorization else None,
                    authorized_amount=totals.final_amount if authorization else None,
                    authorized_at=tx.now() if authorization else None,
                    items_total=totals.items_total,
                    coupon_discount=totals.coupon_discount,
                    loyalty_discount=totals.loyalty_discount,
                    tip=totals.tip,
                    final_amount=totals.final_amount,
                    promo_code=promo_code,
                )
            )
            tx.flush()
            return order.id

        try:
            order_id = self._repository.run_transaction(write, name="create_order")
        except Exception as exc:
            logger.warning(
                "order_creation_aborted",
                extra={
                    "box_id": str(box_id),
                    "error_code": getattr(exc, "code", type(exc).__name__),
                    "authorized": authorization is not None,
                },
            )
            self._compensate(exc, authorization, totals.final_amount, box.currency)
            raise

        logger.info(
            "order_created",
            extra={
                "order_id": str(order_id),
                "box_id": str(box_id),
                "customer_id": str(actor.id),
                "payment_method": method.value,
                "payment_status": payment_status.value,
                **totals.to_dict(),
            },
        )
        self._side_channel.notify(
            actor.id, "OrderCreated",
            params={"orderId": str(order_id), "amount": totals.final_amount},
            payload={"orderId": str(order_id)},
        )
        self._side_channel.notify(
            box.assigned_courier_id, "NewOrderInBox",
            params={"boxName": box.name},
            payload={"orderId": str(order_id), "boxId": str(box_id)},
        )
        self._side_channel.log_activity(
            "order_created",
            {"orderId": str(order_id), "boxId": str(box_id), "finalAmount": totals.final_amount},
            actor.id,
        )
        return OrderCreated(order_id, totals.final_amount, payment_status)

    # =========================================================================
    # updateOrderStatus
    # =========================================================================

    def update_order_status(
        self,
        actor_id: Any,
        order_id: Any,
        new_status: str,
        details: str | None = None,
    ) -> TransitionApplied:
        """
        Move an order along its workflow.

        Delivery of an authorized order captures the final amount first;
        if capture fails the status is left unchanged.  Cancellation goes
        through the cancel path so the side effects are enqueued.
        """
        actor = self._require_actor(actor_id, PERM_UPDATE_STATUS, "updateOrderStatus")
        order_id = parse_uuid("order_id", order_id)
        try:
            requested = OrderStatus(new_status)
        except ValueError:
            raise InvalidArgumentError("new_status", f"unknown order status {new_status!r}") from None

        if requested == OrderStatus.CANCELLED:
            return self._cancel(actor, self._repository.get(EntityKind.ORDER, order_id), details)

        order: OrderRecord = self._repository.get(EntityKind.ORDER, order_id)
        scope = scope_for(actor.role)
        if ORDER_STATE_MACHINE.evaluate(order.status, requested, scope, order.id) is TransitionDecision.NOOP:
            return TransitionApplied(order.id, order.status.value, changed=False)

        settlement: SettlementResult | None = None
        if requested == OrderStatus.DELIVERED and order.payment_status == PaymentStatus.AUTHORIZED:
            if not order.authorization_id:
                raise MissingPaymentInfoError(order.id)
            settlement = self._gateway.finalize(
                order.authorization_id,
                order.final_amount,
                order.authorized_amount or order.final_amount,
                order.currency,
            )
            if not settlement.success:
                current = self._repository.get(EntityKind.ORDER, order.id)
                if current.status == OrderStatus.DELIVERED:
                    return TransitionApplied(order.id, current.status.value, changed=False)
                self._record_capture_failure(order, settlement)
                raise PaymentCaptureFailedError(order.id, settlement.error_code)
            logger.info(
                "order_payment_captured",
                extra={
                    "order_id": str(order.id),
                    "settlement_id": settlement.settlement_id,
                    "amount_charged": settlement.amount_charged,
                },
            )

        history = self._history_entry(requested, actor, details)

        def write(tx: TransactionHandle) -> bool:
            row = tx.require(EntityKind.ORDER, order_id)
            if ORDER_STATE_MACHINE.evaluate(row.status, requested, scope, row.id) is TransitionDecision.NOOP:
                return False
            row.status = requested.value
            row.append_history(history)
            if settlement is not None:
                row.payment_status = (
                    PaymentStatus.VOIDED if settlement.voided else PaymentStatus.CAPTURED
                ).value
                row.settlement_id = settlement.settlement_id
                row.amount_charged = settlement.amount_charged
                row.settled_at = tx.now()
            elif (
                requested == OrderStatus.DELIVERED
                and row.payment_status == PaymentStatus.PENDING_COURIER.value
            ):
                row.payment_status = PaymentStatus.PAID.value
            return True

        try:
            changed = self._repository.run_transaction(write, name="update_order_status")
        except Exception as exc:
            if settlement is not None:
                self._compensator.flag(
                    ReviewKind.DATA_ERROR,
                    "Order payment captured but delivery was not recorded",
                    entity_type=self.entity_kind.value,
                    entity_id=order.id,
                    authorization_id=order.authorization_id,
                    amount=settlement.amount_charged,
                    currency=order.currency,
                    detail={
                        "settlement_id": settlement.settlement_id,
                        "error": getattr(exc, "code", type(exc).__name__),
                    },
                )
            raise

        if not changed:
            return TransitionApplied(order.id, requested.value, changed=False)

        logger.info(
            "order_status_updated",
            extra={
                "order_id": str(order.id),
                "from_status": order.status.value,
                "to_status": requested.value,
            },
        )
        if requested in (OrderStatus.READY, OrderStatus.DELIVERED):
            notification = "OrderReady" if requested == OrderStatus.READY else "OrderDelivered"
            self._side_channel.notify(
                order.customer_id, notification,
                params={"orderId": str(order.id)},
                payload={"orderId": str(order.id), "status": requested.value},
            )
        self._side_channel.log_activity(
            "order_status_updated",
            {"orderId": str(order.id), "from": order.status.value, "to": requested.value},
            actor.id,
        )
        return TransitionApplied(order.id, requested.value)

    def _record_capture_failure(self, order: OrderRecord, settlement: SettlementResult) -> None:
        error = f"capture failed: {settlement.error_code}"

        def mark(tx: TransactionHandle) -> None:
            row = tx.require(EntityKind.ORDER, order.id)
            row.payment_status = PaymentStatus.CAPTURE_FAILED.value
            row.processing_error = error

        try:
            self._repository.run_transaction(mark, name="mark_capture_failed")
        except Exception:
            logger.critical(
                "capture_failure_write_failed",
                extra={"order_id": str(order.id)},
                exc_info=True,
            )
        self._compensator.flag(
            ReviewKind.CAPTURE_FAILED,
            f"Capture on delivery failed for order {order.id}",
            entity_type=self.entity_kind.value,
            entity_id=order.id,
            authorization_id=order.authorization_id,
            amount=order.final_amount,
            currency=order.currency,
            detail={
                "gateway_error": settlement.error_code,
                "status_unknown": settlement.status_unknown,
            },
        )

    # =========================================================================
    # cancelOrder
    # =========================================================================

    def cancel_order(
        self,
        actor_id: Any,
        order_id: Any,
        reason: str | None = None,
    ) -> TransitionApplied:
        """
        Cancel an order.

        The owner may cancel while the order is created or preparing;
        staff holding ``order:cancel:any`` may cancel any non-terminal
        order.  Cancelling a cancelled order is a no-op.
        """
        actor = self._authenticate(actor_id, "cancelOrder")
        order = self._repository.get(EntityKind.ORDER, parse_uuid("order_id", order_id))
        can_cancel_any = self._has_permission(actor, PERM_CANCEL_ANY)
        if can_cancel_any:
            pass
        elif order.customer_id == actor.id and self._has_permission(actor, PERM_CANCEL_OWN):
            if order.status not in OWNER_CANCELLABLE and order.status != OrderStatus.CANCELLED:
                raise InvalidStatusTransitionError(
                    "Order", order.id, order.status.value, OrderStatus.CANCELLED.value,
                )
        else:
            raise NotOwnerOrAdminError(actor.id, PERM_CANCEL_ANY)
        return self._cancel(actor, order, reason, None if can_cancel_any else OWNER_CANCELLABLE)

    def _cancel(
        self,
        actor: UserInfo,
        order: OrderRecord,
        reason: str | None,
        allowed_from: frozenset[OrderStatus] | None = None,
    ) -> TransitionApplied:
        scope = scope_for(actor.role)
        if ORDER_STATE_MACHINE.evaluate(
            order.status, OrderStatus.CANCELLED, scope, order.id,
        ) is TransitionDecision.NOOP:
            logger.info("order_already_cancelled", extra={"order_id": str(order.id)})
            return TransitionApplied(order.id, order.status.value, changed=False)

        release = self._release_payment(order, reason)
        history = self._history_entry(OrderStatus.CANCELLED, actor, reason)

        def write(tx: TransactionHandle) -> bool:
            row = tx.require(EntityKind.ORDER, order.id)
            if ORDER_STATE_MACHINE.evaluate(
                row.status, OrderStatus.CANCELLED, scope, row.id,
            ) is TransitionDecision.NOOP:
                return False
            if allowed_from is not None and OrderStatus(row.status) not in allowed_from:
                raise InvalidStatusTransitionError(
                    "Order", row.id, row.status, OrderStatus.CANCELLED.value,
                )
            row.status = OrderStatus.CANCELLED.value
            row.append_history(history)
            row.cancellation_reason = reason
            row.cancellation = ProcessingLedger.pending()
            if release is not None:
                row.payment_status = release.payment_status.value
                if release.refund_id:
                    row.refund_id = release.refund_id
                if release.processing_error:
                    row.processing_error = release.processing_error
            return True

        try:
            changed = self._repository.run_transaction(write, name="cancel_order")
        except Exception as exc:
            if release is not None and release.payment_status in (
                PaymentStatus.VOIDED, PaymentStatus.REFUNDED,
            ):
                self._compensator.flag(
                    ReviewKind.DATA_ERROR,
                    "Order payment released but cancellation was not recorded",
                    entity_type=self.entity_kind.value,
                    entity_id=order.id,
                    authorization_id=order.authorization_id,
                    amount=order.final_amount,
                    currency=order.currency,
                    detail={
                        "payment_status": release.payment_status.value,
                        "error": getattr(exc, "code", type(exc).__name__),
                    },
                )
            raise

        if not changed:
            return TransitionApplied(order.id, OrderStatus.CANCELLED.value, changed=False)

        logger.info(
            "order_cancelled",
            extra={
                "order_id": str(order.id),
                "from_status": order.status.value,
                "payment_status": release.payment_status.value if release else order.payment_status.value,
                "elevated": scope is TransitionScope.ELEVATED,
            },
        )
        self._publish_or_flag(self._cancellation_topic, {"orderId": str(order.id)}, order.id)
        if order.customer_id != actor.id:
            self._side_channel.notify(
                order.customer_id, "OrderCancelled",
                params={"orderId": str(order.id)},
                payload={"orderId": str(order.id), "reason": reason},
            )
        self._side_channel.log_activity(
            "order_cancelled",
            {"orderId": str(order.id), "from": order.status.value, "reason": reason},
            actor.id,
        )
        return TransitionApplied(order.id, OrderStatus.CANCELLED.value)

    def _release_payment(self, order: OrderRecord, reason: str | None) -> _PaymentRelease | None:
        """Void an open hold or refund a capture ahead of the cancellation commit."""
        status = order.payment_status
        if status in (PaymentStatus.AUTHORIZED, PaymentStatus.ACTION_REQUIRED):
            if not order.authorization_id:
                raise MissingPaymentInfoError(order.id)
            result = self._gateway.void(order.authorization_id)
            if result.success:
                logger.info(
                    "order_authorization_voided",
                    extra={"order_id": str(order.id), "authorization_id": order.authorization_id},
                )
                return _PaymentRelease(PaymentStatus.VOIDED)
            self._compensator.flag(
                ReviewKind.VOID_FAILED,
                f"Void on cancellation failed for order {order.id}",
                entity_type=self.entity_kind.value,
                entity_id=order.id,
                authorization_id=order.authorization_id,
                amount=order.authorized_amount,
                currency=order.currency,
                detail={"gateway_error": result.error_code, "status_unknown": result.status_unknown},
            )
            return _PaymentRelease(
                PaymentStatus.VOID_FAILED,
                processing_error=f"void failed: {result.error_code}",
            )

        if status == PaymentStatus.CAPTURED and order.settlement_id and order.amount_charged:
            result = self._gateway.refund(
                order.settlement_id, order.amount_charged, order.currency, reason or "order cancelled",
            )
            if result.success:
                logger.info(
                    "order_payment_refunded",
                    extra={
                        "order_id": str(order.id),
                        "refund_id": result.refund_id,
                        "amount_refunded": result.amount_refunded,
                    },
                )
                return _PaymentRelease(PaymentStatus.REFUNDED, refund_id=result.refund_id)
            self._compensator.flag(
                ReviewKind.REFUND_FAILED,
                f"Refund on cancellation failed for order {order.id}",
                entity_type=self.entity_kind.value,
                entity_id=order.id,
                authorization_id=order.authorization_id,
                amount=order.amount_charged,
                currency=order.currency,
                detail={"settlement_id": order.settlement_id, "gateway_error": result.error_code},
            )
            return _PaymentRelease(
                PaymentStatus.REFUND_FAILED,
                processing_error=f"refund failed: {result.error_code}",
            )
        return None

    # =========================================================================
    # editOrder
    # =========================================================================

    def edit_order(
        self,
        actor_id: Any,
        order_id: Any,
        items: Sequence[Any],
        payment_token: str | None = None,
    ) -> OrderEdited:
        """
        Replace the items of an order that has not started preparing.

        The coupon terms and the tip are kept; the loyalty redemption is
        kept up to the new payable amount and the excess is credited back.
        A card order whose new total exceeds its hold is authorized again
        for the new total and the superseded hold is voided after commit.
        Stock moves by the per-product difference inside the transaction
        that rewrites the order.
        """
        actor = self._authenticate(actor_id, "editOrder")
        order_id = parse_uuid("order_id", order_id)
        requested = normalize_items(items)
        order: OrderRecord = self._repository.get(EntityKind.ORDER, order_id)
        if self._has_permission(actor, PERM_EDIT_ANY):
            pass
        elif order.customer_id != actor.id or not self._has_permission(actor, PERM_EDIT_OWN):
            raise NotOwnerOrAdminError(actor.id, PERM_EDIT_ANY)
        _check_editable(order.id, order.status, order.payment_status)

        box, products, promo, owner = self._gather(
            lambda: self._repository.get(EntityKind.BOX, order.box_id),
            lambda: self._repository.get_many(
                EntityKind.PRODUCT, [r.product_id for r in requested],
            ),
            lambda: self._repository.get_promo_code(order.promo_code) if order.promo_code else None,
            lambda: actor if actor.id == order.customer_id else self._repository.get(
                EntityKind.USER, order.customer_id,
            ),
        )

        previous = {
            parse_uuid("items.product_id", line.product_id): line.quantity for line in order.items
        }
        lines: list[LineItem] = []
        for req, product in zip(requested, products):
            if product is None:
                raise ProductNotFoundError(req.product_id)
            added = req.quantity - previous.get(product.id, 0)
            if not product.is_active and added > 0:
                raise ProductInactiveError(product.id)
            if product.currency != order.currency:
                raise CurrencyMismatchError(order.currency, product.currency, product.id)
            if added > 0 and box.available(product.id) < added:
                raise InventoryUnavailableError(box.id, product.id, added)
            lines.append(LineItem(product.id, product.name, product.unit_price, req.quantity))

        coupon = CouponTerms(promo.discount_type, promo.discount_value) if promo is not None else None
        totals = calculate_order_totals(
            lines,
            coupon=coupon,
            loyalty_units_requested=order.loyalty_discount,
            loyalty_balance=order.loyalty_discount,
            tip=order.tip,
        )
        loyalty_refund = order.loyalty_discount - totals.loyalty_discount

        authorization = None
        superseded: str | None = None
        payment_status = order.payment_status
        if totals.final_amount == 0:
            payment_status = PaymentStatus.PAID
            superseded = order.authorization_id
        elif (
            order.payment_status == PaymentStatus.AUTHORIZED
            and totals.final_amount > (order.authorized_amount or 0)
        ):
            authorization = self._authorize(
                totals.final_amount,
                order.currency,
                owner,
                f"Order at {box.name}",
                payment_token,
                allow_pending_action=False,
            )
            superseded = order.authorization_id

        history = self._history_entry(OrderStatus.CREATED, actor, "items edited")

        def write(tx: TransactionHandle) -> None:
            row = tx.require(EntityKind.ORDER, order_id)
            _check_editable(row.id, OrderStatus(row.status), PaymentStatus(row.payment_status))
            if row.version != order.version:
                raise OrderNotEditableError(row.id, "order changed while editing")
            wanted = {line.product_id: line.quantity for line in lines}
            for product_id in [*previous, *(p for p in wanted if p not in previous)]:
                delta = wanted.get(product_id, 0) - previous.get(product_id, 0)
                if delta > 0:
                    tx.take_stock(row.box_id, product_id, delta)
                elif delta < 0:
                    tx.restore_stock(row.box_id, product_id, -delta)
            tx.credit_loyalty(row.customer_id, loyalty_refund)
            row.items = [line.to_dict() for line in lines]
            row.items_total = totals.items_total
            row.coupon_discount = totals.coupon_discount
            row.loyalty_discount = totals.loyalty_discount
            row.final_amount = totals.final_amount
            row.payment_status = payment_status.value
            if authorization is not None:
                row.authorization_id = authorization.authorization_id
                row.authorized_amount = totals.final_amount
                row.authorized_at = tx.now()
            row.append_history(history)

        try:
            self._repository.run_transaction(write, name="edit_order")
        except Exception as exc:
            logger.warning(
                "order_edit_aborted",
                extra={
                    "order_id": str(order.id),
                    "error_code": getattr(exc, "code", type(exc).__name__),
                    "reauthorized": authorization is not None,
                },
            )
            self._compensate(exc, authorization, totals.final_amount, order.currency)
            raise

        if superseded:
            self._compensator.void_after_failure(
                superseded,
                order.authorized_amount or order.final_amount,
                order.currency,
                entity_type=self.entity_kind.value,
                reason="superseded by order edit",
                entity_id=order.id,
            )

        logger.info(
            "order_edited",
            extra={
                "order_id": str(order.id),
                "previous_amount": order.final_amount,
                "payment_status": payment_status.value,
                "reauthorized": authorization is not None,
                "loyalty_refunded": loyalty_refund,
                **totals.to_dict(),
            },
        )
        self._side_channel.notify(
            box.assigned_courier_id, "OrderEdited",
            params={"orderId": str(order.id)},
            payload={"orderId": str(order.id), "boxId": str(order.box_id)},
        )
        self._side_channel.log_activity(
            "order_edited",
            {"orderId": str(order.id), "from": order.final_amount, "to": totals.final_amount},
            actor.id,
        )
        return OrderEdited(
            order.id, totals.final_amount, payment_status, reauthorized=authorization is not None,
        )

    # =========================================================================
    # addTipToOrder
    # =========================================================================

    def add_tip_to_order(
        self,
        actor_id: Any,
        order_id: Any,
        tip: int,
        payment_token: str | None = None,
    ) -> TipAdded:
        """
        Charge a tip on a delivered order, once.

        The tip is authorized and captured as its own payment before the
        order is touched.  If the commit then fails the capture is refunded;
        a failed refund leaves a ``refund_failed`` review item.
        """
        actor = self._require_actor(actor_id, PERM_TIP, "addTipToOrder")
        order_id = parse_uuid("order_id", order_id)
        if not isinstance(tip, int) or isinstance(tip, bool) or tip <= 0:
            raise InvalidArgumentError("tip", f"must be a positive integer, got {tip!r}")
        order: OrderRecord = self._repository.get(EntityKind.ORDER, order_id)
        if order.customer_id != actor.id:
            raise NotOwnerOrAdminError(actor.id, PERM_TIP)
        _check_tippable(order.id, order.status, order.tip, order.tip_settlement_id)

        authorization = self._authorize(
            tip,
            order.currency,
            actor,
            f"Tip for order {order.id}",
            payment_token,
            allow_pending_action=False,
        )
        settlement = self._gateway.finalize(authorization.authorization_id, tip, tip, order.currency)
        if not settlement.success:
            self._compensator.void_after_failure(
                authorization.authorization_id,
                tip,
                order.currency,
                entity_type=self.entity_kind.value,
                reason="tip capture failed",
                entity_id=order.id,
            )
            raise PaymentCaptureFailedError(order.id, settlement.error_code)

        def write(tx: TransactionHandle) -> int:
            row = tx.require(EntityKind.ORDER, order_id)
            _check_tippable(row.id, OrderStatus(row.status), row.tip, row.tip_settlement_id)
            row.tip = tip
            row.final_amount = row.final_amount + tip
            row.tip_settlement_id = settlement.settlement_id
            row.tip_charged_at = tx.now()
            return row.final_amount

        try:
            final_amount = self._repository.run_transaction(write, name="add_tip_to_order")
        except Exception as exc:
            self._refund_tip(order, settlement, exc)
            raise

        logger.info(
            "order_tip_added",
            extra={
                "order_id": str(order.id),
                "tip": tip,
                "settlement_id": settlement.settlement_id,
            },
        )
        box = self._repository.get(EntityKind.BOX, order.box_id)
        self._side_channel.notify(
            box.assigned_courier_id, "TipReceived",
            params={"amount": tip},
            payload={"orderId": str(order.id)},
        )
        self._side_channel.log_activity(
            "order_tip_added",
            {"orderId": str(order.id), "tip": tip},
            actor.id,
        )
        return TipAdded(order.id, tip, final_amount, settlement.settlement_id)

    def _refund_tip(self, order: OrderRecord, settlement: SettlementResult, exc: BaseException) -> None:
        error_code = getattr(exc, "code", type(exc).__name__)
        result = self._gateway.refund(
            settlement.settlement_id, settlement.amount_charged, order.currency, "tip not recorded",
        )
        if result.success:
            logger.warning(
                "order_tip_refunded",
                extra={
                    "order_id": str(order.id),
                    "refund_id": result.refund_id,
                    "error_code": error_code,
                },
            )
            return
        self._compensator.flag(
            ReviewKind.REFUND_FAILED,
            f"Tip captured but not recorded on order {order.id}; refund failed",
            entity_type=self.entity_kind.value,
            entity_id=order.id,
            amount=settlement.amount_charged,
            currency=order.currency,
            detail={
                "settlement_id": settlement.settlement_id,
                "gateway_error": result.error_code,
                "error": error_code,
            },
        )


def _check_editable(order_id: UUID, status: OrderStatus, payment_status: PaymentStatus) -> None:
    if status != OrderStatus.CREATED:
        raise OrderNotEditableError(order_id, f"order is {status.value}")
    if payment_status not in EDITABLE_PAYMENT_STATUSES:
        raise OrderNotEditableError(order_id, f"payment is {payment_status.value}")


def _check_tippable(order_id: UUID, status: OrderStatus, tip: int, tip_settlement_id: str | None) -> None:
    if status != OrderStatus.DELIVERED:
        raise TipNotAllowedError(order_id, f"order is {status.value}")
    if tip or tip_settlement_id:
        raise TipAlreadyAddedError(order_id)
