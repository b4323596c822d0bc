"""
RentalLifecycleService -- book, hand over, take back and cancel rentals.

Responsibility:
    The saga behind every rental operation.  A booking authorizes the
    item's deposit and takes one unit from the pickup box in the same
    transaction that writes the booking.  A return puts the unit back at
    the return box and hands deposit settlement to the side-effect worker.
    Two sweeps run on a schedule: overdue pickups are flagged, and bookings
    whose deposit hold still waits on a customer step are released.

Architecture position:
    Kernel > Services -- imperative shell over ``EntityRepository`` and
    ``PaymentGateway``.  Deposit settlement itself lives in
    ``SideEffectWorker``.

Invariants enforced:
    - One unit leaves stock per booking and comes back exactly once, on
      return (at the return box) or on cancellation (at the pickup box).
    - The deposit authorization is attached to a committed booking or
      voided; a failed void is persisted as a review item.
    - Pickup and return are idempotent: confirming twice succeeds without
      a second state change or stock movement.
    - Only a courier assigned to the handover box may confirm it.

Failure modes:
    - CourierMismatchError, DepositNotAuthorizedError,
      InvalidStatusTransitionError and the creation errors shared with
      orders.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from kiosk_kernel.domain.dtos import (
    BookingCreated,
    RentalBookingRecord,
    TransitionApplied,
    UserInfo,
)
from kiosk_kernel.domain.state_machine import TransitionDecision, TransitionScope
from kiosk_kernel.domain.values import (
    ELEVATED_ROLES,
    PaymentStatus,
    ProcessingLedger,
    ReturnCondition,
)
from kiosk_kernel.domain.workflows import RENTAL_STATE_MACHINE, RentalStatus
from kiosk_kernel.exceptions import (
    BoxInactiveError,
    CourierMismatchError,
    CurrencyMismatchError,
    DepositNotAuthorizedError,
    DepositNotConfiguredError,
    InvalidArgumentError,
    InventoryUnavailableError,
    NotOwnerOrAdminError,
    RentalItemInactiveError,
)
from kiosk_kernel.logging_config import get_logger
from kiosk_kernel.models.box import StockKind
from kiosk_kernel.models.manual_review import ReviewKind
from kiosk_kernel.models.rental_booking import RentalBooking
from kiosk_kernel.services.base import LifecycleService, parse_uuid, scope_for
from kiosk_kernel.services.repository import EntityKind, TransactionHandle

logger = get_logger("services.rental_lifecycle")

PERM_CREATE = "rental:create"
PERM_CONFIRM_PICKUP = "rental:confirmPickup"
PERM_CONFIRM_RETURN = "rental:confirmReturn"
PERM_CANCEL_OWN = "rental:cancel:own"
PERM_CANCEL_ANY = "rental:cancel:any"

# Statuses from which a return has already been recorded
_RETURNED_STATUSES = frozenset({
    RentalStatus.RETURNED_PENDING_INSPECTION,
    RentalStatus.COMPLETED,
})


class RentalLifecycleService(LifecycleService):
    """Orchestrates the rental booking operations."""

    entity_kind = EntityKind.RENTAL_BOOKING

    def __init__(
        self,
        *args: Any,
        overtime_interval_minutes: int = 60,
        overtime_fee: int = 0,
        cleaning_fee: int = 0,
        default_rental_hours: int = 24,
        action_required_ttl_minutes: int = 30,
        deposit_topic: str = "rental-deposit-processing",
        **kwargs: Any,
    ):
        super().__init__(*args, **kwargs)
        self._overtime_interval_minutes = overtime_interval_minutes
        self._overtime_fee = overtime_fee
        self._cleaning_fee = cleaning_fee
        self._default_rental = timedelta(hours=default_rental_hours)
        self._action_required_ttl = timedelta(minutes=action_required_ttl_minutes)
        self._deposit_topic = deposit_topic

    def _require_courier_at(self, actor: UserInfo, box_id: UUID) -> None:
        if actor.role in ELEVATED_ROLES:
            return
        if actor.current_box_id != box_id:
            raise CourierMismatchError(actor.id, box_id)

    # =========================================================================
    # createRentalBooking
    # =========================================================================

    def create_rental_booking(
        self,
        actor_id: Any,
        item_id: Any,
        pickup_box_id: Any,
        expected_return_at: datetime | None = None,
        payment_token: str | None = None,
    ) -> BookingCreated:
        """
        Book a rental item for pickup at a box.

        Authorizes the item's deposit, then takes one unit from the pickup
        box and writes the booking in one transaction.  A hold that needs a
        customer step is kept and reported through ``requires_action``.
        Without ``expected_return_at`` the default rental period applies.
        """
        actor = self._require_actor(actor_id, PERM_CREATE, "createRentalBooking")
        item_id = parse_uuid("item_id", item_id)
        pickup_box_id = parse_uuid("pickup_box_id", pickup_box_id)
        now = self.clock.now()
        if expected_return_at is None:
            expected_return_at = now + self._default_rental
        else:
            if expected_return_at.tzinfo is None:
                expected_return_at = expected_return_at.replace(tzinfo=timezone.utc)
            if expected_return_at <= now:
                raise InvalidArgumentError("expected_return_at", "must be in the future")

        item, box = self._gather(
            lambda: self._repository.get(EntityKind.RENTAL_ITEM, item_id),
            lambda: self._repository.get(EntityKind.BOX, pickup_box_id),
        )
        if not item.is_active:
            raise RentalItemInactiveError(item.id)
        if item.deposit <= 0:
            raise DepositNotConfiguredError(item.id)
        if not box.is_active:
            raise BoxInactiveError(box.id)
        if item.currency != box.currency:
            raise CurrencyMismatchError(box.currency, item.currency, item.id)
        if box.available(item.id) < 1:
            raise InventoryUnavailableError(box.id, item.id, 1)

        authorization = self._authorize(
            item.deposit,
            item.currency,
            actor,
            f"Deposit for {item.name}",
            payment_token,
            allow_pending_action=True,
        )
        payment_status = (
            PaymentStatus.ACTION_REQUIRED if authorization.requires_action
            else PaymentStatus.AUTHORIZED
        )
        history = self._history_entry(RentalStatus.PENDING_PICKUP, actor)

        def write(tx: TransactionHandle) -> UUID:
            box_row = tx.require(EntityKind.BOX, pickup_box_id)
            if not box_row.is_active:
                raise BoxInactiveError(pickup_box_id)
            item_row = tx.require(EntityKind.RENTAL_ITEM, item_id)
            if not item_row.is_active:
                raise RentalItemInactiveError(item_id)
            tx.take_stock(pickup_box_id, item_id, 1)
            booking = tx.add(
                RentalBooking(
                    customer_id=actor.id,
                    rental_item_id=item_id,
                    rental_item_name=item.name,
                    pickup_box_id=pickup_box_id,
                    status=RentalStatus.PENDING_PICKUP.value,
                    status_history=[history.to_dict()],
                    currency=item.currency,
                    rental_fee=item.rental_fee,
                    deposit=item.deposit,
                    overtime_interval_minutes=self._overtime_interval_minutes,
                    overtime_fee_per_interval=self._overtime_fee,
                    cleaning_fee=self._cleaning_fee,
                    expected_return_at=expected_return_at,
                    payment_status=payment_status.value,
                    authorization_id=authorization.authorization_id,
                    authorized_amount=item.deposit,
                    authorized_at=tx.now(),
                )
            )
            tx.flush()
            return booking.id

        try:
            booking_id = self._repository.run_transaction(write, name="create_rental_booking")
        except Exception as exc:
            logger.warning(
                "rental_booking_aborted",
                extra={
                    "rental_item_id": str(item_id),
                    "box_id": str(pickup_box_id),
                    "error_code": getattr(exc, "code", type(exc).__name__),
                },
            )
            self._compensate(exc, authorization, item.deposit, item.currency)
            raise

        logger.info(
            "rental_booking_created",
            extra={
                "booking_id": str(booking_id),
                "rental_item_id": str(item_id),
                "box_id": str(pickup_box_id),
                "deposit": item.deposit,
                "requires_action": authorization.requires_action,
            },
        )
        self._side_channel.notify(
            actor.id, "RentalBooked",
            params={"itemName": item.name},
            payload={"bookingId": str(booking_id)},
        )
        self._side_channel.log_activity(
            "rental_booking_created",
            {"bookingId": str(booking_id), "itemId": str(item_id), "boxId": str(pickup_box_id)},
            actor.id,
        )
        return BookingCreated(
            booking_id,
            requires_action=authorization.requires_action,
            action_url=authorization.action_url,
        )

    # =========================================================================
    # confirmPickup
    # =========================================================================

    def confirm_pickup(self, actor_id: Any, booking_id: Any) -> TransitionApplied:
        actor = self._require_actor(actor_id, PERM_CONFIRM_PICKUP, "confirmRentalPickup")
        booking: RentalBookingRecord = self._repository.get(
            EntityKind.RENTAL_BOOKING, parse_uuid("booking_id", booking_id),
        )
        self._require_courier_at(actor, booking.pickup_box_id)
        if booking.status == RentalStatus.PICKED_UP:
            return TransitionApplied(booking.id, booking.status.value, changed=False)
        RENTAL_STATE_MACHINE.evaluate(
            booking.status, RentalStatus.PICKED_UP, TransitionScope.ANY, booking.id,
        )
        if booking.payment_status != PaymentStatus.AUTHORIZED:
            raise DepositNotAuthorizedError(booking.id, booking.payment_status.value)
        history = self._history_entry(RentalStatus.PICKED_UP, actor)

        def write(tx: TransactionHandle) -> bool:
            row = tx.require(EntityKind.RENTAL_BOOKING, booking.id)
            if row.status == RentalStatus.PICKED_UP.value:
                return False
            RENTAL_STATE_MACHINE.evaluate(
                row.status, RentalStatus.PICKED_UP, TransitionScope.ANY, row.id,
            )
            if row.payment_status != PaymentStatus.AUTHORIZED.value:
                raise DepositNotAuthorizedError(row.id, row.payment_status)
            row.status = RentalStatus.PICKED_UP.value
            row.picked_up_at = tx.now()
            row.pickup_courier_id = actor.id
            row.append_history(history)
            return True

        changed = self._repository.run_transaction(write, name="confirm_rental_pickup")
        if not changed:
            return TransitionApplied(booking.id, RentalStatus.PICKED_UP.value, changed=False)

        logger.info(
            "rental_picked_up",
            extra={"booking_id": str(booking.id), "courier_id": str(actor.id)},
        )
        self._side_channel.notify(
            booking.customer_id, "RentalPickedUp",
            params={"itemName": booking.rental_item_name},
            payload={"bookingId": str(booking.id)},
        )
        self._side_channel.log_activity(
            "rental_pickup_confirmed", {"bookingId": str(booking.id)}, actor.id,
        )
        return TransitionApplied(booking.id, RentalStatus.PICKED_UP.value)

    # =========================================================================
    # confirmReturn
    # =========================================================================

    def confirm_return(
        self,
        actor_id: Any,
        booking_id: Any,
        return_box_id: Any,
        condition: str,
        notes: str | None = None,
        photo_url: str | None = None,
    ) -> TransitionApplied:
        """
        Record a return and enqueue deposit settlement.

        The unit goes back into stock at the return box in the same
        transaction.  A failed publish leaves the booking flagged but still
        reports success: the return itself is committed.
        """
        actor = self._require_actor(actor_id, PERM_CONFIRM_RETURN, "confirmRentalReturn")
        booking_id = parse_uuid("booking_id", booking_id)
        return_box_id = parse_uuid("return_box_id", return_box_id)
        try:
            returned_condition = ReturnCondition(condition)
        except ValueError:
            raise InvalidArgumentError("condition", f"unknown return condition {condition!r}") from None

        booking, box = self._gather(
            lambda: self._repository.get(EntityKind.RENTAL_BOOKING, booking_id),
            lambda: self._repository.get(EntityKind.BOX, return_box_id),
        )
        if not box.is_active:
            raise BoxInactiveError(box.id)
        self._require_courier_at(actor, return_box_id)
        if booking.returned_at is not None or booking.status in _RETURNED_STATUSES:
            return TransitionApplied(booking.id, booking.status.value, changed=False)
        RENTAL_STATE_MACHINE.evaluate(
            booking.status, RentalStatus.RETURNED_PENDING_INSPECTION, TransitionScope.ANY, booking.id,
        )
        history = self._history_entry(
            RentalStatus.RETURNED_PENDING_INSPECTION, actor, f"condition={returned_condition.value}",
        )

        def write(tx: TransactionHandle) -> bool:
            row = tx.require(EntityKind.RENTAL_BOOKING, booking_id)
            if row.returned_at is not None:
                return False
            RENTAL_STATE_MACHINE.evaluate(
                row.status, RentalStatus.RETURNED_PENDING_INSPECTION, TransitionScope.ANY, row.id,
            )
            row.status = RentalStatus.RETURNED_PENDING_INSPECTION.value
            row.return_box_id = return_box_id
            row.returned_at = tx.now()
            row.return_courier_id = actor.id
            row.returned_condition = returned_condition.value
            row.return_notes = notes
            row.return_photo_url = photo_url
            row.deposit_ledger = ProcessingLedger.pending()
            row.append_history(history)
            tx.restore_stock(return_box_id, row.rental_item_id, 1, StockKind.RENTAL_ITEM)
            return True

        changed = self._repository.run_transaction(write, name="confirm_rental_return")
        if not changed:
            return TransitionApplied(booking.id, RentalStatus.RETURNED_PENDING_INSPECTION.value, changed=False)

        logger.info(
            "rental_returned",
            extra={
                "booking_id": str(booking.id),
                "return_box_id": str(return_box_id),
                "condition": returned_condition.value,
            },
        )
        self._publish_or_flag(self._deposit_topic, {"bookingId": str(booking.id)}, booking.id)
        self._side_channel.notify(
            booking.customer_id, "RentalReturned",
            params={"itemName": booking.rental_item_name},
            payload={"bookingId": str(booking.id), "condition": returned_condition.value},
        )
        self._side_channel.log_activity(
            "rental_return_confirmed",
            {"bookingId": str(booking.id), "condition": returned_condition.value, "notes": notes},
            actor.id,
        )
        return TransitionApplied(booking.id, RentalStatus.RETURNED_PENDING_INSPECTION.value)

    # =========================================================================
    # cancelRentalBooking
    # =========================================================================

    def cancel_rental_booking(
        self,
        actor_id: Any,
        booking_id: Any,
        reason: str | None = None,
    ) -> TransitionApplied:
        """
        Cancel a booking before pickup.

        Voids the deposit hold, then cancels and puts the unit back at the
        pickup box in one transaction.  A failed void is recorded on the
        booking as ``void_failed`` with a review item.
        """
        actor = self._authenticate(actor_id, "cancelRentalBooking")
        booking: RentalBookingRecord = self._repository.get(
            EntityKind.RENTAL_BOOKING, parse_uuid("booking_id", booking_id),
        )
        if booking.customer_id == actor.id and self._has_permission(actor, PERM_CANCEL_OWN):
            pass
        elif not self._has_permission(actor, PERM_CANCEL_ANY):
            raise NotOwnerOrAdminError(actor.id, PERM_CANCEL_ANY)

        scope = scope_for(actor.role)
        if RENTAL_STATE_MACHINE.evaluate(
            booking.status, RentalStatus.CANCELLED, scope, booking.id,
        ) is TransitionDecision.NOOP:
            return TransitionApplied(booking.id, booking.status.value, changed=False)

        payment_status: PaymentStatus | None = None
        processing_error: str | None = None
        if booking.authorization_id and booking.payment_status in (
            PaymentStatus.AUTHORIZED, PaymentStatus.ACTION_REQUIRED,
        ):
            payment_status, processing_error = self._void_deposit(booking, "cancellation")
        history = self._history_entry(RentalStatus.CANCELLED, actor, reason)

        def write(tx: TransactionHandle) -> bool:
            row = tx.require(EntityKind.RENTAL_BOOKING, booking.id)
            if RENTAL_STATE_MACHINE.evaluate(
                row.status, RentalStatus.CANCELLED, scope, row.id,
            ) is TransitionDecision.NOOP:
                return False
            row.status = RentalStatus.CANCELLED.value
            row.cancellation_reason = reason
            row.append_history(history)
            if payment_status is not None:
                row.payment_status = payment_status.value
            if processing_error:
                row.processing_error = processing_error
            tx.restore_stock(row.pickup_box_id, row.rental_item_id, 1, StockKind.RENTAL_ITEM)
            return True

        try:
            changed = self._repository.run_transaction(write, name="cancel_rental_booking")
        except Exception as exc:
            if payment_status == PaymentStatus.VOIDED:
                self._compensator.flag(
                    ReviewKind.DATA_ERROR,
                    "Deposit voided but booking cancellation was not recorded",
                    entity_type=self.entity_kind.value,
                    entity_id=booking.id,
                    authorization_id=booking.authorization_id,
                    amount=booking.authorized_amount,
                    currency=booking.currency,
                    detail={"error": getattr(exc, "code", type(exc).__name__)},
                )
            raise

        if not changed:
            return TransitionApplied(booking.id, RentalStatus.CANCELLED.value, changed=False)

        logger.info(
            "rental_booking_cancelled",
            extra={
                "booking_id": str(booking.id),
                "payment_status": payment_status.value if payment_status else None,
            },
        )
        if booking.customer_id != actor.id:
            self._side_channel.notify(
                booking.customer_id, "RentalCancelled",
                params={"itemName": booking.rental_item_name},
                payload={"bookingId": str(booking.id), "reason": reason},
            )
        self._side_channel.log_activity(
            "rental_booking_cancelled",
            {"bookingId": str(booking.id), "reason": reason},
            actor.id,
        )
        return TransitionApplied(booking.id, RentalStatus.CANCELLED.value)

    def _void_deposit(
        self,
        booking: RentalBookingRecord,
        context: str,
    ) -> tuple[PaymentStatus, str | None]:
        """Void the deposit hold; returns the payment status and error to record."""
        result = self._gateway.void(booking.authorization_id)
        if result.success:
            return PaymentStatus.VOIDED, None
        self._compensator.flag(
            ReviewKind.VOID_FAILED,
            f"Deposit void on {context} failed for booking {booking.id}",
            entity_type=self.entity_kind.value,
            entity_id=booking.id,
            authorization_id=booking.authorization_id,
            amount=booking.authorized_amount,
            currency=booking.currency,
            detail={"gateway_error": result.error_code, "status_unknown": result.status_unknown},
        )
        return PaymentStatus.VOID_FAILED, f"void failed: {result.error_code}"

    # =========================================================================
    # Overdue sweep
    # =========================================================================

    def flag_overdue_rentals(self, as_of: datetime | None = None) -> list[UUID]:
        """Move picked-up bookings past their expected return to RETURN_OVERDUE."""
        as_of = as_of or self.clock.now()
        flagged: list[UUID] = []
        for booking_id in self._repository.find_overdue_rental_ids(as_of):
            history = self._history_entry(RentalStatus.RETURN_OVERDUE, None, "expected return passed")

            def write(tx: TransactionHandle, booking_id: UUID = booking_id) -> UUID | None:
                row = tx.require(EntityKind.RENTAL_BOOKING, booking_id)
                if row.status != RentalStatus.PICKED_UP.value:
                    return None
                if row.expected_return_at is None or row.expected_return_at >= as_of:
                    return None
                RENTAL_STATE_MACHINE.evaluate(
                    row.status, RentalStatus.RETURN_OVERDUE, TransitionScope.SYSTEM, row.id,
                )
                row.status = RentalStatus.RETURN_OVERDUE.value
                row.append_history(history)
                return row.customer_id

            customer_id = self._repository.run_transaction(write, name="flag_overdue_rental")
            if customer_id is None:
                continue
            flagged.append(booking_id)
            self._side_channel.notify(
                customer_id, "RentalOverdue",
                payload={"bookingId": str(booking_id)},
            )
        if flagged:
            logger.info("rentals_flagged_overdue", extra={"count": len(flagged)})
        return flagged

    # =========================================================================
    # Stale action-required sweep
    # =========================================================================

    def release_stale_action_required(self, as_of: datetime | None = None) -> list[UUID]:
        """
        Cancel pending-pickup bookings whose deposit hold still waits on a
        customer step after ``action_required_ttl_minutes``.

        Each booking has its hold voided and its unit put back at the
        pickup box.  A failed void leaves the booking cancelled with
        ``void_failed`` and a review item, as a manual cancellation does.
        """
        as_of = as_of or self.clock.now()
        cutoff = as_of - self._action_required_ttl
        released: list[UUID] = []
        for booking_id in self._repository.find_stale_action_required_booking_ids(cutoff):
            booking: RentalBookingRecord = self._repository.get(EntityKind.RENTAL_BOOKING, booking_id)
            if (
                booking.status != RentalStatus.PENDING_PICKUP
                or booking.payment_status != PaymentStatus.ACTION_REQUIRED
            ):
                continue
            payment_status, processing_error = self._void_deposit(booking, "customer action not completed")
            history = self._history_entry(RentalStatus.CANCELLED, None, "customer action not completed")

            def write(tx: TransactionHandle, booking_id: UUID = booking_id) -> bool:
                row = tx.require(EntityKind.RENTAL_BOOKING, booking_id)
                if (
                    row.status != RentalStatus.PENDING_PICKUP.value
                    or row.payment_status != PaymentStatus.ACTION_REQUIRED.value
                ):
                    return False
                RENTAL_STATE_MACHINE.evaluate(
                    row.status, RentalStatus.CANCELLED, TransitionScope.SYSTEM, row.id,
                )
                row.status = RentalStatus.CANCELLED.value
                row.cancellation_reason = "customer action not completed"
                row.append_history(history)
                row.payment_status = payment_status.value
                if processing_error:
                    row.processing_error = processing_error
                tx.restore_stock(row.pickup_box_id, row.rental_item_id, 1, StockKind.RENTAL_ITEM)
                return True

            if not self._repository.run_transaction(write, name="release_stale_action_required"):
                continue
            released.append(booking_id)
            self._side_channel.notify(
                booking.customer_id, "RentalCancelled",
                params={"itemName": booking.rental_item_name},
                payload={"bookingId": str(booking_id), "reason": "customer action not completed"},
            )
        if released:
            logger.info("stale_action_required_released", extra={"count": len(released)})
        return released
