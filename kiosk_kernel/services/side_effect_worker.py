"""
SideEffectWorker -- idempotent consumer of deferred lifecycle work.

Contract:
    Pulls ``{orderId}`` messages from the order-cancellation topic and
    ``{bookingId}`` messages from the rental-deposit topic, performs the
    work once per entity, and acknowledges.  Transient failures are nacked
    for redelivery; everything else is acknowledged.

Architecture: kiosk_kernel/services.  Uses EntityRepository for state,
    PaymentGateway for deposit settlement and PaymentCompensator for
    review items.  Loop management follows the in-process scheduler shape:
    ``run()`` in the caller's thread, or ``start()`` / ``stop()`` for a
    background thread.

Invariants enforced:
    - Exactly-once effect: the entity's ProcessingLedger gates every write.
      A DONE or FAILED ledger makes a message a no-op.
    - The deposit is claimed (ledger IN_PROGRESS, versioned write) before
      ``finalize`` is called.  A redelivered message that finds the claim
      never calls the gateway again; it hands the booking to an operator.
    - Malformed bodies are dropped, never retried.
    - Unrecoverable payment or data errors move the booking to
      REQUIRES_MANUAL_REVIEW with a review item; state is never dropped.
"""

from __future__ import annotations

import threading
from datetime import timedelta
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy.exc import DBAPIError

from kiosk_kernel.domain.dtos import RentalBookingRecord, StatusHistoryEntry
from kiosk_kernel.domain.fees import RentalCharge, calculate_rental_charge
from kiosk_kernel.domain.state_machine import TransitionScope
from kiosk_kernel.domain.values import LedgerPhase, PaymentStatus, ProcessingLedger
from kiosk_kernel.domain.workflows import (
    OrderStatus,
    RENTAL_STATE_MACHINE,
    RentalStatus,
)
from kiosk_kernel.exceptions import (
    EntityNotFoundError,
    TotalsCalculationError,
    TransactionConflictError,
)
from kiosk_kernel.logging_config import LogContext, get_logger
from kiosk_kernel.models.manual_review import ReviewKind
from kiosk_kernel.services.base import SYSTEM_ACTOR
from kiosk_kernel.services.compensation import PaymentCompensator
from kiosk_kernel.services.message_queue import MessageQueue, QueueMessage
from kiosk_kernel.services.payment_gateway import PaymentGateway, SettlementResult
from kiosk_kernel.services.repository import EntityKind, EntityRepository, TransactionHandle
from kiosk_kernel.services.side_channel import SideChannel

logger = get_logger("services.side_effect_worker")

TRANSIENT_ERRORS = (TransactionConflictError, DBAPIError, ConnectionError, TimeoutError)


class WorkerOutcome(str, Enum):
    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"
    DROPPED_MALFORMED = "dropped_malformed"
    SKIPPED = "skipped"
    FLAGGED = "flagged"
    RETRY = "retry"

    @property
    def acknowledge(self) -> bool:
        return self is not WorkerOutcome.RETRY


class SideEffectWorker:
    """Consumer of the order-cancellation and rental-deposit topics."""

    def __init__(
        self,
        repository: EntityRepository,
        gateway: PaymentGateway,
        queue: MessageQueue,
        side_channel: SideChannel,
        compensator: PaymentCompensator | None = None,
        order_topic: str = "order-cancellation-side-effects",
        deposit_topic: str = "rental-deposit-processing",
        receive_timeout: float = 1.0,
        claim_timeout: timedelta = timedelta(seconds=60),
    ):
        self._repository = repository
        self._gateway = gateway
        self._queue = queue
        self._side_channel = side_channel
        self._compensator = compensator or PaymentCompensator(repository, gateway, side_channel)
        self._order_topic = order_topic
        self._deposit_topic = deposit_topic
        self._receive_timeout = receive_timeout
        self._claim_timeout = claim_timeout
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def topics(self) -> tuple[str, str]:
        return (self._order_topic, self._deposit_topic)

    # -------------------------------------------------------------------------
    # Consumer loop
    # -------------------------------------------------------------------------

    def process_next(self, topic: str, timeout: float | None = None) -> WorkerOutcome | None:
        """Receive, handle and settle one message.  None when the topic is idle."""
        message = self._queue.receive(topic, timeout=timeout)
        if message is None:
            return None
        outcome = self.handle(message)
        if outcome.acknowledge:
            self._queue.ack(message)
        else:
            self._queue.nack(message, requeue=True)
        return outcome

    def run_until_idle(self, max_messages: int | None = None) -> list[WorkerOutcome]:
        """Drain both topics without waiting; returns the outcomes in order."""
        outcomes: list[WorkerOutcome] = []
        while max_messages is None or len(outcomes) < max_messages:
            handled = False
            for topic in self.topics:
                outcome = self.process_next(topic, timeout=0)
                if outcome is not None:
                    outcomes.append(outcome)
                    handled = True
            if not handled:
                break
        return outcomes

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Consume both topics until ``stop_event`` is set."""
        stop_event = stop_event or self._stop_event
        logger.info("side_effect_worker_started", extra={"topics": list(self.topics)})
        while not stop_event.is_set():
            for topic in self.topics:
                if stop_event.is_set():
                    break
                try:
                    self.process_next(topic, timeout=self._receive_timeout)
                except Exception:
                    logger.exception("side_effect_worker_receive_failed", extra={"topic": topic})
                    stop_event.wait(timeout=self._receive_timeout)
        logger.info("side_effect_worker_stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run, name="side-effect-worker", daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float = 30.0) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def handle(self, message: QueueMessage) -> WorkerOutcome:
        """
        Process one delivery.

        Never raises for message-level problems; the outcome tells the
        caller whether to ack (everything except RETRY) or nack.
        """
        if message.topic == self._order_topic:
            key, kind = "orderId", EntityKind.ORDER
        elif message.topic == self._deposit_topic:
            key, kind = "bookingId", EntityKind.RENTAL_BOOKING
        else:
            logger.error(
                "side_effect_unknown_topic",
                extra={"topic": message.topic, "queue_message_id": message.message_id},
            )
            return WorkerOutcome.DROPPED_MALFORMED

        entity_id = self._entity_id(message, key)
        if entity_id is None:
            return WorkerOutcome.DROPPED_MALFORMED

        with LogContext.bind(message_id=message.message_id, entity_id=entity_id):
            try:
                if kind == EntityKind.ORDER:
                    outcome = self._process_order_cancellation(entity_id)
                else:
                    outcome = self._process_deposit(entity_id, message.delivery_count)
            except TRANSIENT_ERRORS:
                logger.warning(
                    "side_effect_transient_failure",
                    extra={
                        "topic": message.topic,
                        "delivery_count": message.delivery_count,
                    },
                    exc_info=True,
                )
                return WorkerOutcome.RETRY
            except Exception as exc:
                logger.error(
                    "side_effect_failed",
                    extra={"topic": message.topic, "delivery_count": message.delivery_count},
                    exc_info=True,
                )
                try:
                    outcome = self._fail(kind, entity_id, exc)
                except Exception:
                    logger.critical(
                        "side_effect_failure_not_recorded",
                        extra={"topic": message.topic},
                        exc_info=True,
                    )
                    return WorkerOutcome.RETRY

            logger.info(
                "side_effect_handled",
                extra={
                    "topic": message.topic,
                    "outcome": outcome.value,
                    "delivery_count": message.delivery_count,
                },
            )
            return outcome

    def _entity_id(self, message: QueueMessage, key: str) -> UUID | None:
        try:
            payload = message.payload()
        except ValueError:
            payload = None
        value = payload.get(key) if isinstance(payload, dict) else None
        entity_id = None
        if isinstance(value, str):
            try:
                entity_id = UUID(value)
            except ValueError:
                entity_id = None
        if entity_id is None:
            logger.error(
                "side_effect_message_malformed",
                extra={
                    "topic": message.topic,
                    "queue_message_id": message.message_id,
                    "body": message.body[:200],
                },
            )
        return entity_id

    def _fail(self, kind: EntityKind, entity_id: UUID, exc: Exception) -> WorkerOutcome:
        """Persist an unexpected failure so it is acknowledged, not looped."""
        error = f"{getattr(exc, 'code', type(exc).__name__)}: {exc}"[:500]
        if kind == EntityKind.RENTAL_BOOKING:
            return self._move_to_review(
                entity_id,
                ReviewKind.SIDE_EFFECT_FAILED,
                f"Deposit processing failed: {error}",
                expected_phase=None,
            )

        def mark(tx: TransactionHandle) -> None:
            row = tx.get(EntityKind.ORDER, entity_id)
            if row is not None and not row.cancellation.is_final:
                row.cancellation = ProcessingLedger(LedgerPhase.FAILED, tx.now())
                row.processing_error = error

        try:
            self._repository.run_transaction(mark, name="mark_cancellation_failed")
        except Exception:
            logger.critical(
                "processing_error_write_failed",
                extra={"order_id": str(entity_id)},
                exc_info=True,
            )
        self._compensator.flag(
            ReviewKind.SIDE_EFFECT_FAILED,
            f"Cancellation side effects failed: {error}",
            entity_type=EntityKind.ORDER.value,
            entity_id=entity_id,
        )
        return WorkerOutcome.FLAGGED

    # -------------------------------------------------------------------------
    # Order cancellation
    # -------------------------------------------------------------------------

    def _process_order_cancellation(self, order_id: UUID) -> WorkerOutcome:
        """Restore the order's stock and loyalty units, once."""
        try:
            order = self._repository.get(EntityKind.ORDER, order_id)
        except EntityNotFoundError:
            logger.error("cancellation_order_not_found", extra={"order_id": str(order_id)})
            return WorkerOutcome.SKIPPED
        if order.cancellation.is_final:
            return WorkerOutcome.ALREADY_PROCESSED
        if order.status != OrderStatus.CANCELLED or order.cancellation.phase != LedgerPhase.PENDING:
            logger.warning(
                "cancellation_order_not_pending",
                extra={
                    "order_id": str(order_id),
                    "status": order.status.value,
                    "ledger_phase": order.cancellation.phase.value,
                },
            )
            return WorkerOutcome.SKIPPED

        def restore(tx: TransactionHandle) -> WorkerOutcome:
            row = tx.require(EntityKind.ORDER, order_id)
            if row.cancellation.phase != LedgerPhase.PENDING:
                return WorkerOutcome.ALREADY_PROCESSED
            if tx.get(EntityKind.BOX, row.box_id) is None:
                row.cancellation = ProcessingLedger(LedgerPhase.FAILED, tx.now())
                row.processing_error = f"box {row.box_id} not found for inventory restore"
                return WorkerOutcome.FLAGGED
            for line in row.line_items():
                if line.quantity > 0:
                    tx.restore_stock(row.box_id, UUID(str(line.product_id)), line.quantity)
            tx.credit_loyalty(row.customer_id, row.loyalty_discount)
            row.cancellation = ProcessingLedger(LedgerPhase.DONE, tx.now())
            return WorkerOutcome.PROCESSED

        outcome = self._repository.run_transaction(restore, name="order_cancellation_side_effects")
        if outcome is WorkerOutcome.FLAGGED:
            self._compensator.flag(
                ReviewKind.SIDE_EFFECT_FAILED,
                f"Box {order.box_id} missing; stock of cancelled order not restored",
                entity_type=EntityKind.ORDER.value,
                entity_id=order_id,
                detail={"box_id": str(order.box_id)},
            )
        elif outcome is WorkerOutcome.PROCESSED:
            logger.info(
                "order_cancellation_processed",
                extra={
                    "order_id": str(order_id),
                    "box_id": str(order.box_id),
                    "units_restored": sum(line.quantity for line in order.items),
                    "loyalty_credited": order.loyalty_discount,
                },
            )
            self._side_channel.log_activity(
                "order_cancellation_processed", {"orderId": str(order_id)}, None,
            )
        return outcome

    # -------------------------------------------------------------------------
    # Rental deposit
    # -------------------------------------------------------------------------

    def _process_deposit(self, booking_id: UUID, delivery_count: int) -> WorkerOutcome:
        """
        Settle the deposit of a returned booking.

        Order of steps:
            1. Idempotency: a final ledger acks; a claimed ledger on
               redelivery goes to review without a gateway call.
            2. Validation of return data and the deposit authorization.
            3. Charge calculation.  Damaged returns stop here for review.
            4. Claim, finalize, record.
        """
        try:
            booking: RentalBookingRecord = self._repository.get(EntityKind.RENTAL_BOOKING, booking_id)
        except EntityNotFoundError:
            logger.error("deposit_booking_not_found", extra={"booking_id": str(booking_id)})
            return WorkerOutcome.SKIPPED

        ledger = booking.deposit_ledger
        if ledger.is_final:
            return WorkerOutcome.ALREADY_PROCESSED
        if ledger.phase == LedgerPhase.IN_PROGRESS:
            return self._resolve_claimed(booking, delivery_count)
        if booking.status != RentalStatus.RETURNED_PENDING_INSPECTION or ledger.phase != LedgerPhase.PENDING:
            logger.warning(
                "deposit_booking_not_pending",
                extra={
                    "booking_id": str(booking_id),
                    "status": booking.status.value,
                    "ledger_phase": ledger.phase.value,
                },
            )
            return WorkerOutcome.SKIPPED

        problem = self._settlement_problem(booking)
        if problem is not None:
            return self._move_to_review(booking_id, ReviewKind.DATA_ERROR, problem)

        try:
            charge = calculate_rental_charge(
                base_fee=booking.rental_fee,
                deposit=booking.deposit,
                condition=booking.returned_condition,
                actual_return=booking.returned_at,
                expected_return=booking.expected_return_at,
                overtime_interval=timedelta(minutes=booking.overtime_interval_minutes),
                overtime_fee_per_interval=booking.overtime_fee_per_interval,
                cleaning_fee=booking.cleaning_fee,
            )
        except TotalsCalculationError as exc:
            return self._move_to_review(booking_id, ReviewKind.DATA_ERROR, exc.reason)

        if charge.requires_review:
            logger.warning(
                "rental_returned_damaged",
                extra={
                    "booking_id": str(booking_id),
                    "final_charge": charge.final_charge,
                    "damage_fee": charge.damage_fee,
                },
            )
            return self._move_to_review(
                booking_id,
                ReviewKind.DAMAGED_RETURN,
                "Item returned damaged; deposit held for operator assessment",
                charge=charge,
                severity="high",
            )

        if not self._claim(booking_id):
            return WorkerOutcome.ALREADY_PROCESSED

        result = self._gateway.finalize(
            booking.authorization_id, charge.final_charge, booking.authorized_amount, booking.currency,
        )
        if not result.success:
            if result.status_unknown:
                kind = ReviewKind.SETTLEMENT_OUTCOME_UNKNOWN
            elif charge.final_charge > 0:
                kind = ReviewKind.CAPTURE_FAILED
            else:
                kind = ReviewKind.VOID_FAILED
            return self._move_to_review(
                booking_id,
                kind,
                f"Deposit finalization failed: {result.error_code}",
                expected_phase=LedgerPhase.IN_PROGRESS,
                charge=charge,
                payment_status=(
                    PaymentStatus.CAPTURE_FAILED if charge.final_charge > 0
                    else PaymentStatus.VOID_FAILED
                ),
            )

        try:
            recorded = self._record_settlement(booking_id, charge, result)
        except Exception:
            # The gateway has settled.  The redelivery finds the claim and
            # hands the booking to an operator.
            logger.critical(
                "deposit_settlement_record_failed",
                extra={
                    "booking_id": str(booking_id),
                    "settlement_id": result.settlement_id,
                    "amount_charged": result.amount_charged,
                    "voided": result.voided,
                },
                exc_info=True,
            )
            return WorkerOutcome.RETRY
        if not recorded:
            return WorkerOutcome.ALREADY_PROCESSED

        logger.info(
            "rental_deposit_settled",
            extra={
                "booking_id": str(booking_id),
                "final_charge": charge.final_charge,
                "amount_charged": result.amount_charged,
                "voided": result.voided,
            },
        )
        self._side_channel.notify(
            booking.customer_id,
            "RentalCompleted",
            params={"itemName": booking.rental_item_name, "amount": result.amount_charged},
            payload={"bookingId": str(booking_id)},
        )
        self._side_channel.log_activity(
            "rental_deposit_settled",
            {"bookingId": str(booking_id), "charge": charge.to_dict()},
            None,
        )
        return WorkerOutcome.PROCESSED

    def _settlement_problem(self, booking: RentalBookingRecord) -> str | None:
        if booking.returned_at is None or booking.returned_condition is None:
            return "Missing return data for final calculation"
        if booking.payment_status != PaymentStatus.AUTHORIZED or not booking.authorization_id:
            return f"Deposit not authorized (payment status {booking.payment_status.value})"
        if booking.authorized_amount != booking.deposit:
            return (
                f"Authorized amount {booking.authorized_amount} does not match "
                f"deposit {booking.deposit}"
            )
        return None

    def _resolve_claimed(self, booking: RentalBookingRecord, delivery_count: int) -> WorkerOutcome:
        """A claim exists: either another delivery is settling now, or it died mid-call."""
        claimed_at = booking.deposit_ledger.processed_at
        fresh = (
            claimed_at is not None
            and self._repository.clock.now() - claimed_at < self._claim_timeout
        )
        if delivery_count <= 1 and fresh:
            logger.info(
                "deposit_claimed_elsewhere",
                extra={"booking_id": str(booking.id), "claimed_at": claimed_at},
            )
            return WorkerOutcome.ALREADY_PROCESSED
        return self._move_to_review(
            booking.id,
            ReviewKind.SETTLEMENT_OUTCOME_UNKNOWN,
            "Deposit settlement was started but its outcome was never recorded",
            expected_phase=LedgerPhase.IN_PROGRESS,
        )

    def _claim(self, booking_id: UUID) -> bool:
        def claim(tx: TransactionHandle) -> bool:
            row = tx.require(EntityKind.RENTAL_BOOKING, booking_id)
            if row.deposit_ledger.phase != LedgerPhase.PENDING:
                return False
            if row.status != RentalStatus.RETURNED_PENDING_INSPECTION.value:
                return False
            row.deposit_ledger = ProcessingLedger(LedgerPhase.IN_PROGRESS, tx.now())
            return True

        claimed = self._repository.run_transaction(claim, name="claim_deposit_settlement")
        if claimed:
            logger.info("deposit_settlement_claimed", extra={"booking_id": str(booking_id)})
        return claimed

    def _record_settlement(
        self,
        booking_id: UUID,
        charge: RentalCharge,
        result: SettlementResult,
    ) -> bool:
        entry = _system_history(RentalStatus.COMPLETED, self._repository.clock.now())

        def record(tx: TransactionHandle) -> bool:
            row = tx.require(EntityKind.RENTAL_BOOKING, booking_id)
            if row.deposit_ledger.phase != LedgerPhase.IN_PROGRESS:
                return False
            RENTAL_STATE_MACHINE.evaluate(
                row.status, RentalStatus.COMPLETED, TransitionScope.SYSTEM, row.id,
            )
            now = tx.now()
            row.status = RentalStatus.COMPLETED.value
            row.append_history(entry)
            row.payment_status = (
                PaymentStatus.PAID.value if result.amount_charged > 0
                else PaymentStatus.VOIDED.value
            )
            row.settlement_id = result.settlement_id
            row.amount_charged = result.amount_charged
            row.settled_at = now
            _apply_charge(row, charge)
            row.deposit_ledger = ProcessingLedger(LedgerPhase.DONE, now)
            return True

        return self._repository.run_transaction(record, name="record_deposit_settlement")

    def _move_to_review(
        self,
        booking_id: UUID,
        kind: ReviewKind,
        reason: str,
        *,
        expected_phase: LedgerPhase | None = LedgerPhase.PENDING,
        charge: RentalCharge | None = None,
        payment_status: PaymentStatus | None = None,
        severity: str = "critical",
    ) -> WorkerOutcome:
        """
        Park a booking for an operator: REQUIRES_MANUAL_REVIEW, ledger FAILED,
        review item and alert.

        ``expected_phase`` guards against a concurrent delivery having
        already moved the ledger; None accepts any non-final phase.
        """
        entry = _system_history(RentalStatus.REQUIRES_MANUAL_REVIEW, self._repository.clock.now(), reason)

        def park(tx: TransactionHandle) -> dict[str, Any] | None:
            row = tx.require(EntityKind.RENTAL_BOOKING, booking_id)
            ledger = row.deposit_ledger
            if ledger.is_final:
                return None
            if expected_phase is not None and ledger.phase != expected_phase:
                return None
            if row.status != RentalStatus.REQUIRES_MANUAL_REVIEW.value:
                RENTAL_STATE_MACHINE.evaluate(
                    row.status, RentalStatus.REQUIRES_MANUAL_REVIEW, TransitionScope.SYSTEM, row.id,
                )
                row.status = RentalStatus.REQUIRES_MANUAL_REVIEW.value
                row.append_history(entry)
            row.processing_error = reason
            if payment_status is not None:
                row.payment_status = payment_status.value
            if charge is not None:
                _apply_charge(row, charge)
            row.deposit_ledger = ProcessingLedger(LedgerPhase.FAILED, tx.now())
            return {
                "authorization_id": row.authorization_id,
                "amount": row.authorized_amount,
                "currency": row.currency,
            }

        parked = self._repository.run_transaction(park, name="deposit_to_manual_review")
        if parked is None:
            return WorkerOutcome.ALREADY_PROCESSED

        detail: dict[str, Any] = {}
        if charge is not None:
            detail["charge"] = charge.to_dict()
        if payment_status is not None:
            detail["payment_status"] = payment_status.value
        self._compensator.flag(
            kind,
            reason,
            severity=severity,
            entity_type=EntityKind.RENTAL_BOOKING.value,
            entity_id=booking_id,
            detail=detail,
            **parked,
        )
        return WorkerOutcome.FLAGGED


def _system_history(status: RentalStatus, at, reason: str | None = None) -> StatusHistoryEntry:
    return StatusHistoryEntry(
        status=status.value,
        timestamp=at,
        actor_id=SYSTEM_ACTOR,
        role=SYSTEM_ACTOR,
        reason=reason,
    )


def _apply_charge(row: Any, charge: RentalCharge) -> None:
    row.final_charge = charge.final_charge
    row.overtime_fee_charged = charge.overtime_fee or None
    row.cleaning_fee_charged = charge.cleaning_fee or None
    row.damage_fee_charged = charge.damage_fee or None
