"""
SideEffectWorker: order cancellation side effects and rental deposit
settlement, including redelivery and malformed input.
"""

import time
from datetime import timedelta
from uuid import uuid4

import hypothesis
from hypothesis import strategies as st
from sqlalchemy import delete

from kiosk_kernel.domain.values import LedgerPhase, PaymentStatus, ProcessingLedger, ReturnCondition
from kiosk_kernel.domain.workflows import RentalStatus
from kiosk_kernel.exceptions import TransactionConflictError
from kiosk_kernel.models import Box, BoxStock, StockKind
from kiosk_kernel.models.manual_review import ReviewKind
from kiosk_kernel.services.message_queue import QueueMessage
from kiosk_kernel.services.payment_gateway import Fault
from kiosk_kernel.services.repository import EntityKind
from kiosk_kernel.services.side_effect_worker import WorkerOutcome


def _cancelled_order(order_service, world, loyalty_units=300):
    order_id = order_service.create_order(
        world.customer_id,
        world.box_id,
        [
            {"product_id": str(world.latte_id), "quantity": 2},
            {"product_id": str(world.bagel_id), "quantity": 1},
        ],
        "credit_card_app",
        loyalty_units=loyalty_units,
    ).order_id
    order_service.cancel_order(world.customer_id, order_id)
    return order_id


def _returned(rental_service, world, clock, condition="ok", late=timedelta(0), item_id=None):
    booking_id = rental_service.create_rental_booking(
        world.customer_id,
        item_id or world.item_id,
        world.box_id,
        expected_return_at=clock.now() + timedelta(hours=2),
    ).booking_id
    rental_service.confirm_pickup(world.courier_id, booking_id)
    clock.advance(timedelta(hours=2) + late)
    rental_service.confirm_return(world.courier_id, booking_id, world.box_id, condition)
    return booking_id


def _set_deposit_ledger(repository, booking_id, phase):
    def write(tx):
        row = tx.require(EntityKind.RENTAL_BOOKING, booking_id)
        row.deposit_ledger = ProcessingLedger(phase, tx.now())

    repository.run_transaction(write, name="test_set_ledger")


class TestOrderCancellation:

    def test_stock_and_loyalty_are_restored_once(self, order_service, worker, world, factory, queue):
        order_id = _cancelled_order(order_service, world)
        assert factory.available(world.box_id, world.latte_id) == 8
        assert factory.loyalty(world.customer_id) == 700

        assert worker.run_until_idle() == [WorkerOutcome.PROCESSED]

        assert factory.available(world.box_id, world.latte_id) == 10
        assert factory.available(world.box_id, world.bagel_id) == 10
        assert factory.loyalty(world.customer_id) == 1000
        order = factory.order(order_id)
        assert order.cancellation.phase == LedgerPhase.DONE
        assert order.cancellation.processed_at is not None
        assert queue.in_flight_count() == 0

    def test_duplicate_message_is_acknowledged_without_effect(
        self, order_service, worker, world, factory, queue, settings,
    ):
        order_id = _cancelled_order(order_service, world)
        worker.run_until_idle()

        queue.publish(settings.queue.order_cancellation_topic, {"orderId": str(order_id)})

        assert worker.run_until_idle() == [WorkerOutcome.ALREADY_PROCESSED]
        assert factory.available(world.box_id, world.latte_id) == 10
        assert factory.loyalty(world.customer_id) == 1000

    def test_missing_box_is_flagged(self, order_service, worker, world, factory, repository):
        order_id = _cancelled_order(order_service, world)

        def drop_box(tx):
            tx.session.execute(delete(BoxStock).where(BoxStock.box_id == world.box_id))
            tx.session.execute(delete(Box).where(Box.id == world.box_id))

        repository.run_transaction(drop_box, name="test_drop_box")

        assert worker.run_until_idle() == [WorkerOutcome.FLAGGED]
        order = factory.order(order_id)
        assert order.cancellation.phase == LedgerPhase.FAILED
        assert "not found" in order.processing_error
        assert factory.loyalty(world.customer_id) == 700
        items = repository.list_review_items(kind=ReviewKind.SIDE_EFFECT_FAILED, entity_id=order_id)
        assert len(items) == 1

    def test_unknown_order_is_skipped(self, worker, queue, settings):
        queue.publish(settings.queue.order_cancellation_topic, {"orderId": str(uuid4())})
        assert worker.run_until_idle() == [WorkerOutcome.SKIPPED]


class TestDepositSettlement:

    def test_on_time_return_charges_the_rental_fee(
        self, rental_service, worker, world, factory, clock, simulated_gateway, notifier,
    ):
        booking_id = _returned(rental_service, world, clock)

        assert worker.run_until_idle() == [WorkerOutcome.PROCESSED]

        booking = factory.booking(booking_id)
        assert booking.status == RentalStatus.COMPLETED
        assert booking.payment_status == PaymentStatus.PAID
        assert booking.amount_charged == 2000
        assert booking.final_charge == 2000
        assert booking.overtime_fee_charged is None
        assert booking.deposit_ledger.phase == LedgerPhase.DONE
        hold = simulated_gateway.hold(booking.authorization_id)
        assert hold.state == "captured"
        assert hold.captured == 2000
        assert "RentalCompleted" in notifier.types_for(world.customer_id)

    def test_late_return_adds_overtime(self, rental_service, worker, world, factory, clock):
        booking_id = _returned(rental_service, world, clock, late=timedelta(hours=1, minutes=10))

        worker.run_until_idle()

        booking = factory.booking(booking_id)
        assert booking.overtime_fee_charged == 1000
        assert booking.amount_charged == 3000

    def test_dirty_return_adds_cleaning_fee(self, rental_service, worker, world, factory, clock):
        booking_id = _returned(rental_service, world, clock, condition="dirty")

        worker.run_until_idle()

        booking = factory.booking(booking_id)
        assert booking.returned_condition == ReturnCondition.DIRTY
        assert booking.cleaning_fee_charged == 1000
        assert booking.amount_charged == 3000

    def test_free_rental_releases_the_deposit(
        self, rental_service, worker, world, factory, clock, simulated_gateway,
    ):
        free = factory.rental_item("Umbrella", fee=0, deposit=5000)
        factory.stock(world.box_id, free, 1, StockKind.RENTAL_ITEM)
        booking_id = _returned(rental_service, world, clock, item_id=free)

        assert worker.run_until_idle() == [WorkerOutcome.PROCESSED]

        booking = factory.booking(booking_id)
        assert booking.status == RentalStatus.COMPLETED
        assert booking.payment_status == PaymentStatus.VOIDED
        assert booking.amount_charged == 0
        assert simulated_gateway.hold(booking.authorization_id).state == "voided"

    def test_damaged_return_goes_to_review(
        self, rental_service, worker, world, factory, clock, repository, simulated_gateway, alerts,
    ):
        booking_id = _returned(rental_service, world, clock, condition="damaged")

        assert worker.run_until_idle() == [WorkerOutcome.FLAGGED]

        booking = factory.booking(booking_id)
        assert booking.status == RentalStatus.REQUIRES_MANUAL_REVIEW
        assert booking.deposit_ledger.phase == LedgerPhase.FAILED
        assert booking.final_charge == 10000
        assert booking.damage_fee_charged == 8000
        assert simulated_gateway.calls["finalize"] == 0
        assert simulated_gateway.hold(booking.authorization_id).state == "authorized"
        items = repository.list_review_items(kind=ReviewKind.DAMAGED_RETURN, entity_id=booking_id)
        assert len(items) == 1
        assert items[0].authorization_id == booking.authorization_id
        assert ("high", "damaged_return") in [(a[0], a[1]) for a in alerts.alerts]

    def test_declined_capture_goes_to_review(
        self, rental_service, worker, world, factory, clock, repository, simulated_gateway,
    ):
        booking_id = _returned(rental_service, world, clock)
        simulated_gateway.inject("finalize", Fault.DECLINE)

        assert worker.run_until_idle() == [WorkerOutcome.FLAGGED]

        booking = factory.booking(booking_id)
        assert booking.status == RentalStatus.REQUIRES_MANUAL_REVIEW
        assert booking.payment_status == PaymentStatus.CAPTURE_FAILED
        assert "capture_declined" in booking.processing_error
        assert repository.list_review_items(kind=ReviewKind.CAPTURE_FAILED, entity_id=booking_id)

    def test_capture_timeout_is_an_unknown_outcome(
        self, rental_service, worker, world, factory, clock, repository, simulated_gateway,
    ):
        booking_id = _returned(rental_service, world, clock)
        simulated_gateway.inject("finalize", Fault.HANG, delay=1.0)

        assert worker.run_until_idle() == [WorkerOutcome.FLAGGED]

        booking = factory.booking(booking_id)
        assert booking.status == RentalStatus.REQUIRES_MANUAL_REVIEW
        assert repository.list_review_items(
            kind=ReviewKind.SETTLEMENT_OUTCOME_UNKNOWN, entity_id=booking_id,
        )

    def test_duplicate_message_never_finalizes_twice(
        self, rental_service, worker, world, clock, queue, settings, simulated_gateway,
    ):
        booking_id = _returned(rental_service, world, clock)
        queue.publish(settings.queue.rental_deposit_topic, {"bookingId": str(booking_id)})

        assert worker.run_until_idle() == [WorkerOutcome.PROCESSED, WorkerOutcome.ALREADY_PROCESSED]
        assert simulated_gateway.calls["finalize"] == 1

    def test_redelivered_claim_is_handed_to_an_operator(
        self, rental_service, worker, world, factory, clock, queue, settings, repository,
        simulated_gateway,
    ):
        booking_id = _returned(rental_service, world, clock)
        # A consumer claims the deposit and dies before recording the outcome
        assert queue.receive(settings.queue.rental_deposit_topic, timeout=0) is not None
        _set_deposit_ledger(repository, booking_id, LedgerPhase.IN_PROGRESS)
        assert queue.requeue_in_flight() == 1

        assert worker.process_next(settings.queue.rental_deposit_topic, timeout=0) is WorkerOutcome.FLAGGED

        assert simulated_gateway.calls["finalize"] == 0
        booking = factory.booking(booking_id)
        assert booking.status == RentalStatus.REQUIRES_MANUAL_REVIEW
        assert repository.list_review_items(
            kind=ReviewKind.SETTLEMENT_OUTCOME_UNKNOWN, entity_id=booking_id,
        )

    def test_fresh_claim_on_first_delivery_is_left_alone(
        self, rental_service, worker, world, factory, clock, repository, simulated_gateway,
    ):
        booking_id = _returned(rental_service, world, clock)
        _set_deposit_ledger(repository, booking_id, LedgerPhase.IN_PROGRESS)

        assert worker.run_until_idle() == [WorkerOutcome.ALREADY_PROCESSED]
        assert factory.booking(booking_id).status == RentalStatus.RETURNED_PENDING_INSPECTION
        assert simulated_gateway.calls["finalize"] == 0

    def test_booking_not_yet_returned_is_skipped(self, rental_service, worker, world, queue, settings):
        booking_id = rental_service.create_rental_booking(
            world.customer_id, world.item_id, world.box_id,
        ).booking_id
        queue.publish(settings.queue.rental_deposit_topic, {"bookingId": str(booking_id)})

        assert worker.run_until_idle() == [WorkerOutcome.SKIPPED]


class TestDelivery:

    def test_malformed_bodies_are_dropped(self, worker, queue, settings):
        topic = settings.queue.order_cancellation_topic
        queue.publish_raw(topic, "not json")
        queue.publish_raw(topic, '{"orderId": 5}')
        queue.publish(topic, {"orderId": "not-a-uuid"})
        queue.publish(topic, {"bookingId": "00000000-0000-0000-0000-000000000001"})

        assert worker.run_until_idle() == [WorkerOutcome.DROPPED_MALFORMED] * 4
        assert queue.in_flight_count() == 0
        assert queue.dead_letters(topic) == []

    def test_unknown_topic_is_dropped(self, worker):
        message = QueueMessage(message_id="m-1", topic="billing", body='{"orderId": "x"}')
        assert worker.handle(message) is WorkerOutcome.DROPPED_MALFORMED

    def test_transient_failure_is_redelivered(
        self, order_service, worker, world, factory, queue, settings, repository, monkeypatch,
    ):
        order_id = _cancelled_order(order_service, world)
        real_get = repository.get
        failures = []

        def flaky_get(kind, entity_id):
            if not failures:
                failures.append(entity_id)
                raise TransactionConflictError("read_order", 1)
            return real_get(kind, entity_id)

        monkeypatch.setattr(repository, "get", flaky_get)
        topic = settings.queue.order_cancellation_topic

        assert worker.process_next(topic, timeout=0) is WorkerOutcome.RETRY
        assert queue.pending_count(topic) == 1
        assert worker.process_next(topic, timeout=0) is WorkerOutcome.PROCESSED
        assert factory.order(order_id).cancellation.phase == LedgerPhase.DONE

    def test_persistent_transient_failure_is_dead_lettered(
        self, order_service, worker, world, queue, settings, repository, monkeypatch,
    ):
        _cancelled_order(order_service, world)

        def always_conflict(kind, entity_id):
            raise TransactionConflictError("read_order", 1)

        monkeypatch.setattr(repository, "get", always_conflict)
        topic = settings.queue.order_cancellation_topic

        assert worker.run_until_idle() == [WorkerOutcome.RETRY] * 3
        assert len(queue.dead_letters(topic)) == 1
        assert queue.dead_letters(topic)[0].delivery_count == 3

    def test_background_thread_drains_the_queue(self, order_service, worker, world, factory):
        order_id = _cancelled_order(order_service, world)

        worker.start()
        try:
            assert worker.is_running
            deadline = time.monotonic() + 5
            while factory.order(order_id).cancellation.phase != LedgerPhase.DONE:
                assert time.monotonic() < deadline, "worker did not process the message"
                time.sleep(0.01)
        finally:
            worker.stop(timeout=5)

        assert not worker.is_running


class TestRedeliveryProperty:

    @hypothesis.given(duplicates=st.integers(min_value=0, max_value=4))
    @hypothesis.settings(
        max_examples=10,
        deadline=None,
        suppress_health_check=[hypothesis.HealthCheck.function_scoped_fixture],
    )
    def test_deposit_is_finalized_exactly_once(
        self, rental_service, worker, world, factory, clock, queue, settings, simulated_gateway,
        duplicates,
    ):
        finalized_before = simulated_gateway.calls["finalize"]
        booking_id = _returned(rental_service, world, clock)
        for _ in range(duplicates):
            queue.publish(settings.queue.rental_deposit_topic, {"bookingId": str(booking_id)})

        outcomes = worker.run_until_idle()

        assert len(outcomes) == duplicates + 1
        assert outcomes.count(WorkerOutcome.PROCESSED) == 1
        assert simulated_gateway.calls["finalize"] - finalized_before == 1
        assert factory.booking(booking_id).status == RentalStatus.COMPLETED
