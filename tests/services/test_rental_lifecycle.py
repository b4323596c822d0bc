"""
RentalLifecycleService: booking, pickup, return, cancellation, the overdue
sweep and the release of bookings stuck on a customer payment step.
"""

from datetime import timedelta

import pytest

from kiosk_kernel.domain.values import LedgerPhase, PaymentStatus, ReturnCondition
from kiosk_kernel.domain.workflows import RentalStatus
from kiosk_kernel.exceptions import (
    CourierMismatchError,
    DepositNotAuthorizedError,
    DepositNotConfiguredError,
    InvalidArgumentError,
    InvalidStatusTransitionError,
    InventoryUnavailableError,
    NotOwnerOrAdminError,
    PaymentDeclinedError,
    PermissionDeniedError,
    RentalItemInactiveError,
)
from kiosk_kernel.models import StockKind
from kiosk_kernel.models.manual_review import ReviewKind
from kiosk_kernel.services.payment_gateway import Fault


def _book(rental_service, world, **kwargs):
    return rental_service.create_rental_booking(
        kwargs.pop("actor_id", world.customer_id), world.item_id, world.box_id, **kwargs,
    )


def _picked_up(rental_service, world, clock, hours=2):
    booking_id = _book(
        rental_service, world, expected_return_at=clock.now() + timedelta(hours=hours),
    ).booking_id
    rental_service.confirm_pickup(world.courier_id, booking_id)
    return booking_id


class TestCreateRentalBooking:

    def test_booking_authorizes_deposit_and_takes_a_unit(
        self, rental_service, world, factory, clock, simulated_gateway, notifier,
    ):
        result = _book(rental_service, world)

        assert result.requires_action is False
        booking = factory.booking(result.booking_id)
        assert booking.status == RentalStatus.PENDING_PICKUP
        assert booking.payment_status == PaymentStatus.AUTHORIZED
        assert booking.deposit == 10000
        assert booking.authorized_amount == 10000
        assert booking.rental_fee == 2000
        assert booking.overtime_interval_minutes == 60
        assert booking.overtime_fee_per_interval == 500
        assert booking.cleaning_fee == 1000
        assert booking.expected_return_at == clock.now() + timedelta(hours=24)
        assert booking.deposit_ledger.phase == LedgerPhase.NOT_REQUIRED
        assert simulated_gateway.hold(booking.authorization_id).amount == 10000
        assert factory.available(world.box_id, world.item_id) == 1
        assert "RentalBooked" in notifier.types_for(world.customer_id)

    def test_naive_return_time_is_read_as_utc(self, rental_service, world, factory, clock):
        naive = (clock.now() + timedelta(hours=5)).replace(tzinfo=None)

        booking_id = _book(rental_service, world, expected_return_at=naive).booking_id

        assert factory.booking(booking_id).expected_return_at == clock.now() + timedelta(hours=5)

    def test_return_time_must_be_in_the_future(self, rental_service, world, clock):
        with pytest.raises(InvalidArgumentError):
            _book(rental_service, world, expected_return_at=clock.now() - timedelta(minutes=1))

    def test_item_without_deposit(self, rental_service, world, factory):
        free = factory.rental_item("Umbrella", fee=0, deposit=0)
        factory.stock(world.box_id, free, 3, StockKind.RENTAL_ITEM)
        with pytest.raises(DepositNotConfiguredError):
            rental_service.create_rental_booking(world.customer_id, free, world.box_id)

    def test_inactive_item(self, rental_service, world, factory):
        retired = factory.rental_item("Old lamp", active=False)
        factory.stock(world.box_id, retired, 1, StockKind.RENTAL_ITEM)
        with pytest.raises(RentalItemInactiveError):
            rental_service.create_rental_booking(world.customer_id, retired, world.box_id)

    def test_last_unit_cannot_be_booked_twice(self, rental_service, world, simulated_gateway):
        _book(rental_service, world)
        _book(rental_service, world, actor_id=world.other_customer_id)

        with pytest.raises(InventoryUnavailableError):
            _book(rental_service, world)
        assert simulated_gateway.calls["authorize"] == 2

    def test_declined_deposit(self, rental_service, world, factory, simulated_gateway):
        simulated_gateway.inject("authorize", Fault.DECLINE)
        with pytest.raises(PaymentDeclinedError):
            _book(rental_service, world)
        assert factory.available(world.box_id, world.item_id) == 2

    def test_pending_customer_action_keeps_the_hold(
        self, rental_service, world, factory, simulated_gateway,
    ):
        simulated_gateway.inject("authorize", Fault.ACTION_PENDING, action_url="https://pay.example/3ds/7")

        result = _book(rental_service, world)

        assert result.requires_action is True
        assert result.action_url == "https://pay.example/3ds/7"
        booking = factory.booking(result.booking_id)
        assert booking.payment_status == PaymentStatus.ACTION_REQUIRED
        assert simulated_gateway.hold(booking.authorization_id).state == "authorized"


class TestConfirmPickup:

    def test_courier_at_the_box_hands_over(self, rental_service, world, factory, clock, notifier):
        booking_id = _book(rental_service, world).booking_id
        clock.advance(timedelta(minutes=30))

        result = rental_service.confirm_pickup(world.courier_id, booking_id)

        assert result.changed is True
        booking = factory.booking(booking_id)
        assert booking.status == RentalStatus.PICKED_UP
        assert booking.picked_up_at == clock.now()
        assert booking.pickup_courier_id == world.courier_id
        assert "RentalPickedUp" in notifier.types_for(world.customer_id)

    def test_second_confirmation_is_a_noop(self, rental_service, world, factory):
        booking_id = _book(rental_service, world).booking_id
        rental_service.confirm_pickup(world.courier_id, booking_id)
        version = factory.booking(booking_id).version

        again = rental_service.confirm_pickup(world.courier_id, booking_id)

        assert again.changed is False
        assert factory.booking(booking_id).version == version

    def test_courier_from_another_box_is_rejected(self, rental_service, world):
        booking_id = _book(rental_service, world).booking_id
        with pytest.raises(CourierMismatchError):
            rental_service.confirm_pickup(world.other_courier_id, booking_id)

    def test_admin_may_hand_over_anywhere(self, rental_service, world, factory):
        booking_id = _book(rental_service, world).booking_id
        rental_service.confirm_pickup(world.admin_id, booking_id)
        assert factory.booking(booking_id).status == RentalStatus.PICKED_UP

    def test_customer_cannot_confirm(self, rental_service, world):
        booking_id = _book(rental_service, world).booking_id
        with pytest.raises(PermissionDeniedError):
            rental_service.confirm_pickup(world.customer_id, booking_id)

    def test_deposit_must_be_authorized(self, rental_service, world, simulated_gateway):
        simulated_gateway.inject("authorize", Fault.ACTION_PENDING)
        booking_id = _book(rental_service, world).booking_id

        with pytest.raises(DepositNotAuthorizedError):
            rental_service.confirm_pickup(world.courier_id, booking_id)

    def test_cancelled_booking_cannot_be_picked_up(self, rental_service, world):
        booking_id = _book(rental_service, world).booking_id
        rental_service.cancel_rental_booking(world.customer_id, booking_id)

        with pytest.raises(InvalidStatusTransitionError):
            rental_service.confirm_pickup(world.courier_id, booking_id)


class TestConfirmReturn:

    def test_return_restocks_and_enqueues_settlement(
        self, rental_service, world, factory, clock, queue, settings, notifier,
    ):
        booking_id = _picked_up(rental_service, world, clock)
        clock.advance(timedelta(hours=3, minutes=10))

        result = rental_service.confirm_return(
            world.courier_id, booking_id, world.box_id, "ok", notes="all good",
        )

        assert result.changed is True
        booking = factory.booking(booking_id)
        assert booking.status == RentalStatus.RETURNED_PENDING_INSPECTION
        assert booking.returned_at == clock.now()
        assert booking.returned_condition == ReturnCondition.OK
        assert booking.return_notes == "all good"
        assert booking.return_courier_id == world.courier_id
        assert booking.deposit_ledger.phase == LedgerPhase.PENDING
        assert factory.available(world.box_id, world.item_id) == 2
        assert queue.pending_count(settings.queue.rental_deposit_topic) == 1
        assert "RentalReturned" in notifier.types_for(world.customer_id)

    def test_return_to_another_box(self, rental_service, world, factory, clock):
        booking_id = _picked_up(rental_service, world, clock)

        rental_service.confirm_return(world.other_courier_id, booking_id, world.other_box_id, "dirty")

        booking = factory.booking(booking_id)
        assert booking.return_box_id == world.other_box_id
        assert factory.available(world.other_box_id, world.item_id) == 1
        assert factory.available(world.box_id, world.item_id) == 1

    def test_courier_must_be_at_the_return_box(self, rental_service, world, clock):
        booking_id = _picked_up(rental_service, world, clock)
        with pytest.raises(CourierMismatchError):
            rental_service.confirm_return(world.courier_id, booking_id, world.other_box_id, "ok")

    def test_unknown_condition(self, rental_service, world, clock):
        booking_id = _picked_up(rental_service, world, clock)
        with pytest.raises(InvalidArgumentError):
            rental_service.confirm_return(world.courier_id, booking_id, world.box_id, "soggy")

    def test_booking_must_be_picked_up(self, rental_service, world):
        booking_id = _book(rental_service, world).booking_id
        with pytest.raises(InvalidStatusTransitionError):
            rental_service.confirm_return(world.courier_id, booking_id, world.box_id, "ok")

    def test_second_return_is_a_noop(self, rental_service, world, factory, clock, queue, settings):
        booking_id = _picked_up(rental_service, world, clock)
        rental_service.confirm_return(world.courier_id, booking_id, world.box_id, "ok")

        again = rental_service.confirm_return(world.courier_id, booking_id, world.box_id, "damaged")

        assert again.changed is False
        assert factory.booking(booking_id).returned_condition == ReturnCondition.OK
        assert factory.available(world.box_id, world.item_id) == 2
        assert queue.pending_count(settings.queue.rental_deposit_topic) == 1


class TestCancelRentalBooking:

    def test_owner_cancel_voids_and_restocks(
        self, rental_service, world, factory, simulated_gateway,
    ):
        booking_id = _book(rental_service, world).booking_id

        result = rental_service.cancel_rental_booking(world.customer_id, booking_id, "plans changed")

        assert result.changed is True
        booking = factory.booking(booking_id)
        assert booking.status == RentalStatus.CANCELLED
        assert booking.payment_status == PaymentStatus.VOIDED
        assert booking.cancellation_reason == "plans changed"
        assert simulated_gateway.hold(booking.authorization_id).state == "voided"
        assert factory.available(world.box_id, world.item_id) == 2

    def test_cancelling_twice_is_a_noop(self, rental_service, world, factory, simulated_gateway):
        booking_id = _book(rental_service, world).booking_id
        rental_service.cancel_rental_booking(world.customer_id, booking_id)

        again = rental_service.cancel_rental_booking(world.customer_id, booking_id)

        assert again.changed is False
        assert simulated_gateway.calls["void"] == 1
        assert factory.available(world.box_id, world.item_id) == 2

    def test_other_customer_cannot_cancel(self, rental_service, world):
        booking_id = _book(rental_service, world).booking_id
        with pytest.raises(NotOwnerOrAdminError):
            rental_service.cancel_rental_booking(world.other_customer_id, booking_id)

    def test_manager_cancel_notifies_the_customer(self, rental_service, world, notifier):
        booking_id = _book(rental_service, world).booking_id

        rental_service.cancel_rental_booking(world.manager_id, booking_id, "item recalled")

        assert "RentalCancelled" in notifier.types_for(world.customer_id)

    def test_picked_up_booking_cannot_be_cancelled(self, rental_service, world, clock):
        booking_id = _picked_up(rental_service, world, clock)
        with pytest.raises(InvalidStatusTransitionError):
            rental_service.cancel_rental_booking(world.admin_id, booking_id)

    def test_failed_void_is_recorded(self, rental_service, world, factory, repository, simulated_gateway):
        booking_id = _book(rental_service, world).booking_id
        simulated_gateway.inject("void", Fault.DECLINE)

        rental_service.cancel_rental_booking(world.customer_id, booking_id)

        booking = factory.booking(booking_id)
        assert booking.status == RentalStatus.CANCELLED
        assert booking.payment_status == PaymentStatus.VOID_FAILED
        assert "void failed" in booking.processing_error
        items = repository.list_review_items(kind=ReviewKind.VOID_FAILED, entity_id=booking_id)
        assert len(items) == 1
        assert items[0].amount == 10000


class TestOverdueSweep:

    def test_late_bookings_are_flagged_once(self, rental_service, world, factory, clock, notifier):
        late = _picked_up(rental_service, world, clock, hours=2)
        on_time = _book(
            rental_service, world, actor_id=world.other_customer_id,
            expected_return_at=clock.now() + timedelta(hours=48),
        ).booking_id
        rental_service.confirm_pickup(world.courier_id, on_time)
        clock.advance(timedelta(hours=3))

        assert rental_service.flag_overdue_rentals() == [late]
        assert rental_service.flag_overdue_rentals() == []

        assert factory.booking(late).status == RentalStatus.RETURN_OVERDUE
        assert factory.booking(on_time).status == RentalStatus.PICKED_UP
        assert "RentalOverdue" in notifier.types_for(world.customer_id)

    def test_overdue_booking_can_be_returned(self, rental_service, world, factory, clock):
        booking_id = _picked_up(rental_service, world, clock, hours=1)
        clock.advance(timedelta(hours=2))
        rental_service.flag_overdue_rentals()

        rental_service.confirm_return(world.courier_id, booking_id, world.box_id, "ok")

        booking = factory.booking(booking_id)
        assert booking.status == RentalStatus.RETURNED_PENDING_INSPECTION
        assert [e.status for e in booking.status_history] == [
            "pending_pickup", "picked_up", "return_overdue", "returned_pending_inspection",
        ]


class TestStaleActionRequiredSweep:

    def test_stuck_hold_is_voided_and_the_unit_returned(
        self, rental_service, world, factory, clock, simulated_gateway, notifier,
    ):
        simulated_gateway.inject("authorize", Fault.ACTION_PENDING)
        stuck = _book(rental_service, world).booking_id
        clock.advance(timedelta(minutes=10))
        simulated_gateway.inject("authorize", Fault.ACTION_PENDING)
        recent = _book(rental_service, world, actor_id=world.other_customer_id).booking_id
        assert factory.available(world.box_id, world.item_id) == 0

        clock.advance(timedelta(minutes=25))
        assert rental_service.release_stale_action_required() == [stuck]
        assert rental_service.release_stale_action_required() == []

        booking = factory.booking(stuck)
        assert booking.status == RentalStatus.CANCELLED
        assert booking.payment_status == PaymentStatus.VOIDED
        assert booking.status_history[-1].actor_id == "system"
        assert booking.cancellation_reason == "customer action not completed"
        assert simulated_gateway.hold(booking.authorization_id).state == "voided"
        assert factory.available(world.box_id, world.item_id) == 1
        assert factory.booking(recent).status == RentalStatus.PENDING_PICKUP
        assert "RentalCancelled" in notifier.types_for(world.customer_id)

    def test_recent_and_authorized_bookings_are_left_alone(
        self, rental_service, world, factory, clock, simulated_gateway,
    ):
        authorized = _book(rental_service, world).booking_id
        simulated_gateway.inject("authorize", Fault.ACTION_PENDING)
        pending = _book(rental_service, world, actor_id=world.other_customer_id).booking_id
        clock.advance(timedelta(minutes=29))

        assert rental_service.release_stale_action_required() == []
        assert factory.booking(pending).status == RentalStatus.PENDING_PICKUP
        clock.advance(timedelta(hours=5))
        assert rental_service.release_stale_action_required() == [pending]
        assert factory.booking(authorized).status == RentalStatus.PENDING_PICKUP

    def test_failed_void_is_recorded(self, rental_service, world, factory, clock, simulated_gateway, repository):
        simulated_gateway.inject("authorize", Fault.ACTION_PENDING)
        booking_id = _book(rental_service, world).booking_id
        simulated_gateway.inject("void", Fault.DECLINE)
        clock.advance(timedelta(hours=1))

        assert rental_service.release_stale_action_required() == [booking_id]

        booking = factory.booking(booking_id)
        assert booking.status == RentalStatus.CANCELLED
        assert booking.payment_status == PaymentStatus.VOID_FAILED
        assert "void failed" in booking.processing_error
        assert len(repository.list_review_items(kind=ReviewKind.VOID_FAILED, entity_id=booking_id)) == 1
        assert factory.available(world.box_id, world.item_id) == 2
