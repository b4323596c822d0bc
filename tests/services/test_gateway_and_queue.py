"""
Payment gateway adapters and the in-memory message queue.
"""

import threading

import pytest

from kiosk_kernel.services.message_queue import InMemoryMessageQueue
from kiosk_kernel.services.payment_gateway import (
    Fault,
    SimulatedPaymentGateway,
    TimeoutGuardedGateway,
)


@pytest.fixture
def sim():
    return SimulatedPaymentGateway()


class TestSimulatedGateway:

    def test_authorize_then_finalize_captures_at_most_the_hold(self, sim):
        auth = sim.authorize(10000, "ILS", "cus_1", "Deposit")
        assert auth.success and auth.authorization_id

        result = sim.finalize(auth.authorization_id, 12000, 10000, "ILS")

        assert result.success
        assert result.amount_charged == 10000
        assert sim.hold(auth.authorization_id).state == "captured"

    def test_finalize_zero_voids(self, sim):
        auth = sim.authorize(5000, "ILS", None, "Deposit")

        result = sim.finalize(auth.authorization_id, 0, 5000, "ILS")

        assert result.success and result.voided
        assert result.settlement_id is None
        assert sim.holds_in_state("voided") == [auth.authorization_id]

    def test_finalize_after_void_is_refused(self, sim):
        auth = sim.authorize(5000, "ILS", None, "Deposit")
        sim.void(auth.authorization_id)

        result = sim.finalize(auth.authorization_id, 1000, 5000, "ILS")

        assert not result.success
        assert result.error_code == "authorization_voided"

    def test_captured_hold_cannot_be_voided(self, sim):
        auth = sim.authorize(5000, "ILS", None, "Order")
        sim.finalize(auth.authorization_id, 5000, 5000, "ILS")

        assert sim.void(auth.authorization_id).error_code == "already_captured"

    def test_refund_is_bounded_by_the_capture(self, sim):
        auth = sim.authorize(5000, "ILS", None, "Order")
        settled = sim.finalize(auth.authorization_id, 3000, 5000, "ILS")

        assert sim.refund(settled.settlement_id, 2000, "ILS", "customer").success
        over = sim.refund(settled.settlement_id, 2000, "ILS", "customer")
        assert not over.success
        assert over.error_code == "refund_exceeds_capture"

    def test_zero_amount_is_not_authorized(self, sim):
        assert sim.authorize(0, "ILS", None, "Nothing").error_code == "invalid_amount"

    def test_faults_are_consumed_in_order(self, sim):
        sim.inject("authorize", Fault.DECLINE, times=2, error_code="insufficient_funds")

        first = sim.authorize(100, "ILS", None, "x")
        second = sim.authorize(100, "ILS", None, "x")
        third = sim.authorize(100, "ILS", None, "x")

        assert first.error_code == second.error_code == "insufficient_funds"
        assert third.success
        assert sim.calls["authorize"] == 3

    def test_action_required_places_no_hold(self, sim):
        sim.inject("authorize", Fault.ACTION_REQUIRED, action_url="https://pay.example/3ds/1")

        result = sim.authorize(100, "ILS", None, "x")

        assert not result.success
        assert result.requires_action
        assert result.action_url == "https://pay.example/3ds/1"
        assert sim.holds_in_state("authorized") == []

    def test_raise_fault_is_a_transport_error(self, sim):
        sim.inject("void", Fault.RAISE)
        with pytest.raises(ConnectionError):
            sim.void("auth_000001")


class TestTimeoutGuard:

    @pytest.fixture
    def guarded(self, sim):
        gateway = TimeoutGuardedGateway(sim, timeout_seconds=0.2)
        yield gateway
        gateway.shutdown()

    def test_successful_call_passes_through(self, guarded):
        result = guarded.authorize(100, "ILS", None, "x")
        assert result.success
        assert not result.status_unknown

    def test_hung_call_reports_unknown_status(self, sim, guarded, captured_logs):
        sim.inject("authorize", Fault.HANG, delay=1.0)

        result = guarded.authorize(100, "ILS", None, "x")

        assert not result.success
        assert result.status_unknown
        assert result.error_code == "timeout"
        assert any(r["message"] == "gateway_call_timed_out" for r in captured_logs())

    def test_transport_error_reports_unknown_status(self, sim, guarded):
        sim.inject("finalize", Fault.RAISE)

        result = guarded.finalize("auth_000001", 100, 100, "ILS")

        assert result.status_unknown
        assert result.error_code == "network_error"

    def test_declines_are_not_unknown(self, sim, guarded):
        sim.inject("refund", Fault.DECLINE)
        result = guarded.refund("stl_000001", 100, "ILS", "x")
        assert not result.success
        assert not result.status_unknown


class TestInMemoryQueue:

    def test_ack_removes_the_message(self):
        queue = InMemoryMessageQueue()
        queue.publish("t", {"orderId": "o-1"})

        message = queue.receive("t", timeout=0)

        assert message.payload() == {"orderId": "o-1"}
        assert message.delivery_count == 1
        assert queue.in_flight_count() == 1
        queue.ack(message)
        assert queue.in_flight_count() == 0
        assert queue.receive("t", timeout=0) is None

    def test_nack_redelivers_until_dead_lettered(self):
        queue = InMemoryMessageQueue(max_deliveries=2)
        queue.publish("t", {"orderId": "o-1"})

        first = queue.receive("t", timeout=0)
        queue.nack(first)
        second = queue.receive("t", timeout=0)
        queue.nack(second)

        assert second.delivery_count == 2
        assert queue.pending_count("t") == 0
        assert [m.message_id for m in queue.dead_letters("t")] == [first.message_id]

    def test_nack_without_requeue_dead_letters_at_once(self):
        queue = InMemoryMessageQueue()
        queue.publish("t", {"orderId": "o-1"})
        message = queue.receive("t", timeout=0)

        queue.nack(message, requeue=False)

        assert len(queue.dead_letters("t")) == 1

    def test_requeue_in_flight_after_a_crash(self):
        queue = InMemoryMessageQueue()
        queue.publish("t", {"bookingId": "b-1"})
        queue.receive("t", timeout=0)

        assert queue.requeue_in_flight() == 1

        again = queue.receive("t", timeout=0)
        assert again.delivery_count == 2

    def test_topics_are_independent(self):
        queue = InMemoryMessageQueue()
        queue.publish("a", {"orderId": "o-1"})
        assert queue.receive("b", timeout=0) is None
        assert queue.pending_count("a") == 1

    def test_receive_waits_for_a_publisher(self):
        queue = InMemoryMessageQueue()
        timer = threading.Timer(0.05, queue.publish, args=("t", {"orderId": "late"}))
        timer.start()
        try:
            message = queue.receive("t", timeout=2)
        finally:
            timer.join()
        assert message is not None
        assert message.payload() == {"orderId": "late"}

    def test_raw_body_is_not_parsed_on_publish(self):
        queue = InMemoryMessageQueue()
        queue.publish_raw("t", "{broken")
        message = queue.receive("t", timeout=0)
        with pytest.raises(ValueError):
            message.payload()
