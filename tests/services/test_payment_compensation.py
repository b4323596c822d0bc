"""
PaymentCompensator: compensating voids and durable review flags.
"""

import hypothesis
from hypothesis import strategies as st

from kiosk_kernel.exceptions import InventoryUnavailableError
from kiosk_kernel.models.manual_review import ReviewKind
from kiosk_kernel.services.payment_gateway import Fault


class TestVoidAfterFailure:

    def test_successful_void_leaves_no_review_item(self, compensator, simulated_gateway, repository):
        auth = simulated_gateway.authorize(1200, "ILS", "cus_1", "Order")

        outcome = compensator.void_after_failure(
            auth.authorization_id, 1200, "ILS",
            entity_type="order",
            reason="commit failed",
            error=InventoryUnavailableError("box", "item", 1),
        )

        assert outcome.voided
        assert outcome.review_item_id is None
        assert simulated_gateway.hold(auth.authorization_id).state == "voided"
        assert repository.list_review_items() == []

    def test_failed_void_records_an_orphaned_authorization(
        self, compensator, simulated_gateway, repository, alerts,
    ):
        auth = simulated_gateway.authorize(1200, "ILS", "cus_1", "Order")
        simulated_gateway.inject("void", Fault.DECLINE, error_code="processor_down")

        outcome = compensator.void_after_failure(
            auth.authorization_id, 1200, "ILS", entity_type="order", reason="commit failed",
        )

        assert not outcome.voided
        assert outcome.error_code == "processor_down"
        items = repository.list_review_items(kind=ReviewKind.ORPHANED_AUTHORIZATION)
        assert [item.id for item in items] == [outcome.review_item_id]
        assert items[0].authorization_id == auth.authorization_id
        assert items[0].amount == 1200
        assert items[0].currency == "ILS"
        assert items[0].detail["gateway_error"] == "processor_down"
        assert alerts.summaries() == ["orphaned_authorization"]

    def test_void_timeout_is_flagged_as_unknown(self, compensator, simulated_gateway, repository):
        auth = simulated_gateway.authorize(700, "ILS", None, "Deposit")
        simulated_gateway.inject("void", Fault.HANG, delay=1.0)

        outcome = compensator.void_after_failure(
            auth.authorization_id, 700, "ILS", entity_type="rental_booking", reason="commit failed",
        )

        assert not outcome.voided
        assert outcome.error_code == "timeout"
        item = repository.list_review_items(kind=ReviewKind.ORPHANED_AUTHORIZATION)[0]
        assert item.detail["status_unknown"] is True


class TestFlag:

    def test_unknown_authorization_is_recorded(self, compensator, repository):
        review_id = compensator.record_unknown_authorization(
            1500, "ILS", entity_type="order", customer_ref="cus_9", error_code="timeout",
        )

        item = repository.list_review_items(kind=ReviewKind.AUTHORIZATION_STATUS_UNKNOWN)[0]
        assert item.id == review_id
        assert item.amount == 1500
        assert item.authorization_id is None
        assert item.resolved_at is None

    def test_flag_survives_a_failed_write(self, compensator, repository, alerts, monkeypatch, captured_logs):
        def broken(*args, **kwargs):
            raise RuntimeError("database gone")

        monkeypatch.setattr(repository, "record_review_item", broken)

        review_id = compensator.flag(
            ReviewKind.CAPTURE_FAILED,
            "capture failed",
            authorization_id="auth_000042",
            amount=900,
            currency="ILS",
        )

        assert review_id is None
        assert alerts.summaries() == ["capture_failed"]
        records = captured_logs()
        lost = [r for r in records if r["message"] == "manual_review_write_failed"]
        assert lost and lost[0]["authorization_id"] == "auth_000042"
        assert lost[0]["level"] == "CRITICAL"

    def test_severity_is_passed_to_the_alert(self, compensator, alerts):
        compensator.flag(ReviewKind.DAMAGED_RETURN, "damaged", severity="high")
        assert alerts.alerts[0][0] == "high"


class TestCompensationProperty:

    @hypothesis.given(
        amount=st.integers(min_value=1, max_value=1_000_000),
        void_fails=st.booleans(),
    )
    @hypothesis.settings(
        max_examples=25,
        deadline=None,
        suppress_health_check=[hypothesis.HealthCheck.function_scoped_fixture],
    )
    def test_every_hold_is_voided_or_flagged(
        self, compensator, simulated_gateway, repository, amount, void_fails,
    ):
        auth = simulated_gateway.authorize(amount, "ILS", None, "Order")
        if void_fails:
            simulated_gateway.inject("void", Fault.DECLINE)

        outcome = compensator.void_after_failure(
            auth.authorization_id, amount, "ILS", entity_type="order", reason="commit failed",
        )

        voided = simulated_gateway.hold(auth.authorization_id).state == "voided"
        flagged = [
            item for item in repository.list_review_items(kind=ReviewKind.ORPHANED_AUTHORIZATION)
            if item.authorization_id == auth.authorization_id
        ]
        assert outcome.voided is voided
        assert voided is not void_fails
        assert len(flagged) == (0 if voided else 1)
