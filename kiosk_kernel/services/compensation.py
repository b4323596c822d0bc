"""
PaymentCompensator -- compensating voids and persisted manual-review flags.

Responsibility:
    Undo a successful authorization after a later step failed, and make
    every compensation that could not be completed durable: a manual-review
    item in the database plus a high-severity operator alert.

Architecture position:
    Kernel > Services.  Used by the lifecycle services on the synchronous
    path and by the side-effect worker.

Invariants enforced:
    - Never retries a financial call.  One void attempt; anything else is
      left to an operator.
    - Never raises into the caller.  The original error of the operation is
      what the caller sees; a failed void only adds a review item.
    - A void that fails always leaves a ``void_failed`` or
      ``orphaned_authorization`` review item (or, if even that write fails,
      a CRITICAL log line carrying every field the item would have held).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID

from kiosk_kernel.logging_config import get_logger
from kiosk_kernel.models.manual_review import ReviewKind
from kiosk_kernel.services.payment_gateway import PaymentGateway
from kiosk_kernel.services.repository import EntityRepository
from kiosk_kernel.services.side_channel import SideChannel

logger = get_logger("services.compensation")


@dataclass(frozen=True)
class CompensationOutcome:
    """What a compensating void did."""

    authorization_id: str
    voided: bool
    error_code: str | None = None
    review_item_id: UUID | None = None


class PaymentCompensator:
    def __init__(
        self,
        repository: EntityRepository,
        gateway: PaymentGateway,
        side_channel: SideChannel,
    ):
        self._repository = repository
        self._gateway = gateway
        self._side_channel = side_channel

    def void_after_failure(
        self,
        authorization_id: str,
        amount: int,
        currency: str,
        *,
        entity_type: str,
        reason: str,
        entity_id: UUID | None = None,
        error: BaseException | None = None,
    ) -> CompensationOutcome:
        """
        Void an authorization whose owning transaction did not commit.

        Returns:
            CompensationOutcome; ``voided`` is False when the gateway refused
            or did not answer, in which case an ``orphaned_authorization``
            review item has been recorded.
        """
        result = self._gateway.void(authorization_id)
        if result.success:
            logger.warning(
                "authorization_compensated",
                extra={
                    "authorization_id": authorization_id,
                    "amount": amount,
                    "entity_type": entity_type,
                    "reason": reason,
                    "error_code": getattr(error, "code", None),
                },
            )
            return CompensationOutcome(authorization_id, voided=True)

        review_id = self.flag(
            ReviewKind.ORPHANED_AUTHORIZATION,
            f"Void after failed {entity_type} transaction failed: {reason}",
            entity_type=entity_type,
            entity_id=entity_id,
            authorization_id=authorization_id,
            amount=amount,
            currency=currency,
            detail={
                "gateway_error": result.error_code,
                "status_unknown": result.status_unknown,
                "original_error": getattr(error, "code", type(error).__name__ if error else None),
            },
        )
        return CompensationOutcome(
            authorization_id,
            voided=False,
            error_code=result.error_code,
            review_item_id=review_id,
        )

    def record_unknown_authorization(
        self,
        amount: int,
        currency: str,
        *,
        entity_type: str,
        customer_ref: str | None,
        error_code: str | None,
    ) -> UUID | None:
        """Flag an authorization whose outcome was never observed."""
        return self.flag(
            ReviewKind.AUTHORIZATION_STATUS_UNKNOWN,
            f"Authorization for new {entity_type} timed out or failed in transit",
            entity_type=entity_type,
            amount=amount,
            currency=currency,
            detail={"customer_ref": customer_ref, "gateway_error": error_code},
        )

    def flag(
        self,
        kind: ReviewKind | str,
        reason: str,
        *,
        severity: str = "critical",
        **fields: Any,
    ) -> UUID | None:
        """
        Persist a manual-review item and alert operators.

        Returns:
            The review item id, or None when the item could not be written
            (logged at CRITICAL with all its fields).
        """
        kind_value = getattr(kind, "value", kind)
        log_fields = {k: v for k, v in fields.items() if k != "detail"}
        log_fields.update(fields.get("detail") or {})
        review_id: UUID | None = None
        try:
            review_id = self._repository.record_review_item(kind_value, reason, **fields).id
        except Exception:
            logger.critical(
                "manual_review_write_failed",
                extra={"review_kind": kind_value, "reason": reason, **log_fields},
                exc_info=True,
            )
        logger.critical(
            "manual_review_required",
            extra={
                "review_kind": kind_value,
                "reason": reason,
                "review_item_id": review_id,
                **log_fields,
            },
        )
        self._side_channel.alert(
            severity,
            kind_value,
            {"reason": reason, "review_item_id": review_id, **log_fields},
        )
        return review_id
