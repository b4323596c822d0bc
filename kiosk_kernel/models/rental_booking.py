"""
Module: kiosk_kernel.models.rental_booking
Responsibility: ORM persistence for rental bookings: fee and deposit
    snapshots, handover times, return condition, embedded deposit
    authorization and the deposit settlement ledger.
Architecture position: Kernel > Models.  May import from db/base.py and the
    pure domain layer only.

Invariants enforced:
    - Versioned: status and ledger writes are compare-and-set on
      ``version``.  The settlement worker relies on this to claim a deposit
      exactly once.
    - Fee, deposit and overtime settings are copied at booking time.
    - status_history only grows.

Audit relevance:
    final_charge and the per-fee columns record how the captured amount was
    derived.  For damaged returns they are provisional figures left for an
    operator, and the deposit ledger stays FAILED until someone resolves it.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, Index, String, Text
from sqlalchemy.orm import Mapped, composite, mapped_column

from kiosk_kernel.db.base import TrackedBase, UTCDateTime, UUIDString, Versioned
from kiosk_kernel.domain.dtos import RentalBookingRecord, StatusHistoryEntry
from kiosk_kernel.domain.values import (
    LedgerPhase,
    PaymentStatus,
    ProcessingLedger,
    ReturnCondition,
)
from kiosk_kernel.domain.workflows import RentalStatus


class RentalBooking(Versioned, TrackedBase):
    """A rental of one item, picked up and returned at boxes."""

    __tablename__ = "rental_bookings"

    __table_args__ = (
        Index("idx_rental_customer", "customer_id"),
        Index("idx_rental_status", "status"),
        Index("idx_rental_deposit_phase", "deposit_phase"),
    )

    customer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    rental_item_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    rental_item_name: Mapped[str] = mapped_column(String(200), nullable=False)
    pickup_box_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    return_box_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    status: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
        default=RentalStatus.PENDING_PICKUP.value,
    )
    status_history: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Snapshots, smallest currency unit
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    rental_fee: Mapped[int] = mapped_column(nullable=False)
    deposit: Mapped[int] = mapped_column(nullable=False)
    overtime_interval_minutes: Mapped[int] = mapped_column(nullable=False)
    overtime_fee_per_interval: Mapped[int] = mapped_column(nullable=False, default=0)
    cleaning_fee: Mapped[int] = mapped_column(nullable=False, default=0)

    # Handover
    expected_return_at: Mapped[datetime | None] = mapped_column(nullable=True)
    picked_up_at: Mapped[datetime | None] = mapped_column(nullable=True)
    pickup_courier_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    returned_at: Mapped[datetime | None] = mapped_column(nullable=True)
    return_courier_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    returned_condition: Mapped[str | None] = mapped_column(String(20), nullable=True)
    return_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    return_photo_url: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Deposit authorization and settlement
    payment_status: Mapped[str] = mapped_column(String(40), nullable=False)
    authorization_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    authorized_amount: Mapped[int | None] = mapped_column(nullable=True)
    authorized_at: Mapped[datetime | None] = mapped_column(nullable=True)
    settlement_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    amount_charged: Mapped[int | None] = mapped_column(nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Charge breakdown, set by the settlement worker
    overtime_fee_charged: Mapped[int | None] = mapped_column(nullable=True)
    cleaning_fee_charged: Mapped[int | None] = mapped_column(nullable=True)
    damage_fee_charged: Mapped[int | None] = mapped_column(nullable=True)
    final_charge: Mapped[int | None] = mapped_column(nullable=True)

    deposit_ledger: Mapped[ProcessingLedger] = composite(
        mapped_column(
            "deposit_phase",
            String(20),
            nullable=False,
            default=LedgerPhase.NOT_REQUIRED.value,
        ),
        mapped_column("deposit_processed_at", UTCDateTime(), nullable=True),
    )

    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<RentalBooking {self.id} status={self.status} v{self.version}>"

    def append_history(self, entry: StatusHistoryEntry) -> None:
        self.status_history = [*(self.status_history or []), entry.to_dict()]

    def to_dto(self) -> RentalBookingRecord:
        return RentalBookingRecord(
            id=self.id,
            customer_id=self.customer_id,
            rental_item_id=self.rental_item_id,
            rental_item_name=self.rental_item_name,
            pickup_box_id=self.pickup_box_id,
            return_box_id=self.return_box_id,
            status=RentalStatus(self.status),
            status_history=tuple(
                StatusHistoryEntry.from_dict(e) for e in self.status_history or []
            ),
            currency=self.currency,
            rental_fee=self.rental_fee,
            deposit=self.deposit,
            overtime_interval_minutes=self.overtime_interval_minutes,
            overtime_fee_per_interval=self.overtime_fee_per_interval,
            cleaning_fee=self.cleaning_fee,
            expected_return_at=self.expected_return_at,
            picked_up_at=self.picked_up_at,
            pickup_courier_id=self.pickup_courier_id,
            returned_at=self.returned_at,
            return_courier_id=self.return_courier_id,
            returned_condition=(
                ReturnCondition(self.returned_condition)
                if self.returned_condition else None
            ),
            return_notes=self.return_notes,
            return_photo_url=self.return_photo_url,
            payment_status=PaymentStatus(self.payment_status),
            authorization_id=self.authorization_id,
            authorized_amount=self.authorized_amount,
            settlement_id=self.settlement_id,
            amount_charged=self.amount_charged,
            overtime_fee_charged=self.overtime_fee_charged,
            cleaning_fee_charged=self.cleaning_fee_charged,
            damage_fee_charged=self.damage_fee_charged,
            final_charge=self.final_charge,
            deposit_ledger=self.deposit_ledger,
            processing_error=self.processing_error,
            cancellation_reason=self.cancellation_reason,
            version=self.version,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )
