"""
Module: kiosk_kernel.models.order
Responsibility: ORM persistence for customer orders: item snapshots, totals,
    status and its append-only history, embedded payment record and the
    cancellation side-effect ledger.
Architecture position: Kernel > Models.  May import from db/base.py and the
    pure domain layer only.

Invariants enforced:
    - Versioned: every UPDATE is a compare-and-set on ``version``; a
      concurrent status write surfaces as StaleDataError and the repository
      re-runs the whole transaction against fresh state.
    - items and totals change only while the order is created (editOrder)
      and when a tip is charged after delivery (addTipToOrder).
    - status_history only grows; writers replace the list with a longer
      copy (JSON columns do not track in-place mutation).
    - Orders are never deleted; cancellation is a status.

Failure modes:
    - StaleDataError on a concurrent update (converted by the repository).

Audit relevance:
    authorization_id / settlement_id / refund_id tie the order to the
    gateway's records.  processing_error carries any compensation or side
    effect failure that needs an operator.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, Index, String, Text
from sqlalchemy.orm import Mapped, composite, mapped_column

from kiosk_kernel.db.base import TrackedBase, UTCDateTime, UUIDString, Versioned
from kiosk_kernel.domain.dtos import OrderRecord, StatusHistoryEntry
from kiosk_kernel.domain.fees import LineItem
from kiosk_kernel.domain.values import (
    LedgerPhase,
    PaymentMethod,
    PaymentStatus,
    ProcessingLedger,
)
from kiosk_kernel.domain.workflows import OrderStatus


class Order(Versioned, TrackedBase):
    """A product order placed at a box."""

    __tablename__ = "orders"

    __table_args__ = (
        Index("idx_order_customer", "customer_id"),
        Index("idx_order_box_status", "box_id", "status"),
        Index("idx_order_cancellation_phase", "cancellation_phase"),
    )

    customer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    box_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # List of LineItem.to_dict() snapshots
    items: Mapped[list] = mapped_column(JSON, nullable=False)

    status: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default=OrderStatus.CREATED.value,
    )

    status_history: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Payment
    payment_method: Mapped[str] = mapped_column(String(30), nullable=False)
    payment_status: Mapped[str] = mapped_column(String(40), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    authorization_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    authorized_amount: Mapped[int | None] = mapped_column(nullable=True)
    authorized_at: Mapped[datetime | None] = mapped_column(nullable=True)
    settlement_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    amount_charged: Mapped[int | None] = mapped_column(nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    refund_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    tip_settlement_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    tip_charged_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Totals, smallest currency unit
    items_total: Mapped[int] = mapped_column(nullable=False)
    coupon_discount: Mapped[int] = mapped_column(nullable=False, default=0)
    loyalty_discount: Mapped[int] = mapped_column(nullable=False, default=0)
    tip: Mapped[int] = mapped_column(nullable=False, default=0)
    final_amount: Mapped[int] = mapped_column(nullable=False)
    promo_code: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Cancellation side effects (inventory restore, loyalty refund)
    cancellation: Mapped[ProcessingLedger] = composite(
        mapped_column(
            "cancellation_phase",
            String(20),
            nullable=False,
            default=LedgerPhase.NOT_REQUIRED.value,
        ),
        mapped_column("cancellation_processed_at", UTCDateTime(), nullable=True),
    )

    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Order {self.id} status={self.status} v{self.version}>"

    def line_items(self) -> list[LineItem]:
        return [LineItem.from_dict(item) for item in self.items]

    def append_history(self, entry: StatusHistoryEntry) -> None:
        self.status_history = [*(self.status_history or []), entry.to_dict()]

    def to_dto(self) -> OrderRecord:
        return OrderRecord(
            id=self.id,
            customer_id=self.customer_id,
            box_id=self.box_id,
            items=tuple(self.line_items()),
            status=OrderStatus(self.status),
            status_history=tuple(
                StatusHistoryEntry.from_dict(e) for e in self.status_history or []
            ),
            payment_method=PaymentMethod(self.payment_method),
            payment_status=PaymentStatus(self.payment_status),
            currency=self.currency,
            items_total=self.items_total,
            coupon_discount=self.coupon_discount,
            loyalty_discount=self.loyalty_discount,
            tip=self.tip,
            final_amount=self.final_amount,
            promo_code=self.promo_code,
            authorization_id=self.authorization_id,
            authorized_amount=self.authorized_amount,
            settlement_id=self.settlement_id,
            amount_charged=self.amount_charged,
            refund_id=self.refund_id,
            tip_settlement_id=self.tip_settlement_id,
            cancellation=self.cancellation,
            processing_error=self.processing_error,
            cancellation_reason=self.cancellation_reason,
            version=self.version,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )
