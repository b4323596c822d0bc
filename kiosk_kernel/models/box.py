"""
Module: kiosk_kernel.models.box
Responsibility: ORM persistence for kiosk boxes (inventory locations) and
    their per-item stock counters.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain value types only.

Invariants enforced:
    - available >= 0 for every stock row (ck_box_stock_non_negative).
    - One stock row per (box, item) (uq_box_stock_item).
    - Stock rows are never loaded as ORM instances for writing: the
      repository reads them as plain column values and changes them with
      guarded relative UPDATEs, so a concurrent decrement can never be
      lost to a stale read.

Failure modes:
    - IntegrityError on a duplicate (box, item) insert; the repository turns
      this into a transaction retry.

Audit relevance:
    Stock counters move only together with the order or booking write that
    justifies the movement, inside one transaction.
"""

from typing import Mapping
from types import MappingProxyType
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from kiosk_kernel.db.base import Base, TrackedBase, UUIDString
from kiosk_kernel.domain.dtos import BoxInfo


class StockKind:
    PRODUCT = "product"
    RENTAL_ITEM = "rental_item"


class Box(TrackedBase):
    """An inventory location customers order from and couriers serve."""

    __tablename__ = "boxes"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ILS")

    assigned_courier_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def __repr__(self) -> str:
        return f"<Box {self.id} {self.name}>"

    def to_dto(self, inventory: Mapping[UUID, int] | None = None) -> BoxInfo:
        return BoxInfo(
            id=self.id,
            name=self.name,
            is_active=self.is_active,
            currency=self.currency,
            assigned_courier_id=self.assigned_courier_id,
            inventory=MappingProxyType(dict(inventory or {})),
        )


class BoxStock(Base):
    """Available unit count of one product or rental item at one box."""

    __tablename__ = "box_stock"

    __table_args__ = (
        UniqueConstraint("box_id", "item_id", name="uq_box_stock_item"),
        CheckConstraint("available >= 0", name="ck_box_stock_non_negative"),
        Index("idx_box_stock_box", "box_id"),
    )

    box_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("boxes.id"),
        nullable=False,
    )

    item_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    item_kind: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=StockKind.PRODUCT,
    )

    available: Mapped[int] = mapped_column(nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<BoxStock box={self.box_id} item={self.item_id} available={self.available}>"
